"""Page-based pagination shared by every list operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from erp_kernel.exceptions import InvalidPaginationError

T = TypeVar("T")

MAX_PER_PAGE = 500


@dataclass(frozen=True)
class PageRequest:
    """1-based page number and page size."""

    page: int = 1
    per_page: int = 50

    def __post_init__(self) -> None:
        if (
            not isinstance(self.page, int)
            or not isinstance(self.per_page, int)
            or self.page < 1
            or not 1 <= self.per_page <= MAX_PER_PAGE
        ):
            raise InvalidPaginationError(self.page, self.per_page)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


@dataclass(frozen=True)
class Page(Generic[T]):
    items: tuple[T, ...]
    total: int
    page: int
    per_page: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.per_page) if self.total else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": list(self.items),
            "total": self.total,
            "page": self.page,
            "per_page": self.per_page,
            "total_pages": self.total_pages,
        }
