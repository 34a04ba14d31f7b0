"""Run a SELECT one page at a time."""

from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from erp_kernel.domain.pagination import Page, PageRequest


def paginate(
    session: Session,
    stmt: Select,
    request: PageRequest | None = None,
    transform: Callable[[Any], Any] | None = None,
) -> Page:
    """Count the unpaged result, then fetch the requested page of ``stmt``."""
    request = request or PageRequest()
    total = session.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    ).scalar_one()
    rows = (
        session.execute(stmt.offset(request.offset).limit(request.per_page))
        .scalars()
        .all()
    )
    items = tuple(transform(r) for r in rows) if transform else tuple(rows)
    return Page(
        items=items,
        total=total,
        page=request.page,
        per_page=request.per_page,
    )
