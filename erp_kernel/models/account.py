"""
Module: erp_kernel.models.account
Responsibility: ORM persistence for the Chart of Accounts -- the target of
    every journal line.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Account.code is unique (uq_account_code).
    - The parent chain is acyclic (enforced by AccountService on every
      parent assignment, not by the schema).

Failure modes:
    - AccountNotFoundError when a posting references a non-existent account.
    - AccountInactiveError when a posting targets an Inactive/Deleted account.
"""

from uuid import UUID

from sqlalchemy import Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from erp_kernel.db.base import TrackedBase, UUIDString
from erp_kernel.db.types import EnumText
from erp_kernel.domain.ledger import AccountClassification, AccountInfo, AccountLifecycle


class Account(TrackedBase):
    """
    Chart of Accounts entry.

    Guarantees:
        - code is unique and non-null.
        - classification determines the normal balance side.
    """

    __tablename__ = "ledger_accounts"

    __table_args__ = (
        UniqueConstraint("code", name="uq_account_code"),
        Index("idx_account_classification", "classification"),
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    classification: Mapped[AccountClassification] = mapped_column(
        EnumText(AccountClassification),
        nullable=False,
    )

    lifecycle: Mapped[AccountLifecycle] = mapped_column(
        EnumText(AccountLifecycle),
        nullable=False,
        default=AccountLifecycle.ACTIVE,
    )

    # Parent account for the hierarchical chart (same table, no cycles)
    parent_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return f"<Account {self.code}: {self.name}>"

    @property
    def is_active(self) -> bool:
        return self.lifecycle == AccountLifecycle.ACTIVE

    def to_dto(self) -> AccountInfo:
        return AccountInfo(
            id=self.id,
            code=self.code,
            name=self.name,
            classification=self.classification,
            lifecycle=self.lifecycle,
            parent_id=self.parent_id,
        )
