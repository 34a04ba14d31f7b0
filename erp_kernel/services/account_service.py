"""
AccountService -- Chart of Accounts maintenance.

Responsibility:
    Creates accounts, moves them within the hierarchy and changes their
    lifecycle.  Resolves account references (code or UUID) for the journal
    service.

Invariants enforced:
    - Account codes are unique (DuplicateCodeError before the constraint
      fires, IntegrityError translated on a race).
    - The parent chain is acyclic: an account can never become its own
      ancestor.

Failure modes:
    - AccountNotFoundError: unknown code or id.
    - AccountHierarchyCycleError: a move would create a cycle.
    - DuplicateCodeError: code already in use.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_kernel.domain.clock import Clock
from erp_kernel.domain.ledger import AccountClassification, AccountInfo, AccountLifecycle
from erp_kernel.exceptions import (
    AccountHierarchyCycleError,
    AccountNotFoundError,
    DuplicateCodeError,
    ValidationError,
)
from erp_kernel.logging_config import get_logger
from erp_kernel.models.account import Account
from erp_kernel.services.base import BaseService

logger = get_logger("services.account")


class AccountService(BaseService):
    """
    Service for the Chart of Accounts.

    Guarantees:
        - Every returned value is a frozen AccountInfo DTO.
        - Lifecycle changes never delete rows; Deleted is a lifecycle state.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)

    # =========================================================================
    # Commands
    # =========================================================================

    def create_account(
        self,
        code: str,
        name: str,
        classification: AccountClassification,
        parent_id: UUID | None = None,
        actor_id: UUID | None = None,
    ) -> AccountInfo:
        code = (code or "").strip()
        if not code:
            raise ValidationError("Account code is required")
        if not name:
            raise ValidationError("Account name is required")

        existing = self._session.execute(
            select(Account.id).where(Account.code == code)
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateCodeError("Account", code)

        if parent_id is not None:
            self._get_orm(parent_id)

        account = Account(
            code=code,
            name=name,
            classification=classification,
            lifecycle=AccountLifecycle.ACTIVE,
            parent_id=parent_id,
        )
        self._stamp_new(account, actor_id)
        self._session.add(account)
        self._session.flush()

        logger.info(
            "account_created",
            extra={
                "account_code": code,
                "classification": classification.value,
                "parent_id": str(parent_id) if parent_id else None,
            },
        )
        return account.to_dto()

    def move_account(
        self,
        account_id: UUID,
        new_parent_id: UUID | None,
        actor_id: UUID | None = None,
    ) -> AccountInfo:
        account = self._get_orm(account_id)
        if new_parent_id is not None:
            parent = self._get_orm(new_parent_id)
            self._check_acyclic(account, parent)
        account.parent_id = new_parent_id
        self._stamp_changed(account, actor_id)
        self._session.flush()
        logger.info(
            "account_moved",
            extra={"account_code": account.code, "parent_id": str(new_parent_id)},
        )
        return account.to_dto()

    def deactivate_account(self, account_id: UUID, actor_id: UUID | None = None) -> AccountInfo:
        return self._set_lifecycle(account_id, AccountLifecycle.INACTIVE, actor_id)

    def reactivate_account(self, account_id: UUID, actor_id: UUID | None = None) -> AccountInfo:
        return self._set_lifecycle(account_id, AccountLifecycle.ACTIVE, actor_id)

    def delete_account(self, account_id: UUID, actor_id: UUID | None = None) -> AccountInfo:
        return self._set_lifecycle(account_id, AccountLifecycle.DELETED, actor_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_account(self, account_ref: str | UUID) -> AccountInfo:
        return self.resolve(account_ref).to_dto()

    def list_accounts(
        self,
        classification: AccountClassification | None = None,
        include_deleted: bool = False,
    ) -> list[AccountInfo]:
        stmt = select(Account).order_by(Account.code)
        if classification is not None:
            stmt = stmt.where(Account.classification == classification)
        if not include_deleted:
            stmt = stmt.where(Account.lifecycle != AccountLifecycle.DELETED)
        return [a.to_dto() for a in self._session.execute(stmt).scalars()]

    def resolve(self, account_ref: str | UUID) -> Account:
        """Return the Account ORM row for a code or UUID reference."""
        if isinstance(account_ref, UUID):
            return self._get_orm(account_ref)
        account = self._session.execute(
            select(Account).where(Account.code == account_ref)
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(account_ref)
        return account

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_orm(self, account_id: UUID) -> Account:
        account = self._session.get(Account, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def _check_acyclic(self, account: Account, parent: Account) -> None:
        seen: set[UUID] = set()
        node: Account | None = parent
        while node is not None:
            if node.id == account.id:
                raise AccountHierarchyCycleError(account.code, parent.code)
            if node.id in seen:
                break
            seen.add(node.id)
            node = self._session.get(Account, node.parent_id) if node.parent_id else None

    def _set_lifecycle(
        self,
        account_id: UUID,
        lifecycle: AccountLifecycle,
        actor_id: UUID | None,
    ) -> AccountInfo:
        account = self._get_orm(account_id)
        account.lifecycle = lifecycle
        self._stamp_changed(account, actor_id)
        self._session.flush()
        logger.info(
            "account_lifecycle_changed",
            extra={"account_code": account.code, "lifecycle": lifecycle.value},
        )
        return account.to_dto()
