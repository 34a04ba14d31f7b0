"""
CreditService -- customer credit exposure, holds and alerts.

Responsibility:
    Keeps each customer's credit profile (limit, used, available,
    receivables, orders, overdue) current from an immutable ledger of
    credit transactions; places and releases holds; raises alerts; and
    answers credit checks for prospective orders.

Architecture position:
    Services -- imperative shell around erp_engines.credit, which owns the
    risk tiers, the hold threshold test and the order check.  Holds are
    announced on the EventBus as ``credit.hold.placed`` / ``.released``.

Invariants enforced:
    - ``available_credit == credit_limit - credit_used`` after every write.
    - ``credit_used == sum(transaction.delta)``: credit_used only changes
      through ``apply_transaction``, which appends the transaction.
    - A (kind, reference) pair applies once per customer; redelivery
      returns the original transaction marked ``duplicate``.
    - At most one Active hold per customer.
    - Auto-hold threshold is inclusive: ``used * 100 >= limit * percent``.

Failure modes:
    - CreditProfileNotFoundError, CreditHoldNotFoundError,
      CreditAlertNotFoundError.
    - DuplicateCodeError: second profile for a customer.
    - CreditHoldActiveError: manual hold on a customer already on hold.
    - HoldNotActiveError: releasing a released hold.

Audit relevance:
    CreditTransaction and CreditLimitChange rows are append-only; holds
    keep who placed and released them and the override reason.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from erp_config.schema import CreditSettings
from erp_engines.credit import (
    AlertSeverity,
    AlertType,
    CreditCheckResult,
    CreditProfileStatus,
    HoldDecision,
    HoldStatus,
    HoldType,
    RiskLevel,
    TransactionKind,
    check_order,
    classify_risk,
    decide_auto_hold,
    risk_alert_severity,
    utilization_percent,
)
from erp_kernel.domain.clock import Clock
from erp_kernel.domain.codec import decode_enum
from erp_kernel.domain.currency import validate_currency
from erp_kernel.domain.events import Topics
from erp_kernel.domain.pagination import Page, PageRequest
from erp_kernel.exceptions import (
    CreditAlertNotFoundError,
    CreditHoldActiveError,
    CreditHoldNotFoundError,
    CreditProfileNotFoundError,
    DuplicateCodeError,
    HoldNotActiveError,
    ValidationError,
)
from erp_kernel.logging_config import get_logger
from erp_kernel.selectors.pagination import paginate
from erp_kernel.services.base import BaseService
from erp_kernel.services.event_bus import EventBus
from erp_services._credit_types import (
    CreditAlertInfo,
    CreditCheckInfo,
    CreditHoldInfo,
    CreditLimitChangeInfo,
    CreditProfileInfo,
    CreditSummaryInfo,
    CreditTransactionInfo,
)
from erp_services.models.credit import (
    CreditAlert,
    CreditHold,
    CreditLimitChange,
    CreditTransaction,
    CustomerCreditProfile,
)

logger = get_logger("services.credit")

_HIGH_RISK_LEVELS = (RiskLevel.HIGH, RiskLevel.CRITICAL)


class CreditService(BaseService):
    """
    Credit exposure, holds and alerts per customer.

    Contract:
        Amounts are integer minor units of the profile currency.  Writes
        are flushed, never committed.  Profile writes hold a row lock.

    Guarantees:
        - ``apply_transaction`` is idempotent per (customer, kind, reference).
        - Releasing a hold leaves utilization unchanged.

    Non-goals:
        - Credit scoring models; ``credit_score`` is stored as given.
        - Automatic release when exposure falls; releases are explicit.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
        settings: CreditSettings | None = None,
    ):
        super().__init__(session, clock)
        self._event_bus = event_bus
        self._settings = settings or CreditSettings()

    # =========================================================================
    # Profiles
    # =========================================================================

    def create_profile(
        self,
        customer_id: UUID,
        credit_limit: int,
        currency: str = "USD",
        *,
        auto_hold_enabled: bool | None = None,
        hold_threshold_percent: int | None = None,
        credit_score: int | None = None,
        actor_id: UUID | None = None,
    ) -> CreditProfileInfo:
        if credit_limit < 0:
            raise ValidationError("credit_limit must not be negative")
        threshold = (
            hold_threshold_percent
            if hold_threshold_percent is not None
            else self._settings.default_hold_threshold_percent
        )
        if not 0 < threshold <= 100:
            raise ValidationError("hold_threshold_percent must be between 1 and 100")
        if self._find_profile(customer_id) is not None:
            raise DuplicateCodeError("CustomerCreditProfile", str(customer_id))

        profile = CustomerCreditProfile(
            customer_id=customer_id,
            currency=validate_currency(currency),
            credit_limit=credit_limit,
            credit_used=0,
            available_credit=credit_limit,
            outstanding_invoices=0,
            pending_orders=0,
            overdue_amount=0,
            overdue_days_avg=0,
            credit_score=credit_score,
            risk_level=RiskLevel.LOW,
            auto_hold_enabled=(
                auto_hold_enabled
                if auto_hold_enabled is not None
                else self._settings.default_auto_hold
            ),
            hold_threshold_percent=threshold,
            status=CreditProfileStatus.ACTIVE,
        )
        self._stamp_new(profile, actor_id)
        self._session.add(profile)
        try:
            with self._session.begin_nested():
                self._session.flush()
        except IntegrityError as exc:
            raise DuplicateCodeError("CustomerCreditProfile", str(customer_id)) from exc

        logger.info(
            "credit_profile_created",
            extra={
                "customer_id": str(customer_id),
                "credit_limit": credit_limit,
                "threshold_percent": threshold,
            },
        )
        return profile.to_dto()

    def get_profile(self, customer_id: UUID) -> CreditProfileInfo:
        return self._require_profile(customer_id).to_dto()

    def set_credit_limit(
        self,
        customer_id: UUID,
        new_limit: int,
        reason: str,
        actor_id: UUID | None = None,
    ) -> CreditProfileInfo:
        """Change the limit, keep the history row, then re-assess risk and holds."""
        if new_limit < 0:
            raise ValidationError("credit_limit must not be negative")
        if not reason or not reason.strip():
            raise ValidationError("A credit limit change needs a reason")
        profile = self._require_profile(customer_id, lock=True)

        change = CreditLimitChange(
            profile_id=profile.id,
            customer_id=customer_id,
            previous_limit=profile.credit_limit,
            new_limit=new_limit,
            reason=reason.strip(),
            changed_at=self._clock.now(),
        )
        self._stamp_new(change, actor_id)
        self._session.add(change)

        profile.credit_limit = new_limit
        profile.available_credit = new_limit - profile.credit_used
        profile.last_review_at = self._clock.now()
        self._stamp_changed(profile, actor_id)
        self._reassess(profile, actor_id)
        self._session.flush()

        logger.info(
            "credit_limit_changed",
            extra={
                "customer_id": str(customer_id),
                "previous_limit": change.previous_limit,
                "new_limit": new_limit,
            },
        )
        return profile.to_dto()

    def update_overdue(
        self,
        customer_id: UUID,
        overdue_amount: int,
        overdue_days_avg: int,
        actor_id: UUID | None = None,
    ) -> CreditProfileInfo:
        """Record the customer's overdue receivables as reported by aging."""
        if overdue_amount < 0 or overdue_days_avg < 0:
            raise ValidationError("Overdue amount and days must not be negative")
        profile = self._require_profile(customer_id, lock=True)
        previous = profile.overdue_amount
        profile.overdue_amount = overdue_amount
        profile.overdue_days_avg = overdue_days_avg
        self._stamp_changed(profile, actor_id)

        if overdue_amount > previous:
            self._alert(
                profile,
                AlertType.OVERDUE_PAYMENT,
                AlertSeverity.WARNING,
                f"Overdue receivables rose to {overdue_amount} "
                f"(average {overdue_days_avg} days)",
                threshold_value=previous,
                actual_value=overdue_amount,
                actor_id=actor_id,
            )
        self._reassess(profile, actor_id)
        self._session.flush()
        return profile.to_dto()

    def refresh_risk(self, customer_id: UUID, actor_id: UUID | None = None) -> CreditProfileInfo:
        """Recompute the risk tier; alert when it worsens into High or Critical."""
        profile = self._require_profile(customer_id, lock=True)
        self._refresh_risk(profile, actor_id)
        self._session.flush()
        return profile.to_dto()

    # =========================================================================
    # Transactions
    # =========================================================================

    def apply_transaction(
        self,
        customer_id: UUID,
        delta: int,
        reference_id: UUID,
        *,
        kind: TransactionKind | str = TransactionKind.MANUAL,
        reference_number: str | None = None,
        description: str | None = None,
        actor_id: UUID | None = None,
    ) -> CreditTransactionInfo:
        """
        Move ``credit_used`` by ``delta`` and append the transaction.

        Invoices, credit notes, payments and write-offs also move
        ``outstanding_invoices``; orders and cancelled orders move
        ``pending_orders``.  Afterwards risk is refreshed and, for
        auto-hold profiles, a hold is placed if one is due.
        """
        kind = decode_enum(TransactionKind, kind)
        profile = self._require_profile(customer_id, lock=True)

        existing = self._find_transaction(profile.id, kind, reference_id)
        if existing is not None:
            logger.info(
                "credit_transaction_duplicate",
                extra={
                    "customer_id": str(customer_id),
                    "kind": kind.value,
                    "reference_id": str(reference_id),
                },
            )
            return existing.to_dto(duplicate=True)

        previous = profile.credit_used
        txn = CreditTransaction(
            profile_id=profile.id,
            customer_id=customer_id,
            kind=kind,
            delta=delta,
            previous_used=previous,
            new_used=previous + delta,
            reference_id=reference_id,
            reference_number=reference_number,
            description=description,
        )
        self._stamp_new(txn, actor_id)
        self._session.add(txn)

        profile.credit_used = previous + delta
        profile.available_credit = profile.credit_limit - profile.credit_used
        if kind.moves_receivables:
            profile.outstanding_invoices = max(profile.outstanding_invoices + delta, 0)
        elif kind.moves_orders:
            profile.pending_orders = max(profile.pending_orders + delta, 0)
        self._stamp_changed(profile, actor_id)
        self._reassess(profile, actor_id, related_reference_id=reference_id)
        self._session.flush()

        logger.info(
            "credit_transaction_applied",
            extra={
                "customer_id": str(customer_id),
                "kind": kind.value,
                "delta": delta,
                "credit_used": profile.credit_used,
                "available_credit": profile.available_credit,
            },
        )
        return txn.to_dto()

    def list_transactions(
        self,
        customer_id: UUID,
        page: PageRequest | None = None,
    ) -> Page:
        profile = self._require_profile(customer_id)
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.profile_id == profile.id)
            .order_by(CreditTransaction.created_at, CreditTransaction.id)
        )
        return paginate(self._session, stmt, page, lambda t: t.to_dto())

    def limit_history(self, customer_id: UUID) -> list[CreditLimitChangeInfo]:
        profile = self._require_profile(customer_id)
        stmt = (
            select(CreditLimitChange)
            .where(CreditLimitChange.profile_id == profile.id)
            .order_by(CreditLimitChange.changed_at)
        )
        return [c.to_dto() for c in self._session.execute(stmt).scalars()]

    # =========================================================================
    # Holds
    # =========================================================================

    def evaluate_hold(self, customer_id: UUID, actor_id: UUID | None = None) -> CreditHoldInfo | None:
        """Place the automatic hold the profile calls for; None if none is due."""
        profile = self._require_profile(customer_id, lock=True)
        hold = self._evaluate_hold(profile, actor_id)
        self._session.flush()
        return hold.to_dto() if hold is not None else None

    def place_manual_hold(
        self,
        customer_id: UUID,
        reason: str,
        actor_id: UUID | None = None,
    ) -> CreditHoldInfo:
        if not reason or not reason.strip():
            raise ValidationError("A manual hold needs a reason")
        profile = self._require_profile(customer_id, lock=True)
        active = self._active_hold(profile.id)
        if active is not None:
            raise CreditHoldActiveError(customer_id, active.id)

        hold = self._place_hold(
            profile,
            HoldDecision(
                hold_type=HoldType.MANUAL_HOLD,
                reason=reason.strip(),
                amount_over_limit=0,
                alert_type=AlertType.HOLD_PLACED,
                severity=AlertSeverity.WARNING,
            ),
            actor_id,
        )
        self._session.flush()
        return hold.to_dto()

    def release_hold(
        self,
        hold_id: UUID,
        released_by: UUID | None,
        reason: str,
    ) -> CreditHoldInfo:
        """Release an Active hold; exposure is not touched."""
        hold = self._session.execute(
            select(CreditHold)
            .where(CreditHold.id == hold_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if hold is None:
            raise CreditHoldNotFoundError(hold_id)
        if hold.status != HoldStatus.ACTIVE:
            raise HoldNotActiveError(hold_id, hold.status.value)

        hold.status = HoldStatus.RELEASED
        hold.released_at = self._clock.now()
        hold.released_by_id = released_by
        hold.override_reason = reason
        self._stamp_changed(hold, released_by)

        profile = self._session.get(CustomerCreditProfile, hold.profile_id)
        self._alert(
            profile,
            AlertType.HOLD_RELEASED,
            AlertSeverity.INFO,
            f"Credit hold released: {reason}",
            actor_id=released_by,
        )
        self._session.flush()

        logger.info(
            "credit_hold_released",
            extra={
                "customer_id": str(hold.customer_id),
                "hold_id": str(hold.id),
                "hold_type": hold.hold_type.value,
            },
        )
        self._publish(Topics.CREDIT_HOLD_RELEASED, hold)
        return hold.to_dto()

    def active_hold(self, customer_id: UUID) -> CreditHoldInfo | None:
        profile = self._require_profile(customer_id)
        hold = self._active_hold(profile.id)
        return hold.to_dto() if hold is not None else None

    def list_holds(self, customer_id: UUID) -> list[CreditHoldInfo]:
        profile = self._require_profile(customer_id)
        stmt = (
            select(CreditHold)
            .where(CreditHold.profile_id == profile.id)
            .order_by(CreditHold.placed_at)
        )
        return [h.to_dto() for h in self._session.execute(stmt).scalars()]

    # =========================================================================
    # Portfolio
    # =========================================================================

    def list_on_hold(self) -> list[CreditProfileInfo]:
        """Profiles with an Active hold, most recently changed first."""
        stmt = (
            select(CustomerCreditProfile)
            .join(
                CreditHold,
                (CreditHold.profile_id == CustomerCreditProfile.id)
                & (CreditHold.status == HoldStatus.ACTIVE),
            )
            .order_by(CustomerCreditProfile.updated_at.desc(), CustomerCreditProfile.id)
        )
        return [p.to_dto() for p in self._session.execute(stmt).scalars().unique()]

    def list_high_risk(self) -> list[CreditProfileInfo]:
        """High and Critical profiles, largest overdue amount first."""
        stmt = (
            select(CustomerCreditProfile)
            .where(CustomerCreditProfile.risk_level.in_(_HIGH_RISK_LEVELS))
            .order_by(CustomerCreditProfile.overdue_amount.desc(), CustomerCreditProfile.id)
        )
        return [p.to_dto() for p in self._session.execute(stmt).scalars()]

    def get_summary(self) -> CreditSummaryInfo:
        totals = self._session.execute(
            select(
                func.count(CustomerCreditProfile.id),
                func.coalesce(func.sum(CustomerCreditProfile.credit_limit), 0),
                func.coalesce(func.sum(CustomerCreditProfile.credit_used), 0),
                func.coalesce(func.sum(CustomerCreditProfile.available_credit), 0),
                func.coalesce(func.sum(CustomerCreditProfile.overdue_amount), 0),
            )
        ).one()
        on_hold = self._session.execute(
            select(func.count(func.distinct(CreditHold.customer_id)))
            .where(CreditHold.status == HoldStatus.ACTIVE)
        ).scalar_one()
        high_risk = self._session.execute(
            select(func.count(CustomerCreditProfile.id))
            .where(CustomerCreditProfile.risk_level.in_(_HIGH_RISK_LEVELS))
        ).scalar_one()

        customers, limit, used, available, overdue = (int(v) for v in totals)
        utilization = Decimal(0)
        if limit > 0:
            utilization = (Decimal(used) * 100 / Decimal(limit)).quantize(Decimal("0.01"))
        return CreditSummaryInfo(
            total_customers=customers,
            total_credit_limit=limit,
            total_credit_used=used,
            total_available_credit=available,
            total_overdue=overdue,
            customers_on_hold=int(on_hold),
            high_risk_customers=int(high_risk),
            avg_utilization_percent=utilization,
        )

    # =========================================================================
    # Credit checks
    # =========================================================================

    def check_credit(
        self,
        customer_id: UUID,
        order_amount: int,
        *,
        order_id: UUID | None = None,
        actor_id: UUID | None = None,
    ) -> CreditCheckInfo:
        """
        Approved, Warning or Blocked for an order of ``order_amount``.

        A customer without a profile is Approved with a warning.  A
        Blocked check on an auto-hold profile places a CreditLimitExceeded
        hold.
        """
        if order_amount < 0:
            raise ValidationError("order_amount must not be negative")
        profile = self._find_profile(customer_id, lock=True)
        if profile is None:
            return CreditCheckInfo(
                customer_id=customer_id,
                result=CreditCheckResult.APPROVED,
                credit_limit=0,
                credit_used=0,
                available_credit=0,
                requested_amount=order_amount,
                projected_available=0,
                warnings=("Customer has no credit profile",),
                reason="No credit profile found",
            )

        active = self._active_hold(profile.id)
        decision = check_order(
            profile.exposure(),
            order_amount=order_amount,
            on_hold=active is not None,
            hold_reason=active.reason if active is not None else None,
        )
        hold_id = active.id if active is not None else None
        if (
            active is None
            and decision.result == CreditCheckResult.BLOCKED
            and profile.auto_hold_enabled
        ):
            over = -decision.projected_available
            hold = self._place_hold(
                profile,
                HoldDecision(
                    hold_type=HoldType.CREDIT_LIMIT_EXCEEDED,
                    reason=f"limit exceeded: order of {order_amount} is {over} over available credit",
                    amount_over_limit=over,
                    alert_type=AlertType.LIMIT_EXCEEDED,
                    severity=AlertSeverity.CRITICAL,
                ),
                actor_id,
                related_reference_id=order_id,
            )
            hold_id = hold.id
            self._session.flush()

        logger.info(
            "credit_checked",
            extra={
                "customer_id": str(customer_id),
                "order_amount": order_amount,
                "result": decision.result.value,
            },
        )
        return CreditCheckInfo(
            customer_id=customer_id,
            result=decision.result,
            credit_limit=profile.credit_limit,
            credit_used=profile.credit_used,
            available_credit=profile.available_credit,
            requested_amount=order_amount,
            projected_available=decision.projected_available,
            warnings=decision.warnings,
            reason=decision.reason,
            hold_id=hold_id,
        )

    # =========================================================================
    # Alerts
    # =========================================================================

    def list_alerts(
        self,
        customer_id: UUID | None = None,
        unacknowledged_only: bool = False,
    ) -> list[CreditAlertInfo]:
        stmt = select(CreditAlert)
        if customer_id is not None:
            stmt = stmt.where(CreditAlert.customer_id == customer_id)
        if unacknowledged_only:
            stmt = stmt.where(CreditAlert.acknowledged.is_(False))
        stmt = stmt.order_by(CreditAlert.created_at, CreditAlert.id)
        return [a.to_dto() for a in self._session.execute(stmt).scalars()]

    def acknowledge_alert(self, alert_id: UUID, actor_id: UUID | None = None) -> CreditAlertInfo:
        alert = self._session.get(CreditAlert, alert_id)
        if alert is None:
            raise CreditAlertNotFoundError(alert_id)
        if not alert.acknowledged:
            alert.acknowledged = True
            alert.acknowledged_by_id = actor_id
            alert.acknowledged_at = self._clock.now()
            self._stamp_changed(alert, actor_id)
            self._session.flush()
        return alert.to_dto()

    # =========================================================================
    # Internal
    # =========================================================================

    def _reassess(
        self,
        profile: CustomerCreditProfile,
        actor_id: UUID | None,
        related_reference_id: UUID | None = None,
    ) -> None:
        self._refresh_risk(profile, actor_id)
        self._evaluate_hold(profile, actor_id, related_reference_id)

    def _refresh_risk(self, profile: CustomerCreditProfile, actor_id: UUID | None) -> None:
        previous = profile.risk_level
        current = classify_risk(exposure=profile.exposure())
        if current == previous:
            return
        profile.risk_level = current
        self._stamp_changed(profile, actor_id)
        severity = risk_alert_severity(previous, current)
        if severity is not None:
            self._alert(
                profile,
                AlertType.HIGH_RISK,
                severity,
                f"Risk level rose from {previous.value} to {current.value}",
                actor_id=actor_id,
            )
        logger.info(
            "credit_risk_changed",
            extra={
                "customer_id": str(profile.customer_id),
                "from_level": previous.value,
                "to_level": current.value,
            },
        )

    def _evaluate_hold(
        self,
        profile: CustomerCreditProfile,
        actor_id: UUID | None,
        related_reference_id: UUID | None = None,
    ) -> CreditHold | None:
        if not profile.auto_hold_enabled:
            return None
        decision = decide_auto_hold(profile.exposure())
        if decision is None or self._active_hold(profile.id) is not None:
            return None
        return self._place_hold(profile, decision, actor_id, related_reference_id)

    def _place_hold(
        self,
        profile: CustomerCreditProfile,
        decision: HoldDecision,
        actor_id: UUID | None,
        related_reference_id: UUID | None = None,
    ) -> CreditHold:
        hold = CreditHold(
            profile_id=profile.id,
            customer_id=profile.customer_id,
            hold_type=decision.hold_type,
            reason=decision.reason,
            status=HoldStatus.ACTIVE,
            amount_over_limit=decision.amount_over_limit,
            related_reference_id=related_reference_id,
            placed_at=self._clock.now(),
            placed_by_id=actor_id,
        )
        self._stamp_new(hold, actor_id)
        self._session.add(hold)
        self._session.flush()

        self._alert(
            profile,
            decision.alert_type,
            decision.severity,
            f"Credit hold placed ({decision.hold_type.value}): {decision.reason}",
            actor_id=actor_id,
        )
        logger.warning(
            "credit_hold_placed",
            extra={
                "customer_id": str(profile.customer_id),
                "hold_id": str(hold.id),
                "hold_type": decision.hold_type.value,
                "utilization_percent": str(
                    utilization_percent(profile.credit_used, profile.credit_limit)
                ),
            },
        )
        self._publish(Topics.CREDIT_HOLD_PLACED, hold)
        return hold

    def _alert(
        self,
        profile: CustomerCreditProfile,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        *,
        threshold_value: int | None = None,
        actual_value: int | None = None,
        actor_id: UUID | None = None,
    ) -> CreditAlert:
        alert = CreditAlert(
            profile_id=profile.id,
            customer_id=profile.customer_id,
            alert_type=alert_type,
            severity=severity,
            message=message,
            threshold_value=profile.credit_limit if threshold_value is None else threshold_value,
            actual_value=profile.credit_used if actual_value is None else actual_value,
            acknowledged=False,
        )
        self._stamp_new(alert, actor_id)
        self._session.add(alert)
        return alert

    def _active_hold(self, profile_id: UUID) -> CreditHold | None:
        return self._session.execute(
            select(CreditHold)
            .where(CreditHold.profile_id == profile_id, CreditHold.status == HoldStatus.ACTIVE)
            .order_by(CreditHold.placed_at)
            .limit(1)
        ).scalar_one_or_none()

    def _find_transaction(
        self,
        profile_id: UUID,
        kind: TransactionKind,
        reference_id: UUID,
    ) -> CreditTransaction | None:
        return self._session.execute(
            select(CreditTransaction).where(
                CreditTransaction.profile_id == profile_id,
                CreditTransaction.kind == kind,
                CreditTransaction.reference_id == reference_id,
            )
        ).scalar_one_or_none()

    def _find_profile(self, customer_id: UUID, lock: bool = False) -> CustomerCreditProfile | None:
        stmt = select(CustomerCreditProfile).where(CustomerCreditProfile.customer_id == customer_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self._session.execute(stmt).scalar_one_or_none()

    def _require_profile(self, customer_id: UUID, lock: bool = False) -> CustomerCreditProfile:
        profile = self._find_profile(customer_id, lock)
        if profile is None:
            raise CreditProfileNotFoundError(customer_id)
        return profile

    def _publish(self, topic: str, hold: CreditHold) -> None:
        if self._event_bus is None:
            return
        self._event_bus.publish(
            topic,
            {
                "customer_id": str(hold.customer_id),
                "hold_id": str(hold.id),
                "hold_type": hold.hold_type.value,
                "status": hold.status.value,
            },
        )
