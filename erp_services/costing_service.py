"""
CostingService -- per-(product, warehouse) inventory valuation.

Responsibility:
    Configure the valuation method of a (product, warehouse), open a cost
    layer on every receipt, draw layers on every issue, and restate unit
    costs through cost adjustments that post a balanced revaluation
    journal via the injected JournalPoster.

Architecture position:
    Services -- imperative shell around erp_engines.costing.  The engine
    decides quantities and values; this service locks, persists and
    publishes.  The ledger is reached only through the JournalPoster
    capability, so tests can wire a fake.

Invariants enforced:
    - Receipts and issues run under a row lock on the ProductValuation,
      so ``sum(layer.remaining_quantity) == total_quantity`` holds after
      every committed transaction.
    - An issue never draws more than the layers hold.
    - A cost adjustment posts at most once; its journal balances by
      construction (inventory lines offset by one revaluation line).

Failure modes:
    - ValuationNotFoundError: receipt/issue on an unconfigured valuation.
    - InsufficientInventoryError: issue above the on-hand quantity.
    - ValuationInUseError: method change while stock is on hand.
    - AdjustmentNotDraftError: posting or cancelling a non-Draft adjustment.
    - Ledger errors (PeriodLockedError, AccountNotFoundError, ...) from the
      JournalPoster propagate unchanged; the caller rolls back.

Audit relevance:
    Every receipt, issue and revaluation appends a CostMovement with the
    quantity and value after it; issues record the layers they drew.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_engines.costing import (
    CostMethod,
    LayerDraw,
    available_quantity,
    cost_issue,
    cost_receipt,
    revalue,
)
from erp_kernel.domain.clock import Clock
from erp_kernel.domain.codec import decode_enum
from erp_kernel.domain.currency import validate_currency
from erp_kernel.domain.events import Topics
from erp_kernel.domain.ledger import EntrySource, LineSpec
from erp_kernel.exceptions import (
    AdjustmentNotDraftError,
    ConfigurationError,
    CostAdjustmentNotFoundError,
    InsufficientInventoryError,
    ValidationError,
    ValuationInUseError,
    ValuationNotFoundError,
)
from erp_kernel.logging_config import get_logger
from erp_kernel.services.base import BaseService
from erp_kernel.services.event_bus import EventBus
from erp_kernel.services.journal_service import JournalPoster
from erp_kernel.services.sequence_service import SequenceService
from erp_services._costing_types import (
    AdjustmentLineSpec,
    AdjustmentStatus,
    CostAdjustmentInfo,
    CostLayerInfo,
    CostMovementKind,
    IssueResult,
    LayerConsumptionInfo,
    ReceiptResult,
    ValuationInfo,
)
from erp_services.models.costing import (
    CostAdjustment,
    CostAdjustmentLine,
    CostMovement,
    InventoryCostLayer,
    ProductValuation,
)

logger = get_logger("services.costing")


class CostingService(BaseService):
    """
    Inventory valuation and cost adjustments.

    Contract:
        Quantities and unit costs are Decimal; values are integer minor
        units of the valuation's currency.  Writes are flushed, never
        committed.

    Guarantees:
        - ``issue`` returns the exact layers drawn and their values.
        - ``post_adjustment`` either posts the journal and restates every
          line, or raises with nothing restated.

    Non-goals:
        - Physical stock movements, lots and serial numbers.
        - Landed cost allocation.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
        poster: JournalPoster | None = None,
    ):
        super().__init__(session, clock)
        self._event_bus = event_bus
        self._poster = poster
        self._sequences = SequenceService(session)

    # =========================================================================
    # Valuations
    # =========================================================================

    def configure_valuation(
        self,
        product_id: UUID,
        warehouse_id: UUID,
        method: CostMethod | str,
        *,
        currency: str = "USD",
        standard_cost: Decimal | str | None = None,
        actor_id: UUID | None = None,
    ) -> ValuationInfo:
        """
        Create or reconfigure the valuation of (product, warehouse).

        The method may change only while nothing is on hand.  Standard
        requires a standard cost.
        """
        method = decode_enum(CostMethod, method)
        currency = validate_currency(currency)
        standard = Decimal(str(standard_cost)) if standard_cost is not None else None
        if method == CostMethod.STANDARD and standard is None:
            raise ValidationError("Standard costing requires a standard_cost")
        if standard is not None and standard < 0:
            raise ValidationError("standard_cost must not be negative")

        valuation = self._find_valuation(product_id, warehouse_id, lock=True)
        if valuation is None:
            valuation = ProductValuation(
                product_id=product_id,
                warehouse_id=warehouse_id,
                method=method,
                currency=currency,
                standard_cost=standard,
                current_unit_cost=standard if method == CostMethod.STANDARD else Decimal(0),
                total_quantity=Decimal(0),
                total_value=0,
                layer_sequence=0,
            )
            self._stamp_new(valuation, actor_id)
            self._session.add(valuation)
        else:
            # Restating stock on hand goes through a cost adjustment
            if valuation.total_quantity != 0 and (
                method != valuation.method
                or currency != valuation.currency
                or standard != valuation.standard_cost
            ):
                raise ValuationInUseError(product_id, warehouse_id, valuation.total_quantity)
            valuation.method = method
            valuation.currency = currency
            valuation.standard_cost = standard
            if method == CostMethod.STANDARD and valuation.total_quantity == 0:
                valuation.current_unit_cost = standard
            self._stamp_changed(valuation, actor_id)
        self._session.flush()

        logger.info(
            "valuation_configured",
            extra={
                "product_id": str(product_id),
                "warehouse_id": str(warehouse_id),
                "method": method.value,
                "currency": currency,
            },
        )
        return valuation.to_dto()

    def valuation_snapshot(self, product_id: UUID, warehouse_id: UUID) -> ValuationInfo:
        return self._require_valuation(product_id, warehouse_id).to_dto()

    def list_layers(
        self,
        product_id: UUID,
        warehouse_id: UUID,
        include_depleted: bool = True,
    ) -> list[CostLayerInfo]:
        """Layers in receipt order."""
        valuation = self._require_valuation(product_id, warehouse_id)
        stmt = select(InventoryCostLayer).where(InventoryCostLayer.valuation_id == valuation.id)
        if not include_depleted:
            stmt = stmt.where(InventoryCostLayer.remaining_quantity > 0)
        stmt = stmt.order_by(InventoryCostLayer.layer_date, InventoryCostLayer.sequence)
        return [layer.to_dto() for layer in self._session.execute(stmt).scalars()]

    # =========================================================================
    # Receipts and issues
    # =========================================================================

    def receive(
        self,
        product_id: UUID,
        warehouse_id: UUID,
        quantity: Decimal | str | int,
        unit_cost: Decimal | str | int,
        *,
        receipt_date: date | None = None,
        reference: str | None = None,
        actor_id: UUID | None = None,
    ) -> ReceiptResult:
        """Open a cost layer for ``quantity`` received at ``unit_cost``."""
        valuation = self._require_valuation(product_id, warehouse_id, lock=True)
        receipt_date = receipt_date or self._clock.today()
        costing = cost_receipt(
            valuation.balance(),
            quantity=Decimal(str(quantity)),
            unit_cost=Decimal(str(unit_cost)),
        )

        valuation.layer_sequence += 1
        layer = InventoryCostLayer(
            valuation_id=valuation.id,
            product_id=product_id,
            warehouse_id=warehouse_id,
            sequence=valuation.layer_sequence,
            layer_date=receipt_date,
            quantity=costing.quantity,
            unit_cost=costing.layer_unit_cost,
            total_value=costing.layer_value,
            remaining_quantity=costing.quantity,
            remaining_value=costing.layer_value,
            reference=reference,
        )
        self._stamp_new(layer, actor_id)
        self._session.add(layer)

        valuation.apply(costing.balance)
        valuation.last_receipt_cost = costing.purchase_unit_cost
        valuation.last_receipt_date = receipt_date
        self._stamp_changed(valuation, actor_id)
        self._record_movement(
            valuation,
            CostMovementKind.RECEIPT,
            receipt_date,
            quantity=costing.quantity,
            unit_cost=costing.layer_unit_cost,
            value=costing.layer_value,
            variance=costing.variance,
            reference=reference,
            actor_id=actor_id,
        )
        self._session.flush()

        logger.info(
            "inventory_received",
            extra={
                "product_id": str(product_id),
                "warehouse_id": str(warehouse_id),
                "quantity": str(costing.quantity),
                "unit_cost": str(costing.purchase_unit_cost),
                "layer_value": costing.layer_value,
                "variance": costing.variance,
            },
        )
        self._publish(
            Topics.INVENTORY_RECEIPT,
            valuation,
            quantity=costing.quantity,
            unit_cost=costing.purchase_unit_cost,
            value=costing.layer_value,
            reference=reference,
        )
        return ReceiptResult(
            layer=layer.to_dto(),
            valuation=valuation.to_dto(),
            purchase_unit_cost=costing.purchase_unit_cost,
            variance=costing.variance,
        )

    def issue(
        self,
        product_id: UUID,
        warehouse_id: UUID,
        quantity: Decimal | str | int,
        *,
        issue_date: date | None = None,
        reference: str | None = None,
        actor_id: UUID | None = None,
    ) -> IssueResult:
        """Draw ``quantity`` from the layers in the method's order and cost it."""
        valuation = self._require_valuation(product_id, warehouse_id, lock=True)
        quantity = Decimal(str(quantity))
        issue_date = issue_date or self._clock.today()

        layers = self._open_layers(valuation)
        held = available_quantity(layer.balance() for layer in layers)
        if quantity > held:
            raise InsufficientInventoryError(product_id, warehouse_id, quantity, held)

        costing = cost_issue(
            valuation.balance(), [layer.balance() for layer in layers], quantity=quantity
        )
        by_id = {layer.id: layer for layer in layers}
        for draw in costing.draws:
            self._apply_draw(by_id[draw.layer_id], draw, actor_id)

        valuation.apply(costing.balance)
        valuation.last_issue_cost = costing.unit_cost
        valuation.last_issue_date = issue_date
        self._stamp_changed(valuation, actor_id)
        consumed = tuple(
            LayerConsumptionInfo(
                layer_id=d.layer_id,
                quantity=d.quantity,
                unit_cost=d.unit_cost,
                value=d.value,
            )
            for d in costing.draws
        )
        self._record_movement(
            valuation,
            CostMovementKind.ISSUE,
            issue_date,
            quantity=costing.quantity,
            unit_cost=costing.unit_cost,
            value=costing.cost,
            layers=[
                {
                    "layer_id": str(c.layer_id),
                    "quantity": str(c.quantity),
                    "unit_cost": str(c.unit_cost),
                    "value": c.value,
                }
                for c in consumed
            ],
            reference=reference,
            actor_id=actor_id,
        )
        self._session.flush()

        logger.info(
            "inventory_issued",
            extra={
                "product_id": str(product_id),
                "warehouse_id": str(warehouse_id),
                "quantity": str(quantity),
                "cost": costing.cost,
                "layers_drawn": len(consumed),
                "method": valuation.method.value,
            },
        )
        self._publish(
            Topics.INVENTORY_ISSUE,
            valuation,
            quantity=quantity,
            unit_cost=costing.unit_cost,
            value=costing.cost,
            reference=reference,
        )
        return IssueResult(
            quantity=quantity,
            cost=costing.cost,
            unit_cost=costing.unit_cost,
            consumed=consumed,
            valuation=valuation.to_dto(),
        )

    # =========================================================================
    # Cost adjustments
    # =========================================================================

    def create_adjustment(
        self,
        lines: Sequence[AdjustmentLineSpec],
        *,
        reason: str,
        inventory_account: str,
        revaluation_account: str,
        adjustment_date: date | None = None,
        currency: str = "USD",
        actor_id: UUID | None = None,
    ) -> CostAdjustmentInfo:
        """Create a Draft adjustment restating each line's unit cost."""
        if not lines:
            raise ValidationError("A cost adjustment needs at least one line")
        if not reason or not reason.strip():
            raise ValidationError("A cost adjustment needs a reason")
        currency = validate_currency(currency)
        seen: set[tuple[UUID, UUID]] = set()
        for spec in lines:
            key = (spec.product_id, spec.warehouse_id)
            if key in seen:
                raise ValidationError(
                    f"Duplicate adjustment line for {spec.product_id}@{spec.warehouse_id}"
                )
            seen.add(key)
            if Decimal(str(spec.new_unit_cost)) < 0:
                raise ValidationError("new_unit_cost must not be negative")
            self._require_valuation(spec.product_id, spec.warehouse_id)

        seq = self._sequences.next_value(SequenceService.COST_ADJUSTMENT)
        adjustment = CostAdjustment(
            number=f"CA-{seq:06d}",
            adjustment_date=adjustment_date or self._clock.today(),
            reason=reason.strip(),
            currency=currency,
            inventory_account=inventory_account,
            revaluation_account=revaluation_account,
            status=AdjustmentStatus.DRAFT,
        )
        self._stamp_new(adjustment, actor_id)
        for number, spec in enumerate(lines, start=1):
            line = CostAdjustmentLine(
                line_number=number,
                product_id=spec.product_id,
                warehouse_id=spec.warehouse_id,
                new_unit_cost=Decimal(str(spec.new_unit_cost)),
            )
            self._stamp_new(line, actor_id)
            adjustment.lines.append(line)
        self._session.add(adjustment)
        self._session.flush()

        logger.info(
            "cost_adjustment_created",
            extra={"adjustment_id": str(adjustment.id), "number": adjustment.number, "lines": len(lines)},
        )
        return adjustment.to_dto()

    def post_adjustment(self, adjustment_id: UUID, actor_id: UUID | None = None) -> CostAdjustmentInfo:
        """
        Restate every line and post the revaluation journal.

        One inventory line per non-zero product delta, offset by a single
        revaluation line for the net; an adjustment whose deltas are all
        zero posts without a journal.
        """
        adjustment = self._require_adjustment(adjustment_id, lock=True)
        if adjustment.status != AdjustmentStatus.DRAFT:
            raise AdjustmentNotDraftError(adjustment.id, adjustment.status.value)

        planned = []
        for line in adjustment.lines:
            valuation = self._require_valuation(line.product_id, line.warehouse_id, lock=True)
            if valuation.currency != adjustment.currency:
                raise ValidationError(
                    f"Valuation {line.product_id}@{line.warehouse_id} is in "
                    f"{valuation.currency}, adjustment is in {adjustment.currency}"
                )
            layers = self._open_layers(valuation)
            revaluation = revalue(
                valuation.balance(),
                [layer.balance() for layer in layers],
                new_unit_cost=line.new_unit_cost,
            )
            planned.append((line, valuation, layers, revaluation))

        journal_lines: list[LineSpec] = []
        for line, valuation, _, revaluation in planned:
            memo = f"{adjustment.number} {line.product_id}@{line.warehouse_id}"
            if revaluation.delta > 0:
                journal_lines.append(LineSpec.dr(adjustment.inventory_account, revaluation.delta, memo))
            elif revaluation.delta < 0:
                journal_lines.append(LineSpec.cr(adjustment.inventory_account, -revaluation.delta, memo))
        net = sum(r.delta for *_, r in planned)
        if net > 0:
            journal_lines.append(LineSpec.cr(adjustment.revaluation_account, net, adjustment.reason))
        elif net < 0:
            journal_lines.append(LineSpec.dr(adjustment.revaluation_account, -net, adjustment.reason))

        entry_id = None
        if journal_lines:
            if self._poster is None:
                raise ConfigurationError("Cost adjustments need a JournalPoster to post")
            entry = self._poster.create_and_post(
                adjustment.adjustment_date,
                f"Cost adjustment {adjustment.number}: {adjustment.reason}",
                journal_lines,
                reference=adjustment.number,
                currency=adjustment.currency,
                source=EntrySource.COSTING,
                actor_id=actor_id,
            )
            entry_id = entry.id

        for line, valuation, layers, revaluation in planned:
            values = dict(revaluation.layer_values)
            for layer in layers:
                if layer.id in values:
                    layer.unit_cost = revaluation.new_unit_cost
                    layer.remaining_value = values[layer.id]
                    self._stamp_changed(layer, actor_id)
            valuation.apply(revaluation.balance)
            self._stamp_changed(valuation, actor_id)
            line.old_unit_cost = revaluation.old_unit_cost
            line.quantity = revaluation.quantity
            line.value_delta = revaluation.delta
            self._stamp_changed(line, actor_id)
            self._record_movement(
                valuation,
                CostMovementKind.ADJUSTMENT,
                adjustment.adjustment_date,
                quantity=revaluation.quantity,
                unit_cost=revaluation.new_unit_cost,
                value=revaluation.delta,
                reference=adjustment.number,
                actor_id=actor_id,
            )

        adjustment.status = AdjustmentStatus.POSTED
        adjustment.journal_entry_id = entry_id
        adjustment.posted_at = self._clock.now()
        adjustment.posted_by_id = actor_id
        self._stamp_changed(adjustment, actor_id)
        self._session.flush()

        logger.info(
            "cost_adjustment_posted",
            extra={
                "adjustment_id": str(adjustment.id),
                "number": adjustment.number,
                "entry_id": str(entry_id) if entry_id else None,
                "net_delta": net,
            },
        )
        return adjustment.to_dto()

    def cancel_adjustment(self, adjustment_id: UUID, actor_id: UUID | None = None) -> CostAdjustmentInfo:
        adjustment = self._require_adjustment(adjustment_id, lock=True)
        if adjustment.status != AdjustmentStatus.DRAFT:
            raise AdjustmentNotDraftError(adjustment.id, adjustment.status.value)
        adjustment.status = AdjustmentStatus.CANCELLED
        self._stamp_changed(adjustment, actor_id)
        self._session.flush()
        logger.info("cost_adjustment_cancelled", extra={"adjustment_id": str(adjustment.id)})
        return adjustment.to_dto()

    def get_adjustment(self, adjustment_id: UUID) -> CostAdjustmentInfo:
        return self._require_adjustment(adjustment_id).to_dto()

    # =========================================================================
    # Internal
    # =========================================================================

    def _find_valuation(
        self,
        product_id: UUID,
        warehouse_id: UUID,
        lock: bool = False,
    ) -> ProductValuation | None:
        stmt = select(ProductValuation).where(
            ProductValuation.product_id == product_id,
            ProductValuation.warehouse_id == warehouse_id,
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self._session.execute(stmt).scalar_one_or_none()

    def _require_valuation(
        self,
        product_id: UUID,
        warehouse_id: UUID,
        lock: bool = False,
    ) -> ProductValuation:
        valuation = self._find_valuation(product_id, warehouse_id, lock)
        if valuation is None:
            raise ValuationNotFoundError(product_id, warehouse_id)
        return valuation

    def _require_adjustment(self, adjustment_id: UUID, lock: bool = False) -> CostAdjustment:
        stmt = select(CostAdjustment).where(CostAdjustment.id == adjustment_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        adjustment = self._session.execute(stmt).scalar_one_or_none()
        if adjustment is None:
            raise CostAdjustmentNotFoundError(adjustment_id)
        return adjustment

    def _open_layers(self, valuation: ProductValuation) -> list[InventoryCostLayer]:
        stmt = (
            select(InventoryCostLayer)
            .where(
                InventoryCostLayer.valuation_id == valuation.id,
                InventoryCostLayer.remaining_quantity > 0,
            )
            .order_by(InventoryCostLayer.layer_date, InventoryCostLayer.sequence)
        )
        return list(self._session.execute(stmt).scalars())

    def _apply_draw(self, layer: InventoryCostLayer, draw: LayerDraw, actor_id: UUID | None) -> None:
        layer.remaining_quantity = draw.remaining_quantity
        layer.remaining_value = draw.remaining_value
        self._stamp_changed(layer, actor_id)

    def _record_movement(
        self,
        valuation: ProductValuation,
        kind: CostMovementKind,
        movement_date: date,
        *,
        quantity: Decimal,
        unit_cost: Decimal,
        value: int,
        variance: int = 0,
        layers: list[dict] | None = None,
        reference: str | None = None,
        actor_id: UUID | None = None,
    ) -> None:
        movement = CostMovement(
            valuation_id=valuation.id,
            kind=kind,
            movement_date=movement_date,
            occurred_at=self._clock.now(),
            quantity=quantity,
            unit_cost=unit_cost,
            value=value,
            variance=variance,
            quantity_after=valuation.total_quantity,
            value_after=valuation.total_value,
            layers=layers or [],
            reference=reference,
        )
        self._stamp_new(movement, actor_id)
        self._session.add(movement)

    def _publish(
        self,
        topic: str,
        valuation: ProductValuation,
        *,
        quantity: Decimal,
        unit_cost: Decimal,
        value: int,
        reference: str | None,
    ) -> None:
        if self._event_bus is None:
            return
        self._event_bus.publish(
            topic,
            {
                "product_id": str(valuation.product_id),
                "warehouse_id": str(valuation.warehouse_id),
                "quantity": str(quantity),
                "unit_cost": str(unit_cost),
                "value": value,
                "currency": valuation.currency,
                "reference": reference,
            },
        )
