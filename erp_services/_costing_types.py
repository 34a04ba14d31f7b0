"""Frozen DTOs returned by CostingService."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from erp_engines.costing import CostMethod
from erp_kernel.domain.money import from_minor


class AdjustmentStatus(str, Enum):
    DRAFT = "Draft"
    POSTED = "Posted"
    CANCELLED = "Cancelled"


class CostMovementKind(str, Enum):
    RECEIPT = "Receipt"
    ISSUE = "Issue"
    ADJUSTMENT = "Adjustment"


@dataclass(frozen=True)
class ValuationInfo:
    id: UUID
    product_id: UUID
    warehouse_id: UUID
    method: CostMethod
    currency: str
    total_quantity: Decimal
    total_value: int
    current_unit_cost: Decimal
    standard_cost: Decimal | None = None
    last_receipt_cost: Decimal | None = None
    last_receipt_date: date | None = None
    last_issue_cost: Decimal | None = None
    last_issue_date: date | None = None

    @property
    def total_value_major(self) -> Decimal:
        return from_minor(self.total_value, self.currency)


@dataclass(frozen=True)
class CostLayerInfo:
    id: UUID
    product_id: UUID
    warehouse_id: UUID
    sequence: int
    layer_date: date
    quantity: Decimal
    unit_cost: Decimal
    total_value: int
    remaining_quantity: Decimal
    remaining_value: int
    reference: str | None = None

    @property
    def is_depleted(self) -> bool:
        return self.remaining_quantity <= 0


@dataclass(frozen=True)
class LayerConsumptionInfo:
    layer_id: UUID
    quantity: Decimal
    unit_cost: Decimal
    value: int


@dataclass(frozen=True)
class ReceiptResult:
    """A posted receipt: the layer it opened and the valuation after it."""

    layer: CostLayerInfo
    valuation: ValuationInfo
    purchase_unit_cost: Decimal
    variance: int = 0


@dataclass(frozen=True)
class IssueResult:
    quantity: Decimal
    cost: int
    unit_cost: Decimal
    consumed: tuple[LayerConsumptionInfo, ...]
    valuation: ValuationInfo

    @property
    def cost_major(self) -> Decimal:
        return from_minor(self.cost, self.valuation.currency)


@dataclass(frozen=True)
class AdjustmentLineSpec:
    """One (product, warehouse) to restate at ``new_unit_cost``."""

    product_id: UUID
    warehouse_id: UUID
    new_unit_cost: Decimal


@dataclass(frozen=True)
class AdjustmentLineInfo:
    line_number: int
    product_id: UUID
    warehouse_id: UUID
    new_unit_cost: Decimal
    old_unit_cost: Decimal | None = None
    quantity: Decimal | None = None
    value_delta: int | None = None


@dataclass(frozen=True)
class CostAdjustmentInfo:
    id: UUID
    number: str
    adjustment_date: date
    reason: str
    currency: str
    status: AdjustmentStatus
    inventory_account: str
    revaluation_account: str
    lines: tuple[AdjustmentLineInfo, ...]
    journal_entry_id: UUID | None = None
    posted_at: datetime | None = None

    @property
    def total_delta(self) -> int:
        return sum(line.value_delta or 0 for line in self.lines)
