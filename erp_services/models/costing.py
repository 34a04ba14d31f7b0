"""
SQLAlchemy ORM persistence for the costing engine.

Responsibility
--------------
Per-(product, warehouse) valuations, the cost layers opened by receipts,
the movement log of receipts, issues and revaluations, and cost
adjustments with their lines.

Architecture position
---------------------
**Services layer** -- ORM models consumed by ``CostingService``.  Product
and warehouse are referenced by UUID only; they belong to other modules.

Invariants enforced
-------------------
* One valuation per (product, warehouse).
* ``sum(layer.remaining_quantity) == valuation.total_quantity`` (maintained
  by CostingService under a row lock on the valuation).
* Cost movements are append-only.
* Posted and cancelled adjustments are final.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from erp_engines.costing import CostMethod, LayerBalance, ValuationBalance
from erp_kernel.db.base import TrackedBase, UUIDString
from erp_kernel.db.immutability import protect_append_only, protect_finalized
from erp_kernel.db.types import EnumText
from erp_services._costing_types import (
    AdjustmentLineInfo,
    AdjustmentStatus,
    CostAdjustmentInfo,
    CostLayerInfo,
    CostMovementKind,
    ValuationInfo,
)


class ProductValuation(TrackedBase):
    __tablename__ = "costing_product_valuations"

    __table_args__ = (
        UniqueConstraint("product_id", "warehouse_id", name="uq_costing_valuation_key"),
    )

    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    warehouse_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    method: Mapped[CostMethod] = mapped_column(EnumText(CostMethod), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    standard_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    current_unit_cost: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal(0))
    total_quantity: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal(0))
    total_value: Mapped[int] = mapped_column(nullable=False, default=0)
    last_receipt_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    last_receipt_date: Mapped[date | None] = mapped_column(nullable=True)
    last_issue_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    last_issue_date: Mapped[date | None] = mapped_column(nullable=True)
    # Receipt counter; orders layers received on the same date
    layer_sequence: Mapped[int] = mapped_column(nullable=False, default=0)

    def balance(self) -> ValuationBalance:
        return ValuationBalance(
            method=self.method,
            currency=self.currency,
            total_quantity=self.total_quantity,
            total_value=self.total_value,
            current_unit_cost=self.current_unit_cost,
            standard_cost=self.standard_cost,
        )

    def apply(self, balance: ValuationBalance) -> None:
        self.total_quantity = balance.total_quantity
        self.total_value = balance.total_value
        self.current_unit_cost = balance.current_unit_cost
        self.standard_cost = balance.standard_cost

    def to_dto(self) -> ValuationInfo:
        return ValuationInfo(
            id=self.id,
            product_id=self.product_id,
            warehouse_id=self.warehouse_id,
            method=self.method,
            currency=self.currency,
            total_quantity=self.total_quantity,
            total_value=self.total_value,
            current_unit_cost=self.current_unit_cost,
            standard_cost=self.standard_cost,
            last_receipt_cost=self.last_receipt_cost,
            last_receipt_date=self.last_receipt_date,
            last_issue_cost=self.last_issue_cost,
            last_issue_date=self.last_issue_date,
        )


class InventoryCostLayer(TrackedBase):
    __tablename__ = "costing_cost_layers"

    __table_args__ = (
        UniqueConstraint("valuation_id", "sequence", name="uq_costing_layer_sequence"),
        Index("idx_costing_layer_open", "valuation_id", "remaining_quantity"),
    )

    valuation_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("costing_product_valuations.id"), nullable=False
    )
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    warehouse_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    sequence: Mapped[int] = mapped_column(nullable=False)
    layer_date: Mapped[date] = mapped_column(nullable=False)
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(nullable=False)
    total_value: Mapped[int] = mapped_column(nullable=False)
    remaining_quantity: Mapped[Decimal] = mapped_column(nullable=False)
    remaining_value: Mapped[int] = mapped_column(nullable=False)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def balance(self) -> LayerBalance:
        return LayerBalance(
            layer_id=self.id,
            sequence=self.sequence,
            layer_date=self.layer_date,
            unit_cost=self.unit_cost,
            remaining_quantity=self.remaining_quantity,
            remaining_value=self.remaining_value,
        )

    def to_dto(self) -> CostLayerInfo:
        return CostLayerInfo(
            id=self.id,
            product_id=self.product_id,
            warehouse_id=self.warehouse_id,
            sequence=self.sequence,
            layer_date=self.layer_date,
            quantity=self.quantity,
            unit_cost=self.unit_cost,
            total_value=self.total_value,
            remaining_quantity=self.remaining_quantity,
            remaining_value=self.remaining_value,
            reference=self.reference,
        )


class CostMovement(TrackedBase):
    """Append-only log of every change to a valuation."""

    __tablename__ = "costing_movements"

    __table_args__ = (Index("idx_costing_movement_valuation", "valuation_id", "occurred_at"),)

    valuation_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("costing_product_valuations.id"), nullable=False
    )
    kind: Mapped[CostMovementKind] = mapped_column(EnumText(CostMovementKind), nullable=False)
    movement_date: Mapped[date] = mapped_column(nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(nullable=False)
    value: Mapped[int] = mapped_column(nullable=False)
    variance: Mapped[int] = mapped_column(nullable=False, default=0)
    quantity_after: Mapped[Decimal] = mapped_column(nullable=False)
    value_after: Mapped[int] = mapped_column(nullable=False)
    # [{"layer_id", "quantity", "unit_cost", "value"}] drawn by an issue
    layers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)


class CostAdjustment(TrackedBase):
    __tablename__ = "costing_adjustments"

    __table_args__ = (UniqueConstraint("number", name="uq_costing_adjustment_number"),)

    number: Mapped[str] = mapped_column(String(50), nullable=False)
    adjustment_date: Mapped[date] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(String(1000), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    inventory_account: Mapped[str] = mapped_column(String(50), nullable=False)
    revaluation_account: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[AdjustmentStatus] = mapped_column(
        EnumText(AdjustmentStatus), nullable=False, default=AdjustmentStatus.DRAFT
    )
    journal_entry_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    posted_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    lines: Mapped[list[CostAdjustmentLine]] = relationship(
        back_populates="adjustment",
        order_by="CostAdjustmentLine.line_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dto(self) -> CostAdjustmentInfo:
        return CostAdjustmentInfo(
            id=self.id,
            number=self.number,
            adjustment_date=self.adjustment_date,
            reason=self.reason,
            currency=self.currency,
            status=self.status,
            inventory_account=self.inventory_account,
            revaluation_account=self.revaluation_account,
            lines=tuple(line.to_dto() for line in self.lines),
            journal_entry_id=self.journal_entry_id,
            posted_at=self.posted_at,
        )


class CostAdjustmentLine(TrackedBase):
    __tablename__ = "costing_adjustment_lines"

    __table_args__ = (
        UniqueConstraint("adjustment_id", "line_number", name="uq_costing_adjustment_line"),
    )

    adjustment_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("costing_adjustments.id"), nullable=False
    )
    line_number: Mapped[int] = mapped_column(nullable=False)
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    warehouse_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    new_unit_cost: Mapped[Decimal] = mapped_column(nullable=False)
    # Filled in when the adjustment posts
    old_unit_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    quantity: Mapped[Decimal | None] = mapped_column(nullable=True)
    value_delta: Mapped[int | None] = mapped_column(nullable=True)

    adjustment: Mapped[CostAdjustment] = relationship(back_populates="lines")

    def to_dto(self) -> AdjustmentLineInfo:
        return AdjustmentLineInfo(
            line_number=self.line_number,
            product_id=self.product_id,
            warehouse_id=self.warehouse_id,
            new_unit_cost=self.new_unit_cost,
            old_unit_cost=self.old_unit_cost,
            quantity=self.quantity,
            value_delta=self.value_delta,
        )


protect_append_only(CostMovement, "CostMovement")
protect_finalized(
    CostAdjustment,
    "CostAdjustment",
    (AdjustmentStatus.POSTED, AdjustmentStatus.CANCELLED),
)
