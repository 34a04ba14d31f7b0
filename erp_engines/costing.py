"""
erp_engines.costing -- Pure inventory cost-layer arithmetic.

Responsibility:
    Given the current valuation of a (product, warehouse) and its open cost
    layers, compute what a receipt, an issue or a revaluation does: the new
    layer, which layers an issue draws from and at what cost, and the new
    valuation totals.  CostingService persists the results.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Quantities and unit costs
    are Decimal; values are integer minor units of the valuation currency.

Invariants enforced:
    - The quantity drawn from layers always equals the quantity issued, so
      ``sum(remaining_quantity) == total_quantity`` is preserved.
    - FIFO draws oldest-first, LIFO newest-first (layer date, then receipt
      sequence).  Averaged and Standard methods deplete layers FIFO for
      quantity tracking only.
    - Issuing the whole on-hand quantity releases the whole value, so
      rounding never strands a residue on an empty valuation.
    - Values are rounded half-even to the currency's minor unit once per
      computed amount.

Failure modes:
    - InvalidQuantityError for non-positive quantities or negative costs.
    - ValueError if an issue asks for more than the layers hold; the
      service checks availability first and raises InsufficientInventoryError.

Audit relevance:
    ``cost_receipt``, ``cost_issue`` and ``revalue`` are traced with an
    input fingerprint so that a posted cost can be replayed.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable, Sequence
from uuid import UUID

from erp_engines.tracer import traced_engine
from erp_kernel.domain.currency import currency_exponent
from erp_kernel.domain.money import from_minor, to_minor
from erp_kernel.exceptions import InvalidQuantityError

# Unit costs carry the same precision as the Numeric(38, 9) columns
UNIT_COST_PLACES = Decimal("0.000000001")


class CostMethod(str, Enum):
    """Inventory valuation methods."""

    FIFO = "FIFO"
    LIFO = "LIFO"
    WAVG = "WAvg"
    STANDARD = "Standard"
    MOVING_AVERAGE = "MovingAverage"

    @property
    def is_layered(self) -> bool:
        """True when issue cost comes from the layers drawn."""
        return self in (CostMethod.FIFO, CostMethod.LIFO)

    @property
    def is_averaged(self) -> bool:
        return self in (CostMethod.WAVG, CostMethod.MOVING_AVERAGE)


@dataclass(frozen=True)
class LayerBalance:
    """An open cost layer as the engine sees it."""

    layer_id: UUID
    sequence: int
    layer_date: date
    unit_cost: Decimal
    remaining_quantity: Decimal
    remaining_value: int


@dataclass(frozen=True)
class ValuationBalance:
    """Totals of one (product, warehouse) valuation."""

    method: CostMethod
    currency: str
    total_quantity: Decimal
    total_value: int
    current_unit_cost: Decimal
    standard_cost: Decimal | None = None


@dataclass(frozen=True)
class ReceiptCosting:
    """
    Outcome of a receipt.

    ``variance`` is the purchase price variance in minor units (purchase
    value minus value at standard); it is zero for every method but Standard.
    """

    quantity: Decimal
    purchase_unit_cost: Decimal
    layer_unit_cost: Decimal
    layer_value: int
    variance: int
    balance: ValuationBalance


@dataclass(frozen=True)
class LayerDraw:
    """Quantity and value taken from one layer by an issue."""

    layer_id: UUID
    quantity: Decimal
    unit_cost: Decimal
    value: int
    remaining_quantity: Decimal
    remaining_value: int


@dataclass(frozen=True)
class IssueCosting:
    quantity: Decimal
    cost: int
    draws: tuple[LayerDraw, ...]
    balance: ValuationBalance

    @property
    def unit_cost(self) -> Decimal:
        """Average cost per unit issued, in major units."""
        return average_unit_cost(self.cost, self.quantity, self.balance.currency)


@dataclass(frozen=True)
class Revaluation:
    """Outcome of restating a valuation at a new unit cost."""

    quantity: Decimal
    old_unit_cost: Decimal
    new_unit_cost: Decimal
    old_value: int
    new_value: int
    layer_values: tuple[tuple[UUID, int], ...]
    balance: ValuationBalance

    @property
    def delta(self) -> int:
        return self.new_value - self.old_value


# =============================================================================
# Helpers
# =============================================================================


def value_of(quantity: Decimal, unit_cost: Decimal, currency: str) -> int:
    """Minor-unit value of ``quantity`` at ``unit_cost``."""
    return to_minor(Decimal(quantity) * Decimal(unit_cost), currency)


def average_unit_cost(value: int, quantity: Decimal, currency: str) -> Decimal:
    if not quantity:
        return Decimal(0)
    exact = Decimal(value) / (Decimal(10) ** currency_exponent(currency)) / Decimal(quantity)
    return exact.quantize(UNIT_COST_PLACES)


def consumption_order(
    layers: Iterable[LayerBalance],
    method: CostMethod,
) -> list[LayerBalance]:
    """Open layers in the order an issue draws them."""
    open_layers = [layer for layer in layers if layer.remaining_quantity > 0]
    return sorted(
        open_layers,
        key=lambda layer: (layer.layer_date, layer.sequence),
        reverse=method == CostMethod.LIFO,
    )


def available_quantity(layers: Iterable[LayerBalance]) -> Decimal:
    return sum((layer.remaining_quantity for layer in layers), Decimal(0))


def _positive(quantity: Decimal, what: str = "quantity") -> Decimal:
    quantity = Decimal(quantity)
    if quantity <= 0:
        raise InvalidQuantityError(quantity, f"{what} must be positive")
    return quantity


def _non_negative_cost(unit_cost: Decimal) -> Decimal:
    unit_cost = Decimal(unit_cost)
    if unit_cost < 0:
        raise InvalidQuantityError(unit_cost, "unit cost must not be negative")
    return unit_cost


# =============================================================================
# Receipts, issues, revaluation
# =============================================================================


@traced_engine("costing_receipt", "1.0", fingerprint_fields=("quantity", "unit_cost"))
def cost_receipt(
    balance: ValuationBalance,
    *,
    quantity: Decimal,
    unit_cost: Decimal,
) -> ReceiptCosting:
    """Value a receipt and compute the valuation after it."""
    quantity = _positive(quantity)
    unit_cost = _non_negative_cost(unit_cost)
    currency = balance.currency

    purchase_value = value_of(quantity, unit_cost, currency)
    if balance.method == CostMethod.STANDARD:
        standard = balance.standard_cost if balance.standard_cost is not None else unit_cost
        layer_unit_cost = standard
        layer_value = value_of(quantity, standard, currency)
        variance = purchase_value - layer_value
    else:
        layer_unit_cost = unit_cost
        layer_value = purchase_value
        variance = 0

    total_quantity = balance.total_quantity + quantity
    total_value = balance.total_value + layer_value
    if balance.method.is_averaged:
        current = average_unit_cost(total_value, total_quantity, currency)
    else:
        current = layer_unit_cost

    return ReceiptCosting(
        quantity=quantity,
        purchase_unit_cost=unit_cost,
        layer_unit_cost=layer_unit_cost,
        layer_value=layer_value,
        variance=variance,
        balance=replace(
            balance,
            total_quantity=total_quantity,
            total_value=total_value,
            current_unit_cost=current,
        ),
    )


@traced_engine("costing_issue", "1.0", fingerprint_fields=("quantity",))
def cost_issue(
    balance: ValuationBalance,
    layers: Sequence[LayerBalance],
    *,
    quantity: Decimal,
) -> IssueCosting:
    """Draw ``quantity`` from the layers and cost the issue per the method."""
    quantity = _positive(quantity)
    currency = balance.currency
    ordered = consumption_order(layers, balance.method)
    if quantity > available_quantity(ordered):
        raise ValueError(
            f"Issue of {quantity} exceeds {available_quantity(ordered)} held in layers"
        )

    draws: list[LayerDraw] = []
    left = quantity
    for layer in ordered:
        if left <= 0:
            break
        take = min(layer.remaining_quantity, left)
        if take == layer.remaining_quantity:
            value = layer.remaining_value
        else:
            value = min(value_of(take, layer.unit_cost, currency), layer.remaining_value)
        draws.append(
            LayerDraw(
                layer_id=layer.layer_id,
                quantity=take,
                unit_cost=layer.unit_cost,
                value=value,
                remaining_quantity=layer.remaining_quantity - take,
                remaining_value=layer.remaining_value - value,
            )
        )
        left -= take

    empties = quantity == balance.total_quantity
    if balance.method.is_layered:
        cost = sum(d.value for d in draws)
    elif empties:
        cost = balance.total_value
    elif balance.method == CostMethod.STANDARD:
        standard = balance.standard_cost if balance.standard_cost is not None else balance.current_unit_cost
        cost = value_of(quantity, standard, currency)
    else:
        cost = min(value_of(quantity, balance.current_unit_cost, currency), balance.total_value)

    total_quantity = balance.total_quantity - quantity
    total_value = balance.total_value - cost
    current = balance.current_unit_cost
    if balance.method == CostMethod.MOVING_AVERAGE and total_quantity > 0:
        current = average_unit_cost(total_value, total_quantity, currency)

    return IssueCosting(
        quantity=quantity,
        cost=cost,
        draws=tuple(draws),
        balance=replace(
            balance,
            total_quantity=total_quantity,
            total_value=total_value,
            current_unit_cost=current,
        ),
    )


@traced_engine("costing_revaluation", "1.0", fingerprint_fields=("new_unit_cost",))
def revalue(
    balance: ValuationBalance,
    layers: Sequence[LayerBalance],
    *,
    new_unit_cost: Decimal,
) -> Revaluation:
    """
    Restate the on-hand quantity at ``new_unit_cost``.

    Open layers are re-valued at the new cost; the last layer absorbs the
    rounding so that layer values sum to the new total value.
    """
    new_unit_cost = _non_negative_cost(new_unit_cost)
    currency = balance.currency
    new_value = value_of(balance.total_quantity, new_unit_cost, currency)

    ordered = consumption_order(layers, CostMethod.FIFO)
    layer_values = [
        (layer.layer_id, value_of(layer.remaining_quantity, new_unit_cost, currency))
        for layer in ordered
    ]
    if layer_values:
        drift = new_value - sum(v for _, v in layer_values)
        last_id, last_value = layer_values[-1]
        layer_values[-1] = (last_id, last_value + drift)

    standard = new_unit_cost if balance.method == CostMethod.STANDARD else balance.standard_cost
    return Revaluation(
        quantity=balance.total_quantity,
        old_unit_cost=balance.current_unit_cost,
        new_unit_cost=new_unit_cost,
        old_value=balance.total_value,
        new_value=new_value,
        layer_values=tuple(layer_values),
        balance=replace(
            balance,
            total_value=new_value,
            current_unit_cost=new_unit_cost,
            standard_cost=standard,
        ),
    )


def major_units(value: int, currency: str) -> Decimal:
    """Minor-unit value as a major-unit Decimal (for reports and events)."""
    return from_minor(value, currency)
