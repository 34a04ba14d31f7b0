"""
Pure cost-layer arithmetic in erp_engines.costing.

No database: valuations and layers are plain value objects, so the
layer-conservation property can be checked over generated receipts.
"""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from erp_engines.costing import (
    CostMethod,
    LayerBalance,
    ValuationBalance,
    average_unit_cost,
    consumption_order,
    cost_issue,
    cost_receipt,
    revalue,
    value_of,
)
from erp_kernel.exceptions import InvalidQuantityError

START = date(2024, 1, 1)


def _empty(method, standard_cost=None):
    return ValuationBalance(
        method=method,
        currency="USD",
        total_quantity=Decimal(0),
        total_value=0,
        current_unit_cost=standard_cost or Decimal(0),
        standard_cost=standard_cost,
    )


def _receive_all(method, receipts, standard_cost=None):
    """Apply (quantity, unit_cost) receipts; returns the balance and its layers."""
    balance = _empty(method, standard_cost)
    layers = []
    for sequence, (quantity, unit_cost) in enumerate(receipts, start=1):
        costing = cost_receipt(balance, quantity=Decimal(quantity), unit_cost=Decimal(unit_cost))
        layers.append(
            LayerBalance(
                layer_id=uuid4(),
                sequence=sequence,
                layer_date=START + timedelta(days=sequence),
                unit_cost=costing.layer_unit_cost,
                remaining_quantity=costing.quantity,
                remaining_value=costing.layer_value,
            )
        )
        balance = costing.balance
    return balance, layers


class TestReceipts:
    def test_value_rounds_half_even_to_minor_units(self):
        assert value_of(Decimal("3"), Decimal("0.335"), "USD") == 100
        assert value_of(Decimal("1"), Decimal("0.125"), "USD") == 12

    def test_zero_decimal_currency(self):
        assert value_of(Decimal("2"), Decimal("150.4"), "JPY") == 301

    def test_non_positive_quantity_is_rejected(self):
        with pytest.raises(InvalidQuantityError):
            cost_receipt(_empty(CostMethod.FIFO), quantity=Decimal(0), unit_cost=Decimal(1))

    def test_negative_cost_is_rejected(self):
        with pytest.raises(InvalidQuantityError):
            cost_receipt(_empty(CostMethod.FIFO), quantity=Decimal(1), unit_cost=Decimal("-1"))

    def test_standard_receipt_splits_variance(self):
        costing = cost_receipt(
            _empty(CostMethod.STANDARD, Decimal("2.00")),
            quantity=Decimal(5),
            unit_cost=Decimal("1.80"),
        )

        assert costing.layer_value == 1000
        assert costing.variance == -100
        assert costing.balance.current_unit_cost == Decimal("2.00")


class TestIssues:
    def test_fifo_and_lifo_order(self):
        _, layers = _receive_all(CostMethod.FIFO, [(1, "1"), (1, "2"), (1, "3")])

        fifo = [layer.unit_cost for layer in consumption_order(layers, CostMethod.FIFO)]
        lifo = [layer.unit_cost for layer in consumption_order(layers, CostMethod.LIFO)]

        assert fifo == [Decimal(1), Decimal(2), Decimal(3)]
        assert lifo == [Decimal(3), Decimal(2), Decimal(1)]

    def test_over_issue_raises(self):
        balance, layers = _receive_all(CostMethod.FIFO, [(2, "1")])

        with pytest.raises(ValueError):
            cost_issue(balance, layers, quantity=Decimal(3))

    def test_moving_average_recomputes_after_issue(self):
        moving, moving_layers = _receive_all(CostMethod.MOVING_AVERAGE, [(3, "0.333333333")])
        weighted, weighted_layers = _receive_all(CostMethod.WAVG, [(3, "0.333333333")])

        moved = cost_issue(moving, moving_layers, quantity=Decimal(1))
        held = cost_issue(weighted, weighted_layers, quantity=Decimal(1))

        assert moved.cost == held.cost == 33
        assert moved.balance.current_unit_cost == Decimal("0.335")
        assert held.balance.current_unit_cost == Decimal("0.333333333")

    def test_average_unit_cost_of_empty_quantity_is_zero(self):
        assert average_unit_cost(500, Decimal(0), "USD") == 0


class TestRevaluation:
    def test_layers_absorb_rounding_in_the_last_layer(self):
        balance, layers = _receive_all(CostMethod.FIFO, [(1, "1"), (1, "1"), (1, "1")])

        result = revalue(balance, layers, new_unit_cost=Decimal("0.333333333"))

        assert result.new_value == 100
        assert [v for _, v in result.layer_values] == [33, 33, 34]
        assert result.delta == -200

    def test_standard_revaluation_moves_the_standard(self):
        balance, layers = _receive_all(CostMethod.STANDARD, [(4, "2")], Decimal("2"))

        result = revalue(balance, layers, new_unit_cost=Decimal("2.50"))

        assert result.balance.standard_cost == Decimal("2.50")
        assert result.delta == 200


receipts = st.lists(
    st.tuples(
        st.integers(min_value=1, max_value=50),
        st.decimals(min_value="0", max_value="99.99", places=2),
    ),
    min_size=1,
    max_size=8,
)


class TestLayerConservation:
    @given(
        method=st.sampled_from(list(CostMethod)),
        receipts=receipts,
        fraction=st.fractions(min_value=0, max_value=1),
    )
    @settings(max_examples=75, deadline=None)
    def test_issue_draws_exactly_the_quantity_issued(self, method, receipts, fraction):
        balance, layers = _receive_all(
            method, receipts, Decimal("5.00") if method == CostMethod.STANDARD else None
        )
        quantity = Decimal(int(balance.total_quantity * fraction.numerator / fraction.denominator))
        if quantity <= 0:
            quantity = Decimal(1)

        issued = cost_issue(balance, layers, quantity=quantity)

        assert sum(d.quantity for d in issued.draws) == quantity
        remaining = sum(d.remaining_quantity for d in issued.draws) + sum(
            layer.remaining_quantity
            for layer in layers
            if layer.layer_id not in {d.layer_id for d in issued.draws}
        )
        assert remaining == issued.balance.total_quantity
        if method.is_layered:
            assert issued.cost == sum(d.value for d in issued.draws)
        if quantity == balance.total_quantity:
            assert issued.balance.total_value == 0
        assert issued.balance.total_value >= 0
