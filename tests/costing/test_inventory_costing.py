"""
Tests for inventory costing through CostingService.

Covers:
- FIFO and LIFO draw order and issue cost
- Weighted average and Standard (purchase price variance) receipts
- Remaining layer quantities always sum to the valuation's on-hand quantity
- Issues above the on-hand quantity are refused
- Cost adjustments post a balanced revaluation journal through the ledger
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from erp_engines.costing import CostMethod
from erp_kernel.domain.events import Topics
from erp_kernel.domain.ledger import EntrySource, JournalStatus
from erp_kernel.exceptions import (
    AdjustmentNotDraftError,
    InsufficientInventoryError,
    InvalidEnumValueError,
    PeriodLockedError,
    ValidationError,
    ValuationInUseError,
    ValuationNotFoundError,
)
from erp_services._costing_types import AdjustmentLineSpec, AdjustmentStatus

from conftest import TEST_ACTOR_ID


@pytest.fixture
def product():
    return uuid4()


@pytest.fixture
def warehouse():
    return uuid4()


@pytest.fixture
def stocked(costing, product, warehouse):
    """Factory: configure a valuation and receive 10 @ 1.00 then 10 @ 1.50."""

    def _stock(method, **kwargs):
        costing.configure_valuation(product, warehouse, method, actor_id=TEST_ACTOR_ID, **kwargs)
        costing.receive(product, warehouse, 10, "1.00", receipt_date=date(2024, 1, 2))
        costing.receive(product, warehouse, 10, "1.50", receipt_date=date(2024, 1, 3))

    return _stock


def _layers_match_valuation(costing, product, warehouse):
    layers = costing.list_layers(product, warehouse)
    valuation = costing.valuation_snapshot(product, warehouse)
    return sum((layer.remaining_quantity for layer in layers), Decimal(0)) == valuation.total_quantity


class TestLayeredMethods:
    def test_fifo_issue_draws_oldest_layers_first(self, costing, stocked, product, warehouse):
        stocked(CostMethod.FIFO)

        result = costing.issue(product, warehouse, 15)

        assert result.cost == 1750
        assert [(c.quantity, c.value) for c in result.consumed] == [
            (Decimal(10), 1000),
            (Decimal(5), 750),
        ]
        assert result.valuation.total_quantity == 5
        assert result.valuation.total_value == 750
        assert _layers_match_valuation(costing, product, warehouse)

    def test_lifo_issue_draws_newest_layers_first(self, costing, stocked, product, warehouse):
        stocked(CostMethod.LIFO)

        result = costing.issue(product, warehouse, 15)

        assert result.cost == 2000
        assert result.valuation.total_value == 500
        open_layers = costing.list_layers(product, warehouse, include_depleted=False)
        assert [(layer.unit_cost, layer.remaining_quantity) for layer in open_layers] == [
            (Decimal("1.00"), Decimal(5))
        ]

    def test_issuing_everything_releases_the_whole_value(
        self, costing, product, warehouse
    ):
        costing.configure_valuation(product, warehouse, CostMethod.FIFO)
        costing.receive(product, warehouse, 3, "0.333333333")

        result = costing.issue(product, warehouse, 3)

        assert result.valuation.total_quantity == 0
        assert result.valuation.total_value == 0
        assert result.cost == 100

    def test_issue_above_on_hand_is_refused(self, costing, stocked, product, warehouse):
        stocked(CostMethod.FIFO)

        with pytest.raises(InsufficientInventoryError):
            costing.issue(product, warehouse, 21)

        assert costing.valuation_snapshot(product, warehouse).total_quantity == 20

    def test_receipts_and_issues_publish_events(
        self, costing, stocked, product, warehouse, event_bus
    ):
        stocked(CostMethod.FIFO)
        costing.issue(product, warehouse, 1, reference="SO-1")

        assert len(event_bus.of_topic(Topics.INVENTORY_RECEIPT)) == 2
        issued = event_bus.of_topic(Topics.INVENTORY_ISSUE)
        assert len(issued) == 1
        assert issued[0].payload["reference"] == "SO-1"


class TestAveragedAndStandard:
    def test_weighted_average_cost(self, costing, stocked, product, warehouse):
        stocked(CostMethod.WAVG)
        assert costing.valuation_snapshot(product, warehouse).current_unit_cost == Decimal("1.25")

        result = costing.issue(product, warehouse, 4)

        assert result.cost == 500
        assert result.valuation.total_value == 2000
        assert result.valuation.current_unit_cost == Decimal("1.25")
        assert _layers_match_valuation(costing, product, warehouse)

    def test_standard_cost_books_purchase_price_variance(self, costing, product, warehouse):
        costing.configure_valuation(product, warehouse, CostMethod.STANDARD, standard_cost="2.00")

        receipt = costing.receive(product, warehouse, 10, "2.30")
        assert receipt.layer.unit_cost == Decimal("2.00")
        assert receipt.layer.total_value == 2000
        assert receipt.variance == 300
        assert receipt.purchase_unit_cost == Decimal("2.30")

        issue = costing.issue(product, warehouse, 4)
        assert issue.cost == 800
        assert issue.valuation.total_value == 1200

    def test_standard_requires_standard_cost(self, costing, product, warehouse):
        with pytest.raises(ValidationError):
            costing.configure_valuation(product, warehouse, CostMethod.STANDARD)

    def test_method_change_refused_while_stock_on_hand(
        self, costing, stocked, product, warehouse
    ):
        stocked(CostMethod.FIFO)

        with pytest.raises(ValuationInUseError):
            costing.configure_valuation(product, warehouse, CostMethod.LIFO)

        costing.issue(product, warehouse, 20)
        changed = costing.configure_valuation(product, warehouse, CostMethod.LIFO)
        assert changed.method == CostMethod.LIFO

    def test_method_names_are_decoded_exactly(self, costing, product, warehouse):
        assert costing.configure_valuation(product, warehouse, "FIFO").method == CostMethod.FIFO

        with pytest.raises(InvalidEnumValueError) as exc_info:
            costing.configure_valuation(product, warehouse, "fifo")
        assert exc_info.value.code == "INVALID_ENUM_VALUE"

    def test_unconfigured_valuation(self, costing):
        with pytest.raises(ValuationNotFoundError):
            costing.receive(uuid4(), uuid4(), 1, "1.00")


class TestCostAdjustments:
    def _adjust(self, costing, product, warehouse, new_cost):
        return costing.create_adjustment(
            [AdjustmentLineSpec(product, warehouse, Decimal(new_cost))],
            reason="Supplier price update",
            inventory_account="1300",
            revaluation_account="5900",
            actor_id=TEST_ACTOR_ID,
        )

    def test_post_adjustment_revalues_layers_and_posts_journal(
        self, costing, stocked, ledger, standard_accounts, product, warehouse
    ):
        stocked(CostMethod.FIFO)
        draft = self._adjust(costing, product, warehouse, "2.00")
        assert draft.status == AdjustmentStatus.DRAFT
        assert draft.number == "CA-000001"

        posted = costing.post_adjustment(draft.id, actor_id=TEST_ACTOR_ID)

        assert posted.status == AdjustmentStatus.POSTED
        assert posted.total_delta == 1500
        entry = ledger.journals.get_entry(posted.journal_entry_id)
        assert entry.status == JournalStatus.POSTED
        assert entry.source == EntrySource.COSTING
        assert entry.total_debits == entry.total_credits == 1500

        valuation = costing.valuation_snapshot(product, warehouse)
        assert valuation.total_value == 4000
        assert valuation.current_unit_cost == Decimal("2.00")
        layers = costing.list_layers(product, warehouse)
        assert sum(layer.remaining_value for layer in layers) == valuation.total_value

    def test_adjustment_posts_once(
        self, costing, stocked, standard_accounts, product, warehouse
    ):
        stocked(CostMethod.FIFO)
        draft = self._adjust(costing, product, warehouse, "1.10")
        costing.post_adjustment(draft.id)

        with pytest.raises(AdjustmentNotDraftError):
            costing.post_adjustment(draft.id)
        with pytest.raises(AdjustmentNotDraftError):
            costing.cancel_adjustment(draft.id)

    def test_locked_period_leaves_valuation_untouched(
        self, costing, stocked, ledger, standard_accounts, product, warehouse
    ):
        stocked(CostMethod.FIFO)
        draft = self._adjust(costing, product, warehouse, "2.00")
        january = ledger.periods.get_period_for_date(date(2024, 1, 15))
        ledger.periods.hard_close_period(january.id)

        with pytest.raises(PeriodLockedError):
            costing.post_adjustment(draft.id)

        assert costing.valuation_snapshot(product, warehouse).total_value == 2500
        assert costing.get_adjustment(draft.id).status == AdjustmentStatus.DRAFT

    def test_duplicate_adjustment_lines_are_rejected(self, costing, stocked, product, warehouse):
        stocked(CostMethod.FIFO)

        with pytest.raises(ValidationError):
            costing.create_adjustment(
                [
                    AdjustmentLineSpec(product, warehouse, Decimal("2")),
                    AdjustmentLineSpec(product, warehouse, Decimal("3")),
                ],
                reason="Twice",
                inventory_account="1300",
                revaluation_account="5900",
            )
