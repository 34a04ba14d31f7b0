"""
Tests for the kernel substrate: money, enum codec, pagination, retry,
event bus and structured logging.
"""

from decimal import Decimal
from fractions import Fraction

import pytest
from sqlalchemy.exc import OperationalError

from erp_kernel.domain.codec import EnumCodec
from erp_kernel.domain.events import topic_matches
from erp_kernel.domain.ledger import JournalStatus
from erp_kernel.domain.money import allocate, convert, from_minor, round_half_even, to_minor
from erp_kernel.domain.pagination import Page, PageRequest
from erp_kernel.exceptions import (
    ErrorKind,
    EventDeliveryError,
    InvalidEnumValueError,
    InvalidPaginationError,
    PeriodLockedError,
    StoreUnavailableError,
    UnbalancedEntryError,
    error_payload,
)
from erp_kernel.logging_config import LogContext, get_logger
from erp_kernel.services.event_bus import EventBus, RecordingEventBus
from erp_kernel.services.retry import RetryPolicy, run_with_retry


class TestMoney:
    def test_round_half_even(self):
        assert round_half_even(Decimal("2.5")) == 2
        assert round_half_even(Decimal("3.5")) == 4
        assert round_half_even(Fraction(-5, 2)) == -2

    def test_minor_units_follow_currency_exponent(self):
        assert to_minor("1.50", "USD") == 150
        assert to_minor("1500", "JPY") == 1500
        assert to_minor("1.2345", "KWD") == 1234
        assert from_minor(150, "USD") == Decimal("1.50")

    def test_convert_rounds_once_at_the_target_minor_unit(self):
        # 10.00 USD at 149.555 JPY/USD = 1495.55 JPY
        assert convert(1_000, "149.555", "USD", "JPY") == 1496
        assert convert(100, Fraction(1, 3), "USD", "EUR") == 33

    def test_allocate_keeps_the_total(self):
        shares = allocate(100, [1, 1, 1])
        assert sum(shares) == 100
        assert shares == [34, 33, 33]


class TestEnumCodec:
    def test_exact_names_round_trip(self):
        codec = EnumCodec(JournalStatus)
        assert codec.encode(JournalStatus.POSTED) == "Posted"
        assert codec.decode("Posted") is JournalStatus.POSTED

    def test_names_are_case_sensitive(self):
        with pytest.raises(InvalidEnumValueError) as exc_info:
            EnumCodec(JournalStatus).decode("posted")
        assert exc_info.value.code == "INVALID_ENUM_VALUE"


class TestPagination:
    def test_total_pages_rounds_up(self):
        page = Page(items=(1, 2), total=101, page=3, per_page=50)
        assert page.total_pages == 3
        assert page.to_dict()["total_pages"] == 3

    @pytest.mark.parametrize("page, per_page", [(0, 10), (1, 0), (1, 501)])
    def test_invalid_requests(self, page, per_page):
        with pytest.raises(InvalidPaginationError):
            PageRequest(page=page, per_page=per_page)

    def test_offset(self):
        assert PageRequest(page=3, per_page=20).offset == 40


class TestErrors:
    def test_payload_carries_code_kind_and_message(self):
        payload = error_payload(UnbalancedEntryError(100, 90))

        assert payload["code"] == "UNBALANCED_ENTRY"
        assert payload["kind"] == "BusinessRule"
        assert "debits=100" in payload["message"]

    def test_kind_maps_to_http_status(self):
        assert ErrorKind.NOT_FOUND.http_status == 404
        assert ErrorKind.BUSINESS_RULE.http_status == 422
        assert StoreUnavailableError("post", "down").kind.http_status == 503


class TestRetry:
    def test_backoff_is_capped(self):
        policy = RetryPolicy(base_delay_ms=100, multiplier=2, max_delay_ms=500)
        assert [policy.compute_backoff_ms(n) for n in range(1, 6)] == [100, 200, 400, 500, 500]

    def test_transient_errors_are_retried(self):
        calls, sleeps = [], []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("SELECT 1", {}, Exception("locked"))
            return "ok"

        assert run_with_retry(flaky, RetryPolicy(), sleep=sleeps.append) == "ok"
        assert sleeps == [0.1, 0.2]

    def test_exhausted_store_errors_become_dependency_errors(self):
        def down():
            raise OperationalError("SELECT 1", {}, Exception("gone"))

        with pytest.raises(StoreUnavailableError):
            run_with_retry(down, RetryPolicy(max_attempts=2), sleep=lambda _: None)

    def test_business_rule_errors_are_not_retried(self):
        calls = []

        def locked():
            calls.append(1)
            raise PeriodLockedError("2024-01", "HardClose")

        with pytest.raises(PeriodLockedError):
            run_with_retry(locked, sleep=lambda _: None)
        assert len(calls) == 1


class TestEventBus:
    def test_prefix_and_wildcard_subscriptions(self, deterministic_clock):
        bus = RecordingEventBus(clock=deterministic_clock)
        seen = []
        bus.subscribe("credit.*", lambda e: seen.append(("credit", e.topic)))
        bus.subscribe("*", lambda e: seen.append(("all", e.topic)))

        event = bus.publish("credit.hold.placed", {"hold_id": "h1"})

        assert seen == [("credit", "credit.hold.placed"), ("all", "credit.hold.placed")]
        assert event.occurred_at == deterministic_clock.now()
        assert bus.topics() == ["credit.hold.placed"]

    def test_topic_matching(self):
        assert topic_matches("ledger.*", "ledger.entry.posted")
        assert not topic_matches("ledger.*", "ledgers.entry")
        assert not topic_matches("ledger.entry", "ledger.entry.posted")

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe("a", seen.append)
        unsubscribe()

        bus.publish("a")

        assert seen == []

    def test_failing_handler_raises_dependency_error(self):
        bus = EventBus()

        def boom(event):
            raise RuntimeError("handler down")

        bus.subscribe("a", boom)
        with pytest.raises(EventDeliveryError):
            bus.publish("a")

    def test_failing_handler_tolerated_when_configured(self):
        bus = EventBus(raise_errors=False)
        seen = []
        bus.subscribe("a", lambda e: 1 / 0)
        bus.subscribe("a", seen.append)

        bus.publish("a")

        assert len(seen) == 1


class TestStructuredLogging:
    def test_records_carry_bound_context_and_extra(self, captured_logs):
        logger = get_logger("tests.substrate")

        with LogContext.bind(correlation_id="corr-1", actor_id="actor-9"):
            logger.info("something_happened", extra={"amount": Decimal("1.50")})
        logger.info("after_context")

        records = [r for r in captured_logs() if r["logger"] == "erp.tests.substrate"]
        assert records[0]["message"] == "something_happened"
        assert records[0]["correlation_id"] == "corr-1"
        assert records[0]["actor_id"] == "actor-9"
        assert records[0]["amount"] == "1.50"
        assert "correlation_id" not in records[1]

    def test_exception_fields_are_logged(self, captured_logs):
        logger = get_logger("tests.substrate")

        try:
            raise UnbalancedEntryError(5, 4)
        except UnbalancedEntryError:
            logger.exception("posting_failed")

        record = [r for r in captured_logs() if r["message"] == "posting_failed"][0]
        assert record["exc_code"] == "UNBALANCED_ENTRY"
        assert record["exc_debits"] == 5
        assert "traceback" in record
