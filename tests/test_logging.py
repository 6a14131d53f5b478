"""Tests for ledger_kernel/logging_config.py: JSON lines and the posting log context."""

import json
import logging
from datetime import date
from decimal import Decimal
from io import StringIO

import pytest

from ledger_kernel.exceptions import CeilingExceededError, CeilingNotFoundError
from ledger_kernel.logging_config import (
    LOG_CONTEXT_FIELDS,
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)
from ledger_kernel.models.ceiling import ExceedAction


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests, then restore the suite's DEBUG setup."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


@pytest.fixture
def log_lines():
    """Configure the kernel logger into a buffer; call the result to read parsed lines."""

    def _configure(level=logging.INFO):
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=level)
        return lambda: [json.loads(line) for line in stream.getvalue().splitlines() if line]

    return _configure


class TestStructuredFormatter:

    def test_base_fields(self, log_lines):
        read = log_lines()
        get_logger("test").info("hello")

        [record] = read()
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "ledger_kernel.test"
        assert record["ts"].endswith("+00:00")

    def test_extras_and_context(self, log_lines):
        read = log_lines()
        LogContext.set(correlation_id="abc-123", reference_id="ORD-7")
        get_logger("test").info("posted", extra={"seq": 42, "reference_type": "order"})

        [record] = read()
        assert record["seq"] == 42
        assert record["reference_type"] == "order"
        assert record["correlation_id"] == "abc-123"
        assert record["reference_id"] == "ORD-7"
        assert "actor_id" not in record

    def test_money_dates_and_enums(self, log_lines):
        read = log_lines()
        get_logger("test").info(
            "ceiling_checked",
            extra={
                "amount": Decimal("1100.50"),
                "journal_date": date(2024, 1, 15),
                "exceed_action": ExceedAction.BLOCK,
            },
        )

        [record] = read()
        assert record["amount"] == "1100.50"
        assert record["journal_date"] == "2024-01-15"
        assert record["exceed_action"] == "block"

    def test_plain_exception(self, log_lines):
        read = log_lines()
        try:
            raise ValueError("boom")
        except ValueError:
            get_logger("test").error("failed", exc_info=True)

        [record] = read()
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "exc_code" not in record
        assert "Traceback" in record["traceback"]

    def test_kernel_exception_code_and_attributes(self, log_lines):
        read = log_lines()
        try:
            raise CeilingNotFoundError(5)
        except CeilingNotFoundError:
            get_logger("test").error("ceiling_error", exc_info=True)

        [record] = read()
        assert record["exc_code"] == "CEILING_NOT_FOUND"
        assert record["exc_type"] == "CeilingNotFoundError"
        assert record["exc_ceiling_id"] == 5

    def test_exception_amounts_are_strings(self, log_lines):
        read = log_lines()
        try:
            raise CeilingExceededError(
                account_id=3,
                currency_id=1,
                ceiling_id=9,
                ceiling_amount=Decimal("1000.00"),
                prospective_balance=Decimal("1100.00"),
                account_nature="debit",
            )
        except CeilingExceededError:
            get_logger("test").warning("blocked", exc_info=True)

        [record] = read()
        assert record["exc_ceiling_amount"] == "1000.00"
        assert record["exc_prospective_balance"] == "1100.00"
        assert record["exc_account_nature"] == "debit"

    def test_level_filters_lines(self, log_lines):
        read = log_lines()
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        assert [r["message"] for r in read()] == ["first", "second"]


class TestLogContext:

    def test_set_get_clear(self):
        LogContext.set(correlation_id="x", reference_id="y")
        assert LogContext.get_all() == {"correlation_id": "x", "reference_id": "y"}
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_set_is_additive_and_skips_none(self):
        LogContext.set(correlation_id="a")
        LogContext.set(actor_id="b", correlation_id=None)
        assert LogContext.get_all() == {"correlation_id": "a", "actor_id": "b"}

    def test_values_stored_as_strings(self):
        LogContext.set(branch_id=4)
        assert LogContext.get_all() == {"branch_id": "4"}

    def test_bind_restores_previous_values(self):
        LogContext.set(correlation_id="outer")
        with LogContext.bind(correlation_id="inner", reference_id="J-1"):
            assert LogContext.get_all() == {"correlation_id": "inner", "reference_id": "J-1"}
        assert LogContext.get_all() == {"correlation_id": "outer"}

    def test_bind_restores_on_error(self):
        with pytest.raises(RuntimeError):
            with LogContext.bind(reference_id="J-1"):
                raise RuntimeError("posting failed")
        assert LogContext.get_all() == {}

    def test_bind_skips_none(self):
        LogContext.set(actor_id="clerk")
        with LogContext.bind(actor_id=None, branch_id=4):
            assert LogContext.get_all() == {"actor_id": "clerk", "branch_id": "4"}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError, match="referense_id"):
            LogContext.set(referense_id="J-1")
        with pytest.raises(TypeError):
            with LogContext.bind(voucher="RC-1"):
                pass
        assert LogContext.get_all() == {}

    def test_every_field_reaches_the_line(self, log_lines):
        read = log_lines()
        LogContext.set(**{name: f"v-{name}" for name in LOG_CONTEXT_FIELDS})
        get_logger("test").info("all_fields")

        [record] = read()
        assert {name: record[name] for name in LOG_CONTEXT_FIELDS} == {
            name: f"v-{name}" for name in LOG_CONTEXT_FIELDS
        }


class TestConfigureLogging:

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)
        kernel_logger = logging.getLogger("ledger_kernel")
        # pytest may attach its own capture handlers; only ours are counted
        ours = [h for h in kernel_logger.handlers if isinstance(h.formatter, StructuredFormatter)]
        assert ours == [h1]
        assert kernel_logger.propagate is False

    def test_level_by_name(self):
        configure_logging(handler=_make_handler()[0], level="warning")
        assert logging.getLogger("ledger_kernel").level == logging.WARNING

    def test_child_loggers_share_the_handler(self, log_lines):
        read = log_lines(level=logging.DEBUG)
        child = get_logger("services.posting")
        assert child.name == "ledger_kernel.services.posting"
        child.debug("hierarchy_test")

        [record] = read()
        assert record["logger"] == "ledger_kernel.services.posting"
