"""
PostingService tests.

Tests cover:
- Ceiling enforcement inside the posting transaction
- Rollback of rejected postings (nothing is written)
- Manual exchange-rate bounds
- Structured logging of the posting lifecycle
- Concurrency error mapping and retry
"""

import sqlite3
from decimal import Decimal

import pytest
from sqlalchemy.exc import DBAPIError, OperationalError

from ledger_kernel.domain.dtos import LegSpec
from ledger_kernel.exceptions import (
    CeilingExceededError,
    ConcurrentModificationError,
    DuplicateReferenceError,
    RateOutOfRangeError,
    UnbalancedTransactionError,
)
from ledger_kernel.services import posting_service as posting_module
from ledger_kernel.services.posting_service import PostingService, is_concurrency_failure


@pytest.fixture
def booked(session, standard_accounts, standard_currencies):
    """Reference data committed, so a rolled-back posting cannot take it along."""
    session.commit()
    return standard_accounts, standard_currencies


@pytest.fixture
def accounts(booked):
    return booked[0]


@pytest.fixture
def lcl(booked):
    return booked[1]["LCL"]


class _PgError(Exception):
    def __init__(self, message, pgcode):
        super().__init__(message)
        self.pgcode = pgcode


class TestCeilingEnforcement:

    def test_block_ceiling_rejects_and_keeps_ledger(self, session, posting_service, ceilings, post, accounts, lcl):
        ceilings.set_ceiling("account", accounts["customer"], lcl, "1000", exceed_action="block")
        post("S-1", accounts["customer"], accounts["sales"], lcl, "900")

        with pytest.raises(CeilingExceededError) as exc_info:
            post("S-2", accounts["customer"], accounts["sales"], lcl, "200")
        assert exc_info.value.prospective_balance == Decimal("1100")
        assert posting_service.selector.balance(accounts["customer"], lcl) == Decimal("900")
        assert posting_service.selector.leg_count() == 2

        post("S-3", accounts["customer"], accounts["sales"], lcl, "50")
        assert posting_service.selector.balance(accounts["customer"], lcl) == Decimal("950")

    def test_warn_ceiling_accepts_with_warning(self, posting_service, ceilings, post, accounts, lcl):
        ceilings.set_ceiling("account", accounts["customer"], lcl, "100", exceed_action="warn")
        posting_service.session.commit()

        result = post("S-1", accounts["customer"], accounts["sales"], lcl, "150")

        assert result.has_warnings
        [warning] = result.warnings
        assert warning.account_id == accounts["customer"]
        assert warning.prospective_balance == Decimal("150")
        assert posting_service.selector.leg_count() == 2

    def test_allow_ceiling_accepts_silently(self, posting_service, ceilings, post, accounts, lcl):
        ceilings.set_ceiling("account", accounts["customer"], lcl, "100", exceed_action="allow")
        posting_service.session.commit()
        result = post("S-1", accounts["customer"], accounts["sales"], lcl, "150")
        assert not result.has_warnings

    def test_credit_side_ceiling(self, posting_service, ceilings, post, accounts, lcl):
        ceilings.set_ceiling("account", accounts["supplier"], lcl, "500")
        posting_service.session.commit()
        post("P-1", accounts["cash"], accounts["supplier"], lcl, "500")
        with pytest.raises(CeilingExceededError):
            post("P-2", accounts["cash"], accounts["supplier"], lcl, "0.01")
        # Paying the supplier down is always allowed
        post("P-3", accounts["supplier"], accounts["cash"], lcl, "200")
        assert posting_service.selector.balance(accounts["supplier"], lcl) == Decimal("-300")

    def test_reversal_blocked_when_it_would_breach(self, posting_service, ceilings, post, accounts, lcl):
        ceilings.set_ceiling("account", accounts["customer"], lcl, "1000", exceed_action="block")
        post("S-1", accounts["customer"], accounts["sales"], lcl, "900")
        post("R-1", accounts["cash"], accounts["customer"], lcl, "400")
        post("S-2", accounts["customer"], accounts["sales"], lcl, "500")
        assert posting_service.selector.balance(accounts["customer"], lcl) == Decimal("1000")

        with pytest.raises(CeilingExceededError) as exc_info:
            posting_service.reverse("R-1")

        assert exc_info.value.prospective_balance == Decimal("1400")
        assert posting_service.selector.balance(accounts["customer"], lcl) == Decimal("1000")
        assert posting_service.selector.posting_count() == 3

    def test_reversal_toward_zero_passes_over_ceiling(self, posting_service, ceilings, post, accounts, lcl):
        post("S-1", accounts["customer"], accounts["sales"], lcl, "900")
        ceilings.set_ceiling("account", accounts["customer"], lcl, "500")
        posting_service.session.commit()

        result = posting_service.reverse("S-1")

        assert result.reference_id == "REV-1"
        assert posting_service.selector.balance(accounts["customer"], lcl) == Decimal("0")

    def test_reversal_reports_warn_ceiling(self, posting_service, ceilings, post, accounts, lcl):
        post("S-1", accounts["customer"], accounts["sales"], lcl, "300")
        post("R-1", accounts["cash"], accounts["customer"], lcl, "300")
        ceilings.set_ceiling("account", accounts["customer"], lcl, "100", exceed_action="warn")
        posting_service.session.commit()

        result = posting_service.reverse("R-1")

        [warning] = result.warnings
        assert warning.account_id == accounts["customer"]
        assert warning.prospective_balance == Decimal("300")


class TestRollback:

    def test_unbalanced_writes_nothing(self, posting_service, make_posting, accounts, lcl):
        request = make_posting("J-1", [
            (accounts["cash"], lcl, "10", 0),
            (accounts["sales"], lcl, 0, "9"),
        ])
        with pytest.raises(UnbalancedTransactionError):
            posting_service.post(request)
        assert posting_service.selector.posting_count() == 0

    def test_duplicate_keeps_first(self, posting_service, post, accounts, lcl):
        post("J-1", accounts["cash"], accounts["sales"], lcl, "10")
        with pytest.raises(DuplicateReferenceError):
            post("J-1", accounts["bank"], accounts["sales"], lcl, "99")
        assert posting_service.selector.balance(accounts["cash"], lcl) == Decimal("10")
        assert posting_service.selector.balance(accounts["bank"], lcl) == Decimal("0")

    def test_rate_outside_bounds_rejected(self, posting_service, currencies, make_posting, booked):
        accounts, codes = booked
        usd = codes["USD"]
        currencies.set_bounds(usd, Decimal("200"), Decimal("300"))
        posting_service.session.commit()

        request = make_posting("X-1", [
            LegSpec.debit_leg(accounts["cash"], usd, "10", exchange_rate=Decimal("400")),
            LegSpec.credit_leg(accounts["sales"], usd, "10", exchange_rate=Decimal("400")),
        ])
        with pytest.raises(RateOutOfRangeError):
            posting_service.post(request)
        assert posting_service.selector.leg_count() == 0

    def test_rate_inside_bounds_stored(self, posting_service, make_posting, booked):
        accounts, codes = booked
        usd = codes["USD"]
        request = make_posting("X-1", [
            LegSpec.debit_leg(accounts["cash"], usd, "10", exchange_rate=Decimal("251.5")),
            LegSpec.credit_leg(accounts["sales"], usd, "10", exchange_rate=Decimal("251.5")),
        ])
        posting_service.post(request)
        legs = posting_service.ledger.legs_for_reference("X-1")
        assert {leg.exchange_rate for leg in legs} == {Decimal("251.5")}

    def test_caller_owned_transaction_not_rolled_back(self, session, chart, make_posting, accounts, lcl, captured_logs):
        service = PostingService(session, auto_commit=False)
        petty = chart.create_account("Petty cash", accounts["assets"], "sub")
        request = make_posting("J-1", [
            (accounts["cash"], lcl, "10", 0),
            (accounts["sales"], lcl, 0, "9"),
        ])
        with pytest.raises(UnbalancedTransactionError):
            service.post(request)
        messages = [r["message"] for r in captured_logs()]
        assert "posting_failed" in messages
        assert "transaction_rolled_back" not in messages
        # The caller's uncommitted work is still there
        assert chart.get(petty).name == "Petty cash"


class TestLogging:

    def test_lifecycle_logged(self, post, accounts, lcl, captured_logs):
        post("J-1", accounts["cash"], accounts["sales"], lcl, "10")
        records = captured_logs()
        started = next(r for r in records if r["message"] == "posting_started")
        completed = next(r for r in records if r["message"] == "posting_completed")
        assert started["reference_id"] == "J-1"
        assert started["actor_id"] == "test-user"
        assert completed["leg_count"] == 2
        assert completed["duration_ms"] >= 0
        appended = next(r for r in records if r["message"] == "journal_posting_appended")
        assert appended["reference_id"] == "J-1"

    def test_failure_logged_with_error_code(self, ceilings, post, accounts, lcl, posting_service, captured_logs):
        ceilings.set_ceiling("account", accounts["customer"], lcl, "10")
        posting_service.session.commit()
        with pytest.raises(CeilingExceededError):
            post("S-1", accounts["customer"], accounts["sales"], lcl, "11")
        failed = next(r for r in captured_logs() if r["message"] == "posting_failed")
        assert failed["level"] == "ERROR"
        assert failed["exc_code"] == "CEILING_EXCEEDED"
        assert failed["reference_id"] == "S-1"


class TestConcurrencyMapping:

    def test_postgres_sqlstates(self):
        for pgcode in ("40001", "40P01", "55P03"):
            exc = DBAPIError("UPDATE x", {}, _PgError("conflict", pgcode))
            assert is_concurrency_failure(exc)

    def test_sqlite_locked(self):
        exc = OperationalError("INSERT", {}, sqlite3.OperationalError("database is locked"))
        assert is_concurrency_failure(exc)

    def test_other_errors(self):
        exc = OperationalError("INSERT", {}, sqlite3.OperationalError("no such table: foo"))
        assert not is_concurrency_failure(exc)
        assert not is_concurrency_failure(DBAPIError("X", {}, _PgError("unique", "23505")))

    def test_driver_error_becomes_concurrent_modification(self, posting_service, make_transfer, accounts, lcl, monkeypatch):
        def locked(request):
            raise OperationalError("INSERT", {}, sqlite3.OperationalError("database is locked"))

        monkeypatch.setattr(posting_service, "_do_post", locked)
        with pytest.raises(ConcurrentModificationError) as exc_info:
            posting_service.post(make_transfer("J-1", accounts["cash"], accounts["sales"], lcl, "1"))
        assert exc_info.value.operation == "post"
        assert "database is locked" in exc_info.value.detail


class TestRetry:

    def test_retries_then_succeeds(self, posting_service, make_transfer, accounts, lcl, monkeypatch, captured_logs):
        monkeypatch.setattr(posting_module.time, "sleep", lambda seconds: None)
        real_post = posting_service._do_post
        calls = []

        def flaky(request):
            calls.append(request.reference_id)
            if len(calls) < 3:
                raise ConcurrentModificationError("post", "simulated lock conflict")
            return real_post(request)

        monkeypatch.setattr(posting_service, "_do_post", flaky)
        result = posting_service.post_with_retry(
            make_transfer("J-1", accounts["cash"], accounts["sales"], lcl, "5")
        )

        assert result.reference_id == "J-1"
        assert len(calls) == 3
        retries = [r for r in captured_logs() if r["message"] == "posting_retry"]
        assert [r["attempt"] for r in retries] == [1, 2]

    def test_gives_up_after_limit(self, posting_service, make_transfer, accounts, lcl, monkeypatch):
        monkeypatch.setattr(posting_module.time, "sleep", lambda seconds: None)
        calls = []

        def always_locked(request):
            calls.append(1)
            raise ConcurrentModificationError("post", "simulated lock conflict")

        monkeypatch.setattr(posting_service, "_do_post", always_locked)
        with pytest.raises(ConcurrentModificationError):
            posting_service.post_with_retry(
                make_transfer("J-1", accounts["cash"], accounts["sales"], lcl, "5"), max_retries=2
            )
        assert len(calls) == 3

    def test_no_retry_without_auto_commit(self, session, make_transfer, accounts, lcl, monkeypatch):
        service = PostingService(session, auto_commit=False)
        calls = []

        def always_locked(request):
            calls.append(1)
            raise ConcurrentModificationError("post", "simulated lock conflict")

        monkeypatch.setattr(service, "_do_post", always_locked)
        with pytest.raises(ConcurrentModificationError):
            service.post_with_retry(make_transfer("J-1", accounts["cash"], accounts["sales"], lcl, "5"))
        assert calls == [1]
