"""
PostingService -- the transaction boundary for every ledger write.

Responsibility:
    Runs the posting chain (postability, currencies and manual rates,
    per-account locks, balance snapshot, ceiling checks, append) inside one
    database transaction, and commits or rolls back as a unit.

Architecture position:
    Kernel > Services -- the only service that commits.  Composes
    ChartOfAccounts, CurrencyConverter, CeilingEnforcer, LedgerSelector and
    JournalLedger over one Session.

Invariants enforced:
    - Check and append see the same balances: the touched accounts are
      locked (``SELECT ... FOR UPDATE`` in ascending id order, or the SQLite
      write lock taken by ``BEGIN IMMEDIATE``) before balances are read.
    - A failed post rolls back every leg (auto_commit) or leaves the
      rollback to the caller (auto_commit=False).
    - Lock and serialization failures surface as ConcurrentModificationError,
      which is always safe to retry.

Failure modes:
    - Every error of JournalLedger, ChartOfAccounts, CurrencyConverter and
      CeilingEnforcer propagates unchanged.
    - ConcurrentModificationError for database lock conflicts.

Audit relevance:
    posting_started / posting_completed / posting_failed are logged with
    the reference bound into LogContext, so every line written during a
    posting carries its reference_id.
"""

import time
from typing import Any, Mapping

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from ledger_kernel.domain.dtos import LegSpec, PostingRequest, PostingResult
from ledger_kernel.exceptions import ConcurrentModificationError
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.ceiling_enforcer import CeilingEnforcer
from ledger_kernel.services.chart_of_accounts import ChartOfAccounts
from ledger_kernel.services.currency_converter import CurrencyConverter
from ledger_kernel.services.journal_ledger import JournalLedger
from ledger_kernel.services.sequence_service import SequenceService

logger = get_logger("services.posting")

DEFAULT_MAX_RETRIES = 3

# serialization_failure, deadlock_detected, lock_not_available
_CONCURRENCY_SQLSTATES = frozenset({"40001", "40P01", "55P03"})
_CONCURRENCY_MESSAGES = (
    "database is locked",
    "database table is locked",
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
)


def is_concurrency_failure(exc: DBAPIError) -> bool:
    """True when a driver error is a lock or serialization conflict."""
    original = getattr(exc, "orig", None)
    sqlstate = getattr(original, "pgcode", None) or getattr(original, "sqlstate", None)
    if sqlstate in _CONCURRENCY_SQLSTATES:
        return True
    message = str(original if original is not None else exc).lower()
    return any(fragment in message for fragment in _CONCURRENCY_MESSAGES)


class PostingService:
    """
    Orchestrates check-and-append for postings and reversals.

    Contract:
        post() and reverse() define their own transaction boundary: commit
        on success, rollback on failure.  Pass auto_commit=False to run
        inside a transaction the caller owns (tests, batch imports).

    Guarantees:
        - The returned PostingResult carries every ``warn`` ceiling that the
          posting exceeded.
        - Nothing is written when any check fails.

    Non-goals:
        - Building postings from screen input (see vouchers.py).
    """

    def __init__(
        self,
        session: Session,
        auto_commit: bool = True,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        """
        Args:
            session: SQLAlchemy session; every service shares it.
            auto_commit: If True (default), commits on success and rolls
                back on failure. If False, the caller manages the transaction.
            max_retries: Default retry limit for post_with_retry().
        """
        self.session = session
        self.auto_commit = auto_commit
        self.max_retries = max_retries

        self.chart = ChartOfAccounts(session)
        self.currencies = CurrencyConverter(session)
        self.selector = LedgerSelector(session)
        self.ceilings = CeilingEnforcer(session)
        self.ledger = JournalLedger(
            session,
            chart=self.chart,
            currencies=self.currencies,
            sequences=SequenceService(session),
            selector=self.selector,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def post(self, request: PostingRequest) -> PostingResult:
        """
        Validate, ceiling-check and append one transaction.

        Returns:
            PostingResult with the new leg ids and any ceiling warnings.

        Raises:
            ValidationError, UnbalancedTransactionError,
            DuplicateReferenceError, AccountNotPostableError,
            CurrencyNotFoundError, RateOutOfRangeError,
            CeilingExceededError, ConcurrentModificationError.
        """
        return self._run(
            "post",
            request.reference_id,
            {"reference_type": request.reference_type, "leg_count": len(request.legs)},
            lambda: self._do_post(request),
            actor_id=request.created_by,
            branch_id=request.branch_id,
        )

    def post_payload(self, legs: list[Mapping[str, Any]], created_by: str = "system") -> PostingResult:
        """post() for voucher-screen leg dicts."""
        return self.post(PostingRequest.from_payload(legs, created_by=created_by))

    def reverse(
        self,
        reference_id: str,
        reference_type: str | None = None,
        journal_date=None,
        created_by: str = "system",
        notes: str | None = None,
    ) -> PostingResult:
        """
        Reverse a posting under the same transaction discipline as post().

        Ceilings are checked like any other posting.  A reversal that does
        not grow the constrained side passes even when the account is over
        its ceiling; one that grows it past the ceiling is blocked.

        Raises:
            TransactionNotFoundError, TransactionAlreadyReversedError,
            ValidationError, AccountNotPostableError, CeilingExceededError,
            ConcurrentModificationError.
        """
        return self._run(
            "reverse",
            reference_id,
            {"reference_type": reference_type},
            lambda: self._do_reverse(reference_id, reference_type, journal_date, created_by, notes),
            actor_id=created_by,
        )

    def post_with_retry(self, request: PostingRequest, max_retries: int | None = None) -> PostingResult:
        """
        post(), retried on ConcurrentModificationError.

        Only meaningful with auto_commit: each failed attempt has been
        rolled back before the next one starts.  Without auto_commit the
        first conflict is raised to the caller, who owns the transaction.
        """
        limit = self.max_retries if max_retries is None else max_retries
        attempt = 0
        while True:
            try:
                return self.post(request)
            except ConcurrentModificationError:
                attempt += 1
                if not self.auto_commit or attempt > limit:
                    raise
                logger.warning(
                    "posting_retry",
                    extra={"reference_id": request.reference_id, "attempt": attempt, "max_retries": limit},
                )
                time.sleep(0.01 * attempt)

    # ------------------------------------------------------------------
    # Transaction boundary
    # ------------------------------------------------------------------

    def _run(self, operation, reference_id, log_fields, work, actor_id=None, branch_id=None):
        with LogContext.bind(reference_id=reference_id, actor_id=actor_id, branch_id=branch_id):
            logger.info("posting_started", extra={"operation": operation, **log_fields})
            t0 = time.monotonic()
            try:
                try:
                    result = work()
                    if self.auto_commit:
                        self.session.commit()
                except DBAPIError as exc:
                    if is_concurrency_failure(exc):
                        raise ConcurrentModificationError(operation, str(exc.orig)) from exc
                    raise

                duration_ms = round((time.monotonic() - t0) * 1000, 2)
                logger.info(
                    "posting_completed",
                    extra={
                        "operation": operation,
                        "posting_id": result.posting_id,
                        "seq": result.seq,
                        "leg_count": len(result.leg_ids),
                        "warning_count": len(result.warnings),
                        "duration_ms": duration_ms,
                    },
                )
                return result

            except Exception:
                duration_ms = round((time.monotonic() - t0) * 1000, 2)
                if self.auto_commit:
                    self.session.rollback()
                    logger.info("transaction_rolled_back", extra={"operation": operation})
                logger.error(
                    "posting_failed",
                    extra={"operation": operation, "duration_ms": duration_ms},
                    exc_info=True,
                )
                raise

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def _validate_rates(self, legs: list[LegSpec]) -> None:
        for leg in legs:
            if leg.exchange_rate is not None:
                self.currencies.validate_rate(leg.currency_id, leg.exchange_rate)

    def _do_post(self, request: PostingRequest) -> PostingResult:
        _, legs = self.ledger.validate(request)
        self._validate_rates(legs)

        self.chart.lock_accounts([leg.account_id for leg in legs])
        pairs = sorted({(leg.account_id, leg.currency_id) for leg in legs})
        current = self.selector.balances(pairs)
        warnings = self.ceilings.check_legs(legs, current)

        result = self.ledger.post_request(request)
        return PostingResult(
            reference_type=result.reference_type,
            reference_id=result.reference_id,
            posting_id=result.posting_id,
            seq=result.seq,
            leg_ids=result.leg_ids,
            warnings=tuple(warnings),
        )

    def _do_reverse(self, reference_id, reference_type, journal_date, created_by, notes) -> PostingResult:
        request, original = self.ledger.reversal_request(
            reference_id, reference_type, journal_date, created_by, notes
        )
        self.chart.lock_accounts([leg.account_id for leg in request.legs])
        pairs = sorted({(leg.account_id, leg.currency_id) for leg in request.legs})
        current = self.selector.balances(pairs)
        warnings = self.ceilings.check_legs(request.legs, current)

        result = self.ledger.post_request(request, reversal_of_id=original.id)
        logger.info(
            "journal_posting_reversed",
            extra={
                "original_reference_id": original.reference_id,
                "reversal_reference_id": result.reference_id,
                "original_posting_id": original.id,
            },
        )
        return PostingResult(
            reference_type=result.reference_type,
            reference_id=result.reference_id,
            posting_id=result.posting_id,
            seq=result.seq,
            leg_ids=result.leg_ids,
            warnings=tuple(warnings),
        )
