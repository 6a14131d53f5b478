"""
JournalLedger -- append-only store of balanced multi-leg postings.

Responsibility:
    Validates and appends postings (a header plus two or more legs),
    reverses them with mirrored postings, and serves the read accessors
    statements and ceilings are built on.  The only writer of
    journal_postings and journal_entries.

Architecture position:
    Kernel > Services -- imperative shell.  Consumes ChartOfAccounts,
    CurrencyConverter, SequenceService and LedgerSelector.  Called by
    PostingService, which owns the transaction and the ceiling checks.

Invariants enforced:
    - Per currency, sum(debit) == sum(credit) for every accepted posting.
    - Each leg has exactly one non-zero side, both sides >= 0, at most two
      fractional digits; a posting has at least two legs.
    - Legs only land on active sub accounts and known currencies.
    - (reference_type, reference_id) is unique; a posting is reversed once.
    - Nothing is ever updated or deleted (see db/immutability.py).
    - A rejected posting writes nothing: every check runs before the first
      INSERT, and the INSERTs run inside a savepoint.

Failure modes:
    - ValidationError, UnbalancedTransactionError, DuplicateReferenceError,
      TransactionNotFoundError, TransactionAlreadyReversedError,
      AccountNotFoundError, AccountNotPostableError, CurrencyNotFoundError.
"""

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_kernel.db.types import MONEY_DECIMAL_PLACES, ZERO, fractional_digits, to_decimal
from ledger_kernel.domain.dtos import (
    DateRange,
    LedgerLeg,
    LegSpec,
    PostingRequest,
    PostingResult,
    enum_value,
)
from ledger_kernel.exceptions import (
    DuplicateReferenceError,
    TransactionAlreadyReversedError,
    TransactionNotFoundError,
    UnbalancedTransactionError,
    ValidationError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.journal import JournalEntry, JournalPosting, ReferenceType
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.base import BaseService
from ledger_kernel.services.chart_of_accounts import ChartOfAccounts
from ledger_kernel.services.currency_converter import CurrencyConverter
from ledger_kernel.services.sequence_service import SequenceService

logger = get_logger("services.journal_ledger")

MIN_LEGS = 2
REVERSAL_PREFIX = "REV-"


def _amount(value, field_name: str, index: int) -> Decimal:
    try:
        amount = to_decimal(value if value is not None else ZERO)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"legs[{index}].{field_name}", str(exc)) from None
    if not amount.is_finite():
        raise ValidationError(f"legs[{index}].{field_name}", "amount must be finite")
    if amount < ZERO:
        raise ValidationError(f"legs[{index}].{field_name}", "amount must not be negative")
    if fractional_digits(amount) > MONEY_DECIMAL_PLACES:
        raise ValidationError(
            f"legs[{index}].{field_name}",
            f"at most {MONEY_DECIMAL_PLACES} fractional digits allowed, got {amount}",
        )
    return amount


def normalize_legs(legs: Sequence[LegSpec]) -> list[LegSpec]:
    """
    Validate leg shape and return legs with Decimal amounts.

    Raises:
        ValidationError: Fewer than two legs, or a malformed leg.
    """
    if len(legs) < MIN_LEGS:
        raise ValidationError("legs", f"a posting needs at least {MIN_LEGS} legs, got {len(legs)}")

    normalized = []
    for index, leg in enumerate(legs):
        if leg.account_id is None:
            raise ValidationError(f"legs[{index}].account_id", "required")
        if leg.currency_id is None:
            raise ValidationError(f"legs[{index}].currency_id", "required")
        debit = _amount(leg.debit, "debit", index)
        credit = _amount(leg.credit, "credit", index)
        if (debit == ZERO) == (credit == ZERO):
            raise ValidationError(
                f"legs[{index}]", "exactly one of debit or credit must be non-zero"
            )
        rate = None
        if leg.exchange_rate is not None:
            try:
                rate = to_decimal(leg.exchange_rate)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"legs[{index}].exchange_rate", str(exc)) from None
            if not rate.is_finite() or rate <= ZERO:
                raise ValidationError(f"legs[{index}].exchange_rate", "rate must be positive")
        normalized.append(
            LegSpec(
                account_id=leg.account_id,
                currency_id=leg.currency_id,
                debit=debit,
                credit=credit,
                notes=leg.notes,
                exchange_rate=rate,
            )
        )
    return normalized


def check_balanced(legs: Iterable[LegSpec]) -> dict[int, tuple[Decimal, Decimal]]:
    """
    Per-currency (debits, credits); raises on the first unbalanced currency.

    Raises:
        UnbalancedTransactionError
    """
    totals: dict[int, list[Decimal]] = defaultdict(lambda: [ZERO, ZERO])
    for leg in legs:
        totals[leg.currency_id][0] += leg.debit
        totals[leg.currency_id][1] += leg.credit
    for currency_id in sorted(totals):
        debits, credits = totals[currency_id]
        if debits != credits:
            raise UnbalancedTransactionError(currency_id, debits, credits)
    return {currency_id: (d, c) for currency_id, (d, c) in totals.items()}


def parse_reference_type(value) -> ReferenceType:
    try:
        return ReferenceType(enum_value(value))
    except ValueError:
        allowed = ", ".join(member.value for member in ReferenceType)
        raise ValidationError("reference_type", f"{value!r} is not one of: {allowed}") from None


class JournalLedger(BaseService[JournalEntry]):
    """
    The append-only ledger.

    Contract:
        post_transaction() either appends every leg or raises and appends
        nothing.  It flushes into the caller's transaction; committing is
        the caller's job (PostingService).

    Guarantees:
        - Returned leg ids are in insertion order.
        - Reversal references are ``REV-<n>`` with n from a locked counter.

    Non-goals:
        - Ceiling enforcement and row locking (PostingService).
    """

    def __init__(
        self,
        session: Session,
        chart: ChartOfAccounts | None = None,
        currencies: CurrencyConverter | None = None,
        sequences: SequenceService | None = None,
        selector: LedgerSelector | None = None,
    ):
        super().__init__(session)
        self.chart = chart or ChartOfAccounts(session)
        self.currencies = currencies or CurrencyConverter(session)
        self.sequences = sequences or SequenceService(session)
        self.selector = selector or LedgerSelector(session)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, request: PostingRequest) -> tuple[ReferenceType, list[LegSpec]]:
        """
        Every check post_transaction performs, without writing.

        Returns:
            The parsed reference type and the normalized legs.
        """
        reference_type = parse_reference_type(request.reference_type)
        if not request.reference_id or not str(request.reference_id).strip():
            raise ValidationError("reference_id", "required")
        if not isinstance(request.journal_date, date):
            raise ValidationError("journal_date", f"not a date: {request.journal_date!r}")

        legs = normalize_legs(request.legs)
        check_balanced(legs)

        self.chart.require_postable(leg.account_id for leg in legs)
        for currency_id in sorted({leg.currency_id for leg in legs}):
            self.currencies.get(currency_id)

        if self._find_postings(str(request.reference_id), reference_type):
            raise DuplicateReferenceError(reference_type.value, str(request.reference_id))
        return reference_type, legs

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def post_transaction(
        self,
        legs: Sequence[LegSpec],
        reference_type: ReferenceType | str,
        reference_id: str,
        journal_date: date,
        branch_id: int | None = None,
        created_by: str = "system",
        notes: str | None = None,
    ) -> PostingResult:
        """
        Append a balanced transaction.

        Postconditions:
            - One header and len(legs) legs exist, all sharing the reference,
              date and branch.
            - For every currency in the legs, debits == credits.

        Raises:
            ValidationError, UnbalancedTransactionError,
            DuplicateReferenceError, AccountNotFoundError,
            AccountNotPostableError, CurrencyNotFoundError.
        """
        request = PostingRequest(
            legs=tuple(legs),
            reference_type=enum_value(reference_type),
            reference_id=str(reference_id),
            journal_date=journal_date,
            branch_id=branch_id,
            created_by=created_by,
            notes=notes,
        )
        return self.post_request(request)

    def post_request(self, request: PostingRequest, reversal_of_id: int | None = None) -> PostingResult:
        reference_type, legs = self.validate(request)
        return self._append(request, reference_type, legs, reversal_of_id)

    def post_payload(
        self,
        legs: list[Mapping[str, Any]],
        created_by: str = "system",
    ) -> PostingResult:
        """Post voucher-screen leg dicts (see PostingRequest.from_payload)."""
        return self.post_request(PostingRequest.from_payload(legs, created_by=created_by))

    def _append(
        self,
        request: PostingRequest,
        reference_type: ReferenceType,
        legs: list[LegSpec],
        reversal_of_id: int | None,
    ) -> PostingResult:
        reference_id = str(request.reference_id)
        with LogContext.bind(reference_id=reference_id):
            try:
                with self.session.begin_nested():
                    seq = self.sequences.next_value(SequenceService.POSTING)
                    posting = JournalPosting(
                        seq=seq,
                        reference_type=reference_type.value,
                        reference_id=reference_id,
                        journal_date=request.journal_date,
                        branch_id=request.branch_id,
                        notes=request.notes,
                        reversal_of_id=reversal_of_id,
                        created_by=request.created_by,
                    )
                    entries = [
                        JournalEntry(
                            posting=posting,
                            journal_date=request.journal_date,
                            account_id=leg.account_id,
                            currency_id=leg.currency_id,
                            debit=leg.debit,
                            credit=leg.credit,
                            exchange_rate=leg.exchange_rate,
                            reference_type=reference_type.value,
                            reference_id=reference_id,
                            notes=leg.notes if leg.notes is not None else request.notes,
                            branch_id=request.branch_id,
                            created_by=request.created_by,
                        )
                        for leg in legs
                    ]
                    self.session.add(posting)
                    self.session.add_all(entries)
                    self.session.flush()
            except IntegrityError as exc:
                # Lost a race against a concurrent writer of the same reference
                existing = self._reversal_of(reversal_of_id) if reversal_of_id is not None else None
                if existing is not None:
                    original = self.session.get(JournalPosting, reversal_of_id)
                    raise TransactionAlreadyReversedError(
                        original.reference_id, existing.reference_id
                    ) from exc
                if self._find_postings(reference_id, reference_type):
                    raise DuplicateReferenceError(reference_type.value, reference_id) from exc
                raise

            leg_ids = tuple(entry.id for entry in entries)
            logger.info(
                "journal_posting_appended",
                extra={
                    "posting_id": posting.id,
                    "seq": seq,
                    "reference_type": reference_type.value,
                    "leg_count": len(leg_ids),
                    "reversal_of_id": reversal_of_id,
                },
            )
            return PostingResult(
                reference_type=reference_type.value,
                reference_id=reference_id,
                posting_id=posting.id,
                seq=seq,
                leg_ids=leg_ids,
            )

    def _find_postings(
        self,
        reference_id: str,
        reference_type: ReferenceType | str | None = None,
    ) -> list[JournalPosting]:
        query = select(JournalPosting).where(JournalPosting.reference_id == str(reference_id))
        if reference_type is not None:
            query = query.where(JournalPosting.reference_type == enum_value(reference_type))
        return list(self.session.execute(query.order_by(JournalPosting.seq)).scalars())

    def _reversal_of(self, posting_id: int) -> JournalPosting | None:
        return self.session.execute(
            select(JournalPosting).where(JournalPosting.reversal_of_id == posting_id)
        ).scalar_one_or_none()

    def find_posting(
        self,
        reference_id: str,
        reference_type: ReferenceType | str | None = None,
    ) -> JournalPosting:
        """
        The single posting under a reference.

        Raises:
            TransactionNotFoundError: Nothing posted under the reference.
            ValidationError: reference_type omitted and the id is used by
                more than one reference type.
        """
        if reference_type is not None:
            reference_type = parse_reference_type(reference_type)
        postings = self._find_postings(reference_id, reference_type)
        if not postings:
            raise TransactionNotFoundError(
                str(reference_id), enum_value(reference_type)
            )
        if len(postings) > 1:
            kinds = sorted(enum_value(p.reference_type) for p in postings)
            raise ValidationError(
                "reference_type",
                f"reference {reference_id!r} is used by {', '.join(kinds)}; specify the type",
            )
        return postings[0]

    def reversal_request(
        self,
        reference_id: str,
        reference_type: ReferenceType | str | None = None,
        journal_date: date | None = None,
        created_by: str = "system",
        notes: str | None = None,
    ) -> tuple[PostingRequest, JournalPosting]:
        """
        Build (but do not post) the mirrored request for a reversal.

        Raises:
            TransactionNotFoundError, TransactionAlreadyReversedError,
            ValidationError.
        """
        original = self.find_posting(reference_id, reference_type)
        existing = self._reversal_of(original.id)
        if existing is not None:
            raise TransactionAlreadyReversedError(original.reference_id, existing.reference_id)

        new_reference = f"{REVERSAL_PREFIX}{self.sequences.next_value(SequenceService.REVERSAL)}"
        while self._find_postings(new_reference, original.reference_type):
            new_reference = f"{REVERSAL_PREFIX}{self.sequences.next_value(SequenceService.REVERSAL)}"

        mirrored = tuple(
            LegSpec(
                account_id=leg.account_id,
                currency_id=leg.currency_id,
                debit=leg.credit,
                credit=leg.debit,
                notes=leg.notes,
                exchange_rate=leg.exchange_rate,
            )
            for leg in original.legs
        )
        request = PostingRequest(
            legs=mirrored,
            reference_type=enum_value(original.reference_type),
            reference_id=new_reference,
            journal_date=journal_date or original.journal_date,
            branch_id=original.branch_id,
            created_by=created_by,
            notes=notes or f"Reversal of {enum_value(original.reference_type)}:{original.reference_id}",
        )
        return request, original

    def reverse_transaction(
        self,
        reference_id: str,
        reference_type: ReferenceType | str | None = None,
        journal_date: date | None = None,
        created_by: str = "system",
        notes: str | None = None,
    ) -> PostingResult:
        """
        Append a posting with every leg's debit and credit swapped.

        The reversal gets a fresh ``REV-<n>`` reference of the same type and
        its header's reversal_of_id points at the original.  journal_date
        defaults to the original's date so period figures net to zero.

        Raises:
            TransactionNotFoundError: Unknown reference.
            TransactionAlreadyReversedError: Already reversed once.
            ValidationError: Ambiguous reference without a type.
        """
        request, original = self.reversal_request(
            reference_id, reference_type, journal_date, created_by, notes
        )
        result = self.post_request(request, reversal_of_id=original.id)
        logger.info(
            "journal_posting_reversed",
            extra={
                "original_reference_id": original.reference_id,
                "reversal_reference_id": result.reference_id,
                "original_posting_id": original.id,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def resolve_accounts(
        self,
        account_id: int | None = None,
        group_id: int | None = None,
        main_account_id: int | None = None,
    ) -> list[int]:
        """Account ids behind exactly one of the three targets."""
        given = [v for v in (account_id, group_id, main_account_id) if v is not None]
        if len(given) != 1:
            raise ValidationError(
                "target", "exactly one of account_id, group_id, main_account_id is required"
            )
        if account_id is not None:
            return [self.chart.get(account_id).id]
        if group_id is not None:
            return [a.id for a in self.chart.accounts_in_group(group_id)]
        return [a.id for a in self.chart.sub_accounts_of(main_account_id)]

    def entries_for(
        self,
        account_id: int | None = None,
        group_id: int | None = None,
        main_account_id: int | None = None,
        date_range: DateRange | None = None,
        currency_id: int | None = None,
        branch_id: int | None = None,
    ) -> list[LedgerLeg]:
        """Legs of the target ordered by journal_date, then insertion order."""
        ids = self.resolve_accounts(account_id, group_id, main_account_id)
        return self.selector.legs(ids, date_range, currency_id=currency_id, branch_id=branch_id)

    def legs_for_reference(
        self,
        reference_id: str,
        reference_type: ReferenceType | str | None = None,
    ) -> list[LedgerLeg]:
        return self.selector.legs_for_reference(str(reference_id), reference_type)

    def balance(self, account_id: int, currency_id: int, as_of: date | None = None) -> Decimal:
        """Net debit - credit of one account in one currency."""
        return self.selector.balance(account_id, currency_id, as_of=as_of)

    def count(self) -> int:
        """Number of legs in the ledger."""
        return self.selector.leg_count()
