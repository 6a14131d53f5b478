"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Defines the immutable data structures that cross the service boundary:
    LegSpec and PostingRequest (posting input), PostingResult (posting
    output), CeilingCheck (ceiling verdicts), DateRange (reporting windows)
    and the read-side snapshots AccountInfo, CurrencyInfo, CeilingInfo and
    LedgerLeg.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods exist as boundary converters but are only
    invoked from the service and selector layers.

Invariants enforced:
    - Services accept and return DTOs, never ORM entities.
    - DateRange.start <= DateRange.end when both are set.
    - PostingRequest.from_payload rejects legs that disagree on the shared
      reference/date/branch fields.

Failure modes:
    - ValidationError from PostingRequest.from_payload.
    - InvalidStatementFilterError on an inverted DateRange.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Mapping

from ledger_kernel.db.types import ZERO, to_decimal
from ledger_kernel.exceptions import InvalidStatementFilterError, ValidationError

if TYPE_CHECKING:
    from ledger_kernel.models.account import Account as AccountModel
    from ledger_kernel.models.ceiling import AccountCeiling as AccountCeilingModel
    from ledger_kernel.models.currency import Currency as CurrencyModel


def enum_value(value) -> str | None:
    """Plain string value of a str-Enum member (or of a plain string)."""
    if value is None:
        return None
    return str(getattr(value, "value", value))


@dataclass(frozen=True)
class AccountInfo:
    """
    Immutable snapshot of an account.

    Contract:
        level and nature are the plain string values ("main"/"sub",
        "debit"/"credit") so that pure code never needs the ORM enums.
    """

    id: int
    code: str
    name: str
    level: str
    nature: str
    parent_id: int | None = None
    name_en: str | None = None
    group_id: int | None = None
    is_active: bool = True

    @property
    def is_sub(self) -> bool:
        return self.level == "sub"

    @property
    def sign(self) -> int:
        return 1 if self.nature == "debit" else -1

    @classmethod
    def from_model(cls, model: AccountModel) -> AccountInfo:
        return cls(
            id=model.id,
            code=model.code,
            name=model.name,
            level=enum_value(model.level),
            nature=enum_value(model.nature),
            parent_id=model.parent_id,
            name_en=model.name_en,
            group_id=model.group_id,
            is_active=model.is_active,
        )


@dataclass(frozen=True)
class CurrencyInfo:
    """Immutable snapshot of a currency and its current rate."""

    id: int
    code: str
    name: str
    exchange_rate: Decimal
    is_local: bool = False
    symbol: str | None = None
    min_rate: Decimal | None = None
    max_rate: Decimal | None = None

    @classmethod
    def from_model(cls, model: CurrencyModel) -> CurrencyInfo:
        return cls(
            id=model.id,
            code=model.code,
            name=model.name,
            exchange_rate=model.exchange_rate,
            is_local=model.is_local,
            symbol=model.symbol,
            min_rate=model.min_rate,
            max_rate=model.max_rate,
        )


@dataclass(frozen=True)
class CeilingInfo:
    """Immutable snapshot of an account or group ceiling."""

    id: int
    scope: str
    currency_id: int
    ceiling_amount: Decimal
    account_nature: str
    exceed_action: str
    account_id: int | None = None
    account_group_id: int | None = None

    @classmethod
    def from_model(cls, model: AccountCeilingModel) -> CeilingInfo:
        return cls(
            id=model.id,
            scope=enum_value(model.scope),
            currency_id=model.currency_id,
            ceiling_amount=model.ceiling_amount,
            account_nature=enum_value(model.account_nature),
            exceed_action=enum_value(model.exceed_action),
            account_id=model.account_id,
            account_group_id=model.account_group_id,
        )


@dataclass(frozen=True)
class CeilingCheck:
    """
    Verdict of a ceiling check for one account and currency.

    Contract:
        allowed is False only for a breached ``block`` ceiling.  warning is
        True only for a breached ``warn`` ceiling.  ceiling is the ceiling
        that applied, or None when no ceiling is configured.
    """

    allowed: bool
    warning: bool
    ceiling: CeilingInfo | None
    account_id: int | None = None
    currency_id: int | None = None
    prospective_balance: Decimal | None = None


@dataclass(frozen=True)
class LegSpec:
    """
    One leg of a posting request.

    Contract:
        debit and credit are non-negative Decimals with exactly one of them
        non-zero.  The JournalLedger validates this; the DTO only carries it.
    """

    account_id: int
    currency_id: int
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    notes: str | None = None
    exchange_rate: Decimal | None = None

    @classmethod
    def debit_leg(cls, account_id: int, currency_id: int, amount, **kwargs) -> LegSpec:
        return cls(account_id, currency_id, debit=to_decimal(amount), **kwargs)

    @classmethod
    def credit_leg(cls, account_id: int, currency_id: int, amount, **kwargs) -> LegSpec:
        return cls(account_id, currency_id, credit=to_decimal(amount), **kwargs)

    def mirrored(self) -> LegSpec:
        """Same leg with debit and credit swapped."""
        return LegSpec(
            account_id=self.account_id,
            currency_id=self.currency_id,
            debit=self.credit,
            credit=self.debit,
            notes=self.notes,
            exchange_rate=self.exchange_rate,
        )


# Keys every voucher-screen leg carries
PAYLOAD_SHARED_FIELDS = ("journal_date", "reference_type", "reference_id", "branch_id")


@dataclass(frozen=True)
class PostingRequest:
    """
    A balanced transaction to be appended as one unit.

    Contract:
        All legs share reference_type/reference_id/journal_date/branch_id.
        branch_id is passed explicitly; nothing is read from ambient state.
    """

    legs: tuple[LegSpec, ...]
    reference_type: str
    reference_id: str
    journal_date: date
    branch_id: int | None = None
    created_by: str = "system"
    notes: str | None = None

    @classmethod
    def from_payload(
        cls,
        legs: list[Mapping[str, Any]],
        created_by: str = "system",
    ) -> PostingRequest:
        """
        Build a request from voucher-screen leg dicts.

        Each dict is ``{account_id, currency_id, debit, credit, journal_date,
        reference_type, reference_id, notes, branch_id}``.  Shared fields
        must agree across legs; notes may differ per leg.

        Raises:
            ValidationError: Empty payload, missing key or disagreeing legs.
        """
        if not legs:
            raise ValidationError("legs", "payload contains no legs")

        first = legs[0]
        for key in PAYLOAD_SHARED_FIELDS[:-1] + ("account_id", "currency_id"):
            for leg in legs:
                if leg.get(key) is None:
                    raise ValidationError(key, "required on every leg")

        for key in PAYLOAD_SHARED_FIELDS:
            values = {leg.get(key) for leg in legs}
            if len(values) > 1:
                raise ValidationError(key, f"legs disagree: {sorted(map(str, values))}")

        journal_date = first["journal_date"]
        if isinstance(journal_date, str):
            try:
                journal_date = date.fromisoformat(journal_date)
            except ValueError:
                raise ValidationError("journal_date", f"not an ISO date: {journal_date!r}") from None

        specs = tuple(
            LegSpec(
                account_id=leg["account_id"],
                currency_id=leg["currency_id"],
                debit=leg.get("debit") if leg.get("debit") is not None else ZERO,
                credit=leg.get("credit") if leg.get("credit") is not None else ZERO,
                notes=leg.get("notes"),
                exchange_rate=leg.get("exchange_rate"),
            )
            for leg in legs
        )
        return cls(
            legs=specs,
            reference_type=str(first["reference_type"]),
            reference_id=str(first["reference_id"]),
            journal_date=journal_date,
            branch_id=first.get("branch_id"),
            created_by=created_by,
        )


@dataclass(frozen=True)
class PostingResult:
    """Outcome of an accepted posting (or reversal)."""

    reference_type: str
    reference_id: str
    posting_id: int
    seq: int
    leg_ids: tuple[int, ...]
    warnings: tuple[CeilingCheck, ...] = field(default_factory=tuple)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


@dataclass(frozen=True)
class LedgerLeg:
    """
    Read-side snapshot of a stored leg, with the display names statements need.

    Ordering key is (journal_date, seq, id): date first, then insertion.
    """

    id: int
    posting_id: int
    seq: int
    journal_date: date
    account_id: int
    account_name: str
    currency_id: int
    currency_name: str
    debit: Decimal
    credit: Decimal
    reference_type: str
    reference_id: str
    notes: str | None = None
    branch_id: int | None = None
    exchange_rate: Decimal | None = None
    created_by: str | None = None

    @property
    def net(self) -> Decimal:
        return self.debit - self.credit

    @property
    def sort_key(self) -> tuple[date, int, int]:
        return (self.journal_date, self.seq, self.id)


@dataclass(frozen=True)
class DateRange:
    """
    Inclusive reporting window.  ``start=None`` means "since the beginning",
    ``end=None`` means "no upper bound".
    """

    start: date | None = None
    end: date | None = None

    def __post_init__(self) -> None:
        if self.start is not None and self.end is not None and self.start > self.end:
            raise InvalidStatementFilterError(
                "date_range", f"start {self.start} is after end {self.end}"
            )

    @classmethod
    def day(cls, on: date) -> DateRange:
        return cls(on, on)

    @classmethod
    def from_start(cls, end: date | None = None) -> DateRange:
        """Everything up to and including ``end``; no opening balance."""
        return cls(None, end)

    @classmethod
    def month(cls, year: int, month: int) -> DateRange:
        last = calendar.monthrange(year, month)[1]
        return cls(date(year, month, 1), date(year, month, last))

    @classmethod
    def between(cls, start: date, end: date) -> DateRange:
        return cls(start, end)

    def contains(self, on: date) -> bool:
        if self.start is not None and on < self.start:
            return False
        if self.end is not None and on > self.end:
            return False
        return True
