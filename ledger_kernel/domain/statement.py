"""
Statement -- pure account-statement arithmetic and row formatting.

Responsibility:
    Turns ordered ledger legs plus an opening net into currency groups of
    running-balance rows (detailed mode) or aggregated lines (summary mode),
    and renders them into the payload the reporting screens consume.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  The
    StatementGenerator service fetches legs and calls into this module.

Invariants enforced:
    - Running balance: row[i].balance == row[i-1].balance + sign * (debit - credit).
    - row[0].balance == opening balance when the opening pseudo-row is present.
    - Group totals count the opening pseudo-row exactly once.
    - The pseudo-row is identified by the structural ``is_opening`` flag,
      never by its label.
    - Decimal accumulation throughout; rounding to 2 places happens only in
      to_payload().

Failure modes:
    - InvalidStatementFilterError from StatementFilter construction.
    - ValueError from row_for_leg on an unknown reference type.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Sequence

from ledger_kernel.db.types import ZERO, round_money
from ledger_kernel.domain.dtos import DateRange, LedgerLeg
from ledger_kernel.exceptions import InvalidStatementFilterError


class StatementMode(str, Enum):
    SUMMARY = "summary"
    DETAILED = "detailed"


class DetailedType(str, Enum):
    """Whether the opening balance is carried into the statement."""

    FULL = "full"
    NO_OPEN = "no_open"


class SummaryType(str, Enum):
    """Column selection for summary statements; totals are identical."""

    LOCAL = "local"
    WITH_MOVE = "with_move"
    WITH_PAIR = "with_pair"
    WITH_PAIR_MOVE = "with_pair_move"
    FINAL = "final"


class SummaryBy(str, Enum):
    ACCOUNT = "account"
    CURRENCY = "currency"


SUMMARY_COLUMNS: dict[SummaryType, tuple[str, ...]] = {
    SummaryType.LOCAL: ("label", "local_equivalent"),
    SummaryType.WITH_MOVE: ("label", "opening_balance", "total_debit", "total_credit", "final_balance"),
    SummaryType.WITH_PAIR: ("label", "currency_name", "final_balance", "local_equivalent"),
    SummaryType.WITH_PAIR_MOVE: (
        "label",
        "currency_name",
        "total_debit",
        "total_credit",
        "final_balance",
        "local_equivalent",
    ),
    SummaryType.FINAL: ("label", "final_balance"),
}

DETAILED_COLUMNS: tuple[str, ...] = (
    "journal_date",
    "account_name",
    "debit",
    "credit",
    "balance",
    "notes",
    "reference_type",
    "reference_id",
    "currency_name",
    "is_opening",
)


def _coerce(enum_cls, value, field_name: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidStatementFilterError(
            field_name, f"{value!r} is not one of: {allowed}"
        ) from None


@dataclass(frozen=True)
class StatementFilter:
    """
    What to report on.

    Contract:
        Exactly one of account_id, main_account_id or account_group_id is
        set.  Enum fields accept their string values.  Construction fails
        with InvalidStatementFilterError instead of producing a filter that
        would silently match nothing.
    """

    account_id: int | None = None
    main_account_id: int | None = None
    account_group_id: int | None = None
    currency_id: int | None = None
    date_range: DateRange = field(default_factory=DateRange)
    mode: StatementMode = StatementMode.DETAILED
    summary_type: SummaryType | None = None
    detailed_type: DetailedType = DetailedType.FULL
    branch_id: int | None = None
    summary_by: SummaryBy = SummaryBy.ACCOUNT

    def __post_init__(self) -> None:
        targets = [
            name
            for name in ("account_id", "main_account_id", "account_group_id")
            if getattr(self, name) is not None
        ]
        if len(targets) != 1:
            raise InvalidStatementFilterError(
                "target",
                "exactly one of account_id, main_account_id, account_group_id is required"
                + (f" (got {', '.join(targets)})" if targets else ""),
            )
        if not isinstance(self.date_range, DateRange):
            raise InvalidStatementFilterError("date_range", "must be a DateRange")

        object.__setattr__(self, "mode", _coerce(StatementMode, self.mode, "mode"))
        object.__setattr__(
            self, "detailed_type", _coerce(DetailedType, self.detailed_type, "detailed_type")
        )
        object.__setattr__(
            self, "summary_by", _coerce(SummaryBy, self.summary_by, "summary_by")
        )
        summary_type = _coerce(SummaryType, self.summary_type, "summary_type")
        if summary_type is None and self.mode is StatementMode.SUMMARY:
            summary_type = SummaryType.WITH_MOVE
        object.__setattr__(self, "summary_type", summary_type)

    @property
    def include_opening(self) -> bool:
        return self.detailed_type is DetailedType.FULL

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> StatementFilter:
        """
        Build a filter from the report screen's query shape.

        ``from``/``to`` are ISO dates (either may be omitted).
        """
        known = {
            "account_id",
            "main_account_id",
            "account_group_id",
            "currency_id",
            "mode",
            "summary_type",
            "detailed_type",
            "branch_id",
            "summary_by",
            "from",
            "to",
        }
        unknown = set(payload) - known
        if unknown:
            raise InvalidStatementFilterError("filter", f"unknown keys: {sorted(unknown)}")

        def _date(key: str) -> date | None:
            value = payload.get(key)
            if value is None or isinstance(value, date):
                return value
            try:
                return date.fromisoformat(str(value))
            except ValueError:
                raise InvalidStatementFilterError(key, f"not an ISO date: {value!r}") from None

        kwargs = {key: payload[key] for key in known - {"from", "to"} if payload.get(key) is not None}
        return cls(date_range=DateRange(_date("from"), _date("to")), **kwargs)


# ---------------------------------------------------------------------------
# Rows: a closed union keyed by reference type
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _RowBase:
    journal_date: date | None
    account_name: str
    currency_name: str
    debit: Decimal
    credit: Decimal
    balance: Decimal
    notes: str | None


@dataclass(frozen=True)
class OrderRow(_RowBase):
    reference_id: str


@dataclass(frozen=True)
class JournalRow(_RowBase):
    reference_id: str


@dataclass(frozen=True)
class PaymentRow(_RowBase):
    reference_id: str


@dataclass(frozen=True)
class ReceiptRow(_RowBase):
    reference_id: str


@dataclass(frozen=True)
class ExchangeRow(_RowBase):
    reference_id: str
    exchange_rate: Decimal | None = None


@dataclass(frozen=True)
class OpeningRow(_RowBase):
    """
    Either a stored opening-balance voucher leg, or (is_opening=True) the
    synthetic carried-forward pseudo-row that is never persisted.
    """

    reference_id: str | None = None
    is_opening: bool = False


StatementRow = OrderRow | JournalRow | PaymentRow | ReceiptRow | ExchangeRow | OpeningRow


def is_opening_row(row: StatementRow) -> bool:
    """True only for the synthetic carried-forward row."""
    return isinstance(row, OpeningRow) and row.is_opening


def row_for_leg(leg: LedgerLeg, balance: Decimal) -> StatementRow:
    """Wrap a stored leg in the row type for its reference type."""
    common = dict(
        journal_date=leg.journal_date,
        account_name=leg.account_name,
        currency_name=leg.currency_name,
        debit=leg.debit,
        credit=leg.credit,
        balance=balance,
        notes=leg.notes,
    )
    match str(leg.reference_type):
        case "order":
            return OrderRow(reference_id=leg.reference_id, **common)
        case "journal":
            return JournalRow(reference_id=leg.reference_id, **common)
        case "payment":
            return PaymentRow(reference_id=leg.reference_id, **common)
        case "receipt":
            return ReceiptRow(reference_id=leg.reference_id, **common)
        case "exchange":
            return ExchangeRow(
                reference_id=leg.reference_id, exchange_rate=leg.exchange_rate, **common
            )
        case "opening":
            return OpeningRow(reference_id=leg.reference_id, is_opening=False, **common)
        case other:
            raise ValueError(f"Unknown reference type on leg {leg.id}: {other!r}")


def opening_pseudo_row(
    opening_net: Decimal,
    sign: int,
    currency_name: str,
    on: date | None,
    label: str,
) -> OpeningRow:
    """
    The carried-forward row.  opening_net is the raw debit - credit; it is
    shown on its own side so the row obeys the running-balance rule.
    """
    return OpeningRow(
        journal_date=on,
        account_name=label,
        currency_name=currency_name,
        debit=opening_net if opening_net > ZERO else ZERO,
        credit=-opening_net if opening_net < ZERO else ZERO,
        balance=sign * opening_net,
        notes=None,
        reference_id=None,
        is_opening=True,
    )


def _money(value: Decimal | None) -> Decimal | None:
    return None if value is None else round_money(value)


def format_row(row: StatementRow) -> dict[str, Any]:
    """Render one row into the report payload shape."""
    payload: dict[str, Any] = {
        "journal_date": row.journal_date.isoformat() if row.journal_date else None,
        "account_name": row.account_name,
        "debit": _money(row.debit),
        "credit": _money(row.credit),
        "balance": _money(row.balance),
        "notes": row.notes,
        "currency_name": row.currency_name,
    }
    match row:
        case OpeningRow(is_opening=True):
            payload.update(reference_type="opening", reference_id=None, is_opening=True)
        case OpeningRow(reference_id=reference_id):
            payload.update(reference_type="opening", reference_id=reference_id, is_opening=False)
        case ExchangeRow(reference_id=reference_id, exchange_rate=rate):
            payload.update(
                reference_type="exchange",
                reference_id=reference_id,
                is_opening=False,
                exchange_rate=rate,
            )
        case OrderRow(reference_id=reference_id):
            payload.update(reference_type="order", reference_id=reference_id, is_opening=False)
        case JournalRow(reference_id=reference_id):
            payload.update(reference_type="journal", reference_id=reference_id, is_opening=False)
        case PaymentRow(reference_id=reference_id):
            payload.update(reference_type="payment", reference_id=reference_id, is_opening=False)
        case ReceiptRow(reference_id=reference_id):
            payload.update(reference_type="receipt", reference_id=reference_id, is_opening=False)
        case _:
            raise TypeError(f"Not a statement row: {type(row).__name__}")
    return payload


# ---------------------------------------------------------------------------
# Groups and summary lines
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SummaryLine:
    """Aggregated figures for one account (or one currency)."""

    key_id: int
    label: str
    currency_id: int
    currency_name: str
    opening_balance: Decimal
    total_debit: Decimal
    total_credit: Decimal
    final_balance: Decimal
    local_equivalent: Decimal

    def to_payload(self, columns: Sequence[str]) -> dict[str, Any]:
        payload: dict[str, Any] = {"key_id": self.key_id}
        for column in columns:
            value = getattr(self, column)
            payload[column] = _money(value) if isinstance(value, Decimal) else value
        return payload


@dataclass(frozen=True)
class CurrencyGroup:
    """
    All output for one currency.

    Contract:
        final_balance == opening_balance + sign * (movement debit - credit),
        with sign taken from the statement nature.  In a detailed group
        total_debit/total_credit include the opening pseudo-row once, so
        final_balance == sign * (total_debit - total_credit) == the last
        row's balance.  In a summary group they are the in-range movement
        only.
    """

    currency_id: int
    currency_name: str
    opening_balance: Decimal
    total_debit: Decimal
    total_credit: Decimal
    final_balance: Decimal
    rows: tuple[StatementRow, ...] = ()
    lines: tuple[SummaryLine, ...] = ()

    def to_payload(self, columns: Sequence[str] | None = None) -> dict[str, Any]:
        payload = {
            "currency_id": self.currency_id,
            "currency_name": self.currency_name,
            "opening_balance": _money(self.opening_balance),
            "total_debit": _money(self.total_debit),
            "total_credit": _money(self.total_credit),
            "final_balance": _money(self.final_balance),
        }
        if self.lines:
            payload["lines"] = [line.to_payload(columns or ()) for line in self.lines]
        else:
            payload["rows"] = [format_row(row) for row in self.rows]
        return payload


def detailed_group(
    legs: Sequence[LedgerLeg],
    *,
    currency_id: int,
    currency_name: str,
    opening_net: Decimal,
    sign: int,
    include_opening: bool,
    opening_date: date | None,
    opening_label: str,
) -> CurrencyGroup:
    """
    Running-balance rows for one currency.

    Args:
        legs: In-range legs for this currency, already in (date, seq, id) order.
        opening_net: Raw debit - credit of everything before the range.
        sign: +1 for a debit-nature statement, -1 for credit-nature.
        include_opening: False for no_open; the opening is then neither shown
            nor counted and the running balance starts at zero.
    """
    rows: list[StatementRow] = []
    total_debit = ZERO
    total_credit = ZERO
    balance = ZERO

    if include_opening:
        pseudo = opening_pseudo_row(opening_net, sign, currency_name, opening_date, opening_label)
        rows.append(pseudo)
        total_debit += pseudo.debit
        total_credit += pseudo.credit
        balance = pseudo.balance

    for leg in legs:
        balance = balance + sign * (leg.debit - leg.credit)
        total_debit += leg.debit
        total_credit += leg.credit
        rows.append(row_for_leg(leg, balance))

    return CurrencyGroup(
        currency_id=currency_id,
        currency_name=currency_name,
        opening_balance=sign * opening_net if include_opening else ZERO,
        total_debit=total_debit,
        total_credit=total_credit,
        final_balance=sign * (total_debit - total_credit),
        rows=tuple(rows),
    )


def summary_line(
    *,
    key_id: int,
    label: str,
    currency_id: int,
    currency_name: str,
    opening_net: Decimal,
    legs: Iterable[LedgerLeg],
    sign: int,
    include_opening: bool,
    to_local: Callable[[Decimal, int], Decimal],
) -> SummaryLine:
    """
    Aggregate one account's (or currency's) movement.

    total_debit/total_credit are the in-range movement only; the opening is
    reported in its own column and folded into final_balance.
    """
    total_debit = ZERO
    total_credit = ZERO
    for leg in legs:
        total_debit += leg.debit
        total_credit += leg.credit
    opening = sign * opening_net if include_opening else ZERO
    final = opening + sign * (total_debit - total_credit)
    return SummaryLine(
        key_id=key_id,
        label=label,
        currency_id=currency_id,
        currency_name=currency_name,
        opening_balance=opening,
        total_debit=total_debit,
        total_credit=total_credit,
        final_balance=final,
        local_equivalent=to_local(final, currency_id),
    )


def summary_group(
    currency_id: int,
    currency_name: str,
    lines: Sequence[SummaryLine],
    *,
    opening_net: Decimal,
    sign: int,
    include_opening: bool,
) -> CurrencyGroup:
    """
    Group totals for summary lines.

    Lines keep their own account's sign; the group balance is signed by the
    statement nature, so it does not depend on how the lines are split.
    """
    total_debit = sum((line.total_debit for line in lines), ZERO)
    total_credit = sum((line.total_credit for line in lines), ZERO)
    opening = sign * opening_net if include_opening else ZERO
    return CurrencyGroup(
        currency_id=currency_id,
        currency_name=currency_name,
        opening_balance=opening,
        total_debit=total_debit,
        total_credit=total_credit,
        final_balance=opening + sign * (total_debit - total_credit),
        lines=tuple(lines),
    )


@dataclass(frozen=True)
class Statement:
    """
    A generated statement.

    Contract:
        groups are ordered by currency name.  opening_balance is the single
        group's opening when only one currency is reported, otherwise the
        local-currency equivalent of all group openings.
    """

    filter: StatementFilter
    nature: str
    opening_balance: Decimal
    groups: tuple[CurrencyGroup, ...]
    columns: tuple[str, ...]

    @property
    def rows(self) -> list[StatementRow]:
        return [row for group in self.groups for row in group.rows]

    @property
    def lines(self) -> list[SummaryLine]:
        return [line for group in self.groups for line in group.lines]

    def group_for(self, currency_id: int) -> CurrencyGroup | None:
        for group in self.groups:
            if group.currency_id == currency_id:
                return group
        return None

    def to_payload(self) -> dict[str, Any]:
        """``{opening_balance, list, ...}`` with amounts rounded for display."""
        if self.filter.mode is StatementMode.SUMMARY:
            items = [line.to_payload(self.columns) for line in self.lines]
        else:
            items = [format_row(row) for row in self.rows]
        return {
            "opening_balance": round_money(self.opening_balance),
            "list": items,
            "mode": self.filter.mode.value,
            "nature": self.nature,
            "columns": list(self.columns),
            "groups": [group.to_payload(self.columns) for group in self.groups],
        }
