"""Tests for pure statement arithmetic (ledger_kernel/domain/statement.py)."""

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from ledger_kernel.domain.dtos import DateRange, LedgerLeg
from ledger_kernel.domain.statement import (
    DetailedType,
    ExchangeRow,
    JournalRow,
    OpeningRow,
    ReceiptRow,
    StatementFilter,
    StatementMode,
    SummaryType,
    detailed_group,
    format_row,
    is_opening_row,
    opening_pseudo_row,
    row_for_leg,
    summary_line,
)
from ledger_kernel.exceptions import InvalidStatementFilterError


def _leg(id, debit="0", credit="0", reference_type="journal", on=date(2024, 1, 10), **kwargs):
    return LedgerLeg(
        id=id,
        posting_id=id,
        seq=id,
        journal_date=on,
        account_id=1,
        account_name="Cash box",
        currency_id=1,
        currency_name="Local",
        debit=Decimal(debit),
        credit=Decimal(credit),
        reference_type=reference_type,
        reference_id=f"R{id}",
        **kwargs,
    )


def _group(legs, opening_net="0", sign=1, include_opening=True):
    return detailed_group(
        legs,
        currency_id=1,
        currency_name="Local",
        opening_net=Decimal(opening_net),
        sign=sign,
        include_opening=include_opening,
        opening_date=date(2024, 1, 1),
        opening_label="Opening balance",
    )


class TestDetailedGroup:
    """Running balance and totals for one currency."""

    def test_running_balance_rule_debit_nature(self):
        legs = [_leg(1, debit="100"), _leg(2, credit="30"), _leg(3, debit="5.50")]
        group = _group(legs, opening_net="50")
        rows = group.rows
        assert rows[0].balance == Decimal("50")
        for prev, row in zip(rows, rows[1:]):
            assert row.balance == prev.balance + row.debit - row.credit
        assert rows[-1].balance == Decimal("125.50")

    def test_running_balance_credit_nature(self):
        legs = [_leg(1, credit="100"), _leg(2, debit="40")]
        group = _group(legs, opening_net="-10", sign=-1)
        assert [r.balance for r in group.rows] == [Decimal("10"), Decimal("110"), Decimal("70")]
        assert group.final_balance == Decimal("70")

    def test_pseudo_row_counted_once_in_totals(self):
        group = _group([_leg(1, debit="100")], opening_net="50")
        assert group.total_debit == Decimal("150")
        assert group.total_credit == Decimal("0")
        assert group.final_balance == group.rows[-1].balance == Decimal("150")

    def test_negative_opening_goes_to_credit_side(self):
        group = _group([], opening_net="-20")
        pseudo = group.rows[0]
        assert pseudo.debit == Decimal("0")
        assert pseudo.credit == Decimal("20")
        assert pseudo.balance == Decimal("-20")

    def test_no_open_excludes_opening(self):
        group = _group([_leg(1, debit="100")], opening_net="50", include_opening=False)
        assert len(group.rows) == 1
        assert group.opening_balance == Decimal("0")
        assert group.rows[0].balance == Decimal("100")
        assert group.total_debit == Decimal("100")

    def test_opening_identified_structurally(self):
        """A stored leg on an account named like the opening label is not the opening."""
        leg = replace(_leg(1, debit="10"), account_name="Opening balance")
        group = _group([leg], opening_net="5")
        flags = [is_opening_row(row) for row in group.rows]
        assert flags == [True, False]
        assert group.total_debit == Decimal("15")


class TestRows:

    def test_row_type_follows_reference_type(self):
        assert isinstance(row_for_leg(_leg(1, debit="1", reference_type="journal"), Decimal("1")), JournalRow)
        assert isinstance(row_for_leg(_leg(1, debit="1", reference_type="receipt"), Decimal("1")), ReceiptRow)
        opening = row_for_leg(_leg(1, debit="1", reference_type="opening"), Decimal("1"))
        assert isinstance(opening, OpeningRow)
        assert opening.is_opening is False

    def test_unknown_reference_type_rejected(self):
        with pytest.raises(ValueError):
            row_for_leg(_leg(1, debit="1", reference_type="invoice"), Decimal("1"))

    def test_exchange_row_carries_rate(self):
        row = row_for_leg(
            _leg(1, debit="1", reference_type="exchange", exchange_rate=Decimal("250")), Decimal("1")
        )
        assert isinstance(row, ExchangeRow)
        payload = format_row(row)
        assert payload["reference_type"] == "exchange"
        assert payload["exchange_rate"] == Decimal("250")

    def test_format_row_shape_and_rounding(self):
        payload = format_row(row_for_leg(_leg(7, debit="10.5"), Decimal("10.5")))
        assert set(payload) == {
            "journal_date", "account_name", "debit", "credit", "balance", "notes",
            "reference_type", "reference_id", "currency_name", "is_opening",
        }
        assert str(payload["debit"]) == "10.50"
        assert payload["journal_date"] == "2024-01-10"
        assert payload["reference_id"] == "R7"

    def test_pseudo_row_payload(self):
        payload = format_row(opening_pseudo_row(Decimal("3"), 1, "Local", None, "Opening balance"))
        assert payload["is_opening"] is True
        assert payload["reference_id"] is None
        assert payload["journal_date"] is None


class TestSummaryLine:

    def test_totals_and_final(self):
        line = summary_line(
            key_id=1,
            label="Cash box",
            currency_id=2,
            currency_name="Dollar",
            opening_net=Decimal("10"),
            legs=[_leg(1, debit="100"), _leg(2, credit="40")],
            sign=1,
            include_opening=True,
            to_local=lambda amount, currency_id: amount * 250,
        )
        assert line.opening_balance == Decimal("10")
        assert line.total_debit == Decimal("100")
        assert line.total_credit == Decimal("40")
        assert line.final_balance == Decimal("70")
        assert line.local_equivalent == Decimal("17500")

    def test_columns_select_fields(self):
        line = summary_line(
            key_id=1, label="x", currency_id=1, currency_name="Local",
            opening_net=Decimal("0"), legs=[], sign=1, include_opening=True,
            to_local=lambda amount, currency_id: amount,
        )
        assert set(line.to_payload(("label", "final_balance"))) == {"key_id", "label", "final_balance"}


class TestStatementFilter:

    def test_exactly_one_target(self):
        with pytest.raises(InvalidStatementFilterError):
            StatementFilter()
        with pytest.raises(InvalidStatementFilterError):
            StatementFilter(account_id=1, main_account_id=2)

    def test_string_enums_coerced(self):
        f = StatementFilter(account_id=1, mode="summary", detailed_type="no_open")
        assert f.mode is StatementMode.SUMMARY
        assert f.detailed_type is DetailedType.NO_OPEN
        assert f.summary_type is SummaryType.WITH_MOVE
        assert not f.include_opening

    def test_bad_enum_rejected(self):
        with pytest.raises(InvalidStatementFilterError):
            StatementFilter(account_id=1, mode="pivot")

    def test_from_dict(self):
        f = StatementFilter.from_dict({"account_id": 3, "from": "2024-01-01", "to": "2024-01-31"})
        assert f.date_range == DateRange(date(2024, 1, 1), date(2024, 1, 31))

    def test_from_dict_unknown_key(self):
        with pytest.raises(InvalidStatementFilterError):
            StatementFilter.from_dict({"account_id": 3, "colour": "red"})

    def test_from_dict_bad_date(self):
        with pytest.raises(InvalidStatementFilterError):
            StatementFilter.from_dict({"account_id": 3, "from": "31/01/2024"})


class TestDateRange:

    def test_inverted_range_rejected(self):
        with pytest.raises(InvalidStatementFilterError):
            DateRange(date(2024, 2, 1), date(2024, 1, 1))

    def test_month_helper(self):
        assert DateRange.month(2024, 2) == DateRange(date(2024, 2, 1), date(2024, 2, 29))

    def test_day_and_contains(self):
        day = DateRange.day(date(2024, 3, 5))
        assert day.contains(date(2024, 3, 5))
        assert not day.contains(date(2024, 3, 6))

    def test_from_start_is_open_ended_below(self):
        rng = DateRange.from_start(date(2024, 3, 5))
        assert rng.start is None
        assert rng.contains(date(1999, 1, 1))
