"""
Voucher builders -- PostingRequests from the operations screens.

Responsibility:
    Turns receipt, payment, manual journal and currency-exchange vouchers
    into balanced PostingRequests.  Nothing is written here; the request is
    handed to PostingService.post().

Architecture position:
    Kernel > Services -- reads currencies (rates and bounds) through
    CurrencyConverter; never flushes.

Invariants enforced:
    - Every request built here balances per currency.
    - A currency exchange is one posting of reference type ``exchange``:
      two balanced pairs, one per currency, linked by a transit account.
      Converted at the rates used, the transit account nets to zero.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Sequence

from sqlalchemy.orm import Session

from ledger_kernel.db.types import ZERO, round_money, to_decimal
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import LegSpec, PostingRequest
from ledger_kernel.exceptions import ValidationError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.journal import ReferenceType
from ledger_kernel.services.currency_converter import CurrencyConverter

logger = get_logger("services.vouchers")


class ExchangeMode(str, Enum):
    """Direction of a currency exchange, seen from the business."""

    BUY = "buy"  # business receives from_currency, pays out to_currency
    SELL = "sell"  # business pays out from_currency, receives to_currency


def _positive_amount(value, field_name: str) -> Decimal:
    try:
        amount = to_decimal(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(field_name, str(exc)) from None
    if not amount.is_finite() or amount <= ZERO:
        raise ValidationError(field_name, f"must be positive, got {value!r}")
    return amount


def _leg(value) -> LegSpec:
    if isinstance(value, LegSpec):
        return value
    if isinstance(value, Mapping):
        return LegSpec(
            account_id=value.get("account_id"),
            currency_id=value.get("currency_id"),
            debit=value.get("debit") if value.get("debit") is not None else ZERO,
            credit=value.get("credit") if value.get("credit") is not None else ZERO,
            notes=value.get("notes"),
            exchange_rate=value.get("exchange_rate"),
        )
    raise ValidationError("legs", f"expected LegSpec or mapping, got {type(value).__name__}")


def exchange_notes(mode: ExchangeMode, customer_name=None, customer_phone=None, notes=None) -> str:
    """Voucher notes with the customer kept alongside the free text."""
    parts = [notes or ("Currency purchase" if mode is ExchangeMode.BUY else "Currency sale")]
    if customer_name:
        parts.append(f"customer: {customer_name}")
    if customer_phone:
        parts.append(f"phone: {customer_phone}")
    return " | ".join(parts)


class VoucherBuilder:
    """
    Builds PostingRequests for the four voucher kinds.

    Contract:
        journal_date defaults to the clock's today; amounts are positive
        Decimals (or strings/ints) with at most two fractional digits,
        which JournalLedger re-checks when the request is posted.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
        self.currencies = CurrencyConverter(session)

    def _date(self, journal_date: date | None) -> date:
        return journal_date if journal_date is not None else self.clock.today()

    def receipt_voucher(
        self,
        reference_id: str,
        cash_account_id: int,
        counter_account_id: int,
        currency_id: int,
        amount,
        journal_date: date | None = None,
        branch_id: int | None = None,
        notes: str | None = None,
        created_by: str = "system",
    ) -> PostingRequest:
        """Money in: cash box or bank debited, counter account credited."""
        amount = _positive_amount(amount, "amount")
        return PostingRequest(
            legs=(
                LegSpec.debit_leg(cash_account_id, currency_id, amount),
                LegSpec.credit_leg(counter_account_id, currency_id, amount),
            ),
            reference_type=ReferenceType.RECEIPT.value,
            reference_id=str(reference_id),
            journal_date=self._date(journal_date),
            branch_id=branch_id,
            created_by=created_by,
            notes=notes,
        )

    def payment_voucher(
        self,
        reference_id: str,
        cash_account_id: int,
        counter_account_id: int,
        currency_id: int,
        amount,
        journal_date: date | None = None,
        branch_id: int | None = None,
        notes: str | None = None,
        created_by: str = "system",
    ) -> PostingRequest:
        """Money out: counter account debited, cash box or bank credited."""
        amount = _positive_amount(amount, "amount")
        return PostingRequest(
            legs=(
                LegSpec.debit_leg(counter_account_id, currency_id, amount),
                LegSpec.credit_leg(cash_account_id, currency_id, amount),
            ),
            reference_type=ReferenceType.PAYMENT.value,
            reference_id=str(reference_id),
            journal_date=self._date(journal_date),
            branch_id=branch_id,
            created_by=created_by,
            notes=notes,
        )

    def manual_journal(
        self,
        reference_id: str,
        legs: Sequence[LegSpec | Mapping[str, Any]],
        journal_date: date | None = None,
        branch_id: int | None = None,
        notes: str | None = None,
        created_by: str = "system",
    ) -> PostingRequest:
        """Arbitrary legs under reference type ``journal``."""
        return PostingRequest(
            legs=tuple(_leg(leg) for leg in legs),
            reference_type=ReferenceType.JOURNAL.value,
            reference_id=str(reference_id),
            journal_date=self._date(journal_date),
            branch_id=branch_id,
            created_by=created_by,
            notes=notes,
        )

    def currency_exchange(
        self,
        reference_id: str,
        mode: ExchangeMode | str,
        from_currency_id: int,
        from_account_id: int,
        to_currency_id: int,
        to_account_id: int,
        transit_account_id: int,
        from_amount=None,
        to_amount=None,
        from_rate=None,
        to_rate=None,
        journal_date: date | None = None,
        branch_id: int | None = None,
        customer_name: str | None = None,
        customer_phone: str | None = None,
        notes: str | None = None,
        created_by: str = "system",
    ) -> PostingRequest:
        """
        Exchange from_currency against to_currency through a transit account.

        Rates default to the currencies' stored rates and are validated
        against their bounds.  A missing amount is derived from the other
        one: ``to_amount = from_amount * from_rate / to_rate`` rounded to
        two places (and the inverse for from_amount).

        For BUY the business takes in from_currency on from_account and
        pays to_currency out of to_account; SELL mirrors both pairs.

        Raises:
            ValidationError: Bad mode, no amount, same currency twice.
            RateOutOfRangeError: A rate outside its currency's bounds.
            CurrencyNotFoundError: Unknown currency.
        """
        try:
            mode = ExchangeMode(mode.value if isinstance(mode, ExchangeMode) else mode)
        except ValueError:
            raise ValidationError("mode", f"{mode!r} is not one of: buy, sell") from None
        if from_currency_id == to_currency_id:
            raise ValidationError("to_currency_id", "exchange needs two different currencies")

        source = self.currencies.get(from_currency_id)
        target = self.currencies.get(to_currency_id)
        from_rate = self.currencies.validate_rate(
            source, from_rate if from_rate is not None else source.exchange_rate
        )
        to_rate = self.currencies.validate_rate(
            target, to_rate if to_rate is not None else target.exchange_rate
        )

        if from_amount is None and to_amount is None:
            raise ValidationError("from_amount", "from_amount or to_amount is required")
        if from_amount is not None:
            from_amount = _positive_amount(from_amount, "from_amount")
        if to_amount is not None:
            to_amount = _positive_amount(to_amount, "to_amount")
        if to_amount is None:
            to_amount = round_money(from_amount * from_rate / to_rate)
        elif from_amount is None:
            from_amount = round_money(to_amount * to_rate / from_rate)

        text = exchange_notes(mode, customer_name, customer_phone, notes)
        if mode is ExchangeMode.BUY:
            legs = (
                LegSpec.debit_leg(from_account_id, from_currency_id, from_amount, exchange_rate=from_rate),
                LegSpec.credit_leg(transit_account_id, from_currency_id, from_amount, exchange_rate=from_rate),
                LegSpec.debit_leg(transit_account_id, to_currency_id, to_amount, exchange_rate=to_rate),
                LegSpec.credit_leg(to_account_id, to_currency_id, to_amount, exchange_rate=to_rate),
            )
        else:
            legs = (
                LegSpec.debit_leg(transit_account_id, from_currency_id, from_amount, exchange_rate=from_rate),
                LegSpec.credit_leg(from_account_id, from_currency_id, from_amount, exchange_rate=from_rate),
                LegSpec.debit_leg(to_account_id, to_currency_id, to_amount, exchange_rate=to_rate),
                LegSpec.credit_leg(transit_account_id, to_currency_id, to_amount, exchange_rate=to_rate),
            )

        logger.debug(
            "exchange_voucher_built",
            extra={
                "mode": mode.value,
                "from_currency_id": from_currency_id,
                "to_currency_id": to_currency_id,
                "from_amount": from_amount,
                "to_amount": to_amount,
            },
        )
        return PostingRequest(
            legs=legs,
            reference_type=ReferenceType.EXCHANGE.value,
            reference_id=str(reference_id),
            journal_date=self._date(journal_date),
            branch_id=branch_id,
            created_by=created_by,
            notes=text,
        )
