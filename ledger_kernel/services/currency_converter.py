"""
CurrencyConverter -- currency registry, rate validation and conversion.

Responsibility:
    Owns Currency rows (create, rate updates, rate bounds, local flag) and
    converts amounts between currencies through the local baseline.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - At most one local currency (service check plus a partial unique index).
    - The local currency's rate is 1 and cannot be changed.
    - Rates are strictly positive and, when bounds are set, inside
      [min_rate, max_rate].
    - convert() never rounds; callers round once at the storage or display
      boundary with round_money().

Failure modes:
    - CurrencyNotFoundError, RateOutOfRangeError, MultipleLocalCurrenciesError,
      LocalCurrencyNotConfiguredError, ValidationError.
"""

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_kernel.db.types import to_decimal
from ledger_kernel.domain.dtos import CurrencyInfo
from ledger_kernel.exceptions import (
    CurrencyNotFoundError,
    LocalCurrencyNotConfiguredError,
    MultipleLocalCurrenciesError,
    RateOutOfRangeError,
    ValidationError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.currency import Currency
from ledger_kernel.services.base import BaseService

logger = get_logger("services.currency")

ONE = Decimal("1")

CurrencyRef = int | CurrencyInfo | Currency


def _positive_rate(value, field_name: str = "exchange_rate") -> Decimal:
    try:
        rate = to_decimal(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(field_name, str(exc)) from None
    if not rate.is_finite() or rate <= 0:
        raise ValidationError(field_name, f"rate must be positive, got {value!r}")
    return rate


class CurrencyConverter(BaseService[Currency]):
    """
    Currency service.

    Contract:
        Currency arguments may be an id, a CurrencyInfo or a Currency row.
        Results are CurrencyInfo DTOs or Decimals.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get(self, currency_id: int) -> Currency:
        currency = self.session.get(Currency, currency_id)
        if currency is None:
            raise CurrencyNotFoundError(currency_id)
        return currency

    def _info(self, currency: CurrencyRef) -> CurrencyInfo:
        if isinstance(currency, CurrencyInfo):
            return currency
        if isinstance(currency, Currency):
            return CurrencyInfo.from_model(currency)
        return CurrencyInfo.from_model(self._get(currency))

    def get(self, currency_id: int) -> CurrencyInfo:
        return CurrencyInfo.from_model(self._get(currency_id))

    def get_by_code(self, code: str) -> CurrencyInfo:
        currency = self.session.execute(
            select(Currency).where(Currency.code == code)
        ).scalar_one_or_none()
        if currency is None:
            raise CurrencyNotFoundError(code)
        return CurrencyInfo.from_model(currency)

    def list_currencies(self) -> list[CurrencyInfo]:
        rows = self.session.execute(select(Currency).order_by(Currency.code)).scalars()
        return [CurrencyInfo.from_model(row) for row in rows]

    def _local_row(self) -> Currency | None:
        return self.session.execute(
            select(Currency).where(Currency.is_local.is_(True))
        ).scalar_one_or_none()

    def local_currency(self) -> CurrencyInfo:
        """
        Raises:
            LocalCurrencyNotConfiguredError: No currency is marked local.
        """
        local = self._local_row()
        if local is None:
            raise LocalCurrencyNotConfiguredError()
        return CurrencyInfo.from_model(local)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def convert(self, amount, from_currency: CurrencyRef, to_currency: CurrencyRef) -> Decimal:
        """
        amount * from.exchange_rate / to.exchange_rate, unrounded.

        Rates are units of local currency per unit, so the local currency
        (rate 1) is the pivot.
        """
        amount = to_decimal(amount)
        source = self._info(from_currency)
        target = self._info(to_currency)
        if source.id == target.id:
            return amount
        return amount * source.exchange_rate / target.exchange_rate

    def to_local(self, amount, currency: CurrencyRef) -> Decimal:
        return self.convert(amount, currency, self.local_currency())

    def validate_rate(self, currency: CurrencyRef, proposed_rate) -> Decimal:
        """
        Check a manually entered rate against the currency's bounds.

        Returns:
            The rate as a Decimal.

        Raises:
            ValidationError: Non-numeric or non-positive rate.
            RateOutOfRangeError: Outside [min_rate, max_rate] where set.
        """
        rate = _positive_rate(proposed_rate)
        info = self._info(currency)
        below = info.min_rate is not None and rate < info.min_rate
        above = info.max_rate is not None and rate > info.max_rate
        if below or above:
            logger.warning(
                "rate_out_of_range",
                extra={
                    "currency_code": info.code,
                    "proposed_rate": rate,
                    "min_rate": info.min_rate,
                    "max_rate": info.max_rate,
                },
            )
            raise RateOutOfRangeError(info.code, rate, info.min_rate, info.max_rate)
        return rate

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def create_currency(
        self,
        code: str,
        name: str,
        exchange_rate=ONE,
        symbol: str | None = None,
        is_local: bool = False,
        min_rate=None,
        max_rate=None,
        created_by: str = "system",
    ) -> int:
        """
        Register a currency and return its id.

        A local currency is stored with rate 1 whatever exchange_rate says.

        Raises:
            MultipleLocalCurrenciesError: is_local while another is local.
            RateOutOfRangeError: exchange_rate outside the given bounds.
            ValidationError: Duplicate code, bad rate or inverted bounds.
        """
        if not code or not name:
            raise ValidationError("currency", "code and name are required")
        existing = self.session.execute(
            select(Currency.id).where(Currency.code == code)
        ).first()
        if existing is not None:
            raise ValidationError("code", f"currency code {code!r} already in use")

        min_rate = _positive_rate(min_rate, "min_rate") if min_rate is not None else None
        max_rate = _positive_rate(max_rate, "max_rate") if max_rate is not None else None
        if min_rate is not None and max_rate is not None and min_rate > max_rate:
            raise ValidationError("min_rate", f"min_rate {min_rate} exceeds max_rate {max_rate}")

        if is_local:
            local = self._local_row()
            if local is not None:
                raise MultipleLocalCurrenciesError(local.code, code)
            rate = ONE
        else:
            rate = _positive_rate(exchange_rate)
            bounds = CurrencyInfo(0, code, name, rate, min_rate=min_rate, max_rate=max_rate)
            self.validate_rate(bounds, rate)

        currency = Currency(
            code=code,
            name=name,
            symbol=symbol,
            exchange_rate=rate,
            is_local=is_local,
            min_rate=min_rate,
            max_rate=max_rate,
            created_by=created_by,
        )
        self.session.add(currency)
        self.session.flush()
        logger.info(
            "currency_created",
            extra={"currency_id": currency.id, "code": code, "is_local": is_local},
        )
        return currency.id

    def update_rate(self, currency_id: int, rate) -> Decimal:
        """
        Set a new exchange rate after validating it against the bounds.

        Raises:
            ValidationError: The currency is local (its rate is fixed at 1).
            RateOutOfRangeError: Outside [min_rate, max_rate].
        """
        currency = self._get(currency_id)
        if currency.is_local:
            raise ValidationError("exchange_rate", "the local currency's rate is fixed at 1")
        new_rate = self.validate_rate(currency, rate)
        old_rate = currency.exchange_rate
        currency.exchange_rate = new_rate
        self.session.flush()
        logger.info(
            "currency_rate_updated",
            extra={"currency_id": currency_id, "old_rate": old_rate, "new_rate": new_rate},
        )
        return new_rate

    def set_bounds(self, currency_id: int, min_rate=None, max_rate=None) -> None:
        """Replace the manual-rate bounds; the current rate must satisfy them."""
        currency = self._get(currency_id)
        min_rate = _positive_rate(min_rate, "min_rate") if min_rate is not None else None
        max_rate = _positive_rate(max_rate, "max_rate") if max_rate is not None else None
        if min_rate is not None and max_rate is not None and min_rate > max_rate:
            raise ValidationError("min_rate", f"min_rate {min_rate} exceeds max_rate {max_rate}")
        if not currency.is_local:
            probe = CurrencyInfo(
                currency.id, currency.code, currency.name, currency.exchange_rate,
                min_rate=min_rate, max_rate=max_rate,
            )
            self.validate_rate(probe, currency.exchange_rate)
        currency.min_rate = min_rate
        currency.max_rate = max_rate
        self.session.flush()
        logger.info(
            "currency_bounds_updated",
            extra={"currency_id": currency_id, "min_rate": min_rate, "max_rate": max_rate},
        )

    def set_local(self, currency_id: int) -> None:
        """
        Mark a currency as the local baseline and pin its rate to 1.

        Raises:
            MultipleLocalCurrenciesError: A different currency is already local.
        """
        currency = self._get(currency_id)
        local = self._local_row()
        if local is not None and local.id != currency.id:
            raise MultipleLocalCurrenciesError(local.code, currency.code)
        currency.is_local = True
        currency.exchange_rate = ONE
        self.session.flush()
        logger.info("local_currency_set", extra={"currency_id": currency_id, "code": currency.code})
