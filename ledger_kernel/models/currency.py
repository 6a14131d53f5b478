"""
Module: ledger_kernel.models.currency
Responsibility: ORM persistence for currencies and their rates against the
    local baseline currency.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced (by CurrencyConverter):
    - At most one currency has is_local = True, and its rate is 1.
    - exchange_rate > 0; when set, min_rate <= exchange_rate <= max_rate.
"""

from decimal import Decimal

from sqlalchemy import Boolean, Index, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase
from ledger_kernel.db.types import RateType


class Currency(TrackedBase):
    """A currency known to the ledger."""

    __tablename__ = "currencies"

    __table_args__ = (
        UniqueConstraint("code", name="uq_currency_code"),
        # At most one local currency
        Index(
            "uq_currency_single_local",
            "is_local",
            unique=True,
            postgresql_where=text("is_local"),
            sqlite_where=text("is_local"),
        ),
    )

    code: Mapped[str] = mapped_column(String(10), nullable=False)

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    symbol: Mapped[str | None] = mapped_column(String(10), nullable=True)

    # Units of local currency per one unit of this currency
    exchange_rate: Mapped[Decimal] = mapped_column(RateType, nullable=False)

    is_local: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Bounds for manually entered rates (None = unbounded)
    min_rate: Mapped[Decimal | None] = mapped_column(RateType, nullable=True)
    max_rate: Mapped[Decimal | None] = mapped_column(RateType, nullable=True)

    def __repr__(self) -> str:
        return f"<Currency {self.code} rate={self.exchange_rate}>"
