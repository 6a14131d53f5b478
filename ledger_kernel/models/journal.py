"""
Module: ledger_kernel.models.journal
Responsibility: ORM persistence for posted transactions (headers) and their
    legs -- the single source of financial truth in this system.
Architecture position: Kernel > Models.  May import from db/ only.
    MUST NOT import from services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - (reference_type, reference_id) is unique per posting header.
    - seq is unique and strictly increasing in posting order.
    - A posting is reversed at most once (UNIQUE reversal_of_id).
    - Append-only: ORM listeners in db/immutability.py reject UPDATE and
      DELETE of headers and legs.
    - Per-currency balance is checked by JournalLedger before the flush;
      is_balanced is a read-side convenience only.

Failure modes:
    - IntegrityError on a reused reference or a second reversal (the
      ledger translates these into DuplicateReferenceError /
      TransactionAlreadyReversedError).
    - ImmutabilityViolationError on UPDATE/DELETE.
"""

from collections import defaultdict
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import BigInteger, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_kernel.db.base import IdType, TrackedBase
from ledger_kernel.db.types import MoneyType, RateType

if TYPE_CHECKING:
    from ledger_kernel.models.account import Account
    from ledger_kernel.models.currency import Currency


class ReferenceType(str, Enum):
    """Kind of business document a posting originates from."""

    ORDER = "order"
    JOURNAL = "journal"
    PAYMENT = "payment"
    RECEIPT = "receipt"
    OPENING = "opening"
    EXCHANGE = "exchange"


class JournalPosting(TrackedBase):
    """
    Header shared by every leg of one balanced transaction.

    Contract:
        A posting is identified by (reference_type, reference_id).  Its legs
        are written in the same flush and never change afterwards.

    Guarantees:
        - seq is assigned by SequenceService at append time.
        - reversal_of_id points at the original header for reversals.

    Non-goals:
        - No status lifecycle.  A posting exists or it does not; reversal is
          a second posting, not a state transition.
    """

    __tablename__ = "journal_postings"

    __table_args__ = (
        UniqueConstraint("reference_type", "reference_id", name="uq_posting_reference"),
        UniqueConstraint("seq", name="uq_posting_seq"),
        UniqueConstraint("reversal_of_id", name="uq_posting_reversal_of"),
        Index("idx_posting_reference_id", "reference_id"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    reference_type: Mapped[ReferenceType] = mapped_column(String(20), nullable=False)

    reference_id: Mapped[str] = mapped_column(String(100), nullable=False)

    journal_date: Mapped[date] = mapped_column(nullable=False)

    branch_id: Mapped[int | None] = mapped_column(IdType, nullable=True)

    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # If this is a reversal, points to the original posting
    reversal_of_id: Mapped[int | None] = mapped_column(
        IdType,
        ForeignKey("journal_postings.id"),
        nullable=True,
    )

    legs: Mapped[list["JournalEntry"]] = relationship(
        back_populates="posting",
        lazy="selectin",
        order_by="JournalEntry.id",
    )

    reversal_of: Mapped["JournalPosting | None"] = relationship(
        remote_side="JournalPosting.id",
        foreign_keys=[reversal_of_id],
    )

    def __repr__(self) -> str:
        return f"<JournalPosting {self.reference_type}:{self.reference_id} seq={self.seq}>"

    @property
    def is_reversal(self) -> bool:
        return self.reversal_of_id is not None

    def totals_by_currency(self) -> dict[int, tuple[Decimal, Decimal]]:
        """(debits, credits) per currency_id over the legs."""
        totals: dict[int, list[Decimal]] = defaultdict(lambda: [Decimal("0"), Decimal("0")])
        for leg in self.legs:
            totals[leg.currency_id][0] += leg.debit
            totals[leg.currency_id][1] += leg.credit
        return {currency_id: (d, c) for currency_id, (d, c) in totals.items()}

    @property
    def is_balanced(self) -> bool:
        return all(d == c for d, c in self.totals_by_currency().values())


class JournalEntry(TrackedBase):
    """
    One debit-or-credit leg of a posting.

    Contract:
        Exactly one of debit/credit is non-zero and both are >= 0.  The
        reference, date and branch are copied from the header so that
        statement queries never need the join.

    Guarantees:
        - id is database-assigned and monotonic; together with the header
          seq it gives the insertion order used by statements.
    """

    __tablename__ = "journal_entries"

    __table_args__ = (
        Index("idx_entry_posting", "posting_id"),
        Index("idx_entry_account_date", "account_id", "journal_date"),
        Index("idx_entry_account_currency", "account_id", "currency_id"),
        Index("idx_entry_reference", "reference_type", "reference_id"),
    )

    posting_id: Mapped[int] = mapped_column(
        IdType,
        ForeignKey("journal_postings.id"),
        nullable=False,
    )

    journal_date: Mapped[date] = mapped_column(nullable=False)

    account_id: Mapped[int] = mapped_column(
        IdType,
        ForeignKey("accounts.id"),
        nullable=False,
    )

    currency_id: Mapped[int] = mapped_column(
        IdType,
        ForeignKey("currencies.id"),
        nullable=False,
    )

    debit: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, default=Decimal("0"))

    credit: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, default=Decimal("0"))

    # Rate used on exchange legs (units of local per unit of this currency)
    exchange_rate: Mapped[Decimal | None] = mapped_column(RateType, nullable=True)

    reference_type: Mapped[ReferenceType] = mapped_column(String(20), nullable=False)

    reference_id: Mapped[str] = mapped_column(String(100), nullable=False)

    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    branch_id: Mapped[int | None] = mapped_column(IdType, nullable=True)

    posting: Mapped[JournalPosting] = relationship(back_populates="legs")

    account: Mapped["Account"] = relationship()

    currency: Mapped["Currency"] = relationship()

    def __repr__(self) -> str:
        return (
            f"<JournalEntry {self.id} account={self.account_id} "
            f"D={self.debit} C={self.credit}>"
        )

    @property
    def net(self) -> Decimal:
        """debit - credit."""
        return self.debit - self.credit
