"""
Module: ledger_kernel.selectors.ledger_selector
Responsibility: Read-only ledger queries: ordered legs for statements,
    per-account balances for ceilings, and per-currency totals for balance
    verification.  Balances are never stored; every figure is summed from
    journal_entries at query time.
Architecture position: Kernel > Selectors.  May import from models/,
    domain DTOs and selectors/base.py.  MUST NOT import from services/.

Invariants enforced:
    - Leg order is (journal_date, posting seq, leg id) ascending: date first,
      then insertion order.
    - Sums run in SQL over scaled-integer columns, so they are exact on
      every backend.

Failure modes:
    - Returns empty results or zero balances when nothing matches.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ledger_kernel.db.types import ZERO
from ledger_kernel.domain.dtos import DateRange, LedgerLeg, enum_value
from ledger_kernel.models.account import Account
from ledger_kernel.models.currency import Currency
from ledger_kernel.models.journal import JournalEntry, JournalPosting
from ledger_kernel.selectors.base import BaseSelector


@dataclass
class AccountBalance:
    """Totals for one (account, currency) pair."""

    account_id: int
    currency_id: int
    debit_total: Decimal
    credit_total: Decimal
    leg_count: int

    @property
    def balance(self) -> Decimal:
        """Net balance (debits - credits)."""
        return self.debit_total - self.credit_total


class LedgerSelector(BaseSelector[JournalEntry]):
    """
    Selector for ledger queries.

    Contract:
        Every method filters on the arguments it is given and nothing else;
        branch and currency are explicit parameters, never ambient state.

    Non-goals:
        - No currency conversion; figures are in the leg's own currency.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    def _leg_query(self):
        return (
            select(
                JournalEntry,
                JournalPosting.seq,
                Account.name.label("account_name"),
                Currency.name.label("currency_name"),
            )
            .join(JournalPosting, JournalEntry.posting_id == JournalPosting.id)
            .join(Account, JournalEntry.account_id == Account.id)
            .join(Currency, JournalEntry.currency_id == Currency.id)
            .order_by(JournalEntry.journal_date, JournalPosting.seq, JournalEntry.id)
        )

    @staticmethod
    def _to_dto(entry: JournalEntry, seq: int, account_name: str, currency_name: str) -> LedgerLeg:
        return LedgerLeg(
            id=entry.id,
            posting_id=entry.posting_id,
            seq=seq,
            journal_date=entry.journal_date,
            account_id=entry.account_id,
            account_name=account_name,
            currency_id=entry.currency_id,
            currency_name=currency_name,
            debit=entry.debit,
            credit=entry.credit,
            reference_type=enum_value(entry.reference_type),
            reference_id=entry.reference_id,
            notes=entry.notes,
            branch_id=entry.branch_id,
            exchange_rate=entry.exchange_rate,
            created_by=entry.created_by,
        )

    def legs(
        self,
        account_ids: Iterable[int],
        date_range: DateRange | None = None,
        currency_id: int | None = None,
        branch_id: int | None = None,
    ) -> list[LedgerLeg]:
        """
        Legs of the given accounts inside date_range (inclusive), in
        statement order.
        """
        ids = list(account_ids)
        if not ids:
            return []

        query = self._leg_query().where(JournalEntry.account_id.in_(ids))
        if date_range is not None:
            if date_range.start is not None:
                query = query.where(JournalEntry.journal_date >= date_range.start)
            if date_range.end is not None:
                query = query.where(JournalEntry.journal_date <= date_range.end)
        if currency_id is not None:
            query = query.where(JournalEntry.currency_id == currency_id)
        if branch_id is not None:
            query = query.where(JournalEntry.branch_id == branch_id)

        return [self._to_dto(*row) for row in self.session.execute(query).all()]

    def legs_for_reference(
        self,
        reference_id: str,
        reference_type: str | None = None,
    ) -> list[LedgerLeg]:
        """All legs posted under a reference, in insertion order."""
        query = self._leg_query().where(JournalEntry.reference_id == reference_id)
        if reference_type is not None:
            query = query.where(JournalEntry.reference_type == enum_value(reference_type))
        return [self._to_dto(*row) for row in self.session.execute(query).all()]

    def totals(
        self,
        account_ids: Iterable[int] | None = None,
        before: date | None = None,
        as_of: date | None = None,
        currency_id: int | None = None,
        branch_id: int | None = None,
    ) -> list[AccountBalance]:
        """
        Debit/credit totals per (account, currency).

        Args:
            account_ids: Restrict to these accounts (None = all).
            before: Only legs dated strictly before this date (openings).
            as_of: Only legs dated on or before this date.
        """
        query = select(
            JournalEntry.account_id,
            JournalEntry.currency_id,
            func.sum(JournalEntry.debit).label("debit_total"),
            func.sum(JournalEntry.credit).label("credit_total"),
            func.count(JournalEntry.id).label("leg_count"),
        ).group_by(JournalEntry.account_id, JournalEntry.currency_id)

        if account_ids is not None:
            ids = list(account_ids)
            if not ids:
                return []
            query = query.where(JournalEntry.account_id.in_(ids))
        if before is not None:
            query = query.where(JournalEntry.journal_date < before)
        if as_of is not None:
            query = query.where(JournalEntry.journal_date <= as_of)
        if currency_id is not None:
            query = query.where(JournalEntry.currency_id == currency_id)
        if branch_id is not None:
            query = query.where(JournalEntry.branch_id == branch_id)

        return [
            AccountBalance(
                account_id=row.account_id,
                currency_id=row.currency_id,
                debit_total=row.debit_total if row.debit_total is not None else ZERO,
                credit_total=row.credit_total if row.credit_total is not None else ZERO,
                leg_count=row.leg_count,
            )
            for row in self.session.execute(query).all()
        ]

    def net_by_account_currency(
        self,
        account_ids: Iterable[int],
        before: date | None = None,
        currency_id: int | None = None,
        branch_id: int | None = None,
    ) -> dict[tuple[int, int], Decimal]:
        """(account_id, currency_id) -> debit - credit."""
        return {
            (row.account_id, row.currency_id): row.balance
            for row in self.totals(
                account_ids, before=before, currency_id=currency_id, branch_id=branch_id
            )
        }

    def balance(
        self,
        account_id: int,
        currency_id: int,
        as_of: date | None = None,
        branch_id: int | None = None,
    ) -> Decimal:
        """Net (debit - credit) of one account in one currency."""
        rows = self.totals(
            [account_id], as_of=as_of, currency_id=currency_id, branch_id=branch_id
        )
        return sum((row.balance for row in rows), ZERO)

    def balances(
        self,
        pairs: Sequence[tuple[int, int]],
    ) -> dict[tuple[int, int], Decimal]:
        """Net balance for each (account_id, currency_id); missing pairs are zero."""
        wanted = set(pairs)
        result = {pair: ZERO for pair in wanted}
        for row in self.totals({account_id for account_id, _ in wanted}):
            key = (row.account_id, row.currency_id)
            if key in wanted:
                result[key] = row.balance
        return result

    def currency_totals(self) -> dict[int, tuple[Decimal, Decimal]]:
        """currency_id -> (sum of debits, sum of credits) over the whole ledger."""
        totals: dict[int, list[Decimal]] = defaultdict(lambda: [ZERO, ZERO])
        for row in self.totals():
            totals[row.currency_id][0] += row.debit_total
            totals[row.currency_id][1] += row.credit_total
        return {currency_id: (d, c) for currency_id, (d, c) in totals.items()}

    def leg_count(self, account_ids: Iterable[int] | None = None) -> int:
        query = select(func.count(JournalEntry.id))
        if account_ids is not None:
            query = query.where(JournalEntry.account_id.in_(list(account_ids)))
        return self.session.execute(query).scalar_one()

    def posting_count(self) -> int:
        return self.session.execute(select(func.count(JournalPosting.id))).scalar_one()
