"""
StatementGenerator -- account statements with carried-forward openings.

Responsibility:
    Resolves a StatementFilter to a set of sub accounts, reads their legs
    and pre-range totals, and hands them to domain/statement.py to build
    detailed (running balance) or summary statements grouped by currency.

Architecture position:
    Kernel > Services -- read-only.  Reads through LedgerSelector,
    ChartOfAccounts and CurrencyConverter; never flushes.

Invariants enforced:
    - opening + sign * sum(debit - credit over range) == closing, and the
      closing of one range is the opening of the next adjacent range.
    - The opening pseudo-row is structural (is_opening) and counted once.
    - Every read happens in the caller's session.  On PostgreSQL a statement
      that opens its own transaction runs it at REPEATABLE READ, so the
      opening, legs, names and rates come from one snapshot.  A caller that
      already holds a transaction keeps its own isolation level.

Failure modes:
    - InvalidStatementFilterError for anything that makes the filter
      unanswerable: bad target, wrong account level, unknown currency.
    - LocalCurrencyNotConfiguredError when a local equivalent is needed
      and no local currency exists.
"""

from collections import defaultdict
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_kernel.db.types import ZERO
from ledger_kernel.domain import statement as stmt
from ledger_kernel.domain.dtos import AccountInfo, LedgerLeg
from ledger_kernel.domain.statement import (
    DETAILED_COLUMNS,
    SUMMARY_COLUMNS,
    CurrencyGroup,
    Statement,
    StatementFilter,
    StatementMode,
    SummaryBy,
)
from ledger_kernel.exceptions import (
    AccountNotFoundError,
    CurrencyNotFoundError,
    GroupNotFoundError,
    InvalidStatementFilterError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.currency import Currency
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.chart_of_accounts import ChartOfAccounts
from ledger_kernel.services.currency_converter import CurrencyConverter

logger = get_logger("services.statement_generator")

DEFAULT_OPENING_LABEL = "Opening balance"
SNAPSHOT_ISOLATION = "REPEATABLE READ"


class StatementGenerator:
    """
    Statement service.

    Contract:
        generate() accepts a StatementFilter (or its dict form) and returns
        a Statement; Statement.to_payload() is the reporting-screen shape
        ``{opening_balance, list, ...}``.

    Non-goals:
        - Rendering (PDF/Excel); the payload is the hand-off.
    """

    def __init__(
        self,
        session: Session,
        opening_label: str = DEFAULT_OPENING_LABEL,
        chart: ChartOfAccounts | None = None,
        currencies: CurrencyConverter | None = None,
        selector: LedgerSelector | None = None,
    ):
        self.session = session
        self.opening_label = opening_label
        self.chart = chart or ChartOfAccounts(session)
        self.currencies = currencies or CurrencyConverter(session)
        self.selector = selector or LedgerSelector(session)

    # ------------------------------------------------------------------
    # Target resolution
    # ------------------------------------------------------------------

    def resolve(self, statement_filter: StatementFilter) -> tuple[list[AccountInfo], str]:
        """
        Accounts behind the filter's target and the statement nature.

        The nature is the target account's own for an account or main
        account, and debit for a group.
        """
        try:
            if statement_filter.account_id is not None:
                account = self.chart.get(statement_filter.account_id)
                if not account.is_sub:
                    raise InvalidStatementFilterError(
                        "account_id",
                        f"account {account.id} is a main account; use main_account_id",
                    )
                return [account], account.nature

            if statement_filter.main_account_id is not None:
                main = self.chart.get(statement_filter.main_account_id)
                if main.is_sub:
                    raise InvalidStatementFilterError(
                        "main_account_id", f"account {main.id} is a sub account; use account_id"
                    )
                return self.chart.sub_accounts_of(main.id), main.nature

            members = self.chart.accounts_in_group(statement_filter.account_group_id)
            return [a for a in members if a.is_sub], "debit"
        except AccountNotFoundError as exc:
            raise InvalidStatementFilterError("target", f"unknown account {exc.account_id}") from exc
        except GroupNotFoundError as exc:
            raise InvalidStatementFilterError("account_group_id", f"unknown group {exc.group_id}") from exc

    def _currency_names(self, currency_ids) -> dict[int, str]:
        ids = sorted(set(currency_ids))
        if not ids:
            return {}
        rows = self.session.execute(
            select(Currency.id, Currency.name).where(Currency.id.in_(ids))
        ).all()
        return {row.id: row.name for row in rows}

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate(self, statement_filter: StatementFilter | Mapping[str, Any]) -> Statement:
        """
        Build the statement described by the filter.

        Raises:
            InvalidStatementFilterError: The filter cannot be answered.
        """
        if isinstance(statement_filter, Mapping):
            statement_filter = StatementFilter.from_dict(statement_filter)
        elif not isinstance(statement_filter, StatementFilter):
            raise InvalidStatementFilterError(
                "filter", f"expected StatementFilter, got {type(statement_filter).__name__}"
            )

        self._pin_snapshot()

        if statement_filter.currency_id is not None:
            try:
                self.currencies.get(statement_filter.currency_id)
            except CurrencyNotFoundError as exc:
                raise InvalidStatementFilterError(
                    "currency_id", f"unknown currency {statement_filter.currency_id}"
                ) from exc

        accounts, nature = self.resolve(statement_filter)
        sign = 1 if nature == "debit" else -1
        account_ids = [a.id for a in accounts]
        date_range = statement_filter.date_range

        opening_nets: dict[tuple[int, int], Decimal] = {}
        if statement_filter.include_opening and date_range.start is not None:
            opening_nets = self.selector.net_by_account_currency(
                account_ids,
                before=date_range.start,
                currency_id=statement_filter.currency_id,
                branch_id=statement_filter.branch_id,
            )

        legs = self.selector.legs(
            account_ids,
            date_range,
            currency_id=statement_filter.currency_id,
            branch_id=statement_filter.branch_id,
        )

        currency_ids = {currency_id for _, currency_id in opening_nets} | {leg.currency_id for leg in legs}
        if statement_filter.currency_id is not None:
            currency_ids.add(statement_filter.currency_id)
        names = self._currency_names(currency_ids)
        ordered_currencies = sorted(currency_ids, key=lambda cid: (names.get(cid, ""), cid))

        legs_by_currency: dict[int, list[LedgerLeg]] = defaultdict(list)
        for leg in legs:
            legs_by_currency[leg.currency_id].append(leg)

        if statement_filter.mode is StatementMode.DETAILED:
            groups = tuple(
                stmt.detailed_group(
                    legs_by_currency.get(currency_id, []),
                    currency_id=currency_id,
                    currency_name=names.get(currency_id, str(currency_id)),
                    opening_net=sum(
                        (net for (_, cid), net in opening_nets.items() if cid == currency_id),
                        ZERO,
                    ),
                    sign=sign,
                    include_opening=statement_filter.include_opening,
                    opening_date=date_range.start,
                    opening_label=self.opening_label,
                )
                for currency_id in ordered_currencies
            )
            columns = DETAILED_COLUMNS
        else:
            groups = tuple(
                self._summary_group(
                    statement_filter,
                    accounts,
                    sign,
                    currency_id,
                    names.get(currency_id, str(currency_id)),
                    legs_by_currency.get(currency_id, []),
                    opening_nets,
                )
                for currency_id in ordered_currencies
            )
            columns = SUMMARY_COLUMNS[statement_filter.summary_type]

        statement = Statement(
            filter=statement_filter,
            nature=nature,
            opening_balance=self._headline_opening(groups),
            groups=groups,
            columns=columns,
        )
        logger.info(
            "statement_generated",
            extra={
                "mode": statement_filter.mode.value,
                "account_count": len(account_ids),
                "currency_count": len(groups),
                "leg_count": len(legs),
            },
        )
        return statement

    def _summary_group(
        self,
        statement_filter: StatementFilter,
        accounts: list[AccountInfo],
        sign: int,
        currency_id: int,
        currency_name: str,
        legs: list[LedgerLeg],
        opening_nets: Mapping[tuple[int, int], Decimal],
    ) -> CurrencyGroup:
        include_opening = statement_filter.include_opening
        currency_opening = sum(
            (net for (_, cid), net in opening_nets.items() if cid == currency_id),
            ZERO,
        )
        if statement_filter.summary_by is SummaryBy.CURRENCY:
            lines = [
                stmt.summary_line(
                    key_id=currency_id,
                    label=currency_name,
                    currency_id=currency_id,
                    currency_name=currency_name,
                    opening_net=currency_opening,
                    legs=legs,
                    sign=sign,
                    include_opening=include_opening,
                    to_local=self._to_local,
                )
            ]
            return stmt.summary_group(
                currency_id,
                currency_name,
                lines,
                opening_net=currency_opening,
                sign=sign,
                include_opening=include_opening,
            )

        legs_by_account: dict[int, list[LedgerLeg]] = defaultdict(list)
        for leg in legs:
            legs_by_account[leg.account_id].append(leg)
        lines = []
        for account in accounts:
            opening_net = opening_nets.get((account.id, currency_id), ZERO)
            account_legs = legs_by_account.get(account.id, [])
            if not account_legs and (account.id, currency_id) not in opening_nets:
                continue
            lines.append(
                stmt.summary_line(
                    key_id=account.id,
                    label=account.name,
                    currency_id=currency_id,
                    currency_name=currency_name,
                    opening_net=opening_net,
                    legs=account_legs,
                    sign=account.sign,
                    include_opening=include_opening,
                    to_local=self._to_local,
                )
            )
        return stmt.summary_group(
            currency_id,
            currency_name,
            lines,
            opening_net=currency_opening,
            sign=sign,
            include_opening=include_opening,
        )

    def _pin_snapshot(self) -> None:
        """Start the read transaction at REPEATABLE READ on PostgreSQL."""
        if self.session.get_bind().dialect.name != "postgresql":
            return
        if self.session.in_transaction():
            logger.debug("statement_snapshot_inherited")
            return
        self.session.connection(execution_options={"isolation_level": SNAPSHOT_ISOLATION})

    def _to_local(self, amount: Decimal, currency_id: int) -> Decimal:
        return self.currencies.to_local(amount, currency_id)

    def _headline_opening(self, groups: tuple[CurrencyGroup, ...]) -> Decimal:
        if not groups:
            return ZERO
        if len(groups) == 1:
            return groups[0].opening_balance
        if all(group.opening_balance == ZERO for group in groups):
            return ZERO
        return sum(
            (self._to_local(group.opening_balance, group.currency_id) for group in groups),
            ZERO,
        )
