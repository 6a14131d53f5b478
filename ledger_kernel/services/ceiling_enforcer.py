"""
CeilingEnforcer -- credit/debit limits on accounts and account groups.

Responsibility:
    Decides whether a prospective balance breaches a configured ceiling and
    what happens if it does (block, warn or allow), and administers the
    ceiling rows themselves.

Architecture position:
    Kernel > Services -- imperative shell.  Reads Account, AccountCeiling
    and ledger balances; never writes ledger rows.  Called by
    PostingService between the account lock and the append, so the check
    and the write see one balance snapshot.

Invariants enforced:
    - An account-scoped ceiling overrides a group-scoped one for the same
      account and currency.
    - Only the configured side is compared: a debit ceiling bounds
      debit - credit, a credit ceiling bounds credit - debit.
    - Reaching the ceiling exactly is allowed; only exceeding it is a breach.
    - A posting that does not grow the constrained side is never rejected,
      even on an account already past its ceiling.

Failure modes:
    - CeilingExceededError for a breached ``block`` ceiling.
    - CeilingNotFoundError, AccountNotFoundError, GroupNotFoundError,
      CurrencyNotFoundError, ValidationError from administration.
"""

from collections import defaultdict
from decimal import Decimal
from typing import Iterable, Mapping

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ledger_kernel.db.types import MONEY_DECIMAL_PLACES, ZERO, fractional_digits, to_decimal
from ledger_kernel.domain.dtos import CeilingCheck, CeilingInfo, LegSpec, enum_value
from ledger_kernel.exceptions import (
    AccountNotFoundError,
    CeilingExceededError,
    CeilingNotFoundError,
    CurrencyNotFoundError,
    GroupNotFoundError,
    ValidationError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.account import Account, AccountGroup, NormalBalance
from ledger_kernel.models.ceiling import AccountCeiling, CeilingScope, ExceedAction
from ledger_kernel.models.currency import Currency
from ledger_kernel.services.base import BaseService

logger = get_logger("services.ceiling_enforcer")


def constrained_side(balance: Decimal, account_nature: str) -> Decimal:
    """The balance as seen from the ceiling's side (positive = towards the limit)."""
    return balance if account_nature == NormalBalance.DEBIT.value else -balance


def _parse(enum_cls, value, field_name: str):
    try:
        return enum_cls(enum_value(value))
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(field_name, f"{value!r} is not one of: {allowed}") from None


def _ceiling_amount(value) -> Decimal:
    try:
        amount = to_decimal(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("ceiling_amount", str(exc)) from None
    if not amount.is_finite() or amount < ZERO:
        raise ValidationError("ceiling_amount", "must be zero or positive")
    if fractional_digits(amount) > MONEY_DECIMAL_PLACES:
        raise ValidationError("ceiling_amount", f"at most {MONEY_DECIMAL_PLACES} fractional digits")
    return amount


class CeilingEnforcer(BaseService[AccountCeiling]):
    """
    Ceiling checks and ceiling administration.

    Contract:
        check_posting() raises only for ``block``; ``warn`` comes back as
        CeilingCheck(allowed=True, warning=True) for the caller to surface.

    Non-goals:
        - Group totals.  A group ceiling limits each member account on its
          own, not the sum of the group.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def find_ceiling(self, account_id: int, currency_id: int) -> CeilingInfo | None:
        """Most specific ceiling for (account, currency): account scope wins."""
        own = self.session.execute(
            select(AccountCeiling).where(
                AccountCeiling.scope == CeilingScope.ACCOUNT.value,
                AccountCeiling.account_id == account_id,
                AccountCeiling.currency_id == currency_id,
            )
        ).scalar_one_or_none()
        if own is not None:
            return CeilingInfo.from_model(own)

        group_id = self.session.execute(
            select(Account.group_id).where(Account.id == account_id)
        ).scalar_one_or_none()
        if group_id is None:
            return None
        inherited = self.session.execute(
            select(AccountCeiling).where(
                AccountCeiling.scope == CeilingScope.GROUP.value,
                AccountCeiling.account_group_id == group_id,
                AccountCeiling.currency_id == currency_id,
            )
        ).scalar_one_or_none()
        return CeilingInfo.from_model(inherited) if inherited is not None else None

    def check_posting(
        self,
        account_id: int,
        currency_id: int,
        prospective_balance: Decimal,
        current_balance: Decimal | None = None,
    ) -> CeilingCheck:
        """
        Evaluate the balance an account would have after a posting.

        Args:
            prospective_balance: debit - credit after the posting.
            current_balance: debit - credit before it.  When given, a
                posting that does not move the constrained side upwards is
                always allowed.

        Raises:
            CeilingExceededError: The applicable ceiling says ``block``.
        """
        prospective_balance = to_decimal(prospective_balance)
        ceiling = self.find_ceiling(account_id, currency_id)
        if ceiling is None:
            return CeilingCheck(True, False, None, account_id, currency_id, prospective_balance)

        prospective_side = constrained_side(prospective_balance, ceiling.account_nature)
        exceeded = prospective_side > ceiling.ceiling_amount
        if exceeded and current_balance is not None:
            current_side = constrained_side(to_decimal(current_balance), ceiling.account_nature)
            if prospective_side <= current_side:
                exceeded = False

        if not exceeded:
            return CeilingCheck(True, False, ceiling, account_id, currency_id, prospective_balance)

        action = ExceedAction(ceiling.exceed_action)
        log_fields = {
            "account_id": account_id,
            "currency_id": currency_id,
            "ceiling_id": ceiling.id,
            "ceiling_amount": ceiling.ceiling_amount,
            "prospective_balance": prospective_balance,
            "account_nature": ceiling.account_nature,
            "exceed_action": action.value,
        }
        if action is ExceedAction.BLOCK:
            logger.warning("ceiling_blocked", extra=log_fields)
            raise CeilingExceededError(
                account_id=account_id,
                currency_id=currency_id,
                ceiling_id=ceiling.id,
                ceiling_amount=ceiling.ceiling_amount,
                prospective_balance=prospective_balance,
                account_nature=ceiling.account_nature,
            )
        if action is ExceedAction.WARN:
            logger.warning("ceiling_warning", extra=log_fields)
            return CeilingCheck(True, True, ceiling, account_id, currency_id, prospective_balance)

        logger.debug("ceiling_exceeded_allowed", extra=log_fields)
        return CeilingCheck(True, False, ceiling, account_id, currency_id, prospective_balance)

    def check_legs(
        self,
        legs: Iterable[LegSpec],
        current_balances: Mapping[tuple[int, int], Decimal],
    ) -> list[CeilingCheck]:
        """
        Check every (account, currency) a posting touches.

        Args:
            legs: Validated legs of one posting.
            current_balances: debit - credit per (account_id, currency_id)
                read inside the posting's transaction.

        Returns:
            The warnings (warn ceilings that were exceeded), in
            (account_id, currency_id) order.

        Raises:
            CeilingExceededError: On the first blocking breach.
        """
        deltas: dict[tuple[int, int], Decimal] = defaultdict(lambda: ZERO)
        for leg in legs:
            deltas[(leg.account_id, leg.currency_id)] += leg.debit - leg.credit

        warnings = []
        for key in sorted(deltas):
            current = current_balances.get(key, ZERO)
            check = self.check_posting(key[0], key[1], current + deltas[key], current_balance=current)
            if check.warning:
                warnings.append(check)
        return warnings

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def _get(self, ceiling_id: int) -> AccountCeiling:
        ceiling = self.session.get(AccountCeiling, ceiling_id)
        if ceiling is None:
            raise CeilingNotFoundError(ceiling_id)
        return ceiling

    def get_ceiling(self, ceiling_id: int) -> CeilingInfo:
        return CeilingInfo.from_model(self._get(ceiling_id))

    def set_ceiling(
        self,
        scope: CeilingScope | str,
        target_id: int,
        currency_id: int,
        ceiling_amount,
        account_nature: NormalBalance | str | None = None,
        exceed_action: ExceedAction | str = ExceedAction.BLOCK,
        created_by: str = "system",
    ) -> int:
        """
        Create the ceiling for (target, currency), or replace the existing one.

        account_nature defaults to the account's own nature for account
        scope and to debit for group scope.

        Returns:
            The ceiling id.
        """
        scope = _parse(CeilingScope, scope, "scope")
        action = _parse(ExceedAction, exceed_action, "exceed_action")
        amount = _ceiling_amount(ceiling_amount)
        if self.session.get(Currency, currency_id) is None:
            raise CurrencyNotFoundError(currency_id)

        if scope is CeilingScope.ACCOUNT:
            account = self.session.get(Account, target_id)
            if account is None:
                raise AccountNotFoundError(target_id)
            default_nature = account.nature_enum
            target_column = AccountCeiling.account_id
        else:
            if self.session.get(AccountGroup, target_id) is None:
                raise GroupNotFoundError(target_id)
            default_nature = NormalBalance.DEBIT
            target_column = AccountCeiling.account_group_id
        nature = _parse(NormalBalance, account_nature or default_nature, "account_nature")

        ceiling = self.session.execute(
            select(AccountCeiling).where(
                target_column == target_id, AccountCeiling.currency_id == currency_id
            )
        ).scalar_one_or_none()
        if ceiling is None:
            ceiling = AccountCeiling(
                scope=scope.value,
                account_id=target_id if scope is CeilingScope.ACCOUNT else None,
                account_group_id=target_id if scope is CeilingScope.GROUP else None,
                currency_id=currency_id,
                created_by=created_by,
            )
            self.session.add(ceiling)
        ceiling.ceiling_amount = amount
        ceiling.account_nature = nature.value
        ceiling.exceed_action = action.value
        self.session.flush()

        logger.info(
            "ceiling_set",
            extra={
                "ceiling_id": ceiling.id,
                "scope": scope.value,
                "target_id": target_id,
                "currency_id": currency_id,
                "ceiling_amount": amount,
                "exceed_action": action.value,
            },
        )
        return ceiling.id

    def update_ceiling(
        self,
        ceiling_id: int,
        ceiling_amount=None,
        account_nature: NormalBalance | str | None = None,
        exceed_action: ExceedAction | str | None = None,
    ) -> CeilingInfo:
        ceiling = self._get(ceiling_id)
        if ceiling_amount is not None:
            ceiling.ceiling_amount = _ceiling_amount(ceiling_amount)
        if account_nature is not None:
            ceiling.account_nature = _parse(NormalBalance, account_nature, "account_nature").value
        if exceed_action is not None:
            ceiling.exceed_action = _parse(ExceedAction, exceed_action, "exceed_action").value
        self.session.flush()
        logger.info("ceiling_updated", extra={"ceiling_id": ceiling_id})
        return CeilingInfo.from_model(ceiling)

    def delete_ceiling(self, ceiling_id: int) -> None:
        ceiling = self._get(ceiling_id)
        self.session.delete(ceiling)
        self.session.flush()
        logger.info("ceiling_deleted", extra={"ceiling_id": ceiling_id})

    def list_ceilings(
        self,
        search: str | None = None,
        currency_id: int | None = None,
    ) -> list[CeilingInfo]:
        """
        Ceilings ordered by id, optionally filtered by currency and by a
        case-insensitive match on the target's name or code.
        """
        query = (
            select(AccountCeiling)
            .outerjoin(Account, AccountCeiling.account_id == Account.id)
            .outerjoin(AccountGroup, AccountCeiling.account_group_id == AccountGroup.id)
            .order_by(AccountCeiling.id)
        )
        if currency_id is not None:
            query = query.where(AccountCeiling.currency_id == currency_id)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.where(
                or_(
                    Account.name.ilike(pattern),
                    Account.code.ilike(pattern),
                    AccountGroup.name.ilike(pattern),
                    AccountGroup.code.ilike(pattern),
                )
            )
        return [CeilingInfo.from_model(c) for c in self.session.execute(query).scalars()]
