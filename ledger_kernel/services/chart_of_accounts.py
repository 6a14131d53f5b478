"""
ChartOfAccounts -- account hierarchy and group administration.

Responsibility:
    Owns the lifecycle of Account and AccountGroup rows: create, rename,
    re-parent, delete and group membership.  Validates structural
    placement (main/sub levels, parent existence, acyclicity) and answers
    "may this account receive postings?".

Architecture position:
    Kernel > Services -- imperative shell.  Pure tree logic lives in
    domain/account_tree.py; this service loads the arena and persists.

Invariants enforced:
    - A sub account always has a parent, and that parent is a main account.
    - A main account is a root or the child of another main account.
    - The parent graph stays acyclic (ancestor walk on every re-parent).
    - Only active sub accounts are postable.
    - An account with children or ledger legs is never deleted.

Failure modes:
    - AccountNotFoundError, ParentNotFoundError, InvalidLevelCombinationError,
      CycleDetectedError, AccountNotPostableError, AccountReferencedError,
      GroupNotFoundError, ValidationError.
"""

from typing import Iterable, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from ledger_kernel.domain import account_tree
from ledger_kernel.domain.account_tree import AccountNode
from ledger_kernel.domain.dtos import AccountInfo, enum_value
from ledger_kernel.exceptions import (
    AccountNotFoundError,
    AccountNotPostableError,
    AccountReferencedError,
    CycleDetectedError,
    GroupNotFoundError,
    InvalidLevelCombinationError,
    ParentNotFoundError,
    ValidationError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.account import Account, AccountGroup, AccountLevel, NormalBalance
from ledger_kernel.models.ceiling import AccountCeiling
from ledger_kernel.models.journal import JournalEntry
from ledger_kernel.services.base import BaseService

logger = get_logger("services.chart_of_accounts")


def _parse_enum(enum_cls, value, field_name: str):
    try:
        return enum_cls(enum_value(value))
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(field_name, f"{value!r} is not one of: {allowed}") from None


class ChartOfAccounts(BaseService[Account]):
    """
    Chart of accounts service.

    Contract:
        Methods return ids or AccountInfo DTOs, never ORM rows.  Changes are
        flushed into the caller's transaction.

    Non-goals:
        - Stored balances.  Main-account balances are computed by statements.
        - Changing an account's code on re-parent; codes are stable keys.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def _get_group(self, group_id: int) -> AccountGroup:
        group = self.session.get(AccountGroup, group_id)
        if group is None:
            raise GroupNotFoundError(group_id)
        return group

    def get(self, account_id: int) -> AccountInfo:
        return AccountInfo.from_model(self._get(account_id))

    def get_by_code(self, code: str) -> AccountInfo:
        account = self.session.execute(
            select(Account).where(Account.code == code)
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(code)
        return AccountInfo.from_model(account)

    def list_accounts(self, include_inactive: bool = True) -> list[AccountInfo]:
        query = select(Account)
        if not include_inactive:
            query = query.where(Account.is_active.is_(True))
        accounts = [AccountInfo.from_model(a) for a in self.session.execute(query).scalars()]
        return sorted(accounts, key=lambda a: (account_tree.code_sort_key(a.code), a.id))

    def _parent_map(self) -> dict[int, int | None]:
        rows = self.session.execute(select(Account.id, Account.parent_id)).all()
        return {row.id: row.parent_id for row in rows}

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def _check_placement(self, level: AccountLevel, parent: Account | None) -> None:
        if level is AccountLevel.SUB:
            if parent is None:
                raise ParentNotFoundError(None)
            if parent.level_enum is not AccountLevel.MAIN:
                raise InvalidLevelCombinationError(
                    level.value, parent.level_enum.value, "a sub account's parent must be a main account"
                )
        elif parent is not None and parent.level_enum is not AccountLevel.MAIN:
            raise InvalidLevelCombinationError(
                level.value, parent.level_enum.value, "a main account can only sit under another main account"
            )

    def _generate_code(self, parent: Account | None) -> str:
        if parent is None:
            roots = self.session.execute(
                select(Account.code).where(Account.parent_id.is_(None))
            ).scalars()
            return account_tree.next_root_code(roots)
        siblings = self.session.execute(
            select(Account.code).where(Account.parent_id == parent.id)
        ).scalars()
        code = account_tree.next_child_code(parent.code, siblings)
        # A re-parented account may already own the natural next code
        while self._code_taken(code):
            code = account_tree.next_child_code(parent.code, [code])
        return code

    def _code_taken(self, code: str) -> bool:
        return (
            self.session.execute(select(Account.id).where(Account.code == code)).first()
            is not None
        )

    def create_account(
        self,
        name: str,
        parent_id: int | None,
        level: AccountLevel | str,
        nature: NormalBalance | str | None = None,
        code: str | None = None,
        name_en: str | None = None,
        group_id: int | None = None,
        created_by: str = "system",
    ) -> int:
        """
        Create an account and return its id.

        Preconditions:
            - level "sub" requires parent_id of an existing main account.
            - level "main" accepts no parent, or an existing main parent.

        Postconditions:
            - code is unique: the supplied one, or parent.code + the next
              two-digit ordinal (next integer for roots).
            - nature defaults to the parent's nature, debit for roots.

        Raises:
            ParentNotFoundError: Sub without parent, or unknown parent_id.
            InvalidLevelCombinationError: Parent is a sub account.
            GroupNotFoundError: Unknown group_id.
            ValidationError: Blank name, bad enum value or duplicate code.
        """
        if not name or not name.strip():
            raise ValidationError("name", "account name is required")
        level = _parse_enum(AccountLevel, level, "level")

        parent = None
        if parent_id is not None:
            parent = self.session.get(Account, parent_id)
            if parent is None:
                raise ParentNotFoundError(parent_id)
        self._check_placement(level, parent)

        if nature is None:
            nature = parent.nature_enum if parent is not None else NormalBalance.DEBIT
        nature = _parse_enum(NormalBalance, nature, "nature")

        if group_id is not None:
            self._get_group(group_id)

        if code is None:
            code = self._generate_code(parent)
        elif self._code_taken(code):
            raise ValidationError("code", f"account code {code!r} already in use")

        account = Account(
            code=code,
            name=name.strip(),
            name_en=name_en,
            parent_id=parent_id,
            level=level.value,
            nature=nature.value,
            group_id=group_id,
            is_active=True,
            created_by=created_by,
        )
        self.session.add(account)
        self.session.flush()

        logger.info(
            "account_created",
            extra={
                "account_id": account.id,
                "code": code,
                "level": level.value,
                "parent_id": parent_id,
            },
        )
        return account.id

    def rename_account(self, account_id: int, name: str, name_en: str | None = None) -> None:
        if not name or not name.strip():
            raise ValidationError("name", "account name is required")
        account = self._get(account_id)
        account.name = name.strip()
        if name_en is not None:
            account.name_en = name_en
        self.session.flush()
        logger.info("account_renamed", extra={"account_id": account_id})

    def set_active(self, account_id: int, is_active: bool) -> None:
        account = self._get(account_id)
        account.is_active = is_active
        self.session.flush()
        logger.info(
            "account_activation_changed",
            extra={"account_id": account_id, "is_active": is_active},
        )

    def reparent(self, account_id: int, new_parent_id: int | None) -> None:
        """
        Move an account under a new parent (None = make it a root).

        The ancestor chain of new_parent_id is walked; meeting account_id,
        including new_parent_id == account_id, is a cycle.  Level rules are
        re-checked against the new parent.

        Raises:
            AccountNotFoundError, ParentNotFoundError, CycleDetectedError,
            InvalidLevelCombinationError.
        """
        account = self._get(account_id)
        parent = None
        if new_parent_id is not None:
            parent = self.session.get(Account, new_parent_id)
            if parent is None:
                raise ParentNotFoundError(new_parent_id)
            if account_tree.would_create_cycle(account_id, new_parent_id, self._parent_map()):
                logger.warning(
                    "reparent_cycle_rejected",
                    extra={"account_id": account_id, "new_parent_id": new_parent_id},
                )
                raise CycleDetectedError(account_id, new_parent_id)

        self._check_placement(account.level_enum, parent)

        old_parent_id = account.parent_id
        account.parent_id = new_parent_id
        self.session.flush()
        logger.info(
            "account_reparented",
            extra={
                "account_id": account_id,
                "old_parent_id": old_parent_id,
                "new_parent_id": new_parent_id,
            },
        )

    def delete_account(self, account_id: int) -> None:
        """
        Delete an account that has no children and no ledger legs.

        Ceilings scoped to the account are removed with it.

        Raises:
            AccountReferencedError: Children or legs exist.
        """
        account = self._get(account_id)
        child_count = self.session.execute(
            select(func.count(Account.id)).where(Account.parent_id == account_id)
        ).scalar_one()
        leg_count = self.session.execute(
            select(func.count(JournalEntry.id)).where(JournalEntry.account_id == account_id)
        ).scalar_one()
        if child_count or leg_count:
            raise AccountReferencedError(account_id, child_count, leg_count)

        code = account.code
        self.session.execute(
            delete(AccountCeiling).where(AccountCeiling.account_id == account_id)
        )
        self.session.delete(account)
        self.session.flush()
        logger.info("account_deleted", extra={"account_id": account_id, "code": code})

    def build_tree(self, accounts: Iterable[AccountInfo] | None = None) -> list[AccountNode]:
        """Nested tree sorted by code; loads the whole chart when accounts is None."""
        if accounts is None:
            accounts = self.list_accounts()
        return account_tree.build_tree(accounts)

    def sub_accounts_of(self, main_id: int) -> list[AccountInfo]:
        """
        Every sub account anywhere below a main account, in tree order.

        Raises:
            AccountNotFoundError: Unknown main_id.
            InvalidLevelCombinationError: main_id is a sub account.
        """
        main = self._get(main_id)
        if main.level_enum is not AccountLevel.MAIN:
            raise InvalidLevelCombinationError(
                main.level_enum.value, None, f"account {main_id} is not a main account"
            )
        return account_tree.sub_accounts_under(main_id, self.list_accounts())

    def is_postable(self, account_id: int) -> bool:
        """True only for existing, active sub accounts."""
        account = self.session.get(Account, account_id)
        return account is not None and account.is_sub and account.is_active

    def require_postable(self, account_ids: Iterable[int]) -> dict[int, AccountInfo]:
        """
        Load the accounts and fail on the first one that cannot take a leg.

        Raises:
            AccountNotFoundError, AccountNotPostableError.
        """
        result: dict[int, AccountInfo] = {}
        for account_id in sorted(set(account_ids)):
            account = self._get(account_id)
            if not account.is_sub:
                raise AccountNotPostableError(account_id, "main accounts are aggregation views")
            if not account.is_active:
                raise AccountNotPostableError(account_id, "account is inactive")
            result[account_id] = AccountInfo.from_model(account)
        return result

    def lock_accounts(self, account_ids: Sequence[int]) -> None:
        """
        SELECT ... FOR UPDATE on the account rows, in ascending id order so
        that two postings touching the same accounts never deadlock.  Held
        until the caller's transaction ends.  A no-op on SQLite, where the
        whole database is already write-locked.
        """
        ids = sorted(set(account_ids))
        if not ids:
            return
        self.session.execute(
            select(Account.id).where(Account.id.in_(ids)).order_by(Account.id).with_for_update()
        ).all()

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def create_group(self, name: str, code: str, created_by: str = "system") -> int:
        if not name or not code:
            raise ValidationError("group", "name and code are required")
        exists = self.session.execute(
            select(AccountGroup.id).where(AccountGroup.code == code)
        ).first()
        if exists is not None:
            raise ValidationError("code", f"group code {code!r} already in use")
        group = AccountGroup(name=name, code=code, created_by=created_by)
        self.session.add(group)
        self.session.flush()
        logger.info("account_group_created", extra={"group_id": group.id, "code": code})
        return group.id

    def assign_group(self, account_id: int, group_id: int | None) -> None:
        """Put an account in a group, or take it out with group_id=None."""
        account = self._get(account_id)
        if group_id is not None:
            self._get_group(group_id)
        account.group_id = group_id
        self.session.flush()
        logger.info("account_group_assigned", extra={"account_id": account_id, "group_id": group_id})

    def accounts_in_group(self, group_id: int) -> list[AccountInfo]:
        self._get_group(group_id)
        accounts = self.session.execute(
            select(Account).where(Account.group_id == group_id)
        ).scalars()
        return sorted(
            (AccountInfo.from_model(a) for a in accounts),
            key=lambda a: (account_tree.code_sort_key(a.code), a.id),
        )
