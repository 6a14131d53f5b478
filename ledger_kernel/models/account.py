"""
Module: ledger_kernel.models.account
Responsibility: ORM persistence for the chart of accounts and account groups.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced (by ChartOfAccounts, not by this model):
    - A SUB account always has a parent, and that parent is a MAIN account.
    - A MAIN account is a root or a child of another MAIN account.
    - Only SUB accounts receive postings; MAIN balances are computed views.
    - The parent graph is acyclic.  Children are never stored; they are
      derived from parent_id on demand.
"""

from enum import Enum

from sqlalchemy import Boolean, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import IdType, TrackedBase


class AccountLevel(str, Enum):
    """Position of an account in the hierarchy."""

    MAIN = "main"
    SUB = "sub"


class NormalBalance(str, Enum):
    """Natural balance side of an account."""

    DEBIT = "debit"
    CREDIT = "credit"

    @property
    def sign(self) -> int:
        """+1 when balances read as debit - credit, -1 for credit - debit."""
        return 1 if self is NormalBalance.DEBIT else -1


class AccountGroup(TrackedBase):
    """
    Aggregation axis orthogonal to the parent tree.

    Used by ceilings ("limit every account in this group") and by
    statement filters ("all accounts in group").
    """

    __tablename__ = "account_groups"

    __table_args__ = (
        UniqueConstraint("code", name="uq_account_group_code"),
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    def __repr__(self) -> str:
        return f"<AccountGroup {self.code}: {self.name}>"


class Account(TrackedBase):
    """
    Chart of Accounts entry.

    Contract:
        code is globally unique and sorts siblings.  level and nature are
        plain strings in the database and enum members in Python.
    """

    __tablename__ = "accounts"

    __table_args__ = (
        UniqueConstraint("code", name="uq_account_code"),
        Index("idx_account_parent", "parent_id"),
        Index("idx_account_group", "group_id"),
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False)

    # Primary display name
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Secondary-language display name
    name_en: Mapped[str | None] = mapped_column(String(255), nullable=True)

    parent_id: Mapped[int | None] = mapped_column(
        IdType,
        ForeignKey("accounts.id"),
        nullable=True,
    )

    level: Mapped[AccountLevel] = mapped_column(String(10), nullable=False)

    nature: Mapped[NormalBalance] = mapped_column(String(10), nullable=False)

    group_id: Mapped[int | None] = mapped_column(
        IdType,
        ForeignKey("account_groups.id"),
        nullable=True,
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Account {self.code}: {self.name}>"

    @property
    def level_enum(self) -> AccountLevel:
        return AccountLevel(self.level)

    @property
    def nature_enum(self) -> NormalBalance:
        return NormalBalance(self.nature)

    @property
    def is_sub(self) -> bool:
        return self.level_enum is AccountLevel.SUB

    @property
    def is_main(self) -> bool:
        return self.level_enum is AccountLevel.MAIN
