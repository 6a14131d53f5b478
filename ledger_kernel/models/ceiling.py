"""
Module: ledger_kernel.models.ceiling
Responsibility: ORM persistence for credit/debit ceilings on accounts and
    account groups.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - scope = account  -> account_id set, account_group_id NULL.
    - scope = group    -> account_group_id set, account_id NULL.
      (checked by CeilingEnforcer and by a CHECK constraint)
    - At most one ceiling per (target, currency).
"""

from decimal import Decimal
from enum import Enum

from sqlalchemy import CheckConstraint, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import IdType, TrackedBase
from ledger_kernel.db.types import MoneyType


class CeilingScope(str, Enum):
    ACCOUNT = "account"
    GROUP = "group"


class ExceedAction(str, Enum):
    """What happens when a posting would push a balance past its ceiling."""

    BLOCK = "block"
    WARN = "warn"
    ALLOW = "allow"


class AccountCeiling(TrackedBase):
    """
    Maximum balance on one side of an account or of every account in a group.

    Contract:
        account_nature selects the constrained side: a debit ceiling bounds
        debit - credit, a credit ceiling bounds credit - debit.  A group
        ceiling applies to each member account on its own, not to the
        group total.
    """

    __tablename__ = "account_ceilings"

    __table_args__ = (
        UniqueConstraint("account_id", "currency_id", name="uq_ceiling_account_currency"),
        UniqueConstraint("account_group_id", "currency_id", name="uq_ceiling_group_currency"),
        CheckConstraint(
            "(scope = 'account' AND account_id IS NOT NULL AND account_group_id IS NULL)"
            " OR (scope = 'group' AND account_group_id IS NOT NULL AND account_id IS NULL)",
            name="ck_ceiling_scope_target",
        ),
        CheckConstraint("ceiling_amount >= 0", name="ck_ceiling_amount_non_negative"),
    )

    scope: Mapped[CeilingScope] = mapped_column(String(10), nullable=False)

    account_id: Mapped[int | None] = mapped_column(
        IdType,
        ForeignKey("accounts.id"),
        nullable=True,
    )

    account_group_id: Mapped[int | None] = mapped_column(
        IdType,
        ForeignKey("account_groups.id"),
        nullable=True,
    )

    currency_id: Mapped[int] = mapped_column(
        IdType,
        ForeignKey("currencies.id"),
        nullable=False,
    )

    ceiling_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)

    account_nature: Mapped[str] = mapped_column(String(10), nullable=False)

    exceed_action: Mapped[ExceedAction] = mapped_column(
        String(10),
        nullable=False,
        default=ExceedAction.BLOCK,
    )

    def __repr__(self) -> str:
        target = self.account_id if self.scope == CeilingScope.ACCOUNT else self.account_group_id
        return f"<AccountCeiling {self.scope}:{target} {self.account_nature} {self.ceiling_amount}>"
