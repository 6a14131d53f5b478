"""ORM models for the ledger kernel."""

from ledger_kernel.models.account import (
    Account,
    AccountGroup,
    AccountLevel,
    NormalBalance,
)
from ledger_kernel.models.ceiling import AccountCeiling, CeilingScope, ExceedAction
from ledger_kernel.models.currency import Currency
from ledger_kernel.models.journal import JournalEntry, JournalPosting, ReferenceType
from ledger_kernel.models.sequence import SequenceCounter

__all__ = [
    "Account",
    "AccountCeiling",
    "AccountGroup",
    "AccountLevel",
    "CeilingScope",
    "Currency",
    "ExceedAction",
    "JournalEntry",
    "JournalPosting",
    "NormalBalance",
    "ReferenceType",
    "SequenceCounter",
]
