"""Read-only query selectors.  Selectors never add, flush or commit."""

from ledger_kernel.selectors.ledger_selector import AccountBalance, LedgerSelector

__all__ = ["AccountBalance", "LedgerSelector"]
