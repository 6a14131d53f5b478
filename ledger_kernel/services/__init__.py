"""Services for the ledger kernel (write side and statements)."""

from ledger_kernel.services.ceiling_enforcer import CeilingEnforcer
from ledger_kernel.services.chart_of_accounts import ChartOfAccounts
from ledger_kernel.services.currency_converter import CurrencyConverter
from ledger_kernel.services.journal_ledger import JournalLedger
from ledger_kernel.services.posting_service import PostingService
from ledger_kernel.services.sequence_service import SequenceService
from ledger_kernel.services.statement_generator import StatementGenerator
from ledger_kernel.services.vouchers import ExchangeMode, VoucherBuilder

__all__ = [
    "CeilingEnforcer",
    "ChartOfAccounts",
    "CurrencyConverter",
    "ExchangeMode",
    "JournalLedger",
    "PostingService",
    "SequenceService",
    "StatementGenerator",
    "VoucherBuilder",
]
