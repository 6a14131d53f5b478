"""
Typed exception hierarchy for the ledger kernel.

Every error has a TYPED class (catch by type, not by message), a class-level
``code`` (machine-readable, API-safe) and carries its context as structured
attributes rather than only inside the message string.

    LedgerKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidStatementFilterError
    |
    +-- AccountError
    |   +-- AccountNotFoundError
    |   +-- ParentNotFoundError
    |   +-- InvalidLevelCombinationError
    |   +-- CycleDetectedError
    |   +-- AccountNotPostableError
    |   +-- AccountReferencedError
    |   +-- GroupNotFoundError
    |
    +-- PostingError
    |   +-- UnbalancedTransactionError
    |   +-- DuplicateReferenceError
    |   +-- TransactionNotFoundError
    |   +-- TransactionAlreadyReversedError
    |
    +-- CeilingError
    |   +-- CeilingExceededError
    |   +-- CeilingNotFoundError
    |
    +-- CurrencyError
    |   +-- CurrencyNotFoundError
    |   +-- RateOutOfRangeError
    |   +-- MultipleLocalCurrenciesError
    |   +-- LocalCurrencyNotConfiguredError
    |
    +-- ConcurrencyError
    |   +-- ConcurrentModificationError
    |
    +-- ImmutabilityViolationError

Handling patterns:

    try:
        posting_service.post(request)
    except CeilingExceededError as e:
        return {"error": e.code, "account_id": e.account_id, "limit": str(e.ceiling_amount)}
    except ConcurrentModificationError:
        # Safe to retry the whole check-and-post
        ...

Only the ``warn`` ceiling action is reported without an exception; it is
returned as a warning on the posting result.
"""

from decimal import Decimal


class LedgerKernelError(Exception):
    """
    Base exception for all ledger kernel errors.

    All subclasses must have a ``code`` class attribute.
    """

    code: str = "LEDGER_KERNEL_ERROR"


class ValidationError(LedgerKernelError):
    """A required field is missing or malformed."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class InvalidStatementFilterError(ValidationError):
    """Statement filter cannot be evaluated.

    Distinct from an empty report: a bad filter never yields "no rows".
    """

    code: str = "INVALID_STATEMENT_FILTER"


# Account-related exceptions


class AccountError(LedgerKernelError):
    """Base exception for chart-of-accounts errors."""

    code: str = "ACCOUNT_ERROR"


class AccountNotFoundError(AccountError):
    """Account with given ID was not found."""

    code: str = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: int):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class ParentNotFoundError(AccountError):
    """Parent account is required but missing or does not exist."""

    code: str = "PARENT_NOT_FOUND"

    def __init__(self, parent_id: int | None):
        self.parent_id = parent_id
        if parent_id is None:
            super().__init__("Sub account requires a parent account")
        else:
            super().__init__(f"Parent account not found: {parent_id}")


class InvalidLevelCombinationError(AccountError):
    """The requested level cannot be placed under the given parent."""

    code: str = "INVALID_LEVEL_COMBINATION"

    def __init__(self, level: str, parent_level: str | None, reason: str):
        self.level = level
        self.parent_level = parent_level
        self.reason = reason
        super().__init__(
            f"Cannot place {level} account under {parent_level or 'root'}: {reason}"
        )


class CycleDetectedError(AccountError):
    """Re-parenting would make an account its own ancestor."""

    code: str = "CYCLE_DETECTED"

    def __init__(self, account_id: int, new_parent_id: int):
        self.account_id = account_id
        self.new_parent_id = new_parent_id
        super().__init__(
            f"Moving account {account_id} under {new_parent_id} would create a cycle"
        )


class AccountNotPostableError(AccountError):
    """Only active sub accounts may receive postings."""

    code: str = "ACCOUNT_NOT_POSTABLE"

    def __init__(self, account_id: int, reason: str):
        self.account_id = account_id
        self.reason = reason
        super().__init__(f"Account {account_id} cannot receive postings: {reason}")


class AccountReferencedError(AccountError):
    """Account still has children or ledger legs and cannot be deleted."""

    code: str = "ACCOUNT_REFERENCED"

    def __init__(self, account_id: int, child_count: int, leg_count: int):
        self.account_id = account_id
        self.child_count = child_count
        self.leg_count = leg_count
        super().__init__(
            f"Account {account_id} is referenced by {child_count} child account(s) "
            f"and {leg_count} ledger leg(s)"
        )


class GroupNotFoundError(AccountError):
    """Account group with given ID was not found."""

    code: str = "GROUP_NOT_FOUND"

    def __init__(self, group_id: int):
        self.group_id = group_id
        super().__init__(f"Account group not found: {group_id}")


# Posting-related exceptions


class PostingError(LedgerKernelError):
    """Base exception for posting-related errors."""

    code: str = "POSTING_ERROR"


class UnbalancedTransactionError(PostingError):
    """Debits and credits differ for at least one currency."""

    code: str = "UNBALANCED_TRANSACTION"

    def __init__(self, currency_id: int, debits: Decimal, credits: Decimal):
        self.currency_id = currency_id
        self.debits = debits
        self.credits = credits
        super().__init__(
            f"Unbalanced transaction in currency {currency_id}: "
            f"debits={debits}, credits={credits}"
        )


class DuplicateReferenceError(PostingError):
    """A transaction with the same reference was already posted."""

    code: str = "DUPLICATE_REFERENCE"

    def __init__(self, reference_type: str, reference_id: str):
        self.reference_type = reference_type
        self.reference_id = reference_id
        super().__init__(
            f"Transaction already posted for {reference_type}:{reference_id}"
        )


class TransactionNotFoundError(PostingError):
    """No legs exist for the given reference."""

    code: str = "TRANSACTION_NOT_FOUND"

    def __init__(self, reference_id: str, reference_type: str | None = None):
        self.reference_id = reference_id
        self.reference_type = reference_type
        label = f"{reference_type}:{reference_id}" if reference_type else reference_id
        super().__init__(f"Transaction not found: {label}")


class TransactionAlreadyReversedError(PostingError):
    """A reversal already exists for the transaction."""

    code: str = "TRANSACTION_ALREADY_REVERSED"

    def __init__(self, reference_id: str, reversal_reference_id: str):
        self.reference_id = reference_id
        self.reversal_reference_id = reversal_reference_id
        super().__init__(
            f"Transaction {reference_id} already reversed by {reversal_reference_id}"
        )


# Ceiling-related exceptions


class CeilingError(LedgerKernelError):
    """Base exception for ceiling errors."""

    code: str = "CEILING_ERROR"


class CeilingExceededError(CeilingError):
    """Posting would push a balance beyond a blocking ceiling."""

    code: str = "CEILING_EXCEEDED"

    def __init__(
        self,
        account_id: int,
        currency_id: int,
        ceiling_id: int,
        ceiling_amount: Decimal,
        prospective_balance: Decimal,
        account_nature: str,
    ):
        self.account_id = account_id
        self.currency_id = currency_id
        self.ceiling_id = ceiling_id
        self.ceiling_amount = ceiling_amount
        self.prospective_balance = prospective_balance
        self.account_nature = account_nature
        super().__init__(
            f"Account {account_id} {account_nature} balance {prospective_balance} "
            f"would exceed ceiling {ceiling_amount} (currency {currency_id})"
        )


class CeilingNotFoundError(CeilingError):
    """Ceiling with given ID was not found."""

    code: str = "CEILING_NOT_FOUND"

    def __init__(self, ceiling_id: int):
        self.ceiling_id = ceiling_id
        super().__init__(f"Ceiling not found: {ceiling_id}")


# Currency-related exceptions


class CurrencyError(LedgerKernelError):
    """Base exception for currency errors."""

    code: str = "CURRENCY_ERROR"


class CurrencyNotFoundError(CurrencyError):
    """Currency with given ID was not found."""

    code: str = "CURRENCY_NOT_FOUND"

    def __init__(self, currency_id: int):
        self.currency_id = currency_id
        super().__init__(f"Currency not found: {currency_id}")


class RateOutOfRangeError(CurrencyError):
    """Proposed exchange rate is outside the currency's configured bounds."""

    code: str = "RATE_OUT_OF_RANGE"

    def __init__(
        self,
        currency_code: str,
        proposed_rate: Decimal,
        min_rate: Decimal | None,
        max_rate: Decimal | None,
    ):
        self.currency_code = currency_code
        self.proposed_rate = proposed_rate
        self.min_rate = min_rate
        self.max_rate = max_rate
        super().__init__(
            f"Rate {proposed_rate} for {currency_code} outside "
            f"[{min_rate if min_rate is not None else '-'}, "
            f"{max_rate if max_rate is not None else '-'}]"
        )


class MultipleLocalCurrenciesError(CurrencyError):
    """Another currency is already marked as local."""

    code: str = "MULTIPLE_LOCAL_CURRENCIES"

    def __init__(self, existing_code: str, requested_code: str):
        self.existing_code = existing_code
        self.requested_code = requested_code
        super().__init__(
            f"Cannot mark {requested_code} as local: {existing_code} is already local"
        )


class LocalCurrencyNotConfiguredError(CurrencyError):
    """No currency is marked as local."""

    code: str = "LOCAL_CURRENCY_NOT_CONFIGURED"

    def __init__(self):
        super().__init__("No local currency configured")


# Concurrency exceptions


class ConcurrencyError(LedgerKernelError):
    """Base exception for concurrency errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrentModificationError(ConcurrencyError):
    """Lock or serialization conflict.

    Safe to retry the whole check-and-post.
    """

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Concurrent modification during {operation}: {detail}")


class ImmutabilityViolationError(LedgerKernelError):
    """Attempted to modify or delete an append-only ledger row."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )
