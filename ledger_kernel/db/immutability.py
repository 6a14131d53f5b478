"""
Module: ledger_kernel.db.immutability
Responsibility: ORM-level append-only enforcement for ledger rows.
Architecture position: Kernel > DB.  Imports models lazily inside functions
    so that db/ stays importable before the model registry is built.

Invariants enforced:
    - A JournalPosting header is never updated or deleted once flushed.
    - A JournalEntry leg is never updated or deleted once flushed.
    Corrections are new, mirrored postings (see JournalLedger.reverse_transaction).

Failure modes:
    - ImmutabilityViolationError from the flush that attempted the change;
      the enclosing transaction must be rolled back by its owner.

Notes:
    Mapper events only see changes made through the ORM.  Bulk UPDATE or
    DELETE statements issued directly with ``session.execute`` bypass them.
"""

from sqlalchemy import event, inspect

from ledger_kernel.exceptions import ImmutabilityViolationError
from ledger_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _changed_fields(target) -> list[str]:
    state = inspect(target)
    return [
        prop.key
        for prop in state.mapper.column_attrs
        if state.attrs[prop.key].history.has_changes()
    ]


def _block(entity_type: str, target, operation: str, reason: str, field: str | None = None):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "field": field,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_posting_update(mapper, connection, target):
    """Reject any column change on a flushed posting header."""
    changed = _changed_fields(target)
    if changed:
        _block(
            "JournalPosting",
            target,
            "UPDATE",
            f"Cannot modify field '{changed[0]}' on a posted transaction",
            field=changed[0],
        )


def _check_posting_delete(mapper, connection, target):
    _block("JournalPosting", target, "DELETE", "Posted transactions cannot be deleted")


def _check_entry_update(mapper, connection, target):
    """Reject any column change on a flushed ledger leg."""
    changed = _changed_fields(target)
    if changed:
        _block(
            "JournalEntry",
            target,
            "UPDATE",
            f"Cannot modify field '{changed[0]}' on a ledger leg",
            field=changed[0],
        )


def _check_entry_delete(mapper, connection, target):
    _block("JournalEntry", target, "DELETE", "Ledger legs cannot be deleted")


_LISTENERS = (
    ("JournalPosting", "before_update", _check_posting_update),
    ("JournalPosting", "before_delete", _check_posting_delete),
    ("JournalEntry", "before_update", _check_entry_update),
    ("JournalEntry", "before_delete", _check_entry_delete),
)


def _targets():
    from ledger_kernel.models.journal import JournalEntry, JournalPosting

    return {"JournalPosting": JournalPosting, "JournalEntry": JournalEntry}


def register_immutability_listeners() -> None:
    """
    Register the append-only listeners.  Safe to call more than once.

    Call after all models are imported and before any ledger write.
    """
    targets = _targets()
    for name, event_name, listener_fn in _LISTENERS:
        if not event.contains(targets[name], event_name, listener_fn):
            event.listen(targets[name], event_name, listener_fn)


def unregister_immutability_listeners() -> None:
    """
    Remove the append-only listeners.

    WARNING: Only use this in tests that need to tamper with history on
    purpose.
    """
    targets = _targets()
    for name, event_name, listener_fn in _LISTENERS:
        if event.contains(targets[name], event_name, listener_fn):
            event.remove(targets[name], event_name, listener_fn)
