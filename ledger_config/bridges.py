"""
Config -> Kernel Bridges.

Functions that turn LedgerSettings into kernel objects.  They live in
ledger_config (the producer) because the kernel must NEVER import
ledger_config.

Usage:
    from ledger_config import get_active_config
    from ledger_config.bridges import init_engine_from_settings, posting_service_from_config

    settings = get_active_config()
    init_engine_from_settings(settings)
    with session_scope() as session:
        service = posting_service_from_config(session, settings)
"""

from __future__ import annotations

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from ledger_config.schema import LedgerSettings
from ledger_kernel.db.engine import init_engine_from_url
from ledger_kernel.logging_config import configure_logging
from ledger_kernel.services.posting_service import PostingService
from ledger_kernel.services.statement_generator import StatementGenerator


def configure_logging_from_config(settings: LedgerSettings) -> None:
    """Configure the ledger_kernel logger at the configured level (idempotent)."""
    configure_logging(level=settings.log_level)


def init_engine_from_settings(settings: LedgerSettings) -> Engine:
    """Initialize the kernel engine from database settings."""
    configure_logging_from_config(settings)
    db = settings.database
    return init_engine_from_url(
        db.url,
        echo=db.echo,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        busy_timeout=db.busy_timeout,
    )


def posting_service_from_config(session: Session, settings: LedgerSettings) -> PostingService:
    return PostingService(
        session,
        auto_commit=settings.posting.auto_commit,
        max_retries=settings.posting.max_retries,
    )


def statement_generator_from_config(session: Session, settings: LedgerSettings) -> StatementGenerator:
    return StatementGenerator(session, opening_label=settings.statement.opening_label)
