"""
LedgerSettings schema.

Typed, frozen view of the runtime configuration.  YAML is parsed into
these types by the loader; bridges.py turns them into kernel inputs.
Defaults here are the values used when a key is absent from the file.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection settings handed to ledger_kernel.db.engine."""

    url: str = "sqlite:///ledger.db"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 30
    busy_timeout: int = 30


@dataclass(frozen=True)
class PostingSettings:
    """PostingService behaviour."""

    max_retries: int = 3
    auto_commit: bool = True


@dataclass(frozen=True)
class StatementSettings:
    """StatementGenerator behaviour."""

    opening_label: str = "Opening balance"


@dataclass(frozen=True)
class LedgerSettings:
    """The runtime artifact returned by get_active_config()."""

    config_id: str = "default"
    version: int = 1
    log_level: str = "INFO"
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    posting: PostingSettings = field(default_factory=PostingSettings)
    statement: StatementSettings = field(default_factory=StatementSettings)
    checksum: str = ""
