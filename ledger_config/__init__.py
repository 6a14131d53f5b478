"""
ledger_config -- single public entrypoint for runtime settings.

Responsibility:
    Provides the ONLY way to obtain settings at runtime through
    ``get_active_config()``.  No other component reads the settings file
    or the ``LEDGER_CONFIG`` / ``DATABASE_URL`` environment variables.

Architecture position:
    Configuration -- sits above ``ledger_kernel``.  The kernel MUST NEVER
    import from ``ledger_config``; ``ledger_config.bridges`` translates
    settings into kernel inputs (engine arguments, service options).

Invariants enforced:
    - Resolution order for the file: explicit ``path`` argument, then
      ``LEDGER_CONFIG``, then the bundled ``ledger.yaml``.
    - ``DATABASE_URL`` overrides ``database.url`` after parsing.

Failure modes:
    - ``FileNotFoundError`` -- the resolved settings file does not exist.
    - ``ValueError`` -- unknown keys or wrongly typed values.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``LEDGER_CONFIG_TRACE`` log entry with the config id, version and
    checksum.
"""

from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path
from typing import Mapping

from ledger_config.loader import load_yaml_file, parse_settings
from ledger_config.schema import (
    DatabaseSettings,
    LedgerSettings,
    PostingSettings,
    StatementSettings,
)
from ledger_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "ledger.yaml"
CONFIG_PATH_ENV = "LEDGER_CONFIG"
DATABASE_URL_ENV = "DATABASE_URL"


def resolve_config_path(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Path:
    env = os.environ if environ is None else environ
    if path is not None:
        return Path(path)
    if env.get(CONFIG_PATH_ENV):
        return Path(env[CONFIG_PATH_ENV])
    return DEFAULT_CONFIG_PATH


def get_active_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> LedgerSettings:
    """The ONLY public configuration entrypoint.

    Args:
        path: Settings file to load. Defaults to ``$LEDGER_CONFIG`` or
            the bundled ledger.yaml.
        environ: Environment mapping used for overrides. Defaults to
            ``os.environ``.

    Returns:
        LedgerSettings -- frozen; hold it for the life of the process.

    Raises:
        FileNotFoundError: If the settings file is missing.
        ValueError: If the file has unknown keys or bad values.
    """
    env = os.environ if environ is None else environ
    config_path = resolve_config_path(path, env)
    settings = parse_settings(load_yaml_file(config_path))

    database_url = env.get(DATABASE_URL_ENV)
    if database_url:
        settings = replace(settings, database=replace(settings.database, url=database_url))

    _logger.info(
        "LEDGER_CONFIG_TRACE",
        extra={
            "trace_type": "LEDGER_CONFIG_TRACE",
            "config_id": settings.config_id,
            "config_version": settings.version,
            "checksum": settings.checksum,
            "config_path": str(config_path),
            "database_url_overridden": bool(database_url),
        },
    )
    return settings


__all__ = [
    "DatabaseSettings",
    "LedgerSettings",
    "PostingSettings",
    "StatementSettings",
    "get_active_config",
    "resolve_config_path",
]
