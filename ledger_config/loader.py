"""
Configuration Loader (``ledger_config.loader``).

Responsibility
--------------
Loads the YAML settings file and parses it into the frozen dataclasses of
``ledger_config.schema``.  Callers go through
``ledger_config.get_active_config()``; this module is its parsing half.

Invariants enforced
-------------------
* Unknown keys are rejected, so a misspelt setting never silently falls
  back to its default.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` is deterministic for the same parsed content.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown key or wrong value type  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from ledger_config.schema import (
    DatabaseSettings,
    LedgerSettings,
    PostingSettings,
    StatementSettings,
)

_SECTIONS = {
    "database": DatabaseSettings,
    "posting": PostingSettings,
    "statement": StatementSettings,
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML must be a mapping, got {type(data).__name__}")
    return data


def _check_keys(section: str, data: Mapping[str, Any], allowed) -> None:
    unknown = sorted(set(data) - set(allowed))
    if unknown:
        raise ValueError(f"Unknown key(s) in {section}: {', '.join(unknown)}")


def _parse_section(name: str, cls, data: Any):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"Section {name!r} must be a mapping, got {type(data).__name__}")
    allowed = {f.name: f for f in fields(cls)}
    _check_keys(name, data, allowed)
    values = {}
    for key, value in data.items():
        default = getattr(cls(), key)
        if isinstance(default, bool) and not isinstance(value, bool):
            raise ValueError(f"{name}.{key} must be true or false, got {value!r}")
        if isinstance(default, int) and not isinstance(default, bool):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name}.{key} must be an integer, got {value!r}")
            if value < 0:
                raise ValueError(f"{name}.{key} must not be negative, got {value}")
        if isinstance(default, str) and not isinstance(value, str):
            raise ValueError(f"{name}.{key} must be a string, got {value!r}")
        values[key] = value
    return cls(**values)


def parse_settings(data: Mapping[str, Any]) -> LedgerSettings:
    """
    Parse a LedgerSettings from the top-level YAML mapping.

    Postconditions:
        - ``checksum`` is the SHA-256 of the parsed mapping.
    """
    top_level = {"config_id", "version", "log_level", *_SECTIONS}
    _check_keys("settings", data, top_level)

    version = data.get("version", 1)
    if isinstance(version, bool) or not isinstance(version, int):
        raise ValueError(f"version must be an integer, got {version!r}")

    sections = {name: _parse_section(name, cls, data.get(name)) for name, cls in _SECTIONS.items()}
    return LedgerSettings(
        config_id=str(data.get("config_id", "default")),
        version=version,
        log_level=str(data.get("log_level", "INFO")).upper(),
        checksum=compute_checksum(dict(data)),
        **sections,
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
