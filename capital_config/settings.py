"""
Runtime settings (``capital_config.settings``).

Responsibility
--------------
Parses the YAML defaults file into a frozen ``LedgerSettings`` and applies
environment overrides.  Callers go through ``capital_config.get_settings()``;
this module is the parsing half.

Invariants enforced
-------------------
* Every parsed value is validated at load time; an invalid value raises
  ``ValueError`` naming the key.
* Decimal settings are read from strings, never floats.
* ``compute_checksum`` is deterministic for identical settings.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid value  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

ENV_DATABASE_URL = "CAPITAL_DATABASE_URL"
ENV_LOG_LEVEL = "CAPITAL_LOG_LEVEL"

_LOG_LEVELS = frozenset(logging.getLevelNamesMapping())


@dataclass(frozen=True)
class LedgerSettings:
    """Validated runtime settings."""

    database_url: str
    log_level: str = "INFO"
    default_score: Decimal = Decimal("50")
    high_value_threshold: Decimal = Decimal("100000")
    background_workers: int = 4
    default_query_limit: int = 100
    pool_size: int = 20
    max_overflow: int = 10

    def __post_init__(self) -> None:
        if not self.database_url:
            raise ValueError("database.url must not be empty")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"logging.level {self.log_level!r} is not a logging level")
        if not Decimal(0) <= self.default_score <= Decimal(100):
            raise ValueError("allocation.default_score must lie within 0..100")
        if self.high_value_threshold < 0:
            raise ValueError("allocation.high_value_threshold must be >= 0")
        if self.background_workers < 1:
            raise ValueError("pipeline.background_workers must be >= 1")
        if self.default_query_limit < 1:
            raise ValueError("event_store.default_query_limit must be >= 1")
        if self.pool_size < 1 or self.max_overflow < 0:
            raise ValueError("database.pool_size must be >= 1 and max_overflow >= 0")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal_setting(value: Any, key: str) -> Decimal:
    """Decimal from a YAML string or int; floats are rejected."""
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"{key} must be a quoted decimal string, got {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{key} is not a decimal: {value!r}") from None


def _int_setting(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    return value


def parse_settings(
    data: Mapping[str, Any],
    env: Mapping[str, str] | None = None,
) -> LedgerSettings:
    """
    Build ``LedgerSettings`` from parsed YAML plus environment overrides.

    Missing sections fall back to the dataclass defaults; a missing
    database URL with no override is an error.
    """
    database = data.get("database") or {}
    log = data.get("logging") or {}
    allocation = data.get("allocation") or {}
    pipeline = data.get("pipeline") or {}
    store = data.get("event_store") or {}
    defaults = LedgerSettings(database_url="unset")

    settings = LedgerSettings(
        database_url=str(database.get("url") or "unset"),
        log_level=str(log.get("level", defaults.log_level)).upper(),
        default_score=parse_decimal_setting(
            allocation.get("default_score", defaults.default_score),
            "allocation.default_score",
        ),
        high_value_threshold=parse_decimal_setting(
            allocation.get("high_value_threshold", defaults.high_value_threshold),
            "allocation.high_value_threshold",
        ),
        background_workers=_int_setting(
            pipeline.get("background_workers", defaults.background_workers),
            "pipeline.background_workers",
        ),
        default_query_limit=_int_setting(
            store.get("default_query_limit", defaults.default_query_limit),
            "event_store.default_query_limit",
        ),
        pool_size=_int_setting(
            database.get("pool_size", defaults.pool_size), "database.pool_size"
        ),
        max_overflow=_int_setting(
            database.get("max_overflow", defaults.max_overflow), "database.max_overflow"
        ),
    )

    overrides: dict[str, Any] = {}
    if env:
        if env.get(ENV_DATABASE_URL):
            overrides["database_url"] = env[ENV_DATABASE_URL]
        if env.get(ENV_LOG_LEVEL):
            overrides["log_level"] = env[ENV_LOG_LEVEL].upper()
    if overrides:
        settings = replace(settings, **overrides)

    if settings.database_url == "unset":
        raise ValueError(f"database.url is not configured and {ENV_DATABASE_URL} is not set")
    return settings


def compute_checksum(settings: LedgerSettings) -> str:
    """Deterministic SHA-256 of the settings, with the database URL masked."""
    data = {k: str(v) for k, v in asdict(settings).items() if k != "database_url"}
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
