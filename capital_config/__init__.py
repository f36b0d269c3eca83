"""
capital_config -- single public entrypoint for runtime settings.

Responsibility:
    Provides the ONLY way to obtain settings at runtime through
    ``get_settings()``.  No other component reads configuration files or
    environment variables directly.

Architecture position:
    Configuration.  Sits above ``capital_kernel`` and below
    ``capital_services``.  The kernel MUST NEVER import from
    ``capital_config``; services pass the values they need into kernel
    constructors.

Failure modes:
    - ``FileNotFoundError`` -- the settings file does not exist.
    - ``ValueError`` -- a setting failed validation.

Audit relevance:
    Every load emits a ``CAPITAL_CONFIG_TRACE`` log entry with the settings
    checksum, tying runs to the exact configuration that governed them.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path

from capital_config.settings import (
    ENV_DATABASE_URL,
    ENV_LOG_LEVEL,
    LedgerSettings,
    compute_checksum,
    load_yaml_file,
    parse_settings,
)

_logger = logging.getLogger("capital_kernel.config")

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"


def load_settings(
    path: Path | str,
    env: Mapping[str, str] | None = None,
) -> LedgerSettings:
    """
    Load settings from an explicit YAML file.

    ``env`` defaults to ``os.environ``; pass ``{}`` to ignore the
    environment.
    """
    settings = parse_settings(load_yaml_file(Path(path)), os.environ if env is None else env)
    _logger.info(
        "CAPITAL_CONFIG_TRACE",
        extra={
            "trace_type": "CAPITAL_CONFIG_TRACE",
            "source": str(path),
            "checksum": compute_checksum(settings),
            "log_level": settings.log_level,
        },
    )
    return settings


@lru_cache(maxsize=1)
def get_settings() -> LedgerSettings:
    """The ONLY runtime settings entrypoint: packaged defaults + environment."""
    return load_settings(DEFAULTS_PATH)


__all__ = [
    "DEFAULTS_PATH",
    "ENV_DATABASE_URL",
    "ENV_LOG_LEVEL",
    "LedgerSettings",
    "compute_checksum",
    "get_settings",
    "load_settings",
]
