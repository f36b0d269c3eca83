"""
capital_engines.tracer -- CAPITAL_ENGINE_TRACE records for pure engine calls.

``@traced_engine`` wraps an engine function and emits one log record per
call naming the engine, its version, a short fingerprint of the selected
inputs and the wall time spent.  Two calls with the same portfolio and the
same investable total share a fingerprint, which is how a replayed
allocation is matched to its original trace in the logs.

The wrapper reads its arguments and writes a log record; it never touches
the inputs or the result.  A call that raises is traced with
``outcome="failed"`` and the exception propagates unchanged.

Fingerprints:
    - Decimals are normalized, so ``1.50`` and ``1.5000`` agree.
    - Mappings are keyed in sorted order; sequences keep their order.
    - Objects with ``to_dict()`` (AssetContext) go through it.
    - A field name the wrapped function does not receive becomes ``null``.
"""

from __future__ import annotations

import functools
import hashlib
import inspect
import time
from collections.abc import Callable, Mapping
from decimal import Decimal
from typing import Any

from capital_kernel.logging_config import get_logger

_logger = get_logger("engines.tracer")

TRACE_MESSAGE = "CAPITAL_ENGINE_TRACE"
FINGERPRINT_LENGTH = 16


def _stable_text(value: Any) -> str:
    if value is None:
        return "null"
    if value is True or value is False:
        return str(value).lower()
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, Mapping):
        body = ",".join(
            f"{key}:{_stable_text(value[key])}" for key in sorted(value, key=str)
        )
        return "{" + body + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(map(_stable_text, value)) + "]"
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return _stable_text(to_dict())
    return str(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    arguments: Mapping[str, Any],
) -> str:
    """Short SHA-256 digest over ``name=value`` pairs of the chosen fields."""
    digest = hashlib.sha256()
    for position, name in enumerate(fingerprint_fields):
        if position:
            digest.update(b"|")
        digest.update(f"{name}={_stable_text(arguments.get(name))}".encode("utf-8"))
    return digest.hexdigest()[:FINGERPRINT_LENGTH]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """
    Decorate a pure engine function with CAPITAL_ENGINE_TRACE logging.

    ``fingerprint_fields`` names parameters, positional or keyword, whose
    values feed the input fingerprint.  With no fields the fingerprint is
    an empty string.
    """

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        def _fingerprint(args: tuple, kwargs: dict) -> str:
            if not fingerprint_fields:
                return ""
            bound = signature.bind_partial(*args, **kwargs)
            return compute_input_fingerprint(fingerprint_fields, bound.arguments)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fingerprint = _fingerprint(args, kwargs)
            outcome = "failed"
            began = time.perf_counter()
            try:
                result = func(*args, **kwargs)
                outcome = "ok"
                return result
            finally:
                _logger.info(
                    TRACE_MESSAGE,
                    extra={
                        "trace_type": TRACE_MESSAGE,
                        "engine_name": engine_name,
                        "engine_version": engine_version,
                        "function": func.__qualname__,
                        "input_fingerprint": fingerprint,
                        "outcome": outcome,
                        "duration_ms": round((time.perf_counter() - began) * 1000, 2),
                    },
                )

        return wrapper

    return decorator
