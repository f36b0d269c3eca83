"""
Deterministic hashing utilities.

Every hash stored next to a calculation event, and every input fingerprint
in an engine trace, goes through ``canonicalize_json`` so the same logical
content always hashes the same way.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from functools import partial
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any, normalize_decimals: bool = True) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Decimals always become fixed-point strings.  With ``normalize_decimals``
    trailing zeros are dropped first, so "1.50" and "1.5000" hash alike.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        return format(obj.normalize() if normalize_decimals else obj, "f")
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if isinstance(obj, tuple):
        return list(obj)

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any, normalize_decimals: bool = True) -> str:
    """
    Convert data to canonical JSON string.

    Produces a deterministic JSON representation:
    - Keys are sorted alphabetically
    - No whitespace
    - Consistent handling of special types (Decimal, datetime, UUID)
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=partial(_json_serializer, normalize_decimals=normalize_decimals),
    )


def to_storable(data: dict) -> dict:
    """
    JSON-ready copy of ``data`` for persistence.

    Decimals keep their scale as plain fixed-point strings, so
    ``Decimal("1000.00")`` is stored as ``"1000.00"``, never ``"1E+3"``.
    """
    return json.loads(canonicalize_json(data, normalize_decimals=False))


def hash_payload(payload: dict) -> str:
    """
    Compute SHA-256 hash of a payload.

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_results(results: list[dict]) -> str:
    """
    Hash a result list independent of its order.

    Rows are sorted by ``asset_id`` (falling back to their canonical JSON)
    before hashing, for comparing two result sets at a glance.
    """
    ordered = sorted(
        results,
        key=lambda row: (str(row.get("asset_id", "")), canonicalize_json(row)),
    )
    return hash_payload({"results": ordered})
