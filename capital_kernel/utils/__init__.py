"""Utility modules for the capital kernel."""

from capital_kernel.utils.hashing import (
    canonicalize_json,
    hash_payload,
    hash_results,
    to_storable,
)

__all__ = [
    "canonicalize_json",
    "hash_payload",
    "hash_results",
    "to_storable",
]
