"""
Module: capital_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines: the
    capital allocation engine and the asset-context builder.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import capital_kernel.domain, capital_kernel.exceptions and
    capital_kernel.logging_config.  MUST NOT import capital_services.

Invariants enforced:
    - Purity: engines never read the clock or the database.
    - Decimal-only arithmetic: floats are rejected at the boundary.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Every allocation run is traced via ``@traced_engine`` (see
    ``capital_engines.tracer``), emitting CAPITAL_ENGINE_TRACE records.
"""

from capital_engines.asset_context import (
    DEFAULT_SCORE,
    HoldingSnapshot,
    TargetRange,
    build_assets_with_context,
    resolve_target_range,
)
from capital_engines.recommendations import (
    CapitalAllocationEngine,
    Distribution,
    calculate_priority,
    calculate_priority_from_strings,
    distribute_capital,
    generate_recommendation_items,
    sort_assets_by_priority,
    validate_over_allocated_get_zero,
    validate_total_equals,
    verify_determinism,
)
from capital_engines.tracer import traced_engine

__all__ = [
    "DEFAULT_SCORE",
    "HoldingSnapshot",
    "TargetRange",
    "build_assets_with_context",
    "resolve_target_range",
    "CapitalAllocationEngine",
    "Distribution",
    "calculate_priority",
    "calculate_priority_from_strings",
    "distribute_capital",
    "generate_recommendation_items",
    "sort_assets_by_priority",
    "validate_over_allocated_get_zero",
    "validate_total_equals",
    "verify_determinism",
    "traced_engine",
]
