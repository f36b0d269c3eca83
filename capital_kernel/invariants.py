"""
Kernel Invariants Contract.

These invariants are structural law. No configuration value may override
them. This module exists solely to declare them explicitly; enforcement is
distributed across the event store, the ORM immutability listeners, the
database triggers, the calculation pipeline and the allocation engine.
"""

from enum import Enum, unique


@unique
class LedgerInvariant(str, Enum):
    """Non-configurable invariants enforced by the kernel."""

    APPEND_ONLY = "append_only"
    """Calculation events are never updated or deleted. Enforced by ORM
    listeners (models.calculation_event) and PostgreSQL triggers
    (db.triggers)."""

    RUN_ORDERING = "run_ordering"
    """Events of one run read back oldest first, STARTED before
    INPUTS_CAPTURED before COMPUTED before COMPLETED. Enforced by
    EventStore.get_by_correlation_id ordering and CalculationPipeline
    stage tracking."""

    SINGLE_RUN_OWNER = "single_run_owner"
    """Every event sharing a correlation id belongs to one user and one
    run. Enforced by CalculationPipeline being the sole writer for the
    correlation ids it issues and rejecting stages from any user other
    than the one that started the run (RunOwnershipError)."""

    FULL_ALLOCATION = "full_allocation"
    """Recommended amounts sum to total investable within 0.0001 whenever
    any eligible asset has positive priority. Enforced by the remainder
    pass in capital_engines.recommendations."""

    OVER_ALLOCATED_ZERO = "over_allocated_zero"
    """Over-allocated assets are never recommended capital."""

    REPLAY_DETERMINISM = "replay_determinism"
    """Captured inputs replayed through the same calculation reproduce the
    recorded results exactly (decimal value equality per asset)."""


# All invariants as a frozenset for programmatic checks.
ALL_LEDGER_INVARIANTS: frozenset[LedgerInvariant] = frozenset(LedgerInvariant)

# The kernel package may not import from these packages.
# This is enforced by tests/architecture/test_kernel_boundary.py.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = (
    "capital_engines",
    "capital_services",
    "capital_config",
)
