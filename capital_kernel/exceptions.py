"""
Typed Exception Hierarchy for the Capital Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers catch by type, never by message text. Every exception carries a
machine-readable ``code`` class attribute and stores its context as
attributes, so it survives structured logging and audit serialization.

    try:
        store.append(user_id, event)
    except PersistenceError as e:
        log.error("append failed", extra={"operation": e.operation})

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    CapitalKernelError (base)
    |
    +-- PersistenceError
    |
    +-- ValidationError
    |   +-- InvalidDecimalError
    |
    +-- ReplayError
    |   +-- ReplayNotFoundError
    |   +-- DeterminismMismatchError
    |
    +-- PipelineError
    |   +-- PipelineStateError
    |   +-- RunOwnershipError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Persistence     | PERSISTENCE_ERROR           | Event store read/write failed
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_ERROR            | Malformed input rejected before compute
                | INVALID_DECIMAL             | Unparsable / empty / float decimal input
----------------|-----------------------------|-----------------------------------------
Replay          | REPLAY_EVENT_NOT_FOUND      | Run has no events / no inputs / no results
                | DETERMINISM_MISMATCH        | Replayed results diverged from original
----------------|-----------------------------|-----------------------------------------
Pipeline        | PIPELINE_STATE_VIOLATION    | Stage appended out of order for a run
                | RUN_OWNER_MISMATCH          | Stage names a user other than the run's
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | UPDATE/DELETE on a stored event

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Fire-and-forget ``start()`` never raises PersistenceError; the failure
   is logged and the caller keeps its correlation id.

2. Replay failures are audit data. ``replay()`` returns a ReplayResult with
   ``error`` set instead of raising ReplayNotFoundError; callers that want
   an exception call ``ReplayResult.raise_for_mismatch()``.

3. The allocation engine never raises for empty input or zero capital; it
   raises InvalidDecimalError only for contract violations.
"""

from typing import Any


class CapitalKernelError(Exception):
    """
    Base exception for all capital kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "CAPITAL_KERNEL_ERROR"


# Persistence


class PersistenceError(CapitalKernelError):
    """Event store read or write failed; nothing was partially applied."""

    code: str = "PERSISTENCE_ERROR"

    def __init__(
        self,
        operation: str,
        reason: str,
        correlation_id: str | None = None,
    ):
        self.operation = operation
        self.reason = reason
        self.correlation_id = correlation_id
        super().__init__(f"Event store {operation} failed: {reason}")


# Validation


class ValidationError(CapitalKernelError):
    """Input rejected before any computation started."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"Invalid {field}: {message}")


class InvalidDecimalError(ValidationError):
    """Value cannot be interpreted as an exact decimal."""

    code: str = "INVALID_DECIMAL"

    def __init__(self, value: Any, field: str = "value"):
        self.value = repr(value)
        super().__init__(field, f"cannot parse {value!r} as Decimal")


# Replay


class ReplayError(CapitalKernelError):
    """Base exception for replay errors."""

    code: str = "REPLAY_ERROR"


class ReplayNotFoundError(ReplayError):
    """A required event for the correlation id does not exist."""

    code: str = "REPLAY_EVENT_NOT_FOUND"

    def __init__(self, correlation_id: str, missing: str):
        self.correlation_id = correlation_id
        self.missing = missing
        if missing == "events":
            message = f"No events found for correlation ID: {correlation_id}"
        else:
            message = f"{missing} event not found for correlation ID: {correlation_id}"
        super().__init__(message)


class DeterminismMismatchError(ReplayError):
    """
    Replayed results differ from the recorded results.

    The original record is never rewritten; this error is audit data.
    """

    code: str = "DETERMINISM_MISMATCH"

    def __init__(self, correlation_id: str, discrepancies: list[dict[str, str]]):
        self.correlation_id = correlation_id
        self.discrepancies = discrepancies
        super().__init__(
            f"Replay of {correlation_id} diverged: "
            f"{len(discrepancies)} discrepancies"
        )


# Pipeline


class PipelineError(CapitalKernelError):
    """Base exception for pipeline orchestration errors."""

    code: str = "PIPELINE_ERROR"


class PipelineStateError(PipelineError):
    """A stage was recorded out of order for a run."""

    code: str = "PIPELINE_STATE_VIOLATION"

    def __init__(self, correlation_id: str, current: str, attempted: str):
        self.correlation_id = correlation_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Run {correlation_id} cannot move from {current} to {attempted}"
        )


class RunOwnershipError(PipelineError):
    """A stage named a user other than the one that started the run."""

    code: str = "RUN_OWNER_MISMATCH"

    def __init__(self, correlation_id: str, owner_id: str, user_id: str):
        self.correlation_id = correlation_id
        self.owner_id = owner_id
        self.user_id = user_id
        super().__init__(
            f"Run {correlation_id} belongs to user {owner_id}, not {user_id}"
        )


# Immutability


class ImmutabilityError(CapitalKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
