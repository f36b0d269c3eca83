"""
Module: capital_kernel.models.calculation_event
Responsibility: ORM persistence for calculation events -- the append-only
    audit trail of every allocation run.
Architecture position: Kernel > Models.  May import from db/base.py,
    exceptions.py and logging_config.py only.

Invariants enforced:
    APPEND_ONLY -- no UPDATE, no DELETE (ORM listeners below + PostgreSQL
        triggers from db/triggers.py).
    RUN_ORDERING -- ``created_at`` plus ``stage_rank`` give a total order
        within a correlation id even when two stages share a timestamp.

Failure modes:
    - ImmutabilityViolationError on any ORM UPDATE or DELETE of a row.

Audit relevance:
    ``payload_hash`` is the SHA-256 of the canonical JSON payload, stored at
    append time so later tampering with the JSON column is detectable.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, DateTime, Index, Integer, String, event
from sqlalchemy.orm import Mapped, mapped_column

from capital_kernel.db.base import Base, UUIDString
from capital_kernel.exceptions import ImmutabilityViolationError
from capital_kernel.logging_config import get_logger

logger = get_logger("models.calculation_event")


class CalculationEventRecord(Base):
    """
    One persisted calculation event.

    Contract:
        Once INSERTed, a row never changes and is never deleted.

    Guarantees:
        - ``payload`` holds decimal values as strings, never JSON numbers.
        - ``schema_version`` identifies the payload layout.

    Non-goals:
        - No payload validation here; payloads are built and parsed by
          ``capital_kernel.domain.events``.
    """

    __tablename__ = "calculation_events"

    __table_args__ = (
        Index("idx_calc_event_correlation", "correlation_id", "created_at", "stage_rank"),
        Index("idx_calc_event_user_created", "user_id", "created_at"),
        Index("idx_calc_event_user_type", "user_id", "event_type"),
    )

    correlation_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)

    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Pipeline stage ordinal; tie-breaker for equal created_at
    stage_rank: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<CalculationEvent {self.event_type}:{self.correlation_id}>"


# =============================================================================
# ORM-Level Immutability Protection
# =============================================================================
# The database trigger provides the second layer for raw SQL on PostgreSQL.
# =============================================================================


def _reject(target: CalculationEventRecord, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "invariant": "append_only",
            "entity_type": "CalculationEvent",
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type="CalculationEvent",
        entity_id=str(target.id),
        reason=reason,
    )


@event.listens_for(CalculationEventRecord, "before_update")
def prevent_calculation_event_update(mapper, connection, target):
    """Raises ImmutabilityViolationError always."""
    _reject(target, "UPDATE", "Calculation events are immutable and cannot be modified")


@event.listens_for(CalculationEventRecord, "before_delete")
def prevent_calculation_event_delete(mapper, connection, target):
    """Raises ImmutabilityViolationError always."""
    _reject(target, "DELETE", "Calculation events cannot be deleted")
