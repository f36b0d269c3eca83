"""
EventStore -- append-only persistence for calculation events.

Responsibility:
    Durable, all-or-nothing writes of calculation events and the read
    queries the pipeline, replay and audit views need: by correlation id
    (oldest first), by user (newest first), by user and event type (newest
    first).

Architecture position:
    Kernel > Services -- imperative shell around the
    ``calculation_events`` table.

Invariants enforced:
    APPEND_ONLY -- the store only ever INSERTs; stored rows are protected by
        ORM listeners and (on PostgreSQL) database triggers.
    RUN_ORDERING -- ``get_by_correlation_id`` orders by
        ``(created_at, stage_rank)``, so STARTED < INPUTS_CAPTURED <
        COMPUTED < COMPLETED even when two stages carry the same timestamp.

Failure modes:
    - PersistenceError wrapping any SQLAlchemy error; the transaction is
      rolled back so nothing is partially applied.
    - ValidationError when a payload contains a value that cannot be
      serialized to JSON.

Non-goals:
    - No retries.  Retrying is the caller's concern.
    - No notification side effects.

Concurrency:
    Every call opens its own session from the injected factory, so a
    single EventStore instance may be shared across threads.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from capital_kernel.domain.clock import Clock, SystemClock
from capital_kernel.domain.events import (
    PAYLOAD_SCHEMA_VERSION,
    EventPayload,
    EventType,
    StoredEvent,
    event_type_name,
    payload_from_dict,
    payload_to_dict,
    stage_rank_of,
)
from capital_kernel.exceptions import PersistenceError, ValidationError
from capital_kernel.logging_config import get_logger
from capital_kernel.models.calculation_event import CalculationEventRecord
from capital_kernel.utils.hashing import hash_payload, to_storable

logger = get_logger("services.event_store")

DEFAULT_QUERY_LIMIT = 100


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class EventStore:
    """
    Append-only calculation event store.

    Contract:
        ``append`` and ``append_batch`` either persist every record they
        were given or raise PersistenceError having persisted none.

    Guarantees:
        - ``created_at`` is the caller's ``occurred_at`` when supplied,
          otherwise the store's clock at append time.
        - Records in one ``append_batch`` get strictly increasing
          ``created_at`` values (one microsecond apart) in list order.
        - Readers see a full record or none.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        default_limit: int = DEFAULT_QUERY_LIMIT,
    ):
        """
        Args:
            session_factory: Factory producing one session per store call.
            clock: Clock for ``created_at`` when the caller supplies none.
            default_limit: Row limit for user queries when none is given.
        """
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._default_limit = default_limit

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def append(
        self,
        user_id: UUID,
        payload: EventPayload,
        occurred_at: datetime | None = None,
    ) -> StoredEvent:
        """
        Durably append one event.

        Raises:
            PersistenceError: The write failed; nothing was stored.
            ValidationError: The payload is not JSON-serializable.
        """
        record = self._build_record(user_id, payload, occurred_at or self._clock.now())
        stored = self._to_stored(record)
        self._write([record], operation="append")

        logger.info(
            "event_appended",
            extra={
                "correlation_id": str(stored.correlation_id),
                "event_type": stored.event_type,
                "payload_hash": record.payload_hash,
            },
        )
        return stored

    def append_batch(
        self,
        user_id: UUID,
        payloads: Sequence[EventPayload],
        occurred_at: datetime | None = None,
    ) -> list[StoredEvent]:
        """
        Atomically append several events in one transaction.

        An empty batch is a no-op returning ``[]``.

        Raises:
            PersistenceError: The transaction failed; none were stored.
            ValidationError: A payload is not JSON-serializable.
        """
        if not payloads:
            return []

        base = occurred_at or self._clock.now()
        records = [
            self._build_record(user_id, payload, base + timedelta(microseconds=i))
            for i, payload in enumerate(payloads)
        ]
        stored = [self._to_stored(r) for r in records]
        self._write(records, operation="append_batch")

        logger.info(
            "event_batch_appended",
            extra={
                "event_count": len(stored),
                "correlation_ids": sorted({str(s.correlation_id) for s in stored}),
            },
        )
        return stored

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_by_correlation_id(self, correlation_id: UUID) -> list[StoredEvent]:
        """All events of one run, oldest first."""
        stmt = (
            select(CalculationEventRecord)
            .where(CalculationEventRecord.correlation_id == correlation_id)
            .order_by(
                CalculationEventRecord.created_at.asc(),
                CalculationEventRecord.stage_rank.asc(),
            )
        )
        return self._read(stmt, operation="get_by_correlation_id")

    def get_by_user_id(
        self,
        user_id: UUID,
        limit: int | None = None,
    ) -> list[StoredEvent]:
        """A user's events, newest first."""
        stmt = (
            select(CalculationEventRecord)
            .where(CalculationEventRecord.user_id == user_id)
            .order_by(
                CalculationEventRecord.created_at.desc(),
                CalculationEventRecord.stage_rank.desc(),
            )
            .limit(self._default_limit if limit is None else limit)
        )
        return self._read(stmt, operation="get_by_user_id")

    def get_by_event_type(
        self,
        user_id: UUID,
        event_type: EventType | str,
        limit: int | None = None,
    ) -> list[StoredEvent]:
        """A user's events of one type, newest first."""
        type_name = event_type.value if isinstance(event_type, EventType) else event_type
        stmt = (
            select(CalculationEventRecord)
            .where(
                CalculationEventRecord.user_id == user_id,
                CalculationEventRecord.event_type == type_name,
            )
            .order_by(CalculationEventRecord.created_at.desc())
            .limit(self._default_limit if limit is None else limit)
        )
        return self._read(stmt, operation="get_by_event_type")

    def get_calc_started_event(self, correlation_id: UUID) -> StoredEvent | None:
        """The STARTED event of a run, or None if it was never persisted."""
        stmt = (
            select(CalculationEventRecord)
            .where(
                CalculationEventRecord.correlation_id == correlation_id,
                CalculationEventRecord.event_type == EventType.STARTED.value,
            )
            .order_by(CalculationEventRecord.created_at.asc())
            .limit(1)
        )
        events = self._read(stmt, operation="get_calc_started_event")
        return events[0] if events else None

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _build_record(
        self,
        user_id: UUID,
        payload: EventPayload,
        created_at: datetime,
    ) -> CalculationEventRecord:
        type_name = event_type_name(payload)
        try:
            data = to_storable(payload_to_dict(payload))
        except (TypeError, ValueError) as exc:
            raise ValidationError("payload", f"{type_name} payload is not serializable: {exc}") from exc

        return CalculationEventRecord(
            id=uuid4(),
            correlation_id=payload.correlation_id,
            user_id=user_id,
            event_type=type_name,
            payload=data,
            payload_hash=hash_payload(data),
            schema_version=PAYLOAD_SCHEMA_VERSION,
            stage_rank=stage_rank_of(type_name),
            created_at=_as_utc(created_at),
        )

    def _write(self, records: list[CalculationEventRecord], operation: str) -> None:
        correlation_id = str(records[0].correlation_id)
        session = self._session_factory()
        try:
            session.add_all(records)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(
                "event_store_write_failed",
                extra={
                    "operation": operation,
                    "correlation_id": correlation_id,
                    "event_count": len(records),
                },
                exc_info=True,
            )
            raise PersistenceError(operation, str(exc), correlation_id) from exc
        finally:
            session.close()

    def _read(self, stmt, operation: str) -> list[StoredEvent]:
        session = self._session_factory()
        try:
            rows = session.execute(stmt).scalars().all()
            return [self._to_stored(row) for row in rows]
        except SQLAlchemyError as exc:
            logger.error(
                "event_store_read_failed",
                extra={"operation": operation},
                exc_info=True,
            )
            raise PersistenceError(operation, str(exc)) from exc
        finally:
            session.close()

    @staticmethod
    def _to_stored(record: CalculationEventRecord) -> StoredEvent:
        return StoredEvent(
            id=record.id,
            correlation_id=record.correlation_id,
            user_id=record.user_id,
            event_type=record.event_type,
            payload=payload_from_dict(record.event_type, record.payload),
            created_at=_as_utc(record.created_at),
        )
