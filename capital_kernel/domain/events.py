"""
Calculation event payloads -- a closed, versioned tagged union.

Responsibility:
    Defines the payload variant for each ``EventType`` and the only two
    functions that cross the JSON boundary: ``payload_to_dict`` and
    ``payload_from_dict``. Both dispatch with an exhaustive ``match`` on the
    event type.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Every payload carries its run's ``correlation_id``.
    - Monetary and percentage values inside payloads are decimal strings.
    - Unknown event types read back as ``UnknownEventPayload`` instead of
      failing, so older readers tolerate newer writers.

Event flow of one run:
    STARTED -> INPUTS_CAPTURED -> COMPUTED -> COMPLETED
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Union
from uuid import UUID

PAYLOAD_SCHEMA_VERSION = 1


class EventType(str, Enum):
    """Known calculation event types."""

    STARTED = "STARTED"
    INPUTS_CAPTURED = "INPUTS_CAPTURED"
    COMPUTED = "COMPUTED"
    COMPLETED = "COMPLETED"
    CURRENCY_CONVERTED = "CURRENCY_CONVERTED"
    DATA_REFRESHED = "DATA_REFRESHED"

    @property
    def stage_rank(self) -> int:
        """Ordinal within a run; ties on ``created_at`` are broken by it."""
        return stage_rank_of(self.value)


_STAGE_RANKS = {
    "STARTED": 0,
    "INPUTS_CAPTURED": 1,
    "CURRENCY_CONVERTED": 2,
    "DATA_REFRESHED": 2,
    "COMPUTED": 3,
    "COMPLETED": 4,
}
_UNKNOWN_STAGE_RANK = 9


def stage_rank_of(event_type: str) -> int:
    """Stage rank for any event type string, known or not."""
    return _STAGE_RANKS.get(event_type, _UNKNOWN_STAGE_RANK)


class CompletionStatus(str, Enum):
    """Terminal status recorded by COMPLETED."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


# =============================================================================
# Payload variants
# =============================================================================


@dataclass(frozen=True)
class CalcStarted:
    """A run began. ``context`` holds caller metadata such as the market."""

    event_type: ClassVar[EventType] = EventType.STARTED

    correlation_id: UUID
    user_id: UUID
    timestamp: datetime
    context: dict[str, Any] | None = None


@dataclass(frozen=True)
class InputsCaptured:
    """
    Self-contained snapshot of every value the calculation reads.

    ``inputs`` must not reference anything outside itself (no ids to look
    up later, no live prices): replay feeds it back verbatim.
    """

    event_type: ClassVar[EventType] = EventType.INPUTS_CAPTURED

    correlation_id: UUID
    calculation: str
    inputs: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResultsComputed:
    """Results of the pure calculation, one dict per item."""

    event_type: ClassVar[EventType] = EventType.COMPUTED

    correlation_id: UUID
    calculation: str
    results: tuple[dict[str, Any], ...] = ()
    summary: dict[str, Any] | None = None


@dataclass(frozen=True)
class CalcCompleted:
    """Terminal event; appended for every run, including failed ones."""

    event_type: ClassVar[EventType] = EventType.COMPLETED

    correlation_id: UUID
    duration_ms: int
    item_count: int
    status: CompletionStatus
    error_message: str | None = None


@dataclass(frozen=True)
class CurrencyConverted:
    """One currency conversion performed inside a run."""

    event_type: ClassVar[EventType] = EventType.CURRENCY_CONVERTED

    correlation_id: UUID
    source_value: str
    source_currency: str
    target_currency: str
    rate: str
    rate_date: str
    result_value: str
    is_stale_rate: bool
    timestamp: datetime


@dataclass(frozen=True)
class DataRefreshed:
    """A user-initiated market data refresh."""

    event_type: ClassVar[EventType] = EventType.DATA_REFRESHED

    correlation_id: UUID
    user_id: UUID
    refresh_type: str
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    success: bool
    symbols: tuple[str, ...] | None = None
    error_message: str | None = None
    providers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UnknownEventPayload:
    """Payload of an event type this version does not know."""

    correlation_id: UUID
    type_name: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> str:
        return self.type_name


EventPayload = Union[
    CalcStarted,
    InputsCaptured,
    ResultsComputed,
    CalcCompleted,
    CurrencyConverted,
    DataRefreshed,
    UnknownEventPayload,
]


def event_type_name(payload: EventPayload) -> str:
    """String form of a payload's event type."""
    if isinstance(payload, UnknownEventPayload):
        return payload.type_name
    return payload.event_type.value


@dataclass(frozen=True)
class StoredEvent:
    """Read model of one persisted calculation event."""

    id: UUID
    correlation_id: UUID
    user_id: UUID
    event_type: str
    payload: EventPayload
    created_at: datetime


# =============================================================================
# JSON boundary
# =============================================================================


def _dt(value: datetime) -> str:
    return value.isoformat()


def payload_to_dict(payload: EventPayload) -> dict[str, Any]:
    """Serialize a payload to a JSON-safe dict tagged with ``type``."""
    base: dict[str, Any] = {
        "type": event_type_name(payload),
        "correlation_id": str(payload.correlation_id),
    }
    match payload:
        case CalcStarted():
            base.update(
                user_id=str(payload.user_id),
                timestamp=_dt(payload.timestamp),
            )
            if payload.context is not None:
                base["context"] = dict(payload.context)
        case InputsCaptured():
            base.update(calculation=payload.calculation, inputs=dict(payload.inputs))
        case ResultsComputed():
            base.update(
                calculation=payload.calculation,
                results=[dict(r) for r in payload.results],
            )
            if payload.summary is not None:
                base["summary"] = dict(payload.summary)
        case CalcCompleted():
            base.update(
                duration_ms=payload.duration_ms,
                item_count=payload.item_count,
                status=payload.status.value,
            )
            if payload.error_message is not None:
                base["error_message"] = payload.error_message
        case CurrencyConverted():
            base.update(
                source_value=payload.source_value,
                source_currency=payload.source_currency,
                target_currency=payload.target_currency,
                rate=payload.rate,
                rate_date=payload.rate_date,
                result_value=payload.result_value,
                is_stale_rate=payload.is_stale_rate,
                timestamp=_dt(payload.timestamp),
            )
        case DataRefreshed():
            base.update(
                user_id=str(payload.user_id),
                refresh_type=payload.refresh_type,
                started_at=_dt(payload.started_at),
                completed_at=_dt(payload.completed_at),
                duration_ms=payload.duration_ms,
                success=payload.success,
                providers=dict(payload.providers),
            )
            if payload.symbols is not None:
                base["symbols"] = list(payload.symbols)
            if payload.error_message is not None:
                base["error_message"] = payload.error_message
        case UnknownEventPayload():
            base.update(payload.data)
            base["type"] = payload.type_name
    return base


def payload_from_dict(event_type: str, data: dict[str, Any]) -> EventPayload:
    """
    Rebuild a payload from its stored dict.

    Unknown ``event_type`` values never raise; they come back as
    ``UnknownEventPayload`` holding the raw data.
    """
    correlation_id = UUID(str(data["correlation_id"]))
    match event_type:
        case EventType.STARTED.value:
            return CalcStarted(
                correlation_id=correlation_id,
                user_id=UUID(str(data["user_id"])),
                timestamp=datetime.fromisoformat(data["timestamp"]),
                context=data.get("context"),
            )
        case EventType.INPUTS_CAPTURED.value:
            return InputsCaptured(
                correlation_id=correlation_id,
                calculation=data["calculation"],
                inputs=data.get("inputs", {}),
            )
        case EventType.COMPUTED.value:
            return ResultsComputed(
                correlation_id=correlation_id,
                calculation=data["calculation"],
                results=tuple(data.get("results", [])),
                summary=data.get("summary"),
            )
        case EventType.COMPLETED.value:
            return CalcCompleted(
                correlation_id=correlation_id,
                duration_ms=int(data["duration_ms"]),
                item_count=int(data["item_count"]),
                status=CompletionStatus(data["status"]),
                error_message=data.get("error_message"),
            )
        case EventType.CURRENCY_CONVERTED.value:
            return CurrencyConverted(
                correlation_id=correlation_id,
                source_value=data["source_value"],
                source_currency=data["source_currency"],
                target_currency=data["target_currency"],
                rate=data["rate"],
                rate_date=data["rate_date"],
                result_value=data["result_value"],
                is_stale_rate=bool(data["is_stale_rate"]),
                timestamp=datetime.fromisoformat(data["timestamp"]),
            )
        case EventType.DATA_REFRESHED.value:
            symbols = data.get("symbols")
            return DataRefreshed(
                correlation_id=correlation_id,
                user_id=UUID(str(data["user_id"])),
                refresh_type=data["refresh_type"],
                started_at=datetime.fromisoformat(data["started_at"]),
                completed_at=datetime.fromisoformat(data["completed_at"]),
                duration_ms=int(data["duration_ms"]),
                success=bool(data["success"]),
                symbols=tuple(symbols) if symbols is not None else None,
                error_message=data.get("error_message"),
                providers=data.get("providers", {}),
            )
        case _:
            rest = {k: v for k, v in data.items() if k not in ("type", "correlation_id")}
            return UnknownEventPayload(
                correlation_id=correlation_id,
                type_name=event_type,
                data=rest,
            )
