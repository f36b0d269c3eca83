"""
Pure domain layer: decimal arithmetic, clocks, event payloads and the
allocation value types. Zero I/O.
"""

from capital_kernel.domain.assets import (
    AssetWithContext,
    AssetWithPriority,
    RecommendationBreakdown,
    RecommendationItem,
)
from capital_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from capital_kernel.domain.events import (
    CalcCompleted,
    CalcStarted,
    CompletionStatus,
    CurrencyConverted,
    DataRefreshed,
    EventPayload,
    EventType,
    InputsCaptured,
    ResultsComputed,
    StoredEvent,
    UnknownEventPayload,
    payload_from_dict,
    payload_to_dict,
)

__all__ = [
    "AssetWithContext",
    "AssetWithPriority",
    "RecommendationBreakdown",
    "RecommendationItem",
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "CalcCompleted",
    "CalcStarted",
    "CompletionStatus",
    "CurrencyConverted",
    "DataRefreshed",
    "EventPayload",
    "EventType",
    "InputsCaptured",
    "ResultsComputed",
    "StoredEvent",
    "UnknownEventPayload",
    "payload_from_dict",
    "payload_to_dict",
]
