"""
Replay -- re-execute a recorded calculation run and compare the results.

Responsibility:
    Loads a run's INPUTS_CAPTURED snapshot and COMPUTED results, feeds the
    snapshot to the supplied pure function, and compares original against
    replayed results by decimal value per asset id.

Architecture position:
    Services -- read-only consumer of the EventStore.  Never writes; the
    verification job records audits through the pipeline instead.

Invariants enforced:
    REPLAY_DETERMINISM -- a run whose captured inputs reproduce its stored
        results replays with ``matches=True`` and no discrepancies.
    - Comparison is by decimal value (``"1.50" == "1.5000"``), never by
      string.
    - A result-count mismatch is reported as its own discrepancy; the
      comparison still covers every asset id on either side.

Failure modes:
    - Missing events, a missing INPUTS_CAPTURED or COMPUTED event, a store
      failure, or an exception from the pure function are reported in
      ``ReplayResult.error`` with ``success=False``.  ``replay`` does not
      raise them; ``ReplayResult.raise_for_mismatch`` does on request.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from capital_kernel.domain.decimal_math import decimals_equal
from capital_kernel.domain.events import EventType, InputsCaptured, ResultsComputed
from capital_kernel.exceptions import (
    CapitalKernelError,
    DeterminismMismatchError,
    InvalidDecimalError,
    ReplayError,
    ReplayNotFoundError,
)
from capital_kernel.logging_config import get_logger
from capital_kernel.services.event_store import EventStore

logger = get_logger("services.replay")

PureFunction = Callable[[dict[str, Any]], list[dict[str, Any]]]

LENGTH_MISMATCH = "_length_mismatch"
COMPARED_FIELD = "recommended_amount"


@dataclass(frozen=True)
class Discrepancy:
    """One difference between original and replayed results."""

    asset_id: str
    original_value: str | None
    replay_value: str | None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "asset_id": self.asset_id,
            "original_value": self.original_value,
            "replay_value": self.replay_value,
        }


@dataclass(frozen=True)
class ReplayResult:
    """Outcome of replaying one run."""

    success: bool
    correlation_id: UUID
    original_results: list[dict[str, Any]] = field(default_factory=list)
    replay_results: list[dict[str, Any]] = field(default_factory=list)
    matches: bool = False
    discrepancies: list[Discrepancy] = field(default_factory=list)
    error: str | None = None

    def raise_for_mismatch(self) -> None:
        """
        Raise if the replay failed or diverged; return quietly on a match.

        Raises:
            ReplayError: the replay could not run.
            DeterminismMismatchError: the replay ran and diverged.
        """
        if not self.success:
            raise ReplayError(self.error or f"Replay of {self.correlation_id} failed")
        if not self.matches:
            raise DeterminismMismatchError(
                str(self.correlation_id),
                [d.to_dict() for d in self.discrepancies],
            )


@dataclass(frozen=True)
class BatchReplayResult:
    """Aggregate of ``replay_batch``."""

    total: int
    successful: int
    matching: int
    results: list[ReplayResult]

    @property
    def all_match(self) -> bool:
        return self.matching == self.total


def _amount(row: dict[str, Any]) -> str | None:
    value = row.get(COMPARED_FIELD)
    return None if value is None else str(value)


def compare_results(
    original: list[dict[str, Any]],
    replayed: list[dict[str, Any]],
) -> list[Discrepancy]:
    """Itemized differences between two result lists, keyed by asset id."""
    discrepancies: list[Discrepancy] = []
    if len(original) != len(replayed):
        discrepancies.append(
            Discrepancy(LENGTH_MISMATCH, str(len(original)), str(len(replayed)))
        )

    original_by_id = {str(row.get("asset_id")): row for row in original}
    replayed_by_id = {str(row.get("asset_id")): row for row in replayed}
    asset_ids = list(original_by_id)
    asset_ids.extend(a for a in replayed_by_id if a not in original_by_id)

    for asset_id in asset_ids:
        before = original_by_id.get(asset_id)
        after = replayed_by_id.get(asset_id)
        if before is None or after is None:
            discrepancies.append(
                Discrepancy(
                    asset_id,
                    _amount(before) if before is not None else None,
                    _amount(after) if after is not None else None,
                )
            )
            continue

        before_value, after_value = _amount(before), _amount(after)
        try:
            same = (
                before_value is not None
                and after_value is not None
                and decimals_equal(before_value, after_value)
            )
        except InvalidDecimalError:
            same = False
        if not same:
            discrepancies.append(Discrepancy(asset_id, before_value, after_value))

    return discrepancies


def replay(
    correlation_id: UUID,
    pure_fn: PureFunction,
    store: EventStore,
) -> ReplayResult:
    """Replay one run through ``pure_fn`` and compare against the record."""
    try:
        events = store.get_by_correlation_id(correlation_id)
        if not events:
            raise ReplayNotFoundError(str(correlation_id), "events")

        inputs_event = next(
            (e for e in events if e.event_type == EventType.INPUTS_CAPTURED.value), None
        )
        if inputs_event is None or not isinstance(inputs_event.payload, InputsCaptured):
            raise ReplayNotFoundError(str(correlation_id), EventType.INPUTS_CAPTURED.value)

        results_event = next(
            (e for e in events if e.event_type == EventType.COMPUTED.value), None
        )
        if results_event is None or not isinstance(results_event.payload, ResultsComputed):
            raise ReplayNotFoundError(str(correlation_id), EventType.COMPUTED.value)
    except CapitalKernelError as exc:
        logger.warning(
            "replay_failed",
            extra={"correlation_id": str(correlation_id), "error_code": exc.code},
        )
        return ReplayResult(success=False, correlation_id=correlation_id, error=str(exc))

    original = [dict(row) for row in results_event.payload.results]
    try:
        replayed = [dict(row) for row in pure_fn(dict(inputs_event.payload.inputs))]
    except Exception as exc:
        logger.warning(
            "replay_calculation_failed",
            extra={"correlation_id": str(correlation_id)},
            exc_info=True,
        )
        return ReplayResult(
            success=False,
            correlation_id=correlation_id,
            original_results=original,
            error=f"Replay calculation raised {type(exc).__name__}: {exc}",
        )

    discrepancies = compare_results(original, replayed)
    matches = not discrepancies
    if matches:
        logger.info(
            "replay_verified",
            extra={"correlation_id": str(correlation_id), "item_count": len(original)},
        )
    else:
        logger.warning(
            "replay_mismatch",
            extra={
                "correlation_id": str(correlation_id),
                "discrepancy_count": len(discrepancies),
            },
        )

    return ReplayResult(
        success=True,
        correlation_id=correlation_id,
        original_results=original,
        replay_results=replayed,
        matches=matches,
        discrepancies=discrepancies,
    )


def replay_batch(
    correlation_ids: Iterable[UUID],
    pure_fn: PureFunction,
    store: EventStore,
) -> BatchReplayResult:
    """Replay many runs sequentially and count successes and matches."""
    results = [replay(cid, pure_fn, store) for cid in correlation_ids]
    batch = BatchReplayResult(
        total=len(results),
        successful=sum(1 for r in results if r.success),
        matching=sum(1 for r in results if r.success and r.matches),
        results=results,
    )
    logger.info(
        "replay_batch_completed",
        extra={
            "total": batch.total,
            "successful": batch.successful,
            "matching": batch.matching,
        },
    )
    return batch


def verify_run_determinism(
    correlation_id: UUID,
    pure_fn: PureFunction,
    store: EventStore,
) -> tuple[bool, ReplayResult]:
    """``(True, result)`` only when the replay ran and matched."""
    result = replay(correlation_id, pure_fn, store)
    return result.success and result.matches, result
