"""
ReplayVerificationJob -- audits recorded runs by replaying them.

The audit is itself a calculation run: its STARTED, INPUTS_CAPTURED,
COMPUTED and COMPLETED events land under a fresh correlation id, with the
audited correlation ids as inputs and one result row per audited run.
Completion status is ``success`` when every run matched, ``partial`` when
any did not, and ``failed`` when the job itself could not finish.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from capital_kernel.domain.clock import Clock, SystemClock
from capital_kernel.domain.events import CompletionStatus
from capital_kernel.logging_config import LogContext, get_logger
from capital_kernel.services.calculation_pipeline import CalculationPipeline
from capital_kernel.services.event_store import EventStore
from capital_kernel.utils.hashing import hash_results
from capital_services.recommendation_service import recalculate_from_inputs
from capital_services.replay import BatchReplayResult, PureFunction, ReplayResult, replay_batch

logger = get_logger("services.verification_job")

CALCULATION_NAME = "replay_verification"


@dataclass(frozen=True)
class VerificationReport:
    """Outcome of one verification job."""

    correlation_id: UUID
    status: CompletionStatus
    batch: BatchReplayResult

    @property
    def mismatched(self) -> list[ReplayResult]:
        return [r for r in self.batch.results if not (r.success and r.matches)]


def _result_row(result: ReplayResult) -> dict[str, Any]:
    return {
        "correlation_id": str(result.correlation_id),
        "success": result.success,
        "matches": result.matches,
        "discrepancies": [d.to_dict() for d in result.discrepancies],
        "original_hash": hash_results(result.original_results) if result.original_results else None,
        "replay_hash": hash_results(result.replay_results) if result.success else None,
        "error": result.error,
    }


class ReplayVerificationJob:
    """Replays a set of runs and records the audit as its own run."""

    def __init__(
        self,
        pipeline: CalculationPipeline,
        store: EventStore,
        pure_fn: PureFunction = recalculate_from_inputs,
        clock: Clock | None = None,
    ):
        self._pipeline = pipeline
        self._store = store
        self._pure_fn = pure_fn
        self._clock = clock or SystemClock()

    def run(self, user_id: UUID, correlation_ids: Sequence[UUID]) -> VerificationReport:
        """
        Replay ``correlation_ids`` and record the outcome.

        Raises:
            PersistenceError: the audit's own events could not be stored.
                A ``failed`` completion is attempted first.
        """
        audited = list(correlation_ids)
        job_id = self._pipeline.start_and_wait(user_id, context={"job": CALCULATION_NAME})
        started_at = self._clock.now()

        with LogContext.bind(correlation_id=job_id, user_id=user_id, job=CALCULATION_NAME):
            try:
                self._pipeline.capture_inputs(
                    job_id,
                    user_id,
                    {"correlation_ids": [str(cid) for cid in audited]},
                    calculation=CALCULATION_NAME,
                )
                batch = replay_batch(audited, self._pure_fn, self._store)
                rows = [_result_row(r) for r in batch.results]
                self._pipeline.record_results(
                    job_id,
                    user_id,
                    rows,
                    calculation=CALCULATION_NAME,
                    summary={
                        "total": batch.total,
                        "successful": batch.successful,
                        "matching": batch.matching,
                    },
                )
            except Exception as exc:
                logger.error("verification_job_failed", exc_info=True)
                self._pipeline.complete(
                    job_id,
                    user_id,
                    duration_ms=self._clock.monotonic_ms(started_at),
                    item_count=0,
                    status=CompletionStatus.FAILED,
                    error_message=str(exc),
                )
                raise

            status = CompletionStatus.SUCCESS if batch.all_match else CompletionStatus.PARTIAL
            self._pipeline.complete(
                job_id,
                user_id,
                duration_ms=self._clock.monotonic_ms(started_at),
                item_count=batch.total,
                status=status,
                error_message=None if batch.all_match else (
                    f"{batch.total - batch.matching} of {batch.total} runs did not match"
                ),
            )
            logger.info(
                "verification_job_completed",
                extra={
                    "status": status.value,
                    "total": batch.total,
                    "matching": batch.matching,
                },
            )

        return VerificationReport(correlation_id=job_id, status=status, batch=batch)
