"""
CalculationPipeline -- sequences the events of one calculation run.

Responsibility:
    Issues a correlation id per run and appends STARTED, INPUTS_CAPTURED,
    COMPUTED and COMPLETED under it, in that order.  ``run_complete``
    composes the four stages around a pure calculator and converts any
    calculator exception into a ``failed`` completion.

Architecture position:
    Kernel > Services -- imperative shell.  Depends on EventStore only
    through its public append API.

Invariants enforced:
    RUN_ORDERING -- per-run stage tracking:
        NOT_STARTED -> STARTED -> INPUTS_CAPTURED -> COMPUTED -> COMPLETED.
        Stages move strictly forward; COMPLETED is reachable from any
        started, not-yet-completed stage so every run can terminate.
    SINGLE_RUN_OWNER -- the pipeline generates every correlation id it
        writes under and is the only writer for it.  The user that started
        a run owns it; a later stage naming another user is rejected, so
        every event of a run carries one user id.
    ONE_STAGE_IN_FLIGHT -- checking a transition and reserving the run for
        it happen under one lock; a stage issued while another append of
        the same run is in flight is rejected rather than racing it.

Failure modes:
    - ``start``: the STARTED append runs on a background worker.  A failure
      there is logged as ``pipeline_start_persist_failed`` and never raised;
      the caller keeps its correlation id.
    - Every other stage propagates PersistenceError and ValidationError
      from the store to the caller.
    - PipelineStateError for an out-of-order, repeated or concurrent stage.
    - RunOwnershipError when a stage names a user other than the run's.

Concurrency:
    Runs for different correlation ids proceed in parallel with no shared
    counter.  Within one run each synchronous stage finishes its append
    before the next stage is issued.  Background STARTED appends carry a
    timestamp taken when ``start`` was called, and the store orders ties
    by stage, so a late-landing STARTED still reads back first.
"""

from __future__ import annotations

import contextvars
import threading
from collections import OrderedDict
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from capital_kernel.domain.clock import Clock, SystemClock
from capital_kernel.domain.events import (
    CalcCompleted,
    CalcStarted,
    CompletionStatus,
    EventPayload,
    InputsCaptured,
    ResultsComputed,
    StoredEvent,
)
from capital_kernel.exceptions import (
    CapitalKernelError,
    PipelineStateError,
    RunOwnershipError,
)
from capital_kernel.logging_config import LogContext, get_logger
from capital_kernel.services.event_store import EventStore

logger = get_logger("services.calculation_pipeline")

DEFAULT_CALCULATION = "capital_allocation"

Calculator = Callable[[dict[str, Any]], list[dict[str, Any]]]


class PipelineStage(str, Enum):
    """Where a run is in its event sequence."""

    NOT_STARTED = "NOT_STARTED"
    STARTED = "STARTED"
    INPUTS_CAPTURED = "INPUTS_CAPTURED"
    COMPUTED = "COMPUTED"
    COMPLETED = "COMPLETED"


_NEXT_STAGE: dict[PipelineStage, PipelineStage] = {
    PipelineStage.NOT_STARTED: PipelineStage.STARTED,
    PipelineStage.STARTED: PipelineStage.INPUTS_CAPTURED,
    PipelineStage.INPUTS_CAPTURED: PipelineStage.COMPUTED,
    PipelineStage.COMPUTED: PipelineStage.COMPLETED,
}


@dataclass
class _RunState:
    stage: PipelineStage
    owner: UUID
    in_flight: bool = False


@dataclass(frozen=True)
class PipelineRun:
    """Outcome of ``run_complete``."""

    correlation_id: UUID
    status: CompletionStatus
    results: list[dict[str, Any]] | None
    duration_ms: int
    error_message: str | None = None
    error: BaseException | None = field(default=None, compare=False, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.status == CompletionStatus.SUCCESS


class CalculationPipeline:
    """
    Orchestrator for calculation runs.

    Contract:
        Callers obtain a correlation id from ``start``/``start_and_wait``
        (or let ``run_complete`` do everything) and then call the stage
        methods in order.

    Guarantees:
        - Every run that reaches ``run_complete`` ends with a COMPLETED
          event, including runs whose calculator raised.
        - A stage is recorded as reached only after its append succeeded.

    Non-goals:
        - No retries and no timeouts; callers own both.
    """

    def __init__(
        self,
        event_store: EventStore,
        clock: Clock | None = None,
        executor: ThreadPoolExecutor | None = None,
        max_workers: int = 4,
        max_tracked_runs: int = 10_000,
    ):
        """
        Args:
            event_store: Store every stage appends to.
            clock: Clock for stage timestamps and durations.
            executor: Worker pool for fire-and-forget appends.  Created
                (and owned) by the pipeline when not given.
            max_workers: Pool size when the pipeline creates its own.
            max_tracked_runs: Runs whose stage is remembered; the oldest
                are forgotten first.
        """
        self._store = event_store
        self._clock = clock or SystemClock()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="calc-pipeline",
        )
        self._max_tracked_runs = max_tracked_runs
        self._runs: OrderedDict[UUID, _RunState] = OrderedDict()
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Stage tracking
    # -------------------------------------------------------------------------

    def stage_of(self, correlation_id: UUID) -> PipelineStage:
        """Current stage of a run; NOT_STARTED for unknown ids."""
        with self._lock:
            state = self._runs.get(correlation_id)
            return state.stage if state else PipelineStage.NOT_STARTED

    def _track(self, correlation_id: UUID, user_id: UUID) -> None:
        with self._lock:
            self._runs[correlation_id] = _RunState(PipelineStage.STARTED, user_id)
            while len(self._runs) > self._max_tracked_runs:
                self._runs.popitem(last=False)

    def _reserve(self, correlation_id: UUID, user_id: UUID, target: PipelineStage) -> None:
        """Check that ``target`` is the run's next stage and claim the run for it."""
        with self._lock:
            state = self._runs.get(correlation_id)
            current = state.stage if state else PipelineStage.NOT_STARTED
            owner = state.owner if state else None
            in_flight = state.in_flight if state else False
            if target == PipelineStage.COMPLETED:
                allowed = current not in (PipelineStage.NOT_STARTED, PipelineStage.COMPLETED)
            else:
                allowed = _NEXT_STAGE.get(current) == target
            if state is not None and owner == user_id and allowed and not in_flight:
                state.in_flight = True
                return

        if owner is not None and owner != user_id:
            logger.warning(
                "pipeline_owner_rejected",
                extra={"correlation_id": str(correlation_id), "attempted_stage": target.value},
            )
            raise RunOwnershipError(str(correlation_id), str(owner), str(user_id))

        logger.warning(
            "pipeline_stage_rejected",
            extra={
                "correlation_id": str(correlation_id),
                "current_stage": current.value,
                "attempted_stage": target.value,
                "in_flight": in_flight,
            },
        )
        raise PipelineStateError(str(correlation_id), current.value, target.value)

    def _release(self, correlation_id: UUID, reached: PipelineStage | None) -> None:
        with self._lock:
            state = self._runs.get(correlation_id)
            if state is None:
                return
            state.in_flight = False
            if reached is not None:
                state.stage = reached
                self._runs.move_to_end(correlation_id)

    def _append_stage(
        self,
        correlation_id: UUID,
        user_id: UUID,
        target: PipelineStage,
        payload: EventPayload,
    ) -> StoredEvent:
        # A stage counts as reached only once its append succeeded.
        self._reserve(correlation_id, user_id, target)
        reached = None
        try:
            stored = self._store.append(user_id, payload, self._clock.now())
            reached = target
        finally:
            self._release(correlation_id, reached)
        return stored

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def start(self, user_id: UUID, context: dict[str, Any] | None = None) -> UUID:
        """
        Begin a run and return its correlation id immediately.

        The STARTED append is handed to a background worker and not
        awaited.  Its failure is reported on the log, never raised.
        """
        correlation_id = uuid4()
        now = self._clock.now()
        payload = CalcStarted(
            correlation_id=correlation_id,
            user_id=user_id,
            timestamp=now,
            context=context,
        )
        self._track(correlation_id, user_id)

        ctx = contextvars.copy_context()
        future = self._executor.submit(ctx.run, self._persist_started, user_id, payload, now)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget_pending)

        logger.info(
            "pipeline_started",
            extra={"correlation_id": str(correlation_id), "durable": False},
        )
        return correlation_id

    def _persist_started(self, user_id: UUID, payload: CalcStarted, now: datetime) -> None:
        # Runs on a worker; the log is this task's only error channel.
        try:
            self._store.append(user_id, payload, now)
        except Exception:
            logger.error(
                "pipeline_start_persist_failed",
                extra={
                    "correlation_id": str(payload.correlation_id),
                    "user_id": str(user_id),
                },
                exc_info=True,
            )

    def _forget_pending(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def start_and_wait(self, user_id: UUID, context: dict[str, Any] | None = None) -> UUID:
        """
        Begin a run, returning only after STARTED is durable.

        Raises:
            PersistenceError: STARTED could not be stored.
        """
        correlation_id = uuid4()
        now = self._clock.now()
        self._store.append(
            user_id,
            CalcStarted(
                correlation_id=correlation_id,
                user_id=user_id,
                timestamp=now,
                context=context,
            ),
            now,
        )
        self._track(correlation_id, user_id)
        logger.info(
            "pipeline_started",
            extra={"correlation_id": str(correlation_id), "durable": True},
        )
        return correlation_id

    def capture_inputs(
        self,
        correlation_id: UUID,
        user_id: UUID,
        inputs: dict[str, Any],
        calculation: str = DEFAULT_CALCULATION,
    ) -> StoredEvent:
        """
        Record the self-contained input snapshot of a run.

        ``inputs`` must hold every value the calculation reads, with
        decimals as strings, so replay never consults live state.
        """
        stored = self._append_stage(
            correlation_id,
            user_id,
            PipelineStage.INPUTS_CAPTURED,
            InputsCaptured(
                correlation_id=correlation_id,
                calculation=calculation,
                inputs=inputs,
            ),
        )
        logger.debug(
            "pipeline_inputs_captured",
            extra={"correlation_id": str(correlation_id), "calculation": calculation},
        )
        return stored

    def record_results(
        self,
        correlation_id: UUID,
        user_id: UUID,
        results: list[dict[str, Any]],
        calculation: str = DEFAULT_CALCULATION,
        summary: dict[str, Any] | None = None,
    ) -> StoredEvent:
        """Record the calculation's results (COMPUTED)."""
        stored = self._append_stage(
            correlation_id,
            user_id,
            PipelineStage.COMPUTED,
            ResultsComputed(
                correlation_id=correlation_id,
                calculation=calculation,
                results=tuple(results),
                summary=summary,
            ),
        )
        logger.debug(
            "pipeline_results_recorded",
            extra={"correlation_id": str(correlation_id), "item_count": len(results)},
        )
        return stored

    def complete(
        self,
        correlation_id: UUID,
        user_id: UUID,
        duration_ms: int,
        item_count: int,
        status: CompletionStatus,
        error_message: str | None = None,
    ) -> StoredEvent:
        """Record the terminal COMPLETED event; allowed from any started stage."""
        stored = self._append_stage(
            correlation_id,
            user_id,
            PipelineStage.COMPLETED,
            CalcCompleted(
                correlation_id=correlation_id,
                duration_ms=duration_ms,
                item_count=item_count,
                status=status,
                error_message=error_message,
            ),
        )
        logger.info(
            "pipeline_completed",
            extra={
                "correlation_id": str(correlation_id),
                "status": status.value,
                "duration_ms": duration_ms,
                "item_count": item_count,
            },
        )
        return stored

    # -------------------------------------------------------------------------
    # Composition
    # -------------------------------------------------------------------------

    def run_complete(
        self,
        user_id: UUID,
        inputs: dict[str, Any],
        calculator: Calculator,
        context: dict[str, Any] | None = None,
        calculation: str = DEFAULT_CALCULATION,
    ) -> PipelineRun:
        """
        Run every stage around ``calculator(inputs)``.

        A calculator exception becomes a ``failed`` COMPLETED event and a
        PipelineRun carrying the exception; it is not raised.  A kernel error
        from a recording stage (a failed write, an unserializable snapshot)
        is raised once a ``failed`` completion has been attempted.
        """
        correlation_id = self.start(user_id, context)
        started_at = self._clock.now()

        with LogContext.bind(
            correlation_id=correlation_id, user_id=user_id, calculation=calculation
        ):
            try:
                self.capture_inputs(correlation_id, user_id, inputs, calculation)
            except CapitalKernelError as exc:
                self._complete_after_failure(correlation_id, user_id, started_at, exc)
                raise

            try:
                results = list(calculator(inputs))
            except Exception as exc:
                duration_ms = self._clock.monotonic_ms(started_at)
                logger.warning("pipeline_calculation_failed", exc_info=True)
                self.complete(
                    correlation_id,
                    user_id,
                    duration_ms=duration_ms,
                    item_count=0,
                    status=CompletionStatus.FAILED,
                    error_message=str(exc),
                )
                return PipelineRun(
                    correlation_id=correlation_id,
                    status=CompletionStatus.FAILED,
                    results=None,
                    duration_ms=duration_ms,
                    error_message=str(exc),
                    error=exc,
                )

            try:
                self.record_results(correlation_id, user_id, results, calculation)
            except CapitalKernelError as exc:
                self._complete_after_failure(correlation_id, user_id, started_at, exc)
                raise

            duration_ms = self._clock.monotonic_ms(started_at)
            self.complete(
                correlation_id,
                user_id,
                duration_ms=duration_ms,
                item_count=len(results),
                status=CompletionStatus.SUCCESS,
            )

        return PipelineRun(
            correlation_id=correlation_id,
            status=CompletionStatus.SUCCESS,
            results=results,
            duration_ms=duration_ms,
        )

    def _complete_after_failure(
        self,
        correlation_id: UUID,
        user_id: UUID,
        started_at: datetime,
        cause: Exception,
    ) -> None:
        # The caller re-raises ``cause``; a second failure here is logged.
        try:
            self.complete(
                correlation_id,
                user_id,
                duration_ms=self._clock.monotonic_ms(started_at),
                item_count=0,
                status=CompletionStatus.FAILED,
                error_message=str(cause),
            )
        except CapitalKernelError:
            logger.error(
                "pipeline_failed_completion_not_recorded",
                extra={"correlation_id": str(correlation_id)},
                exc_info=True,
            )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def wait_for_background(self, timeout: float | None = None) -> bool:
        """
        Block until pending fire-and-forget appends finish.

        Returns:
            True if nothing is left pending.
        """
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        """Stop the worker pool if this pipeline created it."""
        if wait_for_pending:
            self.wait_for_background()
        if self._owns_executor:
            self._executor.shutdown(wait=wait_for_pending)
