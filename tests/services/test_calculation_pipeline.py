"""
CalculationPipeline tests.

Verifies:
- start() returns immediately; STARTED lands in the background
- A failed background STARTED is logged, never raised
- Stages move strictly forward; COMPLETED is reachable from any started stage
- run_complete writes all four events in order
- Calculator exceptions become a failed COMPLETED event
- Kernel errors after start are raised once a failed completion was attempted
- A run belongs to the user that started it
- A stage issued while another append of the run is in flight is rejected
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from uuid import uuid4

import pytest

from capital_kernel.domain.events import (
    CalcCompleted,
    CalcStarted,
    CompletionStatus,
    InputsCaptured,
    ResultsComputed,
)
from capital_kernel.exceptions import (
    PersistenceError,
    PipelineStateError,
    RunOwnershipError,
    ValidationError,
)
from capital_kernel.logging_config import LogContext
from capital_kernel.services.calculation_pipeline import CalculationPipeline, PipelineStage


class FailingStore:
    """Delegates to a real store but fails appends of the given payload types."""

    def __init__(self, store, *failing_types):
        self._store = store
        self._failing_types = failing_types
        self.attempts: list[str] = []

    def append(self, user_id, payload, occurred_at=None):
        self.attempts.append(type(payload).__name__)
        if isinstance(payload, self._failing_types):
            raise PersistenceError("append", "simulated outage", str(payload.correlation_id))
        return self._store.append(user_id, payload, occurred_at)


class BlockingStore:
    """Delegates to a real store but holds appends of one payload type until released."""

    def __init__(self, store, blocking_type):
        self._store = store
        self._blocking_type = blocking_type
        self.entered = threading.Event()
        self.release = threading.Event()

    def append(self, user_id, payload, occurred_at=None):
        if isinstance(payload, self._blocking_type):
            self.entered.set()
            self.release.wait(timeout=10)
        return self._store.append(user_id, payload, occurred_at)


def _double(inputs):
    return [{"asset_id": "a", "recommended_amount": str(int(inputs["value"]) * 2)}]


class TestStart:
    """Tests for fire-and-forget and durable starts."""

    def test_start_returns_id_and_persists_in_background(self, pipeline, event_store, test_user_id):
        cid = pipeline.start(test_user_id, context={"portfolio_id": "p-1"})

        assert pipeline.stage_of(cid) == PipelineStage.STARTED
        assert pipeline.wait_for_background(timeout=10)

        started = event_store.get_calc_started_event(cid)
        assert started is not None
        assert started.payload.context == {"portfolio_id": "p-1"}

    def test_start_failure_logged_not_raised(
        self, event_store, deterministic_clock, test_user_id, captured_logs
    ):
        store = FailingStore(event_store, CalcStarted)
        pipe = CalculationPipeline(store, deterministic_clock)
        try:
            cid = pipe.start(test_user_id)
            assert pipe.wait_for_background(timeout=10)
        finally:
            pipe.shutdown()

        assert event_store.get_calc_started_event(cid) is None
        failures = [r for r in captured_logs() if r["message"] == "pipeline_start_persist_failed"]
        assert len(failures) == 1
        assert failures[0]["correlation_id"] == str(cid)
        assert failures[0]["level"] == "ERROR"

    def test_start_and_wait_is_durable(self, pipeline, event_store, test_user_id):
        cid = pipeline.start_and_wait(test_user_id)

        assert event_store.get_calc_started_event(cid) is not None
        assert pipeline.stage_of(cid) == PipelineStage.STARTED

    def test_start_and_wait_raises_on_failure(self, event_store, deterministic_clock, test_user_id):
        pipe = CalculationPipeline(FailingStore(event_store, CalcStarted), deterministic_clock)
        try:
            with pytest.raises(PersistenceError):
                pipe.start_and_wait(test_user_id)
        finally:
            pipe.shutdown()

    def test_every_start_gets_a_fresh_id(self, pipeline, test_user_id):
        ids = {pipeline.start(test_user_id) for _ in range(20)}
        assert len(ids) == 20


class TestStageOrdering:
    """Stages move strictly forward."""

    def test_capture_before_start_rejected(self, pipeline, test_user_id):
        with pytest.raises(PipelineStateError) as exc_info:
            pipeline.capture_inputs(uuid4(), test_user_id, {})
        assert exc_info.value.current == "NOT_STARTED"
        assert exc_info.value.attempted == "INPUTS_CAPTURED"

    def test_results_before_inputs_rejected(self, pipeline, test_user_id):
        cid = pipeline.start_and_wait(test_user_id)
        with pytest.raises(PipelineStateError):
            pipeline.record_results(cid, test_user_id, [], "capital_allocation")

    def test_repeated_stage_rejected(self, pipeline, test_user_id):
        cid = pipeline.start_and_wait(test_user_id)
        pipeline.capture_inputs(cid, test_user_id, {"value": "1"})
        with pytest.raises(PipelineStateError):
            pipeline.capture_inputs(cid, test_user_id, {"value": "1"})

    def test_complete_from_started_allowed(self, pipeline, event_store, test_user_id):
        cid = pipeline.start_and_wait(test_user_id)

        pipeline.complete(cid, test_user_id, 0, 0, CompletionStatus.FAILED, "aborted")

        assert pipeline.stage_of(cid) == PipelineStage.COMPLETED
        types = [e.event_type for e in event_store.get_by_correlation_id(cid)]
        assert types == ["STARTED", "COMPLETED"]

    def test_complete_twice_rejected(self, pipeline, test_user_id):
        cid = pipeline.start_and_wait(test_user_id)
        pipeline.complete(cid, test_user_id, 0, 0, CompletionStatus.SUCCESS)
        with pytest.raises(PipelineStateError):
            pipeline.complete(cid, test_user_id, 0, 0, CompletionStatus.SUCCESS)

    def test_complete_unknown_run_rejected(self, pipeline, test_user_id):
        with pytest.raises(PipelineStateError):
            pipeline.complete(uuid4(), test_user_id, 0, 0, CompletionStatus.SUCCESS)

    def test_tracked_runs_bounded(self, event_store, deterministic_clock, test_user_id):
        pipe = CalculationPipeline(event_store, deterministic_clock, max_tracked_runs=2)
        try:
            first = pipe.start_and_wait(test_user_id)
            pipe.start_and_wait(test_user_id)
            pipe.start_and_wait(test_user_id)
        finally:
            pipe.shutdown()
        assert pipe.stage_of(first) == PipelineStage.NOT_STARTED


class TestRunComplete:
    """Tests for the composed run."""

    def test_success_writes_four_events(self, pipeline, event_store, test_user_id):
        run = pipeline.run_complete(test_user_id, {"value": "21"}, _double)
        assert pipeline.wait_for_background(timeout=10)

        assert run.succeeded
        assert run.results == [{"asset_id": "a", "recommended_amount": "42"}]
        assert run.error is None

        events = event_store.get_by_correlation_id(run.correlation_id)
        assert [e.event_type for e in events] == [
            "STARTED",
            "INPUTS_CAPTURED",
            "COMPUTED",
            "COMPLETED",
        ]
        assert isinstance(events[1].payload, InputsCaptured)
        assert events[1].payload.inputs == {"value": "21"}
        assert isinstance(events[2].payload, ResultsComputed)
        assert list(events[2].payload.results) == run.results
        completed = events[3].payload
        assert isinstance(completed, CalcCompleted)
        assert completed.status == CompletionStatus.SUCCESS
        assert completed.item_count == 1

    def test_calculator_failure_recorded(self, pipeline, event_store, test_user_id):
        def explode(inputs):
            raise RuntimeError("allocation blew up")

        run = pipeline.run_complete(test_user_id, {"value": "1"}, explode)
        pipeline.wait_for_background(timeout=10)

        assert run.status == CompletionStatus.FAILED
        assert run.results is None
        assert isinstance(run.error, RuntimeError)
        assert run.error_message == "allocation blew up"

        events = event_store.get_by_correlation_id(run.correlation_id)
        assert [e.event_type for e in events] == ["STARTED", "INPUTS_CAPTURED", "COMPLETED"]
        assert events[-1].payload.status == CompletionStatus.FAILED
        assert events[-1].payload.error_message == "allocation blew up"

    def test_log_context_bound_during_calculation(self, pipeline, test_user_id):
        seen = {}

        def capture_context(inputs):
            seen.update(LogContext.get_all())
            return []

        run = pipeline.run_complete(test_user_id, {}, capture_context)

        assert seen["correlation_id"] == str(run.correlation_id)
        assert seen["user_id"] == str(test_user_id)
        assert seen["calculation"] == "capital_allocation"
        assert "correlation_id" not in LogContext.get_all()

    def test_capture_failure_completes_then_raises(
        self, event_store, deterministic_clock, test_user_id
    ):
        store = FailingStore(event_store, InputsCaptured)
        pipe = CalculationPipeline(store, deterministic_clock)
        try:
            with pytest.raises(PersistenceError):
                pipe.run_complete(test_user_id, {"value": "1"}, _double)
            pipe.wait_for_background(timeout=10)
        finally:
            pipe.shutdown()

        # STARTED is appended on a worker, so only the set of attempts is fixed
        assert sorted(store.attempts) == ["CalcCompleted", "CalcStarted", "InputsCaptured"]
        completed = event_store.get_by_event_type(test_user_id, "COMPLETED")
        assert len(completed) == 1
        assert completed[0].payload.status == CompletionStatus.FAILED

    def test_results_failure_completes_then_raises(
        self, event_store, deterministic_clock, test_user_id
    ):
        store = FailingStore(event_store, ResultsComputed)
        pipe = CalculationPipeline(store, deterministic_clock)
        try:
            with pytest.raises(PersistenceError):
                pipe.run_complete(test_user_id, {"value": "1"}, _double)
            pipe.wait_for_background(timeout=10)
        finally:
            pipe.shutdown()

        completed = event_store.get_by_event_type(test_user_id, "COMPLETED")
        assert len(completed) == 1
        assert completed[0].payload.status == CompletionStatus.FAILED
        assert "simulated outage" in completed[0].payload.error_message

    def test_completion_logged(self, pipeline, test_user_id, captured_logs):
        run = pipeline.run_complete(test_user_id, {"value": "2"}, _double)

        completed = [r for r in captured_logs() if r["message"] == "pipeline_completed"]
        assert completed[-1]["correlation_id"] == str(run.correlation_id)
        assert completed[-1]["status"] == "success"

    def test_unserializable_inputs_complete_then_raise(self, pipeline, event_store, test_user_id):
        called = []

        def calculator(inputs):
            called.append(inputs)
            return []

        with pytest.raises(ValidationError):
            pipeline.run_complete(test_user_id, {"bad": object()}, calculator)
        pipeline.wait_for_background(timeout=10)

        assert called == []
        types = sorted(e.event_type for e in event_store.get_by_user_id(test_user_id))
        assert types == ["COMPLETED", "STARTED"]
        completed = event_store.get_by_event_type(test_user_id, "COMPLETED")
        assert completed[0].payload.status == CompletionStatus.FAILED
        assert "not serializable" in completed[0].payload.error_message


class TestRunOwnership:
    """Every event of a run carries the user that started it."""

    def test_other_user_rejected(self, pipeline, event_store, test_user_id):
        intruder = uuid4()
        cid = pipeline.start_and_wait(test_user_id)

        with pytest.raises(RunOwnershipError) as exc_info:
            pipeline.capture_inputs(cid, intruder, {"value": "1"})
        assert exc_info.value.owner_id == str(test_user_id)
        assert exc_info.value.user_id == str(intruder)
        with pytest.raises(RunOwnershipError):
            pipeline.complete(cid, intruder, 0, 0, CompletionStatus.SUCCESS)

        assert pipeline.stage_of(cid) == PipelineStage.STARTED
        pipeline.capture_inputs(cid, test_user_id, {"value": "1"})
        pipeline.complete(cid, test_user_id, 0, 0, CompletionStatus.SUCCESS)

        events = event_store.get_by_correlation_id(cid)
        assert [e.event_type for e in events] == ["STARTED", "INPUTS_CAPTURED", "COMPLETED"]
        assert {e.user_id for e in events} == {test_user_id}

    def test_owner_tracked_for_background_start(self, pipeline, test_user_id):
        cid = pipeline.start(test_user_id)
        pipeline.wait_for_background(timeout=10)

        with pytest.raises(RunOwnershipError):
            pipeline.record_results(cid, uuid4(), [])

    def test_rejection_logged(self, pipeline, test_user_id, captured_logs):
        cid = pipeline.start_and_wait(test_user_id)
        with pytest.raises(RunOwnershipError):
            pipeline.capture_inputs(cid, uuid4(), {})

        rejected = [r for r in captured_logs() if r["message"] == "pipeline_owner_rejected"]
        assert rejected[-1]["attempted_stage"] == "INPUTS_CAPTURED"


class TestStageInFlight:
    """Checking and claiming a stage is one step."""

    def test_concurrent_capture_rejected(self, event_store, deterministic_clock, test_user_id):
        store = BlockingStore(event_store, InputsCaptured)
        pipe = CalculationPipeline(store, deterministic_clock)
        cid = pipe.start_and_wait(test_user_id)
        try:
            with ThreadPoolExecutor(max_workers=1) as pool:
                first = pool.submit(pipe.capture_inputs, cid, test_user_id, {"value": "1"})
                assert store.entered.wait(timeout=10)
                try:
                    with pytest.raises(PipelineStateError) as exc_info:
                        pipe.capture_inputs(cid, test_user_id, {"value": "2"})
                finally:
                    store.release.set()
                first.result(timeout=10)
        finally:
            pipe.shutdown()

        assert exc_info.value.current == "STARTED"
        assert pipe.stage_of(cid) == PipelineStage.INPUTS_CAPTURED
        captured = event_store.get_by_event_type(test_user_id, "INPUTS_CAPTURED")
        assert [e.payload.inputs for e in captured] == [{"value": "1"}]

    def test_failed_append_releases_run(self, event_store, deterministic_clock, test_user_id):
        store = FailingStore(event_store, InputsCaptured)
        pipe = CalculationPipeline(store, deterministic_clock)
        try:
            cid = pipe.start_and_wait(test_user_id)
            with pytest.raises(PersistenceError):
                pipe.capture_inputs(cid, test_user_id, {"value": "1"})

            assert pipe.stage_of(cid) == PipelineStage.STARTED
            pipe.complete(cid, test_user_id, 0, 0, CompletionStatus.FAILED, "outage")
        finally:
            pipe.shutdown()

        assert pipe.stage_of(cid) == PipelineStage.COMPLETED
