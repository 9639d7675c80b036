"""
Event processing pipeline.

One run moves an event through

    pending -> validating -> storing -> recording_metrics -> success

with ``failed`` reachable from every non-terminal state. Each step runs
through the StepHarness, so a transient store failure retries the storing
step only and a transient metrics failure retries the metrics step only.
Validation errors are terminal and stop the run before any write.

Re-running the pipeline for the same event id converges the stored row but
counts the event again in the aggregate counters.
"""
import time
from typing import Awaitable, Callable

import structlog

from ..errors import EventGateError, MetricsUnavailable, StepExhausted, StoreUnavailable
from ..event_models import (
    Event,
    PipelineRun,
    PipelineState,
    RecordStatus,
    RunStatus,
    StepOutcome,
    utcnow,
)
from ..metrics.aggregator import MetricsAggregator
from ..storage.event_store import EventStore
from ..telemetry import Telemetry
from .harness import StepHarness, StepResult
from .validator import validate_event

log = structlog.get_logger()

STEP_VALIDATE = "validate-event"
STEP_STORE = "store-event"
STEP_METRICS = "update-metrics"


class ProcessEventPipeline:
    """Validator -> Store Writer -> Metrics Aggregator, one run per event."""

    def __init__(
        self,
        store: EventStore,
        aggregator: MetricsAggregator,
        harness: StepHarness | None = None,
        telemetry: Telemetry | None = None,
    ):
        self._store = store
        self._aggregator = aggregator
        self._harness = harness or StepHarness()
        self._telemetry = telemetry

    async def run(self, event: Event) -> PipelineRun:
        """Process one event to a terminal state. Never raises for step failures."""
        run = PipelineRun(
            correlation_id=event.correlation_id,
            event_id=event.event_id,
            retry_attempt=event.retry_attempt,
        )
        started = time.perf_counter()
        if self._telemetry:
            self._telemetry.pipeline_runs_active.inc()

        with structlog.contextvars.bound_contextvars(
            correlation_id=event.correlation_id,
            event_id=event.event_id,
            retry_attempt=event.retry_attempt,
        ):
            log.info("pipeline.started")
            try:
                await self._execute(run, event)
            finally:
                run.duration_ms = round((time.perf_counter() - started) * 1000, 2)
                if self._telemetry:
                    self._telemetry.pipeline_runs_active.dec()
                    self._telemetry.record_run(run.status.value)
                log.info(
                    "pipeline.finished",
                    status=run.status.value,
                    state=run.state.value,
                    duration_ms=run.duration_ms,
                    error=run.error,
                )
        return run

    async def _execute(self, run: PipelineRun, event: Event) -> None:
        async def validate():
            return validate_event(event)

        result = await self._step(run, PipelineState.VALIDATING, STEP_VALIDATE, validate)
        if not result.ok:
            self._fail(run, result)
            return
        validated = result.value

        result = await self._step(
            run,
            PipelineState.STORING,
            STEP_STORE,
            lambda: self._store.store(validated),
            retry_on=(StoreUnavailable,),
        )
        if not result.ok:
            self._fail(run, result)
            await self._record_failure(run)
            return

        processing_time_ms = int((utcnow() - validated.timestamp).total_seconds() * 1000)
        result = await self._step(
            run,
            PipelineState.RECORDING_METRICS,
            STEP_METRICS,
            lambda: self._aggregator.record_processed(validated, processing_time_ms),
            retry_on=(MetricsUnavailable,),
        )
        if not result.ok:
            # The stored row stays as the store step left it; counters undercount.
            self._fail(run, result)
            await self._record_failure(run)
            return

        self._transition(run, PipelineState.SUCCESS)
        run.status = RunStatus.SUCCESS
        await self._mark_success(run)

    async def _step(
        self,
        run: PipelineRun,
        state: PipelineState,
        step_name: str,
        fn: Callable[[], Awaitable],
        retry_on: tuple[type[BaseException], ...] = (),
    ) -> StepResult:
        self._transition(run, state)
        started_at = utcnow()
        result = await self._harness.run(step_name, fn, retry_on=retry_on)
        duration_ms = round(result.duration_s * 1000, 2)
        status = RunStatus.SUCCESS if result.ok else RunStatus.FAILURE

        run.steps.append(
            StepOutcome(
                step_name=step_name,
                status=status,
                started_at=started_at,
                duration_ms=duration_ms,
                attempts=result.attempts,
                error=None if result.ok else str(result.cause),
            )
        )
        if self._telemetry:
            self._telemetry.record_step(step_name, status.value, result.duration_s, retries=result.attempts - 1)

        log_method = log.info if result.ok else log.warning
        log_method(
            "pipeline.step_completed",
            step=step_name,
            outcome=status.value,
            duration_ms=duration_ms,
            attempts=result.attempts,
            error=None if result.ok else str(result.cause),
        )
        return result

    def _transition(self, run: PipelineRun, state: PipelineState) -> None:
        log.info("pipeline.transition", from_state=run.state.value, to_state=state.value)
        run.state = state

    def _fail(self, run: PipelineRun, result: StepResult) -> None:
        cause = result.cause
        run.error = str(cause)
        run.error_code = cause.code if isinstance(cause, EventGateError) else type(cause).__name__
        # Budget exhausted on a transient error: redelivery may still succeed
        run.retryable = isinstance(result.error, StepExhausted)
        run.status = RunStatus.FAILURE
        self._transition(run, PipelineState.FAILED)

    async def _mark_success(self, run: PipelineRun) -> None:
        """Best-effort bookkeeping after success; never changes the run status."""
        try:
            record = await self._store.mark_status(run.event_id, RecordStatus.SUCCESS)
            if record is not None:
                run.stored_at = record.stored_at
            await self._aggregator.record_outcome(run.event_id)
        except EventGateError as e:
            log.warning("pipeline.bookkeeping_failed", phase="mark_success", error=str(e))

    async def _record_failure(self, run: PipelineRun) -> None:
        try:
            await self._aggregator.record_failure(run.event_id, run.error, run.correlation_id)
        except EventGateError as e:
            log.warning("pipeline.bookkeeping_failed", phase="record_failure", error=str(e))
