from __future__ import annotations

import concurrent.futures
import logging
import signal
import threading
import uuid

from sequencer.artifacts import ArtifactStore
from sequencer.config import SequencerConfig
from sequencer.dag import StageGraph
from sequencer.errors import ConfigurationError, DuplicateArtifact
from sequencer.gates import default_gate, evaluate
from sequencer.models import (
    FAILURE_STATUSES,
    PipelineRun,
    PipelineSpec,
    RunOutcome,
    RunStatus,
    SkipReason,
    StageResult,
    StageSpec,
    StageStatus,
    TriggerContext,
)
from sequencer.stage import StageContext, StageOutcome, run_stage, utcnow
from sequencer.state_db import StateDB
from sequencer.steps import StepRunner
from sequencer.summary import RunSummary
from sequencer.validation import validate_pipeline

logger = logging.getLogger(__name__)


def aggregate(
    results: dict[str, StageResult], cancelled: bool = False
) -> tuple[RunStatus, RunOutcome]:
    """Fold stage results into one run status and outcome."""
    statuses = [r.status for r in results.values()]
    if StageStatus.INTERRUPTED in statuses:
        return RunStatus.FAILED, RunOutcome.INTERRUPTED
    if cancelled:
        return RunStatus.FAILED, RunOutcome.CANCELLED
    if StageStatus.FAILED in statuses:
        return RunStatus.FAILED, RunOutcome.STAGE_FAILED
    if statuses and all(s is StageStatus.SKIPPED for s in statuses):
        return RunStatus.SKIPPED, RunOutcome.ALL_SKIPPED
    if StageStatus.SKIPPED in statuses:
        return RunStatus.SUCCEEDED, RunOutcome.GATED
    return RunStatus.SUCCEEDED, RunOutcome.SUCCEEDED


class PipelineScheduler:
    """Walks the stage DAG, gating and running stages in parallel."""

    def __init__(
        self,
        config: SequencerConfig | None = None,
        runner: StepRunner | None = None,
        store: ArtifactStore | None = None,
        state: StateDB | None = None,
        summary: RunSummary | None = None,
    ) -> None:
        self.config = config or SequencerConfig()
        self.runner = runner or StepRunner.from_config(self.config)
        self.store = store or ArtifactStore()
        self.state = state
        self.summary = summary
        self._cancel_event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Request cancellation. In-flight steps are terminated, the rest skipped."""
        if not self._cancel_event.is_set():
            logger.warning("Cancellation requested")
        self._cancel_event.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    def _handle_signal(self, signum: int, frame: object) -> None:
        self.cancel()

    def run(self, pipeline: PipelineSpec, trigger: TriggerContext) -> PipelineRun:
        run_id = uuid.uuid4().hex[:12]
        started_at = utcnow()
        trigger = trigger.with_defaults(pipeline.parameters)
        logger.info(
            "Run %s: pipeline %s (event=%s action=%s env=%s)",
            run_id,
            pipeline.name,
            trigger.event.value,
            trigger.action,
            trigger.environment,
        )

        try:
            graph = validate_pipeline(pipeline, trigger, self.runner.actions)
        except ConfigurationError as exc:
            logger.error("Run %s: configuration error: %s", run_id, exc)
            run = PipelineRun(
                run_id=run_id,
                pipeline=pipeline.name,
                trigger=trigger,
                status=RunStatus.FAILED,
                outcome=RunOutcome.CONFIGURATION_ERROR,
                configuration_error=str(exc),
                started_at=started_at,
                ended_at=utcnow(),
            )
            self._finish(run)
            return run

        results = {name: StageResult(name=name) for name in graph.topological_sort()}
        specs = {stage.name: stage for stage in pipeline.stages}
        try:
            self._execute(run_id, graph, specs, results, trigger)
            artifacts = self.store.snapshot(run_id)
        finally:
            self.store.teardown(run_id)

        status, outcome = aggregate(results, self.cancelled)
        run = PipelineRun(
            run_id=run_id,
            pipeline=pipeline.name,
            trigger=trigger,
            status=status,
            outcome=outcome,
            stages=results,
            artifacts=artifacts,
            cancelled=self.cancelled,
            started_at=started_at,
            ended_at=utcnow(),
        )
        logger.info("Run %s finished: %s (%s)", run_id, status.value, outcome.value)
        self._finish(run)
        return run

    def _execute(
        self,
        run_id: str,
        graph: StageGraph,
        specs: dict[str, StageSpec],
        results: dict[str, StageResult],
        trigger: TriggerContext,
    ) -> None:
        futures: dict[concurrent.futures.Future[StageOutcome], str] = {}
        started: set[str] = set()
        workers = max(1, self.config.runner.max_parallel_stages)

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="stage"
        ) as executor:
            while True:
                for ctx in self._admit_ready(run_id, graph, specs, results, started, trigger):
                    futures[executor.submit(run_stage, ctx)] = ctx.stage.name
                if not futures:
                    break
                done, _ = concurrent.futures.wait(
                    futures, return_when=concurrent.futures.FIRST_COMPLETED
                )
                for future in done:
                    name = futures.pop(future)
                    self._complete(run_id, specs[name], results[name], future)

    def _admit_ready(
        self,
        run_id: str,
        graph: StageGraph,
        specs: dict[str, StageSpec],
        results: dict[str, StageResult],
        started: set[str],
        trigger: TriggerContext,
    ) -> list[StageContext]:
        """Decide every stage whose needs are terminal. Skips cascade here."""
        admitted: list[StageContext] = []
        progressed = True
        while progressed:
            progressed = False
            terminal = {name for name, r in results.items() if r.terminal}
            for name in graph.ready_stages(terminal, started):
                started.add(name)
                progressed = True
                reason = self._skip_reason(run_id, specs[name], graph, results, trigger)
                if reason is not None:
                    logger.info("Stage %s skipped: %s", name, reason.value)
                    results[name].transition(
                        StageStatus.SKIPPED, skip_reason=reason, ended_at=utcnow()
                    )
                    self._report_stage(results[name])
                    continue
                results[name].transition(StageStatus.ADMITTED)
                admitted.append(
                    StageContext(
                        run_id=run_id,
                        stage=specs[name],
                        result=results[name],
                        store=self.store,
                        runner=self.runner,
                        trigger=trigger,
                        config=self.config,
                        cancel_event=self._cancel_event,
                        statuses={n: r.status for n, r in results.items()},
                    )
                )
        return admitted

    def _skip_reason(
        self,
        run_id: str,
        spec: StageSpec,
        graph: StageGraph,
        results: dict[str, StageResult],
        trigger: TriggerContext,
    ) -> SkipReason | None:
        if self.cancelled:
            return SkipReason.CANCELLED
        failed = [
            a for a in graph.ancestors(spec.name) if results[a].status in FAILURE_STATUSES
        ]
        if failed and not spec.run_on_failure:
            return SkipReason.UPSTREAM_FAILED
        gate = spec.gate or default_gate(spec.needs, spec.run_on_failure)
        statuses = {name: r.status for name, r in results.items()}
        if not evaluate(gate, statuses, trigger):
            return SkipReason.GATE_DENIED
        # A producer can succeed or be skipped without writing the key.
        missing = [key for key in spec.inputs if not self.store.has(run_id, key)]
        if missing:
            logger.warning("Stage %s: inputs not produced: %s", spec.name, ", ".join(missing))
            return SkipReason.INPUTS_UNAVAILABLE
        return None

    def _complete(
        self,
        run_id: str,
        spec: StageSpec,
        result: StageResult,
        future: concurrent.futures.Future[StageOutcome],
    ) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Stage %s raised: %s", spec.name, exc)
            outcome = StageOutcome(StageStatus.FAILED, error=f"stage raised: {exc}")
        else:
            outcome = future.result()

        committed: list[str] = []
        if outcome.status is StageStatus.SUCCEEDED and outcome.artifacts:
            try:
                committed = self.store.put_many(run_id, outcome.artifacts, spec.name)
            except DuplicateArtifact as dup:
                logger.error("Stage %s: %s", spec.name, dup)
                outcome = StageOutcome(StageStatus.FAILED, error=str(dup))

        result.transition(
            outcome.status,
            ended_at=utcnow(),
            artifacts=committed,
            error=outcome.error,
        )
        self._report_stage(result)

    def _report_stage(self, result: StageResult) -> None:
        if self.summary is not None:
            self.summary.add_stage(result)

    def _finish(self, run: PipelineRun) -> None:
        if self.summary is not None:
            self.summary.add_run(run)
        if self.state is not None:
            self.state.record_run(run)
