from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sequencer.artifacts import ArtifactStore
from sequencer.config import SequencerConfig, resolve_step_timeout
from sequencer.errors import ArtifactNotFound
from sequencer.gates import evaluate
from sequencer.models import (
    Artifact,
    StageResult,
    StageSpec,
    StageStatus,
    StepResult,
    StepStatus,
    TriggerContext,
)
from sequencer.steps import BoundInputs, StepRunner

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StageContext:
    """Everything one stage execution needs, passed explicitly."""

    run_id: str
    stage: StageSpec
    result: StageResult
    store: ArtifactStore
    runner: StepRunner
    trigger: TriggerContext
    config: SequencerConfig
    cancel_event: threading.Event
    statuses: dict[str, StageStatus] = field(default_factory=dict)


@dataclass
class StageOutcome:
    status: StageStatus
    artifacts: dict[str, Artifact] = field(default_factory=dict)
    error: str | None = None


def resolve_inputs(ctx: StageContext) -> dict[str, Any]:
    """Read the stage's bound inputs from the store. Raises ArtifactNotFound."""
    return {key: ctx.store.value(ctx.run_id, key) for key in ctx.stage.inputs}


def _skipped(name: str, error: str | None = None) -> StepResult:
    return StepResult(name=name, status=StepStatus.SKIPPED, error=error)


def run_stage(ctx: StageContext) -> StageOutcome:
    """Run the stage's steps in order. Stop at the first blocking failure.

    Artifacts are returned, not written: the scheduler commits them once the
    stage has succeeded.
    """
    stage = ctx.stage
    ctx.result.transition(StageStatus.RUNNING, started_at=utcnow())
    logger.info("Stage %s started", stage.name)

    try:
        inputs = resolve_inputs(ctx)
    except ArtifactNotFound as exc:
        logger.error("Stage %s: %s", stage.name, exc)
        ctx.result.steps.extend(_skipped(s.name) for s in stage.steps)
        return StageOutcome(StageStatus.FAILED, error=str(exc))

    produced: dict[str, Artifact] = {}
    status = StageStatus.SUCCEEDED
    error: str | None = None

    for step in stage.steps:
        if status is not StageStatus.SUCCEEDED:
            ctx.result.steps.append(_skipped(step.name))
            continue
        if ctx.cancel_event.is_set():
            ctx.result.steps.append(_skipped(step.name, error="run cancelled"))
            status, error = StageStatus.FAILED, "run cancelled"
            continue
        if step.when is not None and not evaluate(step.when, ctx.statuses, ctx.trigger):
            logger.info("Stage %s: step %s skipped by condition", stage.name, step.name)
            ctx.result.steps.append(_skipped(step.name))
            continue

        bound = BoundInputs(
            trigger=ctx.trigger,
            inputs=inputs,
            outputs={key: a.value for key, a in produced.items()},
        )
        timeout = resolve_step_timeout(
            ctx.config, stage.name, step.name, step.timeout_seconds
        )
        result = ctx.runner.execute(step, bound, ctx.cancel_event, timeout=timeout)
        ctx.result.steps.append(result)
        produced.update(result.artifacts)

        if result.status is StepStatus.FAILED and result.non_fatal:
            logger.warning(
                "Stage %s: non-fatal step %s failed: %s",
                stage.name,
                step.name,
                result.error,
            )
        elif result.blocks_stage:
            status = (
                StageStatus.INTERRUPTED
                if result.status is StepStatus.INTERRUPTED
                else StageStatus.FAILED
            )
            error = result.error

    if status is not StageStatus.SUCCEEDED:
        logger.warning("Stage %s %s: %s", stage.name, status.value, error)
        return StageOutcome(status, error=error)

    logger.info("Stage %s succeeded", stage.name)
    return StageOutcome(status, artifacts=produced)
