"""Human-readable run reports.

``RunSummary`` accumulates markdown sections, one per stage plus a final
headline, and can append each section to a file as it is produced (for
example ``$GITHUB_STEP_SUMMARY``). ``render_table`` builds the rich table the
CLI prints.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from rich.table import Table

from sequencer.models import (
    PipelineRun,
    RunOutcome,
    SkipReason,
    StageResult,
    StageStatus,
    StepResult,
    StepStatus,
)

_STATUS_STYLES = {
    StageStatus.SUCCEEDED: "bold green",
    StageStatus.FAILED: "bold red",
    StageStatus.INTERRUPTED: "bold magenta",
    StageStatus.SKIPPED: "dim",
}

_VALUE_WIDTH = 60


def _short(value: Any) -> str:
    text = value if isinstance(value, str) else json.dumps(value, separators=(",", ":"))
    if len(text) > _VALUE_WIDTH:
        return text[: _VALUE_WIDTH - 3] + "..."
    return text


def _stages_with(run: PipelineRun, *statuses: StageStatus) -> list[str]:
    return [name for name, r in run.stages.items() if r.status in statuses]


def _skipped_for(run: PipelineRun, reason: SkipReason) -> list[str]:
    return [name for name, r in run.stages.items() if r.skip_reason is reason]


def describe_outcome(run: PipelineRun) -> str:
    """One line telling operators what kind of result this is."""
    name = run.pipeline
    outcome = run.outcome
    if outcome is RunOutcome.CONFIGURATION_ERROR:
        return f"{name}: configuration error, nothing ran ({run.configuration_error})"
    if outcome is RunOutcome.INTERRUPTED:
        stages = ", ".join(_stages_with(run, StageStatus.INTERRUPTED))
        return (
            f"{name}: interrupted during mutation in {stages}; "
            "no rollback was attempted, reconcile manually"
        )
    if outcome is RunOutcome.CANCELLED:
        return f"{name}: cancelled"
    if outcome is RunOutcome.STAGE_FAILED:
        return f"{name}: failed ({', '.join(_stages_with(run, StageStatus.FAILED))})"
    if outcome is RunOutcome.ALL_SKIPPED:
        return f"{name}: skipped, no stage was admitted"
    if outcome is RunOutcome.GATED:
        gated = _skipped_for(run, SkipReason.GATE_DENIED)
        starved = _skipped_for(run, SkipReason.INPUTS_UNAVAILABLE)
        text = f"{name}: succeeded"
        if gated:
            text += f", skipped by gates: {', '.join(gated)}"
        if starved:
            text += f", skipped for missing inputs: {', '.join(starved)}"
        return text
    return f"{name}: succeeded"


def _step_row(step: StepResult) -> str:
    exit_code = "-" if step.exit_code is None else str(step.exit_code)
    status = step.status.value
    if step.non_fatal and step.failure is not None:
        status += " (non-fatal)"
    return (
        f"| {step.name} | {status} | {exit_code} | "
        f"{step.duration_seconds:.1f}s | {len(step.attempts)} |"
    )


def stage_section(result: StageResult) -> str:
    lines = [f"### Stage `{result.name}`: {result.status.value}", ""]
    if result.skip_reason is not None:
        lines.append(f"Skipped: {result.skip_reason.value}")
    if result.steps:
        lines.append("| Step | Status | Exit | Duration | Attempts |")
        lines.append("|---|---|---|---|---|")
        lines.extend(_step_row(step) for step in result.steps)
    if result.artifacts:
        lines.append("")
        lines.append("**Artifacts:** " + ", ".join(f"`{k}`" for k in result.artifacts))
    if result.error:
        lines.append("")
        lines.append(f"> {result.error}")
    return "\n".join(lines) + "\n"


class RunSummary:
    """Append-only report: one section per stage, then the run headline."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._sections: list[str] = []
        self._reported: set[str] = set()

    @property
    def sections(self) -> tuple[str, ...]:
        return tuple(self._sections)

    @property
    def text(self) -> str:
        return "\n".join(self._sections)

    def add_stage(self, result: StageResult) -> str:
        if result.name in self._reported:
            msg = f"Summary for stage {result.name!r} was already written"
            raise ValueError(msg)
        self._reported.add(result.name)
        section = stage_section(result)
        self._append(section)
        return section

    def add_run(self, run: PipelineRun) -> str:
        lines = [f"## {describe_outcome(run)}", ""]
        if run.artifacts:
            lines.append("| Artifact | Producer | Value |")
            lines.append("|---|---|---|")
            for key, artifact in run.artifacts.items():
                lines.append(
                    f"| {key} | {artifact.producer or '-'} | `{_short(artifact.value)}` |"
                )
        section = "\n".join(lines) + "\n"
        self._append(section)
        return section

    def _append(self, section: str) -> None:
        self._sections.append(section)
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a") as fh:
                fh.write(section + "\n")


def render_table(run: PipelineRun) -> Table:
    table = Table(title=f"Run {run.run_id}: {run.pipeline} ({run.status.value})")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Steps", justify="right")
    table.add_column("Artifacts", style="magenta")
    table.add_column("Detail", style="dim", max_width=60)

    for name, result in run.stages.items():
        style = _STATUS_STYLES.get(result.status, "")
        done = sum(1 for s in result.steps if s.status is StepStatus.SUCCEEDED)
        detail = result.error or (
            result.skip_reason.value if result.skip_reason is not None else ""
        )
        table.add_row(
            name,
            f"[{style}]{result.status.value}[/]" if style else result.status.value,
            f"{done}/{len(result.steps)}",
            ", ".join(result.artifacts) or "-",
            detail,
        )

    table.caption = describe_outcome(run)
    return table
