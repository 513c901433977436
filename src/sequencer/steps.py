from __future__ import annotations

import json
import logging
import os
import re
import signal
import subprocess
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sequencer.actions import ActionOutcome, ActionRegistry
from sequencer.config import SequencerConfig
from sequencer.errors import (
    InterruptedDuringMutation,
    StepCancelled,
    StepFailed,
    TransientStepFailure,
)
from sequencer.models import (
    Artifact,
    AttemptRecord,
    FailureKind,
    OutputParse,
    OutputSource,
    OutputSpec,
    StepResult,
    StepSpec,
    StepStatus,
    TriggerContext,
)

logger = logging.getLogger(__name__)

_TEMPLATE_RE = re.compile(r"\{\{\s*([A-Za-z_]+)\.([A-Za-z0-9_\-]+)\s*\}\}")

NAMESPACES = ("inputs", "outputs", "params", "trigger", "secrets")

_MASK = "***"


@dataclass(frozen=True)
class BoundInputs:
    """Values a step may reference through ``{{ namespace.key }}`` templates.

    ``inputs`` holds the stage's bound upstream artifacts, ``outputs`` the
    artifacts produced by earlier steps of the same stage.
    """

    trigger: TriggerContext
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)


@dataclass
class _RenderedStep:
    command: list[str] | None
    params: dict[str, str]
    cwd: str | None
    env: dict[str, str]
    output_paths: dict[str, str]


def template_refs(text: str) -> list[tuple[str, str]]:
    """(namespace, key) pairs referenced by *text*."""
    return [(m.group(1), m.group(2)) for m in _TEMPLATE_RE.finditer(text)]


def step_templates(step: StepSpec) -> Iterator[tuple[str, str]]:
    """Yield (location, text) for every templated string in *step*."""
    for i, arg in enumerate(step.command or []):
        yield f"command[{i}]", arg
    for key, value in step.params.items():
        if isinstance(value, str):
            yield f"with.{key}", value
    if step.cwd:
        yield "cwd", step.cwd
    for key, value in step.env.items():
        yield f"env.{key}", value
    for out in step.outputs:
        if out.path:
            yield f"outputs.{out.name}.path", out.path


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def render(text: str, bound: BoundInputs, allow_secrets: bool = False) -> str:
    """Substitute templates in *text*. Unresolvable references fail the step."""

    def _replace(match: re.Match[str]) -> str:
        namespace, key = match.group(1), match.group(2)
        if namespace == "inputs" and key in bound.inputs:
            return _stringify(bound.inputs[key])
        if namespace == "outputs" and key in bound.outputs:
            return _stringify(bound.outputs[key])
        if namespace in ("params", "trigger"):
            value = bound.trigger.lookup(f"{namespace}.{key}")
            if value is not None:
                return _stringify(value)
        if namespace == "secrets" and key in bound.trigger.secrets:
            if not allow_secrets:
                raise StepFailed(
                    FailureKind.MISSING_INPUT,
                    f"secret {key!r} may only be referenced from env",
                )
            return bound.trigger.secrets[key].get_secret_value()
        raise StepFailed(
            FailureKind.MISSING_INPUT, f"cannot resolve {match.group(0)!r}"
        )

    return _TEMPLATE_RE.sub(_replace, text)


def _parse(spec: OutputSpec, raw: str) -> Any:
    """Parse *raw* per *spec*; None means the output is absent."""
    if spec.parse is OutputParse.REGEX:
        match = re.search(spec.pattern or "", raw, re.MULTILINE)
        if match is None:
            return None
        if "value" in match.re.groupindex:
            return match.group("value")
        return match.group(1) if match.re.groups else match.group(0)
    text = raw.strip()
    if not text:
        return None
    if spec.parse is OutputParse.JSON:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return None
    if spec.parse is OutputParse.INT:
        try:
            return int(text)
        except ValueError:
            return None
    return text


def extract_outputs(
    step: StepSpec,
    outcome: ActionOutcome,
    cwd: str | None = None,
    paths: dict[str, str] | None = None,
) -> dict[str, Artifact]:
    """Extract the step's declared outputs from a finished invocation.

    Raises StepFailed if a required output cannot be produced.
    """
    paths = paths or {}
    artifacts: dict[str, Artifact] = {}
    for spec in step.outputs:
        value: Any
        if spec.source is OutputSource.EXIT_CODE:
            value = outcome.exit_code
        elif spec.source is OutputSource.FILE:
            path = Path(paths.get(spec.name, spec.path or ""))
            if cwd and not path.is_absolute():
                path = Path(cwd) / path
            value = _parse(spec, path.read_text()) if path.is_file() else None
        elif spec.source is OutputSource.STDERR:
            value = _parse(spec, outcome.stderr)
        else:
            value = _parse(spec, outcome.stdout)

        if value is None:
            if spec.required:
                raise StepFailed(
                    FailureKind.MISSING_OUTPUT,
                    f"step {step.name!r} did not produce required output {spec.name!r}",
                    exit_code=outcome.exit_code,
                )
            continue
        artifacts[spec.name] = Artifact(key=spec.name, kind=spec.kind, value=value)
    return artifacts


class StepRunner:
    """Executes one step: a subprocess command or a registered action."""

    def __init__(
        self,
        actions: ActionRegistry | None = None,
        default_timeout: float = 900.0,
        retry_delay: float = 2.0,
        poll_interval: float = 0.1,
        kill_grace: float = 5.0,
        inherit_env: bool = True,
    ) -> None:
        self.actions = actions if actions is not None else ActionRegistry()
        self._default_timeout = default_timeout
        self._retry_delay = retry_delay
        self._poll_interval = poll_interval
        self._kill_grace = kill_grace
        self._inherit_env = inherit_env

    @classmethod
    def from_config(
        cls, config: SequencerConfig, actions: ActionRegistry | None = None
    ) -> StepRunner:
        runner = config.runner
        return cls(
            actions=actions,
            default_timeout=runner.default_timeout_seconds,
            retry_delay=runner.retry_delay_seconds,
            poll_interval=runner.poll_interval_seconds,
            kill_grace=runner.kill_grace_seconds,
            inherit_env=runner.inherit_env,
        )

    def execute(
        self,
        step: StepSpec,
        bound: BoundInputs,
        cancel_event: threading.Event | None = None,
        timeout: float | None = None,
    ) -> StepResult:
        """Run *step* with retries. Step-level failures land on the result."""
        effective_timeout = timeout or step.timeout_seconds or self._default_timeout
        secrets = [s.get_secret_value() for s in bound.trigger.secrets.values()]
        started = time.monotonic()

        try:
            rendered = self._render(step, bound)
        except StepFailed as exc:
            return self._result(
                step, StepStatus.FAILED, started, [], secrets,
                failure=exc.kind, error=str(exc),
            )

        attempts: list[AttemptRecord] = []
        max_attempts = step.retries + 1
        outcome: ActionOutcome | None = None

        for number in range(1, max_attempts + 1):
            attempt_started = time.monotonic()
            outcome = None
            try:
                outcome = self._attempt(step, rendered, effective_timeout, cancel_event)
                if outcome.exit_code not in step.accepted_exit_codes:
                    raise StepFailed(
                        FailureKind.NONZERO_EXIT,
                        f"step {step.name!r} exited with {outcome.exit_code}",
                        exit_code=outcome.exit_code,
                    )
                artifacts = extract_outputs(
                    step, outcome, rendered.cwd, rendered.output_paths
                )
            except (TransientStepFailure, StepFailed) as exc:
                attempts.append(
                    AttemptRecord(
                        number=number,
                        failure=exc.kind,
                        exit_code=outcome.exit_code if outcome else None,
                        error=str(exc),
                        duration_seconds=time.monotonic() - attempt_started,
                    )
                )
                if not self._should_retry(step, exc, number, max_attempts):
                    return self._result(
                        step, StepStatus.FAILED, started, attempts, secrets,
                        outcome=outcome, failure=exc.kind, error=str(exc),
                    )
                logger.warning(
                    "Step %s attempt %d/%d failed (%s), retrying",
                    step.name, number, max_attempts, exc.kind.value,
                )
                if self._wait_before_retry(cancel_event):
                    return self._result(
                        step, StepStatus.CANCELLED, started, attempts, secrets,
                        outcome=outcome, failure=FailureKind.CANCELLED,
                        error="cancelled before retry",
                    )
                continue
            except StepCancelled as exc:
                attempts.append(AttemptRecord(number=number, failure=FailureKind.CANCELLED))
                return self._result(
                    step, StepStatus.CANCELLED, started, attempts, secrets,
                    failure=FailureKind.CANCELLED, error=str(exc),
                )
            except InterruptedDuringMutation as exc:
                attempts.append(
                    AttemptRecord(number=number, failure=FailureKind.INTERRUPTED)
                )
                logger.error("Step %s interrupted during mutation", step.name)
                return self._result(
                    step, StepStatus.INTERRUPTED, started, attempts, secrets,
                    failure=FailureKind.INTERRUPTED, error=str(exc),
                )

            attempts.append(
                AttemptRecord(
                    number=number,
                    exit_code=outcome.exit_code,
                    duration_seconds=time.monotonic() - attempt_started,
                )
            )
            return self._result(
                step, StepStatus.SUCCEEDED, started, attempts, secrets,
                outcome=outcome, artifacts=artifacts,
            )

        msg = f"step {step.name!r} made no attempts"
        raise RuntimeError(msg)

    def _should_retry(
        self,
        step: StepSpec,
        exc: TransientStepFailure | StepFailed,
        number: int,
        max_attempts: int,
    ) -> bool:
        """Timeouts and launch failures retry, except a timed-out mutating step.

        Nonzero exits retry only for steps marked ``retryable``.
        """
        if number >= max_attempts:
            return False
        if isinstance(exc, TransientStepFailure):
            # A timed-out mutation may have partially applied.
            return not (step.mutating and exc.kind is FailureKind.TIMEOUT)
        return exc.kind is FailureKind.NONZERO_EXIT and step.retryable

    def _wait_before_retry(self, cancel_event: threading.Event | None) -> bool:
        """Sleep the retry delay. True if the run was cancelled meanwhile."""
        if cancel_event is None:
            if self._retry_delay > 0:
                time.sleep(self._retry_delay)
            return False
        return cancel_event.wait(timeout=self._retry_delay)

    def _render(self, step: StepSpec, bound: BoundInputs) -> _RenderedStep:
        return _RenderedStep(
            command=[render(arg, bound) for arg in step.command]
            if step.command is not None
            else None,
            params={
                key: render(value, bound) if isinstance(value, str) else _stringify(value)
                for key, value in step.params.items()
            },
            cwd=render(step.cwd, bound) if step.cwd else None,
            env={
                key: render(value, bound, allow_secrets=True)
                for key, value in step.env.items()
            },
            output_paths={
                out.name: render(out.path, bound) for out in step.outputs if out.path
            },
        )

    def _attempt(
        self,
        step: StepSpec,
        rendered: _RenderedStep,
        timeout: float,
        cancel_event: threading.Event | None,
    ) -> ActionOutcome:
        if cancel_event is not None and cancel_event.is_set():
            raise StepCancelled(f"step {step.name!r} cancelled before start")
        if rendered.command is None:
            return self._run_action(step, rendered, timeout)
        return self._run_command(step, rendered, timeout, cancel_event)

    def _run_action(
        self, step: StepSpec, rendered: _RenderedStep, timeout: float
    ) -> ActionOutcome:
        fn = self.actions.get(step.action or "")
        if fn is None:
            raise StepFailed(FailureKind.ACTION_ERROR, f"unknown action {step.action!r}")
        logger.info("Step %s: action %s", step.name, step.action)
        try:
            return fn(rendered.params, timeout)
        except TransientStepFailure:
            raise
        except Exception as exc:
            raise StepFailed(
                FailureKind.ACTION_ERROR, f"action {step.action!r} raised: {exc}"
            ) from exc

    def _run_command(
        self,
        step: StepSpec,
        rendered: _RenderedStep,
        timeout: float,
        cancel_event: threading.Event | None,
    ) -> ActionOutcome:
        argv = rendered.command or []
        env = dict(os.environ) if self._inherit_env else {}
        env.update(rendered.env)
        logger.info("Step %s: %s", step.name, argv[0])
        try:
            proc = subprocess.Popen(
                argv,
                cwd=rendered.cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except OSError as exc:
            raise TransientStepFailure(
                FailureKind.LAUNCH_FAILURE, f"could not start {argv[0]!r}: {exc}"
            ) from exc

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._terminate(proc)
                raise TransientStepFailure(
                    FailureKind.TIMEOUT,
                    f"step {step.name!r} timed out after {timeout:g}s",
                )
            try:
                stdout, stderr = proc.communicate(
                    timeout=min(self._poll_interval, remaining)
                )
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    self._terminate(proc)
                    if step.mutating:
                        raise InterruptedDuringMutation(
                            f"step {step.name!r} was cancelled mid-mutation; "
                            "no rollback was attempted"
                        ) from None
                    raise StepCancelled(f"step {step.name!r} cancelled") from None
                continue
            return ActionOutcome(exit_code=proc.returncode, stdout=stdout, stderr=stderr)

    def _terminate(self, proc: subprocess.Popen[str]) -> None:
        _signal_group(proc, signal.SIGTERM)
        try:
            proc.communicate(timeout=self._kill_grace)
        except subprocess.TimeoutExpired:
            _signal_group(proc, signal.SIGKILL)
            proc.communicate()

    def _result(
        self,
        step: StepSpec,
        status: StepStatus,
        started: float,
        attempts: list[AttemptRecord],
        secrets: list[str],
        outcome: ActionOutcome | None = None,
        failure: FailureKind | None = None,
        error: str | None = None,
        artifacts: dict[str, Artifact] | None = None,
    ) -> StepResult:
        return StepResult(
            name=step.name,
            status=status,
            exit_code=outcome.exit_code if outcome else None,
            stdout=_mask(outcome.stdout, secrets) if outcome else "",
            stderr=_mask(outcome.stderr, secrets) if outcome else "",
            duration_seconds=time.monotonic() - started,
            attempts=attempts,
            failure=failure,
            error=error,
            non_fatal=step.non_fatal,
            artifacts=artifacts or {},
        )


def _signal_group(proc: subprocess.Popen[str], sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


def _mask(text: str, secrets: list[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, _MASK)
    return text
