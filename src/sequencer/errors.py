"""Error taxonomy shared by the scheduler, step runner and artifact store."""

from __future__ import annotations

from sequencer.models import FailureKind


class SequencerError(Exception):
    """Base class for all sequencer errors."""


class ConfigurationError(SequencerError):
    """Static validation failed; raised before any step runs."""

    def __init__(self, problems: list[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = problems
        super().__init__("; ".join(problems))


class CycleError(ConfigurationError):
    """Raised when the stage graph contains a dependency cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


class TransientStepFailure(SequencerError):
    """Timeout or launch failure. Retried up to the step's retry count."""

    def __init__(self, kind: FailureKind, message: str) -> None:
        self.kind = kind
        super().__init__(message)


class StepFailed(SequencerError):
    """Deterministic step failure: rejected exit code or missing output."""

    def __init__(
        self, kind: FailureKind, message: str, exit_code: int | None = None
    ) -> None:
        self.kind = kind
        self.exit_code = exit_code
        super().__init__(message)


class StepCancelled(SequencerError):
    """The run was cancelled while an idempotent step was in flight."""


class InterruptedDuringMutation(SequencerError):
    """The run was cancelled while a mutating step was in flight.

    Nothing is rolled back; the target needs external reconciliation.
    """


class DuplicateArtifact(SequencerError):
    def __init__(self, run_id: str, key: str) -> None:
        self.run_id = run_id
        self.key = key
        super().__init__(f"Artifact {key!r} already written in run {run_id}")


class ArtifactNotFound(SequencerError):
    def __init__(self, run_id: str, key: str) -> None:
        self.run_id = run_id
        self.key = key
        super().__init__(f"Artifact {key!r} not found in run {run_id}")
