"""Pydantic models for pipeline definitions and run records.

Definitions (``PipelineSpec``, ``StageSpec``, ``StepSpec``, gate variants) are
static and validated before a run starts. Run records (``StepResult``,
``StageResult``, ``PipelineRun``) are produced by the scheduler and are
designed for JSON serialization so they can be persisted or reported.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

ParamValue = Union[str, int, bool]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TriggerEvent(Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "manual"


class StageStatus(Enum):
    PENDING = "pending"
    ADMITTED = "admitted"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


TERMINAL_STATUSES = frozenset(
    {
        StageStatus.SKIPPED,
        StageStatus.SUCCEEDED,
        StageStatus.FAILED,
        StageStatus.INTERRUPTED,
    }
)
FAILURE_STATUSES = frozenset({StageStatus.FAILED, StageStatus.INTERRUPTED})


class SkipReason(Enum):
    GATE_DENIED = "gate_denied"
    UPSTREAM_FAILED = "upstream_failed"
    CANCELLED = "cancelled"
    INPUTS_UNAVAILABLE = "inputs_unavailable"


class StepStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    INTERRUPTED = "interrupted"


class FailureKind(Enum):
    TIMEOUT = "timeout"
    LAUNCH_FAILURE = "launch_failure"
    NONZERO_EXIT = "nonzero_exit"
    MISSING_OUTPUT = "missing_output"
    MISSING_INPUT = "missing_input"
    ACTION_ERROR = "action_error"
    CANCELLED = "cancelled"
    INTERRUPTED = "interrupted"


TRANSIENT_FAILURES = frozenset({FailureKind.TIMEOUT, FailureKind.LAUNCH_FAILURE})


class ArtifactKind(Enum):
    STRING = "string"
    EXIT_CODE = "exit_code"
    JSON = "json"


class OutputSource(Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    FILE = "file"
    EXIT_CODE = "exit_code"


class OutputParse(Enum):
    TEXT = "text"
    JSON = "json"
    INT = "int"
    REGEX = "regex"


class RunStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunOutcome(Enum):
    CONFIGURATION_ERROR = "configuration_error"
    INTERRUPTED = "interrupted"
    CANCELLED = "cancelled"
    STAGE_FAILED = "stage_failed"
    ALL_SKIPPED = "all_skipped"
    GATED = "gated"
    SUCCEEDED = "succeeded"


# ---------------------------------------------------------------------------
# Trigger
# ---------------------------------------------------------------------------

TRIGGER_FIELDS = ("event", "action", "environment", "actor", "ref")


class TriggerContext(BaseModel):
    """Immutable description of what started a run."""

    model_config = ConfigDict(frozen=True)

    event: TriggerEvent
    action: str = "plan"
    environment: str = "default"
    actor: str | None = None
    ref: str | None = None
    params: dict[str, ParamValue] = Field(default_factory=dict)
    secrets: dict[str, SecretStr] = Field(default_factory=dict)

    @property
    def manual(self) -> bool:
        return self.event is TriggerEvent.MANUAL

    def lookup(self, path: str) -> ParamValue | None:
        """Resolve ``trigger.<field>`` or ``params.<name>``. None if absent."""
        namespace, _, key = path.partition(".")
        if namespace == "trigger" and key in TRIGGER_FIELDS:
            value = getattr(self, key)
            return value.value if isinstance(value, Enum) else value
        if namespace == "params":
            return self.params.get(key)
        return None

    def with_defaults(self, defaults: dict[str, ParamValue]) -> TriggerContext:
        """Return a copy whose params are *defaults* overlaid by our own."""
        return self.model_copy(update={"params": {**defaults, **self.params}})


# ---------------------------------------------------------------------------
# Gate expressions
# ---------------------------------------------------------------------------


class AlwaysGate(BaseModel):
    op: Literal["always"] = "always"


class EqualsGate(BaseModel):
    op: Literal["equals"] = "equals"
    field: str
    value: ParamValue


class NotEqualsGate(BaseModel):
    op: Literal["not_equals"] = "not_equals"
    field: str
    value: ParamValue


class StatusIsGate(BaseModel):
    op: Literal["status_is"] = "status_is"
    stage: str
    statuses: list[StageStatus]

    @field_validator("statuses", mode="before")
    @classmethod
    def _single_status(cls, value: Any) -> Any:
        if isinstance(value, (str, StageStatus)):
            return [value]
        return value


class AndGate(BaseModel):
    op: Literal["and"] = "and"
    all: list[GateExpression]


class OrGate(BaseModel):
    op: Literal["or"] = "or"
    any: list[GateExpression]


class NotGate(BaseModel):
    op: Literal["not"] = "not"
    expr: GateExpression


GateExpression = Annotated[
    Union[
        AlwaysGate,
        EqualsGate,
        NotEqualsGate,
        StatusIsGate,
        AndGate,
        OrGate,
        NotGate,
    ],
    Field(discriminator="op"),
]

AndGate.model_rebuild()
OrGate.model_rebuild()
NotGate.model_rebuild()


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


class OutputSpec(BaseModel):
    """How to extract one named artifact from a finished step."""

    name: str
    source: OutputSource = OutputSource.STDOUT
    parse: OutputParse = OutputParse.TEXT
    pattern: str | None = None
    path: str | None = None
    required: bool = True

    @model_validator(mode="after")
    def _check_rule(self) -> OutputSpec:
        if self.parse is OutputParse.REGEX and not self.pattern:
            raise ValueError(f"output {self.name!r}: regex parse needs a pattern")
        if self.source is OutputSource.FILE and not self.path:
            raise ValueError(f"output {self.name!r}: file source needs a path")
        return self

    @property
    def kind(self) -> ArtifactKind:
        if self.source is OutputSource.EXIT_CODE:
            return ArtifactKind.EXIT_CODE
        if self.parse is OutputParse.JSON:
            return ArtifactKind.JSON
        if self.parse is OutputParse.INT:
            return ArtifactKind.EXIT_CODE
        return ArtifactKind.STRING


class StepSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    command: list[str] | None = None
    action: str | None = None
    params: dict[str, ParamValue] = Field(default_factory=dict, alias="with")
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float | None = Field(default=None, gt=0)
    retries: int = Field(default=0, ge=0)
    retryable: bool = False
    non_fatal: bool = False
    mutating: bool = False
    accepted_exit_codes: list[int] = Field(default_factory=lambda: [0])
    outputs: list[OutputSpec] = Field(default_factory=list)
    when: GateExpression | None = None

    @model_validator(mode="after")
    def _command_or_action(self) -> StepSpec:
        if (self.command is None) == (self.action is None):
            raise ValueError(f"step {self.name!r}: set exactly one of command or action")
        if self.command is not None and not self.command:
            raise ValueError(f"step {self.name!r}: command must not be empty")
        return self


class StageSpec(BaseModel):
    name: str
    steps: list[StepSpec]
    needs: list[str] = Field(default_factory=list)
    inputs: list[str] = Field(default_factory=list)
    gate: GateExpression | None = None
    run_on_failure: bool = False

    @property
    def outputs(self) -> list[str]:
        """Artifact names this stage may write, in step order."""
        return [out.name for step in self.steps for out in step.outputs]


class PipelineSpec(BaseModel):
    name: str
    parameters: dict[str, ParamValue] = Field(default_factory=dict)
    stages: list[StageSpec]

    def stage(self, name: str) -> StageSpec | None:
        return next((s for s in self.stages if s.name == name), None)


# ---------------------------------------------------------------------------
# Run records
# ---------------------------------------------------------------------------


class Artifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    kind: ArtifactKind
    value: Any
    producer: str | None = None


class AttemptRecord(BaseModel):
    number: int
    failure: FailureKind | None = None
    exit_code: int | None = None
    error: str | None = None
    duration_seconds: float = 0.0


class StepResult(BaseModel):
    name: str
    status: StepStatus
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    attempts: list[AttemptRecord] = Field(default_factory=list)
    failure: FailureKind | None = None
    error: str | None = None
    non_fatal: bool = False
    artifacts: dict[str, Artifact] = Field(default_factory=dict)

    @property
    def blocks_stage(self) -> bool:
        """True if this result ends the owning stage's step sequence."""
        if self.status in (StepStatus.SUCCEEDED, StepStatus.SKIPPED):
            return False
        return not (self.status is StepStatus.FAILED and self.non_fatal)


class StageResult(BaseModel):
    name: str
    status: StageStatus = StageStatus.PENDING
    skip_reason: SkipReason | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    steps: list[StepResult] = Field(default_factory=list)
    artifacts: list[str] = Field(default_factory=list)
    error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: StageStatus, **changes: Any) -> None:
        """Move to *status*. Terminal results never change again."""
        if self.terminal:
            msg = f"Stage {self.name!r} is already {self.status.value}"
            raise RuntimeError(msg)
        self.status = status
        for key, value in changes.items():
            setattr(self, key, value)


class PipelineRun(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str
    pipeline: str
    trigger: TriggerContext
    status: RunStatus
    outcome: RunOutcome
    stages: dict[str, StageResult] = Field(default_factory=dict)
    artifacts: dict[str, Artifact] = Field(default_factory=dict)
    configuration_error: str | None = None
    cancelled: bool = False
    started_at: datetime
    ended_at: datetime

    def stage(self, name: str) -> StageResult:
        return self.stages[name]
