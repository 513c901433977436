from __future__ import annotations

import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from sequencer.defaults import (
    LOGGING_DEFAULTS,
    RUNNER_DEFAULTS,
    STATE_DEFAULTS,
    SUMMARY_DEFAULTS,
    TIMEOUT_DEFAULTS,
    generate_toml,
)

CONFIG_FILENAME = "sequencer.toml"
CONFIG_DIR = ".sequencer"


@dataclass
class RunnerConfig:
    max_parallel_stages: int
    default_timeout_seconds: float
    retry_delay_seconds: float
    poll_interval_seconds: float
    kill_grace_seconds: float
    inherit_env: bool


@dataclass
class StateConfig:
    enabled: bool
    path: str


@dataclass
class SummaryConfig:
    path: str


@dataclass
class LoggingConfig:
    level: str


@dataclass
class SequencerConfig:
    runner: RunnerConfig = field(
        default_factory=lambda: RunnerConfig(**RUNNER_DEFAULTS),
    )
    timeouts: dict[str, int] = field(default_factory=lambda: dict(TIMEOUT_DEFAULTS))
    state: StateConfig = field(
        default_factory=lambda: StateConfig(**STATE_DEFAULTS),
    )
    summary: SummaryConfig = field(
        default_factory=lambda: SummaryConfig(**SUMMARY_DEFAULTS),
    )
    logging: LoggingConfig = field(
        default_factory=lambda: LoggingConfig(**LOGGING_DEFAULTS),
    )


def _deep_merge(base: dict, overrides: dict) -> dict:
    merged = dict(base)
    for key, value in overrides.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _build_defaults() -> dict:
    return {
        "runner": dict(RUNNER_DEFAULTS),
        "timeout": dict(TIMEOUT_DEFAULTS),
        "state": dict(STATE_DEFAULTS),
        "summary": dict(SUMMARY_DEFAULTS),
        "logging": dict(LOGGING_DEFAULTS),
    }


def _flatten_timeouts(table: dict, prefix: str = "") -> dict[str, int]:
    """Unquoted ``stage.step`` keys parse as nested tables; join them back."""
    flat: dict[str, int] = {}
    for key, value in table.items():
        name = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            flat.update(_flatten_timeouts(value, name))
        else:
            flat[name] = value
    return flat


def _config_from_dict(data: dict) -> SequencerConfig:
    return SequencerConfig(
        runner=RunnerConfig(**data.get("runner", RUNNER_DEFAULTS)),
        timeouts=_flatten_timeouts(data.get("timeout", TIMEOUT_DEFAULTS)),
        state=StateConfig(**data.get("state", STATE_DEFAULTS)),
        summary=SummaryConfig(**data.get("summary", SUMMARY_DEFAULTS)),
        logging=LoggingConfig(**data.get("logging", LOGGING_DEFAULTS)),
    )


def load_config(project_root: Path) -> SequencerConfig:
    """Load config: source defaults merged with .sequencer/sequencer.toml overrides."""
    defaults = _build_defaults()
    toml_path = project_root / CONFIG_DIR / CONFIG_FILENAME

    if not toml_path.is_file():
        return _config_from_dict(defaults)

    try:
        raw = toml_path.read_bytes()
        overrides = tomllib.loads(raw.decode())
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        print(f"Warning: failed to parse {toml_path}: {exc}", file=sys.stderr)
        return _config_from_dict(defaults)

    merged = _deep_merge(defaults, overrides)
    return _config_from_dict(merged)


def init_config(project_root: Path) -> Path:
    """Write .sequencer/sequencer.toml from source defaults. Backup existing."""
    config_dir = project_root / CONFIG_DIR
    config_dir.mkdir(parents=True, exist_ok=True)

    config_path = config_dir / CONFIG_FILENAME
    if config_path.exists():
        backup_path = config_path.with_suffix(".toml.bak")
        backup_path.write_text(config_path.read_text())

    config_path.write_text(generate_toml())
    return config_path


def resolve_step_timeout(
    config: SequencerConfig,
    stage: str,
    step: str,
    declared: float | None = None,
) -> float:
    """Resolve the timeout for ``stage.step``.

    Exact match, then ``stage.*`` wildcard, then the step's own declared
    timeout, then the runner default.
    """
    key = f"{stage}.{step}"
    if key in config.timeouts:
        return float(config.timeouts[key])

    wildcard_key = f"{stage}.*"
    if wildcard_key in config.timeouts:
        return float(config.timeouts[wildcard_key])

    if declared is not None:
        return float(declared)
    return float(config.runner.default_timeout_seconds)
