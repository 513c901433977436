from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from sequencer.actions import ActionRegistry
from sequencer.config import RunnerConfig, SequencerConfig
from sequencer.scheduler import PipelineScheduler
from sequencer.state_db import StateDB
from sequencer.steps import StepRunner
from sequencer.summary import RunSummary


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture()
def db(project_root: Path) -> Iterator[StateDB]:
    state = StateDB(project_root / ".sequencer" / "state.db")
    yield state
    state.close()


@pytest.fixture()
def config() -> SequencerConfig:
    return SequencerConfig(
        runner=RunnerConfig(
            max_parallel_stages=4,
            default_timeout_seconds=30,
            retry_delay_seconds=0,
            poll_interval_seconds=0.05,
            kill_grace_seconds=2.0,
            inherit_env=True,
        ),
    )


@pytest.fixture()
def actions() -> ActionRegistry:
    return ActionRegistry()


@pytest.fixture()
def summary(project_root: Path) -> RunSummary:
    return RunSummary(project_root / "summary.md")


@pytest.fixture()
def make_scheduler(
    config: SequencerConfig,
    db: StateDB,
    summary: RunSummary,
    actions: ActionRegistry,
) -> Callable[[], PipelineScheduler]:
    def factory() -> PipelineScheduler:
        return PipelineScheduler(
            config=config,
            runner=StepRunner.from_config(config, actions),
            state=db,
            summary=summary,
        )

    return factory
