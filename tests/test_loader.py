from __future__ import annotations

from pathlib import Path

import pytest

from sequencer.actions import ActionRegistry
from sequencer.errors import ConfigurationError
from sequencer.loader import load_pipeline, parse_pipeline
from sequencer.models import AndGate, TriggerContext, TriggerEvent
from sequencer.validation import validate_pipeline

EXAMPLE = Path(__file__).resolve().parents[1] / "examples" / "deploy.toml"

PIPELINE_TOML = """\
[parameters]
run_tests = true

[[stages]]
name = "plan"

[[stages.steps]]
name = "plan"
command = ["terraform", "plan", "-detailed-exitcode"]
accepted_exit_codes = [0, 2]
outputs = [{ name = "plan_exit_code", source = "exit_code" }]

[[stages]]
name = "apply"
needs = ["plan"]

[stages.gate]
op = "and"
all = [
    { op = "equals", field = "trigger.action", value = "apply" },
    { op = "status_is", stage = "plan", statuses = "succeeded" },
]

[[stages.steps]]
name = "apply"
command = ["terraform", "apply"]
mutating = true
"""


class TestLoadPipeline:
    def test_name_defaults_to_file_stem(self, tmp_path: Path) -> None:
        path = tmp_path / "infra.toml"
        path.write_text(PIPELINE_TOML)
        pipeline = load_pipeline(path)
        assert pipeline.name == "infra"
        assert [s.name for s in pipeline.stages] == ["plan", "apply"]
        assert pipeline.parameters == {"run_tests": True}

    def test_explicit_name(self, tmp_path: Path) -> None:
        path = tmp_path / "infra.toml"
        path.write_text('name = "terraform"\n' + PIPELINE_TOML)
        assert load_pipeline(path).name == "terraform"

    def test_nested_gate_parsed(self, tmp_path: Path) -> None:
        path = tmp_path / "infra.toml"
        path.write_text(PIPELINE_TOML)
        apply = load_pipeline(path).stage("apply")
        assert apply is not None
        assert isinstance(apply.gate, AndGate)
        assert apply.steps[0].mutating is True

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_pipeline(tmp_path / "absent.toml")

    def test_invalid_toml(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.toml"
        path.write_text("[[stages]\nname = ")
        with pytest.raises(ConfigurationError, match="failed to parse"):
            load_pipeline(path)


class TestParsePipeline:
    def test_validation_errors_have_locations(self) -> None:
        data = {
            "name": "p",
            "stages": [{"name": "a", "steps": [{"name": "s", "retries": -1, "command": ["x"]}]}],
        }
        with pytest.raises(ConfigurationError) as exc_info:
            parse_pipeline(data)
        assert any(p.startswith("stages.0.steps.0.retries") for p in exc_info.value.problems)

    def test_missing_stages(self) -> None:
        with pytest.raises(ConfigurationError, match="stages"):
            parse_pipeline({"name": "p"})


class TestExamplePipeline:
    def test_example_is_valid(self) -> None:
        pipeline = load_pipeline(EXAMPLE)
        trigger = TriggerContext(
            event=TriggerEvent.MANUAL,
            action="apply",
            secrets={"registry_token": "t"},
        ).with_defaults(pipeline.parameters)
        graph = validate_pipeline(pipeline, trigger, ActionRegistry())
        assert graph.execution_tiers() == [
            ["plan", "build"],
            ["apply"],
            ["deploy"],
            ["report"],
        ]

    def test_example_needs_registry_secret(self) -> None:
        pipeline = load_pipeline(EXAMPLE)
        trigger = TriggerContext(event=TriggerEvent.PUSH).with_defaults(pipeline.parameters)
        with pytest.raises(ConfigurationError, match="registry_token"):
            validate_pipeline(pipeline, trigger)
