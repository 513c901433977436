"""Static validation of a pipeline before any stage runs.

Every problem found is collected and reported in one ConfigurationError,
except cycles, which raise CycleError as soon as they are detected.
"""

from __future__ import annotations

from collections import Counter

from sequencer.actions import ActionRegistry
from sequencer.dag import StageGraph, build_graph
from sequencer.errors import ConfigurationError
from sequencer.gates import field_problem, referenced_fields, referenced_stages
from sequencer.models import (
    TRIGGER_FIELDS,
    GateExpression,
    PipelineSpec,
    StageSpec,
    TriggerContext,
)
from sequencer.steps import NAMESPACES, step_templates, template_refs


def _duplicates(names: list[str]) -> list[str]:
    return sorted(name for name, count in Counter(names).items() if count > 1)


def _check_gate(
    where: str,
    gate: GateExpression,
    graph: StageGraph,
    ancestors: set[str],
    params: dict | None,
) -> list[str]:
    problems: list[str] = []
    for ref in sorted(referenced_stages(gate)):
        if ref not in graph:
            problems.append(f"{where} references unknown stage {ref!r}")
        elif ref not in ancestors:
            problems.append(f"{where} references stage {ref!r} which is not upstream")
    for path in sorted(referenced_fields(gate)):
        problem = field_problem(path)
        if problem:
            problems.append(f"{where}: {problem}")
        elif params is not None and path.startswith("params."):
            if path.removeprefix("params.") not in params:
                problems.append(f"{where} references unknown parameter {path!r}")
    return problems


def _check_templates(
    stage: StageSpec,
    trigger: TriggerContext | None,
    params: dict | None,
) -> list[str]:
    problems: list[str] = []
    earlier: set[str] = set()
    for step in stage.steps:
        where = f"stage {stage.name!r} step {step.name!r}"
        for location, text in step_templates(step):
            for namespace, key in template_refs(text):
                ref = f"{namespace}.{key}"
                if namespace not in NAMESPACES:
                    problems.append(f"{where} {location}: unknown namespace in {ref!r}")
                elif namespace == "inputs" and key not in stage.inputs:
                    problems.append(f"{where} {location}: {ref!r} is not a declared input")
                elif namespace == "outputs" and key not in earlier:
                    problems.append(
                        f"{where} {location}: {ref!r} is not produced by an earlier step"
                    )
                elif namespace == "trigger" and key not in TRIGGER_FIELDS:
                    problems.append(f"{where} {location}: unknown trigger field {ref!r}")
                elif namespace == "params" and params is not None and key not in params:
                    problems.append(f"{where} {location}: unknown parameter {ref!r}")
                elif namespace == "secrets":
                    if not location.startswith("env."):
                        problems.append(
                            f"{where} {location}: secrets may only be used in env"
                        )
                    elif trigger is not None and key not in trigger.secrets:
                        problems.append(f"{where} {location}: unknown secret {ref!r}")
        earlier.update(out.name for out in step.outputs)
    return problems


def validate_pipeline(
    pipeline: PipelineSpec,
    trigger: TriggerContext | None = None,
    actions: ActionRegistry | None = None,
) -> StageGraph:
    """Check *pipeline* statically and return its stage graph.

    With a *trigger*, parameter and secret references are checked too. With
    an *actions* registry, action names must be registered.
    """
    problems: list[str] = []

    for name in _duplicates([s.name for s in pipeline.stages]):
        problems.append(f"duplicate stage name {name!r}")
    for stage in pipeline.stages:
        if not stage.steps:
            problems.append(f"stage {stage.name!r} has no steps")
        for name in _duplicates([s.name for s in stage.steps]):
            problems.append(f"stage {stage.name!r} has duplicate step {name!r}")

    graph = build_graph(pipeline)
    for stage_name, need in graph.unknown_needs():
        problems.append(f"stage {stage_name!r} needs unknown stage {need!r}")
    if problems:
        raise ConfigurationError(problems)

    graph.topological_sort()

    params = None
    if trigger is not None:
        params = {**pipeline.parameters, **trigger.params}

    producers: dict[str, str] = {}
    for stage in pipeline.stages:
        for key in stage.outputs:
            if key in producers:
                problems.append(
                    f"artifact {key!r} is produced by both {producers[key]!r} "
                    f"and {stage.name!r}"
                )
            else:
                producers[key] = stage.name

    for stage in pipeline.stages:
        ancestors = graph.ancestors(stage.name)
        for key in stage.inputs:
            producer = producers.get(key)
            if producer is None:
                problems.append(
                    f"stage {stage.name!r} input {key!r} is not produced by any stage"
                )
            elif producer not in ancestors:
                problems.append(
                    f"stage {stage.name!r} input {key!r} comes from {producer!r}, "
                    "which is not reachable through needs"
                )

        if stage.gate is not None:
            problems.extend(
                _check_gate(f"stage {stage.name!r} gate", stage.gate, graph, ancestors, params)
            )
        for step in stage.steps:
            if step.when is not None:
                where = f"stage {stage.name!r} step {step.name!r} condition"
                problems.extend(_check_gate(where, step.when, graph, ancestors, params))
            if step.action and actions is not None and step.action not in actions:
                problems.append(
                    f"stage {stage.name!r} step {step.name!r} uses unknown action "
                    f"{step.action!r}"
                )

        problems.extend(_check_templates(stage, trigger, params))

    if problems:
        raise ConfigurationError(problems)
    return graph
