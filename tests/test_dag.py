from __future__ import annotations

import pytest

from sequencer.dag import StageGraph, build_graph
from sequencer.errors import ConfigurationError, CycleError
from sequencer.models import PipelineSpec, StageSpec, StepSpec


def _graph(**needs: list[str]) -> StageGraph:
    graph = StageGraph()
    for name, deps in needs.items():
        graph.add_stage(name, needs=deps)
    return graph


class TestAddAndGetNode:
    def test_add_and_retrieve(self) -> None:
        graph = StageGraph()
        graph.add_stage("plan")
        node = graph.get_node("plan")
        assert node is not None
        assert node.needs == []
        assert node.position == 0

    def test_update_keeps_position(self) -> None:
        graph = _graph(plan=[], build=[])
        graph.add_stage("plan", needs=["build"])
        node = graph.get_node("plan")
        assert node is not None
        assert node.needs == ["build"]
        assert node.position == 0

    def test_get_nonexistent(self) -> None:
        assert StageGraph().get_node("nope") is None

    def test_nodes_in_declaration_order(self) -> None:
        graph = _graph(zeta=[], alpha=[], mid=[])
        assert [n.name for n in graph.nodes] == ["zeta", "alpha", "mid"]

    def test_contains(self) -> None:
        graph = _graph(plan=[])
        assert "plan" in graph
        assert "apply" not in graph


class TestRelations:
    def test_dependents(self) -> None:
        graph = _graph(plan=[], apply=["plan"], report=["plan"])
        assert graph.dependents("plan") == ["apply", "report"]
        assert graph.dependents("apply") == []

    def test_ancestors_transitive(self) -> None:
        graph = _graph(plan=[], apply=["plan"], deploy=["apply", "build"], build=[])
        assert graph.ancestors("deploy") == {"apply", "plan", "build"}
        assert graph.ancestors("plan") == set()

    def test_descendants_transitive(self) -> None:
        graph = _graph(plan=[], apply=["plan"], deploy=["apply"], build=[])
        assert graph.descendants("plan") == {"apply", "deploy"}

    def test_unknown_needs(self) -> None:
        graph = _graph(apply=["plan"], deploy=["apply"])
        assert graph.unknown_needs() == [("apply", "plan")]


class TestReadiness:
    def test_root_is_ready(self) -> None:
        graph = _graph(plan=[], apply=["plan"])
        assert graph.is_ready("plan", set()) is True
        assert graph.is_ready("apply", set()) is False

    def test_ready_once_needs_terminal(self) -> None:
        graph = _graph(plan=[], apply=["plan"])
        assert graph.is_ready("apply", {"plan"}) is True

    def test_unknown_is_never_ready(self) -> None:
        assert _graph(plan=[]).is_ready("ghost", {"plan"}) is False

    def test_ready_stages_excludes_started(self) -> None:
        graph = _graph(plan=[], build=[], deploy=["plan", "build"])
        assert graph.ready_stages(set(), set()) == ["plan", "build"]
        assert graph.ready_stages({"plan"}, {"plan", "build"}) == []
        assert graph.ready_stages({"plan", "build"}, {"plan", "build"}) == ["deploy"]


class TestTopologicalSort:
    def test_linear_chain(self) -> None:
        graph = _graph(c=["b"], b=["a"], a=[])
        assert graph.topological_sort() == ["a", "b", "c"]

    def test_diamond(self) -> None:
        graph = _graph(top=[], left=["top"], right=["top"], bottom=["left", "right"])
        order = graph.topological_sort()
        assert order[0] == "top"
        assert order[-1] == "bottom"
        assert set(order[1:3]) == {"left", "right"}

    def test_ties_follow_declaration_order(self) -> None:
        graph = _graph(build=[], plan=[], lint=[])
        assert graph.topological_sort() == ["build", "plan", "lint"]

    def test_empty(self) -> None:
        assert StageGraph().topological_sort() == []

    def test_cycle_raises(self) -> None:
        graph = _graph(a=["c"], b=["a"], c=["b"])
        with pytest.raises(CycleError) as exc_info:
            graph.topological_sort()
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_cycle_is_configuration_error(self) -> None:
        graph = _graph(a=["a"])
        with pytest.raises(ConfigurationError, match="Dependency cycle detected"):
            graph.topological_sort()

    def test_cycle_behind_acyclic_prefix(self) -> None:
        graph = _graph(root=[], x=["root", "y"], y=["x"])
        with pytest.raises(CycleError) as exc_info:
            graph.topological_sort()
        assert "root" not in exc_info.value.cycle


class TestExecutionTiers:
    def test_independent_stages_share_tier(self) -> None:
        graph = _graph(plan=[], build=[], apply=["plan"], deploy=["apply", "build"])
        assert graph.execution_tiers() == [["plan", "build"], ["apply"], ["deploy"]]

    def test_empty_graph(self) -> None:
        assert StageGraph().execution_tiers() == []


class TestBuildGraph:
    def test_from_pipeline(self) -> None:
        step = StepSpec(name="s", command=["true"])
        pipeline = PipelineSpec(
            name="deploy",
            stages=[
                StageSpec(name="plan", steps=[step]),
                StageSpec(name="apply", needs=["plan"], steps=[step]),
            ],
        )
        graph = build_graph(pipeline)
        assert graph.topological_sort() == ["plan", "apply"]
        assert graph.ancestors("apply") == {"plan"}
