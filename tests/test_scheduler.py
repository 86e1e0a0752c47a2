"""Tests for topological scheduling and pause blocking."""

import pytest

from cascade.core.graph_model import GraphModel
from cascade.core.graph_schema import WorkflowGraph
from cascade.core.pause import PauseController
from cascade.core.scheduler import CycleDetectedError, TopologicalScheduler, UnknownNodeError


def _model(nodes, edges=None) -> GraphModel:
    return GraphModel(
        WorkflowGraph.model_validate({"id": "wf", "name": "Test", "nodes": nodes, "edges": edges or []})
    )


def _prompt(node_id, *deps, paused=False):
    return {
        "id": node_id,
        "type": "promptTemplate",
        "config": {
            "paused": paused,
            "promptParts": [{"type": "dependency", "value": d} for d in deps],
        },
    }


class TestTopologicalScheduler:
    """Ordering guarantees."""

    def test_dependencies_come_first(self):
        # Declared out of order on purpose
        model = _model([_prompt("c", "b"), _prompt("b", "a"), {"id": "a", "type": "dataset"}])
        assert TopologicalScheduler(model).order() == ["a", "b", "c"]

    def test_definition_order_breaks_ties(self):
        model = _model(
            [{"id": "x", "type": "dataset"}, {"id": "y", "type": "dataset"}, _prompt("z", "y", "x")]
        )
        assert TopologicalScheduler(model).order() == ["x", "y", "z"]

    def test_subset_ignores_outside_dependencies(self):
        model = _model([{"id": "a", "type": "dataset"}, _prompt("b", "a"), _prompt("c", "b")])
        assert TopologicalScheduler(model).order({"c", "b"}) == ["b", "c"]

    def test_unknown_node_in_subset(self):
        model = _model([{"id": "a", "type": "dataset"}])
        with pytest.raises(UnknownNodeError, match="ghost"):
            TopologicalScheduler(model).order({"a", "ghost"})

    def test_cycle_detected(self):
        model = _model([_prompt("a", "c"), _prompt("b", "a"), _prompt("c", "b")])
        with pytest.raises(CycleDetectedError) as exc_info:
            TopologicalScheduler(model).order()
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_edges_are_ordered_like_parts(self):
        model = _model(
            [{"id": "b", "type": "promptPiece"}, {"id": "a", "type": "dataset"}],
            edges=[{"from": {"node": "a"}, "to": {"node": "b"}}],
        )
        assert TopologicalScheduler(model).order() == ["a", "b"]


class TestPauseController:
    def test_no_paused_nodes(self):
        model = _model([{"id": "a", "type": "dataset"}, _prompt("b", "a")])
        assert PauseController(model).blocked_nodes() == set()

    def test_paused_node_blocks_downstream(self):
        model = _model(
            [
                {"id": "a", "type": "dataset"},
                _prompt("b", "a", paused=True),
                _prompt("c", "b"),
                _prompt("d", "a"),
            ]
        )
        controller = PauseController(model)
        assert controller.paused_nodes() == {"b"}
        assert controller.blocked_nodes() == {"b", "c"}

    def test_extra_paused_nodes(self):
        model = _model([{"id": "a", "type": "dataset"}, _prompt("b", "a")])
        assert PauseController(model).blocked_nodes(extra_paused=["a", "unknown"]) == {"a", "b"}
