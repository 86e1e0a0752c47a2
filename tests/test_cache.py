"""Tests for content hashing, the node cache and staleness detection."""

import hashlib

import pytest

from cascade.core.cache import CacheStore, content_hash, serialize_output
from cascade.core.graph_model import GraphModel
from cascade.core.graph_schema import WorkflowGraph
from cascade.core.state import Database


def _model(nodes) -> GraphModel:
    return GraphModel(WorkflowGraph.model_validate({"id": "wf", "name": "Test", "nodes": nodes}))


def _prompt(node_id, *parts):
    return {"id": node_id, "type": "promptTemplate", "config": {"promptParts": list(parts)}}


@pytest.fixture
def model() -> GraphModel:
    return _model(
        [
            {"id": "a", "type": "dataset"},
            {"id": "b", "type": "dataset"},
            _prompt(
                "c",
                {"type": "dependency", "value": "a"},
                {"type": "dependency", "value": "b", "triggersExecution": False},
            ),
        ]
    )


@pytest.fixture
def cache(temp_db: Database, model: GraphModel) -> CacheStore:
    return CacheStore(temp_db, "acme", model)


class TestContentHash:
    def test_string_hashed_as_is(self):
        assert content_hash("hello") == hashlib.sha256(b"hello").hexdigest()

    def test_key_order_does_not_matter(self):
        assert content_hash({"a": 1, "b": 2}) == content_hash({"b": 2, "a": 1})

    def test_list_and_string_differ(self):
        assert content_hash("x") != content_hash(["x"])

    def test_serialization_is_compact_sorted_json(self):
        assert serialize_output({"b": [1, 2], "a": "é"}) == '{"a":"é","b":[1,2]}'

    def test_hash_is_lowercase_hex(self):
        digest = content_hash({"k": "v"})
        assert len(digest) == 64
        assert digest == digest.lower()


class TestCacheWrite:
    def test_version_increments_per_write(self, cache, model):
        node = model.get_node("a")
        first = cache.write(node, {"x": 1})
        second = cache.write(node, {"x": 1})
        assert first.version == 1
        assert second.version == 2
        assert second.content_hash == content_hash({"x": 1})

    def test_extra_data_stored_next_to_output(self, cache, model):
        record = cache.write(model.get_node("a"), "out", extra_data={"flags": ["X"]})
        assert record.data == {"output": "out", "flags": ["X"]}
        assert record.output == "out"

    def test_snapshot_covers_triggering_dependencies_only(self, cache, model):
        a = cache.write(model.get_node("a"), "A1")
        cache.write(model.get_node("b"), "B1")
        record = cache.write(model.get_node("c"), "C1")
        assert record.dependency_hashes == {"a": a.content_hash}

    def test_snapshot_skips_dependencies_without_output(self, cache, model):
        record = cache.write(model.get_node("c"), "C1")
        assert record.dependency_hashes == {}


class TestStaleness:
    """is_stale() decisions."""

    def test_never_executed(self, cache, model):
        decision = cache.is_stale(model.get_node("c"))
        assert decision.stale
        assert decision.reason == "never_executed"

    def test_fresh_after_write(self, cache, model):
        cache.write(model.get_node("a"), "A1")
        cache.write(model.get_node("c"), "C1")
        decision = cache.is_stale(model.get_node("c"))
        assert not decision
        assert decision.reason == "cache_valid"

    def test_changed_dependency(self, cache, model):
        cache.write(model.get_node("a"), "A1")
        cache.write(model.get_node("c"), "C1")
        cache.write(model.get_node("a"), "A2")
        decision = cache.is_stale(model.get_node("c"))
        assert decision.stale
        assert decision.reason == "dependency_changed:a"

    def test_same_content_rewrite_is_not_a_change(self, cache, model):
        cache.write(model.get_node("a"), "A1")
        cache.write(model.get_node("c"), "C1")
        cache.write(model.get_node("a"), "A1")
        assert not cache.is_stale(model.get_node("c"))

    def test_non_triggering_dependency_change_ignored(self, cache, model):
        cache.write(model.get_node("a"), "A1")
        cache.write(model.get_node("b"), "B1")
        cache.write(model.get_node("c"), "C1")
        cache.write(model.get_node("b"), "B2")
        assert not cache.is_stale(model.get_node("c"))

    def test_force_and_requested(self, cache, model):
        cache.write(model.get_node("a"), "A1")
        node = model.get_node("a")
        assert cache.is_stale(node, force=True).reason == "force_rerun"
        assert cache.is_stale(node, requested={"a"}).reason == "requested"

    def test_malformed_snapshot_is_stale(self, cache, model, temp_db):
        cache.write(model.get_node("c"), "C1")
        with temp_db._connect() as conn:
            conn.execute(
                "UPDATE node_execution_records SET dependency_hashes = ? WHERE node_id = 'c'",
                ('["not", "a", "map"]',),
            )
        assert cache.get("c").dependency_hashes is None
        assert cache.is_stale(model.get_node("c")).reason == "never_executed"

    def test_ingest_and_live_nodes_always_stale(self, temp_db):
        model = _model(
            [
                {"id": "in", "type": "ingest"},
                {"id": "s", "type": "dataset", "config": {"sourceType": "ssot_schema", "fetchLive": True}},
            ]
        )
        cache = CacheStore(temp_db, "acme", model)
        cache.write(model.get_node("in"), {"k": 1})
        assert cache.is_stale(model.get_node("in")).reason == "live_source"
        assert cache.is_stale(model.get_node("s")).reason == "live_source"

    def test_live_dependency_not_tracked(self, temp_db):
        model = _model(
            [
                {"id": "s", "type": "dataset", "config": {"sourceType": "ssot_schema", "fetchLive": True}},
                _prompt("p", {"type": "dependency", "value": "s"}),
            ]
        )
        cache = CacheStore(temp_db, "acme", model)
        cache.write(model.get_node("s"), {"v": 1})
        record = cache.write(model.get_node("p"), "P1")
        assert record.dependency_hashes == {}
        cache.write(model.get_node("s"), {"v": 2})
        assert not cache.is_stale(model.get_node("p"))

    def test_cross_workflow_dependency_hash(self, temp_db):
        other_model = GraphModel(
            WorkflowGraph.model_validate(
                {"id": "other", "name": "Other", "nodes": [{"id": "x", "type": "dataset"}]}
            )
        )
        other_cache = CacheStore(temp_db, "acme", other_model)
        x = other_cache.write(other_model.get_node("x"), "X1")

        model = _model([_prompt("p", {"type": "dependency", "value": "x", "workflowId": "other"})])
        cache = CacheStore(temp_db, "acme", model)
        record = cache.write(model.get_node("p"), "P1")
        assert record.dependency_hashes == {"other:x": x.content_hash}

        other_cache.write(other_model.get_node("x"), "X2")
        assert cache.is_stale(model.get_node("p")).reason == "dependency_changed:x"

    def test_records_isolated_per_company(self, temp_db, model):
        CacheStore(temp_db, "acme", model).write(model.get_node("a"), "A1")
        assert CacheStore(temp_db, "globex", model).get("a") is None
