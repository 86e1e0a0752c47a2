"""Tests for the SQLite state database."""

from __future__ import annotations

from conftest import linear_workflow_definition

from cascade.core.graph_schema import WorkflowGraph
from cascade.core.state import Database, RunStatus, hash_api_key


class TestNodeRecords:
    """Versioned node outputs."""

    def test_version_increments_per_write(self, temp_db):
        first = temp_db.upsert_node_record("acme", "wf", "n", "promptTemplate", "N", {"output": "a"}, "h1", {})
        second = temp_db.upsert_node_record(
            "acme", "wf", "n", "promptTemplate", "N", {"output": "b"}, "h2", {"dep": "x"}
        )

        assert first.version == 1
        assert second.version == 2
        assert second.output == "b"
        assert second.content_hash == "h2"
        assert second.dependency_hashes == {"dep": "x"}
        assert second.last_executed_at >= first.last_executed_at

    def test_records_scoped_by_company_and_workflow(self, temp_db):
        temp_db.upsert_node_record("acme", "wf", "n", "dataset", None, {"output": 1}, "h", {})
        temp_db.upsert_node_record("globex", "wf", "n", "dataset", None, {"output": 2}, "h", {})
        temp_db.upsert_node_record("acme", "wf-2", "n", "dataset", None, {"output": 3}, "h", {})

        assert temp_db.get_node_record("acme", "wf", "n").output == 1
        assert temp_db.get_node_record("globex", "wf", "n").output == 2
        assert temp_db.get_company_workflow_ids("acme") == ["wf", "wf-2"]
        assert list(temp_db.get_node_records("acme", "wf")) == ["n"]
        assert temp_db.get_node_record("acme", "wf", "missing") is None

    def test_malformed_snapshot_reads_as_none(self, temp_db):
        temp_db.upsert_node_record("acme", "wf", "n", "dataset", None, {"output": 1}, "h", {})
        with temp_db._connect() as conn:
            conn.execute("UPDATE node_execution_records SET dependency_hashes = '[1, 2]'")
        assert temp_db.get_node_record("acme", "wf", "n").dependency_hashes is None


class TestCompanies:
    def test_api_key_stored_as_digest(self, temp_db):
        temp_db.create_company("Acme", api_key="csk_secret", company_id="acme")

        with temp_db._connect() as conn:
            stored = conn.execute("SELECT api_key_hash FROM companies").fetchone()[0]
        assert stored == hash_api_key("csk_secret")
        assert "csk_secret" not in stored

        assert temp_db.get_company_by_api_key("csk_secret").id == "acme"
        assert temp_db.get_company_by_api_key("csk_other") is None

    def test_inactive_company_cannot_authenticate(self, temp_db):
        temp_db.create_company("Acme", api_key="csk_secret", company_id="acme")
        with temp_db._connect() as conn:
            conn.execute("UPDATE companies SET is_active = 0")
        assert temp_db.get_company_by_api_key("csk_secret") is None

    def test_list(self, temp_db):
        temp_db.create_company("Acme", company_id="acme", rate_limit_rpm=5)
        companies = temp_db.list_companies()
        assert [(c.id, c.rate_limit_rpm) for c in companies] == [("acme", 5)]


class TestWorkflows:
    def test_roundtrip_and_replace(self, temp_db):
        graph = WorkflowGraph.model_validate(linear_workflow_definition())
        temp_db.save_workflow(graph)
        assert temp_db.get_workflow("wf-linear").model_dump() == graph.model_dump()

        definition = linear_workflow_definition()
        definition["name"] = "Renamed"
        temp_db.save_workflow(WorkflowGraph.model_validate(definition))
        assert [w.name for w in temp_db.list_workflows()] == ["Renamed"]

    def test_missing(self, temp_db):
        assert temp_db.get_workflow("nope") is None


class TestSubmissions:
    def test_newest_first_and_status(self, temp_db):
        first = temp_db.create_submission("acme", {"n": 1})
        second = temp_db.create_submission("acme", {"n": 2}, {"by": "crm"}, source_type="manual")
        temp_db.update_submission_status(first, "completed")

        submissions = temp_db.get_recent_submissions("acme")
        assert [s.id for s in submissions] == [second, first]
        assert submissions[0].metadata == {"by": "crm"}
        assert submissions[0].status == "processing"
        assert submissions[1].status == "completed"
        assert temp_db.count_recent_submissions("acme") == 2
        assert temp_db.count_recent_submissions("globex") == 0


class TestRuns:
    def test_lifecycle(self, temp_db):
        run_id = temp_db.create_run("acme", "wf", "manual")
        assert temp_db.get_run_status(run_id) == RunStatus.RUNNING

        assert temp_db.request_run_cancel(run_id) is True
        assert temp_db.request_run_cancel(run_id) is False
        assert temp_db.get_run_status(run_id) == RunStatus.CANCELLING

        temp_db.finish_run(run_id, RunStatus.CANCELLED, ["a"], ["b"], [], 12)
        run = temp_db.get_run(run_id)
        assert run.status == RunStatus.CANCELLED
        assert (run.executed, run.cached, run.execution_time_ms) == (["a"], ["b"], 12)

    def test_unknown_run(self, temp_db):
        assert temp_db.get_run("nope") is None
        assert temp_db.get_run_status("nope") is None


class TestReferenceData:
    def test_system_prompts_by_name(self, temp_db):
        temp_db.save_system_prompt("sp-1", "Hallucinations", "custom text")
        assert temp_db.get_system_prompt("sp-1")["prompt"] == "custom text"
        assert temp_db.get_system_prompts_by_name(["Hallucinations", "Other"]) == {
            "Hallucinations": "custom text"
        }

    def test_framework_and_dataset(self, temp_db):
        temp_db.save_framework("fw-1", "Scale", '{"levels": 5}')
        assert temp_db.get_framework("fw-1")["name"] == "Scale"
        temp_db.save_dataset("ds-1", "Bundle", [{"nodeId": "n"}])
        assert temp_db.get_dataset("ds-1")["dependencies"] == [{"nodeId": "n"}]
        assert temp_db.get_dataset("missing") is None

    def test_database_file_created(self, tmp_path):
        db = Database(tmp_path / "nested" / "state.db")
        assert db.db_path.exists()
