"""Tests for deduplicated operational alerts."""

import pytest

from cascade.core.alerts import AlertDeduplicator, AlertDetails, AlertSeverity
from cascade.core.state import Database


@pytest.fixture
def alerts(temp_db: Database) -> AlertDeduplicator:
    return AlertDeduplicator(temp_db)


class TestUpsert:
    """One open alert per (type, identity)."""

    def test_repeat_bumps_counter(self, alerts):
        first = alerts.upsert("custom", "key-1", AlertDetails(title="First", affected_nodes=["a"]))
        second = alerts.upsert("custom", "key-1", AlertDetails(title="Again", affected_nodes=["b", "a"]))

        assert second.id == first.id
        assert second.occurrence_count == 2
        assert second.title == "Again"
        assert second.affected_nodes == ["a", "b"]
        assert second.last_seen_at >= first.first_seen_at
        assert len(alerts.list_alerts()) == 1

    def test_different_identity_opens_new_alert(self, alerts):
        alerts.upsert("custom", "key-1", AlertDetails(title="One"))
        alerts.upsert("custom", "key-2", AlertDetails(title="Two"))
        assert len(alerts.list_alerts()) == 2

    def test_resolve_then_reoccur_starts_fresh(self, alerts):
        first = alerts.upsert("custom", "key-1", AlertDetails(title="One"))
        assert alerts.resolve(first.id) is True
        assert alerts.resolve(first.id) is False

        again = alerts.upsert("custom", "key-1", AlertDetails(title="One"))
        assert again.id != first.id
        assert again.occurrence_count == 1
        assert [a.id for a in alerts.list_alerts()] == [again.id]
        assert len(alerts.list_alerts(include_resolved=True)) == 2

    def test_get_unknown(self, alerts):
        assert alerts.get(999) is None
        assert alerts.resolve(999) is False


class TestTypedHelpers:
    def test_model_not_found_is_critical(self, alerts):
        alert = alerts.model_unavailable("openai/gpt-9", 404, "no such model", node_id="n1", node_label="Summary")
        assert alert.alert_type == "model_unavailable"
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.title == "Model Not Found: openai/gpt-9"
        assert alert.affected_nodes == ["Summary"]

    def test_model_deprecated(self, alerts):
        assert alerts.model_unavailable("m", 410, "gone").title == "Model Deprecated: m"

    def test_bad_request_mentioning_model_is_warning(self, alerts):
        alert = alerts.model_unavailable("m", 400, "Invalid MODEL id")
        assert alert.severity == AlertSeverity.WARNING
        assert alert.title == "Model Error: m"

    def test_unrelated_failures_ignored(self, alerts):
        assert alerts.model_unavailable("m", 400, "bad json") is None
        assert alerts.model_unavailable("m", 500, "model crashed") is None
        assert alerts.list_alerts() == []

    def test_same_model_across_nodes_merges(self, alerts):
        alerts.model_unavailable("m", 404, "", node_id="n1")
        alert = alerts.model_unavailable("m", 404, "", node_id="n2")
        assert alert.occurrence_count == 2
        assert alert.affected_nodes == ["n1", "n2"]

    def test_quality_severity(self, alerts):
        warning = alerts.quality("hallucination", "acme", "Acme", "wf", "n1", "Summary", 45, "meh")
        critical = alerts.quality("complexity", "acme", "Acme", "wf", "n1", "Summary", 29, "hard")
        assert warning.severity == AlertSeverity.WARNING
        assert warning.title == "Hallucination Risk: Acme - Summary"
        assert critical.severity == AlertSeverity.CRITICAL
        assert critical.details == {"metric": "complexity", "score": 29}

    def test_execution_errors_summary(self, alerts):
        alert = alerts.execution_errors(
            "acme", "wf", [{"node_id": "b", "error": "boom"}], workflow_name="Pipeline"
        )
        assert alert.identity_key == "acme:wf"
        assert alert.title == "Execution errors: Pipeline (1 nodes)"
        assert alert.description == "b: boom"
