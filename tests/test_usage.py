"""Tests for usage aggregation and the usage dashboard."""

import pytest
from rich.console import Console

from cascade.metrics.dashboard import UsageDashboard
from cascade.metrics.usage import FALLBACK_PRICING, UsageAggregator, calculate_cost


def _log(db, model, prompt, completion, category="generation", workflow_id="wf", task_id=None):
    db.record_usage(
        model,
        prompt,
        completion,
        prompt + completion,
        calculate_cost(model, prompt, completion),
        usage_category=category,
        workflow_id=workflow_id,
        task_id=task_id,
    )


class TestCalculateCost:
    def test_known_model(self):
        assert calculate_cost("openai/gpt-5-mini", 1_000_000, 1_000_000) == pytest.approx(1.50)

    def test_unknown_model_uses_fallback(self):
        expected = FALLBACK_PRICING["input"] + FALLBACK_PRICING["output"]
        assert calculate_cost("vendor/new", 1_000_000, 1_000_000) == pytest.approx(expected)

    def test_override(self):
        overrides = {"openai/gpt-5-mini": {"input": 1.0, "output": 0.0}}
        assert calculate_cost("openai/gpt-5-mini", 500_000, 10, overrides) == pytest.approx(0.5)


class TestUsageAggregator:
    def test_empty(self, temp_db):
        aggregator = UsageAggregator(temp_db)
        assert aggregator.by_model() == []
        assert aggregator.summary()["total_calls"] == 0

    def test_grouping(self, temp_db):
        _log(temp_db, "openai/gpt-5", 1000, 500)
        _log(temp_db, "openai/gpt-5", 1000, 500, workflow_id="other")
        _log(temp_db, "google/gemini-2.5-flash-lite", 200, 10, category="evaluation")

        aggregator = UsageAggregator(temp_db)
        models = aggregator.by_model(days=1)
        assert [m.model for m in models] == ["openai/gpt-5", "google/gemini-2.5-flash-lite"]
        assert models[0].calls == 2
        assert models[0].prompt_tokens == 2000

        workflows = {w.workflow_id: w.calls for w in aggregator.by_workflow(days=1)}
        assert workflows == {"wf": 2, "other": 1}

        summary = aggregator.summary(days=1)
        assert summary["total_calls"] == 3
        assert summary["unique_models"] == 2
        assert set(summary["cost_by_category"]) == {"generation", "evaluation"}

    def test_task_id_logged_once(self, temp_db):
        _log(temp_db, "openai/gpt-5", 10, 10, task_id="t-1")
        _log(temp_db, "openai/gpt-5", 10, 10, task_id="t-1")
        assert UsageAggregator(temp_db).summary()["total_calls"] == 1


class TestUsageDashboard:
    def test_renders_tables(self, temp_db):
        _log(temp_db, "openai/gpt-5-mini", 1000, 100)
        console = Console(record=True, width=120)
        UsageDashboard(UsageAggregator(temp_db), console).show(days=7)
        output = console.export_text()
        assert "Generation Usage - Last 7 Days" in output
        assert "openai/gpt-5-mini" in output
        assert "Usage by Workflow" in output

    def test_no_usage(self, temp_db):
        console = Console(record=True, width=120)
        UsageDashboard(UsageAggregator(temp_db), console).show()
        assert "No usage recorded" in console.export_text()
