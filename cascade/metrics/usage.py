"""Text-generation usage and cost aggregation.

Rows are written to ``ai_usage_logs`` by the outbox ``usage_log`` handler, one
per generation or evaluation call. Timestamps are fixed-width ISO strings, so
window filters compare them directly.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from cascade.core.state import Database

logger = logging.getLogger(__name__)

# USD per 1M tokens
DEFAULT_MODEL_PRICING: dict[str, dict[str, float]] = {
    "google/gemini-3-flash-preview": {"input": 0.10, "output": 0.40},
    "google/gemini-3-pro-preview": {"input": 1.25, "output": 10.00},
    "google/gemini-2.5-pro": {"input": 1.25, "output": 10.00},
    "google/gemini-2.5-flash": {"input": 0.15, "output": 0.60},
    "google/gemini-2.5-flash-lite": {"input": 0.075, "output": 0.30},
    "openai/gpt-5.2": {"input": 2.50, "output": 10.00},
    "openai/gpt-5": {"input": 2.50, "output": 10.00},
    "openai/gpt-5-mini": {"input": 0.30, "output": 1.20},
    "openai/gpt-5-nano": {"input": 0.10, "output": 0.40},
    "perplexity/sonar": {"input": 1.00, "output": 1.00},
    "perplexity/sonar-pro": {"input": 3.00, "output": 15.00},
    "perplexity/sonar-reasoning-pro": {"input": 2.00, "output": 8.00},
    "perplexity/sonar-deep-research": {"input": 2.00, "output": 8.00},
}
FALLBACK_PRICING = {"input": 0.10, "output": 0.40}


def calculate_cost(
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    overrides: dict[str, dict[str, float]] | None = None,
) -> float:
    """Estimated USD cost of one call; unknown models use the fallback price."""
    pricing = (overrides or {}).get(model) or DEFAULT_MODEL_PRICING.get(model) or FALLBACK_PRICING
    return (prompt_tokens * pricing["input"] + completion_tokens * pricing["output"]) / 1_000_000


def _since(days: int) -> str:
    return (datetime.now(UTC) - timedelta(days=days)).isoformat(timespec="microseconds")


@dataclass
class ModelUsage:
    """Aggregated usage for one model."""

    model: str
    calls: int
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cost: float

    @property
    def formatted_cost(self) -> str:
        return f"${self.estimated_cost:.4f}"


@dataclass
class WorkflowUsage:
    workflow_id: str
    calls: int
    total_tokens: int
    estimated_cost: float


class UsageAggregator:
    """Aggregate usage logs.

    USAGE:
        aggregator = UsageAggregator(db)
        models = aggregator.by_model(days=30)
        totals = aggregator.summary(days=30)
    """

    def __init__(self, db: Database):
        self.db = db

    def by_model(self, days: int = 30) -> list[ModelUsage]:
        with self.db._connect() as conn:
            rows = conn.execute(
                """
                SELECT
                    model,
                    COUNT(*) as calls,
                    SUM(prompt_tokens) as prompt_tokens,
                    SUM(completion_tokens) as completion_tokens,
                    SUM(total_tokens) as total_tokens,
                    SUM(estimated_cost) as cost
                FROM ai_usage_logs
                WHERE created_at >= ?
                GROUP BY model
                ORDER BY cost DESC, model
                """,
                (_since(days),),
            ).fetchall()

        return [
            ModelUsage(
                model=row[0],
                calls=row[1],
                prompt_tokens=row[2] or 0,
                completion_tokens=row[3] or 0,
                total_tokens=row[4] or 0,
                estimated_cost=row[5] or 0.0,
            )
            for row in rows
        ]

    def by_workflow(self, days: int = 30) -> list[WorkflowUsage]:
        with self.db._connect() as conn:
            rows = conn.execute(
                """
                SELECT
                    COALESCE(workflow_id, '-') as workflow_id,
                    COUNT(*) as calls,
                    SUM(total_tokens) as total_tokens,
                    SUM(estimated_cost) as cost
                FROM ai_usage_logs
                WHERE created_at >= ?
                GROUP BY COALESCE(workflow_id, '-')
                ORDER BY cost DESC
                """,
                (_since(days),),
            ).fetchall()

        return [
            WorkflowUsage(
                workflow_id=row[0],
                calls=row[1],
                total_tokens=row[2] or 0,
                estimated_cost=row[3] or 0.0,
            )
            for row in rows
        ]

    def summary(self, days: int = 30) -> dict[str, Any]:
        """Overall totals, split by usage category (generation vs. evaluation)."""
        with self.db._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) as calls,
                    SUM(total_tokens) as total_tokens,
                    SUM(estimated_cost) as cost,
                    COUNT(DISTINCT model) as models
                FROM ai_usage_logs
                WHERE created_at >= ?
                """,
                (_since(days),),
            ).fetchone()
            categories = conn.execute(
                """
                SELECT usage_category, SUM(estimated_cost) as cost
                FROM ai_usage_logs
                WHERE created_at >= ?
                GROUP BY usage_category
                """,
                (_since(days),),
            ).fetchall()

        return {
            "total_calls": row[0] or 0,
            "total_tokens": row[1] or 0,
            "estimated_cost": row[2] or 0.0,
            "unique_models": row[3] or 0,
            "cost_by_category": {c[0]: c[1] or 0.0 for c in categories},
        }
