"""Quality evaluation of generated text.

Each enabled metric is one small text-generation call that returns
``{"score": 0-100, "reasoning": "..."}``. Higher is better for every metric:
a low hallucination score means the output is poorly grounded.

Evaluation never fails a node: an unreachable evaluator or an unparseable
answer yields a neutral score of 50 with an explanatory reasoning string.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from jinja2 import FileSystemLoader, StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from cascade.config import EvaluationSettings
from cascade.core.llm import GenerationRequest, TextGenerationClient
from cascade.core.state import Database, _utc_now_iso

if TYPE_CHECKING:
    from cascade.core.alerts import Alert, AlertDeduplicator
    from cascade.core.graph_schema import Node
    from cascade.core.outbox import OutboxQueue

logger = logging.getLogger(__name__)

EVALUATOR_SYSTEM_PROMPT = "You are an evaluator. Output only valid JSON."
EVALUATOR_TEMPERATURE = 0.3
EVALUATOR_MAX_TOKENS = 300

METRICS = ("hallucination", "data_quality", "complexity")

# Integer weights (5:3:2) keep the weighted mean exact before rounding
METRIC_WEIGHTS = {"hallucination": 5, "data_quality": 3, "complexity": 2}

# metric -> (flag, score at or below which it is raised)
FLAG_THRESHOLDS = {
    "hallucination": ("HIGH_HALLUCINATION", 40),
    "data_quality": ("INSUFFICIENT_DATA", 30),
    "complexity": ("TOO_COMPLEX", 20),
}

# system_prompts rows that override the packaged templates
TEMPLATE_OVERRIDE_NAMES = {
    "hallucination": "Hallucinations",
    "data_quality": "Data Quality",
    "complexity": "Complexity",
}

_JSON_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


@dataclass
class MetricScore:
    score: int
    reasoning: str

    def to_dict(self) -> dict[str, Any]:
        return {"score": self.score, "reasoning": self.reasoning}


DISABLED = MetricScore(0, "Metric disabled")
CALL_FAILED = MetricScore(50, "Evaluation failed")
PARSE_FAILED = MetricScore(50, "Evaluation parsing failed")


@dataclass
class EvaluationRecord:
    """Scores for one generated output."""

    hallucination: MetricScore
    data_quality: MetricScore
    complexity: MetricScore
    overall_score: int
    flags: list[str] = field(default_factory=list)
    evaluation_model: str = ""
    evaluated_at: str = field(default_factory=_utc_now_iso)

    def metric(self, name: str) -> MetricScore:
        return getattr(self, name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "hallucination": self.hallucination.to_dict(),
            "data_quality": self.data_quality.to_dict(),
            "complexity": self.complexity.to_dict(),
            "overall_score": self.overall_score,
            "flags": list(self.flags),
            "evaluation_model": self.evaluation_model,
            "evaluated_at": self.evaluated_at,
        }


def compute_overall_score(scores: dict[str, int], enabled: dict[str, bool]) -> int:
    """Weighted mean over enabled metrics, rounded half up. 0 when none are enabled."""
    total_weight = sum(METRIC_WEIGHTS[m] for m in METRICS if enabled.get(m))
    if total_weight == 0:
        return 0
    weighted = sum(METRIC_WEIGHTS[m] * scores[m] for m in METRICS if enabled.get(m))
    return (2 * weighted + total_weight) // (2 * total_weight)


def compute_flags(scores: dict[str, int], enabled: dict[str, bool]) -> list[str]:
    flags = []
    for metric in METRICS:
        flag, threshold = FLAG_THRESHOLDS[metric]
        if enabled.get(metric) and scores[metric] <= threshold:
            flags.append(flag)
    return flags


def parse_metric_response(content: str) -> MetricScore:
    """Parse an evaluator answer (bare or fenced JSON); score clamped to 0..100."""
    json_str = content
    match = _JSON_FENCE.search(content)
    if match:
        json_str = match.group(1).strip()

    try:
        parsed = json.loads(json_str)
    except json.JSONDecodeError:
        logger.debug(f"Unparseable evaluator response: {content[:200]}")
        return PARSE_FAILED
    if not isinstance(parsed, dict):
        return PARSE_FAILED

    try:
        score = int(float(parsed.get("score")))
    except (TypeError, ValueError):
        score = 50
    return MetricScore(
        score=max(0, min(100, score)),
        reasoning=str(parsed.get("reasoning") or "No reasoning provided"),
    )


class EvaluationSidecar:
    """Scores generated text and reports low scores.

    USAGE:
        sidecar = EvaluationSidecar(llm, settings, db)
        record = await sidecar.evaluate(prompt, reference, response)
        sidecar.report(record, alerts, company_id, company_name, workflow_id, node)
    """

    def __init__(
        self,
        llm: TextGenerationClient,
        settings: EvaluationSettings | None = None,
        db: Database | None = None,
        outbox: OutboxQueue | None = None,
    ):
        self.llm = llm
        self.settings = settings or EvaluationSettings()
        self.db = db
        self.outbox = outbox

        # Template directory is package-internal; overrides come from system_prompts
        template_dir = Path(__file__).parent.parent / "prompts"
        self.jinja_env = SandboxedEnvironment(
            loader=FileSystemLoader(template_dir),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    @property
    def enabled(self) -> dict[str, bool]:
        return {
            "hallucination": self.settings.hallucination_enabled,
            "data_quality": self.settings.data_quality_enabled,
            "complexity": self.settings.complexity_enabled,
        }

    def _overrides(self) -> dict[str, str]:
        if self.db is None:
            return {}
        return self.db.get_system_prompts_by_name(list(TEMPLATE_OVERRIDE_NAMES.values()))

    def render(
        self, metric: str, question: str, reference: str, response: str,
        overrides: dict[str, str] | None = None,
    ) -> str:
        variables = {
            "question": question,
            "reference": reference,
            "data": reference,
            "response": response,
        }
        override = (overrides or {}).get(TEMPLATE_OVERRIDE_NAMES[metric])
        if override:
            try:
                return self.jinja_env.from_string(override).render(**variables)
            except TemplateError as e:
                logger.warning(f"Stored '{TEMPLATE_OVERRIDE_NAMES[metric]}' prompt unusable ({e}); using default")
        return self.jinja_env.get_template(f"{metric}.j2").render(**variables)

    async def _run_metric(
        self, metric: str, user_message: str, usage_context: dict[str, Any]
    ) -> MetricScore:
        try:
            result = await self.llm.complete(
                GenerationRequest(
                    model=self.settings.model,
                    messages=[
                        {"role": "system", "content": EVALUATOR_SYSTEM_PROMPT},
                        {"role": "user", "content": user_message},
                    ],
                    temperature=EVALUATOR_TEMPERATURE,
                    max_tokens=EVALUATOR_MAX_TOKENS,
                )
            )
        except Exception as e:
            # Any evaluator failure scores neutral; it never fails the node
            logger.warning(f"Evaluation call for {metric} failed: {e.__class__.__name__}: {e}")
            return CALL_FAILED

        if self.outbox is not None:
            self.outbox.enqueue(
                "usage_log",
                {
                    "model": self.settings.model,
                    "prompt_tokens": result.usage.prompt_tokens,
                    "completion_tokens": result.usage.completion_tokens,
                    "total_tokens": result.usage.total_tokens,
                    "usage_category": f"evaluation_{metric}",
                    **usage_context,
                },
            )
        return parse_metric_response(result.content or "")

    async def evaluate(
        self,
        prompt: str,
        reference: str,
        response: str,
        company_id: str | None = None,
        workflow_id: str | None = None,
        node_id: str | None = None,
    ) -> EvaluationRecord:
        enabled = self.enabled
        active = [m for m in METRICS if enabled[m]]
        scores: dict[str, MetricScore] = {m: DISABLED for m in METRICS}

        if active:
            overrides = self._overrides()
            usage_context = {
                "company_id": company_id,
                "workflow_id": workflow_id,
                "node_id": node_id,
            }
            results = await asyncio.gather(
                *(
                    self._run_metric(
                        m, self.render(m, prompt, reference, response, overrides), usage_context
                    )
                    for m in active
                )
            )
            scores.update(dict(zip(active, results)))
        else:
            logger.debug("All evaluation metrics disabled")

        raw = {m: scores[m].score for m in METRICS}
        return EvaluationRecord(
            hallucination=scores["hallucination"],
            data_quality=scores["data_quality"],
            complexity=scores["complexity"],
            overall_score=compute_overall_score(raw, enabled),
            flags=compute_flags(raw, enabled),
            evaluation_model=self.settings.model,
        )

    def report(
        self,
        record: EvaluationRecord,
        alerts: AlertDeduplicator,
        company_id: str,
        company_name: str,
        workflow_id: str,
        node: Node,
    ) -> tuple[list[Alert], list[dict[str, Any]]]:
        """Persist history and raise quality alerts.

        Returns the alerts raised and the low-quality tags to store with the
        node's record.
        """
        if self.db is not None:
            self.db.append_evaluation(company_id, workflow_id, node.id, record.to_dict())

        raised: list[Alert] = []
        low_quality: list[dict[str, Any]] = []
        enabled = self.enabled
        for metric in METRICS:
            score = record.metric(metric)
            if not enabled[metric] or score.score >= self.settings.alert_threshold:
                continue
            raised.append(
                alerts.quality(
                    metric,
                    company_id,
                    company_name,
                    workflow_id,
                    node.id,
                    node.display_label,
                    score.score,
                    score.reasoning,
                )
            )
            if metric == "data_quality" and self.settings.auto_tag_low_quality:
                low_quality.append(
                    {
                        "field": node.display_label,
                        "score": score.score,
                        "reasoning": score.reasoning,
                        "flagged_at": _utc_now_iso(),
                    }
                )
                if self.db is not None:
                    self.db.flag_low_quality(
                        company_id, workflow_id, node.id, node.display_label,
                        score.score, score.reasoning,
                    )
        return raised, low_quality
