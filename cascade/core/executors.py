"""Node executors: one strategy per node type.

An executor turns a node plus its resolved dependency values into an output.
Executors never write records themselves; the engine hashes and stores whatever
they return. Exceptions escaping an executor are turned into an ``Error: ...``
output by the engine, except text-generation rate-limit and quota errors, which
abort the cascade.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from jsonschema import Draft7Validator

from cascade.core.cache import content_hash, serialize_output
from cascade.core.context import ExecutionContext
from cascade.core.graph_model import DependencyRef
from cascade.core.graph_schema import DatasetSource, DependencyPart, Node, NodeType
from cascade.core.integrations import IntegrationError
from cascade.core.llm import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL,
    DEFAULT_TEMPERATURE,
    GenerationRequest,
    GenerationUsage,
    QuotaExceededError,
    RateLimitError,
    TextGenerationError,
    map_model_name,
)
from cascade.core.prompt_assembly import PromptAssembler, strip_code_fences
from cascade.core.state import Submission

logger = logging.getLogger(__name__)

STOP_TRIGGER_CODE = "f8Tsc"
STOP_TRIGGER_INSTRUCTION = '\n\nIf none matched, ONLY output "f8Tsc".'
EMPTY_PROMPT_OUTPUT = "[No data available - prompt was empty]"
MIN_EVALUATION_LENGTH = 10
RECENT_SUBMISSION_LIMIT = 20

# Values of every dependency that has one, keyed by DependencyRef.key
ResolvedDependencies = dict[str, Any]


@dataclass
class EvaluationInput:
    prompt: str
    reference: str


@dataclass
class NodeOutput:
    """What an executor produced for one node."""

    value: Any
    evaluation_input: EvaluationInput | None = None
    usage: GenerationUsage | None = None
    model: str | None = None


def is_evaluable(output: Any) -> bool:
    """Only real generated text is worth evaluating, not markers like ``[AI Error: 500]``."""
    return isinstance(output, str) and len(output) > MIN_EVALUATION_LENGTH and not output.startswith("[")


def snake_key(name: str) -> str:
    return re.sub(r"\s+", "_", name.lower())


class NodeExecutor(ABC):
    """Produces the output of one node type."""

    @abstractmethod
    async def execute(
        self, node: Node, deps: ResolvedDependencies, ctx: ExecutionContext
    ) -> NodeOutput:
        pass


class ExecutorRegistry:
    """Maps node types to executors."""

    def __init__(self):
        self._executors: dict[str, NodeExecutor] = {}

    def register(self, node_type: NodeType | str, executor: NodeExecutor) -> None:
        key = node_type.value if isinstance(node_type, NodeType) else node_type
        self._executors[key] = executor

    def get(self, node_type: NodeType | str) -> NodeExecutor | None:
        key = node_type.value if isinstance(node_type, NodeType) else node_type
        return self._executors.get(key)

    async def execute(
        self, node: Node, deps: ResolvedDependencies, ctx: ExecutionContext
    ) -> NodeOutput:
        executor = self.get(node.type)
        if executor is None:
            logger.warning(f"No executor registered for node type {node.type.value}")
            return NodeOutput(f"[Unsupported node type: {node.type.value}]")
        return await executor.execute(node, deps, ctx)


# --- Generative nodes ---


class PromptTemplateExecutor(NodeExecutor):
    """Assembles a prompt and sends it to the text-generation service."""

    async def execute(self, node, deps, ctx):
        config = node.config

        # Only prompt-part dependencies can stop generation; edges and agent sources cannot
        for part in config.prompt_parts:
            if not isinstance(part, DependencyPart):
                continue
            key = ctx.model.part_ref(part).key
            if key in deps and STOP_TRIGGER_CODE in serialize_output(deps[key]):
                logger.info(f"Stop trigger in dependency {key}; skipping generation for {node.id}")
                return NodeOutput(STOP_TRIGGER_CODE)

        assembled = PromptAssembler(ctx.db, ctx.model).assemble(config.prompt_parts, deps)
        if config.enable_stop_trigger:
            assembled.prompt += STOP_TRIGGER_INSTRUCTION

        if not assembled.prompt.strip():
            logger.warning(f"Skipping generation for node {node.id}: empty prompt")
            return NodeOutput(EMPTY_PROMPT_OUTPUT)

        model = map_model_name(config.model or DEFAULT_MODEL)
        temperature = config.temperature if config.temperature is not None else DEFAULT_TEMPERATURE
        max_tokens = config.max_tokens or DEFAULT_MAX_TOKENS

        logger.debug(
            f"Generating {node.id} with {model} ({len(assembled.prompt.strip())} prompt chars)"
        )
        try:
            result = await ctx.llm.complete(
                GenerationRequest(
                    model=model,
                    messages=assembled.messages(),
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
            )
        except (RateLimitError, QuotaExceededError):
            raise
        except TextGenerationError as e:
            logger.error(f"Generation failed for node {node.display_label}: HTTP {e.status_code}")
            ctx.alerts.model_unavailable(
                model,
                e.status_code,
                e.body,
                node_id=node.id,
                node_label=node.display_label,
                workflow_id=ctx.workflow_id,
            )
            return NodeOutput(f"[AI Error: {e.status_code}]", model=model)

        output = strip_code_fences(result.content)
        if not output:
            logger.warning(f"Empty generation for node {node.display_label}")

        if result.truncated:
            logger.warning(
                f"Output truncated for node {node.display_label} at max_tokens={max_tokens}"
            )
            ctx.alerts.max_tokens_hit(
                ctx.workflow_id,
                node.id,
                model,
                max_tokens,
                node_label=node.display_label,
                company_id=ctx.company_id,
            )

        if ctx.outbox is not None:
            ctx.outbox.enqueue(
                "usage_log",
                {
                    "model": model,
                    "prompt_tokens": result.usage.prompt_tokens,
                    "completion_tokens": result.usage.completion_tokens,
                    "total_tokens": result.usage.total_tokens,
                    "usage_category": "generation",
                    "company_id": ctx.company_id,
                    "workflow_id": ctx.workflow_id,
                    "node_id": node.id,
                    "run_id": ctx.run_id,
                },
            )

        evaluation_input = None
        if is_evaluable(output):
            evaluation_input = EvaluationInput(
                prompt=assembled.prompt.strip(), reference=assembled.evaluation_reference
            )
        return NodeOutput(output, evaluation_input=evaluation_input, usage=result.usage, model=model)


class PromptPieceExecutor(NodeExecutor):
    async def execute(self, node, deps, ctx):
        text = PromptAssembler(ctx.db, ctx.model).assemble_plain(node.config.prompt_parts, deps)
        if not text and node.config.text:
            text = node.config.text
        return NodeOutput(text)


# --- Data nodes ---


class DatasetExecutor(NodeExecutor):
    """Static data, dataset aggregations, schema snapshots and shared caches."""

    async def execute(self, node, deps, ctx):
        config = node.config
        source = config.source_type

        if source == DatasetSource.SSOT_SCHEMA:
            return NodeOutput(ctx.live_schema())

        if source == DatasetSource.DATASET and config.dataset_id:
            return NodeOutput(self._aggregate_dataset(config.dataset_id, ctx))

        if source == DatasetSource.SHARED_CACHE and config.shared_cache_id:
            return NodeOutput(self._read_shared_cache(config.shared_cache_id, ctx))

        if source == DatasetSource.COMPANY_INGEST:
            return NodeOutput(latest_submission_payload(ctx))

        return NodeOutput(config.data if config.data is not None else [])

    def _aggregate_dataset(self, dataset_id: str, ctx: ExecutionContext) -> dict[str, Any]:
        definition = ctx.db.get_dataset(dataset_id)
        if definition is None:
            logger.warning(f"Dataset definition not found: {dataset_id}")
            return {}

        aggregated: dict[str, Any] = {}
        for dep in definition["dependencies"]:
            node_id = dep.get("nodeId") or dep.get("node_id")
            workflow_id = dep.get("workflowId") or dep.get("workflow_id") or ctx.workflow_id
            if not node_id:
                continue
            record = ctx.db.get_node_record(ctx.company_id, workflow_id, node_id)
            if record is None or not record.output:
                continue
            name = dep.get("nodeName") or dep.get("node_name") or node_id
            aggregated[snake_key(name)] = record.output

        logger.debug(f"Dataset {dataset_id}: aggregated {len(aggregated)} dependencies")
        return aggregated

    def _read_shared_cache(self, shared_cache_id: str, ctx: ExecutionContext) -> dict[str, Any]:
        aggregated: dict[str, Any] = {}
        # Entries come newest first; the newest entry for a label wins
        for entry in ctx.db.get_shared_cache_entries(shared_cache_id, ctx.company_id):
            key = snake_key(entry["node_label"] or "data")
            aggregated.setdefault(key, entry["data"].get("output"))
        if not aggregated:
            logger.info(f"Shared cache {shared_cache_id} is empty for company {ctx.company_id}")
        return aggregated


class VariableExecutor(NodeExecutor):
    async def execute(self, node, deps, ctx):
        config = node.config

        if config.map_dependencies:
            mapped: dict[str, Any] = {}
            for ref in config.map_dependencies:
                dep = ctx.model.ref_for(ref.node_id, ref.workflow_id)
                if dep.key in deps:
                    mapped[snake_key(ref.node_name or ref.node_id)] = deps[dep.key]
            return NodeOutput(mapped)

        name = config.variable_name or config.name
        variable = ctx.workflow.get_variable(name) if name else None
        if variable is not None:
            value = variable.value if variable.value is not None else variable.default_value
            if value is not None:
                return NodeOutput(value)
        return NodeOutput(config.default_value or "")


class FrameworkExecutor(NodeExecutor):
    async def execute(self, node, deps, ctx):
        config = node.config
        framework_type = config.framework_type or "rating_scale"

        schema: Any = {}
        if config.framework_schema:
            schema = config.framework_schema
            if framework_type != "document" and isinstance(schema, str):
                try:
                    schema = json.loads(schema)
                except ValueError:
                    logger.debug(f"Framework {node.id}: schema is not JSON, keeping text")

        return NodeOutput(
            {
                "name": config.name or "Unnamed Framework",
                "description": config.description or "",
                "type": framework_type,
                "schema": schema,
            }
        )


def is_substantive_payload(raw_data: Any) -> bool:
    """Real submitted data rather than a trigger or a near-empty stub."""
    if not isinstance(raw_data, dict) or not raw_data or raw_data.get("_trigger"):
        return False
    return bool(raw_data.get("intake_fields")) or len(raw_data) > 2


def select_submission(submissions: list[Submission]) -> Submission | None:
    """Pick the submission an ingest node reads, from newest-first ``submissions``.

    Priority: platform-synced data, then API data, then manual entry. Triggers
    (payloads marked ``_trigger``) never qualify.
    """
    for submission in submissions:
        raw = submission.raw_data
        if (
            submission.source_type in ("abivc_sync", "abi_sync")
            and isinstance(raw, dict)
            and raw
            and not raw.get("_trigger")
        ):
            return submission
    for source_type in ("api", "manual"):
        for submission in submissions:
            if submission.source_type == source_type and is_substantive_payload(submission.raw_data):
                return submission
    return None


def latest_submission_payload(ctx: ExecutionContext) -> Any:
    submissions = ctx.db.get_recent_submissions(ctx.company_id, limit=RECENT_SUBMISSION_LIMIT)
    chosen = select_submission(submissions)
    if chosen is None:
        logger.warning(f"No qualifying submission for company {ctx.company_id}")
        return {}
    logger.info(f"Ingest reads submission {chosen.id} ({chosen.source_type})")
    return chosen.raw_data


class IngestExecutor(NodeExecutor):
    async def execute(self, node, deps, ctx):
        return NodeOutput(latest_submission_payload(ctx))


class WorkflowExecutor(NodeExecutor):
    """Nested workflows are not expanded; the node only names its target."""

    async def execute(self, node, deps, ctx):
        return NodeOutput(
            {"workflowId": node.config.workflow_id, "workflowName": node.config.workflow_name}
        )


class IntegrationExecutor(NodeExecutor):
    async def execute(self, node, deps, ctx):
        config = node.config
        if config.integration_id != "firecrawl":
            return NodeOutput(f"[Unknown integration: {config.integration_id}]")

        if ctx.integrations is None:
            return NodeOutput("[Firecrawl error: integration client not configured]")

        text = PromptAssembler(ctx.db, ctx.model).assemble_plain(config.prompt_parts, deps)
        try:
            output = await ctx.integrations.firecrawl(
                {
                    "capability": config.capability,
                    "input": text.strip(),
                    "options": config.options,
                    "companyId": ctx.company_id,
                    "workflowId": ctx.workflow_id,
                    "nodeId": node.id,
                    "nodeLabel": node.label,
                }
            )
        except IntegrationError as e:
            logger.error(f"Firecrawl error for node {node.id}: {e}")
            return NodeOutput(f"[Firecrawl error: {str(e) or 'Unknown error'}]")
        return NodeOutput(output)


# --- Agent ---

CHANGE_PLAN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["plan_summary"],
    "properties": {
        "plan_summary": {"type": "array"},
        "validated_changes": {"type": "array"},
        "new_structure_additions": {"type": "array"},
    },
    "anyOf": [
        {"required": ["validated_changes"]},
        {
            "required": ["new_structure_additions"],
            "properties": {"new_structure_additions": {"minItems": 1}},
        },
    ],
}

_JSON_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def diagnose_truncation(text: str) -> str | None:
    """Describe unbalanced braces/brackets, the usual sign of a cut-off generation."""
    missing_braces = text.count("{") - text.count("}")
    missing_brackets = text.count("[") - text.count("]")
    if missing_braces <= 0 and missing_brackets <= 0:
        return None
    return (
        f"JSON appears truncated (missing {max(missing_braces, 0)} '}}' and "
        f"{max(missing_brackets, 0)} ']'). The source node may need a higher max_tokens "
        f"setting. Current output was {len(text)} characters."
    )


def parse_change_plan(source_output: Any) -> tuple[dict[str, Any] | None, str | None]:
    """Returns ``(plan, error)``; exactly one of them is set."""
    if isinstance(source_output, dict):
        return source_output, None
    if not isinstance(source_output, str):
        return None, "Invalid format"

    json_str = source_output.strip()
    match = _JSON_FENCE.search(source_output)
    if match:
        json_str = match.group(1).strip()

    try:
        plan = json.loads(json_str)
    except json.JSONDecodeError as e:
        return None, diagnose_truncation(json_str) or str(e)

    if not isinstance(plan, dict):
        return None, "Change plan must be a JSON object"
    return plan, None


def validate_change_plan(plan: dict[str, Any]) -> list[str]:
    problems = []
    for error in Draft7Validator(CHANGE_PLAN_SCHEMA).iter_errors(plan):
        if error.validator == "anyOf":
            problems.append('Missing "validated_changes" or "new_structure_additions"')
        elif error.validator == "required":
            problems.append(f"Missing {error.message.split(' is a required')[0]}")
        else:
            path = ".".join(str(p) for p in error.absolute_path) or "plan"
            problems.append(f"{path}: {error.message}")
    return problems


class AgentExecutor(NodeExecutor):
    """Turns a source node's change plan into a queued schema update."""

    async def execute(self, node, deps, ctx):
        config = node.config
        if not config.source_node_id:
            return NodeOutput("[Agent not configured: No source node selected]")
        if config.execution_type != "ssot_update":
            return NodeOutput(f'[Agent error: Unknown execution type "{config.execution_type}"]')

        source_ref = DependencyRef(config.source_node_id)
        if source_ref.key in deps:
            source_output = deps[source_ref.key]
        else:
            source_output = ctx.lookup_output(source_ref)
        if not source_output:
            label = config.source_node_label or config.source_node_id
            return NodeOutput(f'[Agent error: Source node "{label}" has no output]')

        plan, parse_error = parse_change_plan(source_output)
        if plan is None:
            logger.error(f"Agent {node.id} could not parse change plan: {parse_error}")
            return NodeOutput(
                f"[Agent error: Could not parse SSOT change plan from source. {parse_error}]"
            )

        problems = validate_change_plan(plan)
        if problems:
            return NodeOutput(f"[Agent error: Invalid SSOT_CHANGE_PLAN - {', '.join(problems)}]")

        if ctx.outbox is None:
            return NodeOutput("[Agent error: outbound queue not configured]")

        task_id = ctx.outbox.enqueue(
            "ssot_change_plan",
            {
                "company_id": ctx.company_id,
                "workflow_id": ctx.workflow_id,
                "node_id": node.id,
                "run_id": ctx.run_id,
                "plan": plan,
            },
            dedupe_key=f"ssot_change_plan:{ctx.company_id}:{ctx.workflow_id}:{node.id}:{content_hash(plan)}",
        )
        changes = plan.get("validated_changes") or []
        logger.info(f"Agent {node.id} queued change plan with {len(changes)} changes")
        return NodeOutput(
            {"status": "queued", "changes_processed": len(changes), "task_id": task_id}
        )


def default_registry() -> ExecutorRegistry:
    registry = ExecutorRegistry()
    registry.register(NodeType.PROMPT_TEMPLATE, PromptTemplateExecutor())
    registry.register(NodeType.PROMPT_PIECE, PromptPieceExecutor())
    registry.register(NodeType.DATASET, DatasetExecutor())
    registry.register(NodeType.VARIABLE, VariableExecutor())
    registry.register(NodeType.FRAMEWORK, FrameworkExecutor())
    registry.register(NodeType.INGEST, IngestExecutor())
    registry.register(NodeType.WORKFLOW, WorkflowExecutor())
    registry.register(NodeType.INTEGRATION, IntegrationExecutor())
    registry.register(NodeType.AGENT, AgentExecutor())
    return registry
