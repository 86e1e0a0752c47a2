"""Cascade engine: incremental re-execution of workflow graphs.

A cascade is one pass over a workflow for one company:

1. Select the nodes to consider (all, a start node and its dependents, or the
   closure of re-test targets)
2. Order them with the topological scheduler
3. Skip paused nodes and everything fed by them
4. Serve fresh nodes from the cache, execute stale ones
5. Evaluate generated text, store the record, publish side effects

Runs for the same (company, workflow) never overlap (see run_lock). Each run
is recorded in ``cascade_runs`` and can be cancelled between nodes.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from cascade.config import CascadeConfig
from cascade.core.alerts import AlertDeduplicator
from cascade.core.cache import CacheStore, content_hash
from cascade.core.context import ExecutionContext
from cascade.core.evaluation import EvaluationSidecar
from cascade.core.executors import ExecutorRegistry, NodeOutput, default_registry
from cascade.core.graph_model import GraphModel
from cascade.core.graph_schema import Node, WorkflowGraph
from cascade.core.integrations import IntegrationClient
from cascade.core.llm import (
    HttpTextGenerationClient,
    QuotaExceededError,
    RateLimitError,
    TextGenerationClient,
)
from cascade.core.outbox import OutboxQueue
from cascade.core.pause import PauseController
from cascade.core.run_lock import CascadeBusyError, CascadeError, RunLockManager
from cascade.core.scheduler import TopologicalScheduler, UnknownNodeError
from cascade.core.state import Database, NodeExecutionRecord, RunStatus

logger = logging.getLogger(__name__)

MAX_CROSS_WORKFLOW_DEPTH = 3


class WorkflowNotFoundError(CascadeError):
    """The requested workflow does not exist."""

    pass


class NoSourceNodeError(CascadeError):
    """The workflow has no node that accepts external submissions."""

    pass


class CascadeRequest(BaseModel):
    """What to run.

    ``source_node_id``/``source_output`` seed the run with an external payload:
    the source node's record is written with it and the node itself is not
    executed. An unchanged payload ends the run before anything is written.
    """

    company_id: str
    workflow_id: str
    trigger: str = "manual"
    source_node_id: str | None = None
    source_output: Any = None
    target_node_ids: list[str] | None = None
    start_from_node_id: str | None = None
    force: bool = False
    skip_nodes: list[str] = Field(default_factory=list)
    cascade_dependents: bool = True


class NodeResult(BaseModel):
    output: Any = None
    executed_at: datetime | None = None
    cached: bool = True


class CascadeResult(BaseModel):
    run_id: str | None = None
    company_id: str
    workflow_id: str
    status: RunStatus = RunStatus.COMPLETED
    executed: list[str] = Field(default_factory=list)
    cached: list[str] = Field(default_factory=list)
    errors: list[dict[str, str]] = Field(default_factory=list)
    results: dict[str, NodeResult] = Field(default_factory=dict)
    execution_time_ms: int = 0
    triggered_workflows: list[str] = Field(default_factory=list)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class CascadeEngine:
    """Runs cascades for (company, workflow) pairs.

    USAGE:
        engine = CascadeEngine(db, llm, config)
        result = await engine.run(CascadeRequest(company_id="acme", workflow_id="wf-1"))
        result.executed  # nodes recomputed in this run, in execution order
    """

    def __init__(
        self,
        db: Database,
        llm: TextGenerationClient,
        config: CascadeConfig | None = None,
        registry: ExecutorRegistry | None = None,
        integrations: IntegrationClient | None = None,
        outbox: OutboxQueue | None = None,
        evaluator: EvaluationSidecar | None = None,
        alerts: AlertDeduplicator | None = None,
        locks: RunLockManager | None = None,
    ):
        self.db = db
        self.llm = llm
        self.config = config or CascadeConfig()
        self.registry = registry or default_registry()
        self.integrations = integrations
        self.outbox = outbox or OutboxQueue(db, self.config.outbox)
        self.alerts = alerts or AlertDeduplicator(db)
        if evaluator is None and self.config.evaluation.enabled:
            evaluator = EvaluationSidecar(llm, self.config.evaluation, db, self.outbox)
        self.evaluator = evaluator
        self.locks = locks or RunLockManager(db.db_path.parent / "locks", self.config.concurrency)

    # ========== Entry points ==========

    async def run(self, request: CascadeRequest) -> CascadeResult:
        """Run one cascade, then re-run workflows that read its fresh outputs.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
            CascadeBusyError: If the busy policy rejects a concurrent run
            RateLimitError, QuotaExceededError: Passed through from text generation
        """
        return await self._run(request, depth=0, visited={request.workflow_id})

    def cancel_run(self, run_id: str) -> bool:
        """Ask a running cascade to stop after its current node."""
        requested = self.db.request_run_cancel(run_id)
        if requested:
            logger.info(f"Cancellation requested for run {run_id}")
        return requested

    async def run_company_workflows(
        self,
        company_id: str,
        workflow_ids: list[str] | None = None,
        force: bool = False,
        empty_only: bool = False,
    ) -> list[CascadeResult]:
        """Run every workflow of a company, or the given ones.

        Without ``workflow_ids`` this is the assigned workflow plus every
        workflow that already holds records for the company. ``empty_only``
        keeps only workflows with at least one node that has no output yet.
        """
        if workflow_ids is None:
            company = self.db.get_company(company_id)
            workflow_ids = []
            if company and company.assigned_workflow_id:
                workflow_ids.append(company.assigned_workflow_id)
            for workflow_id in self.db.get_company_workflow_ids(company_id):
                if workflow_id not in workflow_ids:
                    workflow_ids.append(workflow_id)

        results = []
        for workflow_id in workflow_ids:
            if empty_only and not self._has_empty_nodes(company_id, workflow_id):
                logger.debug(f"Skipping {workflow_id}: every node has output")
                continue
            results.append(
                await self.run(
                    CascadeRequest(
                        company_id=company_id,
                        workflow_id=workflow_id,
                        trigger="company_run",
                        force=force,
                        cascade_dependents=False,
                    )
                )
            )
        return results

    def _has_empty_nodes(self, company_id: str, workflow_id: str) -> bool:
        graph = self.db.get_workflow(workflow_id)
        if graph is None:
            return False
        records = self.db.get_node_records(company_id, workflow_id)
        return any(
            node.id not in records or records[node.id].output in (None, "")
            for node in graph.nodes
        )

    # ========== Run ==========

    async def _run(self, request: CascadeRequest, depth: int, visited: set[str]) -> CascadeResult:
        graph = self.db.get_workflow(request.workflow_id)
        if graph is None:
            raise WorkflowNotFoundError(f"Workflow not found: {request.workflow_id}")

        async with self.locks.hold(request.company_id, request.workflow_id):
            result = await self._run_locked(graph, request)

        if request.cascade_dependents and result.executed and depth < MAX_CROSS_WORKFLOW_DEPTH:
            result.triggered_workflows = await self._cascade_dependents(
                request.company_id, request.workflow_id, result.executed, depth, visited
            )
        return result

    async def _run_locked(self, graph: WorkflowGraph, request: CascadeRequest) -> CascadeResult:
        start = time.monotonic()
        model = GraphModel(graph)
        cache = CacheStore(self.db, request.company_id, model)
        result = CascadeResult(company_id=request.company_id, workflow_id=graph.id)

        source: Node | None = None
        source_unchanged = False
        if request.source_node_id is not None:
            if request.source_node_id not in model:
                raise NoSourceNodeError(
                    f"Source node '{request.source_node_id}' not in workflow {graph.id}"
                )
            source = model.get_node(request.source_node_id)
            existing = cache.get(source.id)
            source_unchanged = (
                not request.force
                and existing is not None
                and existing.content_hash == content_hash(request.source_output)
            )
            # An aborted earlier run can leave downstream nodes without output
            if source_unchanged and not self._has_pending_nodes(model, cache, source.id):
                logger.info(f"Source data unchanged for {graph.id}; nothing to run")
                result.cached = list(model.node_ids)
                result.execution_time_ms = _elapsed_ms(start)
                return result

        company = self.db.get_company(request.company_id)
        run_id = self.db.create_run(request.company_id, graph.id, request.trigger)
        result.run_id = run_id
        ctx = ExecutionContext(
            db=self.db,
            company_id=request.company_id,
            model=model,
            llm=self.llm,
            alerts=self.alerts,
            outbox=self.outbox,
            integrations=self.integrations,
            company_name=company.name if company else request.company_id,
            run_id=run_id,
        )

        try:
            subset = self._select_nodes(model, request)
            order = TopologicalScheduler(model).order(subset)
            requested = set(request.target_node_ids or ())
            blocked = PauseController(model).blocked_nodes()
            skipped = set(request.skip_nodes)

            # Nodes outside the run still feed it through their cached output
            if subset is not None:
                for node_id in model.node_ids:
                    if node_id not in subset:
                        self._load_cached(cache, ctx, node_id)

            if source is not None and source_unchanged:
                logger.info(f"Source data unchanged for {graph.id}; completing pending nodes")
                record = self._load_cached(cache, ctx, source.id)
                result.cached.append(source.id)
                result.results[source.id] = self._cached_result(record)
            elif source is not None:
                record = cache.write(source, request.source_output)
                ctx.results[source.id] = record.output
                self._publish(source, record, ctx)
                result.executed.append(source.id)
                result.results[source.id] = NodeResult(
                    output=record.output, executed_at=record.last_executed_at, cached=False
                )

            for node_id in order:
                if self.db.get_run_status(run_id) == RunStatus.CANCELLING:
                    logger.info(f"Run {run_id} cancelled before {node_id}")
                    result.status = RunStatus.CANCELLED
                    break
                if source is not None and node_id == source.id:
                    continue

                node = model.get_node(node_id)
                if node_id in blocked or node_id in skipped:
                    logger.debug(f"Skipping {node_id}: {'paused' if node_id in blocked else 'skip requested'}")
                    record = self._load_cached(cache, ctx, node_id)
                    result.cached.append(node_id)
                    result.results[node_id] = self._cached_result(record)
                    continue

                decision = cache.is_stale(node, requested, request.force)
                if not decision:
                    logger.debug(f"Cache hit for {node_id}")
                    record = self._load_cached(cache, ctx, node_id)
                    result.cached.append(node_id)
                    result.results[node_id] = self._cached_result(record)
                    continue

                logger.info(f"Executing {node_id} ({decision.reason})")
                record, error = await self._execute_node(node, ctx, cache)
                result.executed.append(node_id)
                result.results[node_id] = NodeResult(
                    output=record.output, executed_at=record.last_executed_at, cached=False
                )
                if error is not None:
                    result.errors.append({"node_id": node_id, "error": error})

        except Exception:
            self.db.finish_run(
                run_id,
                RunStatus.FAILED,
                result.executed,
                result.cached,
                result.errors,
                _elapsed_ms(start),
            )
            raise

        result.execution_time_ms = _elapsed_ms(start)
        self.db.finish_run(
            run_id,
            result.status,
            result.executed,
            result.cached,
            result.errors,
            result.execution_time_ms,
        )
        if result.errors:
            self.alerts.execution_errors(
                request.company_id, graph.id, result.errors, workflow_name=graph.name
            )

        logger.info(
            f"Cascade {graph.id} for {request.company_id}: "
            f"{len(result.executed)} executed, {len(result.cached)} cached, "
            f"{len(result.errors)} errors in {result.execution_time_ms}ms"
        )
        return result

    @staticmethod
    def _has_pending_nodes(model: GraphModel, cache: CacheStore, source_id: str) -> bool:
        """True when a node other than the source has no output or an outdated one.

        Paused nodes are ignored. Live sources count only when they never ran.
        """
        blocked = PauseController(model).blocked_nodes()
        for node_id in model.node_ids:
            if node_id == source_id or node_id in blocked:
                continue
            node = model.get_node(node_id)
            if cache.get(node_id) is None:
                return True
            if not cache.is_always_stale(node) and cache.is_stale(node):
                return True
        return False

    def _select_nodes(self, model: GraphModel, request: CascadeRequest) -> set[str] | None:
        if request.target_node_ids:
            unknown = [n for n in request.target_node_ids if n not in model]
            if unknown:
                raise UnknownNodeError(f"Unknown node(s) in workflow '{model.workflow_id}': {unknown}")
            return model.affected_set(request.target_node_ids)
        if request.start_from_node_id:
            if request.start_from_node_id not in model:
                raise UnknownNodeError(
                    f"Unknown node in workflow '{model.workflow_id}': {request.start_from_node_id}"
                )
            return model.downstream_closure([request.start_from_node_id])
        return None

    def _load_cached(
        self, cache: CacheStore, ctx: ExecutionContext, node_id: str
    ) -> NodeExecutionRecord | None:
        record = cache.get(node_id)
        if record is not None and "output" in record.data:
            ctx.results[node_id] = record.output
        return record

    @staticmethod
    def _cached_result(record: NodeExecutionRecord | None) -> NodeResult:
        if record is None:
            return NodeResult(output=None, executed_at=None, cached=True)
        return NodeResult(output=record.output, executed_at=record.last_executed_at, cached=True)

    async def _execute_node(
        self, node: Node, ctx: ExecutionContext, cache: CacheStore
    ) -> tuple[NodeExecutionRecord, str | None]:
        """Execute, evaluate and store one node. Returns the record and the error, if any."""
        deps = ctx.resolve_dependencies(node.id)
        error: str | None = None
        try:
            output = await self.registry.execute(node, deps, ctx)
        except (RateLimitError, QuotaExceededError):
            raise
        except Exception as e:
            logger.error(f"Node {node.id} failed: {e}")
            error = str(e) or e.__class__.__name__
            output = NodeOutput(f"Error: {error}")

        extra_data: dict[str, Any] = {}
        if output.evaluation_input is not None and self.evaluator is not None:
            try:
                extra_data = await self._evaluate(node, output, ctx)
            except Exception as e:
                # The output is stored without scores
                logger.error(f"Evaluation of {node.id} failed: {e.__class__.__name__}: {e}")

        record = cache.write(node, output.value, extra_data=extra_data)
        ctx.results[node.id] = output.value
        self._publish(node, record, ctx)
        return record, error

    async def _evaluate(self, node: Node, output: NodeOutput, ctx: ExecutionContext) -> dict[str, Any]:
        evaluation = await self.evaluator.evaluate(
            output.evaluation_input.prompt,
            output.evaluation_input.reference,
            output.value,
            company_id=ctx.company_id,
            workflow_id=ctx.workflow_id,
            node_id=node.id,
        )
        _, low_quality = self.evaluator.report(
            evaluation, self.alerts, ctx.company_id, ctx.company_name, ctx.workflow_id, node
        )
        extra_data: dict[str, Any] = {"evaluation": evaluation.to_dict(), "flags": evaluation.flags}
        if low_quality:
            extra_data["low_quality_fields"] = low_quality
        return extra_data

    def _publish(self, node: Node, record: NodeExecutionRecord, ctx: ExecutionContext) -> None:
        for target in node.config.shared_cache_outputs:
            if not target.enabled:
                continue
            self.db.upsert_shared_cache_entry(
                target.shared_cache_id,
                ctx.company_id,
                ctx.workflow_id,
                node.id,
                node.display_label,
                record.output,
            )
            logger.debug(f"Published {node.id} to shared cache {target.shared_cache_id}")

        if self.config.sync.enabled:
            self.outbox.enqueue(
                "output_sync",
                {
                    "company_id": ctx.company_id,
                    "workflow_id": ctx.workflow_id,
                    "node_id": node.id,
                    "node_label": node.display_label,
                    "version": record.version,
                    "content_hash": record.content_hash,
                    "output": record.output,
                },
                dedupe_key=f"output_sync:{ctx.company_id}:{ctx.workflow_id}:{node.id}:{record.version}",
            )

    # ========== Cross-workflow ==========

    async def _cascade_dependents(
        self,
        company_id: str,
        workflow_id: str,
        executed: list[str],
        depth: int,
        visited: set[str],
    ) -> list[str]:
        """Re-run workflows whose dependency parts read nodes executed in ``workflow_id``."""
        triggered = []
        for graph in self.db.list_workflows():
            if graph.id in visited:
                continue
            if not GraphModel(graph).depends_on_workflow_nodes(workflow_id, executed):
                continue
            visited.add(graph.id)
            logger.info(f"Cross-workflow cascade: {workflow_id} -> {graph.id}")
            try:
                await self._run(
                    CascadeRequest(
                        company_id=company_id, workflow_id=graph.id, trigger="cross_workflow"
                    ),
                    depth=depth + 1,
                    visited=visited,
                )
            except CascadeBusyError as e:
                logger.warning(f"Skipping cross-workflow cascade to {graph.id}: {e}")
                continue
            triggered.append(graph.id)
        return triggered


def build_engine(config: CascadeConfig, project_root: Path) -> CascadeEngine:
    """Engine wired with HTTP clients from configuration."""
    db = Database(config.resolve_database_path(project_root))
    llm = HttpTextGenerationClient(
        config.generation.base_url,
        api_key=config.generation.api_key,
        timeout=config.generation.timeout,
    )
    integrations = IntegrationClient(
        config.integrations.firecrawl_url, api_key=config.integrations.api_key
    )
    return CascadeEngine(
        db,
        llm,
        config,
        integrations=integrations,
        locks=RunLockManager(project_root / ".cascade" / "locks", config.concurrency),
    )
