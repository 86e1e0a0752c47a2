"""Per-run execution context shared by all node executors."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from cascade.core.graph_model import DependencyRef, GraphModel
from cascade.core.schema_store import build_schema_snapshot
from cascade.core.state import Database

if TYPE_CHECKING:
    from cascade.core.alerts import AlertDeduplicator
    from cascade.core.integrations import IntegrationClient
    from cascade.core.llm import TextGenerationClient
    from cascade.core.outbox import OutboxQueue

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class ExecutionContext:
    """State of one cascade pass over one workflow for one company.

    ``results`` holds the output of every node already handled in this pass,
    whether executed or loaded from cache, keyed by local node id.
    """

    db: Database
    company_id: str
    model: GraphModel
    llm: TextGenerationClient
    alerts: AlertDeduplicator
    outbox: OutboxQueue | None = None
    integrations: IntegrationClient | None = None
    company_name: str = ""
    run_id: str | None = None
    results: dict[str, Any] = field(default_factory=dict)

    @property
    def workflow(self):
        return self.model.graph

    @property
    def workflow_id(self) -> str:
        return self.model.workflow_id

    def lookup_output(self, ref: DependencyRef, default: Any = None) -> Any:
        """Output of a dependency: this pass first (local only), then the persisted record."""
        if not ref.is_cross_workflow:
            value = self.results.get(ref.node_id, _MISSING)
            if value is not _MISSING:
                return value
        record = self.db.get_node_record(
            self.company_id, ref.workflow_id or self.workflow_id, ref.node_id
        )
        if record is None or "output" not in record.data:
            if ref.is_cross_workflow:
                logger.debug(f"Cross-workflow dependency {ref.key} has no output")
            return default
        return record.output

    def has_output(self, ref: DependencyRef) -> bool:
        return self.lookup_output(ref, _MISSING) is not _MISSING

    def live_schema(self) -> dict[str, Any]:
        return build_schema_snapshot(self.db, self.company_id)

    def resolve_dependencies(self, node_id: str) -> dict[str, Any]:
        """Values of every dependency that has one, keyed by dependency key."""
        resolved: dict[str, Any] = {}
        for ref in self.model.dependencies_of(node_id):
            if not ref.is_cross_workflow and self.model.is_live_schema(ref.node_id):
                resolved[ref.key] = self.live_schema()
                continue
            value = self.lookup_output(ref, _MISSING)
            if value is not _MISSING:
                resolved[ref.key] = value
        return resolved
