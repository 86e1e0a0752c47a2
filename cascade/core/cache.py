"""Content-addressed node cache and staleness detection.

A node's output is identified by the SHA-256 of its serialized form. Each
record also keeps a snapshot of its dependencies' hashes taken when the output
was produced; a node is stale when any (triggering) dependency's current hash no
longer matches that snapshot.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any

from cascade.core.graph_model import DependencyRef, GraphModel
from cascade.core.graph_schema import Node
from cascade.core.state import Database, NodeExecutionRecord

logger = logging.getLogger(__name__)


def serialize_output(value: Any) -> str:
    """Canonical serialization: strings as-is, everything else as sorted-key JSON."""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def content_hash(value: Any) -> str:
    """Lowercase hex SHA-256 over the UTF-8 bytes of the serialized value."""
    return hashlib.sha256(serialize_output(value).encode("utf-8")).hexdigest()


@dataclass
class StalenessDecision:
    """Why a node does or does not need to run."""

    stale: bool
    reason: str

    def __bool__(self) -> bool:
        return self.stale


class CacheStore:
    """Cache access for one (company, workflow) pair.

    Dependency hashes are always read from the persisted records: a dependency
    executed earlier in the same run has already been written, so the
    persisted hash is also the current one.
    """

    def __init__(self, db: Database, company_id: str, model: GraphModel):
        self.db = db
        self.company_id = company_id
        self.model = model
        self.workflow_id = model.workflow_id

    def get(self, node_id: str) -> NodeExecutionRecord | None:
        return self.db.get_node_record(self.company_id, self.workflow_id, node_id)

    def current_hash(self, ref: DependencyRef) -> str | None:
        record = self.db.get_node_record(
            self.company_id, ref.workflow_id or self.workflow_id, ref.node_id
        )
        return record.content_hash if record else None

    def _tracked_dependencies(self, node_id: str) -> list[DependencyRef]:
        """Dependencies that take part in hashing: triggering and not fetched live."""
        tracked = []
        for ref in self.model.dependencies_of(node_id):
            if not ref.is_cross_workflow and self.model.is_live_source(ref.node_id):
                logger.debug(f"Skipping hash tracking for live-fetch node: {ref.node_id}")
                continue
            if not self.model.triggers_execution(node_id, ref):
                logger.debug(f"Skipping trigger check for non-triggering dep: {ref.key}")
                continue
            tracked.append(ref)
        return tracked

    def is_always_stale(self, node: Node) -> bool:
        """Live external state cannot be hash-compared ahead of fetching it."""
        return self.model.is_ingest_node(node.id) or self.model.is_live_source(node.id)

    def is_stale(
        self,
        node: Node,
        requested: set[str] | frozenset[str] = frozenset(),
        force: bool = False,
    ) -> StalenessDecision:
        if force:
            return StalenessDecision(True, "force_rerun")
        if node.id in requested:
            return StalenessDecision(True, "requested")
        if self.is_always_stale(node):
            return StalenessDecision(True, "live_source")

        record = self.get(node.id)
        if record is None or not record.content_hash:
            return StalenessDecision(True, "never_executed")
        if record.dependency_hashes is None:
            # Malformed snapshot: safer to recompute than to trust it
            return StalenessDecision(True, "never_executed")

        for ref in self._tracked_dependencies(node.id):
            if self.current_hash(ref) != record.dependency_hashes.get(ref.key):
                return StalenessDecision(True, f"dependency_changed:{ref.node_id}")

        return StalenessDecision(False, "cache_valid")

    def snapshot_dependency_hashes(self, node_id: str) -> dict[str, str]:
        """Current hash of every tracked dependency that has one."""
        snapshot: dict[str, str] = {}
        for ref in self._tracked_dependencies(node_id):
            current = self.current_hash(ref)
            if current:
                snapshot[ref.key] = current
        return snapshot

    def write(
        self,
        node: Node,
        output: Any,
        extra_data: dict[str, Any] | None = None,
        dependency_hashes: dict[str, str] | None = None,
    ) -> NodeExecutionRecord:
        """Persist a fresh output; version goes up by one."""
        data: dict[str, Any] = {"output": output}
        if extra_data:
            data.update(extra_data)
        if dependency_hashes is None:
            dependency_hashes = self.snapshot_dependency_hashes(node.id)
        record = self.db.upsert_node_record(
            company_id=self.company_id,
            workflow_id=self.workflow_id,
            node_id=node.id,
            node_type=node.type.value,
            node_label=node.display_label,
            data=data,
            content_hash=content_hash(output),
            dependency_hashes=dependency_hashes,
        )
        logger.debug(
            f"Stored {node.id} v{record.version} hash={record.content_hash[:12]} "
            f"deps={list(dependency_hashes)}"
        )
        return record
