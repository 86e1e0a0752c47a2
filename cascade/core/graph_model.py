"""Unified dependency view over a workflow graph.

A node's dependencies come from several places in its definition:
- dependency prompt parts (possibly pointing into another workflow)
- incoming edges
- an agent's source node
- a variable's mapped dependencies

GraphModel merges them into one relation so the scheduler, the cache and the
pause controller all agree on what "depends on" means.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

import networkx as nx

from cascade.core.graph_schema import (
    DatasetSource,
    DependencyPart,
    Node,
    NodeType,
    PromptPart,
    WorkflowGraph,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyRef:
    """A dependency target. ``workflow_id`` is set only for cross-workflow references."""

    node_id: str
    workflow_id: str | None = None

    @property
    def is_cross_workflow(self) -> bool:
        return self.workflow_id is not None

    @property
    def key(self) -> str:
        """Key used in dependency hash snapshots."""
        if self.workflow_id:
            return f"{self.workflow_id}:{self.node_id}"
        return self.node_id


class GraphModel:
    """Dependency relation for one workflow.

    USAGE:
        model = GraphModel(graph)
        model.dependencies_of("summary")      # [DependencyRef("source"), ...]
        model.downstream_closure({"source"})  # everything fed by "source"
    """

    def __init__(self, graph: WorkflowGraph):
        self.graph = graph
        self.workflow_id = graph.id
        self._nodes: dict[str, Node] = {node.id: node for node in graph.nodes}
        self.node_ids: list[str] = [node.id for node in graph.nodes]
        self._dependencies: dict[str, list[DependencyRef]] = {
            node.id: self._collect_dependencies(node) for node in graph.nodes
        }
        self._dependents: dict[str, list[str]] = {node_id: [] for node_id in self.node_ids}
        for node_id, refs in self._dependencies.items():
            for ref in refs:
                if not ref.is_cross_workflow and ref.node_id in self._dependents:
                    self._dependents[ref.node_id].append(node_id)

    def _normalize(self, node_id: str, workflow_id: str | None) -> DependencyRef:
        # A reference into the current workflow is a local reference
        if workflow_id == self.workflow_id:
            workflow_id = None
        return DependencyRef(node_id=node_id, workflow_id=workflow_id)

    def _collect_dependencies(self, node: Node) -> list[DependencyRef]:
        refs: list[DependencyRef] = []

        def add(ref: DependencyRef) -> None:
            if ref not in refs:
                refs.append(ref)

        for part in node.config.prompt_parts:
            if isinstance(part, DependencyPart):
                add(self._normalize(part.value, part.workflow_id))
        for edge in self.graph.edges:
            if edge.target.node == node.id:
                add(DependencyRef(edge.source.node))
        if node.type == NodeType.AGENT and node.config.source_node_id:
            add(DependencyRef(node.config.source_node_id))
        if node.type == NodeType.VARIABLE:
            for map_ref in node.config.map_dependencies:
                add(self._normalize(map_ref.node_id, map_ref.workflow_id))
        return refs

    # --- Lookups ---

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def get_node(self, node_id: str) -> Node:
        return self._nodes[node_id]

    def nodes(self) -> list[Node]:
        return list(self.graph.nodes)

    def dependencies_of(self, node_id: str) -> list[DependencyRef]:
        """All dependencies of a node, in declaration order, without duplicates."""
        return list(self._dependencies.get(node_id, []))

    def local_dependencies(self, node_id: str) -> list[str]:
        """Same-workflow dependencies that exist in this graph."""
        return [
            ref.node_id
            for ref in self._dependencies.get(node_id, [])
            if not ref.is_cross_workflow and ref.node_id in self._nodes
        ]

    def dependency_parts(self, node_id: str) -> list[PromptPart]:
        """Ordered prompt parts of a node, for prompt assembly."""
        node = self._nodes.get(node_id)
        return list(node.config.prompt_parts) if node else []

    def ref_for(self, node_id: str, workflow_id: str | None = None) -> DependencyRef:
        return self._normalize(node_id, workflow_id)

    def part_ref(self, part: DependencyPart) -> DependencyRef:
        return self._normalize(part.value, part.workflow_id)

    def dependents_of(self, node_id: str) -> list[str]:
        return list(self._dependents.get(node_id, []))

    def triggers_execution(self, node_id: str, ref: DependencyRef) -> bool:
        """False only when a matching dependency part opts out of triggering."""
        for part in self.dependency_parts(node_id):
            if not isinstance(part, DependencyPart):
                continue
            if self._normalize(part.value, part.workflow_id) == ref:
                return part.triggers_execution
        return True

    def is_live_source(self, node_id: str) -> bool:
        """Datasets fetched live on every read; they never take part in hashing."""
        node = self._nodes.get(node_id)
        return node is not None and node.type == NodeType.DATASET and node.config.fetch_live

    def is_live_schema(self, node_id: str) -> bool:
        node = self._nodes.get(node_id)
        return (
            self.is_live_source(node_id)
            and node is not None
            and node.config.source_type == DatasetSource.SSOT_SCHEMA
        )

    def is_ingest_node(self, node_id: str) -> bool:
        node = self._nodes.get(node_id)
        if node is None:
            return False
        return node.type == NodeType.INGEST or (
            node.type == NodeType.DATASET
            and node.config.source_type == DatasetSource.COMPANY_INGEST
        )

    def source_node(self) -> Node | None:
        """The node external submissions are written to, if the workflow has one."""
        for node in self.graph.nodes:
            if self.is_ingest_node(node.id):
                return node
        return None

    def cross_workflow_refs(self) -> set[DependencyRef]:
        return {
            ref for refs in self._dependencies.values() for ref in refs if ref.is_cross_workflow
        }

    def depends_on_workflow_nodes(self, workflow_id: str, node_ids: Iterable[str]) -> bool:
        """True when any node here reads one of ``node_ids`` from ``workflow_id``."""
        targets = set(node_ids)
        return any(
            ref.workflow_id == workflow_id and ref.node_id in targets
            for ref in self.cross_workflow_refs()
        )

    # --- Closures ---

    def to_networkx(self) -> nx.DiGraph:
        """Local dependency graph with edges dependency -> dependent."""
        G = nx.DiGraph()
        G.add_nodes_from(self.node_ids)
        for node_id in self.node_ids:
            for dep_id in self.local_dependencies(node_id):
                G.add_edge(dep_id, node_id)
        return G

    def upstream_closure(self, node_ids: Iterable[str]) -> set[str]:
        """Nodes plus everything they transitively depend on."""
        G = self.to_networkx()
        closure: set[str] = set()
        for node_id in node_ids:
            if node_id not in G:
                continue
            closure.add(node_id)
            closure |= nx.ancestors(G, node_id)
        return closure

    def downstream_closure(self, node_ids: Iterable[str]) -> set[str]:
        """Nodes plus everything that transitively depends on them."""
        G = self.to_networkx()
        closure: set[str] = set()
        for node_id in node_ids:
            if node_id not in G:
                continue
            closure.add(node_id)
            closure |= nx.descendants(G, node_id)
        return closure

    def affected_set(self, node_ids: Iterable[str]) -> set[str]:
        """Minimal set for re-testing: requested nodes, their inputs and their dependents."""
        requested = list(node_ids)
        return self.upstream_closure(requested) | self.downstream_closure(requested)
