"""Topological scheduling of workflow nodes.

Orders a node subset so that every node follows all of its in-subset
dependencies. Cycles are reported instead of producing a silently wrong order.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from cascade.core.graph_model import GraphModel

logger = logging.getLogger(__name__)


class SchedulerError(Exception):
    """Error in node scheduler."""

    pass


class CycleDetectedError(SchedulerError):
    """Circular dependency detected while ordering nodes."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class UnknownNodeError(SchedulerError):
    """A requested node does not exist in the workflow."""

    pass


class TopologicalScheduler:
    """Depth-first postorder topological sort.

    ALGORITHM:
    1. Visit nodes in workflow definition order (deterministic output)
    2. Before appending a node, recursively visit its in-subset dependencies
    3. A node met again while still on the current DFS path closes a cycle

    Dependencies outside the subset are ignored: the caller resolves their
    values from the persisted cache.

    Example:
        A -> B -> C, subset {C, B}
        order() returns [B, C]
    """

    def __init__(self, model: GraphModel):
        self.model = model

    def order(self, subset: Iterable[str] | None = None) -> list[str]:
        """Return ``subset`` (default: all nodes) in dependency order.

        Raises:
            UnknownNodeError: If the subset names a node not in the workflow
            CycleDetectedError: If the subset's dependency graph has a cycle
        """
        if subset is None:
            members = set(self.model.node_ids)
        else:
            members = set(subset)
            unknown = sorted(members - set(self.model.node_ids))
            if unknown:
                raise UnknownNodeError(
                    f"Unknown node(s) in workflow '{self.model.workflow_id}': {unknown}"
                )

        visited: set[str] = set()
        in_progress: set[str] = set()
        path: list[str] = []
        ordered: list[str] = []

        def visit(node_id: str) -> None:
            if node_id in visited:
                return
            if node_id in in_progress:
                start = path.index(node_id)
                raise CycleDetectedError(path[start:] + [node_id])

            in_progress.add(node_id)
            path.append(node_id)
            for dep_id in self.model.local_dependencies(node_id):
                if dep_id in members:
                    visit(dep_id)
            path.pop()
            in_progress.discard(node_id)

            visited.add(node_id)
            ordered.append(node_id)

        for node_id in self.model.node_ids:
            if node_id in members:
                visit(node_id)

        logger.debug(f"Scheduled {len(ordered)} node(s): {ordered}")
        return ordered
