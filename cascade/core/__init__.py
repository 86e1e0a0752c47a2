"""Core modules for the cascade engine."""

from cascade.core.graph_schema import Node, NodeType, WorkflowGraph
from cascade.core.state import Database, NodeExecutionRecord, RunStatus

__all__ = [
    "Database",
    "Node",
    "NodeExecutionRecord",
    "NodeType",
    "RunStatus",
    "WorkflowGraph",
]
