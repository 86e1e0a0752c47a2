"""Workflow graph schema definitions using Pydantic models.

Workflows are directed graphs of typed nodes (prompt templates, datasets,
variables, frameworks, ingest sources, ...). Each node carries a type-specific
``config`` holding an ordered list of prompt parts; a node depends on every
node referenced by a dependency prompt part plus every node with an edge into it.

Definitions are accepted in snake_case or camelCase (``promptParts``,
``triggersExecution``, ``workflowId``) so exported editor documents load as-is.
"""

import re
from enum import Enum
from typing import Annotated, Any, Literal

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Node ids end up in "workflow:node" composite keys, so ':' is not allowed
NODE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")


class _SchemaModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NodeType(str, Enum):
    """Supported node types in workflow graphs"""

    PROMPT_TEMPLATE = "promptTemplate"  # Text generation call
    PROMPT_PIECE = "promptPiece"  # Assembled text, no generation call
    DATASET = "dataset"  # Static data, aggregations, schema snapshots, shared caches
    VARIABLE = "variable"  # Workflow variable lookup
    FRAMEWORK = "framework"  # Framework/schema injection
    INGEST = "ingest"  # Latest external submission for the company
    WORKFLOW = "workflow"  # Nested workflow reference
    INTEGRATION = "integration"  # External capability call (scraping, ...)
    AGENT = "agent"  # Applies a change plan produced by another node


class DatasetSource(str, Enum):
    """Where a dataset node gets its output from"""

    STATIC = "static"
    DATASET = "dataset"  # Aggregation of a dataset definition's dependencies
    SSOT_SCHEMA = "ssot_schema"  # Snapshot of the structured-schema store
    SHARED_CACHE = "shared_cache"  # Read from a named shared cache partition
    COMPANY_INGEST = "company_ingest"  # Legacy ingest source


class TextPart(_SchemaModel):
    """Literal text. ``prompt`` is the legacy tag for the same thing."""

    type: Literal["text", "prompt"] = "text"
    value: str = ""
    system_prompt_id: str | None = None

    @property
    def category(self) -> str:
        return "text"


class DependencyPart(_SchemaModel):
    """Reference to another node's output, optionally in another workflow."""

    type: Literal["dependency"] = "dependency"
    value: str  # Target node ID
    workflow_id: str | None = None  # Set for cross-workflow dependencies
    workflow_name: str | None = None
    triggers_execution: bool = True
    system_prompt_id: str | None = None

    @property
    def category(self) -> str:
        return "dependency"

    @field_validator("value")
    @classmethod
    def validate_target(cls, v):
        if not v:
            raise ValueError("Dependency part requires a target node ID")
        return v


class FrameworkPart(_SchemaModel):
    """Injects a stored framework's schema into the prompt."""

    type: Literal["framework"] = "framework"
    value: str  # Framework ID
    framework_name: str | None = None
    system_prompt_id: str | None = None

    @property
    def category(self) -> str:
        return "framework"


PromptPart = Annotated[TextPart | DependencyPart | FrameworkPart, Field(discriminator="type")]


class NodeRef(_SchemaModel):
    """Pointer to a node, possibly in another workflow."""

    node_id: str
    workflow_id: str | None = None
    node_name: str | None = None


class SharedCacheOutput(_SchemaModel):
    """Publishes a node's output into a shared cache partition."""

    shared_cache_id: str
    enabled: bool = True


class NodeConfig(_SchemaModel):
    """Type-specific node configuration.

    A single flat model rather than one config per type: editor documents mix
    keys freely and unknown keys are preserved.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    prompt_parts: list[PromptPart] = Field(default_factory=list)
    paused: bool = False

    # promptTemplate
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    enable_stop_trigger: bool = False

    # promptPiece
    text: str | None = None

    # dataset
    source_type: str | None = None  # DatasetSource value; unknown kinds fall back to static
    data: Any = None
    dataset_id: str | None = None
    shared_cache_id: str | None = None
    fetch_live: bool = False

    # variable
    variable_name: str | None = None
    default_value: str | None = None
    map_dependencies: list[NodeRef] = Field(default_factory=list)

    # framework
    name: str | None = None
    description: str | None = None
    framework_type: str | None = Field(default=None, alias="type")
    framework_schema: Any = Field(default=None, alias="schema")

    # workflow (nested)
    workflow_id: str | None = None
    workflow_name: str | None = None

    # integration
    integration_id: str | None = None
    capability: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    # agent
    execution_type: str = "ssot_update"
    source_node_id: str | None = None
    source_node_label: str | None = None

    shared_cache_outputs: list[SharedCacheOutput] = Field(default_factory=list)


class Node(_SchemaModel):
    """Workflow node with type-specific configuration"""

    id: str
    type: NodeType
    label: str | None = None
    config: NodeConfig = Field(default_factory=NodeConfig)

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        if not NODE_ID_PATTERN.match(v):
            raise ValueError(
                f"Invalid node ID: '{v}'. Use letters, digits, '_', '-' or '.' only."
            )
        return v

    @property
    def display_label(self) -> str:
        return self.label or self.type.value

    @property
    def is_generative(self) -> bool:
        return self.type == NodeType.PROMPT_TEMPLATE

    @model_validator(mode="after")
    def validate_config_for_type(self) -> "Node":
        """Reject configs that cannot possibly execute."""
        if self.type == NodeType.DATASET and self.config.fetch_live:
            if self.config.source_type not in (None, DatasetSource.SSOT_SCHEMA):
                raise ValueError(
                    f"Node '{self.id}': fetch_live is only supported for ssot_schema datasets"
                )
        return self


class EdgeEndpoint(_SchemaModel):
    node: str
    port: str = "output"


class Edge(_SchemaModel):
    """Directed edge: ``from`` node feeds ``to`` node"""

    id: str | None = None
    source: EdgeEndpoint = Field(alias="from")
    target: EdgeEndpoint = Field(alias="to")


class WorkflowVariable(_SchemaModel):
    name: str
    value: str | None = None
    default_value: str | None = None


class WorkflowGraph(_SchemaModel):
    """Complete workflow definition"""

    id: str
    name: str
    description: str | None = None
    version: str = "1.0.0"

    nodes: list[Node]
    edges: list[Edge] = Field(default_factory=list)
    variables: list[WorkflowVariable] = Field(default_factory=list)

    def get_node(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_variable(self, name: str) -> WorkflowVariable | None:
        for variable in self.variables:
            if variable.name == name:
                return variable
        return None

    def validate_graph(self) -> list[str]:
        """
        Validate graph structure using NetworkX.
        Returns list of validation errors.
        """
        errors = []

        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)
        node_ids = seen_node_ids

        for edge in self.edges:
            if edge.source.node not in node_ids:
                errors.append(f"Edge {edge.id or '?'}: source '{edge.source.node}' not found")
            if edge.target.node not in node_ids:
                errors.append(f"Edge {edge.id or '?'}: target '{edge.target.node}' not found")

        for node in self.nodes:
            for part in node.config.prompt_parts:
                if not isinstance(part, DependencyPart):
                    continue
                is_local = part.workflow_id in (None, self.id)
                if is_local and part.value not in node_ids:
                    errors.append(f"Node '{node.id}': dependency '{part.value}' not found")
                if is_local and part.value == node.id:
                    errors.append(f"Node '{node.id}' depends on itself")
            if node.type == NodeType.AGENT and node.config.source_node_id:
                if node.config.source_node_id not in node_ids:
                    errors.append(
                        f"Agent node '{node.id}': source node "
                        f"'{node.config.source_node_id}' not found"
                    )

        # Limit cycle enumeration to prevent DoS on complex graphs
        MAX_CYCLES_TO_REPORT = 20
        G = self._to_networkx()
        try:
            for cycle_count, cycle in enumerate(nx.simple_cycles(G), start=1):
                if cycle_count > MAX_CYCLES_TO_REPORT:
                    errors.append(f"Too many cycles to report (>{MAX_CYCLES_TO_REPORT})")
                    break
                errors.append(f"Dependency cycle: {' -> '.join(cycle + [cycle[0]])}")
        except nx.NetworkXError as e:
            errors.append(f"Could not perform cycle detection: {e}")

        return errors

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to a dependency DiGraph (dependency -> dependent)"""
        G = nx.DiGraph()
        node_ids = {node.id for node in self.nodes}
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            if edge.source.node in node_ids and edge.target.node in node_ids:
                G.add_edge(edge.source.node, edge.target.node)
        for node in self.nodes:
            for part in node.config.prompt_parts:
                if isinstance(part, DependencyPart) and part.workflow_id in (None, self.id):
                    if part.value in node_ids:
                        G.add_edge(part.value, node.id)
            if node.type == NodeType.AGENT and node.config.source_node_id in node_ids:
                G.add_edge(node.config.source_node_id, node.id)
            if node.type == NodeType.VARIABLE:
                for ref in node.config.map_dependencies:
                    if ref.workflow_id in (None, self.id) and ref.node_id in node_ids:
                        G.add_edge(ref.node_id, node.id)
        return G
