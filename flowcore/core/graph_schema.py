"""Workflow graph schema definitions using Pydantic models.

A workflow is a directed acyclic graph of typed nodes. Each node carries
free-form ``data`` (camelCase keys, as persisted by the canvas editor); the
``variableName`` key names the slot under which the node's output becomes
visible to every downstream node.

Design:
- One configuration model per node type (tagged union keyed by NodeType),
  validated lazily through Node.config()
- Traversal queries are pure functions over immutable snapshots
- Cycles are rejected at save time (validate_graph); traversal still
  terminates if one slips through
"""

from __future__ import annotations

import re
from collections import deque
from collections.abc import Iterable, Sequence
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import networkx as nx
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:
    from flowcore.core.runtime import ExecutorRegistry

# Same rule the canvas enforces on the variable name input
VARIABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")


class WorkflowValidationError(Exception):
    """Workflow document failed save-time validation."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Invalid workflow: " + "; ".join(errors))


class NodeType(str, Enum):
    """Supported node types in workflow graphs"""

    # Triggers
    MANUAL_TRIGGER = "MANUAL_TRIGGER"
    GOOGLE_FORM_TRIGGER = "GOOGLE_FORM_TRIGGER"
    GOOGLE_CALENDAR_TRIGGER = "GOOGLE_CALENDAR_TRIGGER"
    GMAIL_TRIGGER = "GMAIL_TRIGGER"
    TELEGRAM_TRIGGER = "TELEGRAM_TRIGGER"
    STRIPE_TRIGGER = "STRIPE_TRIGGER"
    CONTACT_CREATED_TRIGGER = "CONTACT_CREATED_TRIGGER"
    DEAL_CREATED_TRIGGER = "DEAL_CREATED_TRIGGER"

    # CRM records
    CREATE_CONTACT = "CREATE_CONTACT"
    UPDATE_CONTACT = "UPDATE_CONTACT"
    CREATE_DEAL = "CREATE_DEAL"
    UPDATE_DEAL = "UPDATE_DEAL"

    # Control flow
    SET_VARIABLE = "SET_VARIABLE"
    IF_ELSE = "IF_ELSE"
    STOP_WORKFLOW = "STOP_WORKFLOW"
    BUNDLE_WORKFLOW = "BUNDLE_WORKFLOW"

    # Integrations (executors are supplied by the integration, not the core)
    GMAIL_EXECUTION = "GMAIL_EXECUTION"
    GOOGLE_CALENDAR_EXECUTION = "GOOGLE_CALENDAR_EXECUTION"
    TELEGRAM_EXECUTION = "TELEGRAM_EXECUTION"
    SLACK = "SLACK"
    DISCORD = "DISCORD"
    GEMINI = "GEMINI"
    HTTP_REQUEST = "HTTP_REQUEST"

    @property
    def is_trigger(self) -> bool:
        return self.value.endswith("_TRIGGER")


# --- Per-type configuration (tagged union keyed by NodeType) ---


class NodeConfig(BaseModel):
    """Base configuration shared by every node type.

    Keys are camelCase in the persisted document; unknown keys are kept so
    integration-specific settings survive a round trip.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    variable_name: str | None = None


class GoogleFormTriggerConfig(NodeConfig):
    form_fields: list[str] = Field(default_factory=list)


class ContactConfig(NodeConfig):
    """CREATE_CONTACT / UPDATE_CONTACT. Every text field may hold templates."""

    contact_id: str | None = None  # UPDATE_CONTACT only
    name: str | None = None
    email: str | None = None
    company_name: str | None = None
    phone: str | None = None
    position: str | None = None
    contact_type: str | None = Field(default=None, alias="type")
    lifecycle_stage: str | None = None
    source: str | None = None
    website: str | None = None
    linkedin: str | None = None
    country: str | None = None
    city: str | None = None
    notes: str | None = None


class DealConfig(NodeConfig):
    """CREATE_DEAL / UPDATE_DEAL."""

    deal_id: str | None = None  # UPDATE_DEAL only
    name: str | None = None
    value: str | None = None
    currency: str | None = None
    deadline: str | None = None
    source: str | None = None
    description: str | None = None
    contact_ids: str | None = None  # Comma-separated
    pipeline_id: str | None = None
    pipeline_stage_id: str | None = None


class SetVariableConfig(NodeConfig):
    value: str = ""


IfElseOperator = Literal[
    "equals",
    "notEquals",
    "greaterThan",
    "lessThan",
    "greaterThanOrEqual",
    "lessThanOrEqual",
    "contains",
    "notContains",
    "startsWith",
    "endsWith",
    "isEmpty",
    "isNotEmpty",
]


class IfElseConfig(NodeConfig):
    left_operand: str = ""
    operator: IfElseOperator = "equals"
    right_operand: str = ""


class StopWorkflowConfig(NodeConfig):
    reason: str | None = None


class InputMapping(BaseModel):
    """Maps a template (evaluated in the parent context) onto a bundle input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    bundle_input_name: str
    value: str = ""


class BundleWorkflowConfig(NodeConfig):
    bundle_workflow_id: str = ""
    input_mappings: list[InputMapping] = Field(default_factory=list)


NODE_CONFIG_MODELS: dict[NodeType, type[NodeConfig]] = {
    NodeType.GOOGLE_FORM_TRIGGER: GoogleFormTriggerConfig,
    NodeType.CREATE_CONTACT: ContactConfig,
    NodeType.UPDATE_CONTACT: ContactConfig,
    NodeType.CREATE_DEAL: DealConfig,
    NodeType.UPDATE_DEAL: DealConfig,
    NodeType.SET_VARIABLE: SetVariableConfig,
    NodeType.IF_ELSE: IfElseConfig,
    NodeType.STOP_WORKFLOW: StopWorkflowConfig,
    NodeType.BUNDLE_WORKFLOW: BundleWorkflowConfig,
}


def config_model_for(node_type: NodeType) -> type[NodeConfig]:
    """Configuration model for a node type (generic NodeConfig when none is declared)."""
    return NODE_CONFIG_MODELS.get(node_type, NodeConfig)


# --- Graph elements ---


class Node(BaseModel):
    """Graph node: a trigger or an action"""

    id: str = Field(min_length=1)
    type: NodeType
    data: dict[str, Any] = Field(default_factory=dict)

    # UI metadata (canvas position) - ignored by the core
    position: dict[str, float] | None = None

    @property
    def variable_name(self) -> str | None:
        """Name under which this node's output is published, if declared."""
        value = self.data.get("variableName")
        return value if isinstance(value, str) and value else None

    def config(self) -> NodeConfig:
        """Validate ``data`` against the configuration model for this node type."""
        return config_model_for(self.type).model_validate(self.data)


class Edge(BaseModel):
    """Directed edge between nodes"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    source: str  # Source node ID
    target: str  # Target node ID
    source_handle: str | None = None  # Branch output of the source ("true"/"false" for IF_ELSE)


class BundleInput(BaseModel):
    """Declared input of a bundle (reusable sub-workflow)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    type: str = "string"
    description: str | None = None
    default_value: Any = None


class BundleOutput(BaseModel):
    """Bundle output: a dotted path read from the bundle's final context."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    variable_path: str


# --- Traversal (pure queries) ---


def _adjacency(
    nodes: Iterable[Node], edges: Iterable[Edge], reverse: bool
) -> dict[str, list[str]]:
    # Edges pointing at nodes missing from the snapshot (deleted on the canvas) are ignored
    known = {node.id for node in nodes}
    adj: dict[str, list[str]] = {}
    for edge in edges:
        if edge.source not in known or edge.target not in known:
            continue
        start, end = (edge.target, edge.source) if reverse else (edge.source, edge.target)
        adj.setdefault(start, []).append(end)
    return adj


def _walk(start: str, adj: dict[str, list[str]]) -> set[str]:
    """Breadth-first reachability from ``start`` (excluded unless reached via a back-edge)."""
    reached: set[str] = set()
    visited: set[str] = set()
    queue: deque[str] = deque([start])
    while queue:
        current = queue.popleft()
        if current in visited:
            continue
        visited.add(current)
        for neighbor in adj.get(current, []):
            reached.add(neighbor)
            if neighbor not in visited:
                queue.append(neighbor)
    return reached


def upstream_of(node_id: str, nodes: Sequence[Node], edges: Sequence[Edge]) -> set[str]:
    """All node IDs that transitively feed into ``node_id``."""
    return _walk(node_id, _adjacency(nodes, edges, reverse=True))


def downstream_of(node_id: str, nodes: Sequence[Node], edges: Sequence[Edge]) -> set[str]:
    """All node IDs transitively reachable from ``node_id``."""
    return _walk(node_id, _adjacency(nodes, edges, reverse=False))


# --- Workflow document ---


class WorkflowDocument(BaseModel):
    """Persisted workflow: read at run start, never mutated by the runtime"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str
    description: str | None = None

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    # Reusable sub-workflow ("bundle") declarations
    is_bundle: bool = False
    bundle_inputs: list[BundleInput] = Field(default_factory=list)
    bundle_outputs: list[BundleOutput] | None = None

    def get_node(self, node_id: str) -> Node | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def incoming(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def outgoing(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def upstream_of(self, node_id: str) -> set[str]:
        return upstream_of(node_id, self.nodes, self.edges)

    def downstream_of(self, node_id: str) -> set[str]:
        return downstream_of(node_id, self.nodes, self.edges)

    def validate_graph(self, registry: ExecutorRegistry | None = None) -> list[str]:
        """
        Validate graph structure using NetworkX.
        Returns list of validation errors (empty when the document can be saved).
        """
        errors = []

        # Duplicate node IDs would corrupt per-node status and step keys
        seen_node_ids: set[str] = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)
        node_ids = seen_node_ids

        seen_edge_ids: set[str] = set()
        for edge in self.edges:
            if edge.id in seen_edge_ids:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edge_ids.add(edge.id)

        for edge in self.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
            if edge.target not in node_ids:
                errors.append(f"Edge {edge.id}: target '{edge.target}' not found")
            if edge.source == edge.target:
                errors.append(f"Edge {edge.id}: node '{edge.source}' cannot feed itself")

        try:
            cycle = nx.find_cycle(self.to_networkx())
            cycle_path = " -> ".join([cycle[0][0], *(step[1] for step in cycle)])
            errors.append(f"Cycle detected: {cycle_path}")
        except nx.NetworkXNoCycle:
            pass  # No cycles - OK

        # Variable names become context keys: must be identifiers and unique
        declared: dict[str, list[str]] = {}
        for node in self.nodes:
            name = node.data.get("variableName")
            if name is None or name == "":
                continue
            if not isinstance(name, str) or not VARIABLE_NAME_PATTERN.match(name):
                errors.append(f"Node '{node.id}': invalid variable name {name!r}")
                continue
            declared.setdefault(name, []).append(node.id)
        for name, owners in declared.items():
            if len(owners) > 1:
                errors.append(
                    f"Variable name '{name}' is declared by multiple nodes: {', '.join(owners)}"
                )

        for node in self.nodes:
            try:
                node.config()
            except ValidationError as e:
                for err in e.errors():
                    loc = ".".join(str(x) for x in err["loc"])
                    errors.append(f"Node '{node.id}': {loc}: {err['msg']}")

        if registry is not None:
            for node in self.nodes:
                if not registry.has(node.type):
                    errors.append(
                        f"Node '{node.id}': no executor registered for type '{node.type.value}'"
                    )

        return errors

    def ensure_valid(self, registry: ExecutorRegistry | None = None) -> None:
        """Raise WorkflowValidationError when validate_graph reports anything."""
        errors = self.validate_graph(registry)
        if errors:
            raise WorkflowValidationError(errors)

    def to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G

    def topological_generations(self) -> list[list[str]]:
        """Nodes grouped into levels; every node comes after all of its producers.

        Members of one level share no ancestor/descendant relation. Ties are
        broken by declaration order so runs are deterministic.
        """
        order = {node.id: index for index, node in enumerate(self.nodes)}
        G = self.to_networkx()
        return [
            sorted(level, key=lambda n: order.get(n, len(order)))
            for level in nx.topological_generations(G)
        ]

    def topological_order(self) -> list[str]:
        return [node_id for level in self.topological_generations() for node_id in level]


def load_workflow_file(path: str | Path) -> WorkflowDocument:
    """Load a workflow document from YAML or JSON.

    Raises:
        ValueError: If the file does not contain a mapping
        pydantic.ValidationError: If the document does not match the schema
    """
    with open(path) as f:
        raw = yaml.safe_load(f)
    if not isinstance(raw, dict):
        raise ValueError(
            f"Invalid workflow content in '{path}'. "
            f"Expected a mapping, got {type(raw).__name__}."
        )
    return WorkflowDocument.model_validate(raw)


def dump_workflow(document: WorkflowDocument) -> dict[str, Any]:
    """Serialize a document with the camelCase keys the editor persists."""
    return document.model_dump(mode="json", by_alias=True, exclude_none=True)
