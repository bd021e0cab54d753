"""Core Pydantic models for the node graph engine."""

import json
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NodeType(str, Enum):
    """Enumeration of executable node types."""
    TRIGGER = "trigger"
    AGENT = "agent"
    SCRIPT = "script"
    CONDITION = "condition"
    REQUEST = "request"
    DELAY = "delay"
    INPUT = "input"
    IMAGE_GEN = "image-gen"
    OUTPUT = "output"
    DEFAULT = "default"


class NodeStatus(str, Enum):
    """Per-node execution status within a run."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class LogLevel(str, Enum):
    """Severity of a run log entry."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"


class RunStatusEnum(str, Enum):
    """Enumeration of run statuses."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


TRUE_HANDLE = "true"
FALSE_HANDLE = "false"


def to_jsonable(value: Any) -> Any:
    """Coerce an arbitrary node output into something JSON columns and sockets accept."""
    try:
        return json.loads(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return str(value)


def stringify(value: Any) -> str:
    """Render a value as text the way the editor displays it."""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


class ValidationResult(BaseModel):
    """Result of graph validation."""
    is_valid: bool = Field(..., description="Whether the graph is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class NodeDefinition(BaseModel):
    """A node as authored in the editor."""
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., description="Unique identifier for the node")
    type: str = Field(NodeType.DEFAULT.value, description="Node type as produced by the editor")
    position: Dict[str, Any] = Field(default_factory=dict, description="Canvas position, unused by the engine")
    data: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")

    @field_validator('id')
    @classmethod
    def validate_id(cls, id_value):
        """Ensure node ID is not blank."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        return id_value

    @field_validator('type', mode='before')
    @classmethod
    def coerce_type(cls, type_value):
        if type_value is None or type_value == "":
            return NodeType.DEFAULT.value
        if isinstance(type_value, NodeType):
            return type_value.value
        return type_value

    @property
    def kind(self) -> NodeType:
        """The executable node type; unknown editor types run as ``default``."""
        try:
            return NodeType(self.type)
        except ValueError:
            return NodeType.DEFAULT

    @property
    def label(self) -> str:
        label = self.data.get("label")
        return str(label) if label not in (None, "") else self.id


class EdgeDefinition(BaseModel):
    """A directed connection between two nodes."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[str] = Field(None, description="Edge identifier")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    source_handle: Optional[str] = Field(None, alias="sourceHandle", description="Source handle, 'true'/'false' on condition nodes")
    target_handle: Optional[str] = Field(None, alias="targetHandle", description="Target handle")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are not blank."""
        if not node_id or not node_id.strip():
            raise ValueError("Edge endpoint cannot be empty")
        return node_id


class GraphDefinition(BaseModel):
    """Immutable node/edge snapshot handed to the engine."""
    name: str = Field("Untitled workflow", description="Name of the workflow")
    description: str = Field("", description="Description of the workflow")
    nodes: List[NodeDefinition] = Field(default_factory=list, description="Nodes in the graph")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="Edges connecting nodes")

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            duplicates = sorted({node_id for node_id in node_ids if node_ids.count(node_id) > 1})
            raise ValueError(f"All node IDs must be unique (duplicates: {', '.join(duplicates)})")
        return nodes

    @field_validator('name')
    @classmethod
    def validate_name(cls, name):
        name = (name or "").strip()
        return name or "Untitled workflow"

    def get_node(self, node_id: str) -> Optional[NodeDefinition]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def trigger_nodes(self) -> List[NodeDefinition]:
        return [node for node in self.nodes if node.kind == NodeType.TRIGGER]

    def outgoing(self, node_id: str) -> List[EdgeDefinition]:
        return [edge for edge in self.edges if edge.source == node_id]

    def validate_structure(self) -> ValidationResult:
        """Inspect the graph and report structural problems as warnings.

        The editor owns the graph shape, so nothing found here prevents a run:
        dangling edges are skipped by the scheduler, cycles are bounded by the
        step ceiling and a graph without triggers simply does nothing.
        """
        warnings = []
        node_ids = {node.id for node in self.nodes}

        if not self.trigger_nodes():
            warnings.append("Graph has no trigger node; running it will do nothing")

        for edge in self.edges:
            if edge.source not in node_ids:
                warnings.append(f"Edge {edge.id or '?'} references missing source node '{edge.source}'")
            if edge.target not in node_ids:
                warnings.append(f"Edge {edge.id or '?'} references missing target node '{edge.target}'")

        for node in self.nodes:
            if node.kind != NodeType.CONDITION:
                continue
            for edge in self.outgoing(node.id):
                if edge.source_handle not in (TRUE_HANDLE, FALSE_HANDLE):
                    warnings.append(
                        f"Condition node '{node.label}' has an edge without a true/false handle; it will never be followed"
                    )

        unreachable = node_ids - self._find_reachable_nodes()
        if self.trigger_nodes() and unreachable:
            warnings.append(f"Unreachable nodes detected: {', '.join(sorted(unreachable))}")

        if self._has_cycles():
            warnings.append("Graph contains cycles; execution will stop at the step ceiling")

        return ValidationResult(is_valid=True, errors=[], warnings=warnings)

    def _find_reachable_nodes(self) -> Set[str]:
        """Find all nodes reachable from any trigger node."""
        reachable = {node.id for node in self.trigger_nodes()}
        queue = deque(reachable)
        while queue:
            current = queue.popleft()
            for edge in self.outgoing(current):
                if edge.target not in reachable:
                    reachable.add(edge.target)
                    queue.append(edge.target)
        return reachable

    def _has_cycles(self) -> bool:
        """Check if the graph contains cycles using DFS."""
        graph: Dict[str, List[str]] = {}
        for edge in self.edges:
            graph.setdefault(edge.source, []).append(edge.target)

        visited = set()
        rec_stack = set()

        def has_cycle_util(node_id):
            visited.add(node_id)
            rec_stack.add(node_id)
            for neighbor in graph.get(node_id, []):
                if neighbor not in visited:
                    if has_cycle_util(neighbor):
                        return True
                elif neighbor in rec_stack:
                    return True
            rec_stack.remove(node_id)
            return False

        for node_id in list(graph):
            if node_id not in visited and has_cycle_util(node_id):
                return True
        return False


class LogEntry(BaseModel):
    """A single entry of a run's ordered log."""
    id: int = Field(..., description="Position of the entry in the run log")
    timestamp: datetime = Field(..., description="Timestamp of the log entry")
    node_id: Optional[str] = Field(None, description="ID of the node the entry refers to")
    node_label: Optional[str] = Field(None, description="Label of the node the entry refers to")
    level: LogLevel = Field(..., description="Severity of the entry")
    message: str = Field(..., description="Log message")
    details: Optional[Any] = Field(None, description="Optional structured details")


class NodeState(BaseModel):
    """Runtime fields the engine owns for each node."""
    status: NodeStatus = NodeStatus.IDLE
    last_output: Optional[Any] = None


class RunEvent(BaseModel):
    """Event pushed to status/log sinks while a run progresses."""
    event_type: str
    run_id: str
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)


class RunResult(BaseModel):
    """Outcome of a single run."""
    run_id: str
    status: RunStatusEnum
    steps: int = 0
    execution_order: List[str] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    node_states: Dict[str, NodeState] = Field(default_factory=dict)
    logs: List[LogEntry] = Field(default_factory=list)
    final_output: Optional[Any] = None
    started_at: datetime
    completed_at: Optional[datetime] = None

    def annotated_graph(self, graph: GraphDefinition) -> GraphDefinition:
        """Return a copy of ``graph`` with executionStatus/lastOutput written into node data."""
        nodes = []
        for node in graph.nodes:
            state = self.node_states.get(node.id, NodeState())
            data = dict(node.data)
            data["executionStatus"] = state.status.value
            if state.last_output is not None:
                data["lastOutput"] = state.last_output
            nodes.append(node.model_copy(update={"data": data}))
        return graph.model_copy(update={"nodes": nodes})


class GraphSummary(BaseModel):
    """Summary information about a stored workflow graph."""
    id: str = Field(..., description="Graph ID")
    name: str = Field(..., description="Graph name")
    description: str = Field("", description="Graph description")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")
    node_count: int = Field(..., description="Number of nodes in the graph")
    edge_count: int = Field(..., description="Number of edges in the graph")


class RunSummary(BaseModel):
    """Summary of a finished run kept in the run history."""
    run_id: str
    graph_id: Optional[str] = None
    status: RunStatusEnum
    steps: int
    final_output: Optional[Any] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
