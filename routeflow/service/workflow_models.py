from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


class NodeKind(str, Enum):
    AGENT = "agent"
    CONDITION = "condition"
    PARALLEL = "parallel"
    HUMAN = "human"
    TOOL = "tool"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: FrozenSet[ExecutionStatus] = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
})

ALLOWED_TRANSITIONS: Dict[ExecutionStatus, FrozenSet[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({
        ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.PAUSED, ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED, ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.PAUSED: frozenset({
        ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


class NodeState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (NodeState.COMPLETED, NodeState.FAILED, NodeState.SKIPPED)


class ErrorStrategy(str, Enum):
    FAIL_FAST = "fail_fast"
    CONTINUE = "continue"
    RETRY = "retry"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class RetryPolicy:
    """Per-node retry: ``max_attempts`` counts the first try."""

    max_attempts: int = 1
    backoff_ms: float = 1000.0
    backoff_multiplier: float = 2.0
    retryable_codes: Tuple[str, ...] = ()

    def delay_ms(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        return self.backoff_ms * (self.backoff_multiplier ** (attempt - 1))

    def is_retryable(self, error_code: Optional[str], recoverable: bool) -> bool:
        if not recoverable:
            return False
        if not self.retryable_codes:
            return True
        return error_code in self.retryable_codes

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["RetryPolicy"]:
        if not data:
            return None
        return cls(
            max_attempts=int(data.get("max_attempts", 1)),
            backoff_ms=float(data.get("backoff_ms", 1000.0)),
            backoff_multiplier=float(data.get("backoff_multiplier", 2.0)),
            retryable_codes=tuple(data.get("retryable_codes") or ()),
        )


@dataclass(frozen=True)
class NodeCondition:
    field: str
    operator: str
    value: Any = None
    logic: str = "and"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeCondition":
        return cls(
            field=data["field"],
            operator=data["operator"],
            value=data.get("value"),
            logic=data.get("logic", "and"),
        )


@dataclass
class WorkflowNode:
    id: str
    kind: NodeKind
    type: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)
    inputs: List[str] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    conditions: List[NodeCondition] = field(default_factory=list)
    children: List[str] = field(default_factory=list)
    retry: Optional[RetryPolicy] = None
    timeout_ms: Optional[int] = None
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowNode":
        kind = NodeKind(data.get("kind", NodeKind.AGENT.value))
        step_type = data.get("type")
        if step_type is None and kind == NodeKind.HUMAN:
            step_type = "human-input"
        return cls(
            id=data["id"],
            kind=kind,
            type=step_type,
            config=dict(data.get("config") or {}),
            inputs=list(data.get("inputs") or []),
            outputs=list(data.get("outputs") or []),
            conditions=[NodeCondition.from_dict(c) for c in data.get("conditions") or []],
            children=list(data.get("children") or []),
            retry=RetryPolicy.from_dict(data.get("retry")),
            timeout_ms=data.get("timeout_ms"),
            name=data.get("name"),
        )


@dataclass(frozen=True)
class WorkflowEdge:
    source: str
    target: str
    condition: Optional[str] = None
    label: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowEdge":
        return cls(
            source=data["source"],
            target=data["target"],
            condition=data.get("condition"),
            label=data.get("label"),
        )


@dataclass(frozen=True)
class WorkflowVariable:
    name: str
    type: str = "string"
    required: bool = False
    default: Any = None
    pattern: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    options: Optional[Tuple[Any, ...]] = None
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowVariable":
        validation = data.get("validation") or {}
        options = validation.get("options", data.get("options"))
        return cls(
            name=data["name"],
            type=data.get("type", "string"),
            required=bool(data.get("required", False)),
            default=data.get("default"),
            pattern=validation.get("pattern", data.get("pattern")),
            min=validation.get("min", data.get("min")),
            max=validation.get("max", data.get("max")),
            options=tuple(options) if options is not None else None,
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class ErrorHandlingConfig:
    strategy: ErrorStrategy = ErrorStrategy.FAIL_FAST
    fallback_node: Optional[str] = None
    max_errors: Optional[int] = None
    max_workflow_retries: int = 1

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ErrorHandlingConfig":
        data = data or {}
        return cls(
            strategy=ErrorStrategy(data.get("strategy", ErrorStrategy.FAIL_FAST.value)),
            fallback_node=data.get("fallback_node"),
            max_errors=data.get("max_errors"),
            max_workflow_retries=int(data.get("max_workflow_retries", 1)),
        )


@dataclass
class WorkflowDefinition:
    id: str
    nodes: List[WorkflowNode]
    edges: List[WorkflowEdge]
    entry: str
    exits: List[str]
    variables: List[WorkflowVariable] = field(default_factory=list)
    error_handling: ErrorHandlingConfig = field(default_factory=ErrorHandlingConfig)
    name: Optional[str] = None
    version: str = "1.0"
    timeout_ms: Optional[int] = None

    def __post_init__(self) -> None:
        self._by_id = {node.id: node for node in self.nodes}

    def node(self, node_id: str) -> WorkflowNode:
        return self._by_id[node_id]

    def has_node(self, node_id: str) -> bool:
        return node_id in self._by_id

    def outgoing(self, node_id: str) -> List[WorkflowEdge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming(self, node_id: str) -> List[WorkflowEdge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def parallel_children(self) -> FrozenSet[str]:
        """Ids that only run as children of a parallel node."""
        return frozenset(
            child
            for node in self.nodes
            if node.kind == NodeKind.PARALLEL
            for child in node.children
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        exits = data.get("exits")
        if exits is None:
            exits = [data["exit"]] if data.get("exit") else []
        return cls(
            id=data["id"],
            nodes=[WorkflowNode.from_dict(n) for n in data.get("nodes") or []],
            edges=[WorkflowEdge.from_dict(e) for e in data.get("edges") or []],
            entry=data["entry"],
            exits=list(exits),
            variables=[WorkflowVariable.from_dict(v) for v in data.get("variables") or []],
            error_handling=ErrorHandlingConfig.from_dict(data.get("error_handling")),
            name=data.get("name"),
            version=str(data.get("version", "1.0")),
            timeout_ms=data.get("timeout_ms"),
        )


@dataclass
class ExecutionError:
    node_id: Optional[str]
    code: str
    message: str
    recoverable: bool
    attempts: int = 1
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "attempts": self.attempts,
            "timestamp": self.timestamp,
        }


@dataclass
class NodeMetrics:
    node_id: str
    duration_ms: float
    cost: float
    success: bool
    attempts: int = 1
    tokens: int = 0
    images: int = 0
    embeddings: int = 0
    input_size: int = 0
    output_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration_ms": self.duration_ms,
            "cost": self.cost,
            "success": self.success,
            "attempts": self.attempts,
            "tokens": self.tokens,
            "images": self.images,
            "embeddings": self.embeddings,
            "input_size": self.input_size,
            "output_size": self.output_size,
        }


@dataclass
class ExecutionMetrics:
    total_cost: float = 0.0
    total_duration_ms: float = 0.0
    node_metrics: Dict[str, NodeMetrics] = field(default_factory=dict)
    slowest_node: Optional[str] = None
    fastest_node: Optional[str] = None
    average_node_duration_ms: float = 0.0
    total_tokens: int = 0
    total_images: int = 0
    total_embeddings: int = 0

    def record(self, metrics: NodeMetrics) -> None:
        previous = self.node_metrics.get(metrics.node_id)
        if previous is not None:
            # Workflow-level retry re-ran the node; keep the cumulative spend
            metrics.cost += previous.cost
            metrics.attempts += previous.attempts
        self.node_metrics[metrics.node_id] = metrics
        self.total_cost += metrics.cost - (previous.cost if previous else 0.0)
        self.total_tokens += metrics.tokens
        self.total_images += metrics.images
        self.total_embeddings += metrics.embeddings

    def finalize(self, total_duration_ms: float) -> None:
        self.total_duration_ms = total_duration_ms
        if not self.node_metrics:
            return
        ordered = sorted(self.node_metrics.values(), key=lambda m: (m.duration_ms, m.node_id))
        self.fastest_node = ordered[0].node_id
        self.slowest_node = ordered[-1].node_id
        self.average_node_duration_ms = sum(m.duration_ms for m in ordered) / len(ordered)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_cost": self.total_cost,
            "total_duration_ms": self.total_duration_ms,
            "nodes": {node_id: m.to_dict() for node_id, m in self.node_metrics.items()},
            "performance": {
                "slowest_node": self.slowest_node,
                "fastest_node": self.fastest_node,
                "average_node_duration_ms": self.average_node_duration_ms,
            },
            "resources": {
                "tokens": self.total_tokens,
                "images": self.total_images,
                "embeddings": self.total_embeddings,
            },
        }


@dataclass
class WorkflowExecution:
    id: str
    workflow_id: str
    payload: Dict[str, Any]
    state: Dict[str, Any]
    status: ExecutionStatus = ExecutionStatus.PENDING
    frontier: List[str] = field(default_factory=list)
    executed_nodes: List[str] = field(default_factory=list)
    node_states: Dict[str, NodeState] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    errors: List[ExecutionError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)
    trace: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    timeout_ms: Optional[int] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    ended_at: Optional[float] = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "payload": self.payload,
            "state": self.state,
            "frontier": list(self.frontier),
            "executed_nodes": list(self.executed_nodes),
            "node_states": {k: v.value for k, v in self.node_states.items()},
            "errors": [error.to_dict() for error in self.errors],
            "warnings": list(self.warnings),
            "metrics": self.metrics.to_dict(),
            "metadata": self.metadata,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }


@dataclass
class ExecutionStatusReport:
    execution_id: str
    workflow_id: str
    status: ExecutionStatus
    completed: int
    total: int
    frontier: List[str]
    errors: List[Dict[str, Any]]
    warnings: List[str]

    @property
    def progress(self) -> float:
        return self.completed / self.total if self.total else 0.0
