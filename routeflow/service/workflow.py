from __future__ import annotations

import asyncio
import copy
import json
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from routeflow.config import Settings
from routeflow.logging import (
    get_logger,
    log_workflow_trace,
    sanitize_error_message,
    set_correlation_id,
)
from routeflow.service.conditions import evaluate_conditions, evaluate_expression
from routeflow.service.definition_validation import (
    load_workflow_definition,
    validate_workflow_input,
)
from routeflow.service.errors import (
    FATAL_ERROR_CODES,
    ExecutionCancelled,
    ExecutionNotFound,
    InvalidStatusTransition,
    InvalidWorkflowInput,
    NodeExecutionError,
    NodeTimeout,
    RouteflowError,
    StateConflict,
    WorkflowTimeout,
)
from routeflow.service.registry import AgentContext, AgentRegistry, AgentResult
from routeflow.service.schemas import WorkflowSubmission
from routeflow.service.workflow_models import (
    ALLOWED_TRANSITIONS,
    ErrorStrategy,
    ExecutionError,
    ExecutionStatus,
    ExecutionStatusReport,
    NodeKind,
    NodeMetrics,
    NodeState,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowExecution,
    WorkflowNode,
)

DEFAULT_NODE_TIMEOUT_MS = 60_000
DEFAULT_WORKFLOW_TIMEOUT_MS = 300_000
DEFAULT_STATE_TTL_SECONDS = 1800
MAX_TRACE_ENTRIES = 500
STATE_CACHE_PREFIX = "workflow:state:"
NO_EXIT_REACHED = "no_exit_reached"
NO_ROUTE = "no_route"


class _Step(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"


@dataclass
class WorkflowSnapshot:
    """State captured before a node runs, restored by the ``retry`` strategy."""

    node_id: str
    state: Dict[str, Any]
    outputs: Dict[str, Any]
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def capture(
        cls, node_id: str, state: Dict[str, Any], outputs: Dict[str, Any]
    ) -> "WorkflowSnapshot":
        return cls(
            node_id=node_id,
            state=copy.deepcopy(state),
            outputs=copy.deepcopy(outputs),
        )


@dataclass
class NodeOutcome:
    node_id: str
    success: bool
    output: Any = None
    result: Optional[AgentResult] = None
    errors: List[ExecutionError] = field(default_factory=list)
    error_code: Optional[str] = None
    attempts: int = 1
    duration_ms: float = 0.0
    cost: float = 0.0
    selected_edge: Optional[WorkflowEdge] = None
    state_updates: Dict[str, Any] = field(default_factory=dict)

    @property
    def fatal(self) -> bool:
        return self.error_code in FATAL_ERROR_CODES


@dataclass
class _ExecutionControl:
    """Per-execution signals and bookkeeping owned by the engine."""

    definition: WorkflowDefinition
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    resume_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    started: float = 0.0
    paused_ms: float = 0.0
    edge_active: Dict[int, bool] = field(default_factory=dict)
    forced: List[str] = field(default_factory=list)
    fallback_used: bool = False
    workflow_retries: Dict[str, int] = field(default_factory=dict)
    snapshot: Optional[WorkflowSnapshot] = None


def _json_size(value: Any) -> int:
    try:
        return len(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return 0


class WorkflowEngine:
    """Runs workflow graphs whose steps are registry-resolved executables.

    One execution is driven by one coroutine: ready nodes run in declaration
    order, ``parallel`` nodes fan their children out concurrently and join
    before the graph advances. Node failures are retried per node policy and
    then handed to the workflow's error strategy.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        *,
        cache: Any = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.logger = get_logger(__name__)
        self._clock = clock
        self.node_timeout_ms = (
            settings.node_timeout_ms if settings else DEFAULT_NODE_TIMEOUT_MS
        )
        self.workflow_timeout_ms = (
            settings.workflow_timeout_ms if settings else DEFAULT_WORKFLOW_TIMEOUT_MS
        )
        self.state_ttl_seconds = (
            settings.workflow_state_ttl_seconds if settings else DEFAULT_STATE_TTL_SECONDS
        )
        self._executions: Dict[str, WorkflowExecution] = {}
        self._controls: Dict[str, _ExecutionControl] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    async def submit(
        self,
        definition: Union[Dict[str, Any], WorkflowDefinition],
        payload: Optional[Dict[str, Any]] = None,
        *,
        timeout_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        try:
            submission = WorkflowSubmission(
                payload=payload or {}, timeout_ms=timeout_ms, metadata=metadata or {}
            )
        except PydanticValidationError as exc:
            raise InvalidWorkflowInput(
                "workflow submission is invalid",
                detail={"errors": [err["msg"] for err in exc.errors()]},
            ) from exc
        loaded = load_workflow_definition(definition)
        resolved = validate_workflow_input(loaded, submission.payload)

        execution = WorkflowExecution(
            id=str(uuid.uuid4()),
            workflow_id=loaded.id,
            payload=copy.deepcopy(submission.payload),
            state=copy.deepcopy(resolved),
            frontier=[loaded.entry],
            node_states={node.id: NodeState.PENDING for node in loaded.nodes},
            metadata=dict(submission.metadata),
            timeout_ms=submission.timeout_ms or loaded.timeout_ms or self.workflow_timeout_ms,
        )
        control = _ExecutionControl(definition=loaded)
        control.resume_event.set()
        with self._lock:
            self._executions[execution.id] = execution
            self._controls[execution.id] = control
        self.logger.info(
            "workflow_submitted",
            execution_id=execution.id,
            workflow_id=loaded.id,
            nodes=len(loaded.nodes),
        )
        await self._persist(execution)
        return execution.id

    async def run(self, execution_id: str) -> WorkflowExecution:
        execution = self.get_execution(execution_id)
        control = self._control(execution_id)
        if execution.terminal:
            return execution
        if execution.status != ExecutionStatus.PENDING:
            raise InvalidStatusTransition(
                f"execution {execution_id} is already {execution.status.value}",
                detail={"execution_id": execution_id, "status": execution.status.value},
            )
        if control.task is None:
            control.task = asyncio.current_task()
        await self._drive(execution, control)
        return execution

    def start(self, execution_id: str) -> asyncio.Task:
        """Run an execution in the background and return its task."""
        control = self._control(execution_id)
        task = asyncio.create_task(self.run(execution_id))
        control.task = task
        return task

    async def execute(
        self,
        definition: Union[Dict[str, Any], WorkflowDefinition],
        payload: Optional[Dict[str, Any]] = None,
        *,
        timeout_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecution:
        execution_id = await self.submit(
            definition, payload, timeout_ms=timeout_ms, metadata=metadata
        )
        return await self.run(execution_id)

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        with self._lock:
            execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFound(
                f"execution {execution_id} not found", detail={"execution_id": execution_id}
            )
        return execution

    def status(self, execution_id: str) -> ExecutionStatusReport:
        execution = self.get_execution(execution_id)
        control = self._control(execution_id)
        return ExecutionStatusReport(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            status=execution.status,
            completed=len(set(execution.executed_nodes)),
            total=len(control.definition.nodes),
            frontier=list(execution.frontier),
            errors=[
                {**error.to_dict(), "message": sanitize_error_message(error.message)}
                for error in execution.errors
            ],
            warnings=list(execution.warnings),
        )

    def running_executions(self) -> List[str]:
        with self._lock:
            return [
                execution.id
                for execution in self._executions.values()
                if execution.status in (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED)
            ]

    async def cancel(self, execution_id: str) -> ExecutionStatus:
        """Best-effort cancel; cancelling a finished execution is a no-op."""
        execution = self.get_execution(execution_id)
        control = self._control(execution_id)
        if execution.terminal:
            return execution.status
        control.cancel_event.set()
        was_pending = execution.status == ExecutionStatus.PENDING
        self._transition(execution, ExecutionStatus.CANCELLED)
        self.logger.info("workflow_cancelled", execution_id=execution_id)
        if was_pending:
            self._finalize(execution, control)
            await self._persist(execution)
        return execution.status

    async def pause(self, execution_id: str) -> ExecutionStatus:
        execution = self.get_execution(execution_id)
        control = self._control(execution_id)
        self._transition(execution, ExecutionStatus.PAUSED)
        control.resume_event.clear()
        self.logger.info("workflow_paused", execution_id=execution_id)
        await self._persist(execution)
        return execution.status

    async def resume(self, execution_id: str) -> ExecutionStatus:
        execution = self.get_execution(execution_id)
        control = self._control(execution_id)
        self._transition(execution, ExecutionStatus.RUNNING)
        control.resume_event.set()
        self.logger.info("workflow_resumed", execution_id=execution_id)
        await self._persist(execution)
        return execution.status

    def dry_run(
        self,
        definition: Union[Dict[str, Any], WorkflowDefinition],
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Validate a definition and describe the run without invoking anything."""
        loaded = load_workflow_definition(definition)
        validate_workflow_input(loaded, payload or {})
        issues: List[str] = []
        for node in loaded.nodes:
            if node.kind in (NodeKind.CONDITION, NodeKind.PARALLEL) or not node.type:
                continue
            if node.type not in self.registry.available_types():
                issues.append(f"node '{node.id}': unknown agent type '{node.type}'")
                continue
            result = self.registry.validate(node.type, node.config)
            issues.extend(f"node '{node.id}': {message}" for message in result.messages)
        estimated_cost = sum(
            float(node.config.get("estimated_cost", 0) or 0) for node in loaded.nodes
        )
        return {
            "workflow_id": loaded.id,
            "valid": not issues,
            "issues": issues,
            "node_count": len(loaded.nodes),
            "planned_order": self._planned_order(loaded),
            "agent_types": sorted({node.type for node in loaded.nodes if node.type}),
            "estimated_cost": estimated_cost,
        }

    # ------------------------------------------------------------------
    # Driving an execution
    # ------------------------------------------------------------------

    def _control(self, execution_id: str) -> _ExecutionControl:
        with self._lock:
            control = self._controls.get(execution_id)
        if control is None:
            raise ExecutionNotFound(
                f"execution {execution_id} not found", detail={"execution_id": execution_id}
            )
        return control

    def _transition(self, execution: WorkflowExecution, target: ExecutionStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[execution.status]:
            raise InvalidStatusTransition(
                f"cannot move execution from {execution.status.value} to {target.value}",
                detail={
                    "execution_id": execution.id,
                    "from": execution.status.value,
                    "to": target.value,
                },
            )
        execution.status = target

    def _remaining_ms(self, execution: WorkflowExecution, control: _ExecutionControl) -> float:
        elapsed_ms = (self._clock() - control.started) * 1000 - control.paused_ms
        return (execution.timeout_ms or self.workflow_timeout_ms) - elapsed_ms

    def _append_trace(
        self,
        workflow_trace: List[Dict[str, Any]],
        entry: Dict[str, Any],
        max_entries: int = MAX_TRACE_ENTRIES,
    ) -> None:
        workflow_trace.append(entry)
        if len(workflow_trace) > max_entries:
            del workflow_trace[0 : len(workflow_trace) - max_entries]

    async def _drive(self, execution: WorkflowExecution, control: _ExecutionControl) -> None:
        set_correlation_id(execution.id)
        self._transition(execution, ExecutionStatus.RUNNING)
        execution.started_at = time.time()
        control.started = self._clock()
        self.logger.info(
            "workflow_started", execution_id=execution.id, workflow_id=execution.workflow_id
        )
        try:
            await self._traverse(execution, control)
        except ExecutionCancelled:
            if not execution.terminal:
                self._transition(execution, ExecutionStatus.CANCELLED)
        except WorkflowTimeout as exc:
            self._fail(execution, None, exc.error_code, exc.message, recoverable=False)
        finally:
            self._finalize(execution, control)
            log_workflow_trace(execution.trace, self.logger)
            self.logger.info(
                "workflow_finished",
                execution_id=execution.id,
                status=execution.status.value,
                executed=len(execution.executed_nodes),
                errors=len(execution.errors),
                total_cost=execution.metrics.total_cost,
            )
            await self._persist(execution)

    def _finalize(self, execution: WorkflowExecution, control: _ExecutionControl) -> None:
        for node_id, state in execution.node_states.items():
            if not state.terminal:
                execution.node_states[node_id] = NodeState.SKIPPED
        execution.frontier = []
        execution.ended_at = time.time()
        started = execution.started_at or execution.ended_at
        execution.metrics.finalize((execution.ended_at - started) * 1000)

    def _fail(
        self,
        execution: WorkflowExecution,
        node_id: Optional[str],
        code: str,
        message: str,
        *,
        recoverable: bool,
    ) -> None:
        if execution.terminal:
            return
        if node_id is None:
            execution.errors.append(
                ExecutionError(node_id=None, code=code, message=message, recoverable=recoverable)
            )
        self._transition(execution, ExecutionStatus.FAILED)
        self.logger.error(
            "workflow_failed",
            execution_id=execution.id,
            node_id=node_id,
            error_code=code,
            message=message,
        )

    async def _wait_any(self, *events: asyncio.Event, timeout: Optional[float] = None) -> None:
        waiters = [asyncio.ensure_future(event.wait()) for event in events]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _checkpoint(self, execution: WorkflowExecution, control: _ExecutionControl) -> None:
        if control.cancel_event.is_set():
            raise ExecutionCancelled("execution cancelled")
        if not control.resume_event.is_set():
            paused_at = self._clock()
            await self._wait_any(control.resume_event, control.cancel_event)
            control.paused_ms += (self._clock() - paused_at) * 1000
            if control.cancel_event.is_set():
                raise ExecutionCancelled("execution cancelled")
        if self._remaining_ms(execution, control) <= 0:
            raise WorkflowTimeout(
                f"workflow exceeded {execution.timeout_ms}ms",
                detail={"execution_id": execution.id},
            )

    def _ready_nodes(self, execution: WorkflowExecution, control: _ExecutionControl) -> List[str]:
        definition = control.definition
        children = definition.parallel_children()
        states = execution.node_states

        # Settle skips first: a node whose inbound edges are all resolved and
        # inactive can never run, and its own outgoing edges go inactive.
        changed = True
        while changed:
            changed = False
            for node in definition.nodes:
                if states[node.id] != NodeState.PENDING or node.id in children:
                    continue
                if node.id == definition.entry or node.id in control.forced:
                    continue
                inbound = self._inbound(definition, node.id)
                if not inbound:
                    continue
                if all(states[definition.edges[i].source].terminal for i in inbound):
                    if not any(control.edge_active.get(i, False) for i in inbound):
                        states[node.id] = NodeState.SKIPPED
                        self._set_outgoing(definition, control, node.id, lambda _e: False)
                        self._append_trace(
                            execution.trace, {"node": node.id, "status": "skipped"}
                        )
                        changed = True

        ready: List[str] = []
        for node in definition.nodes:
            if states[node.id] != NodeState.PENDING or node.id in children:
                continue
            if node.id == definition.entry or node.id in control.forced:
                ready.append(node.id)
                continue
            inbound = self._inbound(definition, node.id)
            if inbound and all(states[definition.edges[i].source].terminal for i in inbound):
                ready.append(node.id)
        return ready

    @staticmethod
    def _inbound(definition: WorkflowDefinition, node_id: str) -> List[int]:
        return [i for i, edge in enumerate(definition.edges) if edge.target == node_id]

    @staticmethod
    def _set_outgoing(
        definition: WorkflowDefinition,
        control: _ExecutionControl,
        node_id: str,
        rule: Callable[[WorkflowEdge], bool],
    ) -> None:
        for i, edge in enumerate(definition.edges):
            if edge.source == node_id:
                control.edge_active[i] = bool(rule(edge))

    async def _traverse(self, execution: WorkflowExecution, control: _ExecutionControl) -> None:
        definition = control.definition
        while True:
            await self._checkpoint(execution, control)
            ready = self._ready_nodes(execution, control)
            execution.frontier = list(ready)
            if not ready:
                break
            node = definition.node(ready[0])
            if node.id in control.forced:
                control.forced.remove(node.id)
            control.snapshot = WorkflowSnapshot.capture(node.id, execution.state, execution.outputs)
            outcome = await self._run_node(execution, control, node)
            if control.cancel_event.is_set():
                # Late results after cancellation are discarded
                raise ExecutionCancelled("execution cancelled")
            if self._apply_outcome(execution, control, node, outcome) == _Step.STOP:
                return
            await self._persist(execution)

        exits_done = [
            exit_id
            for exit_id in definition.exits
            if execution.node_states.get(exit_id) == NodeState.COMPLETED
        ]
        if exits_done:
            self._transition(execution, ExecutionStatus.COMPLETED)
        else:
            self._fail(
                execution,
                None,
                NO_EXIT_REACHED,
                "no exit node completed successfully",
                recoverable=False,
            )

    async def _run_node(
        self, execution: WorkflowExecution, control: _ExecutionControl, node: WorkflowNode
    ) -> NodeOutcome:
        execution.node_states[node.id] = NodeState.RUNNING
        execution.executed_nodes.append(node.id)
        if node.kind == NodeKind.CONDITION:
            outcome = self._run_condition(execution, control, node)
        elif node.kind == NodeKind.PARALLEL:
            outcome = await self._run_parallel(execution, control, node)
        else:
            outcome = await self._execute_node_with_retry(
                execution, control, node, execution.state
            )
            if outcome.success:
                outcome.state_updates = self._output_updates(node, outcome.output)
        self._record_metrics(execution, node, outcome)
        return outcome

    # ------------------------------------------------------------------
    # Node kinds
    # ------------------------------------------------------------------

    def _run_condition(
        self, execution: WorkflowExecution, control: _ExecutionControl, node: WorkflowNode
    ) -> NodeOutcome:
        started = time.perf_counter()
        state = execution.state
        predicate: Optional[bool] = None
        if node.conditions:
            predicate = evaluate_conditions(node.conditions, state)
        elif node.config.get("expression"):
            predicate = evaluate_expression(node.config["expression"], state)

        selected: Optional[WorkflowEdge] = None
        edges = control.definition.outgoing(node.id)
        for edge in edges:
            if edge.condition:
                if evaluate_expression(edge.condition, state, result=predicate):
                    selected = edge
                    break
            elif predicate is not None and edge.label in ("true", "false"):
                if (edge.label == "true") == predicate:
                    selected = edge
                    break
        if selected is None:
            selected = next(
                (
                    edge
                    for edge in edges
                    if not edge.condition and edge.label not in ("true", "false")
                ),
                None,
            )
        duration_ms = (time.perf_counter() - started) * 1000
        if selected is None:
            message = f"condition node '{node.id}' matched no outgoing edge"
            return NodeOutcome(
                node_id=node.id,
                success=False,
                error_code=NO_ROUTE,
                errors=[
                    ExecutionError(node_id=node.id, code=NO_ROUTE, message=message, recoverable=False)
                ],
                duration_ms=duration_ms,
            )
        return NodeOutcome(
            node_id=node.id,
            success=True,
            output={"result": predicate, "selected": selected.target},
            selected_edge=selected,
            duration_ms=duration_ms,
        )

    async def _run_parallel(
        self, execution: WorkflowExecution, control: _ExecutionControl, node: WorkflowNode
    ) -> NodeOutcome:
        definition = control.definition
        started = time.perf_counter()
        children = [definition.node(child_id) for child_id in node.children]
        # Every child sees the same pre-fan-out state
        base_state = copy.deepcopy(execution.state)
        for child in children:
            execution.node_states[child.id] = NodeState.RUNNING
            execution.executed_nodes.append(child.id)

        results = await asyncio.gather(
            *(
                self._execute_node_with_retry(execution, control, child, base_state)
                for child in children
            ),
            return_exceptions=True,
        )
        if control.cancel_event.is_set():
            raise ExecutionCancelled("execution cancelled")
        for item in results:
            if isinstance(item, (WorkflowTimeout, ExecutionCancelled)):
                raise item
            if isinstance(item, BaseException):
                raise item

        merged: Dict[str, Any] = {}
        written_by: Dict[str, str] = {}
        errors: List[ExecutionError] = []
        failed_code: Optional[str] = None
        conflict: Optional[StateConflict] = None
        outputs: Dict[str, Any] = {}
        # Every child that ran is settled before the join is judged
        for child, child_outcome in zip(children, results):
            self._record_metrics(execution, child, child_outcome)
            if not child_outcome.success:
                execution.node_states[child.id] = NodeState.FAILED
                errors.extend(child_outcome.errors)
                if failed_code is None or (
                    child_outcome.fatal and failed_code not in FATAL_ERROR_CODES
                ):
                    failed_code = child_outcome.error_code or NodeExecutionError.error_code
                continue
            execution.node_states[child.id] = NodeState.COMPLETED
            execution.outputs[child.id] = child_outcome.output
            outputs[child.id] = child_outcome.output
            for key, value in self._output_updates(child, child_outcome.output).items():
                if key in written_by:
                    if conflict is None:
                        conflict = StateConflict(
                            f"parallel children '{written_by[key]}' and '{child.id}' both wrote '{key}'",
                            detail={"key": key, "nodes": [written_by[key], child.id]},
                        )
                    continue
                written_by[key] = child.id
                merged[key] = value

        if conflict is not None:
            return NodeOutcome(
                node_id=node.id,
                success=False,
                output=outputs,
                error_code=conflict.error_code,
                errors=errors
                + [
                    ExecutionError(
                        node_id=node.id,
                        code=conflict.error_code,
                        message=conflict.message,
                        recoverable=False,
                    )
                ],
                duration_ms=(time.perf_counter() - started) * 1000,
            )

        outcome = NodeOutcome(
            node_id=node.id,
            success=failed_code is None,
            output=outputs,
            errors=errors,
            error_code=failed_code,
            duration_ms=(time.perf_counter() - started) * 1000,
            state_updates=merged,
        )
        return outcome

    async def _invoke(
        self,
        control: _ExecutionControl,
        executable: Any,
        context: AgentContext,
        timeout_ms: float,
    ) -> AgentResult:
        task = asyncio.ensure_future(executable.execute(context))
        cancel_waiter = asyncio.ensure_future(control.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_waiter},
                timeout=max(timeout_ms, 0) / 1000.0,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_waiter.cancel()
        if control.cancel_event.is_set():
            task.cancel()
            raise ExecutionCancelled("execution cancelled")
        if task in done:
            return task.result()
        task.cancel()
        raise asyncio.TimeoutError()

    async def _execute_node_with_retry(
        self,
        execution: WorkflowExecution,
        control: _ExecutionControl,
        node: WorkflowNode,
        state: Dict[str, Any],
    ) -> NodeOutcome:
        """Run one registry-backed node, retrying per its retry policy.

        ``max_attempts`` counts the first try. Backoff before attempt ``n+1``
        is ``backoff_ms * multiplier ** (n - 1)``, capped by the remaining
        workflow time, and is cut short by cancellation.
        """
        started = time.perf_counter()
        try:
            executable = self.registry.create(node.type or "", node.config)
        except RouteflowError as exc:
            self.logger.error(
                "workflow_node_unresolvable",
                node_id=node.id,
                type_name=node.type,
                error_code=exc.error_code,
            )
            return NodeOutcome(
                node_id=node.id,
                success=False,
                error_code=exc.error_code,
                errors=[
                    ExecutionError(
                        node_id=node.id, code=exc.error_code, message=exc.message, recoverable=False
                    )
                ],
                duration_ms=(time.perf_counter() - started) * 1000,
            )

        policy = node.retry
        max_attempts = max(1, policy.max_attempts) if policy else 1
        node_timeout_ms = node.timeout_ms or self.node_timeout_ms
        attempt = 0
        cost = 0.0
        while True:
            attempt += 1
            remaining_ms = self._remaining_ms(execution, control)
            if remaining_ms <= 0:
                raise WorkflowTimeout(
                    f"workflow exceeded {execution.timeout_ms}ms",
                    detail={"execution_id": execution.id, "node_id": node.id},
                )
            context = AgentContext(
                execution_id=execution.id,
                node_id=node.id,
                state=copy.deepcopy(state),
                config=dict(node.config),
                previous_outputs=copy.deepcopy(execution.outputs),
                metadata={
                    **execution.metadata,
                    "workflow_id": execution.workflow_id,
                    "attempt": attempt,
                },
            )
            try:
                result = await self._invoke(
                    control, executable, context, min(node_timeout_ms, remaining_ms)
                )
            except asyncio.TimeoutError:
                if self._remaining_ms(execution, control) <= 0:
                    raise WorkflowTimeout(
                        f"workflow exceeded {execution.timeout_ms}ms",
                        detail={"execution_id": execution.id, "node_id": node.id},
                    )
                self.logger.warning(
                    "workflow_node_timeout",
                    node=node.id,
                    attempt=attempt,
                    timeout_ms=node_timeout_ms,
                )
                result = AgentResult.failure(
                    f"node '{node.id}' timed out after {node_timeout_ms}ms",
                    code=NodeTimeout.error_code,
                    recoverable=policy is not None,
                )
            except RouteflowError as exc:
                if isinstance(exc, ExecutionCancelled):
                    raise
                result = AgentResult.failure(
                    exc.message, code=exc.error_code, recoverable=exc.recoverable
                )
            except Exception as exc:
                self.logger.error(
                    "workflow_node_exception", node=node.id, attempt=attempt, error=str(exc)
                )
                result = AgentResult.failure(
                    str(exc) or type(exc).__name__, code=NodeExecutionError.error_code
                )

            cost += result.cost
            if result.success:
                return NodeOutcome(
                    node_id=node.id,
                    success=True,
                    output=result.output,
                    result=result,
                    attempts=attempt,
                    duration_ms=(time.perf_counter() - started) * 1000,
                    cost=cost,
                )

            code = result.error_code or NodeExecutionError.error_code
            retryable = (
                policy is not None
                and attempt < max_attempts
                and code not in FATAL_ERROR_CODES
                and policy.is_retryable(code, result.recoverable)
            )
            if not retryable:
                if attempt > 1:
                    self.logger.error(
                        "workflow_node_retries_exhausted",
                        node=node.id,
                        attempts=attempt,
                        error_code=code,
                    )
                return NodeOutcome(
                    node_id=node.id,
                    success=False,
                    result=result,
                    error_code=code,
                    errors=[
                        ExecutionError(
                            node_id=node.id,
                            code=code,
                            message=result.error_message or "node failed",
                            recoverable=result.recoverable,
                            attempts=attempt,
                        )
                    ],
                    attempts=attempt,
                    duration_ms=(time.perf_counter() - started) * 1000,
                    cost=cost,
                )

            delay_ms = min(policy.delay_ms(attempt), self._remaining_ms(execution, control) - 1)
            self.logger.info(
                "workflow_node_backoff",
                node=node.id,
                attempt=attempt,
                error_code=code,
                backoff_ms=max(delay_ms, 0),
            )
            if control.cancel_event.is_set():
                raise ExecutionCancelled("execution cancelled")
            if delay_ms > 0:
                await self._wait_any(control.cancel_event, timeout=delay_ms / 1000.0)
                if control.cancel_event.is_set():
                    raise ExecutionCancelled("execution cancelled")

    # ------------------------------------------------------------------
    # Applying results
    # ------------------------------------------------------------------

    @staticmethod
    def _output_updates(node: WorkflowNode, output: Any) -> Dict[str, Any]:
        """State keys a node's output writes: declared outputs, else the node id."""
        if not node.outputs:
            return {node.id: output}
        if isinstance(output, dict):
            if len(node.outputs) == 1 and node.outputs[0] not in output:
                return {node.outputs[0]: output}
            return {name: output[name] for name in node.outputs if name in output}
        return {node.outputs[0]: output}

    def _record_metrics(
        self, execution: WorkflowExecution, node: WorkflowNode, outcome: NodeOutcome
    ) -> None:
        result = outcome.result
        execution.metrics.record(
            NodeMetrics(
                node_id=node.id,
                duration_ms=outcome.duration_ms,
                cost=outcome.cost,
                success=outcome.success,
                attempts=outcome.attempts,
                tokens=result.tokens_used if result else 0,
                images=result.images_generated if result else 0,
                embeddings=result.embeddings_created if result else 0,
                input_size=_json_size(node.config),
                output_size=_json_size(outcome.output) if outcome.success else 0,
            )
        )
        self._append_trace(
            execution.trace,
            {
                "node": node.id,
                "kind": node.kind.value,
                "status": "completed" if outcome.success else "failed",
                "attempts": outcome.attempts,
                "duration_ms": round(outcome.duration_ms, 3),
                "error_code": outcome.error_code,
            },
        )

    def _apply_outcome(
        self,
        execution: WorkflowExecution,
        control: _ExecutionControl,
        node: WorkflowNode,
        outcome: NodeOutcome,
    ) -> _Step:
        definition = control.definition
        execution.errors.extend(outcome.errors)

        if outcome.success:
            execution.node_states[node.id] = NodeState.COMPLETED
            execution.outputs[node.id] = outcome.output
            execution.state.update(copy.deepcopy(outcome.state_updates))
            if node.kind == NodeKind.CONDITION:
                selected = outcome.selected_edge
                self._set_outgoing(definition, control, node.id, lambda edge: edge is selected)
            else:
                state = execution.state
                self._set_outgoing(
                    definition,
                    control,
                    node.id,
                    lambda edge: evaluate_expression(edge.condition, state, result=outcome.output),
                )
            return _Step.CONTINUE

        execution.node_states[node.id] = NodeState.FAILED
        code = outcome.error_code or NodeExecutionError.error_code
        message = outcome.errors[-1].message if outcome.errors else "node failed"
        # Partial parallel results still land in shared state
        if outcome.state_updates:
            execution.state.update(copy.deepcopy(outcome.state_updates))

        if outcome.fatal:
            self._mark_unrecovered(outcome)
            self._fail(execution, node.id, code, message, recoverable=False)
            return _Step.STOP

        handling = definition.error_handling
        if handling.max_errors is not None and len(execution.errors) > handling.max_errors:
            self._mark_unrecovered(outcome)
            self._fail(
                execution,
                None,
                "max_errors_exceeded",
                f"{len(execution.errors)} errors exceed the limit of {handling.max_errors}",
                recoverable=False,
            )
            return _Step.STOP

        strategy = handling.strategy
        if strategy == ErrorStrategy.CONTINUE:
            self._set_outgoing(definition, control, node.id, lambda edge: not edge.condition)
            execution.warnings.append(f"node '{node.id}' failed ({code}); continuing")
            return _Step.CONTINUE

        if strategy == ErrorStrategy.RETRY:
            used = control.workflow_retries.get(node.id, 0)
            if used < handling.max_workflow_retries and control.snapshot is not None:
                control.workflow_retries[node.id] = used + 1
                execution.state = copy.deepcopy(control.snapshot.state)
                execution.outputs = copy.deepcopy(control.snapshot.outputs)
                execution.node_states[node.id] = NodeState.PENDING
                for child_id in node.children:
                    execution.node_states[child_id] = NodeState.PENDING
                if node.id != definition.entry:
                    # Re-admit the node ahead of its successors
                    control.forced.append(node.id)
                execution.warnings.append(
                    f"node '{node.id}' failed ({code}); workflow retry {used + 1}"
                )
                self.logger.info(
                    "workflow_node_requeued", node=node.id, workflow_retry=used + 1
                )
                return _Step.CONTINUE

        if strategy == ErrorStrategy.FALLBACK:
            fallback = handling.fallback_node
            if (
                fallback
                and not control.fallback_used
                and fallback != node.id
                and execution.node_states.get(fallback) == NodeState.PENDING
            ):
                control.fallback_used = True
                control.forced.append(fallback)
                self._set_outgoing(definition, control, node.id, lambda _e: False)
                execution.warnings.append(
                    f"node '{node.id}' failed ({code}); redirecting to '{fallback}'"
                )
                return _Step.CONTINUE

        self._mark_unrecovered(outcome)
        self._fail(execution, node.id, code, message, recoverable=False)
        return _Step.STOP

    @staticmethod
    def _mark_unrecovered(outcome: NodeOutcome) -> None:
        """A failure that ends the execution was not recovered, whatever the agent reported."""
        for error in outcome.errors:
            error.recoverable = False

    async def _persist(self, execution: WorkflowExecution) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(
                f"{STATE_CACHE_PREFIX}{execution.id}",
                execution.to_dict(),
                self.state_ttl_seconds,
            )
        except Exception as exc:
            self.logger.warning(
                "workflow_state_persist_failed", execution_id=execution.id, error=str(exc)
            )

    @staticmethod
    def _planned_order(definition: WorkflowDefinition) -> List[str]:
        """Topological visit order, declaration order among peers."""
        children = definition.parallel_children()
        indegree = {
            node.id: 0 for node in definition.nodes if node.id not in children
        }
        for edge in definition.edges:
            if edge.target in indegree:
                indegree[edge.target] += 1
        order: List[str] = []
        queue = [node.id for node in definition.nodes if indegree.get(node.id) == 0]
        while queue:
            node_id = queue.pop(0)
            order.append(node_id)
            node = definition.node(node_id)
            order.extend(node.children)
            for edge in definition.outgoing(node_id):
                if edge.target not in indegree:
                    continue
                indegree[edge.target] -= 1
                if indegree[edge.target] == 0:
                    queue.append(edge.target)
        return order
