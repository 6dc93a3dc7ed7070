"""
Execution Engine - runs an ExecutionPlan as concurrent node tasks.

A single coordinating coroutine per run tracks every edge of the flow as
pending, delivered, skipped or failed. A node becomes ready once all of
its incoming edges are resolved; it then runs as its own asyncio task
with a timeout per attempt and fixed-delay retries.

After the last attempt a failure escalates exactly once:
- onto the node's error port when an edge reads it; the run continues
- otherwise to the run, which cancels in-flight nodes and stops dispatch

A required input that receives no value makes the node skipped, and the
skip cascades along its outgoing edges.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import jsonschema

from agent_graph.config import Settings, get_settings
from agent_graph.dispatch import OperationDispatcher
from agent_graph.errors import (
    NodeCancelledError,
    NodeError,
    NodeInvocationError,
    NodeTimeoutError,
    OutputSchemaError,
    RoutedError,
    StateError,
    StructuredError,
    to_structured,
)
from agent_graph.graph.builder import ExecutionPlan
from agent_graph.graph.expressions import ExpressionError, apply_transform, evaluate_condition
from agent_graph.ir.models import INPUT_BOUNDARY, OUTPUT_BOUNDARY, Node
from agent_graph.ir.types import PortType, coerce, matches_type
from agent_graph.observability import get_logger, with_trace_context
from agent_graph.state import Context, StateBackend, StateManager, get_state_backend

from .results import NodeExecutionRecord, NodeStatus, RunResult, RunStatus

logger = get_logger(__name__)

# backoff(attempt, base_delay) -> seconds to wait before the next attempt
BackoffPolicy = Callable[[int, float], float]


def fixed_backoff(attempt: int, base: float) -> float:
    """Wait the same delay before every retry."""
    return base


def _json_instance(value: Any) -> Any:
    """Copy of value with tuples as lists, the form jsonschema treats as arrays."""
    if isinstance(value, (list, tuple)):
        return [_json_instance(v) for v in value]
    if isinstance(value, Mapping):
        return {k: _json_instance(v) for k, v in value.items()}
    return value


class EdgeState(str, Enum):
    """Resolution of one edge within a run."""
    PENDING = "pending"
    DELIVERED = "delivered"
    SKIPPED = "skipped"
    FAILED = "failed"  # condition or inline transform raised


@dataclass
class NodeOutcome:
    """What a node task produced."""
    node_id: str
    status: NodeStatus
    raw: Any = None
    ports: Dict[str, Any] = field(default_factory=dict)
    error: Optional[NodeError] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: float = 0


class _RunState:
    """Bookkeeping for one run. Only the coordinator mutates it."""

    def __init__(self, plan: ExecutionPlan, context: Context, run_id: str):
        self.plan = plan
        self.context = context
        self.run_id = run_id
        self.status = RunStatus.RUNNING
        self.error: Optional[StructuredError] = None

        self.edges = plan.flow.edges
        self.edge_state: List[EdgeState] = [EdgeState.PENDING] * len(self.edges)
        self.edge_value: List[Any] = [None] * len(self.edges)
        self.edge_error: List[Optional[ExpressionError]] = [None] * len(self.edges)

        # Edge indexes in document order
        self.incoming: Dict[str, List[int]] = {n: [] for n in plan.flow.nodes}
        self.outgoing: Dict[str, List[int]] = {n: [] for n in plan.flow.nodes}
        self.input_edges: List[int] = []
        self.output_edges: List[int] = []
        for i, edge in enumerate(self.edges):
            if edge.source_node == INPUT_BOUNDARY:
                self.input_edges.append(i)
            else:
                self.outgoing[edge.source_node].append(i)
            if edge.target_node == OUTPUT_BOUNDARY:
                self.output_edges.append(i)
            else:
                self.incoming[edge.target_node].append(i)

        self.node_status: Dict[str, NodeStatus] = {n: NodeStatus.PENDING for n in plan.flow.nodes}
        self.attempts: Dict[str, int] = {}
        self.started_at: Dict[str, datetime] = {}
        self.outputs: Dict[str, Any] = {}
        self.output: Dict[str, Any] = {}
        self.trace: List[NodeExecutionRecord] = []

    def extra(self, node_id: Optional[str] = None, attempt: Optional[int] = None, **kwargs: Any) -> Dict[str, Any]:
        return with_trace_context(
            logger,
            trace_id=self.context.trace_id,
            run_id=self.run_id,
            flow=self.plan.name,
            node_id=node_id,
            attempt=attempt,
            **kwargs,
        )

    def ready_nodes(self) -> List[str]:
        """Pending nodes whose incoming edges are all resolved, by layer then id."""
        ready = [
            node_id
            for node_id, status in self.node_status.items()
            if status == NodeStatus.PENDING
            and all(self.edge_state[i] != EdgeState.PENDING for i in self.incoming[node_id])
        ]
        return sorted(ready, key=lambda n: (self.plan.layer_of(n), n))

    def record(self, outcome: NodeOutcome, status: NodeStatus, error: Optional[StructuredError] = None) -> None:
        self.node_status[outcome.node_id] = status
        self.trace.append(NodeExecutionRecord(
            node_id=outcome.node_id,
            status=status,
            attempts=outcome.attempts,
            started_at=outcome.started_at,
            finished_at=outcome.finished_at,
            duration_ms=outcome.duration_ms,
            error=error,
        ))

    def fail(self, error: StructuredError) -> None:
        if self.status == RunStatus.RUNNING:
            self.status = RunStatus.FAILED
            self.error = error

    def abort(self, error_type: str, message: str) -> None:
        if self.status == RunStatus.RUNNING:
            self.status = RunStatus.ABORTED
            self.error = StructuredError(error_type=error_type, message=message)


class ExecutionEngine:
    """
    Runs execution plans.

    Usage:
        engine = ExecutionEngine(dispatcher=OperationDispatcher(registry=registry))
        result = await engine.run(plan, new_context(request), {"question": "hi"})
    """

    def __init__(
        self,
        dispatcher: Optional[OperationDispatcher] = None,
        settings: Optional[Settings] = None,
        backoff: Optional[BackoffPolicy] = None,
        max_concurrency: Optional[int] = None,
        state_backend: Optional[StateBackend] = None,
        state_backends: Optional[Mapping[str, StateBackend]] = None,
    ):
        """
        Initialize engine.

        Args:
            dispatcher: Operation dispatcher (defaults to one over the global registry)
            settings: Settings for policy defaults (defaults to get_settings())
            backoff: Retry delay policy overriding the fixed delay
            max_concurrency: Global bound on in-flight node tasks
            state_backend: Session-scope backend; defaults to the process-wide one
            state_backends: Named session backends selectable by state.backend
        """
        self._settings = settings or get_settings()
        self._dispatcher = dispatcher or OperationDispatcher(
            allow_code_source=self._settings.allow_code_source,
        )
        self._backoff = backoff or fixed_backoff
        self._max_concurrency = max_concurrency or self._settings.max_concurrency
        self._state_backend = state_backend or get_state_backend()
        self._state_backends = dict(state_backends or {})

    @property
    def dispatcher(self) -> OperationDispatcher:
        return self._dispatcher

    async def run(
        self,
        plan: ExecutionPlan,
        context: Context,
        initial_inputs: Optional[Mapping[str, Any]] = None,
        *,
        deadline: Optional[float] = None,
        abort_event: Optional[asyncio.Event] = None,
    ) -> RunResult:
        """
        Execute a plan.

        Args:
            plan: Plan from build()
            context: Run context from new_context()
            initial_inputs: Values for the '_input' boundary ports
            deadline: Seconds before the run is aborted (defaults to settings)
            abort_event: Setting this event aborts the run

        Returns:
            RunResult in a terminal state
        """
        run = _RunState(plan, context, uuid.uuid4().hex)
        state = StateManager(
            context,
            backend=self._state_backend,
            backends=self._state_backends,
            default_ttl=self._settings.session_default_ttl_s,
        )
        start_time = time.perf_counter()
        logger.info(f"Run started: {plan.name}", extra=run.extra())

        try:
            missing = [
                name for name in plan.flow.context_requirements.requires
                if not context.has(name)
            ]
            if missing:
                run.fail(StructuredError(
                    error_type="ContextRequirementError",
                    message=f"Context is missing required fields: {', '.join(missing)}",
                ))
            else:
                self._bind_inputs(run, initial_inputs or {})
                await self._coordinate(run, state, deadline, abort_event)
            self._finish(run)
        finally:
            state.close()

        result = RunResult(
            run_id=run.run_id,
            flow_name=plan.name,
            status=run.status,
            outputs=run.outputs,
            output=run.output,
            error=run.error,
            trace=run.trace,
            node_status=dict(run.node_status),
            duration_ms=(time.perf_counter() - start_time) * 1000,
        )
        if result.is_success:
            logger.info(f"Run succeeded: {plan.name}", extra=run.extra(duration_ms=result.duration_ms))
        else:
            logger.error(
                f"Run {run.status.value}: {run.error.message if run.error else 'unknown error'}",
                extra=run.extra(
                    node_id=run.error.node_id if run.error else None,
                    error_type=run.error.error_type if run.error else None,
                ),
            )
        return result

    # ------------------------------------------------------------------
    # Coordination
    # ------------------------------------------------------------------

    async def _coordinate(
        self,
        run: _RunState,
        state: StateManager,
        deadline: Optional[float],
        abort_event: Optional[asyncio.Event],
    ) -> None:
        loop = asyncio.get_running_loop()
        if deadline is None:
            deadline = self._settings.run_deadline_s
        expires_at = loop.time() + deadline if deadline is not None else None

        running: Dict[asyncio.Task, str] = {}
        abort_waiter = asyncio.ensure_future(abort_event.wait()) if abort_event is not None else None

        try:
            while run.status == RunStatus.RUNNING:
                if abort_event is not None and abort_event.is_set():
                    run.abort("RunAborted", "Run aborted by caller")
                    break

                self._dispatch_ready(run, state, running)
                if run.status != RunStatus.RUNNING or not running:
                    break

                waiters = set(running)
                if abort_waiter is not None:
                    waiters.add(abort_waiter)
                timeout = None
                if expires_at is not None:
                    timeout = max(0.0, expires_at - loop.time())

                done, _ = await asyncio.wait(
                    waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
                finished = sorted((t for t in done if t in running), key=lambda t: running[t])
                for task in finished:
                    running.pop(task)
                    self._complete(run, task.result())

                if abort_waiter is not None and abort_waiter in done:
                    run.abort("RunAborted", "Run aborted by caller")
                elif not done:
                    run.abort("DeadlineExceeded", f"Run deadline of {deadline:g}s exceeded")
        except asyncio.CancelledError:
            run.abort("RunAborted", "Run cancelled")
            raise
        finally:
            if abort_waiter is not None:
                abort_waiter.cancel()
            await self._cancel_running(run, running)

    def _dispatch_ready(
        self,
        run: _RunState,
        state: StateManager,
        running: Dict[asyncio.Task, str],
    ) -> None:
        """Start ready nodes; resolve skips until nothing changes."""
        progressed = True
        while progressed and run.status == RunStatus.RUNNING:
            progressed = False
            for node_id in run.ready_nodes():
                if run.status != RunStatus.RUNNING:
                    return
                inputs, failure = self._collect_inputs(run, node_id)
                if failure is not None:
                    error = NodeInvocationError(str(failure), node_id=node_id)
                    error.__cause__ = failure
                    self._complete(run, NodeOutcome(node_id, NodeStatus.FAILED, error=error))
                    progressed = True
                    continue
                if inputs is None:
                    self._skip_node(run, node_id)
                    progressed = True
                    continue
                if not self._can_start(run, node_id, running):
                    continue

                run.node_status[node_id] = NodeStatus.RUNNING
                task = asyncio.create_task(
                    self._execute_node(run, state, node_id, inputs),
                    name=f"{run.plan.name}:{node_id}",
                )
                running[task] = node_id

    def _can_start(self, run: _RunState, node_id: str, running: Dict[asyncio.Task, str]) -> bool:
        """
        Check concurrency limits.

        The global bound applies to every node; a node's own cap applies
        while it is starting or in flight.
        """
        limit = self._max_concurrency
        for other in (node_id, *running.values()):
            cap = run.plan.get_node(other).runtime_policy.max_concurrency
            if cap is not None:
                limit = min(limit, cap)
        return len(running) < limit

    async def _cancel_running(self, run: _RunState, running: Dict[asyncio.Task, str]) -> None:
        if not running:
            return
        tasks = list(running.items())
        for task, _ in tasks:
            task.cancel()
        results = await asyncio.gather(*(t for t, _ in tasks), return_exceptions=True)
        running.clear()

        for (_, node_id), result in zip(tasks, results):
            if isinstance(result, NodeOutcome):
                self._complete(run, result)
                continue
            error = NodeCancelledError(
                f"Node cancelled: {run.error.message if run.error else 'run ended'}",
                node_id=node_id,
            )
            attempts = run.attempts.get(node_id, 0)
            run.record(
                NodeOutcome(
                    node_id,
                    NodeStatus.CANCELLED,
                    attempts=attempts,
                    started_at=run.started_at.get(node_id),
                    finished_at=datetime.now(timezone.utc),
                ),
                NodeStatus.CANCELLED,
                to_structured(error, node_id, attempts),
            )
            logger.warning("Node cancelled", extra=run.extra(node_id, attempts))

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def _bind_inputs(self, run: _RunState, inputs: Mapping[str, Any]) -> None:
        """Resolve edges fed by the '_input' boundary."""
        for i in run.input_edges:
            port = run.edges[i].source_port
            if port in inputs:
                self._deliver(run, i, inputs[port], None)
            else:
                run.edge_state[i] = EdgeState.SKIPPED

    def _deliver(self, run: _RunState, index: int, value: Any, source_type: Optional[PortType]) -> None:
        """Evaluate an edge's condition and transform, then deliver or skip."""
        edge = run.edges[index]
        names = run.context.template_values()
        try:
            if edge.condition is not None and not evaluate_condition(
                edge.condition, value, edge.source_port, names
            ):
                run.edge_state[index] = EdgeState.SKIPPED
                logger.debug(f"Edge condition false: {edge.label}", extra=run.extra())
                return
            if edge.inline_transform is not None:
                value = apply_transform(edge.inline_transform, value, edge.source_port, names)
        except ExpressionError as e:
            run.edge_state[index] = EdgeState.FAILED
            run.edge_error[index] = e
            logger.warning(f"Edge expression failed on {edge.label}: {e}", extra=run.extra())
            return

        target_type = None
        if edge.target_node != OUTPUT_BOUNDARY:
            target_type = run.plan.get_node(edge.target_node).input_port(edge.target_port).type
        if source_type is not None and matches_type(value, source_type):
            value = coerce(value, source_type, target_type)

        run.edge_state[index] = EdgeState.DELIVERED
        run.edge_value[index] = value

    def _skip_edges(self, run: _RunState, node_id: str) -> None:
        for i in run.outgoing[node_id]:
            run.edge_state[i] = EdgeState.SKIPPED

    def _collect_inputs(
        self, run: _RunState, node_id: str
    ) -> Tuple[Optional[Dict[str, Any]], Optional[ExpressionError]]:
        """
        Gather input values for a ready node.

        The first delivered edge into a port, in document order, wins.

        Returns:
            (inputs, None) to run the node, (None, None) to skip it, or
            (None, error) when an incoming edge expression failed
        """
        node = run.plan.get_node(node_id)
        values: Dict[str, Any] = {}
        for i in run.incoming[node_id]:
            if run.edge_state[i] == EdgeState.FAILED:
                return None, run.edge_error[i]
            if run.edge_state[i] == EdgeState.DELIVERED:
                values.setdefault(run.edges[i].target_port, run.edge_value[i])

        missing = [p.name for p in node.input_ports if not p.optional and p.name not in values]
        if missing:
            logger.info(
                f"Skipping node, no value for required inputs {missing}",
                extra=run.extra(node_id),
            )
            return None, None
        return values, None

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _skip_node(self, run: _RunState, node_id: str) -> None:
        now = datetime.now(timezone.utc)
        run.record(NodeOutcome(node_id, NodeStatus.SKIPPED, started_at=now, finished_at=now), NodeStatus.SKIPPED)
        self._skip_edges(run, node_id)

    async def _execute_node(
        self,
        run: _RunState,
        state: StateManager,
        node_id: str,
        inputs: Dict[str, Any],
    ) -> NodeOutcome:
        """Run one node: attempts with timeout, retries with backoff."""
        node = run.plan.get_node(node_id)
        policy = node.runtime_policy
        retries = policy.retries or self._settings.default_retries
        timeout = policy.timeout if policy.timeout is not None else self._settings.default_node_timeout_s
        delay = (
            policy.retry_backoff if policy.retry_backoff is not None
            else self._settings.default_retry_backoff_s
        )

        started_at = datetime.now(timezone.utc)
        run.started_at[node_id] = started_at
        start_time = time.perf_counter()
        error: Optional[NodeError] = None
        attempt = 0

        for attempt in range(1, retries + 1):
            run.attempts[node_id] = attempt
            logger.debug("Node attempt started", extra=run.extra(node_id, attempt))
            try:
                raw, ports = await self._attempt(run, state, node, inputs, timeout)
            except NodeError as e:
                e.node_id = node_id
                e.attempt = attempt
                error = e
                logger.warning(
                    f"Node attempt failed: {type(e).__name__}: {e}",
                    extra=run.extra(node_id, attempt),
                )
                if not e.retryable or attempt == retries:
                    break
                await asyncio.sleep(self._backoff(attempt, delay))
                continue

            return NodeOutcome(
                node_id,
                NodeStatus.SUCCEEDED,
                raw=raw,
                ports=ports,
                attempts=attempt,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                duration_ms=(time.perf_counter() - start_time) * 1000,
            )

        return NodeOutcome(
            node_id,
            NodeStatus.FAILED,
            error=error,
            attempts=attempt,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            duration_ms=(time.perf_counter() - start_time) * 1000,
        )

    async def _attempt(
        self,
        run: _RunState,
        state: StateManager,
        node: Node,
        inputs: Dict[str, Any],
        timeout: float,
    ) -> Tuple[Any, Dict[str, Any]]:
        capability = self._dispatcher.resolve(node.transform)
        try:
            handle = state.state_for(node, inputs)
        except StateError as e:
            raise NodeInvocationError(str(e)) from e

        try:
            raw = await asyncio.wait_for(
                self._dispatcher.invoke(capability, inputs, run.context, handle),
                timeout,
            )
        except asyncio.TimeoutError as e:
            raise NodeTimeoutError(f"Attempt exceeded timeout of {timeout:g}s") from e
        return raw, self._validate_output(node, raw)

    def _validate_output(self, node: Node, raw: Any) -> Dict[str, Any]:
        """
        Split a produced value into port values and check each port.

        A node with one output port produces that port's value directly;
        with several ports it must produce a mapping keyed by port name.

        Raises:
            OutputSchemaError: If a port is missing, mistyped or fails its schema
        """
        ports = node.output_ports
        if not ports:
            return {}
        if len(ports) == 1:
            values = {ports[0].name: raw}
        else:
            if not isinstance(raw, Mapping):
                raise OutputSchemaError(
                    f"Output must be a mapping of ports {[p.name for p in ports]}, "
                    f"got {type(raw).__name__}"
                )
            values = {p.name: raw.get(p.name) for p in ports}

        for port in ports:
            value = values.get(port.name)
            if value is None:
                if port.optional:
                    values.pop(port.name, None)
                    continue
                raise OutputSchemaError(f"Output port {port.name!r} produced no value")
            if isinstance(value, tuple):
                value = values[port.name] = list(value)
            if not matches_type(value, port.type):
                raise OutputSchemaError(
                    f"Output port {port.name!r} expects {port.type.value}, "
                    f"got {type(value).__name__}"
                )
            if port.validation_schema is not None:
                try:
                    jsonschema.validate(instance=_json_instance(value), schema=port.validation_schema)
                except jsonschema.ValidationError as e:
                    raise OutputSchemaError(
                        f"Output port {port.name!r} failed schema: {e.message}"
                    ) from e
        return values

    def _complete(self, run: _RunState, outcome: NodeOutcome) -> None:
        """Record a finished node and resolve its outgoing edges."""
        node_id = outcome.node_id
        node = run.plan.get_node(node_id)

        if outcome.status == NodeStatus.SUCCEEDED:
            run.outputs[node_id] = outcome.raw
            run.record(outcome, NodeStatus.SUCCEEDED)
            logger.info(
                f"Node succeeded after {outcome.attempts} attempt(s)",
                extra=run.extra(node_id, outcome.attempts, duration_ms=outcome.duration_ms),
            )
            if run.status != RunStatus.RUNNING:
                return
            for i in run.outgoing[node_id]:
                port = run.edges[i].source_port
                if node.is_error_port(port) or port not in outcome.ports:
                    run.edge_state[i] = EdgeState.SKIPPED
                else:
                    self._deliver(run, i, outcome.ports[port], node.output_port(port).type)
            return

        error = to_structured(outcome.error, node_id, outcome.attempts)

        if run.status == RunStatus.RUNNING and run.plan.error_port_wired(node_id):
            run.record(outcome, NodeStatus.ROUTED, error)
            logger.warning(
                f"Node failed, routing error to port '{node.error_port.name}': {error.message}",
                extra=run.extra(node_id, outcome.attempts),
            )
            routed = RoutedError(**error.model_dump())
            value = routed.message if node.error_port.type == PortType.STRING else routed.model_dump()
            for i in run.outgoing[node_id]:
                if node.is_error_port(run.edges[i].source_port):
                    self._deliver(run, i, value, node.error_port.type)
                else:
                    run.edge_state[i] = EdgeState.SKIPPED
            return

        run.record(outcome, NodeStatus.FAILED, error)
        logger.error(
            f"Node failed: {error.error_type}: {error.message}",
            extra=run.extra(node_id, outcome.attempts),
        )
        run.fail(error)

    def _finish(self, run: _RunState) -> None:
        """Collect '_output' values and settle the terminal status."""
        for i in run.output_edges:
            if run.edge_state[i] == EdgeState.DELIVERED:
                run.output.setdefault(run.edges[i].target_port, run.edge_value[i])
            elif run.edge_state[i] == EdgeState.FAILED and run.status == RunStatus.RUNNING:
                run.fail(to_structured(run.edge_error[i]))

        if run.status != RunStatus.RUNNING:
            return
        if run.output_edges and not run.output:
            run.fail(StructuredError(
                error_type="NoOutputError",
                message="No value reached the '_output' boundary",
            ))
            return
        run.status = RunStatus.SUCCEEDED


__all__ = [
    "BackoffPolicy",
    "EdgeState",
    "ExecutionEngine",
    "NodeOutcome",
    "fixed_backoff",
]
