"""Graph scheduler and run management."""

import asyncio
import uuid
from collections import OrderedDict, deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from ..models.core import (
    FALSE_HANDLE,
    TRUE_HANDLE,
    EdgeDefinition,
    GraphDefinition,
    LogLevel,
    NodeDefinition,
    NodeStatus,
    NodeType,
    RunResult,
    RunStatusEnum,
    RunSummary,
    stringify,
    to_jsonable,
)
from .context import ExecutionContext
from .exceptions import ErrorCategory, ExecutionEngineError, WorkflowEngineError
from .executors import Collaborators, ExecutorRegistry, NodeInvocation
from .human_input import PendingInputRegistry
from .logging import get_logger, reset_logging_context, set_logging_context
from .tracker import RunListener, RunTracker


logger = get_logger(__name__)

DEFAULT_MAX_STEPS = 50


class RunState:
    """Mutable state of one run, owned by the scheduler for its duration."""

    def __init__(self, run_id: str, graph: GraphDefinition, tracker: RunTracker):
        self.run_id = run_id
        self.graph = graph
        self.tracker = tracker
        self.context = ExecutionContext()
        self.nodes_by_id: Dict[str, NodeDefinition] = {node.id: node for node in graph.nodes}
        self.outgoing: Dict[str, List[EdgeDefinition]] = {}
        self.incoming: Dict[str, List[EdgeDefinition]] = {}
        for edge in graph.edges:
            self.outgoing.setdefault(edge.source, []).append(edge)
            self.incoming.setdefault(edge.target, []).append(edge)

        self.is_running = False
        self.steps = 0
        self.status = RunStatusEnum.PENDING
        self.execution_order: List[str] = []
        self.final_output: Optional[Any] = None
        self.has_final_output = False
        self.started_at = datetime.now(timezone.utc)
        self.completed_at: Optional[datetime] = None

        for node_id in self.nodes_by_id:
            tracker.register_node(node_id)

    def set_final_output(self, value: Any):
        self.final_output = value
        self.has_final_output = True

    def resolve_input(self, node_id: str) -> Any:
        """
        Resolve a node's input from the outputs of its upstream nodes.

        No upstream output gives an empty string and exactly one is passed
        through unchanged. With several, the last one found in edge order wins
        and is stringified; values are never merged.
        """
        values = [
            self.context[edge.source]
            for edge in self.incoming.get(node_id, [])
            if edge.source in self.context
        ]
        if not values:
            return ""
        if len(values) == 1:
            return values[0]
        return stringify(values[-1])

    def successors(self, node: NodeDefinition, output: Any) -> List[str]:
        edges = self.outgoing.get(node.id, [])
        if node.kind == NodeType.CONDITION:
            handle = TRUE_HANDLE if bool(output) else FALSE_HANDLE
            edges = [edge for edge in edges if edge.source_handle == handle]
        return [edge.target for edge in edges]

    def to_result(self) -> RunResult:
        return RunResult(
            run_id=self.run_id,
            status=self.status,
            steps=self.steps,
            execution_order=list(self.execution_order),
            context={key: to_jsonable(value) for key, value in self.context.items()},
            node_states=self.tracker.node_states,
            logs=self.tracker.logs,
            final_output=to_jsonable(self.final_output),
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


class ExecutionEngine:
    """
    Single-loop FIFO scheduler.

    Runs start from every trigger node in graph order. Exactly one node
    executes at a time; a failing node is marked ``error`` and its successors
    are not enqueued, while everything already queued keeps running. Every run
    terminates: on an empty queue, on cooperative cancellation checked once per
    iteration, or when the step counter exceeds ``max_steps``.
    """

    def __init__(
        self,
        collaborators: Optional[Collaborators] = None,
        registry: Optional[ExecutorRegistry] = None,
        max_steps: int = DEFAULT_MAX_STEPS
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.collaborators = collaborators or Collaborators()
        self.registry = registry or ExecutorRegistry()
        self.max_steps = max_steps

    def create_state(
        self,
        graph: GraphDefinition,
        run_id: Optional[str] = None,
        listeners: Optional[List[RunListener]] = None
    ) -> RunState:
        run_id = run_id or str(uuid.uuid4())
        return RunState(run_id, graph, RunTracker(run_id, listeners))

    async def run(
        self,
        graph: GraphDefinition,
        cancel_event: Optional[asyncio.Event] = None,
        listeners: Optional[List[RunListener]] = None,
        run_id: Optional[str] = None
    ) -> RunResult:
        """
        Execute a graph snapshot to completion.

        Args:
            graph: Immutable node/edge snapshot
            cancel_event: Cooperative cancellation flag
            listeners: Callables receiving every RunEvent
            run_id: Run identifier, generated when omitted

        Returns:
            RunResult with final statuses, context, log and final output
        """
        state = self.create_state(graph, run_id, listeners)
        return await self.execute(state, cancel_event)

    async def execute(self, state: RunState, cancel_event: Optional[asyncio.Event] = None) -> RunResult:
        tracker = state.tracker
        token = set_logging_context(run_id=state.run_id)
        state.is_running = True
        state.status = RunStatusEnum.RUNNING
        state.started_at = datetime.now(timezone.utc)
        tracker.emit("run_started", {"node_count": len(state.nodes_by_id), "edge_count": len(state.graph.edges)})

        try:
            triggers = [node.id for node in state.graph.trigger_nodes()]
            if not triggers:
                tracker.log(LogLevel.WARN, "No trigger node found; nothing to execute")
                state.status = RunStatusEnum.COMPLETED
            else:
                tracker.log(LogLevel.INFO, f"Starting execution from {len(triggers)} trigger node(s)")
                await self._drive(state, deque(triggers), cancel_event)

            if state.status == RunStatusEnum.RUNNING:
                state.status = RunStatusEnum.COMPLETED
                tracker.log(LogLevel.SUCCESS, f"Execution finished after {state.steps} step(s)")
        finally:
            state.is_running = False
            state.completed_at = datetime.now(timezone.utc)
            reset_logging_context(token)

        tracker.emit("run_finished", {"status": state.status.value, "steps": state.steps})
        if (
            state.status == RunStatusEnum.COMPLETED
            and state.has_final_output
            and state.final_output not in (None, "")
        ):
            tracker.emit("run_summary", {"final_output": to_jsonable(state.final_output)})

        logger.info(f"Run {state.run_id} {state.status.value} after {state.steps} step(s)")
        return state.to_result()

    async def _drive(self, state: RunState, queue: Deque[str], cancel_event: Optional[asyncio.Event]):
        tracker = state.tracker
        while queue:
            if self._check_cancelled(state, cancel_event):
                return

            state.steps += 1
            if state.steps > self.max_steps:
                state.steps = self.max_steps
                tracker.log(
                    LogLevel.ERROR,
                    f"Step limit of {self.max_steps} exceeded; execution halted",
                    details={"pending_nodes": list(queue)},
                )
                state.status = RunStatusEnum.ABORTED
                return

            node_id = queue.popleft()
            node = state.nodes_by_id.get(node_id)
            if node is None:
                tracker.log(LogLevel.WARN, f"Skipping unknown node '{node_id}'", node_id=node_id)
                continue

            output, succeeded = await self._execute_node(state, node)
            if succeeded:
                queue.extend(state.successors(node, output))

        # A cancellation that arrived while the last node ran still counts.
        self._check_cancelled(state, cancel_event)

    @staticmethod
    def _check_cancelled(state: RunState, cancel_event: Optional[asyncio.Event]) -> bool:
        if cancel_event is None or not cancel_event.is_set():
            return False
        state.tracker.log(LogLevel.WARN, "Execution cancelled by user")
        state.status = RunStatusEnum.CANCELLED
        return True

    async def _execute_node(self, state: RunState, node: NodeDefinition):
        """Run one node; returns ``(output, succeeded)``."""
        tracker = state.tracker
        token = set_logging_context(node_id=node.id)
        try:
            node_input = state.resolve_input(node.id)
            state.execution_order.append(node.id)
            tracker.set_status(node.id, NodeStatus.RUNNING)

            invocation = NodeInvocation(
                run_id=state.run_id,
                node=node,
                input=node_input,
                context=state.context,
                tracker=tracker,
                collaborators=self.collaborators,
                on_final_output=state.set_final_output,
            )
            executor = self.registry.get(node.kind)

            try:
                output = await executor(invocation)
            except Exception as e:
                message = e.message if isinstance(e, WorkflowEngineError) else str(e) or type(e).__name__
                details = e.to_dict() if isinstance(e, WorkflowEngineError) else {"exception_type": type(e).__name__}
                tracker.set_status(node.id, NodeStatus.ERROR)
                tracker.log(
                    LogLevel.ERROR,
                    f"{node.label} failed: {message}",
                    node_id=node.id,
                    node_label=node.label,
                    details=details,
                )
                return None, False

            # A condition's boolean only picks the branch; downstream nodes
            # receive the value that reached the condition.
            state.context.record(node.id, node_input if node.kind == NodeType.CONDITION else output)
            tracker.set_status(node.id, NodeStatus.COMPLETED, last_output=output)
            tracker.log(LogLevel.SUCCESS, f"{node.label} completed", node_id=node.id, node_label=node.label)
            return output, True
        finally:
            reset_logging_context(token)


async def run(
    graph: GraphDefinition,
    collaborators: Optional[Collaborators] = None,
    cancel_event: Optional[asyncio.Event] = None,
    listeners: Optional[List[RunListener]] = None,
    max_steps: int = DEFAULT_MAX_STEPS,
    run_id: Optional[str] = None
) -> RunResult:
    """Execute ``graph`` once with the given collaborators."""
    engine = ExecutionEngine(collaborators=collaborators, max_steps=max_steps)
    return await engine.run(graph, cancel_event=cancel_event, listeners=listeners, run_id=run_id)


class ActiveRun:
    """Bookkeeping for a run started through the RunManager."""

    def __init__(self, state: RunState, graph_id: Optional[str], cancel_event: asyncio.Event):
        self.state = state
        self.graph_id = graph_id
        self.cancel_event = cancel_event
        self.task: Optional[asyncio.Task] = None


class RunManager:
    """
    Starts runs as asyncio tasks and keeps track of them.

    Finished runs are persisted to the run history when one is attached and a
    bounded number of recent results is kept in memory.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        run_history=None,
        pending_inputs: Optional[PendingInputRegistry] = None,
        listeners: Optional[List[RunListener]] = None,
        max_active_runs: int = 10,
        keep_finished: int = 100
    ):
        self.engine = engine
        self.run_history = run_history
        self.pending_inputs = pending_inputs
        self.listeners: List[RunListener] = list(listeners or [])
        self.max_active_runs = max_active_runs
        self.keep_finished = keep_finished
        self._active: Dict[str, ActiveRun] = {}
        self._finished: "OrderedDict[str, RunSummary]" = OrderedDict()
        self._results: "OrderedDict[str, RunResult]" = OrderedDict()

        logger.info(f"RunManager initialized with max_active_runs={max_active_runs}")

    async def start_run(self, graph: GraphDefinition, graph_id: Optional[str] = None) -> str:
        """
        Start executing a graph snapshot in the background.

        Args:
            graph: Graph snapshot to execute
            graph_id: ID of the stored graph the snapshot came from, if any

        Returns:
            The new run's ID

        Raises:
            ExecutionEngineError: If the maximum number of active runs is reached
        """
        if len(self._active) >= self.max_active_runs:
            raise ExecutionEngineError(
                f"Too many active runs (limit {self.max_active_runs}), please try again later",
                graph_id=graph_id,
                category=ErrorCategory.RESOURCE,
            )

        state = self.engine.create_state(graph, listeners=self.listeners)
        active = ActiveRun(state, graph_id, asyncio.Event())
        self._active[state.run_id] = active
        active.task = asyncio.create_task(self._run(active), name=f"nodeflow-run-{state.run_id}")

        logger.info(f"Started run {state.run_id} (graph_id={graph_id})")
        return state.run_id

    async def _run(self, active: ActiveRun) -> RunResult:
        run_id = active.state.run_id
        try:
            result = await self.engine.execute(active.state, active.cancel_event)
        except asyncio.CancelledError:
            active.state.status = RunStatusEnum.CANCELLED
            active.state.completed_at = datetime.now(timezone.utc)
            self._remember(active, active.state.to_result())
            raise
        except Exception as e:
            logger.error(f"Run {run_id} crashed: {e}", exc_info=True)
            active.state.status = RunStatusEnum.ABORTED
            active.state.completed_at = datetime.now(timezone.utc)
            result = active.state.to_result()
        finally:
            self._active.pop(run_id, None)
            if self.pending_inputs is not None:
                self.pending_inputs.decline_all(run_id)

        self._remember(active, result)
        self._persist(active, result)
        return result

    def _remember(self, active: ActiveRun, result: RunResult):
        self._results[result.run_id] = result
        self._finished[result.run_id] = self._summarize(result, active.graph_id)
        while len(self._results) > self.keep_finished:
            self._results.popitem(last=False)
        while len(self._finished) > self.keep_finished:
            self._finished.popitem(last=False)

    def _persist(self, active: ActiveRun, result: RunResult):
        if self.run_history is None:
            return
        try:
            self.run_history.save_run(result, graph_id=active.graph_id, graph=active.state.graph)
        except WorkflowEngineError as e:
            logger.error(f"Failed to persist run {result.run_id}: {e.message}")

    @staticmethod
    def _summarize(result: RunResult, graph_id: Optional[str]) -> RunSummary:
        return RunSummary(
            run_id=result.run_id,
            graph_id=graph_id,
            status=result.status,
            steps=result.steps,
            final_output=result.final_output,
            started_at=result.started_at,
            completed_at=result.completed_at,
        )

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active

    def get_active_runs(self) -> List[str]:
        return list(self._active)

    def get_run(self, run_id: str) -> RunResult:
        """
        Get the live or final result of a run.

        Raises:
            ExecutionEngineError: If the run is unknown
        """
        active = self._active.get(run_id)
        if active is not None:
            return active.state.to_result()
        if run_id in self._results:
            return self._results[run_id]
        if self.run_history is not None:
            result = self.run_history.get_run(run_id)
            if result is not None:
                return result
        raise ExecutionEngineError(f"Run {run_id} not found", run_id=run_id, category=ErrorCategory.NOT_FOUND)

    def snapshot(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Current state of a run for late WebSocket subscribers, None if unknown."""
        try:
            result = self.get_run(run_id)
        except WorkflowEngineError:
            return None
        return result.model_dump(
            mode="json",
            include={"status", "steps", "execution_order", "node_states", "logs", "final_output"},
        )

    def list_runs(self, limit: int = 50) -> List[RunSummary]:
        summaries: Dict[str, RunSummary] = {}
        for run_id, active in self._active.items():
            summaries[run_id] = self._summarize(active.state.to_result(), active.graph_id)
        for run_id, summary in reversed(self._finished.items()):
            summaries.setdefault(run_id, summary)
        if self.run_history is not None:
            for summary in self.run_history.list_runs(limit=limit):
                summaries.setdefault(summary.run_id, summary)
        ordered = sorted(summaries.values(), key=lambda s: s.started_at, reverse=True)
        return ordered[:limit]

    def cancel_run(self, run_id: str) -> bool:
        """
        Request cooperative cancellation of an active run.

        The flag is honoured at the next loop iteration. Pending human-input
        requests of the run are declined so that a run waiting on a human
        reaches that iteration.

        Returns:
            True if the run was active, False if it had already finished

        Raises:
            ExecutionEngineError: If the run is unknown
        """
        active = self._active.get(run_id)
        if active is None:
            self.get_run(run_id)
            return False

        active.cancel_event.set()
        if self.pending_inputs is not None:
            declined = self.pending_inputs.decline_all(run_id)
            if declined:
                logger.info(f"Declined {declined} pending input request(s) for cancelled run {run_id}")
        logger.info(f"Cancellation requested for run {run_id}")
        return True

    async def wait_for(self, run_id: str, timeout: Optional[float] = None) -> RunResult:
        active = self._active.get(run_id)
        if active is not None and active.task is not None:
            await asyncio.wait_for(asyncio.shield(active.task), timeout)
        return self.get_run(run_id)

    async def shutdown(self, timeout: float = 5.0):
        """Cancel every active run; tasks still suspended after ``timeout`` are cancelled outright."""
        tasks = []
        for run_id, active in list(self._active.items()):
            self.cancel_run(run_id)
            if active.task is not None:
                tasks.append(active.task)

        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"Force-cancelled {len(pending)} run(s) still suspended at shutdown")
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("RunManager shutdown complete")
