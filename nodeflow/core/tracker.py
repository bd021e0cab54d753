"""Per-node status tracking and the ordered run log."""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..models.core import LogEntry, LogLevel, NodeState, NodeStatus, RunEvent, to_jsonable
from .logging import get_logger, log_with_context


logger = get_logger(__name__)

RunListener = Callable[[RunEvent], None]

_UNSET = object()

_PYTHON_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class RunTracker:
    """
    Owns the status/lastOutput of every node and the append-only log of a run.

    Every mutation is published to the registered listeners as a RunEvent.
    Listeners are called synchronously in registration order; an exception
    raised by one is logged and does not reach the scheduler.
    """

    def __init__(self, run_id: str, listeners: Optional[List[RunListener]] = None):
        self.run_id = run_id
        self._listeners: List[RunListener] = list(listeners or [])
        self._states: Dict[str, NodeState] = {}
        self._logs: List[LogEntry] = []

    def add_listener(self, listener: RunListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: RunListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def register_node(self, node_id: str):
        self._states.setdefault(node_id, NodeState())

    def set_status(self, node_id: str, status: NodeStatus, last_output: Any = _UNSET):
        """Move a node to ``status``; ``last_output`` is stored when given, None included."""
        state = self._states.setdefault(node_id, NodeState())
        state.status = status
        if last_output is not _UNSET:
            state.last_output = to_jsonable(last_output)
        self.emit("node_status", {
            "node_id": node_id,
            "status": status.value,
            "last_output": state.last_output,
        })

    def set_output(self, node_id: str, output: Any):
        """Update lastOutput without touching status (streamed agent text)."""
        state = self._states.setdefault(node_id, NodeState())
        state.last_output = to_jsonable(output)
        self.emit("node_output", {"node_id": node_id, "output": state.last_output})

    def status_of(self, node_id: str) -> NodeStatus:
        state = self._states.get(node_id)
        return state.status if state else NodeStatus.IDLE

    def log(
        self,
        level: LogLevel,
        message: str,
        node_id: Optional[str] = None,
        node_label: Optional[str] = None,
        details: Optional[Any] = None
    ) -> LogEntry:
        entry = LogEntry(
            id=len(self._logs) + 1,
            timestamp=datetime.now(timezone.utc),
            node_id=node_id,
            node_label=node_label,
            level=level,
            message=message,
            details=to_jsonable(details) if details is not None else None,
        )
        self._logs.append(entry)

        log_with_context(
            logger, _PYTHON_LEVELS[level], message,
            run_id=self.run_id, node_id=node_id, run_log_level=level.value
        )
        self.emit("log", entry.model_dump(mode="json"))
        return entry

    def emit(self, event_type: str, data: Dict[str, Any]):
        event = RunEvent(
            event_type=event_type,
            run_id=self.run_id,
            timestamp=datetime.now(timezone.utc),
            data=data,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Run listener failed for {event_type} on run {self.run_id}: {e}", exc_info=True)

    @property
    def logs(self) -> List[LogEntry]:
        return list(self._logs)

    @property
    def node_states(self) -> Dict[str, NodeState]:
        return {node_id: state.model_copy() for node_id, state in self._states.items()}
