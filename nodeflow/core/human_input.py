"""Human-in-the-loop input channels for input nodes."""

import asyncio
import sys
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel

from .exceptions import ErrorCategory, ExecutionEngineError
from .logging import get_logger


logger = get_logger(__name__)


class HumanInputChannel(Protocol):
    """Request/response channel to a human. ``None`` means the request was declined."""

    async def request(self, run_id: str, node_id: str, prompt: str) -> Optional[str]:
        ...


class PendingInput(BaseModel):
    """An input request waiting for a UI answer."""
    run_id: str
    node_id: str
    prompt: str
    requested_at: datetime


class PendingInputRegistry:
    """
    Input channel resolved by UI callbacks.

    ``request`` suspends the calling run on an asyncio future; ``provide`` and
    ``decline`` (typically called from the HTTP API) resolve it. The scheduler
    keeps running other runs meanwhile.
    """

    def __init__(self):
        self._pending: Dict[Tuple[str, str], Tuple[PendingInput, asyncio.Future]] = {}

    async def request(self, run_id: str, node_id: str, prompt: str) -> Optional[str]:
        key = (run_id, node_id)
        if key in self._pending:
            raise ExecutionEngineError(
                f"Node {node_id} is already waiting for input", run_id=run_id, category=ErrorCategory.CONFLICT
            )

        future = asyncio.get_running_loop().create_future()
        pending = PendingInput(
            run_id=run_id, node_id=node_id, prompt=prompt, requested_at=datetime.now(timezone.utc)
        )
        self._pending[key] = (pending, future)
        logger.info(f"Run {run_id} waiting for input on node {node_id}")

        try:
            return await future
        finally:
            self._pending.pop(key, None)

    def _future(self, run_id: str, node_id: str) -> asyncio.Future:
        entry = self._pending.get((run_id, node_id))
        if entry is None or entry[1].done():
            raise ExecutionEngineError(
                f"No pending input for node {node_id} in run {run_id}",
                run_id=run_id, category=ErrorCategory.NOT_FOUND
            )
        return entry[1]

    def provide(self, run_id: str, node_id: str, value: str):
        """Answer a pending request with ``value``."""
        self._future(run_id, node_id).set_result(value)

    def decline(self, run_id: str, node_id: str):
        """Decline a pending request; the waiting input node fails."""
        self._future(run_id, node_id).set_result(None)

    def decline_all(self, run_id: str) -> int:
        """Decline every pending request of a run and return how many there were."""
        declined = 0
        for (pending_run_id, _), (_, future) in list(self._pending.items()):
            if pending_run_id == run_id and not future.done():
                future.set_result(None)
                declined += 1
        return declined

    def list_pending(self, run_id: Optional[str] = None) -> List[PendingInput]:
        return [
            pending for (pending_run_id, _), (pending, future) in self._pending.items()
            if (run_id is None or pending_run_id == run_id) and not future.done()
        ]


class ConsoleInputChannel:
    """Reads answers from stdin for the CLI; an empty line or EOF declines."""

    def __init__(self, stream=None, output=None):
        self.stream = stream or sys.stdin
        self.output = output or sys.stdout

    async def request(self, run_id: str, node_id: str, prompt: str) -> Optional[str]:
        self.output.write(f"[{node_id}] {prompt}: ")
        self.output.flush()
        line = await asyncio.to_thread(self.stream.readline)
        if not line:
            return None
        value = line.rstrip("\n")
        return value or None


class NoHumanInputChannel:
    """Channel used when no human is attached; every request is declined."""

    async def request(self, run_id: str, node_id: str, prompt: str) -> Optional[str]:
        logger.warning(f"No input channel attached; declining input for node {node_id}")
        return None
