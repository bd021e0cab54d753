"""Run-scoped execution context mapping node ids to their outputs."""

from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping


class ExecutionContext(Mapping):
    """Outputs produced so far in a single run, keyed by node id.

    Created fresh for every run and written only by the scheduler. Entries
    are never removed; a node executed again inside a cycle replaces its own
    previous output.
    """

    def __init__(self):
        self._outputs: Dict[str, Any] = {}

    def record(self, node_id: str, output: Any):
        self._outputs[node_id] = output

    def snapshot(self) -> Mapping[str, Any]:
        """Read-only live view handed to script nodes."""
        return MappingProxyType(self._outputs)

    def __getitem__(self, node_id: str) -> Any:
        return self._outputs[node_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._outputs)

    def __len__(self) -> int:
        return len(self._outputs)

    def __repr__(self) -> str:
        return f"ExecutionContext({self._outputs!r})"
