"""nodeflow: execution engine for node graphs authored in a visual workflow editor."""

from .core.execution_engine import ExecutionEngine, RunManager, run
from .core.executors import Collaborators
from .models.core import GraphDefinition, RunResult

__version__ = "0.1.0"

__all__ = [
    "ExecutionEngine",
    "RunManager",
    "run",
    "Collaborators",
    "GraphDefinition",
    "RunResult",
]
