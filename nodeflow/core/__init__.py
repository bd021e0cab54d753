"""Core engine components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    NodeExecutionError,
    NodeConfigurationError,
    ScriptError,
    ProviderConfigurationError,
    HumanInputDeclinedError,
    ExecutionEngineError,
    StorageError,
    ConfigurationError,
    APIError,
)
from .logging import setup_logging, get_logger
from .context import ExecutionContext
from .tracker import RunTracker
from .executors import Collaborators, ExecutorRegistry, NodeInvocation
from .execution_engine import ExecutionEngine, RunManager
from .graph_manager import GraphManager
from .run_history import RunHistory

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "NodeExecutionError",
    "NodeConfigurationError",
    "ScriptError",
    "ProviderConfigurationError",
    "HumanInputDeclinedError",
    "ExecutionEngineError",
    "StorageError",
    "ConfigurationError",
    "APIError",
    "setup_logging",
    "get_logger",
    "ExecutionContext",
    "RunTracker",
    "Collaborators",
    "ExecutorRegistry",
    "NodeInvocation",
    "ExecutionEngine",
    "RunManager",
    "GraphManager",
    "RunHistory",
]
