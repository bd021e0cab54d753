"""Data models for the node graph engine."""

from .core import (
    NodeType,
    NodeStatus,
    LogLevel,
    RunStatusEnum,
    NodeDefinition,
    EdgeDefinition,
    GraphDefinition,
    LogEntry,
    NodeState,
    RunEvent,
    RunResult,
    RunSummary,
    GraphSummary,
    ValidationResult,
)

__all__ = [
    "NodeType",
    "NodeStatus",
    "LogLevel",
    "RunStatusEnum",
    "NodeDefinition",
    "EdgeDefinition",
    "GraphDefinition",
    "LogEntry",
    "NodeState",
    "RunEvent",
    "RunResult",
    "RunSummary",
    "GraphSummary",
    "ValidationResult",
]
