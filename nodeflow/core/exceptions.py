"""Exception hierarchy for the node graph engine and its service layer."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for classification and HTTP mapping."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    RESOURCE = "resource"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


class WorkflowEngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class GraphValidationError(WorkflowEngineError):
    """Raised when a graph snapshot cannot be accepted."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        graph_name: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        super().__init__(message, severity=ErrorSeverity.MEDIUM, **kwargs)
        self.validation_errors = validation_errors or []
        if graph_name:
            self.add_context(graph_name=graph_name)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class NodeExecutionError(WorkflowEngineError):
    """Raised by an executor when its node cannot produce an output."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        node_type: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        super().__init__(message, **kwargs)
        if node_id:
            self.add_context(node_id=node_id)
        if node_type:
            self.add_context(node_type=node_type)


class NodeConfigurationError(NodeExecutionError):
    """Raised when a node's editor configuration is missing or malformed."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, category=ErrorCategory.CONFIGURATION, **kwargs)
        if field:
            self.add_details(field=field)


class ScriptError(NodeExecutionError):
    """Raised when a script or condition snippet fails to compile or run."""

    def __init__(self, message: str, source: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if source is not None:
            self.add_details(source=source)


class ProviderConfigurationError(NodeExecutionError):
    """Raised before dispatch when no usable model provider is configured."""

    def __init__(self, message: str, model_id: Optional[str] = None, **kwargs):
        super().__init__(message, category=ErrorCategory.CONFIGURATION, **kwargs)
        if model_id:
            self.add_context(model_id=model_id)


class HumanInputDeclinedError(NodeExecutionError):
    """Raised when the human-input channel returns a cancellation."""

    def __init__(self, message: str = "User cancelled input", **kwargs):
        super().__init__(message, severity=ErrorSeverity.LOW, **kwargs)


class ExecutionEngineError(WorkflowEngineError):
    """Raised when run management operations fail."""

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        graph_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(message, **kwargs)
        if run_id:
            self.add_context(run_id=run_id)
        if graph_id:
            self.add_context(graph_id=graph_id)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("category", ErrorCategory.STORAGE)
        super().__init__(message, severity=ErrorSeverity.HIGH, **kwargs)
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


class APIError(WorkflowEngineError):
    """Raised by endpoints for failures that carry their own HTTP status."""

    def __init__(self, message: str, status_code: int = 500, endpoint: Optional[str] = None, **kwargs):
        super().__init__(message, severity=ErrorSeverity.MEDIUM, category=ErrorCategory.NETWORK, **kwargs)
        self.status_code = status_code
        if endpoint:
            self.add_context(endpoint=endpoint)
        self.add_details(status_code=status_code)


_CATEGORY_STATUS = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.CONFIGURATION: 400,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.RESOURCE: 503,
}


def http_status_for(error: WorkflowEngineError) -> int:
    """Map an engine error onto the HTTP status code the API answers with."""
    if isinstance(error, APIError):
        return error.status_code
    return _CATEGORY_STATUS.get(error.category, 500)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
