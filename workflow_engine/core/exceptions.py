"""Exception hierarchy for the workflow execution engine."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    RESOURCE = "resource"
    TIMEOUT = "timeout"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
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
    """Raised when a workflow definition is structurally invalid.

    Carries every violation found, not only the first one.
    """

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class AmbiguousBranchError(GraphValidationError):
    """Raised when more than one conditional edge of a non-fork node is taken."""

    def __init__(self, node_id: str, edge_ids: List[str], **kwargs):
        super().__init__(
            f"Node '{node_id}' has {len(edge_ids)} outgoing edges whose conditions "
            f"are all true ({', '.join(edge_ids)}); conditions must be mutually exclusive",
            validation_errors=[f"ambiguous branch at node '{node_id}'"],
            **kwargs
        )
        self.node_id = node_id
        self.edge_ids = edge_ids
        self.add_context(node_id=node_id)


class NodeExecutionError(WorkflowEngineError):
    """Raised when a node fails.

    Transient errors are retried per the node's retry policy; permanent
    ones fail the node immediately.
    """

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        attempt: Optional[int] = None,
        transient: bool = True,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        super().__init__(message, recoverable=transient, **kwargs)
        self.transient = transient
        if node_id:
            self.add_context(node_id=node_id)
        if execution_id:
            self.add_context(execution_id=execution_id)
        if attempt is not None:
            self.add_details(attempt=attempt)


class NodeTimeoutError(NodeExecutionError):
    """Raised when a node exceeds its ``max_duration``. Never retried."""

    def __init__(self, message: str, timeout_seconds: Optional[float] = None, **kwargs):
        super().__init__(
            message,
            transient=False,
            category=ErrorCategory.TIMEOUT,
            **kwargs
        )
        if timeout_seconds is not None:
            self.add_details(timeout_seconds=timeout_seconds)


class DeadlockTimeoutError(WorkflowEngineError):
    """Raised when an execution is still running at its global deadline."""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        pending_nodes: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.TIMEOUT,
            **kwargs
        )
        if execution_id:
            self.add_context(execution_id=execution_id)
        if pending_nodes is not None:
            self.add_details(pending_nodes=pending_nodes)


class CompensationError(WorkflowEngineError):
    """A compensation action failed. Recorded on the execution, never re-raised."""

    def __init__(self, message: str, node_id: Optional[str] = None, action: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)
        if action:
            self.add_context(action=action)


class ExecutionEngineError(WorkflowEngineError):
    """Raised when execution engine operations fail."""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        super().__init__(message, **kwargs)
        if execution_id:
            self.add_context(execution_id=execution_id)
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class ExecutionNotFoundError(ExecutionEngineError):
    """Raised when an execution id is unknown."""

    def __init__(self, execution_id: str, **kwargs):
        super().__init__(
            f"Execution '{execution_id}' not found",
            execution_id=execution_id,
            severity=ErrorSeverity.LOW,
            **kwargs
        )


class InvalidExecutionStateError(ExecutionEngineError):
    """Raised when an operation is not allowed in the execution's current status."""

    def __init__(self, message: str, status: Optional[str] = None, **kwargs):
        super().__init__(message, severity=ErrorSeverity.LOW, **kwargs)
        if status:
            self.add_details(status=status)


class WorkflowInactiveError(InvalidExecutionStateError):
    """Raised when starting a workflow that has been deactivated."""

    def __init__(self, workflow_id: str, **kwargs):
        super().__init__(
            f"Workflow '{workflow_id}' is inactive and cannot be started",
            status="inactive",
            workflow_id=workflow_id,
            **kwargs
        )


class ExecutionCancelledError(ExecutionEngineError):
    """Raised from a cancellation checkpoint after the execution was cancelled."""


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("recoverable", True)
        kwargs.setdefault("retry_after", 3)
        super().__init__(message, category=ErrorCategory.STORAGE, **kwargs)
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class WorkflowNotFoundError(StorageError):
    """Raised when a workflow definition (or a specific version) does not exist."""

    def __init__(self, workflow_id: str, version: Optional[int] = None, **kwargs):
        suffix = f" version {version}" if version is not None else ""
        super().__init__(
            f"Workflow '{workflow_id}'{suffix} not found",
            severity=ErrorSeverity.LOW,
            recoverable=False,
            retry_after=None,
            **kwargs
        )
        self.add_context(workflow_id=workflow_id)


class WorkflowAlreadyExistsError(WorkflowEngineError):
    """Raised when a new workflow id is already taken."""

    def __init__(self, workflow_id: str, **kwargs):
        super().__init__(
            f"Workflow '{workflow_id}' already exists",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.add_context(workflow_id=workflow_id)


class TriggerError(WorkflowEngineError):
    """Raised when a trigger is misconfigured or cannot fire."""

    def __init__(self, message: str, trigger_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        super().__init__(message, **kwargs)
        if trigger_id:
            self.add_context(trigger_id=trigger_id)


class TriggerNotFoundError(TriggerError):
    """Raised when a trigger id is unknown."""

    def __init__(self, trigger_id: str, **kwargs):
        super().__init__(
            f"Trigger '{trigger_id}' not found",
            trigger_id=trigger_id,
            severity=ErrorSeverity.LOW,
            **kwargs
        )


class ActionProviderError(WorkflowEngineError):
    """Raised when action registry operations fail."""

    def __init__(
        self,
        message: str,
        action_name: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if action_name:
            self.add_context(action_name=action_name)
        if operation:
            self.add_context(operation=operation)


class ResourceExhaustionError(WorkflowEngineError):
    """Raised when the engine cannot accept more work."""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.RESOURCE,
            recoverable=True,
            retry_after=30,
            **kwargs
        )
        if resource_type:
            self.add_context(resource_type=resource_type)


class TransientError(WorkflowEngineError):
    """Raised for transient errors that should be retried."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            recoverable=True,
            retry_after=5,
            **kwargs
        )


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
