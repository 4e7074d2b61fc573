"""Data models for the workflow engine."""

from .core import (
    ExecutionStatusEnum,
    NodeStatusEnum,
    TriggerType,
    RetryPolicy,
    NodeDefinition,
    EdgeDefinition,
    WorkflowDefinition,
    WorkflowExecution,
    NodeExecutionRecord,
    CompensationFailure,
    TriggerDefinition,
    StartRequest,
    WorkflowSummary,
    ValidationResult,
    TERMINAL_STATUSES,
)

__all__ = [
    "ExecutionStatusEnum",
    "NodeStatusEnum",
    "TriggerType",
    "RetryPolicy",
    "NodeDefinition",
    "EdgeDefinition",
    "WorkflowDefinition",
    "WorkflowExecution",
    "NodeExecutionRecord",
    "CompensationFailure",
    "TriggerDefinition",
    "StartRequest",
    "WorkflowSummary",
    "ValidationResult",
    "TERMINAL_STATUSES",
]
