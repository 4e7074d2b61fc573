"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    AmbiguousBranchError,
    NodeExecutionError,
    NodeTimeoutError,
    DeadlockTimeoutError,
    CompensationError,
    ExecutionEngineError,
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    ExecutionCancelledError,
    StorageError,
    WorkflowNotFoundError,
    TriggerError,
    TriggerNotFoundError,
    ActionProviderError,
    ResourceExhaustionError,
    TransientError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .action_provider import ActionContext, ActionProvider
from .node_executors import NodeExecutor, NodeExecutorRegistry, NodeOutcome, create_default_registry
from .graph_validator import CompiledWorkflow, GraphValidator
from .definition_store import DefinitionStore, InMemoryDefinitionStore, SqlDefinitionStore
from .engine import WorkflowEngine
from .triggers import TriggerService

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "AmbiguousBranchError",
    "NodeExecutionError",
    "NodeTimeoutError",
    "DeadlockTimeoutError",
    "CompensationError",
    "ExecutionEngineError",
    "ExecutionNotFoundError",
    "InvalidExecutionStateError",
    "ExecutionCancelledError",
    "StorageError",
    "WorkflowNotFoundError",
    "TriggerError",
    "TriggerNotFoundError",
    "ActionProviderError",
    "ResourceExhaustionError",
    "TransientError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "ActionContext",
    "ActionProvider",
    "NodeExecutor",
    "NodeExecutorRegistry",
    "NodeOutcome",
    "create_default_registry",
    "CompiledWorkflow",
    "GraphValidator",
    "DefinitionStore",
    "InMemoryDefinitionStore",
    "SqlDefinitionStore",
    "WorkflowEngine",
    "TriggerService",
]
