"""Core Pydantic models for the workflow engine."""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_.:-]+$')


def _check_identifier(value: str, what: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"{what} cannot be empty")
    value = value.strip()
    if not _ID_PATTERN.match(value):
        raise ValueError(
            f"{what} must contain only alphanumeric characters, underscores, hyphens, dots and colons"
        )
    return value


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow execution statuses."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"


class NodeStatusEnum(str, Enum):
    """Enumeration of node execution record statuses."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    COMPENSATED = "compensated"
    CANCELLED = "cancelled"


class TriggerType(str, Enum):
    """Ways an execution can be started."""
    MANUAL = "manual"
    SCHEDULE = "schedule"
    EVENT = "event"
    WEBHOOK = "webhook"


class ValidationResult(BaseModel):
    """Result of graph validation."""
    is_valid: bool = Field(..., description="Whether the graph is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class RetryPolicy(BaseModel):
    """Per-node retry policy. Backoff is min(base_delay * 2^(attempt-1), max_delay)."""
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(1, ge=1, description="Total attempts including the first one")
    base_delay: float = Field(1.0, ge=0, description="Delay in seconds before the first retry")
    max_delay: float = Field(60.0, ge=0, description="Upper bound on the retry delay in seconds")

    @model_validator(mode='after')
    def validate_delays(self):
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must not be smaller than base_delay")
        return self


class NodeDefinition(BaseModel):
    """Definition of a workflow node."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique identifier for the node")
    type: str = Field(..., description="Node type, resolved against the executor registry")
    config: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")
    compensatable: bool = Field(False, description="Whether the node has a compensating action")
    retry: RetryPolicy = Field(default_factory=RetryPolicy, description="Retry policy for transient failures")
    max_duration: Optional[float] = Field(None, description="Per-node timeout in seconds")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID follows valid format."""
        return _check_identifier(id_value, "Node ID")

    @field_validator('type')
    @classmethod
    def validate_type(cls, node_type):
        if not node_type or not node_type.strip():
            raise ValueError("Node type cannot be empty")
        return node_type.strip()

    @field_validator('max_duration')
    @classmethod
    def validate_max_duration(cls, max_duration):
        """Ensure timeout is positive if specified."""
        if max_duration is not None and max_duration <= 0:
            raise ValueError("max_duration must be positive")
        return max_duration


class EdgeDefinition(BaseModel):
    """Definition of an edge between workflow nodes."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique identifier for the edge")
    source_node_id: str = Field(..., description="Source node ID")
    target_node_id: str = Field(..., description="Target node ID")
    condition: Optional[str] = Field(None, description="Expression over variables guarding traversal")
    loop_back: bool = Field(False, description="Marks the back edge of a loop body")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        return _check_identifier(id_value, "Edge ID")

    @field_validator('source_node_id', 'target_node_id')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are valid."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @field_validator('condition')
    @classmethod
    def normalize_condition(cls, condition):
        if condition is None:
            return None
        condition = condition.strip()
        return condition or None


class WorkflowDefinition(BaseModel):
    """Complete, immutable definition of a workflow graph.

    Structural rules (reachability, acyclicity, fan-in/fan-out) are checked
    by the GraphValidator so that every violation is reported at once.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Workflow identifier, stable across versions")
    version: int = Field(0, ge=0, description="Version assigned by the definition store on publish")
    name: str = Field(..., description="Name of the workflow")
    description: str = Field("", description="Description of the workflow")
    nodes: List[NodeDefinition] = Field(..., description="List of nodes in the graph")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="List of edges connecting nodes")
    entry_node_id: str = Field(..., description="ID of the starting node")
    timeout_seconds: Optional[float] = Field(None, description="Global execution deadline in seconds")
    compensate_on_failure: bool = Field(False, description="Run compensation whenever an execution fails")
    is_template: bool = Field(False, description="Whether the workflow is offered as a template")
    is_active: bool = Field(True, description="Inactive workflows keep their history but cannot be started")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        return _check_identifier(id_value, "Workflow ID")

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure workflow name is not empty."""
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @field_validator('timeout_seconds')
    @classmethod
    def validate_timeout(cls, timeout_seconds):
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        return timeout_seconds


class CompensationFailure(BaseModel):
    """A compensation action that raised."""
    node_id: str
    action: str
    error: str


class NodeExecutionRecord(BaseModel):
    """One attempt (or skip, or compensation) of one node within an execution."""
    node_id: str = Field(..., description="ID of the node")
    status: NodeStatusEnum = Field(..., description="Status of this attempt")
    attempt: int = Field(1, ge=0, description="1-based attempt number; 0 for skipped nodes")
    iteration: int = Field(0, ge=0, description="Iteration of the innermost enclosing loop")
    started_at: Optional[datetime] = Field(None, description="When the attempt started")
    completed_at: Optional[datetime] = Field(None, description="When the attempt finished")
    error: Optional[str] = Field(None, description="Error message if the attempt failed")
    output: Optional[Dict[str, Any]] = Field(None, description="Variables produced by the node")


class WorkflowExecution(BaseModel):
    """One run of a workflow definition."""
    id: str = Field(..., description="Unique identifier for the execution")
    workflow_id: str = Field(..., description="ID of the workflow being executed")
    workflow_version: int = Field(..., description="Version of the workflow being executed")
    trigger_type: TriggerType = Field(TriggerType.MANUAL, description="What started the execution")
    trigger_id: Optional[str] = Field(None, description="Trigger that started the execution, if any")
    status: ExecutionStatusEnum = Field(ExecutionStatusEnum.PENDING, description="Current execution status")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Execution variables")
    node_logs: List[NodeExecutionRecord] = Field(default_factory=list, description="Per-attempt node records")
    frontier: List[str] = Field(default_factory=list, description="Sorted ids of ready or running nodes")
    error: Optional[str] = Field(None, description="Human-readable failure cause")
    failed_node_id: Optional[str] = Field(None, description="Node whose failure failed the execution")
    compensation_failures: List[CompensationFailure] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow, description="Creation timestamp")
    started_at: Optional[datetime] = Field(None, description="Timestamp when execution started")
    completed_at: Optional[datetime] = Field(None, description="Timestamp when execution reached a terminal status")

    def records_for(self, node_id: str) -> List[NodeExecutionRecord]:
        return [record for record in self.node_logs if record.node_id == node_id]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatusEnum.COMPLETED,
    ExecutionStatusEnum.FAILED,
    ExecutionStatusEnum.CANCELLED,
    ExecutionStatusEnum.COMPENSATED,
})


class TriggerDefinition(BaseModel):
    """A registered way of starting a workflow."""
    id: str = Field(..., description="Trigger identifier")
    workflow_id: str = Field(..., description="Workflow started by this trigger")
    type: TriggerType = Field(..., description="Trigger type")
    config: Dict[str, Any] = Field(default_factory=dict, description="cron, event_name or path")
    enabled: bool = Field(True, description="Disabled triggers never fire")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_fired_at: Optional[datetime] = Field(None)


class StartRequest(BaseModel):
    """Uniform start request delivered by every trigger source."""
    workflow_id: str = Field(..., description="Workflow to start")
    trigger_type: TriggerType = Field(TriggerType.MANUAL)
    payload: Any = Field(None, description="Dict payloads seed the variables; others land under 'payload'")
    trigger_id: Optional[str] = Field(None)
    workflow_version: Optional[int] = Field(None, description="Pin a version; latest otherwise")

    def initial_variables(self) -> Dict[str, Any]:
        if self.payload is None:
            return {}
        if isinstance(self.payload, dict):
            return dict(self.payload)
        return {"payload": self.payload}


class WorkflowSummary(BaseModel):
    """Summary information about a published workflow."""
    id: str = Field(..., description="Workflow ID")
    version: int = Field(..., description="Latest version")
    name: str = Field(..., description="Workflow name")
    description: str = Field(..., description="Workflow description")
    is_template: bool = Field(False)
    is_active: bool = Field(True)
    node_count: int = Field(..., description="Number of nodes in the graph")
