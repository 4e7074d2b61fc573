"""FastAPI REST endpoints for the workflow engine."""

from typing import Dict, List, Any, Optional
from fastapi import APIRouter, Body, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from ..core.engine import WorkflowEngine
from ..core.triggers import TriggerService
from ..core.action_provider import ActionProvider
from ..core.exceptions import WorkflowEngineError, create_error_response
from ..core.middleware import get_status_code_for_error
from ..models.core import (
    ExecutionStatusEnum,
    StartRequest,
    TriggerDefinition,
    TriggerType,
    ValidationResult,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowSummary,
)
from ..core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["workflow"])


def get_engine(request: Request) -> WorkflowEngine:
    """Dependency to get the workflow engine."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Workflow engine not initialized"
        )
    return engine


def get_trigger_service(request: Request) -> TriggerService:
    """Dependency to get the trigger service."""
    service = getattr(request.app.state, "trigger_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Trigger service not initialized"
        )
    return service


def get_action_provider(request: Request) -> ActionProvider:
    """Dependency to get the action provider."""
    provider = getattr(request.app.state, "action_provider", None)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Action provider not initialized"
        )
    return provider


def _http_error(error: WorkflowEngineError) -> HTTPException:
    """Translate an engine error into an HTTPException carrying the standard error body."""
    status_code = get_status_code_for_error(error)
    if status_code >= 500:
        logger.error(f"{error.error_code}: {error.message}")
    else:
        logger.warning(f"{error.error_code}: {error.message}")
    return HTTPException(status_code=status_code, detail=create_error_response(error))


# Request/Response models

class PublishWorkflowResponse(BaseModel):
    """Response model for publishing a workflow."""
    workflow_id: str = Field(..., description="Workflow identifier")
    version: int = Field(..., description="Version assigned to the stored definition")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class DuplicateWorkflowRequest(BaseModel):
    """Request model for duplicating a workflow."""
    new_id: Optional[str] = Field(None, description="Identifier of the copy; generated when omitted")
    name: Optional[str] = Field(None, description="Name of the copy")


class WorkflowPage(BaseModel):
    """One page of the workflow listing."""
    items: List[WorkflowSummary] = Field(default_factory=list, description="Workflows on this page")
    total: int = Field(..., description="Workflows matching the filters")
    limit: int
    offset: int


class ExecutionPage(BaseModel):
    """One page of the execution listing."""
    items: List[WorkflowExecution] = Field(default_factory=list, description="Executions on this page, newest first")
    total: int = Field(..., description="Executions matching the filters")
    limit: int
    offset: int


class StartExecutionRequest(BaseModel):
    """Request model for starting an execution."""
    payload: Any = Field(None, description="Trigger payload; dict payloads seed the variables")
    workflow_version: Optional[int] = Field(None, description="Pin a version; latest otherwise")


class StartExecutionResponse(BaseModel):
    """Response model for a started execution."""
    execution_id: str = Field(..., description="Unique identifier for the execution")
    workflow_id: str = Field(..., description="Workflow being executed")
    workflow_version: int = Field(..., description="Version being executed")
    status: str = Field(..., description="Initial execution status")
    message: str = Field(..., description="Success message")


class CancelExecutionResponse(BaseModel):
    """Response model for a cancelled execution."""
    execution_id: str = Field(..., description="Cancelled execution")
    status: str = Field(..., description="Execution status after cancellation")
    message: str = Field(..., description="Success message")


class CreateTriggerRequest(BaseModel):
    """Request model for registering a trigger."""
    type: TriggerType = Field(..., description="Trigger type")
    config: Dict[str, Any] = Field(default_factory=dict, description="cron, event_name or path")
    enabled: bool = Field(True, description="Whether the trigger fires")


class EventResponse(BaseModel):
    """Response model for a published event."""
    event_name: str
    execution_ids: List[str] = Field(default_factory=list)


def _summary(definition: WorkflowDefinition) -> WorkflowSummary:
    return WorkflowSummary(
        id=definition.id,
        version=definition.version,
        name=definition.name,
        description=definition.description,
        is_template=definition.is_template,
        is_active=definition.is_active,
        node_count=len(definition.nodes)
    )


def _started(execution: WorkflowExecution) -> StartExecutionResponse:
    return StartExecutionResponse(
        execution_id=execution.id,
        workflow_id=execution.workflow_id,
        workflow_version=execution.workflow_version,
        status=execution.status.value,
        message="Workflow execution started successfully"
    )


# Workflows

@router.post(
    "/workflows",
    response_model=PublishWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Publish a workflow definition",
    description="Validate a workflow definition and store it as the next version of its id"
)
async def publish_workflow(
    request: Request,
    definition: WorkflowDefinition
) -> PublishWorkflowResponse:
    """
    Publish a workflow definition.

    Args:
        request: Incoming request
        definition: Workflow definition to validate and store

    Returns:
        The assigned version and any validation warnings

    Raises:
        HTTPException: 400 if the definition is invalid
    """
    engine = get_engine(request)
    try:
        stored, result = engine.publish_definition(definition)
    except WorkflowEngineError as e:
        raise _http_error(e)

    return PublishWorkflowResponse(
        workflow_id=stored.id,
        version=stored.version,
        message=f"Workflow '{stored.name}' published as version {stored.version}",
        validation_warnings=result.warnings
    )


@router.post(
    "/workflows/validate",
    response_model=ValidationResult,
    summary="Validate a workflow definition without storing it"
)
async def validate_workflow(request: Request, definition: WorkflowDefinition) -> ValidationResult:
    return get_engine(request).validate_definition(definition)


@router.get(
    "/workflows",
    response_model=WorkflowPage,
    summary="List published workflows",
    description="Latest version of each workflow ordered by id; inactive workflows are hidden unless requested"
)
async def list_workflows(
    request: Request,
    templates_only: bool = Query(False, description="Only return active templates"),
    include_inactive: bool = Query(False, description="Also return deactivated workflows"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0)
) -> WorkflowPage:
    engine = get_engine(request)
    try:
        definitions = engine.list_definitions(
            templates_only=templates_only, active_only=not include_inactive, limit=limit, offset=offset
        )
        total = engine.count_definitions(templates_only=templates_only, active_only=not include_inactive)
    except WorkflowEngineError as e:
        raise _http_error(e)

    return WorkflowPage(items=[_summary(definition) for definition in definitions],
                        total=total, limit=limit, offset=offset)


@router.get(
    "/workflows/{workflow_id}",
    response_model=WorkflowDefinition,
    summary="Get a workflow definition",
    description="Return the latest version, or the version given in the query string"
)
async def get_workflow(
    request: Request,
    workflow_id: str,
    version: Optional[int] = Query(None, ge=1, description="Version to fetch")
) -> WorkflowDefinition:
    try:
        return get_engine(request).get_definition(workflow_id, version)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/workflows/{workflow_id}/duplicate",
    response_model=PublishWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Publish a copy of a workflow under a new id"
)
async def duplicate_workflow(
    request: Request,
    workflow_id: str,
    body: Optional[DuplicateWorkflowRequest] = None
) -> PublishWorkflowResponse:
    try:
        body = body or DuplicateWorkflowRequest()
        stored = get_engine(request).duplicate_workflow(workflow_id, new_id=body.new_id, name=body.name)
    except WorkflowEngineError as e:
        raise _http_error(e)

    return PublishWorkflowResponse(
        workflow_id=stored.id,
        version=stored.version,
        message=f"Workflow '{workflow_id}' duplicated as '{stored.id}'"
    )


@router.post(
    "/workflows/{workflow_id}/activate",
    response_model=WorkflowSummary,
    summary="Allow new executions of a workflow"
)
async def activate_workflow(request: Request, workflow_id: str) -> WorkflowSummary:
    try:
        return _summary(get_engine(request).set_active(workflow_id, True))
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/workflows/{workflow_id}/deactivate",
    response_model=WorkflowSummary,
    summary="Refuse new executions of a workflow",
    description="Running executions continue; starts and trigger firings are rejected with 409"
)
async def deactivate_workflow(request: Request, workflow_id: str) -> WorkflowSummary:
    try:
        return _summary(get_engine(request).set_active(workflow_id, False))
    except WorkflowEngineError as e:
        raise _http_error(e)


# Executions

@router.post(
    "/workflows/{workflow_id}/executions",
    response_model=StartExecutionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a workflow execution",
    description="Start a manual execution of the workflow with the given payload"
)
async def start_execution(
    request: Request,
    workflow_id: str,
    body: Optional[StartExecutionRequest] = None
) -> StartExecutionResponse:
    """
    Start a workflow execution.

    Args:
        request: Incoming request
        workflow_id: Workflow to start
        body: Payload and optional pinned version

    Returns:
        The new execution id and its initial status

    Raises:
        HTTPException: 404 if the workflow is unknown, 409 if it is inactive,
            503 if the engine is saturated
    """
    engine = get_engine(request)
    body = body or StartExecutionRequest()
    try:
        execution = engine.start(StartRequest(
            workflow_id=workflow_id,
            trigger_type=TriggerType.MANUAL,
            payload=body.payload,
            workflow_version=body.workflow_version
        ))
    except WorkflowEngineError as e:
        raise _http_error(e)

    logger.info(f"Started execution {execution.id} of workflow '{workflow_id}'")
    return _started(execution)


@router.get(
    "/workflows/{workflow_id}/executions",
    response_model=List[WorkflowExecution],
    summary="List executions of a workflow"
)
async def list_executions(
    request: Request,
    workflow_id: str,
    status_filter: Optional[ExecutionStatusEnum] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0)
) -> List[WorkflowExecution]:
    try:
        return get_engine(request).list_executions(
            workflow_id=workflow_id, status=status_filter, limit=limit, offset=offset
        )
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get(
    "/executions",
    response_model=ExecutionPage,
    summary="List executions across workflows",
    description="Newest first, optionally filtered by status and workflow"
)
async def list_all_executions(
    request: Request,
    status_filter: Optional[ExecutionStatusEnum] = Query(None, alias="status"),
    workflow_id: Optional[str] = Query(None, description="Only executions of this workflow"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0)
) -> ExecutionPage:
    engine = get_engine(request)
    try:
        executions = engine.list_executions(
            workflow_id=workflow_id, status=status_filter, limit=limit, offset=offset
        )
        total = engine.count_executions(workflow_id=workflow_id, status=status_filter)
    except WorkflowEngineError as e:
        raise _http_error(e)

    return ExecutionPage(items=executions, total=total, limit=limit, offset=offset)


@router.get(
    "/executions/{execution_id}",
    response_model=WorkflowExecution,
    summary="Get an execution",
    description="Return status, variables, frontier and per-node records of an execution"
)
async def get_execution(request: Request, execution_id: str) -> WorkflowExecution:
    try:
        return get_engine(request).get_execution(execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/executions/{execution_id}/cancel",
    response_model=CancelExecutionResponse,
    summary="Cancel an execution"
)
async def cancel_execution(request: Request, execution_id: str) -> CancelExecutionResponse:
    """
    Cancel a running execution.

    Raises:
        HTTPException: 404 if unknown, 409 if the execution already finished
    """
    try:
        execution = get_engine(request).cancel(execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e)

    logger.info(f"Cancelled execution {execution_id}")
    return CancelExecutionResponse(
        execution_id=execution.id,
        status=execution.status.value,
        message="Execution cancelled"
    )


# Triggers

@router.post(
    "/workflows/{workflow_id}/triggers",
    response_model=TriggerDefinition,
    status_code=status.HTTP_201_CREATED,
    summary="Register a trigger for a workflow"
)
async def create_trigger(request: Request, workflow_id: str, body: CreateTriggerRequest) -> TriggerDefinition:
    try:
        return get_trigger_service(request).register_trigger(
            workflow_id, body.type, config=body.config, enabled=body.enabled
        )
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get(
    "/workflows/{workflow_id}/triggers",
    response_model=List[TriggerDefinition],
    summary="List the triggers of a workflow"
)
async def list_triggers(request: Request, workflow_id: str) -> List[TriggerDefinition]:
    try:
        return get_trigger_service(request).list_triggers(workflow_id=workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.delete(
    "/triggers/{trigger_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a trigger"
)
async def delete_trigger(request: Request, trigger_id: str) -> None:
    try:
        get_trigger_service(request).delete_trigger(trigger_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post(
    "/hooks/{trigger_id}",
    response_model=StartExecutionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Fire a webhook trigger",
    description="Start the trigger's workflow with the request body as payload"
)
async def fire_webhook(request: Request, trigger_id: str, payload: Any = Body(None)) -> StartExecutionResponse:
    try:
        execution = get_trigger_service(request).fire_webhook(trigger_id, payload)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return _started(execution)


@router.post(
    "/events/{event_name}",
    response_model=EventResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Publish an event",
    description="Start every enabled event trigger listening for the event"
)
async def publish_event(request: Request, event_name: str, payload: Any = Body(None)) -> EventResponse:
    started = get_trigger_service(request).publish_event(event_name, payload)
    return EventResponse(event_name=event_name, execution_ids=[execution.id for execution in started])


# Engine

@router.get(
    "/actions",
    response_model=Dict[str, str],
    summary="List registered actions",
    description="Return the names and descriptions of actions callable by task nodes"
)
async def list_actions(request: Request) -> Dict[str, str]:
    return get_action_provider(request).list_actions()


@router.get(
    "/engine/statistics",
    summary="Get engine statistics"
)
async def get_engine_statistics(request: Request) -> Dict[str, Any]:
    try:
        return get_engine(request).get_statistics()
    except WorkflowEngineError as e:
        raise _http_error(e)
