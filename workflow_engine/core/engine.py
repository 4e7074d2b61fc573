"""Workflow Engine: façade over validation, scheduling and persistence."""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from queue import Empty, Queue
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import (
    ExecutionStatusEnum, StartRequest, ValidationResult, WorkflowDefinition, WorkflowExecution
)
from .action_provider import ActionProvider
from .compensation import CompensationCoordinator
from .definition_store import DefinitionStore
from .exceptions import (
    ExecutionEngineError, GraphValidationError, InvalidExecutionStateError,
    ResourceExhaustionError, WorkflowAlreadyExistsError, WorkflowInactiveError, WorkflowNotFoundError
)
from .execution_context import ExecutionContext
from .graph_validator import CompiledWorkflow, GraphValidator
from .logging import get_logger
from .node_executors import NodeExecutorRegistry, create_default_registry
from .scheduler import EventKind, ExecutionScheduler, SchedulerEvent, SchedulerRuntime, TimerWheel

logger = get_logger(__name__)

_STOP = object()


class WorkflowEngine:
    """Runs workflow executions on a shared worker pool.

    One dispatcher thread consumes the completion queue, fires due timers
    (retry backoff, delay resumes, node timeouts) and enforces execution
    deadlines. It never runs node work itself.
    """

    def __init__(
        self,
        store: DefinitionStore,
        action_provider: ActionProvider,
        registry: Optional[NodeExecutorRegistry] = None,
        worker_pool_size: int = 8,
        max_parallel_nodes_per_execution: Optional[int] = None,
        max_active_executions: int = 1000,
        execution_timeout: Optional[float] = None,
        node_timeout: Optional[float] = None,
        tick_interval: float = 0.05,
        autostart: bool = True,
    ):
        """Initialize the workflow engine.

        Args:
            store: Repository for definitions, executions and triggers
            action_provider: Registry of actions callable by task nodes
            registry: Node executors; the built-in types by default
            worker_pool_size: Threads shared by all executions
            max_parallel_nodes_per_execution: Cap on one execution's concurrently running nodes
            max_active_executions: Executions accepted before start() is refused
            execution_timeout: Default global deadline in seconds
            node_timeout: Default per-node max_duration in seconds
            tick_interval: Longest the dispatcher sleeps between checks
            autostart: Start the dispatcher thread immediately
        """
        self.store = store
        self.action_provider = action_provider
        self.registry = registry or create_default_registry()
        self.validator = GraphValidator(self.registry, action_provider)
        self.compensator = CompensationCoordinator(action_provider)
        self.worker_pool_size = worker_pool_size
        self.max_parallel_nodes_per_execution = max_parallel_nodes_per_execution
        self.max_active_executions = max_active_executions
        self.tick_interval = tick_interval

        self._pool = ThreadPoolExecutor(max_workers=worker_pool_size, thread_name_prefix="WorkflowWorker")
        self._queue: Queue = Queue()
        self._timers = TimerWheel()
        self._runtime = SchedulerRuntime(
            pool=self._pool,
            completion_queue=self._queue,
            timers=self._timers,
            action_provider=action_provider,
            compensator=self.compensator,
            persist=self._persist,
            on_finished=self._on_finished,
            node_timeout=node_timeout,
            execution_timeout=execution_timeout,
            max_parallel_nodes=max_parallel_nodes_per_execution,
        )

        self._active: Dict[str, ExecutionScheduler] = {}
        self._lock = threading.RLock()
        self._running = False
        self._dispatcher_thread: Optional[threading.Thread] = None

        if autostart:
            self.startup()

        logger.info(
            f"WorkflowEngine initialized with worker_pool_size={worker_pool_size}, "
            f"max_parallel_nodes_per_execution={max_parallel_nodes_per_execution}"
        )

    # Lifecycle

    def startup(self) -> None:
        """Start the dispatcher thread."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._dispatcher_thread = threading.Thread(
                target=self._dispatch_loop,
                daemon=True,
                name="WorkflowDispatcher"
            )
            self._dispatcher_thread.start()
        logger.info("Workflow dispatcher started")

    def shutdown(self, wait: bool = True, timeout: float = 5.0) -> None:
        """Cancel active executions, stop the dispatcher and the worker pool."""
        with self._lock:
            active = list(self._active.values())
        for scheduler in active:
            try:
                scheduler.cancel()
            except InvalidExecutionStateError:
                pass

        with self._lock:
            was_running = self._running
            self._running = False
        if was_running:
            self._queue.put(_STOP)
            if self._dispatcher_thread and self._dispatcher_thread.is_alive():
                self._dispatcher_thread.join(timeout=timeout)
        self._pool.shutdown(wait=wait, cancel_futures=True)
        logger.info("WorkflowEngine shut down")

    @property
    def is_running(self) -> bool:
        return self._running

    # Definitions

    def validate_definition(self, definition: WorkflowDefinition) -> ValidationResult:
        return self.validator.validate(definition)

    def publish_definition(self, definition: WorkflowDefinition) -> Tuple[WorkflowDefinition, ValidationResult]:
        """
        Validate and store a new version of a workflow definition.

        Returns:
            (stored definition with its assigned version, validation result with warnings)

        Raises:
            GraphValidationError: If the definition is invalid
            StorageError: If the store fails
        """
        result = self.validator.validate(definition)
        if not result.is_valid:
            logger.error(f"Workflow '{definition.id}' rejected: {'; '.join(result.errors)}")
            raise GraphValidationError(
                f"Workflow validation failed: {'; '.join(result.errors)}",
                validation_errors=result.errors,
                workflow_id=definition.id
            )
        if result.warnings:
            logger.warning(f"Workflow '{definition.id}' validation warnings: {'; '.join(result.warnings)}")

        stored = self.store.save_definition(definition)
        self.validator.compile(stored)
        logger.info(f"Published workflow '{stored.id}' version {stored.version}")
        return stored, result

    def get_definition(self, workflow_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        return self.store.get_definition(workflow_id, version)

    def list_definitions(self, templates_only: bool = False, active_only: bool = False,
                         limit: Optional[int] = None, offset: int = 0) -> List[WorkflowDefinition]:
        """Latest version of each workflow. Templates are only offered while active."""
        return self.store.list_definitions(
            templates_only=templates_only, active_only=active_only or templates_only, limit=limit, offset=offset
        )

    def count_definitions(self, templates_only: bool = False, active_only: bool = False) -> int:
        return self.store.count_definitions(templates_only=templates_only, active_only=active_only or templates_only)

    def set_active(self, workflow_id: str, active: bool) -> WorkflowDefinition:
        """
        Activate or deactivate every version of a workflow.

        Running executions are not affected; an inactive workflow cannot be started.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
        """
        self.store.set_active(workflow_id, active)
        logger.info(f"Workflow '{workflow_id}' {'activated' if active else 'deactivated'}")
        return self.store.get_definition(workflow_id)

    def compile(self, workflow_id: str, version: Optional[int] = None) -> CompiledWorkflow:
        return self.validator.compile(self.store.get_definition(workflow_id, version))

    def duplicate_workflow(self, workflow_id: str, new_id: Optional[str] = None,
                           name: Optional[str] = None) -> WorkflowDefinition:
        """Publish a copy of the latest version of ``workflow_id`` under a new id."""
        source = self.store.get_definition(workflow_id)
        new_id = new_id or f"{workflow_id}-copy-{uuid.uuid4().hex[:8]}"
        try:
            self.store.get_definition(new_id)
        except WorkflowNotFoundError:
            pass
        else:
            raise WorkflowAlreadyExistsError(new_id)

        copy = source.model_copy(update={
            "id": new_id,
            "version": 0,
            "name": name or f"{source.name} (copy)",
            "is_template": False,
            "is_active": True,
        }, deep=True)
        stored, _ = self.publish_definition(copy)
        logger.info(f"Duplicated workflow '{workflow_id}' as '{new_id}'")
        return stored

    # Executions

    def start(self, request: StartRequest) -> WorkflowExecution:
        """
        Create a pending execution and hand it to the dispatcher.

        Returns:
            Snapshot of the new execution (status pending)

        Raises:
            WorkflowNotFoundError: If the workflow or pinned version does not exist
            WorkflowInactiveError: If the workflow has been deactivated
            GraphValidationError: If the stored definition does not compile
            ResourceExhaustionError: If too many executions are active
            ExecutionEngineError: If the engine is shut down
        """
        if not self._running:
            raise ExecutionEngineError("Workflow engine is not running", workflow_id=request.workflow_id)

        definition = self.store.get_definition(request.workflow_id, request.workflow_version)
        if not definition.is_active:
            raise WorkflowInactiveError(definition.id)
        compiled = self.validator.compile(definition)

        with self._lock:
            if len(self._active) >= self.max_active_executions:
                raise ResourceExhaustionError(
                    f"Too many active executions ({len(self._active)}), please try again later",
                    resource_type="executions"
                )
            execution = WorkflowExecution(
                id=str(uuid.uuid4()),
                workflow_id=definition.id,
                workflow_version=definition.version,
                trigger_type=request.trigger_type,
                trigger_id=request.trigger_id,
                variables=request.initial_variables(),
            )
            scheduler = ExecutionScheduler(ExecutionContext(execution, compiled), compiled, self._runtime)
            snapshot = scheduler.snapshot()
            try:
                self.store.save_execution(snapshot)
            except Exception:
                logger.error(f"Could not persist new execution for workflow '{definition.id}'")
                raise
            self._active[execution.id] = scheduler

        self._queue.put(SchedulerEvent(EventKind.START, execution.id))
        logger.info(
            f"Queued execution {execution.id} of workflow '{definition.id}' v{definition.version} "
            f"(trigger={request.trigger_type.value})"
        )
        return snapshot

    def cancel(self, execution_id: str) -> WorkflowExecution:
        """
        Cancel an execution.

        Raises:
            ExecutionNotFoundError: If the execution is unknown
            InvalidExecutionStateError: If the execution is already terminal
        """
        with self._lock:
            scheduler = self._active.get(execution_id)
        if scheduler is not None:
            return scheduler.cancel()

        execution = self.store.get_execution(execution_id)
        if execution.is_terminal or execution.status == ExecutionStatusEnum.COMPENSATING:
            raise InvalidExecutionStateError(
                f"Execution {execution_id} cannot be cancelled in status '{execution.status.value}'",
                status=execution.status.value,
                execution_id=execution_id
            )
        # Left non-terminal by an earlier process; nothing is running it any more.
        execution.status = ExecutionStatusEnum.CANCELLED
        execution.completed_at = datetime.utcnow()
        execution.frontier = []
        self.store.save_execution(execution)
        logger.warning(f"Cancelled orphaned execution {execution_id}")
        return execution

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        with self._lock:
            scheduler = self._active.get(execution_id)
        if scheduler is not None:
            return scheduler.snapshot()
        return self.store.get_execution(execution_id)

    def list_executions(self, workflow_id: Optional[str] = None, status: Optional[ExecutionStatusEnum] = None,
                        limit: int = 50, offset: int = 0) -> List[WorkflowExecution]:
        return self.store.list_executions(workflow_id=workflow_id, status=status, limit=limit, offset=offset)

    def count_executions(self, workflow_id: Optional[str] = None,
                         status: Optional[ExecutionStatusEnum] = None) -> int:
        return self.store.count_executions(workflow_id=workflow_id, status=status)

    def wait_for(self, execution_id: str, timeout: Optional[float] = None) -> WorkflowExecution:
        """Block until the execution reaches a terminal status (or ``timeout`` elapses)."""
        with self._lock:
            scheduler = self._active.get(execution_id)
        if scheduler is not None:
            scheduler.done.wait(timeout)
            return scheduler.snapshot()
        return self.store.get_execution(execution_id)

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            active = len(self._active)
        return {
            "active_executions": active,
            "max_active_executions": self.max_active_executions,
            "worker_pool_size": self.worker_pool_size,
            "max_parallel_nodes_per_execution": self.max_parallel_nodes_per_execution,
            "queued_events": self._queue.qsize(),
            "pending_timers": len(self._timers),
            "dispatcher_running": self._running,
            "executions_by_status": self.store.count_executions_by_status(),
        }

    def health_check(self) -> Dict[str, Any]:
        alive = bool(self._dispatcher_thread and self._dispatcher_thread.is_alive())
        if not alive:
            raise ExecutionEngineError("Workflow dispatcher thread is not running")
        with self._lock:
            active = len(self._active)
        return {"message": "dispatcher running", "active_executions": active}

    # Dispatcher

    def _persist(self, execution: WorkflowExecution) -> None:
        try:
            self.store.save_execution(execution)
        except Exception as e:
            logger.error(f"Failed to persist execution {execution.id} ({execution.status.value}): {str(e)}")

    def _on_finished(self, execution_id: str) -> None:
        with self._lock:
            self._active.pop(execution_id, None)

    def _route(self, event: SchedulerEvent) -> None:
        with self._lock:
            scheduler = self._active.get(event.execution_id)
        if scheduler is None:
            logger.debug(f"Dropping {event.kind.value} for inactive execution {event.execution_id}")
            return
        try:
            scheduler.handle(event)
        except Exception as e:
            logger.error(
                f"Error handling {event.kind.value} for execution {event.execution_id}: {str(e)}",
                exc_info=True
            )

    def _check_deadlines(self) -> None:
        with self._lock:
            schedulers = list(self._active.values())
        now = time.monotonic()
        for scheduler in schedulers:
            try:
                scheduler.check_deadline(now)
            except Exception as e:
                logger.error(f"Error checking deadline of execution {scheduler.execution_id}: {str(e)}")

    def _dispatch_loop(self) -> None:
        """Process completions and timers until shutdown."""
        while self._running:
            timeout = self.tick_interval
            next_due = self._timers.seconds_until_next()
            if next_due is not None:
                timeout = min(timeout, next_due)

            try:
                event = self._queue.get(timeout=timeout)
            except Empty:
                event = None

            if event is _STOP:
                break
            if event is not None:
                self._route(event)

            for due in self._timers.pop_due():
                self._route(due)
            self._check_deadlines()

        logger.info("Workflow dispatcher stopped")
