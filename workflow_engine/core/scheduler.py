"""Execution Scheduler: the per-execution state machine and its shared runtime."""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from queue import Queue
from typing import Any, Callable, List, Optional

from ..models.core import CompensationFailure, ExecutionStatusEnum, WorkflowExecution
from .compensation import CompensationCoordinator
from .error_recovery import RetryConfig
from .exceptions import (
    AmbiguousBranchError, DeadlockTimeoutError, ExecutionCancelledError,
    InvalidExecutionStateError, NodeExecutionError, NodeTimeoutError, WorkflowEngineError
)
from .execution_context import READY, ExecutionContext
from .graph_validator import CompiledWorkflow
from .logging import clear_logging_context, get_logger, log_with_context, set_logging_context
from .node_executors import NodeExecutor, NodeOutcome, NodeRunContext

logger = get_logger(__name__)


class CancellationToken:
    """Cooperative cancellation flag checked by workers before and after each node."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExecutionCancelledError("Execution was cancelled")


class EventKind(str, Enum):
    START = "start"
    NODE_SUCCEEDED = "node_succeeded"
    NODE_FAILED = "node_failed"
    NODE_TIMEOUT = "node_timeout"
    DELAY_ELAPSED = "delay_elapsed"
    RETRY_DUE = "retry_due"
    COMPENSATION_DONE = "compensation_done"


@dataclass
class SchedulerEvent:
    """Message on the completion queue or the timer wheel."""
    kind: EventKind
    execution_id: str
    node_id: Optional[str] = None
    seq: Optional[int] = None
    outcome: Optional[NodeOutcome] = None
    error: Optional[BaseException] = None
    payload: Any = None


class TimerWheel:
    """Min-heap of events due at a monotonic time."""

    def __init__(self):
        self._heap: List[tuple] = []
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def schedule(self, delay: float, event: SchedulerEvent) -> None:
        due = time.monotonic() + max(0.0, delay)
        with self._lock:
            heapq.heappush(self._heap, (due, next(self._counter), event))

    def pop_due(self, now: Optional[float] = None) -> List[SchedulerEvent]:
        now = time.monotonic() if now is None else now
        due = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                due.append(heapq.heappop(self._heap)[2])
        return due

    def seconds_until_next(self, now: Optional[float] = None) -> Optional[float]:
        now = time.monotonic() if now is None else now
        with self._lock:
            if not self._heap:
                return None
            return max(0.0, self._heap[0][0] - now)

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)


class SchedulerRuntime:
    """The process-wide pieces every execution shares: worker pool, completion queue and timers."""

    def __init__(
        self,
        pool: ThreadPoolExecutor,
        completion_queue: Queue,
        timers: TimerWheel,
        action_provider,
        compensator: CompensationCoordinator,
        persist: Callable[[WorkflowExecution], None],
        on_finished: Callable[[str], None],
        node_timeout: Optional[float] = None,
        execution_timeout: Optional[float] = None,
        max_parallel_nodes: Optional[int] = None,
    ):
        self.pool = pool
        self.completion_queue = completion_queue
        self.timers = timers
        self.action_provider = action_provider
        self.compensator = compensator
        self.persist = persist
        self.on_finished = on_finished
        self.node_timeout = node_timeout
        self.execution_timeout = execution_timeout
        self.max_parallel_nodes = max_parallel_nodes

    def post(self, event: SchedulerEvent) -> None:
        self.completion_queue.put(event)


class ExecutionScheduler:
    """Drives one execution through pending -> running -> terminal.

    Every method runs under the execution context's lock. Events come from
    the dispatcher thread; ``cancel`` may be called from any thread.
    """

    def __init__(self, context: ExecutionContext, compiled: CompiledWorkflow, runtime: SchedulerRuntime):
        self.context = context
        self.compiled = compiled
        self.runtime = runtime
        self.token = CancellationToken()
        self.done = threading.Event()
        self._backlog: deque = deque()
        self._deadline: Optional[float] = None
        self._finish_pending = False
        self._finished = False
        self._stall_reported = False

    @property
    def execution_id(self) -> str:
        return self.context.execution_id

    def snapshot(self) -> WorkflowExecution:
        return self.context.snapshot()

    def handle(self, event: SchedulerEvent) -> None:
        """Apply one event from the completion queue or the timer wheel."""
        handlers = {
            EventKind.START: self._on_start,
            EventKind.NODE_SUCCEEDED: self._on_node_succeeded,
            EventKind.NODE_FAILED: self._on_node_failed,
            EventKind.NODE_TIMEOUT: self._on_node_timeout,
            EventKind.DELAY_ELAPSED: self._on_delay_elapsed,
            EventKind.RETRY_DUE: self._on_retry_due,
            EventKind.COMPENSATION_DONE: self._on_compensation_done,
        }
        with self.context.lock:
            status = self.context.status
            if event.kind == EventKind.START:
                accepted = status == ExecutionStatusEnum.PENDING
            elif event.kind == EventKind.COMPENSATION_DONE:
                accepted = status == ExecutionStatusEnum.COMPENSATING
            else:
                accepted = status == ExecutionStatusEnum.RUNNING
            if not accepted:
                logger.debug(f"Discarding {event.kind.value} for execution {self.execution_id} in status {status.value}")
                return

            if handlers[event.kind](event):
                self._persist()
            if self._finish_pending:
                self._finish()

    def cancel(self) -> WorkflowExecution:
        """Cancel the execution.

        Raises:
            InvalidExecutionStateError: If the execution is already terminal or compensating
        """
        with self.context.lock:
            status = self.context.status
            if self.context.is_terminal or status == ExecutionStatusEnum.COMPENSATING:
                raise InvalidExecutionStateError(
                    f"Execution {self.execution_id} cannot be cancelled in status '{status.value}'",
                    status=status.value,
                    execution_id=self.execution_id
                )
            self.token.cancel()
            self._backlog.clear()
            interrupted = self.context.cancel()
            log_with_context(
                logger, logging.INFO, f"Execution {self.execution_id} cancelled",
                execution_id=self.execution_id, interrupted_nodes=interrupted
            )
            self._persist()
            self._finish()
            return self.context.snapshot()

    def check_deadline(self, now: Optional[float] = None) -> bool:
        """Fail a run that is still running at its global deadline."""
        now = time.monotonic() if now is None else now
        with self.context.lock:
            if self._deadline is None or now < self._deadline:
                return False
            if self.context.status != ExecutionStatusEnum.RUNNING:
                return False
            pending = self.context.pending_nodes()
            error = DeadlockTimeoutError(
                f"Execution {self.execution_id} did not finish within its deadline; "
                f"unresolved nodes: {', '.join(pending) or 'none'}",
                execution_id=self.execution_id,
                pending_nodes=pending
            )
            self._fail_execution(error, None, self.compiled.definition.compensate_on_failure)
            self._persist()
            if self._finish_pending:
                self._finish()
            return True

    # Event handlers. Each returns True when the execution record changed.

    def _on_start(self, event: SchedulerEvent) -> bool:
        timeout = self.compiled.definition.timeout_seconds or self.runtime.execution_timeout
        if timeout:
            self._deadline = time.monotonic() + timeout
        ready = self.context.start()
        log_with_context(
            logger, logging.INFO, f"Execution {self.execution_id} started",
            execution_id=self.execution_id, workflow_id=self.context.workflow_id
        )
        self._enqueue(ready)
        return True

    def _on_node_succeeded(self, event: SchedulerEvent) -> bool:
        if not self.context.is_current(event.node_id, event.seq):
            logger.debug(f"Ignoring stale result for node '{event.node_id}' (seq {event.seq})")
            return False
        self.context.release_slot()

        outcome = event.outcome
        if outcome.resume_at is not None:
            delay = (outcome.resume_at - datetime.utcnow()).total_seconds()
            if delay > 0:
                logger.debug(f"Node '{event.node_id}' parked for {delay:.3f}s")
                self.runtime.timers.schedule(delay, SchedulerEvent(
                    EventKind.DELAY_ELAPSED, self.execution_id,
                    node_id=event.node_id, seq=event.seq, outcome=outcome
                ))
                self._pump()
                return True

        self._complete_node(event.node_id, outcome)
        return True

    def _on_delay_elapsed(self, event: SchedulerEvent) -> bool:
        if not self.context.is_current(event.node_id, event.seq):
            return False
        self._complete_node(event.node_id, event.outcome)
        return True

    def _on_node_failed(self, event: SchedulerEvent) -> bool:
        if not self.context.is_current(event.node_id, event.seq):
            logger.debug(f"Ignoring stale failure for node '{event.node_id}' (seq {event.seq})")
            return False
        self.context.release_slot()
        self._handle_failure(event.node_id, event.error)
        return True

    def _on_node_timeout(self, event: SchedulerEvent) -> bool:
        if not self.context.is_current(event.node_id, event.seq):
            return False
        self.context.release_slot()
        error = NodeTimeoutError(
            f"Node '{event.node_id}' exceeded max_duration of {event.payload}s",
            timeout_seconds=event.payload,
            node_id=event.node_id,
            execution_id=self.execution_id
        )
        self._handle_failure(event.node_id, error)
        return True

    def _on_retry_due(self, event: SchedulerEvent) -> bool:
        if self.context.node_status(event.node_id) != READY:
            return False
        self._enqueue([event.node_id])
        return True

    def _on_compensation_done(self, event: SchedulerEvent) -> bool:
        records, failures = event.payload
        self.context.finish_compensation(records, failures)
        log_with_context(
            logger, logging.INFO,
            f"Execution {self.execution_id} compensated ({len(records)} compensated, {len(failures)} failed)",
            execution_id=self.execution_id
        )
        self._finish_pending = True
        return True

    # State machine

    def _complete_node(self, node_id: str, outcome: NodeOutcome) -> None:
        try:
            self.context.mark_completed(node_id, outcome)
        except AmbiguousBranchError as e:
            self._fail_execution(e, node_id, self._should_compensate(node_id))
            return

        logger.debug(f"Node '{node_id}' completed in execution {self.execution_id}")
        if outcome.loop_continue:
            ready = self.context.reenter_loop(node_id)
        else:
            ready = self.context.advance_frontier()
        self._enqueue(ready)
        self._check_finished()

    def _handle_failure(self, node_id: str, error: BaseException) -> None:
        node = self.compiled.nodes[node_id]
        attempt = self.context.attempt_of(node_id)
        message = error.message if isinstance(error, WorkflowEngineError) else str(error)
        transient = getattr(error, "transient", False)

        if transient and attempt < node.retry.max_attempts:
            self.context.fail_attempt(node_id, message)
            delay = RetryConfig.from_policy(node.retry).get_delay(attempt)
            log_with_context(
                logger, logging.WARNING,
                f"Node '{node_id}' attempt {attempt}/{node.retry.max_attempts} failed, retrying in {delay:.3f}s: {message}",
                execution_id=self.execution_id, node_id=node_id, attempt=attempt
            )
            self.runtime.timers.schedule(delay, SchedulerEvent(EventKind.RETRY_DUE, self.execution_id, node_id=node_id))
            self._pump()
            return

        self.context.mark_failed(node_id, message)
        failure = NodeExecutionError(
            f"Node '{node_id}' failed after {attempt} attempt(s): {message}",
            node_id=node_id,
            execution_id=self.execution_id,
            attempt=attempt,
            transient=False
        )
        self._fail_execution(failure, node_id, self._should_compensate(node_id))

    def _should_compensate(self, node_id: Optional[str]) -> bool:
        if self.compiled.definition.compensate_on_failure:
            return True
        return node_id is not None and self.compiled.nodes[node_id].compensatable

    def _fail_execution(self, error: WorkflowEngineError, node_id: Optional[str], compensate: bool) -> None:
        self.token.cancel()
        self._backlog.clear()
        interrupted = self.context.fail(error.message, node_id)
        log_with_context(
            logger, logging.ERROR, f"Execution {self.execution_id} failed: {error.message}",
            execution_id=self.execution_id, failed_node_id=node_id,
            error_code=error.error_code, interrupted_nodes=interrupted
        )

        if not compensate:
            self._finish_pending = True
            return

        # Callers persist once the status reads compensating
        self.context.begin_compensation()
        snapshot = self.context.snapshot()
        try:
            self.runtime.pool.submit(self._run_compensation, snapshot)
        except RuntimeError as e:
            logger.error(f"Cannot schedule compensation for execution {self.execution_id}: {e}")
            self.context.finish_compensation([], [CompensationFailure(
                node_id=node_id or "", action="", error=f"compensation not scheduled: {e}"
            )])
            self._finish_pending = True

    def _check_finished(self) -> None:
        if self.context.is_finished():
            self.context.complete()
            log_with_context(
                logger, logging.INFO, f"Execution {self.execution_id} completed",
                execution_id=self.execution_id
            )
            self._finish_pending = True
        elif not self._backlog and not self.context.has_active_nodes() and not self._stall_reported:
            self._stall_reported = True
            logger.warning(
                f"Execution {self.execution_id} has no runnable nodes; waiting for its deadline "
                f"(unresolved: {', '.join(self.context.pending_nodes())})"
            )

    def _enqueue(self, node_ids: List[str]) -> None:
        self._backlog.extend(node_ids)
        self._pump()

    def _pump(self) -> None:
        cap = self.runtime.max_parallel_nodes
        while self._backlog and (not cap or self.context.occupied_slots < cap):
            node_id = self._backlog.popleft()
            if self.context.node_status(node_id) != READY:
                continue
            self._submit(node_id)

    def _submit(self, node_id: str) -> None:
        node = self.compiled.nodes[node_id]
        executor = self.compiled.executors[node_id]
        seq, attempt, iteration = self.context.begin_attempt(node_id)
        run_ctx = NodeRunContext(
            node=node,
            variables=self.context.variables_snapshot(),
            execution_id=self.execution_id,
            workflow_id=self.context.workflow_id,
            attempt=attempt,
            iteration=iteration,
            cancellation_token=self.token,
            action_provider=self.runtime.action_provider,
        )

        if executor.enforce_timeout:
            limit = node.max_duration or self.runtime.node_timeout
            if limit:
                self.runtime.timers.schedule(limit, SchedulerEvent(
                    EventKind.NODE_TIMEOUT, self.execution_id, node_id=node_id, seq=seq, payload=limit
                ))

        try:
            self.runtime.pool.submit(self._run_node, executor, run_ctx, seq)
        except RuntimeError as e:
            self.runtime.post(SchedulerEvent(
                EventKind.NODE_FAILED, self.execution_id, node_id=node_id, seq=seq,
                error=NodeExecutionError(f"Worker pool unavailable: {e}", node_id=node_id, transient=False)
            ))

    def _run_node(self, executor: NodeExecutor, run_ctx: NodeRunContext, seq: int) -> None:
        """Worker-side body of one node attempt."""
        node_id = run_ctx.node.id
        set_logging_context(execution_id=run_ctx.execution_id, workflow_id=run_ctx.workflow_id, node_id=node_id)
        try:
            run_ctx.cancellation_token.raise_if_cancelled()
            outcome = executor.execute(run_ctx)
            run_ctx.cancellation_token.raise_if_cancelled()
        except ExecutionCancelledError:
            logger.debug(f"Node '{node_id}' abandoned after cancellation")
            return
        except NodeExecutionError as e:
            event = SchedulerEvent(EventKind.NODE_FAILED, run_ctx.execution_id, node_id=node_id, seq=seq, error=e)
        except WorkflowEngineError as e:
            event = SchedulerEvent(
                EventKind.NODE_FAILED, run_ctx.execution_id, node_id=node_id, seq=seq,
                error=NodeExecutionError(e.message, node_id=node_id, transient=e.recoverable)
            )
        except Exception as e:
            logger.error(f"Unexpected error in node '{node_id}': {e}", exc_info=True)
            event = SchedulerEvent(
                EventKind.NODE_FAILED, run_ctx.execution_id, node_id=node_id, seq=seq,
                error=NodeExecutionError(f"{type(e).__name__}: {e}", node_id=node_id, transient=True)
            )
        else:
            event = SchedulerEvent(EventKind.NODE_SUCCEEDED, run_ctx.execution_id, node_id=node_id, seq=seq,
                                   outcome=outcome)
        finally:
            clear_logging_context()
        self.runtime.post(event)

    def _run_compensation(self, snapshot: WorkflowExecution) -> None:
        set_logging_context(execution_id=snapshot.id, workflow_id=snapshot.workflow_id)
        try:
            records, failures = self.runtime.compensator.compensate(snapshot, self.compiled)
        except Exception as e:
            logger.error(f"Compensation walk for execution {snapshot.id} aborted: {e}", exc_info=True)
            records, failures = [], [CompensationFailure(
                node_id=snapshot.failed_node_id or "", action="", error=str(e)
            )]
        finally:
            clear_logging_context()
        self.runtime.post(SchedulerEvent(
            EventKind.COMPENSATION_DONE, snapshot.id, payload=(records, failures)
        ))

    def _persist(self) -> None:
        self.runtime.persist(self.context.snapshot())

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._finish_pending = False
        self.done.set()
        self.runtime.on_finished(self.execution_id)
