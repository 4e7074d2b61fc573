"""Per-execution mutable state, guarded by a single lock."""

import copy
import itertools
import threading
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import (
    CompensationFailure, ExecutionStatusEnum, NodeExecutionRecord, NodeStatusEnum, WorkflowExecution
)
from .exceptions import AmbiguousBranchError
from .expressions import ExpressionError, evaluate_bool
from .graph_validator import CompiledWorkflow
from .logging import get_logger
from .node_executors import NodeOutcome

logger = get_logger(__name__)


# Scheduling states of a node within one execution. READY and RUNNING make
# up the frontier; READY covers nodes waiting for a worker slot or a retry.
PENDING = "pending"
READY = "ready"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
SKIPPED = "skipped"
CANCELLED = "cancelled"

_FRONTIER_STATES = (READY, RUNNING)
_RESOLVED_STATES = (COMPLETED, SKIPPED)


class ExecutionContext:
    """Owns the WorkflowExecution record of one run and every decision made about it.

    All public methods take ``lock``; callers that need several operations
    to be atomic (the scheduler) hold it across them.
    """

    def __init__(self, execution: WorkflowExecution, compiled: CompiledWorkflow):
        self.lock = threading.RLock()
        self.compiled = compiled
        self._execution = execution
        self._status: Dict[str, str] = {node_id: PENDING for node_id in compiled.nodes}
        self._edges: Dict[str, Optional[bool]] = {
            edge.id: None for edges in compiled.outgoing.values() for edge in edges
        }
        self._attempts: Dict[str, int] = defaultdict(int)
        self._loop_counts: Dict[str, int] = defaultdict(int)
        self._inflight: Dict[str, int] = {}
        self._open_records: Dict[str, int] = {}
        self._seq = itertools.count(1)
        self.occupied_slots = 0

    @property
    def execution_id(self) -> str:
        return self._execution.id

    @property
    def workflow_id(self) -> str:
        return self._execution.workflow_id

    @property
    def status(self) -> ExecutionStatusEnum:
        with self.lock:
            return self._execution.status

    @property
    def is_terminal(self) -> bool:
        with self.lock:
            return self._execution.is_terminal

    # Variables

    def get_variable(self, name: str, default: Any = None) -> Any:
        with self.lock:
            return copy.deepcopy(self._execution.variables.get(name, default))

    def set_variables(self, batch: Dict[str, Any]) -> None:
        with self.lock:
            self._execution.variables.update(copy.deepcopy(batch))

    def variables_snapshot(self) -> Dict[str, Any]:
        with self.lock:
            return copy.deepcopy(self._execution.variables)

    # Node bookkeeping

    def node_status(self, node_id: str) -> str:
        with self.lock:
            return self._status[node_id]

    def attempt_of(self, node_id: str) -> int:
        with self.lock:
            return self._attempts[node_id]

    def iteration_of(self, node_id: str) -> int:
        with self.lock:
            loop_id = self.compiled.enclosing_loop.get(node_id)
            return self._loop_counts[loop_id] if loop_id else 0

    def frontier(self) -> List[str]:
        with self.lock:
            return sorted(node_id for node_id, state in self._status.items() if state in _FRONTIER_STATES)

    def pending_nodes(self) -> List[str]:
        with self.lock:
            return sorted(
                node_id for node_id, state in self._status.items()
                if state not in _RESOLVED_STATES
            )

    def is_current(self, node_id: str, seq: int) -> bool:
        """Whether ``seq`` identifies the attempt of ``node_id`` that is still in flight."""
        with self.lock:
            return self._inflight.get(node_id) == seq

    def release_slot(self) -> None:
        with self.lock:
            self.occupied_slots = max(0, self.occupied_slots - 1)

    def start(self) -> List[str]:
        """Move the execution to running and make the entry node ready."""
        with self.lock:
            self._execution.status = ExecutionStatusEnum.RUNNING
            self._execution.started_at = datetime.utcnow()
            entry = self.compiled.entry_node_id
            self._status[entry] = READY
            return [entry]

    def begin_attempt(self, node_id: str) -> Tuple[int, int, int]:
        """Open a running record for the next attempt of ``node_id``.

        Returns:
            (seq, attempt, iteration) where seq identifies this attempt
        """
        with self.lock:
            self._attempts[node_id] += 1
            attempt = self._attempts[node_id]
            iteration = self.iteration_of(node_id)
            seq = next(self._seq)
            self._status[node_id] = RUNNING
            self._inflight[node_id] = seq
            self._execution.node_logs.append(NodeExecutionRecord(
                node_id=node_id,
                status=NodeStatusEnum.RUNNING,
                attempt=attempt,
                iteration=iteration,
                started_at=datetime.utcnow()
            ))
            self._open_records[node_id] = len(self._execution.node_logs) - 1
            self.occupied_slots += 1
            return seq, attempt, iteration

    def _close_record(self, node_id: str, status: NodeStatusEnum, error: Optional[str] = None,
                      output: Optional[Dict[str, Any]] = None) -> None:
        index = self._open_records.pop(node_id, None)
        self._inflight.pop(node_id, None)
        if index is None:
            return
        record = self._execution.node_logs[index]
        record.status = status
        record.completed_at = datetime.utcnow()
        record.error = error
        record.output = copy.deepcopy(output) if output is not None else None

    def fail_attempt(self, node_id: str, error: str) -> None:
        """Record a failed attempt that will be retried."""
        with self.lock:
            self._close_record(node_id, NodeStatusEnum.FAILED, error=error)
            self._status[node_id] = READY

    def mark_completed(self, node_id: str, outcome: NodeOutcome) -> List[str]:
        """Complete the open attempt, merge its outputs and decide outgoing edges.

        A loop node that asks to continue leaves its edges undecided; the
        caller re-enters the loop instead.

        Returns:
            Ids of the outgoing edges that were taken

        Raises:
            AmbiguousBranchError: If a non-fork node took more than one edge
        """
        with self.lock:
            self._close_record(node_id, NodeStatusEnum.COMPLETED, output=outcome.output_vars)
            if outcome.output_vars:
                self._execution.variables.update(copy.deepcopy(outcome.output_vars))
            self._status[node_id] = COMPLETED
            if outcome.loop_continue:
                return []
            return self._decide_edges(node_id, outcome.result)

    def _decide_edges(self, node_id: str, result: Any) -> List[str]:
        node = self.compiled.nodes[node_id]
        edges = self.compiled.outgoing[node_id]

        if node.type == "fork":
            for edge in edges:
                self._edges[edge.id] = True
            return [edge.id for edge in edges]

        taken = []
        for edge in edges:
            live = True
            if edge.condition is not None:
                try:
                    live = evaluate_bool(edge.condition, self._execution.variables, {"result": result})
                except ExpressionError as e:
                    logger.warning(f"Condition on edge '{edge.id}' could not be evaluated, not taking it: {e.message}")
                    live = False
            self._edges[edge.id] = live
            if live:
                taken.append(edge.id)

        if len(taken) > 1:
            raise AmbiguousBranchError(node_id, taken, workflow_id=self.workflow_id)
        return taken

    def mark_failed(self, node_id: str, error: str) -> None:
        with self.lock:
            self._close_record(node_id, NodeStatusEnum.FAILED, error=error)
            self._status[node_id] = FAILED

    def mark_skipped(self, node_id: str) -> None:
        with self.lock:
            now = datetime.utcnow()
            self._status[node_id] = SKIPPED
            self._execution.node_logs.append(NodeExecutionRecord(
                node_id=node_id,
                status=NodeStatusEnum.SKIPPED,
                attempt=0,
                iteration=self.iteration_of(node_id),
                started_at=now,
                completed_at=now
            ))
            for edge in self.compiled.outgoing[node_id]:
                self._edges[edge.id] = False

    def reenter_loop(self, loop_id: str) -> List[str]:
        """Reset the body of ``loop_id`` for another pass and make its first node ready."""
        with self.lock:
            body = self.compiled.loop_bodies[loop_id]
            for node_id in body:
                self._status[node_id] = PENDING
                self._attempts[node_id] = 0
                if node_id != loop_id and node_id in self.compiled.loop_bodies:
                    self._loop_counts[node_id] = 0
                for edge in self.compiled.outgoing[node_id]:
                    self._edges[edge.id] = None
            self._loop_counts[loop_id] += 1

            target = self.compiled.loop_back[loop_id].target_node_id
            self._status[target] = READY
            logger.debug(f"Loop '{loop_id}' re-entered at '{target}' (pass {self._loop_counts[loop_id] + 1})")
            return [target]

    def advance_frontier(self) -> List[str]:
        """Resolve pending nodes whose incoming edges are all decided.

        A node with at least one taken incoming edge becomes ready; a node
        whose incoming edges were all not taken is skipped, which in turn
        decides its own outgoing edges. Walking in topological order makes
        a single pass reach the fixpoint.

        Returns:
            Newly ready node ids in topological order
        """
        with self.lock:
            ready = []
            for node_id in self.compiled.topological_order:
                if self._status[node_id] != PENDING:
                    continue
                incoming = self.compiled.incoming[node_id]
                if not incoming:
                    continue
                decisions = [self._edges[edge.id] for edge in incoming]
                if any(decision is None for decision in decisions):
                    continue
                if any(decisions):
                    self._status[node_id] = READY
                    ready.append(node_id)
                else:
                    self.mark_skipped(node_id)
            return ready

    def is_finished(self) -> bool:
        with self.lock:
            return all(state in _RESOLVED_STATES for state in self._status.values())

    def has_active_nodes(self) -> bool:
        with self.lock:
            return any(state in _FRONTIER_STATES for state in self._status.values())

    # Execution status transitions

    def _interrupt_inflight(self, reason: str) -> List[str]:
        interrupted = []
        for node_id, state in self._status.items():
            if state == RUNNING:
                self._close_record(node_id, NodeStatusEnum.CANCELLED, error=reason)
                self._status[node_id] = CANCELLED
                interrupted.append(node_id)
            elif state == READY:
                self._status[node_id] = CANCELLED
        self._inflight.clear()
        self.occupied_slots = 0
        return sorted(interrupted)

    def complete(self) -> None:
        with self.lock:
            self._execution.status = ExecutionStatusEnum.COMPLETED
            self._execution.completed_at = datetime.utcnow()

    def fail(self, error: str, node_id: Optional[str] = None) -> List[str]:
        """Fail the execution, interrupting whatever is still in flight."""
        with self.lock:
            interrupted = self._interrupt_inflight("execution failed")
            self._execution.status = ExecutionStatusEnum.FAILED
            self._execution.error = error
            self._execution.failed_node_id = node_id
            self._execution.completed_at = datetime.utcnow()
            return interrupted

    def cancel(self) -> List[str]:
        with self.lock:
            interrupted = self._interrupt_inflight("execution cancelled")
            self._execution.status = ExecutionStatusEnum.CANCELLED
            self._execution.completed_at = datetime.utcnow()
            return interrupted

    def begin_compensation(self) -> None:
        with self.lock:
            self._execution.status = ExecutionStatusEnum.COMPENSATING
            self._execution.completed_at = None

    def finish_compensation(self, records: List[NodeExecutionRecord], failures: List[CompensationFailure]) -> None:
        with self.lock:
            self._execution.node_logs.extend(records)
            self._execution.compensation_failures.extend(failures)
            self._execution.status = ExecutionStatusEnum.COMPENSATED
            self._execution.completed_at = datetime.utcnow()

    def snapshot(self) -> WorkflowExecution:
        """Deep copy of the execution record with the current frontier."""
        with self.lock:
            execution = self._execution.model_copy(deep=True)
            execution.frontier = self.frontier()
            return execution
