"""Compensation Coordinator: reverse-order saga rollback of completed nodes."""

from datetime import datetime
from typing import List, Tuple

from ..models.core import (
    CompensationFailure, NodeExecutionRecord, NodeStatusEnum, WorkflowExecution
)
from .action_provider import ActionContext, ActionProvider
from .exceptions import CompensationError
from .graph_validator import CompiledWorkflow
from .logging import get_logger

logger = get_logger(__name__)


class CompensationCoordinator:
    """Runs compensating actions for the completed, compensatable nodes of a failed execution.

    Records are compensated in reverse completion order. A node that
    completed once per loop pass is compensated once per pass. A failing
    compensation is recorded and the walk carries on.
    """

    def __init__(self, action_provider: ActionProvider):
        self.action_provider = action_provider

    def plan(self, execution: WorkflowExecution, compiled: CompiledWorkflow) -> List[NodeExecutionRecord]:
        """Completed records to compensate, most recently completed first."""
        candidates = []
        for index, record in enumerate(execution.node_logs):
            if record.status != NodeStatusEnum.COMPLETED:
                continue
            node = compiled.nodes.get(record.node_id)
            if node is None or not node.compensatable or not node.config.get("compensation"):
                continue
            candidates.append((record.completed_at or datetime.min, index, record))
        candidates.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [record for _, _, record in candidates]

    def compensate(
        self, execution: WorkflowExecution, compiled: CompiledWorkflow
    ) -> Tuple[List[NodeExecutionRecord], List[CompensationFailure]]:
        """
        Walk the plan and invoke each compensation action.

        Args:
            execution: Snapshot of the failed execution
            compiled: The compiled workflow it ran

        Returns:
            (compensated records to append, failures to list on the execution)
        """
        records: List[NodeExecutionRecord] = []
        failures: List[CompensationFailure] = []
        plan = self.plan(execution, compiled)
        logger.info(f"Compensating {len(plan)} completed node(s) of execution {execution.id}")

        for original in plan:
            node = compiled.nodes[original.node_id]
            spec = node.config["compensation"]
            action = spec["action"]
            started_at = datetime.utcnow()
            context = ActionContext(
                execution_id=execution.id,
                workflow_id=execution.workflow_id,
                node_id=node.id,
                attempt=original.attempt,
                iteration=original.iteration,
                original_output=original.output,
                compensating=True,
            )
            try:
                result = self.action_provider.call_action(
                    action, execution.variables, context, **(spec.get("params") or {})
                )
            except Exception as e:
                error = CompensationError(
                    f"Compensation of node '{node.id}' failed: {e}",
                    node_id=node.id,
                    action=action
                )
                logger.error(error.message, extra={"extra_fields": error.to_dict()})
                failures.append(CompensationFailure(node_id=node.id, action=action, error=str(e)))
                continue

            records.append(NodeExecutionRecord(
                node_id=node.id,
                status=NodeStatusEnum.COMPENSATED,
                attempt=original.attempt,
                iteration=original.iteration,
                started_at=started_at,
                completed_at=datetime.utcnow(),
                output={"compensation_result": result} if result is not None else None
            ))
            logger.info(f"Compensated node '{node.id}' with action '{action}'")

        return records, failures
