"""Tests for compensation of failed executions."""

import pytest

from builders import edge, task, wait_until, workflow
from workflow_engine.core.definition_store import InMemoryDefinitionStore
from workflow_engine.core.exceptions import InvalidExecutionStateError
from workflow_engine.models.core import ExecutionStatusEnum, NodeStatusEnum, StartRequest


def undoable(node_id: str, compensation_action: str = "undo", **options):
    return task(node_id, compensatable=True, compensation={"action": compensation_action}, **options)


class StatusRecordingStore(InMemoryDefinitionStore):
    """Remembers the status of every execution snapshot it is asked to save."""

    def __init__(self):
        super().__init__()
        self.saved_statuses = []

    def save_execution(self, execution):
        self.saved_statuses.append(execution.status)
        super().save_execution(execution)


class TestCompensation:
    """Saga rollback of completed, compensatable nodes."""

    def test_compensates_in_reverse_completion_order(self, run_workflow, recorder):
        definition = workflow(
            "saga",
            nodes=[undoable("reserve"), undoable("charge"), task("ship", action="boom")],
            edges=[edge("reserve", "charge"), edge("charge", "ship")],
            compensate_on_failure=True,
        )

        execution = run_workflow(definition)

        assert execution.status == ExecutionStatusEnum.COMPENSATED
        assert execution.failed_node_id == "ship"
        assert "boom" in execution.error
        assert recorder.nodes_called("undo") == ["charge", "reserve"]

        undo_calls = [call for call in recorder.calls if call["kind"] == "undo"]
        assert undo_calls[0]["original_output"] == {"charge": "charge"}
        assert all(call["compensating"] for call in undo_calls)

        compensated = [r for r in execution.node_logs if r.status == NodeStatusEnum.COMPENSATED]
        assert [r.node_id for r in compensated] == ["charge", "reserve"]
        assert compensated[0].output == {"compensation_result": "undone"}
        assert execution.compensation_failures == []

    def test_failed_compensation_is_recorded_and_walk_continues(self, run_workflow, recorder):
        definition = workflow(
            "saga-partial",
            nodes=[undoable("reserve"), undoable("charge", compensation_action="undo_fail"),
                   task("ship", action="boom")],
            edges=[edge("reserve", "charge"), edge("charge", "ship")],
            compensate_on_failure=True,
        )

        execution = run_workflow(definition)

        assert execution.status == ExecutionStatusEnum.COMPENSATED
        assert recorder.nodes_called("undo") == ["reserve"]
        assert len(execution.compensation_failures) == 1
        failure = execution.compensation_failures[0]
        assert (failure.node_id, failure.action) == ("charge", "undo_fail")
        assert "cannot undo" in failure.error

    def test_compensatable_failing_node_triggers_compensation(self, run_workflow, recorder):
        definition = workflow(
            "node-triggered",
            nodes=[undoable("reserve"), undoable("charge", action="boom")],
            edges=[edge("reserve", "charge")],
        )

        execution = run_workflow(definition)

        assert execution.status == ExecutionStatusEnum.COMPENSATED
        # The failed node never completed, so only its predecessor is undone.
        assert recorder.nodes_called("undo") == ["reserve"]

    def test_no_compensation_without_opt_in(self, run_workflow, recorder):
        definition = workflow(
            "no-saga",
            nodes=[undoable("reserve"), task("ship", action="boom")],
            edges=[edge("reserve", "ship")],
        )

        execution = run_workflow(definition)

        assert execution.status == ExecutionStatusEnum.FAILED
        assert recorder.nodes_called("undo") == []

    def test_completed_executions_are_never_compensated(self, run_workflow, recorder):
        definition = workflow(
            "happy-saga",
            nodes=[undoable("reserve"), undoable("charge")],
            edges=[edge("reserve", "charge")],
            compensate_on_failure=True,
        )

        execution = run_workflow(definition)

        assert execution.status == ExecutionStatusEnum.COMPLETED
        assert recorder.nodes_called("undo") == []

    def test_deadline_failure_compensates_when_workflow_opts_in(self, run_workflow, recorder):
        definition = workflow(
            "saga-deadline",
            nodes=[undoable("reserve"), task("wait", action="sleep", seconds=3)],
            edges=[edge("reserve", "wait")],
            compensate_on_failure=True,
            timeout_seconds=0.3,
        )

        execution = run_workflow(definition, timeout=5)

        assert execution.status == ExecutionStatusEnum.COMPENSATED
        assert "deadline" in execution.error
        assert recorder.nodes_called("undo") == ["reserve"]

    def test_cancel_rejected_while_compensating(self, engine):
        engine.publish_definition(workflow(
            "slow-undo",
            nodes=[
                task("reserve", compensatable=True, compensation={"action": "sleep", "params": {"seconds": 0.5}}),
                task("ship", action="boom"),
            ],
            edges=[edge("reserve", "ship")],
            compensate_on_failure=True,
        ))
        started = engine.start(StartRequest(workflow_id="slow-undo"))

        assert wait_until(lambda: engine.get_execution(started.id).status == ExecutionStatusEnum.COMPENSATING)
        with pytest.raises(InvalidExecutionStateError):
            engine.cancel(started.id)

        final = engine.wait_for(started.id, timeout=5)
        assert final.status == ExecutionStatusEnum.COMPENSATED

    def test_failed_status_is_never_stored_before_compensation(self, make_engine):
        store = StatusRecordingStore()
        engine = make_engine(store=store)
        engine.publish_definition(workflow(
            "saga-stored",
            nodes=[undoable("reserve"), task("ship", action="boom")],
            edges=[edge("reserve", "ship")],
            compensate_on_failure=True,
        ))

        started = engine.start(StartRequest(workflow_id="saga-stored"))
        final = engine.wait_for(started.id, timeout=10)

        assert final.status == ExecutionStatusEnum.COMPENSATED
        assert ExecutionStatusEnum.FAILED not in store.saved_statuses
        compensating = store.saved_statuses.index(ExecutionStatusEnum.COMPENSATING)
        assert compensating < store.saved_statuses.index(ExecutionStatusEnum.COMPENSATED)
