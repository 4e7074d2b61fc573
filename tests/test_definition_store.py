"""Tests for the in-memory and SQL definition stores."""

from datetime import datetime

import pytest
from sqlalchemy import event, inspect, text

from builders import edge, task, workflow
from workflow_engine.core.exceptions import (
    ExecutionNotFoundError, TriggerNotFoundError, WorkflowNotFoundError
)
from workflow_engine.models.core import (
    CompensationFailure, ExecutionStatusEnum, NodeExecutionRecord, NodeStatusEnum, TriggerDefinition,
    TriggerType, WorkflowExecution
)
from workflow_engine.core.definition_store import SqlDefinitionStore
from workflow_engine.storage.database import create_database_engine, create_session_factory, create_tables
from workflow_engine.storage.migrations import add_missing_columns
from workflow_engine.storage.models import NodeExecutionRecordModel


@pytest.fixture(params=["memory", "sql"])
def any_store(request):
    """Run each test against both store implementations."""
    if request.param == "memory":
        return request.getfixturevalue("store")
    return request.getfixturevalue("sql_store")


def sample_definition(workflow_id: str = "orders", **kwargs):
    return workflow(
        workflow_id,
        nodes=[task("a", value={"nested": [1, 2]}, retry={"max_attempts": 3, "base_delay": 0.5}), task("b")],
        edges=[edge("a", "b", edge_id="a-to-b")],
        description="Order processing",
        **kwargs
    )


def sample_execution(execution_id: str, workflow_id: str = "orders", status=ExecutionStatusEnum.PENDING,
                     created_at=None) -> WorkflowExecution:
    return WorkflowExecution(
        id=execution_id,
        workflow_id=workflow_id,
        workflow_version=1,
        status=status,
        created_at=created_at or datetime.utcnow(),
    )


class TestDefinitions:

    def test_versions_are_assigned_on_save(self, any_store):
        first = any_store.save_definition(sample_definition())
        second = any_store.save_definition(sample_definition())

        assert (first.version, second.version) == (1, 2)
        assert any_store.get_definition("orders").version == 2
        assert any_store.get_definition("orders", 1).version == 1
        assert any_store.list_versions("orders") == [1, 2]

    def test_definition_round_trip(self, any_store):
        stored = any_store.save_definition(sample_definition(timeout_seconds=30.0, compensate_on_failure=True))

        loaded = any_store.get_definition("orders")

        assert loaded == stored
        assert loaded.nodes[0].retry.max_attempts == 3
        assert loaded.nodes[0].config["params"] == {"value": {"nested": [1, 2]}}

    def test_unknown_definition(self, any_store):
        any_store.save_definition(sample_definition())

        with pytest.raises(WorkflowNotFoundError):
            any_store.get_definition("missing")
        with pytest.raises(WorkflowNotFoundError):
            any_store.get_definition("orders", 9)
        with pytest.raises(WorkflowNotFoundError):
            any_store.list_versions("missing")

    def test_list_latest_versions(self, any_store):
        any_store.save_definition(sample_definition("zeta"))
        any_store.save_definition(sample_definition("alpha", is_template=True))
        any_store.save_definition(sample_definition("alpha", is_template=True))

        listed = any_store.list_definitions()

        assert [(d.id, d.version) for d in listed] == [("alpha", 2), ("zeta", 1)]
        assert [d.id for d in any_store.list_definitions(templates_only=True)] == ["alpha"]

    def test_list_pages_and_counts(self, any_store):
        for workflow_id in ("a", "b", "c", "d"):
            any_store.save_definition(sample_definition(workflow_id, is_template=workflow_id in ("b", "d")))

        assert [d.id for d in any_store.list_definitions(limit=2, offset=1)] == ["b", "c"]
        assert [d.id for d in any_store.list_definitions(offset=3)] == ["d"]
        assert any_store.list_definitions(limit=2, offset=4) == []
        assert any_store.count_definitions() == 4
        assert any_store.count_definitions(templates_only=True) == 2

    def test_active_flag_covers_every_version(self, any_store):
        any_store.save_definition(sample_definition("orders"))
        any_store.save_definition(sample_definition("orders"))
        any_store.save_definition(sample_definition("billing"))

        any_store.set_active("orders", False)

        assert any_store.get_definition("orders").is_active is False
        assert any_store.get_definition("orders", 1).is_active is False
        assert [d.id for d in any_store.list_definitions(active_only=True)] == ["billing"]
        assert [(d.id, d.is_active) for d in any_store.list_definitions()] == [("billing", True), ("orders", False)]
        assert any_store.count_definitions(active_only=True) == 1

        # publishing an active version reactivates the workflow
        any_store.save_definition(sample_definition("orders"))
        assert any_store.get_definition("orders", 1).is_active is True

    def test_set_active_unknown_workflow(self, any_store):
        with pytest.raises(WorkflowNotFoundError):
            any_store.set_active("missing", True)


class TestExecutions:

    def test_execution_round_trip(self, any_store):
        execution = sample_execution("run-1", status=ExecutionStatusEnum.COMPENSATED)
        execution.variables = {"order": {"id": 7, "items": ["x", "y"]}}
        execution.error = "Node 'b' failed"
        execution.failed_node_id = "b"
        execution.node_logs = [
            NodeExecutionRecord(node_id="a", status=NodeStatusEnum.COMPLETED, attempt=1,
                                started_at=datetime.utcnow(), completed_at=datetime.utcnow(), output={"a": 1}),
            NodeExecutionRecord(node_id="b", status=NodeStatusEnum.FAILED, attempt=2, iteration=3,
                                error="boom"),
        ]
        execution.compensation_failures = [CompensationFailure(node_id="a", action="undo", error="nope")]

        any_store.save_execution(execution)
        loaded = any_store.get_execution("run-1")

        assert loaded.status == ExecutionStatusEnum.COMPENSATED
        assert loaded.variables == execution.variables
        assert [(r.node_id, r.status, r.attempt, r.iteration) for r in loaded.node_logs] == [
            ("a", NodeStatusEnum.COMPLETED, 1, 0), ("b", NodeStatusEnum.FAILED, 2, 3)
        ]
        assert loaded.node_logs[0].output == {"a": 1}
        assert loaded.compensation_failures == execution.compensation_failures
        assert loaded.failed_node_id == "b"

    def test_save_overwrites(self, any_store):
        execution = sample_execution("run-1")
        any_store.save_execution(execution)

        execution.status = ExecutionStatusEnum.COMPLETED
        execution.node_logs = [NodeExecutionRecord(node_id="a", status=NodeStatusEnum.COMPLETED)]
        any_store.save_execution(execution)

        loaded = any_store.get_execution("run-1")
        assert loaded.status == ExecutionStatusEnum.COMPLETED
        assert len(loaded.node_logs) == 1

    def test_unknown_execution(self, any_store):
        with pytest.raises(ExecutionNotFoundError):
            any_store.get_execution("missing")

    def test_list_and_count(self, any_store):
        any_store.save_execution(sample_execution("old", created_at=datetime(2030, 1, 1)))
        any_store.save_execution(sample_execution("new", status=ExecutionStatusEnum.COMPLETED,
                                                  created_at=datetime(2030, 1, 2)))
        any_store.save_execution(sample_execution("elsewhere", workflow_id="other"))

        assert [e.id for e in any_store.list_executions(workflow_id="orders")] == ["new", "old"]
        assert [e.id for e in any_store.list_executions(workflow_id="orders", limit=1, offset=1)] == ["old"]
        assert [e.id for e in any_store.list_executions(status=ExecutionStatusEnum.COMPLETED)] == ["new"]
        assert any_store.count_executions_by_status() == {"pending": 2, "completed": 1}
        assert any_store.count_executions_by_status("orders") == {"pending": 1, "completed": 1}
        assert any_store.count_executions() == 3
        assert any_store.count_executions(workflow_id="orders") == 2
        assert any_store.count_executions(workflow_id="orders", status=ExecutionStatusEnum.PENDING) == 1


class TestTriggers:

    def test_trigger_lifecycle(self, any_store):
        trigger = TriggerDefinition(id="t-1", workflow_id="orders", type=TriggerType.SCHEDULE,
                                    config={"cron": "0 * * * *"})
        any_store.save_trigger(trigger)
        fired_at = datetime(2030, 1, 1, 12, 0)

        any_store.mark_trigger_fired("t-1", fired_at)

        loaded = any_store.get_trigger("t-1")
        assert loaded.config == {"cron": "0 * * * *"}
        assert loaded.last_fired_at == fired_at
        assert any_store.delete_trigger("t-1") is True
        assert any_store.delete_trigger("t-1") is False
        with pytest.raises(TriggerNotFoundError):
            any_store.get_trigger("t-1")

    def test_list_filters(self, any_store):
        any_store.save_trigger(TriggerDefinition(id="hook", workflow_id="orders", type=TriggerType.WEBHOOK,
                                                 created_at=datetime(2030, 1, 1)))
        any_store.save_trigger(TriggerDefinition(id="event", workflow_id="orders", type=TriggerType.EVENT,
                                                 config={"event_name": "paid"}, enabled=False,
                                                 created_at=datetime(2030, 1, 2)))
        any_store.save_trigger(TriggerDefinition(id="other", workflow_id="billing", type=TriggerType.EVENT,
                                                 config={"event_name": "paid"}, created_at=datetime(2030, 1, 3)))

        assert [t.id for t in any_store.list_triggers(workflow_id="orders")] == ["hook", "event"]
        assert [t.id for t in any_store.list_triggers(trigger_type=TriggerType.EVENT)] == ["event", "other"]
        assert [t.id for t in any_store.list_triggers(trigger_type=TriggerType.EVENT, enabled_only=True)] == ["other"]

    def test_health_check(self, any_store):
        assert any_store.health_check()


def record_rows(sql_store, execution_id):
    session = sql_store._session_factory()
    try:
        return session.query(
            NodeExecutionRecordModel.id, NodeExecutionRecordModel.sequence,
            NodeExecutionRecordModel.node_id, NodeExecutionRecordModel.status
        ).filter(
            NodeExecutionRecordModel.execution_id == execution_id
        ).order_by(NodeExecutionRecordModel.sequence).all()
    finally:
        session.close()


class TestSqlPersistence:

    def test_saving_again_only_touches_changed_records(self, sql_store):
        execution = sample_execution("run-1", status=ExecutionStatusEnum.RUNNING)
        execution.node_logs = [
            NodeExecutionRecord(node_id="a", status=NodeStatusEnum.COMPLETED, output={"a": 1}),
            NodeExecutionRecord(node_id="b", status=NodeStatusEnum.RUNNING),
        ]
        sql_store.save_execution(execution)
        before = record_rows(sql_store, "run-1")

        updated = []

        def remember(mapper, connection, target):
            updated.append(target.node_id)

        event.listen(NodeExecutionRecordModel, "before_update", remember)
        try:
            execution.node_logs[1].status = NodeStatusEnum.COMPLETED
            execution.node_logs.append(NodeExecutionRecord(node_id="c", status=NodeStatusEnum.RUNNING))
            sql_store.save_execution(execution)
        finally:
            event.remove(NodeExecutionRecordModel, "before_update", remember)

        after = record_rows(sql_store, "run-1")
        assert updated == ["b"]
        assert [row.id for row in after[:2]] == [row.id for row in before]
        assert [(row.sequence, row.node_id, row.status) for row in after] == [
            (0, "a", "completed"), (1, "b", "completed"), (2, "c", "running")
        ]

    def test_missing_columns_are_added(self, tmp_path):
        database_engine = create_database_engine(f"sqlite:///{tmp_path / 'old.db'}")
        with database_engine.connect() as connection:
            connection.execute(text(
                "CREATE TABLE workflow_definitions (id VARCHAR NOT NULL, version INTEGER NOT NULL, "
                "name VARCHAR NOT NULL, is_template BOOLEAN NOT NULL, graph_json JSON NOT NULL, "
                "created_at DATETIME, PRIMARY KEY (id, version))"
            ))
            connection.commit()

        add_missing_columns(database_engine)
        add_missing_columns(database_engine)
        create_tables(database_engine)

        columns = {info["name"] for info in inspect(database_engine).get_columns("workflow_definitions")}
        assert "is_active" in columns
        store = SqlDefinitionStore(create_session_factory(database_engine))
        store.save_definition(sample_definition())
        assert store.get_definition("orders").is_active is True
        database_engine.dispose()
