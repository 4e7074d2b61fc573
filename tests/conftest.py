"""Pytest configuration and fixtures."""

import threading
import time
from typing import Any, Dict, List

import pytest

from workflow_engine.actions import register_builtin_actions
from workflow_engine.core.action_provider import ActionContext, ActionProvider
from workflow_engine.core.definition_store import InMemoryDefinitionStore, SqlDefinitionStore
from workflow_engine.core.engine import WorkflowEngine
from workflow_engine.core.exceptions import NodeExecutionError, TransientError
from workflow_engine.models.core import (
    StartRequest, WorkflowDefinition, WorkflowExecution
)
from workflow_engine.storage.database import create_database_engine, create_session_factory, create_tables


class ActionRecorder:
    """Test actions that remember how they were called."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def _remember(self, kind: str, context: ActionContext, **extra):
        with self._lock:
            self.calls.append({
                "kind": kind,
                "node_id": context.node_id,
                "attempt": context.attempt,
                "iteration": context.iteration,
                "at": time.monotonic(),
                **extra
            })

    def nodes_called(self, kind: str = "record") -> List[str]:
        with self._lock:
            return [call["node_id"] for call in self.calls if call["kind"] == kind]

    def record(self, variables: Dict[str, Any], context: ActionContext, value: Any = None, **kwargs):
        self._remember("record", context)
        return value if value is not None else context.node_id

    def flaky(self, variables: Dict[str, Any], context: ActionContext, fail_times: int = 1, **kwargs):
        self._remember("flaky", context)
        if context.attempt <= fail_times:
            raise TransientError(f"attempt {context.attempt} failed")
        return {"succeeded_on": context.attempt}

    def boom(self, variables: Dict[str, Any], context: ActionContext, **kwargs):
        self._remember("boom", context)
        raise NodeExecutionError("boom", node_id=context.node_id, transient=False)

    def undo(self, variables: Dict[str, Any], context: ActionContext, **kwargs):
        self._remember("undo", context, original_output=context.original_output,
                       compensating=context.compensating)
        return "undone"

    def undo_fail(self, variables: Dict[str, Any], context: ActionContext, **kwargs):
        self._remember("undo_fail", context)
        raise RuntimeError("cannot undo")


@pytest.fixture
def recorder():
    return ActionRecorder()


@pytest.fixture
def action_provider(recorder):
    """ActionProvider with the built-in actions and the recorder's test actions."""
    provider = ActionProvider()
    register_builtin_actions(provider)
    provider.register_action("record", recorder.record, "Record the call")
    provider.register_action("flaky", recorder.flaky, "Fail transiently for the first attempts")
    provider.register_action("boom", recorder.boom, "Fail permanently")
    provider.register_action("undo", recorder.undo, "Compensation that succeeds")
    provider.register_action("undo_fail", recorder.undo_fail, "Compensation that fails")
    return provider


@pytest.fixture
def store():
    return InMemoryDefinitionStore()


@pytest.fixture
def sql_store(tmp_path):
    """SqlDefinitionStore on a temporary SQLite database file."""
    database_engine = create_database_engine(f"sqlite:///{tmp_path / 'workflow_engine.db'}")
    create_tables(database_engine)
    yield SqlDefinitionStore(create_session_factory(database_engine))
    database_engine.dispose()


@pytest.fixture
def make_engine(store, action_provider):
    """Factory for engines that are shut down after the test."""
    engines = []

    def factory(**kwargs) -> WorkflowEngine:
        options = {"worker_pool_size": 8, "tick_interval": 0.01}
        options.update(kwargs)
        engine = WorkflowEngine(options.pop("store", store), action_provider, **options)
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        engine.shutdown(wait=False)


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def run_workflow(engine):
    """Publish a definition, start it and wait for a terminal status."""

    def runner(definition: WorkflowDefinition, payload: Any = None, timeout: float = 10.0) -> WorkflowExecution:
        engine.publish_definition(definition)
        started = engine.start(StartRequest(workflow_id=definition.id, payload=payload))
        execution = engine.wait_for(started.id, timeout=timeout)
        assert execution.is_terminal, f"execution still {execution.status.value} after {timeout}s"
        return execution

    return runner

