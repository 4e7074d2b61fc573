"""Definition Store: persistence of definitions, executions and triggers."""

import threading
from abc import ABC, abstractmethod
from collections import Counter
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional, Set

from sqlalchemy import and_, func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..models.core import (
    ExecutionStatusEnum, NodeExecutionRecord, TriggerDefinition, TriggerType,
    WorkflowDefinition, WorkflowExecution
)
from ..storage.models import (
    NodeExecutionRecordModel, TriggerModel, WorkflowDefinitionModel, WorkflowExecutionModel
)
from .error_recovery import RetryConfig, with_retry
from .exceptions import (
    ExecutionNotFoundError, StorageError, TransientError, TriggerNotFoundError, WorkflowNotFoundError
)
from .logging import get_logger

logger = get_logger(__name__)

_STORE_RETRY = RetryConfig(max_attempts=3, base_delay=0.1, max_delay=1.0,
                           retryable_exceptions=[StorageError, TransientError])


class DefinitionStore(ABC):
    """Key-value repository for workflow definitions, executions and triggers."""

    @abstractmethod
    def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Store a new version of ``definition`` and return it with the assigned version."""

    @abstractmethod
    def get_definition(self, workflow_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        """Return one version (latest by default). Raises WorkflowNotFoundError."""

    @abstractmethod
    def list_definitions(
        self,
        templates_only: bool = False,
        active_only: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[WorkflowDefinition]:
        """Latest version of every workflow, ordered by id."""

    @abstractmethod
    def count_definitions(self, templates_only: bool = False, active_only: bool = False) -> int:
        pass

    @abstractmethod
    def set_active(self, workflow_id: str, active: bool) -> None:
        """Flag every version of a workflow active or inactive. Raises WorkflowNotFoundError."""

    @abstractmethod
    def list_versions(self, workflow_id: str) -> List[int]:
        pass

    @abstractmethod
    def save_execution(self, execution: WorkflowExecution) -> None:
        pass

    @abstractmethod
    def get_execution(self, execution_id: str) -> WorkflowExecution:
        """Raises ExecutionNotFoundError."""

    @abstractmethod
    def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatusEnum] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[WorkflowExecution]:
        """Executions, newest first."""

    @abstractmethod
    def count_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatusEnum] = None,
    ) -> int:
        pass

    @abstractmethod
    def count_executions_by_status(self, workflow_id: Optional[str] = None) -> Dict[str, int]:
        pass

    @abstractmethod
    def save_trigger(self, trigger: TriggerDefinition) -> TriggerDefinition:
        pass

    @abstractmethod
    def get_trigger(self, trigger_id: str) -> TriggerDefinition:
        """Raises TriggerNotFoundError."""

    @abstractmethod
    def list_triggers(
        self,
        workflow_id: Optional[str] = None,
        trigger_type: Optional[TriggerType] = None,
        enabled_only: bool = False,
    ) -> List[TriggerDefinition]:
        pass

    @abstractmethod
    def delete_trigger(self, trigger_id: str) -> bool:
        pass

    @abstractmethod
    def mark_trigger_fired(self, trigger_id: str, fired_at: datetime) -> None:
        pass

    def health_check(self) -> str:
        return "ok"


class InMemoryDefinitionStore(DefinitionStore):
    """Thread-safe store holding everything in process memory."""

    def __init__(self):
        self._lock = threading.RLock()
        self._definitions: Dict[str, Dict[int, WorkflowDefinition]] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._triggers: Dict[str, TriggerDefinition] = {}
        self._inactive: Set[str] = set()

    def _flagged(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        active = definition.id not in self._inactive
        if definition.is_active == active:
            return definition
        return definition.model_copy(update={"is_active": active})

    def save_definition(self, definition):
        with self._lock:
            versions = self._definitions.setdefault(definition.id, {})
            version = max(versions, default=0) + 1
            stored = definition.model_copy(update={"version": version}, deep=True)
            versions[version] = stored
            if stored.is_active:
                self._inactive.discard(stored.id)
            else:
                self._inactive.add(stored.id)
        logger.info(f"Stored workflow '{definition.id}' version {version}")
        return stored

    def get_definition(self, workflow_id, version=None):
        with self._lock:
            versions = self._definitions.get(workflow_id)
            if not versions:
                raise WorkflowNotFoundError(workflow_id)
            if version is None:
                version = max(versions)
            if version not in versions:
                raise WorkflowNotFoundError(workflow_id, version)
            return self._flagged(versions[version])

    def _latest(self, templates_only: bool, active_only: bool) -> List[WorkflowDefinition]:
        with self._lock:
            latest = [self._flagged(versions[max(versions)]) for _, versions in sorted(self._definitions.items())]
        return [
            definition for definition in latest
            if (not templates_only or definition.is_template)
            and (not active_only or definition.is_active)
        ]

    def list_definitions(self, templates_only=False, active_only=False, limit=None, offset=0):
        latest = self._latest(templates_only, active_only)
        end = None if limit is None else offset + limit
        return latest[offset:end]

    def count_definitions(self, templates_only=False, active_only=False):
        return len(self._latest(templates_only, active_only))

    def set_active(self, workflow_id, active):
        with self._lock:
            if workflow_id not in self._definitions:
                raise WorkflowNotFoundError(workflow_id)
            if active:
                self._inactive.discard(workflow_id)
            else:
                self._inactive.add(workflow_id)

    def list_versions(self, workflow_id):
        with self._lock:
            if workflow_id not in self._definitions:
                raise WorkflowNotFoundError(workflow_id)
            return sorted(self._definitions[workflow_id])

    def save_execution(self, execution):
        with self._lock:
            self._executions[execution.id] = execution.model_copy(deep=True)

    def get_execution(self, execution_id):
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)
            return execution.model_copy(deep=True)

    def _matching(self, workflow_id, status) -> List[WorkflowExecution]:
        with self._lock:
            return [
                execution for execution in self._executions.values()
                if (workflow_id is None or execution.workflow_id == workflow_id)
                and (status is None or execution.status == status)
            ]

    def list_executions(self, workflow_id=None, status=None, limit=50, offset=0):
        matches = self._matching(workflow_id, status)
        matches.sort(key=lambda execution: (execution.created_at, execution.id), reverse=True)
        return [execution.model_copy(deep=True) for execution in matches[offset:offset + limit]]

    def count_executions(self, workflow_id=None, status=None):
        return len(self._matching(workflow_id, status))

    def count_executions_by_status(self, workflow_id=None):
        with self._lock:
            counts = Counter(
                execution.status.value for execution in self._executions.values()
                if workflow_id is None or execution.workflow_id == workflow_id
            )
        return dict(counts)

    def save_trigger(self, trigger):
        with self._lock:
            self._triggers[trigger.id] = trigger.model_copy(deep=True)
        return trigger

    def get_trigger(self, trigger_id):
        with self._lock:
            trigger = self._triggers.get(trigger_id)
            if trigger is None:
                raise TriggerNotFoundError(trigger_id)
            return trigger.model_copy(deep=True)

    def list_triggers(self, workflow_id=None, trigger_type=None, enabled_only=False):
        with self._lock:
            triggers = [
                trigger.model_copy(deep=True) for trigger in self._triggers.values()
                if (workflow_id is None or trigger.workflow_id == workflow_id)
                and (trigger_type is None or trigger.type == trigger_type)
                and (not enabled_only or trigger.enabled)
            ]
        return sorted(triggers, key=lambda trigger: (trigger.created_at, trigger.id))

    def delete_trigger(self, trigger_id):
        with self._lock:
            return self._triggers.pop(trigger_id, None) is not None

    def mark_trigger_fired(self, trigger_id, fired_at):
        with self._lock:
            trigger = self._triggers.get(trigger_id)
            if trigger is None:
                raise TriggerNotFoundError(trigger_id)
            trigger.last_fired_at = fired_at


class SqlDefinitionStore(DefinitionStore):
    """Relational store backed by SQLAlchemy.

    Access is serialized through one lock so that a single shared SQLite
    connection can serve the dispatcher, the workers and the API.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._lock = threading.RLock()

    @contextmanager
    def _session(self, operation: str, table: Optional[str] = None):
        with self._lock:
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Database error during {operation}: {str(e)}")
                raise StorageError(f"Database error during {operation}: {str(e)}", operation=operation, table=table)
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    # Definitions

    @with_retry(_STORE_RETRY)
    def save_definition(self, definition):
        with self._session("save_definition", "workflow_definitions") as session:
            current = session.query(func.max(WorkflowDefinitionModel.version)).filter(
                WorkflowDefinitionModel.id == definition.id
            ).scalar()
            version = (current or 0) + 1
            stored = definition.model_copy(update={"version": version}, deep=True)
            # The active flag belongs to the workflow, not to one version
            session.query(WorkflowDefinitionModel).filter(
                WorkflowDefinitionModel.id == stored.id
            ).update({WorkflowDefinitionModel.is_active: stored.is_active}, synchronize_session=False)
            session.add(WorkflowDefinitionModel(
                id=stored.id,
                version=version,
                name=stored.name,
                is_template=stored.is_template,
                is_active=stored.is_active,
                graph_json=stored.model_dump(mode="json"),
                created_at=datetime.utcnow()
            ))
        logger.info(f"Stored workflow '{definition.id}' version {version}")
        return stored

    @staticmethod
    def _definition_from_model(model: WorkflowDefinitionModel) -> WorkflowDefinition:
        definition = WorkflowDefinition.model_validate(model.graph_json)
        if definition.is_active != model.is_active:
            definition = definition.model_copy(update={"is_active": model.is_active})
        return definition

    @with_retry(_STORE_RETRY)
    def get_definition(self, workflow_id, version=None):
        with self._session("get_definition", "workflow_definitions") as session:
            query = session.query(WorkflowDefinitionModel).filter(WorkflowDefinitionModel.id == workflow_id)
            if version is None:
                model = query.order_by(WorkflowDefinitionModel.version.desc()).first()
            else:
                model = query.filter(WorkflowDefinitionModel.version == version).first()
            if model is None:
                raise WorkflowNotFoundError(workflow_id, version)
            return self._definition_from_model(model)

    @staticmethod
    def _latest_query(session, templates_only: bool, active_only: bool):
        latest = session.query(
            WorkflowDefinitionModel.id,
            func.max(WorkflowDefinitionModel.version).label("max_version")
        ).group_by(WorkflowDefinitionModel.id).subquery()
        query = session.query(WorkflowDefinitionModel).join(
            latest,
            and_(WorkflowDefinitionModel.id == latest.c.id,
                 WorkflowDefinitionModel.version == latest.c.max_version)
        )
        if templates_only:
            query = query.filter(WorkflowDefinitionModel.is_template.is_(True))
        if active_only:
            query = query.filter(WorkflowDefinitionModel.is_active.is_(True))
        return query

    @with_retry(_STORE_RETRY)
    def list_definitions(self, templates_only=False, active_only=False, limit=None, offset=0):
        with self._session("list_definitions", "workflow_definitions") as session:
            query = self._latest_query(session, templates_only, active_only)
            query = query.order_by(WorkflowDefinitionModel.id).offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return [self._definition_from_model(model) for model in query.all()]

    @with_retry(_STORE_RETRY)
    def count_definitions(self, templates_only=False, active_only=False):
        with self._session("count_definitions", "workflow_definitions") as session:
            return self._latest_query(session, templates_only, active_only).count()

    @with_retry(_STORE_RETRY)
    def set_active(self, workflow_id, active):
        with self._session("set_active", "workflow_definitions") as session:
            updated = session.query(WorkflowDefinitionModel).filter(
                WorkflowDefinitionModel.id == workflow_id
            ).update({WorkflowDefinitionModel.is_active: active}, synchronize_session=False)
            if not updated:
                raise WorkflowNotFoundError(workflow_id)

    @with_retry(_STORE_RETRY)
    def list_versions(self, workflow_id):
        with self._session("list_versions", "workflow_definitions") as session:
            rows = session.query(WorkflowDefinitionModel.version).filter(
                WorkflowDefinitionModel.id == workflow_id
            ).order_by(WorkflowDefinitionModel.version).all()
            if not rows:
                raise WorkflowNotFoundError(workflow_id)
            return [row[0] for row in rows]

    # Executions

    @with_retry(_STORE_RETRY)
    def save_execution(self, execution):
        data = execution.model_dump(mode="json")
        with self._session("save_execution", "workflow_executions") as session:
            model = session.get(WorkflowExecutionModel, execution.id)
            if model is None:
                model = WorkflowExecutionModel(id=execution.id)
                session.add(model)
            model.workflow_id = execution.workflow_id
            model.workflow_version = execution.workflow_version
            model.trigger_type = execution.trigger_type.value
            model.trigger_id = execution.trigger_id
            model.status = execution.status.value
            model.variables_json = data["variables"]
            model.frontier_json = data["frontier"]
            model.error = execution.error
            model.failed_node_id = execution.failed_node_id
            model.compensation_failures_json = data["compensation_failures"]
            model.created_at = execution.created_at
            model.started_at = execution.started_at
            model.completed_at = execution.completed_at

            # Insert new records; rows whose fields are unchanged are left alone
            existing = {row.sequence: row for row in model.records}
            for index, record in enumerate(execution.node_logs):
                values = {
                    "node_id": record.node_id,
                    "attempt": record.attempt,
                    "iteration": record.iteration,
                    "status": record.status.value,
                    "started_at": record.started_at,
                    "completed_at": record.completed_at,
                    "error": record.error,
                    "output_json": data["node_logs"][index]["output"],
                }
                row = existing.pop(index, None)
                if row is None:
                    model.records.append(NodeExecutionRecordModel(sequence=index, **values))
                elif any(getattr(row, key) != value for key, value in values.items()):
                    for key, value in values.items():
                        setattr(row, key, value)
            for row in existing.values():
                model.records.remove(row)

    @staticmethod
    def _execution_from_model(model: WorkflowExecutionModel) -> WorkflowExecution:
        return WorkflowExecution(
            id=model.id,
            workflow_id=model.workflow_id,
            workflow_version=model.workflow_version,
            trigger_type=model.trigger_type,
            trigger_id=model.trigger_id,
            status=model.status,
            variables=model.variables_json or {},
            node_logs=[
                NodeExecutionRecord(
                    node_id=record.node_id,
                    status=record.status,
                    attempt=record.attempt,
                    iteration=record.iteration,
                    started_at=record.started_at,
                    completed_at=record.completed_at,
                    error=record.error,
                    output=record.output_json
                )
                for record in model.records
            ],
            frontier=model.frontier_json or [],
            error=model.error,
            failed_node_id=model.failed_node_id,
            compensation_failures=model.compensation_failures_json or [],
            created_at=model.created_at,
            started_at=model.started_at,
            completed_at=model.completed_at,
        )

    @with_retry(_STORE_RETRY)
    def get_execution(self, execution_id):
        with self._session("get_execution", "workflow_executions") as session:
            model = session.get(WorkflowExecutionModel, execution_id)
            if model is None:
                raise ExecutionNotFoundError(execution_id)
            return self._execution_from_model(model)

    @with_retry(_STORE_RETRY)
    def list_executions(self, workflow_id=None, status=None, limit=50, offset=0):
        with self._session("list_executions", "workflow_executions") as session:
            query = session.query(WorkflowExecutionModel)
            if workflow_id is not None:
                query = query.filter(WorkflowExecutionModel.workflow_id == workflow_id)
            if status is not None:
                query = query.filter(WorkflowExecutionModel.status == ExecutionStatusEnum(status).value)
            models = query.order_by(
                WorkflowExecutionModel.created_at.desc(), WorkflowExecutionModel.id.desc()
            ).offset(offset).limit(limit).all()
            return [self._execution_from_model(model) for model in models]

    @with_retry(_STORE_RETRY)
    def count_executions(self, workflow_id=None, status=None):
        with self._session("count_executions", "workflow_executions") as session:
            query = session.query(func.count(WorkflowExecutionModel.id))
            if workflow_id is not None:
                query = query.filter(WorkflowExecutionModel.workflow_id == workflow_id)
            if status is not None:
                query = query.filter(WorkflowExecutionModel.status == ExecutionStatusEnum(status).value)
            return query.scalar()

    @with_retry(_STORE_RETRY)
    def count_executions_by_status(self, workflow_id=None):
        with self._session("count_executions", "workflow_executions") as session:
            query = session.query(WorkflowExecutionModel.status, func.count(WorkflowExecutionModel.id))
            if workflow_id is not None:
                query = query.filter(WorkflowExecutionModel.workflow_id == workflow_id)
            return {status: count for status, count in query.group_by(WorkflowExecutionModel.status).all()}

    # Triggers

    @staticmethod
    def _trigger_from_model(model: TriggerModel) -> TriggerDefinition:
        return TriggerDefinition(
            id=model.id,
            workflow_id=model.workflow_id,
            type=model.type,
            config=model.config_json or {},
            enabled=model.enabled,
            created_at=model.created_at,
            last_fired_at=model.last_fired_at,
        )

    @with_retry(_STORE_RETRY)
    def save_trigger(self, trigger):
        with self._session("save_trigger", "workflow_triggers") as session:
            model = session.get(TriggerModel, trigger.id)
            if model is None:
                model = TriggerModel(id=trigger.id)
                session.add(model)
            model.workflow_id = trigger.workflow_id
            model.type = trigger.type.value
            model.config_json = trigger.model_dump(mode="json")["config"]
            model.enabled = trigger.enabled
            model.created_at = trigger.created_at
            model.last_fired_at = trigger.last_fired_at
        return trigger

    @with_retry(_STORE_RETRY)
    def get_trigger(self, trigger_id):
        with self._session("get_trigger", "workflow_triggers") as session:
            model = session.get(TriggerModel, trigger_id)
            if model is None:
                raise TriggerNotFoundError(trigger_id)
            return self._trigger_from_model(model)

    @with_retry(_STORE_RETRY)
    def list_triggers(self, workflow_id=None, trigger_type=None, enabled_only=False):
        with self._session("list_triggers", "workflow_triggers") as session:
            query = session.query(TriggerModel)
            if workflow_id is not None:
                query = query.filter(TriggerModel.workflow_id == workflow_id)
            if trigger_type is not None:
                query = query.filter(TriggerModel.type == TriggerType(trigger_type).value)
            if enabled_only:
                query = query.filter(TriggerModel.enabled.is_(True))
            models = query.order_by(TriggerModel.created_at, TriggerModel.id).all()
            return [self._trigger_from_model(model) for model in models]

    @with_retry(_STORE_RETRY)
    def delete_trigger(self, trigger_id):
        with self._session("delete_trigger", "workflow_triggers") as session:
            model = session.get(TriggerModel, trigger_id)
            if model is None:
                return False
            session.delete(model)
            return True

    @with_retry(_STORE_RETRY)
    def mark_trigger_fired(self, trigger_id, fired_at):
        with self._session("mark_trigger_fired", "workflow_triggers") as session:
            model = session.get(TriggerModel, trigger_id)
            if model is None:
                raise TriggerNotFoundError(trigger_id)
            model.last_fired_at = fired_at

    def health_check(self) -> str:
        with self._session("health_check") as session:
            session.execute(text("SELECT 1"))
        return "database reachable"
