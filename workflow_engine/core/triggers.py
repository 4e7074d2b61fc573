"""Trigger Source: maps manual calls, schedules, events and webhooks to start requests."""

import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from croniter import croniter

from ..models.core import StartRequest, TriggerDefinition, TriggerType, WorkflowExecution
from .definition_store import DefinitionStore
from .engine import WorkflowEngine
from .exceptions import TriggerError, TriggerNotFoundError, WorkflowEngineError
from .logging import get_logger

logger = get_logger(__name__)


def next_fire_time(cron: str, after: datetime) -> datetime:
    """Next time ``cron`` fires strictly after ``after``."""
    return croniter(cron, after).get_next(datetime)


class TriggerService:
    """Registers triggers and turns their firings into engine start requests.

    Schedule triggers are polled by a background thread: a trigger is due
    when the next cron time after its last firing (or its creation) has
    passed. Missed firings are collapsed into one.
    """

    def __init__(self, store: DefinitionStore, engine: WorkflowEngine, poll_interval: float = 30.0):
        self.store = store
        self.engine = engine
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._poller_thread: Optional[threading.Thread] = None

    # Registration

    def _validate_config(self, trigger_type: TriggerType, config: Dict[str, Any]) -> None:
        if trigger_type == TriggerType.SCHEDULE:
            cron = config.get("cron")
            if not cron or not isinstance(cron, str):
                raise TriggerError("Schedule triggers require a 'cron' expression")
            try:
                croniter(cron, datetime.utcnow())
            except (ValueError, KeyError) as e:
                raise TriggerError(f"Invalid cron expression '{cron}': {e}")
        elif trigger_type == TriggerType.EVENT:
            event_name = config.get("event_name")
            if not event_name or not isinstance(event_name, str):
                raise TriggerError("Event triggers require an 'event_name'")
        elif trigger_type == TriggerType.WEBHOOK:
            path = config.get("path")
            if path is not None and not isinstance(path, str):
                raise TriggerError("Webhook 'path' must be a string")

    def register_trigger(
        self,
        workflow_id: str,
        trigger_type: TriggerType,
        config: Optional[Dict[str, Any]] = None,
        enabled: bool = True,
        trigger_id: Optional[str] = None,
    ) -> TriggerDefinition:
        """
        Register a trigger for an existing workflow.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
            TriggerError: If the trigger configuration is invalid
        """
        trigger_type = TriggerType(trigger_type)
        config = dict(config or {})
        self.store.get_definition(workflow_id)
        self._validate_config(trigger_type, config)

        trigger = TriggerDefinition(
            id=trigger_id or str(uuid.uuid4()),
            workflow_id=workflow_id,
            type=trigger_type,
            config=config,
            enabled=enabled,
        )
        self.store.save_trigger(trigger)
        logger.info(f"Registered {trigger_type.value} trigger {trigger.id} for workflow '{workflow_id}'")
        return trigger

    def get_trigger(self, trigger_id: str) -> TriggerDefinition:
        return self.store.get_trigger(trigger_id)

    def list_triggers(self, workflow_id: Optional[str] = None,
                      trigger_type: Optional[TriggerType] = None) -> List[TriggerDefinition]:
        return self.store.list_triggers(workflow_id=workflow_id, trigger_type=trigger_type)

    def set_enabled(self, trigger_id: str, enabled: bool) -> TriggerDefinition:
        trigger = self.store.get_trigger(trigger_id)
        trigger.enabled = enabled
        self.store.save_trigger(trigger)
        return trigger

    def delete_trigger(self, trigger_id: str) -> None:
        if not self.store.delete_trigger(trigger_id):
            raise TriggerNotFoundError(trigger_id)
        logger.info(f"Deleted trigger {trigger_id}")

    # Firing

    def _fire(self, trigger: TriggerDefinition, payload: Any, fired_at: Optional[datetime] = None) -> WorkflowExecution:
        if not trigger.enabled:
            raise TriggerError(f"Trigger '{trigger.id}' is disabled", trigger_id=trigger.id)
        execution = self.engine.start(StartRequest(
            workflow_id=trigger.workflow_id,
            trigger_type=trigger.type,
            payload=payload,
            trigger_id=trigger.id,
        ))
        self.store.mark_trigger_fired(trigger.id, fired_at or datetime.utcnow())
        logger.info(f"Trigger {trigger.id} ({trigger.type.value}) started execution {execution.id}")
        return execution

    def fire_manual(self, workflow_id: str, payload: Any = None, trigger_id: Optional[str] = None) -> WorkflowExecution:
        if trigger_id is not None:
            trigger = self.store.get_trigger(trigger_id)
            if trigger.workflow_id != workflow_id:
                raise TriggerError(f"Trigger '{trigger_id}' does not belong to workflow '{workflow_id}'",
                                   trigger_id=trigger_id)
            return self._fire(trigger, payload)
        return self.engine.start(StartRequest(workflow_id=workflow_id, trigger_type=TriggerType.MANUAL,
                                              payload=payload))

    def fire_webhook(self, trigger_id: str, payload: Any = None) -> WorkflowExecution:
        """Start the workflow behind a webhook trigger with the request body as payload."""
        trigger = self.store.get_trigger(trigger_id)
        if trigger.type != TriggerType.WEBHOOK:
            raise TriggerError(f"Trigger '{trigger_id}' is not a webhook trigger", trigger_id=trigger_id)
        return self._fire(trigger, payload)

    def publish_event(self, event_name: str, payload: Any = None) -> List[WorkflowExecution]:
        """Start every enabled event trigger listening for ``event_name``."""
        started = []
        for trigger in self.store.list_triggers(trigger_type=TriggerType.EVENT, enabled_only=True):
            if trigger.config.get("event_name") != event_name:
                continue
            try:
                started.append(self._fire(trigger, payload))
            except WorkflowEngineError as e:
                logger.error(f"Event '{event_name}' could not start trigger {trigger.id}: {e.message}")
        logger.info(f"Event '{event_name}' started {len(started)} execution(s)")
        return started

    def due_schedules(self, now: Optional[datetime] = None) -> List[TriggerDefinition]:
        now = now or datetime.utcnow()
        due = []
        for trigger in self.store.list_triggers(trigger_type=TriggerType.SCHEDULE, enabled_only=True):
            reference = trigger.last_fired_at or trigger.created_at
            if next_fire_time(trigger.config["cron"], reference) <= now:
                due.append(trigger)
        return due

    def run_due_schedules(self, now: Optional[datetime] = None) -> List[WorkflowExecution]:
        """Fire every schedule trigger that is due at ``now``."""
        now = now or datetime.utcnow()
        started = []
        for trigger in self.due_schedules(now):
            try:
                started.append(self._fire(trigger, {"scheduled_time": now.isoformat()}, fired_at=now))
            except WorkflowEngineError as e:
                logger.error(f"Schedule trigger {trigger.id} failed to start: {e.message}")
        return started

    # Poller

    def start(self) -> None:
        if self._poller_thread and self._poller_thread.is_alive():
            return
        self._stop_event.clear()
        self._poller_thread = threading.Thread(target=self._poll_loop, daemon=True, name="ScheduleTriggerPoller")
        self._poller_thread.start()
        logger.info(f"Schedule trigger poller started (interval={self.poll_interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._poller_thread and self._poller_thread.is_alive():
            self._poller_thread.join(timeout=timeout)
        logger.info("Schedule trigger poller stopped")

    def _poll_loop(self) -> None:
        while not self._stop_event.wait(self.poll_interval):
            try:
                self.run_due_schedules()
            except Exception as e:
                logger.error(f"Error polling schedule triggers: {str(e)}")
