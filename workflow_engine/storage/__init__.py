"""Database models and storage layer."""

from .database import Base, create_database_engine, create_session_factory, create_tables, drop_tables
from .models import WorkflowDefinitionModel, WorkflowExecutionModel, NodeExecutionRecordModel, TriggerModel

__all__ = [
    "Base",
    "create_database_engine",
    "create_session_factory",
    "create_tables",
    "drop_tables",
    "WorkflowDefinitionModel",
    "WorkflowExecutionModel",
    "NodeExecutionRecordModel",
    "TriggerModel",
]
