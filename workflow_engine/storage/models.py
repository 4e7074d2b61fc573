"""SQLAlchemy database models for the workflow engine."""

from datetime import datetime
from sqlalchemy import Boolean, Column, String, DateTime, Text, JSON, Integer, ForeignKey
from sqlalchemy.orm import relationship
from .database import Base


class WorkflowDefinitionModel(Base):
    """One published version of a workflow definition."""
    __tablename__ = "workflow_definitions"

    id = Column(String, primary_key=True)
    version = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    is_template = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)  # Shared by every version of the id
    graph_json = Column(JSON, nullable=False)  # Complete definition as dumped by pydantic
    created_at = Column(DateTime, default=datetime.utcnow)


class WorkflowExecutionModel(Base):
    """Database model for workflow executions."""
    __tablename__ = "workflow_executions"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, nullable=False, index=True)
    workflow_version = Column(Integer, nullable=False)
    trigger_type = Column(String, nullable=False)
    trigger_id = Column(String)
    status = Column(String, nullable=False)  # pending, running, completed, failed, cancelled, compensating, compensated
    variables_json = Column(JSON)
    frontier_json = Column(JSON)
    error = Column(Text)
    failed_node_id = Column(String)
    compensation_failures_json = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    records = relationship(
        "NodeExecutionRecordModel",
        back_populates="execution",
        order_by="NodeExecutionRecordModel.sequence",
        cascade="all, delete-orphan"
    )


class NodeExecutionRecordModel(Base):
    """One node attempt, skip or compensation within an execution."""
    __tablename__ = "node_execution_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False)
    sequence = Column(Integer, nullable=False)  # Position in the execution's node_logs
    node_id = Column(String, nullable=False)
    attempt = Column(Integer, nullable=False, default=1)
    iteration = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    error = Column(Text)
    output_json = Column(JSON)

    execution = relationship("WorkflowExecutionModel", back_populates="records")


class TriggerModel(Base):
    """Database model for registered triggers."""
    __tablename__ = "workflow_triggers"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)  # manual, schedule, event, webhook
    config_json = Column(JSON)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_fired_at = Column(DateTime)
