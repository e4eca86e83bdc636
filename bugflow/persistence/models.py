# bugflow/persistence/models.py

import uuid
from enum import Enum

from sqlalchemy import (
    Column, String, Integer, BigInteger, Text, ForeignKey, DateTime, Boolean,
    Index, UniqueConstraint, text
)
from sqlalchemy.orm import relationship

from bugflow.persistence.database import Base
from bugflow.utils.timefmt import utc_now


class ExecutionStatus(str, Enum):
    ACTIVE = "Active"
    COMPLETED = "Completed"
    SUSPENDED = "Suspended"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


def new_id() -> str:
    return str(uuid.uuid4())


# -----------------------
# workflow_definitions
# -----------------------
class WorkflowDefinition(Base):
    __tablename__ = "workflow_definitions"
    __table_args__ = (
        UniqueConstraint("name", "version", name="uq_workflow_definition_name_version"),
        Index("idx_wf_def_name_active", "name", "is_active"),
    )

    workflow_definition_id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=False, default="")
    version = Column(String(50), nullable=False, default="1.0.0")
    definition_json = Column(Text, nullable=False)     # WorkflowSchema -> JSON
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("1"))
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)
    created_by = Column(String(100), nullable=False, default="System")

    executions = relationship("WorkflowExecution", back_populates="workflow_definition")


# -----------------------
# workflow_executions
# -----------------------
class WorkflowExecution(Base):
    __tablename__ = "workflow_executions"
    __table_args__ = (
        Index("idx_wf_exec_status", "status"),
    )

    workflow_execution_id = Column(String(36), primary_key=True, default=new_id)
    task_id = Column(String(36), nullable=False, unique=True)
    workflow_definition_id = Column(
        String(36), ForeignKey("workflow_definitions.workflow_definition_id"), nullable=False
    )
    current_step_id = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default="Active")
    context_json = Column(Text, nullable=False, default="{}")
    started_at = Column(DateTime, nullable=False, default=utc_now)
    started_by = Column(String(100), nullable=False, default="System")
    completed_at = Column(DateTime, nullable=True)
    last_updated = Column(DateTime, nullable=False, default=utc_now)
    error_message = Column(Text, nullable=True)
    # optimistic concurrency token
    version = Column(Integer, nullable=False, default=1, server_default=text("1"))

    workflow_definition = relationship("WorkflowDefinition", back_populates="executions", lazy="joined")
    audit_logs = relationship(
        "WorkflowAuditLog", back_populates="execution",
        cascade="all, delete-orphan", passive_deletes=True, order_by="WorkflowAuditLog.sequence",
    )


# -----------------------
# workflow_audit_logs
# -----------------------
class WorkflowAuditLog(Base):
    __tablename__ = "workflow_audit_logs"
    __table_args__ = (
        Index("idx_wf_audit_exec_ts", "workflow_execution_id", "timestamp", "sequence"),
    )

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    workflow_audit_log_id = Column(String(36), nullable=False, unique=True, default=new_id)
    workflow_execution_id = Column(
        String(36), ForeignKey("workflow_executions.workflow_execution_id", ondelete="CASCADE"), nullable=False
    )
    step_id = Column(String(100), nullable=False, default="")
    step_name = Column(String(200), nullable=False, default="")
    action = Column(String(100), nullable=False)
    result = Column(String(50), nullable=False)
    previous_step_id = Column(String(100), nullable=True)
    next_step_id = Column(String(100), nullable=True)
    decision = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)
    conditions_evaluated = Column(Text, nullable=True)  # JSON -> TEXT
    context_snapshot = Column(Text, nullable=False, default="{}")
    timestamp = Column(DateTime, nullable=False, default=utc_now)
    performed_by = Column(String(100), nullable=False, default="System")
    duration_ms = Column(BigInteger, nullable=True)

    execution = relationship("WorkflowExecution", back_populates="audit_logs")
