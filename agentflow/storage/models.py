"""SQLAlchemy database models for templates, executions, step runs, audit and billing."""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class WorkflowTemplateModel(Base):
    """Database model for workflow templates."""
    __tablename__ = "workflow_templates"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(100), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    mode = Column(String(50), nullable=False, default="Sales")
    definition = Column(JSON, nullable=False)  # Stores the complete template definition
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    is_public = Column(Boolean, nullable=False, default=False)
    run_count = Column(Integer, nullable=False, default=0)
    last_run_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    executions = relationship("ExecutionModel", back_populates="template")


class ExecutionModel(Base):
    """Database model for one run of a template."""
    __tablename__ = "workflow_executions"

    id = Column(String(36), primary_key=True, default=_new_id)
    template_id = Column(String(36), ForeignKey("workflow_templates.id", ondelete="SET NULL"))
    workflow_name = Column(String(200), nullable=False)
    user_id = Column(String(100), nullable=False, index=True)
    mode = Column(String(50), nullable=False)
    model_id = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, index=True)
    inputs = Column(JSON)
    outputs = Column(JSON)
    definition = Column(JSON)  # Snapshot of the template the run was started from
    start_time = Column(DateTime, nullable=False, default=datetime.utcnow)
    end_time = Column(DateTime)
    duration_ms = Column(Integer)
    total_cost = Column(Float, nullable=False, default=0.0)
    total_tokens = Column(Integer, nullable=False, default=0)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    token_split_known = Column(Boolean, nullable=False, default=True)
    steps_total = Column(Integer, nullable=False, default=0)
    steps_completed = Column(Integer, nullable=False, default=0)
    steps_failed = Column(Integer, nullable=False, default=0)
    current_step_id = Column(String(100))
    error_step_id = Column(String(100))
    error_message = Column(Text)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    template = relationship("WorkflowTemplateModel", back_populates="executions")
    steps = relationship(
        "StepRunModel",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="StepRunModel.step_number"
    )


class StepRunModel(Base):
    """Database model for the outcome of one step in one execution."""
    __tablename__ = "workflow_steps"
    __table_args__ = (UniqueConstraint("execution_id", "step_id", name="uq_step_run_execution_step"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    execution_id = Column(String(36), ForeignKey("workflow_executions.id", ondelete="CASCADE"), nullable=False)
    step_id = Column(String(100), nullable=False)
    step_number = Column(Integer, nullable=False)
    step_name = Column(String(200), nullable=False)
    kind = Column(String(20), nullable=False)
    tool_name = Column(String(100))
    tool_parameters = Column(JSON)
    status = Column(String(20), nullable=False, default="pending", index=True)
    result = Column(JSON)
    error_message = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)
    tokens_used = Column(Integer, nullable=False, default=0)
    cost = Column(Float, nullable=False, default=0.0)
    duration_ms = Column(Integer)
    start_time = Column(DateTime)
    end_time = Column(DateTime)
    execution_log = Column(JSON)  # Human review entries and other annotations

    execution = relationship("ExecutionModel", back_populates="steps")


class AuditLogModel(Base):
    """Append-only audit trail."""
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=_new_id)
    execution_id = Column(String(36), ForeignKey("workflow_executions.id", ondelete="SET NULL"))
    step_id = Column(String(100))
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    user_id = Column(String(100), nullable=False, index=True)
    action_type = Column(String(30), nullable=False)
    action_details = Column(Text, nullable=False)
    tool_name = Column(String(100))
    tool_input = Column(JSON)
    tool_output = Column(JSON)
    tokens_used = Column(Integer, nullable=False, default=0)
    cost = Column(Float, nullable=False, default=0.0)
    model_id = Column(String(100))
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text)
    extra = Column("metadata", JSON)


class BillingRecordModel(Base):
    """Token and cost usage of a terminal execution, keyed by billing period."""
    __tablename__ = "billing_records"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(100), nullable=False, index=True)
    execution_id = Column(String(36), ForeignKey("workflow_executions.id", ondelete="SET NULL"), unique=True)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    model_id = Column(String(100), nullable=False)
    tokens_input = Column(Integer, nullable=False, default=0)
    tokens_output = Column(Integer, nullable=False, default=0)
    tokens_total = Column(Integer, nullable=False, default=0)
    cost = Column(Float, nullable=False, default=0.0)
    billing_period = Column(String(7), nullable=False)  # YYYY-MM
    paid = Column(Boolean, nullable=False, default=False)
    extra = Column("metadata", JSON)
