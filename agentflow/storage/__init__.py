"""Database models and storage layer."""

from .database import Base, create_tables, drop_tables, init_database, get_session_factory
from .models import (
    WorkflowTemplateModel,
    ExecutionModel,
    StepRunModel,
    AuditLogModel,
    BillingRecordModel,
)

__all__ = [
    "Base",
    "create_tables",
    "drop_tables",
    "init_database",
    "get_session_factory",
    "WorkflowTemplateModel",
    "ExecutionModel",
    "StepRunModel",
    "AuditLogModel",
    "BillingRecordModel",
]
