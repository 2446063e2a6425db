"""Data models for the workflow step interpreter."""

from .core import (
    StepKind,
    OnErrorPolicy,
    ExecutionStatusEnum,
    StepRunStatus,
    AuditActionType,
    ValidationResult,
    StepDefinition,
    WorkflowTemplateDefinition,
    WorkflowTemplate,
    TemplateSummary,
    ExecutionView,
    StepRunView,
    AuditLogView,
    BillingRecordView,
    BillingSummary,
    ExecutionStats,
    ModeCost,
    ExecutionResult,
    ApprovalOutcome,
)

__all__ = [
    "StepKind",
    "OnErrorPolicy",
    "ExecutionStatusEnum",
    "StepRunStatus",
    "AuditActionType",
    "ValidationResult",
    "StepDefinition",
    "WorkflowTemplateDefinition",
    "WorkflowTemplate",
    "TemplateSummary",
    "ExecutionView",
    "StepRunView",
    "AuditLogView",
    "BillingRecordView",
    "BillingSummary",
    "ExecutionStats",
    "ModeCost",
    "ExecutionResult",
    "ApprovalOutcome",
]
