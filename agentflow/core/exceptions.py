"""Exceptions raised by the step interpreter, ledger and template manager."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ErrorCategory(Enum):
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    SECURITY = "security"
    STATE = "state"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors.

    ``details`` describe the failure itself and ``context`` the resource it
    happened on; both end up in the API error body. ``recoverable`` tells the
    interpreter whether a retry policy may try the step again.
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def add_context(self, **kwargs):
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        self.details.update(kwargs)
        return self


class TemplateValidationError(WorkflowEngineError):
    """Raised when a template or run request is rejected before an execution exists."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        template_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, category=ErrorCategory.VALIDATION, **kwargs)
        self.validation_errors = validation_errors or []
        if template_id:
            self.add_context(template_id=template_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class StepExecutionError(WorkflowEngineError):
    """Raised when a step executor fails or times out."""

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, severity=ErrorSeverity.HIGH, recoverable=True, **kwargs)
        self.step_id = step_id
        if step_id:
            self.add_context(step_id=step_id)
        if execution_id:
            self.add_context(execution_id=execution_id)


class ToolNotFoundError(StepExecutionError):
    """Raised when a tool-call step names a tool no backend knows. Never retried."""

    def __init__(self, tool_name: str, **kwargs):
        super().__init__(f"tool not found: {tool_name}", **kwargs)
        self.tool_name = tool_name
        self.recoverable = False
        self.add_context(tool_name=tool_name)


class ConditionError(WorkflowEngineError):
    """Raised by the expression evaluator for unsupported or malformed expressions."""

    def __init__(self, message: str, expression: Optional[str] = None, **kwargs):
        super().__init__(message, severity=ErrorSeverity.LOW, category=ErrorCategory.VALIDATION, **kwargs)
        if expression is not None:
            self.add_details(expression=expression)


class LedgerError(WorkflowEngineError):
    """Raised when persisting execution state fails."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        execution_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if execution_id:
            self.add_context(execution_id=execution_id)


class ConcurrencyError(LedgerError):
    """Raised when an execution row was modified by another writer."""


class NotFoundError(WorkflowEngineError):
    """Raised when a template, execution or step does not exist for the caller."""

    def __init__(self, message: str, resource: Optional[str] = None, resource_id: Optional[str] = None, **kwargs):
        super().__init__(message, severity=ErrorSeverity.LOW, category=ErrorCategory.STATE, **kwargs)
        if resource:
            self.add_context(resource=resource)
        if resource_id:
            self.add_context(resource_id=resource_id)


class AuthorizationError(WorkflowEngineError):
    """Raised when a user acts on an execution or template they do not own."""

    def __init__(self, message: str, user_id: Optional[str] = None, **kwargs):
        super().__init__(message, category=ErrorCategory.SECURITY, **kwargs)
        if user_id:
            self.add_context(user_id=user_id)


class InvalidStateError(WorkflowEngineError):
    """Raised when an operation is not allowed in the current execution or step state."""

    def __init__(self, message: str, current_status: Optional[str] = None, **kwargs):
        super().__init__(message, category=ErrorCategory.STATE, **kwargs)
        if current_status:
            self.add_details(current_status=current_status)


def get_status_code_for_error(error: WorkflowEngineError) -> int:
    """Map a workflow engine error to an HTTP status code."""
    if isinstance(error, (TemplateValidationError, ConditionError)):
        return 400
    if isinstance(error, AuthorizationError):
        return 403
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, (InvalidStateError, ConcurrencyError)):
        return 409
    return 500


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
