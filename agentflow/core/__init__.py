"""Core step interpreter components."""

from .exceptions import (
    WorkflowEngineError,
    TemplateValidationError,
    StepExecutionError,
    ToolNotFoundError,
    ConditionError,
    LedgerError,
    ConcurrencyError,
    NotFoundError,
    AuthorizationError,
    InvalidStateError,
)
from .logging import setup_logging, get_logger
from .executors import ExecutorRegistry, StepContext, StepOutcome
from .ledger import ExecutionLedger
from .templates import TemplateManager
from .orchestrator import StepInterpreter
from .approval import ApprovalGate

__all__ = [
    "WorkflowEngineError",
    "TemplateValidationError",
    "StepExecutionError",
    "ToolNotFoundError",
    "ConditionError",
    "LedgerError",
    "ConcurrencyError",
    "NotFoundError",
    "AuthorizationError",
    "InvalidStateError",
    "setup_logging",
    "get_logger",
    "ExecutorRegistry",
    "StepContext",
    "StepOutcome",
    "ExecutionLedger",
    "TemplateManager",
    "StepInterpreter",
    "ApprovalGate",
]
