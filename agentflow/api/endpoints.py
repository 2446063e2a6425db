"""FastAPI REST endpoints for templates, executions, approvals and billing."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..core.approval import ApprovalGate
from ..core.exceptions import WorkflowEngineError, create_error_response, get_status_code_for_error
from ..core.ledger import ExecutionLedger
from ..core.logging import get_logger
from ..core.orchestrator import StepInterpreter
from ..core.templates import TemplateManager
from ..models.core import (
    AuditLogView,
    BillingRecordView,
    BillingSummary,
    ExecutionResult,
    ExecutionStats,
    ExecutionStatusEnum,
    ExecutionView,
    ModeCost,
    StepRunView,
    TemplateSummary,
    WorkflowTemplate,
    WorkflowTemplateDefinition,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["agentflow"])

# Global instances (initialized by the application factory)
_template_manager: Optional[TemplateManager] = None
_interpreter: Optional[StepInterpreter] = None
_approval_gate: Optional[ApprovalGate] = None
_ledger: Optional[ExecutionLedger] = None


def init_dependencies(
    template_manager: TemplateManager,
    interpreter: StepInterpreter,
    approval_gate: ApprovalGate,
    ledger: ExecutionLedger
):
    """Initialize the global dependencies."""
    global _template_manager, _interpreter, _approval_gate, _ledger
    _template_manager = template_manager
    _interpreter = interpreter
    _approval_gate = approval_gate
    _ledger = ledger


def _not_initialized(component: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{component} not initialized"
    )


def get_template_manager() -> TemplateManager:
    if _template_manager is None:
        raise _not_initialized("Template manager")
    return _template_manager


def get_interpreter() -> StepInterpreter:
    if _interpreter is None:
        raise _not_initialized("Step interpreter")
    return _interpreter


def get_approval_gate() -> ApprovalGate:
    if _approval_gate is None:
        raise _not_initialized("Approval gate")
    return _approval_gate


def get_ledger() -> ExecutionLedger:
    if _ledger is None:
        raise _not_initialized("Execution ledger")
    return _ledger


def get_current_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """The caller's id, as forwarded by the upstream identity provider."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Unauthorized", "message": "X-User-Id header is required"}
        )
    return x_user_id.strip()


def _http_error(error: WorkflowEngineError, action: str) -> HTTPException:
    """Map a workflow engine error onto an HTTPException carrying the standard error body."""
    status_code = get_status_code_for_error(error)
    if status_code >= 500:
        logger.error(f"Error while trying to {action}: {error.message}")
    else:
        logger.warning(f"Rejected request to {action}: {error.message}")
    return HTTPException(status_code=status_code, detail=create_error_response(error))


# Request/Response models

class CreateTemplateResponse(BaseModel):
    template: WorkflowTemplate
    message: str
    validation_warnings: List[str] = Field(default_factory=list)


class RunTemplateRequest(BaseModel):
    inputs: Dict[str, Any] = Field(default_factory=dict, description="Input values for the run")


class ApprovalRequest(BaseModel):
    step_id: str = Field(..., description="Paused approval step")
    action: str = Field(..., pattern="^(approve|reject)$", description="approve or reject")
    feedback: Optional[str] = Field(None, description="Reviewer comment")


class ApprovalResponse(BaseModel):
    execution_id: str
    step_id: str
    action: str
    status: ExecutionStatusEnum
    next_step_id: Optional[str] = None
    completed: bool = False
    result: Optional[ExecutionResult] = Field(None, description="Outcome of the resumed run, if any")


# Templates

@router.post(
    "/templates",
    response_model=CreateTemplateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow template"
)
def create_template(
    definition: WorkflowTemplateDefinition,
    user_id: str = Depends(get_current_user),
    template_manager: TemplateManager = Depends(get_template_manager)
) -> CreateTemplateResponse:
    try:
        validation = template_manager.validate_template(definition)
        template = template_manager.create_template(user_id, definition)
    except WorkflowEngineError as e:
        raise _http_error(e, "create template")

    return CreateTemplateResponse(
        template=template,
        message=f"Template '{template.name}' created successfully",
        validation_warnings=validation.warnings
    )


@router.get("/templates", response_model=List[TemplateSummary], summary="List visible templates")
def list_templates(
    include_public: bool = Query(True, description="Include public templates of other users"),
    active_only: bool = Query(False),
    user_id: str = Depends(get_current_user),
    template_manager: TemplateManager = Depends(get_template_manager)
) -> List[TemplateSummary]:
    try:
        return template_manager.list_templates(user_id, include_public=include_public, active_only=active_only)
    except WorkflowEngineError as e:
        raise _http_error(e, "list templates")


@router.get("/templates/{template_id}", response_model=WorkflowTemplate, summary="Get a template")
def get_template(
    template_id: str,
    user_id: str = Depends(get_current_user),
    template_manager: TemplateManager = Depends(get_template_manager)
) -> WorkflowTemplate:
    try:
        return template_manager.get_template(template_id, user_id)
    except WorkflowEngineError as e:
        raise _http_error(e, "get template")


@router.put("/templates/{template_id}", response_model=WorkflowTemplate, summary="Replace a template")
def update_template(
    template_id: str,
    definition: WorkflowTemplateDefinition,
    user_id: str = Depends(get_current_user),
    template_manager: TemplateManager = Depends(get_template_manager)
) -> WorkflowTemplate:
    try:
        return template_manager.update_template(template_id, user_id, definition)
    except WorkflowEngineError as e:
        raise _http_error(e, "update template")


@router.delete(
    "/templates/{template_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a template"
)
def delete_template(
    template_id: str,
    user_id: str = Depends(get_current_user),
    template_manager: TemplateManager = Depends(get_template_manager)
):
    try:
        template_manager.delete_template(template_id, user_id)
    except WorkflowEngineError as e:
        raise _http_error(e, "delete template")


@router.post(
    "/templates/{template_id}/run",
    response_model=ExecutionResult,
    summary="Run a template",
    description="Runs the template until it finishes or pauses at an approval step"
)
def run_template(
    template_id: str,
    request: RunTemplateRequest,
    user_id: str = Depends(get_current_user),
    template_manager: TemplateManager = Depends(get_template_manager),
    interpreter: StepInterpreter = Depends(get_interpreter)
) -> ExecutionResult:
    try:
        template = template_manager.get_template(template_id, user_id)
        logger.info(f"Running template {template_id} for user {user_id}")
        return interpreter.run(template, user_id, request.inputs)
    except WorkflowEngineError as e:
        raise _http_error(e, "run template")


# Executions

@router.get("/executions", response_model=List[ExecutionView], summary="List executions")
def list_executions(
    status_filter: Optional[ExecutionStatusEnum] = Query(None, alias="status"),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(get_current_user),
    ledger: ExecutionLedger = Depends(get_ledger)
) -> List[ExecutionView]:
    try:
        return ledger.list_executions(user_id, status=status_filter, since=since, until=until, limit=limit)
    except WorkflowEngineError as e:
        raise _http_error(e, "list executions")


@router.get("/executions/{execution_id}", response_model=ExecutionView, summary="Get an execution")
def get_execution(
    execution_id: str,
    user_id: str = Depends(get_current_user),
    ledger: ExecutionLedger = Depends(get_ledger)
) -> ExecutionView:
    try:
        return ledger.get_execution(execution_id, user_id)
    except WorkflowEngineError as e:
        raise _http_error(e, "get execution")


@router.get("/executions/{execution_id}/steps", response_model=List[StepRunView], summary="Get step runs")
def get_execution_steps(
    execution_id: str,
    user_id: str = Depends(get_current_user),
    ledger: ExecutionLedger = Depends(get_ledger)
) -> List[StepRunView]:
    try:
        ledger.get_execution(execution_id, user_id)
        return ledger.get_steps(execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e, "get execution steps")


@router.get("/executions/{execution_id}/audit", response_model=List[AuditLogView], summary="Get audit trail")
def get_execution_audit(
    execution_id: str,
    user_id: str = Depends(get_current_user),
    ledger: ExecutionLedger = Depends(get_ledger)
) -> List[AuditLogView]:
    try:
        ledger.get_execution(execution_id, user_id)
        return ledger.get_audit_logs(execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e, "get audit logs")


@router.post(
    "/executions/{execution_id}/approval",
    response_model=ApprovalResponse,
    summary="Approve or reject a paused step",
    description="An approval with a successor resumes the run from that successor"
)
def decide_approval(
    execution_id: str,
    request: ApprovalRequest,
    user_id: str = Depends(get_current_user),
    approval_gate: ApprovalGate = Depends(get_approval_gate),
    interpreter: StepInterpreter = Depends(get_interpreter)
) -> ApprovalResponse:
    try:
        if request.action == "approve":
            outcome = approval_gate.approve(execution_id, request.step_id, user_id, request.feedback)
        else:
            outcome = approval_gate.reject(execution_id, request.step_id, user_id, request.feedback)

        result = None
        current_status = outcome.execution_status
        if outcome.next_step_id:
            result = interpreter.resume(execution_id, outcome.next_step_id, user_id)
            current_status = result.status
    except WorkflowEngineError as e:
        raise _http_error(e, f"{request.action} step {request.step_id}")

    return ApprovalResponse(
        execution_id=execution_id,
        step_id=request.step_id,
        action=outcome.action,
        status=current_status,
        next_step_id=outcome.next_step_id,
        completed=outcome.completed,
        result=result
    )


@router.post("/executions/{execution_id}/cancel", response_model=ExecutionResult, summary="Cancel an execution")
def cancel_execution(
    execution_id: str,
    user_id: str = Depends(get_current_user),
    interpreter: StepInterpreter = Depends(get_interpreter)
) -> ExecutionResult:
    try:
        return interpreter.cancel(execution_id, user_id)
    except WorkflowEngineError as e:
        raise _http_error(e, "cancel execution")


# Billing and statistics

@router.get("/billing/summary", response_model=BillingSummary, summary="Billing totals for a period")
def get_billing_summary(
    period: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}$", description="Billing period YYYY-MM"),
    user_id: str = Depends(get_current_user),
    ledger: ExecutionLedger = Depends(get_ledger)
) -> BillingSummary:
    billing_period = period or datetime.utcnow().strftime("%Y-%m")
    try:
        return ledger.get_billing_summary(user_id, billing_period)
    except WorkflowEngineError as e:
        raise _http_error(e, "get billing summary")


@router.get("/billing/records", response_model=List[BillingRecordView], summary="Billing records")
def get_billing_records(
    period: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}$"),
    user_id: str = Depends(get_current_user),
    ledger: ExecutionLedger = Depends(get_ledger)
) -> List[BillingRecordView]:
    try:
        return ledger.get_billing_records(user_id, billing_period=period)
    except WorkflowEngineError as e:
        raise _http_error(e, "get billing records")


@router.get("/stats", response_model=ExecutionStats, summary="Execution statistics for the caller")
def get_stats(
    user_id: str = Depends(get_current_user),
    ledger: ExecutionLedger = Depends(get_ledger)
) -> ExecutionStats:
    try:
        return ledger.get_stats(user_id)
    except WorkflowEngineError as e:
        raise _http_error(e, "get statistics")


@router.get("/stats/cost-by-mode", response_model=List[ModeCost], summary="Cost grouped by template mode")
def get_cost_by_mode(
    user_id: str = Depends(get_current_user),
    ledger: ExecutionLedger = Depends(get_ledger)
) -> List[ModeCost]:
    try:
        return ledger.get_cost_by_mode(user_id)
    except WorkflowEngineError as e:
        raise _http_error(e, "get cost by mode")
