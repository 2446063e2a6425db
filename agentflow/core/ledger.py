"""Execution ledger: durable record of executions, step runs, audit entries and billing."""

import json
import math
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from ..models.core import (
    AuditActionType,
    AuditLogView,
    BillingRecordView,
    BillingSummary,
    ExecutionStats,
    ExecutionStatusEnum,
    ExecutionView,
    ModeCost,
    StepKind,
    StepRunStatus,
    StepRunView,
    TERMINAL_EXECUTION_STATUSES,
    WorkflowTemplateDefinition,
)
from ..storage.database import get_session_factory
from ..storage.models import (
    AuditLogModel,
    BillingRecordModel,
    ExecutionModel,
    StepRunModel,
    WorkflowTemplateModel,
)
from .exceptions import (
    AuthorizationError,
    ConcurrencyError,
    InvalidStateError,
    LedgerError,
    NotFoundError,
    WorkflowEngineError,
)
from .logging import get_logger

logger = get_logger(__name__)

INPUT_TOKEN_SHARE = 0.6
CANCELLED_MESSAGE = "Execution cancelled"


def _jsonable(value: Any) -> Any:
    """Round-trip through JSON so arbitrary tool results fit a JSON column."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def _elapsed_ms(start: Optional[datetime], end: datetime) -> Optional[int]:
    if start is None:
        return None
    return int((end - start).total_seconds() * 1000)


def billing_period_for(moment: datetime) -> str:
    return f"{moment.year}-{moment.month:02d}"


def split_tokens(total: int) -> tuple:
    """Estimate the input/output split of a token total (60/40)."""
    tokens_input = int(math.floor(total * INPUT_TOKEN_SHARE))
    return tokens_input, total - tokens_input


@contextmanager
def session_scope(session_factory: sessionmaker, operation: str,
                  execution_id: Optional[str] = None) -> Iterator[Session]:
    """Transaction that commits on success and maps storage failures onto ledger errors."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except WorkflowEngineError:
        session.rollback()
        raise
    except StaleDataError:
        session.rollback()
        raise ConcurrencyError(
            f"Execution {execution_id} was modified concurrently",
            operation=operation,
            execution_id=execution_id
        )
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Storage operation {operation} failed: {str(e)}")
        raise LedgerError(
            f"Failed to {operation.replace('_', ' ')}: {str(e)}",
            operation=operation,
            execution_id=execution_id
        )
    finally:
        session.close()


class ExecutionLedger:
    """Persists every execution state transition before the interpreter moves on.

    Each public method runs in its own transaction and commits before it
    returns. Execution rows are versioned, so a write based on a stale read
    raises ``ConcurrencyError`` instead of silently overwriting.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or get_session_factory()

    def _session_scope(self, operation: str, execution_id: Optional[str] = None):
        return session_scope(self._session_factory, operation, execution_id)

    # Lookups

    def _load_execution(self, session: Session, execution_id: str) -> ExecutionModel:
        execution = session.get(ExecutionModel, execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found", resource="execution", resource_id=execution_id)
        return execution

    def _load_step(self, session: Session, execution_id: str, step_id: str) -> StepRunModel:
        step = (
            session.query(StepRunModel)
            .filter(StepRunModel.execution_id == execution_id, StepRunModel.step_id == step_id)
            .first()
        )
        if step is None:
            raise NotFoundError(
                f"Step {step_id} not found in execution {execution_id}",
                resource="step",
                resource_id=step_id
            )
        return step

    @staticmethod
    def _require_execution_status(execution: ExecutionModel, *allowed: ExecutionStatusEnum) -> None:
        if execution.status not in {status.value for status in allowed}:
            raise InvalidStateError(
                f"Execution {execution.id} is {execution.status}, expected "
                f"{' or '.join(status.value for status in allowed)}",
                current_status=execution.status
            )

    @staticmethod
    def _require_step_status(step: StepRunModel, *allowed: StepRunStatus) -> None:
        if step.status not in {status.value for status in allowed}:
            raise InvalidStateError(
                f"Step {step.step_id} is {step.status}, expected "
                f"{' or '.join(status.value for status in allowed)}",
                current_status=step.status
            )

    def _audit(self, session: Session, execution: ExecutionModel, action: AuditActionType,
               details: str, step_id: Optional[str] = None, **fields) -> None:
        session.add(AuditLogModel(
            execution_id=execution.id,
            step_id=step_id,
            timestamp=datetime.utcnow(),
            user_id=execution.user_id,
            action_type=action.value,
            action_details=details,
            model_id=execution.model_id,
            **fields
        ))

    # Writes

    def create_execution(self, template: WorkflowTemplateDefinition, user_id: str,
                         inputs: Dict[str, Any], model_id: str) -> str:
        """
        Create an Execution and one pending StepRun per template step.

        Args:
            template: Template being run (stored or ad hoc)
            user_id: Owner of the new execution
            inputs: Inputs merged over the template's default variables
            model_id: Model recorded for audit and billing

        Returns:
            The new execution id
        """
        template_id = getattr(template, "template_id", None)

        with self._session_scope("create_execution") as session:
            stored = session.get(WorkflowTemplateModel, template_id) if template_id else None
            if stored is not None:
                stored.run_count = (stored.run_count or 0) + 1
                stored.last_run_at = datetime.utcnow()

            execution = ExecutionModel(
                template_id=stored.id if stored is not None else None,
                workflow_name=template.name,
                user_id=user_id,
                mode=template.mode,
                model_id=model_id,
                status=ExecutionStatusEnum.RUNNING.value,
                inputs=_jsonable(inputs) or {},
                outputs={},
                definition=template.model_dump(mode="json"),
                start_time=datetime.utcnow(),
                steps_total=len(template.steps),
            )
            session.add(execution)
            session.flush()

            for position, step in enumerate(template.steps, start=1):
                session.add(StepRunModel(
                    execution_id=execution.id,
                    step_id=step.id,
                    step_number=position,
                    step_name=step.display_name,
                    kind=step.kind.value,
                    tool_name=step.config.get("tool") if step.kind == StepKind.TOOL_CALL else None,
                    status=StepRunStatus.PENDING.value,
                    execution_log=[],
                ))

            self._audit(
                session, execution, AuditActionType.WORKFLOW_START,
                f"Started workflow: {template.name}",
                extra={"mode": template.mode, "steps_total": len(template.steps)}
            )
            execution_id = execution.id

        logger.info(f"Created execution {execution_id} for template '{template.name}' ({len(template.steps)} steps)")
        return execution_id

    def record_step_start(self, execution_id: str, step_id: str, resolved_params: Dict[str, Any]) -> None:
        """Mark a pending StepRun running and store its resolved parameters."""
        with self._session_scope("record_step_start", execution_id) as session:
            execution = self._load_execution(session, execution_id)
            self._require_execution_status(execution, ExecutionStatusEnum.RUNNING)
            step = self._load_step(session, execution_id, step_id)
            self._require_step_status(step, StepRunStatus.PENDING)

            params = _jsonable(resolved_params) or {}
            step.status = StepRunStatus.RUNNING.value
            step.start_time = datetime.utcnow()
            step.tool_parameters = params
            if step.kind == StepKind.TOOL_CALL.value and params.get("tool"):
                step.tool_name = params["tool"]
            execution.current_step_id = step_id

            self._audit(
                session, execution, AuditActionType.STEP_START,
                f"Started step {step.step_number}: {step.step_name}",
                step_id=step_id,
                tool_name=step.tool_name,
                tool_input=params
            )

    def record_retry(self, execution_id: str, step_id: str, error_message: str) -> int:
        """Count one more attempt of a running step; returns the new retry count."""
        with self._session_scope("record_retry", execution_id) as session:
            execution = self._load_execution(session, execution_id)
            step = self._load_step(session, execution_id, step_id)
            self._require_step_status(step, StepRunStatus.RUNNING)

            step.retry_count = (step.retry_count or 0) + 1
            retry_count = step.retry_count
            self._audit(
                session, execution, AuditActionType.RETRY,
                f"Retrying step {step.step_number}: {step.step_name} (attempt {retry_count + 1})",
                step_id=step_id,
                success=False,
                error_message=error_message
            )
        return retry_count

    def record_step_result(self, execution_id: str, step_id: str, outcome=None,
                           error_message: Optional[str] = None) -> None:
        """
        Close a running StepRun as success (``outcome``) or failed (``error_message``).

        Execution counters and totals grow in the same transaction.
        """
        failed = outcome is None
        with self._session_scope("record_step_result", execution_id) as session:
            execution = self._load_execution(session, execution_id)
            self._require_execution_status(execution, ExecutionStatusEnum.RUNNING)
            step = self._load_step(session, execution_id, step_id)
            self._require_step_status(step, StepRunStatus.RUNNING)

            now = datetime.utcnow()
            step.end_time = now
            step.duration_ms = _elapsed_ms(step.start_time, now)

            if failed:
                step.status = StepRunStatus.FAILED.value
                step.error_message = error_message or "Step failed"
                execution.steps_failed = (execution.steps_failed or 0) + 1
                self._audit(
                    session, execution, AuditActionType.STEP_END,
                    f"Step {step.step_number} failed: {step.step_name}",
                    step_id=step_id,
                    tool_name=step.tool_name,
                    success=False,
                    error_message=step.error_message
                )
                return

            result = _jsonable(outcome.result)
            step.status = StepRunStatus.SUCCESS.value
            step.result = result
            step.tokens_used = outcome.tokens_used
            step.cost = outcome.cost

            execution.steps_completed = (execution.steps_completed or 0) + 1
            execution.total_tokens = (execution.total_tokens or 0) + outcome.tokens_used
            execution.total_cost = round((execution.total_cost or 0.0) + outcome.cost, 6)
            if outcome.split_known:
                execution.input_tokens = (execution.input_tokens or 0) + outcome.input_tokens
                execution.output_tokens = (execution.output_tokens or 0) + outcome.output_tokens
            elif outcome.tokens_used:
                execution.token_split_known = False
            execution.outputs = {**(execution.outputs or {}), step_id: result}

            self._audit(
                session, execution,
                AuditActionType.AI_DECISION if step.kind == StepKind.AI_PROMPT.value else AuditActionType.STEP_END,
                f"Completed step {step.step_number}: {step.step_name}",
                step_id=step_id,
                tool_name=step.tool_name,
                tool_output=result,
                tokens_used=outcome.tokens_used,
                cost=outcome.cost
            )

    def record_step_paused(self, execution_id: str, step_id: str, resolved_params: Dict[str, Any],
                           result: Any = None) -> None:
        """Park a running approval step and its Execution until a reviewer decides."""
        with self._session_scope("record_step_paused", execution_id) as session:
            execution = self._load_execution(session, execution_id)
            self._require_execution_status(execution, ExecutionStatusEnum.RUNNING)
            step = self._load_step(session, execution_id, step_id)
            self._require_step_status(step, StepRunStatus.RUNNING)

            step.status = StepRunStatus.PAUSED.value
            step.tool_parameters = _jsonable(resolved_params) or {}
            step.result = _jsonable(result)
            execution.status = ExecutionStatusEnum.PAUSED.value
            execution.current_step_id = step_id

            self._audit(
                session, execution, AuditActionType.USER_INTERVENTION,
                f"Awaiting approval at step {step.step_number}: {step.step_name}",
                step_id=step_id,
                tool_input=step.tool_parameters
            )

    def record_review(self, execution_id: str, step_id: str, user_id: str, approved: bool,
                      feedback: Optional[str] = None, next_step_id: Optional[str] = None) -> ExecutionView:
        """
        Apply a reviewer decision to a paused step.

        Approval with a successor puts the Execution back to ``running``;
        approval of the last step finalizes ``success``; rejection finalizes
        ``failed``. Everything happens in one transaction.

        Raises:
            AuthorizationError: If the user does not own the execution
            InvalidStateError: If the execution or step is not paused
        """
        with self._session_scope("record_review", execution_id) as session:
            execution = self._load_execution(session, execution_id)
            if execution.user_id != user_id:
                raise AuthorizationError(
                    f"User {user_id} may not review execution {execution_id}",
                    user_id=user_id
                )
            self._require_execution_status(execution, ExecutionStatusEnum.PAUSED)
            step = self._load_step(session, execution_id, step_id)
            self._require_step_status(step, StepRunStatus.PAUSED)

            now = datetime.utcnow()
            action = "approve" if approved else "reject"
            entry = {
                "type": "human_review",
                "timestamp": now.isoformat(),
                "action": action,
                "feedback": feedback,
            }
            step.execution_log = list(step.execution_log or []) + [entry]
            step.end_time = now
            step.duration_ms = _elapsed_ms(step.start_time, now)

            if approved:
                step.status = StepRunStatus.SUCCESS.value
                step.result = {"approved": True, "feedback": feedback}
                execution.steps_completed = (execution.steps_completed or 0) + 1
                execution.outputs = {**(execution.outputs or {}), step_id: step.result}
                self._audit(
                    session, execution, AuditActionType.USER_INTERVENTION,
                    f"Step {step.step_number} approved: {step.step_name}",
                    step_id=step_id,
                    extra={"feedback": feedback}
                )
                if next_step_id:
                    execution.status = ExecutionStatusEnum.RUNNING.value
                    execution.current_step_id = next_step_id
                else:
                    self._finalize_in_session(session, execution, ExecutionStatusEnum.SUCCESS)
            else:
                message = feedback or "Rejected by user"
                step.status = StepRunStatus.FAILED.value
                step.error_message = message
                execution.steps_failed = (execution.steps_failed or 0) + 1
                self._audit(
                    session, execution, AuditActionType.USER_INTERVENTION,
                    f"Step {step.step_number} rejected: {step.step_name}",
                    step_id=step_id,
                    success=False,
                    error_message=message
                )
                self._finalize_in_session(
                    session, execution, ExecutionStatusEnum.FAILED,
                    error_message=message, error_step_id=step_id
                )

            view = self._execution_view(execution)

        logger.info(f"Step {step_id} of execution {execution_id} {action}d by {user_id}")
        return view

    def _skip_pending(self, session: Session, execution_id: str) -> int:
        pending = (
            session.query(StepRunModel)
            .filter(StepRunModel.execution_id == execution_id,
                    StepRunModel.status == StepRunStatus.PENDING.value)
            .all()
        )
        for step in pending:
            step.status = StepRunStatus.SKIPPED.value
        return len(pending)

    def skip_pending_steps(self, execution_id: str) -> int:
        """Mark every still-pending StepRun as skipped; returns how many changed."""
        with self._session_scope("skip_pending_steps", execution_id) as session:
            self._load_execution(session, execution_id)
            return self._skip_pending(session, execution_id)

    def _finalize_in_session(self, session: Session, execution: ExecutionModel, status: ExecutionStatusEnum,
                             error_message: Optional[str] = None,
                             error_step_id: Optional[str] = None) -> None:
        if ExecutionStatusEnum(execution.status).is_terminal:
            raise InvalidStateError(
                f"Execution {execution.id} is already {execution.status}",
                current_status=execution.status
            )

        now = datetime.utcnow()
        execution.status = status.value
        execution.end_time = now
        execution.duration_ms = _elapsed_ms(execution.start_time, now)
        execution.error_message = error_message
        execution.error_step_id = error_step_id

        if status == ExecutionStatusEnum.SUCCESS:
            self._skip_pending(session, execution.id)

        self._audit(
            session, execution, AuditActionType.WORKFLOW_END,
            f"Workflow {status.value}: {execution.workflow_name}",
            step_id=error_step_id,
            tokens_used=execution.total_tokens or 0,
            cost=execution.total_cost or 0.0,
            success=status == ExecutionStatusEnum.SUCCESS,
            error_message=error_message,
            extra={"duration_ms": execution.duration_ms}
        )

        if status != ExecutionStatusEnum.CANCELLED:
            session.add(self._billing_record(execution, now))

        logger.info(
            f"Execution {execution.id} finished {status.value} "
            f"({execution.duration_ms}ms, {execution.total_tokens or 0} tokens, ${execution.total_cost or 0.0:.4f})"
        )

    def _billing_record(self, execution: ExecutionModel, now: datetime) -> BillingRecordModel:
        total = execution.total_tokens or 0
        known_input = execution.input_tokens or 0
        known_output = execution.output_tokens or 0
        if execution.token_split_known and known_input + known_output == total:
            tokens_input, tokens_output, estimated = known_input, known_output, False
        else:
            (tokens_input, tokens_output), estimated = split_tokens(total), True

        return BillingRecordModel(
            user_id=execution.user_id,
            execution_id=execution.id,
            timestamp=now,
            model_id=execution.model_id,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
            tokens_total=total,
            cost=execution.total_cost or 0.0,
            billing_period=billing_period_for(now),
            paid=False,
            extra={"estimated_split": estimated},
        )

    def finalize(self, execution_id: str, status: ExecutionStatusEnum,
                 error_message: Optional[str] = None,
                 error_step_id: Optional[str] = None) -> ExecutionView:
        """
        Move an execution to a terminal status.

        Writes exactly one ``workflow_end`` audit entry and, unless the status
        is ``cancelled``, exactly one billing record. Pending steps are marked
        skipped when the status is ``success``.

        Raises:
            InvalidStateError: If the status is not terminal or the execution already is
        """
        status = ExecutionStatusEnum(status)
        if status not in TERMINAL_EXECUTION_STATUSES:
            raise InvalidStateError(f"{status.value} is not a terminal status")

        with self._session_scope("finalize", execution_id) as session:
            execution = self._load_execution(session, execution_id)
            self._finalize_in_session(session, execution, status, error_message, error_step_id)
            return self._execution_view(execution)

    def cancel(self, execution_id: str) -> ExecutionView:
        """Cancel a running or paused execution; open step runs are closed as failed."""
        with self._session_scope("cancel", execution_id) as session:
            execution = self._load_execution(session, execution_id)
            self._require_execution_status(execution, ExecutionStatusEnum.RUNNING, ExecutionStatusEnum.PAUSED)

            open_steps = (
                session.query(StepRunModel)
                .filter(StepRunModel.execution_id == execution_id,
                        StepRunModel.status.in_([StepRunStatus.RUNNING.value, StepRunStatus.PAUSED.value]))
                .all()
            )
            now = datetime.utcnow()
            for step in open_steps:
                step.status = StepRunStatus.FAILED.value
                step.error_message = CANCELLED_MESSAGE
                step.end_time = now
                step.duration_ms = _elapsed_ms(step.start_time, now)
                execution.steps_failed = (execution.steps_failed or 0) + 1

            self._finalize_in_session(session, execution, ExecutionStatusEnum.CANCELLED,
                                      error_message="Cancelled by user")
            return self._execution_view(execution)

    # Reads

    def get_execution(self, execution_id: str, user_id: Optional[str] = None) -> ExecutionView:
        """
        Fetch one execution.

        Raises:
            NotFoundError: If the execution does not exist
            AuthorizationError: If ``user_id`` is given and does not own it
        """
        with self._session_scope("get_execution", execution_id) as session:
            execution = self._load_execution(session, execution_id)
            if user_id is not None and execution.user_id != user_id:
                raise AuthorizationError(f"User {user_id} may not access execution {execution_id}", user_id=user_id)
            return self._execution_view(execution)

    def get_definition(self, execution_id: str) -> Dict[str, Any]:
        """Template snapshot the execution was started from."""
        with self._session_scope("get_definition", execution_id) as session:
            return dict(self._load_execution(session, execution_id).definition or {})

    def get_steps(self, execution_id: str) -> List[StepRunView]:
        with self._session_scope("get_steps", execution_id) as session:
            self._load_execution(session, execution_id)
            steps = (
                session.query(StepRunModel)
                .filter(StepRunModel.execution_id == execution_id)
                .order_by(StepRunModel.step_number)
                .all()
            )
            return [self._step_view(step) for step in steps]

    def get_step(self, execution_id: str, step_id: str) -> StepRunView:
        with self._session_scope("get_step", execution_id) as session:
            return self._step_view(self._load_step(session, execution_id, step_id))

    def get_prior_outputs(self, execution_id: str) -> Dict[str, Any]:
        """Outputs visible to later steps: results of successful steps, ``""`` for failed ones."""
        outputs: Dict[str, Any] = {}
        for step in self.get_steps(execution_id):
            if step.status == StepRunStatus.SUCCESS:
                outputs[step.step_id] = step.result
            elif step.status == StepRunStatus.FAILED:
                outputs[step.step_id] = ""
        return outputs

    def get_audit_logs(self, execution_id: str) -> List[AuditLogView]:
        with self._session_scope("get_audit_logs", execution_id) as session:
            logs = (
                session.query(AuditLogModel)
                .filter(AuditLogModel.execution_id == execution_id)
                .order_by(AuditLogModel.timestamp)
                .all()
            )
            return [self._audit_view(log) for log in logs]

    def list_executions(self, user_id: str, status: Optional[ExecutionStatusEnum] = None,
                        since: Optional[datetime] = None, until: Optional[datetime] = None,
                        limit: int = 50) -> List[ExecutionView]:
        """Executions of a user, newest first, filtered by status and start-time range."""
        with self._session_scope("list_executions") as session:
            query = session.query(ExecutionModel).filter(ExecutionModel.user_id == user_id)
            if status is not None:
                query = query.filter(ExecutionModel.status == ExecutionStatusEnum(status).value)
            if since is not None:
                query = query.filter(ExecutionModel.start_time >= since)
            if until is not None:
                query = query.filter(ExecutionModel.start_time <= until)
            executions = query.order_by(ExecutionModel.start_time.desc()).limit(limit).all()
            return [self._execution_view(execution) for execution in executions]

    def get_running_executions(self, user_id: Optional[str] = None) -> List[ExecutionView]:
        with self._session_scope("get_running_executions") as session:
            query = session.query(ExecutionModel).filter(
                ExecutionModel.status == ExecutionStatusEnum.RUNNING.value
            )
            if user_id:
                query = query.filter(ExecutionModel.user_id == user_id)
            return [self._execution_view(e) for e in query.order_by(ExecutionModel.start_time.desc()).all()]

    def get_billing_records(self, user_id: str, billing_period: Optional[str] = None) -> List[BillingRecordView]:
        with self._session_scope("get_billing_records") as session:
            query = session.query(BillingRecordModel).filter(BillingRecordModel.user_id == user_id)
            if billing_period:
                query = query.filter(BillingRecordModel.billing_period == billing_period)
            records = query.order_by(BillingRecordModel.timestamp.desc()).all()
            return [self._billing_view(record) for record in records]

    def get_billing_summary(self, user_id: str, billing_period: str) -> BillingSummary:
        with self._session_scope("get_billing_summary") as session:
            total_cost, total_tokens, record_count = (
                session.query(
                    func.coalesce(func.sum(BillingRecordModel.cost), 0.0),
                    func.coalesce(func.sum(BillingRecordModel.tokens_total), 0),
                    func.count(BillingRecordModel.id),
                )
                .filter(BillingRecordModel.user_id == user_id,
                        BillingRecordModel.billing_period == billing_period)
                .one()
            )
            return BillingSummary(
                billing_period=billing_period,
                total_cost=float(total_cost or 0.0),
                total_tokens=int(total_tokens or 0),
                record_count=int(record_count or 0),
            )

    def get_stats(self, user_id: Optional[str] = None) -> ExecutionStats:
        def count_status(status: ExecutionStatusEnum):
            return func.coalesce(func.sum(case((ExecutionModel.status == status.value, 1), else_=0)), 0)

        with self._session_scope("get_stats") as session:
            query = session.query(
                func.count(ExecutionModel.id),
                count_status(ExecutionStatusEnum.RUNNING),
                count_status(ExecutionStatusEnum.PAUSED),
                count_status(ExecutionStatusEnum.SUCCESS),
                count_status(ExecutionStatusEnum.FAILED),
                func.coalesce(func.sum(ExecutionModel.total_cost), 0.0),
                func.coalesce(func.sum(ExecutionModel.total_tokens), 0),
                func.avg(ExecutionModel.duration_ms),
            )
            audit_query = session.query(func.count(AuditLogModel.id))
            if user_id:
                query = query.filter(ExecutionModel.user_id == user_id)
                audit_query = audit_query.filter(AuditLogModel.user_id == user_id)

            total, running, paused, successful, failed, cost, tokens, avg_ms = query.one()
            return ExecutionStats(
                total_executions=int(total or 0),
                running_executions=int(running or 0),
                paused_executions=int(paused or 0),
                successful_executions=int(successful or 0),
                failed_executions=int(failed or 0),
                total_cost=float(cost or 0.0),
                total_tokens=int(tokens or 0),
                total_audit_logs=int(audit_query.scalar() or 0),
                average_execution_time_ms=float(avg_ms or 0.0),
            )

    def get_cost_by_mode(self, user_id: str) -> List[ModeCost]:
        with self._session_scope("get_cost_by_mode") as session:
            total_cost = func.coalesce(func.sum(ExecutionModel.total_cost), 0.0)
            rows = (
                session.query(
                    ExecutionModel.mode,
                    total_cost,
                    func.coalesce(func.sum(ExecutionModel.total_tokens), 0),
                    func.count(ExecutionModel.id),
                )
                .filter(ExecutionModel.user_id == user_id)
                .group_by(ExecutionModel.mode)
                .order_by(total_cost.desc())
                .all()
            )
            return [
                ModeCost(mode=mode, total_cost=float(cost), total_tokens=int(tokens), execution_count=int(count))
                for mode, cost, tokens, count in rows
            ]

    def purge_older_than(self, days: int) -> Dict[str, int]:
        """
        Delete terminal executions started more than ``days`` ago, with their
        step runs and audit entries, plus older audit entries of finished or
        detached executions. Billing records are kept with their execution
        link cleared.
        """
        if days < 1:
            raise InvalidStateError("Retention must be at least one day")

        cutoff = datetime.utcnow() - timedelta(days=days)
        terminal = [status.value for status in TERMINAL_EXECUTION_STATUSES]

        with self._session_scope("purge_older_than") as session:
            old_executions = (
                session.query(ExecutionModel)
                .filter(ExecutionModel.status.in_(terminal), ExecutionModel.start_time < cutoff)
                .all()
            )
            old_ids = [execution.id for execution in old_executions]

            logs_deleted = 0
            if old_ids:
                session.query(BillingRecordModel).filter(
                    BillingRecordModel.execution_id.in_(old_ids)
                ).update({BillingRecordModel.execution_id: None}, synchronize_session=False)
                logs_deleted += session.query(AuditLogModel).filter(
                    AuditLogModel.execution_id.in_(old_ids)
                ).delete(synchronize_session=False)
            # Running and paused executions keep their whole trail.
            finished_ids = select(ExecutionModel.id).where(ExecutionModel.status.in_(terminal))
            logs_deleted += session.query(AuditLogModel).filter(
                AuditLogModel.timestamp < cutoff,
                or_(AuditLogModel.execution_id.is_(None), AuditLogModel.execution_id.in_(finished_ids))
            ).delete(synchronize_session=False)

            for execution in old_executions:
                session.delete(execution)

        if old_ids or logs_deleted:
            logger.info(f"Purged {len(old_ids)} executions and {logs_deleted} audit entries older than {days} days")
        return {"executions_deleted": len(old_ids), "logs_deleted": logs_deleted}

    # Views

    @staticmethod
    def _execution_view(execution: ExecutionModel) -> ExecutionView:
        return ExecutionView(
            execution_id=execution.id,
            template_id=execution.template_id,
            workflow_name=execution.workflow_name,
            user_id=execution.user_id,
            mode=execution.mode,
            model_id=execution.model_id,
            status=ExecutionStatusEnum(execution.status),
            inputs=execution.inputs or {},
            outputs=execution.outputs,
            start_time=execution.start_time,
            end_time=execution.end_time,
            duration_ms=execution.duration_ms,
            total_tokens=execution.total_tokens or 0,
            total_cost=execution.total_cost or 0.0,
            steps_total=execution.steps_total or 0,
            steps_completed=execution.steps_completed or 0,
            steps_failed=execution.steps_failed or 0,
            current_step_id=execution.current_step_id,
            error_step_id=execution.error_step_id,
            error_message=execution.error_message,
        )

    @staticmethod
    def _step_view(step: StepRunModel) -> StepRunView:
        return StepRunView(
            run_id=step.id,
            execution_id=step.execution_id,
            step_id=step.step_id,
            step_number=step.step_number,
            step_name=step.step_name,
            kind=StepKind(step.kind),
            tool_name=step.tool_name,
            tool_parameters=step.tool_parameters,
            status=StepRunStatus(step.status),
            result=step.result,
            error_message=step.error_message,
            retry_count=step.retry_count or 0,
            tokens_used=step.tokens_used or 0,
            cost=step.cost or 0.0,
            duration_ms=step.duration_ms,
            start_time=step.start_time,
            end_time=step.end_time,
            execution_log=step.execution_log or [],
        )

    @staticmethod
    def _audit_view(log: AuditLogModel) -> AuditLogView:
        return AuditLogView(
            log_id=log.id,
            execution_id=log.execution_id,
            step_id=log.step_id,
            timestamp=log.timestamp,
            user_id=log.user_id,
            action_type=AuditActionType(log.action_type),
            action_details=log.action_details,
            tool_name=log.tool_name,
            tool_input=log.tool_input,
            tool_output=log.tool_output,
            tokens_used=log.tokens_used or 0,
            cost=log.cost or 0.0,
            model_id=log.model_id,
            success=bool(log.success),
            error_message=log.error_message,
            metadata=log.extra or {},
        )

    @staticmethod
    def _billing_view(record: BillingRecordModel) -> BillingRecordView:
        return BillingRecordView(
            billing_id=record.id,
            user_id=record.user_id,
            execution_id=record.execution_id,
            timestamp=record.timestamp,
            model_id=record.model_id,
            tokens_input=record.tokens_input,
            tokens_output=record.tokens_output,
            tokens_total=record.tokens_total,
            cost=record.cost,
            billing_period=record.billing_period,
            paid=bool(record.paid),
        )
