"""Approval gate: the only way a paused execution moves forward."""

from typing import Optional

from ..models.core import ApprovalOutcome, ExecutionStatusEnum, WorkflowTemplateDefinition
from .exceptions import NotFoundError
from .ledger import ExecutionLedger
from .logging import get_logger

logger = get_logger(__name__)


class ApprovalGate:
    """Applies a reviewer's approve or reject decision to a paused step.

    Ownership and state checks happen inside the ledger transaction, so a
    rejected call leaves the execution untouched. After an approval with a
    successor the caller resumes the interpreter from ``next_step_id``.
    """

    def __init__(self, ledger: ExecutionLedger):
        self.ledger = ledger

    def approve(self, execution_id: str, step_id: str, user_id: str,
                feedback: Optional[str] = None) -> ApprovalOutcome:
        return self._decide(execution_id, step_id, user_id, True, feedback)

    def reject(self, execution_id: str, step_id: str, user_id: str,
               feedback: Optional[str] = None) -> ApprovalOutcome:
        return self._decide(execution_id, step_id, user_id, False, feedback)

    def _decide(self, execution_id: str, step_id: str, user_id: str, approved: bool,
                feedback: Optional[str]) -> ApprovalOutcome:
        self.ledger.get_execution(execution_id, user_id)

        definition = WorkflowTemplateDefinition.model_validate(self.ledger.get_definition(execution_id))
        step = definition.get_step(step_id)
        if step is None:
            raise NotFoundError(f"Step {step_id} not found in execution {execution_id}",
                                resource="step", resource_id=step_id)

        next_step_id = step.next_step_id if approved else None
        view = self.ledger.record_review(
            execution_id, step_id, user_id, approved,
            feedback=feedback, next_step_id=next_step_id
        )

        logger.info(f"Approval decision for {execution_id}/{step_id}: {'approve' if approved else 'reject'}")
        return ApprovalOutcome(
            execution_id=execution_id,
            step_id=step_id,
            action="approve" if approved else "reject",
            next_step_id=next_step_id if view.status == ExecutionStatusEnum.RUNNING else None,
            completed=view.status.is_terminal,
            execution_status=view.status,
        )
