"""Step interpreter: walks a template's steps and records every transition in the ledger."""

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, Optional

from ..models.core import (
    ExecutionResult,
    ExecutionStatusEnum,
    ExecutionView,
    OnErrorPolicy,
    StepDefinition,
    WorkflowTemplateDefinition,
)
from .error_recovery import RetryConfig
from .exceptions import (
    ConcurrencyError,
    InvalidStateError,
    NotFoundError,
    StepExecutionError,
    TemplateValidationError,
    WorkflowEngineError,
)
from .executors import ExecutorRegistry, StepContext, StepExecutor, StepOutcome
from .ledger import ExecutionLedger
from .logging import clear_logging_context, get_logger, set_logging_context

logger = get_logger(__name__)


class StepInterpreter:
    """Runs one execution at a time, strictly following each step's first connection.

    The interpreter never blocks on a human: an approval step parks the
    execution as ``paused`` and ``run``/``resume`` return immediately.
    Resumption is a new ``resume`` call keyed by execution and step id.
    """

    def __init__(self, ledger: ExecutionLedger, executors: ExecutorRegistry, config: Any,
                 max_workers: int = 4):
        """Initialize the step interpreter.

        Args:
            ledger: Ledger every state transition is written to
            executors: Executor per step kind
            config: Application config (default model, retry backoff, re-resolution flag)
            max_workers: Worker threads used to enforce step timeouts
        """
        self.ledger = ledger
        self.executors = executors
        self.config = config
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="agentflow-step")

    def run(self, template: WorkflowTemplateDefinition, user_id: str,
            inputs: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        """
        Start a new execution of ``template`` and drive it until it ends or pauses.

        Raises:
            TemplateValidationError: If the template or inputs are rejected; no execution is created
            LedgerError: If a ledger write fails
        """
        merged_inputs = self._prepare_inputs(template, inputs or {})
        model_id = template.model_id or self.config.default_model

        execution_id = self.ledger.create_execution(template, user_id, merged_inputs, model_id)
        logger.info(f"Running template '{template.name}' as execution {execution_id}")

        return self._drive(
            execution_id, template, user_id, merged_inputs,
            prior_outputs={}, start_step_id=template.entry_step_id, model_id=template.model_id
        )

    def resume(self, execution_id: str, from_step_id: str, user_id: str) -> ExecutionResult:
        """
        Continue an execution from ``from_step_id`` after an approval.

        Inputs and prior outputs are re-read from the ledger, never from memory.

        Raises:
            NotFoundError: If the execution or step does not exist
            AuthorizationError: If the user does not own the execution
            InvalidStateError: If the execution is not running
        """
        execution = self.ledger.get_execution(execution_id, user_id)
        if execution.status != ExecutionStatusEnum.RUNNING:
            raise InvalidStateError(
                f"Execution {execution_id} is {execution.status.value} and cannot be resumed",
                current_status=execution.status.value
            )

        definition = WorkflowTemplateDefinition.model_validate(self.ledger.get_definition(execution_id))
        if definition.get_step(from_step_id) is None:
            raise NotFoundError(f"Step {from_step_id} not found in execution {execution_id}",
                                resource="step", resource_id=from_step_id)

        logger.info(f"Resuming execution {execution_id} from step {from_step_id}")
        return self._drive(
            execution_id, definition, execution.user_id, execution.inputs,
            prior_outputs=self.ledger.get_prior_outputs(execution_id),
            start_step_id=from_step_id, model_id=definition.model_id
        )

    def cancel(self, execution_id: str, user_id: str) -> ExecutionResult:
        """
        Cancel a running or paused execution.

        An in-flight step is not aborted; the interpreter notices the
        cancellation before the next step.

        Raises:
            InvalidStateError: If the execution already ended
        """
        self.ledger.get_execution(execution_id, user_id)
        view = self.ledger.cancel(execution_id)
        logger.info(f"Execution {execution_id} cancelled by {user_id}")
        return self._result(view)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)

    def _prepare_inputs(self, template: WorkflowTemplateDefinition, inputs: Dict[str, Any]) -> Dict[str, Any]:
        """Validate the run request and merge inputs over the template defaults."""
        errors = []
        if not template.is_active:
            errors.append(f"Template '{template.name}' is not active")
        if not template.steps:
            errors.append(f"Template '{template.name}' has no steps")
        for step in template.steps:
            if not self.executors.supports(step.kind):
                errors.append(f"Step '{step.id}' has unsupported kind '{step.kind.value}'")

        merged = {**template.variables, **inputs}
        missing = [name for name in template.required_inputs() if merged.get(name) is None]
        if missing:
            errors.append(f"Missing required inputs: {', '.join(missing)}")

        if errors:
            raise TemplateValidationError(
                f"Cannot run template: {'; '.join(errors)}",
                validation_errors=errors,
                template_id=getattr(template, "template_id", None)
            )
        return merged

    def _drive(self, execution_id: str, template: WorkflowTemplateDefinition, user_id: str,
               inputs: Dict[str, Any], prior_outputs: Dict[str, Any], start_step_id: Optional[str],
               model_id: Optional[str]) -> ExecutionResult:
        context = StepContext(
            execution_id=execution_id,
            user_id=user_id,
            inputs=dict(inputs),
            prior_outputs=dict(prior_outputs),
            step_positions=template.step_positions(),
            model_id=model_id,
        )
        set_logging_context(execution_id=execution_id)

        current_step_id = start_step_id
        try:
            while current_step_id:
                if self._is_cancelled(execution_id):
                    logger.info(f"Execution {execution_id} was cancelled; stopping before {current_step_id}")
                    return self._result(self.ledger.get_execution(execution_id))

                step = template.get_step(current_step_id)
                set_logging_context(execution_id=execution_id, step_id=step.id)

                try:
                    paused, failure = self._run_step(execution_id, step, context)
                except (InvalidStateError, ConcurrencyError):
                    if self._is_cancelled(execution_id):
                        logger.info(f"Execution {execution_id} was cancelled during step {step.id}")
                        return self._result(self.ledger.get_execution(execution_id))
                    raise

                if paused:
                    return self._result(self.ledger.get_execution(execution_id), paused_step_id=step.id)

                if failure is not None and step.on_error != OnErrorPolicy.CONTINUE:
                    view = self.ledger.finalize(
                        execution_id, ExecutionStatusEnum.FAILED,
                        error_message=failure, error_step_id=step.id
                    )
                    return self._result(view)

                current_step_id = step.next_step_id

            view = self.ledger.finalize(execution_id, ExecutionStatusEnum.SUCCESS)
            return self._result(view)

        except WorkflowEngineError as e:
            logger.error(f"Execution {execution_id} aborted: {e.message}")
            self._abort(execution_id, current_step_id, e.message)
            raise
        except Exception as e:
            logger.exception(f"Execution {execution_id} crashed in step {current_step_id}: {e}")
            self._abort(execution_id, current_step_id, f"{type(e).__name__}: {e}")
            raise
        finally:
            clear_logging_context()

    def _abort(self, execution_id: str, step_id: Optional[str], message: str) -> None:
        """Finalize a still-running execution as failed before an error propagates."""
        try:
            if self.ledger.get_execution(execution_id).status == ExecutionStatusEnum.RUNNING:
                self.ledger.finalize(execution_id, ExecutionStatusEnum.FAILED,
                                     error_message=message, error_step_id=step_id)
        except WorkflowEngineError as e:
            logger.error(f"Could not finalize aborted execution {execution_id}: {e.message}")

    def _run_step(self, execution_id: str, step: StepDefinition, context: StepContext):
        """
        Execute one step and record its outcome.

        Returns:
            ``(paused, failure_message)``; ``failure_message`` is None on success
        """
        executor = self.executors.get(step.kind)
        try:
            params = executor.resolve_params(step, context)
        except Exception as e:
            # Unresolvable parameters fail the step under its own error policy.
            self.ledger.record_step_start(execution_id, step.id, {})
            failure = f"Could not resolve parameters: {e}"
            self._record_failure(execution_id, step, context, failure)
            return False, failure
        self.ledger.record_step_start(execution_id, step.id, params)

        if executor.pauses_execution:
            outcome = executor.execute(step, context, params)
            self.ledger.record_step_paused(execution_id, step.id, params, outcome.result)
            logger.info(f"Execution {execution_id} paused for approval at step {step.id}")
            return True, None

        outcome, failure = self._attempt_with_retries(execution_id, step, executor, context, params)

        if failure is None:
            self.ledger.record_step_result(execution_id, step.id, outcome=outcome)
            context.prior_outputs[step.id] = outcome.result
            logger.debug(f"Step {step.id} succeeded")
        else:
            self._record_failure(execution_id, step, context, failure)
        return False, failure

    def _record_failure(self, execution_id: str, step: StepDefinition, context: StepContext,
                        failure: str) -> None:
        self.ledger.record_step_result(execution_id, step.id, error_message=failure)
        # Later steps see an empty result for a failed step.
        context.prior_outputs[step.id] = ""
        logger.warning(f"Step {step.id} failed ({step.on_error.value}): {failure}")

    def _attempt_with_retries(self, execution_id: str, step: StepDefinition, executor: StepExecutor,
                              context: StepContext, params: Dict[str, Any]):
        max_retries = step.max_retries if step.on_error == OnErrorPolicy.RETRY else 0
        retry_config = RetryConfig(max_retries=max_retries, base_delay=self.config.step_retry_delay)

        attempt = 0
        while True:
            attempt += 1
            try:
                return self._execute_with_timeout(executor, step, context, params), None
            except Exception as e:
                message = e.message if isinstance(e, WorkflowEngineError) else str(e)
                recoverable = not isinstance(e, WorkflowEngineError) or e.recoverable
                if not (recoverable and retry_config.should_retry(attempt)):
                    return None, message

                retry_count = self.ledger.record_retry(execution_id, step.id, message)
                logger.info(f"Retrying step {step.id} (retry {retry_count} of {max_retries}): {message}")
                retry_config.wait(attempt)

                if self.config.retry_reresolve_params:
                    context.prior_outputs.update(self.ledger.get_prior_outputs(execution_id))
                    try:
                        params = executor.resolve_params(step, context)
                    except Exception as resolve_error:
                        return None, f"Could not resolve parameters: {resolve_error}"

    def _execute_with_timeout(self, executor: StepExecutor, step: StepDefinition,
                              context: StepContext, params: Dict[str, Any]) -> StepOutcome:
        """
        Run one executor attempt, bounded by the step timeout when one is set.

        Raises:
            StepExecutionError: If the attempt times out
        """
        if not step.timeout:
            return executor.execute(step, context, params)

        future = self._pool.submit(executor.execute, step, context, params)
        try:
            return future.result(timeout=step.timeout)
        except FutureTimeoutError:
            future.cancel()
            raise StepExecutionError(f"Step timed out after {step.timeout} seconds",
                                     step_id=step.id, execution_id=context.execution_id)

    def _is_cancelled(self, execution_id: str) -> bool:
        return self.ledger.get_execution(execution_id).status == ExecutionStatusEnum.CANCELLED

    @staticmethod
    def _result(view: ExecutionView, paused_step_id: Optional[str] = None) -> ExecutionResult:
        return ExecutionResult(
            execution_id=view.execution_id,
            status=view.status,
            steps_total=view.steps_total,
            steps_completed=view.steps_completed,
            steps_failed=view.steps_failed,
            paused_step_id=paused_step_id,
            error_step_id=view.error_step_id,
            error_message=view.error_message,
            outputs=view.outputs,
            total_tokens=view.total_tokens,
            total_cost=view.total_cost,
            duration_ms=view.duration_ms,
        )
