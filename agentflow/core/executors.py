"""Step executors: one per step kind, each turning a step definition into an outcome."""

import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from ..models.core import StepDefinition, StepKind
from .conditions import evaluate_condition
from .exceptions import ConditionError, StepExecutionError, TemplateValidationError, WorkflowEngineError
from .logging import get_logger
from .variables import build_variable_scope, resolve, resolve_params

logger = get_logger(__name__)

DEFAULT_DELAY_MS = 1000


@dataclass
class StepContext:
    """Everything a step may read while it executes."""
    execution_id: str
    user_id: str
    inputs: Dict[str, Any]
    prior_outputs: Dict[str, Any] = field(default_factory=dict)
    step_positions: Dict[str, int] = field(default_factory=dict)
    model_id: Optional[str] = None

    def resolve(self, text: Any) -> Any:
        return resolve(text, self.inputs, self.prior_outputs, self.step_positions)

    def resolve_params(self, params: Any) -> Any:
        return resolve_params(params, self.inputs, self.prior_outputs, self.step_positions)

    def variable_scope(self) -> Dict[str, Any]:
        return build_variable_scope(self.inputs, self.prior_outputs, self.step_positions)


@dataclass
class StepOutcome:
    """Result of one successful step attempt with its usage metrics."""
    result: Any = None
    resolved_params: Dict[str, Any] = field(default_factory=dict)
    tokens_used: int = 0
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cost: float = 0.0

    @property
    def split_known(self) -> bool:
        return self.input_tokens is not None and self.output_tokens is not None


class StepExecutor:
    """Base class for step executors.

    ``resolve_params`` substitutes placeholders once per step so that retries
    reuse identical parameters; ``execute`` performs one attempt.
    """

    kind: StepKind
    pauses_execution = False

    def resolve_params(self, step: StepDefinition, context: StepContext) -> Dict[str, Any]:
        return context.resolve_params(dict(step.config))

    def execute(self, step: StepDefinition, context: StepContext,
                params: Optional[Dict[str, Any]] = None) -> StepOutcome:
        raise NotImplementedError


class PromptExecutor(StepExecutor):
    """Sends the resolved prompt to the language-model collaborator."""

    kind = StepKind.AI_PROMPT

    def __init__(self, llm_client, default_model: str, default_max_tokens: int = 2000,
                 pricing: Optional[Callable[[str], float]] = None):
        self.llm_client = llm_client
        self.default_model = default_model
        self.default_max_tokens = default_max_tokens
        self.pricing = pricing or (lambda model: 0.0)

    def resolve_params(self, step: StepDefinition, context: StepContext) -> Dict[str, Any]:
        config = step.config
        model = config.get("model") or context.model_id or self.default_model
        max_tokens = config.get("maxTokens", config.get("max_tokens")) or self.default_max_tokens
        return {
            "prompt": context.resolve(config.get("prompt") or ""),
            "model": model,
            "max_tokens": int(max_tokens),
        }

    def execute(self, step, context, params=None):
        params = params if params is not None else self.resolve_params(step, context)

        try:
            completion = self.llm_client.complete(params["prompt"], params["max_tokens"], params["model"])
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise StepExecutionError(f"Language model call failed: {e}", step_id=step.id,
                                     execution_id=context.execution_id)

        cost = round(completion.tokens_used / 1000 * self.pricing(params["model"]), 6)
        logger.debug(f"Prompt step {step.id} used {completion.tokens_used} tokens on {params['model']}")
        return StepOutcome(
            result=completion.text,
            resolved_params=params,
            tokens_used=completion.tokens_used,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            cost=cost,
        )


class ToolCallExecutor(StepExecutor):
    """Invokes a named tool through the tool backend."""

    kind = StepKind.TOOL_CALL

    def __init__(self, tool_backend):
        self.tool_backend = tool_backend

    def resolve_params(self, step, context):
        return {
            "tool": step.config.get("tool"),
            "params": context.resolve_params(dict(step.config.get("params") or {})),
        }

    def execute(self, step, context, params=None):
        params = params if params is not None else self.resolve_params(step, context)
        tool_name = params.get("tool")
        if not tool_name:
            raise StepExecutionError("Tool call step has no tool configured", step_id=step.id)

        try:
            result = self.tool_backend.invoke(tool_name, params["params"])
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise StepExecutionError(f"Tool '{tool_name}' failed: {e}", step_id=step.id,
                                     execution_id=context.execution_id)

        return StepOutcome(result=result, resolved_params=params)


class ConditionExecutor(StepExecutor):
    """Evaluates a boolean expression; any evaluation error counts as false."""

    kind = StepKind.CONDITION

    def resolve_params(self, step, context):
        return {"condition": context.resolve(str(step.config.get("condition", "true")))}

    def execute(self, step, context, params=None):
        params = params if params is not None else self.resolve_params(step, context)
        try:
            value = evaluate_condition(params["condition"], context.variable_scope())
        except ConditionError as e:
            logger.warning(f"Condition in step {step.id} evaluated as false: {e.message}")
            value = False
        except Exception as e:
            logger.warning(f"Condition in step {step.id} evaluated as false after {type(e).__name__}: {e}")
            value = False
        return StepOutcome(result="true" if value else "false", resolved_params=params)


class DelayExecutor(StepExecutor):
    """Sleeps for the configured milliseconds, never longer than the hard cap."""

    kind = StepKind.DELAY

    def __init__(self, hard_cap_ms: int = 10000, sleep: Callable[[float], None] = time.sleep):
        self.hard_cap_ms = hard_cap_ms
        self.sleep = sleep

    def resolve_params(self, step, context):
        raw = step.config.get("delay", DEFAULT_DELAY_MS)
        try:
            value = float(context.resolve(raw) if isinstance(raw, str) else raw)
        except (TypeError, ValueError):
            return {"delay": DEFAULT_DELAY_MS}
        except OverflowError:
            return {"delay": self.hard_cap_ms}

        if math.isnan(value):
            requested = DEFAULT_DELAY_MS
        elif math.isinf(value):
            requested = self.hard_cap_ms if value > 0 else 0
        else:
            requested = int(value)
        return {"delay": requested}

    def execute(self, step, context, params=None):
        params = params if params is not None else self.resolve_params(step, context)
        waited = min(max(int(params["delay"]), 0), self.hard_cap_ms)
        if waited:
            self.sleep(waited / 1000.0)
        return StepOutcome(result={"delayed": waited}, resolved_params=params)


class WebhookExecutor(StepExecutor):
    """Calls an HTTP endpoint with the resolved body and headers."""

    kind = StepKind.WEBHOOK

    def __init__(self, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def resolve_params(self, step, context):
        config = step.config
        return {
            "url": context.resolve(config.get("url") or ""),
            "method": str(config.get("method") or "POST").upper(),
            "headers": context.resolve_params(dict(config.get("headers") or {})),
            "body": context.resolve_params(config.get("body")),
        }

    def execute(self, step, context, params=None):
        params = params if params is not None else self.resolve_params(step, context)
        url = params["url"]
        if not url:
            raise StepExecutionError("Webhook step has no url configured", step_id=step.id)

        request_kwargs: Dict[str, Any] = {
            "headers": params["headers"],
            "timeout": step.timeout or self.timeout,
        }
        if params["method"] == "GET":
            if isinstance(params["body"], Mapping):
                request_kwargs["params"] = params["body"]
        elif params["body"] is not None:
            request_kwargs["json"] = params["body"]

        try:
            response = self.session.request(params["method"], url, **request_kwargs)
        except requests.RequestException as e:
            raise StepExecutionError(f"Webhook request to {url} failed: {e}", step_id=step.id,
                                     execution_id=context.execution_id)

        if not response.ok:
            raise StepExecutionError(f"Webhook {url} returned HTTP {response.status_code}",
                                     step_id=step.id, execution_id=context.execution_id)

        try:
            body = response.json()
        except ValueError:
            body = response.text

        return StepOutcome(
            result={"webhook": url, "status_code": response.status_code, "response": body},
            resolved_params=params,
        )


class ApprovalExecutor(StepExecutor):
    """Prepares the reviewer message; the interpreter pauses instead of advancing."""

    kind = StepKind.APPROVAL
    pauses_execution = True

    def resolve_params(self, step, context):
        return {"message": context.resolve(step.config.get("message") or f"Approve step '{step.display_name}'?")}

    def execute(self, step, context, params=None):
        params = params if params is not None else self.resolve_params(step, context)
        return StepOutcome(result={"awaiting_approval": True, "message": params["message"]},
                           resolved_params=params)


class ExecutorRegistry:
    """Maps each step kind to its executor."""

    def __init__(self):
        self._executors: Dict[StepKind, StepExecutor] = {}

    def register(self, executor: StepExecutor, kind: Optional[StepKind] = None) -> None:
        self._executors[StepKind(kind or executor.kind)] = executor

    def supports(self, kind: Any) -> bool:
        try:
            return StepKind(kind) in self._executors
        except ValueError:
            return False

    def get(self, kind: Any) -> StepExecutor:
        """Executor for a step kind.

        Raises:
            TemplateValidationError: If no executor handles the kind
        """
        if not self.supports(kind):
            raise TemplateValidationError(f"No executor for step kind '{getattr(kind, 'value', kind)}'")
        return self._executors[StepKind(kind)]

    @classmethod
    def create_default(cls, config, llm_client, tool_backend,
                       http_session: Optional[requests.Session] = None) -> "ExecutorRegistry":
        registry = cls()
        registry.register(PromptExecutor(
            llm_client,
            default_model=config.default_model,
            default_max_tokens=config.default_max_tokens,
            pricing=config.price_for,
        ))
        registry.register(ToolCallExecutor(tool_backend))
        registry.register(ConditionExecutor())
        registry.register(DelayExecutor(hard_cap_ms=config.delay_hard_cap_ms))
        registry.register(WebhookExecutor(timeout=config.webhook_timeout, session=http_session))
        registry.register(ApprovalExecutor())
        return registry
