"""Core Pydantic models for workflow templates, executions and step runs."""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class StepKind(str, Enum):
    """Kinds of steps a template can contain."""
    AI_PROMPT = "ai_prompt"
    TOOL_CALL = "tool_call"
    CONDITION = "condition"
    DELAY = "delay"
    WEBHOOK = "webhook"
    APPROVAL = "approval"


class OnErrorPolicy(str, Enum):
    """What the interpreter does when a step fails."""
    STOP = "stop"
    CONTINUE = "continue"
    RETRY = "retry"


class ExecutionStatusEnum(str, Enum):
    """Enumeration of execution statuses."""
    RUNNING = "running"
    PAUSED = "paused"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EXECUTION_STATUSES


TERMINAL_EXECUTION_STATUSES = frozenset({
    ExecutionStatusEnum.SUCCESS,
    ExecutionStatusEnum.FAILED,
    ExecutionStatusEnum.PARTIAL,
    ExecutionStatusEnum.CANCELLED,
})


class StepRunStatus(str, Enum):
    """Enumeration of step run statuses."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepRunStatus.SUCCESS, StepRunStatus.FAILED, StepRunStatus.SKIPPED)


class AuditActionType(str, Enum):
    """Kinds of audit log entries."""
    WORKFLOW_START = "workflow_start"
    WORKFLOW_END = "workflow_end"
    STEP_START = "step_start"
    STEP_END = "step_end"
    TOOL_CALL = "tool_call"
    AI_DECISION = "ai_decision"
    ERROR = "error"
    RETRY = "retry"
    USER_INTERVENTION = "user_intervention"


class ValidationResult(BaseModel):
    """Result of template validation."""
    is_valid: bool = Field(..., description="Whether the template is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


_STEP_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')


class StepDefinition(BaseModel):
    """Definition of one step in a workflow template."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Unique identifier for the step")
    kind: StepKind = Field(..., alias="type", description="Kind of work the step performs")
    name: str = Field(default="", description="Human readable step name")
    description: Optional[str] = Field(None, description="What this step does")
    config: Dict[str, Any] = Field(default_factory=dict, description="Kind-specific configuration")
    connections: List[str] = Field(default_factory=list, description="Ordered successor step ids")
    on_error: OnErrorPolicy = Field(default=OnErrorPolicy.STOP, alias="onError", description="Failure policy")
    timeout: Optional[float] = Field(None, description="Timeout in seconds for step execution")
    max_retries: int = Field(default=0, alias="retryCount", description="Retry bound for the retry policy")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure step ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Step ID cannot be empty")
        if not _STEP_ID_PATTERN.match(id_value.strip()):
            raise ValueError("Step ID must contain only alphanumeric characters, underscores, and hyphens")
        return id_value.strip()

    @field_validator('timeout')
    @classmethod
    def validate_timeout(cls, timeout):
        if timeout is not None and timeout <= 0:
            raise ValueError("Timeout must be positive")
        return timeout

    @field_validator('max_retries')
    @classmethod
    def validate_max_retries(cls, max_retries):
        if max_retries < 0:
            raise ValueError("Retry count cannot be negative")
        return max_retries

    @property
    def next_step_id(self) -> Optional[str]:
        """Only the first connection is followed."""
        return self.connections[0] if self.connections else None

    @property
    def display_name(self) -> str:
        return self.name or self.id


class WorkflowTemplateDefinition(BaseModel):
    """User-supplied definition of a workflow template."""
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    name: str = Field(..., description="Display name of the template")
    description: str = Field(default="", description="Description of the workflow")
    mode: str = Field(default="Sales", description="Tenant category (Sales, Marketing, Admin)")
    steps: List[StepDefinition] = Field(..., description="Ordered steps")
    input_schema: Dict[str, Any] = Field(default_factory=dict, description="Declared inputs")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Default input values")
    is_active: bool = Field(default=True, description="Whether the template may be run")
    is_public: bool = Field(default=False, description="Share read-only with every user")
    start_step_id: Optional[str] = Field(None, description="Step the interpreter starts from")
    model_id: Optional[str] = Field(None, description="Default model for prompt steps")

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        if not name.strip():
            raise ValueError("Template name cannot be empty")
        return name.strip()

    @field_validator('steps')
    @classmethod
    def validate_unique_step_ids(cls, steps):
        step_ids = [step.id for step in steps]
        if len(step_ids) != len(set(step_ids)):
            raise ValueError("All step IDs must be unique")
        return steps

    @model_validator(mode='after')
    def validate_template_structure(self):
        """Connections must stay inside the template and never loop back."""
        step_ids = {step.id for step in self.steps}

        if self.start_step_id and self.start_step_id not in step_ids:
            raise ValueError(f"Start step '{self.start_step_id}' does not exist in steps")

        for step in self.steps:
            for target in step.connections:
                if target not in step_ids:
                    raise ValueError(f"Step '{step.id}' connects to unknown step '{target}'")
                if target == step.id:
                    raise ValueError(f"Self-referencing connection not allowed: {step.id}")

        if self.steps and self._has_reachable_cycle():
            raise ValueError("Step connections form a cycle reachable from the start step")

        return self

    @property
    def entry_step_id(self) -> Optional[str]:
        if self.start_step_id:
            return self.start_step_id
        return self.steps[0].id if self.steps else None

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_positions(self) -> Dict[str, int]:
        """Map step id to its 1-based position in template order."""
        return {step.id: index for index, step in enumerate(self.steps, start=1)}

    def required_inputs(self) -> List[str]:
        required = self.input_schema.get("required", [])
        return list(required) if isinstance(required, (list, tuple)) else []

    def _has_reachable_cycle(self) -> bool:
        graph = {step.id: list(step.connections) for step in self.steps}
        visited: Set[str] = set()
        rec_stack: Set[str] = set()

        def has_cycle_util(node: str) -> bool:
            visited.add(node)
            rec_stack.add(node)
            for neighbor in graph.get(node, []):
                if neighbor not in visited:
                    if has_cycle_util(neighbor):
                        return True
                elif neighbor in rec_stack:
                    return True
            rec_stack.remove(node)
            return False

        return has_cycle_util(self.entry_step_id)


class WorkflowTemplate(WorkflowTemplateDefinition):
    """Stored workflow template."""
    template_id: str = Field(..., description="Template ID")
    user_id: str = Field(..., description="Owning user")
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")


class TemplateSummary(BaseModel):
    """Summary information about a workflow template."""
    template_id: str
    name: str
    description: str
    mode: str
    is_active: bool
    is_public: bool
    step_count: int
    user_id: str
    created_at: Optional[datetime] = None


class ExecutionView(BaseModel):
    """Persisted state of one execution."""
    model_config = ConfigDict(protected_namespaces=())

    execution_id: str
    template_id: Optional[str] = None
    workflow_name: str
    user_id: str
    mode: str
    model_id: str
    status: ExecutionStatusEnum
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Optional[Any] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_ms: Optional[int] = None
    total_tokens: int = 0
    total_cost: float = 0.0
    steps_total: int = 0
    steps_completed: int = 0
    steps_failed: int = 0
    current_step_id: Optional[str] = None
    error_step_id: Optional[str] = None
    error_message: Optional[str] = None


class StepRunView(BaseModel):
    """Persisted outcome of one step within one execution."""
    run_id: str
    execution_id: str
    step_id: str
    step_number: int
    step_name: str
    kind: StepKind
    tool_name: Optional[str] = None
    tool_parameters: Optional[Dict[str, Any]] = None
    status: StepRunStatus
    result: Optional[Any] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    tokens_used: int = 0
    cost: float = 0.0
    duration_ms: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    execution_log: List[Dict[str, Any]] = Field(default_factory=list)


class AuditLogView(BaseModel):
    """Append-only record of a state-changing action."""
    model_config = ConfigDict(protected_namespaces=())

    log_id: str
    execution_id: Optional[str] = None
    step_id: Optional[str] = None
    timestamp: datetime
    user_id: str
    action_type: AuditActionType
    action_details: str
    tool_name: Optional[str] = None
    tool_input: Optional[Any] = None
    tool_output: Optional[Any] = None
    tokens_used: int = 0
    cost: float = 0.0
    model_id: Optional[str] = None
    success: bool = True
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BillingRecordView(BaseModel):
    """Token and cost usage snapshot of a terminal execution."""
    model_config = ConfigDict(protected_namespaces=())

    billing_id: str
    user_id: str
    execution_id: Optional[str] = None
    timestamp: datetime
    model_id: str
    tokens_input: int
    tokens_output: int
    tokens_total: int
    cost: float
    billing_period: str
    paid: bool = False


class BillingSummary(BaseModel):
    billing_period: str
    total_cost: float = 0.0
    total_tokens: int = 0
    record_count: int = 0


class ExecutionStats(BaseModel):
    total_executions: int = 0
    running_executions: int = 0
    paused_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    total_cost: float = 0.0
    total_tokens: int = 0
    total_audit_logs: int = 0
    average_execution_time_ms: float = 0.0


class ModeCost(BaseModel):
    mode: str
    total_cost: float
    total_tokens: int
    execution_count: int


class ExecutionResult(BaseModel):
    """What a run or resume call hands back to its caller."""
    execution_id: str
    status: ExecutionStatusEnum
    steps_total: int
    steps_completed: int = 0
    steps_failed: int = 0
    paused_step_id: Optional[str] = None
    error_step_id: Optional[str] = None
    error_message: Optional[str] = None
    outputs: Optional[Any] = None
    total_tokens: int = 0
    total_cost: float = 0.0
    duration_ms: Optional[int] = None


class ApprovalOutcome(BaseModel):
    """Result of an approve or reject decision."""
    execution_id: str
    step_id: str
    action: str
    next_step_id: Optional[str] = None
    completed: bool = False
    execution_status: ExecutionStatusEnum
