"""Pydantic models for remediation playbooks and their executions."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class StepType(str, Enum):
    """Kind of work a playbook step performs."""

    AGENT_ACTION = "agent_action"
    API_CALL = "api_call"
    DATABASE_QUERY = "database_query"
    FILE_OPERATION = "file_operation"
    NOTIFICATION = "notification"
    APPROVAL_REQUIRED = "approval_required"
    CONDITIONAL_BRANCH = "conditional_branch"
    MANUAL_STEP = "manual_step"
    ROLLBACK_STEP = "rollback_step"


class OnFailure(str, Enum):
    """Disposition applied once a step has exhausted its retries."""

    STOP = "stop"
    CONTINUE = "continue"
    ROLLBACK = "rollback"


class StepStatus(str, Enum):
    """Status of a single step within an execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionStatus(str, Enum):
    """Lifecycle status of a playbook execution."""

    PENDING = "pending"
    APPROVED = "approved"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


TERMINAL_STATUSES = frozenset(
    {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.ROLLED_BACK,
    }
)

TERMINAL_STEP_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED}
)


class TriggerType(str, Enum):
    """Source of an incoming trigger event."""

    MANUAL = "manual"
    TRIAGE_RESULT = "triage_result"
    SCHEDULE = "schedule"
    ALERT = "alert"
    API_CALL = "api_call"
    MULTIMODAL_ANALYSIS = "multimodal_analysis"


class SafetyCheckType(str, Enum):
    """Kind of pre-execution guard."""

    RESOURCE_LIMITS = "resource_limits"
    TIME_WINDOW = "time_window"
    DEPENDENCY_CHECK = "dependency_check"
    IMPACT_ASSESSMENT = "impact_assessment"
    PERMISSION_CHECK = "permission_check"
    CUSTOM = "custom"


class Severity(str, Enum):
    """Severity / priority scale shared by checks and playbooks."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class FailAction(str, Enum):
    """What a failed safety check does to the execution."""

    BLOCK = "block"
    WARN = "warn"
    ALLOW = "allow"


class PlaybookCategory(str, Enum):
    """Category of a remediation playbook."""

    INCIDENT_RESPONSE = "incident_response"
    SYSTEM_MAINTENANCE = "system_maintenance"
    PERFORMANCE_OPTIMIZATION = "performance_optimization"
    SECURITY_REMEDIATION = "security_remediation"
    DATA_RECOVERY = "data_recovery"
    CONFIGURATION_MANAGEMENT = "configuration_management"
    CUSTOM = "custom"


# ---------------------------------------------------------------------------
# Step configuration, one model per step type
# ---------------------------------------------------------------------------


class AgentActionConfig(BaseModel):
    """Target agent (explicit id or capability lookup) and the action to send."""

    agent_id: Optional[str] = Field(None, description="Explicit agent to target")
    capability: Optional[str] = Field(
        None, description="Capability used to discover an agent"
    )
    action: str = Field(..., description="Action name sent to the agent")
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_target(self) -> "AgentActionConfig":
        """Ensure the step can resolve an agent."""
        if not self.agent_id and not self.capability:
            raise ValueError("agent_id or capability is required")
        return self


class RollbackStepConfig(AgentActionConfig):
    """Compensating agent action, optionally naming the step it reverses."""

    target_step: Optional[str] = Field(
        None, description="Id of the forward step this action compensates"
    )


class ApiCallConfig(BaseModel):
    """HTTP request issued through the API port."""

    url: str
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    timeout_seconds: Optional[float] = Field(None, gt=0)


class DatabaseQueryConfig(BaseModel):
    """Query issued through the query port."""

    query: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    database: Optional[str] = None


class FileOperationConfig(BaseModel):
    """File operation issued through the file port."""

    operation: Literal["read", "write", "delete", "move"]
    path: str
    content: Optional[str] = None
    destination: Optional[str] = None

    @model_validator(mode="after")
    def validate_operation(self) -> "FileOperationConfig":
        """Moves need a destination."""
        if self.operation == "move" and not self.destination:
            raise ValueError("move operation requires a destination")
        return self


class NotificationConfig(BaseModel):
    """Message sent through the notification port."""

    channel: Literal["email", "slack", "teams", "webhook"] = "email"
    recipients: List[str] = Field(default_factory=list)
    subject: Optional[str] = None
    message: str
    template: Optional[str] = None


class ApprovalRequiredConfig(BaseModel):
    """Step-level approval request."""

    approvers: List[str] = Field(default_factory=list)
    message: str = ""
    timeout_minutes: float = Field(30.0, gt=0)


class ConditionalBranchConfig(BaseModel):
    """Boolean expression over execution variables choosing a successor."""

    condition: str = Field(..., description="Jinja2 expression")
    true_step: Optional[str] = None
    false_step: Optional[str] = None


class ManualStepConfig(BaseModel):
    """Task handed to a human operator."""

    instructions: str
    assignee: Optional[str] = None
    timeout_minutes: float = Field(60.0, gt=0)


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


class StepBase(BaseModel):
    """Fields shared by every step kind."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Unique step id in the playbook")
    name: str = Field("", description="Human-readable name")
    description: str = ""
    dependencies: List[str] = Field(
        default_factory=list, description="Ids of steps that must finish first"
    )
    timeout_seconds: float = Field(300.0, gt=0)
    retry_count: int = Field(0, ge=0)
    retry_delay_seconds: float = Field(30.0, ge=0)
    retry_backoff: float = Field(1.0, ge=1.0, description="Delay multiplier per retry")
    on_failure: OnFailure = OnFailure.STOP
    required_permissions: List[str] = Field(default_factory=list)
    estimated_duration_seconds: float = Field(60.0, ge=0)
    output_var: Optional[str] = Field(
        None, description="Variable name to store the step output"
    )

    @model_validator(mode="before")
    @classmethod
    def default_name(cls, data: Any) -> Any:
        """Fall back to the id when no name is given."""
        if isinstance(data, dict) and not data.get("name"):
            data = {**data, "name": data.get("id", "")}
        return data

    @property
    def step_type(self) -> StepType:
        """Step type as an enum member."""
        return StepType(getattr(self, "type"))

    def retry_delay_for(self, retry_number: int) -> float:
        """Delay before the given retry (1-based)."""
        return self.retry_delay_seconds * (self.retry_backoff ** (retry_number - 1))


class AgentActionStep(StepBase):
    type: Literal["agent_action"] = "agent_action"
    config: AgentActionConfig


class ApiCallStep(StepBase):
    type: Literal["api_call"] = "api_call"
    config: ApiCallConfig


class DatabaseQueryStep(StepBase):
    type: Literal["database_query"] = "database_query"
    config: DatabaseQueryConfig


class FileOperationStep(StepBase):
    type: Literal["file_operation"] = "file_operation"
    config: FileOperationConfig


class NotificationStep(StepBase):
    type: Literal["notification"] = "notification"
    config: NotificationConfig


def _default_human_timeout(data: Any, default_minutes: float) -> Any:
    """Use the config's ``timeout_minutes`` when no ``timeout_seconds`` is given."""
    if not isinstance(data, dict) or data.get("timeout_seconds") is not None:
        return data
    config = data.get("config")
    if isinstance(config, dict):
        minutes = config.get("timeout_minutes")
    else:
        minutes = getattr(config, "timeout_minutes", None)
    return {**data, "timeout_seconds": (minutes or default_minutes) * 60.0}


class ApprovalRequiredStep(StepBase):
    type: Literal["approval_required"] = "approval_required"
    config: ApprovalRequiredConfig = Field(default_factory=ApprovalRequiredConfig)

    @model_validator(mode="before")
    @classmethod
    def default_timeout(cls, data: Any) -> Any:
        return _default_human_timeout(data, 30.0)

    @property
    def wait_seconds(self) -> float:
        """How long to wait for a decision: the tighter of both timeouts."""
        return min(self.timeout_seconds, self.config.timeout_minutes * 60.0)


class ConditionalBranchStep(StepBase):
    type: Literal["conditional_branch"] = "conditional_branch"
    config: ConditionalBranchConfig


class ManualStep(StepBase):
    type: Literal["manual_step"] = "manual_step"
    config: ManualStepConfig

    @model_validator(mode="before")
    @classmethod
    def default_timeout(cls, data: Any) -> Any:
        return _default_human_timeout(data, 60.0)

    @property
    def wait_seconds(self) -> float:
        """How long to wait for the operator: the tighter of both timeouts."""
        return min(self.timeout_seconds, self.config.timeout_minutes * 60.0)


class RollbackStep(StepBase):
    type: Literal["rollback_step"] = "rollback_step"
    config: RollbackStepConfig


# Tagged union over all step kinds
PlaybookStep = Annotated[
    Union[
        AgentActionStep,
        ApiCallStep,
        DatabaseQueryStep,
        FileOperationStep,
        NotificationStep,
        ApprovalRequiredStep,
        ConditionalBranchStep,
        ManualStep,
        RollbackStep,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Triggers and safety checks
# ---------------------------------------------------------------------------


class PlaybookTrigger(BaseModel):
    """Condition under which an incoming event starts a playbook."""

    id: str = Field(default_factory=lambda: _new_id("trigger"))
    type: TriggerType = TriggerType.MANUAL
    conditions: Dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(3, ge=1, le=5)
    auto_execute: bool = False
    require_approval: bool = True
    approval_timeout_minutes: float = Field(30.0, gt=0)
    notify_on_trigger: List[str] = Field(default_factory=list)


class SafetyCheck(BaseModel):
    """Stateless pre-execution guard."""

    id: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    type: SafetyCheckType
    config: Dict[str, Any] = Field(default_factory=dict)
    severity: Severity = Severity.MEDIUM
    fail_action: FailAction = FailAction.BLOCK
    enabled: bool = True

    @field_validator("type", mode="before")
    @classmethod
    def accept_custom_validation(cls, v: Any) -> Any:
        """Accept the legacy 'custom_validation' spelling."""
        if v == "custom_validation":
            return SafetyCheckType.CUSTOM
        return v


# ---------------------------------------------------------------------------
# Playbook definition
# ---------------------------------------------------------------------------


class RemediationPlaybook(BaseModel):
    """
    A versioned remediation playbook.

    The steps form a dependency DAG; the rollback plan is an ordered list of
    compensating steps run sequentially when a step's failure policy asks
    for it. Instances are treated as immutable snapshots: updates produce a
    new instance.
    """

    id: str = Field(default_factory=lambda: _new_id("playbook"))
    name: str = Field(..., min_length=1)
    description: str = ""
    version: str = "1.0.0"
    category: PlaybookCategory = PlaybookCategory.INCIDENT_RESPONSE
    priority: Severity = Severity.MEDIUM
    tags: List[str] = Field(default_factory=list)
    steps: List[PlaybookStep]
    triggers: List[PlaybookTrigger] = Field(default_factory=list)
    safety_checks: List[SafetyCheck] = Field(default_factory=list)
    rollback_plan: List[PlaybookStep] = Field(default_factory=list)
    estimated_duration_minutes: float = 30.0
    max_concurrent_executions: int = Field(1, ge=1)
    require_approval: bool = True
    approval_roles: List[str] = Field(default_factory=lambda: ["admin", "devops"])
    created_by: str = "system"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_executed_at: Optional[datetime] = None
    execution_count: int = Field(0, ge=0)
    success_rate: float = Field(0.0, ge=0.0, le=1.0)
    average_execution_time_minutes: float = Field(0.0, ge=0.0)
    is_active: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("steps")
    @classmethod
    def validate_steps_not_empty(cls, v: List[Any]) -> List[Any]:
        """Ensure playbook has at least one step."""
        if not v:
            raise ValueError("Playbook must have at least one step")
        return v

    def get_step(self, step_id: str) -> Optional[StepBase]:
        """Find a forward step by id."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps]

    def __repr__(self) -> str:
        return (
            f"<RemediationPlaybook id='{self.id}' name='{self.name}' "
            f"version='{self.version}' steps={len(self.steps)}>"
        )


# ---------------------------------------------------------------------------
# Execution state
# ---------------------------------------------------------------------------


class StepResult(BaseModel):
    """Outcome of one step within an execution."""

    status: StepStatus = StepStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    output: Optional[Any] = None
    error: Optional[str] = None
    retry_count: int = 0
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES


class SafetyCheckRecord(BaseModel):
    """Audit record of a safety check evaluation."""

    check_id: str
    name: str = ""
    type: SafetyCheckType
    passed: bool
    message: str
    severity: Severity
    fail_action: FailAction
    details: Dict[str, Any] = Field(default_factory=dict)
    suggested_actions: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)


class PlaybookExecution(BaseModel):
    """One run of a playbook. The only mutable per-run entity."""

    id: str = Field(default_factory=lambda: _new_id("execution"))
    playbook_id: str
    playbook_version: str = "1.0.0"
    trigger_id: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    progress: float = Field(0.0, ge=0.0, le=1.0)
    current_steps: List[str] = Field(default_factory=list)
    step_results: Dict[str, StepResult] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: str = "system"
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approval_deadline: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_duration_seconds: Optional[float] = None
    safety_check_results: List[SafetyCheckRecord] = Field(default_factory=list)
    rollback_actions: List[str] = Field(default_factory=list)
    rollback_failures: Dict[str, str] = Field(default_factory=dict)
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def finish(self, status: ExecutionStatus, error: Optional[str] = None) -> None:
        """Move to a terminal status and stamp completion timing."""
        self.status = status
        self.current_steps = []
        if error is not None:
            self.error = error
        self.completed_at = utcnow()
        if self.started_at:
            self.total_duration_seconds = (
                self.completed_at - self.started_at
            ).total_seconds()


class TriggerEvent(BaseModel):
    """Opaque incoming event matched against playbook triggers."""

    type: TriggerType
    conditions: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: str = "system"
