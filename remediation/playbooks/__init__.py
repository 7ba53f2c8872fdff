"""Playbook engine - definitions, scheduling and execution of remediation playbooks."""

from .approval import ApprovalDecision, ApprovalGate, StepInteractionBroker, StepRequest
from .context import ExecutionContext
from .engine import PlaybookEngine, trigger_matches
from .errors import (
    ApprovalRejected,
    ApprovalTimeout,
    ExecutionNotFoundError,
    ExpressionError,
    GraphError,
    PlaybookError,
    PlaybookInactiveError,
    PlaybookLoadError,
    PlaybookNotFoundError,
    PortNotConfiguredError,
    RollbackFailure,
    SafetyCheckFailure,
    SchedulingError,
    StepFailure,
    StepTimeoutError,
)
from .events import EventBus, EventType, PlaybookEvent
from .executor import StepContext, StepExecutor, StepOutcome
from .graph import execution_waves, validate_playbook_graph
from .loader import PlaybookLoader
from .logging_config import setup_logging, setup_logging_from_settings
from .metrics import MetricsCollector, MetricsTracker, PrometheusExporter
from .models import (
    ExecutionStatus,
    OnFailure,
    PlaybookExecution,
    PlaybookStep,
    PlaybookTrigger,
    RemediationPlaybook,
    SafetyCheck,
    SafetyCheckRecord,
    SafetyCheckType,
    StepResult,
    StepStatus,
    StepType,
    TriggerEvent,
    TriggerType,
)
from .registry import PlaybookRegistry
from .rollback import RollbackExecutor
from .safety import ImpactAssessment, LiveContext, ResourceUsage, SafetyCheckEvaluator
from .scheduler import DagScheduler, ExecutionControl
from .settings import EngineSettings
from .templates import create_template_playbook, list_templates
from .validator import PlaybookValidator, ValidationLevel
from .visualizer import PlaybookVisualizer

__all__ = [
    "PlaybookEngine",
    "PlaybookRegistry",
    "PlaybookLoader",
    "PlaybookValidator",
    "PlaybookVisualizer",
    "ValidationLevel",
    "EngineSettings",
    "setup_logging",
    "setup_logging_from_settings",
    "EventBus",
    "EventType",
    "PlaybookEvent",
    "ExecutionContext",
    "StepContext",
    "StepExecutor",
    "StepOutcome",
    "DagScheduler",
    "ExecutionControl",
    "RollbackExecutor",
    "SafetyCheckEvaluator",
    "LiveContext",
    "ResourceUsage",
    "ImpactAssessment",
    "ApprovalGate",
    "ApprovalDecision",
    "StepInteractionBroker",
    "StepRequest",
    "MetricsCollector",
    "MetricsTracker",
    "PrometheusExporter",
    "create_template_playbook",
    "list_templates",
    "trigger_matches",
    "execution_waves",
    "validate_playbook_graph",
    "RemediationPlaybook",
    "PlaybookStep",
    "PlaybookTrigger",
    "PlaybookExecution",
    "SafetyCheck",
    "SafetyCheckRecord",
    "SafetyCheckType",
    "StepResult",
    "StepStatus",
    "StepType",
    "ExecutionStatus",
    "OnFailure",
    "TriggerEvent",
    "TriggerType",
    "PlaybookError",
    "GraphError",
    "PlaybookNotFoundError",
    "PlaybookInactiveError",
    "PlaybookLoadError",
    "SchedulingError",
    "StepFailure",
    "StepTimeoutError",
    "PortNotConfiguredError",
    "ExpressionError",
    "ApprovalRejected",
    "ApprovalTimeout",
    "SafetyCheckFailure",
    "RollbackFailure",
    "ExecutionNotFoundError",
]
