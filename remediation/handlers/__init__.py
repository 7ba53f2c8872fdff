"""Step handlers and the external ports they call."""

from .base import StepContext, StepHandler
from .builtin import (
    AgentActionHandler,
    ApiCallHandler,
    ApprovalStepHandler,
    ConditionalBranchHandler,
    DatabaseQueryHandler,
    FileOperationHandler,
    ManualStepHandler,
    NotificationHandler,
    RollbackActionHandler,
    build_default_handlers,
)
from .ports import (
    AgentGateway,
    AgentInfo,
    ApiClient,
    EnginePorts,
    FileOperator,
    HealthProbe,
    HttpxApiClient,
    HttpxHealthProbe,
    NotificationSender,
    QueryRunner,
)
from .registry import HandlerRegistry

__all__ = [
    "StepContext",
    "StepHandler",
    "HandlerRegistry",
    "build_default_handlers",
    "AgentActionHandler",
    "ApiCallHandler",
    "ApprovalStepHandler",
    "ConditionalBranchHandler",
    "DatabaseQueryHandler",
    "FileOperationHandler",
    "ManualStepHandler",
    "NotificationHandler",
    "RollbackActionHandler",
    "AgentGateway",
    "AgentInfo",
    "ApiClient",
    "EnginePorts",
    "FileOperator",
    "HealthProbe",
    "HttpxApiClient",
    "HttpxHealthProbe",
    "NotificationSender",
    "QueryRunner",
]
