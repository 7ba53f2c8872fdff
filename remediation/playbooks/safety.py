"""Pre-execution safety checks evaluated against live context."""

import inspect
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field

from .context import ExecutionContext
from .models import (
    SEVERITY_ORDER,
    FailAction,
    RemediationPlaybook,
    SafetyCheck,
    SafetyCheckRecord,
    SafetyCheckType,
    Severity,
    utcnow,
)

if TYPE_CHECKING:
    from ..handlers.ports import HealthProbe

logger = logging.getLogger(__name__)

IMPACT_SUGGESTED_ACTIONS = [
    "Consider scheduling during maintenance window",
    "Implement gradual rollout",
    "Prepare rollback plan",
    "Notify stakeholders in advance",
]

_FAILURE_LOG_LEVELS = {
    FailAction.BLOCK: logging.ERROR,
    FailAction.WARN: logging.WARNING,
    FailAction.ALLOW: logging.INFO,
}

CustomCheckResult = Union[bool, Tuple[bool, str]]
CustomCheck = Callable[
    [SafetyCheck, "LiveContext"], Union[CustomCheckResult, Awaitable[CustomCheckResult]]
]


class ResourceUsage(BaseModel):
    """Current resource utilisation of the target system."""

    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    disk_percent: float = 0.0
    network_usage: float = 0.0


class ImpactAssessment(BaseModel):
    """Estimated blast radius of running the playbook now."""

    affected_users: int = 0
    service_downtime_minutes: float = 0.0
    affected_components: List[str] = Field(default_factory=list)
    risk_level: Severity = Severity.LOW


class LiveContext(BaseModel):
    """Snapshot of the world the safety checks are evaluated against."""

    resources: ResourceUsage = Field(default_factory=ResourceUsage)
    now: Optional[datetime] = None
    service_health: Dict[str, bool] = Field(default_factory=dict)
    permissions: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)
    impact: ImpactAssessment = Field(default_factory=ImpactAssessment)
    variables: Dict[str, Any] = Field(default_factory=dict)


def blocking_failures(records: List[SafetyCheckRecord]) -> List[SafetyCheckRecord]:
    """Failed records whose fail action blocks execution."""
    return [r for r in records if not r.passed and r.fail_action == FailAction.BLOCK]


class SafetyCheckEvaluator:
    """
    Runs a playbook's enabled safety checks.

    Each check yields a :class:`SafetyCheckRecord`; a check that raises is
    recorded as failed. The evaluator never decides what happens next: the
    caller applies ``fail_action`` to the records.

    Example:
        evaluator = SafetyCheckEvaluator(health_probe=HttpxHealthProbe())
        records = await evaluator.evaluate(playbook, LiveContext(roles=["admin"]))
        if blocking_failures(records):
            ...
    """

    def __init__(self, health_probe: Optional["HealthProbe"] = None) -> None:
        """
        Initialize evaluator.

        Args:
            health_probe: Probe used by dependency checks
        """
        self.health_probe = health_probe
        self._custom: Dict[str, CustomCheck] = {}

    def register_custom(self, name: str, check: CustomCheck) -> None:
        """
        Register a callable for ``custom`` checks whose config names it
        under ``validator``.
        """
        self._custom[name] = check

    async def evaluate(
        self, playbook: RemediationPlaybook, live: LiveContext
    ) -> List[SafetyCheckRecord]:
        """
        Evaluate every enabled safety check of a playbook.

        Args:
            playbook: Playbook whose checks to run
            live: Live context snapshot

        Returns:
            One record per enabled check, in declared order
        """
        records: List[SafetyCheckRecord] = []

        for check in playbook.safety_checks:
            if not check.enabled:
                continue

            try:
                record = await self._run_check(check, playbook, live)
            except Exception as e:
                logger.exception("Safety check %s raised", check.id)
                record = self._record(
                    check,
                    False,
                    f"Safety check failed: {e}",
                    {"error": type(e).__name__},
                )

            if not record.passed:
                logger.log(
                    _FAILURE_LOG_LEVELS[record.fail_action],
                    "Safety check %s (%s) failed for playbook %s: %s",
                    check.id,
                    record.fail_action.value,
                    playbook.id,
                    record.message,
                )
            records.append(record)

        return records

    async def _run_check(
        self, check: SafetyCheck, playbook: RemediationPlaybook, live: LiveContext
    ) -> SafetyCheckRecord:
        if check.type == SafetyCheckType.RESOURCE_LIMITS:
            return self._check_resource_limits(check, live)
        if check.type == SafetyCheckType.TIME_WINDOW:
            return self._check_time_window(check, live)
        if check.type == SafetyCheckType.DEPENDENCY_CHECK:
            return await self._check_dependencies(check, live)
        if check.type == SafetyCheckType.IMPACT_ASSESSMENT:
            return self._check_impact(check, live)
        if check.type == SafetyCheckType.PERMISSION_CHECK:
            return self._check_permissions(check, playbook, live)
        if check.type == SafetyCheckType.CUSTOM:
            return await self._check_custom(check, live)
        raise ValueError(f"Unsupported safety check type: {check.type}")

    @staticmethod
    def _record(
        check: SafetyCheck,
        passed: bool,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        suggested_actions: Optional[List[str]] = None,
    ) -> SafetyCheckRecord:
        return SafetyCheckRecord(
            check_id=check.id,
            name=check.name or check.id,
            type=check.type,
            passed=passed,
            message=message,
            severity=check.severity,
            fail_action=check.fail_action,
            details=details or {},
            suggested_actions=suggested_actions or [],
        )

    def _check_resource_limits(self, check: SafetyCheck, live: LiveContext) -> SafetyCheckRecord:
        config = check.config
        current = live.resources
        limits = [
            ("max_cpu_percent", current.cpu_percent, "CPU usage", "%"),
            ("max_memory_percent", current.memory_percent, "Memory usage", "%"),
            ("max_disk_percent", current.disk_percent, "Disk usage", "%"),
            ("max_network_usage", current.network_usage, "Network usage", ""),
        ]

        violations: List[str] = []
        for key, value, label, unit in limits:
            limit = config.get(key)
            if limit is not None and value > float(limit):
                violations.append(f"{label} {value:g}{unit} exceeds limit {float(limit):g}{unit}")

        return self._record(
            check,
            not violations,
            "; ".join(violations) if violations else "Resource limits OK",
            {"current": current.model_dump(), "limits": config, "violations": violations},
        )

    def _check_time_window(self, check: SafetyCheck, live: LiveContext) -> SafetyCheckRecord:
        config = check.config
        now = live.now or utcnow()
        if config.get("timezone"):
            now = now.astimezone(ZoneInfo(config["timezone"]))

        # 0 = Sunday
        current_day = (now.weekday() + 1) % 7
        current_hour = now.hour

        reasons: List[str] = []
        allowed_days = config.get("allowed_days")
        if allowed_days is not None and current_day not in allowed_days:
            reasons.append(
                f"Current day ({current_day}) not in allowed days: "
                f"{', '.join(str(d) for d in allowed_days)}"
            )

        start = config.get("allowed_hours_start")
        end = config.get("allowed_hours_end")
        if start is not None and end is not None:
            if current_hour < start or current_hour > end:
                reasons.append(
                    f"Current hour ({current_hour}) not in allowed range: {start}-{end}"
                )

        return self._record(
            check,
            not reasons,
            "Time window check passed"
            if not reasons
            else f"Time window violation: {'; '.join(reasons)}",
            {"current": {"day": current_day, "hour": current_hour}, "config": config},
        )

    async def _check_dependencies(self, check: SafetyCheck, live: LiveContext) -> SafetyCheckRecord:
        config = check.config
        issues: List[str] = []

        for service in config.get("required_services") or []:
            if service in live.service_health:
                healthy = live.service_health[service]
            elif self.health_probe is not None:
                healthy = await self.health_probe.service_healthy(service)
            else:
                issues.append(f"Service {service} health is unknown")
                continue
            if not healthy:
                issues.append(f"Service {service} is not available")

        for health_check in config.get("health_checks") or []:
            url = health_check["url"]
            if "timeout_seconds" in health_check:
                timeout = float(health_check["timeout_seconds"])
            else:
                # milliseconds
                timeout = float(health_check.get("timeout") or 5000) / 1000.0

            if self.health_probe is None:
                issues.append(f"Health check for {url} skipped: no health probe configured")
            elif not await self.health_probe.url_healthy(url, timeout):
                issues.append(f"Health check failed for {url}")

        return self._record(
            check,
            not issues,
            "; ".join(issues) if issues else "Dependency check passed",
            {"issues": issues},
        )

    def _check_impact(self, check: SafetyCheck, live: LiveContext) -> SafetyCheckRecord:
        config = check.config
        impact = live.impact
        issues: List[str] = []

        max_users = config.get("max_affected_users")
        if max_users is not None and impact.affected_users > max_users:
            issues.append(f"Affected users {impact.affected_users} exceeds limit {max_users}")

        max_downtime = config.get("max_service_downtime_minutes")
        if max_downtime is not None and impact.service_downtime_minutes > max_downtime:
            issues.append(
                f"Service downtime {impact.service_downtime_minutes:g}min exceeds "
                f"limit {max_downtime}min"
            )

        critical = set(config.get("critical_components") or [])
        touched = sorted(critical.intersection(impact.affected_components))
        if touched:
            issues.append(f"Critical components affected: {', '.join(touched)}")

        threshold = config.get("risk_threshold")
        if threshold is not None:
            if SEVERITY_ORDER.index(impact.risk_level) > SEVERITY_ORDER.index(Severity(threshold)):
                issues.append(
                    f"Risk level {impact.risk_level.value} exceeds threshold {threshold}"
                )

        passed = not issues
        return self._record(
            check,
            passed,
            "Impact assessment passed" if passed else "; ".join(issues),
            {"assessed": impact.model_dump(mode="json"), "limits": config},
            None if passed else list(IMPACT_SUGGESTED_ACTIONS),
        )

    def _check_permissions(
        self, check: SafetyCheck, playbook: RemediationPlaybook, live: LiveContext
    ) -> SafetyCheckRecord:
        config = check.config
        required_permissions = list(config.get("required_permissions") or [])
        if config.get("include_step_permissions", True):
            for step in playbook.steps:
                for permission in step.required_permissions:
                    if permission not in required_permissions:
                        required_permissions.append(permission)

        missing_permissions = [p for p in required_permissions if p not in live.permissions]
        missing_roles = [
            r for r in config.get("required_roles") or [] if r not in live.roles
        ]

        issues = [f"Missing permission: {p}" for p in missing_permissions]
        issues += [f"Missing role: {r}" for r in missing_roles]

        return self._record(
            check,
            not issues,
            "; ".join(issues) if issues else "Permission check passed",
            {
                "required_permissions": required_permissions,
                "missing_permissions": missing_permissions,
                "missing_roles": missing_roles,
            },
        )

    async def _check_custom(self, check: SafetyCheck, live: LiveContext) -> SafetyCheckRecord:
        config = check.config
        expression = config.get("expression")
        validator_name = config.get("validator")

        if expression:
            variables = dict(live.variables)
            variables.update(
                {
                    "resources": live.resources.model_dump(),
                    "impact": live.impact.model_dump(mode="json"),
                    "permissions": live.permissions,
                    "roles": live.roles,
                    "service_health": live.service_health,
                }
            )
            passed = ExecutionContext(check.id, variables).evaluate_condition(
                expression, step_id=check.id
            )
            message = config.get("message") or f"Expression {'held' if passed else 'failed'}: {expression}"
            return self._record(check, passed, message, {"expression": expression})

        if validator_name:
            validator = self._custom.get(validator_name)
            if validator is None:
                raise KeyError(f"No custom safety check registered as '{validator_name}'")
            result = validator(check, live)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, tuple):
                passed, message = result
            else:
                passed, message = bool(result), ""
            return self._record(
                check,
                passed,
                message or f"Custom check '{validator_name}' {'passed' if passed else 'failed'}",
                {"validator": validator_name},
            )

        return self._record(check, True, "Custom check has nothing to evaluate")
