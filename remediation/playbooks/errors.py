"""Exceptions raised by the playbook engine, with actionable messages."""

from difflib import get_close_matches
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from .models import SafetyCheckRecord


class PlaybookError(Exception):
    """Base exception for playbook engine errors."""

    pass


class GraphError(PlaybookError):
    """
    Raised when a step graph is malformed.

    Covers duplicate step ids, dependencies on unknown steps, branch targets
    that do not exist or do not depend on their branch, and dependency
    cycles. Always raised before any execution is created.
    """

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        cycle: Optional[List[str]] = None,
    ) -> None:
        self.step_id = step_id
        self.cycle = cycle or []
        super().__init__(message)

    @classmethod
    def duplicate_step(cls, step_id: str, section: str = "steps") -> "GraphError":
        return cls(f"Duplicate step id '{step_id}' in {section}", step_id=step_id)

    @classmethod
    def dangling_reference(
        cls,
        step_id: str,
        missing_id: str,
        known_ids: Iterable[str],
        field: str = "dependencies",
    ) -> "GraphError":
        """
        Build an error for a reference to a step that does not exist.

        Args:
            step_id: The step holding the bad reference
            missing_id: The id that could not be resolved
            known_ids: All step ids defined in the playbook
            field: Field that holds the reference

        Returns:
            GraphError with suggestions for close matches
        """
        known = sorted(known_ids)
        suggestions = get_close_matches(missing_id, known, n=3, cutoff=0.6)

        message = f"Step '{step_id}' references unknown step '{missing_id}'\n"
        message += f"  Field: {field}\n"

        if suggestions:
            message += "\nDid you mean one of these?\n"
            for suggestion in suggestions:
                message += f"  - {suggestion}\n"

        message += f"\nDefined steps ({len(known)}):\n"
        for known_id in known:
            message += f"  - {known_id}\n"

        return cls(message, step_id=step_id)

    @classmethod
    def unordered_branch_target(
        cls, branch_id: str, target_id: str, field: str
    ) -> "GraphError":
        return cls(
            f"Branch target '{target_id}' does not depend on branch step '{branch_id}'\n"
            f"  Field: config.{field}\n"
            f"\nAdd '{branch_id}' to the dependencies of '{target_id}' so it "
            "cannot start before the condition is evaluated.\n",
            step_id=branch_id,
        )

    @classmethod
    def cyclic(cls, cycle: List[str]) -> "GraphError":
        path = " -> ".join(cycle)
        return cls(
            f"Circular dependency detected: {path}",
            step_id=cycle[0] if cycle else None,
            cycle=cycle,
        )


class PlaybookNotFoundError(PlaybookError):
    """Raised when a playbook id is not registered."""

    def __init__(self, playbook_id: str) -> None:
        self.playbook_id = playbook_id
        super().__init__(f"Playbook '{playbook_id}' not found")


class PlaybookInactiveError(PlaybookError):
    """Raised when trying to execute a deactivated playbook."""

    def __init__(self, playbook_id: str) -> None:
        self.playbook_id = playbook_id
        super().__init__(f"Playbook '{playbook_id}' is not active")


class PlaybookLoadError(PlaybookError):
    """Raised when a playbook definition cannot be loaded or validated."""

    pass


class SchedulingError(PlaybookError):
    """
    Raised when no step is ready while steps remain pending.

    Registration-time graph validation should make this unreachable; seeing
    it means the scheduler and the validator disagree about the graph.
    """

    def __init__(self, execution_id: str, pending_steps: Iterable[str]) -> None:
        self.execution_id = execution_id
        self.pending_steps = sorted(pending_steps)
        super().__init__(
            f"Execution '{execution_id}' is blocked: no ready steps among "
            f"{', '.join(self.pending_steps)} (circular dependency or blocked steps)"
        )


class StepFailure(PlaybookError):
    """A step attempt failed. Recoverable through retries."""

    def __init__(self, step_id: str, message: str) -> None:
        self.step_id = step_id
        self.reason = message
        super().__init__(message)


class StepTimeoutError(StepFailure):
    """A step did not finish within its timeout."""

    def __init__(self, step_id: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            step_id, f"Step '{step_id}' timed out after {timeout_seconds:g}s"
        )


class PortNotConfiguredError(StepFailure):
    """A step needs an external port the engine was built without."""

    def __init__(self, step_id: str, port_name: str) -> None:
        self.port_name = port_name
        message = f"Step '{step_id}' requires the '{port_name}' port, which is not configured\n"
        message += "\nTip: pass the port when building the engine:\n"
        message += f"  PlaybookEngine(ports=EnginePorts({port_name}=...))\n"
        super().__init__(step_id, message)


class ExpressionError(StepFailure):
    """A condition expression could not be parsed or evaluated."""

    def __init__(
        self,
        step_id: str,
        expression: str,
        error: Exception,
        available_vars: Optional[Iterable[str]] = None,
    ) -> None:
        self.expression = expression
        self.original_error = error

        message = f"Expression error in step '{step_id}'\n"
        message += f"  Expression: {expression}\n"
        message += f"  Error: {type(error).__name__}: {error}\n"

        names = sorted(available_vars or [])
        if names:
            message += "\nAvailable variables:\n"
            for name in names:
                message += f"  - {name}\n"
        else:
            message += "\n(no variables available)\n"

        super().__init__(step_id, message)


class ApprovalRejected(StepFailure):
    """A step-level approval was denied."""

    def __init__(self, step_id: str, approver: Optional[str] = None) -> None:
        self.approver = approver
        suffix = f" by '{approver}'" if approver else ""
        super().__init__(step_id, f"Approval for step '{step_id}' denied{suffix}")


class ApprovalTimeout(StepTimeoutError):
    """No decision arrived for a step-level approval or manual task."""

    pass


class SafetyCheckFailure(PlaybookError):
    """One or more blocking safety checks failed."""

    def __init__(self, failed: List["SafetyCheckRecord"]) -> None:
        self.failed = failed

        message = f"{len(failed)} blocking safety check(s) failed\n"
        for record in failed:
            message += f"  - {record.check_id} [{record.severity.value}]: {record.message}\n"

        super().__init__(message)


class RollbackFailure(PlaybookError):
    """A rollback step failed. Logged and recorded, never re-raised."""

    def __init__(self, step_id: str, original_error: BaseException) -> None:
        self.step_id = step_id
        self.original_error = original_error
        super().__init__(
            f"Rollback step '{step_id}' failed: "
            f"{type(original_error).__name__}: {original_error}"
        )


class ExecutionNotFoundError(PlaybookError):
    """Raised when an execution id is unknown to the engine."""

    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' not found")
