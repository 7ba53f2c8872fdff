"""Human-in-the-loop gates: execution approval and step-level interactions."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .errors import ApprovalRejected, ApprovalTimeout
from .events import EventBus, EventType
from .models import ExecutionStatus, PlaybookExecution, utcnow

logger = logging.getLogger(__name__)


class ApprovalDecision(str, Enum):
    """How a pending execution left the approval queue."""

    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


DecisionCallback = Callable[[PlaybookExecution, ApprovalDecision], None]


@dataclass
class PendingApproval:
    """An execution waiting in the approval queue."""

    execution: PlaybookExecution
    approval_roles: List[str]
    timeout_minutes: float
    deadline: datetime
    timer: Optional["asyncio.Task[None]"] = None


class ApprovalGate:
    """
    Holds executions until a human approves, rejects, or the timeout passes.

    State machine: ``pending -> approved | cancelled (rejected) | cancelled
    (expired)``. Decisions on an execution that is no longer pending are
    no-ops returning False. The gate must be used from a running event loop.
    """

    def __init__(
        self,
        events: EventBus,
        on_decision: Optional[DecisionCallback] = None,
    ) -> None:
        """
        Initialize the gate.

        Args:
            events: Bus used to publish approval events
            on_decision: Called after every decision with the execution and
                the decision (the engine starts or finalizes the run here)
        """
        self.events = events
        self.on_decision = on_decision
        self._pending: Dict[str, PendingApproval] = {}

    def request(
        self,
        execution: PlaybookExecution,
        approval_roles: Iterable[str],
        timeout_minutes: float,
    ) -> PendingApproval:
        """
        Put an execution in the approval queue.

        Args:
            execution: Execution to hold; moved to ``pending``
            approval_roles: Roles allowed to decide
            timeout_minutes: Minutes before the request expires

        Returns:
            The queue entry
        """
        deadline = utcnow() + timedelta(minutes=timeout_minutes)
        execution.status = ExecutionStatus.PENDING
        execution.approval_deadline = deadline

        entry = PendingApproval(
            execution=execution,
            approval_roles=list(approval_roles),
            timeout_minutes=timeout_minutes,
            deadline=deadline,
        )
        self._pending[execution.id] = entry
        entry.timer = asyncio.get_running_loop().create_task(
            self._expire_after(execution.id, timeout_minutes * 60.0)
        )

        logger.info(
            "Execution %s awaiting approval (roles=%s, timeout=%.2fmin)",
            execution.id,
            entry.approval_roles,
            timeout_minutes,
        )
        self.events.emit(
            EventType.EXECUTION_PENDING_APPROVAL,
            execution=execution,
            approval_roles=entry.approval_roles,
            timeout_minutes=timeout_minutes,
            deadline=deadline.isoformat(),
        )
        return entry

    def approve(
        self,
        execution_id: str,
        approver_id: str,
        approver_roles: Iterable[str],
    ) -> bool:
        """
        Approve a pending execution.

        Args:
            execution_id: Execution to approve
            approver_id: Who approves
            approver_roles: Roles held by the approver

        Returns:
            True if the execution moved to ``approved``; False if it was not
            pending or the approver lacks a matching role
        """
        entry = self._take(execution_id, approver_id, approver_roles)
        if entry is None:
            return False

        execution = entry.execution
        execution.status = ExecutionStatus.APPROVED
        execution.approved_by = approver_id
        execution.approved_at = utcnow()

        logger.info("Execution %s approved by %s", execution_id, approver_id)
        self.events.emit(
            EventType.EXECUTION_APPROVED, execution=execution, approver=approver_id
        )
        self._notify(execution, ApprovalDecision.APPROVED)
        return True

    def reject(
        self,
        execution_id: str,
        approver_id: str,
        approver_roles: Iterable[str],
        reason: Optional[str] = None,
    ) -> bool:
        """
        Reject a pending execution, which ends ``cancelled``.

        Args:
            execution_id: Execution to reject
            approver_id: Who rejects
            approver_roles: Roles held by the approver
            reason: Optional human-readable reason

        Returns:
            True if the execution was rejected, False otherwise
        """
        entry = self._take(execution_id, approver_id, approver_roles)
        if entry is None:
            return False

        execution = entry.execution
        execution.status = ExecutionStatus.CANCELLED
        execution.approved_by = approver_id
        execution.approved_at = utcnow()
        execution.cancellation_reason = ApprovalDecision.REJECTED.value
        if reason:
            execution.context["rejection_reason"] = reason

        logger.info("Execution %s rejected by %s", execution_id, approver_id)
        self.events.emit(
            EventType.EXECUTION_REJECTED,
            execution=execution,
            approver=approver_id,
            reason=reason,
        )
        self._notify(execution, ApprovalDecision.REJECTED)
        return True

    def withdraw(self, execution_id: str) -> Optional[PlaybookExecution]:
        """Remove an execution from the queue without a decision."""
        entry = self._pending.pop(execution_id, None)
        if entry is None:
            return None
        if entry.timer is not None:
            entry.timer.cancel()
        return entry.execution

    def is_pending(self, execution_id: str) -> bool:
        return execution_id in self._pending

    def list_pending(
        self, approver_roles: Optional[Iterable[str]] = None
    ) -> List[PlaybookExecution]:
        """
        Executions awaiting a decision, oldest first.

        Args:
            approver_roles: If given, only executions this role set may decide

        Returns:
            Pending executions
        """
        entries = sorted(self._pending.values(), key=lambda e: e.execution.created_at)
        if approver_roles is not None:
            roles = set(approver_roles)
            entries = [e for e in entries if self._roles_match(e, roles)]
        return [e.execution for e in entries]

    def close(self) -> None:
        """Cancel every expiry timer (shutdown)."""
        for entry in self._pending.values():
            if entry.timer is not None:
                entry.timer.cancel()

    def _take(
        self,
        execution_id: str,
        approver_id: str,
        approver_roles: Iterable[str],
    ) -> Optional[PendingApproval]:
        entry = self._pending.get(execution_id)
        if entry is None or entry.execution.status != ExecutionStatus.PENDING:
            return None

        if not self._roles_match(entry, set(approver_roles)):
            logger.warning(
                "Approver %s has none of the roles %s required by execution %s",
                approver_id,
                entry.approval_roles,
                execution_id,
            )
            return None

        del self._pending[execution_id]
        if entry.timer is not None:
            entry.timer.cancel()
        return entry

    @staticmethod
    def _roles_match(entry: PendingApproval, roles: set) -> bool:
        if not entry.approval_roles:
            return True
        return bool(roles.intersection(entry.approval_roles))

    async def _expire_after(self, execution_id: str, seconds: float) -> None:
        await asyncio.sleep(seconds)

        entry = self._pending.pop(execution_id, None)
        if entry is None or entry.execution.status != ExecutionStatus.PENDING:
            return

        execution = entry.execution
        execution.status = ExecutionStatus.CANCELLED
        execution.cancellation_reason = ApprovalDecision.EXPIRED.value
        logger.info(
            "Approval for execution %s expired after %.2fmin",
            execution_id,
            entry.timeout_minutes,
        )
        self._notify(execution, ApprovalDecision.EXPIRED)

    def _notify(self, execution: PlaybookExecution, decision: ApprovalDecision) -> None:
        if self.on_decision is not None:
            self.on_decision(execution, decision)


# ---------------------------------------------------------------------------
# Step-level interactions
# ---------------------------------------------------------------------------


class InteractionKind(str, Enum):
    """Kind of human interaction a step waits on."""

    APPROVAL = "approval"
    MANUAL = "manual"


@dataclass
class StepRequest:
    """A step waiting for a human response."""

    execution_id: str
    step_id: str
    kind: InteractionKind
    future: "asyncio.Future[Dict[str, Any]]"
    payload: Dict[str, Any] = field(default_factory=dict)
    allowed: List[str] = field(default_factory=list)
    requested_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "step_id": self.step_id,
            "kind": self.kind.value,
            "payload": self.payload,
            "requested_at": self.requested_at.isoformat(),
        }


class StepInteractionBroker:
    """
    Delivers human responses to steps blocked on them.

    A step registers a future keyed by ``(execution_id, step_id)`` and awaits
    it with a timeout; the response arrives as an external call
    (:meth:`approve_step`, :meth:`reject_step`, :meth:`complete_manual_step`).
    """

    def __init__(self, events: EventBus) -> None:
        self.events = events
        self._requests: Dict[Tuple[str, str], StepRequest] = {}

    async def request_approval(
        self,
        execution_id: str,
        playbook_id: Optional[str],
        step_id: str,
        approvers: List[str],
        message: str,
        timeout_seconds: float,
    ) -> Dict[str, Any]:
        """
        Block until the step is approved.

        Args:
            execution_id: Owning execution
            playbook_id: Owning playbook (for events)
            step_id: Step awaiting approval
            approvers: Ids allowed to decide (empty = anyone)
            message: Text shown to approvers
            timeout_seconds: How long to wait

        Returns:
            Approval record with ``approved_by`` and ``approved_at``

        Raises:
            ApprovalRejected: If an approver denied the step
            ApprovalTimeout: If no decision arrived in time
        """
        payload = {"approvers": approvers, "message": message}
        self.events.emit(
            EventType.STEP_APPROVAL_REQUIRED,
            execution_id=execution_id,
            playbook_id=playbook_id,
            step_id=step_id,
            timeout_minutes=timeout_seconds / 60.0,
            **payload,
        )
        response = await self._wait(
            execution_id, step_id, InteractionKind.APPROVAL, payload, approvers, timeout_seconds
        )
        if not response.get("approved"):
            raise ApprovalRejected(step_id, response.get("approved_by"))
        return response

    async def request_manual(
        self,
        execution_id: str,
        playbook_id: Optional[str],
        step_id: str,
        instructions: str,
        assignee: Optional[str],
        timeout_seconds: float,
    ) -> Dict[str, Any]:
        """
        Block until an operator marks the manual task complete.

        Raises:
            ApprovalTimeout: If the task is not completed in time
        """
        payload = {"instructions": instructions, "assignee": assignee}
        self.events.emit(
            EventType.STEP_MANUAL_REQUIRED,
            execution_id=execution_id,
            playbook_id=playbook_id,
            step_id=step_id,
            timeout_minutes=timeout_seconds / 60.0,
            **payload,
        )
        allowed = [assignee] if assignee else []
        return await self._wait(
            execution_id, step_id, InteractionKind.MANUAL, payload, allowed, timeout_seconds
        )

    def approve_step(self, execution_id: str, step_id: str, approver_id: str) -> bool:
        """Approve a waiting step. False if nothing is waiting or not allowed."""
        return self._resolve(
            execution_id,
            step_id,
            InteractionKind.APPROVAL,
            approver_id,
            {"approved": True, "approved_by": approver_id, "approved_at": utcnow().isoformat()},
        )

    def reject_step(
        self,
        execution_id: str,
        step_id: str,
        approver_id: str,
        reason: Optional[str] = None,
    ) -> bool:
        """Deny a waiting step; the step fails."""
        return self._resolve(
            execution_id,
            step_id,
            InteractionKind.APPROVAL,
            approver_id,
            {"approved": False, "approved_by": approver_id, "reason": reason},
        )

    def complete_manual_step(
        self,
        execution_id: str,
        step_id: str,
        completed_by: str,
        output: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Mark a manual task done, optionally passing its output."""
        return self._resolve(
            execution_id,
            step_id,
            InteractionKind.MANUAL,
            completed_by,
            {
                "completed": True,
                "completed_by": completed_by,
                "completed_at": utcnow().isoformat(),
                "output": output or {},
            },
        )

    def pending(
        self,
        execution_id: Optional[str] = None,
        kind: Optional[InteractionKind] = None,
    ) -> List[StepRequest]:
        """Steps currently waiting on a human."""
        return [
            r
            for r in self._requests.values()
            if (execution_id is None or r.execution_id == execution_id)
            and (kind is None or r.kind == kind)
        ]

    def cancel_execution(self, execution_id: str) -> int:
        """Cancel every wait belonging to an execution. Returns the count."""
        cancelled = 0
        for key, request in list(self._requests.items()):
            if request.execution_id == execution_id and not request.future.done():
                request.future.cancel()
                cancelled += 1
        return cancelled

    async def _wait(
        self,
        execution_id: str,
        step_id: str,
        kind: InteractionKind,
        payload: Dict[str, Any],
        allowed: List[str],
        timeout_seconds: float,
    ) -> Dict[str, Any]:
        key = (execution_id, step_id)
        future: "asyncio.Future[Dict[str, Any]]" = (
            asyncio.get_running_loop().create_future()
        )
        self._requests[key] = StepRequest(
            execution_id=execution_id,
            step_id=step_id,
            kind=kind,
            future=future,
            payload=payload,
            allowed=allowed,
        )
        try:
            return await asyncio.wait_for(future, timeout=timeout_seconds)
        except asyncio.TimeoutError:
            raise ApprovalTimeout(step_id, timeout_seconds) from None
        finally:
            self._requests.pop(key, None)

    def _resolve(
        self,
        execution_id: str,
        step_id: str,
        kind: InteractionKind,
        actor: str,
        response: Dict[str, Any],
    ) -> bool:
        request = self._requests.get((execution_id, step_id))
        if request is None or request.kind != kind or request.future.done():
            return False
        if request.allowed and actor not in request.allowed:
            logger.warning(
                "%s may not respond to step %s of execution %s", actor, step_id, execution_id
            )
            return False
        request.future.set_result(response)
        return True
