"""PlaybookEngine - trigger, gate, schedule and account for playbook executions."""

import asyncio
import inspect
import logging
from collections import defaultdict
from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Union,
)

from .approval import ApprovalDecision, ApprovalGate, StepInteractionBroker, StepRequest
from .context import ExecutionContext
from .errors import (
    ExecutionNotFoundError,
    PlaybookInactiveError,
    SafetyCheckFailure,
    SchedulingError,
)
from .events import EventBus, EventType
from .executor import StepContext, StepExecutor, describe_error
from .metrics import MetricsTracker, PrometheusExporter
from .models import (
    ExecutionStatus,
    PlaybookExecution,
    PlaybookTrigger,
    RemediationPlaybook,
    TriggerEvent,
    TriggerType,
    utcnow,
)
from .registry import PlaybookRegistry
from .rollback import RollbackExecutor
from .safety import LiveContext, SafetyCheckEvaluator, blocking_failures
from .scheduler import DagScheduler, ExecutionControl
from .settings import EngineSettings

if TYPE_CHECKING:
    from ..handlers.ports import EnginePorts
    from ..handlers.registry import HandlerRegistry

logger = logging.getLogger(__name__)

LiveContextProvider = Callable[
    [RemediationPlaybook, PlaybookExecution],
    Union[LiveContext, Awaitable[LiveContext]],
]

_TERMINAL_EVENT_FOR = {
    ExecutionStatus.COMPLETED: EventType.EXECUTION_COMPLETED,
    ExecutionStatus.FAILED: EventType.EXECUTION_FAILED,
    ExecutionStatus.CANCELLED: EventType.EXECUTION_CANCELLED,
    ExecutionStatus.ROLLED_BACK: EventType.EXECUTION_ROLLED_BACK,
}


def trigger_matches(trigger: PlaybookTrigger, event: TriggerEvent) -> bool:
    """
    Check whether an incoming event satisfies a trigger.

    Types must be equal and every trigger condition must equal the event's
    value for that key; a list condition matches any of its members.
    """
    if trigger.type != event.type:
        return False
    for key, expected in trigger.conditions.items():
        actual = event.conditions.get(key)
        if isinstance(expected, list) and not isinstance(actual, list):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class PlaybookEngine:
    """
    Runs remediation playbooks end to end.

    Data flow: trigger -> safety checks -> approval gate -> DAG scheduler ->
    step executor (retry, failure policy) -> rollback -> metrics, with every
    transition published on the event bus.

    All collaborators are constructed once and injected; nothing is global.
    The engine must be used from a running event loop.

    Example:
        engine = PlaybookEngine(ports=EnginePorts(agents=my_gateway))
        playbook = engine.registry.create(definition)
        execution = await engine.submit(playbook.id, context={"host": "db-1"})
        engine.approve(execution.id, "alice", approver_roles=["admin"])
        execution = await engine.wait_for(execution.id)
    """

    def __init__(
        self,
        registry: Optional[PlaybookRegistry] = None,
        ports: Optional["EnginePorts"] = None,
        handlers: Optional["HandlerRegistry"] = None,
        settings: Optional[EngineSettings] = None,
        events: Optional[EventBus] = None,
        metrics: Optional[MetricsTracker] = None,
        live_context_provider: Optional[LiveContextProvider] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the engine.

        Args:
            registry: Playbook registry (created on the engine's bus if omitted)
            ports: External collaborators (httpx defaults if omitted)
            handlers: Step handlers (built-in handlers if omitted)
            settings: Engine settings (read from the environment if omitted)
            events: Event bus (created if omitted)
            metrics: Metrics tracker (created if omitted)
            live_context_provider: Supplies the live context for safety checks
            sleep: Coroutine used for retry delays
        """
        # Imported here because the handlers package imports this one
        from ..handlers import EnginePorts, build_default_handlers

        self.settings = settings or EngineSettings()
        self.events = events or EventBus(history_size=self.settings.event_history_size)
        self.registry = registry or PlaybookRegistry(events=self.events)
        self.ports = ports or EnginePorts.with_defaults(
            http_timeout_seconds=self.settings.http_timeout_seconds
        )
        self.handlers = handlers or build_default_handlers()

        self.executor = StepExecutor(self.handlers, sleep=sleep)
        self.rollback = RollbackExecutor(self.executor)
        self.scheduler = DagScheduler(
            self.executor,
            self.rollback,
            self.events,
            max_parallel_steps=self.settings.max_parallel_steps,
        )
        self.safety = SafetyCheckEvaluator(health_probe=self.ports.health)
        self.interactions = StepInteractionBroker(self.events)
        self.approvals = ApprovalGate(self.events, on_decision=self._on_approval_decision)

        self.metrics = metrics or MetricsTracker(registry=self.registry)
        self.metrics.attach(self.events)
        self.live_context_provider = live_context_provider

        self._executions: Dict[str, PlaybookExecution] = {}
        self._snapshots: Dict[str, RemediationPlaybook] = {}
        self._controls: Dict[str, ExecutionControl] = {}
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._running: Dict[str, int] = defaultdict(int)
        self._slots = asyncio.Condition()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        playbook_id: str,
        context: Optional[Dict[str, Any]] = None,
        triggered_by: str = "system",
        trigger: Optional[PlaybookTrigger] = None,
        live: Optional[LiveContext] = None,
    ) -> PlaybookExecution:
        """
        Create an execution, run the safety checks and gate it.

        The returned execution is ``failed`` (blocking safety check),
        ``pending`` (awaiting approval) or ``approved`` (started).

        Args:
            playbook_id: Playbook to run
            context: Initial execution variables
            triggered_by: Who or what started the run
            trigger: Trigger that matched, if any
            live: Live context for safety checks (provider or defaults otherwise)

        Returns:
            The new execution

        Raises:
            PlaybookNotFoundError: If the playbook does not exist
            PlaybookInactiveError: If the playbook is deactivated
        """
        playbook = self.registry.get_or_raise(playbook_id)
        if not playbook.is_active:
            raise PlaybookInactiveError(playbook_id)

        variables = dict(context or {})
        execution = PlaybookExecution(
            playbook_id=playbook.id,
            playbook_version=playbook.version,
            trigger_id=trigger.id if trigger else None,
            trigger_type=trigger.type if trigger else TriggerType.MANUAL,
            context=dict(variables),
            variables=variables,
            triggered_by=triggered_by,
        )
        self._executions[execution.id] = execution
        self._snapshots[execution.id] = playbook
        self._controls[execution.id] = ExecutionControl()
        self._done[execution.id] = asyncio.Event()

        logger.info(
            "Execution %s created for playbook %s (triggered by %s)",
            execution.id,
            playbook.id,
            triggered_by,
        )

        live_context = live or await self._live_context(playbook, execution)
        execution.safety_check_results = await self.safety.evaluate(playbook, live_context)

        blocking = blocking_failures(execution.safety_check_results)
        if blocking:
            failure = SafetyCheckFailure(blocking)
            self._finalize(execution, ExecutionStatus.FAILED, error=str(failure).strip())
            return execution

        if self._requires_approval(playbook, trigger):
            timeout = (
                trigger.approval_timeout_minutes
                if trigger is not None
                else self.settings.default_approval_timeout_minutes
            )
            self.approvals.request(execution, playbook.approval_roles, timeout)
        else:
            execution.status = ExecutionStatus.APPROVED
            execution.approved_at = utcnow()
            self.events.emit(EventType.EXECUTION_APPROVED, execution=execution, approver=None)
            self._start(execution)

        return execution

    async def execute(
        self,
        playbook_id: str,
        context: Optional[Dict[str, Any]] = None,
        triggered_by: str = "system",
        timeout: Optional[float] = None,
        live: Optional[LiveContext] = None,
    ) -> PlaybookExecution:
        """Submit an execution and wait until it is terminal."""
        execution = await self.submit(
            playbook_id, context=context, triggered_by=triggered_by, live=live
        )
        return await self.wait_for(execution.id, timeout=timeout)

    async def handle_trigger(self, event: TriggerEvent) -> List[PlaybookExecution]:
        """
        Start every active playbook whose triggers match an incoming event.

        Matches are ordered by trigger priority (5 first) and capped by
        ``max_triggered_playbooks``. A playbook that cannot be submitted is
        logged and skipped.

        Args:
            event: Incoming trigger event

        Returns:
            Executions created for the event
        """
        matches = []
        for playbook in self.registry.list(is_active=True):
            for trigger in playbook.triggers:
                if trigger_matches(trigger, event):
                    matches.append((playbook, trigger))
                    break

        matches.sort(key=lambda match: match[1].priority, reverse=True)
        selected = matches[: self.settings.max_triggered_playbooks]
        if len(matches) > len(selected):
            logger.info(
                "Trigger %s matched %d playbooks; starting the first %d",
                event.type.value,
                len(matches),
                len(selected),
            )

        executions: List[PlaybookExecution] = []
        for playbook, trigger in selected:
            variables = {**event.conditions, **event.context}
            try:
                execution = await self.submit(
                    playbook.id,
                    context=variables,
                    triggered_by=event.triggered_by,
                    trigger=trigger,
                )
            except Exception:
                logger.exception("Failed to start playbook %s for trigger", playbook.id)
                continue
            executions.append(execution)
            await self._notify_trigger(playbook, trigger, execution)

        return executions

    # ------------------------------------------------------------------
    # Approval and control
    # ------------------------------------------------------------------

    def approve(
        self, execution_id: str, approver_id: str, approver_roles: Iterable[str]
    ) -> bool:
        """Approve a pending execution. False if not pending or not allowed."""
        return self.approvals.approve(execution_id, approver_id, approver_roles)

    def reject(
        self,
        execution_id: str,
        approver_id: str,
        approver_roles: Iterable[str],
        reason: Optional[str] = None,
    ) -> bool:
        """Reject a pending execution, which ends ``cancelled``."""
        return self.approvals.reject(execution_id, approver_id, approver_roles, reason)

    async def cancel(self, execution_id: str, reason: str = "cancelled by user") -> bool:
        """
        Cancel a pending, approved, running or paused execution.

        In-flight steps are cancelled cooperatively; the execution ends
        ``cancelled`` once the scheduler observes it.

        Returns:
            False if the execution is unknown or already terminal
        """
        execution = self._executions.get(execution_id)
        if execution is None or execution.is_terminal:
            return False

        if self.approvals.withdraw(execution_id) is not None:
            execution.cancellation_reason = reason
            self._finalize(execution, ExecutionStatus.CANCELLED)
            return True

        control = self._controls.get(execution_id)
        if control is None:
            return False

        logger.info("Cancelling execution %s: %s", execution_id, reason)
        control.cancel(reason)
        self.interactions.cancel_execution(execution_id)
        async with self._slots:
            self._slots.notify_all()
        return True

    def pause(self, execution_id: str) -> bool:
        """Pause a running execution at the next wave boundary."""
        execution = self._executions.get(execution_id)
        control = self._controls.get(execution_id)
        if execution is None or control is None:
            return False
        if execution.status != ExecutionStatus.RUNNING or control.is_paused:
            return False
        control.pause()
        return True

    def resume(self, execution_id: str) -> bool:
        """Resume a paused execution."""
        control = self._controls.get(execution_id)
        if control is None or not control.is_paused or control.is_cancelled:
            return False
        control.resume()
        return True

    def approve_step(self, execution_id: str, step_id: str, approver_id: str) -> bool:
        """Approve a step waiting on ``approval_required``."""
        return self.interactions.approve_step(execution_id, step_id, approver_id)

    def reject_step(
        self,
        execution_id: str,
        step_id: str,
        approver_id: str,
        reason: Optional[str] = None,
    ) -> bool:
        """Deny a step waiting on ``approval_required``; the step fails."""
        return self.interactions.reject_step(execution_id, step_id, approver_id, reason)

    def complete_manual_step(
        self,
        execution_id: str,
        step_id: str,
        completed_by: str,
        output: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Mark a ``manual_step`` task as done."""
        return self.interactions.complete_manual_step(
            execution_id, step_id, completed_by, output
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_execution(self, execution_id: str) -> Optional[PlaybookExecution]:
        return self._executions.get(execution_id)

    def list_executions(
        self,
        playbook_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        triggered_by: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> List[PlaybookExecution]:
        """Executions matching every given filter, newest first."""
        executions = [
            e
            for e in self._executions.values()
            if (playbook_id is None or e.playbook_id == playbook_id)
            and (status is None or e.status == status)
            and (triggered_by is None or e.triggered_by == triggered_by)
            and (date_from is None or e.created_at >= date_from)
            and (date_to is None or e.created_at <= date_to)
        ]
        return sorted(executions, key=lambda e: e.created_at, reverse=True)

    def list_pending_approvals(
        self, approver_roles: Optional[Iterable[str]] = None
    ) -> List[PlaybookExecution]:
        """Executions awaiting approval, optionally only those these roles may decide."""
        return self.approvals.list_pending(approver_roles)

    def pending_step_requests(self, execution_id: Optional[str] = None) -> List[StepRequest]:
        """Steps currently waiting on a human."""
        return self.interactions.pending(execution_id)

    def get_metrics(self) -> Dict[str, Any]:
        """Aggregate execution metrics."""
        return self.metrics.summary()

    def prometheus_metrics(self) -> str:
        """Metrics in the Prometheus text format."""
        return PrometheusExporter(self.metrics.collector).export()

    async def wait_for(
        self, execution_id: str, timeout: Optional[float] = None
    ) -> PlaybookExecution:
        """
        Wait until an execution is terminal.

        Raises:
            ExecutionNotFoundError: If the execution is unknown
            asyncio.TimeoutError: If it is not terminal within ``timeout`` seconds
        """
        execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        done = self._done.get(execution_id)
        if done is not None:
            await asyncio.wait_for(done.wait(), timeout=timeout)
        return execution

    async def shutdown(self) -> None:
        """
        Stop the engine.

        Cancels approval timers and running executions. Every execution that
        is not terminal yet, pending approvals included, ends ``cancelled``
        with reason ``engine shutdown`` so no ``wait_for`` caller is left hanging.
        """
        self.approvals.close()
        for pending in self.approvals.list_pending():
            self.approvals.withdraw(pending.id)

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for execution_id in list(self._done):
            execution = self._executions[execution_id]
            if execution.is_terminal:
                self._finalize(execution)
                continue
            execution.cancellation_reason = "engine shutdown"
            self._finalize(execution, ExecutionStatus.CANCELLED)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _requires_approval(
        playbook: RemediationPlaybook, trigger: Optional[PlaybookTrigger]
    ) -> bool:
        if playbook.require_approval:
            return True
        if trigger is not None:
            return trigger.require_approval or not trigger.auto_execute
        return False

    async def _live_context(
        self, playbook: RemediationPlaybook, execution: PlaybookExecution
    ) -> LiveContext:
        if self.live_context_provider is None:
            return LiveContext(variables=dict(execution.variables))

        live = self.live_context_provider(playbook, execution)
        if inspect.isawaitable(live):
            live = await live
        return live.model_copy(
            update={"variables": {**execution.variables, **live.variables}}
        )

    async def _notify_trigger(
        self,
        playbook: RemediationPlaybook,
        trigger: PlaybookTrigger,
        execution: PlaybookExecution,
    ) -> None:
        if not trigger.notify_on_trigger or self.ports.notifications is None:
            return
        try:
            await self.ports.notifications.send(
                "email",
                list(trigger.notify_on_trigger),
                f"Playbook triggered: {playbook.name}",
                f"Execution {execution.id} of '{playbook.name}' is {execution.status.value}.",
            )
        except Exception:
            logger.warning(
                "Trigger notification for execution %s failed", execution.id, exc_info=True
            )

    def _on_approval_decision(
        self, execution: PlaybookExecution, decision: ApprovalDecision
    ) -> None:
        if decision == ApprovalDecision.APPROVED:
            self._start(execution)
        else:
            self._finalize(execution, ExecutionStatus.CANCELLED)

    def _start(self, execution: PlaybookExecution) -> None:
        task = asyncio.get_running_loop().create_task(
            self._run(execution), name=f"execution:{execution.id}"
        )
        self._tasks[execution.id] = task

    def _limit_for(self, snapshot: RemediationPlaybook) -> int:
        current = self.registry.get(snapshot.id)
        if current is not None:
            return current.max_concurrent_executions
        return snapshot.max_concurrent_executions

    async def _acquire_slot(
        self, playbook: RemediationPlaybook, control: ExecutionControl
    ) -> bool:
        playbook_id = playbook.id
        async with self._slots:
            while (
                self._running[playbook_id] >= self._limit_for(playbook)
                and not control.is_cancelled
            ):
                await self._slots.wait()
            if control.is_cancelled:
                return False
            self._running[playbook_id] += 1
            return True

    async def _release_slot(self, playbook_id: str) -> None:
        async with self._slots:
            self._running[playbook_id] -= 1
            self._slots.notify_all()

    async def _run(self, execution: PlaybookExecution) -> None:
        playbook = self._snapshots[execution.id]
        control = self._controls[execution.id]

        if self._running[playbook.id] >= self._limit_for(playbook):
            logger.info(
                "Execution %s queued: playbook %s is at its concurrency limit",
                execution.id,
                playbook.id,
            )

        if not await self._acquire_slot(playbook, control):
            execution.cancellation_reason = control.reason
            self._finalize(execution, ExecutionStatus.CANCELLED)
            return

        context = StepContext(
            execution_id=execution.id,
            playbook_id=playbook.id,
            variables=ExecutionContext(execution.id, execution.variables),
            ports=self.ports,
            interactions=self.interactions,
            events=self.events,
        )
        try:
            await self.scheduler.run(playbook, execution, context, control)
        except SchedulingError:
            pass
        except asyncio.CancelledError:
            execution.cancellation_reason = "engine shutdown"
            self._finalize(execution, ExecutionStatus.CANCELLED)
            raise
        except Exception as e:
            logger.exception("Execution %s crashed", execution.id)
            if not execution.is_terminal:
                execution.finish(ExecutionStatus.FAILED, error=describe_error(e))
        finally:
            await self._release_slot(playbook.id)

        self._finalize(execution)

    def _finalize(
        self,
        execution: PlaybookExecution,
        status: Optional[ExecutionStatus] = None,
        error: Optional[str] = None,
    ) -> None:
        done = self._done.pop(execution.id, None)
        if done is None:
            return

        if status is not None and (execution.status != status or execution.completed_at is None):
            execution.finish(status, error=error)

        logger.info(
            "Execution %s finished: %s%s",
            execution.id,
            execution.status.value,
            f" ({execution.error or execution.cancellation_reason})"
            if execution.error or execution.cancellation_reason
            else "",
        )
        self.events.emit(
            _TERMINAL_EVENT_FOR[execution.status],
            execution=execution,
            error=execution.error,
            cancellation_reason=execution.cancellation_reason,
            rollback_actions=list(execution.rollback_actions),
        )

        self._tasks.pop(execution.id, None)
        self._controls.pop(execution.id, None)
        self._snapshots.pop(execution.id, None)
        done.set()
