"""DagScheduler - runs a playbook's steps in dependency waves."""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from .errors import SchedulingError
from .events import EventBus, EventType
from .executor import StepContext, StepExecutor, StepOutcome
from .models import (
    ConditionalBranchStep,
    ExecutionStatus,
    OnFailure,
    PlaybookExecution,
    RemediationPlaybook,
    StepBase,
    StepResult,
    StepStatus,
    utcnow,
)
from .rollback import RollbackExecutor

logger = logging.getLogger(__name__)


class ExecutionControl:
    """Cancellation and pause signals for one running execution."""

    def __init__(self) -> None:
        self.cancelled = asyncio.Event()
        self.resumed = asyncio.Event()
        self.resumed.set()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self.cancelled.set()
        # A paused run must wake up to observe the cancellation
        self.resumed.set()

    def pause(self) -> None:
        self.resumed.clear()

    def resume(self) -> None:
        self.resumed.set()

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()

    @property
    def is_paused(self) -> bool:
        return not self.resumed.is_set()


@dataclass
class _Run:
    """Bookkeeping for one scheduler run."""

    playbook: RemediationPlaybook
    execution: PlaybookExecution
    context: StepContext
    control: ExecutionControl
    steps: Dict[str, StepBase]
    order: List[str]
    pending: Set[str] = field(default_factory=set)
    terminal: Set[str] = field(default_factory=set)
    semaphore: Optional[asyncio.Semaphore] = None
    abort_step: Optional[str] = None
    abort_policy: Optional[OnFailure] = None
    abort_error: Optional[str] = None

    @property
    def stop_reason(self) -> str:
        if self.control.is_cancelled:
            return self.control.reason or "cancelled"
        return "execution aborted"


class DagScheduler:
    """
    Dispatches ready steps wave by wave until every step is terminal.

    A step is ready once all its dependencies are terminal (completed,
    failed under ``on_failure: continue``, or skipped). All ready steps of a
    wave run concurrently, optionally bounded by ``max_parallel_steps``.
    Step results are only written from the event loop thread in sections
    without awaits, so each execution has a single writer.

    Failure handling once a step exhausts its retries:
    - ``stop``: in-flight siblings are cancelled, the execution ends ``failed``
    - ``rollback``: same, then the rollback plan runs and the execution ends
      ``rolled_back``
    - ``continue``: the step is ``failed`` and its dependents still run

    A conditional branch skips the target it did not take; a step whose
    dependencies were all skipped is skipped too.
    """

    def __init__(
        self,
        executor: StepExecutor,
        rollback: RollbackExecutor,
        events: EventBus,
        max_parallel_steps: int = 0,
    ) -> None:
        """
        Initialize scheduler.

        Args:
            executor: Executes individual steps
            rollback: Runs rollback plans
            events: Bus for progress events
            max_parallel_steps: Worker bound per wave, 0 for unbounded
        """
        self.executor = executor
        self.rollback = rollback
        self.events = events
        self.max_parallel_steps = max_parallel_steps

    async def run(
        self,
        playbook: RemediationPlaybook,
        execution: PlaybookExecution,
        context: StepContext,
        control: Optional[ExecutionControl] = None,
    ) -> PlaybookExecution:
        """
        Run an execution to a terminal status.

        Args:
            playbook: Immutable playbook snapshot
            execution: Execution to drive (must not be terminal)
            context: Step context shared by the execution's steps
            control: Cancellation and pause signals

        Returns:
            The execution, with a terminal status

        Raises:
            SchedulingError: If steps remain but none is ready
        """
        run = _Run(
            playbook=playbook,
            execution=execution,
            context=context,
            control=control or ExecutionControl(),
            steps={step.id: step for step in playbook.steps},
            order=[step.id for step in playbook.steps],
        )
        run.pending = set(run.order)
        if self.max_parallel_steps > 0:
            run.semaphore = asyncio.Semaphore(self.max_parallel_steps)

        for step_id in run.order:
            execution.step_results.setdefault(step_id, StepResult())

        execution.status = ExecutionStatus.RUNNING
        execution.started_at = utcnow()
        logger.info(
            "Starting execution %s of playbook %s (%d steps)",
            execution.id,
            playbook.id,
            len(run.order),
        )
        self.events.emit(EventType.EXECUTION_STARTED, execution=execution)

        try:
            await self._run_waves(run)
        except SchedulingError as e:
            logger.error("%s", e)
            self._skip_remaining(run, "not run: scheduling error")
            execution.finish(ExecutionStatus.FAILED, error=str(e))
            raise

        return await self._finish(run)

    async def _run_waves(self, run: _Run) -> None:
        wave_number = 0
        while run.pending:
            if run.control.is_paused and not run.control.is_cancelled:
                await self._pause(run)
            if run.control.is_cancelled:
                return

            self._propagate_skips(run)
            if not run.pending:
                break

            ready = [
                sid
                for sid in run.order
                if sid in run.pending
                and all(dep in run.terminal for dep in run.steps[sid].dependencies)
            ]
            if not ready:
                raise SchedulingError(run.execution.id, run.pending)

            wave_number += 1
            logger.debug(
                "Execution %s wave %d: %s", run.execution.id, wave_number, ", ".join(ready)
            )
            await self._run_wave(run, ready)

            run.execution.progress = len(run.terminal) / len(run.order)
            self.events.emit(
                EventType.EXECUTION_PROGRESS,
                execution=run.execution,
                progress=run.execution.progress,
                wave=wave_number,
                completed_steps=sorted(run.terminal),
            )

            if run.abort_step is not None or run.control.is_cancelled:
                return

    async def _run_wave(self, run: _Run, ready: List[str]) -> None:
        tasks: Dict["asyncio.Task[StepOutcome]", str] = {
            asyncio.create_task(self._run_step(run, sid), name=f"{run.execution.id}:{sid}"): sid
            for sid in ready
        }
        waiting: Set["asyncio.Task[StepOutcome]"] = set(tasks)
        cancel_waiter = asyncio.create_task(run.control.cancelled.wait())

        try:
            while waiting:
                done, _ = await asyncio.wait(
                    waiting | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
                )

                for task in done:
                    if task is cancel_waiter:
                        continue
                    waiting.discard(task)
                    if task.cancelled():
                        continue
                    self._on_step_done(run, tasks[task], task.result())

                if cancel_waiter in done or run.abort_step is not None:
                    await self._cancel_tasks(waiting)
                    break
        except asyncio.CancelledError:
            await self._cancel_tasks(waiting)
            raise
        finally:
            cancel_waiter.cancel()

    async def _cancel_tasks(self, tasks: Set["asyncio.Task[StepOutcome]"]) -> None:
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_step(self, run: _Run, step_id: str) -> StepOutcome:
        if run.semaphore is not None:
            async with run.semaphore:
                return await self._run_step_now(run, step_id)
        return await self._run_step_now(run, step_id)

    async def _run_step_now(self, run: _Run, step_id: str) -> StepOutcome:
        step = run.steps[step_id]
        execution = run.execution
        result = execution.step_results[step_id]

        result.status = StepStatus.RUNNING
        result.start_time = utcnow()
        execution.current_steps.append(step_id)

        async def on_retry(attempt: int, error: str) -> None:
            result.retry_count = attempt
            result.attempts = attempt
            result.error = error

        context = dataclasses.replace(run.context, attempt=1)
        try:
            outcome = await self.executor.execute(step, context, on_retry=on_retry)
        except asyncio.CancelledError:
            self._close_result(
                run, step_id, StepStatus.SKIPPED, error=f"cancelled: {run.stop_reason}"
            )
            raise

        self._close_result(
            run,
            step_id,
            outcome.status,
            output=outcome.output,
            error=outcome.error,
            attempts=outcome.attempts,
        )
        return outcome

    def _close_result(
        self,
        run: _Run,
        step_id: str,
        status: StepStatus,
        output: Optional[Dict] = None,
        error: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> None:
        execution = run.execution
        result = execution.step_results[step_id]
        result.status = status
        result.end_time = utcnow()
        if result.start_time is not None:
            result.duration_seconds = (result.end_time - result.start_time).total_seconds()
        result.output = output
        result.error = error if status != StepStatus.COMPLETED else None
        if attempts is not None:
            result.attempts = attempts
            result.retry_count = max(attempts - 1, 0)

        if step_id in execution.current_steps:
            execution.current_steps.remove(step_id)
        execution.variables = run.context.variables.snapshot()

    def _on_step_done(self, run: _Run, step_id: str, outcome: StepOutcome) -> None:
        run.pending.discard(step_id)
        run.terminal.add(step_id)
        step = run.steps[step_id]

        if not outcome.succeeded:
            if step.on_failure == OnFailure.CONTINUE:
                logger.warning(
                    "Step %s failed; continuing (on_failure=continue)", step_id
                )
            elif run.abort_step is None:
                run.abort_step = step_id
                run.abort_policy = step.on_failure
                run.abort_error = outcome.error
            return

        if isinstance(step, ConditionalBranchStep) and outcome.output:
            skipped = outcome.output.get("skipped_step")
            if skipped and skipped in run.pending:
                self._skip(run, skipped, None)
                run.execution.step_results[skipped].output = {
                    "reason": f"branch '{step_id}' chose '{outcome.output.get('next_step')}'"
                }

    def _skip(self, run: _Run, step_id: str, error: Optional[str]) -> None:
        result = run.execution.step_results[step_id]
        result.status = StepStatus.SKIPPED
        result.error = error
        result.end_time = utcnow()
        run.pending.discard(step_id)
        run.terminal.add(step_id)

    def _propagate_skips(self, run: _Run) -> None:
        results = run.execution.step_results
        changed = True
        while changed:
            changed = False
            for sid in run.order:
                deps = run.steps[sid].dependencies
                if (
                    sid in run.pending
                    and deps
                    and all(
                        dep in run.terminal and results[dep].status == StepStatus.SKIPPED
                        for dep in deps
                    )
                ):
                    self._skip(run, sid, None)
                    results[sid].output = {"reason": "all dependencies skipped"}
                    changed = True

    def _skip_remaining(self, run: _Run, reason: str) -> None:
        for sid in run.order:
            if sid not in run.pending:
                continue
            # Cancelled in-flight steps already carry their own reason
            if run.execution.step_results[sid].is_terminal:
                run.pending.discard(sid)
                run.terminal.add(sid)
            else:
                self._skip(run, sid, reason)

    async def _pause(self, run: _Run) -> None:
        execution = run.execution
        execution.status = ExecutionStatus.PAUSED
        logger.info("Execution %s paused", execution.id)
        self.events.emit(EventType.EXECUTION_PAUSED, execution=execution)

        await run.control.resumed.wait()
        if run.control.is_cancelled:
            return

        execution.status = ExecutionStatus.RUNNING
        logger.info("Execution %s resumed", execution.id)
        self.events.emit(EventType.EXECUTION_RESUMED, execution=execution)

    async def _finish(self, run: _Run) -> PlaybookExecution:
        execution = run.execution

        if run.control.is_cancelled:
            self._skip_remaining(run, f"not run: {run.stop_reason}")
            execution.cancellation_reason = run.control.reason
            execution.finish(ExecutionStatus.CANCELLED)
            return execution

        if run.abort_step is None:
            execution.progress = 1.0
            execution.finish(ExecutionStatus.COMPLETED)
            return execution

        self._skip_remaining(run, "not run: execution aborted")
        error = f"Step '{run.abort_step}' failed: {run.abort_error}"

        if run.abort_policy == OnFailure.ROLLBACK:
            await self.rollback.run(run.playbook, execution, run.context)
            execution.variables = run.context.variables.snapshot()
            execution.finish(ExecutionStatus.ROLLED_BACK, error=error)
        else:
            execution.finish(ExecutionStatus.FAILED, error=error)
        return execution
