"""StepExecutor - runs one step through its handler with timeout and retries."""

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from .approval import StepInteractionBroker
from .context import ExecutionContext
from .errors import StepFailure, StepTimeoutError
from .events import EventBus
from .models import StepBase, StepStatus

if TYPE_CHECKING:
    from ..handlers.ports import EnginePorts
    from ..handlers.registry import HandlerRegistry

logger = logging.getLogger(__name__)

RetryCallback = Callable[[int, str], Awaitable[None]]


@dataclass
class StepContext:
    """Everything a handler may use while executing one step."""

    execution_id: str
    playbook_id: str
    variables: ExecutionContext
    ports: "EnginePorts"
    interactions: StepInteractionBroker
    events: EventBus
    attempt: int = 1


@dataclass
class StepOutcome:
    """Terminal result of a step after all attempts."""

    step_id: str
    status: StepStatus
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int = 0
    exception: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.COMPLETED


def describe_error(error: BaseException) -> str:
    """Human-readable error text stored on step results."""
    if isinstance(error, StepFailure):
        return str(error).strip()
    return f"{type(error).__name__}: {error}"


class StepExecutor:
    """
    Executes steps by dispatching to the handler for their type.

    Per attempt the executor renders the step config against the execution
    variables, calls the handler bounded by ``timeout_seconds`` and stores
    the output in ``output_var``. Failed attempts are retried
    ``retry_count`` times with ``retry_delay_seconds`` (times
    ``retry_backoff`` per retry) between them: a step with
    ``retry_count = N`` gets exactly N+1 attempts.
    """

    def __init__(
        self,
        handlers: "HandlerRegistry",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize executor.

        Args:
            handlers: Handler registry; must cover every step type
            sleep: Coroutine used to wait between retries

        Raises:
            ValueError: If a step type has no handler
        """
        missing = handlers.missing_types()
        if missing:
            raise ValueError(
                "Handler registry is missing step types: "
                + ", ".join(t.value for t in missing)
            )
        self.handlers = handlers
        self._sleep = sleep

    def render_step(self, step: StepBase, variables: ExecutionContext) -> StepBase:
        """
        Render templates in a step's config against the execution variables.

        Raises:
            ExpressionError: On template errors
            StepFailure: If the rendered config no longer validates
        """
        config = getattr(step, "config")
        rendered = variables.render_value(config.model_dump(), step.id)
        try:
            new_config = type(config).model_validate(rendered)
        except ValidationError as e:
            raise StepFailure(step.id, f"Rendered config of step '{step.id}' is invalid: {e}") from e
        return step.model_copy(update={"config": new_config})

    async def run_attempt(self, step: StepBase, context: StepContext) -> Dict[str, Any]:
        """
        Run a single attempt of a step.

        Returns:
            Handler output

        Raises:
            StepTimeoutError: If the handler exceeds ``timeout_seconds``
            Exception: Whatever the handler raised
        """
        handler = self.handlers.get_or_raise(step.step_type)
        rendered = self.render_step(step, context.variables)

        if handler.manages_timeout:
            output = await handler.execute(rendered, context)
        else:
            try:
                output = await asyncio.wait_for(
                    handler.execute(rendered, context), timeout=step.timeout_seconds
                )
            except asyncio.TimeoutError:
                raise StepTimeoutError(step.id, step.timeout_seconds) from None

        return output if output is not None else {}

    async def execute(
        self,
        step: StepBase,
        context: StepContext,
        on_retry: Optional[RetryCallback] = None,
    ) -> StepOutcome:
        """
        Run a step to a terminal outcome, retrying failed attempts.

        Cancellation of the calling task propagates; it is not a step failure.

        Args:
            step: Step to run
            context: Step context
            on_retry: Awaited after each failed attempt that will be retried,
                with the attempt number and error text

        Returns:
            The step outcome
        """
        max_attempts = step.retry_count + 1
        attempt = 0

        while True:
            attempt += 1
            context.attempt = attempt
            try:
                output = await self.run_attempt(step, context)
            except Exception as e:
                error = describe_error(e)
                if attempt >= max_attempts:
                    logger.error(
                        "Step %s of execution %s failed after %d attempt(s): %s",
                        step.id,
                        context.execution_id,
                        attempt,
                        error,
                    )
                    return StepOutcome(
                        step_id=step.id,
                        status=StepStatus.FAILED,
                        error=error,
                        attempts=attempt,
                        exception=e,
                    )

                delay = step.retry_delay_for(attempt)
                logger.warning(
                    "Step %s attempt %d/%d failed: %s; retrying in %.1fs",
                    step.id,
                    attempt,
                    max_attempts,
                    error,
                    delay,
                )
                if on_retry is not None:
                    await on_retry(attempt, error)
                await self._sleep(delay)
                continue

            if step.output_var:
                context.variables.set_variable(step.output_var, output)

            logger.debug("Step %s completed on attempt %d", step.id, attempt)
            return StepOutcome(
                step_id=step.id,
                status=StepStatus.COMPLETED,
                output=output,
                attempts=attempt,
            )
