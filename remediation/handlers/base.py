"""Base StepHandler class - foundation for all step handlers."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Type, TypeVar

from ..playbooks.errors import PortNotConfiguredError, StepFailure
from ..playbooks.executor import StepContext
from ..playbooks.models import StepBase, StepType

PortT = TypeVar("PortT")
StepT = TypeVar("StepT", bound=StepBase)

__all__ = ["StepContext", "StepHandler"]


class StepHandler(ABC):
    """
    Base class for all step handlers.

    A handler executes one step type. Handlers hold no per-execution state:
    everything they need arrives through the step (already rendered against
    the execution variables) and the :class:`StepContext`.

    Example:
        class RestartServiceHandler(StepHandler):
            step_type = StepType.AGENT_ACTION
            name = "restart_service"

            async def execute(self, step, context):
                ...
                return {"restarted": True}
    """

    step_type: StepType
    name: str = "base_handler"
    description: str = ""
    # True when the handler enforces the step deadline itself (human interactions)
    manages_timeout: bool = False

    @abstractmethod
    async def execute(self, step: StepBase, context: StepContext) -> Dict[str, Any]:
        """
        Execute a step.

        Args:
            step: The step with its config rendered
            context: Execution context and ports

        Returns:
            Output recorded on the step result

        Raises:
            StepFailure: Or any exception, to fail this attempt
        """
        pass

    @staticmethod
    def require_port(step: StepBase, port: Optional[PortT], port_name: str) -> PortT:
        """Return a configured port or fail the step."""
        if port is None:
            raise PortNotConfiguredError(step.id, port_name)
        return port

    @staticmethod
    def expect(step: StepBase, kind: Type[StepT]) -> StepT:
        """Return ``step`` as ``kind``, failing it if it was routed to the wrong handler."""
        if not isinstance(step, kind):
            raise StepFailure(
                step.id,
                f"Step '{step.id}' of type '{step.step_type.value}' cannot run as {kind.__name__}",
            )
        return step

    def __repr__(self) -> str:
        step_type = getattr(self, "step_type", None)
        type_name = step_type.value if step_type is not None else "?"
        return f"<{self.__class__.__name__} name='{self.name}' step_type='{type_name}'>"
