"""Handler Registry - maps step types to their handlers."""

from typing import Dict, Iterable, List, Optional, Union

from ..playbooks.models import StepType
from .base import StepHandler


class HandlerRegistry:
    """
    Registry of step handler instances, keyed by step type.

    Handlers are instances rather than classes because most of them wrap a
    port. An engine checks at construction time that every step type has a
    handler.

    Example:
        registry = HandlerRegistry()
        registry.register(NotificationHandler())

        # Replace a built-in handler
        registry.register(MyAgentHandler(), replace=True)
    """

    def __init__(self, handlers: Optional[Iterable[StepHandler]] = None) -> None:
        self._handlers: Dict[StepType, StepHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: StepHandler, replace: bool = False) -> StepHandler:
        """
        Register a handler for its step type.

        Args:
            handler: Handler instance
            replace: Allow overriding an existing handler

        Returns:
            The handler

        Raises:
            TypeError: If handler is not a StepHandler
            ValueError: If the step type already has a handler and replace is False
        """
        if not isinstance(handler, StepHandler):
            raise TypeError(f"{handler!r} must be an instance of StepHandler")

        step_type = handler.step_type
        if step_type in self._handlers and not replace:
            raise ValueError(
                f"A handler for step type '{step_type.value}' is already registered"
            )

        self._handlers[step_type] = handler
        return handler

    def get(self, step_type: Union[StepType, str]) -> Optional[StepHandler]:
        """Get the handler for a step type."""
        return self._handlers.get(StepType(step_type))

    def get_or_raise(self, step_type: Union[StepType, str]) -> StepHandler:
        """Get the handler for a step type, raising if not found."""
        handler = self.get(step_type)
        if handler is None:
            raise KeyError(f"No handler registered for step type '{StepType(step_type).value}'")
        return handler

    def list_types(self) -> List[StepType]:
        """Step types that have a handler."""
        return list(self._handlers.keys())

    def missing_types(self) -> List[StepType]:
        """Step types without a handler."""
        return [t for t in StepType if t not in self._handlers]

    def clear(self) -> None:
        """Remove all handlers (mainly for testing)."""
        self._handlers.clear()

    def __contains__(self, step_type: object) -> bool:
        try:
            return StepType(step_type) in self._handlers  # type: ignore[arg-type]
        except ValueError:
            return False

    def __len__(self) -> int:
        return len(self._handlers)
