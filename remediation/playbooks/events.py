"""Typed event bus for playbook and execution lifecycle events."""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set

from .models import PlaybookExecution, RemediationPlaybook, utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Lifecycle events. Values are the wire names seen by observers."""

    PLAYBOOK_CREATED = "playbook:created"
    PLAYBOOK_UPDATED = "playbook:updated"
    PLAYBOOK_DELETED = "playbook:deleted"

    EXECUTION_PENDING_APPROVAL = "execution:pending_approval"
    EXECUTION_APPROVED = "execution:approved"
    EXECUTION_REJECTED = "execution:rejected"
    EXECUTION_STARTED = "execution:started"
    EXECUTION_PROGRESS = "execution:progress"
    EXECUTION_PAUSED = "execution:paused"
    EXECUTION_RESUMED = "execution:resumed"
    EXECUTION_COMPLETED = "execution:completed"
    EXECUTION_FAILED = "execution:failed"
    EXECUTION_CANCELLED = "execution:cancelled"
    EXECUTION_ROLLED_BACK = "execution:rolled_back"

    STEP_APPROVAL_REQUIRED = "step:approval_required"
    STEP_MANUAL_REQUIRED = "step:manual_required"

    @property
    def category(self) -> str:
        """Prefix before the colon: playbook, execution or step."""
        return self.value.split(":", 1)[0]


TERMINAL_EVENTS = frozenset(
    {
        EventType.EXECUTION_COMPLETED,
        EventType.EXECUTION_FAILED,
        EventType.EXECUTION_CANCELLED,
        EventType.EXECUTION_ROLLED_BACK,
    }
)


@dataclass
class PlaybookEvent:
    """A single lifecycle event."""

    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    execution_id: Optional[str] = None
    playbook_id: Optional[str] = None
    execution: Optional[PlaybookExecution] = None
    playbook: Optional[RemediationPlaybook] = None
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "execution_id": self.execution_id,
            "playbook_id": self.playbook_id,
            "data": self.data,
            "execution": (
                self.execution.model_dump(mode="json") if self.execution else None
            ),
        }


EventHandler = Callable[[PlaybookEvent], None]


@dataclass
class _Subscription:
    handler: EventHandler
    types: Optional[Set[EventType]]
    categories: Optional[Set[str]]

    def matches(self, event: PlaybookEvent) -> bool:
        if self.types is None and self.categories is None:
            return True
        if self.types is not None and event.type in self.types:
            return True
        if self.categories is not None and event.type.category in self.categories:
            return True
        return False


class EventBus:
    """
    In-process publish/subscribe channel for lifecycle events.

    Handlers are called synchronously in subscription order. A handler that
    raises is logged and skipped; it never affects the publisher.

    Example:
        bus = EventBus()
        bus.subscribe(print, categories=["execution"])
        bus.emit(EventType.EXECUTION_STARTED, execution_id="execution_1")
    """

    def __init__(self, history_size: int = 1000) -> None:
        """
        Initialize the bus.

        Args:
            history_size: Number of recent events retained for inspection
        """
        self._subscriptions: List[_Subscription] = []
        self._history: Deque[PlaybookEvent] = deque(maxlen=history_size or None)
        self._keep_history = history_size > 0

    def subscribe(
        self,
        handler: EventHandler,
        types: Optional[Iterable[EventType]] = None,
        categories: Optional[Iterable[str]] = None,
    ) -> EventHandler:
        """
        Register a handler.

        Args:
            handler: Callable receiving each matching event
            types: Only deliver these event types
            categories: Only deliver events in these categories

        Returns:
            The handler, so this can be used as a decorator
        """
        self._subscriptions.append(
            _Subscription(
                handler=handler,
                types=set(types) if types is not None else None,
                categories=set(categories) if categories is not None else None,
            )
        )
        return handler

    def unsubscribe(self, handler: EventHandler) -> bool:
        """Remove every subscription of a handler. Returns True if any existed."""
        before = len(self._subscriptions)
        self._subscriptions = [s for s in self._subscriptions if s.handler != handler]
        return len(self._subscriptions) != before

    def publish(self, event: PlaybookEvent) -> None:
        """Deliver an event to all matching handlers."""
        if self._keep_history:
            self._history.append(event)

        logger.debug(
            "Event %s (execution=%s, playbook=%s)",
            event.type.value,
            event.execution_id,
            event.playbook_id,
        )

        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                subscription.handler(event)
            except Exception:
                logger.exception(
                    "Event handler %r failed on %s", subscription.handler, event.type.value
                )

    def emit(
        self,
        event_type: EventType,
        execution: Optional[PlaybookExecution] = None,
        playbook: Optional[RemediationPlaybook] = None,
        **data: Any,
    ) -> PlaybookEvent:
        """
        Build and publish an event.

        Execution and playbook objects are snapshotted so observers see the
        state at emission time.

        Args:
            event_type: Type of the event
            execution: Execution the event concerns, if any
            playbook: Playbook the event concerns, if any
            **data: Extra payload

        Returns:
            The published event
        """
        execution_id = data.pop("execution_id", None)
        playbook_id = data.pop("playbook_id", None)

        if execution is not None:
            execution_id = execution.id
            playbook_id = execution.playbook_id
        if playbook is not None:
            playbook_id = playbook.id

        event = PlaybookEvent(
            type=event_type,
            data=data,
            execution_id=execution_id,
            playbook_id=playbook_id,
            execution=execution.model_copy(deep=True) if execution else None,
            playbook=playbook,
        )
        self.publish(event)
        return event

    def history(
        self,
        limit: Optional[int] = None,
        types: Optional[Iterable[EventType]] = None,
        execution_id: Optional[str] = None,
    ) -> List[PlaybookEvent]:
        """
        Recent events, oldest first.

        Args:
            limit: Return at most this many of the newest matching events
            types: Filter by event type
            execution_id: Filter by execution

        Returns:
            Matching events
        """
        wanted = set(types) if types is not None else None
        events = [
            e
            for e in self._history
            if (wanted is None or e.type in wanted)
            and (execution_id is None or e.execution_id == execution_id)
        ]
        if limit is not None:
            events = events[-limit:]
        return events

    def clear_history(self) -> None:
        self._history.clear()
