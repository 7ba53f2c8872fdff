"""PlaybookRegistry - in-memory store of validated playbook definitions."""

import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import PlaybookError, PlaybookNotFoundError
from .events import EventBus, EventType
from .graph import validate_playbook_graph
from .models import PlaybookCategory, RemediationPlaybook, _new_id, utcnow

logger = logging.getLogger(__name__)

# Fields owned by the registry; an update patch cannot set them
_PROTECTED_FIELDS = frozenset(
    {
        "id",
        "created_at",
        "created_by",
        "updated_at",
        "last_executed_at",
        "execution_count",
        "success_rate",
        "average_execution_time_minutes",
    }
)


def bump_patch_version(version: str) -> str:
    """Increment the patch component of a semantic version string."""
    parts = version.split(".")
    if len(parts) == 3 and parts[2].isdigit():
        parts[2] = str(int(parts[2]) + 1)
        return ".".join(parts)
    return f"{version}.1"


class PlaybookRegistry:
    """
    CRUD store for playbook definitions.

    Stored playbooks are never mutated in place: every update stores a new
    instance, so executions holding the previous instance keep a stable
    snapshot. Reads are lock-free; writes take a lock scoped to the
    playbook id.

    Example:
        registry = PlaybookRegistry(events=bus)
        playbook = registry.create({"name": "Restart pool", "steps": [...]})
        registry.update(playbook.id, {"is_active": False})
    """

    def __init__(self, events: Optional[EventBus] = None) -> None:
        """
        Initialize the registry.

        Args:
            events: Optional bus receiving ``playbook:*`` events
        """
        self.events = events
        self._playbooks: Dict[str, RemediationPlaybook] = {}
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._guard = threading.Lock()

    def _lock_for(self, playbook_id: str) -> threading.Lock:
        with self._guard:
            return self._locks[playbook_id]

    def _drop_lock(self, playbook_id: str) -> None:
        with self._guard:
            if playbook_id not in self._playbooks:
                self._locks.pop(playbook_id, None)

    def _emit(self, event_type: EventType, playbook: RemediationPlaybook, **data: Any) -> None:
        if self.events is not None:
            self.events.emit(event_type, playbook=playbook, **data)

    def create(
        self,
        definition: Union[RemediationPlaybook, Dict[str, Any]],
        created_by: Optional[str] = None,
    ) -> RemediationPlaybook:
        """
        Validate and store a new playbook.

        Args:
            definition: Playbook model or raw definition dictionary
            created_by: Author, overriding the definition's value

        Returns:
            The stored playbook with a fresh id and timestamps

        Raises:
            GraphError: If the step graph is malformed
            pydantic.ValidationError: If the definition is invalid
        """
        if isinstance(definition, RemediationPlaybook):
            data = definition.model_dump()
        else:
            data = dict(definition)

        now = utcnow()
        data.update(
            {
                "id": data.get("id") or _new_id("playbook"),
                "created_at": now,
                "updated_at": now,
                "last_executed_at": None,
                "execution_count": 0,
                "success_rate": 0.0,
                "average_execution_time_minutes": 0.0,
            }
        )
        if created_by is not None:
            data["created_by"] = created_by

        playbook = RemediationPlaybook.model_validate(data)
        validate_playbook_graph(playbook)

        with self._lock_for(playbook.id):
            if playbook.id in self._playbooks:
                raise PlaybookError(f"Playbook '{playbook.id}' already exists")
            self._playbooks[playbook.id] = playbook

        logger.info(
            "Created playbook %s (%s) with %d steps",
            playbook.id,
            playbook.name,
            len(playbook.steps),
        )
        self._emit(EventType.PLAYBOOK_CREATED, playbook)
        return playbook

    def get(self, playbook_id: str) -> Optional[RemediationPlaybook]:
        """Get a playbook by id."""
        return self._playbooks.get(playbook_id)

    def get_or_raise(self, playbook_id: str) -> RemediationPlaybook:
        """Get a playbook by id, raising if not found."""
        playbook = self.get(playbook_id)
        if playbook is None:
            raise PlaybookNotFoundError(playbook_id)
        return playbook

    def update(self, playbook_id: str, patch: Dict[str, Any]) -> RemediationPlaybook:
        """
        Apply a partial update.

        The graph is re-validated; a change to ``steps`` or ``rollback_plan``
        bumps the patch version unless the patch sets ``version`` itself.

        Args:
            playbook_id: Playbook to update
            patch: Fields to replace

        Returns:
            The new stored instance

        Raises:
            PlaybookNotFoundError: If the playbook does not exist
            GraphError: If the updated step graph is malformed
        """
        ignored = sorted(set(patch) & _PROTECTED_FIELDS)
        if ignored:
            logger.warning("Ignoring protected fields in update of %s: %s", playbook_id, ignored)

        if playbook_id not in self._playbooks:
            raise PlaybookNotFoundError(playbook_id)

        with self._lock_for(playbook_id):
            current = self.get_or_raise(playbook_id)
            data = current.model_dump()
            changes = {k: v for k, v in patch.items() if k not in _PROTECTED_FIELDS}
            data.update(changes)
            data["updated_at"] = utcnow()

            updated = RemediationPlaybook.model_validate(data)
            validate_playbook_graph(updated)

            structural = (
                updated.model_dump(include={"steps", "rollback_plan"})
                != current.model_dump(include={"steps", "rollback_plan"})
            )
            if structural and "version" not in changes:
                updated = updated.model_copy(
                    update={"version": bump_patch_version(current.version)}
                )

            self._playbooks[playbook_id] = updated

        logger.info("Updated playbook %s (version %s)", playbook_id, updated.version)
        self._emit(EventType.PLAYBOOK_UPDATED, updated, changed_fields=sorted(changes))
        return updated

    def delete(self, playbook_id: str) -> bool:
        """
        Delete a playbook.

        Returns:
            True if the playbook existed
        """
        with self._lock_for(playbook_id):
            playbook = self._playbooks.pop(playbook_id, None)
        self._drop_lock(playbook_id)

        if playbook is None:
            return False

        logger.info("Deleted playbook %s", playbook_id)
        self._emit(EventType.PLAYBOOK_DELETED, playbook)
        return True

    def list(
        self,
        category: Optional[PlaybookCategory] = None,
        tags: Optional[Iterable[str]] = None,
        is_active: Optional[bool] = None,
        created_by: Optional[str] = None,
    ) -> List[RemediationPlaybook]:
        """
        List playbooks, newest first.

        Args:
            category: Only this category
            tags: Playbooks carrying any of these tags
            is_active: Only active (or inactive) playbooks
            created_by: Only playbooks by this author

        Returns:
            Matching playbooks
        """
        wanted_tags = set(tags) if tags else None
        playbooks = [
            p
            for p in list(self._playbooks.values())
            if (category is None or p.category == category)
            and (wanted_tags is None or wanted_tags.intersection(p.tags))
            and (is_active is None or p.is_active == is_active)
            and (created_by is None or p.created_by == created_by)
        ]
        return sorted(playbooks, key=lambda p: p.created_at, reverse=True)

    def record_execution_stats(
        self,
        playbook_id: str,
        execution_count: int,
        success_rate: float,
        average_execution_time_minutes: float,
        last_executed_at: Optional[datetime] = None,
    ) -> Optional[RemediationPlaybook]:
        """
        Store lifecycle counters computed by the metrics tracker.

        Returns:
            The new instance, or None if the playbook was deleted meanwhile
        """
        with self._lock_for(playbook_id):
            current = self._playbooks.get(playbook_id)
            if current is None:
                self._drop_lock(playbook_id)
                return None
            updated = current.model_copy(
                update={
                    "execution_count": execution_count,
                    "success_rate": success_rate,
                    "average_execution_time_minutes": average_execution_time_minutes,
                    "last_executed_at": last_executed_at or current.last_executed_at,
                }
            )
            self._playbooks[playbook_id] = updated
        return updated

    def __contains__(self, playbook_id: str) -> bool:
        return playbook_id in self._playbooks

    def __len__(self) -> int:
        return len(self._playbooks)
