"""
Audit & Rollback Manager — replay, audit trails, and compensating events.

Behavioral Contract:
- replay folds an entity's events in id order through pure reducers
- rollback never removes or edits history: it appends a compensating
  event through the Action Executor
- Which event kinds can be reversed, and how, is enumerated in INVERSES;
  anything not listed raises NotReversible
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from crm_kernel.audit.reducers import fold
from crm_kernel.entity_store.store import EntityStore
from crm_kernel.errors import EventNotFound, NotReversible
from crm_kernel.event_log.store import DuplicateCausality, EventLog
from crm_kernel.execution.executor import ActionExecutor
from crm_kernel.models.action import Origin
from crm_kernel.models.entity import Entity
from crm_kernel.models.event import Event
from crm_kernel.schema.registry import ENTITY_FIELDS

logger = logging.getLogger(__name__)

# Given the event being reversed, its entity's state just before that event,
# and its state now, produce the compensating (kind, payload).
Inverse = Callable[[Event, Optional[Entity], Entity], Tuple[str, Dict[str, Any]]]


def _archive_created(event: Event, prior: Optional[Entity], current: Entity):
    return f"{event.entity_type}.archived", {}


def _revert_update(event: Event, prior: Optional[Entity], current: Entity):
    fields = ENTITY_FIELDS[current.entity_type]
    restored = {
        field: prior.properties.get(field)
        for field in fields
        if field in event.payload
    }
    return f"{event.entity_type}.updated", restored


def _revert_status(event: Event, prior: Optional[Entity], current: Entity):
    return "deal.status_changed", {
        "status": prior.properties.get("status"),
        "from_status": current.properties.get("status"),
    }


def _restore_archived(event: Event, prior: Optional[Entity], current: Entity):
    return f"{event.entity_type}.restored", {}


def _archive_restored(event: Event, prior: Optional[Entity], current: Entity):
    return f"{event.entity_type}.archived", {}


# Enumerated per kind. Kinds absent here (activity_logged, imported,
# rejected) have no inverse.
INVERSES: Dict[str, Inverse] = {
    "contact.created": _archive_created,
    "contact.updated": _revert_update,
    "contact.archived": _restore_archived,
    "contact.restored": _archive_restored,
    "deal.created": _archive_created,
    "deal.updated": _revert_update,
    "deal.status_changed": _revert_status,
    "deal.archived": _restore_archived,
    "deal.restored": _archive_restored,
}

_NO_INVERSE_REASONS = {
    "activity_logged": "an activity records something that already happened",
    "imported": "imported records are owned by their source system",
    "rejected": "a rejection changed nothing",
}


class AuditManager:
    """Reads history back, and reverses it additively."""

    def __init__(
        self,
        event_log: EventLog,
        entity_store: EntityStore,
        executor: ActionExecutor,
    ):
        self.event_log = event_log
        self.entity_store = entity_store
        self.executor = executor

    def replay(
        self, entity_id: str, until_event_id: Optional[int] = None
    ) -> Optional[Entity]:
        """Fold an entity's events (optionally only those up to an id) into its state."""
        return fold(self.event_log.read_for_entity(entity_id, until_event_id=until_event_id))

    def trail(self, user_id: str, entity_id: str) -> List[Event]:
        """Every event recorded against an entity, oldest first, rejections included."""
        return self.event_log.read_for_entity(entity_id, user_id=user_id)

    def verify_entity(self, entity_id: str) -> bool:
        """Whether the cached projection matches a fresh replay."""
        return self.entity_store.get(entity_id) == self.replay(entity_id)

    def rebuild_projections(self) -> int:
        """Discard every projection and rebuild it from the log. Returns the entity count."""
        self.entity_store.clear()
        rebuilt = 0
        for entity_id in self.event_log.entity_ids():
            entity = self.replay(entity_id)
            if entity is not None:
                self.entity_store.put(entity)
                rebuilt += 1
        logger.info("Rebuilt %d projections from the event log", rebuilt)
        return rebuilt

    def rollback(
        self,
        user_id: str,
        event_id: int,
        origin: Origin = Origin.MANUAL,
        conversation_id: Optional[str] = None,
    ) -> Event:
        """
        Reverse an accepted event by appending its compensating event.

        Raises EventNotFound for unknown (or other users') events and
        NotReversible when the kind has no inverse, the event was already
        compensated, or the entity has since been archived.
        """
        event = self.event_log.get(event_id)
        if event is None or event.user_id != user_id:
            raise EventNotFound(event_id)

        inverse = INVERSES.get(event.kind)
        if inverse is None:
            reason = _NO_INVERSE_REASONS.get(event.action, "no inverse is defined")
            raise NotReversible(event_id, event.kind, reason)

        compensation = self.event_log.find_compensation(event_id)
        if compensation is not None:
            raise NotReversible(
                event_id, event.kind,
                f"already compensated by event {compensation.id}",
            )

        prior = self.replay(event.entity_id, until_event_id=event_id - 1)

        def build(current: Entity) -> Tuple[str, Dict[str, Any]]:
            if current.archived and event.action != "archived":
                raise NotReversible(
                    event_id, event.kind, f"{event.entity_type} {current.id} is archived"
                )
            if not current.archived and event.action == "archived":
                raise NotReversible(
                    event_id, event.kind, f"{event.entity_type} {current.id} is not archived"
                )
            return inverse(event, prior, current)

        try:
            compensating = self.executor.apply_compensation(
                event, build, origin=origin, conversation_id=conversation_id
            )
        except DuplicateCausality:
            # Lost a race with a concurrent rollback of the same event
            raise NotReversible(event_id, event.kind, "already compensated") from None
        return compensating
