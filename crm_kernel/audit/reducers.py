"""
Reducers — pure folding of events into entity projections.

One reducer per event action, enumerated explicitly. Replaying the same
events always yields the same entity: every timestamp and id comes from the
events themselves.
"""

from typing import Callable, Dict, Iterable, Optional

from crm_kernel.models.entity import Entity
from crm_kernel.models.event import Event
from crm_kernel.models.schema import EntityType
from crm_kernel.schema.registry import ENTITY_FIELDS


class ReplayError(ValueError):
    """An event cannot be applied to the state it was given."""


def _fields(entity_type: EntityType, payload: dict) -> dict:
    return {
        k: payload[k] for k in ENTITY_FIELDS[entity_type]
        if payload.get(k) is not None
    }


def _advance(entity: Entity, event: Event, **changes) -> Entity:
    return entity.model_copy(update={
        "version": entity.version + 1,
        "updated_at": event.created_at,
        "last_event_id": event.id,
        **changes,
    }, deep=True)


def _created(entity: Optional[Entity], event: Event) -> Entity:
    if entity is not None:
        raise ReplayError(f"Entity {event.entity_id} already exists (event {event.id})")
    entity_type = EntityType(event.entity_type)
    return Entity(
        id=event.entity_id,
        entity_type=entity_type,
        user_id=event.user_id,
        properties=_fields(entity_type, event.payload),
        version=1,
        created_at=event.created_at,
        updated_at=event.created_at,
        last_event_id=event.id,
    )


def _updated(entity: Entity, event: Event) -> Entity:
    properties = dict(entity.properties)
    for field in ENTITY_FIELDS[entity.entity_type]:
        if field not in event.payload:
            continue
        value = event.payload[field]
        # None means the field was absent before; restoring it removes it
        if value is None:
            properties.pop(field, None)
        else:
            properties[field] = value
    return _advance(entity, event, properties=properties)


def _status_changed(entity: Entity, event: Event) -> Entity:
    properties = dict(entity.properties)
    properties["status"] = event.payload["status"]
    return _advance(entity, event, properties=properties)


def _activity_logged(entity: Entity, event: Event) -> Entity:
    properties = dict(entity.properties)
    properties["activity_count"] = properties.get("activity_count", 0) + 1
    properties["last_activity_type"] = event.payload.get("activity_type")
    properties["last_activity_at"] = event.created_at.isoformat()
    return _advance(entity, event, properties=properties)


def _archived(entity: Entity, event: Event) -> Entity:
    return _advance(entity, event, archived=True)


def _restored(entity: Entity, event: Event) -> Entity:
    return _advance(entity, event, archived=False)


def _rejected(entity: Optional[Entity], event: Event) -> Optional[Entity]:
    # Rejections are recorded against the entity but change nothing
    return entity


REDUCERS: Dict[str, Callable] = {
    "created": _created,
    "imported": _created,
    "updated": _updated,
    "status_changed": _status_changed,
    "activity_logged": _activity_logged,
    "archived": _archived,
    "restored": _restored,
    "rejected": _rejected,
}


def apply_event(entity: Optional[Entity], event: Event) -> Optional[Entity]:
    """Apply one event to the current state of its entity."""
    reducer = REDUCERS.get(event.action)
    if reducer is None:
        raise ReplayError(f"No reducer for event kind {event.kind}")
    if entity is None and reducer not in (_created, _rejected):
        raise ReplayError(
            f"Event {event.id} ({event.kind}) precedes creation of {event.entity_id}"
        )
    return reducer(entity, event)


def fold(events: Iterable[Event]) -> Optional[Entity]:
    """Fold an entity's events, in id order, into its current state."""
    entity = None
    for event in events:
        entity = apply_event(entity, event)
    return entity
