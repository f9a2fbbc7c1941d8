"""
Entity Store — current-state projections of Contacts and Deals.

Written by: Action Executor (only)
Read by: Validation Pipeline, Audit Manager, API

The store is a cache over the event log. Everything in it can be thrown
away and rebuilt by replaying events.
"""

import threading
from typing import Dict, List, Optional

from crm_kernel.models.entity import Entity
from crm_kernel.models.schema import EntityType


class EntityStore:
    """
    In-memory projection store.
    Readers always receive copies, so nothing outside the executor can
    change a projection.
    """

    def __init__(self):
        self._entities: Dict[str, Entity] = {}
        self._lock = threading.Lock()

    def get(self, entity_id: str) -> Optional[Entity]:
        """Get an entity by id regardless of owner."""
        with self._lock:
            entity = self._entities.get(entity_id)
        return entity.model_copy(deep=True) if entity else None

    def get_for_user(self, user_id: str, entity_id: str) -> Optional[Entity]:
        """Get an entity only if it belongs to this user."""
        entity = self.get(entity_id)
        if entity is None or entity.user_id != user_id:
            return None
        return entity

    def put(self, entity: Entity) -> None:
        """Replace the projection for an entity."""
        with self._lock:
            self._entities[entity.id] = entity.model_copy(deep=True)

    def list(
        self,
        user_id: str,
        entity_type: Optional[EntityType] = None,
        include_archived: bool = False,
    ) -> List[Entity]:
        """All of a user's entities, oldest first."""
        with self._lock:
            entities = [
                e for e in self._entities.values()
                if e.user_id == user_id
                and (entity_type is None or e.entity_type == entity_type)
                and (include_archived or not e.archived)
            ]
        entities.sort(key=lambda e: (e.created_at, e.id))
        return [e.model_copy(deep=True) for e in entities]

    def find_contacts_by_name(self, user_id: str, name: str) -> List[Entity]:
        """Live contacts whose full name or first name matches, case-insensitively."""
        needle = " ".join(name.split()).lower()
        if not needle:
            return []
        matches = []
        for contact in self.list(user_id, EntityType.CONTACT):
            first = (contact.properties.get("first_name") or "").lower()
            if needle == contact.display_name.lower() or needle == first:
                matches.append(contact)
        return matches

    def clear(self) -> None:
        with self._lock:
            self._entities.clear()

    def count(self) -> int:
        with self._lock:
            return len(self._entities)
