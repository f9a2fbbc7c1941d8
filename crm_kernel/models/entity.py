"""Entity projections folded from events."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel

from crm_kernel.models.schema import EntityType


class Entity(BaseModel):
    """Current state of a Contact or Deal, rebuilt from its events."""

    id: str
    entity_type: EntityType
    user_id: str
    properties: Dict[str, Any] = {}
    version: int = 0
    archived: bool = False
    created_at: datetime
    updated_at: datetime
    last_event_id: Optional[int] = None

    @property
    def display_name(self) -> str:
        props = self.properties
        if self.entity_type == EntityType.CONTACT:
            parts = [props.get("first_name"), props.get("last_name")]
            return " ".join(p for p in parts if p) or self.id
        return props.get("title") or self.id
