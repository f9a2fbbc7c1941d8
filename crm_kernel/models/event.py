"""Events: the immutable unit of the append-only log."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from crm_kernel.models.action import Origin


class Event(BaseModel):
    """
    One accepted mutation or one rejection.

    Events are never updated or deleted; corrections are new compensating
    events. `id` is assigned by the log on append.
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    user_id: str
    entity_type: str                        # "contact" | "deal" | "action"
    entity_id: Optional[str] = None
    kind: str                               # e.g. "contact.created", "deal.rejected"
    payload: Dict[str, Any] = {}
    origin: Origin = Origin.AI
    causality_id: Optional[str] = None      # "<conversation_id>:<turn_id>" or "rollback:<id>"
    conversation_id: Optional[str] = None
    turn_id: Optional[str] = None
    action_kind: Optional[str] = None       # Candidate kind that produced this event
    created_at: datetime

    # INTEGRITY
    signature: str = ""
    prior_hash: Optional[str] = None

    @property
    def action(self) -> str:
        """The part of `kind` after the entity type, e.g. "status_changed"."""
        return self.kind.split(".", 1)[-1]

    @property
    def is_rejection(self) -> bool:
        return self.action == "rejected"

    @property
    def compensates(self) -> Optional[int]:
        return self.payload.get("compensates")
