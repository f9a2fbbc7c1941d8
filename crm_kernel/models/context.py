"""Conversation context used for disambiguation."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel


class ConversationContext(BaseModel):
    """
    A view derived from the last few events of a conversation.
    Never stored; rebuilt on every resolution.
    """

    user_id: str
    conversation_id: str
    last_referenced: Dict[str, str] = {}    # entity type -> most recently touched id
    recent_entity_ids: List[str] = []       # Newest first, unique
    pending_questions: List[str] = []       # Clarifications not yet answered
    window_size: int = 0                    # Events actually read
    last_event_id: Optional[int] = None
    built_at: Optional[datetime] = None

    def most_recent(self, entity_type: str) -> Optional[str]:
        return self.last_referenced.get(entity_type)
