"""
Context Manager — "the contact we were just discussing".

Derives a ConversationContext from the last N events of a conversation.
Nothing is cached; every call reads the window afresh.
"""

from datetime import datetime, timezone
from typing import List, Set

from crm_kernel.event_log.store import EventLog
from crm_kernel.models.context import ConversationContext
from crm_kernel.models.schema import EntityType

# Payload keys that mention another entity worth remembering
_MENTIONS = {
    "contact_id": EntityType.CONTACT.value,
    "deal_id": EntityType.DEAL.value,
}


class ContextManager:
    """Rebuilds conversational context from the event log on every call."""

    def __init__(self, event_log: EventLog, window: int = 20):
        self.event_log = event_log
        self.window = window

    def resolve(self, user_id: str, conversation_id: str) -> ConversationContext:
        """Build the context for one conversation from its most recent events."""
        events = self.event_log.read_recent_for_conversation(
            user_id, conversation_id, limit=self.window
        )

        last_referenced = {}
        recent: List[str] = []
        archived: Set[str] = set()
        answered_types: Set[str] = set()
        questions: List[str] = []

        # Newest first
        for event in reversed(events):
            if event.is_rejection:
                question = event.payload.get("clarification")
                if question and event.entity_type not in answered_types and question not in questions:
                    questions.append(question)
                continue

            if event.entity_id is None:
                continue
            answered_types.add(event.entity_type)

            if event.action == "archived":
                archived.add(event.entity_id)
            mentioned = [(event.entity_type, event.entity_id)]
            mentioned += [
                (entity_type, event.payload[key])
                for key, entity_type in _MENTIONS.items()
                if event.payload.get(key) and event.payload[key] != event.entity_id
            ]
            for entity_type, entity_id in mentioned:
                if entity_id in archived:
                    continue
                last_referenced.setdefault(entity_type, entity_id)
                if entity_id not in recent:
                    recent.append(entity_id)

        return ConversationContext(
            user_id=user_id,
            conversation_id=conversation_id,
            last_referenced=last_referenced,
            recent_entity_ids=recent,
            pending_questions=questions,
            window_size=len(events),
            last_event_id=events[-1].id if events else None,
            built_at=datetime.now(timezone.utc),
        )
