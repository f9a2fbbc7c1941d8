"""Tests for conversation context resolution."""

from crm_kernel.core import MutationCore
from crm_kernel.models.action import CandidateAction
from crm_kernel.models.config import KernelConfig

USER = "user_1"


def _submit(core, kind, turn_id, conversation_id="conv_1", **parameters):
    return core.submit(USER, CandidateAction(
        kind=kind,
        parameters=parameters,
        conversation_id=conversation_id,
        turn_id=turn_id,
    ))


class TestContextManager:
    def setup_method(self):
        self.core = MutationCore()

    def test_empty_conversation(self):
        context = self.core.resolve_context(USER, "conv_1")
        assert context.last_referenced == {}
        assert context.recent_entity_ids == []
        assert context.window_size == 0
        assert context.last_event_id is None

    def test_tracks_most_recent_entity_per_type(self):
        jane = _submit(self.core, "create_contact", "t1", first_name="Jane")
        john = _submit(self.core, "create_contact", "t2", first_name="John")
        deal = _submit(self.core, "create_deal", "t3", title="12 Oak St")

        context = self.core.resolve_context(USER, "conv_1")
        assert context.most_recent("contact") == john.event.entity_id
        assert context.most_recent("deal") == deal.event.entity_id
        assert context.recent_entity_ids == [
            deal.event.entity_id, john.event.entity_id, jane.event.entity_id,
        ]
        assert context.last_event_id == deal.event.id

    def test_deal_mentions_its_contact(self):
        jane = _submit(self.core, "create_contact", "t1", first_name="Jane")
        _submit(self.core, "create_contact", "t2", first_name="John")
        _submit(self.core, "create_deal", "t3", title="12 Oak St", contact_id=jane.event.entity_id)

        context = self.core.resolve_context(USER, "conv_1")
        assert context.most_recent("contact") == jane.event.entity_id

    def test_conversations_are_isolated(self):
        _submit(self.core, "create_contact", "t1", first_name="Jane")
        context = self.core.resolve_context(USER, "conv_2")
        assert context.most_recent("contact") is None
        assert self.core.resolve_context("user_2", "conv_1").most_recent("contact") is None

    def test_archived_entities_drop_out(self):
        jane = _submit(self.core, "create_contact", "t1", first_name="Jane")
        _submit(self.core, "archive_contact", "t2", contact_id=jane.event.entity_id)
        context = self.core.resolve_context(USER, "conv_1")
        assert context.most_recent("contact") is None

    def test_pending_question_until_answered(self):
        _submit(self.core, "update_contact", "t1", phone="555-0100")
        context = self.core.resolve_context(USER, "conv_1")
        assert context.pending_questions == ["Which contact do you mean?"]

        _submit(self.core, "create_contact", "t2", first_name="Jane")
        context = self.core.resolve_context(USER, "conv_1")
        assert context.pending_questions == []

    def test_window_bounds_what_is_remembered(self):
        core = MutationCore(config=KernelConfig(context_window=2))
        jane = _submit(core, "create_contact", "t1", first_name="Jane")
        _submit(core, "create_contact", "t2", first_name="John")
        _submit(core, "create_contact", "t3", first_name="Ann")
        context = core.resolve_context(USER, "conv_1")
        assert context.window_size == 2
        assert jane.event.entity_id not in context.recent_entity_ids
