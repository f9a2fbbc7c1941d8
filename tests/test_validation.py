"""Tests for parameter decoding and the three-stage validation pipeline."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from crm_kernel.core import MutationCore
from crm_kernel.entity_store.store import EntityStore
from crm_kernel.errors import ErrorKind
from crm_kernel.models.action import CandidateAction, Origin
from crm_kernel.models.context import ConversationContext
from crm_kernel.models.entity import Entity
from crm_kernel.models.schema import EntityType, ParameterSpec, ParamType
from crm_kernel.schema.registry import default_registry
from crm_kernel.validation.coercion import coerce_value, decode_parameters
from crm_kernel.validation.pipeline import ValidationPipeline, infer_entity_type

USER = "user_1"
NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _candidate(kind: str, origin: Origin = Origin.AI, **parameters) -> CandidateAction:
    return CandidateAction(
        kind=kind,
        parameters=parameters,
        conversation_id="conv_1",
        turn_id="turn_1",
        origin=origin,
    )


def _context(**last_referenced) -> ConversationContext:
    return ConversationContext(
        user_id=USER,
        conversation_id="conv_1",
        last_referenced=last_referenced,
    )


def _make_contact(entity_id: str, first_name: str, last_name: str = None, **kwargs) -> Entity:
    properties = {"first_name": first_name}
    if last_name:
        properties["last_name"] = last_name
    properties.update(kwargs.pop("properties", {}))
    return Entity(
        id=entity_id,
        entity_type=EntityType.CONTACT,
        user_id=kwargs.get("user_id", USER),
        properties=properties,
        version=kwargs.get("version", 1),
        archived=kwargs.get("archived", False),
        created_at=NOW,
        updated_at=NOW,
    )


def _make_deal(entity_id: str, status: str = "prospecting", contact_id: str = "contact_1") -> Entity:
    return Entity(
        id=entity_id,
        entity_type=EntityType.DEAL,
        user_id=USER,
        properties={"title": "12 Oak St", "contact_id": contact_id, "value": 0.0, "status": status},
        version=1,
        created_at=NOW,
        updated_at=NOW,
    )


class TestCoercion:
    def setup_method(self):
        self.registry = default_registry()

    def test_money_strings_become_numbers(self):
        spec = ParameterSpec(name="value", type=ParamType.NUMBER)
        assert coerce_value(spec, "$25,000") == 25000.0
        assert coerce_value(spec, 12) == 12.0

    def test_numbers_reject_booleans_and_nan(self):
        spec = ParameterSpec(name="value", type=ParamType.NUMBER)
        with pytest.raises(ValidationError):
            coerce_value(spec, True)
        with pytest.raises(ValidationError):
            coerce_value(spec, "nan")
        with pytest.raises(ValidationError):
            coerce_value(spec, "a lot")

    def test_numbers_must_be_finite_and_in_range(self):
        spec = ParameterSpec(name="value", type=ParamType.NUMBER)
        for value in (10 ** 400, float("inf"), float("-inf"), float("nan"), "Infinity"):
            with pytest.raises(ValidationError):
                coerce_value(spec, value)

    def test_strings_accept_numbers(self):
        spec = ParameterSpec(name="phone", type=ParamType.STRING)
        assert coerce_value(spec, 5550100) == "5550100"
        assert coerce_value(spec, "  Jane ") == "Jane"
        with pytest.raises(ValidationError):
            coerce_value(spec, {"first": "Jane"})

    def test_integers(self):
        spec = ParameterSpec(name="expected_version", type=ParamType.INTEGER)
        assert coerce_value(spec, "2") == 2
        assert coerce_value(spec, 3.0) == 3
        with pytest.raises(ValidationError):
            coerce_value(spec, 2.5)

    def test_booleans(self):
        spec = ParameterSpec(name="manual_override", type=ParamType.BOOLEAN)
        assert coerce_value(spec, "yes") is True
        assert coerce_value(spec, "False") is False
        assert coerce_value(spec, 1) is True
        with pytest.raises(ValidationError):
            coerce_value(spec, "maybe")

    def test_enum_normalization(self):
        spec = self.registry.describe("update_deal_status").get("status")
        assert coerce_value(spec, "Under Contract") == "under_contract"
        assert coerce_value(spec, "under-contract") == "under_contract"
        with pytest.raises(ValidationError):
            coerce_value(spec, "won")

    def test_decode_fills_defaults_and_drops_unknown_keys(self):
        schema = self.registry.describe("create_deal")
        params, violations = decode_parameters(
            schema, {"title": " 12 Oak St ", "contact_id": "contact_1", "color": "blue"}
        )
        assert violations == []
        assert params == {
            "title": "12 Oak St",
            "contact_id": "contact_1",
            "value": 0.0,
            "status": "prospecting",
        }

    def test_decode_reports_every_schema_problem(self):
        schema = self.registry.describe("create_deal")
        _, violations = decode_parameters(schema, {"value": "lots", "status": "won"})
        assert [(v.field, v.rule) for v in violations] == [
            ("title", "missing_required"),
            ("value", "invalid_type"),
            ("status", "invalid_enum"),
        ]
        assert all(v.stage == "schema" for v in violations)

    def test_decode_refuses_non_objects(self):
        schema = self.registry.describe("create_contact")
        _, violations = decode_parameters(schema, ["Jane"])
        assert violations[0].rule == "malformed_parameters"

    def test_context_resolvable_reference_not_reported_missing(self):
        schema = self.registry.describe("update_contact")
        params, violations = decode_parameters(schema, {"phone": "555-0100"})
        assert violations == []
        assert "contact_id" not in params


class TestSchemaStage:
    def setup_method(self):
        self.store = EntityStore()
        self.pipeline = ValidationPipeline(default_registry(), self.store)

    def test_unknown_kind(self):
        result = self.pipeline.validate(USER, _candidate("delete_contact"), _context())
        assert result.accepted is False
        assert result.error_kind == ErrorKind.SCHEMA_VIOLATION
        assert result.entity_type == "contact"
        assert result.violations[0].rule == "unknown_kind"

    def test_unknown_kind_without_entity_hint(self):
        assert infer_entity_type("frobnicate", default_registry()) == "action"
        result = self.pipeline.validate(USER, _candidate("frobnicate"), _context())
        assert result.entity_type == "action"

    def test_schema_failure_stops_before_business_rules(self):
        result = self.pipeline.validate(
            USER, _candidate("create_deal", title="", value="abc"), _context()
        )
        assert result.error_kind == ErrorKind.SCHEMA_VIOLATION
        assert [v.rule for v in result.violations] == ["invalid_type"]

    def test_create_contact_accepted(self):
        result = self.pipeline.validate(
            USER, _candidate("create_contact", first_name="Jane", email="jane@example.com"),
            _context(),
        )
        assert result.accepted is True
        assert result.event_kind == "contact.created"
        assert result.target_id is None
        assert result.base_version is None


class TestUnrepresentableValues:
    def setup_method(self):
        self.core = MutationCore()
        contact = self.core.submit(USER, CandidateAction(
            kind="create_contact", parameters={"first_name": "Jane"},
            conversation_id="conv_1", turn_id="turn_0",
        ))
        self.contact_id = contact.event.entity_id

    @pytest.mark.parametrize("value", [10 ** 400, -(10 ** 400), float("inf"), float("nan"), "nan"])
    def test_recorded_as_schema_rejection(self, value):
        result = self.core.submit(USER, CandidateAction(
            kind="create_deal",
            parameters={"title": "Big", "contact_id": self.contact_id, "value": value},
            conversation_id="conv_1",
            turn_id="turn_1",
        ))
        assert result.accepted is False
        assert result.error_kind == ErrorKind.SCHEMA_VIOLATION
        assert result.event.kind == "deal.rejected"
        assert result.violations[0].field == "value"
        assert result.violations[0].rule == "invalid_type"
        assert self.core.event_log.count() == 2
        assert self.core.list_entities(USER, EntityType.DEAL) == []


class TestReferenceStage:
    def setup_method(self):
        self.store = EntityStore()
        self.store.put(_make_contact("contact_1", "Jane", "Doe"))
        self.store.put(_make_contact("contact_2", "Jane", "Roe"))
        self.store.put(_make_contact("contact_3", "Old", archived=True))
        self.store.put(_make_contact("contact_9", "Other", user_id="user_2"))
        self.store.put(_make_deal("deal_1"))
        self.pipeline = ValidationPipeline(default_registry(), self.store)

    def test_explicit_reference(self):
        result = self.pipeline.validate(
            USER, _candidate("update_contact", contact_id="contact_1", phone="555-0100"),
            _context(),
        )
        assert result.accepted is True
        assert result.target_id == "contact_1"
        assert result.base_version == 1

    def test_dangling_reference(self):
        result = self.pipeline.validate(
            USER, _candidate("update_contact", contact_id="contact_404", phone="1"),
            _context(contact="contact_1"),
        )
        assert result.error_kind == ErrorKind.REFERENCE_ERROR
        assert result.violations[0].rule == "not_found"

    def test_other_users_entity_is_not_found(self):
        result = self.pipeline.validate(
            USER, _candidate("update_contact", contact_id="contact_9", phone="1"), _context()
        )
        assert result.error_kind == ErrorKind.REFERENCE_ERROR
        assert result.violations[0].rule == "not_found"

    def test_wrong_entity_type_is_not_found(self):
        result = self.pipeline.validate(
            USER, _candidate("update_contact", contact_id="deal_1", phone="1"), _context()
        )
        assert result.violations[0].rule == "not_found"

    def test_archived_reference(self):
        result = self.pipeline.validate(
            USER, _candidate("update_contact", contact_id="contact_3", phone="1"), _context()
        )
        assert result.error_kind == ErrorKind.REFERENCE_ERROR
        assert result.violations[0].rule == "archived"

    def test_resolved_from_context(self):
        result = self.pipeline.validate(
            USER, _candidate("update_contact", phone="555-0100"), _context(contact="contact_2")
        )
        assert result.accepted is True
        assert result.target_id == "contact_2"
        assert result.normalized_parameters["contact_id"] == "contact_2"

    def test_unresolvable_reference_asks_a_question(self):
        result = self.pipeline.validate(USER, _candidate("update_contact", phone="1"), _context())
        assert result.error_kind == ErrorKind.REFERENCE_ERROR
        assert result.violations[0].rule == "unresolved_reference"
        assert result.clarification == "Which contact do you mean?"

    def test_unique_name_resolves(self):
        result = self.pipeline.validate(
            USER, _candidate("update_contact", contact_name="Jane Roe", phone="1"), _context()
        )
        assert result.accepted is True
        assert result.target_id == "contact_2"
        assert "contact_name" not in result.normalized_parameters

    def test_ambiguous_name(self):
        result = self.pipeline.validate(
            USER, _candidate("update_contact", contact_name="Jane", phone="1"),
            _context(contact="contact_1"),
        )
        assert result.error_kind == ErrorKind.REFERENCE_ERROR
        assert result.violations[0].rule == "ambiguous"
        assert "Jane Doe (contact_1)" in result.clarification
        assert "Jane Roe (contact_2)" in result.clarification

    def test_unknown_name(self):
        result = self.pipeline.validate(
            USER, _candidate("update_contact", contact_name="Zed", phone="1"), _context()
        )
        assert result.violations[0].rule == "not_found"
        assert result.clarification is not None

    def test_deal_contact_from_context(self):
        result = self.pipeline.validate(
            USER, _candidate("create_deal", title="12 Oak St"), _context(contact="contact_1")
        )
        assert result.accepted is True
        assert result.normalized_parameters["contact_id"] == "contact_1"
        assert result.target_id is None

    def test_optional_deal_reference_not_taken_from_context(self):
        result = self.pipeline.validate(
            USER,
            _candidate("log_activity", contact_id="contact_1", activity_type="call"),
            _context(deal="deal_1"),
        )
        assert result.accepted is True
        assert "deal_id" not in result.normalized_parameters


class TestBusinessRules:
    def setup_method(self):
        self.store = EntityStore()
        self.store.put(_make_contact("contact_1", "Jane", properties={"phone": "555-0100"}))
        self.store.put(_make_contact("contact_2", "John"))
        self.store.put(_make_deal("deal_1", status="prospecting"))
        self.store.put(_make_deal("deal_closed", status="closed"))
        self.pipeline = ValidationPipeline(default_registry(), self.store)

    def _validate(self, candidate):
        return self.pipeline.validate(USER, candidate, _context())

    def test_empty_first_name(self):
        result = self._validate(_candidate("create_contact", first_name="   "))
        assert result.error_kind == ErrorKind.BUSINESS_RULE_VIOLATION
        assert result.violations[0].rule == "empty_name"

    def test_invalid_email(self):
        result = self._validate(_candidate("create_contact", first_name="Jane", email="jane"))
        assert result.violations[0].rule == "invalid_email"

    def test_negative_deal_value(self):
        result = self._validate(
            _candidate("create_deal", title="Lot 4", contact_id="contact_1", value=-5)
        )
        assert result.error_kind == ErrorKind.BUSINESS_RULE_VIOLATION
        assert result.violations[0].rule == "negative_value"

    def test_new_deal_cannot_start_terminal(self):
        result = self._validate(
            _candidate("create_deal", title="Lot 4", contact_id="contact_1", status="closed")
        )
        assert result.violations[0].rule == "terminal_initial_status"

    def test_update_without_changes(self):
        result = self._validate(
            _candidate("update_contact", contact_id="contact_1", phone="555-0100")
        )
        assert result.violations[0].rule == "no_changes"
        result = self._validate(_candidate("update_contact", contact_id="contact_1"))
        assert result.violations[0].rule == "no_changes"

    def test_legal_transition(self):
        result = self._validate(
            _candidate("update_deal_status", deal_id="deal_1", status="active")
        )
        assert result.accepted is True
        assert result.normalized_parameters["manual_override"] is False

    def test_skipping_stages_is_illegal(self):
        result = self._validate(
            _candidate("update_deal_status", deal_id="deal_1", status="closed")
        )
        assert result.error_kind == ErrorKind.BUSINESS_RULE_VIOLATION
        assert result.violations[0].rule == "illegal_transition"
        assert result.target_id == "deal_1"

    def test_same_status_refused(self):
        result = self._validate(
            _candidate("update_deal_status", deal_id="deal_1", status="Prospecting")
        )
        assert result.violations[0].rule == "status_unchanged"

    def test_terminal_status_is_final_even_with_override(self):
        result = self._validate(_candidate(
            "update_deal_status", origin=Origin.MANUAL,
            deal_id="deal_closed", status="active", manual_override=True,
        ))
        assert result.violations[0].rule == "terminal_status"

    def test_ai_cannot_override(self):
        result = self._validate(_candidate(
            "update_deal_status", deal_id="deal_1", status="closed", manual_override=True,
        ))
        assert result.violations[0].rule == "override_requires_manual_origin"

    def test_manual_override(self):
        result = self._validate(_candidate(
            "update_deal_status", origin=Origin.MANUAL,
            deal_id="deal_1", status="closed", manual_override="yes",
        ))
        assert result.accepted is True

    def test_ai_override_when_configured(self):
        pipeline = ValidationPipeline(default_registry(), self.store, allow_ai_override=True)
        result = pipeline.validate(USER, _candidate(
            "update_deal_status", deal_id="deal_1", status="closed", manual_override=True,
        ), _context())
        assert result.accepted is True

    def test_note_needs_text(self):
        result = self._validate(
            _candidate("log_activity", contact_id="contact_1", activity_type="note")
        )
        assert result.violations[0].rule == "empty_note"

    def test_activity_deal_must_belong_to_contact(self):
        result = self._validate(_candidate(
            "log_activity", contact_id="contact_2", activity_type="call", deal_id="deal_1",
        ))
        assert result.violations[0].rule == "deal_contact_mismatch"

    def test_import_kind_requires_import_origin(self):
        result = self._validate(_candidate("import_contact", first_name="Jane"))
        assert result.violations[0].rule == "import_requires_import_origin"
        result = self._validate(_candidate("import_contact", origin=Origin.IMPORT, first_name="Jane"))
        assert result.accepted is True
