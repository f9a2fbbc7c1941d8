"""
Schema Registry — the closed set of mutations the AI can trigger.

Behavioral Contract:
- describe(kind) returns the ParameterSchema for a registered kind, or None
- The registry is frozen once constructed; adding a kind means shipping a
  new registry, never mutating a live one
- Each kind declares its entity type, the event kind it produces, and the
  name, type, enum, required flag and default of every parameter
"""

from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from crm_kernel.models.schema import (
    EntityType,
    ParameterSchema,
    ParameterSpec,
    ParamType,
)

DEAL_STATUSES = ["prospecting", "active", "under_contract", "closed", "dead"]
ACTIVITY_TYPES = ["call", "email", "meeting", "note", "text"]

# Fields each entity type carries. Anything else in an event payload is
# audit metadata and is never folded into the projection.
ENTITY_FIELDS: Mapping[EntityType, tuple] = MappingProxyType({
    EntityType.CONTACT: ("first_name", "last_name", "email", "phone", "company"),
    EntityType.DEAL: ("title", "contact_id", "value", "status"),
})


class SchemaRegistry:
    """Immutable lookup of action kinds."""

    def __init__(self, schemas: Iterable[ParameterSchema]):
        by_kind: Dict[str, ParameterSchema] = {}
        for schema in schemas:
            if schema.kind in by_kind:
                raise ValueError(f"Duplicate action kind: {schema.kind}")
            by_kind[schema.kind] = schema
        self._schemas = MappingProxyType(by_kind)

    def describe(self, kind: str) -> Optional[ParameterSchema]:
        """Look up the schema for an action kind. None if the kind is unknown."""
        return self._schemas.get(kind)

    def kinds(self) -> List[str]:
        return sorted(self._schemas)

    def entity_types(self) -> List[str]:
        return sorted({s.entity_type.value for s in self._schemas.values()})

    def schemas(self) -> List[ParameterSchema]:
        return [self._schemas[k] for k in self.kinds()]

    def __contains__(self, kind: str) -> bool:
        return kind in self._schemas

    def __len__(self) -> int:
        return len(self._schemas)


def _string(name: str, required: bool = False, description: str = "") -> ParameterSpec:
    return ParameterSpec(
        name=name, type=ParamType.STRING, required=required, description=description
    )


def _ref(
    name: str,
    entity_type: EntityType,
    required: bool = True,
    from_context: bool = True,
) -> ParameterSpec:
    return ParameterSpec(
        name=name,
        type=ParamType.STRING,
        required=required,
        reference=entity_type,
        resolve_from_context=from_context,
        description=f"Identifier of an existing {entity_type.value}",
    )


_EXPECTED_VERSION = ParameterSpec(
    name="expected_version",
    type=ParamType.INTEGER,
    control=True,
    description="Version the caller last saw; a mismatch is a concurrent modification",
)

_CONTACT_NAME = ParameterSpec(
    name="contact_name",
    type=ParamType.STRING,
    control=True,
    description="Name used to look up the contact when no id is given",
)

_CONTACT_FIELDS = [
    _string("last_name"),
    _string("email"),
    _string("phone"),
    _string("company"),
]


def _crm_schemas() -> List[ParameterSchema]:
    return [
        ParameterSchema(
            kind="create_contact",
            entity_type=EntityType.CONTACT,
            event_kind="contact.created",
            description="Create a new contact",
            parameters=[_string("first_name", required=True)] + _CONTACT_FIELDS,
        ),
        ParameterSchema(
            kind="import_contact",
            entity_type=EntityType.CONTACT,
            event_kind="contact.imported",
            description="Ingest a contact from an external source",
            parameters=[_string("first_name", required=True)] + _CONTACT_FIELDS,
        ),
        ParameterSchema(
            kind="update_contact",
            entity_type=EntityType.CONTACT,
            event_kind="contact.updated",
            description="Change fields on an existing contact",
            target="contact_id",
            parameters=[
                _ref("contact_id", EntityType.CONTACT),
                _CONTACT_NAME,
                _EXPECTED_VERSION,
                _string("first_name"),
            ] + _CONTACT_FIELDS,
        ),
        ParameterSchema(
            kind="archive_contact",
            entity_type=EntityType.CONTACT,
            event_kind="contact.archived",
            description="Archive a contact",
            target="contact_id",
            parameters=[
                _ref("contact_id", EntityType.CONTACT),
                _CONTACT_NAME,
                _EXPECTED_VERSION,
            ],
        ),
        ParameterSchema(
            kind="log_activity",
            entity_type=EntityType.CONTACT,
            event_kind="contact.activity_logged",
            description="Record a call, email, meeting or note against a contact",
            target="contact_id",
            parameters=[
                _ref("contact_id", EntityType.CONTACT),
                _CONTACT_NAME,
                ParameterSpec(
                    name="activity_type",
                    type=ParamType.ENUM,
                    required=True,
                    enum_values=ACTIVITY_TYPES,
                ),
                _string("note"),
                _ref("deal_id", EntityType.DEAL, required=False, from_context=False),
            ],
        ),
        ParameterSchema(
            kind="create_deal",
            entity_type=EntityType.DEAL,
            event_kind="deal.created",
            description="Open a deal for a contact",
            parameters=[
                _string("title", required=True),
                _ref("contact_id", EntityType.CONTACT),
                _CONTACT_NAME,
                ParameterSpec(name="value", type=ParamType.NUMBER, default=0.0),
                ParameterSpec(
                    name="status",
                    type=ParamType.ENUM,
                    enum_values=DEAL_STATUSES,
                    default="prospecting",
                ),
            ],
        ),
        ParameterSchema(
            kind="update_deal",
            entity_type=EntityType.DEAL,
            event_kind="deal.updated",
            description="Change the title or value of a deal",
            target="deal_id",
            parameters=[
                _ref("deal_id", EntityType.DEAL),
                _EXPECTED_VERSION,
                _string("title"),
                ParameterSpec(name="value", type=ParamType.NUMBER),
            ],
        ),
        ParameterSchema(
            kind="update_deal_status",
            entity_type=EntityType.DEAL,
            event_kind="deal.status_changed",
            description="Move a deal to another pipeline status",
            target="deal_id",
            parameters=[
                _ref("deal_id", EntityType.DEAL),
                _EXPECTED_VERSION,
                ParameterSpec(
                    name="status",
                    type=ParamType.ENUM,
                    required=True,
                    enum_values=DEAL_STATUSES,
                ),
                ParameterSpec(
                    name="manual_override",
                    type=ParamType.BOOLEAN,
                    default=False,
                    description="Skip the normal stage sequence (manual origin only)",
                ),
            ],
        ),
        ParameterSchema(
            kind="archive_deal",
            entity_type=EntityType.DEAL,
            event_kind="deal.archived",
            description="Archive a deal",
            target="deal_id",
            parameters=[
                _ref("deal_id", EntityType.DEAL),
                _EXPECTED_VERSION,
            ],
        ),
    ]


def default_registry() -> SchemaRegistry:
    """The CRM action set shipped with the kernel."""
    return SchemaRegistry(_crm_schemas())
