"""
Validation Pipeline — turns an untrusted candidate into a normalized action or
an ordered list of reasons it was refused.

Behavioral Contract:
- Three stages, cheapest first, stopping at the first stage that fails:
    1. schema     — kind is registered, parameters decode to declared types
    2. reference  — foreign ids resolve to live entities owned by the user,
                    falling back to conversation context when an id is absent
    3. business   — domain invariants (deal transitions, non-negative values,
                    non-empty names)
- Never mutates state. Reads the Entity Store only.
- A refused candidate carries the ErrorKind of the stage that refused it.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from crm_kernel.entity_store.store import EntityStore
from crm_kernel.errors import ErrorKind
from crm_kernel.models.action import CandidateAction, ValidationResult, Violation
from crm_kernel.models.context import ConversationContext
from crm_kernel.models.entity import Entity
from crm_kernel.models.schema import EntityType, ParameterSchema
from crm_kernel.schema.registry import SchemaRegistry
from crm_kernel.validation.coercion import decode_parameters
from crm_kernel.validation.rules import RuleInput, check_business_rules

logger = logging.getLogger(__name__)

REFERENCE_STAGE = "reference"


def infer_entity_type(kind: str, registry: SchemaRegistry) -> str:
    """Best guess at the entity an unknown kind was aimed at ("delete_contact" -> "contact")."""
    for entity_type in registry.entity_types():
        if kind.endswith(f"_{entity_type}") or kind.startswith(f"{entity_type}_"):
            return entity_type
    return "action"


class _Resolution:
    """Output of the reference stage."""

    def __init__(self):
        self.target: Optional[Entity] = None
        self.violations: List[Violation] = []
        self.clarification: Optional[str] = None


class ValidationPipeline:
    """
    Pure validator over a candidate, its conversation context, and a
    read-only view of the Entity Store.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        entity_store: EntityStore,
        allow_ai_override: bool = False,
    ):
        self.registry = registry
        self.entity_store = entity_store
        self.allow_ai_override = allow_ai_override

    def validate(
        self,
        user_id: str,
        candidate: CandidateAction,
        context: ConversationContext,
    ) -> ValidationResult:
        """Run the candidate through schema, reference and business-rule stages."""
        schema = self.registry.describe(candidate.kind)
        if schema is None:
            return self._refuse(
                candidate.kind,
                infer_entity_type(candidate.kind, self.registry),
                ErrorKind.SCHEMA_VIOLATION,
                [Violation(
                    stage="schema",
                    field="kind",
                    rule="unknown_kind",
                    message=(
                        f"'{candidate.kind}' is not a supported action. "
                        f"Supported: {', '.join(self.registry.kinds())}."
                    ),
                )],
            )

        # 1. Schema
        params, violations = decode_parameters(schema, candidate.parameters)
        if violations:
            return self._refuse(
                schema.kind, schema.entity_type.value,
                ErrorKind.SCHEMA_VIOLATION, violations, event_kind=schema.event_kind,
            )

        # 2. References
        resolution = self._resolve_references(user_id, schema, params, context)
        if resolution.violations:
            return self._refuse(
                schema.kind, schema.entity_type.value,
                ErrorKind.REFERENCE_ERROR, resolution.violations,
                event_kind=schema.event_kind,
                clarification=resolution.clarification,
            )

        # 3. Business rules
        violations = check_business_rules(RuleInput(
            user_id=user_id,
            schema=schema,
            params=params,
            target=resolution.target,
            origin=candidate.origin,
            entity_store=self.entity_store,
            allow_ai_override=self.allow_ai_override,
        ))
        if violations:
            return self._refuse(
                schema.kind, schema.entity_type.value,
                ErrorKind.BUSINESS_RULE_VIOLATION, violations,
                event_kind=schema.event_kind,
                target_id=resolution.target.id if resolution.target else None,
            )

        target = resolution.target
        return ValidationResult(
            accepted=True,
            kind=schema.kind,
            entity_type=schema.entity_type.value,
            event_kind=schema.event_kind,
            normalized_parameters=params,
            target_id=target.id if target else None,
            base_version=target.version if target else None,
        )

    def _refuse(
        self,
        kind: str,
        entity_type: str,
        error_kind: ErrorKind,
        violations: List[Violation],
        event_kind: Optional[str] = None,
        target_id: Optional[str] = None,
        clarification: Optional[str] = None,
    ) -> ValidationResult:
        logger.debug(
            "Candidate %s refused: %s", kind, [v.rule for v in violations],
            extra={"kind": kind, "status": error_kind.value},
        )
        return ValidationResult(
            accepted=False,
            kind=kind,
            entity_type=entity_type,
            event_kind=event_kind,
            violations=violations,
            error_kind=error_kind,
            target_id=target_id,
            clarification=clarification,
        )

    # --- Reference stage ---

    def _resolve_references(
        self,
        user_id: str,
        schema: ParameterSchema,
        params: Dict[str, Any],
        context: ConversationContext,
    ) -> _Resolution:
        resolution = _Resolution()

        for spec in schema.parameters:
            if spec.reference is None:
                continue

            if params.get(spec.name):
                entity, violation = self._lookup(user_id, spec.name, spec.reference, params[spec.name])
            else:
                entity, violation, question = self._resolve_missing(
                    user_id, spec.name, spec.reference, spec.resolve_from_context,
                    params, context,
                )
                if entity is None and violation is None:
                    if not spec.required:
                        continue
                    violation = Violation(
                        stage=REFERENCE_STAGE,
                        field=spec.name,
                        rule="missing_reference",
                        message=f"'{spec.name}' is required for {schema.kind}.",
                    )
                if question and resolution.clarification is None:
                    resolution.clarification = question

            if violation is not None:
                resolution.violations.append(violation)
                continue

            params[spec.name] = entity.id
            if spec.name == schema.target:
                resolution.target = entity

        # The contact_name hint has done its job once an id is known
        params.pop("contact_name", None)
        return resolution

    def _lookup(
        self,
        user_id: str,
        field: str,
        entity_type: EntityType,
        entity_id: str,
    ) -> Tuple[Optional[Entity], Optional[Violation]]:
        entity = self.entity_store.get_for_user(user_id, entity_id)
        # Another user's entity is indistinguishable from a missing one
        if entity is None or entity.entity_type != entity_type:
            return None, Violation(
                stage=REFERENCE_STAGE,
                field=field,
                rule="not_found",
                message=f"No {entity_type.value} with id {entity_id}.",
            )
        if entity.archived:
            return None, Violation(
                stage=REFERENCE_STAGE,
                field=field,
                rule="archived",
                message=f"{entity_type.value.capitalize()} {entity.display_name} is archived.",
            )
        return entity, None

    def _resolve_missing(
        self,
        user_id: str,
        field: str,
        entity_type: EntityType,
        from_context: bool,
        params: Dict[str, Any],
        context: ConversationContext,
    ) -> Tuple[Optional[Entity], Optional[Violation], Optional[str]]:
        """
        Fill an absent reference: by contact name first, then from the
        conversation's most recently touched entity of that type.
        """
        name = params.get("contact_name")
        if entity_type == EntityType.CONTACT and name:
            matches = self.entity_store.find_contacts_by_name(user_id, name)
            if len(matches) == 1:
                return matches[0], None, None
            if len(matches) > 1:
                options = ", ".join(f"{m.display_name} ({m.id})" for m in matches)
                question = f"Which {name} do you mean: {options}?"
                return None, Violation(
                    stage=REFERENCE_STAGE,
                    field=field,
                    rule="ambiguous",
                    message=f"{len(matches)} contacts are named {name}.",
                ), question
            question = f"I couldn't find a contact named {name}. Which contact do you mean?"
            return None, Violation(
                stage=REFERENCE_STAGE,
                field=field,
                rule="not_found",
                message=f"No contact named {name}.",
            ), question

        if from_context:
            recent_id = context.most_recent(entity_type.value)
            if recent_id:
                entity, violation = self._lookup(user_id, field, entity_type, recent_id)
                if entity is not None:
                    logger.debug(
                        "Resolved %s from conversation context", field,
                        extra={"entity_id": entity.id, "user_id": user_id},
                    )
                    return entity, None, None

        if not from_context:
            return None, None, None

        question = f"Which {entity_type.value} do you mean?"
        return None, Violation(
            stage=REFERENCE_STAGE,
            field=field,
            rule="unresolved_reference",
            message=f"No {entity_type.value} was given and none is in context.",
        ), question
