"""
Business rules — domain invariants checked after schema and references.

Each action kind maps to the rule functions that apply to it. Every rule
returns the violations it found; an empty list means the rule passed.
"""

from typing import Any, Callable, Dict, List, Optional

from crm_kernel.entity_store.store import EntityStore
from crm_kernel.models.action import Origin, Violation
from crm_kernel.models.entity import Entity
from crm_kernel.models.schema import ParameterSchema
from crm_kernel.schema.registry import ENTITY_FIELDS

STAGE = "business_rule"

# Legal pipeline moves. Terminal statuses have no way out.
DEAL_STATUS_TRANSITIONS: Dict[str, tuple] = {
    "prospecting": ("active",),
    "active": ("under_contract",),
    "under_contract": ("closed", "dead"),
    "closed": (),
    "dead": (),
}
TERMINAL_STATUSES = frozenset(s for s, nxt in DEAL_STATUS_TRANSITIONS.items() if not nxt)


def _violation(field: Optional[str], rule: str, message: str) -> Violation:
    return Violation(stage=STAGE, field=field, rule=rule, message=message)


class RuleInput:
    """Everything a rule may look at. Read-only by convention."""

    def __init__(
        self,
        user_id: str,
        schema: ParameterSchema,
        params: Dict[str, Any],
        target: Optional[Entity],
        origin: Origin,
        entity_store: EntityStore,
        allow_ai_override: bool = False,
    ):
        self.user_id = user_id
        self.schema = schema
        self.params = params
        self.target = target
        self.origin = origin
        self.entity_store = entity_store
        self.allow_ai_override = allow_ai_override


Rule = Callable[[RuleInput], List[Violation]]


def _check_contact_name(rule_input: RuleInput) -> List[Violation]:
    """A contact always has a non-empty first name."""
    params = rule_input.params
    if rule_input.schema.creates_entity or "first_name" in params:
        if not (params.get("first_name") or "").strip():
            return [_violation(
                "first_name", "empty_name", "A contact needs a non-empty first name."
            )]
    return []


def _check_email(rule_input: RuleInput) -> List[Violation]:
    email = rule_input.params.get("email")
    if email and ("@" not in email or email.startswith("@") or email.endswith("@")):
        return [_violation("email", "invalid_email", f"'{email}' is not an email address.")]
    return []


def _check_deal_title(rule_input: RuleInput) -> List[Violation]:
    params = rule_input.params
    if rule_input.schema.creates_entity or "title" in params:
        if not (params.get("title") or "").strip():
            return [_violation("title", "empty_title", "A deal needs a non-empty title.")]
    return []


def _check_non_negative_value(rule_input: RuleInput) -> List[Violation]:
    value = rule_input.params.get("value")
    if value is not None and value < 0:
        return [_violation(
            "value", "negative_value", f"Deal value must not be negative (got {value})."
        )]
    return []


def _check_initial_status(rule_input: RuleInput) -> List[Violation]:
    status = rule_input.params.get("status")
    if status in TERMINAL_STATUSES:
        return [_violation(
            "status", "terminal_initial_status",
            f"A new deal cannot start out {status}.",
        )]
    return []


def _check_has_changes(rule_input: RuleInput) -> List[Violation]:
    """An update must change at least one field."""
    target = rule_input.target
    if target is None:
        return []
    fields = ENTITY_FIELDS[target.entity_type]
    changes = {
        k: v for k, v in rule_input.params.items()
        if k in fields and k != rule_input.schema.target
    }
    if not changes:
        return [_violation(None, "no_changes", "The update does not name any field to change.")]
    if all(target.properties.get(k) == v for k, v in changes.items()):
        return [_violation(None, "no_changes", "The update would not change anything.")]
    return []


def _check_status_transition(rule_input: RuleInput) -> List[Violation]:
    """
    Deals move prospecting -> active -> under_contract -> closed | dead.

    A manual override may skip stages, but only for manual-origin
    candidates (or AI candidates when the kernel is configured to allow
    it), and never out of a terminal status.
    """
    target = rule_input.target
    if target is None:
        return []
    current = target.properties.get("status")
    requested = rule_input.params["status"]
    override = rule_input.params.get("manual_override", False)

    if requested == current:
        return [_violation(
            "status", "status_unchanged", f"The deal is already {current}."
        )]
    if current in TERMINAL_STATUSES:
        return [_violation(
            "status", "terminal_status",
            f"The deal is {current}; a {current} deal cannot change status.",
        )]
    if requested in DEAL_STATUS_TRANSITIONS.get(current, ()):
        return []

    if override:
        if rule_input.origin == Origin.MANUAL or rule_input.allow_ai_override:
            return []
        return [_violation(
            "manual_override", "override_requires_manual_origin",
            "Only a person, not the assistant, can skip deal stages.",
        )]

    allowed = DEAL_STATUS_TRANSITIONS.get(current, ())
    return [_violation(
        "status", "illegal_transition",
        f"A deal cannot move from {current} to {requested}; "
        f"next allowed: {', '.join(allowed) or 'none'}.",
    )]


def _check_activity(rule_input: RuleInput) -> List[Violation]:
    params = rule_input.params
    violations = []
    if params.get("activity_type") == "note" and not (params.get("note") or "").strip():
        violations.append(_violation("note", "empty_note", "A note activity needs text."))

    deal_id = params.get("deal_id")
    if deal_id and rule_input.target is not None:
        deal = rule_input.entity_store.get_for_user(rule_input.user_id, deal_id)
        if deal is not None and deal.properties.get("contact_id") != rule_input.target.id:
            violations.append(_violation(
                "deal_id", "deal_contact_mismatch",
                f"Deal {deal_id} belongs to a different contact.",
            ))
    return violations


def _check_import_origin(rule_input: RuleInput) -> List[Violation]:
    if rule_input.origin != Origin.IMPORT:
        return [_violation(
            None, "import_requires_import_origin",
            "Contacts can only be imported by the import pipeline.",
        )]
    return []


# Rule registry — maps action kinds to their checks, evaluated in order
RULES: Dict[str, List[Rule]] = {
    "create_contact": [_check_contact_name, _check_email],
    "import_contact": [_check_import_origin, _check_contact_name, _check_email],
    "update_contact": [_check_contact_name, _check_email, _check_has_changes],
    "archive_contact": [],
    "log_activity": [_check_activity],
    "create_deal": [_check_deal_title, _check_non_negative_value, _check_initial_status],
    "update_deal": [_check_deal_title, _check_non_negative_value, _check_has_changes],
    "update_deal_status": [_check_status_transition],
    "archive_deal": [],
}


def check_business_rules(rule_input: RuleInput) -> List[Violation]:
    """Run every rule registered for the kind and collect the violations."""
    violations: List[Violation] = []
    for rule in RULES.get(rule_input.schema.kind, []):
        violations.extend(rule(rule_input))
    return violations
