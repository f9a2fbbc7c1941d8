"""Candidate actions and their validation outcome."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from crm_kernel.errors import ErrorKind
from crm_kernel.models.context import ConversationContext


class Origin(str, Enum):
    AI = "ai"
    MANUAL = "manual"
    IMPORT = "import"


class CandidateAction(BaseModel):
    """
    Untrusted mutation request produced by the model-calling layer.

    `parameters` is whatever the model emitted. Only the validation
    pipeline decodes it.
    """

    kind: str
    parameters: Any = Field(default_factory=dict)
    conversation_id: str
    turn_id: str
    origin: Origin = Origin.AI

    @property
    def causality_id(self) -> str:
        return f"{self.conversation_id}:{self.turn_id}"


class Violation(BaseModel):
    """One reason a candidate was refused."""

    stage: str                      # "schema" | "reference" | "business_rule" | "concurrency"
    field: Optional[str] = None
    rule: str                       # Machine-readable
    message: str                    # Human-readable


class ValidationResult(BaseModel):
    """Outcome of the validation pipeline. Never persisted on its own."""

    accepted: bool
    kind: str
    entity_type: Optional[str] = None
    event_kind: Optional[str] = None
    normalized_parameters: Dict[str, Any] = {}
    violations: List[Violation] = []
    error_kind: Optional[ErrorKind] = None
    target_id: Optional[str] = None
    base_version: Optional[int] = None
    clarification: Optional[str] = None


class ValidatedAction(BaseModel):
    """An accepted candidate, ready for the executor."""

    user_id: str
    candidate: CandidateAction
    context: ConversationContext
    entity_type: str
    event_kind: str
    normalized_parameters: Dict[str, Any]
    target_id: Optional[str] = None
    base_version: Optional[int] = None

    @property
    def expected_version(self) -> Optional[int]:
        return self.normalized_parameters.get("expected_version")

    @classmethod
    def from_validation(
        cls,
        user_id: str,
        candidate: CandidateAction,
        validation: ValidationResult,
        context: ConversationContext,
    ) -> "ValidatedAction":
        if not validation.accepted:
            raise ValueError(f"Candidate {candidate.kind} was not accepted")
        return cls(
            user_id=user_id,
            candidate=candidate,
            context=context,
            entity_type=validation.entity_type,
            event_kind=validation.event_kind,
            normalized_parameters=validation.normalized_parameters,
            target_id=validation.target_id,
            base_version=validation.base_version,
        )
