"""
Action Executor — the single point of mutation.

Receives validated actions, appends the resulting event, and updates the
Entity Store projection. Also records rejections, so every submission
leaves exactly one event behind.

Behavioral Contract:
- Exactly-once per (user, conversation, turn, action kind): a retried turn
  gets the originally recorded result back, never a second event
- Append and projection update form one unit: the projection is computed
  inside the append transaction and stored only after the commit
- Writes to one entity are serialized; a writer holding a stale version is
  re-validated against fresh state, and refused with ConcurrentModification
  if it no longer holds up (or if its expected_version is stale)
- Only StorageUnavailable escapes; every other outcome is recorded
"""

import json
import logging
import math
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from crm_kernel.audit.reducers import apply_event, fold
from crm_kernel.entity_store.store import EntityStore
from crm_kernel.errors import ConcurrentModification, ErrorKind
from crm_kernel.event_log.store import EventLog
from crm_kernel.execution.locks import KeyedLocks
from crm_kernel.models.action import (
    CandidateAction,
    Origin,
    ValidatedAction,
    ValidationResult,
    Violation,
)
from crm_kernel.models.entity import Entity
from crm_kernel.models.event import Event
from crm_kernel.models.execution import ExecutionResult, ExecutionStatus
from crm_kernel.schema.registry import SchemaRegistry
from crm_kernel.validation.pipeline import ValidationPipeline

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Builds (event kind, payload) for a compensating event from the current entity
Compensation = Callable[[Entity], Tuple[str, Dict[str, Any]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Widest integer the event log reads back as a number
_MAX_STORED_INT = 2 ** 63 - 1


def _json_safe(value: Any) -> Any:
    """Reduce a payload to values the event log reads back identically."""
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, int):
        return value if abs(value) <= _MAX_STORED_INT else str(value)
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    return json.loads(json.dumps(value, default=str))


class ActionExecutor:
    """Applies validated actions and records every outcome as an event."""

    def __init__(
        self,
        event_log: EventLog,
        entity_store: EntityStore,
        pipeline: ValidationPipeline,
        registry: SchemaRegistry,
        clock: Optional[Clock] = None,
    ):
        self.event_log = event_log
        self.entity_store = entity_store
        self.pipeline = pipeline
        self.registry = registry
        self.clock = clock or _utcnow
        self._turn_locks = KeyedLocks()
        self._entity_locks = KeyedLocks()

    # --- Idempotency ---

    @contextmanager
    def turn_guard(self, user_id: str, candidate: CandidateAction):
        """Serialize submissions of the same conversation turn and kind."""
        key = (user_id, candidate.conversation_id, candidate.turn_id, candidate.kind)
        with self._turn_locks.hold(key):
            yield

    def prior_result(
        self, user_id: str, candidate: CandidateAction
    ) -> Optional[ExecutionResult]:
        """The result already recorded for this turn, if the turn is a retry."""
        event = self.event_log.find_by_causality(
            user_id, candidate.conversation_id, candidate.turn_id, candidate.kind
        )
        if event is None:
            return None
        logger.info(
            "Returning recorded outcome for retried turn",
            extra={
                "user_id": user_id,
                "causality_id": candidate.causality_id,
                "event_id": event.id,
            },
        )
        return self.result_for_event(event)

    def result_for_event(self, event: Event) -> ExecutionResult:
        """Rebuild the ExecutionResult a recorded event stands for."""
        if event.is_rejection:
            return ExecutionResult(
                status=ExecutionStatus.REJECTED,
                event=event,
                violations=[Violation(**v) for v in event.payload.get("violations", [])],
                error_kind=ErrorKind(event.payload["error_kind"]),
                clarification=event.payload.get("clarification"),
            )
        snapshot = fold(
            self.event_log.read_for_entity(event.entity_id, until_event_id=event.id)
        )
        return ExecutionResult(
            status=ExecutionStatus.ACCEPTED,
            event=event,
            entity_snapshot=snapshot,
        )

    # --- Accepted path ---

    def execute(self, action: ValidatedAction) -> ExecutionResult:
        """Apply a validated action. Returns an accepted or concurrency-rejected result."""
        candidate = action.candidate
        entity_id = action.target_id or f"{action.entity_type}_{uuid4().hex[:12]}"

        with self._entity_locks.hold(entity_id):
            current = self.entity_store.get(entity_id) if action.target_id else None
            try:
                action = self._check_version(action, current)
            except ConcurrentModification as e:
                logger.warning(
                    "Concurrent modification of %s", entity_id,
                    extra={
                        "user_id": action.user_id,
                        "entity_id": entity_id,
                        "causality_id": candidate.causality_id,
                        "error": str(e),
                    },
                )
                violations = e.violations or [Violation(
                    stage="concurrency",
                    field="expected_version",
                    rule="stale_version",
                    message=str(e),
                )]
                return self._record_rejection(
                    action.user_id,
                    candidate,
                    action.entity_type,
                    entity_id,
                    ErrorKind.CONCURRENT_MODIFICATION,
                    violations,
                )

            event = Event(
                user_id=action.user_id,
                entity_type=action.entity_type,
                entity_id=entity_id,
                kind=action.event_kind,
                payload=_json_safe(self._event_payload(action, current)),
                origin=candidate.origin,
                causality_id=candidate.causality_id,
                conversation_id=candidate.conversation_id,
                turn_id=candidate.turn_id,
                action_kind=candidate.kind,
                created_at=self.clock(),
            )
            event, entity = self.event_log.append_with(
                event, apply=lambda e: apply_event(current, e)
            )
            self.entity_store.put(entity)

        logger.info(
            "Accepted %s", event.kind,
            extra={
                "user_id": event.user_id,
                "event_id": event.id,
                "entity_id": entity_id,
                "kind": event.kind,
                "causality_id": event.causality_id,
                "status": ExecutionStatus.ACCEPTED.value,
            },
        )
        return ExecutionResult(
            status=ExecutionStatus.ACCEPTED,
            event=event,
            entity_snapshot=entity,
        )

    def _check_version(
        self, action: ValidatedAction, current: Optional[Entity]
    ) -> ValidatedAction:
        if action.target_id is None:
            return action
        if current is None:
            raise ConcurrentModification(action.target_id, action.base_version, 0)

        expected = action.expected_version
        if expected is not None and current.version != expected:
            raise ConcurrentModification(current.id, expected, current.version)

        if action.base_version is not None and current.version != action.base_version:
            # Someone wrote since validation: does the action still hold?
            revalidated = self.pipeline.validate(
                action.user_id, action.candidate, action.context
            )
            if not revalidated.accepted or revalidated.target_id != action.target_id:
                raise ConcurrentModification(
                    current.id,
                    action.base_version,
                    current.version,
                    violations=[
                        v.model_copy(update={"stage": "concurrency"})
                        for v in revalidated.violations
                    ],
                )
            logger.info(
                "Re-validated against version %s", current.version,
                extra={"entity_id": current.id, "user_id": action.user_id},
            )
            return action.model_copy(update={
                "normalized_parameters": revalidated.normalized_parameters,
                "base_version": revalidated.base_version,
            })
        return action

    def _event_payload(
        self, action: ValidatedAction, current: Optional[Entity]
    ) -> Dict[str, Any]:
        schema = self.registry.describe(action.candidate.kind)
        control = {p.name for p in schema.parameters if p.control}
        payload = {
            k: v for k, v in action.normalized_parameters.items() if k not in control
        }
        if action.event_kind == "deal.status_changed" and current is not None:
            payload["from_status"] = current.properties.get("status")
        return payload

    # --- Rejected path ---

    def record_rejection(
        self,
        user_id: str,
        candidate: CandidateAction,
        validation: ValidationResult,
    ) -> ExecutionResult:
        """Record a validation failure as a first-class rejection event."""
        return self._record_rejection(
            user_id,
            candidate,
            validation.entity_type or "action",
            validation.target_id,
            validation.error_kind or ErrorKind.SCHEMA_VIOLATION,
            validation.violations,
            validation.clarification,
        )

    def _record_rejection(
        self,
        user_id: str,
        candidate: CandidateAction,
        entity_type: str,
        entity_id: Optional[str],
        error_kind: ErrorKind,
        violations: List[Violation],
        clarification: Optional[str] = None,
    ) -> ExecutionResult:
        payload = _json_safe({
            "action_kind": candidate.kind,
            "parameters": candidate.parameters,
            "violations": [v.model_dump() for v in violations],
            "error_kind": error_kind.value,
            "clarification": clarification,
        })
        event = self.event_log.append(Event(
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            kind=f"{entity_type}.rejected",
            payload=payload,
            origin=candidate.origin,
            causality_id=candidate.causality_id,
            conversation_id=candidate.conversation_id,
            turn_id=candidate.turn_id,
            action_kind=candidate.kind,
            created_at=self.clock(),
        ))
        logger.info(
            "Rejected %s: %s", candidate.kind, [v.rule for v in violations],
            extra={
                "user_id": user_id,
                "event_id": event.id,
                "entity_id": entity_id,
                "kind": event.kind,
                "causality_id": event.causality_id,
                "status": error_kind.value,
            },
        )
        return self.result_for_event(event)

    # --- Compensation ---

    def apply_compensation(
        self,
        original: Event,
        compensation: Compensation,
        origin: Origin = Origin.MANUAL,
        conversation_id: Optional[str] = None,
    ) -> Event:
        """
        Append a compensating event for `original` and update the projection.

        `compensation` is called with the entity's current state while its
        lock is held, and returns the event kind and payload to append.
        """
        entity_id = original.entity_id
        with self._entity_locks.hold(entity_id):
            current = self.entity_store.get(entity_id)
            kind, payload = compensation(current)
            payload = _json_safe({**payload, "compensates": original.id})
            event = Event(
                user_id=original.user_id,
                entity_type=original.entity_type,
                entity_id=entity_id,
                kind=kind,
                payload=payload,
                origin=origin,
                causality_id=f"rollback:{original.id}",
                conversation_id=conversation_id,
                action_kind="rollback",
                created_at=self.clock(),
            )
            event, entity = self.event_log.append_with(
                event, apply=lambda e: apply_event(current, e)
            )
            self.entity_store.put(entity)

        logger.info(
            "Compensated event %s with %s", original.id, kind,
            extra={
                "user_id": original.user_id,
                "event_id": event.id,
                "entity_id": entity_id,
                "kind": kind,
                "causality_id": event.causality_id,
            },
        )
        return event
