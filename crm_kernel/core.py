"""
Mutation Core — the library boundary the chat layer talks to.

    submit(user_id, candidate)        -> ExecutionResult
    get_audit_trail(user_id, entity)  -> [Event]
    request_rollback(user_id, event)  -> Event | raises NotReversible

Control flow for a submission:
  retry check -> context -> validation -> (record rejection | execute)

Every call takes the user id explicitly; the core keeps no ambient
"current user".
"""

from typing import Any, Callable, Dict, List, Optional

from crm_kernel.audit.manager import AuditManager
from crm_kernel.context.manager import ContextManager
from crm_kernel.entity_store.store import EntityStore
from crm_kernel.event_log.store import EventLog
from crm_kernel.execution.executor import ActionExecutor, Clock
from crm_kernel.models.action import CandidateAction, Origin, ValidatedAction
from crm_kernel.models.config import KernelConfig
from crm_kernel.models.context import ConversationContext
from crm_kernel.models.entity import Entity
from crm_kernel.models.event import Event
from crm_kernel.models.execution import ExecutionResult
from crm_kernel.models.schema import EntityType
from crm_kernel.schema.registry import SchemaRegistry, default_registry
from crm_kernel.validation.pipeline import ValidationPipeline


class MutationCore:
    """Wires the kernel components together and exposes the external interface."""

    def __init__(
        self,
        config: Optional[KernelConfig] = None,
        registry: Optional[SchemaRegistry] = None,
        event_log: Optional[EventLog] = None,
        entity_store: Optional[EntityStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or KernelConfig()
        self.registry = registry or default_registry()
        self.event_log = event_log or EventLog(
            db_path=self.config.db_path,
            read_batch_size=self.config.read_batch_size,
        )
        self.entity_store = entity_store or EntityStore()
        self.pipeline = ValidationPipeline(
            self.registry,
            self.entity_store,
            allow_ai_override=self.config.allow_ai_override,
        )
        self.context_manager = ContextManager(
            self.event_log, window=self.config.context_window
        )
        self.executor = ActionExecutor(
            self.event_log,
            self.entity_store,
            self.pipeline,
            self.registry,
            clock=clock,
        )
        self.audit = AuditManager(self.event_log, self.entity_store, self.executor)

        # A persistent log outlives the process; projections do not
        if self.event_log.count() and not self.entity_store.count():
            self.audit.rebuild_projections()

    def submit(self, user_id: str, candidate: CandidateAction) -> ExecutionResult:
        """
        Validate and apply a candidate action.

        Always returns a result backed by exactly one recorded event, or
        raises StorageUnavailable. A retried turn returns the original result.
        """
        with self.executor.turn_guard(user_id, candidate):
            prior = self.executor.prior_result(user_id, candidate)
            if prior is not None:
                return prior

            context = self.context_manager.resolve(user_id, candidate.conversation_id)
            validation = self.pipeline.validate(user_id, candidate, context)
            if not validation.accepted:
                return self.executor.record_rejection(user_id, candidate, validation)

            action = ValidatedAction.from_validation(
                user_id, candidate, validation, context
            )
            return self.executor.execute(action)

    def get_audit_trail(self, user_id: str, entity_id: str) -> List[Event]:
        """Ordered events for one entity, for timeline rendering."""
        return self.audit.trail(user_id, entity_id)

    def request_rollback(
        self,
        user_id: str,
        event_id: int,
        origin: Origin = Origin.MANUAL,
        conversation_id: Optional[str] = None,
    ) -> Event:
        """Append the compensating event for an accepted event."""
        return self.audit.rollback(
            user_id, event_id, origin=origin, conversation_id=conversation_id
        )

    def ingest_import(
        self,
        user_id: str,
        source: str,
        record_id: str,
        fields: Dict[str, Any],
    ) -> ExecutionResult:
        """
        Ingest a contact from an external system. Re-ingesting the same
        source record returns the original outcome.
        """
        candidate = CandidateAction(
            kind="import_contact",
            parameters=fields,
            conversation_id=f"import:{source}",
            turn_id=record_id,
            origin=Origin.IMPORT,
        )
        return self.submit(user_id, candidate)

    # --- Read surface ---

    def get_entity(self, user_id: str, entity_id: str) -> Optional[Entity]:
        return self.entity_store.get_for_user(user_id, entity_id)

    def list_entities(
        self,
        user_id: str,
        entity_type: Optional[EntityType] = None,
        include_archived: bool = False,
    ) -> List[Entity]:
        return self.entity_store.list(user_id, entity_type, include_archived)

    def resolve_context(self, user_id: str, conversation_id: str) -> ConversationContext:
        return self.context_manager.resolve(user_id, conversation_id)

    def read_events(
        self, user_id: str, since: int = 0, limit: Optional[int] = None
    ) -> List[Event]:
        return list(self.event_log.read_since(since, user_id=user_id, limit=limit))

    def subscribe(
        self, user_id: str, callback: Callable[[Event], None]
    ) -> Callable[[], None]:
        """Observe a user's events as they are committed. Returns an unsubscribe callable."""
        return self.event_log.subscribe(user_id, callback)

    def close(self) -> None:
        self.event_log.close()
