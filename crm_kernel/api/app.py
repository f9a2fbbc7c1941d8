"""
CRM Kernel API — FastAPI endpoints over the mutation core.

Exposes the library boundary to the chat layer:
- Action submission
- Entity and audit-trail reads
- Rollback
- Event log windows and chain verification
- Conversation context
- The action schema registry
"""

from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from crm_kernel.core import MutationCore
from crm_kernel.errors import EventNotFound, NotReversible, StorageUnavailable
from crm_kernel.models.action import CandidateAction, Origin
from crm_kernel.models.config import KernelConfig
from crm_kernel.models.schema import EntityType
from crm_kernel.observability import configure_logging


# --- Request Models ---

class SubmitRequest(BaseModel):
    user_id: str
    kind: str
    parameters: Any = {}
    conversation_id: str
    turn_id: str
    origin: Origin = Origin.AI


class RollbackRequest(BaseModel):
    user_id: str
    origin: Origin = Origin.MANUAL
    conversation_id: Optional[str] = None


class ImportRequest(BaseModel):
    user_id: str
    source: str
    record_id: str
    fields: dict


# --- Application Factory ---

def create_app(
    core: Optional[MutationCore] = None,
    config: Optional[KernelConfig] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    config = config or (core.config if core else KernelConfig())
    configure_logging(config.log_level, json_logs=config.json_logs)

    app = FastAPI(
        title="CRM Kernel API",
        description="Validated, auditable, reversible CRM mutations",
        version="0.1.0-alpha",
    )

    kernel = core or MutationCore(config=config)
    app.state.core = kernel

    # === ACTIONS ===

    @app.post("/actions")
    def submit_action(req: SubmitRequest):
        """Submit a candidate action proposed by the model."""
        candidate = CandidateAction(
            kind=req.kind,
            parameters=req.parameters,
            conversation_id=req.conversation_id,
            turn_id=req.turn_id,
            origin=req.origin,
        )
        try:
            result = kernel.submit(req.user_id, candidate)
        except StorageUnavailable as e:
            raise HTTPException(503, str(e))
        return result.model_dump(mode="json")

    @app.post("/imports")
    def import_contact(req: ImportRequest):
        """Ingest a contact from an external source."""
        try:
            result = kernel.ingest_import(req.user_id, req.source, req.record_id, req.fields)
        except StorageUnavailable as e:
            raise HTTPException(503, str(e))
        return result.model_dump(mode="json")

    # === ENTITIES ===

    @app.get("/entities")
    def list_entities(
        user_id: str,
        entity_type: Optional[EntityType] = None,
        include_archived: bool = False,
    ):
        """A user's current projections."""
        entities = kernel.list_entities(user_id, entity_type, include_archived)
        return [e.model_dump(mode="json") for e in entities]

    @app.get("/entities/{entity_id}")
    def get_entity(entity_id: str, user_id: str):
        """Current state of one entity."""
        entity = kernel.get_entity(user_id, entity_id)
        if not entity:
            raise HTTPException(404, "Entity not found")
        return entity.model_dump(mode="json")

    @app.get("/entities/{entity_id}/audit")
    def get_audit_trail(entity_id: str, user_id: str):
        """Every event recorded against an entity, oldest first."""
        events = kernel.get_audit_trail(user_id, entity_id)
        if not events:
            raise HTTPException(404, "Entity not found")
        return [e.model_dump(mode="json") for e in events]

    # === EVENTS ===

    @app.get("/events")
    def read_events(user_id: str, since: int = 0, limit: int = 100):
        """A window of a user's events after a cursor."""
        events = kernel.read_events(user_id, since=since, limit=limit)
        return {
            "events": [e.model_dump(mode="json") for e in events],
            "next_cursor": events[-1].id if events else since,
        }

    @app.get("/events/verify")
    def verify_events():
        """Verify chain integrity."""
        return {
            "integrity_valid": kernel.event_log.verify_chain_integrity(),
            "total_events": kernel.event_log.count(),
        }

    @app.post("/events/{event_id}/rollback")
    def rollback_event(event_id: int, req: RollbackRequest):
        """Append the compensating event for an accepted event."""
        try:
            event = kernel.request_rollback(
                req.user_id, event_id,
                origin=req.origin, conversation_id=req.conversation_id,
            )
        except EventNotFound:
            raise HTTPException(404, "Event not found")
        except NotReversible as e:
            raise HTTPException(409, e.reason)
        except StorageUnavailable as e:
            raise HTTPException(503, str(e))
        return event.model_dump(mode="json")

    # === CONTEXT ===

    @app.get("/conversations/{conversation_id}/context")
    def get_context(conversation_id: str, user_id: str):
        """What the kernel currently infers from this conversation."""
        return kernel.resolve_context(user_id, conversation_id).model_dump(mode="json")

    # === SCHEMA ===

    @app.get("/schema/actions")
    def list_action_schemas():
        """Every action kind the assistant may propose."""
        return [s.model_dump(mode="json") for s in kernel.registry.schemas()]

    return app


# Default application instance
app = create_app()
