"""
Event Log — append-only, hash-chained record of every mutation and rejection.

Behavioral Contract:
- Append-only. No event is ever modified or deleted.
- Ids are assigned on append and strictly increase.
- Each event is hashed and chained to the previous one (tamper-evident).
- Once append returns, the event is visible to every subsequent reader.
- Observers are notified after commit; a failing observer never fails
  the append.
- Any sqlite failure surfaces as StorageUnavailable.
"""

import hashlib
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from crm_kernel.errors import CrmKernelError, StorageUnavailable
from crm_kernel.models.event import Event

logger = logging.getLogger(__name__)

Subscriber = Callable[[Event], None]


def _compute_signature(event: Event) -> str:
    event_dict = event.model_dump(mode="json")
    event_dict["signature"] = ""
    event_bytes = json.dumps(event_dict, sort_keys=True, default=str).encode()
    return hashlib.sha256(event_bytes).hexdigest()


class DuplicateCausality(CrmKernelError):
    """
    A second outcome was appended for the same conversation turn, or a
    second compensation for the same event.
    """


# Columns whose unique indexes guard turn outcomes and compensations
_CAUSALITY_COLUMNS = ("events.turn_id", "events.compensates")


def _is_duplicate_causality(error: sqlite3.IntegrityError) -> bool:
    message = str(error)
    return "UNIQUE" in message and any(c in message for c in _CAUSALITY_COLUMNS)


class EventLog:
    """
    Append-only event log.
    SQLite-backed; the connection is shared across threads behind a lock.
    """

    def __init__(self, db_path: str = ":memory:", read_batch_size: int = 100):
        self.db_path = db_path
        self.read_batch_size = read_batch_size
        self._lock = threading.RLock()
        self._subscribers: Dict[str, List[Subscriber]] = {}
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._init_schema()
        except sqlite3.Error as e:
            raise StorageUnavailable("open", e) from e

    def _init_schema(self) -> None:
        """Create the events table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY,
                user_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT,
                kind TEXT NOT NULL,
                origin TEXT NOT NULL,
                causality_id TEXT,
                conversation_id TEXT,
                turn_id TEXT,
                action_kind TEXT,
                compensates INTEGER,
                signature TEXT NOT NULL,
                prior_hash TEXT,
                event_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_events_entity ON events(entity_id, id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_events_conversation
            ON events(user_id, conversation_id, id)
        """)
        # One recorded outcome per (user, conversation turn, action kind)
        self._conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_events_causality
            ON events(user_id, conversation_id, turn_id, action_kind)
            WHERE conversation_id IS NOT NULL AND turn_id IS NOT NULL
        """)
        # An event can be compensated at most once
        self._conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_events_compensates
            ON events(compensates) WHERE compensates IS NOT NULL
        """)
        self._conn.commit()

    @contextmanager
    def _storage(self, operation: str):
        """Translate sqlite failures into StorageUnavailable."""
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as e:
                if isinstance(e, sqlite3.IntegrityError) and _is_duplicate_causality(e):
                    raise DuplicateCausality(f"{operation} rejected by storage: {e}") from e
                logger.exception(
                    "Event log failure during %s", operation,
                    extra={"error": str(e)},
                )
                raise StorageUnavailable(operation, e) from e

    # --- Writes ---

    def append(
        self,
        event: Event,
        apply: Optional[Callable[[Event], object]] = None,
    ) -> Event:
        """
        Append an event. Assigns the next id, signs it and chains it to the
        previous event.

        `apply` runs inside the same transaction once the id is known; if it
        raises, the append is rolled back and the exception propagates.
        """
        event, _ = self.append_with(event, apply)
        return event

    def append_with(
        self,
        event: Event,
        apply: Optional[Callable[[Event], object]] = None,
    ) -> Tuple[Event, object]:
        """Like append, but also returns what `apply` produced."""
        with self._storage("append") as conn:
            try:
                row = conn.execute(
                    "SELECT id, signature FROM events ORDER BY id DESC LIMIT 1"
                ).fetchone()
                next_id = (row["id"] + 1) if row else 1
                prior_hash = row["signature"] if row else None

                stamped = event.model_copy(update={
                    "id": next_id,
                    "prior_hash": prior_hash,
                    "signature": "",
                })
                stamped = stamped.model_copy(
                    update={"signature": _compute_signature(stamped)}
                )

                conn.execute(
                    """
                    INSERT INTO events (
                        id, user_id, entity_type, entity_id, kind, origin,
                        causality_id, conversation_id, turn_id, action_kind,
                        compensates, signature, prior_hash, event_json, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        stamped.id,
                        stamped.user_id,
                        stamped.entity_type,
                        stamped.entity_id,
                        stamped.kind,
                        stamped.origin.value,
                        stamped.causality_id,
                        stamped.conversation_id,
                        stamped.turn_id,
                        stamped.action_kind,
                        stamped.compensates,
                        stamped.signature,
                        stamped.prior_hash,
                        stamped.model_dump_json(),
                        stamped.created_at.isoformat(),
                    ),
                )
                applied = apply(stamped) if apply else None
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

        self._notify(stamped)
        return stamped, applied

    # --- Subscriptions ---

    def subscribe(self, user_id: str, callback: Subscriber) -> Callable[[], None]:
        """Register an observer for one user's events. Returns an unsubscribe callable."""
        with self._lock:
            self._subscribers.setdefault(user_id, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(user_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def _notify(self, event: Event) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(event.user_id, []))
        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.exception(
                    "Event subscriber failed",
                    extra={"event_id": event.id, "user_id": event.user_id, "error": str(e)},
                )

    # --- Reads ---

    def _deserialize(self, row: sqlite3.Row) -> Event:
        return Event.model_validate_json(row["event_json"])

    def get(self, event_id: int) -> Optional[Event]:
        """Get a specific event by id."""
        with self._storage("read") as conn:
            row = conn.execute(
                "SELECT event_json FROM events WHERE id = ?", (event_id,)
            ).fetchone()
        return self._deserialize(row) if row else None

    def read_since(
        self,
        cursor: int = 0,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Iterator[Event]:
        """
        Lazily yield events with id > cursor, in id order.

        Events are fetched in windows of `read_batch_size`, so a consumer can
        stop at any point and restart later from the last id it saw.
        """
        yielded = 0
        while limit is None or yielded < limit:
            batch_size = self.read_batch_size
            if limit is not None:
                batch_size = min(batch_size, limit - yielded)
            with self._storage("read_since") as conn:
                if user_id is None:
                    rows = conn.execute(
                        "SELECT id, event_json FROM events WHERE id > ? "
                        "ORDER BY id LIMIT ?",
                        (cursor, batch_size),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT id, event_json FROM events WHERE id > ? AND user_id = ? "
                        "ORDER BY id LIMIT ?",
                        (cursor, user_id, batch_size),
                    ).fetchall()
            if not rows:
                return
            for row in rows:
                yield self._deserialize(row)
                cursor = row["id"]
                yielded += 1
            if len(rows) < batch_size:
                return

    def read_for_entity(
        self,
        entity_id: str,
        user_id: Optional[str] = None,
        until_event_id: Optional[int] = None,
    ) -> List[Event]:
        """All events for an entity in id order, optionally up to and including an id."""
        query = "SELECT event_json FROM events WHERE entity_id = ?"
        params: list = [entity_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if until_event_id is not None:
            query += " AND id <= ?"
            params.append(until_event_id)
        query += " ORDER BY id"
        with self._storage("read_for_entity") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._deserialize(r) for r in rows]

    def read_recent_for_conversation(
        self, user_id: str, conversation_id: str, limit: int = 20
    ) -> List[Event]:
        """The last `limit` events of a conversation, oldest first."""
        with self._storage("read_conversation") as conn:
            rows = conn.execute(
                "SELECT event_json FROM events WHERE user_id = ? AND conversation_id = ? "
                "ORDER BY id DESC LIMIT ?",
                (user_id, conversation_id, limit),
            ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def find_by_causality(
        self,
        user_id: str,
        conversation_id: str,
        turn_id: str,
        action_kind: str,
    ) -> Optional[Event]:
        """The outcome already recorded for a conversation turn, if any."""
        with self._storage("find_by_causality") as conn:
            row = conn.execute(
                "SELECT event_json FROM events WHERE user_id = ? AND conversation_id = ? "
                "AND turn_id = ? AND action_kind = ?",
                (user_id, conversation_id, turn_id, action_kind),
            ).fetchone()
        return self._deserialize(row) if row else None

    def find_compensation(self, event_id: int) -> Optional[Event]:
        """The compensating event appended for an event, if it was rolled back."""
        with self._storage("find_compensation") as conn:
            row = conn.execute(
                "SELECT event_json FROM events WHERE compensates = ?", (event_id,)
            ).fetchone()
        return self._deserialize(row) if row else None

    def entity_ids(self) -> List[str]:
        """Every entity id that has at least one event, in order of first appearance."""
        with self._storage("entity_ids") as conn:
            rows = conn.execute(
                "SELECT entity_id, MIN(id) AS first_id FROM events "
                "WHERE entity_id IS NOT NULL GROUP BY entity_id ORDER BY first_id"
            ).fetchall()
        return [r["entity_id"] for r in rows]

    def last_id(self) -> int:
        with self._storage("last_id") as conn:
            row = conn.execute("SELECT MAX(id) AS last FROM events").fetchone()
        return row["last"] or 0

    def count(self, entity_id: Optional[str] = None) -> int:
        """Total number of events, or the number for one entity."""
        with self._storage("count") as conn:
            if entity_id is None:
                row = conn.execute("SELECT COUNT(*) AS cnt FROM events").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM events WHERE entity_id = ?",
                    (entity_id,),
                ).fetchone()
        return row["cnt"]

    def verify_chain_integrity(self) -> bool:
        """Verify no event has been tampered with or removed from the chain."""
        with self._storage("verify") as conn:
            rows = conn.execute(
                "SELECT event_json, signature FROM events ORDER BY id"
            ).fetchall()

        prior_sig = None
        for row in rows:
            event = self._deserialize(row)
            if event.signature != row["signature"]:
                return False
            if _compute_signature(event) != event.signature:
                return False
            if event.prior_hash != prior_sig:
                return False
            prior_sig = event.signature
        return True

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
