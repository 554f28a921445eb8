from __future__ import annotations

import json
from datetime import UTC, datetime
from uuid import uuid4

from atmo_chat.store.store import WorkspaceStore


def utc_now() -> str:
    # Microseconds keep created_at/updated_at ordering stable for rapid writes.
    return datetime.now(UTC).isoformat(timespec="microseconds")


def new_id() -> str:
    return str(uuid4())


class EventEmitter:
    """Appends lifecycle events to the ``events`` audit table."""

    def __init__(self, store: WorkspaceStore):
        self._store = store

    def emit(self, owner_id: str, event_type: str, payload: dict, *, session_id: str | None = None) -> None:
        with self._store.transaction():
            self._store.execute(
                """
                INSERT INTO events (id, owner_id, session_id, type, payload_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id(),
                    owner_id,
                    session_id,
                    event_type,
                    json.dumps(payload, ensure_ascii=True),
                    utc_now(),
                ),
            )
