from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime, timedelta

from atmo_chat.store.events import new_id, utc_now
from atmo_chat.store.models import ENTITY_TYPES, ParsedEntity
from atmo_chat.store.store import WorkspaceStore


class EntityQueue:
    """The ``claude_parsed_entities`` table seen as a work queue.

    Rows are claimed inside an immediate transaction, which is how two
    reconciler runs are kept off the same row: a claimed row is invisible
    to other claimers until it is released or its lease expires.
    """

    def __init__(self, store: WorkspaceStore, *, lease_seconds: float = 300.0):
        self._store = store
        self._lease_seconds = lease_seconds

    def enqueue(
        self,
        owner_id: str,
        candidates: list[tuple[str, dict]],
        *,
        source_message_id: str | None,
        client_message_id: str | None = None,
    ) -> list[str]:
        ids: list[str] = []
        with self._store.transaction():
            for entity_type, data in candidates:
                if entity_type not in ENTITY_TYPES:
                    raise ValueError(f"Unknown entity type: {entity_type!r}")
                entity_id = new_id()
                self._store.execute(
                    """
                    INSERT INTO claude_parsed_entities
                        (id, owner_id, source_message_id, client_message_id, entity_type, entity_data, processed, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                    """,
                    (
                        entity_id,
                        owner_id,
                        source_message_id,
                        client_message_id,
                        entity_type,
                        json.dumps(data, ensure_ascii=True),
                        utc_now(),
                    ),
                )
                ids.append(entity_id)
        return ids

    def claim(self, claimer: str, *, limit: int, entity_ids: list[str] | None = None) -> list[sqlite3.Row]:
        """Claim up to ``limit`` unprocessed rows, oldest first."""
        now = utc_now()
        stale_before = (datetime.now(UTC) - timedelta(seconds=self._lease_seconds)).isoformat(
            timespec="microseconds"
        )
        id_filter = ""
        params: list = [stale_before]
        if entity_ids is not None:
            if not entity_ids:
                return []
            id_filter = f"AND id IN ({', '.join('?' for _ in entity_ids)})"
            params.extend(entity_ids)
        params.append(max(1, limit))

        with self._store.transaction():
            candidates = self._store.execute(
                f"""
                SELECT id FROM claude_parsed_entities
                WHERE processed = 0
                  AND (claimed_by IS NULL OR claimed_at < ?)
                  {id_filter}
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                tuple(params),
            ).fetchall()
            claimed_ids = [str(row["id"]) for row in candidates]
            if not claimed_ids:
                return []
            self._store.executemany(
                """
                UPDATE claude_parsed_entities
                SET claimed_by = ?, claimed_at = ?, attempts = attempts + 1
                WHERE id = ? AND processed = 0
                """,
                [(claimer, now, entity_id) for entity_id in claimed_ids],
            )
            return self._store.execute(
                f"""
                SELECT * FROM claude_parsed_entities
                WHERE claimed_by = ? AND processed = 0
                  AND id IN ({', '.join('?' for _ in claimed_ids)})
                ORDER BY created_at ASC, rowid ASC
                """,
                (claimer, *claimed_ids),
            ).fetchall()

    def peek(self, *, limit: int, entity_ids: list[str] | None = None) -> list[sqlite3.Row]:
        """Read unprocessed rows oldest first without claiming them."""
        if entity_ids is not None and not entity_ids:
            return []
        id_filter = ""
        params: list = []
        if entity_ids is not None:
            id_filter = f"AND id IN ({', '.join('?' for _ in entity_ids)})"
            params.extend(entity_ids)
        params.append(max(1, limit))
        return self._store.execute(
            f"""
            SELECT * FROM claude_parsed_entities
            WHERE processed = 0 {id_filter}
            ORDER BY created_at ASC, rowid ASC
            LIMIT ?
            """,
            tuple(params),
        ).fetchall()

    def mark_processed(self, entity_id: str, claimer: str) -> bool:
        """Returns False when the claim was lost to another worker."""
        with self._store.transaction():
            cur = self._store.execute(
                """
                UPDATE claude_parsed_entities
                SET processed = 1, processed_at = ?, claimed_by = NULL, claimed_at = NULL, last_error = NULL
                WHERE id = ? AND claimed_by = ?
                """,
                (utc_now(), entity_id, claimer),
            )
        return cur.rowcount == 1

    def release(self, entity_id: str, claimer: str, *, error: str | None = None) -> None:
        with self._store.transaction():
            self._store.execute(
                """
                UPDATE claude_parsed_entities
                SET claimed_by = NULL, claimed_at = NULL, last_error = COALESCE(?, last_error)
                WHERE id = ? AND claimed_by = ? AND processed = 0
                """,
                (error, entity_id, claimer),
            )

    def pending(self, owner_id: str | None = None, *, limit: int = 20) -> list[ParsedEntity]:
        if owner_id is None:
            rows = self._store.execute(
                """
                SELECT * FROM claude_parsed_entities
                WHERE processed = 0
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (max(1, limit),),
            ).fetchall()
        else:
            rows = self._store.execute(
                """
                SELECT * FROM claude_parsed_entities
                WHERE processed = 0 AND owner_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (owner_id, max(1, limit)),
            ).fetchall()
        return [ParsedEntity.from_row(row) for row in rows]

    def get(self, entity_id: str) -> ParsedEntity | None:
        row = self._store.execute(
            "SELECT * FROM claude_parsed_entities WHERE id = ?",
            (entity_id,),
        ).fetchone()
        return ParsedEntity.from_row(row) if row is not None else None
