from __future__ import annotations

import json
import sqlite3

from loguru import logger

from atmo_chat.errors import ConflictError, NotFoundError
from atmo_chat.store.events import EventEmitter, new_id, utc_now
from atmo_chat.store.models import MESSAGE_ROLES, ChatMessage, ChatSession
from atmo_chat.store.store import WorkspaceStore

HIGHLIGHT_COLORS = {"green", "yellow", "purple"}

_MESSAGE_ORDER = "ORDER BY created_at ASC, rowid ASC"


class SessionLifecycleManager:
    """Server-side owner of chat session state.

    Each transition runs in a single immediate transaction, and the partial
    unique index on ``chat_sessions(owner_id) WHERE archived = 0`` rejects
    anything that would leave two active sessions for one owner.
    """

    def __init__(self, store: WorkspaceStore, events: EventEmitter):
        self._store = store
        self._events = events

    def get_active_session(self, owner_id: str) -> ChatSession | None:
        row = self._store.execute(
            "SELECT * FROM chat_sessions WHERE owner_id = ? AND archived = 0 LIMIT 1",
            (owner_id,),
        ).fetchone()
        return ChatSession.from_row(row) if row is not None else None

    def get_or_create_active_session(self, owner_id: str) -> ChatSession:
        now = utc_now()
        session_id = new_id()
        try:
            with self._store.transaction():
                cur = self._store.execute(
                    """
                    INSERT INTO chat_sessions (id, owner_id, title, archived, message_count, created_at, updated_at)
                    VALUES (?, ?, NULL, 0, 0, ?, ?)
                    ON CONFLICT(owner_id) WHERE archived = 0 DO NOTHING
                    """,
                    (session_id, owner_id, now, now),
                )
                if cur.rowcount == 1:
                    self._events.emit(owner_id, "session.created", {"session_id": session_id}, session_id=session_id)
                row = self._store.execute(
                    "SELECT * FROM chat_sessions WHERE owner_id = ? AND archived = 0 LIMIT 1",
                    (owner_id,),
                ).fetchone()
        except sqlite3.IntegrityError as ex:
            raise ConflictError(f"Could not resolve active session for {owner_id}: {ex}") from ex
        return ChatSession.from_row(row)

    def create_new_session(self, owner_id: str) -> ChatSession:
        now = utc_now()
        session_id = new_id()
        try:
            with self._store.transaction():
                previous = self._store.execute(
                    "SELECT id FROM chat_sessions WHERE owner_id = ? AND archived = 0",
                    (owner_id,),
                ).fetchall()
                self._store.execute(
                    "UPDATE chat_sessions SET archived = 1, updated_at = ? WHERE owner_id = ? AND archived = 0",
                    (now, owner_id),
                )
                self._store.execute(
                    """
                    INSERT INTO chat_sessions (id, owner_id, title, archived, message_count, created_at, updated_at)
                    VALUES (?, ?, NULL, 0, 0, ?, ?)
                    """,
                    (session_id, owner_id, now, now),
                )
                for row in previous:
                    self._events.emit(
                        owner_id,
                        "session.archived",
                        {"session_id": row["id"], "replaced_by": session_id},
                        session_id=str(row["id"]),
                    )
                self._events.emit(owner_id, "session.created", {"session_id": session_id}, session_id=session_id)
        except sqlite3.IntegrityError as ex:
            raise ConflictError(f"New session for {owner_id} lost a race: {ex}") from ex

        logger.info(f"Started session {session_id} for {owner_id} (archived {len(previous)})")
        return self._require_session(session_id)

    def list_archived_sessions(self, owner_id: str) -> list[ChatSession]:
        rows = self._store.execute(
            """
            SELECT * FROM chat_sessions
            WHERE owner_id = ? AND archived = 1
            ORDER BY updated_at DESC, created_at DESC
            """,
            (owner_id,),
        ).fetchall()
        return [ChatSession.from_row(row) for row in rows]

    def activate_archived_session(self, owner_id: str, session_id: str) -> ChatSession:
        now = utc_now()
        try:
            with self._store.transaction():
                target = self._store.execute(
                    "SELECT archived FROM chat_sessions WHERE id = ? AND owner_id = ?",
                    (session_id, owner_id),
                ).fetchone()
                if target is None:
                    raise NotFoundError(f"Session not found: {session_id}")
                if not target["archived"]:
                    raise NotFoundError(f"Session is not archived: {session_id}")

                previous = self._store.execute(
                    "SELECT id FROM chat_sessions WHERE owner_id = ? AND archived = 0",
                    (owner_id,),
                ).fetchall()
                self._store.execute(
                    "UPDATE chat_sessions SET archived = 1, updated_at = ? WHERE owner_id = ? AND archived = 0",
                    (now, owner_id),
                )
                self._store.execute(
                    "UPDATE chat_sessions SET archived = 0, updated_at = ? WHERE id = ?",
                    (now, session_id),
                )
                for row in previous:
                    self._events.emit(
                        owner_id,
                        "session.archived",
                        {"session_id": row["id"], "replaced_by": session_id},
                        session_id=str(row["id"]),
                    )
                self._events.emit(owner_id, "session.activated", {"session_id": session_id}, session_id=session_id)
        except sqlite3.IntegrityError as ex:
            raise ConflictError(f"Activating {session_id} lost a race: {ex}") from ex

        return self._require_session(session_id)

    def delete_session(self, session_id: str, *, owner_id: str | None = None) -> None:
        with self._store.transaction():
            row = self._store.execute(
                "SELECT owner_id, archived FROM chat_sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
            if row is None or (owner_id is not None and row["owner_id"] != owner_id):
                raise NotFoundError(f"Session not found: {session_id}")
            self._store.execute("DELETE FROM chat_sessions WHERE id = ?", (session_id,))
            self._events.emit(
                str(row["owner_id"]),
                "session.deleted",
                {"session_id": session_id, "was_archived": bool(row["archived"])},
                session_id=session_id,
            )

    def get_session(self, session_id: str, *, owner_id: str | None = None) -> ChatSession | None:
        row = self._store.execute(
            "SELECT * FROM chat_sessions WHERE id = ? LIMIT 1",
            (session_id,),
        ).fetchone()
        if row is None or (owner_id is not None and row["owner_id"] != owner_id):
            return None
        return ChatSession.from_row(row)

    def set_session_title(self, owner_id: str, session_id: str, title: str) -> ChatSession:
        session = self._require_session(session_id, owner_id=owner_id)
        if session.archived:
            raise ConflictError(f"Archived session cannot be renamed: {session_id}")
        with self._store.transaction():
            self._store.execute(
                "UPDATE chat_sessions SET title = ?, updated_at = ? WHERE id = ? AND archived = 0",
                (title.strip() or None, utc_now(), session_id),
            )
        return self._require_session(session_id)

    def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        *,
        client_message_id: str | None = None,
        metadata: dict | None = None,
    ) -> tuple[ChatMessage, bool]:
        """Append a message; returns (message, created).

        With a ``client_message_id`` the insert is idempotent: a repeat
        returns the stored message and ``created=False``.
        """
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Unknown message role: {role!r}")

        with self._store.transaction():
            session = self._store.execute(
                "SELECT owner_id, archived FROM chat_sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
            if session is None:
                raise NotFoundError(f"Session not found: {session_id}")

            if client_message_id:
                existing = self._store.execute(
                    "SELECT * FROM chat_messages WHERE session_id = ? AND client_message_id = ?",
                    (session_id, client_message_id),
                ).fetchone()
                if existing is not None:
                    return ChatMessage.from_row(existing), False

            if session["archived"]:
                raise ConflictError(f"Session is archived: {session_id}")

            message_id = new_id()
            self._store.execute(
                """
                INSERT INTO chat_messages
                    (id, session_id, owner_id, role, content, client_message_id, metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    session_id,
                    session["owner_id"],
                    role,
                    content,
                    client_message_id,
                    json.dumps(metadata or {}, ensure_ascii=True),
                    utc_now(),
                ),
            )
            self._events.emit(
                str(session["owner_id"]),
                "message.appended",
                {"session_id": session_id, "message_id": message_id, "role": role},
                session_id=session_id,
            )
            row = self._store.execute("SELECT * FROM chat_messages WHERE id = ?", (message_id,)).fetchone()
        return ChatMessage.from_row(row), True

    def load_messages(self, session_id: str, *, owner_id: str | None = None) -> list[ChatMessage]:
        self._require_session(session_id, owner_id=owner_id)
        rows = self._store.execute(
            f"SELECT * FROM chat_messages WHERE session_id = ? {_MESSAGE_ORDER}",
            (session_id,),
        ).fetchall()
        return [ChatMessage.from_row(row) for row in rows]

    def recent_session_messages(self, session_id: str, *, limit: int = 10) -> list[ChatMessage]:
        rows = self._store.execute(
            """
            SELECT * FROM chat_messages
            WHERE session_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (session_id, max(1, limit)),
        ).fetchall()
        return [ChatMessage.from_row(row) for row in reversed(rows)]

    def recent_messages(self, owner_id: str, *, limit: int = 20) -> list[ChatMessage]:
        active = self.get_active_session(owner_id)
        if active is None:
            return []
        return self.recent_session_messages(active.id, limit=limit)

    def save_assistant_message(
        self,
        owner_id: str,
        content: str,
        *,
        highlight_color: str | None = None,
    ) -> ChatMessage:
        """Persist an assistant-initiated message into the active session."""
        if highlight_color is not None and highlight_color not in HIGHLIGHT_COLORS:
            raise ValueError(f"Unsupported highlight color: {highlight_color!r}")
        session = self.get_or_create_active_session(owner_id)
        metadata = {"highlightColor": highlight_color} if highlight_color else {}
        message, _ = self.append_message(session.id, "assistant", content, metadata=metadata)
        return message

    def _require_session(self, session_id: str, *, owner_id: str | None = None) -> ChatSession:
        session = self.get_session(session_id, owner_id=owner_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session
