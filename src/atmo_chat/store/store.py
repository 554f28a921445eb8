from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from atmo_chat.errors import ConflictError


def casefold_key(value: object) -> str | None:
    if value is None:
        return None
    return str(value).strip().casefold()


class WorkspaceStore:
    """SQLite-backed relational store shared by the server-side components.

    All writes go through ``transaction()``, which opens ``BEGIN IMMEDIATE``:
    the reserved lock it takes is what serialises lifecycle transitions and
    reconciler claims across connections to the same database file.
    """

    def __init__(self, db_path: str, *, busy_timeout_seconds: float = 5.0):
        self._db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            timeout=busy_timeout_seconds,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.create_function("casefold", 1, casefold_key, deterministic=True)
        self._conn.execute("PRAGMA foreign_keys = ON")
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._lock = threading.RLock()
        self._depth = 0
        self._initialize_schema()

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(query, params)

    def executemany(self, query: str, seq_of_params: list[tuple[Any, ...]]) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.executemany(query, seq_of_params)

    @contextmanager
    def transaction(self) -> Iterator[WorkspaceStore]:
        """Run the block in one immediate transaction; nested calls join it."""
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as ex:
                raise ConflictError(f"Store is busy: {ex}") from ex

            self._depth = 1
            try:
                yield self
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise
            finally:
                self._depth = 0

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS chat_sessions (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                title TEXT NULL,
                archived INTEGER NOT NULL DEFAULT 0 CHECK (archived IN (0, 1)),
                message_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS chat_messages (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
                owner_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                content TEXT NOT NULL,
                client_message_id TEXT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS chat_submissions (
                session_id TEXT NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
                client_message_id TEXT NOT NULL,
                user_message_id TEXT NOT NULL,
                assistant_message_id TEXT NOT NULL,
                result_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (session_id, client_message_id)
            );

            CREATE TABLE IF NOT EXISTS claude_parsed_entities (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                source_message_id TEXT NULL REFERENCES chat_messages(id) ON DELETE SET NULL,
                client_message_id TEXT NULL,
                entity_type TEXT NOT NULL CHECK (
                    entity_type IN ('project', 'task', 'goal', 'milestone', 'knowledge', 'insight')
                ),
                entity_data TEXT NOT NULL,
                processed INTEGER NOT NULL DEFAULT 0 CHECK (processed IN (0, 1)),
                claimed_by TEXT NULL,
                claimed_at TEXT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT NULL,
                processed_at TEXT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                priority TEXT NOT NULL DEFAULT 'medium',
                status TEXT NOT NULL DEFAULT 'active',
                active INTEGER NOT NULL DEFAULT 1 CHECK (active IN (0, 1)),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS project_tasks (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                project_id TEXT NULL REFERENCES projects(id) ON DELETE SET NULL,
                project_ref TEXT NOT NULL DEFAULT '',
                goal_id TEXT NULL REFERENCES project_goals(id) ON DELETE SET NULL,
                goal_ref TEXT NOT NULL DEFAULT '',
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                priority TEXT NOT NULL DEFAULT 'medium',
                due_date TEXT NULL,
                completed INTEGER NOT NULL DEFAULT 0 CHECK (completed IN (0, 1)),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS project_goals (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                project_id TEXT NULL REFERENCES projects(id) ON DELETE SET NULL,
                project_ref TEXT NOT NULL DEFAULT '',
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                priority TEXT NOT NULL DEFAULT 'medium',
                status TEXT NOT NULL DEFAULT 'in-progress',
                target_date TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS project_milestones (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                project_id TEXT NULL REFERENCES projects(id) ON DELETE SET NULL,
                project_ref TEXT NOT NULL DEFAULT '',
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'pending',
                due_date TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS knowledge_items (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                type TEXT NOT NULL DEFAULT 'note',
                content TEXT NOT NULL DEFAULT '',
                tags_json TEXT NOT NULL DEFAULT '[]',
                starred INTEGER NOT NULL DEFAULT 0 CHECK (starred IN (0, 1)),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_insights (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                project_id TEXT NULL REFERENCES projects(id) ON DELETE SET NULL,
                project_ref TEXT NOT NULL DEFAULT '',
                title TEXT NOT NULL,
                summary TEXT NOT NULL DEFAULT '',
                category TEXT NOT NULL DEFAULT 'personal',
                insight_type TEXT NOT NULL DEFAULT 'chat_generated',
                relevance INTEGER NOT NULL DEFAULT 50,
                source_url TEXT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS auth_tokens (
                token TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                session_id TEXT NULL,
                type TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            -- At most one active session per owner.
            CREATE UNIQUE INDEX IF NOT EXISTS uq_chat_sessions_active_owner
                ON chat_sessions(owner_id) WHERE archived = 0;
            CREATE UNIQUE INDEX IF NOT EXISTS uq_chat_messages_client_id
                ON chat_messages(session_id, client_message_id) WHERE client_message_id IS NOT NULL;

            CREATE INDEX IF NOT EXISTS idx_chat_sessions_owner_updated
                ON chat_sessions(owner_id, archived, updated_at);
            CREATE INDEX IF NOT EXISTS idx_chat_messages_session_created
                ON chat_messages(session_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_parsed_entities_pending
                ON claude_parsed_entities(processed, created_at);
            CREATE INDEX IF NOT EXISTS idx_projects_owner_name
                ON projects(owner_id, name);
            CREATE INDEX IF NOT EXISTS idx_project_tasks_owner_ref
                ON project_tasks(owner_id, project_ref);
            CREATE INDEX IF NOT EXISTS idx_project_tasks_owner_goal_ref
                ON project_tasks(owner_id, goal_ref);
            CREATE INDEX IF NOT EXISTS idx_project_goals_owner_ref
                ON project_goals(owner_id, project_ref);
            CREATE INDEX IF NOT EXISTS idx_project_milestones_owner_ref
                ON project_milestones(owner_id, project_ref);
            CREATE INDEX IF NOT EXISTS idx_events_owner_created
                ON events(owner_id, created_at);

            CREATE TRIGGER IF NOT EXISTS trg_chat_messages_count
            AFTER INSERT ON chat_messages
            BEGIN
                UPDATE chat_sessions
                SET message_count = message_count + 1, updated_at = NEW.created_at
                WHERE id = NEW.session_id;
            END;

            CREATE TRIGGER IF NOT EXISTS trg_chat_messages_archived_guard
            BEFORE INSERT ON chat_messages
            WHEN (SELECT archived FROM chat_sessions WHERE id = NEW.session_id) = 1
            BEGIN
                SELECT RAISE(ABORT, 'session is archived');
            END;

            CREATE TRIGGER IF NOT EXISTS trg_chat_messages_immutable
            BEFORE UPDATE ON chat_messages
            BEGIN
                SELECT RAISE(ABORT, 'chat messages are immutable');
            END;

            CREATE TRIGGER IF NOT EXISTS trg_parsed_entities_processed_monotonic
            BEFORE UPDATE OF processed ON claude_parsed_entities
            WHEN OLD.processed = 1 AND NEW.processed = 0
            BEGIN
                SELECT RAISE(ABORT, 'processed flag cannot be reset');
            END;
            """
        )
