from __future__ import annotations

import asyncio
import json
import sqlite3
from dataclasses import dataclass, field

from loguru import logger

from atmo_chat.auth import Authenticator
from atmo_chat.errors import ChatCoreError, ChatDisabledError, ExtractionError, NotFoundError, call_with_conflict_retry
from atmo_chat.extractor import EntityExtractor, ExtractionContext
from atmo_chat.reconciler import EntityReconciler
from atmo_chat.store.entities import EntityQueue
from atmo_chat.store.events import utc_now
from atmo_chat.store.models import ChatMessage, ChatSession
from atmo_chat.store.sessions import SessionLifecycleManager
from atmo_chat.store.store import WorkspaceStore


@dataclass
class SubmitResult:
    reply: str
    session_id: str
    user_message_id: str
    assistant_message_id: str
    entities_extracted: int = 0
    entities_created: list[dict] = field(default_factory=list)
    entities_pending: int = 0
    next_steps: list[dict] = field(default_factory=list)
    replayed: bool = False

    def to_json(self) -> dict:
        return {
            "response": self.reply,
            "sessionId": self.session_id,
            "userMessageId": self.user_message_id,
            "assistantMessageId": self.assistant_message_id,
            "entitiesExtracted": self.entities_extracted,
            "entitiesCreated": list(self.entities_created),
            "entitiesPending": self.entities_pending,
            "nextSteps": list(self.next_steps),
        }

    @classmethod
    def from_json(cls, data: dict, *, replayed: bool = False) -> SubmitResult:
        return cls(
            reply=str(data.get("response", "")),
            session_id=str(data["sessionId"]),
            user_message_id=str(data["userMessageId"]),
            assistant_message_id=str(data["assistantMessageId"]),
            entities_extracted=int(data.get("entitiesExtracted", 0)),
            entities_created=list(data.get("entitiesCreated") or []),
            entities_pending=int(data.get("entitiesPending", 0)),
            next_steps=list(data.get("nextSteps") or []),
            replayed=replayed,
        )


class MessageGateway:
    """Accepts one user message and turns it into a stored exchange.

    ``client_message_id`` is the idempotency key: the user message is
    inserted at most once per session, and once the exchange has finished
    its result is kept in the ``chat_submissions`` ledger and replayed for
    any repeat of the same key.
    """

    def __init__(
        self,
        store: WorkspaceStore,
        authenticator: Authenticator,
        sessions: SessionLifecycleManager,
        queue: EntityQueue,
        extractor: EntityExtractor,
        reconciler: EntityReconciler | None = None,
        *,
        enabled: bool = True,
        extractor_timeout_seconds: float = 60.0,
        history_limit: int = 10,
        reconcile_on_submit: bool = True,
    ):
        self._store = store
        self._auth = authenticator
        self._sessions = sessions
        self._queue = queue
        self._extractor = extractor
        self._reconciler = reconciler
        self._enabled = enabled
        self._timeout = extractor_timeout_seconds
        self._history_limit = max(0, history_limit)
        self._reconcile_on_submit = reconcile_on_submit
        self._in_flight: dict[tuple[str, str, str], asyncio.Task] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def submit_message(
        self,
        credentials: str | None,
        content: str,
        client_message_id: str,
        session_id: str | None = None,
    ) -> SubmitResult:
        if not self._enabled:
            raise ChatDisabledError("Chat is disabled.")
        owner_id = self._auth.authenticate(credentials)
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Message is required")
        if not client_message_id or not client_message_id.strip():
            raise ValueError("clientMessageId is required")

        key = (owner_id, session_id or "", client_message_id)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._submit(owner_id, content, client_message_id, session_id))
            self._in_flight[key] = task
            task.add_done_callback(lambda _t, k=key: self._in_flight.pop(k, None))
        else:
            logger.debug(f"Coalescing duplicate submission {client_message_id}")
        return await asyncio.shield(task)

    async def _submit(
        self,
        owner_id: str,
        content: str,
        client_message_id: str,
        session_id: str | None,
    ) -> SubmitResult:
        with logger.contextualize(owner_id=owner_id):
            session, user_message, replay = call_with_conflict_retry(
                self._persist_user_message, owner_id, content, client_message_id, session_id
            )
            with logger.contextualize(session_id=session.id):
                if replay is not None:
                    logger.info(f"Replaying stored result for {client_message_id} in session {session.id}")
                    return replay
                return await self._answer(owner_id, session, user_message, client_message_id)

    async def _answer(
        self,
        owner_id: str,
        session: ChatSession,
        user_message: ChatMessage,
        client_message_id: str,
    ) -> SubmitResult:
        context = ExtractionContext(
            owner_id=owner_id,
            message=user_message.content,
            history=self._history(session.id, exclude_id=user_message.id),
            projects=self._active_projects(owner_id),
        )
        try:
            extraction = await asyncio.wait_for(self._extractor.extract(context), timeout=self._timeout)
        except ExtractionError as ex:
            logger.warning(f"Extraction failed for {client_message_id}: {ex}")
            raise
        except TimeoutError as ex:
            logger.warning(f"Extraction timed out for {client_message_id} after {self._timeout}s")
            raise ExtractionError(f"Extractor timed out after {self._timeout:.0f}s") from ex
        except Exception as ex:
            logger.warning(f"Extraction failed for {client_message_id}: {type(ex).__name__}: {ex}")
            raise ExtractionError(f"Extractor failed: {ex}") from ex

        try:
            result, entity_ids = self._store_exchange(owner_id, session, user_message, client_message_id, extraction)
        except sqlite3.IntegrityError:
            # Another process finished the same submission first.
            replay = self._load_ledger(session.id, client_message_id)
            if replay is None:
                raise
            return replay

        if entity_ids and self._reconciler is not None and self._reconcile_on_submit:
            result = self._reconcile_submitted(session.id, client_message_id, result, entity_ids)

        logger.info(
            f"Message {client_message_id} stored in {session.id}: "
            f"{result.entities_extracted} extracted, {len(result.entities_created)} reconciled"
        )
        return result

    def _persist_user_message(
        self,
        owner_id: str,
        content: str,
        client_message_id: str,
        session_id: str | None,
    ) -> tuple[ChatSession, ChatMessage | None, SubmitResult | None]:
        if session_id is None:
            session = self._sessions.get_or_create_active_session(owner_id)
        else:
            session = self._sessions.get_session(session_id, owner_id=owner_id)
            if session is None:
                raise NotFoundError(f"Session not found: {session_id}")

        replay = self._load_ledger(session.id, client_message_id)
        if replay is not None:
            return session, None, replay

        user_message, created = self._sessions.append_message(
            session.id, "user", content, client_message_id=client_message_id
        )
        if not created:
            logger.info(f"User message {client_message_id} already stored; re-running extraction")
        return session, user_message, None

    def _store_exchange(self, owner_id, session, user_message, client_message_id, extraction):
        with self._store.transaction():
            assistant_message, _ = self._sessions.append_message(
                session.id,
                "assistant",
                extraction.reply,
                metadata={"replyTo": user_message.id},
            )
            entity_ids = self._queue.enqueue(
                owner_id,
                extraction.entities,
                source_message_id=assistant_message.id,
                client_message_id=client_message_id,
            )
            result = SubmitResult(
                reply=extraction.reply,
                session_id=session.id,
                user_message_id=user_message.id,
                assistant_message_id=assistant_message.id,
                entities_extracted=len(entity_ids),
                entities_pending=len(entity_ids),
                next_steps=list(extraction.next_steps),
            )
            now = utc_now()
            self._store.execute(
                """
                INSERT INTO chat_submissions
                    (session_id, client_message_id, user_message_id, assistant_message_id, result_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    client_message_id,
                    user_message.id,
                    assistant_message.id,
                    json.dumps(result.to_json(), ensure_ascii=True),
                    now,
                    now,
                ),
            )
        return result, entity_ids

    def _reconcile_submitted(
        self,
        session_id: str,
        client_message_id: str,
        result: SubmitResult,
        entity_ids: list[str],
    ) -> SubmitResult:
        try:
            outcome = self._reconciler.reconcile(len(entity_ids), entity_ids=entity_ids)
        except ChatCoreError as ex:
            logger.warning(f"Inline reconcile skipped for {client_message_id}: {ex}; entities stay pending")
            return result
        if outcome.dry_run:
            return result

        result.entities_created = [o.to_json() for o in outcome.outcomes]
        result.entities_pending = len(entity_ids) - outcome.processed
        with self._store.transaction():
            self._store.execute(
                """
                UPDATE chat_submissions SET result_json = ?, updated_at = ?
                WHERE session_id = ? AND client_message_id = ?
                """,
                (json.dumps(result.to_json(), ensure_ascii=True), utc_now(), session_id, client_message_id),
            )
        return result

    def _load_ledger(self, session_id: str, client_message_id: str) -> SubmitResult | None:
        row = self._store.execute(
            "SELECT result_json FROM chat_submissions WHERE session_id = ? AND client_message_id = ?",
            (session_id, client_message_id),
        ).fetchone()
        if row is None:
            return None
        return SubmitResult.from_json(json.loads(row["result_json"]), replayed=True)

    def _history(self, session_id: str, *, exclude_id: str) -> list[ChatMessage]:
        if self._history_limit == 0:
            return []
        messages = self._sessions.recent_session_messages(session_id, limit=self._history_limit + 1)
        return [m for m in messages if m.id != exclude_id][-self._history_limit:]

    def _active_projects(self, owner_id: str) -> list[dict]:
        rows = self._store.execute(
            """
            SELECT name, description, priority, status FROM projects
            WHERE owner_id = ? AND active = 1 AND status != 'deleted'
            ORDER BY updated_at DESC
            LIMIT 20
            """,
            (owner_id,),
        ).fetchall()
        return [dict(row) for row in rows]
