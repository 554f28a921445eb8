from __future__ import annotations

import asyncio
import json
import re
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Protocol, TypeVar, runtime_checkable

from loguru import logger

from atmo_chat.client.session_api import SessionApi
from atmo_chat.errors import ChatCoreError
from atmo_chat.store.events import utc_now
from atmo_chat.store.models import ChatMessage, ChatSession

T = TypeVar("T")

ACTIVE_KEY = "atmo.chat.active"
ARCHIVE_KEY = "atmo.chat.archive"


@dataclass(frozen=True)
class HydrationCheckpoint:
    session_id: str
    last_message_id: str | None
    message_count: int

    def to_json(self) -> dict:
        return {
            "sessionId": self.session_id,
            "lastMessageId": self.last_message_id,
            "messageCount": self.message_count,
        }

    @classmethod
    def from_json(cls, data: dict) -> HydrationCheckpoint:
        return cls(
            session_id=str(data["sessionId"]),
            last_message_id=data.get("lastMessageId"),
            message_count=int(data.get("messageCount", 0)),
        )


@dataclass
class ActiveEnvelope:
    session: ChatSession | None
    messages: list[ChatMessage] = field(default_factory=list)
    checkpoint: HydrationCheckpoint | None = None
    timestamp: str = ""

    def to_json(self) -> dict:
        return {
            "session": self.session.to_json() if self.session else None,
            "messages": [m.to_json() for m in self.messages],
            "checkpoint": self.checkpoint.to_json() if self.checkpoint else None,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_json(cls, data: dict) -> ActiveEnvelope:
        session = data.get("session")
        checkpoint = data.get("checkpoint")
        return cls(
            session=ChatSession.from_json(session) if session else None,
            messages=[ChatMessage.from_json(m) for m in data.get("messages") or []],
            checkpoint=HydrationCheckpoint.from_json(checkpoint) if checkpoint else None,
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass
class ArchiveEnvelope:
    archived_sessions: list[ChatSession] = field(default_factory=list)
    timestamp: str = ""

    def to_json(self) -> dict:
        return {
            "archivedSessions": [s.to_json() for s in self.archived_sessions],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_json(cls, data: dict) -> ArchiveEnvelope:
        return cls(
            archived_sessions=[ChatSession.from_json(s) for s in data.get("archivedSessions") or []],
            timestamp=str(data.get("timestamp", "")),
        )


@runtime_checkable
class CacheStorage(Protocol):
    def load(self, owner_id: str, key: str) -> dict | None: ...
    def save(self, owner_id: str, key: str, data: dict) -> None: ...
    def delete(self, owner_id: str, key: str) -> None: ...


class MemoryCacheStorage:
    def __init__(self):
        self._data: dict[tuple[str, str], str] = {}

    def load(self, owner_id: str, key: str) -> dict | None:
        raw = self._data.get((owner_id, key))
        return json.loads(raw) if raw is not None else None

    def save(self, owner_id: str, key: str, data: dict) -> None:
        self._data[(owner_id, key)] = json.dumps(data)

    def delete(self, owner_id: str, key: str) -> None:
        self._data.pop((owner_id, key), None)


class FileCacheStorage:
    """One JSON file per (owner, key). Unreadable files are treated as absent."""

    def __init__(self, directory: str):
        self._directory = Path(directory)

    def _path(self, owner_id: str, key: str) -> Path:
        safe_owner = re.sub(r"[^A-Za-z0-9_.-]", "_", owner_id)
        return self._directory / f"{safe_owner}.{key}.json"

    def load(self, owner_id: str, key: str) -> dict | None:
        path = self._path(owner_id, key)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as ex:
            logger.warning(f"Discarding unreadable cache file {path}: {ex}")
            return None
        return data if isinstance(data, dict) else None

    def save(self, owner_id: str, key: str, data: dict) -> None:
        path = self._path(owner_id, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(data, ensure_ascii=True), encoding="utf-8")
            tmp.replace(path)
        except OSError as ex:
            logger.warning(f"Could not persist cache file {path}: {ex}")

    def delete(self, owner_id: str, key: str) -> None:
        path = self._path(owner_id, key)
        try:
            path.unlink(missing_ok=True)
        except OSError as ex:
            logger.warning(f"Could not remove cache file {path}: {ex}")


class ClientSessionCache:
    """Local mirror of one owner's active session and archived list.

    The server stays authoritative; everything held here can be thrown away
    and rebuilt. Server failures never raise out of the public methods: they
    are stored in ``last_error`` and the method returns ``None``.
    """

    def __init__(
        self,
        api: SessionApi,
        storage: CacheStorage,
        owner_id: str,
        *,
        max_previews: int = 20,
    ):
        self._api = api
        self._storage = storage
        self._owner_id = owner_id
        self._max_previews = max(1, max_previews)

        self.active_session: ChatSession | None = None
        self.messages: list[ChatMessage] = []
        self.checkpoint: HydrationCheckpoint | None = None
        self.archived_sessions: list[ChatSession] = []
        self.last_error: ChatCoreError | None = None

        self._provisional: set[str] = set()
        self._previews: OrderedDict[str, list[ChatMessage]] = OrderedDict()
        self._in_flight: dict[str, asyncio.Task] = {}
        self._force_active = False

    # -- state -----------------------------------------------------------

    @property
    def loading_active(self) -> bool:
        return any(key.startswith("active") for key in self._in_flight)

    @property
    def loading_archive(self) -> bool:
        return any(key.startswith("archive") for key in self._in_flight)

    def is_provisional(self, session_id: str) -> bool:
        return session_id in self._provisional

    def has_preview(self, session_id: str) -> bool:
        return session_id in self._previews

    def clear_error(self) -> None:
        self.last_error = None

    def evict_preview(self, session_id: str | None = None) -> None:
        if session_id is None:
            self._previews.clear()
        else:
            self._previews.pop(session_id, None)

    # -- persistence -----------------------------------------------------

    def restore(self) -> None:
        """Load persisted envelopes so they can be shown before any server call."""
        active = self._storage.load(self._owner_id, ACTIVE_KEY)
        if active:
            try:
                envelope = ActiveEnvelope.from_json(active)
            except (KeyError, TypeError, ValueError) as ex:
                logger.warning(f"Ignoring malformed active-session cache: {ex}")
            else:
                self.active_session = envelope.session
                self.messages = envelope.messages
                self.checkpoint = envelope.checkpoint

        archive = self._storage.load(self._owner_id, ARCHIVE_KEY)
        if archive:
            try:
                self.archived_sessions = ArchiveEnvelope.from_json(archive).archived_sessions
            except (KeyError, TypeError, ValueError) as ex:
                logger.warning(f"Ignoring malformed archive cache: {ex}")

    def _persist_active(self) -> None:
        envelope = ActiveEnvelope(self.active_session, list(self.messages), self.checkpoint, utc_now())
        self._storage.save(self._owner_id, ACTIVE_KEY, envelope.to_json())

    def _persist_archive(self) -> None:
        # Provisional entries are local guesses and never written out.
        authoritative = [s for s in self.archived_sessions if s.id not in self._provisional]
        self._storage.save(self._owner_id, ARCHIVE_KEY, ArchiveEnvelope(authoritative, utc_now()).to_json())

    # -- plumbing --------------------------------------------------------

    async def _guard(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T | None:
        try:
            return await fn()
        except ChatCoreError as ex:
            logger.warning(f"{operation} failed: {ex}")
            self.last_error = ex
            return None

    async def _coalesce(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._in_flight[key] = task
            task.add_done_callback(lambda _t: self._in_flight.pop(key, None))
        return await asyncio.shield(task)

    # -- operations ------------------------------------------------------

    async def initialize(self) -> ChatSession | None:
        self.restore()
        return await self.refresh_active_session(force=True)

    async def refresh_active_session(self, force: bool = False) -> ChatSession | None:
        # A forced call joining a running refresh upgrades it instead of starting another.
        if force:
            self._force_active = True
        return await self._guard(
            "refresh_active_session",
            lambda: self._coalesce("active", self._refresh_active),
        )

    async def _refresh_active(self) -> ChatSession | None:
        session = await self._api.get_active_session()
        force, self._force_active = self._force_active, False
        if session is None:
            self.active_session = None
            self.messages = []
            self.checkpoint = None
            self._persist_active()
            return None

        stale = (
            force
            or self.checkpoint is None
            or self.checkpoint.session_id != session.id
            or self.checkpoint.message_count != session.message_count
        )
        if stale:
            messages = await self._api.load_messages(session.id)
            self._force_active = False
            self.messages = messages
            self.checkpoint = HydrationCheckpoint(
                session_id=session.id,
                last_message_id=messages[-1].id if messages else None,
                message_count=session.message_count,
            )
            logger.debug(f"Hydrated {len(messages)} messages for session {session.id}")
        self.active_session = session
        self._persist_active()
        return session

    async def load_archived_sessions(self, force: bool = False) -> list[ChatSession] | None:
        if self.archived_sessions and not force:
            return list(self.archived_sessions)
        return await self._guard(
            "load_archived_sessions",
            lambda: self._coalesce(f"archive:{force}", lambda: self._load_archived(force)),
        )

    async def _load_archived(self, force: bool) -> list[ChatSession]:
        sessions = await self._api.list_archived_sessions()
        self.archived_sessions = list(sessions)
        self._provisional.clear()
        if force:
            self._previews.clear()
        self._persist_archive()
        return list(sessions)

    async def preview_archived_session(self, session_id: str) -> list[ChatMessage] | None:
        if self.active_session is not None and self.active_session.id == session_id:
            return list(self.messages)
        cached = self._previews.get(session_id)
        if cached is not None:
            self._previews.move_to_end(session_id)
            return list(cached)
        return await self._guard(
            "preview_archived_session",
            lambda: self._coalesce(f"preview:{session_id}", lambda: self._fetch_preview(session_id)),
        )

    async def _fetch_preview(self, session_id: str) -> list[ChatMessage]:
        messages = await self._api.load_messages(session_id)
        self._previews[session_id] = list(messages)
        while len(self._previews) > self._max_previews:
            self._previews.popitem(last=False)
        return list(messages)

    async def activate_archived_session(self, session_id: str) -> ChatSession | None:
        activated = await self._guard(
            "activate_archived_session",
            lambda: self._api.activate_archived_session(session_id),
        )
        if activated is None:
            return None
        await self.refresh_active_session(force=True)
        self.evict_preview(session_id)
        await self.load_archived_sessions(force=True)
        return self.active_session

    async def start_new_chat_session(self) -> ChatSession | None:
        previous = self.active_session
        created = await self._guard("start_new_chat_session", self._api.create_new_session)
        if created is None:
            return None

        if previous is not None and previous.id != created.id:
            archived = replace(previous, archived=True, updated_at=utc_now())
            self.archived_sessions = [archived] + [s for s in self.archived_sessions if s.id != previous.id]
            self._provisional.add(previous.id)

        self.active_session = created
        self.messages = []
        self.checkpoint = HydrationCheckpoint(created.id, None, created.message_count)
        self._persist_active()

        await self.load_archived_sessions(force=True)
        return created

    async def rename_active_session(self, title: str) -> ChatSession | None:
        if self.active_session is None:
            return None
        renamed = await self._guard(
            "rename_active_session",
            lambda: self._api.set_session_title(self.active_session.id, title),
        )
        if renamed is not None:
            self.active_session = renamed
            self._persist_active()
        return renamed

    async def delete_archived_session(self, session_id: str) -> bool | None:
        return await self._guard("delete_archived_session", lambda: self._delete(session_id))

    async def _delete(self, session_id: str) -> bool:
        await self._api.delete_session(session_id)
        self.archived_sessions = [s for s in self.archived_sessions if s.id != session_id]
        self._previews.pop(session_id, None)
        self._provisional.discard(session_id)
        self._persist_archive()
        if self.active_session is not None and self.active_session.id == session_id:
            self.active_session = None
            self.messages = []
            self.checkpoint = None
            self._persist_active()
        return True
