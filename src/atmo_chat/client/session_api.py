from __future__ import annotations

import sqlite3
from collections.abc import Callable
from typing import Any, Protocol, TypeVar, runtime_checkable

import httpx
from loguru import logger
from tenacity import retry

from atmo_chat.errors import (
    AuthError,
    ChatCoreError,
    ChatDisabledError,
    ConflictError,
    ExtractionError,
    NotFoundError,
    call_with_conflict_retry,
)
from atmo_chat.gateway import SubmitResult
from atmo_chat.providers.common import default_retry_kwargs
from atmo_chat.store.models import ChatMessage, ChatSession
from atmo_chat.store.sessions import SessionLifecycleManager

T = TypeVar("T")


@runtime_checkable
class SessionApi(Protocol):
    """Server calls the client cache depends on, scoped to one owner."""

    async def get_active_session(self) -> ChatSession | None: ...
    async def get_or_create_active_session(self) -> ChatSession: ...
    async def create_new_session(self) -> ChatSession: ...
    async def list_archived_sessions(self) -> list[ChatSession]: ...
    async def activate_archived_session(self, session_id: str) -> ChatSession: ...
    async def delete_session(self, session_id: str) -> None: ...
    async def load_messages(self, session_id: str) -> list[ChatMessage]: ...
    async def set_session_title(self, session_id: str, title: str) -> ChatSession: ...


def _store_call(fn: Callable[..., T], *args, **kwargs) -> T:
    try:
        return fn(*args, **kwargs)
    except sqlite3.OperationalError as ex:
        raise ConflictError(f"Store is busy: {ex}") from ex
    except sqlite3.Error as ex:
        raise ChatCoreError(f"Store error: {ex}") from ex


class LocalSessionApi:
    """In-process ``SessionApi`` over a ``SessionLifecycleManager``.

    Driver errors are raised as ``ChatCoreError`` so the cache sees the same
    error types it gets from ``HttpSessionApi``.
    """

    def __init__(self, sessions: SessionLifecycleManager, owner_id: str):
        self._sessions = sessions
        self._owner_id = owner_id

    async def get_active_session(self) -> ChatSession | None:
        return _store_call(self._sessions.get_active_session, self._owner_id)

    async def get_or_create_active_session(self) -> ChatSession:
        return call_with_conflict_retry(_store_call, self._sessions.get_or_create_active_session, self._owner_id)

    async def create_new_session(self) -> ChatSession:
        return call_with_conflict_retry(_store_call, self._sessions.create_new_session, self._owner_id)

    async def list_archived_sessions(self) -> list[ChatSession]:
        return _store_call(self._sessions.list_archived_sessions, self._owner_id)

    async def activate_archived_session(self, session_id: str) -> ChatSession:
        return call_with_conflict_retry(
            _store_call, self._sessions.activate_archived_session, self._owner_id, session_id
        )

    async def delete_session(self, session_id: str) -> None:
        _store_call(self._sessions.delete_session, session_id, owner_id=self._owner_id)

    async def load_messages(self, session_id: str) -> list[ChatMessage]:
        return _store_call(self._sessions.load_messages, session_id, owner_id=self._owner_id)

    async def set_session_title(self, session_id: str, title: str) -> ChatSession:
        return _store_call(self._sessions.set_session_title, self._owner_id, session_id, title)


_STATUS_ERRORS: dict[int, type[ChatCoreError]] = {
    401: AuthError,
    404: NotFoundError,
    409: ConflictError,
    502: ExtractionError,
    503: ChatDisabledError,
}


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    try:
        body = response.json()
    except ValueError:
        body = None
    detail = body.get("error") if isinstance(body, dict) else None
    detail = detail or response.text
    error_type = _STATUS_ERRORS.get(response.status_code, ChatCoreError)
    raise error_type(f"{detail} (HTTP {response.status_code})")


class HttpSessionApi:
    """``SessionApi`` against the HTTP surface served by ``atmo_chat.api``."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self._headers = {"Authorization": f"Bearer {token}"}

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @retry(**default_retry_kwargs((httpx.TransportError,)))
    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        return await self._client.request(method, path, headers=self._headers, **kwargs)

    async def _request(self, method: str, path: str, parse: Callable[[Any], T] | None = None, **kwargs) -> T | Any:
        try:
            response = await self._send(method, path, **kwargs)
        except httpx.TransportError as ex:
            logger.warning(f"{method} {path} failed: {type(ex).__name__}: {ex}")
            raise ChatCoreError(f"Could not reach chat server: {ex}") from ex
        _raise_for_status(response)
        try:
            data = None if response.status_code == 204 or not response.content else response.json()
            return parse(data) if parse is not None else data
        except (AttributeError, KeyError, TypeError, ValueError) as ex:
            logger.warning(f"{method} {path} returned an unusable body: {type(ex).__name__}: {ex}")
            raise ChatCoreError(f"Malformed response from chat server for {method} {path}") from ex

    async def get_active_session(self) -> ChatSession | None:
        return await self._request("GET", "/sessions/active", lambda data: ChatSession.from_json(data) if data else None)

    async def get_or_create_active_session(self) -> ChatSession:
        return await self._request("POST", "/sessions/active", ChatSession.from_json)

    async def create_new_session(self) -> ChatSession:
        return await self._request("POST", "/sessions", ChatSession.from_json)

    async def list_archived_sessions(self) -> list[ChatSession]:
        return await self._request("GET", "/sessions/archived", lambda data: [ChatSession.from_json(item) for item in data or []])

    async def activate_archived_session(self, session_id: str) -> ChatSession:
        return await self._request("POST", f"/sessions/{session_id}/activate", ChatSession.from_json)

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/sessions/{session_id}")

    async def load_messages(self, session_id: str) -> list[ChatMessage]:
        return await self._request(
            "GET", f"/sessions/{session_id}/messages", lambda data: [ChatMessage.from_json(item) for item in data or []]
        )

    async def set_session_title(self, session_id: str, title: str) -> ChatSession:
        return await self._request("PATCH", f"/sessions/{session_id}", ChatSession.from_json, json={"title": title})

    async def submit_message(
        self,
        content: str,
        client_message_id: str,
        session_id: str | None = None,
    ) -> SubmitResult:
        body = {"message": content, "clientMessageId": client_message_id}
        if session_id is not None:
            body["sessionId"] = session_id
        return await self._request("POST", "/chat", SubmitResult.from_json, json=body)
