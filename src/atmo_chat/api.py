from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Header, Request, Response
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from atmo_chat.auth import bearer_token
from atmo_chat.bootstrap import AppRuntime
from atmo_chat.errors import (
    AuthError,
    ChatCoreError,
    ChatDisabledError,
    ConflictError,
    ExtractionError,
    NotFoundError,
    call_with_conflict_retry,
)

_STATUS_CODES: dict[type[ChatCoreError], int] = {
    AuthError: 401,
    NotFoundError: 404,
    ConflictError: 409,
    ExtractionError: 502,
    ChatDisabledError: 503,
}


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    clientMessageId: str = Field(min_length=1)
    sessionId: str | None = None


class TitleRequest(BaseModel):
    title: str


def _runtime(request: Request) -> AppRuntime:
    return _runtime_of(request.app)


def _owner_dep(request: Request, authorization: str | None = Header(default=None)) -> str:
    return _runtime(request).authenticator.authenticate(bearer_token(authorization))


def _service_key_dep(request: Request, x_api_key: str | None = Header(default=None, alias="X-API-Key")) -> None:
    expected = (_runtime(request).config.service_api_key or "").strip()
    if not expected or (x_api_key or "").strip() != expected:
        raise AuthError("invalid_api_key")


OwnerDep = Depends(_owner_dep)
ServiceKeyDep = Depends(_service_key_dep)

router = APIRouter()


@router.get("/health")
def health(request: Request) -> dict:
    runtime = _runtime(request)
    return {
        "ok": True,
        "chatEnabled": runtime.gateway.enabled,
        "sweeperRunning": runtime.sweeper.running,
    }


@router.post("/chat")
async def chat(body: ChatRequest, request: Request, authorization: str | None = Header(default=None)) -> dict:
    result = await _runtime(request).gateway.submit_message(
        bearer_token(authorization),
        body.message,
        body.clientMessageId,
        body.sessionId,
    )
    return result.to_json()


@router.get("/sessions/active")
def get_active_session(request: Request, owner_id: str = OwnerDep) -> dict | None:
    session = _runtime(request).sessions.get_active_session(owner_id)
    return session.to_json() if session else None


@router.post("/sessions/active")
def get_or_create_active_session(request: Request, owner_id: str = OwnerDep) -> dict:
    sessions = _runtime(request).sessions
    return call_with_conflict_retry(sessions.get_or_create_active_session, owner_id).to_json()


@router.post("/sessions", status_code=201)
def create_new_session(request: Request, owner_id: str = OwnerDep) -> dict:
    sessions = _runtime(request).sessions
    return call_with_conflict_retry(sessions.create_new_session, owner_id).to_json()


@router.get("/sessions/archived")
def list_archived_sessions(request: Request, owner_id: str = OwnerDep) -> list[dict]:
    return [s.to_json() for s in _runtime(request).sessions.list_archived_sessions(owner_id)]


@router.post("/sessions/{session_id}/activate")
def activate_archived_session(session_id: str, request: Request, owner_id: str = OwnerDep) -> dict:
    sessions = _runtime(request).sessions
    return call_with_conflict_retry(sessions.activate_archived_session, owner_id, session_id).to_json()


@router.delete("/sessions/{session_id}", status_code=204)
def delete_session(session_id: str, request: Request, owner_id: str = OwnerDep) -> Response:
    _runtime(request).sessions.delete_session(session_id, owner_id=owner_id)
    return Response(status_code=204)


@router.get("/sessions/{session_id}/messages")
def load_messages(session_id: str, request: Request, owner_id: str = OwnerDep) -> list[dict]:
    return [m.to_json() for m in _runtime(request).sessions.load_messages(session_id, owner_id=owner_id)]


@router.patch("/sessions/{session_id}")
def set_session_title(session_id: str, body: TitleRequest, request: Request, owner_id: str = OwnerDep) -> dict:
    return _runtime(request).sessions.set_session_title(owner_id, session_id, body.title).to_json()


@router.post("/entities/reconcile", dependencies=[ServiceKeyDep])
def reconcile(request: Request, dry_run: bool | None = None, batch_size: int | None = None) -> dict:
    runtime = _runtime(request)
    result = runtime.reconciler.reconcile(
        batch_size or runtime.config.reconcile_batch_size,
        dry_run=dry_run,
    )
    return result.to_json()


@router.get("/entities/pending")
def pending_entities(request: Request, limit: int = 20, owner_id: str = OwnerDep) -> list[dict]:
    return [e.to_json() for e in _runtime(request).queue.pending(owner_id, limit=limit)]


async def _chat_error_handler(request: Request, exc: ChatCoreError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {status}: {exc}")
    return JSONResponse(
        status_code=status,
        content={"error": str(exc), "code": exc.code, "retryable": exc.retryable},
    )


async def _value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc), "code": "invalid_request"})


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    runtime = _runtime_of(app)
    await runtime.sweeper.start()
    try:
        yield
    finally:
        await runtime.sweeper.close()


def _runtime_of(app: FastAPI) -> AppRuntime:
    return app.state.runtime


def create_app(runtime: AppRuntime) -> FastAPI:
    app = FastAPI(title="atmo-chat-core", version="0.1.0", lifespan=_lifespan)
    app.state.runtime = runtime
    app.add_exception_handler(ChatCoreError, _chat_error_handler)
    app.add_exception_handler(ValueError, _value_error_handler)
    app.include_router(router)
    return app
