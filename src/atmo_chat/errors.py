from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar

from loguru import logger
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

T = TypeVar("T")


class ChatCoreError(Exception):
    """Base class for errors surfaced to callers of the chat core."""

    code = "chat_error"
    retryable = False


class AuthError(ChatCoreError):
    code = "auth_error"


class ConflictError(ChatCoreError):
    """A lifecycle transition lost a race; retry once."""

    code = "conflict"
    retryable = True


class NotFoundError(ChatCoreError):
    code = "not_found"


class ExtractionError(ChatCoreError):
    """The extractor failed or returned unparseable output.

    The user message is already stored, so resubmitting with the same
    client message id is safe.
    """

    code = "extraction_failed"
    retryable = True


class ReconciliationError(ChatCoreError):
    code = "reconciliation_failed"

    def __init__(self, entity_id: str, reason: str):
        super().__init__(f"Entity {entity_id}: {reason}")
        self.entity_id = entity_id
        self.reason = reason


class ChatDisabledError(ChatCoreError):
    code = "chat_disabled"


def _on_conflict_retry(retry_state) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(f"Session transition conflict ({exc}); retrying once")


def call_with_conflict_retry(fn: Callable[..., T], *args, **kwargs) -> T:
    for attempt in Retrying(
        retry=retry_if_exception_type(ConflictError),
        stop=stop_after_attempt(2),
        before_sleep=_on_conflict_retry,
        reraise=True,
    ):
        with attempt:
            return fn(*args, **kwargs)
    raise AssertionError("unreachable")
