from __future__ import annotations

import secrets
from datetime import UTC, datetime, timedelta

from atmo_chat.errors import AuthError
from atmo_chat.store.events import utc_now
from atmo_chat.store.store import WorkspaceStore


class Authenticator:
    """Resolves bearer tokens to owner ids."""

    def __init__(self, store: WorkspaceStore):
        self._store = store

    def issue_token(self, owner_id: str, *, ttl_seconds: int | None = None) -> str:
        token = secrets.token_urlsafe(32)
        expires_at = None
        if ttl_seconds is not None:
            expires_at = (datetime.now(UTC) + timedelta(seconds=ttl_seconds)).isoformat(timespec="microseconds")
        with self._store.transaction():
            self._store.execute(
                "INSERT INTO auth_tokens (token, owner_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
                (token, owner_id, utc_now(), expires_at),
            )
        return token

    def revoke_token(self, token: str) -> None:
        with self._store.transaction():
            self._store.execute("DELETE FROM auth_tokens WHERE token = ?", (token,))

    def authenticate(self, token: str | None) -> str:
        if not token or not token.strip():
            raise AuthError("You must be logged in to use chat.")
        row = self._store.execute(
            "SELECT owner_id, expires_at FROM auth_tokens WHERE token = ?",
            (token.strip(),),
        ).fetchone()
        if row is None:
            raise AuthError("Invalid credentials.")
        if row["expires_at"] and str(row["expires_at"]) <= utc_now():
            raise AuthError("Credentials have expired.")
        return str(row["owner_id"])


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None
