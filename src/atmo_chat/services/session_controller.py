from __future__ import annotations

from atmo_chat.reconciler import ReconcileResult
from atmo_chat.store.models import ChatMessage, ChatSession


class SessionController:
    def __init__(self, *, line_prefix: str, short_id_len: int = 8, preview_chars: int = 120):
        self._line_prefix = line_prefix
        self._short_id_len = short_id_len
        self._preview_chars = preview_chars

    def short_id(self, value: str) -> str:
        if len(value) <= self._short_id_len:
            return value
        return value[: self._short_id_len]

    def resolve_session(self, sessions: list[ChatSession], identifier: str) -> ChatSession | None:
        """Match a full id or a unique id prefix; raises ValueError when ambiguous."""
        identifier = identifier.strip()
        if not identifier:
            return None
        for session in sessions:
            if session.id == identifier:
                return session
        matches = [s for s in sessions if s.id.startswith(identifier)]
        if len(matches) > 1:
            raise ValueError(f"Ambiguous session id prefix: {identifier}")
        return matches[0] if matches else None

    def format_session_list_entry(
        self,
        session: ChatSession,
        *,
        active_session_id: str | None,
        provisional: bool = False,
    ) -> str:
        marker = "*" if session.id == active_session_id else " "
        title = session.title or "(untitled)"
        status = "archived" if session.archived else "active"
        if provisional:
            status += ", pending"
        return (
            f"{self._line_prefix}{marker} {title} [{self.short_id(session.id)}] "
            f"(status={status}, messages={session.message_count}, updated={session.updated_at})"
        )

    def format_message_line(self, message: ChatMessage) -> str:
        content = " ".join(message.content.split())
        if len(content) > self._preview_chars:
            content = content[: self._preview_chars - 3] + "..."
        return f"{self._line_prefix}{message.role}: {content}"

    def format_reconcile_lines(self, result: ReconcileResult) -> list[str]:
        mode = " (dry run)" if result.dry_run else ""
        lines = [f"{self._line_prefix}Reconciled {result.processed}/{result.total} entities{mode}"]
        for outcome in result.outcomes:
            lines.append(f"{self._line_prefix}- {outcome.action} {outcome.entity_type}: {outcome.name}")
        for error in result.errors:
            lines.append(f"{self._line_prefix}! {error}")
        return lines
