from __future__ import annotations

from collections.abc import Awaitable, Callable


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_new: Callable[[], Awaitable[None]],
        on_sessions: Callable[[], Awaitable[None]],
        on_resume: Callable[[str], Awaitable[None]],
        on_preview: Callable[[str], Awaitable[None]],
        on_delete: Callable[[str], Awaitable[None]],
        on_title: Callable[[str], Awaitable[None]],
        on_reconcile: Callable[[str], Awaitable[None]],
        on_pending: Callable[[], Awaitable[None]],
        on_unknown: Callable[[str], None],
    ) -> None:
        self._on_help = on_help
        self._on_new = on_new
        self._on_sessions = on_sessions
        self._on_resume = on_resume
        self._on_preview = on_preview
        self._on_delete = on_delete
        self._on_title = on_title
        self._on_reconcile = on_reconcile
        self._on_pending = on_pending
        self._on_unknown = on_unknown

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        command, _, arg = trimmed.partition(" ")
        arg = arg.strip()

        if command == "/help":
            await self._on_help()
        elif command == "/new":
            await self._on_new()
        elif command == "/sessions":
            await self._on_sessions()
        elif command == "/resume":
            await self._on_resume(arg)
        elif command == "/preview":
            await self._on_preview(arg)
        elif command == "/delete":
            await self._on_delete(arg)
        elif command == "/title":
            await self._on_title(arg)
        elif command == "/reconcile":
            await self._on_reconcile(arg)
        elif command == "/pending":
            await self._on_pending()
        else:
            self._on_unknown(trimmed)
        return True
