from __future__ import annotations

from uuid import uuid4

from loguru import logger

from atmo_chat.client.cache import ClientSessionCache
from atmo_chat.commands.router import CommandRouter
from atmo_chat.errors import ChatCoreError
from atmo_chat.gateway import MessageGateway
from atmo_chat.reconciler import EntityReconciler
from atmo_chat.services.session_controller import SessionController
from atmo_chat.store.entities import EntityQueue


class ChatShell:
    """Interactive front end: routes slash commands, sends everything else to the gateway."""

    _LINE_PREFIX = "atmo> "

    def __init__(
        self,
        cache: ClientSessionCache,
        gateway: MessageGateway,
        reconciler: EntityReconciler,
        queue: EntityQueue,
        *,
        token: str,
        owner_id: str,
    ):
        self._cache = cache
        self._gateway = gateway
        self._reconciler = reconciler
        self._queue = queue
        self._token = token
        self._owner_id = owner_id
        self._controller = SessionController(line_prefix=self._LINE_PREFIX)
        self._router = CommandRouter(
            on_help=self._print_help,
            on_new=self._handle_new,
            on_sessions=self._handle_sessions,
            on_resume=self._handle_resume,
            on_preview=self._handle_preview,
            on_delete=self._handle_delete,
            on_title=self._handle_title,
            on_reconcile=self._handle_reconcile,
            on_pending=self._handle_pending,
            on_unknown=lambda cmd: print(f"{self._LINE_PREFIX}Unknown local command: {cmd}"),
        )

    async def handle(self, user_input: str) -> None:
        if await self._router.try_handle(user_input):
            return
        await self.send(user_input)

    async def send(self, content: str, *, client_message_id: str | None = None) -> None:
        client_message_id = client_message_id or str(uuid4())
        try:
            result = await self._gateway.submit_message(self._token, content, client_message_id)
        except ChatCoreError as ex:
            retry_hint = " You can resend the same message." if ex.retryable else ""
            print(f"{self._LINE_PREFIX}Error: {ex}.{retry_hint}")
            return

        print(f"{self._LINE_PREFIX}{result.reply}")
        for item in result.entities_created:
            print(f"{self._LINE_PREFIX}  + {item['action']} {item['type']}: {item['name']}")
        if result.entities_pending:
            print(f"{self._LINE_PREFIX}  ({result.entities_pending} entities queued)")
        for step in result.next_steps:
            command = step.get("command")
            if command:
                print(f"{self._LINE_PREFIX}  next: {command}")
        await self._cache.refresh_active_session()

    def _report_error(self) -> None:
        if self._cache.last_error is not None:
            print(f"{self._LINE_PREFIX}Error: {self._cache.last_error}")
            self._cache.clear_error()

    async def _print_help(self) -> None:
        print(f"{self._LINE_PREFIX}Available commands:")
        print(f"{self._LINE_PREFIX}- /help")
        print(f"{self._LINE_PREFIX}- /new")
        print(f"{self._LINE_PREFIX}- /sessions")
        print(f"{self._LINE_PREFIX}- /resume <id-prefix>")
        print(f"{self._LINE_PREFIX}- /preview <id-prefix>")
        print(f"{self._LINE_PREFIX}- /delete <id-prefix>")
        print(f"{self._LINE_PREFIX}- /title <text>")
        print(f"{self._LINE_PREFIX}- /reconcile [dry]")
        print(f"{self._LINE_PREFIX}- /pending")

    async def _handle_new(self) -> None:
        session = await self._cache.start_new_chat_session()
        if session is None:
            self._report_error()
            return
        print(f"{self._LINE_PREFIX}Started new session [{self._controller.short_id(session.id)}]")

    async def _handle_sessions(self) -> None:
        sessions = await self._cache.load_archived_sessions(force=True)
        if sessions is None:
            self._report_error()
            return
        active = self._cache.active_session
        if active is not None:
            print(self._controller.format_session_list_entry(active, active_session_id=active.id))
        if not sessions:
            print(f"{self._LINE_PREFIX}No archived sessions.")
            return
        for session in sessions:
            print(
                self._controller.format_session_list_entry(
                    session,
                    active_session_id=None,
                    provisional=self._cache.is_provisional(session.id),
                )
            )

    async def _resolve(self, identifier: str, usage: str) -> str | None:
        if not identifier:
            print(f"{self._LINE_PREFIX}Usage: {usage}")
            return None
        sessions = await self._cache.load_archived_sessions()
        if sessions is None:
            self._report_error()
            return None
        try:
            session = self._controller.resolve_session(sessions, identifier)
        except ValueError as ex:
            print(f"{self._LINE_PREFIX}{ex}")
            return None
        # Unknown prefixes go to the server as-is so it can report NotFound.
        return session.id if session is not None else identifier

    async def _handle_resume(self, identifier: str) -> None:
        session_id = await self._resolve(identifier, "/resume <id-prefix>")
        if session_id is None:
            return
        session = await self._cache.activate_archived_session(session_id)
        if session is None:
            self._report_error()
            return
        print(f"{self._LINE_PREFIX}Resumed session [{self._controller.short_id(session.id)}]")
        for message in self._cache.messages[-5:]:
            print(self._controller.format_message_line(message))

    async def _handle_preview(self, identifier: str) -> None:
        session_id = await self._resolve(identifier, "/preview <id-prefix>")
        if session_id is None:
            return
        messages = await self._cache.preview_archived_session(session_id)
        if messages is None:
            self._report_error()
            return
        if not messages:
            print(f"{self._LINE_PREFIX}Session has no messages.")
        for message in messages:
            print(self._controller.format_message_line(message))

    async def _handle_delete(self, identifier: str) -> None:
        session_id = await self._resolve(identifier, "/delete <id-prefix>")
        if session_id is None:
            return
        if await self._cache.delete_archived_session(session_id) is None:
            self._report_error()
            return
        print(f"{self._LINE_PREFIX}Deleted session [{self._controller.short_id(session_id)}]")

    async def _handle_title(self, title: str) -> None:
        if not title:
            print(f"{self._LINE_PREFIX}Usage: /title <text>")
            return
        session = await self._cache.rename_active_session(title)
        if session is None:
            if self._cache.last_error is None:
                print(f"{self._LINE_PREFIX}No active session to name")
            self._report_error()
            return
        print(f"{self._LINE_PREFIX}Session renamed to: {session.title}")

    async def _handle_reconcile(self, arg: str) -> None:
        dry_run = True if arg.lower() == "dry" else None
        try:
            result = self._reconciler.reconcile(dry_run=dry_run)
        except ChatCoreError as ex:
            logger.warning(f"Manual reconcile failed: {ex}")
            print(f"{self._LINE_PREFIX}Error: {ex}")
            return
        for line in self._controller.format_reconcile_lines(result):
            print(line)

    async def _handle_pending(self) -> None:
        pending = self._queue.pending(self._owner_id)
        if not pending:
            print(f"{self._LINE_PREFIX}No pending entities.")
            return
        for entity in pending:
            name = entity.entity_data.get("name") or entity.entity_data.get("title") or "?"
            print(f"{self._LINE_PREFIX}- {entity.entity_type}: {name} [{self._controller.short_id(entity.id)}]")
