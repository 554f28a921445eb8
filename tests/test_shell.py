import asyncio
import io
import unittest
from contextlib import redirect_stdout

from atmo_chat.auth import Authenticator
from atmo_chat.client import ClientSessionCache, LocalSessionApi, MemoryCacheStorage
from atmo_chat.errors import ExtractionError
from atmo_chat.extractor import Extraction
from atmo_chat.gateway import MessageGateway
from atmo_chat.reconciler import EntityReconciler
from atmo_chat.shell import ChatShell
from tests.store.base import StoreTestCase
from tests.test_gateway import FakeExtractor


class ChatShellTests(StoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        auth = Authenticator(self._store)
        self._extractor = FakeExtractor(
            Extraction(
                reply="Added your task.",
                entities=[("task", {"name": "Book flights"})],
                next_steps=[{"action": "create_task", "description": "d", "command": "add hotel task"}],
            )
        )
        self._reconciler = EntityReconciler(self._store, self._queue, self._events)
        gateway = MessageGateway(self._store, auth, self._sessions, self._queue, self._extractor, self._reconciler)
        self._cache = ClientSessionCache(LocalSessionApi(self._sessions, "u1"), MemoryCacheStorage(), "u1")
        self._shell = ChatShell(
            self._cache,
            gateway,
            self._reconciler,
            self._queue,
            token=auth.issue_token("u1"),
            owner_id="u1",
        )

    def _run(self, line: str) -> str:
        out = io.StringIO()
        with redirect_stdout(out):
            asyncio.run(self._shell.handle(line))
        return out.getvalue()

    def test_message_prints_reply_created_entities_and_next_steps(self) -> None:
        output = self._run("I need to book flights")

        self.assertIn("atmo> Added your task.", output)
        self.assertIn("+ created task: Book flights", output)
        self.assertIn("next: add hotel task", output)
        self.assertEqual(2, len(self._cache.messages))

    def test_extraction_error_suggests_resend(self) -> None:
        self._extractor.error = ExtractionError("Extractor timed out after 60s")

        output = self._run("hello")

        self.assertIn("Error: Extractor timed out after 60s. You can resend the same message.", output)

    def test_new_and_sessions(self) -> None:
        self._run("first message")
        first_id = self._cache.active_session.id

        output = self._run("/new")
        self.assertIn("Started new session", output)

        listing = self._run("/sessions")
        self.assertIn(f"[{first_id[:8]}]", listing)
        self.assertIn("status=archived", listing)

    def test_resume_and_preview_by_prefix(self) -> None:
        self._run("first message")
        first_id = self._cache.active_session.id
        self._run("/new")

        preview = self._run(f"/preview {first_id[:8]}")
        self.assertIn("atmo> user: first message", preview)

        resumed = self._run(f"/resume {first_id[:8]}")
        self.assertIn("Resumed session", resumed)
        self.assertEqual(first_id, self._cache.active_session.id)

    def test_resume_unknown_reports_server_error(self) -> None:
        output = self._run("/resume deadbeef")
        self.assertIn("Error: Session not found: deadbeef", output)
        self.assertIsNone(self._cache.last_error)

    def test_usage_messages(self) -> None:
        self.assertIn("Usage: /resume <id-prefix>", self._run("/resume"))
        self.assertIn("Usage: /title <text>", self._run("/title"))
        self.assertIn("No active session to name", self._run("/title Trip"))
        self.assertIn("Unknown local command: /frobnicate", self._run("/frobnicate"))

    def test_title_and_delete(self) -> None:
        self._run("hello")
        self.assertIn("Session renamed to: Holiday", self._run("/title Holiday"))
        old_id = self._cache.active_session.id
        self._run("/new")

        output = self._run(f"/delete {old_id}")

        self.assertIn(f"Deleted session [{old_id[:8]}]", output)
        self.assertIsNone(self._sessions.get_session(old_id))

    def test_pending_and_reconcile(self) -> None:
        self._queue.enqueue("u1", [("goal", {"name": "Read 12 books"})], source_message_id=None)

        self.assertIn("- goal: Read 12 books", self._run("/pending"))
        self.assertIn("Reconciled 1/1 entities (dry run)", self._run("/reconcile dry"))
        self.assertIn("- created goal: Read 12 books", self._run("/reconcile"))
        self.assertIn("No pending entities.", self._run("/pending"))

    def test_help_lists_commands(self) -> None:
        output = self._run("/help")
        for command in ("/new", "/sessions", "/resume", "/preview", "/delete", "/title", "/reconcile", "/pending"):
            self.assertIn(command, output)


if __name__ == "__main__":
    unittest.main()
