import asyncio
import unittest

from atmo_chat.auth import Authenticator
from atmo_chat.errors import AuthError, ChatDisabledError, ConflictError, ExtractionError, NotFoundError
from atmo_chat.extractor import Extraction, ExtractionContext
from atmo_chat.gateway import MessageGateway
from atmo_chat.reconciler import EntityReconciler
from tests.store.base import StoreTestCase


class FakeExtractor:
    def __init__(self, extraction: Extraction | None = None, *, error: BaseException | None = None, delay: float = 0.0):
        self.extraction = extraction or Extraction(reply="Got it.")
        self.error = error
        self.delay = delay
        self.gate: asyncio.Event | None = None
        self.contexts: list[ExtractionContext] = []

    async def extract(self, context: ExtractionContext) -> Extraction:
        self.contexts.append(context)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.extraction


class GatewayTestCase(StoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._auth = Authenticator(self._store)
        self._token = self._auth.issue_token("u1")
        self._extractor = FakeExtractor()
        self._reconciler = EntityReconciler(self._store, self._queue, self._events)

    def _gateway(self, **kwargs) -> MessageGateway:
        kwargs.setdefault("reconciler", self._reconciler)
        return MessageGateway(self._store, self._auth, self._sessions, self._queue, self._extractor, **kwargs)

    def _message_count(self) -> int:
        return self._count("SELECT COUNT(*) FROM chat_messages")


class MessageGatewayTests(GatewayTestCase):
    def test_first_message_creates_session_with_two_messages(self) -> None:
        gateway = self._gateway()

        result = asyncio.run(gateway.submit_message(self._token, "Hello there", "c1"))

        session = self._sessions.get_active_session("u1")
        self.assertEqual(session.id, result.session_id)
        self.assertEqual(2, session.message_count)
        self.assertEqual("Got it.", result.reply)
        self.assertFalse(result.replayed)
        messages = self._sessions.load_messages(session.id)
        self.assertEqual(["user", "assistant"], [m.role for m in messages])
        self.assertEqual({"replyTo": result.user_message_id}, messages[1].metadata)

        self._sessions.create_new_session("u1")
        archived = self._sessions.list_archived_sessions("u1")
        self.assertEqual([session.id], [s.id for s in archived])
        self.assertEqual(2, archived[0].message_count)

    def test_resubmit_replays_stored_result(self) -> None:
        self._extractor.extraction = Extraction(reply="Noted.", entities=[("project", {"name": "Kitchen"})])
        gateway = self._gateway()

        first = asyncio.run(gateway.submit_message(self._token, "Start Kitchen project", "c1"))
        second = asyncio.run(gateway.submit_message(self._token, "Start Kitchen project", "c1"))

        self.assertEqual(1, len(self._extractor.contexts))
        self.assertTrue(second.replayed)
        self.assertEqual(first.assistant_message_id, second.assistant_message_id)
        self.assertEqual(first.to_json(), second.to_json())
        self.assertEqual(2, self._message_count())
        self.assertEqual(1, self._count("SELECT COUNT(*) FROM claude_parsed_entities"))

    def test_concurrent_duplicates_are_coalesced(self) -> None:
        gateway = self._gateway()

        async def run():
            self._extractor.gate = asyncio.Event()
            first = asyncio.ensure_future(gateway.submit_message(self._token, "hi", "c1"))
            second = asyncio.ensure_future(gateway.submit_message(self._token, "hi", "c1"))
            await asyncio.sleep(0)
            self._extractor.gate.set()
            return await asyncio.gather(first, second)

        first, second = asyncio.run(run())

        self.assertEqual(1, len(self._extractor.contexts))
        self.assertEqual(first.assistant_message_id, second.assistant_message_id)
        self.assertEqual(2, self._message_count())

    def test_bad_credentials_write_nothing(self) -> None:
        gateway = self._gateway()

        for credentials in (None, "", "not-a-token"):
            with self.assertRaises(AuthError):
                asyncio.run(gateway.submit_message(credentials, "hello", "c1"))

        self.assertEqual(0, self._count("SELECT COUNT(*) FROM chat_sessions"))
        self.assertEqual(0, self._message_count())
        self.assertEqual([], self._extractor.contexts)

    def test_revoked_token_is_rejected(self) -> None:
        gateway = self._gateway()
        self._auth.revoke_token(self._token)
        with self.assertRaises(AuthError):
            asyncio.run(gateway.submit_message(self._token, "hello", "c1"))

    def test_disabled_gateway_rejects_before_auth(self) -> None:
        gateway = self._gateway(enabled=False)

        with self.assertRaises(ChatDisabledError):
            asyncio.run(gateway.submit_message("not-a-token", "hello", "c1"))
        self.assertFalse(gateway.enabled)
        self.assertEqual(0, self._count("SELECT COUNT(*) FROM chat_sessions"))

    def test_empty_message_or_id_is_rejected(self) -> None:
        gateway = self._gateway()
        with self.assertRaises(ValueError):
            asyncio.run(gateway.submit_message(self._token, "   ", "c1"))
        with self.assertRaises(ValueError):
            asyncio.run(gateway.submit_message(self._token, "hello", ""))
        self.assertEqual(0, self._message_count())

    def test_extraction_failure_keeps_user_message_and_resubmit_completes(self) -> None:
        self._extractor.error = ExtractionError("bad json")
        gateway = self._gateway()

        with self.assertRaises(ExtractionError):
            asyncio.run(gateway.submit_message(self._token, "Plan my week", "c1"))

        messages = self._sessions.recent_messages("u1")
        self.assertEqual(["user"], [m.role for m in messages])
        self.assertEqual(0, self._count("SELECT COUNT(*) FROM chat_submissions"))

        self._extractor.error = None
        result = asyncio.run(gateway.submit_message(self._token, "Plan my week", "c1"))

        roles = [m.role for m in self._sessions.recent_messages("u1")]
        self.assertEqual(["user", "assistant"], roles)
        self.assertEqual(messages[0].id, result.user_message_id)

    def test_extractor_timeout_becomes_extraction_error(self) -> None:
        self._extractor.delay = 1.0
        gateway = self._gateway(extractor_timeout_seconds=0.05)

        with self.assertRaises(ExtractionError) as ctx:
            asyncio.run(gateway.submit_message(self._token, "hello", "c1"))

        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(1, self._message_count())

    def test_unexpected_extractor_error_becomes_extraction_error(self) -> None:
        self._extractor.error = RuntimeError("socket closed")
        gateway = self._gateway()

        with self.assertRaises(ExtractionError) as ctx:
            asyncio.run(gateway.submit_message(self._token, "hello", "c1"))

        self.assertIn("socket closed", str(ctx.exception))

    def test_inline_reconcile_reports_created_entities(self) -> None:
        self._extractor.extraction = Extraction(
            reply="Added.",
            entities=[("project", {"name": "Garage"}), ("task", {"name": "Clear shelves", "project": "Garage"})],
            next_steps=[{"action": "review", "description": "Review tasks", "command": "/pending"}],
        )
        gateway = self._gateway()

        result = asyncio.run(gateway.submit_message(self._token, "Garage cleanup", "c1"))

        self.assertEqual(2, result.entities_extracted)
        self.assertEqual(0, result.entities_pending)
        self.assertEqual(["Garage", "Clear shelves"], [e["name"] for e in result.entities_created])
        self.assertEqual("/pending", result.next_steps[0]["command"])
        session = self._sessions.get_session(result.session_id)
        self.assertEqual(2, session.message_count)
        source_ids = {
            row["source_message_id"]
            for row in self._store.execute("SELECT source_message_id FROM claude_parsed_entities").fetchall()
        }
        self.assertEqual({result.assistant_message_id}, source_ids)

        replay = asyncio.run(gateway.submit_message(self._token, "Garage cleanup", "c1"))
        self.assertEqual(result.entities_created, replay.entities_created)

    def test_invalid_entities_stay_pending(self) -> None:
        self._extractor.extraction = Extraction(
            reply="Added.",
            entities=[("task", {"description": "nameless"}), ("goal", {"name": "Save money"})],
        )
        gateway = self._gateway()

        result = asyncio.run(gateway.submit_message(self._token, "stuff", "c1"))

        self.assertEqual(1, len(result.entities_created))
        self.assertEqual(1, result.entities_pending)
        self.assertEqual(1, len(self._queue.pending("u1")))

    def test_without_inline_reconcile_entities_are_queued(self) -> None:
        self._extractor.extraction = Extraction(reply="Queued.", entities=[("knowledge", {"name": "Recipe"})])
        gateway = self._gateway(reconcile_on_submit=False)

        result = asyncio.run(gateway.submit_message(self._token, "save my recipe", "c1"))

        self.assertEqual([], result.entities_created)
        self.assertEqual(1, result.entities_pending)
        self.assertEqual(0, self._count("SELECT COUNT(*) FROM knowledge_items"))

    def test_history_excludes_current_message(self) -> None:
        gateway = self._gateway()
        asyncio.run(gateway.submit_message(self._token, "first", "c1"))
        asyncio.run(gateway.submit_message(self._token, "second", "c2"))

        context = self._extractor.contexts[-1]
        self.assertEqual("second", context.message)
        self.assertEqual(["first", "Got it."], [m.content for m in context.history])

    def test_active_projects_are_passed_to_extractor(self) -> None:
        self._queue.enqueue("u1", [("project", {"name": "Attic"})], source_message_id=None)
        self._reconciler.reconcile()
        gateway = self._gateway()

        asyncio.run(gateway.submit_message(self._token, "hello", "c1"))

        self.assertEqual(["Attic"], [p["name"] for p in self._extractor.contexts[0].projects])

    def test_explicit_session_id(self) -> None:
        archived = self._sessions.get_or_create_active_session("u1")
        self._sessions.create_new_session("u1")
        active = self._sessions.get_active_session("u1")
        gateway = self._gateway()

        result = asyncio.run(gateway.submit_message(self._token, "hi", "c1", session_id=active.id))
        self.assertEqual(active.id, result.session_id)

        with self.assertRaises(ConflictError):
            asyncio.run(gateway.submit_message(self._token, "hi", "c2", session_id=archived.id))

    def test_foreign_session_is_not_found(self) -> None:
        theirs = self._sessions.get_or_create_active_session("u2")
        gateway = self._gateway()

        with self.assertRaises(NotFoundError):
            asyncio.run(gateway.submit_message(self._token, "hi", "c1", session_id=theirs.id))
        self.assertEqual(0, self._message_count())


if __name__ == "__main__":
    unittest.main()
