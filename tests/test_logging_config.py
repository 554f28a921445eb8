import asyncio
import json
import sys
import unittest

from loguru import logger

from atmo_chat.auth import Authenticator
from atmo_chat.extractor import Extraction
from atmo_chat.gateway import MessageGateway
from atmo_chat.logging_config import setup_logging
from atmo_chat.reconciler import EntityReconciler
from tests.store.base import StoreTestCase
from tests.test_gateway import FakeExtractor


class SetupLoggingTests(StoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._activity = self._tmp_dir / "logs" / "activity.jsonl"
        self._audit = self._tmp_dir / "logs" / "audit.jsonl"

    def tearDown(self) -> None:
        logger.remove()
        logger.add(sys.stderr)
        super().tearDown()

    def _setup(self) -> list[str]:
        return setup_logging(
            "INFO",
            [
                {"type": "jsonl", "path": str(self._activity)},
                {"type": "audit", "path": str(self._audit)},
                {"type": "syslog"},
            ],
        )

    @staticmethod
    def _records(path) -> list[dict]:
        # Closing the sinks flushes the files.
        logger.remove()
        return [json.loads(line)["record"] for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]

    def test_descriptions_skip_unknown_types(self) -> None:
        self.assertEqual(
            [f"jsonl ({self._activity}, INFO)", f"reconcile audit ({self._audit})"],
            self._setup(),
        )

    def test_audit_sink_keeps_only_reconcile_outcomes(self) -> None:
        self._setup()
        (entity_id,) = self._queue.enqueue("u1", [("project", {"name": "Porch"})], source_message_id=None)

        EntityReconciler(self._store, self._queue, self._events).reconcile()

        (record,) = self._records(self._audit)
        self.assertEqual("u1", record["extra"]["owner_id"])
        self.assertEqual(entity_id, record["extra"]["entity_id"])
        self.assertEqual("project", record["extra"]["entity_type"])
        self.assertEqual("created", record["extra"]["action"])

    def test_submission_records_carry_owner_and_session(self) -> None:
        self._setup()
        auth = Authenticator(self._store)
        gateway = MessageGateway(
            self._store,
            auth,
            self._sessions,
            self._queue,
            FakeExtractor(Extraction(reply="Noted.")),
            None,
        )

        result = asyncio.run(gateway.submit_message(auth.issue_token("u1"), "hello", "c1"))

        stored = [r for r in self._records(self._activity) if "c1 stored in" in r["message"]]
        self.assertEqual(1, len(stored))
        self.assertEqual("u1", stored[0]["extra"]["owner_id"])
        self.assertEqual(result.session_id, stored[0]["extra"]["session_id"])


if __name__ == "__main__":
    unittest.main()
