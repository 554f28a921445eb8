import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from atmo_chat.store import EntityQueue, EventEmitter, SessionLifecycleManager, WorkspaceStore


PROJECT_ROOT = Path(__file__).resolve().parents[2]


class StoreTestCase(unittest.TestCase):
    lease_seconds = 300.0

    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._db_path = str(self._tmp_dir / "workspace.db")
        self._store = WorkspaceStore(self._db_path)
        self._events = EventEmitter(self._store)
        self._sessions = SessionLifecycleManager(self._store, self._events)
        self._queue = EntityQueue(self._store, lease_seconds=self.lease_seconds)

    def tearDown(self) -> None:
        self._store.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def _count(self, query: str, params: tuple = ()) -> int:
        return int(self._store.execute(query, params).fetchone()[0])
