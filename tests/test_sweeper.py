import asyncio
import unittest

from atmo_chat.errors import ConflictError
from atmo_chat.reconciler import EntityReconciler
from atmo_chat.sweeper import ReconcileSweeper
from tests.store.base import StoreTestCase


class _BusyReconciler:
    def __init__(self):
        self.calls = 0

    def reconcile(self, batch_size: int = 100):
        self.calls += 1
        raise ConflictError("Store is busy")


class ReconcileSweeperTests(StoreTestCase):
    def test_sweep_once_reconciles_pending(self) -> None:
        self._queue.enqueue("u1", [("project", {"name": "Porch"})], source_message_id=None)
        sweeper = ReconcileSweeper(EntityReconciler(self._store, self._queue, self._events), batch_size=10)

        result = asyncio.run(sweeper.sweep_once())

        self.assertEqual(1, result.processed)
        self.assertIs(result, sweeper.last_result)
        self.assertEqual(1, self._count("SELECT COUNT(*) FROM projects"))

    def test_sweep_once_swallows_store_conflicts(self) -> None:
        reconciler = _BusyReconciler()
        sweeper = ReconcileSweeper(reconciler)

        self.assertIsNone(asyncio.run(sweeper.sweep_once()))
        self.assertEqual(1, reconciler.calls)
        self.assertIsNone(sweeper.last_result)

    def test_background_loop_runs_until_closed(self) -> None:
        self._queue.enqueue("u1", [("task", {"name": "Sweep"})], source_message_id=None)
        sweeper = ReconcileSweeper(
            EntityReconciler(self._store, self._queue, self._events),
            interval_seconds=0.05,
        )

        async def run():
            await sweeper.start()
            self.assertTrue(sweeper.running)
            for _ in range(100):
                if sweeper.last_result is not None:
                    break
                await asyncio.sleep(0.05)
            await sweeper.close()

        asyncio.run(run())

        self.assertFalse(sweeper.running)
        self.assertEqual(1, self._count("SELECT COUNT(*) FROM project_tasks"))


if __name__ == "__main__":
    unittest.main()
