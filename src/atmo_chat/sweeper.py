from __future__ import annotations

import asyncio

from loguru import logger

from atmo_chat.errors import ChatCoreError
from atmo_chat.reconciler import EntityReconciler, ReconcileResult


class ReconcileSweeper:
    """Runs the reconciler on an interval to pick up anything left pending."""

    def __init__(
        self,
        reconciler: EntityReconciler,
        *,
        interval_seconds: float = 60.0,
        batch_size: int = 100,
    ):
        self._reconciler = reconciler
        self._interval_seconds = max(0.05, interval_seconds)
        self._batch_size = max(1, batch_size)
        self._task: asyncio.Task | None = None
        self.last_result: ReconcileResult | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def sweep_once(self) -> ReconcileResult | None:
        try:
            result = await asyncio.to_thread(self._reconciler.reconcile, self._batch_size)
        except ChatCoreError as ex:
            logger.warning(f"Reconcile sweep skipped: {ex}")
            return None
        self.last_result = result
        if result.total:
            logger.info(f"Sweep reconciled {result.processed}/{result.total} entities")
        return result

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            await self.sweep_once()
