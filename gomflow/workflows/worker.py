"""Background worker pool draining reconciliation queue lanes."""
from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from gomflow.core.database import TRANSIENT_DB_ERRORS
from gomflow.services.logging import log_error
from gomflow.services.reconciliation_queue import ReconciliationQueue

logger = logging.getLogger(__name__)


class ReconciliationWorkerPool:
    """One asyncio task per lane; blocking queue work runs in worker threads."""

    def __init__(self, queue: ReconciliationQueue, poll_interval: Optional[float] = None) -> None:
        self.queue = queue
        self.poll_interval = poll_interval if poll_interval is not None else queue.settings.poll_interval_seconds
        self._tasks: List[asyncio.Task] = []
        self._stopping = False

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping = False
        await asyncio.to_thread(self.queue.release_stale_claims)
        self._tasks = [
            asyncio.create_task(self._run_lane(lane), name=f"reconciliation-lane-{lane}")
            for lane in range(self.queue.settings.lanes)
        ]
        logger.info("Started %d reconciliation lane worker(s)", len(self._tasks))

    async def stop(self) -> None:
        self._stopping = True
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Reconciliation workers stopped")

    async def _run_lane(self, lane: int) -> None:
        while not self._stopping:
            try:
                processed = await asyncio.to_thread(self.queue.process_next, lane)
            except TRANSIENT_DB_ERRORS as exc:
                log_error("queue_lane_db_error", f"lane {lane} could not reach the database", {"lane": lane}, exception=exc)
                processed = None
            if processed is None:
                await asyncio.sleep(self.poll_interval)
