"""
Sync Triggers

Decides when the mutation queue is drained: after a local mutation,
when connectivity comes back, and periodically in the background.
Drains are single-flight through the queue itself, so overlapping
triggers never dispatch the same record twice.
"""

import asyncio
from typing import Optional

import structlog

from tripsync.models.sync import QueueRunReport
from tripsync.sync.queue import MutationQueue


logger = structlog.get_logger(__name__)


class SyncTriggers:
    """Connectivity-aware scheduler for queue drains."""

    def __init__(
        self,
        queue: MutationQueue,
        interval_seconds: float = 60.0,
        online: bool = True,
    ):
        self._queue = queue
        self._interval = interval_seconds
        self._online = online
        self._periodic: Optional[asyncio.Task] = None
        self._drains: set[asyncio.Task] = set()

    @property
    def online(self) -> bool:
        return self._online

    @property
    def is_running(self) -> bool:
        return self._periodic is not None and not self._periodic.done()

    async def drain(self) -> Optional[QueueRunReport]:
        """Run the queue once. Errors are logged, not raised."""
        try:
            return await self._queue.process_queue()
        except Exception:
            logger.exception("queue_drain_failed")
            return None

    def _schedule_drain(self) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Called from synchronous code; the next periodic drain picks it up
            return None
        task = loop.create_task(self.drain())
        self._drains.add(task)
        task.add_done_callback(self._drains.discard)
        return task

    def kick(self) -> Optional[asyncio.Task]:
        """Request a drain after a local mutation (only when online)."""
        if not self._online:
            return None
        return self._schedule_drain()

    def on_connectivity_changed(self, online: bool) -> Optional[asyncio.Task]:
        """Record connectivity; a transition to online starts a drain."""
        was_online = self._online
        self._online = online
        logger.info("connectivity_changed", online=online)
        if online and not was_online:
            return self._schedule_drain()
        return None

    async def wait_idle(self) -> None:
        """Wait for drains scheduled so far to finish."""
        while self._drains:
            await asyncio.gather(*list(self._drains), return_exceptions=True)

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if self._online:
                await self.drain()

    def start(self) -> None:
        """Start the periodic drain task on the running loop."""
        if self.is_running:
            return
        self._periodic = asyncio.get_running_loop().create_task(self._periodic_loop())
        logger.info("sync_triggers_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        """Cancel the periodic task and any in-flight drains."""
        tasks = list(self._drains)
        if self._periodic is not None:
            tasks.append(self._periodic)
            self._periodic = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("sync_triggers_stopped")
