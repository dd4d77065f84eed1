"""
Stalled Job Monitor: detection and recovery of jobs abandoned by a worker

Background service that runs periodically to:
1. Find jobs that stayed active longer than their timeout plus a grace period
2. Count them as a failed attempt so the normal retry policy applies
3. Release parents whose children all settled but whose release was lost
4. Report per-queue counts for health checks
"""

import asyncio
from typing import Iterable, Optional
import structlog

from picturebook.core.config import settings
from picturebook.queues.queue import JobQueue, QueueName

logger = structlog.get_logger()


class StalledJobMonitor:
    """Background service for job health monitoring"""

    def __init__(
        self,
        queue: JobQueue,
        queue_names: Iterable[str] = tuple(QueueName),
        interval_seconds: Optional[int] = None,
        stalled_after_seconds: Optional[int] = None,
    ):
        self.queue = queue
        self.queue_names = [str(getattr(name, "value", name)) for name in queue_names]
        self.interval_seconds = interval_seconds or settings.monitor_interval_seconds
        if stalled_after_seconds is None:
            stalled_after_seconds = settings.job_timeout_seconds + settings.stalled_grace_seconds
        self.stalled_after_seconds = stalled_after_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the monitor background task"""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info("Stalled job monitor started", interval_seconds=self.interval_seconds)

    async def stop(self):
        """Stop the monitor background task"""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Stalled job monitor stopped")

    async def _monitor_loop(self):
        """Main monitoring loop"""
        while self._running:
            try:
                await self.check_and_recover_jobs()
            except Exception as e:
                logger.error("Stalled job monitor error", error=str(e))

            await asyncio.sleep(self.interval_seconds)

    async def check_and_recover_jobs(self) -> dict[str, list[str]]:
        """Check every queue for stalled jobs and parents whose release was lost"""
        recovered = {}
        for queue_name in self.queue_names:
            stalled = await self.queue.requeue_stalled(
                queue_name, older_than_ms=self.stalled_after_seconds * 1000
            )
            released = await self.queue.release_ready_parents(queue_name)
            if stalled:
                logger.warning(
                    "Stalled jobs recovered", queue=queue_name, count=len(stalled), job_ids=stalled
                )
            if released:
                logger.warning(
                    "Waiting parents released", queue=queue_name, count=len(released), job_ids=released
                )
            if stalled or released:
                recovered[queue_name] = stalled + released
        return recovered


async def get_queue_metrics(queue: JobQueue) -> dict:
    """Per-queue job counts for the detailed health check"""
    return {name.value: await queue.get_counts(name.value) for name in QueueName}
