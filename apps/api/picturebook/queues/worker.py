"""
Queue Worker: pulls jobs from one queue and runs them with bounded concurrency
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

from picturebook.core.config import settings
from picturebook.queues.queue import Job, JobQueue, JobState

logger = structlog.get_logger()

Processor = Callable[[Job], Awaitable[Any]]
TimeoutHandler = Callable[[Job, str], Awaitable[None]]


class QueueWorker:
    """Consumer for a single queue.

    ``concurrency`` slots each loop claim -> process -> complete/fail. Any
    exception raised by the processor is recorded as a failed attempt; the
    job's own options decide whether it is retried.
    """

    def __init__(
        self,
        queue: JobQueue,
        queue_name: str,
        processor: Processor,
        concurrency: int = 1,
        poll_interval: Optional[float] = None,
        on_timeout: Optional[TimeoutHandler] = None,
    ):
        self.queue = queue
        self.queue_name = str(getattr(queue_name, "value", queue_name))
        self.processor = processor
        self.concurrency = max(1, concurrency)
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.worker_poll_interval
        )
        self.on_timeout = on_timeout
        self._running = False
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the worker slots"""
        if self._running:
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._slot_loop(slot)) for slot in range(self.concurrency)
        ]
        logger.info("Worker started", queue=self.queue_name, concurrency=self.concurrency)

    async def close(self, timeout: Optional[float] = None):
        """Stop claiming new jobs and wait for in-flight jobs to finish.

        Slots still busy after ``timeout`` seconds are cancelled; their jobs
        stay active and are picked up by the stalled-job monitor.
        """
        self._running = False
        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("Worker closed", queue=self.queue_name)

    async def _slot_loop(self, slot: int):
        while self._running:
            try:
                job = await self.run_once()
            except Exception as e:
                # Queue unreachable; back off and keep the slot alive
                logger.error("Worker loop error", queue=self.queue_name, slot=slot, error=str(e))
                job = None

            if job is None and self._running:
                await asyncio.sleep(self.poll_interval)

    async def run_once(self) -> Optional[Job]:
        """Claim and process at most one job. Returns the job, or None if idle."""
        job = await self.queue.claim(self.queue_name)
        if job is None:
            return None
        await self.process(job)
        return job

    async def process(self, job: Job) -> JobState:
        log = logger.bind(
            queue=self.queue_name,
            job_id=job.id,
            name=job.name,
            attempt=job.attempts_made + 1,
        )
        log.info("Job started")

        try:
            if job.opts.timeout:
                result = await asyncio.wait_for(self.processor(job), timeout=job.opts.timeout)
            else:
                result = await self.processor(job)
        except asyncio.TimeoutError:
            reason = f"job timed out after {job.opts.timeout}s"
            log.warning("Job timed out", timeout=job.opts.timeout)
            if self.on_timeout is not None:
                try:
                    await self.on_timeout(job, reason)
                except Exception as e:
                    log.error("Timeout handler failed", error=str(e))
            return await self.queue.fail(job, reason)
        except Exception as e:
            log.warning("Job raised", error=str(e), error_type=e.__class__.__name__)
            return await self.queue.fail(job, e)

        await self.queue.complete(job, result)
        log.info("Job completed")
        return JobState.completed
