"""
Worker process: consumes the story, illustration and finalize queues

Run with ``python -m picturebook.worker``.
"""

import asyncio
import signal

import structlog

from picturebook.core.config import settings
from picturebook.core.database import async_engine
from picturebook.core.logging_config import configure_logging
from picturebook.queues.monitor import StalledJobMonitor
from picturebook.queues.queue import JobQueue, QueueName
from picturebook.queues.worker import QueueWorker
from picturebook.services.status_store import StatusStore
from picturebook.workers.dispatch import JobDispatcher
from picturebook.workers.finalize import FinalizeWorker
from picturebook.workers.illustration import IllustrationWorker
from picturebook.workers.story import StoryGenerationWorker

logger = structlog.get_logger()


def build_dispatcher(store: StatusStore) -> JobDispatcher:
    return JobDispatcher(
        story=StoryGenerationWorker(store),
        illustration=IllustrationWorker(store),
        finalize=FinalizeWorker(store),
    )


def build_workers(queue: JobQueue, dispatcher: JobDispatcher) -> list[QueueWorker]:
    concurrency = {
        QueueName.story_generation: settings.story_concurrency,
        QueueName.illustration_generation: settings.illustration_concurrency,
        QueueName.book_finalize: settings.finalize_concurrency,
    }
    return [
        QueueWorker(
            queue, name.value, dispatcher, concurrency=slots, on_timeout=dispatcher.on_timeout
        )
        for name, slots in concurrency.items()
    ]


async def run_workers():
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    queue = JobQueue()
    await queue.open()

    workers = build_workers(queue, build_dispatcher(StatusStore()))
    monitor = StalledJobMonitor(queue)

    for worker in workers:
        await worker.start()
    await monitor.start()
    logger.info("Workers running", queues=[worker.queue_name for worker in workers])

    await stop.wait()

    logger.info("Shutdown signal received, draining workers")
    await monitor.stop()
    await asyncio.gather(
        *(worker.close(timeout=settings.job_timeout_seconds) for worker in workers)
    )
    await queue.close()
    await async_engine.dispose()
    logger.info("Workers stopped")


def main():
    configure_logging()
    asyncio.run(run_workers())


if __name__ == "__main__":
    main()
