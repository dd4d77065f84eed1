"""
Job dispatch: routes a claimed job to the worker for its payload variant
"""

from picturebook.core.errors import InvalidJobError
from picturebook.models.jobs import FinalizeJob, IllustrationJob, StoryJob
from picturebook.queues.queue import Job, QueueName
from picturebook.workers.finalize import FinalizeWorker
from picturebook.workers.illustration import IllustrationWorker
from picturebook.workers.story import StoryGenerationWorker

# Payload variant accepted on each queue
QUEUE_PAYLOADS = {
    QueueName.story_generation.value: StoryJob,
    QueueName.illustration_generation.value: IllustrationJob,
    QueueName.book_finalize.value: FinalizeJob,
}


class JobDispatcher:
    def __init__(
        self,
        story: StoryGenerationWorker,
        illustration: IllustrationWorker,
        finalize: FinalizeWorker,
    ):
        self.story = story
        self.illustration = illustration
        self.finalize = finalize

    async def __call__(self, job: Job) -> dict:
        payload = job.payload

        expected = QUEUE_PAYLOADS.get(job.queue_name)
        if expected is None or not isinstance(payload, expected):
            raise InvalidJobError(
                f"Job {job.name} carries a {payload.kind} payload on queue {job.queue_name}"
            )

        if isinstance(payload, StoryJob):
            return await self.story.process(payload, job_id=job.id)
        if isinstance(payload, IllustrationJob):
            return await self.illustration.process(payload, job_id=job.id)
        if isinstance(payload, FinalizeJob):
            return await self.finalize.process(payload, job_id=job.id)
        raise InvalidJobError(f"Unhandled job payload: {type(payload).__name__}")

    async def on_timeout(self, job: Job, reason: str):
        """Record the outcome of an attempt that was cancelled by its timeout.

        A cancelled attempt never reaches the workers' own failure handling.
        Finalize writes nothing before its single transition, so it needs none.
        """
        payload = job.payload
        if isinstance(payload, StoryJob):
            await self.story.record_timeout(payload, reason, job_id=job.id)
        elif isinstance(payload, IllustrationJob):
            await self.illustration.record_timeout(payload, reason, job_id=job.id)
