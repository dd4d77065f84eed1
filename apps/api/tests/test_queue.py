"""
Job Queue Tests
Redis-backed queues, retries and parent/child flows
"""

import pytest
from unittest.mock import AsyncMock, patch

import redis.asyncio as redis

from picturebook.core.errors import QueueClosedError, QueueError
from picturebook.models.jobs import FinalizeJob, IllustrationJob
from picturebook.queues.queue import (
    Backoff,
    FlowJob,
    JobOptions,
    JobQueue,
    JobState,
    QueueName,
)

STORY = QueueName.story_generation.value
ILLUSTRATION = QueueName.illustration_generation.value
FINALIZE = QueueName.book_finalize.value


def finalize_payload(book_id="book-1"):
    return FinalizeJob(book_id=book_id, user_id="user-1")


def illustration_payload(page_number=1, book_id="book-1"):
    return IllustrationJob(
        user_id="user-1",
        book_id=book_id,
        page_id=f"page-{page_number}",
        page_number=page_number,
        text="Hello",
        art_style="pen",
        original_image_url="https://images.test/p.jpg",
    )


def make_flow(children=2, child_opts=None):
    child_opts = child_opts or JobOptions(remove_dependency_on_failure=True)
    return FlowJob(
        name="finalize-book-book-1",
        queue_name=FINALIZE,
        payload=finalize_payload(),
        children=[
            FlowJob(
                name=f"generate-illustration-book-1-p{n}",
                queue_name=ILLUSTRATION,
                payload=illustration_payload(n),
                opts=child_opts,
            )
            for n in range(1, children + 1)
        ],
    )


class TestSingleJobs:
    """add / claim / complete."""

    @pytest.mark.asyncio
    async def test_add_claim_complete(self, queue: JobQueue):
        job = await queue.add(FINALIZE, "finalize-book-book-1", finalize_payload())

        claimed = await queue.claim(FINALIZE)
        assert claimed.id == job.id
        assert claimed.state == JobState.active
        assert claimed.data["kind"] == "finalize"
        assert claimed.data["bookId"] == "book-1"

        await queue.complete(claimed, {"status": "COMPLETED"})

        stored = await queue.get_job(FINALIZE, job.id)
        assert stored.state == JobState.completed
        assert stored.return_value == {"status": "COMPLETED"}
        assert await queue.claim(FINALIZE) is None

    @pytest.mark.asyncio
    async def test_claim_is_fifo(self, queue: JobQueue):
        first = await queue.add(FINALIZE, "a", finalize_payload("a"))
        second = await queue.add(FINALIZE, "b", finalize_payload("b"))

        assert (await queue.claim(FINALIZE)).id == first.id
        assert (await queue.claim(FINALIZE)).id == second.id

    @pytest.mark.asyncio
    async def test_payload_is_parsed_variant(self, queue: JobQueue):
        await queue.add(ILLUSTRATION, "p1", illustration_payload(1))
        claimed = await queue.claim(ILLUSTRATION)

        payload = claimed.payload
        assert isinstance(payload, IllustrationJob)
        assert payload.page_number == 1

    @pytest.mark.asyncio
    async def test_counts(self, queue: JobQueue):
        await queue.add(STORY, "a", finalize_payload())
        await queue.add(STORY, "b", finalize_payload())
        await queue.claim(STORY)

        counts = await queue.get_counts(STORY)
        assert counts["waiting"] == 1
        assert counts["active"] == 1

    @pytest.mark.asyncio
    async def test_closed_queue_raises(self):
        closed = JobQueue(prefix="test")
        with pytest.raises(QueueClosedError):
            await closed.add(STORY, "a", finalize_payload())


class TestRetries:
    """fail / delayed retry / dead."""

    @pytest.mark.asyncio
    async def test_exponential_backoff_schedule(self, queue: JobQueue):
        opts = JobOptions(attempts=3, backoff=Backoff(type="exponential", delay=10_000))
        await queue.add(ILLUSTRATION, "p1", illustration_payload(), opts)

        with patch("picturebook.queues.queue.now_ms", return_value=1_000_000):
            job = await queue.claim(ILLUSTRATION)
            state = await queue.fail(job, RuntimeError("boom"))
            assert state == JobState.delayed
            score = await queue.redis.zscore(f"test:{ILLUSTRATION}:delayed", job.id)
            assert score == 1_010_000
            # Not due yet
            assert await queue.claim(ILLUSTRATION) is None

        with patch("picturebook.queues.queue.now_ms", return_value=1_010_000):
            retry = await queue.claim(ILLUSTRATION)
            assert retry.id == job.id
            assert retry.attempts_made == 1
            assert await queue.fail(retry, "again") == JobState.delayed
            score = await queue.redis.zscore(f"test:{ILLUSTRATION}:delayed", job.id)
            assert score == 1_030_000

    @pytest.mark.asyncio
    async def test_attempts_exhausted_moves_to_failed(self, queue: JobQueue):
        await queue.add(STORY, "s", finalize_payload(), JobOptions(attempts=1))

        job = await queue.claim(STORY)
        assert await queue.fail(job, ValueError("bad payload")) == JobState.failed

        stored = await queue.get_job(STORY, job.id)
        assert stored.state == JobState.failed
        assert stored.failed_reason == "bad payload"
        assert (await queue.get_counts(STORY))["failed"] == 1

    def test_backoff_delay(self):
        backoff = Backoff(type="exponential", delay=10_000)
        assert [backoff.delay_for(n) for n in (1, 2, 3)] == [10_000, 20_000, 40_000]
        assert Backoff(type="fixed", delay=500).delay_for(3) == 500
        assert JobOptions().backoff_delay(2) == 0


class TestFlows:
    """Parent/child flows."""

    @pytest.mark.asyncio
    async def test_parent_waits_for_all_children(self, queue: JobQueue):
        root = await queue.add_flow(make_flow(children=2))

        assert root.state == JobState.waiting_children
        assert len(root.children) == 2
        assert await queue.get_dependencies(root) == {child.key for child in root.children}
        assert await queue.claim(FINALIZE) is None

        first = await queue.claim(ILLUSTRATION)
        await queue.complete(first, {"status": "OK"})
        assert await queue.claim(FINALIZE) is None

        second = await queue.claim(ILLUSTRATION)
        await queue.complete(second, {"status": "FLAGGED"})

        parent = await queue.claim(FINALIZE)
        assert parent.id == root.id
        values = await queue.get_children_values(parent)
        assert sorted(v["status"] for v in values.values()) == ["FLAGGED", "OK"]

    @pytest.mark.asyncio
    async def test_failed_child_releases_parent(self, queue: JobQueue):
        opts = JobOptions(attempts=1, remove_dependency_on_failure=True)
        root = await queue.add_flow(make_flow(children=2, child_opts=opts))

        ok = await queue.claim(ILLUSTRATION)
        await queue.complete(ok, {"status": "OK"})
        bad = await queue.claim(ILLUSTRATION)
        await queue.fail(bad, "source image missing")

        parent = await queue.claim(FINALIZE)
        assert parent is not None and parent.id == root.id
        failed = await queue.get_failed_children(parent)
        assert failed == {bad.key: "source image missing"}

    @pytest.mark.asyncio
    async def test_all_children_failed_still_releases_parent(self, queue: JobQueue):
        opts = JobOptions(attempts=1, remove_dependency_on_failure=True)
        root = await queue.add_flow(make_flow(children=2, child_opts=opts))

        for _ in range(2):
            job = await queue.claim(ILLUSTRATION)
            await queue.fail(job, "boom")

        parent = await queue.claim(FINALIZE)
        assert parent.id == root.id

    @pytest.mark.asyncio
    async def test_fail_parent_on_failure(self, queue: JobQueue):
        opts = JobOptions(attempts=1, fail_parent_on_failure=True)
        root = await queue.add_flow(make_flow(children=2, child_opts=opts))

        job = await queue.claim(ILLUSTRATION)
        await queue.fail(job, "boom")

        parent = await queue.get_job(FINALIZE, root.id)
        assert parent.state == JobState.failed
        assert await queue.claim(FINALIZE) is None

    @pytest.mark.asyncio
    async def test_retrying_child_keeps_parent_waiting(self, queue: JobQueue):
        opts = JobOptions(attempts=2, remove_dependency_on_failure=True)
        root = await queue.add_flow(make_flow(children=1, child_opts=opts))

        job = await queue.claim(ILLUSTRATION)
        assert await queue.fail(job, "transient") == JobState.delayed
        assert await queue.get_dependencies(root) == {job.key}
        assert await queue.claim(FINALIZE) is None

    @pytest.mark.asyncio
    async def test_add_flow_is_atomic(self, queue: JobQueue):
        real_pipeline = queue.redis.pipeline

        def failing_pipeline(*args, **kwargs):
            pipe = real_pipeline(*args, **kwargs)
            pipe.execute = AsyncMock(side_effect=redis.ConnectionError("connection lost"))
            return pipe

        with patch.object(queue.redis, "pipeline", side_effect=failing_pipeline):
            with pytest.raises(QueueError):
                await queue.add_flow(make_flow(children=3))

        assert await queue.redis.keys("test:*") == []


    @pytest.mark.asyncio
    async def test_lost_parent_release_is_recovered_by_monitor(self, queue: JobQueue):
        from picturebook.queues.monitor import StalledJobMonitor

        root = await queue.add_flow(make_flow(children=1))
        child = await queue.claim(ILLUSTRATION)

        with patch.object(
            queue, "_release_parent", AsyncMock(side_effect=redis.ConnectionError("connection lost"))
        ):
            with pytest.raises(redis.ConnectionError):
                await queue.complete(child, {"status": "OK"})

        parent = await queue.get_job(FINALIZE, root.id)
        assert parent.state == JobState.waiting_children
        assert await queue.get_dependencies(parent) == set()
        assert await queue.claim(FINALIZE) is None

        monitor = StalledJobMonitor(queue, interval_seconds=1, stalled_after_seconds=0)
        recovered = await monitor.check_and_recover_jobs()

        assert recovered == {FINALIZE: [root.id]}
        released = await queue.claim(FINALIZE)
        assert released.id == root.id

    @pytest.mark.asyncio
    async def test_release_sweep_leaves_pending_parents(self, queue: JobQueue):
        root = await queue.add_flow(make_flow(children=2))
        await queue.complete(await queue.claim(ILLUSTRATION), {"status": "OK"})

        assert await queue.release_ready_parents(FINALIZE) == []
        assert (await queue.get_job(FINALIZE, root.id)).state == JobState.waiting_children

    @pytest.mark.asyncio
    async def test_parent_released_once(self, queue: JobQueue):
        root = await queue.add_flow(make_flow(children=1))
        await queue.complete(await queue.claim(ILLUSTRATION), {"status": "OK"})

        # Already released by the settling child
        assert await queue.release_ready_parents(FINALIZE) == []
        assert await queue._release_parent(root.key) is False
        assert (await queue.get_counts(FINALIZE))["waiting"] == 1


class TestStalledJobs:
    """Jobs abandoned by a dead worker."""

    @pytest.mark.asyncio
    async def test_requeue_stalled_counts_an_attempt(self, queue: JobQueue):
        opts = JobOptions(attempts=3, backoff=Backoff(delay=0))
        await queue.add(ILLUSTRATION, "p1", illustration_payload(), opts)

        with patch("picturebook.queues.queue.now_ms", return_value=1_000_000):
            job = await queue.claim(ILLUSTRATION)

        with patch("picturebook.queues.queue.now_ms", return_value=1_000_000 + 60_000):
            assert await queue.requeue_stalled(ILLUSTRATION, older_than_ms=120_000) == []

        with patch("picturebook.queues.queue.now_ms", return_value=1_000_000 + 200_000):
            assert await queue.requeue_stalled(ILLUSTRATION, older_than_ms=120_000) == [job.id]
            retry = await queue.claim(ILLUSTRATION)

        assert retry.id == job.id
        assert retry.attempts_made == 1


    @pytest.mark.asyncio
    async def test_claim_stamps_active_job(self, queue: JobQueue):
        job = await queue.add(ILLUSTRATION, "p1", illustration_payload())

        with patch("picturebook.queues.queue.now_ms", return_value=1_000_000):
            await queue.claim(ILLUSTRATION)

        stored = await queue.get_job(ILLUSTRATION, job.id)
        assert stored.state == JobState.active
        assert stored.processed_on == 1_000_000
        assert await queue.redis.lrange(f"test:{ILLUSTRATION}:active", 0, -1) == [job.id]

    @pytest.mark.asyncio
    async def test_interrupted_claim_is_recovered(self, queue: JobQueue):
        from picturebook.queues.monitor import StalledJobMonitor

        job = await queue.add(ILLUSTRATION, "p1", illustration_payload(), JobOptions(attempts=2))
        # Moved to active without a claim time
        await queue.redis.lmove(
            f"test:{ILLUSTRATION}:wait", f"test:{ILLUSTRATION}:active", "RIGHT", "LEFT"
        )

        monitor = StalledJobMonitor(queue, [ILLUSTRATION], interval_seconds=1, stalled_after_seconds=60)
        recovered = await monitor.check_and_recover_jobs()

        assert recovered == {ILLUSTRATION: [job.id]}
        retry = await queue.claim(ILLUSTRATION)
        assert retry.id == job.id
        assert retry.attempts_made == 1

    @pytest.mark.asyncio
    async def test_claim_skips_missing_record(self, queue: JobQueue):
        await queue.redis.lpush(f"test:{ILLUSTRATION}:wait", "ghost")

        assert await queue.claim(ILLUSTRATION) is None
        assert await queue.redis.llen(f"test:{ILLUSTRATION}:active") == 0
        assert await queue.redis.exists(f"test:{ILLUSTRATION}:ghost") == 0

    @pytest.mark.asyncio
    async def test_delayed_job_promoted_once(self, queue: JobQueue):
        opts = JobOptions(attempts=2, backoff=Backoff(delay=0))
        await queue.add(ILLUSTRATION, "p1", illustration_payload(), opts)
        job = await queue.claim(ILLUSTRATION)
        await queue.fail(job, "transient")

        assert await queue._promote(ILLUSTRATION, job.id) is True
        assert await queue._promote(ILLUSTRATION, job.id) is False
        assert await queue.redis.lrange(f"test:{ILLUSTRATION}:wait", 0, -1) == [job.id]
        assert (await queue.get_job(ILLUSTRATION, job.id)).state == JobState.waiting


class TestRetention:
    @pytest.mark.asyncio
    async def test_completed_jobs_trimmed(self, queue: JobQueue):
        opts = JobOptions(remove_on_complete=1)
        first = await queue.add(STORY, "a", finalize_payload("a"), opts)
        second = await queue.add(STORY, "b", finalize_payload("b"), opts)

        with patch("picturebook.queues.queue.now_ms", return_value=1_000):
            await queue.complete(await queue.claim(STORY))
        with patch("picturebook.queues.queue.now_ms", return_value=2_000):
            await queue.complete(await queue.claim(STORY))

        assert await queue.get_job(STORY, first.id) is None
        assert (await queue.get_job(STORY, second.id)).state == JobState.completed


class TestStalledJobMonitor:
    @pytest.mark.asyncio
    async def test_check_and_recover_jobs(self, queue: JobQueue):
        from picturebook.queues.monitor import StalledJobMonitor, get_queue_metrics

        await queue.add(ILLUSTRATION, "p1", illustration_payload(), JobOptions(attempts=2))
        with patch("picturebook.queues.queue.now_ms", return_value=1_000_000):
            job = await queue.claim(ILLUSTRATION)

        monitor = StalledJobMonitor(queue, [ILLUSTRATION], interval_seconds=1, stalled_after_seconds=60)
        with patch("picturebook.queues.queue.now_ms", return_value=1_000_000 + 61_000):
            recovered = await monitor.check_and_recover_jobs()

        assert recovered == {ILLUSTRATION: [job.id]}
        metrics = await get_queue_metrics(queue)
        assert metrics[ILLUSTRATION]["delayed"] == 1
        assert metrics[ILLUSTRATION]["active"] == 0
