"""
Job Queue: Redis-backed durable queues with delayed retry and parent/child flows

Key layout (``<p>`` is the configured prefix):

    <p>:<queue>:wait                  list  job ids ready to run (LPUSH in, RPOP out)
    <p>:<queue>:active                list  job ids claimed by a worker
    <p>:<queue>:delayed               zset  job id -> run-at (ms)
    <p>:<queue>:waiting-children      set   parents still waiting on children
    <p>:<queue>:completed             zset  job id -> finished-at (ms)
    <p>:<queue>:failed                zset  job id -> finished-at (ms)
    <p>:<queue>:<id>                  hash  job record
    <p>:<queue>:<id>:dependencies     set   child keys not yet settled
    <p>:<queue>:<id>:processed        hash  child key -> JSON return value
    <p>:<queue>:<id>:failed           hash  child key -> failure reason

A job key is ``<queue>:<id>``; children reference their parent by job key.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional

import redis.asyncio as redis
import structlog
from pydantic import BaseModel, Field

from picturebook.core.config import settings
from picturebook.core.errors import QueueClosedError, QueueError
from picturebook.models.jobs import WireModel, parse_payload

logger = structlog.get_logger()


def now_ms() -> int:
    return int(time.time() * 1000)


class QueueName(str, Enum):
    story_generation = "story-generation"
    illustration_generation = "illustration-generation"
    book_finalize = "book-finalize"


class JobState(str, Enum):
    waiting = "waiting"
    waiting_children = "waiting-children"
    delayed = "delayed"
    active = "active"
    completed = "completed"
    failed = "failed"


# ==================== Options ====================


class Backoff(BaseModel):
    type: Literal["exponential", "fixed"] = "exponential"
    delay: int = Field(default=0, ge=0)  # ms

    def delay_for(self, attempts_made: int) -> int:
        """Delay before the next attempt after ``attempts_made`` failures."""
        if self.type == "fixed":
            return self.delay
        return self.delay * 2 ** max(attempts_made - 1, 0)


class JobOptions(BaseModel):
    attempts: int = Field(default=1, ge=1)
    backoff: Optional[Backoff] = None
    timeout: Optional[float] = Field(default=None, gt=0)  # seconds per attempt
    remove_on_complete: Optional[int] = Field(default=None, ge=0)  # keep last N
    remove_on_fail: Optional[int] = Field(default=None, ge=0)  # keep last N
    fail_parent_on_failure: bool = False
    remove_dependency_on_failure: bool = False

    def backoff_delay(self, attempts_made: int) -> int:
        if self.backoff is None:
            return 0
        return self.backoff.delay_for(attempts_made)


# ==================== Jobs & Flows ====================


@dataclass
class Job:
    id: str
    queue_name: str
    name: str
    data: dict
    opts: JobOptions = field(default_factory=JobOptions)
    state: JobState = JobState.waiting
    attempts_made: int = 0
    parent_key: Optional[str] = None
    failed_reason: Optional[str] = None
    return_value: Any = None
    timestamp: int = 0
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    children: list["Job"] = field(default_factory=list)  # populated by add_flow only

    @property
    def key(self) -> str:
        return f"{self.queue_name}:{self.id}"

    @property
    def payload(self):
        """Tagged payload variant. Raises InvalidJobError on a malformed record."""
        return parse_payload(self.data)

    def to_hash(self) -> dict[str, str]:
        mapping = {
            "name": self.name,
            "data": json.dumps(self.data),
            "opts": self.opts.model_dump_json(),
            "state": self.state.value,
            "attempts_made": str(self.attempts_made),
            "timestamp": str(self.timestamp),
        }
        if self.parent_key:
            mapping["parent_key"] = self.parent_key
        return mapping

    @classmethod
    def from_hash(cls, queue_name: str, job_id: str, raw: dict[str, str]) -> "Job":
        return_value = raw.get("return_value")
        return cls(
            id=job_id,
            queue_name=queue_name,
            name=raw.get("name", ""),
            data=json.loads(raw.get("data") or "{}"),
            opts=JobOptions.model_validate_json(raw.get("opts") or "{}"),
            state=JobState(raw.get("state", JobState.waiting.value)),
            attempts_made=int(raw.get("attempts_made") or 0),
            parent_key=raw.get("parent_key") or None,
            failed_reason=raw.get("failed_reason"),
            return_value=json.loads(return_value) if return_value else None,
            timestamp=int(raw.get("timestamp") or 0),
            processed_on=int(raw["processed_on"]) if raw.get("processed_on") else None,
            finished_on=int(raw["finished_on"]) if raw.get("finished_on") else None,
        )


@dataclass
class FlowJob:
    """A job node in a flow. Nodes with children wait for all of them to settle."""

    name: str
    queue_name: str
    payload: WireModel
    opts: JobOptions = field(default_factory=JobOptions)
    children: list["FlowJob"] = field(default_factory=list)


def split_job_key(job_key: str) -> tuple[str, str]:
    queue_name, _, job_id = job_key.partition(":")
    return queue_name, job_id


# ==================== Queue Client ====================


class JobQueue:
    """Client for all pipeline queues.

    Constructed explicitly and passed to the orchestrator and workers;
    ``open()`` connects, ``close()`` releases the connection.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        prefix: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ):
        self._url = redis_url or settings.redis_url
        self.prefix = prefix or settings.queue_prefix
        self._client = client
        self._redis: Optional[redis.Redis] = None

    async def open(self) -> "JobQueue":
        if self._redis is None:
            self._redis = self._client or redis.from_url(self._url, decode_responses=True)
            await self._redis.ping()
            logger.info("Job queue opened", prefix=self.prefix)
        return self

    async def close(self):
        if self._redis is not None:
            if self._client is None:
                await self._redis.aclose()
            self._redis = None
            logger.info("Job queue closed", prefix=self.prefix)

    @property
    def redis(self) -> redis.Redis:
        if self._redis is None:
            raise QueueClosedError()
        return self._redis

    # ---------- keys ----------

    def _queue_key(self, queue_name: str, suffix: str) -> str:
        return f"{self.prefix}:{queue_name}:{suffix}"

    def _hash_key(self, job_key: str) -> str:
        return f"{self.prefix}:{job_key}"

    # ---------- producing ----------

    def _new_job(
        self,
        queue_name: str,
        name: str,
        payload: WireModel,
        opts: Optional[JobOptions],
        parent_key: Optional[str] = None,
    ) -> Job:
        return Job(
            id=uuid.uuid4().hex,
            queue_name=str(getattr(queue_name, "value", queue_name)),
            name=name,
            data=payload.to_wire(),
            opts=opts or JobOptions(),
            parent_key=parent_key,
            timestamp=now_ms(),
        )

    def _queue_job(self, pipe, job: Job):
        pipe.hset(self._hash_key(job.key), mapping=job.to_hash())
        pipe.lpush(self._queue_key(job.queue_name, "wait"), job.id)

    async def add(
        self,
        queue_name: str,
        name: str,
        payload: WireModel,
        opts: Optional[JobOptions] = None,
    ) -> Job:
        """Enqueue a single job."""
        job = self._new_job(queue_name, name, payload, opts)
        pipe = self.redis.pipeline(transaction=True)
        self._queue_job(pipe, job)
        try:
            await pipe.execute()
        except redis.RedisError as e:
            raise QueueError(f"Failed to add job {name}: {e}") from e

        logger.info("Job added", queue=job.queue_name, job_id=job.id, name=name)
        return job

    async def add_flow(self, flow: FlowJob) -> Job:
        """Enqueue a parent job and its children in one MULTI/EXEC.

        Either the whole tree is written or none of it is. The returned root
        job carries the created child jobs in ``children``.
        """
        pipe = self.redis.pipeline(transaction=True)
        root = self._add_flow_node(pipe, flow, parent_key=None)
        try:
            await pipe.execute()
        except redis.RedisError as e:
            raise QueueError(f"Failed to add flow {flow.name}: {e}") from e

        logger.info(
            "Flow added",
            queue=root.queue_name,
            job_id=root.id,
            name=root.name,
            children=len(root.children),
        )
        return root

    def _add_flow_node(self, pipe, node: FlowJob, parent_key: Optional[str]) -> Job:
        job = self._new_job(node.queue_name, node.name, node.payload, node.opts, parent_key)
        if not node.children:
            self._queue_job(pipe, job)
            return job

        job.state = JobState.waiting_children
        job.children = [self._add_flow_node(pipe, child, job.key) for child in node.children]
        pipe.hset(self._hash_key(job.key), mapping=job.to_hash())
        pipe.sadd(
            self._hash_key(f"{job.key}:dependencies"), *[child.key for child in job.children]
        )
        pipe.sadd(self._queue_key(job.queue_name, "waiting-children"), job.id)
        return job

    # ---------- reading ----------

    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        queue_name = str(getattr(queue_name, "value", queue_name))
        raw = await self.redis.hgetall(self._hash_key(f"{queue_name}:{job_id}"))
        if not raw:
            return None
        return Job.from_hash(queue_name, job_id, raw)

    async def get_job_by_key(self, job_key: str) -> Optional[Job]:
        return await self.get_job(*split_job_key(job_key))

    async def get_dependencies(self, job: Job) -> set[str]:
        return set(await self.redis.smembers(self._hash_key(f"{job.key}:dependencies")))

    async def get_children_values(self, job: Job) -> dict[str, Any]:
        raw = await self.redis.hgetall(self._hash_key(f"{job.key}:processed"))
        return {key: json.loads(value) for key, value in raw.items()}

    async def get_failed_children(self, job: Job) -> dict[str, str]:
        return await self.redis.hgetall(self._hash_key(f"{job.key}:failed"))

    async def get_counts(self, queue_name: str) -> dict[str, int]:
        queue_name = str(getattr(queue_name, "value", queue_name))
        pipe = self.redis.pipeline(transaction=False)
        pipe.llen(self._queue_key(queue_name, "wait"))
        pipe.llen(self._queue_key(queue_name, "active"))
        pipe.zcard(self._queue_key(queue_name, "delayed"))
        pipe.scard(self._queue_key(queue_name, "waiting-children"))
        pipe.zcard(self._queue_key(queue_name, "completed"))
        pipe.zcard(self._queue_key(queue_name, "failed"))
        wait, active, delayed, waiting_children, completed, failed = await pipe.execute()
        return {
            "waiting": wait,
            "active": active,
            "delayed": delayed,
            "waiting_children": waiting_children,
            "completed": completed,
            "failed": failed,
        }

    # ---------- consuming ----------

    async def promote_delayed(self, queue_name: str) -> int:
        """Move delayed jobs whose run-at has passed back to the wait list."""
        delayed_key = self._queue_key(queue_name, "delayed")
        due = await self.redis.zrangebyscore(delayed_key, "-inf", now_ms())
        promoted = 0
        for job_id in due:
            if await self._promote(queue_name, job_id):
                promoted += 1
        return promoted

    async def _promote(self, queue_name: str, job_id: str) -> bool:
        delayed_key = self._queue_key(queue_name, "delayed")
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(delayed_key)
                    # Another promoter already moved it
                    if await pipe.zscore(delayed_key, job_id) is None:
                        return False
                    pipe.multi()
                    pipe.zrem(delayed_key, job_id)
                    pipe.hset(
                        self._hash_key(f"{queue_name}:{job_id}"), "state", JobState.waiting.value
                    )
                    pipe.lpush(self._queue_key(queue_name, "wait"), job_id)
                    await pipe.execute()
                    return True
                except redis.WatchError:
                    continue

    async def claim(self, queue_name: str) -> Optional[Job]:
        """Take the oldest waiting job and mark it active.

        The move to the active list and the ``processed_on`` stamp are written
        in one transaction, so every active job carries its claim time.
        """
        queue_name = str(getattr(queue_name, "value", queue_name))
        await self.promote_delayed(queue_name)

        wait_key = self._queue_key(queue_name, "wait")
        active_key = self._queue_key(queue_name, "active")
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(wait_key)
                    job_id = await pipe.lindex(wait_key, -1)
                    if job_id is None:
                        return None
                    hash_key = self._hash_key(f"{queue_name}:{job_id}")
                    processed_on = now_ms()
                    pipe.multi()
                    pipe.lmove(wait_key, active_key, "RIGHT", "LEFT")
                    pipe.hset(
                        hash_key,
                        mapping={
                            "state": JobState.active.value,
                            "processed_on": str(processed_on),
                        },
                    )
                    pipe.hgetall(hash_key)
                    _, _, raw = await pipe.execute()
                    break
                except redis.WatchError:
                    continue

        if "data" not in raw:
            # Record trimmed while still queued; only the stamp was written
            pipe = self.redis.pipeline(transaction=True)
            pipe.lrem(active_key, 0, job_id)
            pipe.delete(hash_key)
            await pipe.execute()
            logger.warning("Claimed job record missing", queue=queue_name, job_id=job_id)
            return None

        return Job.from_hash(queue_name, job_id, raw)

    async def complete(self, job: Job, return_value: Any = None):
        """Record success and settle the job's dependency on its parent."""
        finished_on = now_ms()
        encoded = json.dumps(return_value, default=str)

        pipe = self.redis.pipeline(transaction=True)
        pipe.lrem(self._queue_key(job.queue_name, "active"), 0, job.id)
        pipe.hset(
            self._hash_key(job.key),
            mapping={
                "state": JobState.completed.value,
                "return_value": encoded,
                "finished_on": str(finished_on),
            },
        )
        pipe.zadd(self._queue_key(job.queue_name, "completed"), {job.id: finished_on})
        if job.parent_key:
            pipe.hset(self._hash_key(f"{job.parent_key}:processed"), job.key, encoded)
            pipe.srem(self._hash_key(f"{job.parent_key}:dependencies"), job.key)
            pipe.scard(self._hash_key(f"{job.parent_key}:dependencies"))
        results = await pipe.execute()

        job.state = JobState.completed
        job.return_value = return_value
        job.finished_on = finished_on

        if job.parent_key and results[-1] == 0:
            await self._release_parent(job.parent_key)

        await self._trim(job.queue_name, "completed", job.opts.remove_on_complete)

    async def fail(self, job: Job, error: BaseException | str) -> JobState:
        """Record a failed attempt.

        Returns ``delayed`` when another attempt is scheduled, ``failed`` when
        attempts are exhausted.
        """
        reason = str(error) or error.__class__.__name__
        attempts_made = await self.redis.hincrby(self._hash_key(job.key), "attempts_made", 1)
        job.attempts_made = attempts_made
        job.failed_reason = reason

        if attempts_made < job.opts.attempts:
            delay = job.opts.backoff_delay(attempts_made)
            run_at = now_ms() + delay
            pipe = self.redis.pipeline(transaction=True)
            pipe.lrem(self._queue_key(job.queue_name, "active"), 0, job.id)
            pipe.hset(
                self._hash_key(job.key),
                mapping={"state": JobState.delayed.value, "failed_reason": reason},
            )
            pipe.zadd(self._queue_key(job.queue_name, "delayed"), {job.id: run_at})
            await pipe.execute()
            job.state = JobState.delayed

            logger.warning(
                "Job attempt failed, retry scheduled",
                queue=job.queue_name,
                job_id=job.id,
                name=job.name,
                attempt=attempts_made,
                max_attempts=job.opts.attempts,
                delay_ms=delay,
                error=reason,
            )
            return JobState.delayed

        await self._move_to_failed(job, reason)
        return JobState.failed

    async def _move_to_failed(self, job: Job, reason: str):
        finished_on = now_ms()
        release_check = bool(
            job.parent_key
            and job.opts.remove_dependency_on_failure
            and not job.opts.fail_parent_on_failure
        )

        pipe = self.redis.pipeline(transaction=True)
        pipe.lrem(self._queue_key(job.queue_name, "active"), 0, job.id)
        pipe.srem(self._queue_key(job.queue_name, "waiting-children"), job.id)
        pipe.hset(
            self._hash_key(job.key),
            mapping={
                "state": JobState.failed.value,
                "failed_reason": reason,
                "finished_on": str(finished_on),
            },
        )
        pipe.zadd(self._queue_key(job.queue_name, "failed"), {job.id: finished_on})
        if job.parent_key:
            pipe.hset(self._hash_key(f"{job.parent_key}:failed"), job.key, reason)
        if release_check:
            pipe.srem(self._hash_key(f"{job.parent_key}:dependencies"), job.key)
            pipe.scard(self._hash_key(f"{job.parent_key}:dependencies"))
        results = await pipe.execute()

        job.state = JobState.failed
        job.failed_reason = reason
        job.finished_on = finished_on

        logger.error(
            "Job failed",
            queue=job.queue_name,
            job_id=job.id,
            name=job.name,
            attempts=job.attempts_made,
            error=reason,
        )

        if job.parent_key and job.opts.fail_parent_on_failure:
            parent = await self.get_job_by_key(job.parent_key)
            if parent is not None and parent.state == JobState.waiting_children:
                await self._move_to_failed(parent, f"child {job.key} failed: {reason}")
        elif release_check and results[-1] == 0:
            await self._release_parent(job.parent_key)

        await self._trim(job.queue_name, "failed", job.opts.remove_on_fail)

    async def _release_parent(self, parent_key: str) -> bool:
        """Move a parent whose dependencies are all settled to its wait list.

        Leaving waiting-children and entering the wait list happen in one
        transaction; if the parent already left, the call is a no-op.
        """
        queue_name, parent_id = split_job_key(parent_key)
        waiting_key = self._queue_key(queue_name, "waiting-children")
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(waiting_key)
                    if not await pipe.sismember(waiting_key, parent_id):
                        return False
                    pipe.multi()
                    pipe.srem(waiting_key, parent_id)
                    pipe.hset(self._hash_key(parent_key), "state", JobState.waiting.value)
                    pipe.lpush(self._queue_key(queue_name, "wait"), parent_id)
                    await pipe.execute()
                    break
                except redis.WatchError:
                    continue

        logger.info("Parent job released", queue=queue_name, job_id=parent_id)
        return True

    async def release_ready_parents(self, queue_name: str) -> list[str]:
        """Release parents left in waiting-children with no pending dependencies.

        A settling child releases its parent right after its own transaction;
        this sweep picks up parents whose release never happened.
        """
        queue_name = str(getattr(queue_name, "value", queue_name))
        released = []
        for parent_id in await self.redis.smembers(
            self._queue_key(queue_name, "waiting-children")
        ):
            parent_key = f"{queue_name}:{parent_id}"
            if await self.redis.scard(self._hash_key(f"{parent_key}:dependencies")):
                continue
            if await self._release_parent(parent_key):
                released.append(parent_id)
        return released

    async def requeue_stalled(self, queue_name: str, older_than_ms: int) -> list[str]:
        """Fail active jobs that have been running longer than ``older_than_ms``.

        A stalled job counts as a failed attempt and follows its retry policy.
        An active job without a claim time was left by an interrupted claim
        and is treated as stalled.
        """
        queue_name = str(getattr(queue_name, "value", queue_name))
        active_key = self._queue_key(queue_name, "active")
        cutoff = now_ms() - older_than_ms
        stalled = []

        for job_id in await self.redis.lrange(active_key, 0, -1):
            job = await self.get_job(queue_name, job_id)
            if job is None:
                await self.redis.lrem(active_key, 0, job_id)
                continue
            if job.processed_on is not None and job.processed_on >= cutoff:
                continue
            # Another worker may settle the job meanwhile; only the LREM winner fails it
            if not await self.redis.lrem(active_key, 0, job_id):
                continue
            await self.fail(job, "job stalled: no result within the allowed time")
            stalled.append(job_id)

        return stalled

    async def _trim(self, queue_name: str, set_name: str, keep: Optional[int]):
        if keep is None:
            return
        zkey = self._queue_key(queue_name, set_name)
        excess = await self.redis.zcard(zkey) - keep
        if excess <= 0:
            return
        stale = await self.redis.zrange(zkey, 0, excess - 1)
        if not stale:
            return
        pipe = self.redis.pipeline(transaction=True)
        pipe.zrem(zkey, *stale)
        for job_id in stale:
            base = self._hash_key(f"{queue_name}:{job_id}")
            pipe.delete(base, f"{base}:dependencies", f"{base}:processed", f"{base}:failed")
        await pipe.execute()
