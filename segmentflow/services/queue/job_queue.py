"""
Redis-backed job queue.

Each named queue keeps its jobs in sorted sets:

    queue:{name}:waiting    score = priority * PRIORITY_SPAN + enqueued_ms
    queue:{name}:delayed    score = ready_at_ms
    queue:{name}:active     score = last heartbeat ms
    queue:{name}:completed  score = finished_ms (trimmed to retention)
    queue:{name}:failed     score = finished_ms (trimmed to retention)

and one hash per job (``queue:{name}:job:{id}``). Lower priority numbers are
served first; jobs of equal priority are FIFO.

Delivery is at-least-once: a worker that dies mid-job leaves the job in
``active`` until the stale sweep moves it to ``failed``.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel

from segmentflow.core.redis import get_redis

logger = logging.getLogger(__name__)

PRIORITY_SPAN = 10 ** 13
KEY_PREFIX = "queue"

STATE_WAITING = "waiting"
STATE_DELAYED = "delayed"
STATE_ACTIVE = "active"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"
OPEN_STATES = (STATE_WAITING, STATE_DELAYED, STATE_ACTIVE)
ALL_STATES = OPEN_STATES + (STATE_COMPLETED, STATE_FAILED)


@dataclass(frozen=True)
class QueueOptions:
    attempts: int = 3
    backoff_ms: int = 1000
    priority: int = 0
    concurrency: int = 5
    keep_completed: int = 1000
    keep_failed: int = 5000


@dataclass
class Job:
    id: str
    queue: str
    payload: Dict[str, Any]
    attempts: int
    attempts_made: int = 0
    priority: int = 0
    backoff_ms: int = 1000
    state: str = STATE_WAITING
    created_at: float = 0.0
    processed_at: Optional[float] = None
    finished_at: Optional[float] = None
    failed_reason: Optional[str] = None
    result: Optional[Any] = field(default=None)

    @property
    def is_final_attempt(self) -> bool:
        """True when a failure of the current attempt will not be retried."""
        return self.attempts_made + 1 >= self.attempts

    def to_hash(self) -> Dict[str, str]:
        data = {
            "id": self.id,
            "queue": self.queue,
            "payload": json.dumps(self.payload, default=str),
            "attempts": str(self.attempts),
            "attemptsMade": str(self.attempts_made),
            "priority": str(self.priority),
            "backoffMs": str(self.backoff_ms),
            "state": self.state,
            "createdAt": str(self.created_at),
            "processedAt": "" if self.processed_at is None else str(self.processed_at),
            "finishedAt": "" if self.finished_at is None else str(self.finished_at),
            "failedReason": self.failed_reason or "",
            "result": "" if self.result is None else json.dumps(self.result, default=str),
        }
        return data

    @classmethod
    def from_hash(cls, raw: Dict[str, str]) -> "Job":
        def _opt_float(value: str) -> Optional[float]:
            return float(value) if value else None

        return cls(
            id=raw["id"],
            queue=raw["queue"],
            payload=json.loads(raw["payload"]),
            attempts=int(raw["attempts"]),
            attempts_made=int(raw.get("attemptsMade") or 0),
            priority=int(raw.get("priority") or 0),
            backoff_ms=int(raw.get("backoffMs") or 0),
            state=raw.get("state") or STATE_WAITING,
            created_at=float(raw.get("createdAt") or 0),
            processed_at=_opt_float(raw.get("processedAt", "")),
            finished_at=_opt_float(raw.get("finishedAt", "")),
            failed_reason=raw.get("failedReason") or None,
            result=json.loads(raw["result"]) if raw.get("result") else None,
        )


class JobQueue:
    """
    Named queues over one Redis connection.

    Usage:
        queue = JobQueue(options={"rfm-calculation": QueueOptions(attempts=5)})
        await queue.enqueue("rfm-calculation", RfmJob(tenant_id=tid), job_id=f"rfm:{tid}")
        job = await queue.dequeue("rfm-calculation")
    """

    def __init__(
        self,
        redis_client=None,
        options: Optional[Dict[str, QueueOptions]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = redis_client
        self._options = dict(options or {})
        self._clock = clock

    @property
    def redis(self):
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def options_for(self, queue: str) -> QueueOptions:
        return self._options.get(str(queue), QueueOptions())

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def state_key(queue: str, state: str) -> str:
        return f"{KEY_PREFIX}:{queue}:{state}"

    @staticmethod
    def job_key(queue: str, job_id: str) -> str:
        return f"{KEY_PREFIX}:{queue}:job:{job_id}"

    def _now_ms(self) -> float:
        return self._clock() * 1000

    # ------------------------------------------------------------------
    # Producing
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        queue: str,
        payload: Union[BaseModel, Dict[str, Any]],
        job_id: Optional[str] = None,
        priority: Optional[int] = None,
        delay_ms: int = 0,
        attempts: Optional[int] = None,
    ) -> str:
        """
        Add a job. Returns its id.

        Enqueueing an id that is still waiting, delayed or active is a no-op;
        the existing id is returned.
        """
        queue = str(getattr(queue, "value", queue))
        opts = self.options_for(queue)
        job_id = job_id or uuid.uuid4().hex

        existing_state = await self.redis.hget(self.job_key(queue, job_id), "state")
        if existing_state in OPEN_STATES:
            logger.debug(f"Job {job_id} already {existing_state} on {queue}, not enqueued again")
            return job_id

        if isinstance(payload, BaseModel):
            data = payload.model_dump(by_alias=True, mode="json")
        else:
            data = dict(payload)

        now = self._now_ms()
        job = Job(
            id=job_id,
            queue=queue,
            payload=data,
            attempts=attempts or opts.attempts,
            priority=opts.priority if priority is None else priority,
            backoff_ms=opts.backoff_ms,
            state=STATE_DELAYED if delay_ms > 0 else STATE_WAITING,
            created_at=now,
        )

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self.job_key(queue, job_id))
            pipe.hset(self.job_key(queue, job_id), mapping=job.to_hash())
            pipe.zrem(self.state_key(queue, STATE_COMPLETED), job_id)
            pipe.zrem(self.state_key(queue, STATE_FAILED), job_id)
            if delay_ms > 0:
                pipe.zadd(self.state_key(queue, STATE_DELAYED), {job_id: now + delay_ms})
            else:
                pipe.zadd(self.state_key(queue, STATE_WAITING), {job_id: self._waiting_score(job.priority, now)})
            await pipe.execute()

        logger.debug(f"Enqueued job {job_id} on {queue} (priority={job.priority}, delay_ms={delay_ms})")
        return job_id

    def add_repeatable(
        self,
        scheduler,
        queue: str,
        payload: Union[BaseModel, Dict[str, Any]],
        cron: str,
        job_id: str,
    ):
        """
        Enqueue ``payload`` on every tick of a crontab expression (UTC).

        The same ``job_id`` is reused on every tick, so a tick is skipped while
        the previous run is still queued or running.
        """
        trigger = CronTrigger.from_crontab(cron, timezone="UTC")
        return scheduler.add_job(
            self.enqueue,
            trigger,
            args=[queue, payload],
            kwargs={"job_id": job_id},
            id=f"repeat:{queue}:{job_id}",
            name=f"{queue}:{job_id}",
            replace_existing=True,
        )

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    async def promote_delayed(self, queue: str) -> int:
        """Move delayed jobs whose time has come to waiting."""
        now = self._now_ms()
        due = await self.redis.zrangebyscore(self.state_key(queue, STATE_DELAYED), 0, now)
        promoted = 0
        for job_id in due:
            # zrem decides which worker wins a concurrent promotion
            if not await self.redis.zrem(self.state_key(queue, STATE_DELAYED), job_id):
                continue
            priority = await self.redis.hget(self.job_key(queue, job_id), "priority")
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zadd(self.state_key(queue, STATE_WAITING), {job_id: self._waiting_score(int(priority or 0), now)})
                pipe.hset(self.job_key(queue, job_id), "state", STATE_WAITING)
                await pipe.execute()
            promoted += 1
        return promoted

    async def dequeue(self, queue: str) -> Optional[Job]:
        """Take the next job and mark it active, or None when the queue is empty."""
        await self.promote_delayed(queue)
        popped = await self.redis.zpopmin(self.state_key(queue, STATE_WAITING))
        if not popped:
            return None
        job_id, _ = popped[0]

        now = self._now_ms()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(self.state_key(queue, STATE_ACTIVE), {job_id: now})
            pipe.hset(self.job_key(queue, job_id), mapping={"state": STATE_ACTIVE, "processedAt": str(now)})
            pipe.hgetall(self.job_key(queue, job_id))
            results = await pipe.execute()

        raw = results[-1]
        if not raw or "payload" not in raw:
            logger.warning(f"Job {job_id} on {queue} has no data, dropping it")
            await self.redis.zrem(self.state_key(queue, STATE_ACTIVE), job_id)
            return None
        return Job.from_hash(raw)

    async def heartbeat(self, job: Job) -> None:
        await self.redis.zadd(self.state_key(job.queue, STATE_ACTIVE), {job.id: self._now_ms()}, xx=True)

    async def complete(self, job: Job, result: Any = None) -> None:
        now = self._now_ms()
        job.state = STATE_COMPLETED
        job.finished_at = now
        job.result = result
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.state_key(job.queue, STATE_ACTIVE), job.id)
            pipe.zadd(self.state_key(job.queue, STATE_COMPLETED), {job.id: now})
            pipe.hset(self.job_key(job.queue, job.id), mapping=job.to_hash())
            await pipe.execute()
        await self._trim(job.queue, STATE_COMPLETED, self.options_for(job.queue).keep_completed)

    async def fail(self, job: Job, error: str) -> bool:
        """
        Record a failed attempt.

        Returns True when a retry was scheduled (exponential backoff), False
        when attempts are exhausted and the job moved to ``failed``.
        """
        now = self._now_ms()
        job.attempts_made += 1
        job.failed_reason = error

        if job.attempts_made < job.attempts:
            delay = job.backoff_ms * (2 ** (job.attempts_made - 1))
            job.state = STATE_DELAYED
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self.state_key(job.queue, STATE_ACTIVE), job.id)
                pipe.zadd(self.state_key(job.queue, STATE_DELAYED), {job.id: now + delay})
                pipe.hset(self.job_key(job.queue, job.id), mapping=job.to_hash())
                await pipe.execute()
            logger.info(
                f"Job {job.id} on {job.queue} failed (attempt {job.attempts_made}/{job.attempts}), "
                f"retrying in {delay}ms: {error}"
            )
            return True

        job.state = STATE_FAILED
        job.finished_at = now
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.state_key(job.queue, STATE_ACTIVE), job.id)
            pipe.zadd(self.state_key(job.queue, STATE_FAILED), {job.id: now})
            pipe.hset(self.job_key(job.queue, job.id), mapping=job.to_hash())
            await pipe.execute()
        await self._trim(job.queue, STATE_FAILED, self.options_for(job.queue).keep_failed)
        logger.error(f"Job {job.id} on {job.queue} failed after {job.attempts_made} attempts: {error}")
        return False

    async def clean_stale(self, queue: str, threshold_ms: int) -> List[Job]:
        """Move active jobs without a heartbeat for ``threshold_ms`` to failed."""
        cutoff = self._now_ms() - threshold_ms
        stale_ids = await self.redis.zrangebyscore(self.state_key(queue, STATE_ACTIVE), 0, cutoff)
        moved = []
        for job_id in stale_ids:
            if not await self.redis.zrem(self.state_key(queue, STATE_ACTIVE), job_id):
                continue
            raw = await self.redis.hgetall(self.job_key(queue, job_id))
            if not raw or "payload" not in raw:
                continue
            job = Job.from_hash(raw)
            job.state = STATE_FAILED
            job.finished_at = self._now_ms()
            job.failed_reason = f"Job stalled: no heartbeat for more than {threshold_ms // 1000}s"
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zadd(self.state_key(queue, STATE_FAILED), {job_id: job.finished_at})
                pipe.hset(self.job_key(queue, job_id), mapping=job.to_hash())
                await pipe.execute()
            moved.append(job)

        if moved:
            logger.warning(f"Moved {len(moved)} stale active jobs on {queue} to failed")
        return moved

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_job(self, queue: str, job_id: str) -> Optional[Job]:
        raw = await self.redis.hgetall(self.job_key(queue, job_id))
        if not raw or "payload" not in raw:
            return None
        return Job.from_hash(raw)

    async def counts(self, queue: str) -> Dict[str, int]:
        async with self.redis.pipeline(transaction=False) as pipe:
            for state in ALL_STATES:
                pipe.zcard(self.state_key(queue, state))
            results = await pipe.execute()
        return dict(zip(ALL_STATES, results))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _waiting_score(priority: int, enqueued_ms: float) -> float:
        return priority * PRIORITY_SPAN + enqueued_ms

    async def _trim(self, queue: str, state: str, keep: int) -> None:
        key = self.state_key(queue, state)
        overflow = await self.redis.zrange(key, 0, -(keep + 1))
        if not overflow:
            return
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(key, *overflow)
            for job_id in overflow:
                pipe.delete(self.job_key(queue, job_id))
            await pipe.execute()
