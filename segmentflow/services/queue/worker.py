"""
Queue worker.

One Worker per queue runs ``concurrency`` asyncio tasks that poll the queue,
run the processor and report the outcome. While a job runs its heartbeat is
refreshed so the stale sweep can tell a slow job from a dead one.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional

from segmentflow.config import settings
from segmentflow.core.metrics import track_job
from segmentflow.core.sentry import capture_exception
from segmentflow.services.queue.job_queue import Job, JobQueue

logger = logging.getLogger(__name__)

Processor = Callable[[Job], Awaitable[Any]]

HEARTBEAT_INTERVAL = 30.0


class Worker:
    def __init__(
        self,
        queue_name: str,
        processor: Processor,
        job_queue: JobQueue,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ):
        self.queue_name = queue_name
        self.processor = processor
        self.job_queue = job_queue
        self.concurrency = concurrency or job_queue.options_for(queue_name).concurrency
        self.poll_interval = settings.WORKER_POLL_INTERVAL if poll_interval is None else poll_interval
        self.heartbeat_interval = heartbeat_interval
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._loop(i), name=f"worker:{self.queue_name}:{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"Worker started: queue={self.queue_name}, concurrency={self.concurrency}")

    async def stop(self) -> None:
        """Stop polling and wait for in-flight jobs to finish."""
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"Worker stopped: queue={self.queue_name}")

    async def _loop(self, slot: int) -> None:
        while not self._stopping.is_set():
            try:
                job = await self.job_queue.dequeue(self.queue_name)
            except Exception as e:
                logger.error(f"Worker {self.queue_name}:{slot} could not dequeue: {e}", exc_info=True)
                job = None

            if job is None:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue

            try:
                await self.process(job)
            except Exception as e:
                # The job stays active and is picked up by the stale sweep
                logger.error(f"Worker {self.queue_name}:{slot} lost job {job.id}: {e}", exc_info=True)

    async def process(self, job: Job) -> bool:
        """Run one job to completion. Returns True when the processor succeeded."""
        logger.info(
            f"Processing job {job.id} on {self.queue_name} "
            f"(attempt {job.attempts_made + 1}/{job.attempts})"
        )
        started = time.monotonic()
        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            result = await self.processor(job)
        except Exception as e:
            duration = time.monotonic() - started
            track_job(self.queue_name, False, duration)
            final = job.is_final_attempt
            await self.job_queue.fail(job, str(e) or e.__class__.__name__)
            if final:
                logger.error(f"Job {job.id} on {self.queue_name} exhausted its retries: {e}", exc_info=True)
                capture_exception(e, {"queue": self.queue_name, "job_id": job.id, "payload": job.payload})
            else:
                logger.warning(f"Job {job.id} on {self.queue_name} failed: {e}")
            return False
        finally:
            heartbeat.cancel()

        duration = time.monotonic() - started
        track_job(self.queue_name, True, duration)
        await self.job_queue.complete(job, result)
        logger.info(f"Job {job.id} on {self.queue_name} completed in {duration:.2f}s")
        return True

    async def _heartbeat(self, job: Job) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.job_queue.heartbeat(job)
            except Exception as e:
                logger.warning(f"Heartbeat failed for job {job.id}: {e}")
