"""
Worker process entry point.

Runs one Worker per queue until SIGINT/SIGTERM, then lets in-flight jobs
finish. Start with ``python -m segmentflow.worker_main``; pass queue names
to run a subset.
"""

import asyncio
import logging
import signal
import sys
from typing import List, Optional

from segmentflow.config import settings
from segmentflow.core.redis import close_redis
from segmentflow.core.sentry import init_sentry
from segmentflow.database import engine, init_db
from segmentflow.services.queue.processors import JobProcessors
from segmentflow.services.queue.queues import QueueName, get_job_queue
from segmentflow.services.queue.worker import Worker

from segmentflow import models  # noqa: F401

logger = logging.getLogger(__name__)


def build_workers(processors: JobProcessors, queues: Optional[List[str]] = None) -> List[Worker]:
    registry = processors.registry()
    selected = queues or [q.value for q in QueueName]
    unknown = [q for q in selected if q not in registry]
    if unknown:
        raise ValueError(f"Unknown queues: {', '.join(unknown)}")
    return [Worker(queue, registry[queue], processors.job_queue) for queue in selected]


async def run(queues: Optional[List[str]] = None) -> None:
    init_sentry("worker")
    await init_db()

    processors = JobProcessors(job_queue=get_job_queue())
    workers = build_workers(processors, queues)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    for worker in workers:
        worker.start()
    logger.info(f"Worker process running {len(workers)} queues")

    await stop.wait()
    logger.info("Shutdown requested, draining workers...")
    await asyncio.gather(*(worker.stop() for worker in workers))
    await close_redis()
    await engine.dispose()
    logger.info("Worker process stopped")


def main() -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(run(sys.argv[1:] or None))


if __name__ == "__main__":
    main()
