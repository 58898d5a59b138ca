"""Health, queue depth and Prometheus metrics endpoints."""

import logging

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from segmentflow.config import settings
from segmentflow.core.metrics import get_registry, track_queue_depth
from segmentflow.services.cache_service import get_cache_service
from segmentflow.services.queue.queues import QueueName, get_job_queue

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT,
        "cache": get_cache_service().get_stats(),
    }


@router.get("/health/queues")
async def queue_health():
    """Job counts per state for every queue."""
    job_queue = get_job_queue()
    queues = {}
    for queue in QueueName:
        counts = await job_queue.counts(queue.value)
        track_queue_depth(queue.value, counts.get("waiting", 0))
        queues[queue.value] = counts
    return {"queues": queues}


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    return get_registry().format_prometheus()
