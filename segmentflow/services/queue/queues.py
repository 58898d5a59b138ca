"""
Queue names, per-queue options and typed enqueue helpers.
"""

import logging
from enum import Enum
from typing import Dict, Optional, Type

from segmentflow.schemas.jobs import (
    BulkExportJob,
    ChurnJob,
    JobPayload,
    RfmJob,
    ScheduledJob,
    SegmentUpdateJob,
    SyncJobPayload,
    WebhookJob,
)
from segmentflow.services.progress_store import ProgressStore
from segmentflow.services.queue.job_queue import JobQueue, QueueOptions

logger = logging.getLogger(__name__)


class QueueName(str, Enum):
    WEBHOOK_PROCESSING = "webhook-processing"
    CUSTOMER_SYNC = "customer-sync"
    ORDER_SYNC = "order-sync"
    RFM_CALCULATION = "rfm-calculation"
    SEGMENT_UPDATE = "segment-update"
    CHURN_CALCULATION = "churn-calculation"
    BULK_OPERATIONS = "bulk-operations"
    SCHEDULER = "scheduler"


QUEUE_OPTIONS: Dict[str, QueueOptions] = {
    QueueName.WEBHOOK_PROCESSING.value: QueueOptions(priority=1),
    QueueName.CUSTOMER_SYNC.value: QueueOptions(),
    QueueName.ORDER_SYNC.value: QueueOptions(),
    # Single-customer RFM jobs are cheap and independent
    QueueName.RFM_CALCULATION.value: QueueOptions(attempts=5, concurrency=10),
    QueueName.SEGMENT_UPDATE.value: QueueOptions(),
    QueueName.CHURN_CALCULATION.value: QueueOptions(),
    QueueName.BULK_OPERATIONS.value: QueueOptions(attempts=2, concurrency=2),
    QueueName.SCHEDULER.value: QueueOptions(backoff_ms=5000, concurrency=1),
}

PAYLOAD_MODELS: Dict[str, Type[JobPayload]] = {
    QueueName.WEBHOOK_PROCESSING.value: WebhookJob,
    QueueName.CUSTOMER_SYNC.value: SyncJobPayload,
    QueueName.ORDER_SYNC.value: SyncJobPayload,
    QueueName.RFM_CALCULATION.value: RfmJob,
    QueueName.SEGMENT_UPDATE.value: SegmentUpdateJob,
    QueueName.CHURN_CALCULATION.value: ChurnJob,
    QueueName.BULK_OPERATIONS.value: BulkExportJob,
    QueueName.SCHEDULER.value: ScheduledJob,
}

# Scheduled sweeps yield to event-driven work
SCHEDULED_PRIORITY = 5


def parse_payload(queue: str, data: dict) -> JobPayload:
    """Validate a stored payload against its queue's model."""
    return PAYLOAD_MODELS[str(queue)].model_validate(data)


_job_queue: Optional[JobQueue] = None


def get_job_queue() -> JobQueue:
    """Get or create the global job queue."""
    global _job_queue
    if _job_queue is None:
        _job_queue = JobQueue(options=QUEUE_OPTIONS)
    return _job_queue


async def enqueue_sync(
    job_queue: JobQueue,
    resource: str,
    payload: SyncJobPayload,
    delay_ms: int = 0,
) -> str:
    queue = QueueName.CUSTOMER_SYNC if resource == "customers" else QueueName.ORDER_SYNC
    # Every attempt of the job reports into the same progress record
    if not payload.sync_run_id:
        payload = payload.model_copy(update={"sync_run_id": ProgressStore.generate_run_id()})
    job_id = f"{resource}-sync:{payload.tenant_id}:{payload.sync_run_id}"
    return await job_queue.enqueue(queue.value, payload, job_id=job_id, delay_ms=delay_ms)


async def enqueue_rfm(
    job_queue: JobQueue,
    tenant_id: str,
    triggered_by: str,
    customer_id: Optional[str] = None,
    priority: Optional[int] = None,
    job_id: Optional[str] = None,
) -> str:
    if job_id is None:
        job_id = f"rfm:{tenant_id}:{customer_id}" if customer_id else f"rfm:{tenant_id}"
    payload = RfmJob(tenant_id=tenant_id, customer_id=customer_id, triggered_by=triggered_by)
    return await job_queue.enqueue(QueueName.RFM_CALCULATION.value, payload, job_id=job_id, priority=priority)


async def enqueue_segment_update(
    job_queue: JobQueue,
    tenant_id: str,
    segment_id: str,
    reason: str,
    delay_ms: int = 0,
    priority: Optional[int] = None,
) -> str:
    payload = SegmentUpdateJob(tenant_id=tenant_id, segment_id=segment_id, reason=reason)
    return await job_queue.enqueue(
        QueueName.SEGMENT_UPDATE.value,
        payload,
        job_id=f"segment:{segment_id}",
        delay_ms=delay_ms,
        priority=priority,
    )


async def enqueue_churn(
    job_queue: JobQueue, tenant_id: str, triggered_by: str, priority: Optional[int] = None
) -> str:
    payload = ChurnJob(tenant_id=tenant_id, triggered_by=triggered_by)
    return await job_queue.enqueue(
        QueueName.CHURN_CALCULATION.value, payload, job_id=f"churn:{tenant_id}", priority=priority
    )
