"""
Job processors, one per queue.

Each processor opens its own database session, runs the service for its job
type and returns a JSON-safe summary that the queue stores as the job
result. Exceptions propagate so the worker applies the retry policy.
"""

import csv
import io
import logging
from typing import Awaitable, Callable, Dict, Optional

from segmentflow.core.redis import get_redis
from segmentflow.database import async_session_maker
from segmentflow.exceptions import NotFoundError
from segmentflow.models.segment import Segment
from segmentflow.models.sync_job import ResourceType
from segmentflow.schemas.jobs import (
    BulkExportJob,
    ChurnJob,
    RfmJob,
    ScheduledJob,
    SegmentUpdateJob,
    SyncJobPayload,
    WebhookJob,
)
from segmentflow.services.analytics.churn import ChurnService
from segmentflow.services.analytics.rfm import RfmService
from segmentflow.services.cache_service import CacheService, get_cache_service
from segmentflow.services.commerce_client import client_for_tenant
from segmentflow.services.progress_store import ProgressStore, get_progress_store
from segmentflow.services.queue.job_queue import Job, JobQueue
from segmentflow.services.queue.queues import QueueName, get_job_queue, parse_payload
from segmentflow.services.segments.membership import MembershipService
from segmentflow.services.sync.runner import SyncRunner
from segmentflow.services.sync.webhooks import WebhookProcessor
from segmentflow.tasks.scheduler import run_scheduled_task

logger = logging.getLogger(__name__)

EXPORT_TTL_SECONDS = 60 * 60
EXPORT_PAGE_SIZE = 500
EXPORT_COLUMNS = [
    "customer_id",
    "email",
    "first_name",
    "last_name",
    "total_spent",
    "orders_count",
    "rfm_segment",
    "added_at",
]


def export_key(tenant_id: str, segment_id: str, job_id: str) -> str:
    return f"export:{tenant_id}:{segment_id}:{job_id}"


class JobProcessors:
    """Processors bound to shared collaborators; ``registry()`` maps queue name to processor."""

    def __init__(
        self,
        session_factory: Callable = async_session_maker,
        job_queue: Optional[JobQueue] = None,
        progress_store: Optional[ProgressStore] = None,
        cache: Optional[CacheService] = None,
        redis_client=None,
        client_factory: Callable = client_for_tenant,
    ):
        self.session_factory = session_factory
        self.job_queue = job_queue or get_job_queue()
        self.progress_store = progress_store or get_progress_store()
        self.cache = cache or get_cache_service()
        self._redis = redis_client
        self.sync_runner = SyncRunner(
            session_factory=session_factory,
            progress_store=self.progress_store,
            job_queue=self.job_queue,
            client_factory=client_factory,
            cache=self.cache,
        )

    @property
    def redis(self):
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def registry(self) -> Dict[str, Callable[[Job], Awaitable[dict]]]:
        return {
            QueueName.WEBHOOK_PROCESSING.value: self.process_webhook,
            QueueName.CUSTOMER_SYNC.value: self.process_customer_sync,
            QueueName.ORDER_SYNC.value: self.process_order_sync,
            QueueName.RFM_CALCULATION.value: self.process_rfm,
            QueueName.SEGMENT_UPDATE.value: self.process_segment_update,
            QueueName.CHURN_CALCULATION.value: self.process_churn,
            QueueName.BULK_OPERATIONS.value: self.process_bulk_export,
            QueueName.SCHEDULER.value: self.process_scheduled,
        }

    async def process_webhook(self, job: Job) -> dict:
        payload: WebhookJob = parse_payload(job.queue, job.payload)
        async with self.session_factory() as db:
            return await WebhookProcessor(db, self.job_queue).process(payload, delivery_id=job.id)

    async def process_customer_sync(self, job: Job) -> dict:
        payload: SyncJobPayload = parse_payload(job.queue, job.payload)
        return await self.sync_runner.run(ResourceType.CUSTOMERS, payload, job)

    async def process_order_sync(self, job: Job) -> dict:
        payload: SyncJobPayload = parse_payload(job.queue, job.payload)
        return await self.sync_runner.run(ResourceType.ORDERS, payload, job)

    async def process_rfm(self, job: Job) -> dict:
        payload: RfmJob = parse_payload(job.queue, job.payload)

        async with self.session_factory() as db:
            rfm = RfmService(db, cache=self.cache)

            if payload.customer_id:
                score = await rfm.score_customer(payload.tenant_id, payload.customer_id)
                if score is None:
                    return {"customer_id": payload.customer_id, "scored": False}
                return {"customer_id": payload.customer_id, "scored": True, "segment": score.rfm_segment.value}

            result = await rfm.score_tenant(payload.tenant_id)
            await self.cache.invalidate_tenant(payload.tenant_id)
            queued = await MembershipService(db, self.job_queue).refresh_all_segments(
                payload.tenant_id, reason="rfm"
            )

        logger.info(
            f"RFM run for tenant {payload.tenant_id} ({payload.triggered_by}) "
            f"queued {len(queued)} segment refreshes"
        )
        return dict(result.to_dict(), segments_queued=len(queued))

    async def process_segment_update(self, job: Job) -> dict:
        payload: SegmentUpdateJob = parse_payload(job.queue, job.payload)

        async with self.session_factory() as db:
            segment = await db.get(Segment, payload.segment_id)
            if segment is None or segment.tenant_id != payload.tenant_id:
                # Deleted between enqueue and run; nothing to retry
                logger.info(f"Segment {payload.segment_id} no longer exists, skipping {payload.reason} update")
                return {"segment_id": payload.segment_id, "skipped": True}

            result = await MembershipService(db).compute_membership(payload.segment_id)
        return dict(result.to_dict(), estimated_revenue=str(result.estimated_revenue))

    async def process_churn(self, job: Job) -> dict:
        payload: ChurnJob = parse_payload(job.queue, job.payload)

        async with self.session_factory() as db:
            result = await ChurnService(db).calculate_churn_for_tenant(payload.tenant_id)
        await self.cache.invalidate_tenant(payload.tenant_id)
        return result.to_dict()

    async def process_scheduled(self, job: Job) -> dict:
        payload: ScheduledJob = parse_payload(job.queue, job.payload)
        return await run_scheduled_task(payload, self.job_queue, self.session_factory)

    async def process_bulk_export(self, job: Job) -> dict:
        """Write a segment's members as CSV into Redis for an hour."""
        payload: BulkExportJob = parse_payload(job.queue, job.payload)

        async with self.session_factory() as db:
            membership = MembershipService(db)
            segment = await membership.get_segment(payload.tenant_id, payload.segment_id)
            if segment is None:
                raise NotFoundError("Segment", payload.segment_id)

            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
            writer.writeheader()

            rows = 0
            offset = 0
            while True:
                page = await membership.get_segment_members(
                    payload.segment_id, limit=EXPORT_PAGE_SIZE, offset=offset, descending=False
                )
                for member in page["members"]:
                    customer = member["customer"]
                    writer.writerow(
                        {
                            "customer_id": customer["id"],
                            "email": customer["email"] or "",
                            "first_name": customer["first_name"] or "",
                            "last_name": customer["last_name"] or "",
                            "total_spent": customer["total_spent"],
                            "orders_count": customer["orders_count"],
                            "rfm_segment": customer["rfm_segment"].value if customer["rfm_segment"] else "",
                            "added_at": member["added_at"].isoformat() if member["added_at"] else "",
                        }
                    )
                rows += len(page["members"])
                offset += EXPORT_PAGE_SIZE
                if len(page["members"]) < EXPORT_PAGE_SIZE:
                    break

        key = export_key(payload.tenant_id, payload.segment_id, job.id)
        await self.redis.set(key, buffer.getvalue(), ex=EXPORT_TTL_SECONDS)
        logger.info(f"Exported {rows} members of segment {payload.segment_id} to {key}")
        return {"key": key, "rows": rows, "expires_in": EXPORT_TTL_SECONDS}
