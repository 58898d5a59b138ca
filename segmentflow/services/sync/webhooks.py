"""
Webhook processing.

Applies one platform webhook delivery to the store. Customer topics upsert or
delete the customer; order topics upsert the order, recompute that
customer's aggregates and then queue a single-customer RFM job.
"""

import logging
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from segmentflow.models.customer import Customer
from segmentflow.models.order import Order
from segmentflow.models.segment import SegmentMember
from segmentflow.models.webhook_event import WebhookEvent
from segmentflow.schemas.jobs import WebhookJob
from segmentflow.services.commerce_client import extract_id
from segmentflow.services.queue.job_queue import JobQueue
from segmentflow.services.queue.queues import enqueue_rfm
from segmentflow.services.sync.engine import SyncEngine, SyncResult
from segmentflow.services.sync.order_stats import update_customer_order_stats
from segmentflow.services.sync.transforms import (
    source_customer_from_webhook,
    source_order_from_webhook,
)
from segmentflow.utils.dates import utcnow

logger = logging.getLogger(__name__)

CUSTOMER_UPSERT_TOPICS = {"customers/create", "customers/update"}
CUSTOMER_DELETE_TOPICS = {"customers/delete"}
ORDER_TOPICS = {"orders/create", "orders/updated", "orders/paid", "orders/cancelled"}


class WebhookProcessor:
    def __init__(self, db: AsyncSession, job_queue: JobQueue):
        self.db = db
        self.job_queue = job_queue
        self.engine = SyncEngine(db)

    async def process(self, job: WebhookJob, delivery_id: Optional[str] = None) -> dict:
        """
        Apply a webhook. Errors propagate after being recorded on the event row.

        ``delivery_id`` is the queue job id: a retry picks up the event row of
        its earlier attempts instead of recording the delivery again.
        """
        event = await self._event_for(job, delivery_id)
        event.attempts = (event.attempts or 0) + 1
        event.error = None
        await self.db.commit()
        event_id = event.id

        rfm_customer_id: Optional[str] = None
        try:
            if job.topic in CUSTOMER_UPSERT_TOPICS:
                outcome = await self._upsert_customer(job)
            elif job.topic in CUSTOMER_DELETE_TOPICS:
                outcome = await self._delete_customer(job)
            elif job.topic in ORDER_TOPICS:
                outcome, rfm_customer_id = await self._upsert_order(job)
            else:
                logger.info(f"Unhandled webhook topic {job.topic} for tenant {job.tenant_id}")
                outcome = {"handled": False}
                event.error = f"Unhandled topic {job.topic}"

            event.processed = True
            event.processed_at = utcnow()
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            await self._mark_failed(event_id, e)
            raise

        # Only after the order and stats are committed
        if rfm_customer_id:
            await enqueue_rfm(self.job_queue, job.tenant_id, "order", customer_id=rfm_customer_id)

        return dict(outcome, topic=job.topic)

    async def _event_for(self, job: WebhookJob, delivery_id: Optional[str]) -> WebhookEvent:
        if delivery_id:
            event = (
                await self.db.execute(select(WebhookEvent).where(WebhookEvent.delivery_id == delivery_id))
            ).scalar_one_or_none()
            if event is not None:
                logger.info(f"Retrying webhook delivery {delivery_id} (attempt {event.attempts + 1})")
                return event

        event = WebhookEvent(
            tenant_id=job.tenant_id,
            delivery_id=delivery_id,
            topic=job.topic,
            shop_domain=job.shop_domain,
            payload=job.payload,
            received_at=job.received_at,
        )
        self.db.add(event)
        return event

    async def _upsert_customer(self, job: WebhookJob) -> dict:
        src = source_customer_from_webhook(job.payload)
        result = SyncResult()
        await self.engine.upsert_customers(job.tenant_id, [src], result)
        if result.errors:
            raise ValueError(f"Customer {src.external_id} could not be applied")
        logger.info(f"Customer {src.external_id} upserted from webhook for tenant {job.tenant_id}")
        return {"created": result.created, "updated": result.updated}

    async def _delete_customer(self, job: WebhookJob) -> dict:
        external_id = extract_id(job.payload.get("admin_graphql_api_id") or job.payload.get("id"))
        customer_id = (
            await self.db.execute(
                select(Customer.id).where(
                    Customer.tenant_id == job.tenant_id, Customer.external_id == external_id
                )
            )
        ).scalar_one_or_none()
        if customer_id is None:
            logger.info(f"Customer {external_id} not found for delete webhook, tenant {job.tenant_id}")
            return {"deleted": 0}

        await self.db.execute(delete(SegmentMember).where(SegmentMember.customer_id == customer_id))
        await self.db.execute(
            update(Order)
            .where(Order.tenant_id == job.tenant_id, Order.customer_id == customer_id)
            .values(customer_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(delete(Customer).where(Customer.id == customer_id))
        logger.info(f"Customer {external_id} deleted from webhook for tenant {job.tenant_id}")
        return {"deleted": 1}

    async def _upsert_order(self, job: WebhookJob):
        src = source_order_from_webhook(job.payload)

        # Guest checkout creates the customer on first sighting
        customer_payload = job.payload.get("customer")
        if customer_payload and src.customer_external_id:
            exists = (
                await self.db.execute(
                    select(Customer.id).where(
                        Customer.tenant_id == job.tenant_id,
                        Customer.external_id == src.customer_external_id,
                    )
                )
            ).scalar_one_or_none()
            if exists is None:
                customer_payload = dict(customer_payload)
                customer_payload.setdefault("created_at", job.payload.get("created_at"))
                await self.engine.upsert_customers(
                    job.tenant_id, [source_customer_from_webhook(customer_payload)], SyncResult()
                )

        result = SyncResult()
        orders = await self.engine.upsert_orders(job.tenant_id, [src], result)
        if result.errors or not orders:
            raise ValueError(f"Order {src.external_id} could not be applied")

        customer_id = orders[0].customer_id
        if customer_id:
            await update_customer_order_stats(self.db, job.tenant_id, [customer_id])

        logger.info(f"Order {src.external_id} applied from {job.topic} webhook for tenant {job.tenant_id}")
        return {"created": result.created, "updated": result.updated}, customer_id

    async def _mark_failed(self, event_id: str, error: Exception) -> None:
        try:
            event = await self.db.get(WebhookEvent, event_id)
            if event is not None:
                event.error = str(error) or error.__class__.__name__
                await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Could not record webhook failure on event {event_id}: {e}", exc_info=True)
