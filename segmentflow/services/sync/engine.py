"""
Data sync engine.

Pulls customers or orders from the commerce API page by page and upserts
them by ``(tenant_id, external_id)``.

Incremental mode does not ask the API for changed records only. Every page
is fetched and records whose ``updated_at`` is not after the tenant's
watermark are skipped client-side. The watermark is the start time of the
last completed sync of the same resource type.

A malformed record is counted in ``errors`` and skipped; it never fails the
page. Each page is committed before progress is reported.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from segmentflow.core.metrics import track_records_synced
from segmentflow.exceptions import SegmentFlowError
from segmentflow.models.customer import Customer
from segmentflow.models.order import Order
from segmentflow.models.sync_job import ResourceType, SyncJob, SyncMode, SyncStatus
from segmentflow.models.tenant import Tenant
from segmentflow.schemas.commerce import SourceCustomer, SourceOrder
from segmentflow.services.commerce_client import CommerceClient
from segmentflow.services.sync.transforms import (
    CENTS,
    customer_profile_fields,
    order_facts,
    order_status_changed,
)
from segmentflow.utils.dates import ensure_utc

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, Optional[int]], Awaitable[None]]

# Errors that mean "this one record is bad", as opposed to infrastructure failures
RECORD_ERRORS = (SegmentFlowError, PydanticValidationError, ValueError, TypeError, KeyError)


@dataclass
class SyncResult:
    created: int = 0
    updated: int = 0
    errors: int = 0
    skipped: int = 0
    total_processed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class SyncEngine:
    """Ingests one resource type for one tenant."""

    def __init__(self, db: AsyncSession, client: Optional[CommerceClient] = None):
        self.db = db
        self.client = client

    async def sync(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        mode: SyncMode = SyncMode.INCREMENTAL,
        batch_size: int = 50,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SyncResult:
        if self.client is None:
            raise RuntimeError("SyncEngine.sync needs a commerce client")

        watermark = None
        if mode == SyncMode.INCREMENTAL:
            watermark = await self.get_watermark(tenant_id, resource_type)

        if resource_type == ResourceType.CUSTOMERS:
            fetch, upsert = self.client.list_customers, self.upsert_customers
        else:
            fetch, upsert = self.client.list_orders, self.upsert_orders

        logger.info(
            f"Starting {resource_type.value} sync: tenant_id={tenant_id}, mode={mode.value}, "
            f"batch_size={batch_size}, watermark={watermark}"
        )

        result = SyncResult()
        cursor = None
        while True:
            page = await fetch(cursor=cursor, page_size=batch_size)
            await self._count_api_call(tenant_id)

            result.errors += len(page.rejected)
            records = [r for r in page.items if watermark is None or ensure_utc(r.updated_at) > watermark]
            result.skipped += len(page.items) - len(records)

            if records:
                await upsert(tenant_id, records, result)
            await self.db.commit()

            result.total_processed += len(page.items) + len(page.rejected)
            if on_progress:
                await on_progress(result.total_processed, None)

            if not page.has_more or not page.next_cursor:
                break
            cursor = page.next_cursor

        track_records_synced(resource_type.value, result.created, result.updated, result.errors)
        logger.info(f"{resource_type.value.capitalize()} sync finished for tenant {tenant_id}: {result.to_dict()}")
        return result

    async def get_watermark(self, tenant_id: str, resource_type: ResourceType) -> Optional[datetime]:
        """Start time of the last completed sync of this resource, else the tenant's last sync."""
        query = (
            select(SyncJob.started_at)
            .where(
                SyncJob.tenant_id == tenant_id,
                SyncJob.resource_type == resource_type,
                SyncJob.status == SyncStatus.COMPLETED,
                SyncJob.started_at.isnot(None),
            )
            .order_by(SyncJob.started_at.desc())
            .limit(1)
        )
        started_at = (await self.db.execute(query)).scalar_one_or_none()
        if started_at is not None:
            return ensure_utc(started_at)

        last_sync = (
            await self.db.execute(select(Tenant.last_sync_at).where(Tenant.id == tenant_id))
        ).scalar_one_or_none()
        return ensure_utc(last_sync)

    async def upsert_customers(
        self, tenant_id: str, records: Iterable[SourceCustomer], result: SyncResult
    ) -> List[Customer]:
        records = list(records)
        existing = await self._existing(Customer, tenant_id, [r.external_id for r in records])
        touched = []

        for src in records:
            try:
                fields = customer_profile_fields(src)
                customer = existing.get(src.external_id)
                if customer is not None:
                    for name, value in fields.items():
                        setattr(customer, name, value)
                    result.updated += 1
                else:
                    # Platform aggregates seed new rows; the order stats recompute owns them afterwards
                    orders_count = src.orders_count
                    total_spent = src.amount_spent.quantize(CENTS)
                    customer = Customer(
                        tenant_id=tenant_id,
                        external_id=src.external_id,
                        source_created_at=ensure_utc(src.created_at),
                        orders_count=orders_count,
                        total_spent=total_spent,
                        avg_order_value=(total_spent / orders_count).quantize(CENTS) if orders_count else Decimal("0"),
                        **fields,
                    )
                    self.db.add(customer)
                    existing[src.external_id] = customer
                    result.created += 1
                touched.append(customer)
            except RECORD_ERRORS as e:
                result.errors += 1
                logger.warning(f"Failed to upsert customer {src.external_id} for tenant {tenant_id}: {e}")

        await self.db.flush()
        return touched

    async def upsert_orders(
        self, tenant_id: str, records: Iterable[SourceOrder], result: SyncResult
    ) -> List[Order]:
        records = list(records)
        existing = await self._existing(Order, tenant_id, [r.external_id for r in records])
        customer_ids = await self._customer_ids(
            tenant_id, {r.customer_external_id for r in records if r.customer_external_id}
        )
        touched = []

        for src in records:
            try:
                facts = order_facts(src)
                customer_id = customer_ids.get(src.customer_external_id)
                order = existing.get(src.external_id)
                if order is not None:
                    if order_status_changed(order, facts):
                        for name, value in facts.items():
                            setattr(order, name, value)
                    if customer_id:
                        order.customer_id = customer_id
                    order.source_updated_at = ensure_utc(src.updated_at)
                    result.updated += 1
                else:
                    order = Order(
                        tenant_id=tenant_id,
                        external_id=src.external_id,
                        customer_id=customer_id,
                        source_created_at=ensure_utc(src.created_at),
                        source_updated_at=ensure_utc(src.updated_at),
                        **facts,
                    )
                    self.db.add(order)
                    existing[src.external_id] = order
                    result.created += 1
                touched.append(order)
            except RECORD_ERRORS as e:
                result.errors += 1
                logger.warning(f"Failed to upsert order {src.external_id} for tenant {tenant_id}: {e}")

        await self.db.flush()
        return touched

    async def _existing(self, model, tenant_id: str, external_ids: List[str]) -> Dict[str, object]:
        if not external_ids:
            return {}
        rows = await self.db.execute(
            select(model).where(model.tenant_id == tenant_id, model.external_id.in_(set(external_ids)))
        )
        return {row.external_id: row for row in rows.scalars()}

    async def _customer_ids(self, tenant_id: str, external_ids: set) -> Dict[str, str]:
        if not external_ids:
            return {}
        rows = await self.db.execute(
            select(Customer.external_id, Customer.id).where(
                Customer.tenant_id == tenant_id, Customer.external_id.in_(external_ids)
            )
        )
        return {external_id: customer_id for external_id, customer_id in rows.all()}

    async def _count_api_call(self, tenant_id: str) -> None:
        await self.db.execute(
            update(Tenant)
            .where(Tenant.id == tenant_id)
            .values(monthly_api_calls=Tenant.monthly_api_calls + 1)
            .execution_options(synchronize_session=False)
        )
