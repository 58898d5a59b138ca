"""
Customer order aggregates.

Aggregates are always recomputed from the stored orders rather than
incremented, so webhook and sync races cannot double count. Voided and
cancelled orders are excluded.
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from segmentflow.models.customer import Customer
from segmentflow.models.order import FinancialStatus, Order
from segmentflow.services.sync.transforms import CENTS
from segmentflow.utils.dates import days_since, ensure_utc, utcnow

logger = logging.getLogger(__name__)


def _to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value)).quantize(CENTS)


async def update_customer_order_stats(
    db: AsyncSession,
    tenant_id: str,
    customer_ids: Optional[Iterable[str]] = None,
) -> int:
    """
    Recompute orders_count, total_spent, avg_order_value, first/last order
    date and days_since_last_order.

    Every customer in scope is written, so a customer whose only order was
    cancelled drops back to zero. The caller commits. Returns the number of
    customers updated.
    """
    ids = None if customer_ids is None else {cid for cid in customer_ids if cid}
    if ids is not None and not ids:
        return 0

    stats_query = (
        select(
            Order.customer_id,
            func.count(Order.id),
            func.sum(Order.total_price),
            func.min(Order.order_date),
            func.max(Order.order_date),
        )
        .where(
            Order.tenant_id == tenant_id,
            Order.customer_id.isnot(None),
            Order.financial_status != FinancialStatus.VOIDED,
            Order.cancelled_at.is_(None),
        )
        .group_by(Order.customer_id)
    )
    customers_query = select(Customer).where(Customer.tenant_id == tenant_id)
    if ids is not None:
        stats_query = stats_query.where(Order.customer_id.in_(ids))
        customers_query = customers_query.where(Customer.id.in_(ids))

    stats: Dict[str, tuple] = {
        row[0]: row[1:] for row in (await db.execute(stats_query)).all()
    }

    now = utcnow()
    updated = 0
    for customer in (await db.execute(customers_query)).scalars():
        count, total, first, last = stats.get(customer.id, (0, None, None, None))
        total_spent = _to_decimal(total)
        last = ensure_utc(last)

        customer.orders_count = count
        customer.total_spent = total_spent
        customer.avg_order_value = (total_spent / count).quantize(CENTS) if count else Decimal("0")
        customer.first_order_date = ensure_utc(first)
        customer.last_order_date = last
        customer.days_since_last_order = days_since(last, now) if last else None
        updated += 1

    await db.flush()
    logger.info(f"Customer order statistics updated: tenant_id={tenant_id}, customers={updated}")
    return updated
