"""
RFM (Recency, Frequency, Monetary) scoring.

Every eligible customer (at least one order and a last order date) is ranked
into quintiles on three axes:

- recency: days since last order, descending, so fewer days score higher
- frequency: orders_count ascending
- monetary: total_spent ascending

Equal values are ordered by customer id so bucket boundaries are stable
between runs. The three 1-5 scores map to one of eleven segments through a
prioritized rule chain; the first rule that matches wins.
"""

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from segmentflow.config import settings
from segmentflow.models.customer import Customer, RfmSegment
from segmentflow.services.analytics.ranking import column_percentiles, ntile, percentile_cont
from segmentflow.services.cache_service import TTL, CacheService
from segmentflow.utils.dates import days_since, utcnow

logger = logging.getLogger(__name__)

RFM_BUCKETS = 5
HIGH_VALUE_PERCENTILE = 0.90
CHURN_RISK_DAYS = 90
SCORE_PERCENTILES = (0.20, 0.40, 0.60, 0.80)

ProgressCallback = Callable[[int, int], Awaitable[None]]


def determine_rfm_segment(r: int, f: int, m: int) -> RfmSegment:
    """Map 1-5 scores to a segment. Rules are checked in priority order."""
    if r >= 4 and f >= 4 and m >= 4:
        return RfmSegment.CHAMPIONS
    if r >= 3 and f >= 4 and m >= 3:
        return RfmSegment.LOYAL
    if r <= 2 and f >= 4 and m >= 4:
        return RfmSegment.CANNOT_LOSE
    if 2 <= r <= 3 and f >= 3 and m >= 3:
        return RfmSegment.AT_RISK
    if r >= 4 and f == 1 and m <= 2:
        return RfmSegment.NEW_CUSTOMERS
    if r >= 4 and f <= 2 and m <= 2:
        return RfmSegment.PROMISING
    if r >= 3 and 2 <= f <= 3 and m >= 2:
        return RfmSegment.POTENTIAL_LOYALIST
    if 2 <= r <= 3 and 2 <= f <= 3 and 2 <= m <= 3:
        return RfmSegment.NEED_ATTENTION
    if 2 <= r <= 3 and f <= 2 and m <= 2:
        return RfmSegment.ABOUT_TO_SLEEP
    if r <= 2 and f <= 2 and m <= 2 and (r > 1 or f > 1 or m > 1):
        return RfmSegment.HIBERNATING
    return RfmSegment.LOST


@dataclass
class CustomerMetrics:
    id: str
    orders_count: int
    total_spent: Decimal
    days_since_last_order: int


@dataclass
class RfmResult:
    customer_id: str
    recency_score: int
    frequency_score: int
    monetary_score: int
    rfm_segment: RfmSegment
    is_high_value: bool
    is_churn_risk: bool
    days_since_last_order: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["rfm_segment"] = self.rfm_segment.value
        return data


@dataclass
class RfmBatchResult:
    tenant_id: str
    total_customers: int = 0
    updated: int = 0
    errors: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def metrics_frame(metrics: List[CustomerMetrics]) -> pd.DataFrame:
    """Numeric RFM inputs indexed by customer id."""
    return pd.DataFrame(
        {
            "days_since_last_order": [m.days_since_last_order for m in metrics],
            "orders_count": [m.orders_count for m in metrics],
            "total_spent": [float(m.total_spent) for m in metrics],
        },
        index=pd.Index([m.id for m in metrics], name="id"),
    ).sort_index()


def _score_descending(value: float, thresholds: List[float]) -> int:
    """Lower is better (recency days): <= p20 scores 5."""
    for score, threshold in zip((5, 4, 3, 2), thresholds):
        if value <= threshold:
            return score
    return 1


def _score_ascending(value: float, thresholds: List[float]) -> int:
    """Higher is better: >= p80 scores 5."""
    for score, threshold in zip((5, 4, 3, 2), reversed(thresholds)):
        if value >= threshold:
            return score
    return 1


class RfmService:
    """RFM scoring and the read models built on it."""

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[CacheService] = None,
        clock: Callable[[], datetime] = utcnow,
        batch_size: Optional[int] = None,
    ):
        self.db = db
        self.cache = cache
        self.clock = clock
        self.batch_size = batch_size or settings.RFM_BATCH_SIZE

    async def _eligible_metrics(self, tenant_id: str, now: datetime) -> List[CustomerMetrics]:
        rows = await self.db.execute(
            select(Customer.id, Customer.orders_count, Customer.total_spent, Customer.last_order_date).where(
                Customer.tenant_id == tenant_id,
                Customer.orders_count > 0,
                Customer.last_order_date.isnot(None),
            )
        )
        return [
            CustomerMetrics(
                id=cid,
                orders_count=orders_count,
                total_spent=Decimal(str(total_spent or 0)),
                days_since_last_order=days_since(last_order_date, now),
            )
            for cid, orders_count, total_spent, last_order_date in rows.all()
        ]

    def compute_scores(self, metrics: List[CustomerMetrics]) -> List[RfmResult]:
        """Pure scoring of a whole population."""
        if not metrics:
            return []

        frame = metrics_frame(metrics)
        frame["r"] = ntile(frame["days_since_last_order"], RFM_BUCKETS, descending=True)
        frame["f"] = ntile(frame["orders_count"], RFM_BUCKETS)
        frame["m"] = ntile(frame["total_spent"], RFM_BUCKETS)
        high_value_threshold = percentile_cont(frame["total_spent"], HIGH_VALUE_PERCENTILE)

        results = []
        for row in frame.itertuples():
            r, f, mon, days = int(row.r), int(row.f), int(row.m), int(row.days_since_last_order)
            results.append(
                RfmResult(
                    customer_id=row.Index,
                    recency_score=r,
                    frequency_score=f,
                    monetary_score=mon,
                    rfm_segment=determine_rfm_segment(r, f, mon),
                    is_high_value=bool(row.total_spent >= high_value_threshold),
                    is_churn_risk=days >= CHURN_RISK_DAYS,
                    days_since_last_order=days,
                )
            )
        return results

    async def score_tenant(self, tenant_id: str, on_progress: Optional[ProgressCallback] = None) -> RfmBatchResult:
        """
        Score every eligible customer of a tenant.

        Writes go out in batches, one transaction each. A failed batch is
        counted in ``errors`` and the run moves on to the next one.
        Customers that are not eligible are left untouched.
        """
        started = time.monotonic()
        now = self.clock()
        logger.info(f"Starting tenant-wide RFM calculation: tenant_id={tenant_id}")

        metrics = await self._eligible_metrics(tenant_id, now)
        result = RfmBatchResult(tenant_id=tenant_id, total_customers=len(metrics))
        if not metrics:
            logger.info(f"No eligible customers for RFM calculation: tenant_id={tenant_id}")
            result.duration_ms = int((time.monotonic() - started) * 1000)
            return result

        scores = self.compute_scores(metrics)

        for i in range(0, len(scores), self.batch_size):
            batch = scores[i:i + self.batch_size]
            try:
                await self._apply_batch(tenant_id, batch, now)
                await self.db.commit()
                result.updated += len(batch)
            except Exception as e:
                await self.db.rollback()
                result.errors += len(batch)
                logger.error(f"RFM batch starting at {i} failed for tenant {tenant_id}: {e}", exc_info=True)

            if on_progress:
                await on_progress(result.updated + result.errors, result.total_customers)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Tenant RFM calculation complete: {result.to_dict()}")
        return result

    async def _apply_batch(self, tenant_id: str, batch: List[RfmResult], now: datetime) -> None:
        by_id: Dict[str, RfmResult] = {r.customer_id: r for r in batch}
        customers = await self.db.execute(
            select(Customer).where(Customer.tenant_id == tenant_id, Customer.id.in_(list(by_id)))
        )
        for customer in customers.scalars():
            self._apply(customer, by_id[customer.id], now)
        await self.db.flush()

    @staticmethod
    def _apply(customer: Customer, score: RfmResult, now: datetime) -> None:
        customer.days_since_last_order = score.days_since_last_order
        customer.recency_score = score.recency_score
        customer.frequency_score = score.frequency_score
        customer.monetary_score = score.monetary_score
        customer.rfm_segment = score.rfm_segment
        customer.is_high_value = score.is_high_value
        customer.is_churn_risk = score.is_churn_risk
        customer.rfm_computed_at = now

    async def score_customer(self, tenant_id: str, customer_id: str) -> Optional[RfmResult]:
        """
        Re-score one customer against the tenant's current percentile
        thresholds, without re-ranking anyone else.
        """
        now = self.clock()
        customer = (
            await self.db.execute(
                select(Customer).where(Customer.id == customer_id, Customer.tenant_id == tenant_id)
            )
        ).scalar_one_or_none()
        if customer is None or customer.last_order_date is None or not customer.orders_count:
            logger.warning(f"Customer {customer_id} not found or has no orders, RFM skipped")
            return None

        population = await self._eligible_metrics(tenant_id, now)
        if not population:
            logger.warning(f"No percentile data available for tenant {tenant_id}")
            return None

        thresholds = column_percentiles(metrics_frame(population), SCORE_PERCENTILES + (HIGH_VALUE_PERCENTILE,))
        r_thresholds = thresholds["days_since_last_order"][:-1]
        f_thresholds = thresholds["orders_count"][:-1]
        m_thresholds = thresholds["total_spent"][:-1]
        high_value_threshold = thresholds["total_spent"][-1]

        days = days_since(customer.last_order_date, now)
        total_spent = float(customer.total_spent or 0)
        r = _score_descending(days, r_thresholds)
        f = _score_ascending(customer.orders_count, f_thresholds)
        m = _score_ascending(total_spent, m_thresholds)

        score = RfmResult(
            customer_id=customer.id,
            recency_score=r,
            frequency_score=f,
            monetary_score=m,
            rfm_segment=determine_rfm_segment(r, f, m),
            is_high_value=total_spent >= high_value_threshold,
            is_churn_risk=days >= CHURN_RISK_DAYS,
            days_since_last_order=days,
        )
        self._apply(customer, score, now)
        await self.db.commit()

        logger.info(
            f"RFM calculated for customer {customer_id}: "
            f"R={r} F={f} M={m} segment={score.rfm_segment.value}"
        )
        return score

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    async def get_segment_distribution(self, tenant_id: str) -> List[dict]:
        if self.cache is None:
            return await self._segment_distribution(tenant_id)
        key = self.cache.build_key("rfm", tenant_id, "distribution")
        return await self.cache.remember(key, TTL.LONG, lambda: self._segment_distribution(tenant_id))

    async def _segment_distribution(self, tenant_id: str) -> List[dict]:
        rows = (
            await self.db.execute(
                select(
                    Customer.rfm_segment,
                    func.count(Customer.id),
                    func.sum(Customer.total_spent),
                    func.avg(Customer.avg_order_value),
                )
                .where(Customer.tenant_id == tenant_id, Customer.rfm_segment.isnot(None))
                .group_by(Customer.rfm_segment)
            )
        ).all()

        total_customers = sum(row[1] for row in rows)
        if not total_customers:
            return []

        distribution = []
        for segment, count, total_spent, avg_order_value in rows:
            total_spent = float(total_spent or 0)
            distribution.append(
                {
                    "segment": segment.value,
                    "count": count,
                    "totalSpent": round(total_spent, 2),
                    "avgSpent": round(total_spent / count, 2) if count else 0.0,
                    "avgOrderValue": round(float(avg_order_value or 0), 2),
                    "percentage": round(count / total_customers * 100, 1),
                }
            )
        distribution.sort(key=lambda d: d["count"], reverse=True)
        return distribution

    async def get_rfm_matrix(self, tenant_id: str) -> dict:
        if self.cache is None:
            return await self._rfm_matrix(tenant_id)
        key = self.cache.build_key("rfm", tenant_id, "matrix")
        return await self.cache.remember(key, TTL.LONG, lambda: self._rfm_matrix(tenant_id))

    async def _rfm_matrix(self, tenant_id: str) -> dict:
        rows = (
            await self.db.execute(
                select(
                    Customer.recency_score,
                    Customer.frequency_score,
                    Customer.monetary_score,
                    func.count(Customer.id),
                    func.avg(Customer.total_spent),
                )
                .where(
                    Customer.tenant_id == tenant_id,
                    Customer.recency_score.isnot(None),
                    Customer.frequency_score.isnot(None),
                    Customer.monetary_score.isnot(None),
                )
                .group_by(Customer.recency_score, Customer.frequency_score, Customer.monetary_score)
                .order_by(Customer.recency_score, Customer.frequency_score, Customer.monetary_score)
            )
        ).all()

        matrix = [
            {
                "recencyScore": r,
                "frequencyScore": f,
                "monetaryScore": m,
                "count": count,
                "avgSpent": round(float(avg_spent or 0), 2),
            }
            for r, f, m, count, avg_spent in rows
        ]
        total = sum(cell["count"] for cell in matrix)

        def _weighted(axis: str) -> float:
            if not total:
                return 0.0
            return round(sum(cell[axis] * cell["count"] for cell in matrix) / total, 2)

        return {
            "matrix": matrix,
            "summary": {
                "totalCustomers": total,
                "avgRecency": _weighted("recencyScore"),
                "avgFrequency": _weighted("frequencyScore"),
                "avgMonetary": _weighted("monetaryScore"),
            },
        }

    async def get_customers_by_segment(
        self,
        tenant_id: str,
        segment: RfmSegment,
        limit: int = 50,
        offset: int = 0,
        sort_by: str = "total_spent",
        descending: bool = True,
    ) -> dict:
        sort_columns = {
            "total_spent": Customer.total_spent,
            "last_order_date": Customer.last_order_date,
            "orders_count": Customer.orders_count,
        }
        column = sort_columns.get(sort_by, Customer.total_spent)
        where = (Customer.tenant_id == tenant_id, Customer.rfm_segment == segment)

        total = (await self.db.execute(select(func.count(Customer.id)).where(*where))).scalar() or 0
        customers = (
            await self.db.execute(
                select(Customer)
                .where(*where)
                .order_by(column.desc() if descending else column.asc(), Customer.id)
                .limit(limit)
                .offset(offset)
            )
        ).scalars().all()
        return {"customers": list(customers), "total": total}
