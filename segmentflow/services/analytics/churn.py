"""
Churn prediction.

Probability that a customer has stopped buying, from an exponential decay
over the days they are overdue:

    P(churn) = 1 - exp(-lambda * t)

``t`` is the number of days past the customer's expected next purchase and
``lambda`` is the decay rate of their RFM segment, scaled by their RFM scores
and damped for high-value customers.
"""

import logging
import math
import time
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from segmentflow.config import settings
from segmentflow.models.customer import Customer, RfmSegment
from segmentflow.models.order import FinancialStatus, Order
from segmentflow.services.analytics.ranking import median
from segmentflow.utils.dates import days_between, days_since, utcnow

logger = logging.getLogger(__name__)

# Risk band upper bounds
RISK_LOW = 0.3
RISK_MEDIUM = 0.6
RISK_HIGH = 0.8

# is_churn_risk is set from this probability up
CHURN_FLAG_THRESHOLD = RISK_MEDIUM

# Base decay rate per segment; higher churns faster
SEGMENT_DECAY_RATES: Dict[RfmSegment, float] = {
    RfmSegment.CHAMPIONS: 0.005,
    RfmSegment.LOYAL: 0.008,
    RfmSegment.POTENTIAL_LOYALIST: 0.012,
    RfmSegment.NEW_CUSTOMERS: 0.020,
    RfmSegment.PROMISING: 0.015,
    RfmSegment.NEED_ATTENTION: 0.025,
    RfmSegment.ABOUT_TO_SLEEP: 0.035,
    RfmSegment.AT_RISK: 0.040,
    RfmSegment.CANNOT_LOSE: 0.030,
    RfmSegment.HIBERNATING: 0.045,
    RfmSegment.LOST: 0.050,
}
DEFAULT_DECAY_RATE = 0.020

HIGH_VALUE_DAMPENER = 0.7
MIN_EXPECTED_INTERVAL_DAYS = 7
DEFAULT_EXPECTED_INTERVAL_DAYS = 90
RECENCY_IMPACT_CAP_DAYS = 180

ProgressCallback = Callable[[int, int], Awaitable[None]]


class RiskLevel:
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    ALL = (LOW, MEDIUM, HIGH, CRITICAL)


def risk_level_for(probability: float) -> str:
    if probability < RISK_LOW:
        return RiskLevel.LOW
    if probability < RISK_MEDIUM:
        return RiskLevel.MEDIUM
    if probability < RISK_HIGH:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def decay_rate(
    segment: Optional[RfmSegment],
    recency_score: Optional[int],
    frequency_score: Optional[int],
    monetary_score: Optional[int],
    is_high_value: bool,
) -> float:
    """
    Effective lambda.

    The mean RFM score scales the segment rate linearly from 1.5x (mean 1)
    down to 0.5x (mean 5); it only applies when all three scores are set.
    """
    rate = SEGMENT_DECAY_RATES.get(segment, DEFAULT_DECAY_RATE) if segment else DEFAULT_DECAY_RATE
    if recency_score and frequency_score and monetary_score:
        avg_score = (recency_score + frequency_score + monetary_score) / 3
        rate *= 1.75 - avg_score * 0.25
    if is_high_value:
        rate *= HIGH_VALUE_DAMPENER
    return rate


def churn_probability(rate: float, days_overdue: float) -> float:
    probability = 1 - math.exp(-rate * days_overdue)
    return min(1.0, max(0.0, probability))


def generate_recommendation(risk_level: str, segment: Optional[RfmSegment], is_high_value: bool) -> str:
    if risk_level == RiskLevel.LOW:
        return "Customer is engaged. Continue current strategy."

    if risk_level in (RiskLevel.CRITICAL, RiskLevel.HIGH):
        if is_high_value:
            return (
                "HIGH PRIORITY: Valuable customer at risk. "
                "Consider personal outreach, exclusive offer, or VIP discount."
            )
        if segment == RfmSegment.CANNOT_LOSE:
            return "URGENT: Win-back campaign needed. Offer significant incentive to prevent churn."
        return "Re-engagement needed. Send win-back email series with incentive."

    if segment in (RfmSegment.NEED_ATTENTION, RfmSegment.ABOUT_TO_SLEEP):
        return "Proactive engagement recommended. Send personalized product recommendations."
    return "Monitor closely. Consider sending reminder or promotional email."


@dataclass
class ChurnPrediction:
    customer_id: str
    churn_probability: float
    risk_level: str
    days_since_last_order: int
    expected_purchase_interval: int
    days_overdue: float
    factors: Dict[str, float]
    recommendation: str
    rfm_segment: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ChurnBatchResult:
    tenant_id: str
    total_customers: int = 0
    total_processed: int = 0
    errors: int = 0
    risk_levels: Dict[str, int] = field(default_factory=lambda: {level: 0 for level in RiskLevel.ALL})
    segment_at_risk: Dict[str, int] = field(default_factory=dict)
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class ChurnService:
    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utcnow,
        batch_size: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock
        self.batch_size = batch_size or settings.CHURN_BATCH_SIZE
        self._tenant_intervals: Dict[str, float] = {}

    async def tenant_average_interval(self, tenant_id: str) -> float:
        """Mean gap in days between consecutive paid orders, over all customers of a tenant."""
        if tenant_id in self._tenant_intervals:
            return self._tenant_intervals[tenant_id]

        rows = await self.db.execute(
            select(Order.customer_id, Order.order_date)
            .where(
                Order.tenant_id == tenant_id,
                Order.customer_id.isnot(None),
                Order.financial_status == FinancialStatus.PAID,
            )
            .order_by(Order.customer_id, Order.order_date)
        )
        gaps = []
        previous_customer, previous_date = None, None
        for customer_id, order_date in rows.all():
            if customer_id == previous_customer:
                gaps.append(days_between(order_date, previous_date))
            previous_customer, previous_date = customer_id, order_date

        average = sum(gaps) / len(gaps) if gaps else float(DEFAULT_EXPECTED_INTERVAL_DAYS)
        self._tenant_intervals[tenant_id] = average
        return average

    async def expected_interval(self, tenant_id: str, customer_id: str) -> float:
        """
        Median gap between the customer's paid orders, at least 7 days.
        Customers with fewer than two paid orders get the tenant average.
        """
        dates = (
            await self.db.execute(
                select(Order.order_date)
                .where(
                    Order.tenant_id == tenant_id,
                    Order.customer_id == customer_id,
                    Order.financial_status == FinancialStatus.PAID,
                )
                .order_by(Order.order_date)
            )
        ).scalars().all()

        if len(dates) <= 1:
            return await self.tenant_average_interval(tenant_id)

        gaps = [days_between(later, earlier) for earlier, later in zip(dates, dates[1:])]
        return max(MIN_EXPECTED_INTERVAL_DAYS, median(gaps))

    async def predict(self, tenant_id: str, customer_id: str) -> Optional[ChurnPrediction]:
        customer = (
            await self.db.execute(
                select(Customer).where(Customer.id == customer_id, Customer.tenant_id == tenant_id)
            )
        ).scalar_one_or_none()
        if customer is None or customer.last_order_date is None:
            return None
        return await self._predict(customer)

    async def _predict(self, customer: Customer) -> ChurnPrediction:
        days = days_since(customer.last_order_date, self.clock())
        interval = await self.expected_interval(customer.tenant_id, customer.id)
        days_overdue = max(0.0, days - interval)

        segment = customer.rfm_segment
        base_rate = SEGMENT_DECAY_RATES.get(segment, DEFAULT_DECAY_RATE) if segment else DEFAULT_DECAY_RATE
        rate = decay_rate(
            segment,
            customer.recency_score,
            customer.frequency_score,
            customer.monetary_score,
            bool(customer.is_high_value),
        )
        probability = churn_probability(rate, days_overdue)
        level = risk_level_for(probability)

        factors = {
            "recencyImpact": min(1.0, days_overdue / RECENCY_IMPACT_CAP_DAYS),
            "frequencyImpact": 1 - customer.frequency_score / 5 if customer.frequency_score else 0.5,
            "monetaryImpact": 1 - customer.monetary_score / 5 if customer.monetary_score else 0.5,
            "segmentImpact": base_rate / DEFAULT_DECAY_RATE,
        }

        return ChurnPrediction(
            customer_id=customer.id,
            churn_probability=round(probability, 3),
            risk_level=level,
            days_since_last_order=days,
            expected_purchase_interval=round(interval),
            days_overdue=days_overdue,
            factors=factors,
            recommendation=generate_recommendation(level, segment, bool(customer.is_high_value)),
            rfm_segment=segment.value if segment else None,
        )

    async def calculate_churn_for_tenant(
        self, tenant_id: str, on_progress: Optional[ProgressCallback] = None
    ) -> ChurnBatchResult:
        """
        Predict every eligible customer and refresh is_churn_risk.

        Each batch is committed on its own; a failed batch is counted in
        ``errors`` and the remaining batches still run.
        """
        started = time.monotonic()
        logger.info(f"Starting tenant-wide churn calculation: tenant_id={tenant_id}")
        self._tenant_intervals.pop(tenant_id, None)

        customer_ids = (
            await self.db.execute(
                select(Customer.id)
                .where(
                    Customer.tenant_id == tenant_id,
                    Customer.last_order_date.isnot(None),
                    Customer.orders_count > 0,
                )
                .order_by(Customer.id)
            )
        ).scalars().all()

        result = ChurnBatchResult(tenant_id=tenant_id, total_customers=len(customer_ids))
        at_risk: Dict[str, int] = defaultdict(int)

        for i in range(0, len(customer_ids), self.batch_size):
            batch_ids = customer_ids[i:i + self.batch_size]
            try:
                customers = (
                    await self.db.execute(select(Customer).where(Customer.id.in_(batch_ids)))
                ).scalars().all()
                predictions: List[ChurnPrediction] = []
                for customer in customers:
                    prediction = await self._predict(customer)
                    customer.is_churn_risk = prediction.churn_probability >= CHURN_FLAG_THRESHOLD
                    predictions.append(prediction)
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                result.errors += len(batch_ids)
                logger.error(f"Churn batch starting at {i} failed for tenant {tenant_id}: {e}", exc_info=True)
            else:
                for prediction in predictions:
                    result.risk_levels[prediction.risk_level] += 1
                    if prediction.churn_probability >= CHURN_FLAG_THRESHOLD:
                        at_risk[prediction.rfm_segment or "UNSCORED"] += 1
                result.total_processed += len(predictions)

            if on_progress:
                await on_progress(result.total_processed + result.errors, result.total_customers)

        result.segment_at_risk = dict(at_risk)
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Tenant churn calculation complete: {result.to_dict()}")
        return result

    async def get_churn_risk_customers(
        self,
        tenant_id: str,
        min_probability: float = RISK_LOW,
        limit: int = 50,
        high_value_only: bool = False,
    ) -> List[dict]:
        """Flagged customers with a fresh prediction, highest probability first."""
        query = (
            select(Customer)
            .where(
                Customer.tenant_id == tenant_id,
                Customer.last_order_date.isnot(None),
                Customer.orders_count > 0,
                Customer.is_churn_risk.is_(True),
            )
            .order_by(Customer.total_spent.desc(), Customer.id)
            .limit(limit * 2)
        )
        if high_value_only:
            query = query.where(Customer.is_high_value.is_(True))

        results = []
        for customer in (await self.db.execute(query)).scalars().all():
            prediction = await self._predict(customer)
            if prediction.churn_probability >= min_probability:
                results.append({"customer": customer, "prediction": prediction})
            if len(results) >= limit:
                break

        results.sort(key=lambda r: r["prediction"].churn_probability, reverse=True)
        return results[:limit]
