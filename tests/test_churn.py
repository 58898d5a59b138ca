"""
Tests for churn prediction.

Tests cover:
- Decay rate, probability and risk bands
- Expected purchase intervals (per customer and tenant fallback)
- Single predictions and recommendations
- Tenant-wide calculation and the at-risk listing
"""

import math

import pytest

from segmentflow.models.customer import RfmSegment
from segmentflow.models.order import FinancialStatus
from segmentflow.services.analytics.churn import (
    DEFAULT_EXPECTED_INTERVAL_DAYS,
    ChurnService,
    RiskLevel,
    churn_probability,
    decay_rate,
    generate_recommendation,
    risk_level_for,
)

from factories import NOW, add_customer, add_order, days_ago


def churn_service(db, **kwargs):
    return ChurnService(db, clock=lambda: NOW, **kwargs)


async def customer_with_orders(db, tenant_id, external_id, order_days, **fields):
    """Customer whose paid orders were placed ``order_days`` days ago."""
    customer = await add_customer(
        db,
        tenant_id,
        external_id,
        orders_count=len(order_days),
        last_order_date=days_ago(min(order_days)),
        **fields,
    )
    for i, days in enumerate(order_days):
        await add_order(db, tenant_id, customer.id, f"{external_id}-o{i}", days_ago(days))
    return customer


# ============================================
# Model
# ============================================


class TestModel:
    """Tests for the pure probability model."""

    def test_segment_rate_without_scores(self):
        assert decay_rate(RfmSegment.AT_RISK, None, None, None, False) == 0.040

    def test_unscored_customer_uses_default_rate(self):
        assert decay_rate(None, None, None, None, False) == 0.020

    def test_scores_scale_rate(self):
        assert decay_rate(RfmSegment.LOST, 1, 1, 1, False) == pytest.approx(0.075)
        assert decay_rate(RfmSegment.LOST, 5, 5, 5, False) == pytest.approx(0.025)

    def test_partial_scores_are_ignored(self):
        assert decay_rate(RfmSegment.LOST, 5, None, 5, False) == 0.050

    def test_high_value_dampens_rate(self):
        assert decay_rate(RfmSegment.CHAMPIONS, 5, 5, 5, True) == pytest.approx(0.005 * 0.5 * 0.7)

    def test_probability(self):
        assert churn_probability(0.02, 0) == 0.0
        assert churn_probability(0.02, 50) == pytest.approx(1 - math.exp(-1))

    @pytest.mark.parametrize(
        "segment,scores,high_value",
        [
            (None, (None, None, None), False),
            (RfmSegment.CHAMPIONS, (5, 5, 5), True),
            (RfmSegment.LOYAL, (4, 5, 3), False),
            (RfmSegment.AT_RISK, (2, 3, 3), True),
            (RfmSegment.LOST, (1, 1, 1), False),
        ],
    )
    def test_probability_never_falls_as_days_pass(self, segment, scores, high_value):
        rate = decay_rate(segment, *scores, high_value)

        curve = [churn_probability(rate, days) for days in range(0, 366)]

        assert curve[0] == 0.0
        assert all(0.0 <= p <= 1.0 for p in curve)
        assert all(later >= earlier for earlier, later in zip(curve, curve[1:]))
        assert curve[-1] > curve[0]

    @pytest.mark.parametrize(
        "probability,level",
        [
            (0.0, RiskLevel.LOW),
            (0.29, RiskLevel.LOW),
            (0.3, RiskLevel.MEDIUM),
            (0.6, RiskLevel.HIGH),
            (0.8, RiskLevel.CRITICAL),
            (1.0, RiskLevel.CRITICAL),
        ],
    )
    def test_risk_bands(self, probability, level):
        assert risk_level_for(probability) == level

    def test_recommendations(self):
        assert generate_recommendation(RiskLevel.LOW, None, False).startswith("Customer is engaged")
        assert generate_recommendation(RiskLevel.CRITICAL, RfmSegment.LOST, True).startswith("HIGH PRIORITY")
        assert generate_recommendation(RiskLevel.HIGH, RfmSegment.CANNOT_LOSE, False).startswith("URGENT")
        assert generate_recommendation(RiskLevel.HIGH, RfmSegment.LOST, False).startswith("Re-engagement")
        assert generate_recommendation(RiskLevel.MEDIUM, RfmSegment.ABOUT_TO_SLEEP, False).startswith("Proactive")
        assert generate_recommendation(RiskLevel.MEDIUM, RfmSegment.LOYAL, False).startswith("Monitor")


# ============================================
# Intervals
# ============================================


class TestExpectedInterval:
    """Tests for purchase interval estimation."""

    @pytest.mark.asyncio
    async def test_median_gap_between_paid_orders(self, db, tenant):
        customer = await customer_with_orders(db, tenant.id, "1", [100, 90, 60, 50])

        # gaps 10, 30, 10
        assert await churn_service(db).expected_interval(tenant.id, customer.id) == 10

    @pytest.mark.asyncio
    async def test_interval_has_a_floor(self, db, tenant):
        customer = await customer_with_orders(db, tenant.id, "1", [10, 8])

        assert await churn_service(db).expected_interval(tenant.id, customer.id) == 7

    @pytest.mark.asyncio
    async def test_unpaid_orders_do_not_count(self, db, tenant):
        customer = await customer_with_orders(db, tenant.id, "1", [60, 30])
        await add_order(db, tenant.id, customer.id, "refund", days_ago(40), financial_status=FinancialStatus.REFUNDED)

        assert await churn_service(db).expected_interval(tenant.id, customer.id) == 30

    @pytest.mark.asyncio
    async def test_single_order_customer_gets_tenant_average(self, db, tenant):
        await customer_with_orders(db, tenant.id, "a", [50, 40, 20])  # gaps 10, 20
        await customer_with_orders(db, tenant.id, "b", [80, 50])  # gap 30
        single = await customer_with_orders(db, tenant.id, "c", [5])

        assert await churn_service(db).expected_interval(tenant.id, single.id) == 20

    @pytest.mark.asyncio
    async def test_tenant_without_repeat_buyers_uses_default(self, db, tenant):
        single = await customer_with_orders(db, tenant.id, "c", [5])

        interval = await churn_service(db).expected_interval(tenant.id, single.id)

        assert interval == DEFAULT_EXPECTED_INTERVAL_DAYS


# ============================================
# Predictions
# ============================================


class TestPredict:
    """Tests for single-customer predictions."""

    @pytest.mark.asyncio
    async def test_long_overdue_at_risk_customer_is_critical(self, db, tenant):
        customer = await customer_with_orders(
            db, tenant.id, "1", [230, 200], rfm_segment=RfmSegment.AT_RISK
        )

        prediction = await churn_service(db).predict(tenant.id, customer.id)

        assert prediction.days_since_last_order == 200
        assert prediction.expected_purchase_interval == 30
        assert prediction.days_overdue == 170
        assert prediction.churn_probability == 0.999
        assert prediction.risk_level == RiskLevel.CRITICAL
        assert prediction.rfm_segment == "AT_RISK"
        assert prediction.recommendation.startswith("Re-engagement")
        assert prediction.factors["recencyImpact"] == pytest.approx(170 / 180)
        assert prediction.factors["segmentImpact"] == pytest.approx(2.0)
        assert prediction.factors["frequencyImpact"] == 0.5

    @pytest.mark.asyncio
    async def test_customer_within_interval_is_low_risk(self, db, tenant):
        customer = await customer_with_orders(db, tenant.id, "1", [35, 5])

        prediction = await churn_service(db).predict(tenant.id, customer.id)

        assert prediction.days_overdue == 0
        assert prediction.churn_probability == 0.0
        assert prediction.risk_level == RiskLevel.LOW

    @pytest.mark.asyncio
    async def test_customer_without_orders_has_no_prediction(self, db, tenant):
        customer = await add_customer(db, tenant.id, "1")

        assert await churn_service(db).predict(tenant.id, customer.id) is None

    @pytest.mark.asyncio
    async def test_unknown_customer(self, db, tenant):
        assert await churn_service(db).predict(tenant.id, "missing") is None


# ============================================
# Tenant-wide
# ============================================


class TestTenantChurn:
    """Tests for tenant-wide calculation and listing."""

    @pytest.mark.asyncio
    async def test_flags_and_summary(self, db, tenant):
        lapsed = await customer_with_orders(db, tenant.id, "1", [230, 200], rfm_segment=RfmSegment.AT_RISK)
        unscored = await customer_with_orders(db, tenant.id, "2", [330, 300])
        active = await customer_with_orders(db, tenant.id, "3", [35, 5], is_churn_risk=True)

        result = await churn_service(db).calculate_churn_for_tenant(tenant.id)

        assert result.total_customers == 3
        assert result.total_processed == 3
        assert result.errors == 0
        assert result.risk_levels[RiskLevel.CRITICAL] == 2
        assert result.risk_levels[RiskLevel.LOW] == 1
        assert result.segment_at_risk == {"AT_RISK": 1, "UNSCORED": 1}

        for customer in (lapsed, unscored, active):
            await db.refresh(customer)
        assert lapsed.is_churn_risk is True
        assert unscored.is_churn_risk is True
        assert active.is_churn_risk is False

    @pytest.mark.asyncio
    async def test_progress_is_reported_per_batch(self, db, tenant):
        for i in range(3):
            await customer_with_orders(db, tenant.id, str(i), [40, 10])
        calls = []

        async def on_progress(done, total):
            calls.append((done, total))

        await churn_service(db, batch_size=2).calculate_churn_for_tenant(tenant.id, on_progress=on_progress)

        assert calls == [(2, 3), (3, 3)]

    @pytest.mark.asyncio
    async def test_risk_listing_orders_by_probability(self, db, tenant):
        await customer_with_orders(db, tenant.id, "1", [230, 200], rfm_segment=RfmSegment.NEED_ATTENTION)
        await customer_with_orders(db, tenant.id, "2", [330, 300], rfm_segment=RfmSegment.LOST)
        await customer_with_orders(db, tenant.id, "3", [35, 5])
        service = churn_service(db)
        await service.calculate_churn_for_tenant(tenant.id)

        results = await service.get_churn_risk_customers(tenant.id)

        assert [r["customer"].external_id for r in results] == ["2", "1"]
        probabilities = [r["prediction"].churn_probability for r in results]
        assert probabilities == sorted(probabilities, reverse=True)

    @pytest.mark.asyncio
    async def test_high_value_filter(self, db, tenant):
        await customer_with_orders(db, tenant.id, "1", [230, 200], is_high_value=True)
        await customer_with_orders(db, tenant.id, "2", [330, 300])
        service = churn_service(db)
        await service.calculate_churn_for_tenant(tenant.id)

        results = await service.get_churn_risk_customers(tenant.id, high_value_only=True)

        assert [r["customer"].external_id for r in results] == ["1"]
