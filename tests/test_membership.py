"""
Tests for segment membership and segment CRUD.

Tests cover:
- Membership recompute (adds, removes, snapshots, cached stats)
- Rollback on a failed recompute
- Staggered refresh of every active segment
- CRUD, listings, member queries and overlap analysis
"""

from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select

from segmentflow.exceptions import InvalidFilterError, NotFoundError, ValidationError
from segmentflow.models import Segment, SegmentMember
from segmentflow.models.customer import RfmSegment
from segmentflow.schemas.segment import SegmentCreate, SegmentUpdate
from segmentflow.services.queue.queues import QueueName
from segmentflow.services.segments.membership import MembershipService

from factories import add_customer, add_segment

BIG_SPENDERS = {"logic": "AND", "conditions": [{"field": "totalSpent", "operator": "gte", "value": 100}]}
AT_RISK = {"logic": "AND", "conditions": [{"field": "rfmSegment", "operator": "eq", "value": "AT_RISK"}]}


@pytest_asyncio.fixture
async def customers(db, tenant):
    return [
        await add_customer(db, tenant.id, "1", total_spent=Decimal("500"), rfm_segment=RfmSegment.AT_RISK),
        await add_customer(db, tenant.id, "2", total_spent=Decimal("150"), rfm_segment=RfmSegment.LOYAL),
        await add_customer(db, tenant.id, "3", total_spent=Decimal("20"), rfm_segment=RfmSegment.AT_RISK),
    ]


async def member_ids(db, segment_id):
    rows = await db.execute(select(SegmentMember.customer_id).where(SegmentMember.segment_id == segment_id))
    return set(rows.scalars().all())


# ============================================
# Recompute
# ============================================


class TestComputeMembership:
    """Tests for applying a segment's filters to stored membership."""

    @pytest.mark.asyncio
    async def test_first_compute_adds_matches_with_snapshots(self, db, tenant, customers):
        segment = await add_segment(db, tenant.id, "Big spenders", BIG_SPENDERS)

        result = await MembershipService(db).compute_membership(segment.id)

        assert result.previous_count == 0
        assert result.new_count == 2
        assert result.added == 2
        assert result.removed == 0
        assert result.estimated_revenue == Decimal("650")
        assert await member_ids(db, segment.id) == {customers[0].id, customers[1].id}

        member = (
            await db.execute(select(SegmentMember).where(SegmentMember.customer_id == customers[0].id))
        ).scalar_one()
        assert member.total_spent_snapshot == Decimal("500")
        assert member.rfm_segment_snapshot == RfmSegment.AT_RISK

        await db.refresh(segment)
        assert segment.customer_count == 2
        assert segment.estimated_revenue == Decimal("650")
        assert segment.last_computed_at is not None

    @pytest.mark.asyncio
    async def test_recompute_applies_only_the_difference(self, db, tenant, customers):
        segment = await add_segment(db, tenant.id, "Big spenders", BIG_SPENDERS)
        service = MembershipService(db)
        await service.compute_membership(segment.id)
        original = (
            await db.execute(select(SegmentMember).where(SegmentMember.customer_id == customers[0].id))
        ).scalar_one()

        customers[1].total_spent = Decimal("10")
        customers[2].total_spent = Decimal("300")
        await db.commit()

        result = await service.compute_membership(segment.id)

        assert result.previous_count == 2
        assert (result.added, result.removed) == (1, 1)
        assert await member_ids(db, segment.id) == {customers[0].id, customers[2].id}
        kept = (
            await db.execute(select(SegmentMember).where(SegmentMember.customer_id == customers[0].id))
        ).scalar_one()
        assert kept.id == original.id

    @pytest.mark.asyncio
    async def test_unchanged_membership_is_a_no_op(self, db, tenant, customers):
        segment = await add_segment(db, tenant.id, "At risk", AT_RISK)
        service = MembershipService(db)
        await service.compute_membership(segment.id)

        result = await service.compute_membership(segment.id)

        assert (result.added, result.removed, result.new_count) == (0, 0, 2)

    @pytest.mark.asyncio
    async def test_failed_recompute_keeps_previous_membership(self, db, tenant, customers):
        segment = await add_segment(db, tenant.id, "At risk", AT_RISK)
        service = MembershipService(db)
        await service.compute_membership(segment.id)

        segment.filters = {"logic": "AND", "conditions": [{"field": "bogus", "operator": "eq", "value": 1}]}
        await db.commit()

        with pytest.raises(InvalidFilterError):
            await service.compute_membership(segment.id)

        assert await member_ids(db, segment.id) == {customers[0].id, customers[2].id}
        await db.refresh(segment)
        assert segment.customer_count == 2

    @pytest.mark.asyncio
    async def test_missing_segment(self, db):
        with pytest.raises(NotFoundError):
            await MembershipService(db).compute_membership("nope")

    @pytest.mark.asyncio
    async def test_preview_does_not_touch_membership(self, db, tenant, customers):
        preview = await MembershipService(db).preview(tenant.id, BIG_SPENDERS, limit=1)

        assert preview["total_count"] == 2
        assert preview["total_spent"] == Decimal("650")
        assert [c.id for c in preview["sample"]] == [customers[0].id]
        assert (await db.execute(select(SegmentMember))).scalars().all() == []


class TestRefreshAllSegments:
    """Tests for queueing a tenant-wide refresh."""

    @pytest.mark.asyncio
    async def test_active_segments_are_queued_with_staggered_delay(self, db, tenant, job_queue):
        first = await add_segment(db, tenant.id, "A", AT_RISK)
        second = await add_segment(db, tenant.id, "B", AT_RISK)
        third = await add_segment(db, tenant.id, "C", AT_RISK)
        await add_segment(db, tenant.id, "Paused", AT_RISK, is_active=False)

        job_ids = await MembershipService(db, job_queue).refresh_all_segments(tenant.id, delay_ms=1000)

        assert set(job_ids) == {f"segment:{s.id}" for s in (first, second, third)}
        counts = await job_queue.counts(QueueName.SEGMENT_UPDATE.value)
        assert counts["waiting"] == 1
        assert counts["delayed"] == 2

        job = await job_queue.get_job(QueueName.SEGMENT_UPDATE.value, job_ids[0])
        assert job.payload["reason"] == "refresh"
        assert job.payload["tenantId"] == tenant.id

    @pytest.mark.asyncio
    async def test_repeated_refresh_does_not_duplicate_jobs(self, db, tenant, job_queue):
        await add_segment(db, tenant.id, "A", AT_RISK)
        service = MembershipService(db, job_queue)

        await service.refresh_all_segments(tenant.id, delay_ms=0)
        await service.refresh_all_segments(tenant.id, delay_ms=0)

        assert (await job_queue.counts(QueueName.SEGMENT_UPDATE.value))["waiting"] == 1

    @pytest.mark.asyncio
    async def test_needs_a_job_queue(self, db, tenant):
        with pytest.raises(RuntimeError):
            await MembershipService(db).refresh_all_segments(tenant.id)


# ============================================
# CRUD
# ============================================


class TestSegmentCrud:
    """Tests for creating, updating, listing and deleting segments."""

    @pytest.mark.asyncio
    async def test_create_stores_normalized_filters(self, db, tenant):
        data = SegmentCreate(
            name="Whales",
            filters={"conditions": [{"field": "totalSpent", "operator": "gte", "value": "1000"}]},
        )

        segment = await MembershipService(db).create_segment(tenant.id, data)

        assert segment.filters == {
            "logic": "AND",
            "conditions": [{"field": "totalSpent", "operator": "gte", "value": 1000}],
        }
        assert segment.customer_count == 0

    @pytest.mark.asyncio
    async def test_create_rejects_invalid_filters(self, db, tenant):
        data = SegmentCreate(name="Broken", filters={"conditions": [{"field": "x", "operator": "eq"}]})

        with pytest.raises(InvalidFilterError):
            await MembershipService(db).create_segment(tenant.id, data)
        assert (await db.execute(select(Segment))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_update_reports_filter_changes(self, db, tenant):
        service = MembershipService(db)
        segment = await service.create_segment(tenant.id, SegmentCreate(name="S", filters=AT_RISK))

        renamed, changed = await service.update_segment(tenant.id, segment.id, SegmentUpdate(name="Renamed"))
        assert renamed.name == "Renamed"
        assert changed is False

        _, changed = await service.update_segment(tenant.id, segment.id, SegmentUpdate(filters=AT_RISK))
        assert changed is False

        updated, changed = await service.update_segment(tenant.id, segment.id, SegmentUpdate(filters=BIG_SPENDERS))
        assert changed is True
        assert updated.filters["conditions"][0]["field"] == "totalSpent"

    @pytest.mark.asyncio
    async def test_update_can_clear_description(self, db, tenant):
        service = MembershipService(db)
        segment = await service.create_segment(
            tenant.id, SegmentCreate(name="S", description="old", filters=AT_RISK)
        )

        updated, _ = await service.update_segment(tenant.id, segment.id, SegmentUpdate(description=None))

        assert updated.description is None
        assert updated.name == "S"

    @pytest.mark.asyncio
    async def test_segments_are_tenant_scoped(self, db, tenant):
        segment = await add_segment(db, tenant.id, "S", AT_RISK)

        assert await MembershipService(db).get_segment("other-tenant", segment.id) is None
        with pytest.raises(NotFoundError):
            await MembershipService(db).update_segment("other-tenant", segment.id, SegmentUpdate(name="x"))

    @pytest.mark.asyncio
    async def test_delete_removes_members(self, db, tenant, customers):
        service = MembershipService(db)
        segment = await add_segment(db, tenant.id, "At risk", AT_RISK)
        await service.compute_membership(segment.id)

        await service.delete_segment(tenant.id, segment.id)

        assert (await db.execute(select(Segment))).scalars().all() == []
        assert (await db.execute(select(SegmentMember))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_list_filters_and_sorts(self, db, tenant):
        await add_segment(db, tenant.id, "Beta", AT_RISK)
        await add_segment(db, tenant.id, "Alpha", AT_RISK)
        await add_segment(db, tenant.id, "Gamma", AT_RISK, is_active=False)

        result = await MembershipService(db).list_segments(
            tenant.id, is_active=True, sort_by="name", descending=False
        )

        assert result["total"] == 2
        assert [s.name for s in result["segments"]] == ["Alpha", "Beta"]


# ============================================
# Membership queries
# ============================================


class TestMembershipQueries:
    """Tests for reading membership back."""

    @pytest.mark.asyncio
    async def test_members_and_lookups(self, db, tenant, customers):
        service = MembershipService(db)
        segment = await add_segment(db, tenant.id, "At risk", AT_RISK)
        await service.compute_membership(segment.id)

        page = await service.get_segment_members(segment.id, sort_by="total_spent_snapshot")

        assert page["total"] == 2
        assert [m["customer"]["id"] for m in page["members"]] == [customers[0].id, customers[2].id]
        assert await service.is_customer_in_segment(customers[0].id, segment.id) is True
        assert await service.is_customer_in_segment(customers[1].id, segment.id) is False
        assert await service.get_customer_segments(customers[0].id) == [{"id": segment.id, "name": "At risk"}]

    @pytest.mark.asyncio
    async def test_overlap(self, db, tenant, customers):
        service = MembershipService(db)
        at_risk = await add_segment(db, tenant.id, "At risk", AT_RISK)
        big = await add_segment(db, tenant.id, "Big", BIG_SPENDERS)
        await service.compute_membership(at_risk.id)
        await service.compute_membership(big.id)

        result = await service.get_segment_overlap(tenant.id, [at_risk.id, big.id])

        assert result["overlaps"] == [{"segment_pair": [at_risk.id, big.id], "count": 1}]
        assert {s["id"]: s["count"] for s in result["segments"]} == {at_risk.id: 2, big.id: 2}

    @pytest.mark.asyncio
    async def test_overlap_needs_two_known_segments(self, db, tenant):
        segment = await add_segment(db, tenant.id, "S", AT_RISK)
        service = MembershipService(db)

        with pytest.raises(ValidationError):
            await service.get_segment_overlap(tenant.id, [segment.id])
        with pytest.raises(NotFoundError):
            await service.get_segment_overlap(tenant.id, [segment.id, "missing"])
