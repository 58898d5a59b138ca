"""
Tests for the pipeline scheduler.

Tests cover:
- Fan-out of RFM, segment refresh and churn jobs to active tenants
- Monthly API counter reset
- Cron ticks taken off the scheduler queue
- Stale job sweep, including sync run cleanup
- Scheduler job registration
"""

import pytest
import pytest_asyncio
from sqlalchemy import select

from segmentflow.models import SyncJob, Tenant, TenantStatus
from segmentflow.models.sync_job import ResourceType, SyncStatus
from segmentflow.schemas.jobs import ScheduledJob, ScheduledTask, SyncJobPayload
from segmentflow.services.queue.queues import SCHEDULED_PRIORITY, QueueName, enqueue_sync
from segmentflow.tasks import scheduler as scheduler_module
from segmentflow.tasks.scheduler import (
    clean_stale_jobs,
    reset_monthly_api_calls,
    run_scheduled_task,
    schedule_churn_for_all_tenants,
    schedule_rfm_for_all_tenants,
    schedule_segment_refresh,
    start_scheduler,
    stop_scheduler,
)

from factories import add_segment

SEGMENT_FILTERS = {"logic": "AND", "conditions": []}


@pytest_asyncio.fixture
async def tenants(db, tenant):
    second = Tenant(shop_domain="second.myshopify.com", monthly_api_calls=40)
    paused = Tenant(shop_domain="paused.myshopify.com", status=TenantStatus.SUSPENDED, monthly_api_calls=7)
    db.add_all([second, paused])
    await db.commit()
    return {"active": [tenant, second], "paused": paused}


class TestFanOut:
    """Tests for the daily tenant sweeps."""

    @pytest.mark.asyncio
    async def test_rfm_is_queued_for_active_tenants_only(self, tenants, job_queue, session_factory):
        queued = await schedule_rfm_for_all_tenants(job_queue, session_factory)

        assert queued == 2
        for tenant in tenants["active"]:
            job = await job_queue.get_job(QueueName.RFM_CALCULATION.value, f"rfm:{tenant.id}")
            assert job.priority == SCHEDULED_PRIORITY
            assert job.payload["triggeredBy"] == "schedule"
        paused_job = await job_queue.get_job(QueueName.RFM_CALCULATION.value, f"rfm:{tenants['paused'].id}")
        assert paused_job is None

    @pytest.mark.asyncio
    async def test_running_twice_does_not_duplicate(self, tenants, job_queue, session_factory):
        await schedule_rfm_for_all_tenants(job_queue, session_factory)
        await schedule_rfm_for_all_tenants(job_queue, session_factory)

        assert (await job_queue.counts(QueueName.RFM_CALCULATION.value))["waiting"] == 2

    @pytest.mark.asyncio
    async def test_churn_is_queued_for_active_tenants(self, tenants, job_queue, session_factory):
        queued = await schedule_churn_for_all_tenants(job_queue, session_factory)

        assert queued == 2
        tenant = tenants["active"][0]
        job = await job_queue.get_job(QueueName.CHURN_CALCULATION.value, f"churn:{tenant.id}")
        assert job.priority == SCHEDULED_PRIORITY

    @pytest.mark.asyncio
    async def test_segment_refresh_counts_segments(self, db, tenants, job_queue, session_factory):
        first, second = tenants["active"]
        await add_segment(db, first.id, "A", SEGMENT_FILTERS)
        await add_segment(db, first.id, "B", SEGMENT_FILTERS)
        await add_segment(db, second.id, "C", SEGMENT_FILTERS)
        await add_segment(db, tenants["paused"].id, "D", SEGMENT_FILTERS)

        queued = await schedule_segment_refresh(job_queue, session_factory)

        assert queued == 3
        counts = await job_queue.counts(QueueName.SEGMENT_UPDATE.value)
        assert counts["waiting"] + counts["delayed"] == 3

    @pytest.mark.asyncio
    async def test_no_tenants(self, job_queue, session_factory):
        assert await schedule_rfm_for_all_tenants(job_queue, session_factory) == 0


class TestMonthlyReset:
    """Tests for the API counter reset."""

    @pytest.mark.asyncio
    async def test_every_counter_is_zeroed(self, db, tenants, session_factory):
        reset = await reset_monthly_api_calls(session_factory)

        assert reset == 3
        counters = (await db.execute(select(Tenant.monthly_api_calls).execution_options(populate_existing=True)))
        assert set(counters.scalars().all()) == {0}


class TestStaleSweep:
    """Tests for failing jobs whose worker went away."""

    @pytest.mark.asyncio
    async def test_stalled_sync_fails_job_run_and_audit_row(
        self, db, tenant, job_queue, progress_store, session_factory, clock
    ):
        await progress_store.create_run("run-1", tenant.id, ResourceType.ORDERS)
        await progress_store.update("run-1", status=SyncStatus.RUNNING)
        db.add(
            SyncJob(
                tenant_id=tenant.id,
                sync_run_id="run-1",
                resource_type=ResourceType.ORDERS,
                status=SyncStatus.RUNNING,
            )
        )
        await db.commit()
        await enqueue_sync(job_queue, "orders", SyncJobPayload(tenant_id=tenant.id, sync_run_id="run-1"))
        job = await job_queue.dequeue(QueueName.ORDER_SYNC.value)

        clock.advance(120)
        swept = await clean_stale_jobs(60_000, job_queue, progress_store, session_factory)

        assert swept == 1
        stored = await job_queue.get_job(QueueName.ORDER_SYNC.value, job.id)
        assert stored.state == "failed"
        assert "stalled" in stored.failed_reason

        progress = await progress_store.get("run-1")
        assert progress.status == SyncStatus.FAILED

        sync_job = (
            await db.execute(select(SyncJob).execution_options(populate_existing=True))
        ).scalar_one()
        assert sync_job.status == SyncStatus.FAILED
        assert "stalled" in sync_job.error

    @pytest.mark.asyncio
    async def test_recent_heartbeat_is_left_alone(self, job_queue, progress_store, session_factory, clock):
        await job_queue.enqueue(QueueName.RFM_CALCULATION.value, {"tenantId": "t1"})
        await job_queue.dequeue(QueueName.RFM_CALCULATION.value)

        clock.advance(30)

        assert await clean_stale_jobs(60_000, job_queue, progress_store, session_factory) == 0
        assert (await job_queue.counts(QueueName.RFM_CALCULATION.value))["active"] == 1


class TestSchedulerSetup:
    """Tests for job registration."""

    @pytest.mark.asyncio
    async def test_all_jobs_are_registered(self, job_queue, monkeypatch):
        monkeypatch.setattr(scheduler_module, "scheduler", None)

        scheduler = start_scheduler(job_queue)
        try:
            assert scheduler.running
            ids = {job.id for job in scheduler.get_jobs()}
            assert ids == {
                "repeat:scheduler:daily-rfm",
                "repeat:scheduler:segment-refresh",
                "repeat:scheduler:daily-churn",
                "repeat:scheduler:monthly-reset",
                "stale_job_sweep",
            }
            assert str(scheduler.get_job("repeat:scheduler:daily-churn").trigger.fields[5]) == "2"
            assert str(scheduler.get_job("repeat:scheduler:monthly-reset").trigger.fields[2]) == "1"
        finally:
            stop_scheduler()

    @pytest.mark.asyncio
    async def test_tick_enqueues_one_scheduler_job(self, job_queue, monkeypatch):
        monkeypatch.setattr(scheduler_module, "scheduler", None)

        scheduler = start_scheduler(job_queue)
        try:
            tick = scheduler.get_job("repeat:scheduler:daily-rfm")
            await tick.func(*tick.args, **tick.kwargs)
            await tick.func(*tick.args, **tick.kwargs)
        finally:
            stop_scheduler()

        assert (await job_queue.counts(QueueName.SCHEDULER.value))["waiting"] == 1
        job = await job_queue.get_job(QueueName.SCHEDULER.value, "daily-rfm")
        assert job.payload["task"] == "daily-rfm"


class TestScheduledTasks:
    """Tests for running cron ticks off the scheduler queue."""

    @pytest.mark.asyncio
    async def test_daily_rfm_tick_fans_out(self, tenants, job_queue, session_factory):
        result = await run_scheduled_task(ScheduledJob(task=ScheduledTask.DAILY_RFM), job_queue, session_factory)

        assert result == {"task": "daily-rfm", "count": 2}
        assert (await job_queue.counts(QueueName.RFM_CALCULATION.value))["waiting"] == 2

    @pytest.mark.asyncio
    async def test_tick_can_target_one_tenant(self, tenants, job_queue, session_factory):
        tenant = tenants["active"][1]
        payload = ScheduledJob(task=ScheduledTask.DAILY_CHURN, tenant_id=tenant.id)

        result = await run_scheduled_task(payload, job_queue, session_factory)

        assert result["count"] == 1
        assert await job_queue.get_job(QueueName.CHURN_CALCULATION.value, f"churn:{tenant.id}") is not None

    @pytest.mark.asyncio
    async def test_monthly_reset_tick(self, db, tenants, job_queue, session_factory):
        result = await run_scheduled_task(
            ScheduledJob(task=ScheduledTask.MONTHLY_RESET), job_queue, session_factory
        )

        assert result == {"task": "monthly-reset", "count": 3}
