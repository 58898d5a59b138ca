"""Pipeline Scheduler - periodic fan-out of analytics jobs.

All triggers run in UTC:
- 00:00 daily: RFM recompute for every active tenant
- 01:00 daily: segment membership refresh for every active tenant
- 02:00 daily: churn scoring for every active tenant
- 00:00 on the 1st: reset per-tenant monthly API call counters
- every 15 minutes: move stalled active jobs to failed

The cron ticks are enqueued on the scheduler queue as repeatable jobs; its
worker runs the tenant fan-out through ``run_scheduled_task``. The per-tenant
jobs it enqueues carry a lower priority than event-driven work (webhooks,
post-sync recomputes) so they never starve it.
"""

import logging
from typing import Callable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, update

from segmentflow.config import settings
from segmentflow.database import async_session_maker
from segmentflow.models.sync_job import SyncJob, SyncStatus
from segmentflow.models.tenant import Tenant, TenantStatus
from segmentflow.schemas.jobs import ScheduledJob, ScheduledTask
from segmentflow.services.progress_store import ProgressStore, get_progress_store
from segmentflow.services.queue.job_queue import JobQueue
from segmentflow.services.queue.queues import (
    SCHEDULED_PRIORITY,
    QueueName,
    enqueue_churn,
    enqueue_rfm,
    get_job_queue,
)
from segmentflow.services.segments.membership import MembershipService
from segmentflow.utils.dates import utcnow

logger = logging.getLogger(__name__)

DAILY_RFM_CRON = "0 0 * * *"
DAILY_SEGMENT_REFRESH_CRON = "0 1 * * *"
DAILY_CHURN_CRON = "0 2 * * *"
MONTHLY_RESET_CRON = "0 0 1 * *"

SCHEDULES = (
    (ScheduledTask.DAILY_RFM, DAILY_RFM_CRON),
    (ScheduledTask.SEGMENT_REFRESH, DAILY_SEGMENT_REFRESH_CRON),
    (ScheduledTask.DAILY_CHURN, DAILY_CHURN_CRON),
    (ScheduledTask.MONTHLY_RESET, MONTHLY_RESET_CRON),
)
STALE_SWEEP_MINUTES = 15

SYNC_QUEUES = (QueueName.CUSTOMER_SYNC.value, QueueName.ORDER_SYNC.value)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global scheduler
    if scheduler is None:
        scheduler = AsyncIOScheduler(timezone="UTC")
    return scheduler


async def _active_tenant_ids(session_factory: Callable, tenant_id: Optional[str] = None) -> List[str]:
    query = select(Tenant.id).where(Tenant.status == TenantStatus.ACTIVE).order_by(Tenant.id)
    if tenant_id:
        query = query.where(Tenant.id == tenant_id)
    async with session_factory() as db:
        result = await db.execute(query)
        return list(result.scalars().all())


async def schedule_rfm_for_all_tenants(
    job_queue: Optional[JobQueue] = None,
    session_factory: Callable = async_session_maker,
    tenant_id: Optional[str] = None,
) -> int:
    """Enqueue a tenant-wide RFM run for each active tenant."""
    job_queue = job_queue or get_job_queue()
    queued = 0
    for active_id in await _active_tenant_ids(session_factory, tenant_id):
        try:
            await enqueue_rfm(job_queue, active_id, "schedule", priority=SCHEDULED_PRIORITY)
            queued += 1
        except Exception as e:
            logger.error(f"Could not enqueue scheduled RFM for tenant {active_id}: {e}", exc_info=True)
    logger.info(f"Scheduled RFM calculation for {queued} tenants")
    return queued


async def schedule_segment_refresh(
    job_queue: Optional[JobQueue] = None,
    session_factory: Callable = async_session_maker,
    tenant_id: Optional[str] = None,
) -> int:
    """Enqueue a staggered refresh of every active segment of each active tenant."""
    job_queue = job_queue or get_job_queue()
    queued = 0
    for active_id in await _active_tenant_ids(session_factory, tenant_id):
        try:
            async with session_factory() as db:
                job_ids = await MembershipService(db, job_queue).refresh_all_segments(
                    active_id, reason="schedule", priority=SCHEDULED_PRIORITY
                )
            queued += len(job_ids)
        except Exception as e:
            logger.error(f"Could not schedule segment refresh for tenant {active_id}: {e}", exc_info=True)
    logger.info(f"Scheduled refresh of {queued} segments")
    return queued


async def schedule_churn_for_all_tenants(
    job_queue: Optional[JobQueue] = None,
    session_factory: Callable = async_session_maker,
    tenant_id: Optional[str] = None,
) -> int:
    job_queue = job_queue or get_job_queue()
    queued = 0
    for active_id in await _active_tenant_ids(session_factory, tenant_id):
        try:
            await enqueue_churn(job_queue, active_id, "schedule", priority=SCHEDULED_PRIORITY)
            queued += 1
        except Exception as e:
            logger.error(f"Could not enqueue scheduled churn run for tenant {active_id}: {e}", exc_info=True)
    logger.info(f"Scheduled churn calculation for {queued} tenants")
    return queued


async def reset_monthly_api_calls(
    session_factory: Callable = async_session_maker, tenant_id: Optional[str] = None
) -> int:
    query = update(Tenant).values(monthly_api_calls=0)
    if tenant_id:
        query = query.where(Tenant.id == tenant_id)
    async with session_factory() as db:
        result = await db.execute(query)
        await db.commit()
    logger.info(f"Reset monthly API call counters for {result.rowcount} tenants")
    return result.rowcount


async def run_scheduled_task(
    payload: ScheduledJob,
    job_queue: Optional[JobQueue] = None,
    session_factory: Callable = async_session_maker,
) -> dict:
    """Run one cron tick taken off the scheduler queue."""
    if payload.task == ScheduledTask.MONTHLY_RESET:
        count = await reset_monthly_api_calls(session_factory, payload.tenant_id)
    else:
        fan_out = {
            ScheduledTask.DAILY_RFM: schedule_rfm_for_all_tenants,
            ScheduledTask.SEGMENT_REFRESH: schedule_segment_refresh,
            ScheduledTask.DAILY_CHURN: schedule_churn_for_all_tenants,
        }[payload.task]
        count = await fan_out(job_queue, session_factory, payload.tenant_id)
    return {"task": payload.task.value, "count": count}


async def clean_stale_jobs(
    threshold_ms: Optional[int] = None,
    job_queue: Optional[JobQueue] = None,
    progress_store: Optional[ProgressStore] = None,
    session_factory: Callable = async_session_maker,
) -> int:
    """
    Move active jobs whose heartbeat is older than ``threshold_ms`` to failed.

    For sync jobs the run's progress record and SyncJob row are failed too,
    so nothing is left showing ``running`` after a worker crash.
    """
    job_queue = job_queue or get_job_queue()
    store = progress_store or get_progress_store()
    threshold_ms = threshold_ms or settings.STALE_JOB_THRESHOLD_MS

    total = 0
    for queue in QueueName:
        try:
            stale = await job_queue.clean_stale(queue.value, threshold_ms)
        except Exception as e:
            logger.error(f"Stale sweep of {queue.value} failed: {e}", exc_info=True)
            continue
        total += len(stale)

        if queue.value not in SYNC_QUEUES:
            continue
        for job in stale:
            run_id = job.payload.get("syncRunId") or job.id
            await store.fail(run_id, job.failed_reason)
            async with session_factory() as db:
                await db.execute(
                    update(SyncJob)
                    .where(SyncJob.sync_run_id == run_id, SyncJob.status == SyncStatus.RUNNING)
                    .values(status=SyncStatus.FAILED, error=job.failed_reason, completed_at=utcnow())
                )
                await db.commit()

    if total:
        logger.warning(f"Stale sweep failed {total} jobs")
    return total


def start_scheduler(job_queue: Optional[JobQueue] = None) -> AsyncIOScheduler:
    """Start the scheduler with all pipeline jobs."""
    global scheduler

    scheduler = get_scheduler()
    job_queue = job_queue or get_job_queue()

    # Each tick is a job on the scheduler queue, skipped while the previous one is open
    for task, cron in SCHEDULES:
        job_queue.add_repeatable(
            scheduler, QueueName.SCHEDULER.value, ScheduledJob(task=task), cron, job_id=task.value
        )

    scheduler.add_job(
        clean_stale_jobs,
        IntervalTrigger(minutes=STALE_SWEEP_MINUTES, timezone="UTC"),
        kwargs={"job_queue": job_queue},
        id="stale_job_sweep",
        name="Fail stalled jobs",
        replace_existing=True,
    )

    if not scheduler.running:
        scheduler.start()
        logger.info("Pipeline scheduler started")
        logger.info("Jobs scheduled:")
        for job in scheduler.get_jobs():
            logger.info(f"  - {job.name}: {job.trigger}")

    return scheduler


def stop_scheduler():
    """Stop the pipeline scheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Pipeline scheduler stopped")
