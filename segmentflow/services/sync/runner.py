"""
Sync job runner.

Wraps one customer-sync or order-sync job:

1. progress record to RUNNING, SyncJob audit row created and committed
2. SyncEngine pulls and upserts every page
3. orders only: customer aggregates recomputed from the stored orders
4. SyncJob completed and tenant.last_sync_at moved, in one commit
5. orders only: the RFM job is enqueued, strictly after that commit

Failures roll back the open transaction, mark the SyncJob failed and re-raise
so the queue's retry policy applies. The progress record only turns
``failed`` on the last attempt; earlier attempts just report the retry.
"""

import logging
import time
import traceback
from typing import Callable, Optional

from segmentflow.config import settings
from segmentflow.database import async_session_maker
from segmentflow.exceptions import NotFoundError, TenantInactiveError
from segmentflow.models.sync_job import ResourceType, SyncJob, SyncStatus
from segmentflow.models.tenant import Tenant
from segmentflow.schemas.jobs import SyncJobPayload
from segmentflow.services.cache_service import CacheService, get_cache_service
from segmentflow.services.commerce_client import client_for_tenant
from segmentflow.services.progress_store import ProgressStore, get_progress_store
from segmentflow.services.queue.job_queue import Job, JobQueue
from segmentflow.services.queue.queues import enqueue_rfm, get_job_queue
from segmentflow.services.sync.engine import SyncEngine, SyncResult
from segmentflow.services.sync.order_stats import update_customer_order_stats
from segmentflow.utils.dates import utcnow

logger = logging.getLogger(__name__)


class SyncRunner:
    def __init__(
        self,
        session_factory: Callable = async_session_maker,
        progress_store: Optional[ProgressStore] = None,
        job_queue: Optional[JobQueue] = None,
        client_factory: Callable = client_for_tenant,
        cache: Optional[CacheService] = None,
    ):
        self.session_factory = session_factory
        self.store = progress_store or get_progress_store()
        self.job_queue = job_queue or get_job_queue()
        self.client_factory = client_factory
        self.cache = cache or get_cache_service()

    async def run(
        self,
        resource_type: ResourceType,
        payload: SyncJobPayload,
        job: Optional[Job] = None,
    ) -> dict:
        tenant_id = payload.tenant_id
        run_id = payload.sync_run_id or (job.id if job else self.store.generate_run_id())
        attempt = job.attempts_made if job else 0
        final_attempt = job.is_final_attempt if job else True
        label = resource_type.value

        if await self.store.get(run_id) is None:
            await self.store.create_run(run_id, tenant_id, resource_type)
        await self.store.update(run_id, status=SyncStatus.RUNNING, step=f"Syncing {label}")

        started_at = utcnow()
        started = time.monotonic()
        sync_job_id = None

        async with self.session_factory() as db:
            try:
                tenant = await db.get(Tenant, tenant_id)
                if tenant is None:
                    raise NotFoundError("Tenant", tenant_id)
                if not tenant.is_active:
                    raise TenantInactiveError(tenant_id, tenant.status.value)

                sync_job = SyncJob(
                    tenant_id=tenant_id,
                    sync_run_id=run_id,
                    resource_type=resource_type,
                    sync_mode=payload.mode,
                    status=SyncStatus.RUNNING,
                    retry_count=attempt,
                    started_at=started_at,
                )
                db.add(sync_job)
                await db.commit()
                sync_job_id = sync_job.id

                async def on_progress(processed: int, total: Optional[int]) -> None:
                    fields = {"records_processed": processed, "step": f"Synced {processed} {label}"}
                    if total:
                        fields["total_records"] = total
                        fields["progress"] = min(99, int(processed * 100 / total))
                    await self.store.update(run_id, **fields)

                async with self.client_factory(tenant, payload.access_token) as client:
                    engine = SyncEngine(db, client)
                    result: SyncResult = await engine.sync(
                        tenant_id,
                        resource_type,
                        mode=payload.mode,
                        batch_size=payload.batch_size or settings.SYNC_BATCH_SIZE,
                        on_progress=on_progress,
                    )

                if resource_type == ResourceType.ORDERS:
                    await self.store.update(run_id, step="Updating customer statistics")
                    await update_customer_order_stats(db, tenant_id)

                sync_job.status = SyncStatus.COMPLETED
                sync_job.records_processed = result.total_processed
                sync_job.records_failed = result.errors
                sync_job.total_records = result.total_processed
                sync_job.progress_percent = 100
                sync_job.completed_at = utcnow()
                sync_job.duration_ms = int((time.monotonic() - started) * 1000)
                tenant.last_sync_at = started_at
                await db.commit()

            except Exception as e:
                await db.rollback()
                await self._record_failure(db, sync_job_id, e, started)
                if final_attempt:
                    await self.store.fail(run_id, str(e) or e.__class__.__name__)
                else:
                    await self.store.update(run_id, step=f"Attempt {attempt + 1} failed, retrying")
                logger.error(f"{label.capitalize()} sync failed for tenant {tenant_id} (run {run_id}): {e}")
                raise

        if resource_type == ResourceType.ORDERS:
            await enqueue_rfm(self.job_queue, tenant_id, "sync", job_id=f"rfm:{tenant_id}:sync:{run_id}")

        await self.store.complete(
            run_id,
            step=f"Synced {result.total_processed} {label}",
            records_processed=result.total_processed,
            records_failed=result.errors,
        )
        await self.cache.invalidate_tenant(tenant_id)

        logger.info(f"{label.capitalize()} sync run {run_id} completed for tenant {tenant_id}")
        return dict(result.to_dict(), sync_run_id=run_id)

    async def _record_failure(self, db, sync_job_id: Optional[str], error: Exception, started: float) -> None:
        if sync_job_id is None:
            return
        try:
            sync_job = await db.get(SyncJob, sync_job_id)
            if sync_job is None or sync_job.status.is_terminal:
                return
            sync_job.status = SyncStatus.FAILED
            sync_job.error = str(error) or error.__class__.__name__
            sync_job.error_stack = "".join(traceback.format_exception(error))
            sync_job.completed_at = utcnow()
            sync_job.duration_ms = int((time.monotonic() - started) * 1000)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(f"Could not mark sync job {sync_job_id} failed: {e}", exc_info=True)
