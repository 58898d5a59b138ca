"""
Progress store for sync runs.

Each run lives in a Redis hash ``sync:{runId}`` with a 24 hour TTL that is
refreshed on every write. Changes are announced on the ``sync-progress``
pub/sub channel as ``{"type": ..., "data": SyncProgress}``.

Publishing is throttled per run: at most one ``progress`` event every 500ms.
The time of the last publish is kept in the run's own hash, so the throttle
state expires together with the record and is dropped explicitly when the
run reaches a terminal state. ``completed`` and ``failed`` events are always
published.

Usage:
    store = ProgressStore()
    run_id = store.generate_run_id()
    await store.create_run(run_id, tenant_id, ResourceType.ORDERS)
    await store.update(run_id, status=SyncStatus.RUNNING, step="Fetching orders")
    await store.complete(run_id)
"""

import logging
import secrets
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from segmentflow.core.metrics import track_progress_event
from segmentflow.core.redis import get_redis
from segmentflow.models.sync_job import ResourceType, SyncStatus
from segmentflow.schemas.progress import EventType, ProgressEvent, SyncProgress
from segmentflow.utils.dates import utcnow

logger = logging.getLogger(__name__)

PROGRESS_CHANNEL = "sync-progress"
PROGRESS_KEY_PREFIX = "sync:"
PROGRESS_TTL_SECONDS = 24 * 60 * 60
PUBLISH_THROTTLE_MS = 500
SCAN_COUNT = 100

# Hash field holding the epoch-ms of the last publish for this run
LAST_PUBLISHED_FIELD = "_lastPublishedAt"

ACTIVE_STATUSES = (SyncStatus.PENDING, SyncStatus.RUNNING)


class ProgressStore:
    """Redis-backed sync progress records with throttled publishing."""

    def __init__(
        self,
        redis_client=None,
        clock: Callable[[], float] = time.time,
        throttle_ms: int = PUBLISH_THROTTLE_MS,
        ttl_seconds: int = PROGRESS_TTL_SECONDS,
    ):
        """
        Args:
            redis_client: redis.asyncio client (defaults to the shared client)
            clock: Returns seconds since the epoch; injectable for tests
            throttle_ms: Minimum gap between progress publishes per run
            ttl_seconds: Record lifetime, refreshed on each write
        """
        self._redis = redis_client
        self._clock = clock
        self._throttle_ms = throttle_ms
        self._ttl_seconds = ttl_seconds

    @property
    def redis(self):
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    @staticmethod
    def key(run_id: str) -> str:
        return f"{PROGRESS_KEY_PREFIX}{run_id}"

    @staticmethod
    def generate_run_id() -> str:
        """Time-ordered run id: ``{epoch_ms}-{random}``."""
        return f"{int(time.time() * 1000)}-{secrets.token_hex(3)}"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, run_id: str) -> Optional[SyncProgress]:
        record, _ = await self._load(run_id)
        return record

    async def list_active(self, tenant_id: str) -> List[SyncProgress]:
        """Pending or running runs of a tenant, oldest first."""
        runs = []
        async for key in self.redis.scan_iter(match=f"{PROGRESS_KEY_PREFIX}*", count=SCAN_COUNT):
            raw = await self.redis.hgetall(key)
            if not raw:
                continue
            record = self._decode(raw)
            if record.tenant_id == tenant_id and record.status in ACTIVE_STATUSES:
                runs.append(record)
        runs.sort(key=lambda r: r.sync_run_id)
        return runs

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_run(
        self,
        run_id: str,
        tenant_id: str,
        resource_type: ResourceType,
        step: str = "Queued",
    ) -> SyncProgress:
        now = utcnow()
        record = SyncProgress(
            sync_run_id=run_id,
            tenant_id=tenant_id,
            resource_type=resource_type,
            status=SyncStatus.PENDING,
            step=step,
            started_at=now,
            updated_at=now,
        )
        await self._write(record)
        await self._publish("progress", record)
        logger.info(f"Sync run created: run_id={run_id}, tenant_id={tenant_id}, resource={resource_type.value}")
        return record

    async def update(self, run_id: str, **fields: Any) -> Optional[SyncProgress]:
        """
        Merge fields into a non-terminal run.

        A terminal ``status`` is routed to complete()/fail() so it is always
        published. Returns the new record, or None when the run is unknown
        or already terminal.
        """
        status = fields.get("status")
        if status is not None and SyncStatus(status).is_terminal:
            fields.pop("status")
            if SyncStatus(status) == SyncStatus.COMPLETED:
                return await self.complete(run_id, **fields)
            error = fields.pop("error", None) or "Sync failed"
            return await self.fail(run_id, error, **fields)

        current, last_published = await self._load(run_id)
        if current is None:
            logger.debug(f"Progress update for unknown run {run_id} ignored")
            return None
        if current.is_terminal:
            logger.debug(f"Progress update for terminal run {run_id} ignored")
            return None

        record = self._merge(current, fields)
        await self._write(record)

        now_ms = self._now_ms()
        if last_published is None or now_ms - last_published >= self._throttle_ms:
            await self._publish("progress", record)
        return record

    async def complete(self, run_id: str, step: str = "Completed", **fields: Any) -> Optional[SyncProgress]:
        return await self._finish(
            run_id,
            "completed",
            dict(fields, status=SyncStatus.COMPLETED, progress=100, step=step),
        )

    async def fail(self, run_id: str, error: str, **fields: Any) -> Optional[SyncProgress]:
        fields.setdefault("step", "Failed")
        return await self._finish(
            run_id,
            "failed",
            dict(fields, status=SyncStatus.FAILED, error=error),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _finish(self, run_id: str, event_type: EventType, fields: Dict[str, Any]) -> Optional[SyncProgress]:
        current, _ = await self._load(run_id)
        if current is None:
            logger.warning(f"Cannot finish unknown sync run {run_id}")
            return None
        if current.is_terminal:
            logger.debug(f"Sync run {run_id} already {current.status.value}, keeping it")
            return None

        now = utcnow()
        record = self._merge(current, dict(fields, completed_at=now))
        await self._write(record, clear_throttle=True)
        await self._publish(event_type, record, remember=False)
        logger.info(f"Sync run {event_type}: run_id={run_id}")
        return record

    def _merge(self, current: SyncProgress, fields: Dict[str, Any]) -> SyncProgress:
        data = current.model_dump()
        data.update(fields)
        data["updated_at"] = utcnow()
        return SyncProgress.model_validate(data)

    async def _load(self, run_id: str) -> Tuple[Optional[SyncProgress], Optional[float]]:
        raw = await self.redis.hgetall(self.key(run_id))
        if not raw:
            return None, None
        last = raw.get(LAST_PUBLISHED_FIELD)
        return self._decode(raw), float(last) if last else None

    async def _write(self, record: SyncProgress, clear_throttle: bool = False) -> None:
        key = self.key(record.sync_run_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=self._encode(record))
            if clear_throttle:
                pipe.hdel(key, LAST_PUBLISHED_FIELD)
            pipe.expire(key, self._ttl_seconds)
            await pipe.execute()

    async def _publish(self, event_type: EventType, record: SyncProgress, remember: bool = True) -> None:
        event = ProgressEvent(type=event_type, data=record)
        await self.redis.publish(PROGRESS_CHANNEL, event.model_dump_json(by_alias=True))
        if remember:
            await self.redis.hset(self.key(record.sync_run_id), LAST_PUBLISHED_FIELD, str(self._now_ms()))
        track_progress_event(event_type)

    def _now_ms(self) -> float:
        return self._clock() * 1000

    @staticmethod
    def _encode(record: SyncProgress) -> Dict[str, str]:
        data = record.model_dump(by_alias=True, mode="json")
        return {k: "" if v is None else str(v) for k, v in data.items()}

    @staticmethod
    def _decode(raw: Dict[str, str]) -> SyncProgress:
        data = {k: v for k, v in raw.items() if k != LAST_PUBLISHED_FIELD and v != ""}
        return SyncProgress.model_validate(data)


_progress_store: Optional[ProgressStore] = None


def get_progress_store() -> ProgressStore:
    """Get the global progress store."""
    global _progress_store
    if _progress_store is None:
        _progress_store = ProgressStore()
    return _progress_store
