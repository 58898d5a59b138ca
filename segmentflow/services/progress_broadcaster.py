"""
Progress broadcaster.

Listens on the ``sync-progress`` channel and forwards every event to the
registered handlers and to the WebSocket rooms ``tenant:{tenantId}`` and
``sync:{syncRunId}``. Publishing is already rate limited by the progress
store, so every received event is forwarded as is.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from segmentflow.core.redis import get_redis
from segmentflow.schemas.progress import ProgressEvent
from segmentflow.services.progress_store import PROGRESS_CHANNEL
from segmentflow.services.websocket_manager import ConnectionManager, manager, sync_room, tenant_room

logger = logging.getLogger(__name__)

ProgressHandler = Callable[[ProgressEvent], Awaitable[None]]


class ProgressBroadcaster:
    def __init__(
        self,
        redis_client=None,
        connection_manager: Optional[ConnectionManager] = None,
        poll_timeout: float = 1.0,
    ):
        self._redis = redis_client
        self.connections = connection_manager or manager
        self.poll_timeout = poll_timeout
        self._handlers: List[ProgressHandler] = []
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_handler(self, handler: ProgressHandler) -> Callable[[], None]:
        """Register a handler. Returns a function that unregisters it."""
        self._handlers.append(handler)

        def remove() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return remove

    async def start(self) -> None:
        if self.running:
            return
        redis = self._redis or get_redis()
        self._pubsub = redis.pubsub()
        await self._pubsub.subscribe(PROGRESS_CHANNEL)
        self._stopping.clear()
        self._task = asyncio.create_task(self._listen())
        logger.info(f"Progress broadcaster subscribed to {PROGRESS_CHANNEL}")

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(PROGRESS_CHANNEL)
            await self._pubsub.aclose()
            self._pubsub = None
        logger.info("Progress broadcaster stopped")

    async def _listen(self) -> None:
        while not self._stopping.is_set():
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self.poll_timeout
                )
            except Exception as e:
                logger.error(f"Progress subscription read failed: {e}", exc_info=True)
                await asyncio.sleep(self.poll_timeout)
                continue
            if message and message.get("type") == "message":
                await self.handle_message(message["data"])

    async def handle_message(self, raw) -> int:
        """Decode one channel message and fan it out. Returns the number of sockets reached."""
        try:
            event = ProgressEvent.model_validate_json(raw)
        except PydanticValidationError as e:
            logger.warning(f"Dropping malformed progress event: {e}")
            return 0

        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Progress handler {handler!r} failed: {e}", exc_info=True)

        record = event.data
        try:
            return await self.connections.broadcast_event(
                event.type,
                record.model_dump(by_alias=True, mode="json"),
                rooms=(tenant_room(record.tenant_id), sync_room(record.sync_run_id)),
            )
        except Exception as e:
            logger.error(f"Progress broadcast of run {record.sync_run_id} failed: {e}", exc_info=True)
            return 0


_broadcaster: Optional[ProgressBroadcaster] = None


def get_progress_broadcaster() -> ProgressBroadcaster:
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = ProgressBroadcaster()
    return _broadcaster
