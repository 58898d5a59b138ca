"""
Sync progress record and the pub/sub event that carries it.

Field names go over the wire in camelCase.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from segmentflow.models.sync_job import ResourceType, SyncStatus


class SyncProgress(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    sync_run_id: str
    tenant_id: str
    resource_type: ResourceType
    status: SyncStatus = SyncStatus.PENDING
    progress: int = Field(0, ge=0, le=100)
    step: str = ""
    records_processed: int = 0
    records_failed: int = 0
    total_records: Optional[int] = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


EventType = Literal["progress", "completed", "failed"]


class ProgressEvent(BaseModel):
    """Message published on the progress channel."""

    type: EventType
    data: SyncProgress
