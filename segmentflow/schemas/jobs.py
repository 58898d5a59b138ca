"""
Typed job payloads, one model per queue.

Payloads are stored as camelCase JSON so other producers can enqueue jobs
without importing this package.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from segmentflow.models.sync_job import SyncMode


class JobPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    tenant_id: str


class WebhookJob(JobPayload):
    topic: str
    shop_domain: str
    payload: Dict[str, Any]
    received_at: datetime


class SyncJobPayload(JobPayload):
    access_token: Optional[str] = None
    mode: SyncMode = SyncMode.INCREMENTAL
    sync_run_id: Optional[str] = None
    batch_size: Optional[int] = Field(None, ge=1, le=250)


class RfmJob(JobPayload):
    customer_id: Optional[str] = None
    triggered_by: str = "manual"


class SegmentUpdateJob(JobPayload):
    segment_id: str
    reason: str = "manual"


class ChurnJob(JobPayload):
    triggered_by: str = "manual"


class BulkExportJob(JobPayload):
    segment_id: str
    requested_by: Optional[str] = None


class ScheduledTask(str, Enum):
    DAILY_RFM = "daily-rfm"
    SEGMENT_REFRESH = "segment-refresh"
    DAILY_CHURN = "daily-churn"
    MONTHLY_RESET = "monthly-reset"


class ScheduledJob(JobPayload):
    """A cron tick. Without a tenant it sweeps every active tenant."""

    tenant_id: Optional[str] = None
    task: ScheduledTask
