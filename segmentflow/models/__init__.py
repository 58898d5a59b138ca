from segmentflow.models.tenant import Tenant, TenantStatus
from segmentflow.models.customer import Customer, RfmSegment
from segmentflow.models.order import Order, FinancialStatus, FulfillmentStatus
from segmentflow.models.segment import Segment, SegmentMember
from segmentflow.models.sync_job import SyncJob, ResourceType, SyncMode, SyncStatus
from segmentflow.models.webhook_event import WebhookEvent

__all__ = [
    "Tenant",
    "TenantStatus",
    "Customer",
    "RfmSegment",
    "Order",
    "FinancialStatus",
    "FulfillmentStatus",
    "Segment",
    "SegmentMember",
    "SyncJob",
    "ResourceType",
    "SyncMode",
    "SyncStatus",
    "WebhookEvent",
]
