from sqlalchemy import Column, Integer, String, DateTime, Text, Enum, ForeignKey
from segmentflow.utils.dates import utcnow
import enum
import uuid

from segmentflow.database import Base


class ResourceType(str, enum.Enum):
    CUSTOMERS = "customers"
    ORDERS = "orders"


class SyncMode(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.FAILED)


class SyncJob(Base):
    """Audit record of one ingestion attempt."""

    __tablename__ = "sync_jobs"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    sync_run_id = Column(String(64), index=True)
    resource_type = Column(Enum(ResourceType), nullable=False)
    sync_mode = Column(Enum(SyncMode), nullable=False, default=SyncMode.INCREMENTAL)
    status = Column(Enum(SyncStatus), nullable=False, default=SyncStatus.PENDING)

    records_processed = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    total_records = Column(Integer)
    progress_percent = Column(Integer, nullable=False, default=0)

    error = Column(Text)
    error_stack = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)

    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    duration_ms = Column(Integer)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    def __repr__(self):
        return f"<SyncJob {self.resource_type} {self.status}>"
