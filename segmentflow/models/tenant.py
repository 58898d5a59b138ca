from sqlalchemy import Column, Integer, String, DateTime, Enum
from segmentflow.utils.dates import utcnow
import enum
import uuid

from segmentflow.database import Base


class TenantStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    CHURNED = "CHURNED"


class Tenant(Base):
    """A connected store. Every other row is scoped to one tenant."""

    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    shop_domain = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255))
    access_token = Column(String(512))
    status = Column(Enum(TenantStatus), nullable=False, default=TenantStatus.ACTIVE)

    monthly_api_calls = Column(Integer, nullable=False, default=0)
    last_sync_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE

    def __repr__(self):
        return f"<Tenant {self.shop_domain} ({self.status})>"
