from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON, ForeignKey
from segmentflow.utils.dates import utcnow
import uuid

from segmentflow.database import Base


class WebhookEvent(Base):
    """Platform webhook delivery as received, kept for replay and auditing."""

    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    # Queue job id; retries of one delivery share the row
    delivery_id = Column(String(255), unique=True, index=True)
    topic = Column(String(64), nullable=False)
    shop_domain = Column(String(255))
    payload = Column(JSON, nullable=False)
    received_at = Column(DateTime(timezone=True))

    processed = Column(Boolean, nullable=False, default=False)
    attempts = Column(Integer, nullable=False, default=0)
    processed_at = Column(DateTime(timezone=True))
    error = Column(Text)

    created_at = Column(DateTime(timezone=True), default=utcnow)
