from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    Numeric,
    JSON,
    Enum,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from segmentflow.utils.dates import utcnow
import enum
import uuid

from segmentflow.database import Base


class RfmSegment(str, enum.Enum):
    """Behavioral segments assigned by RFM scoring."""

    CHAMPIONS = "CHAMPIONS"
    LOYAL = "LOYAL"
    POTENTIAL_LOYALIST = "POTENTIAL_LOYALIST"
    NEW_CUSTOMERS = "NEW_CUSTOMERS"
    PROMISING = "PROMISING"
    NEED_ATTENTION = "NEED_ATTENTION"
    ABOUT_TO_SLEEP = "ABOUT_TO_SLEEP"
    AT_RISK = "AT_RISK"
    CANNOT_LOSE = "CANNOT_LOSE"
    HIBERNATING = "HIBERNATING"
    LOST = "LOST"


class Customer(Base):
    """
    Customer of a tenant's store.

    Aggregates (orders_count .. days_since_last_order) come from order
    ingestion and the stats recompute. Scores, rfm_segment and the two flags
    are written by the RFM and churn engines only.
    """

    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_customers_tenant_external"),
        Index("ix_customers_tenant_rfm_segment", "tenant_id", "rfm_segment"),
    )

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column(String(64), nullable=False)

    email = Column(String(255), index=True)
    first_name = Column(String(100))
    last_name = Column(String(100))
    phone = Column(String(32))
    tags = Column(JSON, default=list)
    accepts_marketing = Column(Boolean, default=False)

    # Aggregates
    orders_count = Column(Integer, nullable=False, default=0)
    total_spent = Column(Numeric(12, 2), nullable=False, default=0)
    avg_order_value = Column(Numeric(12, 2), nullable=False, default=0)
    first_order_date = Column(DateTime(timezone=True))
    last_order_date = Column(DateTime(timezone=True))
    days_since_last_order = Column(Integer)

    # Derived
    recency_score = Column(Integer)
    frequency_score = Column(Integer)
    monetary_score = Column(Integer)
    rfm_segment = Column(Enum(RfmSegment))
    rfm_computed_at = Column(DateTime(timezone=True))
    is_high_value = Column(Boolean, nullable=False, default=False)
    is_churn_risk = Column(Boolean, nullable=False, default=False)

    source_created_at = Column(DateTime(timezone=True))
    source_updated_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def __repr__(self):
        return f"<Customer {self.external_id} tenant={self.tenant_id}>"
