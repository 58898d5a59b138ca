from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    Numeric,
    Text,
    JSON,
    Enum,
    ForeignKey,
    UniqueConstraint,
)
from segmentflow.utils.dates import utcnow
import uuid

from segmentflow.database import Base
from segmentflow.models.customer import RfmSegment


class Segment(Base):
    """Named customer cohort defined by a filter expression.

    customer_count, estimated_revenue and last_computed_at cache the result of
    the latest membership computation.
    """

    __tablename__ = "segments"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    filters = Column(JSON, nullable=False)

    customer_count = Column(Integer, nullable=False, default=0)
    estimated_revenue = Column(Numeric(14, 2), nullable=False, default=0)
    last_computed_at = Column(DateTime(timezone=True))
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(255))

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Segment {self.name} count={self.customer_count}>"


class SegmentMember(Base):
    """Customer membership in a segment, with snapshot values taken when added."""

    __tablename__ = "segment_members"
    __table_args__ = (
        UniqueConstraint("segment_id", "customer_id", name="uq_segment_members_segment_customer"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    segment_id = Column(String(36), ForeignKey("segments.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)

    total_spent_snapshot = Column(Numeric(12, 2), nullable=False, default=0)
    rfm_segment_snapshot = Column(Enum(RfmSegment))
    added_at = Column(DateTime(timezone=True), default=utcnow)
