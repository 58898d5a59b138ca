from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Numeric,
    JSON,
    Enum,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from segmentflow.utils.dates import utcnow
from typing import Optional
import enum
import uuid

from segmentflow.database import Base
from segmentflow.exceptions import UnknownStatusError


class FinancialStatus(str, enum.Enum):
    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUNDED = "REFUNDED"
    VOIDED = "VOIDED"

    @classmethod
    def from_external(cls, value: Optional[str]) -> "FinancialStatus":
        """Map a platform financial status; unknown values are rejected."""
        key = (value or "").strip().upper()
        try:
            return FINANCIAL_STATUS_MAP[key]
        except KeyError:
            raise UnknownStatusError("financial status", value) from None


class FulfillmentStatus(str, enum.Enum):
    FULFILLED = "FULFILLED"
    PARTIAL = "PARTIAL"
    RESTOCKED = "RESTOCKED"
    PENDING = "PENDING"
    UNFULFILLED = "UNFULFILLED"

    @classmethod
    def from_external(cls, value: Optional[str]) -> Optional["FulfillmentStatus"]:
        """Map a platform fulfillment status. A missing status means nothing shipped yet."""
        if value is None or value == "":
            return None
        key = value.strip().upper()
        try:
            return FULFILLMENT_STATUS_MAP[key]
        except KeyError:
            raise UnknownStatusError("fulfillment status", value) from None


# Platform vocabulary (GraphQL display values and REST lowercase values,
# compared upper-cased) -> internal enum.
FINANCIAL_STATUS_MAP = {
    "PENDING": FinancialStatus.PENDING,
    "AUTHORIZED": FinancialStatus.AUTHORIZED,
    "PARTIALLY_PAID": FinancialStatus.PARTIALLY_PAID,
    "PAID": FinancialStatus.PAID,
    "PARTIALLY_REFUNDED": FinancialStatus.PARTIALLY_REFUNDED,
    "REFUNDED": FinancialStatus.REFUNDED,
    "VOIDED": FinancialStatus.VOIDED,
}

FULFILLMENT_STATUS_MAP = {
    "FULFILLED": FulfillmentStatus.FULFILLED,
    "PARTIAL": FulfillmentStatus.PARTIAL,
    "PARTIALLY_FULFILLED": FulfillmentStatus.PARTIAL,
    "RESTOCKED": FulfillmentStatus.RESTOCKED,
    "PENDING": FulfillmentStatus.PENDING,
    "PENDING_FULFILLMENT": FulfillmentStatus.PENDING,
    "IN_PROGRESS": FulfillmentStatus.PENDING,
    "SCHEDULED": FulfillmentStatus.PENDING,
    "ON_HOLD": FulfillmentStatus.PENDING,
    "UNFULFILLED": FulfillmentStatus.UNFULFILLED,
    "OPEN": FulfillmentStatus.UNFULFILLED,
}


class Order(Base):
    """Order placed in a tenant's store. Guest orders have no customer."""

    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_orders_tenant_external"),
        Index("ix_orders_tenant_customer_date", "tenant_id", "customer_id", "order_date"),
    )

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column(String(64), nullable=False)
    customer_id = Column(String(36), ForeignKey("customers.id", ondelete="SET NULL"), index=True)

    order_number = Column(Integer)
    order_name = Column(String(64))

    total_price = Column(Numeric(12, 2), nullable=False, default=0)
    subtotal_price = Column(Numeric(12, 2), nullable=False, default=0)
    total_tax = Column(Numeric(12, 2), nullable=False, default=0)
    total_discounts = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), default="USD")

    financial_status = Column(Enum(FinancialStatus), nullable=False, default=FinancialStatus.PENDING)
    fulfillment_status = Column(Enum(FulfillmentStatus))
    cancelled_at = Column(DateTime(timezone=True))

    line_items = Column(JSON, default=list)
    line_items_count = Column(Integer, nullable=False, default=0)

    # processed_at when the platform reports it, otherwise created_at
    order_date = Column(DateTime(timezone=True), nullable=False)
    order_month = Column(String(7))

    source_created_at = Column(DateTime(timezone=True))
    source_updated_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def counts_toward_stats(self) -> bool:
        return self.financial_status != FinancialStatus.VOIDED and self.cancelled_at is None

    def __repr__(self):
        return f"<Order {self.order_name or self.external_id} {self.financial_status}>"
