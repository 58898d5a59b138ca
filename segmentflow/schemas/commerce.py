"""
Normalized records returned by the commerce platform client.

Money is always Decimal; the client never hands floats to ingestion.
"""

from datetime import datetime
from decimal import Decimal
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class SourceCustomer(BaseModel):
    external_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    accepts_marketing: bool = False
    orders_count: int = 0
    amount_spent: Decimal = Decimal("0")
    created_at: datetime
    updated_at: datetime


class SourceLineItem(BaseModel):
    external_id: str
    title: str
    quantity: int = 1
    price: Decimal = Decimal("0")
    sku: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None


class SourceOrder(BaseModel):
    external_id: str
    name: str
    customer_external_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    total_price: Decimal = Decimal("0")
    subtotal_price: Decimal = Decimal("0")
    total_tax: Decimal = Decimal("0")
    total_discounts: Decimal = Decimal("0")
    currency: str = "USD"
    line_items: List[SourceLineItem] = Field(default_factory=list)


class Page(BaseModel, Generic[T]):
    """One page of a cursor-paginated listing."""

    items: List[T]
    next_cursor: Optional[str] = None
    has_more: bool = False
