"""
Test factories for generating realistic test data.

Uses factory_boy for declarative payload generation and small async
helpers for database rows.
"""

from .commerce import (
    CustomerNodeFactory,
    FakeCommerceClient,
    OrderNodeFactory,
    connection,
    customer_page,
    order_page,
)
from .webhook import CustomerWebhookFactory, OrderWebhookFactory
from .records import NOW, FakeClock, add_customer, add_order, add_segment, days_ago

__all__ = [
    "CustomerNodeFactory",
    "OrderNodeFactory",
    "connection",
    "FakeCommerceClient",
    "customer_page",
    "order_page",
    # Webhooks
    "CustomerWebhookFactory",
    "OrderWebhookFactory",
    # Rows
    "NOW",
    "FakeClock",
    "add_customer",
    "add_order",
    "add_segment",
    "days_ago",
]
