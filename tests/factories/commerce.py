"""
Commerce API test factories.

Generates GraphQL Admin API nodes shaped like the platform's responses.
"""

import factory
from faker import Faker

from segmentflow.services.commerce_client import CommercePage, parse_customer_node, parse_order_node

fake = Faker()


class CustomerNodeFactory(factory.Factory):
    """
    Factory for GraphQL customer nodes.

    Usage:
        node = CustomerNodeFactory()
        node = CustomerNodeFactory(tags=["vip"], numberOfOrders=3)
    """

    class Meta:
        model = dict

    id = factory.Sequence(lambda n: f"gid://shopify/Customer/{1000 + n}")
    email = factory.LazyFunction(lambda: fake.email().lower())
    firstName = factory.LazyFunction(fake.first_name)
    lastName = factory.LazyFunction(fake.last_name)
    phone = None
    tags = factory.LazyFunction(list)
    numberOfOrders = 0
    amountSpent = factory.LazyFunction(lambda: {"amount": "0.00", "currencyCode": "USD"})
    emailMarketingConsent = factory.LazyFunction(lambda: {"marketingState": "NOT_SUBSCRIBED"})
    createdAt = "2024-01-10T09:00:00Z"
    updatedAt = "2024-05-01T09:00:00Z"


def _money(amount: str) -> dict:
    return {"shopMoney": {"amount": amount, "currencyCode": "USD"}}


class OrderNodeFactory(factory.Factory):
    """
    Factory for GraphQL order nodes.

    Usage:
        node = OrderNodeFactory(customer={"id": "gid://shopify/Customer/1000"})
    """

    class Meta:
        model = dict

    id = factory.Sequence(lambda n: f"gid://shopify/Order/{5000 + n}")
    name = factory.Sequence(lambda n: f"#{1001 + n}")
    customer = None
    createdAt = "2024-05-01T10:00:00Z"
    updatedAt = "2024-05-01T10:05:00Z"
    processedAt = "2024-05-01T10:00:00Z"
    cancelledAt = None
    displayFinancialStatus = "PAID"
    displayFulfillmentStatus = "UNFULFILLED"
    totalPriceSet = factory.LazyFunction(lambda: _money("120.00"))
    subtotalPriceSet = factory.LazyFunction(lambda: _money("100.00"))
    totalTaxSet = factory.LazyFunction(lambda: _money("20.00"))
    totalDiscountsSet = factory.LazyFunction(lambda: _money("0.00"))
    lineItems = factory.LazyFunction(
        lambda: {
            "edges": [
                {
                    "node": {
                        "id": "gid://shopify/LineItem/1",
                        "title": fake.word().title(),
                        "quantity": 2,
                        "originalUnitPriceSet": _money("50.00"),
                        "variant": {"id": "gid://shopify/ProductVariant/7", "sku": "SKU-7"},
                        "product": {"id": "gid://shopify/Product/3"},
                    }
                }
            ]
        }
    )


def connection(nodes, has_next_page: bool = False, end_cursor=None) -> dict:
    """Wrap nodes in a GraphQL connection."""
    return {
        "edges": [{"node": node, "cursor": f"c{i}"} for i, node in enumerate(nodes)],
        "pageInfo": {"hasNextPage": has_next_page, "endCursor": end_cursor},
    }


class FakeCommerceClient:
    """Serves pre-built pages in order and records the cursors asked for."""

    def __init__(self, customer_pages=(), order_pages=(), error=None):
        self.customer_pages = list(customer_pages)
        self.order_pages = list(order_pages)
        self.error = error
        self.cursors = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def list_customers(self, cursor=None, page_size=50):
        return self._next(self.customer_pages, cursor)

    async def list_orders(self, cursor=None, page_size=50):
        return self._next(self.order_pages, cursor)

    def _next(self, pages, cursor):
        self.cursors.append(cursor)
        if self.error is not None:
            raise self.error
        return pages.pop(0)


def customer_page(nodes, next_cursor=None, rejected=()):
    return CommercePage(
        items=[parse_customer_node(n) for n in nodes],
        next_cursor=next_cursor,
        has_more=next_cursor is not None,
        rejected=list(rejected),
    )


def order_page(nodes, next_cursor=None):
    return CommercePage(
        items=[parse_order_node(n) for n in nodes],
        next_cursor=next_cursor,
        has_more=next_cursor is not None,
    )
