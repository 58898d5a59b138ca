"""
Commerce platform Admin API client.

Talks to the platform's GraphQL Admin endpoint with cursor pagination and
turns nodes into ``SourceCustomer`` / ``SourceOrder`` records. Money strings
become ``Decimal``; global ids (``gid://platform/Order/123``) are reduced to
their last path segment.

Transient failures (429, 5xx, network errors, THROTTLED GraphQL errors) are
retried with exponential backoff; anything else raises ``CommerceAPIError``
straight away so the job queue can decide what to do.
"""

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, ValidationError as PydanticValidationError

from segmentflow.config import settings
from segmentflow.exceptions import CommerceAPIError
from segmentflow.schemas.commerce import Page, SourceCustomer, SourceLineItem, SourceOrder

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 250
RETRYABLE_STATUS = {429, 500, 502, 503, 504}

CUSTOMERS_QUERY = """
query GetCustomers($first: Int!, $after: String) {
  customers(first: $first, after: $after) {
    edges {
      node {
        id
        email
        firstName
        lastName
        phone
        tags
        createdAt
        updatedAt
        numberOfOrders
        amountSpent { amount currencyCode }
        emailMarketingConsent { marketingState }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""

ORDERS_QUERY = """
query GetOrders($first: Int!, $after: String) {
  orders(first: $first, after: $after) {
    edges {
      node {
        id
        name
        createdAt
        updatedAt
        processedAt
        cancelledAt
        displayFinancialStatus
        displayFulfillmentStatus
        totalPriceSet { shopMoney { amount currencyCode } }
        subtotalPriceSet { shopMoney { amount } }
        totalTaxSet { shopMoney { amount } }
        totalDiscountsSet { shopMoney { amount } }
        customer { id }
        lineItems(first: 50) {
          edges {
            node {
              id
              title
              quantity
              variant { id sku }
              originalUnitPriceSet { shopMoney { amount } }
              product { id }
            }
          }
        }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""


class RejectedRecord(BaseModel):
    """A node the client could not turn into a source record."""

    external_id: Optional[str] = None
    error: str


class CommercePage(Page):
    rejected: List[RejectedRecord] = []


def extract_id(global_id: Optional[str]) -> Optional[str]:
    """``gid://platform/Customer/123`` -> ``123``; plain ids pass through."""
    if not global_id:
        return None
    return str(global_id).rstrip("/").split("/")[-1]


def parse_money(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid money amount: {value!r}") from None


def _money(node: Dict[str, Any], field: str) -> Decimal:
    money = ((node.get(field) or {}).get("shopMoney") or {})
    return parse_money(money.get("amount"))


def parse_customer_node(node: Dict[str, Any]) -> SourceCustomer:
    consent = node.get("emailMarketingConsent") or {}
    return SourceCustomer(
        external_id=extract_id(node.get("id")),
        email=node.get("email"),
        first_name=node.get("firstName"),
        last_name=node.get("lastName"),
        phone=node.get("phone"),
        tags=node.get("tags") or [],
        accepts_marketing=consent.get("marketingState") == "SUBSCRIBED",
        orders_count=int(node.get("numberOfOrders") or 0),
        amount_spent=parse_money((node.get("amountSpent") or {}).get("amount")),
        created_at=node.get("createdAt"),
        updated_at=node.get("updatedAt"),
    )


def parse_order_node(node: Dict[str, Any]) -> SourceOrder:
    line_items = []
    for edge in (node.get("lineItems") or {}).get("edges", []):
        item = edge["node"]
        variant = item.get("variant") or {}
        line_items.append(
            SourceLineItem(
                external_id=extract_id(item.get("id")),
                title=item.get("title") or "",
                quantity=int(item.get("quantity") or 0),
                price=_money(item, "originalUnitPriceSet"),
                sku=variant.get("sku"),
                product_id=extract_id((item.get("product") or {}).get("id")),
                variant_id=extract_id(variant.get("id")),
            )
        )

    total_money = ((node.get("totalPriceSet") or {}).get("shopMoney") or {})
    return SourceOrder(
        external_id=extract_id(node.get("id")),
        name=node.get("name") or "",
        customer_external_id=extract_id((node.get("customer") or {}).get("id")),
        created_at=node.get("createdAt"),
        updated_at=node.get("updatedAt"),
        processed_at=node.get("processedAt"),
        cancelled_at=node.get("cancelledAt"),
        financial_status=node.get("displayFinancialStatus"),
        fulfillment_status=node.get("displayFulfillmentStatus"),
        total_price=parse_money(total_money.get("amount")),
        subtotal_price=_money(node, "subtotalPriceSet"),
        total_tax=_money(node, "totalTaxSet"),
        total_discounts=_money(node, "totalDiscountsSet"),
        currency=total_money.get("currencyCode") or "USD",
        line_items=line_items,
    )


class CommerceClient:
    """
    Async client for one tenant's store.

    Usage:
        async with CommerceClient(shop_domain, access_token) as client:
            page = await client.list_orders(cursor=None, page_size=100)
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.shop_domain = shop_domain
        self._access_token = access_token
        self._api_version = api_version or settings.COMMERCE_API_VERSION
        self._timeout = timeout or settings.COMMERCE_API_TIMEOUT
        self._max_retries = settings.COMMERCE_API_MAX_RETRIES if max_retries is None else max_retries
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None
        self.request_count = 0

    @property
    def endpoint(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self._api_version}/graphql.json"

    async def __aenter__(self) -> "CommerceClient":
        self._client = httpx.AsyncClient(
            timeout=self._timeout,
            transport=self._transport,
            headers={
                "X-Shopify-Access-Token": self._access_token,
                "Content-Type": "application/json",
            },
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def list_customers(self, cursor: Optional[str] = None, page_size: int = 50) -> CommercePage:
        data = await self._query(CUSTOMERS_QUERY, {"first": min(page_size, MAX_PAGE_SIZE), "after": cursor})
        return self._page(data["customers"], parse_customer_node)

    async def list_orders(self, cursor: Optional[str] = None, page_size: int = 50) -> CommercePage:
        data = await self._query(ORDERS_QUERY, {"first": min(page_size, MAX_PAGE_SIZE), "after": cursor})
        return self._page(data["orders"], parse_order_node)

    @staticmethod
    def _page(connection: Dict[str, Any], parse: Callable[[Dict[str, Any]], BaseModel]) -> CommercePage:
        items, rejected = [], []
        for edge in connection.get("edges", []):
            node = edge.get("node") or {}
            try:
                items.append(parse(node))
            except (PydanticValidationError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Skipping malformed node {node.get('id')}: {e}")
                rejected.append(RejectedRecord(external_id=extract_id(node.get("id")), error=str(e)))

        page_info = connection.get("pageInfo") or {}
        has_more = bool(page_info.get("hasNextPage"))
        return CommercePage(
            items=items,
            next_cursor=page_info.get("endCursor") if has_more else None,
            has_more=has_more,
            rejected=rejected,
        )

    async def _query(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        if self._client is None:
            raise RuntimeError("CommerceClient must be used as an async context manager")

        attempt = 0
        while True:
            try:
                return await self._post(query, variables)
            except CommerceAPIError as e:
                if not e.retryable or attempt >= self._max_retries:
                    raise
                delay = 0.5 * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"Commerce API call failed for {self.shop_domain} ({e.detail}), "
                    f"retry {attempt}/{self._max_retries} in {delay:.1f}s"
                )
                await self._sleep(delay)
                continue

    async def _post(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        self.request_count += 1
        try:
            response = await self._client.post(self.endpoint, json={"query": query, "variables": variables})
        except httpx.TransportError as e:
            raise CommerceAPIError(f"Transport error: {e}", retryable=True) from e

        if response.status_code in RETRYABLE_STATUS:
            raise CommerceAPIError(
                f"HTTP {response.status_code}", status=response.status_code, retryable=True
            )
        if response.status_code >= 400:
            raise CommerceAPIError(
                f"HTTP {response.status_code}: {response.text[:200]}", status=response.status_code
            )

        body = response.json()
        errors = body.get("errors")
        if errors:
            throttled = any((err.get("extensions") or {}).get("code") == "THROTTLED" for err in errors)
            message = "; ".join(str(err.get("message")) for err in errors)
            raise CommerceAPIError(f"GraphQL error: {message}", retryable=throttled)
        return body["data"]


def client_for_tenant(tenant, access_token: Optional[str] = None) -> CommerceClient:
    """Build a client from a Tenant row; an explicit token overrides the stored one."""
    return CommerceClient(tenant.shop_domain, access_token or tenant.access_token)
