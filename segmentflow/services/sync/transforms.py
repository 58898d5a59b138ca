"""
Source record -> model field mapping.

Orders carry business facts (money, statuses, line items, order date) that
are written on insert and afterwards only when the platform reports a status
change. Customer profile fields are refreshed on every sighting.
"""

import re
from decimal import Decimal
from typing import Any, Dict, Optional

from segmentflow.models.order import FinancialStatus, FulfillmentStatus, Order
from segmentflow.schemas.commerce import SourceCustomer, SourceLineItem, SourceOrder
from segmentflow.services.commerce_client import extract_id, parse_money
from segmentflow.utils.dates import ensure_utc, parse_timestamp

ORDER_NUMBER_RE = re.compile(r"(\d+)")
CENTS = Decimal("0.01")


def extract_order_number(name: Optional[str]) -> Optional[int]:
    """``#1042`` -> ``1042``."""
    if not name:
        return None
    match = ORDER_NUMBER_RE.search(name)
    return int(match.group(1)) if match else None


def customer_profile_fields(src: SourceCustomer) -> Dict[str, Any]:
    return {
        "email": src.email,
        "first_name": src.first_name,
        "last_name": src.last_name,
        "phone": src.phone,
        "tags": list(src.tags),
        "accepts_marketing": src.accepts_marketing,
        "source_updated_at": ensure_utc(src.updated_at),
    }


def order_facts(src: SourceOrder) -> Dict[str, Any]:
    """Business facts of an order. Raises UnknownStatusError on unmapped statuses."""
    order_date = ensure_utc(src.processed_at or src.created_at)
    line_items = [_line_item(item) for item in src.line_items]
    return {
        "order_number": extract_order_number(src.name),
        "order_name": src.name,
        "total_price": src.total_price.quantize(CENTS),
        "subtotal_price": src.subtotal_price.quantize(CENTS),
        "total_tax": src.total_tax.quantize(CENTS),
        "total_discounts": src.total_discounts.quantize(CENTS),
        "currency": src.currency,
        "financial_status": FinancialStatus.from_external(src.financial_status),
        "fulfillment_status": FulfillmentStatus.from_external(src.fulfillment_status),
        "cancelled_at": ensure_utc(src.cancelled_at),
        "line_items": line_items,
        "line_items_count": len(line_items),
        "order_date": order_date,
        "order_month": order_date.strftime("%Y-%m"),
    }


def order_status_changed(order: Order, facts: Dict[str, Any]) -> bool:
    return (
        order.financial_status != facts["financial_status"]
        or order.fulfillment_status != facts["fulfillment_status"]
        or ensure_utc(order.cancelled_at) != facts["cancelled_at"]
    )


def _line_item(item: SourceLineItem) -> Dict[str, Any]:
    return {
        "externalId": item.external_id,
        "title": item.title,
        "quantity": item.quantity,
        # JSON column: keep money as a string, never a float
        "price": str(item.price.quantize(CENTS)),
        "sku": item.sku,
        "productId": item.product_id,
        "variantId": item.variant_id,
    }


# ----------------------------------------------------------------------
# Webhook payloads (REST shape, snake_case)
# ----------------------------------------------------------------------

def _tags(value: Any) -> list:
    if isinstance(value, list):
        return [str(t).strip() for t in value if str(t).strip()]
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    return []


def source_customer_from_webhook(payload: Dict[str, Any]) -> SourceCustomer:
    created = parse_timestamp(payload.get("created_at"))
    return SourceCustomer(
        external_id=extract_id(payload.get("admin_graphql_api_id") or payload.get("id")),
        email=payload.get("email"),
        first_name=payload.get("first_name"),
        last_name=payload.get("last_name"),
        phone=payload.get("phone"),
        tags=_tags(payload.get("tags")),
        accepts_marketing=bool(payload.get("accepts_marketing")),
        orders_count=int(payload.get("orders_count") or 0),
        amount_spent=parse_money(payload.get("total_spent")),
        created_at=created,
        updated_at=parse_timestamp(payload.get("updated_at")) or created,
    )


def source_order_from_webhook(payload: Dict[str, Any]) -> SourceOrder:
    created = parse_timestamp(payload.get("created_at"))
    customer = payload.get("customer") or {}
    line_items = [
        SourceLineItem(
            external_id=extract_id(item.get("id")),
            title=item.get("title") or "",
            quantity=int(item.get("quantity") or 0),
            price=parse_money(item.get("price")),
            sku=item.get("sku"),
            product_id=extract_id(item.get("product_id")),
            variant_id=extract_id(item.get("variant_id")),
        )
        for item in payload.get("line_items") or []
    ]
    return SourceOrder(
        external_id=extract_id(payload.get("admin_graphql_api_id") or payload.get("id")),
        name=payload.get("name") or "",
        customer_external_id=extract_id(customer.get("admin_graphql_api_id") or customer.get("id")),
        created_at=created,
        updated_at=parse_timestamp(payload.get("updated_at")) or created,
        processed_at=parse_timestamp(payload.get("processed_at")),
        cancelled_at=parse_timestamp(payload.get("cancelled_at")),
        financial_status=payload.get("financial_status"),
        fulfillment_status=payload.get("fulfillment_status"),
        total_price=parse_money(payload.get("total_price")),
        subtotal_price=parse_money(payload.get("subtotal_price")),
        total_tax=parse_money(payload.get("total_tax")),
        total_discounts=parse_money(payload.get("total_discounts")),
        currency=payload.get("currency") or "USD",
        line_items=line_items,
    )
