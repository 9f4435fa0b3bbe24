"""
Record mapping for persistence sinks.

Flattens validated API models into plain, JSON-serializable rows. Sinks
decide how (and whether) to store them; nothing here knows about storage.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from spapi_order_sync.models import MarketplaceParticipation, Money, Order, OrderItem

logger = structlog.get_logger(__name__)

UNKNOWN = "Unknown"


def _iso(dt: datetime | None) -> str | None:
    """Format a datetime as ISO 8601 UTC; naive values are taken as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _money(money: Money | None) -> dict[str, Any]:
    return money.raw() if money else {}


@dataclass
class OrderRecord:
    """An order with its detail payload and line items, ready to persist."""
    amazon_order_id: str
    order: dict[str, Any]
    items: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "amazon_order_id": self.amazon_order_id,
            "order": self.order,
            "items": self.items,
        }


def build_marketplace_rows(
    participations: list[MarketplaceParticipation],
) -> list[dict[str, Any]]:
    """Flatten participations; entries without a marketplace id are skipped."""
    rows = []
    for participation in participations:
        marketplace = participation.marketplace
        if marketplace is None or not marketplace.id:
            logger.warning("Skipping participation without marketplace id", raw=participation.raw())
            continue

        rows.append({
            "marketplace_id": marketplace.id,
            "name": marketplace.name,
            "country_code": marketplace.country_code,
            "default_language_code": marketplace.default_language_code,
            "default_currency_code": marketplace.default_currency_code,
            "domain_name": marketplace.domain_name,
            "seller_name": participation.store_name,
            "is_participating": (
                participation.participation.is_participating
                if participation.participation else None
            ),
            "additional_info": participation.raw(),
        })
    return rows


def build_order_row(order: Order, details: Order | None = None) -> dict[str, Any]:
    """
    Flatten an order, letting the getOrder detail payload win over the
    list payload where both carry a value.
    """
    source = details or order
    total = source.order_total or order.order_total

    raw = order.raw()
    if details is not None:
        raw.update(details.raw())

    return {
        "amazon_order_id": order.amazon_order_id,
        "seller_order_id": source.seller_order_id or order.seller_order_id,
        "purchase_date": _iso(source.purchase_date),
        "last_update_date": _iso(source.last_update_date or order.last_update_date),
        "order_status": source.order_status,
        "fulfillment_channel": source.fulfillment_channel or UNKNOWN,
        "sales_channel": source.sales_channel or UNKNOWN,
        "order_channel": source.order_channel or UNKNOWN,
        "ship_service_level": source.ship_service_level or UNKNOWN,
        "order_total": total.amount if total else None,
        "currency": total.currency_code if total else None,
        "number_of_items_shipped": source.number_of_items_shipped,
        "number_of_items_unshipped": source.number_of_items_unshipped,
        "payment_method": source.payment_method or UNKNOWN,
        "payment_execution_detail": source.payment_execution_detail,
        "marketplace_id": source.marketplace_id or order.marketplace_id,
        "shipping_address": source.shipping_address or {},
        "buyer_info": source.buyer_info or {},
        "is_business_order": source.is_business_order,
        "is_prime": source.is_prime,
        "raw": raw,
    }


def build_item_row(amazon_order_id: str, item: OrderItem) -> dict[str, Any]:
    """Flatten a single order item."""
    return {
        "amazon_order_id": amazon_order_id,
        "order_item_id": item.order_item_id,
        "asin": item.asin,
        "seller_sku": item.seller_sku or "",
        "title": item.title or "",
        "quantity_ordered": item.quantity_ordered,
        "quantity_shipped": item.quantity_shipped,
        "item_price": _money(item.item_price),
        "item_tax": _money(item.item_tax),
        "shipping_price": _money(item.shipping_price),
        "shipping_tax": _money(item.shipping_tax),
        "promotion_discount": _money(item.promotion_discount),
        "promotion_ids": item.promotion_ids,
        "is_gift": item.is_gift,
        "condition_id": item.condition_id or "",
        "condition_note": item.condition_note or "",
        "serial_number_required": item.serial_number_required,
        "is_transparency": item.is_transparency,
    }


def build_order_record(
    order: Order,
    details: Order | None,
    items: list[OrderItem],
) -> OrderRecord:
    """Combine an order, its details and its items into one record."""
    if not items:
        logger.warning("Order has no items", amazon_order_id=order.amazon_order_id)

    return OrderRecord(
        amazon_order_id=order.amazon_order_id,
        order=build_order_row(order, details),
        items=[build_item_row(order.amazon_order_id, item) for item in items],
    )
