"""
Storefront platform capability interface.

Services depend on PlatformAdapter only; get_adapter() picks the concrete variant for a store.
Normalised order shape returned by fetch_order():

    {
        "external_id", "external_number", "name", "email", "phone", "currency",
        "subtotal_cents", "discount_cents", "shipping_cents", "tax_cents", "total_cents",
        "processed_at", "cancelled_at", "closed_at", "country_code", "raw",
        "line_items": [{"external_line_id", "external_variant_id", "external_product_id", "title",
                        "variant_title", "sku", "quantity", "fulfillable_quantity", "price_cents",
                        "total_cents", "discount_cents", "tax_cents", "requires_shipping",
                        "is_custom", "raw"}],
        "shipping_address": {...} | None,
    }
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional

import httpx

from printlink.errors import ValidationError
from printlink.models import Fulfillment, Order, Platform, Store


def to_cents(amount: Any) -> int:
    """Decimal string/number in major units -> integer minor units."""
    if amount is None or amount == "":
        return 0
    if isinstance(amount, dict):
        amount = amount.get("value") or amount.get("amount")
    try:
        return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid money amount: {amount!r}")


def gid_to_id(value: Any) -> Optional[str]:
    """gid://shopify/Order/123 -> 123; #1001 -> 1001; plain ids pass through."""
    if value is None:
        return None
    s = str(value).strip()
    if s.startswith("gid://"):
        s = s.rsplit("/", 1)[-1]
    if s.startswith("#"):
        s = s[1:]
    return s or None


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 (with Z or offset) -> naive UTC datetime; None on blank or unparseable."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


class PlatformAdapter(ABC):
    """Import/sync/fulfill operations every storefront platform must provide."""

    platform: Platform

    def __init__(self, store: Store, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.store = store
        self.transport = transport

    @abstractmethod
    async def fetch_order(self, external_id: str) -> dict:
        """Fetch and normalise one order. Raises ExternalApiError / AuthenticationError."""

    @abstractmethod
    async def create_fulfillment(self, order: Order, fulfillment: Fulfillment) -> dict:
        """
        Push a local fulfillment to the platform.
        Returns {"success": bool, "reference": str | None, "warnings": [...], "error": str | None}.
        """


def get_adapter(store: Store, transport: Optional[httpx.AsyncBaseTransport] = None) -> PlatformAdapter:
    from printlink.services.shopify import ShopifyAdapter
    from printlink.services.squarespace_service import SquarespaceAdapter

    if store.platform == Platform.SHOPIFY:
        return ShopifyAdapter(store, transport=transport)
    if store.platform == Platform.SQUARESPACE:
        return SquarespaceAdapter(store, transport=transport)
    raise ValidationError(f"Unsupported platform: {store.platform.value if store.platform else None}")
