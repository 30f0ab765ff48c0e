"""
Squarespace Commerce API adapter:
- Get order: GET {base}/commerce/orders/{id} (Bearer token)
- Fulfill order: POST {base}/commerce/orders/{id}/fulfillments with one shipment
Money fields come as {"currency": "NZD", "value": "12.50"}.
"""
import json
import logging
from typing import Any, Optional

import httpx

from printlink.config import settings
from printlink.errors import AuthenticationError, ExternalApiError
from printlink.models import Fulfillment, Order, Platform, Store, utcnow
from printlink.services.credentials import store_access_token
from printlink.services.http_client import send_request
from printlink.services.platform_adapter import PlatformAdapter, parse_datetime, to_cents

logger = logging.getLogger(__name__)

DEFAULT_CARRIER = "Standard Shipping"


def _money(value: Any) -> int:
    return to_cents(value) if value else 0


def normalize_squarespace_order(data: dict) -> dict:
    addr = data.get("shippingAddress")
    currency = ((data.get("grandTotal") or {}).get("currency")) or None
    line_items = []
    for li in data.get("lineItems") or []:
        quantity = int(li.get("quantity") or 0)
        unit = _money(li.get("unitPricePaid"))
        line_items.append({
            "external_line_id": li.get("id"),
            "external_variant_id": li.get("variantId"),
            "external_product_id": li.get("productId"),
            "title": li.get("productName") or "",
            "variant_title": ", ".join(
                f"{o.get('optionName')}: {o.get('value')}" for o in li.get("variantOptions") or []
            ) or None,
            "sku": li.get("sku"),
            "quantity": quantity,
            "fulfillable_quantity": quantity,
            "price_cents": unit,
            "total_cents": unit * quantity,
            "discount_cents": 0,
            "tax_cents": 0,
            "requires_shipping": li.get("lineItemType", "PHYSICAL_PRODUCT") == "PHYSICAL_PRODUCT",
            "is_custom": not li.get("variantId"),
            "raw": li,
        })
    cancelled = (data.get("fulfillmentStatus") or "").upper() == "CANCELED"
    number = data.get("orderNumber")
    return {
        "external_id": data.get("id"),
        "external_number": str(number) if number is not None else None,
        "name": f"#{number}" if number is not None else None,
        "email": data.get("customerEmail"),
        "phone": (addr or {}).get("phone"),
        "currency": currency,
        "subtotal_cents": _money(data.get("subtotal")),
        "discount_cents": _money(data.get("discountTotal")),
        "shipping_cents": _money(data.get("shippingTotal")),
        "tax_cents": _money(data.get("taxTotal")),
        "total_cents": _money(data.get("grandTotal")),
        "processed_at": parse_datetime(data.get("createdOn")),
        "cancelled_at": (parse_datetime(data.get("modifiedOn")) or utcnow()) if cancelled else None,
        "closed_at": None,
        "country_code": (addr or {}).get("countryCode"),
        "raw": data,
        "line_items": line_items,
        "shipping_address": {
            "first_name": addr.get("firstName"),
            "last_name": addr.get("lastName"),
            "name": " ".join(p for p in (addr.get("firstName"), addr.get("lastName")) if p) or None,
            "company": None,
            "address1": addr.get("address1"),
            "address2": addr.get("address2"),
            "city": addr.get("city"),
            "province": addr.get("state"),
            "province_code": addr.get("state"),
            "postal_code": addr.get("postalCode"),
            "country": addr.get("countryCode"),
            "country_code": addr.get("countryCode"),
            "phone": addr.get("phone"),
        } if addr else None,
    }


class SquarespaceAdapter(PlatformAdapter):
    platform = Platform.SQUARESPACE

    def __init__(self, store: Store, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(store, transport=transport)
        self.base_url = settings.SQUARESPACE_API_BASE_URL.rstrip("/")

    def _headers(self) -> dict:
        token = store_access_token(self.store)
        if not token:
            raise AuthenticationError(f"No access token for {self.store.shop_domain}", status_code=None)
        return {
            "Authorization": f"Bearer {token}",
            "User-Agent": "PrintLink",
            "Content-Type": "application/json",
        }

    def _check(self, response: httpx.Response, operation: str) -> None:
        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Squarespace rejected credentials for {self.store.shop_domain} ({response.status_code})",
                status_code=response.status_code,
                response_body=response.text[:500],
            )
        if response.status_code >= 400:
            raise ExternalApiError.from_status(
                response.status_code,
                f"Squarespace {operation} failed ({response.status_code})",
                response_body=response.text[:500],
            )

    async def fetch_order(self, external_id: str) -> dict:
        response = await send_request(
            "GET", f"{self.base_url}/commerce/orders/{external_id}", transport=self.transport, headers=self._headers()
        )
        self._check(response, "get order")
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise ExternalApiError("Invalid response format", kind=ExternalApiError.SERVER, status_code=response.status_code) from e
        return normalize_squarespace_order(data)

    async def create_fulfillment(self, order: Order, fulfillment: Fulfillment) -> dict:
        shipped_at = fulfillment.fulfilled_at or utcnow()
        shipment = {
            "shipDate": shipped_at.strftime("%Y-%m-%dT%H:%M:%S.000Z"),
            "carrierName": fulfillment.tracking_company or DEFAULT_CARRIER,
            "service": fulfillment.tracking_company or DEFAULT_CARRIER,
            "trackingNumber": fulfillment.tracking_number or "",
        }
        if fulfillment.tracking_url:
            shipment["trackingUrl"] = fulfillment.tracking_url
        body = {"shouldSendNotification": True, "shipments": [shipment]}
        response = await send_request(
            "POST",
            f"{self.base_url}/commerce/orders/{order.external_id}/fulfillments",
            transport=self.transport,
            headers=self._headers(),
            json=body,
        )
        self._check(response, "fulfill order")
        logger.info("Squarespace order %s fulfilled (%s)", order.external_id, response.status_code)
        # 204 No Content on success; no fulfillment id is returned
        return {"success": True, "reference": f"squarespace:{order.external_id}:{fulfillment.id}", "warnings": [], "error": None}
