"""
Shopify Admin GraphQL client and the Shopify PlatformAdapter.
"""
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from printlink.config import settings
from printlink.errors import AuthenticationError, ExternalApiError
from printlink.models import Fulfillment, Order, Platform, Store
from printlink.services.credentials import store_access_token
from printlink.services.http_client import send_request
from printlink.services.platform_adapter import PlatformAdapter, gid_to_id, parse_datetime, to_cents

logger = logging.getLogger(__name__)


def _log_shopify_response(operation: str, response: httpx.Response) -> None:
    logger.debug(
        "Shopify %s: status=%s request_id=%s",
        operation,
        response.status_code,
        response.headers.get("X-Request-Id"),
    )


def user_errors_message(user_errors: List[dict]) -> str:
    """[{field: [...], message}] -> "field: message, ..." """
    parts = []
    for err in user_errors or []:
        field = err.get("field")
        if isinstance(field, list):
            field = ".".join(str(f) for f in field)
        parts.append(f"{field}: {err.get('message')}" if field else str(err.get("message")))
    return ", ".join(parts)


class ShopifyGraphQLClient:
    """Thin Admin API GraphQL façade. Credentials failures surface as AuthenticationError."""

    def __init__(self, shop_domain: str, access_token: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.transport = transport
        self.api_version = settings.SHOPIFY_API_VERSION

    @property
    def url(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.api_version}/graphql.json"

    @staticmethod
    def build_gid(resource_type: str, resource_id: Any) -> str:
        s = str(resource_id)
        if s.startswith("gid://"):
            return s
        return f"gid://shopify/{resource_type}/{s}"

    async def query(self, query: str, variables: Optional[dict] = None, operation: str = "graphql") -> Dict[str, Any]:
        """Execute a query/mutation and return its "data" object."""
        if not self.access_token:
            raise AuthenticationError(f"No access token for {self.shop_domain}", status_code=None)
        response = await send_request(
            "POST",
            self.url,
            transport=self.transport,
            headers={
                "X-Shopify-Access-Token": self.access_token,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            json={"query": query, "variables": variables or {}},
        )
        _log_shopify_response(operation, response)
        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Shopify rejected credentials for {self.shop_domain} ({response.status_code})",
                status_code=response.status_code,
                response_body=response.text[:500],
            )
        if response.status_code >= 400:
            raise ExternalApiError.from_status(
                response.status_code,
                f"Shopify {operation} failed ({response.status_code})",
                response_body=response.text[:500],
            )
        try:
            body = response.json()
        except json.JSONDecodeError as e:
            raise ExternalApiError("Invalid response format", kind=ExternalApiError.SERVER, status_code=response.status_code) from e
        if body.get("errors"):
            errors = body["errors"]
            message = ", ".join(e.get("message", str(e)) for e in errors) if isinstance(errors, list) else str(errors)
            raise ExternalApiError(f"Shopify {operation} error: {message}", kind=ExternalApiError.CLIENT, status_code=response.status_code)
        return body.get("data") or {}


ORDER_QUERY = """
query GetOrder($id: ID!) {
  order(id: $id) {
    id
    name
    email
    phone
    currencyCode
    processedAt
    cancelledAt
    closedAt
    subtotalPriceSet { shopMoney { amount } }
    totalDiscountsSet { shopMoney { amount } }
    totalShippingPriceSet { shopMoney { amount } }
    totalTaxSet { shopMoney { amount } }
    totalPriceSet { shopMoney { amount } }
    shippingAddress {
      firstName lastName name company address1 address2 city province provinceCode zip country countryCodeV2 phone
    }
    lineItems(first: 100) {
      edges {
        node {
          id
          title
          variantTitle
          sku
          quantity
          fulfillableQuantity
          requiresShipping
          variant { id }
          product { id }
          originalUnitPriceSet { shopMoney { amount } }
          discountedTotalSet { shopMoney { amount } }
          totalDiscountSet { shopMoney { amount } }
          taxLines { priceSet { shopMoney { amount } } }
        }
      }
    }
  }
}
"""

FULFILLMENT_ORDERS_QUERY = """
query FulfillmentOrders($id: ID!) {
  order(id: $id) {
    fulfillmentOrders(first: 10, query: "status:open OR status:in_progress") {
      edges {
        node {
          id
          status
          lineItems(first: 100) {
            edges {
              node {
                id
                remainingQuantity
                lineItem { id }
              }
            }
          }
        }
      }
    }
  }
}
"""

FULFILLMENT_CREATE_MUTATION = """
mutation fulfillmentCreate($fulfillment: FulfillmentInput!) {
  fulfillmentCreate(fulfillment: $fulfillment) {
    fulfillment { id status }
    userErrors { field message }
  }
}
"""

ASSIGNED_FULFILLMENT_ORDERS_QUERY = """
query AssignedFulfillmentOrders($assignmentStatus: FulfillmentOrderAssignmentStatus!) {
  shop {
    assignedFulfillmentOrders(first: 50, assignmentStatus: $assignmentStatus) {
      edges {
        node {
          id
          status
          requestStatus
          order { id name }
          lineItems(first: 50) {
            edges { node { id sku remainingQuantity } }
          }
        }
      }
    }
  }
}
"""

_REQUEST_MUTATIONS = {
    "fulfillmentOrderAcceptFulfillmentRequest": """
mutation AcceptFulfillmentRequest($id: ID!, $message: String) {
  fulfillmentOrderAcceptFulfillmentRequest(id: $id, message: $message) {
    fulfillmentOrder { id status requestStatus }
    userErrors { field message }
  }
}
""",
    "fulfillmentOrderAcceptCancellationRequest": """
mutation AcceptCancellationRequest($id: ID!, $message: String) {
  fulfillmentOrderAcceptCancellationRequest(id: $id, message: $message) {
    fulfillmentOrder { id status requestStatus }
    userErrors { field message }
  }
}
""",
    "fulfillmentOrderRejectCancellationRequest": """
mutation RejectCancellationRequest($id: ID!, $message: String!) {
  fulfillmentOrderRejectCancellationRequest(id: $id, message: $message) {
    fulfillmentOrder { id status requestStatus }
    userErrors { field message }
  }
}
""",
}

FULFILLMENT_SERVICE_CREATE_MUTATION = """
mutation fulfillmentServiceCreate($name: String!, $callbackUrl: URL!, $trackingSupport: Boolean, $inventoryManagement: Boolean) {
  fulfillmentServiceCreate(name: $name, callbackUrl: $callbackUrl, trackingSupport: $trackingSupport, inventoryManagement: $inventoryManagement) {
    fulfillmentService { id serviceName location { id name } }
    userErrors { field message }
  }
}
"""

FULFILLMENT_SERVICE_LOCATION_QUERY = """
query FetchFulfillmentServiceLocation($id: ID!) {
  fulfillmentService(id: $id) { location { id } }
}
"""

FULFILLMENT_SERVICE_DELETE_MUTATION = """
mutation fulfillmentServiceDelete($id: ID!) {
  fulfillmentServiceDelete(id: $id) {
    deletedId
    userErrors { field message }
  }
}
"""

LOCATION_EDIT_MUTATION = """
mutation locationEdit($id: ID!, $input: LocationEditInput!) {
  locationEdit(id: $id, input: $input) {
    location { id }
    userErrors { field message }
  }
}
"""

INVENTORY_ACTIVATE_MUTATION = """
mutation inventoryActivate($inventoryItemId: ID!, $locationId: ID!, $available: Int) {
  inventoryActivate(inventoryItemId: $inventoryItemId, locationId: $locationId, available: $available) {
    inventoryLevel { id }
    userErrors { field message }
  }
}
"""

INVENTORY_LEVEL_QUERY = """
query InventoryLevel($inventoryItemId: ID!, $locationId: ID!) {
  inventoryItem(id: $inventoryItemId) {
    inventoryLevel(locationId: $locationId) { id }
  }
}
"""

INVENTORY_DEACTIVATE_MUTATION = """
mutation inventoryDeactivate($inventoryLevelId: ID!) {
  inventoryDeactivate(inventoryLevelId: $inventoryLevelId) {
    userErrors { field message }
  }
}
"""

INVENTORY_ITEM_UPDATE_MUTATION = """
mutation inventoryItemUpdate($id: ID!, $input: InventoryItemInput!) {
  inventoryItemUpdate(id: $id, input: $input) {
    inventoryItem { id unitCost { amount } }
    userErrors { field message }
  }
}
"""


def _money(node: Optional[dict], key: str) -> int:
    return to_cents(((node or {}).get(key) or {}).get("shopMoney", {}).get("amount"))


def _edges(conn: Optional[dict]) -> List[dict]:
    return [edge.get("node") or {} for edge in (conn or {}).get("edges") or []]


def normalize_shopify_order(node: dict) -> dict:
    addr = node.get("shippingAddress")
    line_items = []
    for li in _edges(node.get("lineItems")):
        variant = li.get("variant") or {}
        product = li.get("product") or {}
        quantity = int(li.get("quantity") or 0)
        fulfillable = li.get("fulfillableQuantity")
        line_items.append({
            "external_line_id": gid_to_id(li.get("id")),
            "external_variant_id": gid_to_id(variant.get("id")),
            "external_product_id": gid_to_id(product.get("id")),
            "title": li.get("title") or "",
            "variant_title": li.get("variantTitle"),
            "sku": li.get("sku"),
            "quantity": quantity,
            "fulfillable_quantity": quantity if fulfillable is None else int(fulfillable),
            "price_cents": _money(li, "originalUnitPriceSet"),
            "total_cents": _money(li, "discountedTotalSet"),
            "discount_cents": _money(li, "totalDiscountSet"),
            "tax_cents": sum(_money(t, "priceSet") for t in li.get("taxLines") or []),
            "requires_shipping": bool(li.get("requiresShipping", True)),
            "is_custom": not variant.get("id"),
            "raw": li,
        })
    name = node.get("name")
    return {
        "external_id": gid_to_id(node.get("id")),
        "external_number": gid_to_id(name) if name else None,
        "name": name,
        "email": node.get("email"),
        "phone": node.get("phone"),
        "currency": node.get("currencyCode"),
        "subtotal_cents": _money(node, "subtotalPriceSet"),
        "discount_cents": _money(node, "totalDiscountsSet"),
        "shipping_cents": _money(node, "totalShippingPriceSet"),
        "tax_cents": _money(node, "totalTaxSet"),
        "total_cents": _money(node, "totalPriceSet"),
        "processed_at": parse_datetime(node.get("processedAt")),
        "cancelled_at": parse_datetime(node.get("cancelledAt")),
        "closed_at": parse_datetime(node.get("closedAt")),
        "country_code": (addr or {}).get("countryCodeV2"),
        "raw": node,
        "line_items": line_items,
        "shipping_address": {
            "first_name": addr.get("firstName"),
            "last_name": addr.get("lastName"),
            "name": addr.get("name"),
            "company": addr.get("company"),
            "address1": addr.get("address1"),
            "address2": addr.get("address2"),
            "city": addr.get("city"),
            "province": addr.get("province"),
            "province_code": addr.get("provinceCode"),
            "postal_code": addr.get("zip"),
            "country": addr.get("country"),
            "country_code": addr.get("countryCodeV2"),
            "phone": addr.get("phone"),
        } if addr else None,
    }


class ShopifyAdapter(PlatformAdapter):
    """Shopify storefront: order import, outbound fulfillment, fulfillment-service protocol, inventory."""

    platform = Platform.SHOPIFY

    def __init__(self, store: Store, transport: Optional[httpx.AsyncBaseTransport] = None, client: Optional[ShopifyGraphQLClient] = None):
        super().__init__(store, transport=transport)
        self.client = client or ShopifyGraphQLClient(store.shop_domain, store_access_token(store), transport=transport)

    async def fetch_order(self, external_id: str) -> dict:
        data = await self.client.query(ORDER_QUERY, {"id": self.client.build_gid("Order", external_id)}, operation="order")
        node = data.get("order")
        if not node:
            raise ExternalApiError(f"Order {external_id} not found on {self.store.shop_domain}", kind=ExternalApiError.CLIENT, status_code=404)
        return normalize_shopify_order(node)

    async def fulfillment_orders(self, order_external_id: str) -> List[dict]:
        data = await self.client.query(
            FULFILLMENT_ORDERS_QUERY,
            {"id": self.client.build_gid("Order", order_external_id)},
            operation="fulfillmentOrders",
        )
        result = []
        for fo in _edges(((data.get("order") or {}).get("fulfillmentOrders"))):
            result.append({
                "id": fo.get("id"),
                "status": fo.get("status"),
                "line_items": [
                    {
                        "id": li.get("id"),
                        "line_item_id": (li.get("lineItem") or {}).get("id"),
                        "remaining_quantity": int(li.get("remainingQuantity") or 0),
                    }
                    for li in _edges(fo.get("lineItems"))
                ],
            })
        return result

    async def create_fulfillment(self, order: Order, fulfillment: Fulfillment) -> dict:
        """
        Match each local line to an open fulfillment-order line by line item gid and send one
        fulfillmentCreate. Lines with no counterpart or insufficient remaining quantity are skipped
        with a warning; the rest are still fulfilled.
        """
        warnings: List[str] = []
        fulfillment_orders = await self.fulfillment_orders(order.external_id)
        if not fulfillment_orders:
            return {"success": False, "reference": None, "warnings": warnings, "error": "No open fulfillment orders"}

        by_line_gid: Dict[str, tuple] = {}
        for fo in fulfillment_orders:
            for li in fo["line_items"]:
                if li["line_item_id"]:
                    by_line_gid[li["line_item_id"]] = (fo["id"], li)

        grouped: Dict[str, List[dict]] = {}
        for fli in fulfillment.line_items:
            item = fli.order_item
            if item.is_custom or not item.external_line_id:
                warnings.append(f"Skipping custom item {item.title or item.id}")
                continue
            line_gid = self.client.build_gid("LineItem", item.external_line_id)
            match = by_line_gid.get(line_gid)
            if not match:
                warnings.append(f"No open fulfillment order line for {line_gid}")
                continue
            fo_id, fo_line = match
            if fo_line["remaining_quantity"] < fli.quantity:
                warnings.append(
                    f"Insufficient remaining quantity for {line_gid}: remaining {fo_line['remaining_quantity']}, requested {fli.quantity}"
                )
                continue
            grouped.setdefault(fo_id, []).append({"id": fo_line["id"], "quantity": fli.quantity})

        for w in warnings:
            logger.warning("Outbound fulfillment %s: %s", fulfillment.id, w)
        if not grouped:
            return {"success": False, "reference": None, "warnings": warnings, "error": "No matching line items to fulfill"}

        tracking = {
            k: v for k, v in {
                "company": fulfillment.tracking_company,
                "number": fulfillment.tracking_number,
                "url": fulfillment.tracking_url,
            }.items() if v
        }
        variables = {
            "fulfillment": {
                "notifyCustomer": True,
                "trackingInfo": tracking,
                "lineItemsByFulfillmentOrder": [
                    {"fulfillmentOrderId": fo_id, "fulfillmentOrderLineItems": lines}
                    for fo_id, lines in grouped.items()
                ],
            }
        }
        data = await self.client.query(FULFILLMENT_CREATE_MUTATION, variables, operation="fulfillmentCreate")
        payload = data.get("fulfillmentCreate") or {}
        if payload.get("userErrors"):
            return {"success": False, "reference": None, "warnings": warnings, "error": user_errors_message(payload["userErrors"])}
        created = payload.get("fulfillment") or {}
        return {"success": True, "reference": created.get("id"), "warnings": warnings, "error": None}

    # Fulfillment-service protocol

    async def assigned_fulfillment_orders(self, assignment_status: str) -> List[dict]:
        data = await self.client.query(
            ASSIGNED_FULFILLMENT_ORDERS_QUERY,
            {"assignmentStatus": assignment_status},
            operation="assignedFulfillmentOrders",
        )
        return _edges(((data.get("shop") or {}).get("assignedFulfillmentOrders")))

    async def _request_mutation(self, name: str, fulfillment_order_id: str, message: str) -> dict:
        data = await self.client.query(_REQUEST_MUTATIONS[name], {"id": fulfillment_order_id, "message": message}, operation=name)
        user_errors = (data.get(name) or {}).get("userErrors") or []
        if user_errors:
            return {"success": False, "error": ", ".join(e.get("message", "") for e in user_errors)}
        return {"success": True}

    async def accept_fulfillment_request(self, fulfillment_order_id: str, message: str) -> dict:
        return await self._request_mutation("fulfillmentOrderAcceptFulfillmentRequest", fulfillment_order_id, message)

    async def accept_cancellation_request(self, fulfillment_order_id: str, message: str) -> dict:
        return await self._request_mutation("fulfillmentOrderAcceptCancellationRequest", fulfillment_order_id, message)

    async def reject_cancellation_request(self, fulfillment_order_id: str, message: str) -> dict:
        return await self._request_mutation("fulfillmentOrderRejectCancellationRequest", fulfillment_order_id, message)

    # Fulfillment service registration

    async def create_fulfillment_service(self, name: str, callback_url: str) -> dict:
        data = await self.client.query(
            FULFILLMENT_SERVICE_CREATE_MUTATION,
            {"name": name, "callbackUrl": callback_url, "trackingSupport": True, "inventoryManagement": False},
            operation="fulfillmentServiceCreate",
        )
        payload = data.get("fulfillmentServiceCreate") or {}
        service = payload.get("fulfillmentService")
        if not service:
            return {"success": False, "error": user_errors_message(payload.get("userErrors")) or "Unknown error"}
        return {
            "success": True,
            "fulfillment_service_id": service.get("id"),
            "location_id": (service.get("location") or {}).get("id"),
        }

    async def fulfillment_service_location(self, fulfillment_service_id: str) -> Optional[str]:
        data = await self.client.query(FULFILLMENT_SERVICE_LOCATION_QUERY, {"id": fulfillment_service_id}, operation="fulfillmentService")
        return (((data.get("fulfillmentService") or {}).get("location")) or {}).get("id")

    async def edit_location_country(self, location_id: str, country_code: str) -> dict:
        data = await self.client.query(
            LOCATION_EDIT_MUTATION,
            {"id": location_id, "input": {"address": {"countryCode": country_code}}},
            operation="locationEdit",
        )
        user_errors = (data.get("locationEdit") or {}).get("userErrors") or []
        if user_errors:
            return {"success": False, "error": user_errors_message(user_errors)}
        return {"success": True}

    async def delete_fulfillment_service(self, fulfillment_service_id: str) -> dict:
        data = await self.client.query(FULFILLMENT_SERVICE_DELETE_MUTATION, {"id": fulfillment_service_id}, operation="fulfillmentServiceDelete")
        payload = data.get("fulfillmentServiceDelete") or {}
        if payload.get("deletedId"):
            return {"success": True}
        return {"success": False, "error": user_errors_message(payload.get("userErrors")) or "Unknown error"}

    # Inventory at the fulfillment location

    async def activate_inventory(self, inventory_item_id: str, location_id: str, available: int) -> dict:
        data = await self.client.query(
            INVENTORY_ACTIVATE_MUTATION,
            {
                "inventoryItemId": self.client.build_gid("InventoryItem", inventory_item_id),
                "locationId": location_id,
                "available": available,
            },
            operation="inventoryActivate",
        )
        payload = data.get("inventoryActivate") or {}
        if payload.get("userErrors"):
            return {"success": False, "error": user_errors_message(payload["userErrors"])}
        return {"success": True, "inventory_level_id": (payload.get("inventoryLevel") or {}).get("id")}

    async def inventory_level_id(self, inventory_item_id: str, location_id: str) -> Optional[str]:
        data = await self.client.query(
            INVENTORY_LEVEL_QUERY,
            {"inventoryItemId": self.client.build_gid("InventoryItem", inventory_item_id), "locationId": location_id},
            operation="inventoryLevel",
        )
        return (((data.get("inventoryItem") or {}).get("inventoryLevel")) or {}).get("id")

    async def deactivate_inventory(self, inventory_level_id: str) -> dict:
        data = await self.client.query(INVENTORY_DEACTIVATE_MUTATION, {"inventoryLevelId": inventory_level_id}, operation="inventoryDeactivate")
        user_errors = (data.get("inventoryDeactivate") or {}).get("userErrors") or []
        if user_errors:
            return {"success": False, "error": user_errors_message(user_errors)}
        return {"success": True}

    async def update_inventory_item_cost(self, inventory_item_id: str, cost_cents: int) -> dict:
        data = await self.client.query(
            INVENTORY_ITEM_UPDATE_MUTATION,
            {"id": self.client.build_gid("InventoryItem", inventory_item_id), "input": {"cost": f"{cost_cents / 100:.2f}"}},
            operation="inventoryItemUpdate",
        )
        user_errors = (data.get("inventoryItemUpdate") or {}).get("userErrors") or []
        if user_errors:
            return {"success": False, "error": user_errors_message(user_errors)}
        return {"success": True}
