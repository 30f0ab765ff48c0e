"""
Completes the production-side draft order created by the production API.

The production system runs its own Shopify store per country; credentials come from
settings.country_config(). Steps: apply the customer shipping address, pick the first
available delivery rate, complete with paymentPending, then save the resulting costs.
"""
import logging
from typing import List, Optional

import httpx
from sqlalchemy.orm import Session

from printlink.config import settings
from printlink.errors import ExternalApiError
from printlink.models import Order, VariantMapping
from printlink.services.platform_adapter import gid_to_id, to_cents
from printlink.services.shopify import ShopifyGraphQLClient, user_errors_message

logger = logging.getLogger(__name__)

MAPPING_ATTRIBUTE_KEY = "ConnectVariantMappingID"

DRAFT_ORDER_UPDATE_MUTATION = """
mutation draftOrderUpdate($id: ID!, $input: DraftOrderInput!) {
  draftOrderUpdate(id: $id, input: $input) {
    draftOrder { id name }
    userErrors { field message }
  }
}
"""

DRAFT_ORDER_QUERY = """
query DraftOrder($id: ID!) {
  draftOrder(id: $id) {
    id
    lineItems(first: 100) {
      edges { node { variant { id } quantity } }
    }
  }
}
"""

DELIVERY_OPTIONS_QUERY = """
query DeliveryOptions($input: DraftOrderAvailableDeliveryOptionsInput!) {
  draftOrderAvailableDeliveryOptions(input: $input) {
    availableShippingRates { handle title price { amount } }
  }
}
"""

DRAFT_ORDER_COMPLETE_MUTATION = """
mutation draftOrderComplete($id: ID!, $paymentPending: Boolean) {
  draftOrderComplete(id: $id, paymentPending: $paymentPending) {
    draftOrder {
      order {
        id
        name
        subtotalPriceSet { shopMoney { amount currencyCode } }
        totalShippingPriceSet { shopMoney { amount currencyCode } }
        totalPriceSet { shopMoney { amount currencyCode } }
        lineItems(first: 100) {
          edges {
            node {
              id
              originalUnitPriceSet { shopMoney { amount currencyCode } }
              customAttributes { key value }
            }
          }
        }
      }
    }
    userErrors { field message }
  }
}
"""


def _shop_money(node: Optional[dict]) -> int:
    return to_cents(((node or {}).get("shopMoney") or {}).get("amount"))


class DraftOrderService:
    def __init__(self, db: Session, client: Optional[ShopifyGraphQLClient] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.db = db
        self.client = client
        self.transport = transport

    def _client_for(self, order: Order) -> Optional[ShopifyGraphQLClient]:
        if self.client is not None:
            return self.client
        config = settings.country_config(order.country_code)
        if not config or not config.get("shopify_domain") or not config.get("shopify_access_token"):
            logger.warning("No production store configured for country %s", order.country_code)
            return None
        return ShopifyGraphQLClient(config["shopify_domain"], config["shopify_access_token"], transport=self.transport)

    @staticmethod
    def _address_input(order: Order) -> Optional[dict]:
        addr = order.shipping_address
        if addr is None:
            return None
        fields = {
            "firstName": addr.first_name,
            "lastName": addr.last_name,
            "company": addr.company,
            "address1": addr.address1,
            "address2": addr.address2,
            "city": addr.city,
            "province": addr.province,
            "zip": addr.postal_code,
            "countryCode": addr.country_code,
            "phone": addr.phone or order.phone,
        }
        return {k: v for k, v in fields.items() if v}

    async def complete(self, order: Order) -> dict:
        """Run the whole sequence. Returns a result dict; raises nothing on API failures."""
        draft_gid = order.production_draft_order_id
        if not draft_gid:
            return {"success": False, "error": "Order has no production draft order"}
        client = self._client_for(order)
        if client is None:
            return {"success": False, "error": f"No production store for country {order.country_code}"}
        draft_gid = client.build_gid("DraftOrder", draft_gid)

        try:
            address = self._address_input(order)
            update_input = {"tags": ["printlink"]}
            if address:
                update_input["shippingAddress"] = address
                update_input["billingAddress"] = address
            if order.email:
                update_input["email"] = order.email
            result = await self._update(client, draft_gid, update_input)
            if not result["success"]:
                return result

            if address:
                await self._apply_shipping(client, draft_gid, address)

            data = await client.query(DRAFT_ORDER_COMPLETE_MUTATION, {"id": draft_gid, "paymentPending": True}, operation="draftOrderComplete")
        except ExternalApiError as e:
            logger.warning("Completing draft order %s for order %s failed: %s", draft_gid, order.id, e)
            return {"success": False, "error": str(e), "kind": e.kind}

        payload = data.get("draftOrderComplete") or {}
        if payload.get("userErrors"):
            error = user_errors_message(payload["userErrors"])
            logger.error("Draft order completion errors for %s: %s", order.id, error)
            return {"success": False, "error": error}

        order_data = (payload.get("draftOrder") or {}).get("order")
        if order_data:
            self.save_order_costs(order, order_data)
            self.save_line_item_costs(order, order_data.get("lineItems"))
            self.db.commit()
        return {"success": True, "production_order_id": order.production_order_id}

    async def _update(self, client: ShopifyGraphQLClient, draft_gid: str, update_input: dict) -> dict:
        data = await client.query(DRAFT_ORDER_UPDATE_MUTATION, {"id": draft_gid, "input": update_input}, operation="draftOrderUpdate")
        user_errors = (data.get("draftOrderUpdate") or {}).get("userErrors") or []
        if user_errors:
            return {"success": False, "error": user_errors_message(user_errors)}
        return {"success": True}

    async def _apply_shipping(self, client: ShopifyGraphQLClient, draft_gid: str, address: dict) -> None:
        data = await client.query(DRAFT_ORDER_QUERY, {"id": draft_gid}, operation="draftOrder")
        line_items = [
            {"variantId": (edge["node"].get("variant") or {}).get("id"), "quantity": edge["node"].get("quantity")}
            for edge in ((data.get("draftOrder") or {}).get("lineItems") or {}).get("edges") or []
            if (edge.get("node") or {}).get("variant")
        ]
        if not line_items:
            logger.warning("Draft order %s has no line items with variants; skipping shipping", draft_gid)
            return
        data = await client.query(
            DELIVERY_OPTIONS_QUERY,
            {"input": {"lineItems": line_items, "shippingAddress": address}},
            operation="draftOrderAvailableDeliveryOptions",
        )
        rates = ((data.get("draftOrderAvailableDeliveryOptions") or {}).get("availableShippingRates")) or []
        if not rates:
            logger.warning("No shipping rates available for draft order %s", draft_gid)
            return
        rate = rates[0]
        result = await self._update(
            client,
            draft_gid,
            {"shippingLine": {"title": rate.get("title"), "price": (rate.get("price") or {}).get("amount")}},
        )
        if result["success"]:
            logger.info("Applied shipping rate %s to draft order %s", rate.get("title"), draft_gid)
        else:
            logger.warning("Applying shipping rate to draft order %s failed: %s", draft_gid, result["error"])

    def save_order_costs(self, order: Order, order_data: dict) -> None:
        order.production_order_id = gid_to_id(order_data.get("id"))
        order.production_order_name = order_data.get("name")
        order.production_subtotal_cents = _shop_money(order_data.get("subtotalPriceSet"))
        order.production_shipping_cents = _shop_money(order_data.get("totalShippingPriceSet"))
        order.production_total_cents = _shop_money(order_data.get("totalPriceSet"))
        logger.info(
            "Order %s production order %s: subtotal=%s shipping=%s total=%s",
            order.id, order.production_order_name,
            order.production_subtotal_cents, order.production_shipping_cents, order.production_total_cents,
        )

    def save_line_item_costs(self, order: Order, line_items_data: Optional[dict]) -> None:
        """Match production lines to order items through the snapshot mapping id carried as a custom attribute."""
        nodes: List[dict] = [edge.get("node") or {} for edge in (line_items_data or {}).get("edges") or []]
        costs = {}
        for node in nodes:
            attrs = {a.get("key"): a.get("value") for a in node.get("customAttributes") or []}
            mapping_id = attrs.get(MAPPING_ATTRIBUTE_KEY)
            if not mapping_id:
                logger.warning("Production line item %s missing %s", node.get("id"), MAPPING_ATTRIBUTE_KEY)
                continue
            mapping = self.db.query(VariantMapping).filter(VariantMapping.id == str(mapping_id)).first()
            if mapping is None or mapping.order_item is None or mapping.order_item.order_id != order.id:
                logger.warning("No order item found for variant mapping %s", mapping_id)
                continue
            item = mapping.order_item
            if mapping.slot_position == 1 or not item.production_line_item_id:
                item.production_line_item_id = gid_to_id(node.get("id"))
            costs[item.id] = costs.get(item.id, 0) + _shop_money(node.get("originalUnitPriceSet"))
            item.production_cost_cents = costs[item.id]
