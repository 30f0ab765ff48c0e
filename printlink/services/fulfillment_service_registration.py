"""
Registers PrintLink as a fulfillment service on a merchant's Shopify store and manages the
inventory of mapped variants at the service's location.
"""
import logging
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from printlink.config import settings
from printlink.errors import ExternalApiError, ValidationError
from printlink.models import Platform, ProductVariant, Store
from printlink.services.shopify import ShopifyAdapter

logger = logging.getLogger(__name__)

# Print on demand: stock is effectively unlimited.
INFINITE_STOCK_QUANTITY = 999999


def _require_active_shopify(store: Store, what: str) -> None:
    if store.platform != Platform.SHOPIFY:
        raise ValidationError(f"{what} is only supported for Shopify stores")
    if not store.active:
        raise ValidationError(f"Store {store.name} is inactive")


def callback_url() -> str:
    return f"{settings.FULFILLMENT_CALLBACK_HOST.rstrip('/')}/api/webhooks/shopify"


class FulfillmentServiceRegistration:
    def __init__(self, db: Session, store: Store, adapter: Optional[ShopifyAdapter] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        _require_active_shopify(store, "Fulfillment service registration")
        self.db = db
        self.store = store
        self.adapter = adapter or ShopifyAdapter(store, transport=transport)

    @property
    def registered(self) -> bool:
        return bool(self.store.fulfillment_service_id)

    async def register(self) -> dict:
        """Idempotent: a store that already has a service id is returned as already_registered."""
        store = self.store
        if self.registered:
            logger.info("Fulfillment service already registered for store %s", store.shop_domain)
            return {
                "success": True,
                "already_registered": True,
                "fulfillment_service_id": store.fulfillment_service_id,
                "location_id": store.fulfillment_location_id,
            }

        try:
            result = await self.adapter.create_fulfillment_service(settings.FULFILLMENT_SERVICE_NAME, callback_url())
            if not result["success"]:
                logger.error("Failed to register fulfillment service for %s: %s", store.shop_domain, result["error"])
                return result

            service_id = result["fulfillment_service_id"]
            location_id = result.get("location_id") or await self.adapter.fulfillment_service_location(service_id)
            if location_id:
                country = (store.user.country_code if store.user else None) or settings.DEFAULT_LOCATION_COUNTRY
                edit = await self.adapter.edit_location_country(location_id, country)
                if not edit["success"]:
                    logger.warning("Could not set location %s country to %s: %s", location_id, country, edit["error"])
        except ExternalApiError as e:
            logger.error("Registering fulfillment service for %s failed: %s", store.shop_domain, e)
            return {"success": False, "error": str(e)}

        store.fulfillment_service_id = service_id
        store.fulfillment_location_id = location_id
        self.db.commit()
        logger.info("Registered fulfillment service %s (location %s) for %s", service_id, location_id, store.shop_domain)
        return {"success": True, "fulfillment_service_id": service_id, "location_id": location_id}

    async def unregister(self) -> dict:
        store = self.store
        if not self.registered:
            return {"success": True, "message": "Not registered"}
        try:
            result = await self.adapter.delete_fulfillment_service(store.fulfillment_service_id)
        except ExternalApiError as e:
            logger.error("Unregistering fulfillment service for %s failed: %s", store.shop_domain, e)
            return {"success": False, "error": str(e)}
        if not result["success"]:
            logger.error("Failed to unregister fulfillment service for %s: %s", store.shop_domain, result["error"])
            return result
        store.fulfillment_service_id = None
        store.fulfillment_location_id = None
        self.db.commit()
        logger.info("Unregistered fulfillment service for %s", store.shop_domain)
        return {"success": True}


class InventoryActivation:
    """Stock a variant at (or remove it from) the fulfillment service location."""

    def __init__(self, db: Session, store: Store, adapter: Optional[ShopifyAdapter] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        _require_active_shopify(store, "Inventory activation")
        self.db = db
        self.store = store
        self.adapter = adapter or ShopifyAdapter(store, transport=transport)

    def _preconditions(self, variant: ProductVariant) -> Optional[dict]:
        if not self.store.fulfillment_location_id:
            return {"success": False, "error": "Fulfillment service not registered. Please reconnect your store."}
        if not variant.inventory_item_id:
            return {"success": False, "error": "Could not fetch inventory item ID"}
        return None

    async def activate(self, variant: ProductVariant) -> dict:
        failure = self._preconditions(variant)
        if failure:
            return failure
        try:
            result = await self.adapter.activate_inventory(
                variant.inventory_item_id, self.store.fulfillment_location_id, INFINITE_STOCK_QUANTITY
            )
        except ExternalApiError as e:
            return {"success": False, "error": str(e)}
        if result["success"]:
            variant.fulfilment_active = True
            self.db.commit()
            logger.info("Activated inventory for variant %s at %s", variant.id, self.store.fulfillment_location_id)
        else:
            logger.error("Failed to activate inventory for variant %s: %s", variant.id, result["error"])
        return result

    async def deactivate(self, variant: ProductVariant) -> dict:
        failure = self._preconditions(variant)
        if failure:
            return failure
        try:
            level_id = await self.adapter.inventory_level_id(variant.inventory_item_id, self.store.fulfillment_location_id)
            if not level_id:
                result = {"success": True, "message": "Not stocked at fulfillment location"}
            else:
                result = await self.adapter.deactivate_inventory(level_id)
        except ExternalApiError as e:
            return {"success": False, "error": str(e)}
        if result["success"]:
            variant.fulfilment_active = False
            self.db.commit()
            logger.info("Deactivated inventory for variant %s", variant.id)
        return result
