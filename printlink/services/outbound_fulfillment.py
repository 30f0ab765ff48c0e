"""
Pushes a locally recorded fulfillment to the order's storefront so the customer sees the shipment there.
"""
import logging
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from printlink.errors import AuthenticationError, ExternalApiError, ValidationError
from printlink.models import ActivityType, Fulfillment, Platform, utcnow
from printlink.services.order_activity import log_activity
from printlink.services.platform_adapter import PlatformAdapter, get_adapter
from printlink.services.store_connection import StoreConnectionErrorHandler

logger = logging.getLogger(__name__)

_SYNCED_ACTIVITY = {
    Platform.SHOPIFY: ActivityType.FULFILLMENT_SYNCED_TO_SHOPIFY,
    Platform.SQUARESPACE: ActivityType.FULFILLMENT_SYNCED_TO_SQUARESPACE,
}


class OutboundFulfillmentService:
    def __init__(self, db: Session, adapter: Optional[PlatformAdapter] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.db = db
        self.adapter = adapter
        self.transport = transport

    async def sync(self, fulfillment: Fulfillment) -> dict:
        """
        Returns {"success": True, "skipped"?: str, "reference"?: str, "warnings": [...]} or
        {"success": False, "error": str, "retryable": bool}. Already-synced fulfillments are skipped.
        """
        if fulfillment.outbound_synced_at:
            return {"success": True, "skipped": "already_synced", "reference": fulfillment.outbound_reference, "warnings": []}

        order = fulfillment.order
        store = order.store
        if store is None:
            return {"success": True, "skipped": "manual_order", "warnings": []}
        if not store.active:
            return {"success": False, "error": f"Store {store.shop_domain} is inactive", "retryable": False}
        if not fulfillment.line_items:
            return {"success": True, "skipped": "no_line_items", "warnings": []}

        try:
            adapter = self.adapter or get_adapter(store, transport=self.transport)
            result = await adapter.create_fulfillment(order, fulfillment)
        except AuthenticationError as e:
            StoreConnectionErrorHandler(self.db).handle(store, e)
            return self._failed(fulfillment, str(e), retryable=False)
        except ExternalApiError as e:
            return self._failed(fulfillment, str(e), retryable=e.kind != ExternalApiError.CLIENT)
        except ValidationError as e:
            return self._failed(fulfillment, str(e), retryable=False)

        warnings = result.get("warnings") or []
        if not result.get("success"):
            return self._failed(fulfillment, result.get("error") or "Unknown error", retryable=False, warnings=warnings)

        fulfillment.outbound_synced_at = utcnow()
        fulfillment.outbound_reference = result.get("reference")
        log_activity(
            self.db, order, _SYNCED_ACTIVITY[store.platform],
            f"Fulfillment {fulfillment.external_id} synced to {store.platform.value}",
            details={"fulfillment_id": fulfillment.id, "reference": fulfillment.outbound_reference, "warnings": warnings},
        )
        self.db.commit()
        logger.info("Fulfillment %s synced to %s as %s", fulfillment.id, store.shop_domain, fulfillment.outbound_reference)
        return {"success": True, "reference": fulfillment.outbound_reference, "warnings": warnings}

    def _failed(self, fulfillment: Fulfillment, error: str, retryable: bool, warnings=None) -> dict:
        logger.warning("Outbound sync of fulfillment %s failed: %s", fulfillment.id, error)
        log_activity(
            self.db, fulfillment.order, ActivityType.FULFILLMENT_SYNC_ERROR,
            f"Fulfillment sync failed: {error}",
            details={"fulfillment_id": fulfillment.id, "warnings": warnings or [], "retryable": retryable},
        )
        self.db.commit()
        return {"success": False, "error": error, "retryable": retryable, "warnings": warnings or []}
