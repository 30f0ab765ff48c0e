"""
Answers Shopify fulfillment-service requests: merchants "Request fulfillment" or "Cancel
fulfillment" in their admin, and the requests sit assigned to our fulfillment service until
accepted or rejected here.
"""
import logging
from typing import List, Optional

import httpx
from sqlalchemy.orm import Session

from printlink.auth import Actor
from printlink.errors import ExternalApiError, StateTransitionError, ValidationError
from printlink.models import Order, OrderStatus, Platform, Store
from printlink.services import order_state
from printlink.services.order_import import OrderImportService
from printlink.services.platform_adapter import gid_to_id
from printlink.services.shopify import ShopifyAdapter

logger = logging.getLogger(__name__)

FULFILLMENT_REQUESTED = "FULFILLMENT_REQUESTED"
CANCELLATION_REQUESTED = "CANCELLATION_REQUESTED"

ACCEPT_MESSAGE = "We're on it! Your order is being processed by PrintLink."
REJECT_CANCELLATION_MESSAGE = "Order is already in production and cannot be cancelled."
ACCEPT_CANCELLATION_MESSAGE = "Cancellation accepted. Order will not be fulfilled."


class FulfillmentRequestHandler:
    def __init__(
        self,
        db: Session,
        store: Store,
        adapter: Optional[ShopifyAdapter] = None,
        import_service: Optional[OrderImportService] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if store.platform != Platform.SHOPIFY:
            raise ValidationError("Fulfillment request handling is only supported for Shopify stores")
        self.db = db
        self.store = store
        self.adapter = adapter or ShopifyAdapter(store, transport=transport)
        self.import_service = import_service or OrderImportService(
            db, adapter=self.adapter, actor=Actor.system("fulfillment_request"), transport=transport
        )
        self.actor = Actor.system("fulfillment_request")

    def _local_order(self, fulfillment_order: dict) -> Optional[Order]:
        external_id = gid_to_id((fulfillment_order.get("order") or {}).get("id"))
        if not external_id:
            return None
        return (
            self.db.query(Order)
            .filter(Order.store_id == self.store.id, Order.external_id == external_id)
            .first()
        )

    async def _ensure_order_imported(self, fulfillment_order: dict, errors: List[str]) -> Optional[Order]:
        order = self._local_order(fulfillment_order)
        if order is not None:
            return order
        order_ref = fulfillment_order.get("order") or {}
        if not order_ref.get("id"):
            errors.append(f"Fulfillment order {fulfillment_order.get('id')} has no order reference")
            return None
        logger.info("Importing order %s (%s) for fulfillment request", order_ref.get("name"), order_ref.get("id"))
        result = await self.import_service.import_or_resync(self.store, order_ref["id"])
        if not result["success"]:
            errors.append(f"Failed to import order {order_ref.get('name') or order_ref['id']}: {result['error']}")
            return None
        return result["order"]

    async def accept_pending_requests(self) -> dict:
        """Import any unknown orders and accept every pending fulfillment request."""
        errors: List[str] = []
        accepted = 0
        try:
            fulfillment_orders = await self.adapter.assigned_fulfillment_orders(FULFILLMENT_REQUESTED)
        except ExternalApiError as e:
            logger.error("Querying fulfillment requests for %s failed: %s", self.store.shop_domain, e)
            return {"success": False, "accepted_count": 0, "rejected_count": 0, "errors": [str(e)]}

        for fo in fulfillment_orders:
            fo_id = fo.get("id")
            try:
                await self._ensure_order_imported(fo, errors)
                result = await self.adapter.accept_fulfillment_request(fo_id, ACCEPT_MESSAGE)
            except ExternalApiError as e:
                errors.append(f"Failed to accept {fo_id}: {e}")
                continue
            if result["success"]:
                accepted += 1
                logger.info("Accepted fulfillment request %s", fo_id)
            else:
                errors.append(f"Failed to accept {fo_id}: {result['error']}")

        return {"success": not errors, "accepted_count": accepted, "rejected_count": 0, "errors": errors}

    async def process_pending_cancellations(self) -> dict:
        """Reject cancellations for orders already in production; accept and cancel draft orders locally."""
        errors: List[str] = []
        accepted = rejected = 0
        try:
            fulfillment_orders = await self.adapter.assigned_fulfillment_orders(CANCELLATION_REQUESTED)
        except ExternalApiError as e:
            logger.error("Querying cancellation requests for %s failed: %s", self.store.shop_domain, e)
            return {"success": False, "accepted_count": 0, "rejected_count": 0, "errors": [str(e)]}

        for fo in fulfillment_orders:
            fo_id = fo.get("id")
            try:
                order = await self._ensure_order_imported(fo, errors)
                # Row lock held until the next commit or rollback.
                locked = order_state.lock_order(self.db, order.id) if order is not None else None
                if locked is not None and locked.status == OrderStatus.IN_PRODUCTION:
                    result = await self.adapter.reject_cancellation_request(fo_id, REJECT_CANCELLATION_MESSAGE)
                    if result["success"]:
                        rejected += 1
                        logger.info("Rejected cancellation for in-production order %s", locked.uid)
                    else:
                        errors.append(result["error"])
                    self.db.rollback()
                    continue

                result = await self.adapter.accept_cancellation_request(fo_id, ACCEPT_CANCELLATION_MESSAGE)
            except ExternalApiError as e:
                self.db.rollback()
                errors.append(f"Failed to process cancellation {fo_id}: {e}")
                continue

            if not result["success"]:
                self.db.rollback()
                errors.append(result["error"])
                continue
            accepted += 1
            logger.info("Accepted cancellation request %s", fo_id)
            if locked is None:
                self.db.rollback()
            else:
                self._cancel_locally(locked.id, errors)

        return {"success": not errors, "accepted_count": accepted, "rejected_count": rejected, "errors": errors}

    def _cancel_locally(self, order_id: str, errors: List[str]) -> None:
        locked = order_state.lock_order(self.db, order_id)
        if locked is None or locked.status != OrderStatus.DRAFT:
            if locked is not None and locked.status != OrderStatus.CANCELLED:
                logger.warning("Cancellation accepted for order %s but it is %s; leaving it as is", locked.uid, locked.status.value)
            self.db.rollback()
            return
        try:
            order_state.transition(self.db, locked, "cancel", actor=self.actor, message="Cancelled at the merchant's request")
            self.db.commit()
        except StateTransitionError as e:
            self.db.rollback()
            errors.append(str(e))
