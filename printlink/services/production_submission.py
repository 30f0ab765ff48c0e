"""
Sends a draft order to the production system and moves it into production.
"""
import logging
from datetime import date
from typing import Optional, Set, Tuple

import httpx
from sqlalchemy.orm import Session

from printlink.auth import Actor
from printlink.errors import ExternalApiError, ValidationError
from printlink.models import ActivityType, Order, OrderStatus
from printlink.services import order_state
from printlink.services.draft_order_service import DraftOrderService
from printlink.services.order_activity import log_activity
from printlink.services.platform_adapter import gid_to_id
from printlink.services.production_client import ProductionApiClient, build_draft_order_item, production_api_url
from printlink.services.variant_mapping import freeze_snapshots, is_item_resolvable

logger = logging.getLogger(__name__)


def _parse_dispatch_date(value) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        logger.warning("Unparseable target_dispatch_date %r", value)
        return None


class ProductionSubmissionService:
    def __init__(
        self,
        db: Session,
        api_client: Optional[ProductionApiClient] = None,
        draft_orders: Optional[DraftOrderService] = None,
        actor: Optional[Actor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.db = db
        self.api_client = api_client
        self.draft_orders = draft_orders
        self.actor = actor
        self.transport = transport

    async def submit(self, order_id: str) -> dict:
        """
        Freeze mapping snapshots for every resolvable item, send them to production and
        transition the order to in_production.

        Returns:
            {"success": True, "order": Order} or {"success": False, "error": str, "status": int, "kind"?: str}
        """
        order = order_state.lock_order(self.db, order_id)
        if order is None:
            return {"success": False, "error": "Order not found", "status": 404}
        if order.status != OrderStatus.DRAFT:
            state = order.status.value
            self.db.rollback()
            return {"success": False, "error": f"Cannot submit order in {state} state", "status": 409}

        country = order.country_code
        eligible = [item for item in order.active_items if is_item_resolvable(self.db, item, country)]
        if not eligible:
            self.db.rollback()
            return {"success": False, "error": "No items with variant mappings", "status": 400}

        try:
            entries = []
            seen: Set[Tuple[str, int]] = set()
            for item in eligible:
                for mapping in freeze_snapshots(self.db, item, country):
                    key = (item.id, mapping.slot_position)
                    if key in seen:
                        continue
                    seen.add(key)
                    entries.append(build_draft_order_item(mapping))

            client = self.api_client or ProductionApiClient(production_api_url(country), transport=self.transport)
            result = await client.send_draft_order(entries)
        except Exception:
            self.db.rollback()
            raise

        if not result["success"]:
            self.db.rollback()
            self._record_failure(order_id, result)
            return {"success": False, "error": result["error"], "kind": result.get("kind"), "status": 502}

        try:
            response = result.get("response") or {}
            draft_gid = (response.get("shopify_data") or {}).get("id") or (response.get("shopify_draft_order") or {}).get("id")
            if draft_gid:
                order.production_draft_order_id = gid_to_id(draft_gid)
            else:
                logger.warning("Production response for order %s has no draft order id", order.id)
            order.target_dispatch_date = _parse_dispatch_date(response.get("target_dispatch_date"))

            order_state.transition(self.db, order, "submit", actor=self.actor)
            log_activity(
                self.db, order, ActivityType.ORDER_SUBMITTED,
                f"Submitted {len(entries)} item(s) to production", actor=self.actor,
            )
            log_activity(
                self.db, order, ActivityType.SENT_TO_PRODUCTION,
                "Sent to production",
                actor=self.actor,
                details={
                    "production_draft_order_id": order.production_draft_order_id,
                    "target_dispatch_date": order.target_dispatch_date.isoformat() if order.target_dispatch_date else None,
                    "items": len(entries),
                },
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(order)
        logger.info("Order %s sent to production (draft %s)", order.uid, order.production_draft_order_id)

        if order.production_draft_order_id:
            await self._complete_draft_order(order)
        return {"success": True, "order": order}

    def _record_failure(self, order_id: str, result: dict) -> None:
        order = self.db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            return
        log_activity(
            self.db, order, ActivityType.PRODUCTION_FAILED,
            f"Production submission failed: {result['error']}",
            actor=self.actor,
            details={"error": result["error"], "kind": result.get("kind")},
        )
        self.db.commit()

    async def _complete_draft_order(self, order: Order) -> None:
        """Best effort: the order is already in production whatever happens here."""
        service = self.draft_orders or DraftOrderService(self.db, transport=self.transport)
        try:
            result = await service.complete(order)
        except (ExternalApiError, ValidationError) as e:
            self.db.rollback()
            logger.exception("Draft order completion for order %s raised: %s", order.id, e)
            return
        if not result.get("success"):
            logger.warning("Draft order completion for order %s failed: %s", order.id, result.get("error"))
