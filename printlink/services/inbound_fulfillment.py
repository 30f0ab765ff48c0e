"""
Inbound fulfillments: shipments reported by the production system, the storefront, or an operator.
The fulfillment's external id is the idempotency key; quantities are checked against what is
still unfulfilled while the order row is locked.
"""
import logging
import uuid
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from printlink.auth import Actor
from printlink.models import (
    ActivityType,
    Fulfillment,
    FulfillmentLineItem,
    FulfillmentSource,
    FulfillmentStatus,
    Order,
    OrderItem,
    OrderStatus,
    SyncJobType,
    utcnow,
)
from printlink.services import order_state
from printlink.services.order_activity import log_activity, log_fulfillment_created, log_fulfillment_updated
from printlink.services.platform_adapter import parse_datetime

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "success": FulfillmentStatus.SUCCESS,
    "pending": FulfillmentStatus.PENDING,
    "cancelled": FulfillmentStatus.CANCELLED,
    "canceled": FulfillmentStatus.CANCELLED,
    "error": FulfillmentStatus.ERROR,
    "failure": FulfillmentStatus.FAILURE,
}


def map_status(value: Optional[str]) -> FulfillmentStatus:
    return _STATUS_MAP.get((value or "").strip().lower(), FulfillmentStatus.PENDING)


def tracking_url_from(data: dict) -> Optional[str]:
    if data.get("tracking_url"):
        return data["tracking_url"]
    urls = data.get("tracking_urls") or []
    return urls[0] if urls else None


def location_name_from(data: dict) -> Optional[str]:
    return data.get("location_name") or (data.get("origin_address") or {}).get("name")


class InboundFulfillmentService:
    def __init__(self, db: Session, actor: Optional[Actor] = None):
        self.db = db
        self.actor = actor

    @staticmethod
    def _duplicate() -> dict:
        return {"success": True, "duplicate": True, "message": "Fulfillment already processed"}

    def _match_item(self, order: Order, line: dict) -> Optional[OrderItem]:
        items = order.active_items
        if line.get("order_item_id"):
            return next((i for i in items if i.id == str(line["order_item_id"])), None)
        line_id = line.get("id")
        if line_id is None:
            return None
        line_id = str(line_id)
        return (
            next((i for i in items if i.production_line_item_id == line_id), None)
            or next((i for i in items if i.external_line_id == line_id), None)
        )

    def create(self, order: Order, data: dict, source: FulfillmentSource) -> dict:
        """
        Record a fulfillment for order from a platform payload
        ({id, status, tracking_*, line_items: [{id, quantity}], ...}).

        Returns {"success", "duplicate", "fulfillment", "warnings", "order_status"} or a failure dict.
        """
        external_id = str(data.get("id") or "").strip()
        if not external_id:
            return {"success": False, "error": "Fulfillment payload has no id"}

        if self.db.query(Fulfillment.id).filter(Fulfillment.external_id == external_id).first():
            logger.info("Fulfillment %s already processed", external_id)
            return self._duplicate()

        order_id = order.id
        order = order_state.lock_order(self.db, order_id)
        if order is None:
            return {"success": False, "error": "Order not found"}

        fulfillment = Fulfillment(
            order_id=order.id,
            external_id=external_id,
            source=source,
            status=map_status(data.get("status")),
            tracking_company=data.get("tracking_company"),
            tracking_number=data.get("tracking_number"),
            tracking_url=tracking_url_from(data),
            location_name=location_name_from(data),
            shipment_status=data.get("shipment_status"),
            fulfilled_at=parse_datetime(data.get("created_at")) or utcnow(),
            raw_payload=data,
        )
        self.db.add(fulfillment)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.info("Fulfillment %s inserted concurrently", external_id)
            return self._duplicate()

        warnings: List[str] = []
        added: Dict[str, FulfillmentLineItem] = {}
        for line in data.get("line_items") or []:
            item = self._match_item(order, line)
            label = line.get("order_item_id") or line.get("id")
            if item is None:
                logger.warning("Fulfillment %s: no order item for line %s", external_id, label)
                warnings.append(f"No order item for line {label}")
                continue
            quantity = int(line.get("quantity") or 1)
            remaining = order_state.remaining_quantity(item)
            if quantity <= 0 or quantity > remaining:
                message = f"Line {label}: quantity {quantity} exceeds remaining {remaining}"
                logger.warning("Fulfillment %s: %s", external_id, message)
                warnings.append(message)
                continue
            if item.id in added:
                added[item.id].quantity += quantity
            else:
                line_item = FulfillmentLineItem(order_item=item, quantity=quantity)
                fulfillment.line_items.append(line_item)
                added[item.id] = line_item

        try:
            self.db.flush()
            log_fulfillment_created(self.db, order, fulfillment, actor=self.actor)
            if order_state.is_fully_fulfilled(order) and order_state.may(order, "fulfill"):
                order_state.transition(self.db, order, "fulfill", actor=self.actor)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info("Fulfillment %s inserted concurrently", external_id)
            return self._duplicate()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(fulfillment)
        logger.info(
            "Fulfillment %s recorded for order %s (%s line(s), %s warning(s))",
            external_id, order.uid, len(added), len(warnings),
        )
        if added:
            self._follow_ups(order, fulfillment, source)
        else:
            logger.info("Fulfillment %s recorded no line items; nothing to sync or notify", external_id)
        return {
            "success": True,
            "duplicate": False,
            "fulfillment": fulfillment,
            "warnings": warnings,
            "order_status": order_state.display_state(order),
        }

    def _follow_ups(self, order: Order, fulfillment: Fulfillment, source: FulfillmentSource) -> None:
        """Queue outbound sync and customer notification. Failures are recorded, never raised."""
        from printlink.services.job_queue import enqueue_job

        store = order.store
        if store is not None and store.platform.value != source.value:
            try:
                enqueue_job(
                    self.db,
                    SyncJobType.OUTBOUND_FULFILLMENT_SYNC,
                    {"fulfillment_id": fulfillment.id},
                    dedup_key=f"outbound:{fulfillment.id}",
                )
                self.db.commit()
            except SQLAlchemyError as e:
                self._record_follow_up_error(order, fulfillment, "outbound sync", e)

        try:
            enqueue_job(
                self.db,
                SyncJobType.SEND_NOTIFICATION,
                {"kind": "fulfillment_shipped", "fulfillment_id": fulfillment.id},
                dedup_key=f"fulfillment_shipped:{fulfillment.id}",
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self._record_follow_up_error(order, fulfillment, "notification", e)

    def _record_follow_up_error(self, order: Order, fulfillment: Fulfillment, what: str, error: Exception) -> None:
        self.db.rollback()
        logger.exception("Queueing %s for fulfillment %s failed", what, fulfillment.id)
        log_activity(
            self.db, order, ActivityType.FULFILLMENT_SYNC_ERROR,
            f"Could not queue {what}: {error}",
            actor=self.actor,
            details={"fulfillment_id": fulfillment.id},
        )
        self.db.commit()

    def update(self, fulfillment: Fulfillment, data: dict) -> dict:
        """Apply a later status/tracking change. Line items are never changed here."""
        changes = {
            "status": map_status(data["status"]) if data.get("status") else None,
            "tracking_company": data.get("tracking_company"),
            "tracking_number": data.get("tracking_number"),
            "tracking_url": tracking_url_from(data),
            "shipment_status": data.get("shipment_status"),
        }
        for field, value in changes.items():
            if value is not None:
                setattr(fulfillment, field, value)
        try:
            log_fulfillment_updated(self.db, fulfillment.order, fulfillment, actor=self.actor)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(fulfillment)
        logger.info("Fulfillment %s updated (%s)", fulfillment.external_id, fulfillment.status.value)
        return {"success": True, "fulfillment": fulfillment}

    def create_manual(self, order: Order, lines: List[dict], tracking: Optional[dict] = None) -> dict:
        """Operator-entered shipment: lines are [{order_item_id, quantity}]."""
        if order.status != OrderStatus.IN_PRODUCTION:
            return {"success": False, "error": f"Cannot fulfill order in {order.status.value} state"}
        if not lines:
            return {"success": False, "error": "No line items given"}
        tracking = tracking or {}
        data = {
            "id": f"manual-{uuid.uuid4().hex}",
            "status": "success",
            "tracking_company": tracking.get("tracking_company"),
            "tracking_number": tracking.get("tracking_number"),
            "tracking_url": tracking.get("tracking_url"),
            "line_items": [{"order_item_id": line["order_item_id"], "quantity": line.get("quantity", 1)} for line in lines],
        }
        return self.create(order, data, FulfillmentSource.MANUAL)
