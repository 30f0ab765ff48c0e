"""
Append-only order audit trail. Callers pass the actor explicitly; None means system-triggered.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from printlink.auth import Actor
from printlink.models import ActivityType, Fulfillment, Order, OrderActivity

logger = logging.getLogger(__name__)


def log_activity(
    db: Session,
    order: Order,
    activity_type: ActivityType,
    message: Optional[str] = None,
    actor: Optional[Actor] = None,
    details: Optional[dict] = None,
) -> OrderActivity:
    """Add an activity row to the current transaction. Does not commit."""
    activity = OrderActivity(
        order_id=order.id,
        actor_id=actor.user_id if actor else None,
        activity_type=activity_type,
        message=message,
        details=details or {},
    )
    db.add(activity)
    logger.debug("Order %s activity %s: %s", order.id, activity_type.value, message)
    return activity


def log_fulfillment_created(db: Session, order: Order, fulfillment: Fulfillment, actor: Optional[Actor] = None) -> OrderActivity:
    quantity = sum(li.quantity for li in fulfillment.line_items)
    return log_activity(
        db,
        order,
        ActivityType.FULFILLMENT_CREATED,
        f"Fulfillment {fulfillment.external_id} created ({quantity} item(s))",
        actor=actor,
        details=_fulfillment_details(fulfillment),
    )


def log_fulfillment_updated(db: Session, order: Order, fulfillment: Fulfillment, actor: Optional[Actor] = None) -> OrderActivity:
    return log_activity(
        db,
        order,
        ActivityType.FULFILLMENT_UPDATED,
        f"Fulfillment {fulfillment.external_id} updated ({fulfillment.status.value})",
        actor=actor,
        details=_fulfillment_details(fulfillment),
    )


def _fulfillment_details(fulfillment: Fulfillment) -> dict:
    return {
        "fulfillment_id": fulfillment.id,
        "external_id": fulfillment.external_id,
        "source": fulfillment.source.value if fulfillment.source else None,
        "status": fulfillment.status.value if fulfillment.status else None,
        "tracking_company": fulfillment.tracking_company,
        "tracking_number": fulfillment.tracking_number,
        "tracking_url": fulfillment.tracking_url,
    }
