r"""
Order state machine.

    draft ──begin_production──> in_production ──fulfill──> fulfilled ──complete──> completed
      ^  \                          |
      |   └──────cancel─────────────┴──> cancelled
      └───────────reopen───────────────────┘

Transitions only mutate the session; the caller owns the commit. Callers that read
quantities or change state should hold lock_order() for the duration.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from printlink.auth import Actor
from printlink.errors import StateTransitionError
from printlink.models import ActivityType, Order, OrderItem, OrderStatus, utcnow
from printlink.services.order_activity import log_activity

logger = logging.getLogger(__name__)

PARTIALLY_FULFILLED = "partially_fulfilled"

TRANSITIONS = {
    "begin_production": ({OrderStatus.DRAFT}, OrderStatus.IN_PRODUCTION),
    "cancel": ({OrderStatus.DRAFT, OrderStatus.IN_PRODUCTION}, OrderStatus.CANCELLED),
    "reopen": ({OrderStatus.CANCELLED}, OrderStatus.DRAFT),
    "fulfill": ({OrderStatus.IN_PRODUCTION}, OrderStatus.FULFILLED),
    "complete": ({OrderStatus.FULFILLED}, OrderStatus.COMPLETED),
}
ALIASES = {"submit": "begin_production", "start_production": "begin_production"}

_ACTIVITY = {
    "begin_production": (ActivityType.ORDER_IN_PRODUCTION, "Order is in production"),
    "cancel": (ActivityType.ORDER_CANCELLED, "Order cancelled"),
    "reopen": (ActivityType.ORDER_REOPENED, "Order reopened as draft"),
    "fulfill": (ActivityType.ORDER_FULFILLED, "All items fulfilled"),
    "complete": (ActivityType.ORDER_COMPLETED, "Order completed"),
}

_TIMESTAMP = {
    "begin_production": "in_production_at",
    "cancel": "status_cancelled_at",
    "fulfill": "fulfilled_at",
    "complete": "completed_at",
}


def _event(name: str) -> str:
    name = ALIASES.get(name, name)
    if name not in TRANSITIONS:
        raise ValueError(f"Unknown order event: {name}")
    return name


def may(order: Order, event: str) -> bool:
    sources, _ = TRANSITIONS[_event(event)]
    return order.status in sources


def transition(
    db: Session,
    order: Order,
    event: str,
    actor: Optional[Actor] = None,
    message: Optional[str] = None,
    details: Optional[dict] = None,
) -> Order:
    """Apply a transition or raise StateTransitionError without touching the order."""
    requested = event
    event = _event(event)
    sources, target = TRANSITIONS[event]
    if order.status not in sources:
        raise StateTransitionError(requested.replace("_", " "), order.status.value)

    previous = order.status
    order.status = target
    ts_field = _TIMESTAMP.get(event)
    if ts_field:
        setattr(order, ts_field, utcnow())
    if event == "reopen":
        order.status_cancelled_at = None

    activity_type, default_message = _ACTIVITY[event]
    log_activity(
        db,
        order,
        activity_type,
        message or default_message,
        actor=actor,
        details={"from": previous.value, "to": target.value, **(details or {})},
    )
    logger.info("Order %s: %s -> %s (%s)", order.id, previous.value, target.value, event)
    return order


def lock_order(db: Session, order_id: str) -> Optional[Order]:
    """Load the order row FOR UPDATE, serializing transitions and fulfillment accounting per order."""
    return (
        db.query(Order)
        .filter(Order.id == order_id)
        .populate_existing()
        .with_for_update()
        .first()
    )


def fulfilled_quantity(item: OrderItem) -> int:
    return item.fulfilled_quantity


def remaining_quantity(item: OrderItem) -> int:
    return max(item.quantity - item.fulfilled_quantity, 0)


def is_fully_fulfilled(order: Order) -> bool:
    items = order.active_items
    if not items:
        return False
    return all(item.fulfilled_quantity >= item.quantity for item in items)


def display_state(order: Order) -> str:
    """Persisted state, or partially_fulfilled while some but not all active quantity has shipped."""
    if order.status == OrderStatus.IN_PRODUCTION:
        items = order.active_items
        ordered = sum(item.quantity for item in items)
        fulfilled = sum(min(item.fulfilled_quantity, item.quantity) for item in items)
        if 0 < fulfilled < ordered:
            return PARTIALLY_FULFILLED
    return order.status.value
