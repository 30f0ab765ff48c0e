"""
Order routes: listing, import/resync, lifecycle transitions, manual fulfillments and notes.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from printlink.auth import Actor, get_current_user
from printlink.database import get_db
from printlink.errors import StateTransitionError
from printlink.http.access import get_order_for_user, get_store_for_user, get_transport, visible_orders
from printlink.http.requests.schemas import (
    ImportOrderRequest,
    ManualFulfillmentRequest,
    ManualOrderRequest,
    OrderNoteRequest,
    TransitionRequest,
)
from printlink.models import ActivityType, Order, OrderActivity, OrderStatus, User
from printlink.services import order_state
from printlink.services.inbound_fulfillment import InboundFulfillmentService
from printlink.services.order_activity import log_activity
from printlink.services.order_import import OrderImportService
from printlink.services.production_submission import ProductionSubmissionService

logger = logging.getLogger(__name__)
router = APIRouter()


def _iso(value):
    return value.isoformat() if value else None


def _fulfillment_to_dict(f) -> dict:
    return {
        "id": f.id,
        "externalId": f.external_id,
        "source": f.source.value,
        "status": f.status.value,
        "trackingCompany": f.tracking_company,
        "trackingNumber": f.tracking_number,
        "trackingUrl": f.tracking_url,
        "fulfilledAt": _iso(f.fulfilled_at),
        "outboundSyncedAt": _iso(f.outbound_synced_at),
        "lineItems": [{"orderItemId": li.order_item_id, "quantity": li.quantity} for li in f.line_items],
    }


def _activity_to_dict(a: OrderActivity) -> dict:
    return {
        "id": a.id,
        "type": a.activity_type.value,
        "message": a.message,
        "actorId": a.actor_id,
        "details": a.details or {},
        "createdAt": _iso(a.created_at),
    }


def _order_summary(order: Order) -> dict:
    return {
        "id": order.id,
        "uid": order.uid,
        "storeId": order.store_id,
        "externalId": order.external_id,
        "name": order.display_name,
        "status": order.status.value,
        "displayStatus": order_state.display_state(order),
        "currency": order.currency,
        "totalCents": order.total_cents,
        "countryCode": order.country_code,
        "createdAt": _iso(order.created_at),
    }


def _order_detail(order: Order) -> dict:
    data = _order_summary(order)
    address = order.shipping_address
    data.update({
        "email": order.email,
        "phone": order.phone,
        "productionDraftOrderId": order.production_draft_order_id,
        "productionOrderId": order.production_order_id,
        "targetDispatchDate": _iso(order.target_dispatch_date),
        "items": [
            {
                "id": item.id,
                "title": item.title,
                "variantTitle": item.variant_title,
                "sku": item.sku,
                "quantity": item.quantity,
                "fulfilledQuantity": item.fulfilled_quantity,
                "priceCents": item.price_cents,
                "productVariantId": item.product_variant_id,
                "isCustom": item.is_custom,
            }
            for item in order.active_items
        ],
        "shippingAddress": {
            "name": address.name,
            "address1": address.address1,
            "address2": address.address2,
            "city": address.city,
            "province": address.province,
            "postalCode": address.postal_code,
            "countryCode": address.country_code,
        } if address else None,
        "fulfillments": [_fulfillment_to_dict(f) for f in order.fulfillments],
        "activities": [_activity_to_dict(a) for a in sorted(order.activities, key=lambda a: (a.created_at or datetime.min, a.id))],
    })
    return data


@router.get("")
async def list_orders(
    status: Optional[str] = Query(None),
    store_id: Optional[str] = Query(None),
    limit: int = Query(50, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    query = visible_orders(db, current_user)
    if status:
        try:
            query = query.filter(Order.status == OrderStatus(status))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    if store_id:
        query = query.filter(Order.store_id == store_id)
    total = query.count()
    orders = query.order_by(Order.created_at.desc(), Order.id).offset(offset).limit(limit).all()
    return {"orders": [_order_summary(o) for o in orders], "total": total}


@router.get("/{order_id}")
async def get_order(order_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return _order_detail(get_order_for_user(db, order_id, current_user))


@router.post("/manual", status_code=201)
async def create_manual_order(
    request: ManualOrderRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    data = request.model_dump(exclude_none=True)
    service = OrderImportService(db, actor=Actor.for_user(current_user))
    result = service.create_manual_order(current_user, data)
    if not result["success"]:
        raise HTTPException(status_code=400, detail=result["error"])
    return _order_detail(result["order"])


def _import_failure(result: dict) -> HTTPException:
    # Platform failures are upstream errors; everything else is a bad request.
    status_code = 502 if result.get("kind") else 400
    return HTTPException(status_code=status_code, detail=result["error"])


@router.post("/import")
async def import_order(
    body: ImportOrderRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    store = get_store_for_user(db, body.store_id, current_user)
    service = OrderImportService(db, actor=Actor.for_user(current_user), transport=get_transport(request))
    result = await service.import_or_resync(store, body.external_order_id)
    if not result["success"]:
        raise _import_failure(result)
    return {"created": result["created"], "order": _order_detail(result["order"])}


@router.post("/{order_id}/resync")
async def resync_order(
    order_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    order = get_order_for_user(db, order_id, current_user)
    owner = order.store if order.store_id else order.user
    service = OrderImportService(db, actor=Actor.for_user(current_user), transport=get_transport(request))
    result = await service.import_or_resync(owner, order.external_id)
    if not result["success"]:
        raise _import_failure(result)
    return {"created": result["created"], "order": _order_detail(result["order"])}


@router.post("/{order_id}/submit")
async def submit_order(
    order_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    get_order_for_user(db, order_id, current_user)
    service = ProductionSubmissionService(db, actor=Actor.for_user(current_user), transport=get_transport(request))
    result = await service.submit(order_id)
    if not result["success"]:
        raise HTTPException(status_code=result.get("status", 400), detail=result["error"])
    return _order_detail(result["order"])


def _apply_transition(db: Session, order_id: str, event: str, user: User, message: Optional[str]) -> Order:
    order = order_state.lock_order(db, order_id)
    try:
        order_state.transition(db, order, event, actor=Actor.for_user(user), message=message)
        db.commit()
    except StateTransitionError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    db.refresh(order)
    return order


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    body: Optional[TransitionRequest] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    get_order_for_user(db, order_id, current_user)
    order = _apply_transition(db, order_id, "cancel", current_user, body.message if body else None)
    return _order_detail(order)


@router.post("/{order_id}/reopen")
async def reopen_order(
    order_id: str,
    body: Optional[TransitionRequest] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    get_order_for_user(db, order_id, current_user)
    order = _apply_transition(db, order_id, "reopen", current_user, body.message if body else None)
    return _order_detail(order)


@router.post("/{order_id}/complete")
async def complete_order(
    order_id: str,
    body: Optional[TransitionRequest] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    get_order_for_user(db, order_id, current_user)
    order = _apply_transition(db, order_id, "complete", current_user, body.message if body else None)
    return _order_detail(order)


@router.post("/{order_id}/fulfillments", status_code=201)
async def create_manual_fulfillment(
    order_id: str,
    body: ManualFulfillmentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    order = get_order_for_user(db, order_id, current_user)
    if order.status != OrderStatus.IN_PRODUCTION:
        raise HTTPException(status_code=409, detail=f"Cannot fulfill order in {order.status.value} state")
    service = InboundFulfillmentService(db, actor=Actor.for_user(current_user))
    result = service.create_manual(
        order,
        [line.model_dump() for line in body.line_items],
        tracking={
            "tracking_company": body.tracking_company,
            "tracking_number": body.tracking_number,
            "tracking_url": body.tracking_url,
        },
    )
    if not result["success"]:
        raise HTTPException(status_code=400, detail=result["error"])
    if result.get("duplicate"):
        raise HTTPException(status_code=409, detail=result["message"])
    return {
        "fulfillment": _fulfillment_to_dict(result["fulfillment"]),
        "warnings": result["warnings"],
        "orderStatus": result["order_status"],
    }


@router.post("/{order_id}/notes", status_code=201)
async def add_order_note(
    order_id: str,
    body: OrderNoteRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    order = get_order_for_user(db, order_id, current_user)
    activity = log_activity(db, order, ActivityType.NOTE_ADDED, body.note.strip(), actor=Actor.for_user(current_user))
    db.commit()
    db.refresh(activity)
    return _activity_to_dict(activity)


@router.get("/{order_id}/activities")
async def list_order_activities(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    order = get_order_for_user(db, order_id, current_user)
    activities = (
        db.query(OrderActivity)
        .filter(OrderActivity.order_id == order.id)
        .order_by(OrderActivity.created_at, OrderActivity.id)
        .all()
    )
    return [_activity_to_dict(a) for a in activities]
