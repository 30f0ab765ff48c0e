"""
Store routes: fulfillment service registration, fulfillment/cancellation requests and
inventory at the fulfillment service location.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from printlink.auth import get_current_user, is_admin
from printlink.database import get_db
from printlink.errors import ValidationError
from printlink.http.access import get_store_for_user, get_transport
from printlink.models import ProductVariant, Store, User
from printlink.services.fulfillment_request_handler import FulfillmentRequestHandler
from printlink.services.fulfillment_service_registration import FulfillmentServiceRegistration, InventoryActivation

logger = logging.getLogger(__name__)
router = APIRouter()


def _store_to_dict(store: Store) -> dict:
    return {
        "id": store.id,
        "name": store.name,
        "platform": store.platform.value,
        "shopDomain": store.shop_domain,
        "active": store.active,
        "needsReauthentication": store.needs_reauthentication,
        "fulfillmentServiceId": store.fulfillment_service_id,
        "fulfillmentLocationId": store.fulfillment_location_id,
    }


@router.get("")
async def list_stores(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    query = db.query(Store)
    if not is_admin(current_user):
        query = query.filter(Store.user_id == current_user.id)
    return [_store_to_dict(s) for s in query.order_by(Store.created_at, Store.id).all()]


@router.post("/{store_id}/fulfillment-service")
async def register_fulfillment_service(
    store_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    store = get_store_for_user(db, store_id, current_user)
    try:
        registration = FulfillmentServiceRegistration(db, store, transport=get_transport(request))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    result = await registration.register()
    if not result["success"]:
        raise HTTPException(status_code=502, detail=result["error"])
    return {**_store_to_dict(store), "alreadyRegistered": result.get("already_registered", False)}


@router.delete("/{store_id}/fulfillment-service")
async def unregister_fulfillment_service(
    store_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    store = get_store_for_user(db, store_id, current_user)
    try:
        registration = FulfillmentServiceRegistration(db, store, transport=get_transport(request))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    result = await registration.unregister()
    if not result["success"]:
        raise HTTPException(status_code=502, detail=result["error"])
    return {**_store_to_dict(store), "message": result.get("message", "Unregistered")}


def _request_handler(db: Session, store: Store, request: Request) -> FulfillmentRequestHandler:
    try:
        return FulfillmentRequestHandler(db, store, transport=get_transport(request))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{store_id}/fulfillment-requests/accept")
async def accept_fulfillment_requests(
    store_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    store = get_store_for_user(db, store_id, current_user)
    return await _request_handler(db, store, request).accept_pending_requests()


@router.post("/{store_id}/cancellation-requests/process")
async def process_cancellation_requests(
    store_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    store = get_store_for_user(db, store_id, current_user)
    return await _request_handler(db, store, request).process_pending_cancellations()


@router.post("/{store_id}/variants/{variant_id}/{action}")
async def control_variant_inventory(
    store_id: str,
    variant_id: str,
    action: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Stock (activate) or unstock (deactivate) a variant at the fulfillment service location."""
    store = get_store_for_user(db, store_id, current_user)
    variant = db.query(ProductVariant).filter(ProductVariant.id == variant_id, ProductVariant.store_id == store.id).first()
    if not variant:
        raise HTTPException(status_code=404, detail="Variant not found")
    try:
        inventory = InventoryActivation(db, store, transport=get_transport(request))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if action == "activate":
        result = await inventory.activate(variant)
    elif action == "deactivate":
        result = await inventory.deactivate(variant)
    else:
        raise HTTPException(status_code=400, detail=f"Unknown action: {action}")
    if not result["success"]:
        raise HTTPException(status_code=400, detail=result["error"])
    return {"variantId": variant.id, "fulfilmentActive": variant.fulfilment_active}
