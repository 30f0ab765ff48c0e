"""
Lookups shared by controllers: ownership-checked loads and the outbound HTTP transport.
"""
from typing import Optional

import httpx
from fastapi import HTTPException, Request
from sqlalchemy.orm import Query, Session

from printlink.auth import is_admin
from printlink.models import Order, ProductVariant, Store, User


def get_transport(request: Request) -> Optional[httpx.AsyncBaseTransport]:
    """Tests install an httpx.MockTransport on app.state; production leaves it unset."""
    return getattr(request.app.state, "http_transport", None)


def require_admin(user: User) -> None:
    if not is_admin(user):
        raise HTTPException(status_code=403, detail="Admin access required")


def visible_orders(db: Session, user: User) -> Query:
    """Orders of the user's stores plus their manual orders; admins see everything."""
    query = db.query(Order)
    if is_admin(user):
        return query
    store_ids = [s.id for s in db.query(Store.id).filter(Store.user_id == user.id).all()]
    if store_ids:
        return query.filter((Order.store_id.in_(store_ids)) | (Order.user_id == user.id))
    return query.filter(Order.user_id == user.id)


def get_order_for_user(db: Session, order_id: str, user: User) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if not is_admin(user) and order.owner_user_id != user.id:
        raise HTTPException(status_code=403, detail="Access denied")
    return order


def get_store_for_user(db: Session, store_id: str, user: User) -> Store:
    store = db.query(Store).filter(Store.id == store_id).first()
    if not store:
        raise HTTPException(status_code=404, detail="Store not found")
    if not is_admin(user) and store.user_id != user.id:
        raise HTTPException(status_code=403, detail="Access denied")
    return store


def get_variant_for_user(db: Session, variant_id: str, user: User) -> ProductVariant:
    variant = db.query(ProductVariant).filter(ProductVariant.id == variant_id).first()
    if not variant:
        raise HTTPException(status_code=404, detail="Variant not found")
    if not is_admin(user) and variant.store.user_id != user.id:
        raise HTTPException(status_code=403, detail="Access denied")
    return variant
