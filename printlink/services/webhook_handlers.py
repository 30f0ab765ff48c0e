"""
Topic handlers for storefront and production webhooks.
Each handler takes (db, ctx, payload) and returns a result dict; an unknown store or order is a
business failure ({"success": False}), not an exception.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from printlink.auth import Actor
from printlink.errors import ValidationError
from printlink.models import (
    ActivityType,
    Fulfillment,
    FulfillmentSource,
    Order,
    ProductVariant,
    Store,
    SyncJobType,
    utcnow,
)
from printlink.services.fulfillment_request_handler import FulfillmentRequestHandler
from printlink.services.inbound_fulfillment import InboundFulfillmentService
from printlink.services.job_queue import enqueue_job
from printlink.services.order_activity import log_activity
from printlink.services.order_import import OrderImportService
from printlink.services.platform_adapter import gid_to_id
from printlink.services.webhook_gateway import WebhookContext

logger = logging.getLogger(__name__)

WEBHOOK_ACTOR = Actor.system("webhook")


def _store_for(db: Session, ctx: WebhookContext) -> Optional[Store]:
    if not ctx.shop_domain:
        return None
    return db.query(Store).filter(Store.shop_domain == ctx.shop_domain).first()


def _unknown_store(ctx: WebhookContext) -> dict:
    logger.warning("Webhook %s for unknown store %s", ctx.topic, ctx.shop_domain)
    return {"success": False, "error": f"Unknown store: {ctx.shop_domain}"}


# Storefront topics

async def handle_order(db: Session, ctx: WebhookContext, payload: dict) -> dict:
    """orders/create, orders/paid: import or resync the order from the platform."""
    store = _store_for(db, ctx)
    if store is None:
        return _unknown_store(ctx)
    order_ref = payload.get("admin_graphql_api_id") or payload.get("id")
    result = await OrderImportService(db, actor=WEBHOOK_ACTOR, transport=ctx.transport).import_or_resync(store, order_ref)
    if not result["success"]:
        return {"success": False, "error": result["error"]}
    order = result["order"]
    return {"success": True, "message": f"Order {order.uid} {'imported' if result['created'] else 'resynced'}"}


def _apply_fulfillment(db: Session, order: Order, payload: dict, source: FulfillmentSource) -> dict:
    external_id = str(payload.get("id") or "")
    service = InboundFulfillmentService(db, actor=WEBHOOK_ACTOR)
    existing = db.query(Fulfillment).filter(Fulfillment.external_id == external_id).first() if external_id else None
    if existing is not None:
        if existing.order_id != order.id:
            return {"success": False, "error": f"Fulfillment {external_id} belongs to another order"}
        service.update(existing, payload)
        return {"success": True, "message": f"Fulfillment {external_id} updated"}
    result = service.create(order, payload, source)
    if not result["success"]:
        return result
    if result.get("duplicate"):
        return {"success": True, "duplicate": True, "message": result["message"]}
    return {
        "success": True,
        "message": f"Fulfillment {external_id} recorded",
        "warnings": result["warnings"],
    }


async def handle_storefront_fulfillment(db: Session, ctx: WebhookContext, payload: dict) -> dict:
    """fulfillments/create, fulfillments/update sent by the merchant's store."""
    store = _store_for(db, ctx)
    if store is None:
        return _unknown_store(ctx)
    order = (
        db.query(Order)
        .filter(Order.store_id == store.id, Order.external_id == str(payload.get("order_id") or ""))
        .first()
    )
    if order is None:
        return {"success": False, "error": f"Order {payload.get('order_id')} not found"}

    # The echo of a fulfillment we pushed ourselves is already accounted for.
    fulfillment_id = str(payload.get("id") or "")
    references = {fulfillment_id, payload.get("admin_graphql_api_id"), f"gid://shopify/Fulfillment/{fulfillment_id}"}
    pushed = (
        db.query(Fulfillment.id)
        .filter(Fulfillment.order_id == order.id, Fulfillment.outbound_reference.in_([r for r in references if r]))
        .first()
    )
    if pushed:
        return {"success": True, "message": "Fulfillment originated from PrintLink"}

    return _apply_fulfillment(db, order, payload, FulfillmentSource(store.platform.value))


async def handle_product(db: Session, ctx: WebhookContext, payload: dict) -> dict:
    """products/create, products/update: keep ProductVariant rows in step with the catalog."""
    store = _store_for(db, ctx)
    if store is None:
        return _unknown_store(ctx)
    product_id = gid_to_id(payload.get("admin_graphql_api_id") or payload.get("id"))
    created = updated = 0
    for v in payload.get("variants") or []:
        variant_id = gid_to_id(v.get("admin_graphql_api_id") or v.get("id"))
        if not variant_id:
            continue
        variant = (
            db.query(ProductVariant)
            .filter(ProductVariant.store_id == store.id, ProductVariant.external_variant_id == variant_id)
            .first()
        )
        if variant is None:
            variant = ProductVariant(store_id=store.id, external_variant_id=variant_id)
            db.add(variant)
            created += 1
        else:
            updated += 1
        variant.external_product_id = product_id
        variant.title = " / ".join(t for t in (payload.get("title"), v.get("title")) if t and t != "Default Title")
        variant.sku = v.get("sku")
        if v.get("inventory_item_id"):
            variant.inventory_item_id = gid_to_id(v["inventory_item_id"])
    db.commit()
    return {"success": True, "message": f"{created} variant(s) created, {updated} updated"}


async def handle_app_uninstalled(db: Session, ctx: WebhookContext, payload: dict) -> dict:
    store = _store_for(db, ctx)
    if store is None:
        return _unknown_store(ctx)
    store.active = False
    store.access_token = None
    # Shopify removes the fulfillment service together with the app.
    store.fulfillment_service_id = None
    store.fulfillment_location_id = None
    db.commit()
    logger.info("Store %s uninstalled the app; deactivated", store.shop_domain)
    return {"success": True, "message": "Store deactivated"}


async def handle_gdpr(db: Session, ctx: WebhookContext, payload: dict) -> dict:
    """customers/data_request, customers/redact, shop/redact."""
    store = _store_for(db, ctx)
    customer = payload.get("customer") or {}
    summary_lines = [f"Customer: {customer.get('email') or customer.get('id') or '-'}"]
    redacted = 0
    if ctx.topic == "customers/redact" and store is not None and customer.get("email"):
        orders = db.query(Order).filter(Order.store_id == store.id, Order.email == customer["email"]).all()
        for order in orders:
            order.email = None
            order.phone = None
            if order.shipping_address is not None:
                order.shipping_address.phone = None
            redacted += 1
        summary_lines.append(f"Orders redacted: {redacted}")
    if payload.get("orders_requested"):
        summary_lines.append(f"Orders requested: {payload['orders_requested']}")

    enqueue_job(
        db,
        SyncJobType.SEND_NOTIFICATION,
        {"kind": "gdpr_request", "topic": ctx.topic, "shop_domain": ctx.shop_domain, "summary": "\n".join(summary_lines)},
        dedup_key=f"gdpr:{ctx.webhook_id}" if ctx.webhook_id else None,
    )
    db.commit()
    logger.info("GDPR %s for %s recorded (%s order(s) redacted)", ctx.topic, ctx.shop_domain, redacted)
    return {"success": True, "message": f"{ctx.topic} recorded"}


async def handle_fulfillment_order_notification(db: Session, ctx: WebhookContext, payload: dict) -> dict:
    """The merchant requested fulfillment or cancellation of orders assigned to our service."""
    store = _store_for(db, ctx)
    if store is None:
        return _unknown_store(ctx)
    kind = (payload.get("kind") or "").upper()
    try:
        handler = FulfillmentRequestHandler(db, store, transport=ctx.transport)
    except ValidationError as e:
        return {"success": False, "error": str(e)}
    if kind == "FULFILLMENT_REQUEST":
        result = await handler.accept_pending_requests()
    elif kind == "CANCELLATION_REQUEST":
        result = await handler.process_pending_cancellations()
    else:
        return {"success": False, "error": f"Unknown notification kind: {kind or '-'}"}
    message = f"accepted={result['accepted_count']} rejected={result['rejected_count']}"
    if result["errors"]:
        return {"success": False, "error": "; ".join(result["errors"]), "message": message}
    return {"success": True, "message": message}


# Production topics

def _production_order(db: Session, production_order_id) -> Optional[Order]:
    order_id = gid_to_id(production_order_id)
    if not order_id:
        return None
    return db.query(Order).filter(Order.production_order_id == order_id).first()


async def handle_production_order_paid(db: Session, ctx: WebhookContext, payload: dict) -> dict:
    order = _production_order(db, payload.get("admin_graphql_api_id") or payload.get("id"))
    if order is None:
        return {"success": False, "error": f"No order for production order {payload.get('id')}"}
    if order.production_paid_at:
        return {"success": True, "message": "Payment already recorded"}
    order.production_paid_at = utcnow()
    log_activity(
        db, order, ActivityType.PAYMENT_CAPTURED,
        "Production payment captured",
        actor=WEBHOOK_ACTOR,
        details={"production_order_id": order.production_order_id, "total_price": payload.get("total_price")},
    )
    db.commit()
    return {"success": True, "message": "Payment recorded"}


async def handle_production_fulfillment(db: Session, ctx: WebhookContext, payload: dict) -> dict:
    order = _production_order(db, payload.get("order_id"))
    if order is None:
        return {"success": False, "error": f"No order for production order {payload.get('order_id')}"}
    return _apply_fulfillment(db, order, payload, FulfillmentSource.PRODUCTION)


STOREFRONT_HANDLERS = {
    "orders/create": handle_order,
    "orders/paid": handle_order,
    "fulfillments/create": handle_storefront_fulfillment,
    "fulfillments/update": handle_storefront_fulfillment,
    "products/create": handle_product,
    "products/update": handle_product,
    "app/uninstalled": handle_app_uninstalled,
    "customers/data_request": handle_gdpr,
    "customers/redact": handle_gdpr,
    "shop/redact": handle_gdpr,
    "fulfillment_order_notification": handle_fulfillment_order_notification,
}

PRODUCTION_HANDLERS = {
    "orders/paid": handle_production_order_paid,
    "fulfillments/create": handle_production_fulfillment,
    "fulfillments/update": handle_production_fulfillment,
}
