"""
Webhook receivers. Public (no JWT); every delivery is HMAC verified by the gateway.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from printlink.database import get_db
from printlink.services.webhook_gateway import (
    WebhookGateway,
    production_webhook_secrets,
    shopify_webhook_secrets,
)
from printlink.services.webhook_handlers import PRODUCTION_HANDLERS, STOREFRONT_HANDLERS

logger = logging.getLogger(__name__)
router = APIRouter()


async def _dispatch(request: Request, db: Session, handlers: dict, source: str, topic: str, secrets) -> dict:
    handler = handlers.get(topic)
    if handler is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown webhook topic: {topic}")
    try:
        return await WebhookGateway(db).handle(request, handler, source, topic, secrets)
    except HTTPException:
        raise
    except Exception:
        # Already recorded with status 500 by the gateway; a 5xx makes the platform redeliver.
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "detail": "Webhook processing failed"},
        )


@router.post("/shopify/{topic:path}")
async def shopify_webhook_receive(topic: str, request: Request, db: Session = Depends(get_db)):
    """
    Storefront webhooks, one route per topic, e.g. /api/webhooks/shopify/orders/create.
    Signed with the store's app secret or SHOPIFY_API_SECRET.
    """
    shop_domain = (request.headers.get("X-Shopify-Shop-Domain") or "").strip().lower()
    return await _dispatch(request, db, STOREFRONT_HANDLERS, "shopify", topic, shopify_webhook_secrets(db, shop_domain))


@router.post("/production/{topic:path}")
async def production_webhook_receive(topic: str, request: Request, db: Session = Depends(get_db)):
    """Webhooks from the production storefront, signed with PRODUCTION_WEBHOOK_SECRET."""
    return await _dispatch(request, db, PRODUCTION_HANDLERS, "production", topic, production_webhook_secrets())
