"""
Webhook log routes. Payloads contain personal data and are only decrypted for admins.
"""
import logging
from typing import Optional

from cryptography.fernet import InvalidToken
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from printlink.auth import get_current_user, is_admin
from printlink.config import settings
from printlink.database import get_db
from printlink.http.access import require_admin
from printlink.models import Store, User, WebhookLog
from printlink.services.credentials import decrypt_payload
from printlink.services.webhook_gateway import cleanup_old_webhook_logs

logger = logging.getLogger(__name__)
router = APIRouter()


def _log_to_dict(log: WebhookLog) -> dict:
    return {
        "id": log.id,
        "source": log.source,
        "topic": log.topic,
        "shopDomain": log.shop_domain,
        "webhookId": log.webhook_id,
        "statusCode": log.status_code,
        "error": log.error_message,
        "processingTimeMs": log.processing_time_ms,
        "createdAt": log.created_at.isoformat() if log.created_at else None,
    }


@router.get("")
async def list_webhook_logs(
    topic: Optional[str] = Query(None),
    status_code: Optional[int] = Query(None),
    failed: bool = Query(False),
    limit: int = Query(50, le=200),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Logs for the current user's stores (all logs for admins), newest first."""
    query = db.query(WebhookLog)
    if not is_admin(current_user):
        store_ids = [s.id for s in db.query(Store.id).filter(Store.user_id == current_user.id).all()]
        if not store_ids:
            return []
        query = query.filter(WebhookLog.store_id.in_(store_ids))
    if topic:
        query = query.filter(WebhookLog.topic == topic)
    if status_code is not None:
        query = query.filter(WebhookLog.status_code == status_code)
    if failed:
        query = query.filter(WebhookLog.status_code >= 500)
    rows = query.order_by(WebhookLog.created_at.desc(), WebhookLog.id).limit(limit).all()
    return [_log_to_dict(r) for r in rows]


@router.get("/{log_id}")
async def get_webhook_log(log_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    require_admin(current_user)
    log = db.query(WebhookLog).filter(WebhookLog.id == log_id).first()
    if not log:
        raise HTTPException(status_code=404, detail="Webhook log not found")
    data = _log_to_dict(log)
    data["headers"] = log.headers or {}
    try:
        data["payload"] = decrypt_payload(log.payload_ciphertext)
    except InvalidToken:
        logger.warning("Could not decrypt payload of webhook log %s", log.id)
        data["payload"] = None
    return data


@router.post("/cleanup")
async def cleanup_webhook_logs(
    days: int = Query(settings.WEBHOOK_LOG_RETENTION_DAYS, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_admin(current_user)
    deleted = cleanup_old_webhook_logs(db, days=days)
    return {"deleted": deleted}
