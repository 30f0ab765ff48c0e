"""
Webhook ingestion: signature verification, per-delivery deduplication and processing log.

Every verified delivery gets one webhook_logs row keyed by the platform's webhook id.
status_code is 0 while the delivery is being processed, the response status afterwards.
A redelivery is a duplicate unless the previous attempt failed with a 5xx, in which case
exactly one redelivery reclaims the row and runs the handler again.
"""
import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx
from cryptography.fernet import InvalidToken
from fastapi import HTTPException, Request, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from printlink.config import settings
from printlink.models import Store, WebhookLog, utcnow
from printlink.services.credentials import decrypt_token, encrypt_payload

logger = logging.getLogger(__name__)

HMAC_HEADER = "X-Shopify-Hmac-Sha256"
REDACTED_HEADERS = {HMAC_HEADER.lower(), "authorization", "cookie"}


def verify_webhook_hmac(body: bytes, hmac_header: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify X-Shopify-Hmac-Sha256: base64(HMAC-SHA256(raw_body, secret)) == header.
    """
    if not secret or not hmac_header or not body:
        return False
    computed = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    computed_b64 = base64.b64encode(computed).decode("utf-8")
    return hmac.compare_digest(computed_b64, hmac_header.strip())


@dataclass
class WebhookContext:
    source: str
    topic: str
    shop_domain: Optional[str]
    webhook_id: Optional[str]
    api_version: Optional[str]
    hmac_header: Optional[str]
    headers: Dict[str, str] = field(default_factory=dict)
    store_id: Optional[str] = None
    transport: Optional[httpx.AsyncBaseTransport] = None


def extract_webhook_headers(request: Request, source: str, topic: Optional[str] = None) -> WebhookContext:
    headers = request.headers
    redacted = {k: ("[REDACTED]" if k.lower() in REDACTED_HEADERS else v) for k, v in headers.items()}
    return WebhookContext(
        source=source,
        topic=topic or headers.get("X-Shopify-Topic") or "",
        shop_domain=(headers.get("X-Shopify-Shop-Domain") or "").strip().lower() or None,
        webhook_id=headers.get("X-Shopify-Webhook-Id") or headers.get("X-Shopify-Event-Id"),
        api_version=headers.get("X-Shopify-API-Version"),
        hmac_header=headers.get(HMAC_HEADER),
        headers=redacted,
        transport=getattr(request.app.state, "http_transport", None),
    )


def shopify_webhook_secrets(db: Session, shop_domain: Optional[str]) -> List[str]:
    """Candidate signing secrets: the store's own app secret, then the platform app secret."""
    candidates: List[str] = []
    if shop_domain:
        store = db.query(Store).filter(Store.shop_domain == shop_domain).first()
        if store is not None and store.app_secret_encrypted:
            try:
                secret = decrypt_token(store.app_secret_encrypted).strip()
            except InvalidToken:
                logger.warning("Could not decrypt app secret for %s", shop_domain)
            else:
                if secret:
                    candidates.append(secret)
    env_secret = (settings.SHOPIFY_API_SECRET or "").strip()
    if env_secret and env_secret not in candidates:
        candidates.append(env_secret)
    return candidates


def production_webhook_secrets() -> List[str]:
    secret = (settings.PRODUCTION_WEBHOOK_SECRET or "").strip()
    return [secret] if secret else []


WebhookHandler = Callable[[Session, WebhookContext, Any], Awaitable[dict]]


class WebhookGateway:
    def __init__(self, db: Session):
        self.db = db

    def _duplicate(self, ctx: WebhookContext) -> dict:
        logger.info("Duplicate webhook %s (%s %s)", ctx.webhook_id, ctx.source, ctx.topic)
        return {"ok": True, "duplicate": True}

    def _claim(self, ctx: WebhookContext, payload: Any) -> Optional[WebhookLog]:
        """Insert or reclaim the log row for this delivery. None means another attempt owns it."""
        db = self.db
        if ctx.webhook_id:
            existing = db.query(WebhookLog).filter(WebhookLog.webhook_id == ctx.webhook_id).first()
            if existing is not None:
                if existing.status_code < 500:
                    return None
                reclaimed = (
                    db.query(WebhookLog)
                    .filter(WebhookLog.id == existing.id, WebhookLog.status_code >= 500)
                    .update({WebhookLog.status_code: 0, WebhookLog.error_message: None}, synchronize_session=False)
                )
                db.commit()
                if reclaimed != 1:
                    return None
                db.refresh(existing)
                logger.info("Reprocessing failed webhook %s (%s)", ctx.webhook_id, ctx.topic)
                return existing

        log = WebhookLog(
            source=ctx.source,
            topic=ctx.topic,
            shop_domain=ctx.shop_domain,
            store_id=ctx.store_id,
            webhook_id=ctx.webhook_id,
            api_version=ctx.api_version,
            status_code=0,
            headers=ctx.headers,
            payload_ciphertext=encrypt_payload(payload),
        )
        db.add(log)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return None
        return log

    async def handle(
        self,
        request: Request,
        handler: WebhookHandler,
        source: str,
        topic: str,
        secrets: Iterable[str],
    ) -> dict:
        """
        Verify, dedupe, log and dispatch one webhook delivery.

        Raises HTTPException(401) on a bad signature (nothing is written) and HTTPException(400) on
        an unparseable body. Exceptions raised by handler are recorded with status 500 and re-raised.
        """
        raw_body = await request.body()
        ctx = extract_webhook_headers(request, source, topic)

        if not any(verify_webhook_hmac(raw_body, ctx.hmac_header, s) for s in secrets):
            logger.warning("Webhook HMAC verification failed: source=%s topic=%s shop=%s", source, topic, ctx.shop_domain)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning("Webhook %s %s: invalid JSON %s", source, topic, e)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

        if ctx.shop_domain:
            row = self.db.query(Store.id).filter(Store.shop_domain == ctx.shop_domain).first()
            ctx.store_id = row.id if row else None

        log = self._claim(ctx, payload)
        if log is None:
            return self._duplicate(ctx)
        log_id = log.id

        started = time.monotonic()
        try:
            result = await handler(self.db, ctx, payload)
        except Exception as e:
            self.db.rollback()
            self._finish(log_id, 500, started, f"{type(e).__name__}: {e}")
            logger.exception("Webhook %s %s (%s) failed", source, topic, ctx.webhook_id)
            raise

        result = result if isinstance(result, dict) else {}
        status_code = int(result.get("status_code") or 200)
        error = None if result.get("success", True) else str(result.get("error") or "")
        self._finish(log_id, status_code, started, error)
        if error:
            logger.info("Webhook %s %s not applied: %s", source, topic, error)
        response = {"ok": True, "success": result.get("success", True)}
        for key in ("message", "error", "duplicate"):
            if result.get(key) is not None:
                response[key] = result[key]
        return response

    def _finish(self, log_id: str, status_code: int, started: float, error: Optional[str]) -> None:
        log = self.db.query(WebhookLog).filter(WebhookLog.id == log_id).first()
        if log is None:
            return
        log.status_code = status_code
        log.processing_time_ms = int((time.monotonic() - started) * 1000)
        log.error_message = error[:1000] if error else None
        self.db.commit()


def cleanup_old_webhook_logs(db: Session, days: int = 30) -> int:
    """Delete webhook logs older than the retention window. Returns the number deleted."""
    cutoff = utcnow() - timedelta(days=days)
    deleted = db.query(WebhookLog).filter(WebhookLog.created_at < cutoff).delete(synchronize_session=False)
    db.commit()
    logger.info("Deleted %s webhook log(s) older than %s days", deleted, days)
    return deleted
