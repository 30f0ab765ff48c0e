"""
Durable background jobs stored in sync_jobs.

Jobs are claimed with a conditional UPDATE so two workers never run the same attempt.
A RUNNING job whose worker died is picked up again once JOB_VISIBILITY_TIMEOUT_SEC has passed.
Handlers must be idempotent: any job may run more than once.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Optional

import httpx
from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from printlink.config import settings
from printlink.errors import PrintLinkError
from printlink.models import (
    ActivityType,
    Fulfillment,
    LogLevel,
    Order,
    Platform,
    ProductVariant,
    Store,
    SyncJob,
    SyncJobStatus,
    SyncJobType,
    SyncLog,
    utcnow,
)

logger = logging.getLogger(__name__)

BACKOFF_BASE_SEC = 30
BACKOFF_MAX_SEC = 3600


class RetryableJobError(PrintLinkError):
    """Raised by a handler to have the job requeued with backoff."""


JobHandler = Callable[[Session, dict, Optional[httpx.AsyncBaseTransport]], Awaitable[dict]]


def enqueue_job(
    db: Session,
    job_type: SyncJobType,
    payload: dict,
    dedup_key: Optional[str] = None,
    run_after=None,
    max_attempts: Optional[int] = None,
) -> SyncJob:
    """Add a job to the current transaction. A job with the same dedup_key is returned instead. Does not commit."""
    if dedup_key:
        existing = db.query(SyncJob).filter(SyncJob.dedup_key == dedup_key).first()
        if existing is not None:
            return existing
    job = SyncJob(
        job_type=job_type,
        status=SyncJobStatus.QUEUED,
        payload=payload,
        dedup_key=dedup_key,
        run_after=run_after,
        max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
    )
    try:
        with db.begin_nested():
            db.add(job)
    except IntegrityError:
        existing = db.query(SyncJob).filter(SyncJob.dedup_key == dedup_key).first()
        if existing is None:
            raise
        return existing
    logger.debug("Enqueued %s job %s (%s)", job_type.value, job.id, dedup_key)
    return job


def backoff_seconds(attempts: int) -> int:
    return min(BACKOFF_BASE_SEC * (2 ** max(attempts - 1, 0)), BACKOFF_MAX_SEC)


def _log(db: Session, job: SyncJob, level: LogLevel, message: str, raw: Optional[dict] = None) -> None:
    db.add(SyncLog(sync_job_id=job.id, level=level, message=message[:1000], raw_payload=raw))


def _claimable(now):
    stale_before = now - timedelta(seconds=settings.JOB_VISIBILITY_TIMEOUT_SEC)
    return or_(
        and_(
            SyncJob.status == SyncJobStatus.QUEUED,
            or_(SyncJob.run_after.is_(None), SyncJob.run_after <= now),
        ),
        and_(SyncJob.status == SyncJobStatus.RUNNING, SyncJob.started_at < stale_before),
    )


def _claim(db: Session, job_id: str) -> bool:
    now = utcnow()
    claimed = (
        db.query(SyncJob)
        .filter(SyncJob.id == job_id, _claimable(now))
        .update(
            {
                SyncJob.status: SyncJobStatus.RUNNING,
                SyncJob.started_at: now,
                SyncJob.attempts: SyncJob.attempts + 1,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return claimed == 1


async def run_job(db: Session, job: SyncJob, transport: Optional[httpx.AsyncBaseTransport] = None) -> SyncJobStatus:
    """Run one claimed job and record the outcome."""
    handler = HANDLERS.get(job.job_type)
    if handler is None:
        job.status = SyncJobStatus.FAILED
        job.finished_at = utcnow()
        job.error_message = f"No handler for {job.job_type.value}"
        _log(db, job, LogLevel.ERROR, job.error_message)
        db.commit()
        return job.status

    job_id = job.id
    try:
        result = await handler(db, dict(job.payload or {}), transport)
    except Exception as e:
        db.rollback()
        job = db.query(SyncJob).filter(SyncJob.id == job_id).populate_existing().one()
        message = f"{type(e).__name__}: {e}"
        if not isinstance(e, RetryableJobError):
            logger.exception("Job %s (%s) raised", job.id, job.job_type.value)
        if job.attempts >= job.max_attempts:
            job.status = SyncJobStatus.FAILED
            job.finished_at = utcnow()
        else:
            job.status = SyncJobStatus.QUEUED
            job.run_after = utcnow() + timedelta(seconds=backoff_seconds(job.attempts))
        job.error_message = message[:500]
        _log(db, job, LogLevel.ERROR, f"Attempt {job.attempts} failed: {message}")
        db.commit()
        logger.warning("Job %s attempt %s failed, now %s", job.id, job.attempts, job.status.value)
        return job.status

    result = result or {}
    job.finished_at = utcnow()
    if result.get("success", True):
        job.status = SyncJobStatus.SUCCESS
        job.error_message = None
        _log(db, job, LogLevel.INFO, result.get("message") or f"{job.job_type.value} succeeded", raw=_jsonable(result))
    else:
        job.status = SyncJobStatus.FAILED
        job.error_message = str(result.get("error") or "Unknown error")[:500]
        _log(db, job, LogLevel.ERROR, job.error_message, raw=_jsonable(result))
    db.commit()
    logger.info("Job %s (%s) %s", job.id, job.job_type.value, job.status.value)
    return job.status


def _jsonable(result: dict) -> dict:
    return {k: v for k, v in result.items() if isinstance(v, (str, int, float, bool, list, dict, type(None)))}


async def run_pending_jobs(
    session_factory: Callable[[], Session],
    limit: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """Claim and run due jobs once. Returns counts per outcome."""
    limit = limit or settings.JOB_BATCH_SIZE
    summary = {"processed": 0, "succeeded": 0, "failed": 0, "requeued": 0, "success": True}
    db = session_factory()
    try:
        candidate_ids = [
            row.id
            for row in db.query(SyncJob.id)
            .filter(_claimable(utcnow()))
            .order_by(SyncJob.created_at, SyncJob.id)
            .limit(limit)
            .all()
        ]
        db.rollback()
        for job_id in candidate_ids:
            if not _claim(db, job_id):
                continue
            job = db.query(SyncJob).filter(SyncJob.id == job_id).populate_existing().one()
            status = await run_job(db, job, transport=transport)
            summary["processed"] += 1
            if status == SyncJobStatus.SUCCESS:
                summary["succeeded"] += 1
            elif status == SyncJobStatus.FAILED:
                summary["failed"] += 1
            else:
                summary["requeued"] += 1
    finally:
        db.close()
    summary["message"] = f"Processed {summary['processed']} job(s)"
    return summary


# Handlers

async def handle_outbound_fulfillment_sync(db: Session, payload: dict, transport=None) -> dict:
    from printlink.services.outbound_fulfillment import OutboundFulfillmentService

    fulfillment = db.query(Fulfillment).filter(Fulfillment.id == payload.get("fulfillment_id")).first()
    if fulfillment is None:
        return {"success": False, "error": f"Fulfillment {payload.get('fulfillment_id')} not found"}
    result = await OutboundFulfillmentService(db, transport=transport).sync(fulfillment)
    if not result["success"] and result.get("retryable"):
        raise RetryableJobError(result["error"])
    return result


async def _send_email(send, *args) -> bool:
    """Run a blocking SMTP send on the default executor."""
    return await asyncio.get_running_loop().run_in_executor(None, send, *args)


async def handle_send_notification(db: Session, payload: dict, transport=None) -> dict:
    from printlink.services import email_service
    from printlink.services.order_activity import log_activity

    kind = payload.get("kind")
    if kind == "fulfillment_shipped":
        fulfillment = db.query(Fulfillment).filter(Fulfillment.id == payload.get("fulfillment_id")).first()
        if fulfillment is None:
            return {"success": False, "error": "Fulfillment not found"}
        if fulfillment.customer_notified_at:
            return {"success": True, "message": "Already notified"}
        order = fulfillment.order
        to_email = order.email or (order.store.user.email if order.store else order.user.email)
        sent = await _send_email(
            email_service.send_fulfillment_email, to_email, order.display_name,
            fulfillment.tracking_company, fulfillment.tracking_number, fulfillment.tracking_url,
        )
        if sent:
            fulfillment.customer_notified_at = utcnow()
            log_activity(db, order, ActivityType.CUSTOMER_NOTIFIED, f"Shipment email sent to {to_email}",
                         details={"fulfillment_id": fulfillment.id})
            db.commit()
        return {"success": True, "message": "Sent" if sent else "Email not sent"}

    if kind == "order_imported":
        order = db.query(Order).filter(Order.id == payload.get("order_id")).first()
        if order is None or order.store is None:
            return {"success": False, "error": "Order not found"}
        sent = await _send_email(
            email_service.send_order_imported_email, order.store.user.email, order.display_name, f"{settings.FRONTEND_URL}/orders/{order.id}"
        )
        return {"success": True, "message": "Sent" if sent else "Email not sent"}

    if kind == "store_reauthentication":
        store = db.query(Store).filter(Store.id == payload.get("store_id")).first()
        if store is None:
            return {"success": False, "error": "Store not found"}
        sent = await _send_email(
            email_service.send_reauthentication_email, store.user.email, store.name, f"{settings.FRONTEND_URL}/stores/{store.id}/connect"
        )
        return {"success": True, "message": "Sent" if sent else "Email not sent"}

    if kind == "gdpr_request":
        sent = await _send_email(email_service.send_gdpr_request_email, payload.get("topic"), payload.get("shop_domain"), payload.get("summary") or "")
        return {"success": True, "message": "Sent" if sent else "Email not sent"}

    return {"success": False, "error": f"Unknown notification kind: {kind}"}


async def handle_cleanup_webhook_logs(db: Session, payload: dict, transport=None) -> dict:
    from printlink.services.webhook_gateway import cleanup_old_webhook_logs

    deleted = cleanup_old_webhook_logs(db, days=payload.get("days") or settings.WEBHOOK_LOG_RETENTION_DAYS)
    return {"success": True, "deleted": deleted, "message": f"Deleted {deleted} webhook log(s)"}


async def handle_bulk_apply_default_mapping(db: Session, payload: dict, transport=None) -> dict:
    from printlink.services.variant_mapping import bulk_apply_default_mapping

    return bulk_apply_default_mapping(
        db, payload.get("variant_ids") or [], payload.get("country_code") or "", payload.get("attributes") or {}
    )


async def handle_sync_variant_cost(db: Session, payload: dict, transport=None) -> dict:
    from printlink.services.shopify import ShopifyAdapter
    from printlink.services.variant_mapping import default_mapping

    variant = db.query(ProductVariant).filter(ProductVariant.id == payload.get("variant_id")).first()
    if variant is None:
        return {"success": False, "error": "Variant not found"}
    store = variant.store
    if store.platform != Platform.SHOPIFY:
        return {"success": True, "message": f"Cost sync not supported for {store.platform.value}"}
    if not variant.inventory_item_id:
        return {"success": False, "error": "Variant has no inventory item"}
    mapping = default_mapping(db, variant.id, payload.get("country_code") or "", 1)
    if mapping is None or mapping.frame_sku_cost_cents is None:
        return {"success": True, "message": "No cost to sync"}
    result = await ShopifyAdapter(store, transport=transport).update_inventory_item_cost(
        variant.inventory_item_id, mapping.frame_sku_cost_cents
    )
    return result


HANDLERS: Dict[SyncJobType, JobHandler] = {
    SyncJobType.OUTBOUND_FULFILLMENT_SYNC: handle_outbound_fulfillment_sync,
    SyncJobType.SEND_NOTIFICATION: handle_send_notification,
    SyncJobType.CLEANUP_WEBHOOK_LOGS: handle_cleanup_webhook_logs,
    SyncJobType.BULK_APPLY_DEFAULT_MAPPING: handle_bulk_apply_default_mapping,
    SyncJobType.SYNC_VARIANT_COST: handle_sync_variant_cost,
}
