"""
Worker job management routes
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from printlink.auth import get_current_user
from printlink.database import SessionLocal, get_db
from printlink.http.access import get_transport, require_admin
from printlink.models import SyncJob, SyncJobStatus, SyncLog, User, utcnow
from printlink.services.job_queue import run_pending_jobs
from printlink.workers.scheduler import get_workers_status

logger = logging.getLogger(__name__)
router = APIRouter()


def _job_to_dict(job: SyncJob) -> dict:
    return {
        "id": job.id,
        "type": job.job_type.value,
        "status": job.status.value,
        "attempts": job.attempts,
        "maxAttempts": job.max_attempts,
        "dedupKey": job.dedup_key,
        "lastError": job.error_message,
        "runAfter": job.run_after.isoformat() if job.run_after else None,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "updatedAt": (lambda t: t.isoformat() if t else None)(job.finished_at or job.started_at or job.created_at),
    }


@router.get("")
async def list_worker_jobs(
    status: Optional[str] = Query(None),
    limit: int = Query(100, le=500),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """List background jobs, newest first. Admin only: jobs span every store."""
    require_admin(current_user)
    query = db.query(SyncJob)
    if status:
        try:
            query = query.filter(SyncJob.status == SyncJobStatus(status.upper()))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    jobs = query.order_by(SyncJob.created_at.desc(), SyncJob.id).limit(limit).all()
    return [_job_to_dict(job) for job in jobs]


@router.get("/status")
async def workers_status(current_user: User = Depends(get_current_user)):
    require_admin(current_user)
    return get_workers_status()


@router.post("/run")
async def run_jobs_once(
    request: Request,
    limit: Optional[int] = Query(None, ge=1, le=500),
    current_user: User = Depends(get_current_user),
):
    """Drain due jobs once in this request."""
    require_admin(current_user)
    session_factory = getattr(request.app.state, "session_factory", None) or SessionLocal
    return await run_pending_jobs(session_factory, limit=limit, transport=get_transport(request))


@router.get("/{job_id}/logs")
async def get_job_logs(job_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    require_admin(current_user)
    logs = db.query(SyncLog).filter(SyncLog.sync_job_id == job_id).order_by(SyncLog.created_at, SyncLog.id).all()
    return [
        {"level": log.level.value, "message": log.message, "createdAt": log.created_at.isoformat() if log.created_at else None}
        for log in logs
    ]


@router.post("/{job_id}/{action}")
async def control_worker_job(
    job_id: str,
    action: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Control worker job (retry, cancel)"""
    require_admin(current_user)
    job = db.query(SyncJob).filter(SyncJob.id == job_id).first()
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    if action == "retry":
        if job.status == SyncJobStatus.RUNNING:
            raise HTTPException(status_code=409, detail="Job is running")
        job.status = SyncJobStatus.QUEUED
        job.run_after = None
        job.attempts = 0
        job.finished_at = None
        db.commit()
        return {"message": "Job queued for retry"}
    elif action == "cancel":
        if job.status == SyncJobStatus.SUCCESS:
            raise HTTPException(status_code=409, detail="Job already succeeded")
        job.status = SyncJobStatus.FAILED
        job.finished_at = utcnow()
        job.error_message = f"Cancelled by {current_user.email}"
        db.commit()
        return {"message": "Job cancelled"}
    else:
        raise HTTPException(status_code=400, detail=f"Unknown action: {action}")
