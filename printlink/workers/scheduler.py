"""
Worker Scheduler

Polls the durable job queue and enqueues the daily webhook log cleanup.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from printlink.config import settings
from printlink.database import SessionLocal
from printlink.models import SyncJobType
from printlink.services.job_queue import enqueue_job, run_pending_jobs

logger = logging.getLogger(__name__)

TICK_SECONDS = 5


async def run_job_queue() -> Dict[str, Any]:
    return await run_pending_jobs(SessionLocal)


async def schedule_webhook_log_cleanup() -> Dict[str, Any]:
    """One cleanup job per UTC day; the dedup key makes repeated ticks harmless."""
    today = datetime.now(timezone.utc).date().isoformat()
    db = SessionLocal()
    try:
        job = enqueue_job(
            db,
            SyncJobType.CLEANUP_WEBHOOK_LOGS,
            {"days": settings.WEBHOOK_LOG_RETENTION_DAYS},
            dedup_key=f"cleanup_webhook_logs:{today}",
        )
        db.commit()
        return {"success": True, "message": f"Cleanup job {job.id} queued for {today}"}
    finally:
        db.close()


class WorkerScheduler:
    """Runs each registered worker once its interval has elapsed."""

    def __init__(self):
        self.workers = {
            "job_queue": {
                "func": run_job_queue,
                "interval": settings.JOB_POLL_INTERVAL_SEC,
                "last_run": None,
                "enabled": True,
            },
            "webhook_log_cleanup": {
                "func": schedule_webhook_log_cleanup,
                "interval": 3600,
                "last_run": None,
                "enabled": True,
            },
        }
        self.running = False
        self.task: Optional[asyncio.Task] = None
        self._in_flight: Dict[str, asyncio.Task] = {}

    async def run_worker(self, worker_name: str, worker_config: Dict[str, Any]) -> Dict[str, Any]:
        try:
            logger.info("Starting worker: %s", worker_name)
            result = await worker_config["func"]()
            worker_config["last_run"] = datetime.now(timezone.utc)
            if result.get("success", False):
                logger.info("Worker %s completed: %s", worker_name, result.get("message", "No message"))
            else:
                logger.error("Worker %s failed: %s", worker_name, result.get("message", "Unknown error"))
            return result
        except Exception as e:
            worker_config["last_run"] = datetime.now(timezone.utc)
            logger.exception("Worker %s crashed", worker_name)
            return {
                "success": False,
                "message": f"Worker crashed: {e}",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

    async def start_scheduler(self):
        self.running = True
        logger.info("Worker scheduler started")

        while self.running:
            current_time = datetime.now(timezone.utc)
            for worker_name, worker_config in self.workers.items():
                if not worker_config["enabled"]:
                    continue
                task = self._in_flight.get(worker_name)
                if task is not None and not task.done():
                    continue
                last_run = worker_config["last_run"]
                if last_run is None or (current_time - last_run).total_seconds() >= worker_config["interval"]:
                    self._in_flight[worker_name] = asyncio.create_task(self.run_worker(worker_name, worker_config))
            await asyncio.sleep(TICK_SECONDS)

    def stop_scheduler(self):
        self.running = False
        if self.task is not None and not self.task.done():
            self.task.cancel()
        for task in self._in_flight.values():
            if not task.done():
                task.cancel()
        logger.info("Worker scheduler stopped")

    def get_worker_status(self) -> Dict[str, Any]:
        status = {}
        for worker_name, worker_config in self.workers.items():
            last_run = worker_config["last_run"]
            next_run = last_run + timedelta(seconds=worker_config["interval"]) if last_run else None
            status[worker_name] = {
                "enabled": worker_config["enabled"],
                "last_run": last_run.isoformat() if last_run else None,
                "next_run": next_run.isoformat() if next_run else None,
                "interval_seconds": worker_config["interval"],
                "status": "running" if self.running else "stopped",
            }
        return status


# Global scheduler instance
scheduler = WorkerScheduler()


def start_background_workers():
    if scheduler.task is not None and not scheduler.task.done():
        return
    scheduler.task = asyncio.create_task(scheduler.start_scheduler())
    logger.info("Background workers started")


def stop_background_workers():
    scheduler.stop_scheduler()


def get_workers_status() -> Dict[str, Any]:
    return scheduler.get_worker_status()
