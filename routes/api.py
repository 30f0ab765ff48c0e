"""
Central API route registration. All HTTP controllers are mounted here with /api prefix.
"""
import logging
from fastapi import FastAPI

from printlink.http.controllers import (
    orders,
    stores,
    variant_mappings,
    webhook_logs,
    webhooks,
    workers,
)

logger = logging.getLogger(__name__)


def register_routes(app: FastAPI, settings) -> None:
    """Register all API routers. Call from main.py after creating the FastAPI app."""
    app.include_router(orders.router, prefix="/api/orders", tags=["orders"])
    app.include_router(variant_mappings.router, prefix="/api/variant-mappings", tags=["variant-mappings"])
    app.include_router(stores.router, prefix="/api/stores", tags=["stores"])
    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])
    app.include_router(webhook_logs.router, prefix="/api/webhook-logs", tags=["webhook-logs"])
    app.include_router(workers.router, prefix="/api/workers", tags=["workers"])
    logger.debug("Registered API routes (env=%s)", settings.ENV)
