"""
Central API route registration. All HTTP controllers are mounted here with the /api prefix.
"""
import logging
from fastapi import FastAPI

from oms.http.controllers import connections, orders, sync, tracking

logger = logging.getLogger(__name__)


def register_routes(app: FastAPI, settings) -> None:
    """Register all API routers. Call from main.py after creating the FastAPI app."""
    prefix = settings.API_PREFIX
    app.include_router(orders.router, prefix=f"{prefix}/orders", tags=["orders"])
    app.include_router(sync.router, prefix=f"{prefix}/sync", tags=["sync"])
    app.include_router(tracking.router, prefix=f"{prefix}/track", tags=["tracking"])
    app.include_router(connections.router, prefix=f"{prefix}/connections", tags=["connections"])
    logger.info("Registered API routes under %s", prefix)
