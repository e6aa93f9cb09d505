"""
Sync routes: manual order sync, tracking refresh and scheduler status
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from oms.auth import CallerContext, require_admin, require_roles
from oms.database import get_db
from oms.errors import OmsError
from oms.http.errors import raise_http_error
from oms.models import CROSS_TENANT_ROLES
from oms.workers.scheduler import scheduler

logger = logging.getLogger(__name__)

router = APIRouter()


def _summary(results) -> dict:
    failed = [r for r in results if not r.success]
    return {
        "success": not failed,
        "message": f"Synced {len(results) - len(failed)} of {len(results)} clients",
        "results": [r.to_dict() for r in results],
    }


@router.post("", response_model=dict)
async def sync_all_clients(
    db: Session = Depends(get_db),
    current_user: CallerContext = Depends(require_admin),
):
    """Sync Shopify orders for every active client now"""
    logger.info("Manual order sync for all clients by %s", current_user.username)
    try:
        results = await scheduler.engine_for(db).sync_all_clients()
    except OmsError as e:
        raise_http_error(e)
    return _summary(results)


@router.post("/tracking", response_model=dict)
async def refresh_tracking(
    client_id: Optional[str] = Query(None, alias="clientId"),
    db: Session = Depends(get_db),
    current_user: CallerContext = Depends(require_admin),
):
    """Refresh delivery status for every order with an AWB"""
    try:
        result = await scheduler.engine_for(db).refresh_all_statuses(client_id)
    except OmsError as e:
        raise_http_error(e)
    return {"success": result.failed == 0, **result.to_dict()}


@router.post("/shiprocket", response_model=dict)
async def import_shiprocket_orders(
    client_id: Optional[str] = Query(None, alias="clientId"),
    pages: int = Query(1, ge=1, le=20),
    db: Session = Depends(get_db),
    current_user: CallerContext = Depends(require_admin),
):
    """Import orders listed in a Shiprocket account (the shared one unless clientId is given)"""
    engine = scheduler.engine_for(db)
    try:
        client = engine.storage.get_client_by_client_id(client_id) if client_id else None
        if client_id and client is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
        result = await engine.sync_courier_orders(client, pages=pages)
    except OmsError as e:
        raise_http_error(e)
    return result.to_dict()


@router.get("/status", response_model=dict)
async def sync_status(current_user: CallerContext = Depends(require_roles(*CROSS_TENANT_ROLES))):
    """Background scheduler status"""
    return scheduler.get_status()


@router.post("/{client_id}", response_model=dict)
async def sync_one_client(
    client_id: str,
    db: Session = Depends(get_db),
    current_user: CallerContext = Depends(require_admin),
):
    """Sync Shopify orders for one client now"""
    engine = scheduler.engine_for(db)
    try:
        client = engine.storage.get_client_by_client_id(client_id)
        if client is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
        result = await engine.sync_client_orders(client)
    except OmsError as e:
        raise_http_error(e)
    return _summary([result])
