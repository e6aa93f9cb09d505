"""
Order routes
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from oms.auth import CallerContext, get_current_user, require_roles
from oms.database import get_db
from oms.errors import OmsError, ValidationError
from oms.http.errors import raise_http_error
from oms.http.requests.schemas import AssignAWBRequest, BulkUpdateRequest
from oms.models import OrderStatus, UserRole
from oms.services.batch_mutations import BatchMutationService
from oms.services.storage import OrderStorage

logger = logging.getLogger(__name__)

router = APIRouter()

ORDER_EDITORS = (UserRole.BFAST_ADMIN, UserRole.BFAST_EXECUTIVE, UserRole.CLIENT_ADMIN)
AWB_ASSIGNERS = (UserRole.BFAST_ADMIN, UserRole.BFAST_EXECUTIVE)


def _parse_status(value: Optional[str]) -> Optional[OrderStatus]:
    if not value or value == "all":
        return None
    try:
        return OrderStatus.parse(value)
    except ValueError as e:
        raise_http_error(ValidationError(str(e)))


@router.get("", response_model=dict)
async def list_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    client_id: Optional[str] = Query(None, alias="clientId"),
    db: Session = Depends(get_db),
    current_user: CallerContext = Depends(get_current_user),
):
    """List orders; client roles only ever see their own tenant"""
    storage = OrderStorage(db)
    scope = current_user.scope_client_id(client_id)
    status = _parse_status(status_filter)
    try:
        if status is not None:
            orders = storage.get_orders_by_status(status, client_id=scope)
        else:
            orders = storage.get_all_orders(client_id=scope)
    except OmsError as e:
        raise_http_error(e)
    return {"orders": [o.to_dict() for o in orders], "total": len(orders)}


@router.get("/pending", response_model=dict)
async def list_pending_orders(
    client_id: Optional[str] = Query(None, alias="clientId"),
    db: Session = Depends(get_db),
    current_user: CallerContext = Depends(get_current_user),
):
    """Orders still waiting for an AWB"""
    try:
        orders = OrderStorage(db).get_pending_orders(client_id=current_user.scope_client_id(client_id))
    except OmsError as e:
        raise_http_error(e)
    return {"orders": [o.to_dict() for o in orders], "total": len(orders)}


@router.get("/summary", response_model=dict)
async def order_summary(
    client_id: Optional[str] = Query(None, alias="clientId"),
    db: Session = Depends(get_db),
    current_user: CallerContext = Depends(get_current_user),
):
    """Order counts per fulfillment status"""
    try:
        orders = OrderStorage(db).get_all_orders(client_id=current_user.scope_client_id(client_id))
    except OmsError as e:
        raise_http_error(e)
    counts = {status.value: 0 for status in OrderStatus}
    for order in orders:
        if order.fulfillment_status is not None:
            counts[order.fulfillment_status.value] += 1
    return {"total": len(orders), "byStatus": counts}


@router.post("/assign-awb", response_model=dict)
async def assign_awb(
    request: AssignAWBRequest,
    db: Session = Depends(get_db),
    current_user: CallerContext = Depends(require_roles(*AWB_ASSIGNERS)),
):
    """Assign AWBs in one batch; unknown order ids are skipped"""
    service = BatchMutationService(OrderStorage(db))
    try:
        if request.assignments is not None:
            result = service.assign_awb(
                [a.model_dump() for a in request.assignments], caller=current_user
            )
        else:
            result = service.assign_awb_pairs(request.orderIds or [], request.awbs or [], caller=current_user)
    except OmsError as e:
        raise_http_error(e)
    logger.info("AWB assignment by %s: %s updated, %s skipped", current_user.username, len(result.updated), len(result.skipped))
    return {"success": True, **result.to_dict()}


@router.post("/bulk-update", response_model=dict)
async def bulk_update_orders(
    request: BulkUpdateRequest,
    db: Session = Depends(get_db),
    current_user: CallerContext = Depends(require_roles(*ORDER_EDITORS)),
):
    """Partial updates for many orders; all or nothing"""
    service = BatchMutationService(OrderStorage(db))
    try:
        result = service.bulk_update_orders([u.model_dump() for u in request.updates], caller=current_user)
    except OmsError as e:
        raise_http_error(e)
    return {"success": True, **result.to_dict()}


@router.patch("/{order_id}", response_model=dict)
async def update_order(
    order_id: str,
    data: dict,
    db: Session = Depends(get_db),
    current_user: CallerContext = Depends(require_roles(*ORDER_EDITORS)),
):
    """Update one order"""
    try:
        order = BatchMutationService(OrderStorage(db)).update_order(order_id, data, caller=current_user)
    except OmsError as e:
        raise_http_error(e)
    return {"success": True, "order": order.to_dict()}
