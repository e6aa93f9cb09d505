"""
Public shipment tracking (no login)
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from oms.database import get_db
from oms.errors import OmsError
from oms.http.errors import raise_http_error
from oms.workers.scheduler import scheduler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{awb}", response_model=dict)
async def track_shipment(awb: str, db: Session = Depends(get_db)):
    """Live courier status when available, otherwise the last stored scan"""
    try:
        lookup = await scheduler.engine_for(db).track_awb(awb)
    except OmsError as e:
        raise_http_error(e)
    return {"success": True, **lookup.to_dict()}
