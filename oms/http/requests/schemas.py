"""
Pydantic schemas for request validation (Http/Requests).
"""
from pydantic import BaseModel, validator
from typing import Any, Dict, List, Optional


def _strip_required(v: str) -> str:
    v = (v or "").strip()
    if not v:
        raise ValueError("must not be empty")
    return v


# Order mutation schemas
class AWBAssignment(BaseModel):
    orderId: str
    awb: str
    courier: Optional[str] = None

    @validator("orderId", "awb")
    def not_blank(cls, v):
        return _strip_required(v)


class AssignAWBRequest(BaseModel):
    """Either assignments, or the parallel-array form orderIds/awbs."""
    assignments: Optional[List[AWBAssignment]] = None
    orderIds: Optional[List[str]] = None
    awbs: Optional[List[str]] = None


class OrderUpdate(BaseModel):
    orderId: str
    data: Dict[str, Any]

    @validator("orderId")
    def not_blank(cls, v):
        return _strip_required(v)


class BulkUpdateRequest(BaseModel):
    updates: List[OrderUpdate]


# Connection test schemas
class ShiprocketConnectionTest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None

    @validator("email")
    def validate_email(cls, v):
        if v is None:
            return v
        if "@" not in v or len(v.split("@")) != 2:
            raise ValueError("Invalid email format")
        return v.lower().strip()


class ShopifyConnectionTest(BaseModel):
    store_id: str
    access_token: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None

    @validator("store_id")
    def not_blank(cls, v):
        return _strip_required(v)
