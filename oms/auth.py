"""
Bearer-token authentication and role checks.
Tokens are issued by the account service; this backend only signs them in tests and verifies them.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from oms.config import settings
from oms.models import CROSS_TENANT_ROLES, UserRole

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


@dataclass
class CallerContext:
    user_id: str
    username: str
    role: UserRole
    client_id: Optional[str] = None

    @property
    def is_cross_tenant(self) -> bool:
        return self.role in CROSS_TENANT_ROLES

    def scope_client_id(self, requested: Optional[str] = None) -> Optional[str]:
        """Client filter for list queries: own tenant for scoped roles, anything for cross-tenant roles."""
        if self.is_cross_tenant:
            return requested or None
        return self.client_id


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.AUTH_ALGORITHM)


def decode_access_token(token: str) -> CallerContext:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.AUTH_ALGORITHM])
    except JWTError:
        raise credentials_exception
    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception
    try:
        role = UserRole(payload.get("role"))
    except ValueError:
        logger.warning("Token for user %s carries unknown role %r", user_id, payload.get("role"))
        raise credentials_exception
    client_id = payload.get("client_id") or None
    if role not in CROSS_TENANT_ROLES and not client_id:
        # Client roles without a tenant could see nothing useful; refuse early
        raise credentials_exception
    return CallerContext(
        user_id=str(user_id),
        username=payload.get("username") or str(user_id),
        role=role,
        client_id=client_id,
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> CallerContext:
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decode_access_token(credentials.credentials)


def require_roles(*roles: UserRole):
    """Dependency factory: 403 unless the caller has one of the given roles."""

    async def checker(current_user: CallerContext = Depends(get_current_user)) -> CallerContext:
        if current_user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return current_user

    return checker


require_admin = require_roles(UserRole.BFAST_ADMIN)
