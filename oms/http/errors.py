"""
Domain error -> HTTPException mapping shared by all controllers.
"""
import logging
from typing import NoReturn

from fastapi import HTTPException, status

from oms.errors import (
    AuthenticationError,
    CourierReconnectRequiredError,
    NotFoundError,
    OmsError,
    PermissionDeniedError,
    RateLimitedError,
    StorageError,
    UpstreamError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def raise_http_error(exc: OmsError) -> NoReturn:
    """Raise the HTTPException matching a domain error. Upstream details are logged, not returned."""
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    if isinstance(exc, PermissionDeniedError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.message) from exc
    if isinstance(exc, CourierReconnectRequiredError):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Courier authentication failed; reconnect your courier account",
        ) from exc
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc
    if isinstance(exc, StorageError):
        logger.error("Storage error: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Database error") from exc
    if isinstance(exc, RateLimitedError):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Upstream rate limit hit; try again later") from exc
    if isinstance(exc, AuthenticationError):
        logger.warning("Upstream authentication failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Upstream rejected our credentials") from exc
    if isinstance(exc, UpstreamError):
        logger.warning("Upstream error: %s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Upstream service error") from exc
    logger.error("Unhandled domain error: %s", exc)
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error") from exc
