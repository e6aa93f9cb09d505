"""
Typed errors for the sync pipeline, the courier/commerce clients and batch mutations.

Upstream errors carry the HTTP status code that caused them (None when no
response was received), so callers can decide between retry, skip and surface.
"""
from typing import Optional


class OmsError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class UpstreamError(OmsError):
    """A call to Shopify or Shiprocket failed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(UpstreamError):
    """Credentials rejected or session expired."""

    def __init__(self, message: str, status_code: Optional[int] = 401, reason: str = "invalid_credentials") -> None:
        super().__init__(message, status_code)
        self.reason = reason


class CourierReconnectRequiredError(AuthenticationError):
    """Authentication kept failing after a forced token refresh; the account must be reconnected."""

    def __init__(self, message: str = "Courier authentication failed twice; reconnect your courier account") -> None:
        super().__init__(message, status_code=401, reason="reconnect_required")


class RateLimitedError(UpstreamError):
    """Upstream answered 429."""

    def __init__(self, message: str, status_code: Optional[int] = 429) -> None:
        super().__init__(message, status_code)


class UpstreamUnavailableError(UpstreamError):
    """Upstream answered 5xx."""


class NetworkError(UpstreamUnavailableError):
    """No response at all: connection failure or timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=None)


class NotFoundError(UpstreamError):
    """AWB or order does not exist. Not a transient condition."""

    def __init__(self, message: str, status_code: Optional[int] = 404) -> None:
        super().__init__(message, status_code)


class ProtocolError(UpstreamError):
    """Upstream response did not match any known shape."""


class ValidationError(OmsError):
    """Malformed batch input. Raised before any write."""


class PermissionDeniedError(OmsError):
    """Caller tried to touch another tenant's data. Raised before any write."""


class StorageError(OmsError):
    """Persistence failure. Not retried within the same pass."""


def error_for_status(status_code: int, message: str) -> UpstreamError:
    """Map an upstream HTTP status code to the matching typed error."""
    if status_code in (401, 403):
        return AuthenticationError(message, status_code=status_code)
    if status_code == 404:
        return NotFoundError(message, status_code=status_code)
    if status_code == 429:
        return RateLimitedError(message, status_code=status_code)
    if status_code >= 500:
        return UpstreamUnavailableError(message, status_code=status_code)
    return UpstreamError(message, status_code=status_code)
