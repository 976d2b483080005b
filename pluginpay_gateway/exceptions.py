"""
Exceptions for the PluginPay gateway.

Every error that can reach a caller derives from ``PluginPayError`` and carries
the HTTP status it maps to plus a message that is safe to return verbatim.
"""
from enum import Enum
from typing import Optional


class AuthFailure(str, Enum):
    """
    Reasons a request can fail authentication.

    All of them map to HTTP 401.
    """
    MISSING_HEADERS = "MISSING_HEADERS"
    EXPIRED = "EXPIRED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    DUPLICATE_REQUEST = "DUPLICATE_REQUEST"


_AUTH_MESSAGES = {
    AuthFailure.MISSING_HEADERS: "Missing authentication headers",
    AuthFailure.EXPIRED: "Request expired",
    AuthFailure.INVALID_SIGNATURE: "Invalid signature",
    AuthFailure.DUPLICATE_REQUEST: "Duplicate request",
}


class PluginPayError(Exception):
    """Base exception for all gateway errors."""

    status_code = 500

    def __init__(self, message: str = "Internal server error"):
        self.message = message
        super().__init__(message)


class AuthenticationError(PluginPayError):
    """Raised when the caller's identity cannot be established."""

    status_code = 401

    def __init__(self, reason: AuthFailure, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or _AUTH_MESSAGES[reason])


class ValidationError(PluginPayError):
    """Raised for malformed requests and payloads that fail plugin checks."""

    status_code = 400


class EscrowError(PluginPayError):
    """Raised when the caller's prepaid balance does not cover the call."""

    status_code = 402

    def __init__(self, message: str = "Insufficient escrow. Please prepay for plugin usage."):
        super().__init__(message)


class NotFoundError(PluginPayError):
    """Raised when a plugin is unknown or inactive."""

    status_code = 404

    def __init__(self, message: str = "Plugin not found or inactive"):
        super().__init__(message)


class RateLimitError(PluginPayError):
    """Raised when a caller exceeds the per-plugin call window."""

    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded", reset_time: Optional[int] = None):
        self.reset_time = reset_time
        super().__init__(message)


class DispatchError(PluginPayError):
    """Raised when the compute provider fails to produce a result."""

    status_code = 500


class InternalError(PluginPayError):
    """Raised for unexpected failures inside the gateway."""

    status_code = 500


class LedgerError(Exception):
    """Raised when a ledger read or write fails. Never returned to callers as-is."""
    pass


class StorageError(Exception):
    """Raised when bulk object storage rejects a write."""
    pass


class ConfigurationError(ValueError):
    """Raised when gateway settings are incomplete or inconsistent."""
    pass
