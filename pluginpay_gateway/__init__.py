"""
PluginPay gateway: authenticated, escrow-backed, receipted calls to paid AI plugins.
"""
from .client import PluginPayClient, PluginCallError
from .config import GatewaySettings
from .exceptions import (
    AuthFailure,
    PluginPayError,
    AuthenticationError,
    ValidationError,
    EscrowError,
    NotFoundError,
    RateLimitError,
    DispatchError,
    InternalError,
    LedgerError,
    StorageError,
    ConfigurationError,
)
from .gateway import PluginGateway, build_gateway
from .models import CallRequest, PluginDescriptor, Receipt, DispatchResult, GatewayResponse
from .oracle import compute_receipt_hash, verify_receipt
from .version import __version__

__all__ = [
    "PluginPayClient",
    "PluginCallError",
    "GatewaySettings",
    "PluginGateway",
    "build_gateway",
    "AuthFailure",
    "PluginPayError",
    "AuthenticationError",
    "ValidationError",
    "EscrowError",
    "NotFoundError",
    "RateLimitError",
    "DispatchError",
    "InternalError",
    "LedgerError",
    "StorageError",
    "ConfigurationError",
    "CallRequest",
    "PluginDescriptor",
    "Receipt",
    "DispatchResult",
    "GatewayResponse",
    "compute_receipt_hash",
    "verify_receipt",
    "__version__",
]
