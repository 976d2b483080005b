"""
Authentication and replay protection for inbound plugin calls.
"""
from .authenticator import (
    RequestAuthenticator,
    create_auth_message,
    sign_request_headers,
    REPLAY_WINDOW_MS,
)
from .nonce import NonceStore, InMemoryNonceStore, TTLNonceStore

__all__ = [
    "RequestAuthenticator",
    "create_auth_message",
    "sign_request_headers",
    "REPLAY_WINDOW_MS",
    "NonceStore",
    "InMemoryNonceStore",
    "TTLNonceStore",
]
