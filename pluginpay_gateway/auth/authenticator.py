"""
Request authentication.

Callers sign a short text message binding their address, the request
timestamp and a SHA-256 of the request body with their Ethereum key
(EIP-191 ``personal_sign``). The gateway recovers the signer and rejects
stale, forged or replayed requests.
"""
import time
import logging
from typing import Any, Callable, Dict, Mapping, Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from ..exceptions import AuthenticationError, AuthFailure
from ..utils import canonical_json, sha256_hex, short
from .nonce import InMemoryNonceStore, NonceStore

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL = "PluginPay Auth"
REPLAY_WINDOW_MS = 300_000  # 5 minutes

HEADER_ADDRESS = "x-user-address"
HEADER_SIGNATURE = "x-signature"
HEADER_TIMESTAMP = "x-timestamp"


def create_auth_message(
    address: str,
    timestamp: Any,
    body: Any,
    protocol: str = DEFAULT_PROTOCOL
) -> str:
    """
    Build the canonical message a caller signs.

    Args:
        address: Caller address exactly as sent in the header
        timestamp: Timestamp exactly as sent in the header (milliseconds)
        body: Decoded request body
        protocol: Protocol name heading the message

    Returns:
        Message text
    """
    body_hash = sha256_hex(canonical_json(body))
    return f"{protocol}\nAddress: {address}\nTimestamp: {timestamp}\nBody: {body_hash}"


def sign_request_headers(
    private_key: str,
    body: Any,
    timestamp_ms: Optional[int] = None,
    protocol: str = DEFAULT_PROTOCOL
) -> Dict[str, str]:
    """
    Produce the authentication headers for a request body.

    Args:
        private_key: Caller's Ethereum private key
        body: Request body that will be sent
        timestamp_ms: Request timestamp; defaults to now
        protocol: Protocol name heading the message

    Returns:
        Header dictionary
    """
    account = Account.from_key(private_key)
    timestamp = str(timestamp_ms if timestamp_ms is not None else int(time.time() * 1000))
    message = create_auth_message(account.address, timestamp, body, protocol)
    signed = account.sign_message(encode_defunct(text=message))
    signature = signed.signature.hex()
    if not signature.startswith("0x"):
        signature = "0x" + signature
    return {
        "X-User-Address": account.address,
        "X-Signature": signature,
        "X-Timestamp": timestamp,
    }


class RequestAuthenticator:
    """
    Authenticates signed plugin calls.

    Args:
        nonce_store: Replay cache shared by all requests handled by this gateway
        window_ms: Maximum allowed distance between request and gateway clocks
        protocol: Protocol name heading the signed message
        clock: Returns the current time in milliseconds
    """

    def __init__(
        self,
        nonce_store: Optional[NonceStore] = None,
        window_ms: int = REPLAY_WINDOW_MS,
        protocol: str = DEFAULT_PROTOCOL,
        clock: Optional[Callable[[], int]] = None
    ):
        self.nonce_store = nonce_store or InMemoryNonceStore()
        self.window_ms = window_ms
        self.protocol = protocol
        self._clock = clock or (lambda: int(time.time() * 1000))

    def authenticate(self, headers: Mapping[str, str], body: Any) -> str:
        """
        Verify the authentication headers against the request body.

        Args:
            headers: Request headers (any case)
            body: Decoded request body

        Returns:
            Authenticated caller address, as claimed in the header

        Raises:
            AuthenticationError: With the failure reason
        """
        normalized = {str(k).lower(): v for k, v in headers.items()}
        address = normalized.get(HEADER_ADDRESS)
        signature = normalized.get(HEADER_SIGNATURE)
        timestamp = normalized.get(HEADER_TIMESTAMP)

        if not address or not signature or not timestamp:
            raise AuthenticationError(AuthFailure.MISSING_HEADERS)

        try:
            request_time = int(str(timestamp).strip())
        except ValueError:
            raise AuthenticationError(AuthFailure.EXPIRED)

        if abs(self._clock() - request_time) > self.window_ms:
            logger.debug(f"Rejected stale request from {short(address)} (timestamp {request_time})")
            raise AuthenticationError(AuthFailure.EXPIRED)

        try:
            message = create_auth_message(address, timestamp, body, self.protocol)
            recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
        except Exception as e:
            logger.debug(f"Signature recovery failed for {short(address)}: {e}")
            raise AuthenticationError(AuthFailure.INVALID_SIGNATURE)

        if recovered.lower() != address.lower():
            logger.info(f"Signature for {short(address)} recovered to {short(recovered)}")
            raise AuthenticationError(AuthFailure.INVALID_SIGNATURE)

        if not self.nonce_store.check_and_insert(address, request_time):
            logger.warning(f"Replayed request from {short(address)} at {request_time}")
            raise AuthenticationError(AuthFailure.DUPLICATE_REQUEST)

        return address
