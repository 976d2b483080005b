"""
PluginPayClient - caller-side SDK for the PluginPay gateway.
"""
import time
import logging
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from eth_account import Account

from .auth.authenticator import DEFAULT_PROTOCOL, sign_request_headers
from .config import require_secure_url
from .exceptions import ValidationError
from .oracle.receipts import verify_receipt
from .validation import PayloadValidator
from .version import __version__

logger = logging.getLogger(__name__)


class PluginCallError(Exception):
    """Raised when the gateway rejects a plugin call or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        self.message = message
        super().__init__(f"[{status_code}] {message}" if status_code else message)


class PluginPayClient:
    """
    Client for calling plugins through a PluginPay gateway.

    Every request is signed with the caller's key; escrow must already be
    funded on the ledger for the plugin being called.
    """

    SUMMARIZER_ID = 1
    MEME_GENERATOR_ID = 2
    NFT_APPRAISER_ID = 3

    def __init__(
        self,
        api_url: str,
        private_key: str,
        timeout: int = 30,
        retry_count: int = 3,
        protocol: str = DEFAULT_PROTOCOL,
        validate_locally: bool = True,
        allow_insecure: bool = False
    ):
        """
        Initialize the PluginPayClient

        Args:
            api_url: Gateway base URL (e.g., "https://gateway.example.com")
            private_key: Caller's Ethereum private key
            timeout: Timeout for HTTP requests in seconds
            retry_count: Retries for connection failures
            protocol: Protocol name heading the signed message
            validate_locally: Check payloads before sending them
            allow_insecure: Permit plain HTTP to non-local hosts

        Raises:
            ConfigurationError: If the URL doesn't use https (unless it's localhost/127.0.0.1)
        """
        require_secure_url("api_url", api_url, allow_insecure)
        self.api_url = api_url.rstrip('/')
        self.private_key = private_key
        self.account = Account.from_key(private_key)
        self.timeout = timeout
        self.protocol = protocol
        self.validator = PayloadValidator() if validate_locally else None

        self.session = requests.Session()
        # A call that reached the gateway is never resent: its signature is single-use
        retries = Retry(
            total=retry_count,
            connect=retry_count,
            read=0,
            status=0,
            backoff_factor=0.5,
            allowed_methods=["GET", "POST"],
            raise_on_status=False
        )
        self.session.mount("http://", HTTPAdapter(max_retries=retries))
        self.session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session.headers.update({"User-Agent": f"pluginpay-client/{__version__}"})

    @property
    def address(self) -> str:
        return self.account.address

    def create_auth_headers(self, body: Any, timestamp_ms: Optional[int] = None) -> Dict[str, str]:
        """Sign ``body`` and return the authentication headers."""
        return sign_request_headers(self.private_key, body, timestamp_ms, self.protocol)

    def call_plugin(
        self,
        plugin_id: int,
        payload: Any,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Call a plugin and return the gateway's success response.

        Args:
            plugin_id: Ledger id of the plugin
            payload: Plugin input
            metadata: Extra request metadata

        Returns:
            Response body with ``jobId``, ``result``, ``receipt`` and ``metadata``

        Raises:
            PluginCallError: If validation fails locally or the gateway rejects the call
        """
        if self.validator is not None:
            try:
                self.validator.validate(payload, plugin_id)
            except ValidationError as e:
                raise PluginCallError(f"Validation failed: {e.message}") from e

        body = {
            "payload": payload,
            "metadata": {
                "pluginId": plugin_id,
                "timestamp": int(time.time() * 1000),
                "version": __version__,
                **(metadata or {}),
            },
        }
        headers = {"Content-Type": "application/json", **self.create_auth_headers(body)}
        url = f"{self.api_url}/api/v1/plugins/{plugin_id}/call"
        logger.debug(f"Calling plugin {plugin_id} at {url}")

        try:
            response = self.session.post(url, json=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Plugin call request failed: {e}")
            raise PluginCallError(f"Request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            raise PluginCallError("Invalid JSON response from gateway", response.status_code)

        if response.status_code != 200 or not data.get("success"):
            raise PluginCallError(data.get("error") or "Plugin call failed", response.status_code)
        return data

    def summarize(self, text: str, max_length: int = 150, style: str = "concise") -> Dict[str, Any]:
        return self.call_plugin(self.SUMMARIZER_ID, {
            "text": text,
            "maxLength": max_length,
            "style": style,
        })

    def generate_meme(self, prompt: str, template: str = "auto", style: str = "funny") -> Dict[str, Any]:
        return self.call_plugin(self.MEME_GENERATOR_ID, {
            "prompt": prompt,
            "template": template,
            "style": style,
        })

    def appraise_nft(self, contract_address: str, token_id: str, chain: str = "ethereum") -> Dict[str, Any]:
        return self.call_plugin(self.NFT_APPRAISER_ID, {
            "contractAddress": contract_address,
            "tokenId": str(token_id),
            "chain": chain,
        })

    @staticmethod
    def verify_receipt(receipt: Dict[str, Any], verifier: str) -> bool:
        """Check a receipt returned by the gateway against the plugin's verifier address."""
        return verify_receipt(receipt, verifier)

    def close(self) -> None:
        self.session.close()
