"""
Pytest fixtures for the PluginPay gateway tests.
"""
import time

import pytest
from eth_account import Account
from web3.providers.rpc import HTTPProvider

from pluginpay_gateway._rate_limited_log import reset_rate_limited_log
from pluginpay_gateway.auth import sign_request_headers
from pluginpay_gateway.config import GatewaySettings
from pluginpay_gateway.gateway import build_gateway
from pluginpay_gateway.ledger import StubLedgerTransport
from pluginpay_gateway.models import PluginDescriptor

# Well-known development keys; never funded anywhere that matters
CALLER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
OTHER_CALLER_KEY = "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a"
VERIFIER_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"

TEST_RPC_URL = "https://rpc.example.com"
TEST_REGISTRY = "0x1234567890123456789012345678901234567890"
TEST_METER = "0x0987654321098765432109876543210987654321"

ONE_TOKEN = 10 ** 18
PRICE = ONE_TOKEN // 100          # 0.01
FUNDED_ESCROW = 5 * ONE_TOKEN // 100   # 0.05
SHORT_ESCROW = 5 * ONE_TOKEN // 1000   # 0.005

SUMMARY_PAYLOAD = {"text": "The quick brown fox jumps over the lazy dog. " * 4, "maxLength": 20}


# ─────────────────────────────────────────────────────────────────────────
#  FAST RETRY BEHAVIOUR FOR TESTS
# ─────────────────────────────────────────────────────────────────────────

# Make time.sleep instantaneous so retries and backoff don't slow the suite down
@pytest.fixture(autouse=True)
def _fast_sleep(monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda *_a, **_kw: None)


@pytest.fixture(autouse=True)
def _reset_log_suppression():
    reset_rate_limited_log()
    yield
    reset_rate_limited_log()


@pytest.fixture(autouse=True)
def _patch_http_provider(monkeypatch):
    """
    Stub every Web3 HTTP call so no DNS / network traffic is triggered.
    """
    def _dummy(self, method, params=None, _=None):
        if method == "eth_chainId":
            return {"jsonrpc": "2.0", "id": 1, "result": "0x1"}
        if method == "eth_gasPrice":
            return {"jsonrpc": "2.0", "id": 1, "result": "0x3b9aca00"}  # 1 gwei
        return {"jsonrpc": "2.0", "id": 1, "result": "0x0"}

    monkeypatch.setattr(HTTPProvider, "make_request", _dummy, raising=True)


@pytest.fixture
def caller_account():
    return Account.from_key(CALLER_KEY)


@pytest.fixture
def other_caller_account():
    return Account.from_key(OTHER_CALLER_KEY)


@pytest.fixture
def verifier_account():
    return Account.from_key(VERIFIER_KEY)


def summarizer_handler(event):
    payload = event["payload"]
    words = payload["text"].split()
    return {"summary": " ".join(words[:payload.get("maxLength", 150)]), "jobId": event["jobId"]}


def meme_handler(event):
    return {"imageUrl": "https://memes.example.com/1.png", "caption": event["payload"]["prompt"]}


def appraiser_handler(event):
    return {"estimate": "1.5", "currency": "ETH", "tokenId": event["payload"]["tokenId"]}


@pytest.fixture
def handlers():
    return {
        "summarizer": summarizer_handler,
        "meme-generator": meme_handler,
        "nft-appraiser": appraiser_handler,
    }


@pytest.fixture
def stub_ledger(verifier_account):
    """In-memory ledger with the three standard plugins registered."""
    ledger = StubLedgerTransport()
    for plugin_id, name in ((1, "summarizer"), (2, "meme-generator"), (3, "nft-appraiser")):
        ledger.register_plugin(PluginDescriptor(
            plugin_id=plugin_id,
            name=name,
            price_per_call=PRICE,
            active=True,
            version=1,
            verifier_key=verifier_account.address,
        ))
    ledger.register_plugin(PluginDescriptor(
        plugin_id=9,
        name="retired",
        price_per_call=PRICE,
        active=False,
        verifier_key=verifier_account.address,
    ))
    return ledger


@pytest.fixture
def settings():
    return GatewaySettings(ledger_backend="memory", verifier_private_key=VERIFIER_KEY)


@pytest.fixture
def gateway(settings, stub_ledger, handlers):
    gw = build_gateway(settings, ledger=stub_ledger, handlers=handlers)
    yield gw
    gw.close()


@pytest.fixture
def signed():
    """Build (headers, body) for a call signed by ``key``."""
    def _signed(key, payload, timestamp_ms=None, metadata=None):
        body = {"payload": payload}
        if metadata is not None:
            body["metadata"] = metadata
        return sign_request_headers(key, body, timestamp_ms), body
    return _signed
