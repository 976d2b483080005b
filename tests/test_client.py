"""
Tests for the caller-side client.
"""
import pytest
import requests

from pluginpay_gateway import PluginCallError, PluginPayClient
from pluginpay_gateway.auth import RequestAuthenticator
from pluginpay_gateway.exceptions import ConfigurationError
from pluginpay_gateway.version import __version__

from conftest import CALLER_KEY, SUMMARY_PAYLOAD

API_URL = "https://gateway.example.com"
CALL_URL = f"{API_URL}/api/v1/plugins/1/call"


@pytest.fixture
def client():
    c = PluginPayClient(API_URL + "/", CALLER_KEY, retry_count=0)
    yield c
    c.close()


def success_body(**extra):
    body = {"success": True, "jobId": "0x" + "01" * 32, "result": {"summary": "ok"}, "receipt": {}, "metadata": {}}
    body.update(extra)
    return body


def test_requires_https():
    with pytest.raises(ConfigurationError):
        PluginPayClient("http://gateway.example.com", CALLER_KEY)


@pytest.mark.parametrize("url", ["http://localhost:8080", "http://127.0.0.1:8080"])
def test_allows_local_http(url):
    assert PluginPayClient(url, CALLER_KEY).api_url == url


def test_allow_insecure_override():
    client = PluginPayClient("http://gateway.internal", CALLER_KEY, allow_insecure=True)
    assert client.api_url == "http://gateway.internal"


def test_call_plugin_sends_signed_request(client, requests_mock, caller_account):
    requests_mock.post(CALL_URL, json=success_body())

    data = client.call_plugin(1, SUMMARY_PAYLOAD, metadata={"source": "test"})

    assert data["result"] == {"summary": "ok"}
    sent = requests_mock.last_request
    body = sent.json()
    assert body["payload"] == SUMMARY_PAYLOAD
    assert body["metadata"]["pluginId"] == 1
    assert body["metadata"]["version"] == __version__
    assert body["metadata"]["source"] == "test"
    assert sent.headers["User-Agent"] == f"pluginpay-client/{__version__}"
    assert sent.headers["X-User-Address"] == caller_account.address

    # The gateway accepts exactly what was sent
    assert RequestAuthenticator().authenticate(sent.headers, body) == caller_account.address


@pytest.mark.parametrize("status, error", [
    (401, "Request expired"),
    (402, "Insufficient escrow. Please prepay for plugin usage."),
    (404, "Plugin not found or inactive"),
    (429, "Rate limit exceeded"),
    (500, "Plugin execution failed: boom"),
])
def test_gateway_errors_raise(client, requests_mock, status, error):
    requests_mock.post(CALL_URL, status_code=status, json={"success": False, "error": error})

    with pytest.raises(PluginCallError) as exc_info:
        client.call_plugin(1, SUMMARY_PAYLOAD)

    assert exc_info.value.status_code == status
    assert exc_info.value.message == error


def test_non_json_response(client, requests_mock):
    requests_mock.post(CALL_URL, status_code=502, text="<html>Bad Gateway</html>")
    with pytest.raises(PluginCallError) as exc_info:
        client.call_plugin(1, SUMMARY_PAYLOAD)
    assert exc_info.value.status_code == 502


def test_connection_error(client, requests_mock):
    requests_mock.post(CALL_URL, exc=requests.exceptions.ConnectionError("refused"))
    with pytest.raises(PluginCallError, match="Request failed"):
        client.call_plugin(1, SUMMARY_PAYLOAD)


def test_local_validation_short_circuits(client, requests_mock):
    with pytest.raises(PluginCallError, match="Validation failed: Missing or invalid text field"):
        client.call_plugin(1, {"text": ""})
    assert not requests_mock.called


def test_local_validation_can_be_disabled(requests_mock):
    requests_mock.post(CALL_URL, status_code=400, json={"success": False, "error": "Missing or invalid text field"})
    client = PluginPayClient(API_URL, CALLER_KEY, validate_locally=False)

    with pytest.raises(PluginCallError) as exc_info:
        client.call_plugin(1, {"text": ""})
    assert exc_info.value.status_code == 400


def test_convenience_methods(client, requests_mock):
    requests_mock.post(f"{API_URL}/api/v1/plugins/1/call", json=success_body())
    requests_mock.post(f"{API_URL}/api/v1/plugins/2/call", json=success_body())
    requests_mock.post(f"{API_URL}/api/v1/plugins/3/call", json=success_body())

    client.summarize("Some long text to summarise", max_length=50)
    assert requests_mock.last_request.json()["payload"] == {
        "text": "Some long text to summarise", "maxLength": 50, "style": "concise"
    }

    client.generate_meme("cats in space")
    assert requests_mock.last_request.json()["payload"]["prompt"] == "cats in space"

    client.appraise_nft("0xBC4CA0EdA7647A8aB7C2061c2E118A18a936f13D", 42)
    assert requests_mock.last_request.json()["payload"] == {
        "contractAddress": "0xBC4CA0EdA7647A8aB7C2061c2E118A18a936f13D", "tokenId": "42", "chain": "ethereum"
    }


def test_verify_receipt_end_to_end(gateway, stub_ledger, caller_account, verifier_account):
    from conftest import FUNDED_ESCROW
    stub_ledger.prepay(caller_account.address, 1, FUNDED_ESCROW)
    client = PluginPayClient(API_URL, CALLER_KEY)
    body = {"payload": SUMMARY_PAYLOAD}

    response = gateway.handle(1, client.create_auth_headers(body), body)

    assert PluginPayClient.verify_receipt(response.body["receipt"], verifier_account.address)
    assert not PluginPayClient.verify_receipt(response.body["receipt"], caller_account.address)
