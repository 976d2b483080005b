"""
End-to-end tests of the call pipeline against the in-memory ledger.
"""
import json
import time
from unittest.mock import MagicMock

import pytest

from pluginpay_gateway.config import GatewaySettings
from pluginpay_gateway.gateway import build_gateway
from pluginpay_gateway.models import PluginDescriptor
from pluginpay_gateway.oracle import verify_receipt
from pluginpay_gateway.utils import json_keccak

from conftest import (
    CALLER_KEY,
    FUNDED_ESCROW,
    PRICE,
    SHORT_ESCROW,
    SUMMARY_PAYLOAD,
    VERIFIER_KEY,
)


def now_ms():
    return int(time.time() * 1000)


@pytest.fixture
def spy_ledger(stub_ledger):
    return MagicMock(wraps=stub_ledger)


@pytest.fixture
def spy_handlers(handlers):
    return {name: MagicMock(side_effect=fn) for name, fn in handlers.items()}


@pytest.fixture
def spy_gateway(settings, spy_ledger, spy_handlers):
    gw = build_gateway(settings, ledger=spy_ledger, handlers=spy_handlers)
    yield gw
    gw.close()


class TestScenarios:

    def test_a_funded_call_succeeds(self, gateway, stub_ledger, signed, caller_account, verifier_account):
        stub_ledger.prepay(caller_account.address, 1, FUNDED_ESCROW)
        headers, body = signed(CALLER_KEY, SUMMARY_PAYLOAD)

        response = gateway.handle(1, headers, body, request_id="req-1")

        assert response.status_code == 200
        data = response.body
        assert data["success"] is True
        assert data["result"]["summary"].startswith("The quick brown fox")
        assert data["metadata"]["pluginName"] == "summarizer"
        assert data["metadata"]["version"] == "1"
        assert isinstance(data["metadata"]["executionTime"], int)

        receipt = data["receipt"]
        assert receipt["jobId"] == data["jobId"]
        assert receipt["caller"] == caller_account.address
        assert receipt["pluginId"] == 1
        assert receipt["cost"] == str(PRICE)
        assert receipt["inputHash"] == json_keccak(SUMMARY_PAYLOAD)
        assert receipt["outputHash"] == json_keccak(data["result"])
        assert verify_receipt(receipt, verifier_account.address)

        assert gateway.consumption.join(timeout=5)
        assert stub_ledger.is_consumed(receipt["hash"])

    def test_b_short_escrow_is_rejected_without_dispatch(
        self, spy_gateway, stub_ledger, spy_handlers, signed, caller_account
    ):
        stub_ledger.prepay(caller_account.address, 1, SHORT_ESCROW)
        headers, body = signed(CALLER_KEY, SUMMARY_PAYLOAD)

        response = spy_gateway.handle(1, headers, body)

        assert response.status_code == 402
        assert response.body == {
            "success": False,
            "error": "Insufficient escrow. Please prepay for plugin usage.",
        }
        spy_handlers["summarizer"].assert_not_called()
        assert stub_ledger.submissions == []

    def test_d_stale_request_is_expired(self, gateway, stub_ledger, signed, caller_account):
        stub_ledger.prepay(caller_account.address, 1, FUNDED_ESCROW)
        headers, body = signed(CALLER_KEY, SUMMARY_PAYLOAD, timestamp_ms=now_ms() - 400_000)

        response = gateway.handle(1, headers, body)

        assert response.status_code == 401
        assert response.body == {"success": False, "error": "Request expired"}

    def test_e_provider_error_issues_no_receipt(self, settings, stub_ledger, signed, caller_account):
        def failing(event):
            raise RuntimeError("upstream model error")

        stub_ledger.prepay(caller_account.address, 1, FUNDED_ESCROW)
        gw = build_gateway(settings, ledger=stub_ledger, handlers={"summarizer": failing})
        try:
            headers, body = signed(CALLER_KEY, SUMMARY_PAYLOAD)
            response = gw.handle(1, headers, body)
            gw.consumption.join(timeout=5)
        finally:
            gw.close()

        assert response.status_code == 500
        assert response.body == {"success": False, "error": "Plugin execution failed: upstream model error"}
        assert "receipt" not in response.body
        assert stub_ledger.submissions == []
        assert gw.consumption.delivered == {}


class TestPipelineOrder:

    def test_replayed_request_is_duplicate(self, gateway, stub_ledger, signed, caller_account):
        stub_ledger.prepay(caller_account.address, 1, FUNDED_ESCROW)
        headers, body = signed(CALLER_KEY, SUMMARY_PAYLOAD)

        assert gateway.handle(1, headers, body).status_code == 200
        replay = gateway.handle(1, headers, body)
        assert replay.status_code == 401
        assert replay.body["error"] == "Duplicate request"

    def test_auth_failure_touches_nothing(self, spy_gateway, spy_ledger, spy_handlers, signed):
        headers, body = signed(CALLER_KEY, SUMMARY_PAYLOAD)
        del headers["X-Signature"]

        response = spy_gateway.handle(1, headers, body)

        assert response.status_code == 401
        assert response.body["error"] == "Missing authentication headers"
        spy_ledger.get_plugin.assert_not_called()
        spy_ledger.get_escrow.assert_not_called()

    @pytest.mark.parametrize("payload, error", [
        ({"text": ""}, "Missing or invalid text field"),
        ({"text": "x" * 50_001}, "Text too long (max 50k chars)"),
        ({"text": "x", "maxLength": 5}, "Invalid maxLength (10-1000)"),
    ])
    def test_validation_precedes_ledger(self, spy_gateway, spy_ledger, spy_handlers, signed, payload, error):
        headers, body = signed(CALLER_KEY, payload)

        response = spy_gateway.handle(1, headers, body)

        assert response.status_code == 400
        assert response.body == {"success": False, "error": error}
        spy_ledger.get_plugin.assert_not_called()
        spy_ledger.get_escrow.assert_not_called()
        spy_handlers["summarizer"].assert_not_called()

    def test_missing_payload(self, gateway, signed):
        headers, body = signed(CALLER_KEY, None)
        response = gateway.handle(1, headers, body)
        assert response.status_code == 400
        assert response.body["error"] == "Missing payload"

    def test_non_object_body(self, gateway):
        from pluginpay_gateway.auth import sign_request_headers
        body = ["not", "an", "object"]
        response = gateway.handle(1, sign_request_headers(CALLER_KEY, body), body)
        assert response.status_code == 400

    @pytest.mark.parametrize("plugin_id", [9, 77])
    def test_inactive_or_unknown_plugin(self, spy_gateway, spy_ledger, signed, plugin_id):
        headers, body = signed(CALLER_KEY, {"anything": 1})

        response = spy_gateway.handle(plugin_id, headers, body)

        assert response.status_code == 404
        assert response.body["error"] == "Plugin not found or inactive"
        spy_ledger.get_escrow.assert_not_called()

    def test_unheld_verifier_fails_before_escrow(self, spy_gateway, stub_ledger, spy_ledger, signed, other_caller_account):
        stub_ledger.register_plugin(PluginDescriptor(
            plugin_id=5, name="foreign", price_per_call=PRICE, active=True,
            verifier_key=other_caller_account.address,
        ))
        headers, body = signed(CALLER_KEY, {"x": 1})

        response = spy_gateway.handle(5, headers, body)

        assert response.status_code == 500
        assert response.body == {"success": False, "error": "Internal server error"}
        spy_ledger.get_escrow.assert_not_called()

    def test_ledger_outage_on_lookup_is_internal_error(self, spy_gateway, spy_ledger, signed):
        from pluginpay_gateway.exceptions import LedgerError
        spy_ledger.get_plugin.side_effect = LedgerError("rpc down")
        headers, body = signed(CALLER_KEY, SUMMARY_PAYLOAD)

        response = spy_gateway.handle(1, headers, body)

        assert response.status_code == 500
        assert response.body["error"] == "Internal server error"

    def test_unexpected_exception_is_masked(self, gateway, signed, monkeypatch):
        monkeypatch.setattr(gateway.validator, "validate", MagicMock(side_effect=KeyError("secret-internal")))
        headers, body = signed(CALLER_KEY, SUMMARY_PAYLOAD)

        response = gateway.handle(1, headers, body)

        assert response.status_code == 500
        assert response.body == {"success": False, "error": "Internal server error"}


class TestRateLimitAndOutputs:

    def test_rate_limit_exceeded(self, stub_ledger, handlers, signed, caller_account):
        settings = GatewaySettings(ledger_backend="memory", verifier_private_key=VERIFIER_KEY, rate_limit_per_window=2)
        stub_ledger.prepay(caller_account.address, 2, FUNDED_ESCROW)
        gw = build_gateway(settings, ledger=stub_ledger, handlers=handlers)
        try:
            base = now_ms()
            statuses = []
            for i in range(3):
                headers, body = signed(CALLER_KEY, {"prompt": "cat"}, timestamp_ms=base + i)
                statuses.append(gw.handle(2, headers, body))
        finally:
            gw.close()

        assert [r.status_code for r in statuses] == [200, 200, 429]
        assert statuses[2].body == {"success": False, "error": "Rate limit exceeded"}

    def test_large_output_is_offloaded(self, settings, stub_ledger, signed, caller_account, verifier_account):
        big = {"summary": "y" * 150_000}
        stub_ledger.prepay(caller_account.address, 1, FUNDED_ESCROW)
        gw = build_gateway(settings, ledger=stub_ledger, handlers={"summarizer": lambda event: big})
        try:
            headers, body = signed(CALLER_KEY, SUMMARY_PAYLOAD)
            response = gw.handle(1, headers, body)
            storage = gw.dispatcher.storage
        finally:
            gw.close()

        assert response.status_code == 200
        result = response.body["result"]
        job_id = response.body["jobId"]
        assert result == {"uri": f"memory://outputs/{job_id}.json", "type": "large_output"}
        assert response.body["receipt"]["outputHash"] == json_keccak(result)
        assert json.loads(storage.get(f"outputs/{job_id}.json")) == big
        assert verify_receipt(response.body["receipt"], verifier_account.address)

    def test_call_log_records_success(self, tmp_path, stub_ledger, handlers, signed, caller_account):
        log_path = tmp_path / "calls.jsonl"
        settings = GatewaySettings(
            ledger_backend="memory", verifier_private_key=VERIFIER_KEY, call_log_path=str(log_path)
        )
        stub_ledger.prepay(caller_account.address, 3, FUNDED_ESCROW)
        gw = build_gateway(settings, ledger=stub_ledger, handlers=handlers)
        try:
            headers, body = signed(CALLER_KEY, {
                "contractAddress": "0xBC4CA0EdA7647A8aB7C2061c2E118A18a936f13D", "tokenId": "1"
            })
            response = gw.handle(3, headers, body)
        finally:
            gw.close()

        assert response.status_code == 200
        entries = list(gw.call_log.entries())
        assert len(entries) == 1
        assert entries[0]["jobId"] == response.body["jobId"]
        assert entries[0]["receiptHash"] == response.body["receipt"]["hash"]
        assert entries[0]["cost"] == str(PRICE)
        assert entries[0]["success"] is True

    def test_job_ids_are_unique_per_request(self, gateway, stub_ledger, signed, caller_account):
        stub_ledger.prepay(caller_account.address, 2, FUNDED_ESCROW)
        base = now_ms()
        job_ids = set()
        for i in range(3):
            headers, body = signed(CALLER_KEY, {"prompt": "dog"}, timestamp_ms=base + i)
            job_ids.add(gateway.handle(2, headers, body, request_id=f"r{i}").body["jobId"])
        assert len(job_ids) == 3
        assert all(len(job_id) == 66 for job_id in job_ids)

    def test_call_raises_taxonomy_errors(self, gateway, signed):
        from pluginpay_gateway.exceptions import ValidationError
        headers, body = signed(CALLER_KEY, {"text": ""})
        with pytest.raises(ValidationError):
            gateway.call(1, headers, body)


def test_c_concurrent_duplicates_succeed_once(gateway, stub_ledger, signed, caller_account):
    import threading

    stub_ledger.prepay(caller_account.address, 1, FUNDED_ESCROW)
    headers, body = signed(CALLER_KEY, SUMMARY_PAYLOAD)
    barrier = threading.Barrier(2)
    responses = []

    def worker():
        barrier.wait()
        responses.append(gateway.handle(1, dict(headers), body))

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert sorted(r.status_code for r in responses) == [200, 401]
    rejected = next(r for r in responses if r.status_code == 401)
    assert rejected.body == {"success": False, "error": "Duplicate request"}


def test_lone_surrogate_body_is_rejected_as_invalid(gateway, stub_ledger, signed, caller_account):
    stub_ledger.prepay(caller_account.address, 1, FUNDED_ESCROW)
    headers, body = signed(CALLER_KEY, {"text": "broken \ud800 text"})

    response = gateway.handle(1, headers, body)

    assert response.status_code == 400
    assert response.body == {"success": False, "error": "Request body contains invalid Unicode"}


def test_lone_surrogate_body_without_valid_signature_is_unauthenticated(gateway, signed):
    headers, _ = signed(CALLER_KEY, SUMMARY_PAYLOAD)
    response = gateway.handle(1, headers, {"payload": {"text": "\ud800"}})
    assert response.status_code == 401


def test_concurrent_calls_cannot_exceed_rate_limit(stub_ledger, handlers, signed, caller_account):
    import threading

    settings = GatewaySettings(ledger_backend="memory", verifier_private_key=VERIFIER_KEY, rate_limit_per_window=2)
    stub_ledger.prepay(caller_account.address, 2, FUNDED_ESCROW)
    gw = build_gateway(settings, ledger=stub_ledger, handlers=handlers)
    base = now_ms()
    calls = [signed(CALLER_KEY, {"prompt": "cat"}, timestamp_ms=base + i) for i in range(6)]
    barrier = threading.Barrier(len(calls))
    responses = []

    def worker(headers, body):
        barrier.wait()
        responses.append(gw.handle(2, headers, body))

    threads = [threading.Thread(target=worker, args=call) for call in calls]
    try:
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
    finally:
        gw.close()

    assert sorted(r.status_code for r in responses) == [200, 200, 429, 429, 429, 429]


def test_billed_calls_update_metrics(gateway, stub_ledger, signed, caller_account):
    from web3 import Web3
    from pluginpay_gateway.metrics import REGISTRY

    def sample(name):
        return REGISTRY.get_sample_value(name, {"plugin_id": "1"}) or 0.0

    calls_before = sample("pluginpay_plugin_calls_total")
    calls_3_before = REGISTRY.get_sample_value("pluginpay_plugin_calls_total", {"plugin_id": "3"})
    revenue_before = sample("pluginpay_plugin_revenue_ether_total")

    stub_ledger.prepay(caller_account.address, 1, FUNDED_ESCROW)
    base = now_ms()
    headers, body = signed(CALLER_KEY, SUMMARY_PAYLOAD, timestamp_ms=base)
    assert gateway.handle(1, headers, body).status_code == 200

    stub_ledger.prepay(caller_account.address, 3, SHORT_ESCROW)
    headers, body = signed(CALLER_KEY, {
        "contractAddress": "0xBC4CA0EdA7647A8aB7C2061c2E118A18a936f13D", "tokenId": "1"
    }, timestamp_ms=base + 1)
    assert gateway.handle(3, headers, body).status_code == 402
    assert REGISTRY.get_sample_value("pluginpay_plugin_calls_total", {"plugin_id": "3"}) == calls_3_before

    assert sample("pluginpay_plugin_calls_total") == calls_before + 1
    assert sample("pluginpay_plugin_revenue_ether_total") == pytest.approx(
        revenue_before + float(Web3.from_wei(PRICE, "ether"))
    )


def test_unreachable_compute_endpoint_is_not_disclosed(stub_ledger, signed, caller_account, requests_mock):
    import requests

    settings = GatewaySettings(
        ledger_backend="memory",
        verifier_private_key=VERIFIER_KEY,
        compute_backend="http",
        compute_url="https://compute.internal.example",
    )
    requests_mock.post(
        "https://compute.internal.example/pluginpay-summarizer-dev",
        exc=requests.ConnectionError("HTTPSConnectionPool(host='compute.internal.example', port=443)"),
    )
    stub_ledger.prepay(caller_account.address, 1, FUNDED_ESCROW)
    gw = build_gateway(settings, ledger=stub_ledger)
    try:
        headers, body = signed(CALLER_KEY, SUMMARY_PAYLOAD)
        response = gw.handle(1, headers, body)
    finally:
        gw.close()

    assert response.status_code == 500
    assert response.body == {"success": False, "error": "Plugin execution failed: Plugin provider unavailable"}
    assert "internal" not in json.dumps(response.body)
