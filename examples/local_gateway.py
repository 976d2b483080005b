#!/usr/bin/env python3
"""
Run a self-contained gateway with an in-memory ledger and local plugin handlers.

Useful for trying the client against something real without a chain:

    python examples/local_gateway.py
    PRIVATE_KEY=0x... python examples/simple_usage.py
"""
import os
import logging

import uvicorn
from eth_account import Account

from pluginpay_gateway import GatewaySettings, PluginDescriptor, build_gateway
from pluginpay_gateway.ledger import StubLedgerTransport
from pluginpay_gateway.server import create_app

logging.basicConfig(level=logging.INFO)


def summarize(event):
    payload = event["payload"]
    words = payload["text"].split()
    return {"summary": " ".join(words[:payload.get("maxLength", 150)])}


def main():
    verifier = Account.create()
    caller_key = os.environ.get("PRIVATE_KEY")
    if not caller_key:
        caller = Account.create()
        caller_key = caller.key.hex()
        print(f"Generated caller key: {caller_key}")
    caller_address = Account.from_key(caller_key).address

    ledger = StubLedgerTransport()
    ledger.register_plugin(PluginDescriptor(
        plugin_id=1,
        name="summarizer",
        price_per_call=10 ** 16,
        active=True,
        verifier_key=verifier.address,
    ))
    ledger.prepay(caller_address, 1, 10 ** 18)
    print(f"Prepaid 1 token for {caller_address}; verifier is {verifier.address}")

    settings = GatewaySettings(ledger_backend="memory", verifier_private_key=verifier.key.hex())
    gateway = build_gateway(settings, ledger=ledger, handlers={"summarizer": summarize})
    uvicorn.run(create_app(gateway), host="127.0.0.1", port=8080)


if __name__ == "__main__":
    main()
