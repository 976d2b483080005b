#!/usr/bin/env python3
"""
Simple example of calling a plugin through a PluginPay gateway.
"""
import os
import json

from pluginpay_gateway import PluginCallError, PluginPayClient


def main():
    """
    Demonstrate basic usage of the PluginPayClient.

    This example shows how to:
    1. Initialize the client
    2. Call the summarizer plugin
    3. Check the receipt against the plugin's verifier
    """
    # Read configuration from environment
    API_URL = os.environ.get("PLUGINPAY_API_URL", "http://localhost:8080")
    PRIVATE_KEY = os.environ.get("PRIVATE_KEY")
    VERIFIER_ADDRESS = os.environ.get("VERIFIER_ADDRESS")

    if not PRIVATE_KEY:
        print("ERROR: PRIVATE_KEY environment variable is required")
        return

    client = PluginPayClient(API_URL, PRIVATE_KEY)
    print(f"Calling as {client.address}")

    try:
        response = client.summarize(
            "PluginPay lets callers prepay escrow for AI plugins and pay per call. "
            "Each successful call returns a signed receipt that settles on-chain.",
            max_length=50
        )
    except PluginCallError as e:
        print(f"Plugin call failed: {e}")
        return
    finally:
        client.close()

    print(json.dumps(response["result"], indent=2))
    print(f"Job: {response['jobId']}")
    print(f"Cost: {response['receipt']['cost']} wei")

    if VERIFIER_ADDRESS:
        valid = PluginPayClient.verify_receipt(response["receipt"], VERIFIER_ADDRESS)
        print(f"Receipt valid: {valid}")


if __name__ == "__main__":
    main()
