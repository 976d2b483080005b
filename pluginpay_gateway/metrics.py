"""
Prometheus metrics for the gateway.

Two counters are kept per plugin: successful calls and the revenue they
earned. Both are bumped once per receipt issued, so they track billed calls
only. The registry is dedicated so embedding applications can expose it on
their own or merge it into theirs.
"""
import logging
from typing import Tuple

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest
from web3 import Web3

logger = logging.getLogger(__name__)

REGISTRY = CollectorRegistry()

PLUGIN_CALLS = Counter(
    "pluginpay_plugin_calls_total",
    "Total billed plugin calls by plugin.",
    labelnames=("plugin_id",),
    registry=REGISTRY,
)

# Amounts are tracked in ether (float) rather than wei to keep values readable
PLUGIN_REVENUE = Counter(
    "pluginpay_plugin_revenue_ether_total",
    "Total revenue earned by plugin, in ether.",
    labelnames=("plugin_id",),
    registry=REGISTRY,
)


def record_call(plugin_id: int, cost_wei: int) -> None:
    """
    Count one billed call and its price.

    Metric failures are logged and never affect the call.
    """
    try:
        label = str(plugin_id)
        PLUGIN_CALLS.labels(plugin_id=label).inc()
        PLUGIN_REVENUE.labels(plugin_id=label).inc(float(Web3.from_wei(cost_wei, "ether")))
    except Exception as e:
        logger.error(f"Failed to update metrics for plugin {plugin_id}: {e}")


def render_latest() -> Tuple[bytes, str]:
    """Exposition payload and its content type."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
