"""
Hashing and serialization helpers shared by the gateway components.
"""
import json
import math
import re
import hashlib
from decimal import Decimal
from typing import Any

from web3 import Web3

ZERO_ADDRESS = "0x" + "0" * 40

# Integers beyond this are not exact in a JavaScript number
_MAX_SAFE_INTEGER = 2 ** 53 - 1

_LONE_SURROGATE = re.compile("[\ud800-\udfff]")


def _js_number(value: float) -> str:
    """Format a float the way ECMAScript ``Number.prototype.toString`` does."""
    if not math.isfinite(value):
        return "null"
    if value == 0:
        return "0"

    sign = "-" if value < 0 else ""
    # repr gives the shortest round-tripping digits, as JavaScript does
    _, digit_tuple, exponent = Decimal(repr(abs(value))).normalize().as_tuple()
    digits = "".join(str(d) for d in digit_tuple)
    k = len(digits)
    n = exponent + k

    if k <= n <= 21:
        return sign + digits + "0" * (n - k)
    if 0 < n <= 21:
        return sign + digits[:n] + "." + digits[n:]
    if -6 < n <= 0:
        return sign + "0." + "0" * -n + digits

    e = n - 1
    mantissa = digits if k == 1 else digits[0] + "." + digits[1:]
    return f"{sign}{mantissa}e{'+' if e >= 0 else '-'}{abs(e)}"


def _js_string(value: str) -> str:
    encoded = json.dumps(value, ensure_ascii=False)
    return _LONE_SURROGATE.sub(lambda m: f"\\u{ord(m.group()):04x}", encoded)


def _js_key(key: Any) -> str:
    if isinstance(key, str):
        return _js_string(key)
    if key is None or isinstance(key, (bool, int, float)):
        return _js_string(canonical_json(key))
    raise TypeError(f"keys must be str, int, float, bool or None, not {type(key).__name__}")


def canonical_json(value: Any) -> str:
    """
    Serialize a JSON value compactly, preserving key insertion order.

    The output matches what a JavaScript ``JSON.stringify`` produces for the
    same parsed document, so hashes computed by browser or node clients agree
    with the gateway's. In particular numbers use the JavaScript format
    (``1`` for ``1.0``, ``1e-7`` rather than ``1e-07``) and lone surrogates
    are escaped instead of emitted raw.

    Args:
        value: Any JSON-serializable value

    Returns:
        Compact JSON string

    Raises:
        TypeError: If the value holds something JSON cannot represent
    """
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, str):
        return _js_string(value)
    if isinstance(value, int):
        if abs(value) > _MAX_SAFE_INTEGER:
            return _js_number(float(value))
        return str(value)
    if isinstance(value, float):
        return _js_number(value)
    if isinstance(value, dict):
        items = ",".join(f"{_js_key(k)}:{canonical_json(v)}" for k, v in value.items())
        return "{" + items + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(canonical_json(v) for v in value) + "]"
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def contains_lone_surrogate(value: Any) -> bool:
    """Whether any string in a parsed JSON value holds an unpaired surrogate."""
    return bool(_LONE_SURROGATE.search(json.dumps(value, ensure_ascii=False, default=str)))


def sha256_hex(data: Any) -> str:
    """
    SHA-256 hex digest (no 0x prefix) of bytes or a string.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def keccak_hex(data: Any) -> str:
    """
    Keccak-256 digest of bytes or a UTF-8 string, as 0x-prefixed hex.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    return "0x" + Web3.keccak(data).hex().removeprefix("0x")


def json_keccak(value: Any) -> str:
    """Keccak-256 of the canonical JSON encoding of ``value``."""
    return keccak_hex(canonical_json(value))


def generate_job_id(request_id: str, caller: str, plugin_id: int, timestamp_ms: int) -> str:
    """
    Derive a job id from the request that produced it.

    Args:
        request_id: Transport-level request identifier
        caller: Authenticated caller address
        plugin_id: Ledger id of the plugin
        timestamp_ms: Gateway clock at job creation, in milliseconds

    Returns:
        0x-prefixed 32-byte hex id
    """
    return keccak_hex(f"{request_id}-{caller}-{plugin_id}-{timestamp_ms}")


def short(value: str, length: int = 10) -> str:
    """Truncate an identifier for log output."""
    return f"{value[:length]}..." if value and len(value) > length else value
