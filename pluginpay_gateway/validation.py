"""
Payload validation performed before any chargeable work.

Each plugin id is bound to a ``PluginKind`` when the gateway is configured;
validation at request time is a lookup into that closed set.
"""
import logging
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from web3 import Web3

from .exceptions import ValidationError
from .utils import canonical_json

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 1_048_576  # 1 MiB
MAX_SUMMARY_TEXT_CHARS = 50_000
MAX_MEME_PROMPT_CHARS = 500
SUMMARY_LENGTH_RANGE = (10, 1000)


class PluginKind(str, Enum):
    """Plugin families with known payload shapes."""
    SUMMARIZER = "summarizer"
    MEME_GENERATOR = "meme_generator"
    NFT_APPRAISER = "nft_appraiser"
    UNREGISTERED = "unregistered"


DEFAULT_PLUGIN_KINDS: Dict[int, PluginKind] = {
    1: PluginKind.SUMMARIZER,
    2: PluginKind.MEME_GENERATOR,
    3: PluginKind.NFT_APPRAISER,
}


def _require_object(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValidationError(f"Payload must be a JSON object, got {type(payload).__name__}")
    return payload


def validate_summarizer_payload(payload: Any) -> None:
    payload = _require_object(payload)
    text = payload.get("text")
    if not text or not isinstance(text, str):
        raise ValidationError("Missing or invalid text field")
    if len(text) > MAX_SUMMARY_TEXT_CHARS:
        raise ValidationError("Text too long (max 50k chars)")

    max_length = payload.get("maxLength")
    if max_length:
        low, high = SUMMARY_LENGTH_RANGE
        if isinstance(max_length, bool) or not isinstance(max_length, (int, float)):
            raise ValidationError(f"Invalid maxLength ({low}-{high})")
        if max_length < low or max_length > high:
            raise ValidationError(f"Invalid maxLength ({low}-{high})")


def validate_meme_generator_payload(payload: Any) -> None:
    payload = _require_object(payload)
    prompt = payload.get("prompt")
    if not prompt or not isinstance(prompt, str):
        raise ValidationError("Missing or invalid prompt field")
    if len(prompt) > MAX_MEME_PROMPT_CHARS:
        raise ValidationError("Prompt too long (max 500 chars)")


def validate_nft_appraiser_payload(payload: Any) -> None:
    payload = _require_object(payload)
    contract_address = payload.get("contractAddress")
    token_id = payload.get("tokenId")
    # token id 0 is a valid token
    if not contract_address or token_id is None or token_id == "":
        raise ValidationError("Missing contractAddress or tokenId")
    if not isinstance(contract_address, str) or not Web3.is_address(contract_address):
        raise ValidationError("Invalid contract address")


_KIND_VALIDATORS: Dict[PluginKind, Callable[[Any], None]] = {
    PluginKind.SUMMARIZER: validate_summarizer_payload,
    PluginKind.MEME_GENERATOR: validate_meme_generator_payload,
    PluginKind.NFT_APPRAISER: validate_nft_appraiser_payload,
}


class PayloadValidator:
    """
    Structural and size checks for plugin payloads.

    Args:
        plugin_kinds: Mapping of plugin id to kind, fixed for the validator's lifetime
        max_payload_bytes: Upper bound on the serialized payload size
        strict: Reject plugin ids with no configured kind instead of accepting them
    """

    def __init__(
        self,
        plugin_kinds: Optional[Mapping[int, PluginKind]] = None,
        max_payload_bytes: int = MAX_PAYLOAD_BYTES,
        strict: bool = False
    ):
        kinds = DEFAULT_PLUGIN_KINDS if plugin_kinds is None else plugin_kinds
        self.plugin_kinds: Dict[int, PluginKind] = {int(k): PluginKind(v) for k, v in kinds.items()}
        self.max_payload_bytes = max_payload_bytes
        self.strict = strict

    def kind_for(self, plugin_id: int) -> PluginKind:
        return self.plugin_kinds.get(plugin_id, PluginKind.UNREGISTERED)

    def validate(self, payload: Any, plugin_id: int) -> None:
        """
        Validate a payload for the given plugin.

        Args:
            payload: Decoded ``payload`` member of the request body
            plugin_id: Target plugin id

        Raises:
            ValidationError: If the payload is missing, too large, or fails the
                plugin-specific checks
        """
        if payload is None or payload == "":
            raise ValidationError("Missing payload")

        size = len(canonical_json(payload).encode("utf-8"))
        if size > self.max_payload_bytes:
            raise ValidationError("Payload too large")

        kind = self.kind_for(plugin_id)
        if kind is PluginKind.UNREGISTERED:
            if self.strict:
                raise ValidationError("Unsupported plugin")
            logger.debug(f"No payload rules for plugin {plugin_id}; accepting")
            return

        _KIND_VALIDATORS[kind](payload)
