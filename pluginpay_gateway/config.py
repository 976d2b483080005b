"""
Gateway configuration.

Settings are plain pydantic models so they can be built explicitly in code or
loaded from ``PLUGINPAY_*`` environment variables with ``GatewaySettings.from_env``.
"""
import os
import urllib.parse
from typing import Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .exceptions import ConfigurationError
from .validation import DEFAULT_PLUGIN_KINDS, MAX_PAYLOAD_BYTES, PluginKind

ENV_PREFIX = "PLUGINPAY_"


def _is_local(url: str) -> bool:
    host = urllib.parse.urlparse(url).hostname or ""
    return host in ("localhost", "127.0.0.1", "::1")


def require_secure_url(name: str, url: str, allow_insecure: bool = False) -> None:
    """
    Check that a URL uses https unless it points at the local host.

    Raises:
        ConfigurationError: If the URL is insecure and not explicitly allowed
    """
    parsed = urllib.parse.urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise ConfigurationError(f"{name} is not a valid URL: {url!r}")
    if parsed.scheme != "https" and not _is_local(url) and not allow_insecure:
        raise ConfigurationError(
            f"{name} must use https:// for security (got: {parsed.scheme}://). "
            f"Set {ENV_PREFIX}ALLOW_INSECURE=1 to allow plain HTTP for development."
        )


class GatewaySettings(BaseModel):
    """All tunables for one gateway instance."""

    # Ledger
    ledger_backend: Literal["web3", "memory"] = "web3"
    rpc_url: Optional[str] = None
    plugin_registry_address: Optional[str] = None
    usage_meter_address: Optional[str] = None
    verifier_private_key: Optional[str] = Field(None, repr=False)
    extra_verifier_keys: List[str] = Field(default_factory=list, repr=False)

    # Authentication
    auth_protocol: str = "PluginPay Auth"
    replay_window_ms: int = 300_000
    nonce_backend: Literal["bounded", "ttl"] = "bounded"
    nonce_max_entries: int = 10_000

    # Validation
    max_payload_bytes: int = MAX_PAYLOAD_BYTES
    plugin_kinds: Dict[int, PluginKind] = Field(default_factory=lambda: dict(DEFAULT_PLUGIN_KINDS))
    strict_plugin_validation: bool = False

    # Rate limiting
    rate_limit_per_window: int = 100
    rate_limit_window_ms: int = 60_000

    # Compute
    compute_backend: Literal["local", "http", "lambda"] = "local"
    compute_url: Optional[str] = None
    compute_timeout: float = 30.0
    function_name_template: str = "pluginpay-{name}-{stage}"
    stage: str = "dev"
    aws_region: Optional[str] = None

    # Large outputs
    large_output_threshold: int = 100_000
    storage_backend: Literal["memory", "local", "s3"] = "memory"
    memory_storage_max_objects: int = 1000
    storage_dir: Optional[str] = None
    s3_bucket: Optional[str] = None
    s3_prefix: str = ""

    # Ledger consumption
    consumption_max_attempts: int = 5
    consumption_backoff_base: float = 0.5
    reconcile_interval: float = 0.0

    # Advisory call log
    call_log_path: Optional[str] = None

    allow_insecure: bool = False

    @field_validator("plugin_kinds", mode="before")
    @classmethod
    def _parse_plugin_kinds(cls, value):
        if isinstance(value, str):
            return parse_plugin_kinds(value)
        return value

    @model_validator(mode="after")
    def _check_consistency(self) -> "GatewaySettings":
        for name in ("rpc_url", "compute_url"):
            url = getattr(self, name)
            if url:
                require_secure_url(name, url, self.allow_insecure)

        if self.ledger_backend == "web3":
            missing = [
                name for name in ("rpc_url", "plugin_registry_address", "usage_meter_address")
                if not getattr(self, name)
            ]
            if missing:
                raise ConfigurationError(f"web3 ledger requires: {', '.join(missing)}")
        if self.compute_backend == "http" and not self.compute_url:
            raise ConfigurationError("http compute backend requires compute_url")
        if self.storage_backend == "s3" and not self.s3_bucket:
            raise ConfigurationError("s3 storage backend requires s3_bucket")
        if self.storage_backend == "local" and not self.storage_dir:
            raise ConfigurationError("local storage backend requires storage_dir")
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "GatewaySettings":
        """
        Build settings from ``PLUGINPAY_*`` environment variables.

        Every field maps to ``PLUGINPAY_<FIELD_NAME_UPPERCASE>``. List fields are
        comma separated; ``PLUGIN_KINDS`` uses ``id:kind`` pairs, e.g.
        ``1:summarizer,2:meme_generator``.

        Args:
            environ: Mapping to read instead of ``os.environ``
            **overrides: Values that take precedence over the environment

        Returns:
            Validated settings
        """
        env = os.environ if environ is None else environ
        values: Dict[str, object] = {}
        for name, field in cls.model_fields.items():
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is None or raw == "":
                continue
            if name == "extra_verifier_keys":
                values[name] = [k.strip() for k in raw.split(",") if k.strip()]
            elif field.annotation is bool:
                values[name] = raw.strip().lower() in ("1", "true", "yes", "on")
            else:
                values[name] = raw
        values.update(overrides)
        return cls(**values)


def parse_plugin_kinds(spec: str) -> Dict[int, PluginKind]:
    """
    Parse ``"1:summarizer,2:meme_generator"`` into a plugin kind mapping.

    Raises:
        ConfigurationError: On malformed entries or unknown kinds
    """
    kinds: Dict[int, PluginKind] = {}
    for entry in spec.split(","):
        entry = entry.strip()
        if not entry:
            continue
        try:
            plugin_id, kind = entry.split(":", 1)
            kinds[int(plugin_id)] = PluginKind(kind.strip().lower())
        except ValueError as e:
            raise ConfigurationError(f"Invalid plugin kind entry {entry!r}: {e}") from e
    return kinds
