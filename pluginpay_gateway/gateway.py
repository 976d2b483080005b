"""
The plugin call pipeline.

Each call runs, in order: authentication, payload validation, plugin lookup,
verifier resolution, escrow check, rate limiting, dispatch, receipt issuance,
and hand-off of the ledger debit to the background queue. A failure at any
step ends the call; nothing after it runs and the caller is not charged.
"""
import time
import logging
import uuid
from typing import Any, Callable, Dict, Mapping, Optional

from . import metrics
from .audit import CallLog
from .auth import InMemoryNonceStore, RequestAuthenticator, TTLNonceStore
from .auth.authenticator import HEADER_SIGNATURE, HEADER_TIMESTAMP
from .config import GatewaySettings
from .dispatch import PluginDispatcher, get_compute_provider, get_object_storage
from .escrow import EscrowGate
from .exceptions import (
    DispatchError,
    InternalError,
    LedgerError,
    NotFoundError,
    PluginPayError,
    RateLimitError,
    ValidationError,
)
from .ledger import LedgerTransport, get_ledger_transport
from .models import CallRequest, GatewayResponse, PluginDescriptor
from .oracle import ConsumptionQueue, ReceiptOracle, VerifierKeyring
from .ratelimit import RateLimiter
from .utils import contains_lone_surrogate, generate_job_id, json_keccak, short
from .validation import PayloadValidator

logger = logging.getLogger(__name__)


class PluginGateway:
    """
    Authenticates, validates, prices, dispatches and receipts plugin calls.

    Components are injected so that each can be replaced independently; use
    ``build_gateway`` to assemble one from settings.
    """

    def __init__(
        self,
        ledger: LedgerTransport,
        authenticator: RequestAuthenticator,
        validator: PayloadValidator,
        escrow: EscrowGate,
        rate_limiter: RateLimiter,
        dispatcher: PluginDispatcher,
        oracle: ReceiptOracle,
        consumption: ConsumptionQueue,
        call_log: Optional[CallLog] = None,
        clock: Optional[Callable[[], int]] = None
    ):
        self.ledger = ledger
        self.authenticator = authenticator
        self.validator = validator
        self.escrow = escrow
        self.rate_limiter = rate_limiter
        self.dispatcher = dispatcher
        self.oracle = oracle
        self.consumption = consumption
        self.call_log = call_log or CallLog()
        self._clock = clock or (lambda: int(time.time() * 1000))

    @staticmethod
    def _to_call_request(caller: str, plugin_id: int, headers: Mapping[str, str], body: Any) -> CallRequest:
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        if contains_lone_surrogate(body):
            raise ValidationError("Request body contains invalid Unicode")
        normalized = {str(k).lower(): v for k, v in headers.items()}
        metadata = body.get("metadata")
        return CallRequest(
            caller=caller,
            plugin_id=plugin_id,
            payload=body.get("payload"),
            metadata=metadata if isinstance(metadata, dict) else None,
            timestamp=int(normalized[HEADER_TIMESTAMP]),
            signature=normalized[HEADER_SIGNATURE],
        )

    def _lookup_plugin(self, plugin_id: int) -> PluginDescriptor:
        try:
            descriptor = self.ledger.get_plugin(plugin_id)
        except LedgerError as e:
            logger.error(f"Plugin lookup failed for {plugin_id}: {e}")
            raise InternalError() from e
        if descriptor is None or not descriptor.active:
            raise NotFoundError()
        return descriptor

    def call(
        self,
        plugin_id: int,
        headers: Mapping[str, str],
        body: Any,
        request_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Run one plugin call.

        Args:
            plugin_id: Ledger id of the plugin, taken from the request path
            headers: Request headers
            body: Decoded JSON request body ``{payload, metadata?}``
            request_id: Transport request id; generated when omitted

        Returns:
            Success response body

        Raises:
            PluginPayError: Subclass matching the step that rejected the call
        """
        request_id = request_id or str(uuid.uuid4())

        caller = self.authenticator.authenticate(headers, body)
        request = self._to_call_request(caller, plugin_id, headers, body)
        payload = request.payload
        self.validator.validate(payload, plugin_id)

        descriptor = self._lookup_plugin(plugin_id)
        verifier = self.oracle.keyring.resolve(descriptor)

        self.escrow.check(caller, descriptor)

        limit = self.rate_limiter.acquire(caller, plugin_id)
        if not limit.allowed:
            raise RateLimitError(reset_time=limit.reset_time)

        job_id = generate_job_id(request_id, caller, plugin_id, self._clock())
        input_hash = json_keccak(payload)

        outcome = self.dispatcher.dispatch(descriptor, payload, job_id)
        if not outcome.success:
            raise DispatchError(f"Plugin execution failed: {outcome.error}")

        output_hash = json_keccak(outcome.result)
        receipt = self.oracle.issue(descriptor, job_id, caller, input_hash, output_hash, account=verifier)

        self.consumption.enqueue(receipt, verifier)
        self.call_log.record(
            job_id=job_id,
            plugin_id=plugin_id,
            caller=caller,
            cost=receipt.cost,
            timestamp=receipt.timestamp,
            success=True,
            receipt_hash=receipt.hash,
        )
        metrics.record_call(plugin_id, receipt.cost)
        logger.info(
            f"Job {short(job_id)} for {short(caller)} on plugin {plugin_id} "
            f"completed in {outcome.execution_time_ms}ms"
        )

        return {
            "success": True,
            "jobId": job_id,
            "result": outcome.result,
            "receipt": receipt.to_wire(),
            "metadata": {
                "pluginName": descriptor.name,
                "version": str(descriptor.version),
                "executionTime": outcome.execution_time_ms,
            },
        }

    def handle(
        self,
        plugin_id: int,
        headers: Mapping[str, str],
        body: Any,
        request_id: Optional[str] = None
    ) -> GatewayResponse:
        """
        Run one plugin call and map the outcome to a status code and body.

        Error bodies are ``{"success": false, "error": message}`` and never
        carry internal details.
        """
        try:
            return GatewayResponse(status_code=200, body=self.call(plugin_id, headers, body, request_id))
        except PluginPayError as e:
            if e.status_code >= 500:
                logger.error(f"Plugin {plugin_id} call failed: {e.message}")
            else:
                logger.debug(f"Plugin {plugin_id} call rejected ({e.status_code}): {e.message}")
            return GatewayResponse(status_code=e.status_code, body={"success": False, "error": e.message})
        except Exception:
            logger.exception(f"Gateway error on plugin {plugin_id}")
            return GatewayResponse(status_code=500, body={"success": False, "error": "Internal server error"})

    def close(self) -> None:
        """Stop background work and release transports."""
        self.consumption.stop()
        self.dispatcher.provider.close()
        self.ledger.close()


def build_gateway(
    settings: GatewaySettings,
    ledger: Optional[LedgerTransport] = None,
    handlers: Optional[Dict[str, Callable]] = None
) -> PluginGateway:
    """
    Assemble a gateway from settings.

    Args:
        settings: Gateway settings
        ledger: Ledger transport to use instead of the configured one
        handlers: Plugin name -> callable, for the local compute backend

    Returns:
        Ready-to-use gateway with its consumption worker started
    """
    ledger = ledger or get_ledger_transport(settings)

    if settings.nonce_backend == "ttl":
        nonce_store = TTLNonceStore(ttl_seconds=settings.replay_window_ms / 1000)
    else:
        nonce_store = InMemoryNonceStore(max_entries=settings.nonce_max_entries)

    keyring = VerifierKeyring(settings.verifier_private_key, settings.extra_verifier_keys)
    if not keyring.addresses:
        logger.warning("No verifier keys configured; every call will fail at receipt signing")

    consumption = ConsumptionQueue(
        ledger,
        max_attempts=settings.consumption_max_attempts,
        backoff_base=settings.consumption_backoff_base,
        reconcile_interval=settings.reconcile_interval,
    )
    consumption.start()

    return PluginGateway(
        ledger=ledger,
        authenticator=RequestAuthenticator(
            nonce_store,
            window_ms=settings.replay_window_ms,
            protocol=settings.auth_protocol,
        ),
        validator=PayloadValidator(
            plugin_kinds=settings.plugin_kinds,
            max_payload_bytes=settings.max_payload_bytes,
            strict=settings.strict_plugin_validation,
        ),
        escrow=EscrowGate(ledger),
        rate_limiter=RateLimiter(
            limit=settings.rate_limit_per_window,
            window_ms=settings.rate_limit_window_ms,
        ),
        dispatcher=PluginDispatcher(
            get_compute_provider(settings, handlers),
            get_object_storage(settings),
            large_output_threshold=settings.large_output_threshold,
        ),
        oracle=ReceiptOracle(keyring),
        consumption=consumption,
        call_log=CallLog(settings.call_log_path),
    )
