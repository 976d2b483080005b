"""
Compute providers that run plugin code.

A provider receives the plugin name and an event ``{jobId, payload, timestamp}``
and reports the outcome as a ``ProviderResponse``. Providers never raise for
plugin failures; the dispatcher treats any exception that escapes as a failure
too.
"""
import json
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Optional

import boto3
import requests
from botocore.config import Config as BotoConfig
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..models import ProviderResponse

logger = logging.getLogger(__name__)

DEFAULT_FUNCTION_TEMPLATE = "pluginpay-{name}-{stage}"
PROVIDER_UNAVAILABLE = "Plugin provider unavailable"

PluginHandler = Callable[[Dict[str, Any]], Any]


def function_name(template: str, name: str, stage: str) -> str:
    """Deployed function name for a plugin, e.g. ``pluginpay-summarizer-dev``."""
    return template.format(name=name, stage=stage)


def unwrap_handler_response(response: Any) -> ProviderResponse:
    """
    Interpret a plugin handler's response document.

    Handlers answer either ``{"statusCode", "body": "<json>"}`` with
    ``body.result`` carrying the output, or report ``errorMessage`` when the
    runtime caught an exception.
    """
    if not isinstance(response, dict):
        return ProviderResponse(success=False, error="Malformed plugin response")

    if response.get("errorMessage"):
        return ProviderResponse(success=False, error=str(response["errorMessage"]))

    status = response.get("statusCode", 200)
    body = response.get("body")
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError:
            return ProviderResponse(success=False, error="Malformed plugin response body")

    if not isinstance(body, dict):
        return ProviderResponse(success=False, error="Malformed plugin response body")

    if status != 200 or body.get("success") is False:
        return ProviderResponse(success=False, error=str(body.get("error") or "Plugin execution failed"))

    if "result" not in body:
        return ProviderResponse(success=False, error="Plugin response missing result")
    return ProviderResponse(success=True, result=body["result"])


class ComputeProvider(ABC):
    """Abstract base class for compute backends."""

    @abstractmethod
    def invoke(self, name: str, event: Dict[str, Any]) -> ProviderResponse:
        """
        Run a plugin.

        Args:
            name: Plugin name from the registry
            event: Invocation event

        Returns:
            Provider response
        """
        pass

    def close(self) -> None:
        pass


class LocalComputeProvider(ComputeProvider):
    """
    Runs in-process Python callables, each bounded by a timeout.

    Handlers take the event and return the result value directly; raising
    marks the call as failed. A handler that overruns the timeout keeps its
    worker thread until it returns.
    """

    def __init__(
        self,
        handlers: Optional[Dict[str, PluginHandler]] = None,
        timeout: float = 30.0,
        max_workers: int = 8
    ):
        self.handlers: Dict[str, PluginHandler] = dict(handlers or {})
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="plugin")
        self._lock = threading.Lock()

    def register(self, name: str, handler: PluginHandler) -> None:
        with self._lock:
            self.handlers[name] = handler

    def invoke(self, name: str, event: Dict[str, Any]) -> ProviderResponse:
        with self._lock:
            handler = self.handlers.get(name)
        if handler is None:
            return ProviderResponse(success=False, error=f"No handler registered for plugin '{name}'")

        future = self._executor.submit(handler, event)
        try:
            result = future.result(timeout=self.timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(f"Plugin '{name}' timed out after {self.timeout}s")
            return ProviderResponse(success=False, error=f"Plugin timed out after {self.timeout}s")
        except Exception as e:
            logger.warning(f"Plugin '{name}' raised: {e}")
            return ProviderResponse(success=False, error=str(e) or type(e).__name__)
        return ProviderResponse(success=True, result=result)

    def close(self) -> None:
        self._executor.shutdown(wait=False)


class HttpComputeProvider(ComputeProvider):
    """
    Invokes plugins deployed behind an HTTP endpoint.

    The request goes to ``{base_url}/{function_name}`` with the event as the
    JSON body; the response is the handler response document.
    """

    def __init__(
        self,
        base_url: str,
        stage: str = "dev",
        function_template: str = DEFAULT_FUNCTION_TEMPLATE,
        timeout: float = 30.0,
        retry_count: int = 2,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.stage = stage
        self.function_template = function_template
        self.timeout = timeout

        if session is None:
            session = requests.Session()
            # Only connection failures are retried; a plugin that answered may have run
            retries = Retry(
                total=retry_count,
                connect=retry_count,
                read=0,
                status=0,
                backoff_factor=0.5,
                allowed_methods=["POST"],
                raise_on_status=False
            )
            session.mount("http://", HTTPAdapter(max_retries=retries))
            session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session = session

    def invoke(self, name: str, event: Dict[str, Any]) -> ProviderResponse:
        url = f"{self.base_url}/{function_name(self.function_template, name, self.stage)}"
        try:
            response = self.session.post(url, json=event, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Plugin request to {url} failed: {e}")
            return ProviderResponse(success=False, error=PROVIDER_UNAVAILABLE)

        if not 200 <= response.status_code < 300:
            logger.warning(f"Plugin endpoint {url} returned HTTP {response.status_code}")
            return ProviderResponse(success=False, error=f"Plugin endpoint returned HTTP {response.status_code}")

        try:
            document = response.json()
        except ValueError:
            return ProviderResponse(success=False, error="Plugin endpoint returned invalid JSON")
        return unwrap_handler_response(document)

    def close(self) -> None:
        self.session.close()


class LambdaComputeProvider(ComputeProvider):
    """Invokes plugins deployed as AWS Lambda functions, synchronously."""

    def __init__(
        self,
        stage: str = "dev",
        function_template: str = DEFAULT_FUNCTION_TEMPLATE,
        region: Optional[str] = None,
        timeout: float = 30.0,
        client=None
    ):
        self.stage = stage
        self.function_template = function_template
        if client is None:
            config = BotoConfig(read_timeout=timeout, retries={"max_attempts": 0})
            client = boto3.client("lambda", region_name=region, config=config)
        self.client = client

    def invoke(self, name: str, event: Dict[str, Any]) -> ProviderResponse:
        fn = function_name(self.function_template, name, self.stage)
        try:
            result = self.client.invoke(
                FunctionName=fn,
                InvocationType="RequestResponse",
                Payload=json.dumps(event).encode("utf-8"),
            )
            raw = result["Payload"].read()
            document = json.loads(raw) if raw else None
        except Exception as e:
            logger.warning(f"Lambda invoke of {fn} failed: {e}")
            return ProviderResponse(success=False, error=PROVIDER_UNAVAILABLE)

        if result.get("StatusCode") != 200 or result.get("FunctionError"):
            error = None
            if isinstance(document, dict):
                error = document.get("errorMessage")
            return ProviderResponse(success=False, error=error or "Plugin execution failed")
        return unwrap_handler_response(document)


def get_compute_provider(settings, handlers: Optional[Dict[str, PluginHandler]] = None) -> ComputeProvider:
    """Build the compute provider named by the gateway settings."""
    if settings.compute_backend == "http":
        return HttpComputeProvider(
            settings.compute_url,
            stage=settings.stage,
            function_template=settings.function_name_template,
            timeout=settings.compute_timeout,
        )
    if settings.compute_backend == "lambda":
        return LambdaComputeProvider(
            stage=settings.stage,
            function_template=settings.function_name_template,
            region=settings.aws_region,
            timeout=settings.compute_timeout,
        )
    return LocalComputeProvider(handlers, timeout=settings.compute_timeout)
