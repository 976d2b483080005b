"""
Runs a plugin job and shapes its output for receipting.
"""
import time
import logging
from typing import Any, Optional

from ..exceptions import StorageError
from ..models import DispatchResult, PluginDescriptor
from ..utils import canonical_json, short
from .providers import ComputeProvider
from .storage import InMemoryObjectStorage, ObjectStorage

logger = logging.getLogger(__name__)

LARGE_OUTPUT_THRESHOLD = 100_000


class PluginDispatcher:
    """
    Invokes the compute provider for a plugin and offloads large outputs.

    Outputs whose canonical JSON exceeds ``large_output_threshold`` bytes are
    written to object storage under ``outputs/{job_id}.json`` and replaced by
    a ``{"uri", "type": "large_output"}`` reference, which is what gets hashed
    into the receipt.

    Args:
        provider: Compute backend
        storage: Object storage for large outputs
        large_output_threshold: Inline size limit in bytes
    """

    def __init__(
        self,
        provider: ComputeProvider,
        storage: Optional[ObjectStorage] = None,
        large_output_threshold: int = LARGE_OUTPUT_THRESHOLD
    ):
        self.provider = provider
        self.storage = storage or InMemoryObjectStorage()
        self.large_output_threshold = large_output_threshold

    def dispatch(self, descriptor: PluginDescriptor, payload: Any, job_id: str) -> DispatchResult:
        """
        Run one job. Never raises; failures come back as ``success=False``.
        """
        event = {
            "jobId": job_id,
            "payload": payload,
            "timestamp": int(time.time()),
        }
        started = time.monotonic()
        try:
            response = self.provider.invoke(descriptor.name, event)
        except Exception as e:
            logger.error(f"Provider raised for plugin '{descriptor.name}' job {short(job_id)}: {e}")
            return DispatchResult(success=False, error=str(e) or type(e).__name__)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if not response.success:
            logger.info(f"Plugin '{descriptor.name}' failed job {short(job_id)}: {response.error}")
            return DispatchResult(
                success=False,
                error=response.error or "Plugin execution failed",
                execution_time_ms=elapsed_ms,
            )

        try:
            serialized = canonical_json(response.result).encode("utf-8")
        except (TypeError, ValueError, RecursionError) as e:
            return DispatchResult(
                success=False,
                error=f"Plugin returned a non-JSON result: {e}",
                execution_time_ms=elapsed_ms,
            )

        if len(serialized) <= self.large_output_threshold:
            return DispatchResult(success=True, result=response.result, execution_time_ms=elapsed_ms)

        key = f"outputs/{job_id}.json"
        try:
            uri = self.storage.put(key, serialized, "application/json")
        except StorageError as e:
            logger.error(f"Failed to offload output of job {short(job_id)}: {e}")
            return DispatchResult(success=False, error="Failed to store plugin output", execution_time_ms=elapsed_ms)

        logger.debug(f"Offloaded {len(serialized)} byte output of job {short(job_id)} to {uri}")
        return DispatchResult(
            success=True,
            result={"uri": uri, "type": "large_output"},
            execution_time_ms=elapsed_ms,
            offloaded=True,
        )
