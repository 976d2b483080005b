"""
Advisory record of completed plugin calls.

Each call is appended to a JSON-lines file. The log is for analytics only; a
write failure never affects the call it describes.
"""
import json
import time
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import portalocker

logger = logging.getLogger(__name__)

RETENTION_SECONDS = 30 * 24 * 60 * 60


class CallLog:
    """
    Append-only call log shared safely between processes.

    Args:
        path: JSON-lines file to append to; ``None`` disables logging
        lock_timeout: Seconds to wait for the file lock
    """

    def __init__(self, path: Optional[str] = None, lock_timeout: float = 10):
        self.path = Path(path).expanduser() if path else None
        self.lock_timeout = lock_timeout
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def _get_lock_path(self) -> str:
        return str(self.path) + '.lock'

    def record(
        self,
        job_id: str,
        plugin_id: int,
        caller: str,
        cost: int,
        timestamp: int,
        success: bool = True,
        receipt_hash: Optional[str] = None
    ) -> bool:
        """
        Append one entry.

        Returns:
            True if the entry was written
        """
        if self.path is None:
            return False

        entry = {
            "jobId": job_id,
            "pluginId": plugin_id,
            "caller": caller,
            "cost": str(cost),
            "timestamp": timestamp,
            "success": success,
            "receiptHash": receipt_hash,
            "ttl": int(time.time()) + RETENTION_SECONDS,
        }
        try:
            with portalocker.Lock(self._get_lock_path(), timeout=self.lock_timeout):
                with open(self.path, 'a', encoding='utf-8') as f:
                    f.write(json.dumps(entry, separators=(",", ":")) + "\n")
        except (OSError, portalocker.exceptions.LockException) as e:
            logger.warning(f"Failed to write call log entry for job {job_id}: {e}")
            return False
        return True

    def entries(self) -> Iterator[Dict[str, Any]]:
        """Iterate over logged entries, oldest first, skipping corrupt lines."""
        if self.path is None or not self.path.exists():
            return
        with portalocker.Lock(self._get_lock_path(), timeout=self.lock_timeout):
            with open(self.path, 'r', encoding='utf-8') as f:
                lines = f.readlines()
        for line in lines:
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                continue
