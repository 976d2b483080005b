"""
Bulk object storage for plugin outputs too large to return inline.
"""
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from cachetools import TTLCache
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import StorageError

logger = logging.getLogger(__name__)


class ObjectStorage(ABC):
    """Write-only key/value blob store addressed by URI."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str = "application/json") -> str:
        """
        Store ``data`` under ``key``.

        Returns:
            URI the object can be fetched from

        Raises:
            StorageError: If the write fails
        """
        pass


class InMemoryObjectStorage(ObjectStorage):
    """
    Process-local storage for development and tests.

    Objects expire after ``ttl_seconds`` and at most ``max_objects`` are kept;
    the least recently used is evicted when full.
    """

    def __init__(self, max_objects: int = 1000, ttl_seconds: float = 3600):
        self.objects: TTLCache = TTLCache(maxsize=max_objects, ttl=ttl_seconds)
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: str = "application/json") -> str:
        with self._lock:
            self.objects[key] = (bytes(data), content_type)
        return f"memory://{key}"

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self.objects.get(key)
        return entry[0] if entry else None


class LocalObjectStorage(ObjectStorage):
    """Stores objects as files under a root directory."""

    def __init__(self, root: str):
        self.root = Path(root).expanduser().resolve()

    def put(self, key: str, data: bytes, content_type: str = "application/json") -> str:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise StorageError(f"Key escapes storage root: {key!r}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(path)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e
        return path.as_uri()


class S3ObjectStorage(ObjectStorage):
    """
    Amazon S3 (or compatible) storage.

    Args:
        bucket: Target bucket
        prefix: Key prefix prepended to every object
        region: AWS region; defaults to the boto3 environment
        endpoint_url: Alternative endpoint for S3-compatible services
        client: Pre-built boto3 S3 client
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client=None
    ):
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        if client is None:
            config = BotoConfig(
                retries={"max_attempts": 5, "mode": "standard"},
                connect_timeout=10,
                read_timeout=60,
            )
            client = boto3.client("s3", region_name=region, endpoint_url=endpoint_url, config=config)
        self.client = client

    def _full_key(self, key: str) -> str:
        return f"{self.prefix}/{key}" if self.prefix else key

    def put(self, key: str, data: bytes, content_type: str = "application/json") -> str:
        full_key = self._full_key(key)
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=full_key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 upload of {full_key} failed: {e}")
            raise StorageError(f"S3 upload failed: {e}") from e
        return f"s3://{self.bucket}/{full_key}"


def get_object_storage(settings) -> ObjectStorage:
    """Build the storage backend named by the gateway settings."""
    if settings.storage_backend == "s3":
        return S3ObjectStorage(settings.s3_bucket, settings.s3_prefix, region=settings.aws_region)
    if settings.storage_backend == "local":
        return LocalObjectStorage(settings.storage_dir)
    if settings.ledger_backend == "web3":
        logger.warning("Large outputs are kept in process memory; set storage_backend to local or s3")
    return InMemoryObjectStorage(max_objects=settings.memory_storage_max_objects)
