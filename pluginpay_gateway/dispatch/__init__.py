from .dispatcher import PluginDispatcher, LARGE_OUTPUT_THRESHOLD
from .providers import (
    ComputeProvider,
    LocalComputeProvider,
    HttpComputeProvider,
    LambdaComputeProvider,
    get_compute_provider,
)
from .storage import (
    ObjectStorage,
    InMemoryObjectStorage,
    LocalObjectStorage,
    S3ObjectStorage,
    get_object_storage,
)

__all__ = [
    "PluginDispatcher",
    "LARGE_OUTPUT_THRESHOLD",
    "ComputeProvider",
    "LocalComputeProvider",
    "HttpComputeProvider",
    "LambdaComputeProvider",
    "get_compute_provider",
    "ObjectStorage",
    "InMemoryObjectStorage",
    "LocalObjectStorage",
    "S3ObjectStorage",
    "get_object_storage",
]
