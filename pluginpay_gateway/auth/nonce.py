"""
Replay protection for signed requests.

A request is identified by its (caller, timestamp) pair. Stores must make
the membership check and the insert a single atomic step.
"""
import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Tuple

from cachetools import TTLCache

logger = logging.getLogger(__name__)

NonceKey = Tuple[str, int]


def nonce_key(caller: str, timestamp: int) -> NonceKey:
    return caller.lower(), int(timestamp)


class NonceStore(ABC):
    """
    Abstract store of seen (caller, timestamp) pairs.

    Implementations backed by an external keyed store must use a
    conditional put so that concurrent gateway instances agree.
    """

    @abstractmethod
    def check_and_insert(self, caller: str, timestamp: int) -> bool:
        """
        Record a pair if it has not been seen.

        Returns:
            True if the pair was new and is now recorded, False if it was a replay
        """
        pass

    @abstractmethod
    def __len__(self) -> int:
        pass


class InMemoryNonceStore(NonceStore):
    """
    Bounded in-process nonce cache.

    When the number of entries exceeds ``max_entries`` the oldest half, in
    insertion order, is evicted. Entries older than the replay window are
    already rejected by the timestamp check, so eviction only has to keep
    memory bounded.
    """

    def __init__(self, max_entries: int = 10_000):
        if max_entries < 2:
            raise ValueError("max_entries must be at least 2")
        self.max_entries = max_entries
        self._entries: "OrderedDict[NonceKey, None]" = OrderedDict()
        self._lock = threading.RLock()

    def check_and_insert(self, caller: str, timestamp: int) -> bool:
        key = nonce_key(caller, timestamp)
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = None
            if len(self._entries) > self.max_entries:
                self._evict_oldest_half()
            return True

    def _evict_oldest_half(self) -> None:
        evict = self.max_entries // 2
        for _ in range(evict):
            self._entries.popitem(last=False)
        logger.debug(f"Evicted {evict} nonce entries, {len(self._entries)} remain")

    def __contains__(self, key: NonceKey) -> bool:
        with self._lock:
            return nonce_key(*key) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class TTLNonceStore(NonceStore):
    """
    Nonce cache with exact expiry.

    Args:
        ttl_seconds: The replay window; entries live for twice this long
        max_entries: Hard cap; TTLCache evicts least recently used past it
    """

    def __init__(self, ttl_seconds: float = 300.0, max_entries: int = 100_000):
        # Twice the window: a timestamp is acceptable up to one window either side of now
        self._cache: TTLCache = TTLCache(maxsize=max_entries, ttl=ttl_seconds * 2)
        self._lock = threading.RLock()

    def check_and_insert(self, caller: str, timestamp: int) -> bool:
        key = nonce_key(caller, timestamp)
        with self._lock:
            if key in self._cache:
                return False
            self._cache[key] = True
            return True

    def __contains__(self, key: NonceKey) -> bool:
        with self._lock:
            return nonce_key(*key) in self._cache

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
