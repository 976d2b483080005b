"""
Per (caller, plugin) fixed-window call limits.

The limiter is advisory: when its counter store misbehaves, calls are let
through rather than refused.
"""
import time
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

from cachetools import TTLCache

from ._rate_limited_log import rate_limited_log
from .models import RateLimitStatus

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
DEFAULT_WINDOW_MS = 60_000
COUNTER_TTL_SECONDS = 3600


class CounterStore(ABC):
    """Keyed integer counters with expiry."""

    @abstractmethod
    def get(self, key: str) -> int:
        """Current count for ``key`` (0 when absent)."""
        pass

    @abstractmethod
    def increment(self, key: str) -> int:
        """Atomically add one to ``key`` and return the new count."""
        pass

    @abstractmethod
    def increment_if_below(self, key: str, limit: int) -> Optional[int]:
        """
        Atomically add one to ``key`` unless it already holds ``limit``.

        Returns:
            The new count, or None when the counter was left at the limit
        """
        pass


class InMemoryCounterStore(CounterStore):
    def __init__(self, ttl_seconds: float = COUNTER_TTL_SECONDS, max_entries: int = 100_000):
        self._counts: TTLCache = TTLCache(maxsize=max_entries, ttl=ttl_seconds)
        self._lock = threading.RLock()

    def get(self, key: str) -> int:
        with self._lock:
            return self._counts.get(key, 0)

    def increment(self, key: str) -> int:
        with self._lock:
            count = self._counts.get(key, 0) + 1
            self._counts[key] = count
            return count

    def increment_if_below(self, key: str, limit: int) -> Optional[int]:
        with self._lock:
            count = self._counts.get(key, 0)
            if count >= limit:
                return None
            self._counts[key] = count + 1
            return count + 1


class RateLimiter:
    """
    Fixed-window limiter keyed by caller, plugin and window index.

    Args:
        store: Counter backend
        limit: Calls allowed per window
        window_ms: Window length in milliseconds
        clock: Returns the current time in milliseconds
    """

    def __init__(
        self,
        store: Optional[CounterStore] = None,
        limit: int = DEFAULT_LIMIT,
        window_ms: int = DEFAULT_WINDOW_MS,
        clock: Optional[Callable[[], int]] = None
    ):
        self.store = store or InMemoryCounterStore()
        self.limit = limit
        self.window_ms = window_ms
        self._clock = clock or (lambda: int(time.time() * 1000))

    def _window(self) -> int:
        return self._clock() // self.window_ms

    def _key(self, caller: str, plugin_id: int, window: int) -> str:
        return f"{caller.lower()}-{plugin_id}-{window}"

    def status(self, caller: str, plugin_id: int) -> RateLimitStatus:
        """
        Report the caller's allowance for the current window without consuming it.
        """
        window = self._window()
        reset_time = (window + 1) * self.window_ms
        try:
            count = self.store.get(self._key(caller, plugin_id, window))
        except Exception as e:
            rate_limited_log(f"Rate limit store read failed, allowing call: {e}", level="error")
            return RateLimitStatus(allowed=True, remaining=self.limit, reset_time=reset_time)

        return RateLimitStatus(
            allowed=count < self.limit,
            remaining=max(0, self.limit - count),
            reset_time=reset_time,
        )

    def increment(self, caller: str, plugin_id: int) -> None:
        """Count one call against the current window. Failures are only logged."""
        try:
            self.store.increment(self._key(caller, plugin_id, self._window()))
        except Exception as e:
            rate_limited_log(f"Rate limit store increment failed: {e}", level="error")

    def acquire(self, caller: str, plugin_id: int) -> RateLimitStatus:
        """
        Check the allowance and count the call in one atomic step.

        Concurrent calls can never both take the last slot of a window. A
        store failure lets the call through, as ``status`` does.
        """
        window = self._window()
        reset_time = (window + 1) * self.window_ms
        try:
            count = self.store.increment_if_below(self._key(caller, plugin_id, window), self.limit)
        except Exception as e:
            rate_limited_log(f"Rate limit store update failed, allowing call: {e}", level="error")
            return RateLimitStatus(allowed=True, remaining=self.limit, reset_time=reset_time)

        if count is None:
            return RateLimitStatus(allowed=False, remaining=0, reset_time=reset_time)
        return RateLimitStatus(allowed=True, remaining=max(0, self.limit - count), reset_time=reset_time)
