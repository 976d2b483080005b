"""
Thread-safe rate-limited logging.

Ledger submission and counter-store failures tend to repeat once per request
while a dependency is down; this keeps them visible without flooding the log.
"""
import logging
import threading
import time
from typing import Optional

from cachetools import TTLCache

logger = logging.getLogger(__name__)

# Last emission time per "level:message" key, forgotten after an hour
_error_log_cache: TTLCache = TTLCache(maxsize=1024, ttl=3600)
_error_log_cache_lock = threading.RLock()


def rate_limited_log(
    message: str,
    level: str = "warning",
    interval: int = 60,
    logger_instance: Optional[logging.Logger] = None
) -> bool:
    """
    Log a message at most once per ``interval`` seconds, in a thread-safe manner.

    Args:
        message: Message to log
        level: Log level (debug, info, warning, error, critical)
        interval: Minimum interval between identical logs in seconds
        logger_instance: Logger to use (defaults to module logger)

    Returns:
        True if the message was emitted, False if it was suppressed
    """
    log_instance = logger_instance or logger
    log_method = getattr(log_instance, level.lower(), log_instance.warning)
    key = f"{level}:{message}"

    with _error_log_cache_lock:
        now = time.monotonic()
        last_time = _error_log_cache.get(key)
        if last_time is not None and now - last_time < interval:
            return False
        log_method(message)
        _error_log_cache[key] = now
        return True


def reset_rate_limited_log() -> None:
    """Forget all suppression state."""
    with _error_log_cache_lock:
        _error_log_cache.clear()
