"""
Background delivery of consumption authorisations to the ledger.

Receipts are enqueued as soon as they are issued and the caller's response is
sent without waiting. A daemon worker submits each one with retries; the
receipt hash is the dedupe key, so redelivery after a crash or a reconcile
sweep cannot double-charge as long as the ledger rejects repeated hashes.
"""
import queue
import random
import threading
import time
import logging
from typing import Dict, List, Optional

from cachetools import TTLCache
from eth_account.signers.local import LocalAccount

from .._rate_limited_log import rate_limited_log
from ..ledger.transport import LedgerTransport
from ..models import ConsumptionRequest, Receipt
from ..utils import short

logger = logging.getLogger(__name__)

_STOP = object()

DELIVERED_TTL_SECONDS = 24 * 3600
DELIVERED_MAX_ENTRIES = 100_000


class ConsumptionQueue:
    """
    At-least-once submitter for ``consume`` calls.

    Args:
        ledger: Ledger transport to submit to
        max_attempts: Submissions tried before an item is dead-lettered
        backoff_base: First retry delay in seconds; doubles per attempt
        reconcile_interval: Seconds between automatic dead-letter sweeps (0 disables)
        delivered_ttl: Seconds a confirmed receipt is remembered for de-duplication
        delivered_max: Most confirmed receipts remembered at once

    Receipts forgotten after ``delivered_ttl`` are still de-duplicated by the
    ledger's own consumed check before any resubmission.
    """

    def __init__(
        self,
        ledger: LedgerTransport,
        max_attempts: int = 5,
        backoff_base: float = 0.5,
        reconcile_interval: float = 0.0,
        delivered_ttl: float = DELIVERED_TTL_SECONDS,
        delivered_max: int = DELIVERED_MAX_ENTRIES
    ):
        self.ledger = ledger
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.reconcile_interval = reconcile_interval

        self._queue: "queue.Queue" = queue.Queue()
        self._accounts: Dict[str, LocalAccount] = {}
        self._delivered: TTLCache = TTLCache(maxsize=delivered_max, ttl=delivered_ttl)
        self._pending: set = set()
        self.dead_letters: List[ConsumptionRequest] = []
        self._lock = threading.RLock()
        self._stopping = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._sweeper: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the worker thread (and the sweeper, if enabled). Idempotent."""
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._stopping.clear()
            self._worker = threading.Thread(target=self._run, name="pluginpay-consume", daemon=True)
            self._worker.start()
            if self.reconcile_interval > 0:
                self._sweeper = threading.Thread(target=self._sweep, name="pluginpay-reconcile", daemon=True)
                self._sweeper.start()

    def enqueue(self, receipt: Receipt, account: LocalAccount) -> bool:
        """
        Queue the ledger debit for a receipt.

        Returns:
            False if the receipt is already delivered or pending
        """
        key = receipt.hash.lower()
        with self._lock:
            if key in self._delivered or key in self._pending:
                return False
            self._pending.add(key)
            self._accounts[key] = account

        request = ConsumptionRequest(
            plugin_id=receipt.plugin_id,
            receipt_hash=receipt.hash,
            cost=receipt.cost,
            signature=receipt.signature,
            verifier=account.address,
        )
        self._queue.put(request)
        if self._worker is None:
            self.start()
        return True

    @property
    def delivered(self) -> Dict[str, str]:
        """Receipt hash -> transaction hash for every confirmed submission."""
        with self._lock:
            return dict(self._delivered)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            except Exception as e:
                # The worker must outlive any single bad item
                logger.error(f"Unexpected error delivering consumption: {e}")
            finally:
                self._queue.task_done()

    def _deliver(self, request: ConsumptionRequest) -> None:
        key = request.receipt_hash.lower()
        with self._lock:
            account = self._accounts.get(key)

        try:
            if self.ledger.is_consumed(request.receipt_hash):
                logger.debug(f"Receipt {short(request.receipt_hash)} already on ledger")
                self._mark_delivered(key, "")
                return
        except Exception as e:
            rate_limited_log(f"Ledger consumption status check failed: {e}", level="warning")

        while request.attempts < self.max_attempts:
            request.attempts += 1
            try:
                tx_hash = self.ledger.consume(
                    request.plugin_id,
                    request.receipt_hash,
                    request.cost,
                    request.signature,
                    account,
                )
            except Exception as e:
                request.last_error = str(e)
                rate_limited_log(f"Ledger consumption failed: {e}", level="error")
                if request.attempts >= self.max_attempts or self._stopping.is_set():
                    break
                delay = self.backoff_base * (2 ** (request.attempts - 1))
                time.sleep(delay + random.uniform(0, delay / 2))
                continue

            logger.info(f"Usage consumed for plugin {request.plugin_id}, tx: {tx_hash}")
            self._mark_delivered(key, tx_hash)
            return

        logger.error(
            f"Giving up on receipt {short(request.receipt_hash)} after "
            f"{request.attempts} attempts: {request.last_error}"
        )
        with self._lock:
            self._pending.discard(key)
            self.dead_letters.append(request)

    def _mark_delivered(self, key: str, tx_hash: str) -> None:
        with self._lock:
            self._pending.discard(key)
            self._accounts.pop(key, None)
            self._delivered[key] = tx_hash

    def reconcile(self) -> int:
        """
        Re-enqueue every dead-lettered item with a fresh attempt budget.

        Returns:
            Number of items re-enqueued
        """
        with self._lock:
            retry, self.dead_letters = self.dead_letters, []
            for request in retry:
                self._pending.add(request.receipt_hash.lower())
        for request in retry:
            request.attempts = 0
            self._queue.put(request)
        if retry:
            logger.info(f"Re-enqueued {len(retry)} undelivered consumption(s)")
        return len(retry)

    def _sweep(self) -> None:
        while not self._stopping.wait(self.reconcile_interval):
            self.reconcile()

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every queued item has been processed.

        Returns:
            True if the queue drained within ``timeout``
        """
        if timeout is None:
            self._queue.join()
            return True
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the worker after it finishes the items already queued."""
        self._stopping.set()
        worker = self._worker
        if worker is None:
            return
        self._queue.put(_STOP)
        worker.join(timeout)
        with self._lock:
            self._worker = None
