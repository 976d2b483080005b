"""
In-memory ledger for development and testing.

Mirrors the behaviour the gateway relies on from the real contracts: a plugin
registry, per (caller, plugin) escrow, and an idempotent ``consume`` that only
accepts receipts signed by the plugin's verifier.
"""
import logging
import threading
from typing import Dict, List, Optional, Tuple

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from ..exceptions import LedgerError
from ..models import PluginDescriptor
from ..utils import keccak_hex, short
from .transport import LedgerTransport

logger = logging.getLogger(__name__)


class StubLedgerTransport(LedgerTransport):
    """
    Thread-safe in-memory ledger.

    Attributes:
        consumed: Receipt hash -> (plugin id, cost) for every accepted debit
        submissions: Every ``consume`` call in arrival order, accepted or not
    """

    def __init__(self):
        self._plugins: Dict[int, PluginDescriptor] = {}
        self._escrow: Dict[Tuple[str, int], int] = {}
        self._receipt_callers: Dict[str, str] = {}
        self.consumed: Dict[str, Tuple[int, int]] = {}
        self.submissions: List[str] = []
        self._lock = threading.RLock()

    def register_plugin(self, descriptor: PluginDescriptor) -> None:
        with self._lock:
            self._plugins[descriptor.plugin_id] = descriptor

    def prepay(self, caller: str, plugin_id: int, amount: int) -> int:
        """Credit escrow; returns the new balance."""
        if amount < 0:
            raise ValueError("amount must be non-negative")
        key = (caller.lower(), plugin_id)
        with self._lock:
            self._escrow[key] = self._escrow.get(key, 0) + amount
            return self._escrow[key]

    def bind_receipt(self, receipt_hash: str, caller: str) -> None:
        """
        Tell the ledger which caller a receipt debits.

        The on-chain meter resolves the payer itself. The stub only debits
        escrow for receipts bound here; unbound receipts are recorded without
        a debit.
        """
        with self._lock:
            self._receipt_callers[receipt_hash.lower()] = caller.lower()

    def get_plugin(self, plugin_id: int) -> Optional[PluginDescriptor]:
        with self._lock:
            descriptor = self._plugins.get(plugin_id)
            return descriptor.model_copy() if descriptor else None

    def get_escrow(self, caller: str, plugin_id: int) -> int:
        with self._lock:
            return self._escrow.get((caller.lower(), plugin_id), 0)

    def consume(
        self,
        plugin_id: int,
        receipt_hash: str,
        cost: int,
        signature: str,
        account: LocalAccount
    ) -> str:
        with self._lock:
            self.submissions.append(receipt_hash)
            key = receipt_hash.lower()
            tx_hash = keccak_hex(f"consume:{key}")
            if key in self.consumed:
                logger.debug(f"Receipt {short(receipt_hash)} already consumed")
                return tx_hash

            descriptor = self._plugins.get(plugin_id)
            if descriptor is None:
                raise LedgerError(f"Unknown plugin {plugin_id}")

            try:
                recovered = Account.recover_message(
                    encode_defunct(primitive=bytes.fromhex(key.removeprefix("0x"))),
                    signature=signature
                )
            except Exception as e:
                raise LedgerError(f"Malformed receipt signature: {e}") from e
            if descriptor.verifier_key and recovered.lower() != descriptor.verifier_key.lower():
                raise LedgerError("Receipt not signed by plugin verifier")

            caller = self._receipt_callers.get(key)
            if caller is not None:
                balance = self._escrow.get((caller, plugin_id), 0)
                if balance < cost:
                    raise LedgerError("Insufficient escrow for consumption")
                self._escrow[(caller, plugin_id)] = balance - cost

            self.consumed[key] = (plugin_id, cost)
            logger.info(f"Consumed {cost} for plugin {plugin_id}, receipt {short(receipt_hash)}")
            return tx_hash

    def is_consumed(self, receipt_hash: str) -> bool:
        with self._lock:
            return receipt_hash.lower() in self.consumed
