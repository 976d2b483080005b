"""
Escrow check performed before any compute is spent.
"""
import logging

from .exceptions import EscrowError
from .ledger.transport import LedgerTransport
from .models import PluginDescriptor
from .utils import short

logger = logging.getLogger(__name__)


class EscrowGate:
    """
    Admits a call only if the caller's prepaid balance covers the plugin price.

    The balance is read from the ledger on every call. The check is not a
    reservation: concurrent calls may all pass against the same balance, and
    the ledger's ``consume`` is the final arbiter.
    """

    def __init__(self, ledger: LedgerTransport):
        self.ledger = ledger

    def check(self, caller: str, descriptor: PluginDescriptor) -> int:
        """
        Args:
            caller: Authenticated caller address
            descriptor: Plugin being called

        Returns:
            Balance that was read

        Raises:
            EscrowError: If the balance is short or cannot be read
        """
        try:
            balance = self.ledger.get_escrow(caller, descriptor.plugin_id)
        except Exception as e:
            logger.error(f"Escrow read failed for {short(caller)} on plugin {descriptor.plugin_id}: {e}")
            raise EscrowError() from e

        if balance < descriptor.price_per_call:
            logger.info(
                f"Insufficient escrow for {short(caller)} on plugin {descriptor.plugin_id}: "
                f"{balance} < {descriptor.price_per_call}"
            )
            raise EscrowError()
        return balance
