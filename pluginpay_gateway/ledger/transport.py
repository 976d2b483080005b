"""
Transport layer for the external ledger.

The gateway only ever reads plugin descriptors and escrow balances from the
ledger, and asks it to debit escrow with a receipt signed by the plugin's
verifier key. This module defines that surface and picks an implementation
from configuration.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional, TYPE_CHECKING

from eth_account.signers.local import LocalAccount

from ..models import PluginDescriptor

if TYPE_CHECKING:
    from ..config import GatewaySettings

logger = logging.getLogger(__name__)


class LedgerTransport(ABC):
    """
    Abstract base class for ledger implementations.

    Reads must reflect the ledger's current state; implementations do not
    cache descriptors or balances.
    """

    @abstractmethod
    def get_plugin(self, plugin_id: int) -> Optional[PluginDescriptor]:
        """
        Fetch the registry entry for a plugin.

        Args:
            plugin_id: Ledger id of the plugin

        Returns:
            Descriptor, or None if the registry has no such plugin

        Raises:
            LedgerError: If the registry cannot be read
        """
        pass

    @abstractmethod
    def get_escrow(self, caller: str, plugin_id: int) -> int:
        """
        Fetch the caller's prepaid balance for a plugin, in token base units.

        Raises:
            LedgerError: If the balance cannot be read
        """
        pass

    @abstractmethod
    def consume(
        self,
        plugin_id: int,
        receipt_hash: str,
        cost: int,
        signature: str,
        account: LocalAccount
    ) -> str:
        """
        Submit a consumption authorisation.

        Args:
            plugin_id: Ledger id of the plugin
            receipt_hash: 0x-prefixed receipt hash, the ledger's dedupe key
            cost: Amount to debit
            signature: Verifier signature over the receipt hash
            account: Verifier account that sends the transaction

        Returns:
            Transaction hash

        Raises:
            LedgerError: If the submission is rejected or cannot be sent
        """
        pass

    def is_consumed(self, receipt_hash: str) -> bool:
        """
        Whether the ledger already recorded this receipt.

        Transports that cannot answer return False, which makes resubmission
        rely on the ledger's own idempotence.
        """
        return False

    def close(self) -> None:
        """Close any open connections or resources."""
        pass


def get_ledger_transport(settings: "GatewaySettings") -> LedgerTransport:
    """
    Build the ledger transport named by the settings.

    Args:
        settings: Gateway settings

    Returns:
        Ledger transport implementation
    """
    if settings.ledger_backend == "web3":
        from .web3_transport import Web3LedgerTransport
        logger.info(f"Using web3 ledger at {settings.rpc_url}")
        return Web3LedgerTransport(
            rpc_url=settings.rpc_url,
            plugin_registry_address=settings.plugin_registry_address,
            usage_meter_address=settings.usage_meter_address,
        )

    from .stub_transport import StubLedgerTransport
    logger.warning("Using in-memory ledger (not for production)")
    return StubLedgerTransport()
