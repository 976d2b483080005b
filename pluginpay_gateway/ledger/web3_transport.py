"""
Ledger transport backed by the PluginRegistry and UsageMeter contracts.
"""
import logging
from typing import Any, Dict, Optional

from web3 import Web3
from web3.exceptions import Web3Exception
from eth_account.signers.local import LocalAccount

from ..exceptions import LedgerError
from ..models import PluginDescriptor
from ..utils import ZERO_ADDRESS, short
from .transport import LedgerTransport

logger = logging.getLogger(__name__)

DEFAULT_CONSUME_GAS = 300000


class Web3LedgerTransport(LedgerTransport):
    """
    Reads plugin descriptors and escrow balances over JSON-RPC and sends
    ``consume`` transactions signed by the verifier account.

    ``consume`` returns as soon as the transaction is broadcast; the gateway
    never waits for inclusion.
    """

    PLUGIN_REGISTRY_ABI = [
        {
            "inputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
            "name": "plugins",
            "outputs": [
                {"internalType": "string", "name": "name", "type": "string"},
                {"internalType": "string", "name": "description", "type": "string"},
                {"internalType": "string", "name": "uri", "type": "string"},
                {"internalType": "address", "name": "owner", "type": "address"},
                {"internalType": "uint256", "name": "pricePerCall", "type": "uint256"},
                {"internalType": "uint256", "name": "version", "type": "uint256"},
                {"internalType": "address", "name": "verifierPubKey", "type": "address"},
                {"internalType": "bool", "name": "active", "type": "bool"},
                {"internalType": "uint256", "name": "totalCalls", "type": "uint256"},
                {"internalType": "uint256", "name": "totalEarnings", "type": "uint256"},
                {"internalType": "uint256", "name": "createdAt", "type": "uint256"},
                {"internalType": "uint256", "name": "updatedAt", "type": "uint256"}
            ],
            "stateMutability": "view",
            "type": "function"
        }
    ]

    USAGE_METER_ABI = [
        {
            "inputs": [
                {"internalType": "address", "name": "user", "type": "address"},
                {"internalType": "uint256", "name": "pluginId", "type": "uint256"}
            ],
            "name": "getUserEscrow",
            "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
            "stateMutability": "view",
            "type": "function"
        },
        {
            "inputs": [
                {"internalType": "uint256", "name": "pluginId", "type": "uint256"},
                {"internalType": "bytes32", "name": "receiptHash", "type": "bytes32"},
                {"internalType": "uint256", "name": "cost", "type": "uint256"},
                {"internalType": "bytes", "name": "signature", "type": "bytes"}
            ],
            "name": "consume",
            "outputs": [],
            "stateMutability": "nonpayable",
            "type": "function"
        }
    ]

    def __init__(
        self,
        rpc_url: str,
        plugin_registry_address: str,
        usage_meter_address: str,
        web3: Optional[Web3] = None
    ):
        """
        Args:
            rpc_url: Ethereum JSON-RPC endpoint
            plugin_registry_address: PluginRegistry contract address
            usage_meter_address: UsageMeter contract address
            web3: Pre-built Web3 instance (tests inject a mock here)
        """
        self.rpc_url = rpc_url
        self.w3 = web3 or Web3(Web3.HTTPProvider(rpc_url))
        self.registry = self.w3.eth.contract(
            address=Web3.to_checksum_address(plugin_registry_address),
            abi=self.PLUGIN_REGISTRY_ABI
        )
        self.meter = self.w3.eth.contract(
            address=Web3.to_checksum_address(usage_meter_address),
            abi=self.USAGE_METER_ABI
        )

    def get_plugin(self, plugin_id: int) -> Optional[PluginDescriptor]:
        try:
            entry = self.registry.functions.plugins(plugin_id).call()
        except Exception as e:
            logger.error(f"Failed to read plugin {plugin_id}: {e}")
            raise LedgerError(f"Failed to read plugin {plugin_id}: {e}") from e

        name, _, _, owner, price, version, verifier, active = entry[:8]
        # Unset mapping slots come back zeroed
        if owner == ZERO_ADDRESS and not name:
            return None

        return PluginDescriptor(
            plugin_id=plugin_id,
            name=name,
            price_per_call=int(price),
            active=bool(active),
            version=int(version),
            verifier_key=verifier if verifier and verifier != ZERO_ADDRESS else None,
        )

    def get_escrow(self, caller: str, plugin_id: int) -> int:
        try:
            balance = self.meter.functions.getUserEscrow(
                Web3.to_checksum_address(caller),
                plugin_id
            ).call()
        except Exception as e:
            logger.error(f"Failed to read escrow for {short(caller)} on plugin {plugin_id}: {e}")
            raise LedgerError(f"Failed to read escrow: {e}") from e
        return int(balance)

    def consume(
        self,
        plugin_id: int,
        receipt_hash: str,
        cost: int,
        signature: str,
        account: LocalAccount
    ) -> str:
        try:
            receipt_bytes = bytes.fromhex(receipt_hash.removeprefix("0x"))
            signature_bytes = bytes.fromhex(signature.removeprefix("0x"))
        except ValueError as e:
            raise LedgerError(f"Invalid receipt encoding: {e}") from e

        call = self.meter.functions.consume(plugin_id, receipt_bytes, cost, signature_bytes)

        try:
            nonce = self.w3.eth.get_transaction_count(account.address, "pending")

            try:
                gas = call.estimate_gas({'from': account.address})
                # Add 10% buffer to gas estimate
                gas = int(gas * 1.1)
            except Exception as e:
                gas = DEFAULT_CONSUME_GAS
                logger.warning(f"Gas estimation failed, using default: {gas}. Error: {e}")

            tx_params: Dict[str, Any] = {
                'from': account.address,
                'nonce': nonce,
                'gas': gas,
                'gasPrice': self.w3.eth.gas_price,
            }
            tx = call.build_transaction(tx_params)
            signed_tx = account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        except Web3Exception as e:
            logger.error(f"Consume for receipt {short(receipt_hash)} rejected: {e}")
            raise LedgerError(f"Consume rejected: {e}") from e
        except Exception as e:
            logger.error(f"Failed to send consume for receipt {short(receipt_hash)}: {e}")
            raise LedgerError(f"Failed to send consume: {e}") from e

        tx_hex = tx_hash.hex() if isinstance(tx_hash, (bytes, bytearray)) else str(tx_hash)
        if not tx_hex.startswith("0x"):
            tx_hex = "0x" + tx_hex
        logger.info(f"Consume sent for receipt {short(receipt_hash)}: {tx_hex}")
        return tx_hex
