"""
Receipt hashing and signing.

The receipt hash is ``keccak256(abi.encode(uint256 jobId, address caller,
uint256 pluginId, bytes32 inputHash, bytes32 outputHash, uint256 cost,
uint256 timestamp))`` so the UsageMeter contract can recompute it on-chain.
The verifier signs it with EIP-191 over the raw 32 bytes.
"""
import time
import logging
from typing import Dict, Iterable, Optional, Union

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from web3 import Web3

from ..exceptions import InternalError
from ..models import PluginDescriptor, Receipt
from ..utils import ZERO_ADDRESS, short

logger = logging.getLogger(__name__)

RECEIPT_ABI_TYPES = ['uint256', 'address', 'uint256', 'bytes32', 'bytes32', 'uint256', 'uint256']


def _to_bytes32(value: str) -> bytes:
    raw = bytes.fromhex(value.removeprefix("0x"))
    if len(raw) != 32:
        raise ValueError(f"Expected 32 bytes, got {len(raw)}")
    return raw


def _to_uint(value: Union[int, str]) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def compute_receipt_hash(
    job_id: Union[int, str],
    caller: str,
    plugin_id: int,
    input_hash: str,
    output_hash: str,
    cost: int,
    timestamp: int
) -> str:
    """
    Hash the receipt tuple.

    Args:
        job_id: Job id, as an integer or 0x hex
        caller: Caller address, any case
        plugin_id: Ledger id of the plugin
        input_hash: 0x keccak of the canonical input
        output_hash: 0x keccak of the canonical (possibly offloaded) output
        cost: Price charged, in token base units
        timestamp: Unix seconds

    Returns:
        0x-prefixed hash
    """
    encoded = encode(
        RECEIPT_ABI_TYPES,
        [
            _to_uint(job_id),
            Web3.to_checksum_address(caller),
            int(plugin_id),
            _to_bytes32(input_hash),
            _to_bytes32(output_hash),
            int(cost),
            int(timestamp),
        ]
    )
    return "0x" + Web3.keccak(encoded).hex().removeprefix("0x")


def sign_receipt_hash(receipt_hash: str, account: LocalAccount) -> str:
    signed = account.sign_message(encode_defunct(primitive=_to_bytes32(receipt_hash)))
    signature = signed.signature.hex()
    return signature if signature.startswith("0x") else "0x" + signature


def recover_receipt_signer(receipt_hash: str, signature: str) -> str:
    return Account.recover_message(
        encode_defunct(primitive=_to_bytes32(receipt_hash)),
        signature=signature
    )


def verify_receipt(receipt: Union[Receipt, dict], expected_signer: str) -> bool:
    """
    Check a receipt's hash against its fields and its signature against a verifier.

    Args:
        receipt: Receipt model or its wire form
        expected_signer: Verifier address

    Returns:
        True only if the hash matches the fields and the signature recovers
        to ``expected_signer``
    """
    if isinstance(receipt, dict):
        receipt = Receipt.model_validate(receipt)
    try:
        recomputed = compute_receipt_hash(
            receipt.job_id,
            receipt.caller,
            receipt.plugin_id,
            receipt.input_hash,
            receipt.output_hash,
            receipt.cost,
            receipt.timestamp,
        )
        if recomputed.lower() != receipt.hash.lower():
            return False
        signer = recover_receipt_signer(receipt.hash, receipt.signature)
    except Exception as e:
        logger.debug(f"Receipt {short(receipt.hash)} failed verification: {e}")
        return False
    return signer.lower() == expected_signer.lower()


class VerifierKeyring:
    """
    Verifier accounts held by this gateway.

    Plugins name their verifier by address in the registry. A plugin with no
    verifier set is signed for by the default key.
    """

    def __init__(self, default_key: Optional[str] = None, extra_keys: Iterable[str] = ()):
        self.default: Optional[LocalAccount] = Account.from_key(default_key) if default_key else None
        self._accounts: Dict[str, LocalAccount] = {}
        if self.default is not None:
            self._accounts[self.default.address.lower()] = self.default
        for key in extra_keys:
            account = Account.from_key(key)
            self._accounts[account.address.lower()] = account

    @property
    def addresses(self):
        return [account.address for account in self._accounts.values()]

    def resolve(self, descriptor: PluginDescriptor) -> LocalAccount:
        """
        Find the account that signs receipts for a plugin.

        Raises:
            InternalError: If no held key matches the plugin's verifier
        """
        verifier = descriptor.verifier_key
        if not verifier or verifier.lower() == ZERO_ADDRESS:
            if self.default is None:
                logger.error(f"No default verifier key for plugin {descriptor.plugin_id}")
                raise InternalError()
            return self.default

        account = self._accounts.get(verifier.lower())
        if account is None:
            logger.error(f"Verifier {short(verifier)} for plugin {descriptor.plugin_id} is not held")
            raise InternalError()
        return account


class ReceiptOracle:
    """Issues signed receipts for completed jobs."""

    def __init__(self, keyring: VerifierKeyring, clock=None):
        self.keyring = keyring
        self._clock = clock or (lambda: int(time.time()))

    def issue(
        self,
        descriptor: PluginDescriptor,
        job_id: str,
        caller: str,
        input_hash: str,
        output_hash: str,
        account: Optional[LocalAccount] = None
    ) -> Receipt:
        """
        Build and sign the receipt for a successful job.

        The cost is the descriptor's price at the time of the call.

        Args:
            descriptor: Plugin descriptor read for this call
            job_id: Job id
            caller: Authenticated caller address
            input_hash: keccak of the canonical input
            output_hash: keccak of the canonical output
            account: Verifier account; resolved from the keyring when omitted

        Returns:
            Signed receipt
        """
        account = account or self.keyring.resolve(descriptor)
        timestamp = self._clock()
        receipt_hash = compute_receipt_hash(
            job_id,
            caller,
            descriptor.plugin_id,
            input_hash,
            output_hash,
            descriptor.price_per_call,
            timestamp,
        )
        return Receipt(
            hash=receipt_hash,
            signature=sign_receipt_hash(receipt_hash, account),
            job_id=job_id,
            caller=caller,
            plugin_id=descriptor.plugin_id,
            input_hash=input_hash,
            output_hash=output_hash,
            cost=descriptor.price_per_call,
            timestamp=timestamp,
        )
