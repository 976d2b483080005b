"""
Receipt issuance and ledger consumption.
"""
from .receipts import (
    ReceiptOracle,
    VerifierKeyring,
    compute_receipt_hash,
    recover_receipt_signer,
    sign_receipt_hash,
    verify_receipt,
)
from .submitter import ConsumptionQueue

__all__ = [
    "ReceiptOracle",
    "VerifierKeyring",
    "ConsumptionQueue",
    "compute_receipt_hash",
    "recover_receipt_signer",
    "sign_receipt_hash",
    "verify_receipt",
]
