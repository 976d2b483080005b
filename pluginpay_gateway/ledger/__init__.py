"""
Ledger access for plugin registry, escrow and consumption.
"""
from .transport import LedgerTransport, get_ledger_transport
from .stub_transport import StubLedgerTransport

__all__ = ["LedgerTransport", "StubLedgerTransport", "get_ledger_transport"]
