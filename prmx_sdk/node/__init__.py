"""
Ledger node connections.

The Substrate binding lives in ``prmx_sdk.node.substrate`` and is imported
explicitly so the interface can be used without substrate-interface loaded.
"""
from .base import NodeConnection, StatusSubscription, Signer

__all__ = ["NodeConnection", "StatusSubscription", "Signer"]
