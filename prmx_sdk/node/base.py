"""
Node connection interface.

This module defines the boundary between the SDK and a ledger node: reading
account nonces and storage, submitting signed calls with a status stream,
fetching block event logs and resolving dispatch errors from live metadata.
The engine, tracker, correlator and client only ever talk to a node through
this interface, so tests can swap in an in-memory node.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Protocol, Tuple

from ..models import Call, StatusUpdate, BlockEventLog, ErrorDescriptor

logger = logging.getLogger(__name__)


class Signer(Protocol):
    """Protocol for signers accepted by the node binding"""
    ss58_address: str

    def sign(self, data: Any) -> bytes:
        """Sign a payload and return the signature"""
        ...


class StatusSubscription(ABC):
    """
    Live status stream for one submitted transaction.

    Updates are delivered in the order the node reports them. The stream must
    be closed with ``unsubscribe`` on every exit path; unsubscribing twice is
    a no-op.
    """

    @abstractmethod
    async def next_update(self) -> StatusUpdate:
        """
        Wait for the next status update.

        Returns:
            The next StatusUpdate

        Raises:
            NodeConnectionError: If the stream ends before a terminal status
        """
        pass

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Stop the stream and release its resources."""
        pass

    def __aiter__(self):
        return self

    async def __anext__(self) -> StatusUpdate:
        return await self.next_update()


class NodeConnection(ABC):
    """
    Abstract base class for ledger node connections.

    One connection is shared by many concurrent queries and submissions. It
    holds no cache of ledger state: every call goes to the node.
    """

    @abstractmethod
    async def get_next_nonce(self, address: str) -> int:
        """
        Fetch the next usable account nonce, including pool transactions.

        Args:
            address: SS58 address of the signer

        Returns:
            The nonce to use for the next transaction
        """
        pass

    @abstractmethod
    async def submit_and_watch(self, call: Call, signer: Signer, nonce: int) -> StatusSubscription:
        """
        Sign a call with an explicit nonce, submit it and subscribe to its status.

        Args:
            call: Call to submit
            signer: Account that signs the transaction
            nonce: Nonce to sign with

        Returns:
            An open StatusSubscription

        Raises:
            PoolRejectionError: If the pool refuses the transaction outright
            NodeConnectionError: If the node cannot be reached
        """
        pass

    @abstractmethod
    async def get_block_events(self, block_hash: str) -> BlockEventLog:
        """
        Fetch the complete, ordered event log of a block.

        Args:
            block_hash: Hash of the block

        Returns:
            The block's event log

        Raises:
            NodeConnectionError: If the node cannot be reached
            NodeRequestError: If the node does not have the block
            MalformedResponseError: If the events cannot be decoded
        """
        pass

    @abstractmethod
    async def decode_module_error(self, module_index: int, error_index: int) -> Optional[ErrorDescriptor]:
        """
        Resolve a module error using the node's current metadata.

        Args:
            module_index: Index of the pallet that raised the error
            error_index: Index of the error within the pallet

        Returns:
            The error descriptor, or None if the metadata has no such error
        """
        pass

    @abstractmethod
    async def query(self, module: str, storage: str, params: Optional[List[Any]] = None) -> Any:
        """
        Read one storage entry.

        Args:
            module: Pallet name, e.g. ``PrmxPolicyV3``
            storage: Storage item, e.g. ``Policies``
            params: Storage keys

        Returns:
            The raw decoded value, or None if the entry does not exist
        """
        pass

    @abstractmethod
    async def query_map(self, module: str, storage: str,
                        params: Optional[List[Any]] = None) -> List[Tuple[Any, Any]]:
        """
        Iterate all entries of a storage map.

        Args:
            module: Pallet name
            storage: Storage map name
            params: Leading keys for double maps

        Returns:
            List of (key, raw value) pairs
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""
        pass
