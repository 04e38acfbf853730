"""
Status tracking for a single submission.
"""
import logging
from typing import Optional

from .exceptions import ErrorKind, PoolRejectionError, PoolRejectionReason
from .models import (
    TransactionHandle, TxStatus, StatusUpdate, SubmissionOutcome, DispatchErrorInfo,
    ErrorDescriptor
)
from .node.base import NodeConnection, StatusSubscription

logger = logging.getLogger(__name__)

# Order of the forward lifecycle; lower ranks arriving late are ignored
_RANK = {
    TxStatus.SUBMITTED: 0,
    TxStatus.BROADCAST: 1,
    TxStatus.IN_BLOCK: 2,
    TxStatus.FINALIZED: 3,
}


class StatusTracker:
    """
    Turns a node status stream into exactly one terminal outcome.

    The lifecycle is ``Submitted -> Broadcast -> InBlock -> Finalized``.
    Inclusion is terminal when finality is not required. A dispatch error on
    an included transaction ends tracking as ``DispatchFailed`` with the
    error decoded through the node's live metadata. Pool-level rejections are
    raised as ``PoolRejectionError`` so the engine can decide on a retry.
    """

    def __init__(self, node: NodeConnection, finality_required: bool = True,
                 logger: Optional[logging.Logger] = None):
        self.node = node
        self.finality_required = finality_required
        self.logger = logger or logging.getLogger(__name__)

    async def track(self, subscription: StatusSubscription, handle: TransactionHandle) -> SubmissionOutcome:
        """
        Follow a subscription until a terminal state.

        Args:
            subscription: Open status stream for the transaction
            handle: The transaction being tracked

        Returns:
            SubmissionOutcome of kind INCLUDED, FINALIZED or REJECTED

        Raises:
            PoolRejectionError: If the pool drops, invalidates or replaces the
                transaction
            NodeConnectionError: If the stream ends early
        """
        current = TxStatus.SUBMITTED
        while True:
            update = await subscription.next_update()
            status = update.status

            if status in (TxStatus.INVALID, TxStatus.DROPPED, TxStatus.USURPED):
                raise self._pool_error(update)

            if status == TxStatus.RETRACTED:
                # The block left the best chain; wait for re-inclusion
                self.logger.warning(f"Block {update.block_hash} with nonce {handle.nonce} was retracted")
                current = TxStatus.BROADCAST
                continue

            if update.dispatch_error is not None or status == TxStatus.DISPATCH_FAILED:
                return await self._dispatch_failed(update, handle)

            if _RANK.get(status, -1) <= _RANK.get(current, -1):
                self.logger.debug(f"Ignoring out-of-order status {status.value} after {current.value}")
                continue

            self.logger.debug(f"{handle.call} nonce {handle.nonce}: {current.value} -> {status.value}")
            current = status

            if status == TxStatus.FINALIZED:
                self.logger.info(f"{handle.call} finalized in {update.block_hash}")
                return SubmissionOutcome.included(update)
            if status == TxStatus.IN_BLOCK and not self.finality_required:
                self.logger.info(f"{handle.call} included in {update.block_hash}")
                return SubmissionOutcome.included(update)

    def _pool_error(self, update: StatusUpdate) -> PoolRejectionError:
        detail = update.detail or update.status.value.lower()
        if update.status == TxStatus.USURPED:
            # Another transaction took our nonce
            return PoolRejectionError(f"Transaction usurped: {detail}", PoolRejectionReason.STALE_NONCE)
        return PoolRejectionError(f"Transaction {update.status.value.lower()}: {detail}")

    async def _dispatch_failed(self, update: StatusUpdate, handle: TransactionHandle) -> SubmissionOutcome:
        descriptor = await self.describe(update.dispatch_error)
        self.logger.error(f"{handle.call} failed in {update.block_hash}: {descriptor}")
        return SubmissionOutcome.rejected(
            ErrorKind.DISPATCH_FAILURE,
            str(descriptor),
            error=descriptor,
            block_hash=update.block_hash,
            extrinsic_index=update.extrinsic_index,
            events=list(update.events)
        )

    async def describe(self, info: Optional[DispatchErrorInfo]) -> ErrorDescriptor:
        """
        Resolve a dispatch error to a (module, name, description) triple.

        Module errors are looked up in the node's metadata. Other dispatch
        errors (BadOrigin, Token, Arithmetic, ...) are named by their variant.
        """
        if info is None:
            return ErrorDescriptor(module="DispatchError", name="Unknown")

        if info.is_module:
            descriptor = await self.node.decode_module_error(info.module_index, info.error_index)
            if descriptor is not None:
                return descriptor
            return ErrorDescriptor(
                module=f"Module{info.module_index}",
                name=f"Error{info.error_index}",
                description="Error not present in node metadata"
            )

        raw = info.raw
        if isinstance(raw, dict) and len(raw) == 1:
            name, value = next(iter(raw.items()))
            if isinstance(value, dict) and len(value) == 1:
                # e.g. {"Token": {"FundsUnavailable": None}}
                inner = next(iter(value))
                return ErrorDescriptor(module=str(name), name=str(inner))
            return ErrorDescriptor(module="DispatchError", name=str(name),
                                   description="" if value is None else str(value))
        return ErrorDescriptor(module="DispatchError", name=str(raw))
