"""
Transaction submission engine.

Submits a signed call, drives the status tracker to a terminal outcome and
retries the transient failure classes: priority too low, stale nonce and
local timeout. Every attempt signs with a nonce fetched from the node for
that attempt.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from .config import SubmissionSettings
from .exceptions import ErrorKind, PoolRejectionError, PoolRejectionReason
from .models import Call, TransactionHandle, SubmissionOutcome
from .node.base import NodeConnection, Signer, StatusSubscription
from .tracker import StatusTracker

logger = logging.getLogger(__name__)

PRIORITY_MARKERS = ("priority is too low", "1014")
STALE_NONCE_MARKERS = ("nonce", "transaction is outdated", "stale")


def classify_pool_error(detail: str) -> PoolRejectionReason:
    """
    Classify a pool rejection from the node's error text.

    Args:
        detail: Error message or stringified RPC error object

    Returns:
        The matching PoolRejectionReason
    """
    text = str(detail).lower()
    if any(marker in text for marker in PRIORITY_MARKERS):
        return PoolRejectionReason.PRIORITY_TOO_LOW
    if any(marker in text for marker in STALE_NONCE_MARKERS):
        return PoolRejectionReason.STALE_NONCE
    return PoolRejectionReason.OTHER


def backoff_delay(attempt_index: int, base_delay: float = 3.0, increment: float = 1.0) -> float:
    """Linear backoff: ``base_delay + attempt_index * increment`` seconds."""
    return base_delay + attempt_index * increment


class SubmissionEngine:
    """
    Submits calls and retries transient rejections.

    Submissions for different signers may run concurrently. Submissions from
    the same signer must be serialized by the caller: the engine reads the
    next nonce but does not reserve it.
    """

    def __init__(
        self,
        node: NodeConnection,
        settings: Optional[SubmissionSettings] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """
        Initialize the engine

        Args:
            node: Connection used for nonces, submission and error decoding
            settings: Retry and timeout policy (defaults to SubmissionSettings())
            logger: Optional logger instance to use for debug/info logging
            sleep: Coroutine used for backoff delays
        """
        self.node = node
        self.settings = settings or SubmissionSettings()
        self.logger = logger or logging.getLogger(__name__)
        self._sleep = sleep

    async def submit(
        self,
        call: Call,
        signer: Signer,
        max_attempts: Optional[int] = None,
        finality_required: bool = True
    ) -> SubmissionOutcome:
        """
        Submit a call and wait for its terminal outcome.

        Args:
            call: Call to submit
            signer: Signing account
            max_attempts: Attempt budget (defaults to settings.max_attempts)
            finality_required: Wait for finalization instead of inclusion

        Returns:
            SubmissionOutcome; INCLUDED/FINALIZED on success, REJECTED for
            dispatch failures and non-retryable or exhausted pool rejections,
            TIMED_OUT when the budget ran out on timeouts

        Raises:
            ValueError: If max_attempts is less than 1
            NodeConnectionError: If the node cannot be reached
        """
        attempts = max_attempts if max_attempts is not None else self.settings.max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        address = signer.ss58_address
        tracker = StatusTracker(self.node, finality_required=finality_required, logger=self.logger)
        last_error: Optional[PoolRejectionError] = None
        timed_out = False
        nonce = None

        for attempt in range(attempts):
            nonce = await self.node.get_next_nonce(address)
            handle = TransactionHandle(signer_address=address, nonce=nonce, call=call, retry_count=attempt)
            self.logger.info(f"Submitting {call} from {address} (attempt {attempt + 1}/{attempts}, nonce {nonce})")

            watched: List[StatusSubscription] = []
            try:
                outcome = await asyncio.wait_for(
                    self._attempt(call, signer, handle, tracker, watched),
                    timeout=self.settings.attempt_timeout
                )
                return outcome.model_copy(update={"retry_count": attempt, "nonce": nonce})

            except PoolRejectionError as e:
                if not e.retryable:
                    self.logger.error(f"{call} rejected by the pool: {e.detail}")
                    return SubmissionOutcome.rejected(
                        ErrorKind.POOL_REJECTION, e.detail,
                        pool_reason=e.reason, retry_count=attempt, nonce=nonce
                    )
                self.logger.warning(f"{call} attempt {attempt + 1} rejected ({e.reason.value}): {e.detail}")
                last_error, timed_out = e, False

            except asyncio.TimeoutError:
                self.logger.warning(
                    f"{call} attempt {attempt + 1} timed out after {self.settings.attempt_timeout}s"
                )
                # Ambiguous: the transaction may have landed. Check the nonce
                # before sending another one.
                if await self._nonce_consumed(address, nonce):
                    self.logger.warning(f"Nonce {nonce} of {address} was consumed; not resubmitting {call}")
                    return SubmissionOutcome.timed_out(
                        f"Timed out after {self.settings.attempt_timeout}s; nonce {nonce} was consumed",
                        possibly_included=True, retry_count=attempt, nonce=nonce
                    )
                last_error, timed_out = None, True

            finally:
                for subscription in watched:
                    await subscription.unsubscribe()

            if attempt + 1 < attempts:
                delay = backoff_delay(attempt, self.settings.base_delay, self.settings.delay_increment)
                self.logger.debug(f"Retrying {call} in {delay}s")
                await self._sleep(delay)

        self.logger.error(f"{call} failed after {attempts} attempts")
        if timed_out:
            return SubmissionOutcome.timed_out(
                f"No terminal status after {attempts} attempts",
                retry_count=attempts - 1, nonce=nonce
            )
        return SubmissionOutcome.rejected(
            ErrorKind.POOL_REJECTION,
            f"Gave up after {attempts} attempts: {last_error.detail if last_error else 'unknown error'}",
            pool_reason=last_error.reason if last_error else None,
            retry_count=attempts - 1,
            nonce=nonce
        )

    async def _attempt(self, call: Call, signer: Signer, handle: TransactionHandle,
                       tracker: StatusTracker, watched: List[StatusSubscription]) -> SubmissionOutcome:
        # Signing and opening the watch count against the attempt timeout too
        subscription = await self.node.submit_and_watch(call, signer, handle.nonce)
        watched.append(subscription)
        return await tracker.track(subscription, handle)

    async def _nonce_consumed(self, address: str, nonce: int) -> bool:
        current = await self.node.get_next_nonce(address)
        return current > nonce
