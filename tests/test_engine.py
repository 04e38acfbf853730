"""
Tests for the submission engine's retry policy.
"""
import asyncio

import pytest

from prmx_sdk.config import SubmissionSettings
from prmx_sdk.engine import SubmissionEngine, classify_pool_error, backoff_delay
from prmx_sdk.exceptions import (
    ErrorKind, PoolRejectionError, PoolRejectionReason, NodeConnectionError,
    DispatchFailureError, SubmissionTimeoutError
)
from prmx_sdk.models import OutcomeKind, DispatchErrorInfo, ErrorDescriptor, TxStatus, StatusUpdate
from conftest import BROADCAST, READY, BLOCK_HASH, in_block, finalized, event


def priority_error():
    return PoolRejectionError("1014: Priority is too low: (5 vs 5)", PoolRejectionReason.PRIORITY_TOO_LOW)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.mark.parametrize("detail, expected", [
    ("1014: Priority is too low: (100 vs 100)", PoolRejectionReason.PRIORITY_TOO_LOW),
    ("Invalid Transaction: Transaction is outdated", PoolRejectionReason.STALE_NONCE),
    ("{'code': 1010, 'message': 'Invalid Transaction', 'data': 'Transaction has a bad nonce'}",
     PoolRejectionReason.STALE_NONCE),
    ("Transaction is stale", PoolRejectionReason.STALE_NONCE),
    ("Inability to pay some fees (e.g. account balance too low)", PoolRejectionReason.OTHER),
])
def test_classify_pool_error(detail, expected):
    assert classify_pool_error(detail) == expected


def test_backoff_delay_is_linear():
    assert [backoff_delay(i) for i in range(4)] == [3.0, 4.0, 5.0, 6.0]
    assert backoff_delay(2, base_delay=1.0, increment=0.5) == 2.0


def test_priority_rejections_are_retried(node, signer, sample_call, fast_settings):
    node.scripts = [priority_error(), priority_error(), [BROADCAST, in_block(index=2)]]
    engine = SubmissionEngine(node, fast_settings)

    outcome = asyncio.run(engine.submit(sample_call, signer, finality_required=False))

    assert outcome.kind == OutcomeKind.INCLUDED
    assert outcome.retry_count == 2
    assert outcome.block_hash == BLOCK_HASH
    assert outcome.extrinsic_index == 2
    assert len(node.submissions) == 3


def test_exactly_max_attempts_then_rejected(node, signer, sample_call, fast_settings):
    node.scripts = [priority_error() for _ in range(10)]
    engine = SubmissionEngine(node, fast_settings)

    outcome = asyncio.run(engine.submit(sample_call, signer, max_attempts=4))

    assert len(node.submissions) == 4
    assert outcome.kind == OutcomeKind.REJECTED
    assert outcome.error_kind == ErrorKind.POOL_REJECTION
    assert outcome.pool_reason == PoolRejectionReason.PRIORITY_TOO_LOW
    assert outcome.retry_count == 3
    assert "Gave up after 4 attempts" in outcome.detail


def test_single_attempt_budget(node, signer, sample_call, fast_settings):
    node.scripts = [priority_error(), [in_block()]]
    outcome = asyncio.run(SubmissionEngine(node, fast_settings).submit(sample_call, signer, max_attempts=1))
    assert len(node.submissions) == 1
    assert outcome.kind == OutcomeKind.REJECTED


def test_invalid_budget(node, signer, sample_call):
    with pytest.raises(ValueError):
        asyncio.run(SubmissionEngine(node).submit(sample_call, signer, max_attempts=0))


def test_nonce_fetched_for_every_attempt(node, signer, sample_call, fast_settings):
    node.nonce_sequence = [7, 7, 8]
    node.scripts = [
        PoolRejectionError("Invalid Transaction: Transaction is outdated", PoolRejectionReason.STALE_NONCE),
        priority_error(),
        [finalized()],
    ]
    outcome = asyncio.run(SubmissionEngine(node, fast_settings).submit(sample_call, signer))

    assert [nonce for _, nonce in node.submissions] == [7, 7, 8]
    assert outcome.kind == OutcomeKind.FINALIZED
    assert outcome.nonce == 8


def test_non_retryable_rejection_is_terminal(node, signer, sample_call, fast_settings):
    node.scripts = [PoolRejectionError("Inability to pay some fees"), [in_block()]]
    outcome = asyncio.run(SubmissionEngine(node, fast_settings).submit(sample_call, signer))

    assert len(node.submissions) == 1
    assert outcome.kind == OutcomeKind.REJECTED
    assert outcome.pool_reason == PoolRejectionReason.OTHER
    with pytest.raises(PoolRejectionError):
        outcome.raise_for_status()


def test_invalid_status_from_stream_is_terminal(node, signer, sample_call, fast_settings):
    node.scripts = [[READY, StatusUpdate(status=TxStatus.INVALID, detail="BadProof")], [in_block()]]
    outcome = asyncio.run(SubmissionEngine(node, fast_settings).submit(sample_call, signer))

    assert outcome.kind == OutcomeKind.REJECTED
    assert "BadProof" in outcome.detail
    assert len(node.submissions) == 1


def test_usurped_is_retried_as_stale_nonce(node, signer, sample_call, fast_settings):
    node.nonce_sequence = [7, 8]
    node.scripts = [[StatusUpdate(status=TxStatus.USURPED, detail="0xbeef")], [in_block()]]
    outcome = asyncio.run(
        SubmissionEngine(node, fast_settings).submit(sample_call, signer, finality_required=False)
    )
    assert outcome.kind == OutcomeKind.INCLUDED
    assert outcome.retry_count == 1


def test_dispatch_failure_is_never_retried(node, signer, sample_call, fast_settings):
    node.module_errors[(42, 3)] = ErrorDescriptor(
        module="PrmxMarketV3", name="RequestExpired", description="The underwrite request has expired"
    )
    failing = in_block(
        events=[event("System", "ExtrinsicFailed", index=1)],
        dispatch_error=DispatchErrorInfo(module_index=42, error_index=3)
    )
    node.scripts = [[BROADCAST, failing], [in_block()]]

    outcome = asyncio.run(SubmissionEngine(node, fast_settings).submit(sample_call, signer))

    assert len(node.submissions) == 1
    assert outcome.kind == OutcomeKind.REJECTED
    assert outcome.error_kind == ErrorKind.DISPATCH_FAILURE
    assert outcome.detail == "PrmxMarketV3.RequestExpired: The underwrite request has expired"
    assert outcome.block_hash == BLOCK_HASH
    with pytest.raises(DispatchFailureError) as exc_info:
        outcome.raise_for_status()
    assert exc_info.value.descriptor.name == "RequestExpired"


def test_timeouts_are_retried_until_budget(node, signer, sample_call, fast_settings):
    node.scripts = [[BROADCAST], [BROADCAST], [BROADCAST]]
    outcome = asyncio.run(SubmissionEngine(node, fast_settings).submit(sample_call, signer))

    assert len(node.submissions) == 3
    assert outcome.kind == OutcomeKind.TIMED_OUT
    assert outcome.error_kind == ErrorKind.TIMEOUT
    assert outcome.possibly_included is False
    assert outcome.retry_count == 2


def test_timeout_with_consumed_nonce_is_not_resubmitted(node, signer, sample_call, fast_settings):
    # The post-timeout check sees the nonce advanced
    node.nonce_sequence = [7, 8]
    node.scripts = [[BROADCAST], [in_block()]]

    outcome = asyncio.run(SubmissionEngine(node, fast_settings).submit(sample_call, signer))

    assert len(node.submissions) == 1
    assert outcome.kind == OutcomeKind.TIMED_OUT
    assert outcome.possibly_included is True
    with pytest.raises(SubmissionTimeoutError) as exc_info:
        outcome.raise_for_status()
    assert exc_info.value.possibly_included


def test_subscription_released_on_every_path(node, signer, sample_call, fast_settings):
    node.scripts = [
        [BROADCAST],
        [StatusUpdate(status=TxStatus.USURPED, detail="0xbeef")],
        [in_block(), finalized()],
    ]
    asyncio.run(SubmissionEngine(node, fast_settings).submit(sample_call, signer))

    assert len(node.subscriptions) == 3
    assert all(sub.unsubscribe_calls == 1 for sub in node.subscriptions)


def test_slow_signing_counts_against_attempt_timeout(node, signer, sample_call, fast_settings):
    node.submit_delay = 5.0
    outcome = asyncio.run(SubmissionEngine(node, fast_settings).submit(sample_call, signer, max_attempts=1))

    assert outcome.kind == OutcomeKind.TIMED_OUT
    assert len(node.submissions) == 1
    assert node.subscriptions == []


def test_connection_errors_propagate(node, signer, sample_call, fast_settings):
    node.scripts = [NodeConnectionError("socket closed")]
    with pytest.raises(NodeConnectionError):
        asyncio.run(SubmissionEngine(node, fast_settings).submit(sample_call, signer))


def test_backoff_between_attempts_only(node, signer, sample_call):
    settings = SubmissionSettings(max_attempts=3, attempt_timeout=1.0, base_delay=3.0, delay_increment=1.0)
    node.scripts = [priority_error(), priority_error(), priority_error()]
    sleep = RecordingSleep()

    asyncio.run(SubmissionEngine(node, settings, sleep=sleep).submit(sample_call, signer))

    assert sleep.delays == [3.0, 4.0]


def test_concurrent_signers_do_not_interfere(fast_settings, sample_call):
    from conftest import FakeNode, FakeSigner

    node = FakeNode()
    node.scripts = [[in_block(index=1)], [in_block(index=2)]]
    engine = SubmissionEngine(node, fast_settings)

    async def run_both():
        return await asyncio.gather(
            engine.submit(sample_call, FakeSigner("5Alice"), finality_required=False),
            engine.submit(sample_call, FakeSigner("5Bob"), finality_required=False),
        )

    first, second = asyncio.run(run_both())
    assert first.is_success and second.is_success
    assert {first.extrinsic_index, second.extrinsic_index} == {1, 2}
