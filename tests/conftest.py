"""
Pytest fixtures for the PRMX SDK tests.
"""
import asyncio
from typing import Any, Dict, List, Optional, Tuple, Union

import pytest

from prmx_sdk._rate_limited_log import reset_rate_limits
from prmx_sdk.config import NetworkConfig, SubmissionSettings
from prmx_sdk.models import (
    Call, StatusUpdate, TxStatus, BlockEventLog, EventRecord, ErrorDescriptor, DispatchErrorInfo
)
from prmx_sdk.node.base import NodeConnection, StatusSubscription

TEST_ADDRESS = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"
BLOCK_HASH = "0x" + "ab" * 32
REQUEST_ID = "0x" + "0f" * 16


class FakeSigner:
    def __init__(self, address: str = TEST_ADDRESS):
        self.ss58_address = address

    def sign(self, data: Any) -> bytes:
        return b"\x00" * 64


class FakeSubscription(StatusSubscription):
    """Replays scripted updates; waits forever once the script runs out."""

    def __init__(self, updates: List[Union[StatusUpdate, Exception]]):
        self.updates = list(updates)
        self.unsubscribe_calls = 0

    async def next_update(self) -> StatusUpdate:
        if self.updates:
            item = self.updates.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        await asyncio.Event().wait()

    async def unsubscribe(self) -> None:
        self.unsubscribe_calls += 1


class FakeNode(NodeConnection):
    """
    In-memory node.

    ``scripts`` holds one entry per submission attempt: either a list of
    status updates for the subscription, or an exception raised by
    ``submit_and_watch``.
    """

    def __init__(self, nonce: int = 7):
        self.nonce = nonce
        self.nonce_sequence: List[int] = []
        self.nonce_calls = 0
        self.scripts: List[Union[List[Any], Exception]] = []
        self.submissions: List[Tuple[Call, int]] = []
        self.subscriptions: List[FakeSubscription] = []
        self.submit_delay = 0.0
        self.blocks: Dict[str, BlockEventLog] = {}
        self.block_errors: Dict[str, Exception] = {}
        self.module_errors: Dict[Tuple[int, int], ErrorDescriptor] = {}
        self.storage: Dict[Tuple[str, str, Tuple[Any, ...]], Any] = {}
        self.maps: Dict[Tuple[str, str], List[Tuple[Any, Any]]] = {}
        self.closed = False

    async def get_next_nonce(self, address: str) -> int:
        self.nonce_calls += 1
        if self.nonce_sequence:
            return self.nonce_sequence.pop(0)
        return self.nonce

    async def submit_and_watch(self, call: Call, signer: Any, nonce: int) -> StatusSubscription:
        self.submissions.append((call, nonce))
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        script = self.scripts.pop(0) if self.scripts else []
        if isinstance(script, Exception):
            raise script
        subscription = FakeSubscription(script)
        self.subscriptions.append(subscription)
        return subscription

    async def get_block_events(self, block_hash: str) -> BlockEventLog:
        if block_hash in self.block_errors:
            raise self.block_errors[block_hash]
        return self.blocks.get(block_hash, BlockEventLog(block_hash=block_hash))

    async def decode_module_error(self, module_index: int, error_index: int) -> Optional[ErrorDescriptor]:
        return self.module_errors.get((module_index, error_index))

    async def query(self, module: str, storage: str, params: Optional[List[Any]] = None) -> Any:
        return self.storage.get((module, storage, tuple(params or [])))

    async def query_map(self, module: str, storage: str,
                        params: Optional[List[Any]] = None) -> List[Tuple[Any, Any]]:
        return list(self.maps.get((module, storage), []))

    async def close(self) -> None:
        self.closed = True


def event(module: str, name: str, index: Optional[int] = 0, attributes: Any = None,
          phase: str = "ApplyExtrinsic") -> EventRecord:
    return EventRecord(phase=phase, extrinsic_index=index, module=module, event=name,
                       attributes=attributes)


def in_block(events: Optional[List[EventRecord]] = None, index: Optional[int] = 1,
             block_hash: str = BLOCK_HASH, dispatch_error: Optional[DispatchErrorInfo] = None) -> StatusUpdate:
    return StatusUpdate(status=TxStatus.IN_BLOCK, block_hash=block_hash, extrinsic_index=index,
                        events=events or [], dispatch_error=dispatch_error)


def finalized(events: Optional[List[EventRecord]] = None, index: Optional[int] = 1,
              block_hash: str = BLOCK_HASH) -> StatusUpdate:
    return StatusUpdate(status=TxStatus.FINALIZED, block_hash=block_hash, extrinsic_index=index,
                        events=events or [])


BROADCAST = StatusUpdate(status=TxStatus.BROADCAST)
READY = StatusUpdate(status=TxStatus.SUBMITTED, detail="ready")


@pytest.fixture
def node():
    return FakeNode()


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def fast_settings():
    """Zero backoff and a short per-attempt timeout."""
    return SubmissionSettings(max_attempts=3, attempt_timeout=0.05, base_delay=0, delay_increment=0)


@pytest.fixture
def sample_call():
    return Call(module="PrmxMarketV3", function="cancel_underwrite_request",
                params={"request_id": REQUEST_ID})


@pytest.fixture(autouse=True)
def _reset_shared_state():
    reset_rate_limits()
    NetworkConfig._networks_cache = None
    yield
    NetworkConfig._networks_cache = None
