"""
Substrate node binding built on substrate-interface.

substrate-interface is synchronous. Node calls run in the default executor,
serialized on the shared connection by a lock. Each status subscription gets
its own websocket so that closing it cancels the watch without disturbing
other callers.
"""
import asyncio
import logging
import threading
import urllib.parse
from typing import Any, Callable, Dict, List, Optional, Tuple

from substrateinterface import SubstrateInterface
from substrateinterface.exceptions import SubstrateRequestException
from websocket import WebSocketException

from .base import NodeConnection, StatusSubscription, Signer
from ..engine import classify_pool_error
from ..exceptions import (
    MalformedResponseError, NodeConnectionError, NodeRequestError, PoolRejectionError
)
from ..models import (
    Call, StatusUpdate, TxStatus, BlockEventLog, EventRecord, ErrorDescriptor,
    DispatchErrorInfo
)

logger = logging.getLogger(__name__)

DEFAULT_SS58_FORMAT = 42

# Raw pool statuses that end the subscription
_FINAL_POOL_STATUSES = {
    "dropped": TxStatus.DROPPED,
    "invalid": TxStatus.INVALID,
    "usurped": TxStatus.USURPED,
    "finalityTimeout": TxStatus.DROPPED,
}

_END = object()


def validate_ws_url(url: str) -> str:
    """
    Require a secure websocket unless the node is local.

    Raises:
        ValueError: If the URL is not wss:// and not localhost/127.0.0.1
    """
    parsed = urllib.parse.urlparse(url)
    host = parsed.hostname or ""
    is_local = host in ("localhost", "127.0.0.1")
    if parsed.scheme not in ("ws", "wss"):
        raise ValueError(f"Node URL must be a websocket URL (got: {parsed.scheme}://)")
    if parsed.scheme != "wss" and not is_local:
        raise ValueError(f"Node URL must use wss:// for security (got: {parsed.scheme}://)")
    return url


def _scale_value(obj: Any) -> Any:
    """Unwrap a scalecodec object to plain Python values."""
    return getattr(obj, "value", obj)


def _pallet_name(metadata: Any, module_index: int) -> Optional[str]:
    for pallet in getattr(metadata, "pallets", None) or []:
        value = _scale_value(pallet)
        if isinstance(value, dict) and value.get("index") == module_index:
            return value.get("name")
    return None


def parse_event(raw: Any) -> EventRecord:
    """
    Convert one decoded System.Events entry into an EventRecord.

    Both the flat layout (``module_id``/``event_id`` at the top level) and the
    nested ``event`` layout of newer substrate-interface releases are accepted.
    """
    value = _scale_value(raw)
    phase = value.get("phase")
    extrinsic_index = value.get("extrinsic_idx")
    if isinstance(phase, dict):
        name, index = next(iter(phase.items()))
        phase = name
        if extrinsic_index is None:
            extrinsic_index = index
    event = value.get("event") or value
    return EventRecord(
        phase=phase or "ApplyExtrinsic",
        extrinsic_index=extrinsic_index if phase == "ApplyExtrinsic" else None,
        module=event.get("module_id", ""),
        event=event.get("event_id", ""),
        attributes=event.get("attributes")
    )


def parse_dispatch_error(attributes: Any) -> DispatchErrorInfo:
    """
    Pull the module and error index out of an ExtrinsicFailed payload.

    The error index is either a plain integer or the first byte of a
    little-endian ``0x`` encoded error array.
    """
    error = attributes
    if isinstance(attributes, dict):
        error = attributes.get("dispatch_error", attributes)
    elif isinstance(attributes, (list, tuple)) and attributes:
        error = attributes[0]

    module = error.get("Module") if isinstance(error, dict) else None
    if module is None:
        return DispatchErrorInfo(raw=error)

    if isinstance(module, dict):
        module_index = module.get("index")
        error_code = module.get("error")
    else:
        module_index, error_code = module[0], module[1]

    if isinstance(error_code, str) and error_code.startswith("0x"):
        error_index = bytes.fromhex(error_code[2:])[0]
    elif isinstance(error_code, (bytes, bytearray)):
        error_index = error_code[0]
    else:
        error_index = int(error_code)
    return DispatchErrorInfo(module_index=int(module_index), error_index=error_index, raw=error)


class SubstrateSubscription(StatusSubscription):
    """
    Status stream of one ``author_submitAndWatchExtrinsic`` call.

    A worker thread runs the blocking subscription on a dedicated connection
    and hands raw pool statuses to the event loop through a queue. Block
    statuses are enriched with the extrinsic's index and events when they are
    read.
    """

    def __init__(self, node: "SubstrateNode", connection: SubstrateInterface,
                 extrinsic: Any, extrinsic_hash: str):
        self.node = node
        self.connection = connection
        self.extrinsic = extrinsic
        self.extrinsic_hash = extrinsic_hash
        self.loop = asyncio.get_running_loop()
        self.queue: asyncio.Queue = asyncio.Queue()
        self._stopped = threading.Event()
        self._closed = False
        self._worker: Optional[asyncio.Future] = None

    def start(self) -> None:
        self._worker = self.loop.run_in_executor(None, self._watch)

    def _push(self, item: Any) -> None:
        self.loop.call_soon_threadsafe(self.queue.put_nowait, item)

    def _handler(self, message: Dict[str, Any], update_nr: int, subscription_id: str) -> Any:
        result = message.get("params", {}).get("result")
        logger.debug(f"Extrinsic {self.extrinsic_hash} update #{update_nr}: {result}")
        self._push(result)
        if self._stopped.is_set():
            return result
        if isinstance(result, dict) and ("finalized" in result or "usurped" in result
                                         or "finalityTimeout" in result):
            return result
        if result in ("dropped", "invalid"):
            return result
        return None

    def _watch(self) -> None:
        try:
            self.connection.rpc_request(
                "author_submitAndWatchExtrinsic",
                [str(self.extrinsic.data)],
                result_handler=self._handler
            )
        except SubstrateRequestException as e:
            self._push(e)
        except (WebSocketException, ConnectionError, OSError) as e:
            if not self._stopped.is_set():
                self._push(NodeConnectionError(f"Status stream lost: {e}"))
        finally:
            self._push(_END)

    async def next_update(self) -> StatusUpdate:
        while True:
            item = await self.queue.get()
            if item is _END:
                raise NodeConnectionError("Status stream ended before a terminal status")
            if isinstance(item, SubstrateRequestException):
                detail = str(item.args[0] if item.args else item)
                raise PoolRejectionError(detail, classify_pool_error(detail))
            if isinstance(item, Exception):
                raise item
            update = await self._to_update(item)
            if update is not None:
                return update

    async def _to_update(self, result: Any) -> Optional[StatusUpdate]:
        if result in ("ready", "future"):
            return StatusUpdate(status=TxStatus.SUBMITTED, detail=result)
        if isinstance(result, str) and result in _FINAL_POOL_STATUSES:
            return StatusUpdate(status=_FINAL_POOL_STATUSES[result], detail=result)
        if not isinstance(result, dict) or not result:
            logger.debug(f"Ignoring unrecognised status {result!r}")
            return None

        name, value = next(iter(result.items()))
        if name == "broadcast":
            return StatusUpdate(status=TxStatus.BROADCAST)
        if name in ("inBlock", "finalized"):
            status = TxStatus.IN_BLOCK if name == "inBlock" else TxStatus.FINALIZED
            return await self.node.block_update(status, value, self.extrinsic_hash)
        if name == "retracted":
            return StatusUpdate(status=TxStatus.RETRACTED, block_hash=value)
        if name in _FINAL_POOL_STATUSES:
            return StatusUpdate(status=_FINAL_POOL_STATUSES[name], block_hash=value, detail=name)
        logger.debug(f"Ignoring unrecognised status {name}")
        return None

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stopped.set()
        # Closing the dedicated socket makes the blocking rpc_request return
        await self.loop.run_in_executor(None, self.connection.close)
        if self._worker is not None:
            try:
                await self._worker
            except Exception as e:
                logger.debug(f"Subscription worker for {self.extrinsic_hash} exited with {e}")


class SubstrateNode(NodeConnection):
    """
    NodeConnection over a Substrate websocket endpoint.

    Metadata is loaded per connection, so decoded module errors always match
    the connected node's runtime.
    """

    def __init__(
        self,
        url: str,
        ss58_format: int = DEFAULT_SS58_FORMAT,
        substrate: Optional[SubstrateInterface] = None,
        connection_factory: Optional[Callable[[], SubstrateInterface]] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the node connection

        Args:
            url: Websocket endpoint (e.g., "wss://rpc.prmx.io")
            ss58_format: Address format of the chain
            substrate: Existing SubstrateInterface to use for queries
            connection_factory: Factory for dedicated subscription connections
            logger: Optional logger instance

        Raises:
            ValueError: If the URL is not wss:// (unless it's localhost/127.0.0.1)
        """
        self.url = validate_ws_url(url)
        self.ss58_format = ss58_format
        self.logger = logger or logging.getLogger(__name__)
        self._connection_factory = connection_factory or self._default_factory
        self._lock = threading.Lock()
        try:
            self.substrate = substrate or self._connection_factory()
        except (WebSocketException, ConnectionError, OSError) as e:
            raise NodeConnectionError(f"Cannot connect to {url}: {e}") from e
        self.logger.debug(f"Connected to node at {url}")

    def _default_factory(self) -> SubstrateInterface:
        return SubstrateInterface(url=self.url, ss58_format=self.ss58_format)

    async def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        def locked():
            with self._lock:
                return fn(*args, **kwargs)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, locked)
        except (WebSocketException, ConnectionError) as e:
            raise NodeConnectionError(f"Node request failed: {e}") from e
        except SubstrateRequestException as e:
            raise NodeRequestError(f"Node rejected request: {e}") from e

    async def get_next_nonce(self, address: str) -> int:
        # system_accountNextIndex counts transactions already in the pool
        return int(await self._run(self.substrate.get_account_nonce, address))

    async def submit_and_watch(self, call: Call, signer: Signer, nonce: int) -> StatusSubscription:
        def build():
            composed = self.substrate.compose_call(
                call_module=call.module,
                call_function=call.function,
                call_params=call.params
            )
            return self.substrate.create_signed_extrinsic(call=composed, keypair=signer, nonce=nonce)

        extrinsic = await self._run(build)
        extrinsic_hash = "0x" + extrinsic.extrinsic_hash.hex()
        self.logger.debug(f"Submitting {call} as {extrinsic_hash} with nonce {nonce}")

        try:
            connection = await asyncio.get_running_loop().run_in_executor(None, self._connection_factory)
        except (WebSocketException, ConnectionError, OSError) as e:
            raise NodeConnectionError(f"Cannot open subscription connection: {e}") from e

        subscription = SubstrateSubscription(self, connection, extrinsic, extrinsic_hash)
        subscription.start()
        return subscription

    async def block_update(self, status: TxStatus, block_hash: str, extrinsic_hash: str) -> StatusUpdate:
        """Build a block status update carrying the extrinsic's own events."""
        index = await self.find_extrinsic_index(block_hash, extrinsic_hash)
        log = await self.get_block_events(block_hash)
        events = log.events_for(index) if index is not None else []

        dispatch_error = None
        for event in events:
            if event.module == "System" and event.event == "ExtrinsicFailed":
                dispatch_error = parse_dispatch_error(event.attributes)
        return StatusUpdate(
            status=status,
            block_hash=block_hash,
            extrinsic_index=index,
            events=events,
            dispatch_error=dispatch_error
        )

    async def find_extrinsic_index(self, block_hash: str, extrinsic_hash: str) -> Optional[int]:
        block = await self._run(self.substrate.get_block, block_hash=block_hash)
        for idx, extrinsic in enumerate(block.get("extrinsics", []) if block else []):
            ext_hash = getattr(extrinsic, "extrinsic_hash", None)
            if ext_hash and "0x" + ext_hash.hex() == extrinsic_hash:
                return idx
        return None

    async def get_block_events(self, block_hash: str) -> BlockEventLog:
        raw_events = await self._run(self.substrate.get_events, block_hash)
        try:
            events = [parse_event(e) for e in raw_events]
        except (AttributeError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Cannot decode events of block {block_hash}: {e}") from e
        return BlockEventLog(block_hash=block_hash, events=events)

    async def decode_module_error(self, module_index: int, error_index: int) -> Optional[ErrorDescriptor]:
        def lookup():
            # Metadata can change under a runtime upgrade; reload for the current head
            self.substrate.init_runtime()
            metadata = self.substrate.metadata
            error = metadata.get_module_error(module_index=module_index, error_index=error_index)
            return _pallet_name(metadata, module_index), error

        module_name, error = await self._run(lookup)
        if error is None:
            return None
        value = _scale_value(error)
        if isinstance(value, dict):
            name, docs = value.get("name"), value.get("docs")
        else:
            name, docs = getattr(error, "name", None), getattr(error, "docs", None)
        return ErrorDescriptor(
            module=module_name or str(module_index),
            name=name or str(error_index),
            description=" ".join(docs or []).strip()
        )

    async def query(self, module: str, storage: str, params: Optional[List[Any]] = None) -> Any:
        result = await self._run(self.substrate.query, module, storage, params or [])
        value = _scale_value(result)
        return value

    async def query_map(self, module: str, storage: str,
                        params: Optional[List[Any]] = None) -> List[Tuple[Any, Any]]:
        def collect():
            return [
                (_scale_value(key), _scale_value(value))
                for key, value in self.substrate.query_map(module, storage, params or [])
            ]
        return await self._run(collect)

    async def close(self) -> None:
        await self._run(self.substrate.close)
        self.logger.debug(f"Closed node connection to {self.url}")
