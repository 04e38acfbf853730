"""
LedgerClient - Main client for the PRMX ledger.
"""
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Union

from .codec import normalize, THRESHOLD_UNIT_SCALES, USDT_DECIMALS, EVENT_TYPES, resolve_variant
from .config import NetworkConfig, SubmissionSettings
from .correlator import Disambiguator, EventCorrelator
from .engine import SubmissionEngine
from .health import HealthClient
from .exceptions import MalformedResponseError
from .identifiers import collect_event_identifiers, extract_128, find_event_identifier
from .models import (
    Call, CancelResult, EventSpec, HealthStatus, NormalizedRecord, OracleState, OutcomeKind, Policy,
    RequestCancellation, SubmitResult, UnderwriteRequest
)
from .node.base import NodeConnection, Signer
from .node.substrate import SubstrateNode

MARKET_V3 = "PrmxMarketV3"


class Collection(NamedTuple):
    """Where a record type lives on chain and how to normalize it"""
    module: str
    storage: str
    schema: str
    id_field: Optional[str] = None


COLLECTIONS: Dict[str, Collection] = {
    "market": Collection("PrmxMarkets", "Markets", "market"),
    "location": Collection("PrmxOracleV3", "LocationRegistry", "location"),
    "request": Collection(MARKET_V3, "UnderwriteRequests", "request", id_field="id"),
    "policy": Collection("PrmxPolicyV3", "Policies", "policy", id_field="id"),
    "oracle_state": Collection("PrmxOracleV3", "OracleStates", "oracle_state", id_field="policy_id"),
    "rolling_state": Collection("PrmxOracle", "RollingState", "rolling_state"),
    "rain_bucket": Collection("PrmxOracle", "RainBuckets", "rain_bucket"),
    "lp_position": Collection("PrmxXcmCapital", "PolicyLpPositions", "lp_position"),
    "settlement_result": Collection("PrmxPolicy", "SettlementResults", "settlement_result"),
    "trigger_log": Collection("PrmxOracle", "ThresholdTriggerLogs", "trigger_log"),
}


class LedgerClient:
    """
    Client for reading and writing PRMX ledger state.

    This client handles:
    1. Reading stored records and normalizing them to one canonical shape
    2. Submitting calls and waiting for a terminal outcome
    3. Attributing block events to a submission and extracting minted
       identifiers

    The node connection is injected. The client closes it only when it
    created the connection itself through ``LedgerClient.connect``.
    """

    def __init__(
        self,
        node: NodeConnection,
        settings: Optional[SubmissionSettings] = None,
        health: Optional[HealthClient] = None,
        logger: Optional[logging.Logger] = None,
        owns_node: bool = False
    ):
        """
        Initialize the LedgerClient

        Args:
            node: Connection to a ledger node
            settings: Submission retry and timeout policy
            health: Client for the oracle service health endpoint
            logger: Optional logger instance to use for debug/info logging
            owns_node: Close the node connection in close()
        """
        self.node = node
        self.settings = settings or SubmissionSettings()
        self.logger = logger or logging.getLogger(__name__)
        self.engine = SubmissionEngine(node, self.settings, logger=self.logger)
        self.correlator = EventCorrelator(node, logger=self.logger)
        self.health_client = health
        self._owns_node = owns_node

    @classmethod
    def connect(
        cls,
        network: Optional[str] = None,
        ws_url: Optional[str] = None,
        health_url: Optional[str] = None,
        settings: Optional[SubmissionSettings] = None,
        logger: Optional[logging.Logger] = None
    ) -> "LedgerClient":
        """
        Create a client with its own node connection from network configuration.

        Args:
            network: Network name from networks.json (defaults to $PRMX_NETWORK)
            ws_url: Override for the node websocket URL
            health_url: Override for the oracle service URL
            settings: Submission settings (defaults to SubmissionSettings.from_env())
            logger: Optional logger instance

        Returns:
            A LedgerClient that owns its node connection
        """
        url = NetworkConfig.get_ws_url(network, override=ws_url)
        node = SubstrateNode(url, ss58_format=NetworkConfig.get_ss58_format(network), logger=logger)
        health = HealthClient(NetworkConfig.get_health_url(network, override=health_url), logger=logger)
        return cls(
            node,
            settings=settings or SubmissionSettings.from_env(),
            health=health,
            logger=logger,
            owns_node=True
        )

    async def __aenter__(self) -> "LedgerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self.health_client is not None:
            self.health_client.close()
        if self._owns_node:
            await self.node.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _collection(name: str) -> Collection:
        try:
            return COLLECTIONS[name]
        except KeyError:
            raise ValueError(f"Unknown collection: {name}. Available: {', '.join(COLLECTIONS)}") from None

    def _with_id(self, record: NormalizedRecord, collection: Collection, key: Any) -> NormalizedRecord:
        # Storage values do not always repeat their own key
        if collection.id_field is None or getattr(record, collection.id_field) is not None:
            return record
        key = key[-1] if isinstance(key, (list, tuple)) and key else key
        identifier = extract_128(key)
        if identifier is None:
            return record
        return record.model_copy(update={collection.id_field: identifier})

    async def query(self, collection: str, key: Any) -> Optional[NormalizedRecord]:
        """
        Read and normalize one stored record.

        Args:
            collection: Name from COLLECTIONS (e.g., "policy")
            key: Storage key, or a list of keys for double maps

        Returns:
            The normalized record, or None if nothing is stored under the key

        Raises:
            ValueError: If the collection is unknown
            MalformedResponseError: If the stored value cannot be normalized
        """
        spec = self._collection(collection)
        params = list(key) if isinstance(key, (list, tuple)) else [key]
        raw = await self.node.query(spec.module, spec.storage, params)
        if raw is None:
            self.logger.debug(f"{collection} {key} not found")
            return None
        record = normalize(raw, spec.schema, sentinel_threshold=self.settings.sentinel_threshold)
        return self._with_id(record, spec, key)

    async def query_all(self, collection: str, prefix: Optional[Sequence[Any]] = None) -> List[NormalizedRecord]:
        """
        Read and normalize every record of a collection.

        Args:
            collection: Name from COLLECTIONS
            prefix: Leading keys for double maps

        Returns:
            Normalized records in storage iteration order
        """
        spec = self._collection(collection)
        entries = await self.node.query_map(spec.module, spec.storage, list(prefix or []))
        records = []
        for key, raw in entries:
            if raw is None:
                continue
            record = normalize(raw, spec.schema, sentinel_threshold=self.settings.sentinel_threshold)
            records.append(self._with_id(record, spec, key))
        return records

    async def get_policy(self, policy_id: Any) -> Optional[Policy]:
        return await self.query("policy", policy_id)

    async def get_request(self, request_id: Any) -> Optional[UnderwriteRequest]:
        return await self.query("request", request_id)

    async def get_oracle_state(self, policy_id: Any) -> Optional[OracleState]:
        return await self.query("oracle_state", policy_id)

    async def get_requests(self, requester: Optional[str] = None) -> List[UnderwriteRequest]:
        """All underwrite requests, newest first, optionally for one requester."""
        requests = await self.query_all("request")
        if requester is not None:
            requests = [r for r in requests if r.requester == requester]
        return sorted(requests, key=lambda r: r.created_at, reverse=True)

    async def get_open_requests(self, now: Optional[int] = None) -> List[UnderwriteRequest]:
        """
        Requests that can still be accepted.

        Args:
            now: Unix time to evaluate expiry at (defaults to the current time)

        Returns:
            Pending or partially filled requests that have not expired, newest first
        """
        now = int(time.time()) if now is None else now
        return [r for r in await self.get_requests() if r.is_open(now)]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def submit_and_await(
        self,
        call: Call,
        signer: Signer,
        finality_required: bool = True,
        candidate_modules: Optional[Iterable[str]] = None,
        identifier_fields: Sequence[str] = ("request_id", "policy_id"),
        disambiguator: Optional[Disambiguator] = None,
        max_attempts: Optional[int] = None
    ) -> SubmitResult:
        """
        Submit a call, wait for its outcome and extract minted identifiers.

        Args:
            call: Call to submit
            signer: Signing account
            finality_required: Wait for finalization; required for calls that
                mint a record whose identifier is returned
            candidate_modules: Modules the call can emit events from (defaults
                to the call's own module)
            identifier_fields: Event attributes holding identifiers
            disambiguator: Picks this call's extrinsic when several in the
                block match
            max_attempts: Attempt budget override

        Returns:
            SubmitResult with identifiers, outcome and event correlation.
            Failed submissions carry no identifiers and no correlation.
            Identifiers are only returned once the block is finalized; an
            in-block outcome carries its events in ``correlation`` only.
        """
        outcome = await self.engine.submit(
            call, signer, max_attempts=max_attempts, finality_required=finality_required
        )
        if not outcome.is_success:
            return SubmitResult(outcome=outcome)

        modules = tuple(candidate_modules) if candidate_modules else (call.module,)
        correlation = await self.correlator.correlate(
            outcome.block_hash,
            outcome.events,
            modules,
            live_index=outcome.extrinsic_index,
            disambiguator=disambiguator
        )
        if outcome.kind != OutcomeKind.FINALIZED:
            self.logger.info(f"{call} included in {outcome.block_hash} ({correlation.status.value})")
            return SubmitResult(outcome=outcome, correlation=correlation)

        identifiers = collect_event_identifiers(
            correlation.events,
            modules=[m.split(".")[0] for m in modules],
            fields=identifier_fields
        )
        self.logger.info(f"{call} produced identifiers {identifiers} ({correlation.status.value})")
        return SubmitResult(identifiers=identifiers, outcome=outcome, correlation=correlation)

    @staticmethod
    def encode_event_spec(event_spec: Union[EventSpec, Dict[str, Any]]) -> Dict[str, Any]:
        """Encode an event spec as call arguments, undoing the unit scale."""
        if not isinstance(event_spec, EventSpec):
            event_spec = normalize(event_spec, "event_spec")
        scale = THRESHOLD_UNIT_SCALES.get(event_spec.threshold_unit, 0)
        return {
            "event_type": resolve_variant(event_spec.event_type, EVENT_TYPES),
            "threshold": {
                "value": int(event_spec.threshold_value.scaleb(scale)),
                "unit": event_spec.threshold_unit,
            },
            "early_trigger": event_spec.early_trigger,
        }

    async def create_request(
        self,
        signer: Signer,
        location_id: int,
        event_spec: Union[EventSpec, Dict[str, Any]],
        total_shares: int,
        premium_per_share: Decimal,
        coverage_start: int,
        coverage_end: int,
        expires_at: int
    ) -> SubmitResult:
        """
        Create an underwrite request.

        The request identifier is minted by the ledger, so this waits for
        finality before reading it from the RequestCreated event.

        Args:
            signer: Requester account
            location_id: Registered location
            event_spec: Insured event
            total_shares: Number of shares requested
            premium_per_share: Premium per share in USDT
            coverage_start: Unix time coverage starts
            coverage_end: Unix time coverage ends
            expires_at: Unix time the request stops accepting underwriters

        Returns:
            SubmitResult whose ``identifiers`` holds the new request id
        """
        call = Call(module=MARKET_V3, function="create_underwrite_request", params={
            "location_id": location_id,
            "event_spec": self.encode_event_spec(event_spec),
            "total_shares": total_shares,
            "premium_per_share": int(Decimal(premium_per_share).scaleb(USDT_DECIMALS)),
            "coverage_start": coverage_start,
            "coverage_end": coverage_end,
            "expires_at": expires_at,
        })
        result = await self.submit_and_await(
            call, signer, finality_required=True, candidate_modules=[f"{MARKET_V3}.RequestCreated"],
            identifier_fields=("request_id",)
        )
        if result.outcome.is_success and not result.identifiers and result.correlation is not None:
            # Positional event payloads
            identifier = find_event_identifier(result.correlation.events, ("RequestCreated",))
            if identifier is not None:
                result = result.model_copy(update={"identifiers": [identifier]})
        return result

    async def accept_request(self, signer: Signer, request_id: str, shares: int) -> SubmitResult:
        """
        Underwrite ``shares`` of a request.

        Accepting mints a policy, so this waits for finality before returning
        the policy id from the PolicyCreated event.
        """
        call = Call(module=MARKET_V3, function="accept_underwrite_request",
                    params={"request_id": request_id, "shares": shares})
        return await self.submit_and_await(
            call, signer, finality_required=True, candidate_modules=[MARKET_V3, "PrmxPolicyV3"],
            identifier_fields=("policy_id",)
        )

    async def cancel_request(self, signer: Signer, request_id: str) -> CancelResult:
        """
        Cancel an open request (requester only); in-block inclusion is enough.

        Returns:
            CancelResult whose ``refund`` is the premium returned, read from
            the RequestCancelled event
        """
        call = Call(module=MARKET_V3, function="cancel_underwrite_request",
                    params={"request_id": request_id})
        result = await self.submit_and_await(call, signer, finality_required=False, identifier_fields=())
        cancellation = None
        if result.correlation is not None:
            cancellation = self._read_cancellation(result.correlation.events)
        return CancelResult(**dict(result), cancellation=cancellation)

    def _read_cancellation(self, events: Iterable[Any]) -> Optional[RequestCancellation]:
        for event in events:
            if event.module != MARKET_V3 or event.event != "RequestCancelled":
                continue
            try:
                return normalize(event.attributes, "request_cancelled")
            except MalformedResponseError as e:
                self.logger.warning(f"Unreadable RequestCancelled payload: {e}")
                return None
        return None

    # ------------------------------------------------------------------
    # Auxiliary services
    # ------------------------------------------------------------------

    async def health(self) -> HealthStatus:
        """
        Oracle service health. Never raises.

        Returns:
            The reported status, or an offline status if no health service is
            configured or it cannot be reached
        """
        if self.health_client is None:
            return HealthStatus.offline()
        return await self.health_client.get_status_async()
