"""
Data models for the PRMX SDK.
"""
import time
from decimal import Decimal
from enum import Enum
from typing import Dict, Any, ClassVar, Optional, List, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import (
    ErrorKind, PrmxError, PoolRejectionError, PoolRejectionReason,
    DispatchFailureError, SubmissionTimeoutError
)


class NoData(str, Enum):
    """Marker for accumulator fields that have never observed a value."""
    NO_DATA = "NO_DATA"


NO_DATA = NoData.NO_DATA


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

class Call(BaseModel):
    """An unsigned ledger call: pallet, dispatchable and its arguments"""
    module: str
    function: str
    params: Dict[str, Any] = Field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.module}.{self.function}"


class TransactionHandle(BaseModel):
    """
    One in-flight signed transaction, owned by the submission engine.

    A fresh handle is built for every attempt so that ``nonce`` always
    reflects the value fetched from the node for that attempt.
    """
    signer_address: str
    nonce: int
    call: Call
    submitted_at: float = Field(default_factory=time.time)
    retry_count: int = 0


class TxStatus(str, Enum):
    """Lifecycle states reported for a single submission"""
    SUBMITTED = "SUBMITTED"
    BROADCAST = "BROADCAST"
    IN_BLOCK = "IN_BLOCK"
    FINALIZED = "FINALIZED"
    DISPATCH_FAILED = "DISPATCH_FAILED"
    # Pool-level terminal states; these never reach a block
    INVALID = "INVALID"
    DROPPED = "DROPPED"
    USURPED = "USURPED"
    RETRACTED = "RETRACTED"


class DispatchErrorInfo(BaseModel):
    """Undecoded dispatch error as reported alongside a status update"""
    module_index: Optional[int] = None
    error_index: Optional[int] = None
    raw: Any = None

    @property
    def is_module(self) -> bool:
        return self.module_index is not None and self.error_index is not None


class ErrorDescriptor(BaseModel):
    """Human readable dispatch error resolved from node metadata"""
    module: str
    name: str
    description: str = ""

    def __str__(self) -> str:
        text = f"{self.module}.{self.name}"
        if self.description:
            text = f"{text}: {self.description}"
        return text


class EventRecord(BaseModel):
    """One entry of a block's event log"""
    phase: str = "ApplyExtrinsic"
    extrinsic_index: Optional[int] = None
    module: str
    event: str
    attributes: Any = None

    def __str__(self) -> str:
        return f"{self.module}.{self.event}"


class StatusUpdate(BaseModel):
    """One message from the node's status stream for a submission"""
    status: TxStatus
    block_hash: Optional[str] = None
    extrinsic_index: Optional[int] = None
    events: List[EventRecord] = Field(default_factory=list)
    dispatch_error: Optional[DispatchErrorInfo] = None
    detail: Optional[str] = None


class BlockEventLog(BaseModel):
    """Ordered event log of one block"""
    block_hash: str
    events: List[EventRecord] = Field(default_factory=list)

    def phase_indices(self) -> List[int]:
        """Extrinsic indices in order of first appearance in the log."""
        seen: List[int] = []
        for record in self.events:
            if record.extrinsic_index is not None and record.extrinsic_index not in seen:
                seen.append(record.extrinsic_index)
        return seen

    def events_for(self, index: int) -> List[EventRecord]:
        return [e for e in self.events if e.extrinsic_index == index]

    def is_contiguous(self) -> bool:
        """True when every extrinsic's events form one unbroken run."""
        closed = set()
        current = None
        for record in self.events:
            idx = record.extrinsic_index
            if idx == current:
                continue
            if current is not None:
                closed.add(current)
            if idx is not None and idx in closed:
                return False
            current = idx
        return True


class CorrelationStatus(str, Enum):
    CORRELATED = "CORRELATED"
    UNCORRELATED_FALLBACK = "UNCORRELATED_FALLBACK"


class CorrelatedEventSet(BaseModel):
    """
    Events attributed to one submission.

    ``status`` tells a verified attribution apart from the fallback to the
    events the live status stream reported.
    """
    status: CorrelationStatus
    phase_index: Optional[int] = None
    events: List[EventRecord] = Field(default_factory=list)
    ambiguous: bool = False

    @property
    def verified(self) -> bool:
        return self.status == CorrelationStatus.CORRELATED


class OutcomeKind(str, Enum):
    INCLUDED = "INCLUDED"
    FINALIZED = "FINALIZED"
    REJECTED = "REJECTED"
    TIMED_OUT = "TIMED_OUT"


class SubmissionOutcome(BaseModel):
    """Terminal result of one submission, produced exactly once"""
    kind: OutcomeKind
    block_hash: Optional[str] = None
    extrinsic_index: Optional[int] = None
    events: List[EventRecord] = Field(default_factory=list)
    error_kind: Optional[ErrorKind] = None
    detail: Optional[str] = None
    error: Optional[ErrorDescriptor] = None
    pool_reason: Optional[PoolRejectionReason] = None
    possibly_included: bool = False
    retry_count: int = 0
    nonce: Optional[int] = None

    @classmethod
    def included(cls, update: StatusUpdate, **kwargs: Any) -> "SubmissionOutcome":
        kind = OutcomeKind.FINALIZED if update.status == TxStatus.FINALIZED else OutcomeKind.INCLUDED
        return cls(
            kind=kind,
            block_hash=update.block_hash,
            extrinsic_index=update.extrinsic_index,
            events=list(update.events),
            **kwargs
        )

    @classmethod
    def rejected(cls, error_kind: ErrorKind, detail: str, **kwargs: Any) -> "SubmissionOutcome":
        return cls(kind=OutcomeKind.REJECTED, error_kind=error_kind, detail=detail, **kwargs)

    @classmethod
    def timed_out(cls, detail: str, **kwargs: Any) -> "SubmissionOutcome":
        return cls(kind=OutcomeKind.TIMED_OUT, error_kind=ErrorKind.TIMEOUT, detail=detail, **kwargs)

    @property
    def is_success(self) -> bool:
        return self.kind in (OutcomeKind.INCLUDED, OutcomeKind.FINALIZED)

    def raise_for_status(self) -> None:
        """
        Raise the exception matching a failed outcome.

        Raises:
            DispatchFailureError: If the transaction executed and failed
            PoolRejectionError: If the pool refused the transaction
            SubmissionTimeoutError: If no terminal status arrived in time
        """
        if self.is_success:
            return
        if self.kind == OutcomeKind.TIMED_OUT:
            raise SubmissionTimeoutError(self.detail or "Transaction timed out", self.possibly_included)
        if self.error_kind == ErrorKind.DISPATCH_FAILURE and self.error is not None:
            raise DispatchFailureError(self.error)
        if self.error_kind == ErrorKind.POOL_REJECTION:
            raise PoolRejectionError(self.detail or "Transaction rejected", self.pool_reason or PoolRejectionReason.OTHER)
        raise PrmxError(self.detail or "Transaction rejected")


class SubmitResult(BaseModel):
    """Result of submit-and-await: minted identifiers plus the outcome"""
    identifiers: List[str] = Field(default_factory=list)
    outcome: SubmissionOutcome
    correlation: Optional[CorrelatedEventSet] = None


# ---------------------------------------------------------------------------
# Normalized ledger records
# ---------------------------------------------------------------------------

class NormalizedRecord(BaseModel):
    """Canonical shape of one query result; built per read and never mutated"""
    model_config = ConfigDict(frozen=True)


class Market(NormalizedRecord):
    id: int
    name: str = ""
    center_latitude: Decimal
    center_longitude: Decimal
    timezone_offset_hours: int = 0
    event_type: str = "Rainfall24hRolling"
    strike_value_mm: Decimal
    payout_per_share: Decimal
    status: str = "Open"
    dao_margin_bp: int = 2000
    min_duration_secs: int = 86400
    max_duration_secs: int = 604800
    min_lead_time_secs: int = 1814400


class Location(NormalizedRecord):
    id: int
    name: str = ""
    accuweather_key: str = ""
    latitude: Decimal
    longitude: Decimal
    active: bool = True


class EventSpec(NormalizedRecord):
    event_type: str
    threshold_value: Decimal
    threshold_unit: str
    early_trigger: bool = False


class UnderwriteRequest(NormalizedRecord):
    id: Optional[str]
    requester: str
    location_id: int
    event_spec: EventSpec
    total_shares: int
    filled_shares: int = 0
    premium_per_share: Decimal
    payout_per_share: Decimal
    coverage_start: int
    coverage_end: int
    expires_at: int
    status: str
    created_at: int = 0

    @property
    def remaining_shares(self) -> int:
        return self.total_shares - self.filled_shares

    def is_open(self, now: Optional[int] = None) -> bool:
        """Whether the request can still be accepted at ``now`` (unix seconds)."""
        now = int(time.time()) if now is None else now
        return self.status in ("Pending", "PartiallyFilled") and self.expires_at > now


class Policy(NormalizedRecord):
    id: Optional[str]
    holder: str
    location_id: int
    event_spec: EventSpec
    total_shares: int
    premium_per_share: Decimal
    payout_per_share: Decimal
    coverage_start: int
    coverage_end: int
    status: str
    defi_allocated: bool = False
    created_at: int = 0

    @property
    def max_payout(self) -> Decimal:
        return self.payout_per_share * self.total_shares


class AggState(NormalizedRecord):
    kind: str
    value: Union[Decimal, NoData]

    @property
    def has_data(self) -> bool:
        return self.value is not NO_DATA


class OracleState(NormalizedRecord):
    policy_id: Optional[str]
    event_spec: EventSpec
    agg_state: AggState
    observed_until: int = 0
    commitment: str = ""
    status: str


class RollingState(NormalizedRecord):
    last_bucket_index: int
    oldest_bucket_index: int
    rolling_sum_mm: Decimal


class RainBucket(NormalizedRecord):
    timestamp: int
    rainfall_mm: Decimal
    block_number: int = 0


class LpPosition(NormalizedRecord):
    lp_shares: int
    principal_usdt: Decimal


class SettlementResult(NormalizedRecord):
    event_occurred: bool
    payout_to_holder: Decimal
    returned_to_lps: Decimal
    settled_at: int = 0


class ThresholdTriggerLog(NormalizedRecord):
    trigger_id: int
    market_id: int
    policy_id: Optional[str]
    triggered_at: int
    block_number: int = 0
    rolling_sum_mm: Decimal
    strike_threshold_mm: Decimal
    holder: str = ""
    payout_amount: Decimal
    center_latitude: Decimal
    center_longitude: Decimal


class RequestCancellation(NormalizedRecord):
    """Payload of a RequestCancelled event"""
    request_id: Optional[str]
    unfilled_shares: int = 0
    premium_returned: Decimal


class CancelResult(SubmitResult):
    """Result of cancelling a request, with the premium returned to the requester"""
    cancellation: Optional[RequestCancellation] = None

    @property
    def refund(self) -> Decimal:
        if self.cancellation is None:
            return Decimal(0)
        return self.cancellation.premium_returned


# ---------------------------------------------------------------------------
# Auxiliary health service
# ---------------------------------------------------------------------------

class ServiceHealth(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str = "offline"
    last_check: int = 0


class HealthMetrics(BaseModel):
    policies_monitored: int = 0
    snapshots_last_24h: int = 0
    observations_last_24h: int = 0
    last_successful_operation: int = 0


class HealthStatus(BaseModel):
    """Liveness report of the off-chain oracle service"""
    overall_status: str
    timestamp: int
    services: Dict[str, ServiceHealth] = Field(default_factory=dict)
    metrics: HealthMetrics = Field(default_factory=HealthMetrics)

    SERVICE_NAMES: ClassVar[Tuple[str, ...]] = ("oracle_v2", "oracle_v3", "database", "chain")

    @classmethod
    def offline(cls, now: Optional[int] = None) -> "HealthStatus":
        """Degraded status reported when the service cannot be reached."""
        now = int(time.time()) if now is None else now
        return cls(
            overall_status="down",
            timestamp=now,
            services={name: ServiceHealth(status="offline", last_check=now) for name in cls.SERVICE_NAMES},
            metrics=HealthMetrics()
        )

    @property
    def is_online(self) -> bool:
        return self.overall_status != "down"
