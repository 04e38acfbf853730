"""
PRMX SDK - transaction lifecycle and ledger data client for the PRMX chain.
"""
from .version import __version__
from .client import LedgerClient, COLLECTIONS
from .codec import normalize, parse_int, resolve_variant, FieldSpec, SCHEMAS
from .config import NetworkConfig, SubmissionSettings
from .correlator import EventCorrelator
from .engine import SubmissionEngine, backoff_delay, classify_pool_error
from .health import HealthClient
from .identifiers import is_valid_128, extract_128, find_event_identifier
from .tracker import StatusTracker
from .models import (
    NO_DATA, Call, TxStatus, StatusUpdate, EventRecord, BlockEventLog, CorrelationStatus,
    CorrelatedEventSet, OutcomeKind, SubmissionOutcome, ErrorDescriptor, SubmitResult, CancelResult,
    NormalizedRecord, Market, Location, EventSpec, UnderwriteRequest, Policy, AggState,
    OracleState, RollingState, RainBucket, LpPosition, SettlementResult, ThresholdTriggerLog,
    RequestCancellation, HealthStatus
)
from .exceptions import (
    PrmxError, ErrorKind, PoolRejectionError, PoolRejectionReason, DispatchFailureError,
    SubmissionTimeoutError, MalformedResponseError, NodeConnectionError, NodeRequestError
)

__all__ = [
    "LedgerClient", "COLLECTIONS",
    "normalize", "parse_int", "resolve_variant", "FieldSpec", "SCHEMAS",
    "NetworkConfig", "SubmissionSettings",
    "EventCorrelator", "SubmissionEngine", "backoff_delay", "classify_pool_error",
    "HealthClient", "is_valid_128", "extract_128", "find_event_identifier", "StatusTracker",
    "NO_DATA", "Call", "TxStatus", "StatusUpdate", "EventRecord", "BlockEventLog",
    "CorrelationStatus", "CorrelatedEventSet", "OutcomeKind", "SubmissionOutcome",
    "ErrorDescriptor", "SubmitResult", "CancelResult", "NormalizedRecord", "Market", "Location", "EventSpec",
    "UnderwriteRequest", "Policy", "AggState", "OracleState", "RollingState", "RainBucket",
    "LpPosition", "SettlementResult", "ThresholdTriggerLog", "RequestCancellation", "HealthStatus",
    "PrmxError", "ErrorKind", "PoolRejectionError", "PoolRejectionReason",
    "DispatchFailureError", "SubmissionTimeoutError", "MalformedResponseError",
    "NodeConnectionError", "NodeRequestError",
    "__version__",
]
