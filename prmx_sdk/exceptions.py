"""
Exceptions for the PRMX SDK.
"""
from enum import Enum
from typing import Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ErrorDescriptor


class ErrorKind(str, Enum):
    """
    Classification of a terminal submission or read failure.

    Carried on rejected outcomes so callers can render a message without
    re-deriving the context of the failure.
    """
    POOL_REJECTION = "POOL_REJECTION"
    DISPATCH_FAILURE = "DISPATCH_FAILURE"
    TIMEOUT = "TIMEOUT"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"


class PoolRejectionReason(str, Enum):
    """Why the transaction pool refused a transaction."""
    PRIORITY_TOO_LOW = "PRIORITY_TOO_LOW"
    STALE_NONCE = "STALE_NONCE"
    OTHER = "OTHER"


class PrmxError(Exception):
    """Base exception for all PRMX SDK errors."""
    kind: Optional[ErrorKind] = None


class NodeConnectionError(PrmxError):
    """Raised when the ledger node cannot be reached or the connection drops."""
    pass


class NodeRequestError(PrmxError):
    """
    Raised when the node answers a request with an error.

    A pruned or unknown block on a non-archive node is the usual cause.
    """
    pass


class PoolRejectionError(PrmxError):
    """
    Raised when the node's transaction pool rejects a submission.

    Pool rejections never reach a block. Priority and nonce conflicts are
    transient and retried by the submission engine; everything else is
    terminal.
    """
    kind = ErrorKind.POOL_REJECTION

    def __init__(self, detail: str, reason: PoolRejectionReason = PoolRejectionReason.OTHER):
        self.detail = detail
        self.reason = reason
        super().__init__(detail)

    @property
    def retryable(self) -> bool:
        return self.reason in (PoolRejectionReason.PRIORITY_TOO_LOW, PoolRejectionReason.STALE_NONCE)


class DispatchFailureError(PrmxError):
    """
    Raised when a transaction was included but its execution failed.

    The message is the decoded ``module.name: description`` text so it can be
    shown to a user verbatim.
    """
    kind = ErrorKind.DISPATCH_FAILURE

    def __init__(self, descriptor: "ErrorDescriptor"):
        self.descriptor = descriptor
        super().__init__(str(descriptor))


class SubmissionTimeoutError(PrmxError):
    """
    Raised when no terminal status arrived within the per-attempt bound.

    A timeout is ambiguous: the transaction may still have landed.
    ``possibly_included`` is set when the signer's nonce advanced while we
    were waiting.
    """
    kind = ErrorKind.TIMEOUT

    def __init__(self, detail: str, possibly_included: bool = False):
        self.detail = detail
        self.possibly_included = possibly_included
        super().__init__(detail)


class MalformedResponseError(PrmxError):
    """
    Raised when a query result cannot be resolved by any known field convention.

    The raw payload is attached for diagnosis.
    """
    kind = ErrorKind.MALFORMED_RESPONSE

    def __init__(self, message: str, field: Optional[str] = None,
                 schema: Optional[str] = None, raw: Any = None):
        self.field = field
        self.schema = schema
        self.raw = raw
        super().__init__(message)
