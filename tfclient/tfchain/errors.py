"""
Typed errors raised by the TFChain client.

Only TransientDisconnect is retried automatically, every other kind reaches
the caller of the failing operation unchanged.
"""

from enum import Enum
from typing import Any, Optional


class ChainErrorKind(str, Enum):
    TRANSIENT_DISCONNECT = "TRANSIENT_DISCONNECT"
    REJECTED = "REJECTED"
    NOT_FOUND = "NOT_FOUND"
    MALFORMED = "MALFORMED"
    PRECONDITION_VIOLATED = "PRECONDITION_VIOLATED"
    DID_NOT_CONVERGE = "DID_NOT_CONVERGE"


class ChainError(Exception):
    """Base exception for TFChain client errors."""

    kind: ChainErrorKind

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        return f"[{self.kind.value}] {self.message}"


class TransientDisconnect(ChainError):
    """The connection to the node dropped, the call is safe to issue again."""

    kind = ChainErrorKind.TRANSIENT_DISCONNECT


class Rejected(ChainError):
    """The node refused the request, e.g. a bad extrinsic or an unknown RPC method."""

    kind = ChainErrorKind.REJECTED

    def __init__(self, reason: Any, details: Optional[dict] = None):
        super().__init__(str(reason), details)
        self.reason = reason


class NotFound(ChainError):
    kind = ChainErrorKind.NOT_FOUND


class MalformedPayload(ChainError):
    """A hash, header or storage value could not be decoded."""

    kind = ChainErrorKind.MALFORMED

    def __init__(self, message: str, payload: Any = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.payload = payload


class PreconditionViolated(ChainError):
    kind = ChainErrorKind.PRECONDITION_VIOLATED


class DidNotConverge(ChainError):
    kind = ChainErrorKind.DID_NOT_CONVERGE
