"""
Error taxonomy for post-call analysis.

Every scoring failure resolves to one of these kinds. The kind travels on the
wire (job records, HTTP error bodies) so callers can decide on retries without
parsing messages.
"""
from enum import Enum
from typing import Any, Dict


class ErrorKind(str, Enum):
    INSUFFICIENT_TRANSCRIPT = "insufficient_transcript"
    UPSTREAM = "upstream_error"
    PARSE = "parse_error"
    TIMEOUT = "timeout"


class AnalysisError(Exception):
    kind: ErrorKind = ErrorKind.UPSTREAM
    retryable: bool = False
    status_code: int = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "retryable": self.retryable}


class InsufficientTranscriptError(AnalysisError):
    """Transcript too short or empty to analyze. Terminal, never retried."""
    kind = ErrorKind.INSUFFICIENT_TRANSCRIPT
    status_code = 422


class UpstreamError(AnalysisError):
    """The scoring call failed (rate limit, outage, auth)."""
    kind = ErrorKind.UPSTREAM
    retryable = True
    status_code = 502


class ParseError(AnalysisError):
    """The scoring call answered, but not with something we can read as a Report."""
    kind = ErrorKind.PARSE
    status_code = 502


class ScoringTimeoutError(AnalysisError):
    kind = ErrorKind.TIMEOUT
    retryable = True
    status_code = 504


class SessionNotFoundError(Exception):
    def __init__(self, session_id: str):
        super().__init__(f"Training session {session_id} not found")
        self.session_id = session_id


class AlreadyScoredError(Exception):
    def __init__(self, session_id: str):
        super().__init__(f"Training session {session_id} already has a score")
        self.session_id = session_id


_ERRORS_BY_KIND = {
    ErrorKind.INSUFFICIENT_TRANSCRIPT: InsufficientTranscriptError,
    ErrorKind.UPSTREAM: UpstreamError,
    ErrorKind.PARSE: ParseError,
    ErrorKind.TIMEOUT: ScoringTimeoutError,
}


def error_from_kind(kind: str, message: str) -> AnalysisError:
    """Rebuild a taxonomy error from its wire form. Unknown kinds map to UpstreamError."""
    try:
        cls = _ERRORS_BY_KIND[ErrorKind(kind)]
    except ValueError:
        cls = UpstreamError
    return cls(message)
