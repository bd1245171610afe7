"""Error taxonomy for the orchestration core.

Only invariant violations are meant to escape a request sequence.
Transport errors are retried by RetryPolicy, malformed output surfaces
to the immediate caller, and everything else becomes a stream event.
"""

from __future__ import annotations


class PalaverError(Exception):
    """Base class for palaver errors."""


class TransportError(PalaverError):
    """A failed model call, carrying the HTTP status when there was one."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        retry_after: float | None = None,
        error_type: str = "unknown",
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after
        self.error_type = error_type

    @property
    def is_rate_limit(self) -> bool:
        return self.status == 429

    @property
    def is_server_error(self) -> bool:
        # 529 is the overloaded status some providers use
        return self.status is not None and 500 <= self.status < 600


class AbortError(PalaverError):
    """Raised when an operation observes an aborted signal."""


class InvalidStreamError(PalaverError):
    """A stream completed without usable content."""

    NO_FINISH_REASON = "NO_FINISH_REASON"
    NO_RESPONSE_TEXT = "NO_RESPONSE_TEXT"

    def __init__(self, message: str, kind: str) -> None:
        super().__init__(message)
        self.kind = kind


class MalformedResponseError(PalaverError):
    """Model output that could not be used: empty or unparsable."""


class ToolResponseMismatchError(PalaverError):
    """Tool responses do not pair up with the tool calls they answer."""


class SchedulerBusyError(PalaverError):
    """A tool-call batch was scheduled while another was still running."""
