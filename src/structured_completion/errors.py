from __future__ import annotations


class PipelineError(Exception):
    """Base error for completion pipeline failures."""

    retryable: bool = False


class ConfigurationError(PipelineError):
    """Missing credential or invalid request. Never retried."""


class AuthenticationError(ConfigurationError):
    """Upstream rejected the configured credential."""


class UnsupportedFeatureError(ConfigurationError):
    """Requested feature not supported by the selected provider."""


class TransportError(PipelineError):
    """Network failure, timeout, or non-2xx upstream response."""

    retryable = True

    def __init__(
        self,
        message: str = "Upstream request failed.",
        *,
        status_code: int | None = None,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable


class UpstreamProtocolError(TransportError):
    """Unexpected upstream response shape / contract mismatch."""

    retryable = False


class UpstreamRateLimitError(TransportError):
    def __init__(self, retry_after_seconds: int | None = None, message: str = "Upstream rate limited"):
        super().__init__(message, status_code=429)
        self.retry_after_seconds = retry_after_seconds


class CircuitBreakerOpenError(TransportError):
    def __init__(self, retry_after_seconds: int | None = None, message: str = "Upstream temporarily unavailable"):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class RequestTimeoutError(TransportError):
    """Request deadline exceeded."""


class RateLimitExceeded(PipelineError):
    """Local call budget exhausted for a non-essential call."""

    retryable = True

    def __init__(
        self,
        message: str = "Rate limit approaching - request blocked. Try again in a moment.",
        *,
        retry_after_seconds: float | None = None,
    ):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class ToolExecutionError(PipelineError):
    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ExtractionError(PipelineError):
    """Text could not be recovered as structured data."""


class NoProviderAvailableError(PipelineError):
    """No configured provider could serve the request."""


class TurnCancelledError(PipelineError):
    """The caller's cancellation signal was raised during a turn."""
