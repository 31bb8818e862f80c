"""Base protocol and error hierarchy for source adapters.

This module defines the SourceAdapter protocol that every ingestion adapter
must implement, along with a standardized error hierarchy so the scheduler
can record any adapter failure on the job without knowing its details.
"""

from typing import Any, Protocol, runtime_checkable

import httpx

from floodgate.models import FetchResult, Source


@runtime_checkable
class SourceAdapter(Protocol):
    """Protocol for all source adapters.

    All adapters MUST implement this protocol. The @runtime_checkable
    decorator enables isinstance() checks without explicit inheritance.

    Error Handling Contract:
    - TransientSourceError: Network failure, 429 or 5xx (job marked failed)
    - AdapterTimeoutError: Request timed out
    - AdapterParseError: Malformed payload or unexpected 4xx
    - AdapterAuthError: Credentials rejected (401/403)
    - FetchResult(records_written=0): Source reachable but had nothing new
    """

    @property
    def kind(self) -> str:
        """Registry key matched against Source.kind (e.g. 'json')."""
        ...

    async def fetch(self, source: Source, params: dict[str, Any]) -> FetchResult:
        """Fetch from a source and persist what it returns as raw records.

        Args:
            source: Source configuration (endpoint, fetch_config).
            params: Per-job parameters merged into the request.

        Returns:
            FetchResult with the number of newly written records.

        Raises:
            AdapterError: Any subclass on failure.
        """
        ...


class AdapterError(Exception):
    """Base exception for all adapter errors.

    All adapter exceptions inherit from this class, enabling
    catch-all handling in the scheduler.

    Attributes:
        source_name: The source (slug) the error relates to.
        message: Human-readable error description.
    """

    def __init__(self, source_name: str, message: str) -> None:
        self.source_name = source_name
        self.message = message
        super().__init__(f"[{source_name}] {message}")


class TransientSourceError(AdapterError):
    """Raised for failures that may clear on their own.

    Connection errors, rate limiting and server errors land here. Jobs are
    not retried automatically; an operator or a new job picks it up later.
    """

    def __init__(self, source_name: str, details: str | None = None) -> None:
        msg = "Source temporarily unavailable"
        if details:
            msg = f"Source temporarily unavailable: {details}"
        super().__init__(source_name, msg)
        self.details = details


class AdapterTimeoutError(TransientSourceError):
    """Raised when an adapter request times out."""

    def __init__(self, source_name: str, timeout_seconds: float | None = None) -> None:
        msg = "Request timed out"
        if timeout_seconds is not None:
            msg = f"Request timed out after {timeout_seconds}s"
        AdapterError.__init__(self, source_name, msg)
        self.details = None
        self.timeout_seconds = timeout_seconds


class AdapterParseError(AdapterError):
    """Raised when a source response cannot be parsed.

    This typically indicates a schema change at the source or a wrong
    records_path in its fetch_config.
    """

    def __init__(self, source_name: str, details: str | None = None) -> None:
        msg = "Failed to parse response"
        if details:
            msg = f"Failed to parse response: {details}"
        super().__init__(source_name, msg)
        self.details = details


class AdapterAuthError(AdapterError):
    """Raised when authentication fails.

    Callers should NOT retry without fixing credentials.
    """

    def __init__(self, source_name: str, details: str | None = None) -> None:
        msg = "Authentication failed"
        if details:
            msg = f"Authentication failed: {details}"
        super().__init__(source_name, msg)
        self.details = details


class AdapterNotFoundError(AdapterError):
    """Raised when no adapter is registered for a source kind."""

    def __init__(self, source_name: str, kind: str) -> None:
        super().__init__(source_name, f"No adapter registered for kind '{kind}'")
        self.kind = kind


def handle_http_status(source_name: str, response: httpx.Response) -> None:
    """Raise the adapter error matching a non-success HTTP response.

    Args:
        source_name: Source slug for the error.
        response: Response to inspect.

    Raises:
        AdapterAuthError: On 401/403.
        TransientSourceError: On 429 and 5xx.
        AdapterParseError: On any other 4xx.
    """
    status = response.status_code
    if status < 400:
        return
    if status in (401, 403):
        raise AdapterAuthError(source_name, f"HTTP {status}")
    if status == 429 or status >= 500:
        raise TransientSourceError(source_name, f"HTTP {status}")
    raise AdapterParseError(source_name, f"HTTP {status}")


__all__ = [
    "SourceAdapter",
    "AdapterError",
    "AdapterTimeoutError",
    "AdapterParseError",
    "AdapterAuthError",
    "AdapterNotFoundError",
    "TransientSourceError",
    "handle_http_status",
]
