"""Source adapters."""

from floodgate.adapters.base import (
    AdapterAuthError,
    AdapterError,
    AdapterNotFoundError,
    AdapterParseError,
    AdapterTimeoutError,
    SourceAdapter,
    TransientSourceError,
    handle_http_status,
)
from floodgate.adapters.json_endpoint import JSONEndpointAdapter
from floodgate.adapters.registry import AdapterRegistry

__all__ = [
    "SourceAdapter",
    "AdapterError",
    "AdapterTimeoutError",
    "AdapterParseError",
    "AdapterAuthError",
    "AdapterNotFoundError",
    "TransientSourceError",
    "AdapterRegistry",
    "JSONEndpointAdapter",
    "handle_http_status",
]
