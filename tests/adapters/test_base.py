"""Tests for adapter protocol and error hierarchy."""

from typing import Any

import httpx
import pytest

from floodgate.adapters import (
    AdapterAuthError,
    AdapterError,
    AdapterNotFoundError,
    AdapterParseError,
    AdapterTimeoutError,
    SourceAdapter,
    TransientSourceError,
    handle_http_status,
)
from floodgate.models import FetchResult, Source


class MockAdapter:
    """A minimal adapter that conforms to SourceAdapter protocol."""

    @property
    def kind(self) -> str:
        return "mock"

    async def fetch(self, source: Source, params: dict[str, Any]) -> FetchResult:
        return FetchResult(records_written=1)


class TestSourceAdapterProtocol:
    def test_isinstance_works_with_conforming_class(self) -> None:
        """Protocol check works without explicit inheritance."""
        assert isinstance(MockAdapter(), SourceAdapter)

    def test_isinstance_fails_with_non_conforming_class(self) -> None:
        """Protocol check fails for classes missing required methods."""

        class IncompleteAdapter:
            @property
            def kind(self) -> str:
                return "incomplete"

            # Missing: fetch

        assert not isinstance(IncompleteAdapter(), SourceAdapter)


class TestAdapterErrors:
    def test_adapter_error_includes_source_name(self) -> None:
        error = AdapterError("city-parks", "Something broke")
        assert error.source_name == "city-parks"
        assert error.message == "Something broke"
        assert str(error) == "[city-parks] Something broke"

    def test_timeout_error_is_transient(self) -> None:
        error = AdapterTimeoutError("city-parks", 10.0)
        assert isinstance(error, TransientSourceError)
        assert isinstance(error, AdapterError)
        assert error.timeout_seconds == 10.0
        assert "Request timed out after 10.0s" in str(error)

    def test_timeout_error_without_duration(self) -> None:
        assert str(AdapterTimeoutError("city-parks")) == "[city-parks] Request timed out"

    def test_transient_error_details(self) -> None:
        error = TransientSourceError("city-parks", "HTTP 503")
        assert error.details == "HTTP 503"
        assert "temporarily unavailable: HTTP 503" in str(error)

    def test_parse_error(self) -> None:
        error = AdapterParseError("city-parks", "Invalid JSON response")
        assert "Failed to parse response: Invalid JSON response" in str(error)

    def test_auth_error_default_message(self) -> None:
        assert "Authentication failed" in str(AdapterAuthError("city-parks"))

    def test_not_found_error(self) -> None:
        error = AdapterNotFoundError("rss-feed", "rss")
        assert error.kind == "rss"
        assert "No adapter registered for kind 'rss'" in str(error)


class TestHandleHttpStatus:
    def _response(self, status_code: int) -> httpx.Response:
        return httpx.Response(status_code, request=httpx.Request("GET", "https://x.example.test"))

    @pytest.mark.parametrize("status_code", [200, 204, 304])
    def test_success_passes(self, status_code: int) -> None:
        handle_http_status("src", self._response(status_code))

    @pytest.mark.parametrize("status_code", [401, 403])
    def test_auth_failures(self, status_code: int) -> None:
        with pytest.raises(AdapterAuthError):
            handle_http_status("src", self._response(status_code))

    @pytest.mark.parametrize("status_code", [429, 500, 502, 503])
    def test_transient_failures(self, status_code: int) -> None:
        with pytest.raises(TransientSourceError, match=f"HTTP {status_code}"):
            handle_http_status("src", self._response(status_code))

    @pytest.mark.parametrize("status_code", [400, 404, 422])
    def test_other_client_errors(self, status_code: int) -> None:
        with pytest.raises(AdapterParseError):
            handle_http_status("src", self._response(status_code))
