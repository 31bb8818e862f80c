"""Tests for the adapter registry."""

from typing import Any
from unittest.mock import AsyncMock

import pytest

from floodgate.adapters import AdapterNotFoundError, AdapterRegistry
from floodgate.models import FetchResult, Source


class StubAdapter:
    def __init__(self, kind: str) -> None:
        self._kind = kind
        self.close = AsyncMock()

    @property
    def kind(self) -> str:
        return self._kind

    async def fetch(self, source: Source, params: dict[str, Any]) -> FetchResult:
        return FetchResult()


class TestAdapterRegistry:
    def test_register_and_get(self) -> None:
        adapter = StubAdapter("json")
        registry = AdapterRegistry([adapter])

        assert registry.get("json") is adapter
        assert "json" in registry
        assert "rss" not in registry

    def test_kinds_sorted(self) -> None:
        registry = AdapterRegistry([StubAdapter("rss"), StubAdapter("json")])
        assert registry.kinds == ["json", "rss"]

    def test_replacing_kind(self) -> None:
        first, second = StubAdapter("json"), StubAdapter("json")
        registry = AdapterRegistry([first])

        registry.register(second)

        assert registry.get("json") is second

    def test_unknown_kind(self) -> None:
        registry = AdapterRegistry()
        with pytest.raises(AdapterNotFoundError) as exc_info:
            registry.get("rss", "city-feed")
        assert exc_info.value.source_name == "city-feed"
        assert exc_info.value.kind == "rss"

    def test_rejects_non_adapter(self) -> None:
        with pytest.raises(TypeError, match="does not implement SourceAdapter"):
            AdapterRegistry().register(object())  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_close_closes_adapters(self) -> None:
        adapters = [StubAdapter("json"), StubAdapter("rss")]
        registry = AdapterRegistry(adapters)

        await registry.close()

        for adapter in adapters:
            adapter.close.assert_awaited_once()
