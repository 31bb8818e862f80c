"""Tests for the generic JSON endpoint adapter."""

import re

import httpx
import pytest
from pytest_httpx import HTTPXMock

from floodgate.adapters import (
    AdapterAuthError,
    AdapterParseError,
    AdapterTimeoutError,
    JSONEndpointAdapter,
    SourceAdapter,
    TransientSourceError,
)
from floodgate.models import GeoPoint, Source
from floodgate.store import RecordStore

PARKS_URL = "https://data.example.test/parks.json"

PARKS_PAYLOAD = {
    "data": {
        "results": [
            {"id": 1, "name": "Oak Park", "latitude": 41.8781, "longitude": -87.6244},
            {"id": 2, "name": "Lincoln Park", "latitude": "41.92", "longitude": "-87.63"},
        ]
    }
}

FEATURE_COLLECTION = {
    "type": "FeatureCollection",
    "features": [
        {
            "type": "Feature",
            "id": "node/1",
            "geometry": {"type": "Point", "coordinates": [-87.6, 41.8]},
            "properties": {"name": "Dog Beach", "leisure": "beach"},
        },
        {
            "type": "Feature",
            "geometry": None,
            "properties": {"title": "No name field"},
        },
    ],
}


@pytest.fixture
def adapter(store: RecordStore) -> JSONEndpointAdapter:
    return JSONEndpointAdapter(store, timeout=2.0)


class TestJSONEndpointAdapter:
    def test_conforms_to_protocol(self, adapter: JSONEndpointAdapter) -> None:
        assert isinstance(adapter, SourceAdapter)
        assert adapter.kind == "json"

    @pytest.mark.asyncio
    async def test_fetch_writes_records(
        self, httpx_mock: HTTPXMock, adapter: JSONEndpointAdapter, store: RecordStore, parks_source: Source
    ) -> None:
        httpx_mock.add_response(url=PARKS_URL, json=PARKS_PAYLOAD)

        try:
            result = await adapter.fetch(parks_source, {})
        finally:
            await adapter.close()

        assert result.ok
        assert result.records_written == 2
        record = await store.get_raw_record("city-parks:1")
        assert record is not None
        assert record.source_id == "city-parks"
        assert record.category == "RECREATION"
        assert record.name == "Oak Park"
        assert record.geometry == GeoPoint(longitude=-87.6244, latitude=41.8781)
        second = await store.get_raw_record("city-parks:2")
        assert second is not None
        assert second.geometry == GeoPoint(longitude=-87.63, latitude=41.92)

    @pytest.mark.asyncio
    async def test_refetch_writes_nothing_new(
        self, httpx_mock: HTTPXMock, adapter: JSONEndpointAdapter, store: RecordStore, parks_source: Source
    ) -> None:
        httpx_mock.add_response(url=PARKS_URL, json=PARKS_PAYLOAD)
        httpx_mock.add_response(url=PARKS_URL, json=PARKS_PAYLOAD)

        try:
            await adapter.fetch(parks_source, {})
            result = await adapter.fetch(parks_source, {})
        finally:
            await adapter.close()

        assert result.records_written == 0
        assert await store.count_records() == 2

    @pytest.mark.asyncio
    async def test_geojson_features(
        self, httpx_mock: HTTPXMock, adapter: JSONEndpointAdapter, store: RecordStore
    ) -> None:
        source = Source(slug="osm", endpoint="https://osm.example.test/api", fetch_config={"category": "recreation"})
        httpx_mock.add_response(url="https://osm.example.test/api", json=FEATURE_COLLECTION)

        try:
            result = await adapter.fetch(source, {})
        finally:
            await adapter.close()

        assert result.records_written == 2
        beach = await store.get_raw_record("osm:node/1")
        assert beach is not None
        assert beach.geometry == GeoPoint(longitude=-87.6, latitude=41.8)
        assert beach.category == "RECREATION"
        assert beach.properties["leisure"] == "beach"
        unnamed = [r for r in await store.list_raw_records(source_id="osm") if r.id != "osm:node/1"]
        assert len(unnamed) == 1
        assert unnamed[0].name == "Unknown"
        assert unnamed[0].geometry is None

    @pytest.mark.asyncio
    async def test_field_mapping(
        self, httpx_mock: HTTPXMock, adapter: JSONEndpointAdapter, store: RecordStore
    ) -> None:
        source = Source(
            slug="usa",
            endpoint="https://usa.example.test/awards",
            fetch_config={
                "id_field": "award_id",
                "name_field": "recipient",
                "category_field": "kind",
                "lat_field": "lat",
                "lon_field": "lng",
                "confidence": 0.9,
            },
        )
        httpx_mock.add_response(
            url="https://usa.example.test/awards",
            json=[{"award_id": "A-7", "recipient": 12345, "kind": "contract", "lat": 40.0, "lng": -88.0}],
        )

        try:
            await adapter.fetch(source, {})
        finally:
            await adapter.close()

        record = await store.get_raw_record("usa:A-7")
        assert record is not None
        assert record.name == "12345"
        assert record.category == "CONTRACT"
        assert record.confidence == 0.9
        assert record.geometry == GeoPoint(longitude=-88.0, latitude=40.0)

    @pytest.mark.asyncio
    async def test_invalid_items_skipped(
        self, httpx_mock: HTTPXMock, adapter: JSONEndpointAdapter, store: RecordStore, parks_source: Source
    ) -> None:
        payload = {
            "data": {
                "results": [
                    {"id": 1, "name": "Fine", "latitude": 41.0, "longitude": -87.0},
                    {"id": 2, "name": "Off the map", "latitude": 200.0, "longitude": -87.0},
                    "not an object",
                ]
            }
        }
        httpx_mock.add_response(url=PARKS_URL, json=payload)

        try:
            result = await adapter.fetch(parks_source, {})
        finally:
            await adapter.close()

        assert result.records_written == 1
        assert await store.get_raw_record("city-parks:2") is None

    @pytest.mark.asyncio
    async def test_query_params_merged(
        self, httpx_mock: HTTPXMock, adapter: JSONEndpointAdapter, store: RecordStore
    ) -> None:
        source = Source(
            slug="feed",
            endpoint="https://feed.example.test/items",
            fetch_config={"query": {"limit": "50", "page": "1"}, "headers": {"X-App-Token": "abc"}},
        )
        httpx_mock.add_response(url=re.compile(r"https://feed\.example\.test/items\?.*"), json=[])

        try:
            result = await adapter.fetch(source, {"page": "2"})
        finally:
            await adapter.close()

        assert result.records_written == 0
        request = httpx_mock.get_request()
        assert request is not None
        assert request.url.params["limit"] == "50"
        assert request.url.params["page"] == "2"
        assert request.headers["X-App-Token"] == "abc"


class TestJSONEndpointErrors:
    """Tests for error mapping."""

    @pytest.mark.asyncio
    async def test_timeout(self, httpx_mock: HTTPXMock, adapter: JSONEndpointAdapter, parks_source: Source) -> None:
        httpx_mock.add_exception(httpx.ReadTimeout("Connection timed out"))

        try:
            with pytest.raises(AdapterTimeoutError):
                await adapter.fetch(parks_source, {})
        finally:
            await adapter.close()

    @pytest.mark.asyncio
    async def test_connection_error(
        self, httpx_mock: HTTPXMock, adapter: JSONEndpointAdapter, parks_source: Source
    ) -> None:
        httpx_mock.add_exception(httpx.ConnectError("Connection refused"))

        try:
            with pytest.raises(TransientSourceError, match="Connection refused"):
                await adapter.fetch(parks_source, {})
        finally:
            await adapter.close()

    @pytest.mark.asyncio
    async def test_server_error(self, httpx_mock: HTTPXMock, adapter: JSONEndpointAdapter, parks_source: Source) -> None:
        httpx_mock.add_response(url=PARKS_URL, status_code=503)

        try:
            with pytest.raises(TransientSourceError, match="HTTP 503"):
                await adapter.fetch(parks_source, {})
        finally:
            await adapter.close()

    @pytest.mark.asyncio
    async def test_auth_error(self, httpx_mock: HTTPXMock, adapter: JSONEndpointAdapter, parks_source: Source) -> None:
        httpx_mock.add_response(url=PARKS_URL, status_code=401)

        try:
            with pytest.raises(AdapterAuthError):
                await adapter.fetch(parks_source, {})
        finally:
            await adapter.close()

    @pytest.mark.asyncio
    async def test_invalid_json(self, httpx_mock: HTTPXMock, adapter: JSONEndpointAdapter, parks_source: Source) -> None:
        httpx_mock.add_response(url=PARKS_URL, text="<html>maintenance</html>")

        try:
            with pytest.raises(AdapterParseError, match="Invalid JSON response"):
                await adapter.fetch(parks_source, {})
        finally:
            await adapter.close()

    @pytest.mark.asyncio
    async def test_records_path_not_a_list(
        self, httpx_mock: HTTPXMock, adapter: JSONEndpointAdapter, parks_source: Source
    ) -> None:
        httpx_mock.add_response(url=PARKS_URL, json={"data": {"results": {"id": 1}}})

        try:
            with pytest.raises(AdapterParseError, match="at 'data.results'"):
                await adapter.fetch(parks_source, {})
        finally:
            await adapter.close()

    @pytest.mark.asyncio
    async def test_top_level_object(self, httpx_mock: HTTPXMock, adapter: JSONEndpointAdapter) -> None:
        source = Source(slug="obj", endpoint="https://obj.example.test")
        httpx_mock.add_response(json={"message": "hello"})

        try:
            with pytest.raises(AdapterParseError, match="at top level"):
                await adapter.fetch(source, {})
        finally:
            await adapter.close()
