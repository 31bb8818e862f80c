"""Generic JSON-over-HTTP adapter.

Handles any source whose endpoint returns either a JSON array, an object
holding an array at a dotted path, or a GeoJSON FeatureCollection. The
mapping from items to raw records is driven by the source's fetch_config:

    records_path     dotted path to the item list (e.g. "data.results")
    query            static query parameters sent with every request
    headers          extra request headers
    id_field         item field holding a stable id (default "id")
    name_field       item field holding the display name (default "name")
    category         fixed category for every record (default "OTHER")
    category_field   item field holding the category (overrides category)
    lat_field        item field holding latitude (default "latitude")
    lon_field        item field holding longitude (default "longitude")
    confidence       fixed confidence for every record (default 0.5)
"""

import hashlib
import json
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from floodgate.adapters.base import (
    AdapterParseError,
    AdapterTimeoutError,
    TransientSourceError,
    handle_http_status,
)
from floodgate.models import FetchResult, GeoPoint, RawRecord, Source, utcnow
from floodgate.store import RecordStore

logger = logging.getLogger(__name__)


def _dig(payload: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts."""
    current = payload
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _float_or_none(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class JSONEndpointAdapter:
    """Adapter for JSON endpoints configured entirely through fetch_config.

    Attributes:
        kind: "json"
    """

    DEFAULT_TIMEOUT = 10.0  # seconds

    def __init__(
        self,
        store: RecordStore,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._timeout = timeout or self.DEFAULT_TIMEOUT
        self._client = client

    @property
    def kind(self) -> str:
        return "json"

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazy initialization of HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                headers={"User-Agent": "Floodgate/1.0"},
                follow_redirects=True,
            )
        return self._client

    async def fetch(self, source: Source, params: dict[str, Any]) -> FetchResult:
        """Fetch a source's endpoint and store the items as raw records.

        Args:
            source: Source to fetch.
            params: Per-job query parameters, merged over fetch_config["query"].

        Returns:
            FetchResult with the number of newly written records.

        Raises:
            AdapterTimeoutError: If the request times out.
            TransientSourceError: On connection failures, 429 or 5xx.
            AdapterAuthError: On 401/403.
            AdapterParseError: On other 4xx or a malformed payload.
        """
        config = source.fetch_config
        query = {**config.get("query", {}), **params}
        client = await self._get_client()
        logger.info(f"Fetching {source.slug}: {source.endpoint}")

        try:
            response = await client.get(
                source.endpoint,
                params=query or None,
                headers=config.get("headers") or None,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Timeout fetching {source.slug}")
            raise AdapterTimeoutError(source.slug, self._timeout) from e
        except httpx.HTTPError as e:
            logger.warning(f"HTTP error fetching {source.slug}: {e}")
            raise TransientSourceError(source.slug, str(e)) from e

        handle_http_status(source.slug, response)

        try:
            payload = response.json()
        except ValueError as e:
            raise AdapterParseError(source.slug, "Invalid JSON response") from e

        items = self.extract_items(source, payload)
        records, skipped = self.to_records(source, items)
        if skipped:
            logger.warning(f"{source.slug}: skipped {skipped} malformed item(s)")

        written = await self._store.insert_raw_records(records)
        logger.info(f"{source.slug}: {written} new of {len(records)} record(s)")
        return FetchResult(records_written=written)

    def extract_items(self, source: Source, payload: Any) -> list[dict[str, Any]]:
        """Locate the list of items in a decoded payload.

        Raises:
            AdapterParseError: If no item list can be found.
        """
        path = source.fetch_config.get("records_path")
        if path:
            items = _dig(payload, path)
        elif isinstance(payload, dict) and "features" in payload:
            items = payload["features"]
        else:
            items = payload

        if not isinstance(items, list):
            where = f"at '{path}'" if path else "at top level"
            raise AdapterParseError(source.slug, f"Expected a list of records {where}")
        return [item for item in items if isinstance(item, dict)]

    def to_records(
        self, source: Source, items: list[dict[str, Any]]
    ) -> tuple[list[RawRecord], int]:
        """Map items to RawRecords.

        Returns:
            Tuple of (valid records, number of skipped items)
        """
        records: list[RawRecord] = []
        skipped = 0
        for item in items:
            try:
                records.append(self._to_record(source, item))
            except ValidationError as e:
                skipped += 1
                logger.debug(f"{source.slug}: invalid item: {e.error_count()} error(s)")
        return records, skipped

    def _to_record(self, source: Source, item: dict[str, Any]) -> RawRecord:
        config = source.fetch_config
        geometry = None

        # GeoJSON features carry coordinates outside the properties bag
        if item.get("type") == "Feature":
            props = dict(item.get("properties") or {})
            coords = (item.get("geometry") or {}).get("coordinates") or []
            if len(coords) >= 2:
                lon, lat = _float_or_none(coords[0]), _float_or_none(coords[1])
                if lon is not None and lat is not None:
                    geometry = GeoPoint(longitude=lon, latitude=lat)
            if "id" in item and "id" not in props:
                props["id"] = item["id"]
        else:
            props = dict(item)
            lat = _float_or_none(props.get(config.get("lat_field", "latitude")))
            lon = _float_or_none(props.get(config.get("lon_field", "longitude")))
            if lat is not None and lon is not None:
                geometry = GeoPoint(longitude=lon, latitude=lat)

        raw_id = props.get(config.get("id_field", "id"))
        if raw_id in (None, ""):
            digest = hashlib.sha256(
                json.dumps(item, sort_keys=True, default=str).encode()
            ).hexdigest()[:16]
            raw_id = digest

        category_field = config.get("category_field")
        category = props.get(category_field) if category_field else None
        name = props.get(config.get("name_field", "name"))

        return RawRecord(
            id=f"{source.slug}:{raw_id}",
            source_id=source.slug,
            category=str(category or config.get("category", "OTHER")).upper(),
            name=str(name) if name is not None else None,
            geometry=geometry,
            properties=props,
            confidence=config.get("confidence", 0.5),
            created_at=utcnow(),
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.debug("JSON endpoint adapter client closed")


__all__ = ["JSONEndpointAdapter"]
