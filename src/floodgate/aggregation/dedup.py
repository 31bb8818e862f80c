"""Deduplication and canonicalization of raw records.

Raw records are clustered by a dedup key made of the upper-cased category,
the normalized name and a coarse geographic bucket. Each cluster becomes one
CanonicalRecord. Canonical records are derived data: they are regenerated
from the raw set, never patched in place.
"""

import hashlib
import json
import logging
import math
import re
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, ValidationError

from floodgate.models import CanonicalRecord, GeoPoint, RawRecord

logger = logging.getLogger(__name__)

DEFAULT_GEO_PRECISION = 4
NO_GEO = "nogeo"
HIGH_CONFIDENCE = 0.8

# Known scientific names shown as "Common (Latin)"
WILDLIFE_COMMON_NAMES: dict[str, str] = {
    "Melanerpes carolinus": "Red-bellied Woodpecker",
    "Sciurus carolinensis": "Eastern Gray Squirrel",
    "Branta canadensis": "Canada Goose",
    "Anas platyrhynchos": "Mallard Duck",
}

# Checked in order; first group with a keyword contained in the name wins
WILDLIFE_GROUPS: dict[str, tuple[str, ...]] = {
    "Birds": ("bird", "duck", "goose", "hawk", "owl", "eagle", "sparrow", "cardinal", "robin"),
    "Mammals": ("deer", "squirrel", "raccoon", "fox", "bear", "rabbit"),
}

_UNNAMED = {"", "Unknown", "POI"}


def normalize_name(name: str) -> str:
    """Lowercase, drop non-alphanumerics and collapse whitespace.

    >>> normalize_name("  The Old-Mill  Park! ")
    'the oldmill park'
    """
    lowered = name.lower().strip()
    stripped = re.sub(r"[^a-z0-9\s]", "", lowered)
    return re.sub(r"\s+", " ", stripped)


def geo_key(point: GeoPoint | None, precision: int = DEFAULT_GEO_PRECISION) -> str:
    """Bucket a point by truncating its coordinates.

    Each coordinate is floored after scaling by 10^(precision-2), so the
    default precision of 4 buckets to two decimal places.

    Returns:
        "lat:lon" bucket string, or "nogeo" when there is no point.
    """
    if point is None:
        return NO_GEO
    scale = 10 ** (precision - 2)
    return f"{math.floor(point.latitude * scale)}:{math.floor(point.longitude * scale)}"


def dedup_key(record: RawRecord, precision: int = DEFAULT_GEO_PRECISION) -> str:
    """Cluster key for a raw record: CATEGORY:normalized name:geo bucket."""
    return f"{record.category.upper()}:{normalize_name(record.name)}:{geo_key(record.geometry, precision)}"


def format_display_name(name: str, category: str) -> str:
    """Derive a human-friendly display name.

    Placeholder names become "Unnamed Location", known wildlife get their
    common name, and everything else is title-cased token by token with
    short tokens (two letters or fewer) kept lowercase.
    """
    name = (name or "").strip()
    if name in _UNNAMED:
        return "Unnamed Location"
    if category.upper() == "WILDLIFE" and name in WILDLIFE_COMMON_NAMES:
        return f"{WILDLIFE_COMMON_NAMES[name]} ({name})"

    without_article = re.sub(r"^the\s+", "", name, flags=re.IGNORECASE)
    tokens = [t for t in re.split(r"[\s_-]+", without_article) if t]
    words = [t.lower() if len(t) <= 2 else t.capitalize() for t in tokens]
    return " ".join(words) or "Unnamed Location"


def group_label(record: RawRecord) -> str:
    """Category-specific group label used to bucket canonical records."""
    category = record.category.upper()
    if category == "WILDLIFE":
        lowered = record.name.lower()
        for group, keywords in WILDLIFE_GROUPS.items():
            if any(keyword in lowered for keyword in keywords):
                return group
        return "Other Wildlife"
    if category == "RECREATION":
        kind = record.properties.get("facility_type") or record.properties.get("leisure_type")
        return str(kind or "Recreation").replace("_", " ")
    return category.capitalize()


def _canonical_id(key: str) -> str:
    return "rec-" + hashlib.sha256(key.encode()).hexdigest()[:16]


def deduplicate(
    records: Iterable[RawRecord],
    precision: int = DEFAULT_GEO_PRECISION,
) -> list[CanonicalRecord]:
    """Cluster raw records into canonical records.

    The primary record of a cluster is its highest-confidence member, ties
    going to the earliest in input order. Canonical ids and source lists
    depend only on cluster membership, so permuting the input yields the
    same clusters.

    Args:
        records: Validated raw records.
        precision: Geo bucket precision (see geo_key).

    Returns:
        Canonical records sorted by best confidence (descending), then key.
    """
    clusters: dict[str, list[RawRecord]] = {}
    for record in records:
        clusters.setdefault(dedup_key(record, precision), []).append(record)

    canonical: list[CanonicalRecord] = []
    for key, members in clusters.items():
        # max() returns the first maximal element, which gives first-occurrence ties
        primary = max(members, key=lambda r: r.confidence)
        canonical.append(
            CanonicalRecord(
                id=_canonical_id(key),
                dedup_key=key,
                display_name=format_display_name(primary.name, primary.category),
                group=group_label(primary),
                category=primary.category.upper(),
                duplicate_count=len(members),
                sources=sorted({m.source_id for m in members}),
                best_confidence=primary.confidence,
                primary=primary,
            )
        )

    canonical.sort(key=lambda c: (-c.best_confidence, c.dedup_key))
    logger.debug(f"Deduplicated {sum(c.duplicate_count for c in canonical)} into {len(canonical)}")
    return canonical


def raw_record_from_item(item: dict[str, Any]) -> RawRecord:
    """Build a RawRecord from a flat dict or a GeoJSON Feature.

    Features take their name from properties name, title or species (in
    that order) and their source from properties "source".

    Raises:
        ValidationError: If the item cannot form a valid record.
    """
    if item.get("type") != "Feature":
        return RawRecord.model_validate(item)

    props = item.get("properties") or {}
    geometry = item.get("geometry") or {}
    point = None
    coords = geometry.get("coordinates") or []
    if geometry.get("type") == "Point" and len(coords) >= 2:
        point = {"longitude": coords[0], "latitude": coords[1]}

    record_id = item.get("id") or props.get("id")
    if not record_id:
        record_id = hashlib.sha256(json.dumps(item, sort_keys=True, default=str).encode()).hexdigest()[:16]

    name = props.get("name") or props.get("title") or props.get("species")
    return RawRecord.model_validate(
        {
            "id": str(record_id),
            "source_id": str(props.get("source") or "Unknown"),
            "category": str(props.get("category") or "OTHER"),
            "name": str(name) if name is not None else None,
            "geometry": point,
            "properties": props,
            "confidence": props.get("confidence", 0.5),
        }
    )


def deduplicate_raw(
    items: Iterable[dict[str, Any]],
    precision: int = DEFAULT_GEO_PRECISION,
) -> tuple[list[CanonicalRecord], int]:
    """Validate loose items and deduplicate the valid ones.

    Returns:
        Tuple of (canonical records, number of items skipped as malformed)
    """
    records: list[RawRecord] = []
    skipped = 0
    for item in items:
        try:
            records.append(raw_record_from_item(item))
        except ValidationError as e:
            skipped += 1
            logger.warning(f"Skipping malformed record: {e.error_count()} validation error(s)")
    if skipped:
        logger.info(f"Skipped {skipped} malformed record(s) before deduplication")
    return deduplicate(records, precision), skipped


def group_results(records: list[CanonicalRecord]) -> dict[str, list[CanonicalRecord]]:
    """Bucket canonical records by group label, largest group first."""
    groups: dict[str, list[CanonicalRecord]] = {}
    for record in records:
        groups.setdefault(record.group, []).append(record)
    return dict(sorted(groups.items(), key=lambda item: len(item[1]), reverse=True))


class DatasetStats(BaseModel):
    """Summary statistics over a set of canonical records."""

    total_records: int
    duplicates_removed: int
    unique_sources: int
    categories: int
    avg_confidence: float
    high_confidence_count: int
    with_coordinates: int
    geo_percent: int


def dataset_stats(records: list[CanonicalRecord]) -> DatasetStats:
    """Compute summary statistics for canonical records."""
    total = len(records)
    with_coordinates = sum(1 for r in records if r.primary.geometry is not None)
    return DatasetStats(
        total_records=total,
        duplicates_removed=sum(r.duplicate_count - 1 for r in records),
        unique_sources=len({s for r in records for s in r.sources}),
        categories=len({r.category for r in records}),
        avg_confidence=sum(r.best_confidence for r in records) / total if total else 0.0,
        high_confidence_count=sum(1 for r in records if r.best_confidence >= HIGH_CONFIDENCE),
        with_coordinates=with_coordinates,
        geo_percent=round(with_coordinates / total * 100) if total else 0,
    )


__all__ = [
    "DatasetStats",
    "WILDLIFE_COMMON_NAMES",
    "WILDLIFE_GROUPS",
    "dataset_stats",
    "dedup_key",
    "deduplicate",
    "deduplicate_raw",
    "format_display_name",
    "geo_key",
    "group_label",
    "group_results",
    "normalize_name",
    "raw_record_from_item",
]
