"""Record aggregation module.

Provides deduplication of raw records into canonical records and tiered
entity resolution linking raw records to entities.
"""

from floodgate.aggregation.dedup import (
    DatasetStats,
    dataset_stats,
    dedup_key,
    deduplicate,
    deduplicate_raw,
    format_display_name,
    group_label,
    group_results,
    normalize_name,
)
from floodgate.aggregation.entity_resolver import (
    EntityMatch,
    EntityResolver,
    ResolutionReport,
    ResolutionTier,
    classify_entity_type,
)

__all__ = [
    # Dedup exports
    "DatasetStats",
    "dataset_stats",
    "dedup_key",
    "deduplicate",
    "deduplicate_raw",
    "format_display_name",
    "group_label",
    "group_results",
    "normalize_name",
    # Entity resolver exports
    "EntityMatch",
    "EntityResolver",
    "ResolutionReport",
    "ResolutionTier",
    "classify_entity_type",
]
