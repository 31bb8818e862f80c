"""Entity resolution for raw records.

Provides a tiered resolver that links unresolved raw records to canonical
entities by strong identifier, then by case-insensitive name, and creates
a new entity when neither matches. Entities are never merged.
"""

import asyncio
import logging
import re
import uuid
from collections.abc import Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from floodgate.config import Settings, get_settings
from floodgate.models import BatchSummary, Entity, EntityType, RawRecord, utcnow
from floodgate.store import RecordStore

logger = logging.getLogger(__name__)


class ResolutionTier(str, Enum):
    """Entity resolution tiers in priority order."""

    IDENTIFIER = "identifier"
    NAME = "name"
    CREATED = "created"

    @property
    def default_confidence(self) -> float:
        """Default confidence score for this tier."""
        return {
            ResolutionTier.IDENTIFIER: 1.0,
            ResolutionTier.NAME: 0.95,
            ResolutionTier.CREATED: 0.5,
        }[self]


class EntityMatch(BaseModel):
    """Result of resolving one raw name.

    Attributes:
        entity_id: Entity the name was linked to
        resolution_tier: Which tier matched ("identifier", "name", "created")
        match_confidence: 0.0 to 1.0 confidence score
        original_query: The raw name string that was resolved
        matched_label: Canonical name of the linked entity
        identifier_type: Identifier field used, for identifier matches and creations
        records_linked: Raw records backfilled with the entity id
    """

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
    )

    entity_id: str
    resolution_tier: ResolutionTier
    match_confidence: float = Field(ge=0.0, le=1.0)
    original_query: str
    matched_label: str | None = None
    identifier_type: str | None = None
    records_linked: int = 0

    @property
    def is_new(self) -> bool:
        return self.resolution_tier is ResolutionTier.CREATED

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary.

        Returns:
            Dictionary representation of the entity match.
        """
        return {
            "entity_id": self.entity_id,
            "resolution_tier": self.resolution_tier.value,
            "match_confidence": self.match_confidence,
            "original_query": self.original_query,
            "matched_label": self.matched_label,
            "identifier_type": self.identifier_type,
            "records_linked": self.records_linked,
        }


# Strong identifier fields checked in order; the first present one wins
IDENTIFIER_FIELDS: tuple[str, ...] = (
    "uei",
    "duns",
    "ein",
    "cage_code",
    "npi",
    "sam_unique_id",
    "osm_id",
    "fda_id",
    "cms_id",
    "epa_id",
    "osha_id",
)


def _keywords(*words: str) -> Callable[[str], bool]:
    pattern = re.compile(r"\b(?:" + "|".join(re.escape(w) for w in words) + r")\b", re.IGNORECASE)
    return lambda name: pattern.search(name) is not None


# Evaluated top to bottom; first matching predicate assigns the type
ENTITY_TYPE_RULES: list[tuple[Callable[[str], bool], EntityType]] = [
    (_keywords("university", "college"), EntityType.UNIVERSITY),
    (_keywords("department", "agency", "commission"), EntityType.AGENCY),
    (_keywords("city of", "county", "town of"), EntityType.MUNICIPALITY),
    (_keywords("inc", "llc", "corp", "ltd"), EntityType.CONTRACTOR),
]


def classify_entity_type(name: str) -> EntityType:
    """Assign an entity type from its name using ENTITY_TYPE_RULES.

    Args:
        name: Raw or canonical entity name.

    Returns:
        First matching rule's type, or ORGANIZATION.
    """
    for predicate, entity_type in ENTITY_TYPE_RULES:
        if predicate(name):
            return entity_type
    return EntityType.ORGANIZATION


def extract_identifier(properties: dict[str, Any]) -> tuple[str, str] | None:
    """Find the first strong identifier in a record's properties.

    Returns:
        (field, value) or None if the record carries no identifier.
    """
    for field in IDENTIFIER_FIELDS:
        value = properties.get(field)
        if value not in (None, ""):
            return field, str(value).strip()
    return None


class ResolutionReport(BaseModel):
    """Outcome of draining the unresolved backlog."""

    batches: int = 0
    names_resolved: int = 0
    entities_created: int = 0
    records_linked: int = 0
    failed: int = 0
    remaining_unresolved: int = 0
    total_records: int = 0

    @property
    def resolution_rate(self) -> float:
        """Percentage of raw records linked to an entity."""
        if not self.total_records:
            return 100.0
        linked = self.total_records - self.remaining_unresolved
        return round(linked / self.total_records * 100, 1)


class EntityResolver:
    """Tiered entity resolution over the record store.

    Attempts resolution in order: identifier -> name -> create.
    Stops at first successful match.
    """

    def __init__(self, store: RecordStore, settings: Settings | None = None) -> None:
        """Initialize the entity resolver.

        Args:
            store: Record store holding raw records and entities.
            settings: Batch sizing; defaults to the global settings.
        """
        self._store = store
        self._settings = settings or get_settings()

    async def resolve_name(self, name: str, records: list[RawRecord]) -> EntityMatch:
        """Resolve one raw name string and backfill every record carrying it.

        Args:
            name: Exact raw name string.
            records: Unresolved records with this name (for identifier lookup).

        Returns:
            EntityMatch describing the link.
        """
        identifier = None
        for record in records:
            identifier = extract_identifier(record.properties)
            if identifier:
                break

        match: EntityMatch | None = None

        # Tier 1: Strong identifier
        if identifier:
            entity = await self._store.find_entity_by_identifier(*identifier)
            if entity:
                match = self._match(name, entity, ResolutionTier.IDENTIFIER, identifier[0])

        # Tier 2: Case-insensitive canonical name
        if match is None:
            entity = await self._store.find_entity_by_name(name)
            if entity:
                match = self._match(name, entity, ResolutionTier.NAME)

        # Tier 3: Create
        if match is None:
            entity = await self._create(name, identifier)
            match = self._match(
                name, entity, ResolutionTier.CREATED, identifier[0] if identifier else None
            )

        match.records_linked = await self._store.link_records_by_name(name, match.entity_id)
        self._log_resolution(match)
        return match

    async def resolve_batch(self, limit: int | None = None) -> tuple[BatchSummary, list[EntityMatch]]:
        """Resolve one bounded batch of unresolved raw records.

        Each distinct raw name is resolved once. A failure on one name is
        logged and counted and does not stop the batch.

        Returns:
            Tuple of (summary, matches for successfully resolved names)
        """
        summary = BatchSummary(operation="entity resolution")
        records = await self._store.unresolved_records(limit or self._settings.resolver_batch_size)

        by_name: dict[str, list[RawRecord]] = {}
        for record in records:
            by_name.setdefault(record.name, []).append(record)

        matches: list[EntityMatch] = []
        for name, group in by_name.items():
            try:
                matches.append(await self.resolve_name(name, group))
            except Exception as e:
                logger.error(f"Failed to resolve '{name}': {e}")
                summary.record_failure(f"{name}: {e}")
                continue
            summary.record_success()

        logger.info(summary.describe())
        return summary, matches

    async def drain(
        self,
        max_batches: int | None = None,
        pause: float = 0.5,
    ) -> ResolutionReport:
        """Re-run resolve_batch until the backlog is empty or max_batches is hit.

        Stops early when a batch makes no progress, so names that keep
        failing cannot spin the loop.
        """
        report = ResolutionReport()
        max_batches = max_batches or self._settings.resolver_max_batches

        for batch_number in range(max_batches):
            if await self._store.count_records(unresolved_only=True) == 0:
                break
            if batch_number:
                await asyncio.sleep(pause)

            summary, matches = await self.resolve_batch()
            report.batches += 1
            report.names_resolved += summary.succeeded
            report.failed += summary.failed
            report.entities_created += sum(1 for m in matches if m.is_new)
            linked = sum(m.records_linked for m in matches)
            report.records_linked += linked
            if linked == 0:
                break

        report.remaining_unresolved = await self._store.count_records(unresolved_only=True)
        report.total_records = await self._store.count_records()
        logger.info(
            f"Entity resolution drained in {report.batches} batch(es): "
            f"{report.records_linked} linked, {report.entities_created} created, "
            f"{report.resolution_rate}% resolved"
        )
        return report

    async def _create(self, name: str, identifier: tuple[str, str] | None) -> Entity:
        now = utcnow()
        entity = Entity(
            id=str(uuid.uuid4()),
            canonical_name=name,
            entity_type=classify_entity_type(name),
            identifier_type=identifier[0] if identifier else None,
            identifier=identifier[1] if identifier else None,
            created_at=now,
            updated_at=now,
        )
        return await self._store.create_entity(entity)

    def _match(
        self,
        name: str,
        entity: Entity,
        tier: ResolutionTier,
        identifier_type: str | None = None,
    ) -> EntityMatch:
        return EntityMatch(
            entity_id=entity.id,
            resolution_tier=tier,
            match_confidence=tier.default_confidence,
            original_query=name,
            matched_label=entity.canonical_name,
            identifier_type=identifier_type,
        )

    def _log_resolution(self, match: EntityMatch) -> None:
        """Log the resolution result."""
        logger.info(
            f"Entity '{match.original_query}' resolved via {match.resolution_tier.value} "
            f"(confidence: {match.match_confidence:.2f}, linked {match.records_linked})"
        )


__all__ = [
    "ENTITY_TYPE_RULES",
    "IDENTIFIER_FIELDS",
    "EntityMatch",
    "EntityResolver",
    "ResolutionReport",
    "ResolutionTier",
    "classify_entity_type",
    "extract_identifier",
]
