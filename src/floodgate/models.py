"""Pydantic models for Floodgate ingestion, scoring and alerting."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class HealthStatus(str, Enum):
    """Externally visible reachability of a source."""

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILING = "failing"

    @classmethod
    def derive(cls, succeeded: bool, consecutive_failures: int, threshold: int) -> HealthStatus:
        """Derive a source's health from its latest outcome and failure streak.

        A success always means healthy. A failure means degraded until the
        streak reaches ``threshold``, after which the source is failing.

        Args:
            succeeded: Whether the latest probe or fetch succeeded.
            consecutive_failures: Failure streak after applying the latest outcome.
            threshold: Streak length at which the source escalates to failing.

        Returns:
            Derived HealthStatus.
        """
        if succeeded:
            return cls.HEALTHY
        if consecutive_failures >= threshold:
            return cls.FAILING
        return cls.DEGRADED


class ProbeStatus(str, Enum):
    """Classification of a single health probe."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    TIMEOUT = "timeout"
    ERROR = "error"

    @property
    def is_healthy(self) -> bool:
        return self is ProbeStatus.HEALTHY


class JobStatus(str, Enum):
    """Ingestion job lifecycle: pending -> running -> completed | failed."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class EntityType(str, Enum):
    """Closed set of heuristically assigned entity categories."""

    UNIVERSITY = "university"
    AGENCY = "agency"
    MUNICIPALITY = "municipality"
    CONTRACTOR = "contractor"
    ORGANIZATION = "organization"


class FeedbackType(str, Enum):
    """Kinds of crowd feedback accepted on a record."""

    UPVOTE = "upvote"
    DOWNVOTE = "downvote"
    FLAG = "flag"
    CORRECTION = "correction"


class RunStatus(str, Enum):
    """Status of one scheduled pipeline run."""

    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class AlertType(str, Enum):
    """Supported user alert conditions."""

    ENTITY_CHANGE = "entity_change"
    NEW_CONTRACT = "new_contract"
    THRESHOLD = "threshold"
    KEYWORD = "keyword"
    HIGH_OPPORTUNITY = "high_opportunity"


class Source(BaseModel):
    """An external data provider with an endpoint and rolling health stats."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
    )

    slug: str = Field(min_length=1)
    name: str | None = None
    endpoint: str
    test_endpoint: str | None = None
    kind: str = "json"
    fetch_config: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    is_active: bool = True
    health_status: HealthStatus = HealthStatus.UNKNOWN
    consecutive_failures: int = Field(default=0, ge=0)
    avg_response_time_ms: float | None = None
    calls_made: int = Field(default=0, ge=0)
    total_records_fetched: int = Field(default=0, ge=0)
    last_fetch_at: datetime | None = None
    last_health_check: datetime | None = None

    @property
    def probe_url(self) -> str:
        """URL used by the health monitor (test endpoint, else base endpoint)."""
        return self.test_endpoint or self.endpoint


class ProbeResult(BaseModel):
    """Outcome of probing one source endpoint."""

    model_config = ConfigDict(str_strip_whitespace=True)

    source_slug: str
    status: ProbeStatus
    response_time_ms: int = Field(ge=0)
    http_status: int = 0
    test_endpoint: str
    error: str | None = None
    checked_at: datetime = Field(default_factory=utcnow)

    @field_serializer("checked_at")
    def serialize_dt(self, dt: datetime) -> str:
        """Serialize datetime to ISO 8601 format with timezone."""
        return dt.isoformat()


class Job(BaseModel):
    """One scheduled unit of fetch-and-persist work against a source."""

    model_config = ConfigDict(validate_assignment=True)

    id: int | None = None
    source_slug: str
    status: JobStatus = JobStatus.PENDING
    priority: int = 0
    params: dict[str, Any] = Field(default_factory=dict)
    scheduled_for: datetime = Field(default_factory=utcnow)
    attempts: int = Field(default=0, ge=0)
    last_attempt_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    records_fetched: int = Field(default=0, ge=0)


class FetchResult(BaseModel):
    """What a source adapter reports back for one fetch."""

    records_written: int = Field(default=0, ge=0)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class GeoPoint(BaseModel):
    """Point geometry in GeoJSON axis order (longitude, latitude)."""

    model_config = ConfigDict(frozen=True)

    longitude: float = Field(ge=-180.0, le=180.0)
    latitude: float = Field(ge=-90.0, le=90.0)


class RawRecord(BaseModel):
    """An unprocessed item as collected from a source.

    Raw records are immutable once written. The store links them to an
    entity and attaches a quality score, but never rewrites their content.
    """

    model_config = ConfigDict(
        str_strip_whitespace=True,
        frozen=True,
    )

    id: str = Field(min_length=1)
    source_id: str = Field(min_length=1)
    category: str = "OTHER"
    name: str = "Unknown"
    geometry: GeoPoint | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    entity_id: str | None = None
    quality_score: float | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("name", mode="before")
    @classmethod
    def default_blank_name(cls, v: Any) -> Any:
        """Treat missing or blank names as 'Unknown'."""
        if v is None or (isinstance(v, str) and not v.strip()):
            return "Unknown"
        return v


class CanonicalRecord(BaseModel):
    """Deduplicated, display-ready representative of one or more raw records."""

    id: str
    dedup_key: str
    display_name: str
    group: str
    category: str
    duplicate_count: int = Field(ge=1)
    sources: list[str] = Field(min_length=1)
    best_confidence: float = Field(ge=0.0, le=1.0)
    primary: RawRecord


class Entity(BaseModel):
    """A resolved real-world organization referenced by many records."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
    )

    id: str
    canonical_name: str = Field(min_length=1)
    entity_type: EntityType = EntityType.ORGANIZATION
    identifier_type: str | None = None
    identifier: str | None = None
    opportunity_score: float = 50.0
    health_score: float = 50.0
    risk_score: float = 25.0
    source_count: int = Field(default=1, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Fact(BaseModel):
    """A dated observation about an entity (e.g. a contract award)."""

    id: int | None = None
    entity_id: str | None = None
    fact_type: str
    fact_value: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class VoteTally(BaseModel):
    """Aggregate crowd feedback on one record."""

    upvotes: int = Field(default=0, ge=0)
    downvotes: int = Field(default=0, ge=0)
    flags: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        """Votes that count toward the binomial proportion (flags excluded)."""
        return self.upvotes + self.downvotes


class VoteRequest(BaseModel):
    """Vote submission payload."""

    model_config = ConfigDict(str_strip_whitespace=True)

    record_id: str = Field(min_length=1)
    feedback_type: FeedbackType
    correction_data: dict[str, Any] | None = None

    @model_validator(mode="after")
    def require_correction_payload(self) -> VoteRequest:
        """Corrections must say what to correct."""
        if self.feedback_type is FeedbackType.CORRECTION and not self.correction_data:
            msg = "correction_data is required for correction feedback"
            raise ValueError(msg)
        return self


class VoteResult(BaseModel):
    """Vote submission response."""

    success: bool
    message: str
    new_quality_score: float | None = None
    vote_counts: VoteTally | None = None


class ScheduledPipeline(BaseModel):
    """A user's recurring query executed on a cron cadence."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
    )

    id: str
    user_id: str | None = None
    name: str
    prompt: str
    cron_expression: str
    config: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    next_run_at: datetime
    last_run_at: datetime | None = None
    run_count: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    failure_count: int = Field(default=0, ge=0)


class PipelineRun(BaseModel):
    """One execution record of a scheduled pipeline."""

    model_config = ConfigDict(validate_assignment=True)

    id: int | None = None
    pipeline_id: str
    status: RunStatus = RunStatus.RUNNING
    records_collected: int = Field(default=0, ge=0)
    sources_queried: list[str] = Field(default_factory=list)
    processing_time_ms: int | None = None
    error_message: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None


class Alert(BaseModel):
    """A user-defined condition evaluated periodically over the data."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
    )

    id: str
    user_id: str | None = None
    alert_type: AlertType
    entity_id: str | None = None
    conditions: dict[str, Any] = Field(default_factory=dict)
    channels: list[str] = Field(default_factory=lambda: ["in_app"])
    is_active: bool = True
    last_triggered: datetime | None = None
    trigger_count: int = Field(default=0, ge=0)


class Notification(BaseModel):
    """Message emitted exactly once per alert trigger. Immutable."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    user_id: str | None = None
    alert_id: str
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class BatchSummary(BaseModel):
    """Processed/succeeded/failed counts reported at the end of every batch."""

    model_config = ConfigDict(validate_assignment=True)

    operation: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    skipped_reason: str | None = None

    def record_success(self) -> None:
        self.processed += 1
        self.succeeded += 1

    def record_failure(self, error: str) -> None:
        self.processed += 1
        self.failed += 1
        self.errors = [*self.errors, error]

    def record_skip(self, reason: str | None = None) -> None:
        self.skipped += 1
        if reason:
            self.errors = [*self.errors, reason]

    def describe(self) -> str:
        """One-line summary used for completion logging."""
        line = (
            f"{self.operation}: {self.processed} processed, "
            f"{self.succeeded} succeeded, {self.failed} failed"
        )
        if self.skipped:
            line += f", {self.skipped} skipped"
        if self.skipped_reason:
            line += f" ({self.skipped_reason})"
        return line


__all__ = [
    "Alert",
    "AlertType",
    "BatchSummary",
    "CanonicalRecord",
    "Entity",
    "EntityType",
    "Fact",
    "FeedbackType",
    "FetchResult",
    "GeoPoint",
    "HealthStatus",
    "Job",
    "JobStatus",
    "Notification",
    "PipelineRun",
    "ProbeResult",
    "ProbeStatus",
    "RawRecord",
    "RunStatus",
    "ScheduledPipeline",
    "Source",
    "VoteRequest",
    "VoteResult",
    "VoteTally",
    "ensure_utc",
    "utcnow",
]
