"""Durable SQLite record store for sources, jobs, records, entities and alerts.

Every mutation is an upsert by natural key (source slug, job id, record id,
entity identity) and every counter is incremented in SQL rather than via
read-modify-write, so a batch that crashes half way converges on retry.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable

import aiosqlite

from floodgate.models import (
    Alert,
    AlertType,
    Entity,
    EntityType,
    Fact,
    FeedbackType,
    GeoPoint,
    HealthStatus,
    Job,
    JobStatus,
    Notification,
    PipelineRun,
    ProbeResult,
    RawRecord,
    RunStatus,
    ScheduledPipeline,
    Source,
    VoteTally,
    ensure_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sources (
    slug TEXT PRIMARY KEY,
    name TEXT,
    endpoint TEXT NOT NULL,
    test_endpoint TEXT,
    kind TEXT NOT NULL,
    fetch_config TEXT NOT NULL DEFAULT '{}',
    priority INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    health_status TEXT NOT NULL DEFAULT 'unknown'
        CHECK(health_status IN ('unknown','healthy','degraded','failing')),
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    avg_response_time_ms REAL,
    calls_made INTEGER NOT NULL DEFAULT 0,
    total_records_fetched INTEGER NOT NULL DEFAULT 0,
    last_fetch_at TEXT,
    last_health_check TEXT
);

CREATE TABLE IF NOT EXISTS health_checks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_slug TEXT NOT NULL,
    status TEXT NOT NULL,
    response_time_ms INTEGER NOT NULL,
    http_status INTEGER NOT NULL DEFAULT 0,
    test_endpoint TEXT NOT NULL,
    error_message TEXT,
    checked_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_slug TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK(status IN ('pending','running','completed','failed')),
    priority INTEGER NOT NULL DEFAULT 0,
    params TEXT NOT NULL DEFAULT '{}',
    scheduled_for TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_attempt_at TEXT,
    completed_at TEXT,
    last_error TEXT,
    records_fetched INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_jobs_due ON jobs (status, scheduled_for);

CREATE TABLE IF NOT EXISTS raw_records (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL,
    category TEXT NOT NULL,
    name TEXT NOT NULL,
    longitude REAL,
    latitude REAL,
    properties TEXT NOT NULL DEFAULT '{}',
    confidence REAL NOT NULL,
    entity_id TEXT,
    quality_score REAL,
    upvotes INTEGER NOT NULL DEFAULT 0,
    downvotes INTEGER NOT NULL DEFAULT 0,
    flags INTEGER NOT NULL DEFAULT 0,
    anon_upvotes INTEGER NOT NULL DEFAULT 0,
    anon_downvotes INTEGER NOT NULL DEFAULT 0,
    anon_flags INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_raw_records_unresolved ON raw_records (entity_id, name);

CREATE TABLE IF NOT EXISTS entities (
    id TEXT PRIMARY KEY,
    canonical_name TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    identifier_type TEXT,
    identifier TEXT,
    opportunity_score REAL NOT NULL DEFAULT 50,
    health_score REAL NOT NULL DEFAULT 50,
    risk_score REAL NOT NULL DEFAULT 25,
    source_count INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_entities_identity
    ON entities (lower(canonical_name), coalesce(identifier, ''));
CREATE INDEX IF NOT EXISTS idx_entities_identifier ON entities (identifier_type, identifier);

CREATE TABLE IF NOT EXISTS facts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id TEXT,
    fact_type TEXT NOT NULL,
    fact_value TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_facts_entity ON facts (entity_id, created_at);

CREATE TABLE IF NOT EXISTS record_feedback (
    record_id TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    feedback_type TEXT NOT NULL,
    correction_data TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (record_id, actor_id)
);

CREATE TABLE IF NOT EXISTS scheduled_pipelines (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    name TEXT NOT NULL,
    prompt TEXT NOT NULL,
    cron_expression TEXT NOT NULL,
    config TEXT NOT NULL DEFAULT '{}',
    is_active INTEGER NOT NULL DEFAULT 1,
    next_run_at TEXT NOT NULL,
    last_run_at TEXT,
    run_count INTEGER NOT NULL DEFAULT 0,
    success_count INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS pipeline_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pipeline_id TEXT NOT NULL,
    status TEXT NOT NULL,
    records_collected INTEGER NOT NULL DEFAULT 0,
    sources_queried TEXT NOT NULL DEFAULT '[]',
    processing_time_ms INTEGER,
    error_message TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS alerts (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    alert_type TEXT NOT NULL,
    entity_id TEXT,
    conditions TEXT NOT NULL DEFAULT '{}',
    channels TEXT NOT NULL DEFAULT '["in_app"]',
    is_active INTEGER NOT NULL DEFAULT 1,
    last_triggered TEXT,
    trigger_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT,
    alert_id TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    data TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS locks (
    name TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
"""

# Columns updatable through update_entity_scores
_ENTITY_SCORE_FIELDS = ("opportunity_score", "health_score", "risk_score")


class StoreError(Exception):
    """Raised when the store cannot complete a write it was asked for."""

    pass


def _ts(dt: datetime | None) -> str | None:
    """Serialize a datetime as a sortable UTC ISO 8601 string."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    """Parse an ISO 8601 column, assuming UTC when no offset is stored."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def _json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


class RecordStore:
    """Async SQLite store shared by every Floodgate component.

    The connection is opened lazily on first use and configured for WAL so
    a reader (e.g. the tool server) does not block the schedulers.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        """Initialize store with database path.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self._db_path = str(path)
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Initialize connection and create tables if needed."""
        self._conn = await aiosqlite.connect(self._db_path, timeout=30.0)
        self._conn.row_factory = aiosqlite.Row

        # Enable WAL mode for better concurrency
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA synchronous=NORMAL")

        await self._conn.executescript(SCHEMA)
        await self._conn.commit()
        logger.info(f"Record store initialized at {self._db_path}")

    async def close(self) -> None:
        """Close SQLite connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def _ensure_connected(self) -> aiosqlite.Connection:
        """Ensure database connection is established."""
        if self._conn is None:
            await self.connect()
        assert self._conn is not None  # For mypy
        return self._conn

    async def _write(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Cursor:
        conn = await self._ensure_connected()
        cursor = await conn.execute(sql, tuple(params))
        await conn.commit()
        return cursor

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
        conn = await self._ensure_connected()
        cursor = await conn.execute(sql, tuple(params))
        return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        conn = await self._ensure_connected()
        cursor = await conn.execute(sql, tuple(params))
        return list(await cursor.fetchall())

    # === Sources ===

    async def upsert_source(self, source: Source) -> Source:
        """Insert a source or update its configuration.

        Rolling stats (health, counters) are owned by the health monitor and
        scheduler and are left untouched when the source already exists.

        Args:
            source: Source configuration to store.

        Returns:
            The stored Source.
        """
        await self._write(
            """
            INSERT INTO sources (slug, name, endpoint, test_endpoint, kind,
                                 fetch_config, priority, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(slug) DO UPDATE SET
                name = excluded.name,
                endpoint = excluded.endpoint,
                test_endpoint = excluded.test_endpoint,
                kind = excluded.kind,
                fetch_config = excluded.fetch_config,
                priority = excluded.priority,
                is_active = excluded.is_active
            """,
            (
                source.slug,
                source.name,
                source.endpoint,
                source.test_endpoint,
                source.kind,
                _json(source.fetch_config),
                source.priority,
                int(source.is_active),
            ),
        )
        stored = await self.get_source(source.slug)
        if stored is None:
            raise StoreError(f"Source {source.slug} vanished after upsert")
        return stored

    async def get_source(self, slug: str) -> Source | None:
        """Retrieve a source by slug.

        Args:
            slug: Source slug

        Returns:
            Source if found, None otherwise
        """
        row = await self._fetchone("SELECT * FROM sources WHERE slug = ?", (slug,))
        if row is None:
            logger.debug(f"No source with slug: {slug}")
            return None
        return _row_to_source(row)

    async def list_sources(self, active_only: bool = True) -> list[Source]:
        """List sources ordered by priority (highest first)."""
        sql = "SELECT * FROM sources"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY priority DESC, slug"
        return [_row_to_source(row) for row in await self._fetchall(sql)]

    async def deactivate_source(self, slug: str) -> bool:
        """Deactivate a source. Sources are never deleted."""
        cursor = await self._write("UPDATE sources SET is_active = 0 WHERE slug = ?", (slug,))
        return cursor.rowcount > 0

    async def record_probe(self, result: ProbeResult) -> None:
        """Append a health probe to the probe log."""
        await self._write(
            """
            INSERT INTO health_checks (source_slug, status, response_time_ms, http_status,
                                       test_endpoint, error_message, checked_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.source_slug,
                result.status.value,
                result.response_time_ms,
                result.http_status,
                result.test_endpoint,
                result.error,
                _ts(result.checked_at),
            ),
        )

    async def list_probes(self, slug: str, limit: int = 20) -> list[ProbeResult]:
        """Most recent probes for a source, newest first."""
        rows = await self._fetchall(
            """
            SELECT * FROM health_checks WHERE source_slug = ?
            ORDER BY checked_at DESC, id DESC LIMIT ?
            """,
            (slug, limit),
        )
        return [
            ProbeResult(
                source_slug=row["source_slug"],
                status=row["status"],
                response_time_ms=row["response_time_ms"],
                http_status=row["http_status"],
                test_endpoint=row["test_endpoint"],
                error=row["error_message"],
                checked_at=_dt(row["checked_at"]),
            )
            for row in rows
        ]

    async def update_probe_stats(
        self,
        slug: str,
        *,
        succeeded: bool,
        response_time_ms: int,
        threshold: int,
        alpha: float = 0.3,
        checked_at: datetime | None = None,
    ) -> Source | None:
        """Fold one probe into a source's rolling stats and derived health.

        The response time is an exponential moving average; the first sample
        is taken as-is.

        Args:
            slug: Source slug
            succeeded: Whether the probe classified as healthy
            response_time_ms: Probe latency
            threshold: Failure streak at which the source becomes failing
            alpha: Weight of the newest sample in the moving average
            checked_at: Probe timestamp (defaults to now)

        Returns:
            Updated Source, or None if the slug is unknown
        """
        cursor = await self._write(
            """
            UPDATE sources SET
                consecutive_failures = CASE WHEN ? THEN 0 ELSE consecutive_failures + 1 END,
                avg_response_time_ms = CASE
                    WHEN avg_response_time_ms IS NULL THEN ?
                    ELSE avg_response_time_ms * (1 - ?) + ? * ?
                END,
                last_health_check = ?
            WHERE slug = ?
            """,
            (
                int(succeeded),
                float(response_time_ms),
                alpha,
                float(response_time_ms),
                alpha,
                _ts(checked_at or utcnow()),
                slug,
            ),
        )
        if cursor.rowcount == 0:
            return None
        return await self._refresh_health(slug, succeeded, threshold)

    async def update_fetch_stats(
        self,
        slug: str,
        *,
        succeeded: bool,
        records: int,
        threshold: int,
        fetched_at: datetime | None = None,
    ) -> Source | None:
        """Fold one ingestion call into a source's aggregate counters.

        Args:
            slug: Source slug
            succeeded: Whether the fetch succeeded
            records: Records fetched by the call
            threshold: Failure streak at which the source becomes failing
            fetched_at: Call timestamp (defaults to now)

        Returns:
            Updated Source, or None if the slug is unknown
        """
        cursor = await self._write(
            """
            UPDATE sources SET
                calls_made = calls_made + 1,
                total_records_fetched = total_records_fetched + ?,
                consecutive_failures = CASE WHEN ? THEN 0 ELSE consecutive_failures + 1 END,
                last_fetch_at = ?
            WHERE slug = ?
            """,
            (records, int(succeeded), _ts(fetched_at or utcnow()), slug),
        )
        if cursor.rowcount == 0:
            return None
        return await self._refresh_health(slug, succeeded, threshold)

    async def _refresh_health(self, slug: str, succeeded: bool, threshold: int) -> Source | None:
        source = await self.get_source(slug)
        if source is None:
            return None
        status = HealthStatus.derive(succeeded, source.consecutive_failures, threshold)
        if status != source.health_status:
            await self._write(
                "UPDATE sources SET health_status = ? WHERE slug = ?", (status.value, slug)
            )
            logger.info(f"Source {slug} health {source.health_status.value} -> {status.value}")
            source.health_status = status
        return source

    # === Jobs ===

    async def enqueue_job(self, job: Job) -> Job:
        """Insert a pending job and return it with its id."""
        cursor = await self._write(
            """
            INSERT INTO jobs (source_slug, status, priority, params, scheduled_for, attempts)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                job.source_slug,
                job.status.value,
                job.priority,
                _json(job.params),
                _ts(job.scheduled_for),
                job.attempts,
            ),
        )
        return job.model_copy(update={"id": cursor.lastrowid})

    async def get_job(self, job_id: int) -> Job | None:
        row = await self._fetchone("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return _row_to_job(row) if row else None

    async def due_jobs(self, now: datetime, limit: int) -> list[Job]:
        """Pending jobs scheduled at or before ``now``.

        Ordered by priority descending; among equal priorities, jobs for
        failing sources go after degraded ones, which go after the rest.
        """
        rows = await self._fetchall(
            """
            SELECT j.* FROM jobs j
            LEFT JOIN sources s ON s.slug = j.source_slug
            WHERE j.status = 'pending' AND j.scheduled_for <= ?
            ORDER BY j.priority DESC,
                     CASE s.health_status WHEN 'failing' THEN 2 WHEN 'degraded' THEN 1 ELSE 0 END,
                     j.scheduled_for,
                     j.id
            LIMIT ?
            """,
            (_ts(now), limit),
        )
        return [_row_to_job(row) for row in rows]

    async def lease_job(self, job_id: int, now: datetime) -> bool:
        """Move a job from pending to running.

        Returns:
            True if this caller won the lease, False if the job was not pending
        """
        cursor = await self._write(
            """
            UPDATE jobs SET status = 'running', attempts = attempts + 1, last_attempt_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (_ts(now), job_id),
        )
        return cursor.rowcount > 0

    async def complete_job(self, job_id: int, records: int, now: datetime) -> None:
        await self._write(
            """
            UPDATE jobs SET status = 'completed', records_fetched = ?, completed_at = ?,
                            last_error = NULL
            WHERE id = ? AND status = 'running'
            """,
            (records, _ts(now), job_id),
        )

    async def fail_job(self, job_id: int, error: str) -> None:
        await self._write(
            """
            UPDATE jobs SET status = 'failed', last_error = ?, completed_at = NULL
            WHERE id = ? AND status = 'running'
            """,
            (error, job_id),
        )

    # === Raw records ===

    async def insert_raw_records(self, records: Iterable[RawRecord]) -> int:
        """Write raw records, ignoring ids that already exist.

        Returns:
            Number of newly written records
        """
        conn = await self._ensure_connected()
        written = 0
        for record in records:
            cursor = await conn.execute(
                """
                INSERT OR IGNORE INTO raw_records
                (id, source_id, category, name, longitude, latitude, properties,
                 confidence, entity_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.source_id,
                    record.category,
                    record.name,
                    record.geometry.longitude if record.geometry else None,
                    record.geometry.latitude if record.geometry else None,
                    _json(record.properties),
                    record.confidence,
                    record.entity_id,
                    _ts(record.created_at),
                ),
            )
            written += cursor.rowcount
        await conn.commit()
        return written

    async def get_raw_record(self, record_id: str) -> RawRecord | None:
        row = await self._fetchone("SELECT * FROM raw_records WHERE id = ?", (record_id,))
        return _row_to_raw_record(row) if row else None

    async def list_raw_records(
        self,
        source_id: str | None = None,
        category: str | None = None,
        limit: int | None = None,
    ) -> list[RawRecord]:
        """List raw records in insertion order, optionally filtered."""
        clauses: list[str] = []
        params: list[Any] = []
        if source_id is not None:
            clauses.append("source_id = ?")
            params.append(source_id)
        if category is not None:
            clauses.append("upper(category) = upper(?)")
            params.append(category)
        sql = "SELECT * FROM raw_records"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY rowid"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_raw_record(row) for row in await self._fetchall(sql, params)]

    async def unresolved_records(self, limit: int) -> list[RawRecord]:
        """Oldest raw records not yet linked to an entity."""
        rows = await self._fetchall(
            "SELECT * FROM raw_records WHERE entity_id IS NULL ORDER BY rowid LIMIT ?",
            (limit,),
        )
        return [_row_to_raw_record(row) for row in rows]

    async def link_records_by_name(self, name: str, entity_id: str) -> int:
        """Backfill every unresolved record with exactly this name.

        Returns:
            Number of records linked
        """
        cursor = await self._write(
            "UPDATE raw_records SET entity_id = ? WHERE entity_id IS NULL AND name = ?",
            (entity_id, name),
        )
        return cursor.rowcount

    async def count_records(self, unresolved_only: bool = False) -> int:
        sql = "SELECT COUNT(*) FROM raw_records"
        if unresolved_only:
            sql += " WHERE entity_id IS NULL"
        row = await self._fetchone(sql)
        return int(row[0]) if row else 0

    # === Entities ===

    async def create_entity(self, entity: Entity) -> Entity:
        """Create an entity unless one with the same identity exists.

        Identity is (case-insensitive canonical name, identifier). When a
        matching entity already exists it is returned unchanged.
        """
        await self._write(
            """
            INSERT OR IGNORE INTO entities
            (id, canonical_name, entity_type, identifier_type, identifier,
             opportunity_score, health_score, risk_score, source_count,
             created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entity.id,
                entity.canonical_name,
                entity.entity_type.value,
                entity.identifier_type,
                entity.identifier,
                entity.opportunity_score,
                entity.health_score,
                entity.risk_score,
                entity.source_count,
                _ts(entity.created_at),
                _ts(entity.updated_at),
            ),
        )
        row = await self._fetchone(
            """
            SELECT * FROM entities
            WHERE lower(canonical_name) = lower(?) AND coalesce(identifier, '') = ?
            """,
            (entity.canonical_name, entity.identifier or ""),
        )
        if row is None:
            raise StoreError(f"Entity {entity.canonical_name!r} not found after insert")
        return _row_to_entity(row)

    async def get_entity(self, entity_id: str) -> Entity | None:
        row = await self._fetchone("SELECT * FROM entities WHERE id = ?", (entity_id,))
        return _row_to_entity(row) if row else None

    async def find_entity_by_identifier(self, identifier_type: str, identifier: str) -> Entity | None:
        row = await self._fetchone(
            """
            SELECT * FROM entities WHERE identifier_type = ? AND identifier = ?
            ORDER BY created_at LIMIT 1
            """,
            (identifier_type, identifier),
        )
        return _row_to_entity(row) if row else None

    async def find_entity_by_name(self, name: str) -> Entity | None:
        """Case-insensitive exact match on canonical name (oldest wins)."""
        row = await self._fetchone(
            """
            SELECT * FROM entities WHERE lower(canonical_name) = lower(?)
            ORDER BY created_at LIMIT 1
            """,
            (name,),
        )
        return _row_to_entity(row) if row else None

    async def count_entities(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) FROM entities")
        return int(row[0]) if row else 0

    async def update_entity_scores(
        self,
        entity_id: str,
        now: datetime | None = None,
        **scores: float,
    ) -> Entity | None:
        """Update score columns and bump ``updated_at``.

        Args:
            entity_id: Entity to update
            now: Update timestamp (defaults to now)
            **scores: Any of opportunity_score, health_score, risk_score

        Returns:
            Updated Entity, or None if not found

        Raises:
            ValueError: If an unknown score field is passed
        """
        # Whitelist valid field names to prevent SQL injection
        unknown = set(scores) - set(_ENTITY_SCORE_FIELDS)
        if unknown:
            msg = f"Invalid score field(s): {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        assignments = ", ".join(f"{field} = ?" for field in scores)
        params: list[Any] = list(scores.values())
        sql = "UPDATE entities SET "
        if assignments:
            sql += assignments + ", "
        sql += "updated_at = ? WHERE id = ?"  # noqa: S608
        params.extend([_ts(now or utcnow()), entity_id])
        await self._write(sql, params)
        return await self.get_entity(entity_id)

    async def entities_created_since(
        self,
        since: datetime,
        keyword: str | None = None,
        limit: int = 10,
    ) -> list[Entity]:
        """Entities created after ``since``, optionally name-filtered (case-insensitive)."""
        sql = "SELECT * FROM entities WHERE created_at > ?"
        params: list[Any] = [_ts(since)]
        if keyword:
            sql += " AND instr(lower(canonical_name), lower(?)) > 0"
            params.append(keyword)
        sql += " ORDER BY created_at LIMIT ?"
        params.append(limit)
        return [_row_to_entity(row) for row in await self._fetchall(sql, params)]

    async def entities_updated_since(
        self,
        since: datetime,
        min_opportunity: float,
        limit: int = 10,
    ) -> list[Entity]:
        """Entities updated after ``since`` whose opportunity score is at least ``min_opportunity``."""
        rows = await self._fetchall(
            """
            SELECT * FROM entities WHERE updated_at > ? AND opportunity_score >= ?
            ORDER BY opportunity_score DESC LIMIT ?
            """,
            (_ts(since), min_opportunity, limit),
        )
        return [_row_to_entity(row) for row in rows]

    # === Facts ===

    async def add_fact(self, fact: Fact) -> Fact:
        cursor = await self._write(
            "INSERT INTO facts (entity_id, fact_type, fact_value, created_at) VALUES (?, ?, ?, ?)",
            (fact.entity_id, fact.fact_type, _json(fact.fact_value), _ts(fact.created_at)),
        )
        return fact.model_copy(update={"id": cursor.lastrowid})

    async def count_facts_since(self, entity_id: str, since: datetime) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) FROM facts WHERE entity_id = ? AND created_at > ?",
            (entity_id, _ts(since)),
        )
        return int(row[0]) if row else 0

    async def facts_since(
        self,
        fact_type: str,
        since: datetime,
        limit: int = 10,
        *,
        min_amount: float | None = None,
        state: str | None = None,
    ) -> list[Fact]:
        """Facts of one type created after `since`, oldest first.

        The optional `amount`/`state` filters apply to the JSON payload before
        the limit, so a match is never hidden behind older non-matching facts.
        """
        sql = "SELECT * FROM facts WHERE fact_type = ? AND created_at > ?"
        params: list[Any] = [fact_type, _ts(since)]
        if min_amount is not None:
            sql += " AND CAST(json_extract(fact_value, '$.amount') AS REAL) >= ?"
            params.append(float(min_amount))
        if state:
            sql += " AND json_extract(fact_value, '$.state') = ?"
            params.append(state)
        sql += " ORDER BY created_at, id LIMIT ?"
        params.append(limit)
        rows = await self._fetchall(sql, params)
        return [
            Fact(
                id=row["id"],
                entity_id=row["entity_id"],
                fact_type=row["fact_type"],
                fact_value=json.loads(row["fact_value"]),
                created_at=_dt(row["created_at"]),
            )
            for row in rows
        ]

    # === Votes ===

    async def get_tally(self, record_id: str) -> VoteTally | None:
        """Current aggregate tally, or None if the record does not exist."""
        row = await self._fetchone(
            "SELECT upvotes, downvotes, flags FROM raw_records WHERE id = ?", (record_id,)
        )
        if row is None:
            return None
        return VoteTally(upvotes=row["upvotes"], downvotes=row["downvotes"], flags=row["flags"])

    async def upsert_feedback(
        self,
        record_id: str,
        actor_id: str,
        feedback_type: FeedbackType,
        correction_data: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        """Store an identified actor's vote, replacing their previous one."""
        await self._write(
            """
            INSERT INTO record_feedback (record_id, actor_id, feedback_type, correction_data, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(record_id, actor_id) DO UPDATE SET
                feedback_type = excluded.feedback_type,
                correction_data = excluded.correction_data,
                updated_at = excluded.updated_at
            """,
            (
                record_id,
                actor_id,
                feedback_type.value,
                _json(correction_data) if correction_data is not None else None,
                _ts(now or utcnow()),
            ),
        )

    async def tally_feedback(self, record_id: str) -> VoteTally:
        """Combined tally: one vote per identified actor plus every anonymous vote."""
        row = await self._fetchone(
            """
            SELECT
                r.anon_upvotes + coalesce(SUM(CASE WHEN f.feedback_type = 'upvote' THEN 1 END), 0),
                r.anon_downvotes + coalesce(SUM(CASE WHEN f.feedback_type = 'downvote' THEN 1 END), 0),
                r.anon_flags + coalesce(SUM(CASE WHEN f.feedback_type = 'flag' THEN 1 END), 0)
            FROM raw_records r
            LEFT JOIN record_feedback f ON f.record_id = r.id
            WHERE r.id = ?
            GROUP BY r.id
            """,
            (record_id,),
        )
        if row is None:
            return VoteTally()
        return VoteTally(upvotes=row[0], downvotes=row[1], flags=row[2])

    async def increment_tally(self, record_id: str, feedback_type: FeedbackType) -> VoteTally | None:
        """Atomically bump the counters for one anonymous vote.

        Returns:
            Tally after the increment, or None if the record does not exist
        """
        column = {
            FeedbackType.UPVOTE: "upvotes",
            FeedbackType.DOWNVOTE: "downvotes",
            FeedbackType.FLAG: "flags",
        }.get(feedback_type)
        if column is not None:
            await self._write(
                f"UPDATE raw_records SET {column} = {column} + 1, "  # noqa: S608
                f"anon_{column} = anon_{column} + 1 WHERE id = ?",
                (record_id,),
            )
        return await self.get_tally(record_id)

    async def save_quality(self, record_id: str, tally: VoteTally, score: float) -> None:
        """Persist a recomputed quality score alongside the tally it came from."""
        await self._write(
            """
            UPDATE raw_records SET quality_score = ?, upvotes = ?, downvotes = ?, flags = ?
            WHERE id = ?
            """,
            (score, tally.upvotes, tally.downvotes, tally.flags, record_id),
        )

    # === Scheduled pipelines ===

    async def upsert_pipeline(self, pipeline: ScheduledPipeline) -> None:
        """Insert or reconfigure a pipeline; run counters are preserved."""
        await self._write(
            """
            INSERT INTO scheduled_pipelines
            (id, user_id, name, prompt, cron_expression, config, is_active, next_run_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                user_id = excluded.user_id,
                name = excluded.name,
                prompt = excluded.prompt,
                cron_expression = excluded.cron_expression,
                config = excluded.config,
                is_active = excluded.is_active,
                next_run_at = excluded.next_run_at
            """,
            (
                pipeline.id,
                pipeline.user_id,
                pipeline.name,
                pipeline.prompt,
                pipeline.cron_expression,
                _json(pipeline.config),
                int(pipeline.is_active),
                _ts(pipeline.next_run_at),
            ),
        )

    async def get_pipeline(self, pipeline_id: str) -> ScheduledPipeline | None:
        row = await self._fetchone("SELECT * FROM scheduled_pipelines WHERE id = ?", (pipeline_id,))
        return _row_to_pipeline(row) if row else None

    async def due_pipelines(self, now: datetime, limit: int) -> list[ScheduledPipeline]:
        rows = await self._fetchall(
            """
            SELECT * FROM scheduled_pipelines
            WHERE is_active = 1 AND next_run_at <= ?
            ORDER BY next_run_at LIMIT ?
            """,
            (_ts(now), limit),
        )
        return [_row_to_pipeline(row) for row in rows]

    async def create_run(self, pipeline_id: str, started_at: datetime) -> PipelineRun:
        cursor = await self._write(
            "INSERT INTO pipeline_runs (pipeline_id, status, started_at) VALUES (?, ?, ?)",
            (pipeline_id, RunStatus.RUNNING.value, _ts(started_at)),
        )
        return PipelineRun(id=cursor.lastrowid, pipeline_id=pipeline_id, started_at=started_at)

    async def finish_run(self, run: PipelineRun) -> None:
        if run.id is None:
            raise StoreError("Cannot finish a pipeline run that was never created")
        await self._write(
            """
            UPDATE pipeline_runs SET status = ?, records_collected = ?, sources_queried = ?,
                                     processing_time_ms = ?, error_message = ?, completed_at = ?
            WHERE id = ?
            """,
            (
                run.status.value,
                run.records_collected,
                _json(run.sources_queried),
                run.processing_time_ms,
                run.error_message,
                _ts(run.completed_at),
                run.id,
            ),
        )

    async def list_runs(self, pipeline_id: str) -> list[PipelineRun]:
        rows = await self._fetchall(
            "SELECT * FROM pipeline_runs WHERE pipeline_id = ? ORDER BY id", (pipeline_id,)
        )
        return [
            PipelineRun(
                id=row["id"],
                pipeline_id=row["pipeline_id"],
                status=row["status"],
                records_collected=row["records_collected"],
                sources_queried=json.loads(row["sources_queried"]),
                processing_time_ms=row["processing_time_ms"],
                error_message=row["error_message"],
                started_at=_dt(row["started_at"]),
                completed_at=_dt(row["completed_at"]),
            )
            for row in rows
        ]

    async def advance_pipeline(
        self,
        pipeline_id: str,
        *,
        next_run_at: datetime,
        ran_at: datetime,
        succeeded: bool,
    ) -> None:
        """Reschedule a pipeline and bump its run counters atomically."""
        await self._write(
            """
            UPDATE scheduled_pipelines SET
                next_run_at = ?,
                last_run_at = ?,
                run_count = run_count + 1,
                success_count = success_count + ?,
                failure_count = failure_count + ?
            WHERE id = ?
            """,
            (
                _ts(next_run_at),
                _ts(ran_at),
                1 if succeeded else 0,
                0 if succeeded else 1,
                pipeline_id,
            ),
        )

    # === Alerts and notifications ===

    async def upsert_alert(self, alert: Alert) -> None:
        """Insert or reconfigure an alert; trigger history is preserved."""
        await self._write(
            """
            INSERT INTO alerts (id, user_id, alert_type, entity_id, conditions, channels, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                user_id = excluded.user_id,
                alert_type = excluded.alert_type,
                entity_id = excluded.entity_id,
                conditions = excluded.conditions,
                channels = excluded.channels,
                is_active = excluded.is_active
            """,
            (
                alert.id,
                alert.user_id,
                alert.alert_type.value,
                alert.entity_id,
                _json(alert.conditions),
                _json(alert.channels),
                int(alert.is_active),
            ),
        )

    async def get_alert(self, alert_id: str) -> Alert | None:
        row = await self._fetchone("SELECT * FROM alerts WHERE id = ?", (alert_id,))
        return _row_to_alert(row) if row else None

    async def active_alerts(self) -> list[Alert]:
        rows = await self._fetchall("SELECT * FROM alerts WHERE is_active = 1 ORDER BY id")
        return [_row_to_alert(row) for row in rows]

    async def record_trigger(self, notification: Notification) -> Notification:
        """Store a notification and bump its alert's trigger stats atomically.

        The alert's `last_triggered` becomes the notification timestamp. Either
        both writes land or neither does.
        """
        conn = await self._ensure_connected()
        try:
            cursor = await conn.execute(
                """
                INSERT INTO notifications (user_id, alert_id, title, message, data, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    notification.user_id,
                    notification.alert_id,
                    notification.title,
                    notification.message,
                    _json(notification.data),
                    _ts(notification.created_at),
                ),
            )
            await conn.execute(
                """
                UPDATE alerts SET last_triggered = ?, trigger_count = trigger_count + 1
                WHERE id = ?
                """,
                (_ts(notification.created_at), notification.alert_id),
            )
        except Exception:
            await conn.rollback()
            raise
        await conn.commit()
        return notification.model_copy(update={"id": cursor.lastrowid})

    async def list_notifications(self, alert_id: str | None = None) -> list[Notification]:
        sql = "SELECT * FROM notifications"
        params: tuple[Any, ...] = ()
        if alert_id is not None:
            sql += " WHERE alert_id = ?"
            params = (alert_id,)
        sql += " ORDER BY id"
        return [
            Notification(
                id=row["id"],
                user_id=row["user_id"],
                alert_id=row["alert_id"],
                title=row["title"],
                message=row["message"],
                data=json.loads(row["data"]),
                created_at=_dt(row["created_at"]),
            )
            for row in await self._fetchall(sql, params)
        ]

    # === Single-flight leases ===

    async def acquire_lock(
        self,
        name: str,
        holder: str,
        ttl_seconds: int,
        now: datetime | None = None,
    ) -> bool:
        """Acquire a named lease, or refresh it if ``holder`` already owns it.

        Expired leases are cleared first so a crashed holder cannot block
        other invocations past its TTL.

        Returns:
            True if the lease is held by ``holder`` after the call
        """
        now = now or utcnow()
        expires = now + timedelta(seconds=ttl_seconds)
        conn = await self._ensure_connected()
        await conn.execute(
            "DELETE FROM locks WHERE name = ? AND expires_at < ?", (name, _ts(now))
        )
        cursor = await conn.execute(
            "INSERT OR IGNORE INTO locks (name, holder, acquired_at, expires_at) VALUES (?, ?, ?, ?)",
            (name, holder, _ts(now), _ts(expires)),
        )
        if cursor.rowcount == 0:
            cursor = await conn.execute(
                "UPDATE locks SET expires_at = ? WHERE name = ? AND holder = ?",
                (_ts(expires), name, holder),
            )
        await conn.commit()
        acquired = cursor.rowcount > 0
        if not acquired:
            logger.debug(f"Lock {name} already held")
        return acquired

    async def release_lock(self, name: str, holder: str) -> bool:
        cursor = await self._write(
            "DELETE FROM locks WHERE name = ? AND holder = ?", (name, holder)
        )
        return cursor.rowcount > 0


def _row_to_source(row: aiosqlite.Row) -> Source:
    return Source(
        slug=row["slug"],
        name=row["name"],
        endpoint=row["endpoint"],
        test_endpoint=row["test_endpoint"],
        kind=row["kind"],
        fetch_config=json.loads(row["fetch_config"] or "{}"),
        priority=row["priority"],
        is_active=bool(row["is_active"]),
        health_status=HealthStatus(row["health_status"]),
        consecutive_failures=row["consecutive_failures"],
        avg_response_time_ms=row["avg_response_time_ms"],
        calls_made=row["calls_made"],
        total_records_fetched=row["total_records_fetched"],
        last_fetch_at=_dt(row["last_fetch_at"]),
        last_health_check=_dt(row["last_health_check"]),
    )


def _row_to_job(row: aiosqlite.Row) -> Job:
    return Job(
        id=row["id"],
        source_slug=row["source_slug"],
        status=JobStatus(row["status"]),
        priority=row["priority"],
        params=json.loads(row["params"] or "{}"),
        scheduled_for=_dt(row["scheduled_for"]),
        attempts=row["attempts"],
        last_attempt_at=_dt(row["last_attempt_at"]),
        completed_at=_dt(row["completed_at"]),
        last_error=row["last_error"],
        records_fetched=row["records_fetched"],
    )


def _row_to_raw_record(row: aiosqlite.Row) -> RawRecord:
    geometry = None
    if row["longitude"] is not None and row["latitude"] is not None:
        geometry = GeoPoint(longitude=row["longitude"], latitude=row["latitude"])
    return RawRecord(
        id=row["id"],
        source_id=row["source_id"],
        category=row["category"],
        name=row["name"],
        geometry=geometry,
        properties=json.loads(row["properties"] or "{}"),
        confidence=row["confidence"],
        entity_id=row["entity_id"],
        quality_score=row["quality_score"],
        created_at=_dt(row["created_at"]),
    )


def _row_to_entity(row: aiosqlite.Row) -> Entity:
    return Entity(
        id=row["id"],
        canonical_name=row["canonical_name"],
        entity_type=EntityType(row["entity_type"]),
        identifier_type=row["identifier_type"],
        identifier=row["identifier"],
        opportunity_score=row["opportunity_score"],
        health_score=row["health_score"],
        risk_score=row["risk_score"],
        source_count=row["source_count"],
        created_at=_dt(row["created_at"]),
        updated_at=_dt(row["updated_at"]),
    )


def _row_to_pipeline(row: aiosqlite.Row) -> ScheduledPipeline:
    return ScheduledPipeline(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        prompt=row["prompt"],
        cron_expression=row["cron_expression"],
        config=json.loads(row["config"] or "{}"),
        is_active=bool(row["is_active"]),
        next_run_at=_dt(row["next_run_at"]),
        last_run_at=_dt(row["last_run_at"]),
        run_count=row["run_count"],
        success_count=row["success_count"],
        failure_count=row["failure_count"],
    )


def _row_to_alert(row: aiosqlite.Row) -> Alert:
    return Alert(
        id=row["id"],
        user_id=row["user_id"],
        alert_type=AlertType(row["alert_type"]),
        entity_id=row["entity_id"],
        conditions=json.loads(row["conditions"] or "{}"),
        channels=json.loads(row["channels"] or '["in_app"]'),
        is_active=bool(row["is_active"]),
        last_triggered=_dt(row["last_triggered"]),
        trigger_count=row["trigger_count"],
    )


__all__ = [
    "RecordStore",
    "StoreError",
]
