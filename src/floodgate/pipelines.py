"""Scheduled pipeline runner.

A scheduled pipeline is a stored prompt re-executed on a cron cadence. The
runner executes each due pipeline through a PipelineExecutor, records a run
row, and always moves next_run_at forward so a failing pipeline cannot be
retried in a tight loop.
"""

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

import httpx
from croniter import croniter
from pydantic import BaseModel, Field

from floodgate.config import Settings, get_settings
from floodgate.models import (
    BatchSummary,
    Job,
    RunStatus,
    ScheduledPipeline,
    ensure_utc,
    utcnow,
)
from floodgate.store import RecordStore

logger = logging.getLogger(__name__)

LOCK_NAME = "scheduler:pipelines"
INVALID_CRON_FALLBACK = timedelta(hours=1)


def next_run(cron_expression: str, after: datetime) -> datetime:
    """Compute the next fire time strictly after ``after``.

    Args:
        cron_expression: Standard 5-field cron expression
        after: Reference time (naive values are taken as UTC)

    Returns:
        Next run datetime in UTC. Invalid expressions fall back to one
        hour after ``after``.
    """
    after = ensure_utc(after)
    if not croniter.is_valid(cron_expression):
        logger.warning(f"Invalid cron expression {cron_expression!r}; retrying in 1 hour")
        return after + INVALID_CRON_FALLBACK

    upcoming = croniter(cron_expression, after).get_next(datetime)
    return ensure_utc(upcoming)


class ExecutionResult(BaseModel):
    """What an executor reports for one successful pipeline execution."""

    records_collected: int = Field(default=0, ge=0)
    sources_queried: list[str] = Field(default_factory=list)


class PipelineExecutionError(Exception):
    """Raised by an executor when a pipeline execution fails."""

    pass


@runtime_checkable
class PipelineExecutor(Protocol):
    """Executes one scheduled pipeline's prompt."""

    async def execute(self, pipeline: ScheduledPipeline) -> ExecutionResult:
        """Run the pipeline.

        Raises:
            PipelineExecutionError: Or any exception, on failure.
        """
        ...


class HttpPipelineExecutor:
    """POSTs the pipeline's prompt and config to the configured query endpoint.

    The endpoint answers with ``collected_data``, a list of per-source
    results whose ``data.features`` lists are counted as collected records.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazy initialization of HTTP client."""
        if self._client is None:
            headers = {"User-Agent": "Floodgate/1.0"}
            if self._settings.query_api_key is not None:
                headers["Authorization"] = (
                    f"Bearer {self._settings.query_api_key.get_secret_value()}"
                )
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.query_timeout),
                headers=headers,
            )
        return self._client

    async def execute(self, pipeline: ScheduledPipeline) -> ExecutionResult:
        if not self._settings.has_query_endpoint():
            raise PipelineExecutionError("No query endpoint configured (FLOODGATE_QUERY_URL)")
        assert self._settings.query_url is not None

        client = await self._get_client()
        try:
            response = await client.post(
                self._settings.query_url,
                json={"prompt": pipeline.prompt, "config": pipeline.config},
            )
        except httpx.TimeoutException as e:
            raise PipelineExecutionError(
                f"Query timed out after {self._settings.query_timeout}s"
            ) from e
        except httpx.HTTPError as e:
            raise PipelineExecutionError(f"Query request failed: {e}") from e

        try:
            result: dict[str, Any] = response.json()
        except ValueError as e:
            raise PipelineExecutionError(f"Invalid JSON from query endpoint (HTTP {response.status_code})") from e

        collected = result.get("collected_data") if isinstance(result, dict) else None
        if not response.is_success or not isinstance(collected, list):
            error = result.get("error") if isinstance(result, dict) else None
            raise PipelineExecutionError(error or "Collection failed")

        records = 0
        sources: list[str] = []
        for entry in collected:
            features = (entry.get("data") or {}).get("features") or []
            records += len(features)
            if entry.get("source"):
                sources.append(str(entry["source"]))
        return ExecutionResult(records_collected=records, sources_queried=sources)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.debug("Pipeline executor client closed")


class IngestionPipelineExecutor:
    """Re-triggers ingestion by enqueuing a job for each configured source.

    Uses ``config["sources"]`` (list of source slugs) and optional
    ``config["priority"]`` and ``config["params"]``.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def execute(self, pipeline: ScheduledPipeline) -> ExecutionResult:
        slugs = pipeline.config.get("sources") or []
        if not slugs:
            raise PipelineExecutionError(f"Pipeline {pipeline.id} has no sources configured")

        queued: list[str] = []
        for slug in slugs:
            if await self._store.get_source(slug) is None:
                logger.warning(f"Pipeline {pipeline.id}: unknown source {slug}")
                continue
            await self._store.enqueue_job(
                Job(
                    source_slug=slug,
                    priority=int(pipeline.config.get("priority", 0)),
                    params=pipeline.config.get("params") or {},
                )
            )
            queued.append(slug)

        if not queued:
            raise PipelineExecutionError(f"Pipeline {pipeline.id}: none of its sources exist")
        return ExecutionResult(records_collected=0, sources_queried=queued)


class PipelineRunner:
    """Single-flight runner for due scheduled pipelines."""

    def __init__(
        self,
        store: RecordStore,
        executor: PipelineExecutor,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._settings = settings or get_settings()
        self._holder = f"pipelines-{uuid.uuid4().hex[:12]}"

    async def run_due(self, now: datetime | None = None) -> BatchSummary:
        """Execute every due active pipeline, oldest next_run_at first."""
        now = now or utcnow()
        summary = BatchSummary(operation="scheduled pipelines")

        acquired = await self._store.acquire_lock(
            LOCK_NAME, self._holder, self._settings.lock_ttl_seconds, now
        )
        if not acquired:
            summary.skipped_reason = "another pipeline runner holds the lease"
            logger.info(summary.describe())
            return summary

        try:
            pipelines = await self._store.due_pipelines(now, self._settings.pipeline_batch_size)
            for pipeline in pipelines:
                await self._run_one(pipeline, now, summary)
        finally:
            await self._store.release_lock(LOCK_NAME, self._holder)

        logger.info(summary.describe())
        return summary

    async def _run_one(self, pipeline: ScheduledPipeline, now: datetime, summary: BatchSummary) -> None:
        """Run one pipeline and always try to move it to its next slot."""
        try:
            error = await self._execute(pipeline)
        except Exception as e:
            error = f"run not recorded: {str(e) or type(e).__name__}"
            logger.error(f"Pipeline {pipeline.id} ({pipeline.name}) {error}")

        try:
            await self._store.advance_pipeline(
                pipeline.id,
                next_run_at=next_run(pipeline.cron_expression, now),
                ran_at=now,
                succeeded=error is None,
            )
        except Exception as e:
            logger.error(f"Pipeline {pipeline.id} ({pipeline.name}) was not rescheduled: {e}")
            error = error or f"not rescheduled: {str(e) or type(e).__name__}"

        if error is None:
            summary.record_success()
        else:
            summary.record_failure(f"{pipeline.name}: {error}")

    async def _execute(self, pipeline: ScheduledPipeline) -> str | None:
        """Invoke the executor and persist the run.

        Returns:
            The executor's error message, or None on success
        """
        run = await self._store.create_run(pipeline.id, utcnow())
        start = time.monotonic()
        error: str | None = None
        try:
            result = await self._executor.execute(pipeline)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error(f"Pipeline {pipeline.id} ({pipeline.name}) failed: {error}")
            run.status = RunStatus.FAILED
            run.error_message = error
        else:
            run.status = RunStatus.COMPLETE
            run.records_collected = result.records_collected
            run.sources_queried = result.sources_queried
            logger.info(
                f"Pipeline {pipeline.id} ({pipeline.name}) collected "
                f"{result.records_collected} record(s)"
            )

        run.processing_time_ms = int((time.monotonic() - start) * 1000)
        run.completed_at = utcnow()
        await self._store.finish_run(run)
        return error


__all__ = [
    "ExecutionResult",
    "HttpPipelineExecutor",
    "IngestionPipelineExecutor",
    "LOCK_NAME",
    "PipelineExecutionError",
    "PipelineExecutor",
    "PipelineRunner",
    "next_run",
]
