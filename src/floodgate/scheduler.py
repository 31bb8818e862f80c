"""Ingestion job scheduler.

Each invocation leases a small batch of due jobs, runs each through the
adapter registered for its source's kind, and records the outcome on the
job and on the source. Jobs move pending -> running -> completed | failed
and are never requeued automatically.
"""

import asyncio
import logging
import random
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from floodgate.adapters.base import AdapterError, AdapterTimeoutError
from floodgate.adapters.registry import AdapterRegistry
from floodgate.config import Settings, get_settings
from floodgate.models import BatchSummary, FetchResult, Job, utcnow
from floodgate.store import RecordStore

logger = logging.getLogger(__name__)

LOCK_NAME = "scheduler:jobs"


class JobScheduler:
    """Single-flight runner for due ingestion jobs."""

    def __init__(
        self,
        store: RecordStore,
        registry: AdapterRegistry,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._registry = registry
        self._settings = settings or get_settings()
        self._sleep = sleep
        self._holder = f"jobs-{uuid.uuid4().hex[:12]}"

    async def enqueue_job(
        self,
        source_slug: str,
        priority: int = 0,
        scheduled_for: datetime | None = None,
        params: dict[str, Any] | None = None,
    ) -> Job:
        """Create a pending job for a source."""
        job = Job(
            source_slug=source_slug,
            priority=priority,
            scheduled_for=scheduled_for or utcnow(),
            params=params or {},
        )
        stored = await self._store.enqueue_job(job)
        logger.debug(f"Enqueued job {stored.id} for {source_slug}")
        return stored

    async def run_once(self, now: datetime | None = None, limit: int | None = None) -> BatchSummary:
        """Process one batch of due jobs sequentially."""
        return await self._run(now, limit, concurrent=False)

    async def run_concurrently(
        self, now: datetime | None = None, limit: int | None = None
    ) -> BatchSummary:
        """Process one batch, running each source's jobs concurrently with other sources'.

        Jobs for the same source still run one after another with the
        politeness delay between them.
        """
        return await self._run(now, limit, concurrent=True)

    async def _run(self, now: datetime | None, limit: int | None, concurrent: bool) -> BatchSummary:
        now = now or utcnow()
        summary = BatchSummary(operation="ingestion")

        acquired = await self._store.acquire_lock(
            LOCK_NAME, self._holder, self._settings.lock_ttl_seconds, now
        )
        if not acquired:
            summary.skipped_reason = "another scheduler invocation holds the lease"
            logger.info(summary.describe())
            return summary

        try:
            jobs = await self._store.due_jobs(now, limit or self._settings.job_batch_size)
            if concurrent:
                groups: dict[str, list[Job]] = {}
                for job in jobs:
                    groups.setdefault(job.source_slug, []).append(job)
                await asyncio.gather(
                    *(self._run_sequence(group, summary) for group in groups.values())
                )
            else:
                await self._run_sequence(jobs, summary)
        finally:
            await self._store.release_lock(LOCK_NAME, self._holder)

        logger.info(summary.describe())
        return summary

    async def _run_sequence(self, jobs: list[Job], summary: BatchSummary) -> None:
        called: set[str] = set()
        for job in jobs:
            assert job.id is not None
            if not await self._store.lease_job(job.id, utcnow()):
                summary.record_skip(f"job {job.id} already leased")
                continue

            if job.source_slug in called:
                await self._polite_delay()
            called.add(job.source_slug)

            await self._execute(job, summary)

    async def _polite_delay(self) -> None:
        low = self._settings.source_delay_min_ms
        high = self._settings.source_delay_max_ms
        await self._sleep(random.uniform(low, high) / 1000)

    async def _execute(self, job: Job, summary: BatchSummary) -> None:
        assert job.id is not None
        try:
            result = await self._fetch(job)
            if not result.ok:
                raise AdapterError(job.source_slug, result.error or "fetch reported an error")
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning(f"Job {job.id} ({job.source_slug}) failed: {error}")
            await self._store.fail_job(job.id, error)
            await self._store.update_fetch_stats(
                job.source_slug,
                succeeded=False,
                records=0,
                threshold=self._settings.failing_threshold,
            )
            summary.record_failure(f"{job.source_slug}: {error}")
            return

        await self._store.complete_job(job.id, result.records_written, utcnow())
        await self._store.update_fetch_stats(
            job.source_slug,
            succeeded=True,
            records=result.records_written,
            threshold=self._settings.failing_threshold,
        )
        logger.info(f"Job {job.id} ({job.source_slug}) fetched {result.records_written} record(s)")
        summary.record_success()

    async def _fetch(self, job: Job) -> FetchResult:
        source = await self._store.get_source(job.source_slug)
        if source is None:
            raise AdapterError(job.source_slug, "Source not found")
        if not source.is_active:
            raise AdapterError(job.source_slug, "Source is inactive")

        adapter = self._registry.get(source.kind, source.slug)
        try:
            return await asyncio.wait_for(
                adapter.fetch(source, job.params), timeout=self._settings.fetch_timeout
            )
        except asyncio.TimeoutError:
            raise AdapterTimeoutError(source.slug, self._settings.fetch_timeout) from None


__all__ = [
    "JobScheduler",
    "LOCK_NAME",
]
