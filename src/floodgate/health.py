"""Source health monitoring.

Probes every active source's test endpoint, logs each probe, and folds the
outcome into the source's rolling stats. Health never blocks ingestion; the
scheduler only uses it to order jobs of equal priority.
"""

import asyncio
import logging
import time
from datetime import datetime

import httpx
from pydantic import BaseModel, Field

from floodgate.config import Settings, get_settings
from floodgate.models import ProbeResult, ProbeStatus, Source, utcnow
from floodgate.store import RecordStore

logger = logging.getLogger(__name__)


def classify_probe(status_code: int) -> ProbeStatus:
    """Classify an HTTP response status for a health probe.

    Args:
        status_code: HTTP status code of the probe response.

    Returns:
        HEALTHY for 2xx, DEGRADED for other codes below 500, else UNHEALTHY.
    """
    if 200 <= status_code < 300:
        return ProbeStatus.HEALTHY
    if status_code < 500:
        return ProbeStatus.DEGRADED
    return ProbeStatus.UNHEALTHY


class HealthReport(BaseModel):
    """Summary of one health check pass."""

    healthy: int = 0
    degraded: int = 0
    unhealthy: int = 0
    total: int = 0
    avg_response_time_ms: int = 0
    failed_to_record: int = 0
    results: list[ProbeResult] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=utcnow)

    @property
    def health_percentage(self) -> int:
        if not self.total:
            return 0
        return round(self.healthy / self.total * 100)

    @classmethod
    def from_results(cls, results: list[ProbeResult], failed_to_record: int = 0) -> "HealthReport":
        """Build the summary counts from individual probe results.

        Timeouts and transport errors count as unhealthy.
        """
        healthy = sum(1 for r in results if r.status is ProbeStatus.HEALTHY)
        degraded = sum(1 for r in results if r.status is ProbeStatus.DEGRADED)
        avg = round(sum(r.response_time_ms for r in results) / len(results)) if results else 0
        return cls(
            healthy=healthy,
            degraded=degraded,
            unhealthy=len(results) - healthy - degraded,
            total=len(results),
            avg_response_time_ms=avg,
            failed_to_record=failed_to_record,
            results=results,
        )


def _failed_probe(source: Source, error: Exception) -> ProbeResult:
    return ProbeResult(
        source_slug=source.slug,
        status=ProbeStatus.ERROR,
        response_time_ms=0,
        test_endpoint=source.probe_url,
        error=str(error) or type(error).__name__,
    )


class HealthMonitor:
    """Probes sources and maintains their derived health status."""

    def __init__(
        self,
        store: RecordStore,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazy initialization of HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.probe_timeout),
                headers={"User-Agent": "Floodgate-HealthCheck/1.0"},
                follow_redirects=True,
            )
        return self._client

    async def probe(self, source: Source) -> ProbeResult:
        """Issue a single GET against the source's probe URL.

        Never raises for network problems or malformed URLs; they are
        reported as TIMEOUT or ERROR probe results.
        """
        url = source.probe_url
        client = await self._get_client()
        start = time.monotonic()
        try:
            response = await client.get(url)
        except httpx.TimeoutException:
            elapsed = int((time.monotonic() - start) * 1000)
            logger.warning(f"Health probe timed out for {source.slug}")
            return ProbeResult(
                source_slug=source.slug,
                status=ProbeStatus.TIMEOUT,
                response_time_ms=elapsed,
                test_endpoint=url,
                error="Request timeout",
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            elapsed = int((time.monotonic() - start) * 1000)
            logger.warning(f"Health probe failed for {source.slug}: {e}")
            return ProbeResult(
                source_slug=source.slug,
                status=ProbeStatus.ERROR,
                response_time_ms=elapsed,
                test_endpoint=url,
                error=str(e) or type(e).__name__,
            )

        elapsed = int((time.monotonic() - start) * 1000)
        status = classify_probe(response.status_code)
        return ProbeResult(
            source_slug=source.slug,
            status=status,
            response_time_ms=elapsed,
            http_status=response.status_code,
            test_endpoint=url,
            error=None if status.is_healthy else f"HTTP {response.status_code}",
        )

    async def check_source(self, source: Source) -> tuple[ProbeResult, bool]:
        """Probe one source, persist the probe and update its stats.

        Returns:
            Tuple of (probe result, whether it was persisted)
        """
        result = await self.probe(source)
        try:
            await self._store.record_probe(result)
            await self._store.update_probe_stats(
                source.slug,
                succeeded=result.status.is_healthy,
                response_time_ms=result.response_time_ms,
                threshold=self._settings.failing_threshold,
                alpha=self._settings.response_time_alpha,
                checked_at=result.checked_at,
            )
        except Exception as e:
            logger.error(f"Failed to record health probe for {source.slug}: {e}")
            return result, False
        return result, True

    async def check_all(self) -> HealthReport:
        """Probe every active source in bounded-concurrency batches."""
        sources = await self._store.list_sources(active_only=True)
        batch_size = self._settings.probe_concurrency
        results: list[ProbeResult] = []
        failed_to_record = 0

        for i in range(0, len(sources), batch_size):
            batch = sources[i : i + batch_size]
            outcomes = await asyncio.gather(
                *(self.check_source(s) for s in batch), return_exceptions=True
            )
            for source, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(f"Health check failed for {source.slug}: {outcome}")
                    result, recorded = _failed_probe(source, outcome), False
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    result, recorded = outcome
                results.append(result)
                if not recorded:
                    failed_to_record += 1

        report = HealthReport.from_results(results, failed_to_record=failed_to_record)
        logger.info(
            f"Health check: {report.healthy}/{report.total} healthy, "
            f"{report.degraded} degraded, {report.unhealthy} unhealthy, "
            f"avg {report.avg_response_time_ms}ms"
        )
        return report

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.debug("Health monitor client closed")


__all__ = [
    "HealthMonitor",
    "HealthReport",
    "classify_probe",
]
