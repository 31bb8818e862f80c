"""FastMCP server exposing Floodgate's batch operations as tools."""

import asyncio
import atexit
import logging
from typing import Any

from fastmcp import FastMCP

from floodgate.adapters import AdapterRegistry, JSONEndpointAdapter
from floodgate.aggregation import EntityResolver, dataset_stats, deduplicate, group_results
from floodgate.alerts import AlertEngine
from floodgate.config import configure_logging, get_settings
from floodgate.health import HealthMonitor
from floodgate.models import BatchSummary, FeedbackType, Source
from floodgate.pipelines import (
    HttpPipelineExecutor,
    IngestionPipelineExecutor,
    PipelineExecutor,
    PipelineRunner,
)
from floodgate.quality import InvalidVoteError, RecordNotFoundError, VoteService
from floodgate.scheduler import JobScheduler
from floodgate.store import RecordStore

logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP("floodgate")

# Global instances (initialized on first use)
_store: RecordStore | None = None
_registry: AdapterRegistry | None = None
_health_monitor: HealthMonitor | None = None
_scheduler: JobScheduler | None = None
_entity_resolver: EntityResolver | None = None
_vote_service: VoteService | None = None
_executor: PipelineExecutor | None = None
_pipeline_runner: PipelineRunner | None = None
_alert_engine: AlertEngine | None = None


def _get_store() -> RecordStore:
    global _store
    if _store is None:
        _store = RecordStore(get_settings().db_path)
    return _store


def _get_registry() -> AdapterRegistry:
    global _registry
    if _registry is None:
        _registry = AdapterRegistry(
            [JSONEndpointAdapter(_get_store(), timeout=get_settings().fetch_timeout)]
        )
    return _registry


def _get_health_monitor() -> HealthMonitor:
    global _health_monitor
    if _health_monitor is None:
        _health_monitor = HealthMonitor(_get_store())
    return _health_monitor


def _get_scheduler() -> JobScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = JobScheduler(_get_store(), _get_registry())
    return _scheduler


def _get_entity_resolver() -> EntityResolver:
    global _entity_resolver
    if _entity_resolver is None:
        _entity_resolver = EntityResolver(_get_store())
    return _entity_resolver


def _get_vote_service() -> VoteService:
    global _vote_service
    if _vote_service is None:
        _vote_service = VoteService(_get_store())
    return _vote_service


def _get_executor() -> PipelineExecutor:
    global _executor
    if _executor is None:
        if get_settings().has_query_endpoint():
            _executor = HttpPipelineExecutor()
        else:
            _executor = IngestionPipelineExecutor(_get_store())
    return _executor


def _get_pipeline_runner() -> PipelineRunner:
    global _pipeline_runner
    if _pipeline_runner is None:
        _pipeline_runner = PipelineRunner(_get_store(), _get_executor())
    return _pipeline_runner


def _get_alert_engine() -> AlertEngine:
    global _alert_engine
    if _alert_engine is None:
        _alert_engine = AlertEngine(_get_store())
    return _alert_engine


async def _cleanup_resources() -> None:
    """Close all open resources (HTTP clients, store connection)."""
    global _store, _registry, _health_monitor, _scheduler, _entity_resolver
    global _vote_service, _executor, _pipeline_runner, _alert_engine

    # Drop components first (they reference the store)
    _scheduler = None
    _entity_resolver = None
    _vote_service = None
    _pipeline_runner = None
    _alert_engine = None

    if _registry is not None:
        await _registry.close()
        _registry = None
    if _health_monitor is not None:
        await _health_monitor.close()
        _health_monitor = None
    if isinstance(_executor, HttpPipelineExecutor):
        await _executor.close()
    _executor = None

    if _store is not None:
        await _store.close()
        _store = None

    logger.debug("All resources cleaned up")


def _atexit_cleanup() -> None:
    """Synchronous atexit handler that runs async cleanup."""
    try:
        asyncio.run(_cleanup_resources())
    except Exception as e:
        # Don't let cleanup errors prevent shutdown
        logger.debug(f"Cleanup error (non-fatal): {e}")


# Register cleanup on process exit
atexit.register(_atexit_cleanup)


def _format_summary(title: str, summary: BatchSummary) -> str:
    lines = [f"## {title}", ""]
    if summary.skipped_reason:
        lines.append(f"Skipped: {summary.skipped_reason}")
        return "\n".join(lines)
    lines.append(f"  Processed: {summary.processed}")
    lines.append(f"  Succeeded: {summary.succeeded}")
    lines.append(f"  Failed: {summary.failed}")
    if summary.skipped:
        lines.append(f"  Skipped: {summary.skipped}")
    if summary.errors:
        lines.append("")
        lines.append("**Errors:**")
        lines.extend(f"- {error}" for error in summary.errors[:10])
    return "\n".join(lines)


@mcp.tool()
async def register_source(
    slug: str,
    endpoint: str,
    name: str | None = None,
    test_endpoint: str | None = None,
    kind: str = "json",
    priority: int = 0,
    fetch_config: dict[str, Any] | None = None,
) -> str:
    """Register or reconfigure a data source.

    Args:
        slug: Unique source identifier (e.g. 'city-parks')
        endpoint: Base URL fetched during ingestion
        name: Human-readable name
        test_endpoint: Lightweight URL used for health probes
        kind: Adapter kind (default 'json')
        priority: Job priority for this source (higher runs first)
        fetch_config: Adapter-specific mapping (records_path, id_field, ...)

    Returns:
        Confirmation message.
    """
    try:
        if kind not in _get_registry():
            return f"Unknown adapter kind '{kind}'. Available: {', '.join(_get_registry().kinds)}"
        source = await _get_store().upsert_source(
            Source(
                slug=slug,
                name=name,
                endpoint=endpoint,
                test_endpoint=test_endpoint,
                kind=kind,
                priority=priority,
                fetch_config=fetch_config or {},
            )
        )
        return f"Registered source '{source.slug}' ({source.kind}) at {source.endpoint}."
    except Exception as e:
        logger.exception(f"Error registering source {slug}: {e}")
        return f"Error registering source: {e}"


@mcp.tool()
async def schedule_ingestion(source_slug: str, priority: int = 0) -> str:
    """Queue an ingestion job for a source, due immediately.

    Args:
        source_slug: Source to ingest
        priority: Job priority (higher runs first)

    Returns:
        Confirmation with the job id.
    """
    try:
        if await _get_store().get_source(source_slug) is None:
            return f"No source registered as '{source_slug}'."
        job = await _get_scheduler().enqueue_job(source_slug, priority=priority)
        return f"Queued job {job.id} for '{source_slug}' (priority {priority})."
    except Exception as e:
        logger.exception(f"Error queueing ingestion for {source_slug}: {e}")
        return f"Error queueing ingestion: {e}"


@mcp.tool()
async def check_sources() -> str:
    """Probe every active source and update its health status.

    Returns:
        Health report with per-source results.
    """
    try:
        report = await _get_health_monitor().check_all()
    except Exception as e:
        logger.exception(f"Error running health check: {e}")
        return f"Error running health check: {e}"

    if report.total == 0:
        return "No active sources to check."

    lines = [
        "## Source Health",
        "",
        f"  Healthy: {report.healthy}/{report.total} ({report.health_percentage}%)",
        f"  Degraded: {report.degraded}",
        f"  Unhealthy: {report.unhealthy}",
        f"  Avg response: {report.avg_response_time_ms}ms",
    ]
    if report.failed_to_record:
        lines.append(f"  Not recorded: {report.failed_to_record}")
    lines.append("")
    for result in report.results:
        detail = f" ({result.error})" if result.error else ""
        lines.append(
            f"- {result.source_slug}: {result.status.value}, {result.response_time_ms}ms{detail}"
        )
    return "\n".join(lines)


@mcp.tool()
async def run_ingestion(concurrent: bool = False) -> str:
    """Run one batch of due ingestion jobs.

    Args:
        concurrent: Run different sources' jobs concurrently

    Returns:
        Batch summary.
    """
    try:
        scheduler = _get_scheduler()
        if concurrent:
            summary = await scheduler.run_concurrently()
        else:
            summary = await scheduler.run_once()
        return _format_summary("Ingestion", summary)
    except Exception as e:
        logger.exception(f"Error running ingestion: {e}")
        return f"Error running ingestion: {e}"


@mcp.tool()
async def resolve_entities(drain: bool = False) -> str:
    """Link unresolved raw records to entities.

    Args:
        drain: Keep resolving batches until the backlog is empty

    Returns:
        Resolution summary.
    """
    try:
        resolver = _get_entity_resolver()
        if not drain:
            summary, matches = await resolver.resolve_batch()
            created = sum(1 for m in matches if m.is_new)
            text = _format_summary("Entity Resolution", summary)
            return f"{text}\n  New entities: {created}"

        report = await resolver.drain()
        return "\n".join(
            [
                "## Entity Resolution",
                "",
                f"  Batches: {report.batches}",
                f"  Records linked: {report.records_linked}",
                f"  New entities: {report.entities_created}",
                f"  Failed: {report.failed}",
                f"  Remaining unresolved: {report.remaining_unresolved}",
                f"  Resolution rate: {report.resolution_rate}%",
            ]
        )
    except Exception as e:
        logger.exception(f"Error resolving entities: {e}")
        return f"Error resolving entities: {e}"


@mcp.tool()
async def canonical_records(
    source_id: str | None = None,
    category: str | None = None,
    limit: int = 20,
) -> str:
    """Deduplicate stored raw records and list the canonical results by group.

    Args:
        source_id: Only consider records from this source
        category: Only consider records in this category
        limit: Maximum canonical records listed

    Returns:
        Dataset statistics and the top canonical records per group.
    """
    try:
        raw = await _get_store().list_raw_records(source_id=source_id, category=category)
        records = deduplicate(raw)
    except Exception as e:
        logger.exception(f"Error deduplicating records: {e}")
        return f"Error deduplicating records: {e}"

    if not records:
        return "No records found."

    stats = dataset_stats(records)
    lines = [
        "## Canonical Records",
        "",
        f"  Records: {stats.total_records} ({stats.duplicates_removed} duplicates removed)",
        f"  Sources: {stats.unique_sources}, categories: {stats.categories}",
        f"  Avg confidence: {stats.avg_confidence:.2f} ({stats.high_confidence_count} high)",
        f"  With coordinates: {stats.with_coordinates} ({stats.geo_percent}%)",
    ]
    shown = 0
    for group, members in group_results(records).items():
        if shown >= limit:
            break
        lines.append("")
        lines.append(f"**{group}** ({len(members)})")
        for record in members[: limit - shown]:
            dupes = f" x{record.duplicate_count}" if record.duplicate_count > 1 else ""
            lines.append(
                f"- {record.display_name}{dupes} [{', '.join(record.sources)}] "
                f"{record.best_confidence:.2f}"
            )
            shown += 1
    return "\n".join(lines)


@mcp.tool()
async def submit_vote(
    record_id: str,
    feedback_type: str,
    actor_id: str | None = None,
    correction_data: dict[str, Any] | None = None,
) -> str:
    """Submit crowd feedback on a record and recompute its quality score.

    Args:
        record_id: Raw record id
        feedback_type: One of upvote, downvote, flag, correction
        actor_id: Identified voter (one vote per record); omit for anonymous
        correction_data: Required for corrections

    Returns:
        New quality score and vote counts.
    """
    allowed = ", ".join(t.value for t in FeedbackType)
    try:
        result = await _get_vote_service().submit_vote(
            {
                "record_id": record_id,
                "feedback_type": feedback_type,
                "correction_data": correction_data,
            },
            actor_id=actor_id,
        )
    except InvalidVoteError:
        return f"Invalid vote. feedback_type must be one of: {allowed}; corrections need correction_data."
    except RecordNotFoundError:
        return f"Record not found: {record_id}"
    except Exception as e:
        logger.exception(f"Error submitting vote on {record_id}: {e}")
        return f"Error submitting vote: {e}"

    counts = result.vote_counts
    assert counts is not None
    return (
        f"{result.message}. Quality score: {result.new_quality_score:.3f} "
        f"({counts.upvotes} up, {counts.downvotes} down, {counts.flags} flags)"
    )


@mcp.tool()
async def run_pipelines() -> str:
    """Execute every scheduled pipeline that is due.

    Returns:
        Batch summary.
    """
    try:
        summary = await _get_pipeline_runner().run_due()
        return _format_summary("Scheduled Pipelines", summary)
    except Exception as e:
        logger.exception(f"Error running pipelines: {e}")
        return f"Error running pipelines: {e}"


@mcp.tool()
async def evaluate_alerts() -> str:
    """Evaluate all active alerts and emit notifications.

    Returns:
        Evaluation summary.
    """
    try:
        summary = await _get_alert_engine().evaluate_all()
    except Exception as e:
        logger.exception(f"Error evaluating alerts: {e}")
        return f"Error evaluating alerts: {e}"

    lines = [
        "## Alerts",
        "",
        f"  Checked: {summary.alerts_checked}",
        f"  Triggered: {summary.alerts_triggered}",
        f"  Notifications: {summary.notifications_sent}",
        f"  Failed: {summary.failed}",
    ]
    if summary.errors:
        lines.append("")
        lines.extend(f"- {error}" for error in summary.errors[:10])
    return "\n".join(lines)


@mcp.tool()
async def source_status(slug: str) -> str:
    """Show a source's health, counters and recent probes.

    Args:
        slug: Source identifier

    Returns:
        Formatted source status.
    """
    try:
        store = _get_store()
        source = await store.get_source(slug)
        if source is None:
            return f"No source registered as '{slug}'."
        probes = await store.list_probes(slug, limit=5)
    except Exception as e:
        logger.exception(f"Error getting status for {slug}: {e}")
        return f"Error getting source status: {e}"

    avg = (
        f"{source.avg_response_time_ms:.0f}ms"
        if source.avg_response_time_ms is not None
        else "n/a"
    )
    lines = [f"**Source: {source.name or source.slug}**", ""]
    lines.append(f"  Health: {source.health_status.value}")
    lines.append(f"  Active: {'yes' if source.is_active else 'no'}")
    lines.append(f"  Consecutive failures: {source.consecutive_failures}")
    lines.append(f"  Avg response: {avg}")
    lines.append(f"  Calls made: {source.calls_made}")
    lines.append(f"  Records fetched: {source.total_records_fetched}")
    if source.last_fetch_at:
        lines.append(f"  Last fetch: {source.last_fetch_at.isoformat()}")
    if probes:
        lines.append("")
        lines.append("**Recent probes:**")
        for probe in probes:
            lines.append(
                f"- {probe.checked_at.isoformat()}: {probe.status.value} "
                f"({probe.response_time_ms}ms)"
            )
    return "\n".join(lines)


def main() -> None:
    """Run the Floodgate MCP server."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting Floodgate MCP server")
    mcp.run()


if __name__ == "__main__":
    main()
