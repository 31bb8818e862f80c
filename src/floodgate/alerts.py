"""Alert evaluation engine.

Each active alert is checked against the data that changed since it last
fired. A triggered alert bumps its trigger count, records when it fired and
emits exactly one notification.
"""

import logging
import operator
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, Field

from floodgate.config import Settings, get_settings
from floodgate.models import Alert, AlertType, Notification, utcnow
from floodgate.store import RecordStore

logger = logging.getLogger(__name__)

# Window used by alerts that have never fired and look for "recent" changes
DEFAULT_LOOKBACK = timedelta(hours=24)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MATCH_LIMIT = 10

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "≥": operator.ge,
    "<=": operator.le,
    "≤": operator.le,
    "=": operator.eq,
}

# Entity fields a threshold alert may watch
THRESHOLD_FIELDS = ("opportunity_score", "health_score", "risk_score")

# (title, message) per alert type, formatted with the match's template vars
NOTIFICATION_TEMPLATES: dict[AlertType, tuple[str, str]] = {
    AlertType.ENTITY_CHANGE: (
        "{entity} updated",
        "{count} new data points for {entity}",
    ),
    AlertType.NEW_CONTRACT: (
        "{count} new contract(s) found",
        "{count} new matching contract(s)",
    ),
    AlertType.THRESHOLD: (
        "Threshold alert: {entity}",
        "{field} is now {value} (threshold {threshold})",
    ),
    AlertType.KEYWORD: (
        '"{keyword}": {count} new match(es)',
        '{count} new entities matching "{keyword}"',
    ),
    AlertType.HIGH_OPPORTUNITY: (
        "{count} high opportunity entities found",
        "{count} entities now score ≥{threshold}",
    ),
}


class AlertEvaluationError(Exception):
    """Raised when one alert cannot be evaluated."""

    def __init__(self, alert_id: str, message: str) -> None:
        self.alert_id = alert_id
        self.message = message
        super().__init__(f"[alert {alert_id}] {message}")


class AlertMatch(BaseModel):
    """A triggered alert's payload.

    Attributes:
        template_vars: Values substituted into the notification templates
        data: Payload stored on the notification
    """

    template_vars: dict[str, Any]
    data: dict[str, Any] = Field(default_factory=dict)


class AlertRunSummary(BaseModel):
    """Counts reported at the end of an evaluation pass."""

    alerts_checked: int = 0
    alerts_triggered: int = 0
    notifications_sent: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)

    def describe(self) -> str:
        return (
            f"Alert evaluation: {self.alerts_triggered}/{self.alerts_checked} triggered, "
            f"{self.notifications_sent} notification(s), {self.failed} failed"
        )


def render_notification(alert: Alert, match: AlertMatch, now: datetime) -> Notification:
    """Build the notification for a triggered alert from its type's templates."""
    title, message = NOTIFICATION_TEMPLATES[alert.alert_type]
    return Notification(
        user_id=alert.user_id,
        alert_id=alert.id,
        title=title.format(**match.template_vars),
        message=message.format(**match.template_vars),
        data=match.data,
        created_at=now,
    )


Evaluator = Callable[[Alert, datetime], Awaitable[AlertMatch | None]]


class AlertEngine:
    """Evaluates active alerts and emits notifications for the ones that fire."""

    def __init__(self, store: RecordStore, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._evaluators: dict[AlertType, Evaluator] = {
            AlertType.ENTITY_CHANGE: self._entity_change,
            AlertType.NEW_CONTRACT: self._new_contract,
            AlertType.THRESHOLD: self._threshold,
            AlertType.KEYWORD: self._keyword,
            AlertType.HIGH_OPPORTUNITY: self._high_opportunity,
        }

    async def evaluate(self, alert: Alert, now: datetime) -> AlertMatch | None:
        """Evaluate one alert without side effects.

        Raises:
            AlertEvaluationError: If the alert cannot be evaluated.
        """
        try:
            return await self._evaluators[alert.alert_type](alert, now)
        except AlertEvaluationError:
            raise
        except Exception as e:
            raise AlertEvaluationError(alert.id, str(e) or type(e).__name__) from e

    async def evaluate_all(self, now: datetime | None = None) -> AlertRunSummary:
        """Evaluate every active alert; one alert failing does not stop the rest."""
        now = now or utcnow()
        summary = AlertRunSummary()

        for alert in await self._store.active_alerts():
            summary.alerts_checked += 1
            try:
                match = await self.evaluate(alert, now)
                if match is None:
                    continue
                await self._trigger(alert, match, now)
            except AlertEvaluationError as e:
                logger.error(str(e))
                summary.failed += 1
                summary.errors.append(str(e))
                continue
            summary.alerts_triggered += 1
            summary.notifications_sent += 1

        logger.info(summary.describe())
        return summary

    async def _trigger(self, alert: Alert, match: AlertMatch, now: datetime) -> None:
        try:
            await self._store.record_trigger(render_notification(alert, match, now))
        except Exception as e:
            raise AlertEvaluationError(alert.id, f"Failed to record trigger: {e}") from e
        logger.info(f"Alert {alert.id} ({alert.alert_type.value}) triggered")

    def _since(self, alert: Alert, default: datetime) -> datetime:
        return alert.last_triggered or default

    async def _entity_change(self, alert: Alert, now: datetime) -> AlertMatch | None:
        if not alert.entity_id:
            return None
        since = self._since(alert, EPOCH)
        count = await self._store.count_facts_since(alert.entity_id, since)
        if count == 0:
            return None
        entity = await self._store.get_entity(alert.entity_id)
        name = entity.canonical_name if entity else "Entity"
        return AlertMatch(
            template_vars={"count": count, "entity": name},
            data={"new_facts": count, "entity_id": alert.entity_id, "entity": name},
        )

    async def _new_contract(self, alert: Alert, now: datetime) -> AlertMatch | None:
        since = self._since(alert, now - DEFAULT_LOOKBACK)
        min_amount = alert.conditions.get("min_amount")
        try:
            min_amount = float(min_amount) if min_amount is not None else None
        except (TypeError, ValueError):
            raise AlertEvaluationError(alert.id, f"min_amount is not numeric: {min_amount!r}") from None
        matching = await self._store.facts_since(
            "contract_awarded",
            since,
            MATCH_LIMIT,
            min_amount=min_amount,
            state=alert.conditions.get("state") or None,
        )

        if not matching:
            return None
        return AlertMatch(
            template_vars={"count": len(matching)},
            data={
                "total": len(matching),
                "contracts": [
                    {"entity_id": f.entity_id, **f.fact_value} for f in matching[:5]
                ],
            },
        )

    async def _threshold(self, alert: Alert, now: datetime) -> AlertMatch | None:
        if not alert.entity_id:
            return None
        field = alert.conditions.get("field")
        op = alert.conditions.get("operator")
        threshold = alert.conditions.get("value")

        if field not in THRESHOLD_FIELDS:
            raise AlertEvaluationError(alert.id, f"Unsupported threshold field: {field!r}")
        compare = OPERATORS.get(op)
        if compare is None:
            raise AlertEvaluationError(alert.id, f"Unsupported operator: {op!r}")
        try:
            threshold = float(threshold)
        except (TypeError, ValueError):
            raise AlertEvaluationError(alert.id, f"Threshold is not numeric: {threshold!r}") from None

        entity = await self._store.get_entity(alert.entity_id)
        if entity is None:
            return None
        value = getattr(entity, field)
        if not compare(value, threshold):
            return None
        return AlertMatch(
            template_vars={
                "entity": entity.canonical_name,
                "field": field,
                "value": _fmt(value),
                "threshold": _fmt(threshold),
            },
            data={
                "entity_id": entity.id,
                "field": field,
                "value": value,
                "threshold": threshold,
                "operator": op,
            },
        )

    async def _keyword(self, alert: Alert, now: datetime) -> AlertMatch | None:
        keyword = str(alert.conditions.get("keyword") or "").strip()
        if not keyword:
            return None
        since = self._since(alert, EPOCH)
        entities = await self._store.entities_created_since(since, keyword=keyword, limit=MATCH_LIMIT)
        if not entities:
            return None
        return AlertMatch(
            template_vars={"count": len(entities), "keyword": keyword},
            data={
                "keyword": keyword,
                "total": len(entities),
                "matches": [{"id": e.id, "canonical_name": e.canonical_name} for e in entities],
            },
        )

    async def _high_opportunity(self, alert: Alert, now: datetime) -> AlertMatch | None:
        since = self._since(alert, now - DEFAULT_LOOKBACK)
        threshold = self._settings.high_opportunity_threshold
        entities = await self._store.entities_updated_since(since, threshold, limit=MATCH_LIMIT)
        if not entities:
            return None
        return AlertMatch(
            template_vars={"count": len(entities), "threshold": _fmt(threshold)},
            data={
                "total": len(entities),
                "entities": [
                    {
                        "id": e.id,
                        "canonical_name": e.canonical_name,
                        "opportunity_score": e.opportunity_score,
                    }
                    for e in entities
                ],
            },
        )


def _fmt(value: float) -> str:
    """Render whole numbers without a trailing .0."""
    return str(int(value)) if float(value).is_integer() else str(value)


__all__ = [
    "AlertEngine",
    "AlertEvaluationError",
    "AlertMatch",
    "AlertRunSummary",
    "NOTIFICATION_TEMPLATES",
    "OPERATORS",
    "render_notification",
]
