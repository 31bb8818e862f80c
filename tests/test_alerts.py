"""Tests for the alert evaluation engine."""

from datetime import datetime, timedelta, timezone

import pytest

from floodgate.alerts import AlertEngine, AlertEvaluationError, AlertMatch, render_notification
from floodgate.config import Settings
from floodgate.models import Alert, AlertType, Entity, Fact
from floodgate.store import RecordStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _threshold_alert(alert_id: str = "risk", **conditions) -> Alert:
    return Alert(
        id=alert_id,
        user_id="u1",
        alert_type=AlertType.THRESHOLD,
        entity_id="acme",
        conditions={"field": "risk_score", "operator": ">", "value": 70, **conditions},
    )


@pytest.fixture
async def acme(store: RecordStore) -> Entity:
    return await store.create_entity(
        Entity(id="acme", canonical_name="Acme Corp", risk_score=75.0, created_at=NOW, updated_at=NOW)
    )


@pytest.fixture
def engine(store: RecordStore, settings: Settings) -> AlertEngine:
    return AlertEngine(store, settings)


class TestThresholdAlerts:
    """Tests for threshold conditions on entity scores."""

    @pytest.mark.asyncio
    async def test_fires_above_threshold(self, store: RecordStore, engine: AlertEngine, acme: Entity) -> None:
        await store.upsert_alert(_threshold_alert())

        summary = await engine.evaluate_all(now=NOW)

        assert (summary.alerts_checked, summary.alerts_triggered, summary.notifications_sent) == (1, 1, 1)
        [notification] = await store.list_notifications("risk")
        assert notification.title == "Threshold alert: Acme Corp"
        assert notification.message == "risk_score is now 75 (threshold 70)"
        assert notification.user_id == "u1"
        assert notification.data["operator"] == ">"
        alert = await store.get_alert("risk")
        assert alert is not None
        assert alert.trigger_count == 1
        assert alert.last_triggered == NOW

    @pytest.mark.asyncio
    async def test_silent_below_threshold(self, store: RecordStore, engine: AlertEngine, acme: Entity) -> None:
        await store.update_entity_scores("acme", risk_score=65.0)
        await store.upsert_alert(_threshold_alert())

        summary = await engine.evaluate_all(now=NOW)

        assert summary.alerts_triggered == 0
        assert await store.list_notifications() == []
        alert = await store.get_alert("risk")
        assert alert is not None and alert.trigger_count == 0

    @pytest.mark.parametrize(
        "op,value,fires",
        [(">=", 75, True), ("≥", 75, True), ("<", 75, False), ("<=", 75, True), ("≤", 80, True), ("=", 75, True)],
    )
    @pytest.mark.asyncio
    async def test_operators(self, engine: AlertEngine, acme: Entity, op: str, value: float, fires: bool) -> None:
        match = await engine.evaluate(_threshold_alert(operator=op, value=value), NOW)
        assert (match is not None) is fires

    @pytest.mark.asyncio
    async def test_missing_entity_does_not_fire(self, engine: AlertEngine) -> None:
        assert await engine.evaluate(_threshold_alert(), NOW) is None

    @pytest.mark.asyncio
    async def test_unknown_operator_raises(self, engine: AlertEngine, acme: Entity) -> None:
        with pytest.raises(AlertEvaluationError, match="Unsupported operator"):
            await engine.evaluate(_threshold_alert(operator="!="), NOW)

    @pytest.mark.asyncio
    async def test_unknown_field_raises(self, engine: AlertEngine, acme: Entity) -> None:
        with pytest.raises(AlertEvaluationError, match="Unsupported threshold field"):
            await engine.evaluate(_threshold_alert(field="canonical_name"), NOW)

    @pytest.mark.asyncio
    async def test_non_numeric_threshold_raises(self, engine: AlertEngine, acme: Entity) -> None:
        with pytest.raises(AlertEvaluationError, match="not numeric"):
            await engine.evaluate(_threshold_alert(value="high"), NOW)


class TestChangeAlerts:
    """Tests for alerts watching new data."""

    @pytest.mark.asyncio
    async def test_entity_change_fires_once_per_new_data(
        self, store: RecordStore, engine: AlertEngine, acme: Entity
    ) -> None:
        await store.add_fact(Fact(entity_id="acme", fact_type="contract_awarded", created_at=NOW - timedelta(hours=1)))
        await store.add_fact(Fact(entity_id="acme", fact_type="news", created_at=NOW - timedelta(minutes=5)))
        await store.upsert_alert(Alert(id="watch", alert_type=AlertType.ENTITY_CHANGE, entity_id="acme"))

        first = await engine.evaluate_all(now=NOW)
        second = await engine.evaluate_all(now=NOW + timedelta(minutes=10))

        assert first.alerts_triggered == 1
        assert second.alerts_triggered == 0
        [notification] = await store.list_notifications("watch")
        assert notification.title == "Acme Corp updated"
        assert notification.message == "2 new data points for Acme Corp"

    @pytest.mark.asyncio
    async def test_entity_change_without_entity_id(self, engine: AlertEngine) -> None:
        alert = Alert(id="watch", alert_type=AlertType.ENTITY_CHANGE)
        assert await engine.evaluate(alert, NOW) is None

    @pytest.mark.asyncio
    async def test_new_contract_filters(self, store: RecordStore, engine: AlertEngine) -> None:
        for amount, state, age in ((50_000, "IL", 1), (500, "IL", 2), (90_000, "WI", 3), (75_000, "IL", 48)):
            await store.add_fact(
                Fact(
                    entity_id="acme",
                    fact_type="contract_awarded",
                    fact_value={"amount": amount, "state": state},
                    created_at=NOW - timedelta(hours=age),
                )
            )
        alert = Alert(
            id="contracts",
            alert_type=AlertType.NEW_CONTRACT,
            conditions={"min_amount": 10_000, "state": "IL"},
        )

        match = await engine.evaluate(alert, NOW)

        assert match is not None
        assert match.template_vars == {"count": 1}
        assert match.data["contracts"] == [{"entity_id": "acme", "amount": 50_000, "state": "IL"}]

    @pytest.mark.asyncio
    async def test_new_contract_match_after_many_non_matching(
        self, store: RecordStore, engine: AlertEngine
    ) -> None:
        """Filters apply before the match cap, so late matches are still seen."""
        for minute in range(12):
            await store.add_fact(
                Fact(
                    entity_id="acme",
                    fact_type="contract_awarded",
                    fact_value={"amount": 20_000, "state": "TX"},
                    created_at=NOW - timedelta(hours=2, minutes=minute),
                )
            )
        await store.add_fact(
            Fact(
                entity_id="globex",
                fact_type="contract_awarded",
                fact_value={"amount": 5_000_000, "state": "MD"},
                created_at=NOW - timedelta(minutes=5),
            )
        )
        await store.upsert_alert(Alert(id="md", alert_type=AlertType.NEW_CONTRACT, conditions={"state": "MD"}))

        summary = await engine.evaluate_all(now=NOW)

        assert summary.alerts_triggered == 1
        [notification] = await store.list_notifications("md")
        assert notification.data["contracts"] == [{"entity_id": "globex", "amount": 5_000_000, "state": "MD"}]

    @pytest.mark.asyncio
    async def test_new_contract_min_amount_before_cap(self, engine: AlertEngine, store: RecordStore) -> None:
        for minute in range(11):
            await store.add_fact(
                Fact(
                    fact_type="contract_awarded",
                    fact_value={"amount": 100},
                    created_at=NOW - timedelta(hours=3, minutes=minute),
                )
            )
        await store.add_fact(
            Fact(fact_type="contract_awarded", fact_value={"amount": 250_000}, created_at=NOW - timedelta(hours=1))
        )
        alert = Alert(id="big", alert_type=AlertType.NEW_CONTRACT, conditions={"min_amount": 100_000})

        match = await engine.evaluate(alert, NOW)

        assert match is not None
        assert match.template_vars == {"count": 1}

    @pytest.mark.asyncio
    async def test_keyword(self, store: RecordStore, engine: AlertEngine) -> None:
        await store.create_entity(Entity(id="e1", canonical_name="Prairie Solar LLC", created_at=NOW))
        await store.create_entity(Entity(id="e2", canonical_name="Wind Partners", created_at=NOW))
        await store.upsert_alert(Alert(id="kw", alert_type=AlertType.KEYWORD, conditions={"keyword": "solar"}))

        await engine.evaluate_all(now=NOW)

        [notification] = await store.list_notifications("kw")
        assert notification.title == '"solar": 1 new match(es)'
        assert notification.data["matches"] == [{"id": "e1", "canonical_name": "Prairie Solar LLC"}]

    @pytest.mark.asyncio
    async def test_blank_keyword_never_fires(self, engine: AlertEngine) -> None:
        alert = Alert(id="kw", alert_type=AlertType.KEYWORD, conditions={"keyword": "  "})
        assert await engine.evaluate(alert, NOW) is None

    @pytest.mark.asyncio
    async def test_high_opportunity(self, store: RecordStore, engine: AlertEngine) -> None:
        await store.create_entity(
            Entity(id="hot", canonical_name="Hot Lead", opportunity_score=85.0, created_at=NOW, updated_at=NOW)
        )
        await store.create_entity(
            Entity(id="cold", canonical_name="Cold Lead", opportunity_score=40.0, created_at=NOW, updated_at=NOW)
        )
        await store.upsert_alert(Alert(id="opp", alert_type=AlertType.HIGH_OPPORTUNITY))

        await engine.evaluate_all(now=NOW + timedelta(minutes=1))

        [notification] = await store.list_notifications("opp")
        assert notification.title == "1 high opportunity entities found"
        assert notification.message == "1 entities now score ≥80"


class TestEvaluateAll:
    """Tests for the evaluation pass."""

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, store: RecordStore, engine: AlertEngine, acme: Entity) -> None:
        await store.upsert_alert(_threshold_alert("broken", operator="!="))
        await store.upsert_alert(_threshold_alert("working"))

        summary = await engine.evaluate_all(now=NOW)

        assert summary.alerts_checked == 2
        assert summary.failed == 1
        assert summary.alerts_triggered == 1
        assert "broken" in summary.errors[0]
        assert len(await store.list_notifications("working")) == 1

    @pytest.mark.asyncio
    async def test_failed_trigger_write_leaves_alert_untouched(
        self, store: RecordStore, engine: AlertEngine, acme: Entity
    ) -> None:
        await store.upsert_alert(_threshold_alert())
        await store._write("DROP TABLE notifications")

        summary = await engine.evaluate_all(now=NOW)

        assert summary.failed == 1
        assert summary.notifications_sent == 0
        assert "Failed to record trigger" in summary.errors[0]
        alert = await store.get_alert("risk")
        assert alert is not None
        assert alert.trigger_count == 0
        assert alert.last_triggered is None

    @pytest.mark.asyncio
    async def test_inactive_alerts_skipped(self, store: RecordStore, engine: AlertEngine, acme: Entity) -> None:
        alert = _threshold_alert()
        alert.is_active = False
        await store.upsert_alert(alert)

        summary = await engine.evaluate_all(now=NOW)

        assert summary.alerts_checked == 0

    def test_render_notification(self) -> None:
        alert = Alert(id="c", user_id="u9", alert_type=AlertType.NEW_CONTRACT)
        notification = render_notification(alert, AlertMatch(template_vars={"count": 3}, data={"total": 3}), NOW)

        assert notification.title == "3 new contract(s) found"
        assert notification.message == "3 new matching contract(s)"
        assert notification.user_id == "u9"
        assert notification.created_at == NOW
