"""Tests for dry-run rule evaluation."""

from datetime import datetime

import pytest

from power_automation.cooldown import CooldownTracker
from power_automation.errors import RuleNotFoundError
from power_automation.models import SendNotificationAction
from power_automation.stores import InMemoryRuleStore
from power_automation.telemetry import SnapshotCache
from power_automation.tester import RuleTester

NIGHT = datetime(2024, 1, 1, 23, 30)


@pytest.fixture
def store():
    return InMemoryRuleStore()


@pytest.fixture
def night_rule(store):
    return store.create_rule({
        "name": "Night low battery",
        "enabled": False,
        "conditions": {
            "operator": "AND",
            "conditions": [
                {"type": "metric", "field": "soc", "op": "<", "value": 20},
                {"type": "time", "op": "between", "value": ["22:00", "06:00"]},
            ],
        },
        "actions": [{"type": "sendNotification", "params": {"message": "{device} low"}}],
    })


class TestRuleTester:
    def test_match_reports_would_execute(self, store, night_rule, make_metrics):
        result = RuleTester(store).test(night_rule.id, make_metrics(soc=10), NIGHT)

        assert result.matches
        assert result.matched_conditions == ["SOC (10) < 20", "Time (23:30) between 22:00 and 06:00"]
        assert result.failed_conditions is None
        assert result.would_execute == [SendNotificationAction(message="{device} low")]

    def test_no_match_shows_failed_conditions(self, store, night_rule, make_metrics):
        result = RuleTester(store).test(night_rule.id, make_metrics(soc=50), NIGHT)

        assert not result.matches
        assert result.failed_conditions == ["SOC (50) < 20"]
        assert result.would_execute == []
        assert result.to_dict() == {
            "matches": False,
            "matchedConditions": ["Time (23:30) between 22:00 and 06:00"],
            "failedConditions": ["SOC (50) < 20"],
            "wouldExecute": [],
        }

    def test_unknown_rule(self, store, make_metrics):
        with pytest.raises(RuleNotFoundError):
            RuleTester(store).test(42, make_metrics(), NIGHT)

    def test_never_touches_cooldown(self, make_metrics):
        cooldowns = CooldownTracker()
        store = InMemoryRuleStore(cooldowns=cooldowns)
        rule = store.create_rule({
            "name": "Low battery",
            "conditions": {"operator": "AND", "conditions": [{"type": "event", "eventType": "lowBattery"}]},
            "actions": [{"type": "setAcOutput", "params": {"enabled": False}}],
        })

        RuleTester(store).test(rule.id, make_metrics(soc=5), NIGHT)

        assert cooldowns.last_triggered(rule.id, 1) is None

    def test_uses_cached_previous_snapshot(self, store, make_metrics):
        rule = store.create_rule({
            "name": "Back online",
            "conditions": {"operator": "AND", "conditions": [{"type": "event", "eventType": "online"}]},
            "actions": [{"type": "sendNotification", "params": {"message": "{device} is back"}}],
        })
        snapshots = SnapshotCache()
        tester = RuleTester(store, snapshots=snapshots)

        snapshots.put(make_metrics(online=True))
        assert not tester.test(rule.id, make_metrics(online=True), NIGHT).matches

        snapshots.put(make_metrics(online=False))
        assert tester.test(rule.id, make_metrics(online=True), NIGHT).matches
