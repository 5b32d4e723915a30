"""
Rule Tester - dry-run evaluation for the dashboard "Test" button.

Runs the same condition evaluation as the engine but never looks at or
touches cooldown state and never executes actions, so a rule can be
previewed (even while disabled) without side effects.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from power_automation.errors import RuleNotFoundError
from power_automation.evaluator import ConditionEvaluator
from power_automation.models import (
    DeviceMetrics,
    EvaluationContext,
    Rule,
    RuleAction,
    action_to_dict,
)
from power_automation.stores import RuleStore
from power_automation.telemetry import SnapshotCache

logger = logging.getLogger("automation.tester")


@dataclass
class DryRunResult:
    matches: bool
    matched_conditions: List[str] = field(default_factory=list)
    failed_conditions: Optional[List[str]] = None
    # The rule's actions when it matches, empty otherwise
    would_execute: List[RuleAction] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "matches": self.matches,
            "matchedConditions": list(self.matched_conditions),
            "wouldExecute": [action_to_dict(a) for a in self.would_execute],
        }
        if self.failed_conditions is not None:
            result["failedConditions"] = list(self.failed_conditions)
        return result


class RuleTester:

    def __init__(self, rule_store: RuleStore,
                 evaluator: Optional[ConditionEvaluator] = None,
                 snapshots: Optional[SnapshotCache] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self._rule_store = rule_store
        self._evaluator = evaluator or ConditionEvaluator()
        self._snapshots = snapshots
        self._clock = clock or datetime.now

    def test(self, rule_id: int, metrics: DeviceMetrics, now: Optional[datetime] = None,
             previous_metrics: Optional[DeviceMetrics] = None) -> DryRunResult:
        """
        Evaluate a stored rule against a snapshot.

        Raises:
            RuleNotFoundError: if no rule has this id
        """
        rule = self._rule_store.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return self.test_rule(rule, metrics, now, previous_metrics)

    def test_rule(self, rule: Rule, metrics: DeviceMetrics, now: Optional[datetime] = None,
                  previous_metrics: Optional[DeviceMetrics] = None) -> DryRunResult:
        """Evaluate a rule object directly (e.g. an unsaved draft)."""
        if previous_metrics is None and self._snapshots is not None:
            previous_metrics = self._snapshots.get(metrics.serial_number)

        context = EvaluationContext(
            metrics=metrics,
            current_time=now or self._clock(),
            previous_metrics=previous_metrics,
        )
        result = self._evaluator.evaluate(rule.conditions, context)
        logger.debug(f"Dry run of rule {rule.id} on {metrics.serial_number}: matches={result.matches}")

        return DryRunResult(
            matches=result.matches,
            matched_conditions=result.matched_conditions,
            failed_conditions=result.failed_conditions,
            would_execute=list(rule.actions) if result.matches else [],
        )
