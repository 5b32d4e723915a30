"""
Condition Evaluator - Recursive AND/OR evaluation over a metrics snapshot
=========================================================================
Pure: no I/O, no clock reads, no mutation. Everything comes from the
EvaluationContext handed in by the caller.

Every child of every group contributes one human-readable description to
either the matched or the failed list, regardless of the group operator,
so a partial OR match still shows which branch held.

Anything the evaluator does not recognise (condition kind, operator,
event type) or that raises while evaluating resolves to a non-matching
leaf. It never resolves to a match and never aborts the tree.
"""

import logging
from datetime import datetime
from typing import List, Tuple

from power_automation.models import (
    FULL_BATTERY_SOC,
    LOW_BATTERY_SOC,
    METRIC_LABELS,
    WEEKDAYS,
    ConditionGroup,
    DayOfWeekCondition,
    EvaluationContext,
    EvaluationResult,
    EventCondition,
    MetricCondition,
    SingleCondition,
    TimeCondition,
)

logger = logging.getLogger("automation.evaluator")

# Single-value comparison operators ('between' is handled separately)
OPERATORS = {
    ">":  lambda a, b: a > b,
    "<":  lambda a, b: a < b,
    ">=": lambda a, b: a >= b,
    "<=": lambda a, b: a <= b,
    "==": lambda a, b: a == b,
}


def format_clock(moment: datetime) -> str:
    """Zero-padded 24-hour HH:MM."""
    return f"{moment.hour:02d}:{moment.minute:02d}"


def clock_to_number(value: str) -> int:
    """'HH:MM' -> HH*100+MM, comparable within one day."""
    hours, minutes = value.split(":")
    return int(hours) * 100 + int(minutes)


def is_time_between(current: str, start: str, end: str) -> bool:
    """Inclusive range check; start > end is treated as an overnight range."""
    current_num = clock_to_number(current)
    start_num = clock_to_number(start)
    end_num = clock_to_number(end)

    if start_num <= end_num:
        return start_num <= current_num <= end_num
    # Overnight (e.g. 22:00 - 06:00)
    return current_num >= start_num or current_num <= end_num


class ConditionEvaluator:
    """Evaluates a rule's condition tree against an EvaluationContext."""

    def evaluate(self, group: ConditionGroup, context: EvaluationContext) -> EvaluationResult:
        matched: List[str] = []
        failed: List[str] = []

        matches = self._evaluate_group(group, context, matched, failed)

        return EvaluationResult(
            matches=matches,
            matched_conditions=matched,
            failed_conditions=None if matches else failed,
        )

    # =========================================================================
    # GROUPS
    # =========================================================================

    def _evaluate_group(self, group: ConditionGroup, context: EvaluationContext,
                        matched: List[str], failed: List[str]) -> bool:
        if not group.conditions:
            logger.warning(f"Empty {group.operator} group never matches")
            return False

        results = []

        for child in group.conditions:
            if isinstance(child, ConditionGroup):
                result = self._evaluate_group(child, context, matched, failed)
                description = f"Group ({child.operator})"
            else:
                result, description = self._evaluate_single(child, context)

            results.append(result)
            if result:
                matched.append(description)
            else:
                failed.append(description)

        if group.operator == "AND":
            return all(results)
        if group.operator == "OR":
            return any(results)

        logger.warning(f"Unknown group operator: {group.operator!r}")
        return False

    # =========================================================================
    # SINGLE CONDITIONS
    # =========================================================================

    def _evaluate_single(self, condition: SingleCondition, context: EvaluationContext) -> Tuple[bool, str]:
        kind = getattr(condition, "kind", None)
        check = {
            "metric": self._check_metric,
            "time": self._check_time,
            "dayOfWeek": self._check_day_of_week,
            "event": self._check_event,
        }.get(kind)

        if check is None:
            logger.warning(f"Unknown condition type: {kind!r}")
            return False, "Unknown condition type"

        try:
            return check(condition, context)
        except Exception as e:
            logger.warning(f"Error evaluating {kind} condition {condition!r}: {e}")
            return False, f"Evaluation error ({kind}): {e}"

    def _check_metric(self, condition: MetricCondition, context: EvaluationContext) -> Tuple[bool, str]:
        value = context.metrics.get_metric(condition.field)
        label = METRIC_LABELS.get(condition.field, condition.field)

        if condition.op == "between":
            low, high = condition.value
            return low <= value <= high, f"{label} ({value}) between {low} and {high}"

        op_func = OPERATORS.get(condition.op)
        if op_func is None:
            logger.warning(f"Unknown metric operator: {condition.op!r}")
            return False, "Unknown operator"

        return op_func(value, condition.value), f"{label} ({value}) {condition.op} {condition.value}"

    def _check_time(self, condition: TimeCondition, context: EvaluationContext) -> Tuple[bool, str]:
        current = format_clock(context.current_time)

        if condition.op == "equals":
            return current == condition.value, f"Time ({current}) equals {condition.value}"

        if condition.op == "between":
            start, end = condition.value
            return is_time_between(current, start, end), f"Time ({current}) between {start} and {end}"

        logger.warning(f"Unknown time operator: {condition.op!r}")
        return False, "Unknown time operator"

    def _check_day_of_week(self, condition: DayOfWeekCondition, context: EvaluationContext) -> Tuple[bool, str]:
        current_day = WEEKDAYS[context.current_time.weekday()]
        days = ", ".join(condition.value)

        if condition.op == "in":
            return current_day in condition.value, f"Day ({current_day}) in [{days}]"
        if condition.op == "notIn":
            return current_day not in condition.value, f"Day ({current_day}) not in [{days}]"

        logger.warning(f"Unknown day operator: {condition.op!r}")
        return False, "Unknown day operator"

    def _check_event(self, condition: EventCondition, context: EvaluationContext) -> Tuple[bool, str]:
        metrics = context.metrics
        previous = context.previous_metrics
        event_type = condition.event_type

        if event_type == "error":
            return metrics.has_error, f"Device has error: {metrics.has_error}"

        if event_type == "offline":
            return not metrics.online, f"Device offline: {not metrics.online}"

        if event_type == "online":
            # Edge-triggered when a previous snapshot exists, level otherwise
            if previous is not None:
                came_online = metrics.online and not previous.online
                return came_online, f"Device just came online: {came_online}"
            return metrics.online, f"Device online: {metrics.online}"

        if event_type == "lowBattery":
            low = metrics.soc < LOW_BATTERY_SOC
            return low, f"Low battery ({metrics.soc}%): {low}"

        if event_type == "fullBattery":
            full = metrics.soc >= FULL_BATTERY_SOC
            return full, f"Full battery ({metrics.soc}%): {full}"

        logger.warning(f"Unknown event type: {event_type!r}")
        return False, "Unknown event type"
