"""
Automation Engine - Rule evaluation per device metrics tick
===========================================================
Turns one DeviceMetrics snapshot into trigger decisions and execution
outcomes for every enabled rule that applies to the device.

Per (rule, device), each tick:
    evaluate -> NO_MATCH                       (trace only)
             -> match -> cooldown BLOCKED       (trace only)
                      -> FIRING -> execute actions -> ExecutionLogEntry

Rules run in priority order (highest first, oldest first on ties) and
independently: a failing or firing rule never stops the ones after it.

Lifecycle:
    1. Built from AutomationConfig (from_config) or wired by hand
    2. process_device_metrics() called by the telemetry driver on every
       poll/push for a device; ticks for different devices may overlap
    3. Execution history goes to the LogSink, lastTriggeredAt is flushed
       back to the RuleStore

Trace events emitted via the optional event_emitter:
    - automation_trace:     every decision recorded in the trace ring buffer
    - automation_triggered: after a rule's actions ran (success or fail)
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from power_automation.actions import ActionExecutor, DeviceController, Notifier, describe_action
from power_automation.config import AutomationConfig
from power_automation.cooldown import CooldownTracker
from power_automation.evaluator import ConditionEvaluator
from power_automation.models import (
    DeviceMetrics,
    EvaluationContext,
    EvaluationResult,
    ExecutionLogEntry,
    Rule,
)
from power_automation.stores import (
    InMemoryLogSink,
    InMemoryRuleStore,
    LogSink,
    RuleStore,
    order_rules,
)
from power_automation.telemetry import SnapshotCache
from power_automation.tester import DryRunResult, RuleTester

logger = logging.getLogger("automation.engine")

DEFAULT_TRACE_ENTRIES = 100

EventEmitter = Callable[[str, Dict[str, Any]], Any]


class AutomationEngine:
    """
    Orchestrates evaluator, cooldown tracker and action executor.

    The engine owns no rules: it asks the rule store for the current
    enabled set on every tick.
    """

    def __init__(self, rule_store: RuleStore, log_sink: LogSink,
                 executor: Optional[ActionExecutor] = None,
                 cooldowns: Optional[CooldownTracker] = None,
                 evaluator: Optional[ConditionEvaluator] = None,
                 snapshots: Optional[SnapshotCache] = None,
                 event_emitter: Optional[EventEmitter] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 max_trace_entries: int = DEFAULT_TRACE_ENTRIES):
        """
        Args:
            rule_store:        Source of enabled rules, sink for lastTriggeredAt
            log_sink:          Receives one ExecutionLogEntry per attempted execution
            executor:          Runs actions; defaults to one with no transports
            cooldowns:         Shared (rule, device) cooldown tracker
            evaluator:         Condition evaluator
            snapshots:         Previous snapshot per device for edge-triggered events
            event_emitter:     Optional async callback(event_name, payload)
            clock:             Returns "now" for time/day conditions and cooldowns
            max_trace_entries: Size of the trace ring buffer
        """
        self._rule_store = rule_store
        self._log_sink = log_sink
        self._executor = executor or ActionExecutor()
        self._cooldowns = cooldowns if cooldowns is not None else CooldownTracker()
        self._evaluator = evaluator or ConditionEvaluator()
        self._snapshots = snapshots if snapshots is not None else SnapshotCache()
        self._event_emitter = event_emitter
        self._clock = clock or datetime.now

        self._tester = RuleTester(rule_store, self._evaluator, self._snapshots, self._clock)

        # Recent trace log (ring buffer for the dashboard)
        self._trace_log: List[Dict[str, Any]] = []
        self._max_trace_entries = max_trace_entries

        # Emit tasks still in flight, held so they are not garbage collected
        self._pending_emits = set()

        self._stats = {
            "evaluations": 0,
            "matches": 0,
            "cooldown_blocked": 0,
            "executions": 0,
            "execution_successes": 0,
            "execution_failures": 0,
            "errors": 0,
        }

    @classmethod
    def from_config(cls, config: AutomationConfig,
                    controller: Optional[DeviceController] = None,
                    notifier: Optional[Notifier] = None,
                    rule_store: Optional[RuleStore] = None,
                    log_sink: Optional[LogSink] = None,
                    event_emitter: Optional[EventEmitter] = None,
                    clock: Optional[Callable[[], datetime]] = None) -> "AutomationEngine":
        """Wire an engine from configuration, using in-memory stores unless given."""
        cooldowns = CooldownTracker()
        if rule_store is None:
            rule_store = InMemoryRuleStore(
                cooldowns=cooldowns,
                clock=clock,
                default_cooldown_seconds=config.default_cooldown_seconds,
                default_priority=config.default_priority,
            )
        if log_sink is None:
            log_sink = InMemoryLogSink(max_entries=config.log_entries)

        executor = ActionExecutor(
            controller=controller,
            notifier=notifier,
            timeout=config.action_timeout_seconds,
            default_channel=config.default_notification_channel,
        )
        snapshots = SnapshotCache(
            ttl_seconds=config.snapshot_ttl_seconds,
            max_entries=config.snapshot_max_devices,
        )
        return cls(
            rule_store=rule_store,
            log_sink=log_sink,
            executor=executor,
            cooldowns=cooldowns,
            snapshots=snapshots,
            event_emitter=event_emitter,
            clock=clock,
            max_trace_entries=config.trace_entries,
        )

    @property
    def cooldowns(self) -> CooldownTracker:
        return self._cooldowns

    @property
    def rule_store(self) -> RuleStore:
        return self._rule_store

    # =========================================================================
    # TRACING
    # =========================================================================

    def _add_trace(self, trace: Dict[str, Any]):
        """Add a trace entry to the ring buffer, log it and emit it."""
        trace["timestamp"] = time.time()
        self._trace_log.append(trace)

        if len(self._trace_log) > self._max_trace_entries:
            self._trace_log = self._trace_log[-self._max_trace_entries:]

        level = trace.get("level", "DEBUG")
        log_msg = f"[AUTOMATION {trace.get('rule_id', '?')}] {trace.get('message', '')}"
        logger.log(logging.getLevelName(level), log_msg)

        self._emit("automation_trace", trace)

    def _emit(self, event_name: str, payload: Dict[str, Any]):
        if not self._event_emitter:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No event loop running, {event_name} not emitted")
            return

        try:
            result = self._event_emitter(event_name, payload)
        except Exception as e:
            logger.warning(f"Event emitter failed: {e}")
            return
        if not asyncio.iscoroutine(result):
            return

        task = loop.create_task(result)
        self._pending_emits.add(task)
        task.add_done_callback(self._emit_done)

    def _emit_done(self, task: "asyncio.Task"):
        self._pending_emits.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Event emitter failed: {exc}")

    def get_trace_log(self) -> List[Dict[str, Any]]:
        """Recent trace entries, oldest first."""
        return list(self._trace_log)

    # =========================================================================
    # EVALUATION
    # =========================================================================

    async def process_device_metrics(self, metrics: DeviceMetrics,
                                     now: Optional[datetime] = None) -> List[ExecutionLogEntry]:
        """
        Run one evaluation tick for a device.

        Returns the ExecutionLogEntry of every rule that fired this tick, in
        evaluation order. Nothing raised by a single rule escapes.
        """
        now = now or self._clock()
        previous = self._snapshots.get(metrics.serial_number)
        context = EvaluationContext(metrics=metrics, current_time=now, previous_metrics=previous)

        entries: List[ExecutionLogEntry] = []
        try:
            rules = order_rules(self._rule_store.get_enabled_rules_for_device(metrics.device_id))
            logger.debug(f"Tick for {metrics.serial_number}: {len(rules)} applicable rule(s)")

            for rule in rules:
                started = time.monotonic()
                try:
                    entry = await self._process_rule(rule, context)
                except Exception as e:
                    entry = self._record_rule_failure(rule, metrics, now, e, started)
                if entry is not None:
                    entries.append(entry)
        finally:
            self._snapshots.put(metrics)

        return entries

    async def _process_rule(self, rule: Rule, context: EvaluationContext) -> Optional[ExecutionLogEntry]:
        metrics = context.metrics
        now = context.current_time
        self._stats["evaluations"] += 1

        result = self._evaluator.evaluate(rule.conditions, context)
        if not result.matches:
            self._add_trace({
                "rule_id": rule.id,
                "level": "DEBUG",
                "phase": "evaluate",
                "result": "NO_MATCH",
                "message": f"'{rule.name}' not matched on {metrics.serial_number}: {result.failed_conditions}",
                "device_serial": metrics.serial_number,
            })
            return None

        self._stats["matches"] += 1

        # Deleted between load and now: nothing to do this tick
        if self._rule_store.get_rule(rule.id) is None:
            self._add_trace({
                "rule_id": rule.id,
                "level": "WARNING",
                "phase": "lookup",
                "result": "RULE_MISSING",
                "message": f"'{rule.name}' was deleted during evaluation, skipping",
                "device_serial": metrics.serial_number,
            })
            return None

        # Cooldown is claimed BEFORE execution (prevents double-fire)
        if not self._cooldowns.try_acquire(rule.id, metrics.device_id, rule.cooldown_seconds, now):
            self._stats["cooldown_blocked"] += 1
            remaining = self._cooldowns.remaining_seconds(rule.id, metrics.device_id, rule.cooldown_seconds, now)
            self._add_trace({
                "rule_id": rule.id,
                "level": "INFO",
                "phase": "cooldown",
                "result": "BLOCKED",
                "message": f"'{rule.name}' on {metrics.serial_number} cooling down, {remaining}s remaining",
                "device_serial": metrics.serial_number,
                "remaining_seconds": remaining,
            })
            return None

        self._add_trace({
            "rule_id": rule.id,
            "level": "INFO",
            "phase": "execute",
            "result": "FIRING",
            "message": f"'{rule.name}' -> {metrics.serial_number}: "
                       f"{', '.join(describe_action(a) for a in rule.actions)}",
            "device_serial": metrics.serial_number,
            "matched": result.matched_conditions,
        })

        started = time.monotonic()
        action_results = await self._executor.execute(rule.actions, metrics, rule.name)
        execution_time_ms = int((time.monotonic() - started) * 1000)

        success, error_message = ActionExecutor.summarize(action_results)
        self._stats["executions"] += 1
        if success:
            self._stats["execution_successes"] += 1
        else:
            self._stats["execution_failures"] += 1

        entry = ExecutionLogEntry(
            rule_id=rule.id,
            rule_name=rule.name,
            device_id=metrics.device_id,
            device_serial=metrics.serial_number,
            trigger_details=self._trigger_details(result, metrics, now),
            actions_executed=[r.to_dict() for r in action_results],
            success=success,
            error_message=error_message,
            execution_time_ms=execution_time_ms,
            timestamp=now,
        )
        self._log_sink.write(entry)

        # Best effort: the cooldown tracker already holds the trigger time
        try:
            self._rule_store.update_last_triggered(rule.id, now)
        except Exception as e:
            logger.warning(f"Could not persist lastTriggeredAt for rule {rule.id}: {e}")

        self._add_trace({
            "rule_id": rule.id,
            "level": "INFO" if success else "WARNING",
            "phase": "result",
            "result": "SUCCESS" if success else "FAILED",
            "message": f"'{rule.name}' on {metrics.serial_number} "
                       f"{'succeeded' if success else 'failed: ' + str(error_message)} in {execution_time_ms}ms",
            "device_serial": metrics.serial_number,
        })
        self._emit("automation_triggered", entry.to_dict())
        return entry

    def _record_rule_failure(self, rule: Rule, metrics: DeviceMetrics, now: datetime,
                             exc: Exception, started: float) -> Optional[ExecutionLogEntry]:
        """Unexpected error while processing one rule: log it and keep going."""
        self._stats["errors"] += 1
        logger.error(f"Error processing rule {rule.id} for {metrics.serial_number}: {exc}", exc_info=True)

        entry = ExecutionLogEntry(
            rule_id=rule.id,
            rule_name=rule.name,
            device_id=metrics.device_id,
            device_serial=metrics.serial_number,
            trigger_details={"error": "Rule processing failed"},
            actions_executed=[],
            success=False,
            error_message=str(exc) or type(exc).__name__,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            timestamp=now,
        )
        try:
            self._log_sink.write(entry)
        except Exception as e:
            logger.error(f"Could not write failure log for rule {rule.id}: {e}")
            return None
        return entry

    @staticmethod
    def _trigger_details(result: EvaluationResult, metrics: DeviceMetrics, now: datetime) -> Dict[str, Any]:
        details = result.to_dict()
        details["metrics"] = {
            "soc": metrics.soc,
            "temperature": metrics.temperature,
            "acInputWatts": metrics.ac_input_watts,
            "solarInputWatts": metrics.solar_input_watts,
            "acOutputWatts": metrics.ac_output_watts,
            "dcOutputWatts": metrics.dc_output_watts,
        }
        details["evaluatedAt"] = now.isoformat()
        return details

    # =========================================================================
    # COOLDOWN ADMIN / DRY RUN / STATS
    # =========================================================================

    def seed_cooldowns(self, rules: List[Rule]) -> None:
        """
        Seed cooldowns from persisted lastTriggeredAt after a restart.

        Only device-scoped rules are seeded: a global rule's lastTriggeredAt
        does not say which device it fired for.
        """
        for rule in rules:
            if rule.device_id is not None:
                self._cooldowns.seed(rule.id, rule.device_id, rule.last_triggered_at)

    def get_cooldown_status(self, rule: Rule, device_id: int) -> Dict[str, Any]:
        return self._cooldowns.status(rule.id, device_id, rule.cooldown_seconds, self._clock())

    def test_rule(self, rule_id: int, metrics: DeviceMetrics,
                  now: Optional[datetime] = None) -> DryRunResult:
        """Dry run; see RuleTester.test."""
        return self._tester.test(rule_id, metrics, now)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "trace_entries": len(self._trace_log),
            "snapshots": self._snapshots.stats(),
        }
