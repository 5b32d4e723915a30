"""
Rule Store and Execution Log Sink
=================================
The engine talks to persistence through two narrow contracts:

    RuleStore.get_enabled_rules_for_device(device_id) -> [Rule]
    RuleStore.get_rule(rule_id)                       -> Rule | None
    RuleStore.update_last_triggered(rule_id, at)
    LogSink.write(entry)

The in-memory implementations here keep rules as serialized rows (JSON
text for conditions and actions), the same shape a database table would
hold, and decode them on every read.
"""

import json
import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from power_automation.cooldown import CooldownTracker
from power_automation.errors import RuleNotFoundError
from power_automation.models import (
    DEFAULT_COOLDOWN_SECONDS,
    DEFAULT_PRIORITY,
    ConditionGroup,
    ExecutionLogEntry,
    Rule,
    action_from_dict,
    action_to_dict,
    condition_from_dict,
    condition_to_dict,
)
from power_automation.validation import (
    CreateAutomationRuleDto,
    UpdateAutomationRuleDto,
    validate_rule_payload,
    validate_update_payload,
)

logger = logging.getLogger("automation.stores")

DEFAULT_LOG_ENTRIES = 500
DEFAULT_LOG_LIMIT = 50


class RuleStore(Protocol):
    def get_rule(self, rule_id: int) -> Optional[Rule]: ...

    def get_enabled_rules_for_device(self, device_id: int) -> List[Rule]: ...

    def update_last_triggered(self, rule_id: int, at: datetime) -> None: ...


class LogSink(Protocol):
    def write(self, entry: ExecutionLogEntry) -> None: ...


def order_rules(rules: List[Rule]) -> List[Rule]:
    """Priority descending, then oldest first, then id."""
    return sorted(
        rules,
        key=lambda r: (-r.priority, r.created_at or datetime.min, r.id),
    )


# ============================================================================
# RULE STORE
# ============================================================================

class InMemoryRuleStore:
    """
    Reference RuleStore. Create/update go through the pydantic DTOs, so
    nothing invalid is ever stored.
    """

    def __init__(self, cooldowns: Optional[CooldownTracker] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 default_cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
                 default_priority: int = DEFAULT_PRIORITY):
        self._rows: Dict[int, Dict[str, Any]] = {}
        self._next_id = 1
        self._lock = threading.Lock()
        self._cooldowns = cooldowns
        self._clock = clock or datetime.now
        # Applied when a create request leaves the field out
        self._default_cooldown = default_cooldown_seconds
        self._default_priority = default_priority

    # =========================================================================
    # ROW CODEC
    # =========================================================================

    @staticmethod
    def _to_row(rule: Rule) -> Dict[str, Any]:
        return {
            "id": rule.id,
            "name": rule.name,
            "description": rule.description,
            "device_id": rule.device_id,
            "enabled": rule.enabled,
            "conditions": json.dumps(condition_to_dict(rule.conditions)),
            "actions": json.dumps([action_to_dict(a) for a in rule.actions]),
            "cooldown_seconds": rule.cooldown_seconds,
            "priority": rule.priority,
            "created_at": rule.created_at,
            "updated_at": rule.updated_at,
            "last_triggered_at": rule.last_triggered_at,
        }

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> Rule:
        conditions = condition_from_dict(json.loads(row["conditions"]))
        if not isinstance(conditions, ConditionGroup):
            raise ValueError(f"Rule {row['id']} has no top-level condition group")
        return Rule(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            device_id=row["device_id"],
            enabled=row["enabled"],
            conditions=conditions,
            actions=[action_from_dict(a) for a in json.loads(row["actions"])],
            cooldown_seconds=row["cooldown_seconds"],
            priority=row["priority"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_triggered_at=row["last_triggered_at"],
        )

    # =========================================================================
    # CRUD
    # =========================================================================

    def create_rule(self, data: Any) -> Rule:
        """
        Create a rule from a CreateAutomationRuleDto or its raw camelCase dict.

        Raises:
            RuleValidationError: if the payload is malformed
        """
        dto = data if isinstance(data, CreateAutomationRuleDto) else validate_rule_payload(data)
        supplied = dto.model_fields_set
        now = self._clock()

        with self._lock:
            rule = Rule(
                id=self._next_id,
                name=dto.name,
                description=dto.description,
                device_id=dto.device_id,
                enabled=dto.enabled,
                conditions=dto.to_conditions(),
                actions=dto.to_actions(),
                cooldown_seconds=dto.cooldown_seconds if "cooldown_seconds" in supplied else self._default_cooldown,
                priority=dto.priority if "priority" in supplied else self._default_priority,
                created_at=now,
                updated_at=now,
            )
            self._rows[rule.id] = self._to_row(rule)
            self._next_id += 1

        logger.info(f"Created rule {rule.id} '{rule.name}'")
        return rule

    def update_rule(self, rule_id: int, data: Any) -> Rule:
        dto = data if isinstance(data, UpdateAutomationRuleDto) else validate_update_payload(data)
        changes = dto.changes()

        with self._lock:
            row = self._rows.get(rule_id)
            if row is None:
                raise RuleNotFoundError(rule_id)
            rule = self._from_row(row)
            for attr, value in changes.items():
                setattr(rule, attr, value)
            rule.updated_at = self._clock()
            self._rows[rule_id] = self._to_row(rule)

        logger.info(f"Updated rule {rule_id}: {sorted(changes)}")
        return rule

    def delete_rule(self, rule_id: int) -> None:
        with self._lock:
            if self._rows.pop(rule_id, None) is None:
                raise RuleNotFoundError(rule_id)

        if self._cooldowns is not None:
            self._cooldowns.clear(rule_id)
        logger.info(f"Deleted rule {rule_id}")

    def toggle_rule(self, rule_id: int) -> Rule:
        """Flip the enabled flag."""
        with self._lock:
            row = self._rows.get(rule_id)
            if row is None:
                raise RuleNotFoundError(rule_id)
            row["enabled"] = not row["enabled"]
            row["updated_at"] = self._clock()
            rule = self._from_row(row)

        logger.info(f"Rule {rule_id} {'enabled' if rule.enabled else 'disabled'}")
        return rule

    def get_rule(self, rule_id: int) -> Optional[Rule]:
        with self._lock:
            row = self._rows.get(rule_id)
            return self._from_row(row) if row is not None else None

    def require_rule(self, rule_id: int) -> Rule:
        rule = self.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def list_rules(self) -> List[Rule]:
        with self._lock:
            rules = [self._from_row(row) for row in self._rows.values()]
        return order_rules(rules)

    def get_enabled_rules_for_device(self, device_id: int) -> List[Rule]:
        """Device-scoped plus global rules, enabled only, in evaluation order."""
        with self._lock:
            rules = [
                self._from_row(row)
                for row in self._rows.values()
                if row["enabled"] and (row["device_id"] is None or row["device_id"] == device_id)
            ]
        return order_rules(rules)

    def update_last_triggered(self, rule_id: int, at: datetime) -> None:
        with self._lock:
            row = self._rows.get(rule_id)
            if row is None:
                logger.debug(f"lastTriggeredAt for deleted rule {rule_id} dropped")
                return
            row["last_triggered_at"] = at


# ============================================================================
# LOG SINK
# ============================================================================

class InMemoryLogSink:
    """Bounded execution history, oldest entries dropped first."""

    def __init__(self, max_entries: int = DEFAULT_LOG_ENTRIES):
        self._entries = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def write(self, entry: ExecutionLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def get_logs(self, rule_id: Optional[int] = None, device_id: Optional[int] = None,
                 limit: int = DEFAULT_LOG_LIMIT) -> List[ExecutionLogEntry]:
        """Newest first."""
        with self._lock:
            entries = list(self._entries)

        result = []
        for entry in reversed(entries):
            if rule_id is not None and entry.rule_id != rule_id:
                continue
            if device_id is not None and entry.device_id != device_id:
                continue
            result.append(entry)
            if len(result) >= limit:
                break
        return result

    def __len__(self) -> int:
        return len(self._entries)
