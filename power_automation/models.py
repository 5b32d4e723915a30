"""
Automation Models - Rules, Conditions, Actions and Device Snapshots
===================================================================
Value objects shared by the evaluator, the cooldown tracker, the action
executor and the engine.

Conditions and actions are closed tagged variants: every variant carries a
``kind`` tag (the ``type`` string used on the wire) and the evaluator /
executor dispatch on that tag. Nested condition groups are the only
recursive case.

Wire format (camelCase, as stored and as sent by the dashboard):
    {"operator": "AND", "conditions": [
        {"type": "metric", "field": "soc", "op": "<", "value": 20},
        {"type": "time", "op": "between", "value": ["22:00", "06:00"]}
    ]}
    {"type": "setDcOutput", "params": {"enabled": false}}
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

# ============================================================================
# CONSTANTS
# ============================================================================

# Metric field -> DeviceMetrics attribute
METRIC_ATTRIBUTES = {
    "soc": "soc",
    "temperature": "temperature",
    "acInputWatts": "ac_input_watts",
    "solarInputWatts": "solar_input_watts",
    "acOutputWatts": "ac_output_watts",
    "dcOutputWatts": "dc_output_watts",
    "totalInputWatts": "total_input_watts",
    "totalOutputWatts": "total_output_watts",
}

METRIC_LABELS = {
    "soc": "SOC",
    "temperature": "Temperature",
    "acInputWatts": "AC Input",
    "solarInputWatts": "Solar Input",
    "acOutputWatts": "AC Output",
    "dcOutputWatts": "DC Output",
    "totalInputWatts": "Total Input",
    "totalOutputWatts": "Total Output",
}

COMPARISON_OPS = (">", "<", ">=", "<=", "==", "between")
TIME_OPS = ("equals", "between")
DAY_OPS = ("in", "notIn")
GROUP_OPERATORS = ("AND", "OR")
EVENT_TYPES = ("error", "offline", "online", "lowBattery", "fullBattery")

# Indexed by datetime.weekday()
WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

LOW_BATTERY_SOC = 20
FULL_BATTERY_SOC = 100

CHARGING_POWER_RANGE = (200, 2900)
MAX_CHARGE_SOC_RANGE = (50, 100)
MIN_DISCHARGE_SOC_RANGE = (0, 30)

DEFAULT_COOLDOWN_SECONDS = 300
DEFAULT_PRIORITY = 0

# Older rules were written with the Slack-specific notification tag
LEGACY_ACTION_TYPES = {"sendSlackNotification": "sendNotification"}


# ============================================================================
# DEVICE SNAPSHOT
# ============================================================================

@dataclass(frozen=True)
class DeviceMetrics:
    """Immutable telemetry snapshot for one device, produced once per tick."""
    device_id: int
    serial_number: str
    online: bool
    soc: float = 0
    temperature: float = 0
    ac_input_watts: float = 0
    solar_input_watts: float = 0
    ac_output_watts: float = 0
    dc_output_watts: float = 0
    total_input_watts: float = 0
    total_output_watts: float = 0
    has_error: bool = False
    error_codes: Tuple[int, ...] = ()

    def get_metric(self, metric_field: str) -> float:
        """Resolve a rule metric field; unknown fields read as zero."""
        attr = METRIC_ATTRIBUTES.get(metric_field)
        if attr is None:
            return 0
        value = getattr(self, attr, 0)
        return 0 if value is None else value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "serialNumber": self.serial_number,
            "online": self.online,
            "soc": self.soc,
            "temperature": self.temperature,
            "acInputWatts": self.ac_input_watts,
            "solarInputWatts": self.solar_input_watts,
            "acOutputWatts": self.ac_output_watts,
            "dcOutputWatts": self.dc_output_watts,
            "totalInputWatts": self.total_input_watts,
            "totalOutputWatts": self.total_output_watts,
            "hasError": self.has_error,
            "errorCodes": list(self.error_codes),
        }


@dataclass(frozen=True)
class EvaluationContext:
    """Everything a condition may look at during one evaluation."""
    metrics: DeviceMetrics
    current_time: datetime
    previous_metrics: Optional[DeviceMetrics] = None


# ============================================================================
# CONDITIONS
# ============================================================================

@dataclass(frozen=True)
class MetricCondition:
    kind: ClassVar[str] = "metric"
    field: str
    op: str
    value: Union[float, Tuple[float, float]]


@dataclass(frozen=True)
class TimeCondition:
    kind: ClassVar[str] = "time"
    op: str
    value: Union[str, Tuple[str, str]]


@dataclass(frozen=True)
class DayOfWeekCondition:
    kind: ClassVar[str] = "dayOfWeek"
    op: str
    value: Tuple[str, ...]


@dataclass(frozen=True)
class EventCondition:
    kind: ClassVar[str] = "event"
    event_type: str


SingleCondition = Union[MetricCondition, TimeCondition, DayOfWeekCondition, EventCondition]


@dataclass(frozen=True)
class ConditionGroup:
    """AND/OR node over single conditions and nested groups."""
    kind: ClassVar[str] = "group"
    operator: str
    conditions: Tuple[Union["ConditionGroup", SingleCondition], ...]


ConditionNode = Union[ConditionGroup, SingleCondition]


def condition_to_dict(node: ConditionNode) -> Dict[str, Any]:
    """Serialize a condition tree to its wire form."""
    if isinstance(node, ConditionGroup):
        return {
            "operator": node.operator,
            "conditions": [condition_to_dict(c) for c in node.conditions],
        }
    if isinstance(node, MetricCondition):
        value = list(node.value) if isinstance(node.value, tuple) else node.value
        return {"type": node.kind, "field": node.field, "op": node.op, "value": value}
    if isinstance(node, TimeCondition):
        value = list(node.value) if isinstance(node.value, tuple) else node.value
        return {"type": node.kind, "op": node.op, "value": value}
    if isinstance(node, DayOfWeekCondition):
        return {"type": node.kind, "op": node.op, "value": list(node.value)}
    if isinstance(node, EventCondition):
        return {"type": node.kind, "eventType": node.event_type}
    raise ValueError(f"Cannot serialize condition: {node!r}")


def condition_from_dict(data: Dict[str, Any]) -> ConditionNode:
    """
    Parse a condition tree from its wire form.

    Shapes are trusted here (they were validated at the CRUD boundary);
    only the variant tag has to be recognised.
    """
    if "operator" in data:
        return ConditionGroup(
            operator=data["operator"],
            conditions=tuple(condition_from_dict(c) for c in data.get("conditions", [])),
        )

    condition_type = data.get("type")
    if condition_type == "metric":
        value = data["value"]
        return MetricCondition(
            field=data["field"],
            op=data["op"],
            value=tuple(value) if isinstance(value, (list, tuple)) else value,
        )
    elif condition_type == "time":
        value = data["value"]
        return TimeCondition(
            op=data["op"],
            value=tuple(value) if isinstance(value, (list, tuple)) else value,
        )
    elif condition_type == "dayOfWeek":
        return DayOfWeekCondition(op=data["op"], value=tuple(data["value"]))
    elif condition_type == "event":
        return EventCondition(event_type=data["eventType"])
    else:
        raise ValueError(f"Unknown condition type: {condition_type}")


# ============================================================================
# ACTIONS
# ============================================================================

# Each action maps wire param names -> dataclass attribute names in PARAMS.

@dataclass(frozen=True)
class SetAcOutputAction:
    kind: ClassVar[str] = "setAcOutput"
    PARAMS: ClassVar[Dict[str, str]] = {"enabled": "enabled"}
    enabled: bool


@dataclass(frozen=True)
class SetDcOutputAction:
    kind: ClassVar[str] = "setDcOutput"
    PARAMS: ClassVar[Dict[str, str]] = {"enabled": "enabled"}
    enabled: bool


@dataclass(frozen=True)
class SetChargingPowerAction:
    kind: ClassVar[str] = "setChargingPower"
    PARAMS: ClassVar[Dict[str, str]] = {"watts": "watts"}
    watts: int


@dataclass(frozen=True)
class SetMaxChargeSocAction:
    kind: ClassVar[str] = "setMaxChargeSoc"
    PARAMS: ClassVar[Dict[str, str]] = {"maxSoc": "max_soc"}
    max_soc: int


@dataclass(frozen=True)
class SetMinDischargeSocAction:
    kind: ClassVar[str] = "setMinDischargeSoc"
    PARAMS: ClassVar[Dict[str, str]] = {"minSoc": "min_soc"}
    min_soc: int


@dataclass(frozen=True)
class SendNotificationAction:
    kind: ClassVar[str] = "sendNotification"
    PARAMS: ClassVar[Dict[str, str]] = {"message": "message", "channel": "channel"}
    message: str
    channel: Optional[str] = None


RuleAction = Union[
    SetAcOutputAction,
    SetDcOutputAction,
    SetChargingPowerAction,
    SetMaxChargeSocAction,
    SetMinDischargeSocAction,
    SendNotificationAction,
]

ACTION_CLASSES = {
    cls.kind: cls
    for cls in (
        SetAcOutputAction,
        SetDcOutputAction,
        SetChargingPowerAction,
        SetMaxChargeSocAction,
        SetMinDischargeSocAction,
        SendNotificationAction,
    )
}


def action_to_dict(action: RuleAction) -> Dict[str, Any]:
    params = {}
    for wire_name, attr in action.PARAMS.items():
        value = getattr(action, attr)
        if value is not None:
            params[wire_name] = value
    return {"type": action.kind, "params": params}


def action_from_dict(data: Dict[str, Any]) -> RuleAction:
    action_type = LEGACY_ACTION_TYPES.get(data.get("type"), data.get("type"))
    cls = ACTION_CLASSES.get(action_type)
    if cls is None:
        raise ValueError(f"Unknown action type: {data.get('type')}")
    params = data.get("params") or {}
    kwargs = {attr: params[wire_name] for wire_name, attr in cls.PARAMS.items() if wire_name in params}
    return cls(**kwargs)


# ============================================================================
# RULE
# ============================================================================

@dataclass
class Rule:
    """
    An automation rule as handed to the engine by the rule store.

    ``device_id=None`` means the rule applies to every device.
    """
    id: int
    name: str
    conditions: ConditionGroup
    actions: List[RuleAction]
    device_id: Optional[int] = None
    enabled: bool = True
    description: Optional[str] = None
    cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS
    priority: int = DEFAULT_PRIORITY
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_triggered_at: Optional[datetime] = None

    @property
    def applies_to_all_devices(self) -> bool:
        return self.device_id is None

    def applies_to(self, device_id: int) -> bool:
        return self.device_id is None or self.device_id == device_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "deviceId": self.device_id,
            "enabled": self.enabled,
            "conditions": condition_to_dict(self.conditions),
            "actions": [action_to_dict(a) for a in self.actions],
            "cooldownSeconds": self.cooldown_seconds,
            "priority": self.priority,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "lastTriggeredAt": _iso(self.last_triggered_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rule":
        conditions = condition_from_dict(data["conditions"])
        if not isinstance(conditions, ConditionGroup):
            raise ValueError("Rule conditions must be a condition group")
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description"),
            device_id=data.get("deviceId"),
            enabled=data.get("enabled", True),
            conditions=conditions,
            actions=[action_from_dict(a) for a in data.get("actions", [])],
            cooldown_seconds=data.get("cooldownSeconds", DEFAULT_COOLDOWN_SECONDS),
            priority=data.get("priority", DEFAULT_PRIORITY),
            created_at=_parse_iso(data.get("createdAt")),
            updated_at=_parse_iso(data.get("updatedAt")),
            last_triggered_at=_parse_iso(data.get("lastTriggeredAt")),
        )


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class EvaluationResult:
    """Outcome of evaluating a condition tree, with a readable trace."""
    matches: bool
    matched_conditions: List[str] = field(default_factory=list)
    # Only populated when the overall result is False
    failed_conditions: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "matches": self.matches,
            "matchedConditions": list(self.matched_conditions),
        }
        if self.failed_conditions is not None:
            result["failedConditions"] = list(self.failed_conditions)
        return result


@dataclass
class ActionResult:
    action: RuleAction
    success: bool
    error: Optional[str] = None
    response: Any = None

    def to_dict(self) -> Dict[str, Any]:
        result = action_to_dict(self.action)
        result["success"] = self.success
        if self.error is not None:
            result["error"] = self.error
        if self.response is not None:
            result["response"] = self.response
        return result


@dataclass
class ExecutionLogEntry:
    """Audit record for one rule execution attempt (matched, not cooling down)."""
    rule_id: int
    rule_name: str
    device_id: int
    device_serial: str
    trigger_details: Dict[str, Any]
    actions_executed: List[Dict[str, Any]]
    success: bool
    execution_time_ms: int
    timestamp: datetime
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ruleId": self.rule_id,
            "ruleName": self.rule_name,
            "deviceId": self.device_id,
            "deviceSerial": self.device_serial,
            "triggerDetails": self.trigger_details,
            "actionsExecuted": self.actions_executed,
            "success": self.success,
            "errorMessage": self.error_message,
            "executionTimeMs": self.execution_time_ms,
            "timestamp": self.timestamp.isoformat(),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
