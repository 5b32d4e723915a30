"""
Rule Validation - Pydantic models for the rule CRUD boundary.

Every rule is validated here before it reaches the store, so the engine,
the evaluator and the executor can trust what they load. Range checks on
action parameters live only here.
"""

import logging
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    TypeAdapter,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

from power_automation.errors import RuleValidationError
from power_automation.models import (
    CHARGING_POWER_RANGE,
    DEFAULT_COOLDOWN_SECONDS,
    DEFAULT_PRIORITY,
    MAX_CHARGE_SOC_RANGE,
    MIN_DISCHARGE_SOC_RANGE,
    ConditionGroup,
    RuleAction,
    action_from_dict,
    condition_from_dict,
)

logger = logging.getLogger("automation.validation")

Number = Union[StrictInt, StrictFloat]
ClockTime = Annotated[str, Field(pattern=r"^([01]\d|2[0-3]):[0-5]\d$", description="HH:MM, 24-hour")]


def _whole_number(value: Any) -> Any:
    """Accept 1200 and 1200.0, reject 1200.5, "1200" and booleans."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("must be a number")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError("must be a whole number")
        return int(value)
    return value


WholeNumber = Annotated[int, BeforeValidator(_whole_number)]


class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python, unknown keys rejected."""
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# CONDITION MODELS
# ============================================================================

class MetricConditionModel(_WireModel):
    """Numeric comparison against one telemetry field."""
    type: Literal["metric"]
    field: Literal[
        "soc",
        "temperature",
        "acInputWatts",
        "solarInputWatts",
        "acOutputWatts",
        "dcOutputWatts",
        "totalInputWatts",
        "totalOutputWatts",
    ]
    op: Literal[">", "<", ">=", "<=", "==", "between"]
    value: Union[Number, Tuple[Number, Number]] = Field(..., description="Number, or [min, max] for 'between'")

    @model_validator(mode="after")
    def check_value_shape(self):
        if self.op == "between":
            if not isinstance(self.value, tuple):
                raise ValueError("'between' requires a [min, max] pair")
            if self.value[0] > self.value[1]:
                raise ValueError("'between' requires min <= max")
        elif isinstance(self.value, tuple):
            raise ValueError(f"'{self.op}' requires a single number")
        return self


class TimeConditionModel(_WireModel):
    """Time of day, 'between' ranges may wrap midnight."""
    type: Literal["time"]
    op: Literal["equals", "between"]
    value: Union[ClockTime, Tuple[ClockTime, ClockTime]]

    @model_validator(mode="after")
    def check_value_shape(self):
        if self.op == "between" and not isinstance(self.value, tuple):
            raise ValueError("'between' requires a [start, end] pair")
        if self.op == "equals" and isinstance(self.value, tuple):
            raise ValueError("'equals' requires a single HH:MM value")
        return self


class DayOfWeekConditionModel(_WireModel):
    type: Literal["dayOfWeek"]
    op: Literal["in", "notIn"]
    value: List[Literal["mon", "tue", "wed", "thu", "fri", "sat", "sun"]] = Field(..., min_length=1)


class EventConditionModel(_WireModel):
    type: Literal["event"]
    event_type: Literal["error", "offline", "online", "lowBattery", "fullBattery"]


SingleConditionModel = Annotated[
    Union[MetricConditionModel, TimeConditionModel, DayOfWeekConditionModel, EventConditionModel],
    Field(discriminator="type"),
]


class ConditionGroupModel(_WireModel):
    operator: Literal["AND", "OR"]
    conditions: List[Union["ConditionGroupModel", SingleConditionModel]] = Field(..., min_length=1)

    def to_domain(self) -> ConditionGroup:
        return condition_from_dict(self.model_dump(by_alias=True))


ConditionGroupModel.model_rebuild()


# ============================================================================
# ACTION MODELS
# ============================================================================

class _EnabledParams(_WireModel):
    enabled: StrictBool


class _ChargingPowerParams(_WireModel):
    watts: WholeNumber = Field(..., ge=CHARGING_POWER_RANGE[0], le=CHARGING_POWER_RANGE[1])


class _MaxChargeSocParams(_WireModel):
    max_soc: WholeNumber = Field(..., ge=MAX_CHARGE_SOC_RANGE[0], le=MAX_CHARGE_SOC_RANGE[1])


class _MinDischargeSocParams(_WireModel):
    min_soc: WholeNumber = Field(..., ge=MIN_DISCHARGE_SOC_RANGE[0], le=MIN_DISCHARGE_SOC_RANGE[1])


class _NotificationParams(_WireModel):
    message: str = Field(..., min_length=1, description="Template; {device}, {soc}, {rule}... are substituted")
    channel: Optional[str] = Field(None, description="Channel override, default channel if unset")


class SetAcOutputModel(_WireModel):
    type: Literal["setAcOutput"]
    params: _EnabledParams


class SetDcOutputModel(_WireModel):
    type: Literal["setDcOutput"]
    params: _EnabledParams


class SetChargingPowerModel(_WireModel):
    type: Literal["setChargingPower"]
    params: _ChargingPowerParams


class SetMaxChargeSocModel(_WireModel):
    type: Literal["setMaxChargeSoc"]
    params: _MaxChargeSocParams


class SetMinDischargeSocModel(_WireModel):
    type: Literal["setMinDischargeSoc"]
    params: _MinDischargeSocParams


class SendNotificationModel(_WireModel):
    # sendSlackNotification is the legacy tag, normalised on conversion
    type: Literal["sendNotification", "sendSlackNotification"]
    params: _NotificationParams


RuleActionModel = Annotated[
    Union[
        SetAcOutputModel,
        SetDcOutputModel,
        SetChargingPowerModel,
        SetMaxChargeSocModel,
        SetMinDischargeSocModel,
        SendNotificationModel,
    ],
    Field(discriminator="type"),
]

_ACTIONS_ADAPTER = TypeAdapter(Annotated[List[RuleActionModel], Field(min_length=1)])


def _actions_to_domain(models: List[BaseModel]) -> List[RuleAction]:
    return [action_from_dict(m.model_dump(by_alias=True)) for m in models]


# ============================================================================
# RULE DTOs
# ============================================================================

class CreateAutomationRuleDto(_WireModel):
    """Request to create a new automation rule."""
    name: str = Field(..., min_length=1, description="Rule name shown in the dashboard")
    description: Optional[str] = Field(None, description="Free-form description")
    device_id: Optional[int] = Field(None, description="Scoped device id; None applies to all devices")
    enabled: bool = Field(True, description="Whether the rule is active")
    conditions: ConditionGroupModel
    actions: List[RuleActionModel] = Field(..., min_length=1)
    cooldown_seconds: int = Field(DEFAULT_COOLDOWN_SECONDS, ge=0, description="Seconds between re-fires per device")
    priority: int = Field(DEFAULT_PRIORITY, description="Higher runs first within a tick")

    def to_conditions(self) -> ConditionGroup:
        return self.conditions.to_domain()

    def to_actions(self) -> List[RuleAction]:
        return _actions_to_domain(self.actions)


# description and device_id may be cleared with an explicit null
_NULLABLE_UPDATES = ("description", "device_id")


class UpdateAutomationRuleDto(_WireModel):
    """Partial update; only explicitly supplied fields are applied."""
    name: Optional[Annotated[str, Field(min_length=1)]] = None
    description: Optional[str] = None
    device_id: Optional[int] = None
    enabled: Optional[bool] = None
    conditions: Optional[ConditionGroupModel] = None
    actions: Optional[Annotated[List[RuleActionModel], Field(min_length=1)]] = None
    cooldown_seconds: Optional[Annotated[int, Field(ge=0)]] = None
    priority: Optional[int] = None

    def changes(self) -> Dict[str, Any]:
        """Return {attribute: domain value} for every field the caller set."""
        updates: Dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if value is None and name not in _NULLABLE_UPDATES:
                continue
            if name == "conditions":
                value = self.conditions.to_domain()
            elif name == "actions":
                value = _actions_to_domain(self.actions)
            updates[name] = value
        return updates


# ============================================================================
# ENTRY POINTS
# ============================================================================

def _flatten_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
        for err in exc.errors()
    ]


def validate_rule_payload(data: Any) -> CreateAutomationRuleDto:
    """Validate a create request; raises RuleValidationError."""
    try:
        return CreateAutomationRuleDto.model_validate(data)
    except ValidationError as e:
        errors = _flatten_errors(e)
        logger.debug(f"Rejected rule payload: {errors}")
        raise RuleValidationError("Invalid rule definition", errors) from e


def validate_update_payload(data: Any) -> UpdateAutomationRuleDto:
    try:
        return UpdateAutomationRuleDto.model_validate(data)
    except ValidationError as e:
        raise RuleValidationError("Invalid rule update", _flatten_errors(e)) from e


def validate_conditions(data: Any) -> ConditionGroup:
    """Validate a condition tree and return its domain form."""
    try:
        return ConditionGroupModel.model_validate(data).to_domain()
    except ValidationError as e:
        raise RuleValidationError("Invalid conditions format", _flatten_errors(e)) from e


def validate_actions(data: Any) -> List[RuleAction]:
    """Validate a non-empty action list and return its domain form."""
    try:
        return _actions_to_domain(_ACTIONS_ADAPTER.validate_python(data))
    except ValidationError as e:
        raise RuleValidationError("Invalid actions format", _flatten_errors(e)) from e
