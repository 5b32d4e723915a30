"""
Action Executor - Device commands and notifications for fired rules
===================================================================
Runs a rule's actions strictly in declared order. Every action is
attempted even when an earlier one failed: these are physical device
commands and notifications, there is nothing to roll back.

Transports are supplied by the caller:
    DeviceController  -> set_ac_output / set_dc_output / set_charging_power /
                         set_max_charge_soc / set_min_discharge_soc
    Notifier          -> send(message, channel)

Each action kind is served by a handler registered with @register_action.
Per-action failures (exceptions, timeouts, {"success": False} responses)
are captured in ActionResult and never raised.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from power_automation.models import (
    ActionResult,
    DeviceMetrics,
    RuleAction,
    SendNotificationAction,
    SetAcOutputAction,
    SetChargingPowerAction,
    SetDcOutputAction,
    SetMaxChargeSocAction,
    SetMinDischargeSocAction,
)

logger = logging.getLogger("automation.actions")

DEFAULT_ACTION_TIMEOUT = 10.0


class DeviceController(Protocol):
    """Device-command transport (vendor cloud API)."""

    async def set_ac_output(self, serial: str, enabled: bool) -> Any: ...

    async def set_dc_output(self, serial: str, enabled: bool) -> Any: ...

    async def set_charging_power(self, serial: str, watts: int) -> Any: ...

    async def set_max_charge_soc(self, serial: str, max_soc: int) -> Any: ...

    async def set_min_discharge_soc(self, serial: str, min_soc: int) -> Any: ...


class Notifier(Protocol):
    """Notification transport (e.g. a Slack webhook sender)."""

    async def send(self, message: str, channel: Optional[str] = None) -> Any: ...


class ActionFailure(Exception):
    """A transport reported failure without raising."""


# ============================================================================
# TEMPLATES
# ============================================================================

def render_template(template: str, metrics: DeviceMetrics, rule_name: str) -> str:
    """Substitute {device}, {soc}, {temperature}, ... placeholders."""
    replacements = {
        "{device}": metrics.serial_number,
        "{soc}": str(metrics.soc),
        "{temperature}": str(metrics.temperature),
        "{acInput}": str(metrics.ac_input_watts),
        "{solarInput}": str(metrics.solar_input_watts),
        "{acOutput}": str(metrics.ac_output_watts),
        "{dcOutput}": str(metrics.dc_output_watts),
        "{totalInput}": str(metrics.total_input_watts),
        "{totalOutput}": str(metrics.total_output_watts),
        "{rule}": rule_name,
        "{online}": "Online" if metrics.online else "Offline",
    }
    message = template
    for placeholder, value in replacements.items():
        message = message.replace(placeholder, value)
    return message


def describe_action(action: RuleAction) -> str:
    """Human-readable action name for logs."""
    if isinstance(action, SetAcOutputAction):
        return f"Set AC Output: {'ON' if action.enabled else 'OFF'}"
    if isinstance(action, SetDcOutputAction):
        return f"Set DC Output: {'ON' if action.enabled else 'OFF'}"
    if isinstance(action, SetChargingPowerAction):
        return f"Set Charging Power: {action.watts}W"
    if isinstance(action, SetMaxChargeSocAction):
        return f"Set Max Charge SOC: {action.max_soc}%"
    if isinstance(action, SetMinDischargeSocAction):
        return f"Set Min Discharge SOC: {action.min_soc}%"
    if isinstance(action, SendNotificationAction):
        return "Send Notification"
    return "Unknown Action"


# ============================================================================
# HANDLER REGISTRY
# ============================================================================

ActionHandler = Callable[["ActionExecutor", Any, DeviceMetrics, str], Awaitable[Any]]

ACTION_HANDLERS: Dict[str, ActionHandler] = {}


def register_action(kind: str):
    """Register the coroutine that performs actions of ``kind``."""
    def decorator(func: ActionHandler) -> ActionHandler:
        ACTION_HANDLERS[kind] = func
        return func
    return decorator


@register_action(SetAcOutputAction.kind)
async def _set_ac_output(executor: "ActionExecutor", action: SetAcOutputAction,
                         metrics: DeviceMetrics, rule_name: str):
    _check_response(await executor.require_controller().set_ac_output(metrics.serial_number, action.enabled))
    return {"enabled": action.enabled}


@register_action(SetDcOutputAction.kind)
async def _set_dc_output(executor: "ActionExecutor", action: SetDcOutputAction,
                         metrics: DeviceMetrics, rule_name: str):
    _check_response(await executor.require_controller().set_dc_output(metrics.serial_number, action.enabled))
    return {"enabled": action.enabled}


@register_action(SetChargingPowerAction.kind)
async def _set_charging_power(executor: "ActionExecutor", action: SetChargingPowerAction,
                              metrics: DeviceMetrics, rule_name: str):
    _check_response(await executor.require_controller().set_charging_power(metrics.serial_number, action.watts))
    return {"watts": action.watts}


@register_action(SetMaxChargeSocAction.kind)
async def _set_max_charge_soc(executor: "ActionExecutor", action: SetMaxChargeSocAction,
                              metrics: DeviceMetrics, rule_name: str):
    _check_response(await executor.require_controller().set_max_charge_soc(metrics.serial_number, action.max_soc))
    return {"maxSoc": action.max_soc}


@register_action(SetMinDischargeSocAction.kind)
async def _set_min_discharge_soc(executor: "ActionExecutor", action: SetMinDischargeSocAction,
                                 metrics: DeviceMetrics, rule_name: str):
    _check_response(await executor.require_controller().set_min_discharge_soc(metrics.serial_number, action.min_soc))
    return {"minSoc": action.min_soc}


@register_action(SendNotificationAction.kind)
async def _send_notification(executor: "ActionExecutor", action: SendNotificationAction,
                             metrics: DeviceMetrics, rule_name: str):
    if executor.notifier is None:
        raise ActionFailure("No notifier configured")
    message = render_template(action.message, metrics, rule_name)
    channel = action.channel or executor.default_channel
    _check_response(await executor.notifier.send(message, channel))
    return {"messageSent": message}


def _check_response(response: Any) -> None:
    """
    Transports may signal failure by returning {"success": False, "error": ...}
    or a falsy value instead of raising. None counts as success (many
    commands return nothing).
    """
    if response is None:
        return
    if isinstance(response, dict):
        if response.get("success", True) is False:
            raise ActionFailure(response.get("error") or f"Command rejected: {response!r}")
        return
    if not response:
        raise ActionFailure(f"Command returned falsy: {response!r}")


# ============================================================================
# EXECUTOR
# ============================================================================

class ActionExecutor:
    """Stateless per call; holds only the transports and the timeout."""

    def __init__(self, controller: Optional[DeviceController] = None,
                 notifier: Optional[Notifier] = None,
                 timeout: Optional[float] = DEFAULT_ACTION_TIMEOUT,
                 default_channel: Optional[str] = None):
        self.controller = controller
        self.notifier = notifier
        self.timeout = timeout
        self.default_channel = default_channel

    def require_controller(self) -> DeviceController:
        if self.controller is None:
            raise ActionFailure("No device controller configured")
        return self.controller

    async def execute(self, actions: List[RuleAction], metrics: DeviceMetrics,
                      rule_name: str, timeout: Optional[float] = None) -> List[ActionResult]:
        """
        Run every action in order and report each outcome.

        Args:
            actions:   Validated actions, in declared order
            metrics:   Snapshot of the target device (serial + template values)
            rule_name: Used for {rule} and log lines
            timeout:   Per-action bound in seconds; defaults to self.timeout
        """
        timeout = self.timeout if timeout is None else timeout
        results = []

        for action in actions:
            result = await self._execute_single(action, metrics, rule_name, timeout)
            results.append(result)

            name = describe_action(action)
            if result.success:
                logger.info(f"[{rule_name}] {name} on {metrics.serial_number}: OK")
            else:
                logger.warning(f"[{rule_name}] {name} on {metrics.serial_number} failed: {result.error}")

        return results

    async def _execute_single(self, action: RuleAction, metrics: DeviceMetrics,
                              rule_name: str, timeout: Optional[float]) -> ActionResult:
        kind = getattr(action, "kind", None)
        handler = ACTION_HANDLERS.get(kind)
        if handler is None:
            return ActionResult(action=action, success=False, error=f"Unknown action type: {kind}")

        try:
            call = handler(self, action, metrics, rule_name)
            if timeout:
                response = await asyncio.wait_for(call, timeout)
            else:
                response = await call
            return ActionResult(action=action, success=True, response=response)

        except asyncio.TimeoutError:
            return ActionResult(action=action, success=False,
                                error=f"Action timed out after {timeout:g}s")
        except ActionFailure as e:
            return ActionResult(action=action, success=False, error=str(e))
        except Exception as e:
            logger.error(f"[{rule_name}] Error executing {kind} on {metrics.serial_number}: {e}",
                         exc_info=True)
            return ActionResult(action=action, success=False, error=str(e) or type(e).__name__)

    @staticmethod
    def summarize(results: List[ActionResult]) -> Tuple[bool, Optional[str]]:
        """(all succeeded, first failure's error)."""
        first_error = next((r.error for r in results if not r.success), None)
        return all(r.success for r in results), first_error
