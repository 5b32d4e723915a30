"""Tests for ordered action execution and failure accounting."""

import pytest

from power_automation.actions import ActionExecutor, describe_action, render_template
from power_automation.models import (
    SendNotificationAction,
    SetAcOutputAction,
    SetChargingPowerAction,
    SetDcOutputAction,
    SetMaxChargeSocAction,
    SetMinDischargeSocAction,
)


class TestRenderTemplate:
    def test_placeholders(self, make_metrics):
        metrics = make_metrics(serial="SN1", soc=18, temperature=31, ac_input_watts=0,
                               solar_input_watts=240, ac_output_watts=100, dc_output_watts=20,
                               total_input_watts=240, total_output_watts=120)
        message = render_template(
            "{rule}: {device} {soc}% {temperature}C in={acInput}/{solarInput} "
            "out={acOutput}/{dcOutput} total={totalInput}/{totalOutput} {online}",
            metrics, "Low battery",
        )
        assert message == "Low battery: SN1 18% 31C in=0/240 out=100/20 total=240/120 Online"

    def test_repeated_and_unknown_placeholders(self, make_metrics):
        metrics = make_metrics(serial="SN1", online=False)
        assert render_template("{device} {device} {unknown} {online}", metrics, "r") == "SN1 SN1 {unknown} Offline"


class TestDescribeAction:
    @pytest.mark.parametrize("action,name", [
        (SetAcOutputAction(enabled=True), "Set AC Output: ON"),
        (SetDcOutputAction(enabled=False), "Set DC Output: OFF"),
        (SetChargingPowerAction(watts=1200), "Set Charging Power: 1200W"),
        (SetMaxChargeSocAction(max_soc=90), "Set Max Charge SOC: 90%"),
        (SetMinDischargeSocAction(min_soc=10), "Set Min Discharge SOC: 10%"),
        (SendNotificationAction(message="x"), "Send Notification"),
    ])
    def test_names(self, action, name):
        assert describe_action(action) == name


class TestExecute:
    @pytest.mark.asyncio
    async def test_runs_in_declared_order(self, controller, notifier, make_metrics):
        executor = ActionExecutor(controller=controller, notifier=notifier)
        actions = [
            SetChargingPowerAction(watts=1200),
            SetMaxChargeSocAction(max_soc=90),
            SetMinDischargeSocAction(min_soc=10),
            SetAcOutputAction(enabled=True),
        ]

        results = await executor.execute(actions, make_metrics(serial="SN1"), "r")

        assert [r.success for r in results] == [True] * 4
        assert controller.calls == [
            ("set_charging_power", "SN1", 1200),
            ("set_max_charge_soc", "SN1", 90),
            ("set_min_discharge_soc", "SN1", 10),
            ("set_ac_output", "SN1", True),
        ]
        assert results[0].response == {"watts": 1200}
        assert results[1].response == {"maxSoc": 90}

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_later_actions(self, failing_controller, notifier, make_metrics):
        executor = ActionExecutor(controller=failing_controller, notifier=notifier)
        actions = [SetAcOutputAction(enabled=False), SendNotificationAction(message="{device} low")]

        results = await executor.execute(actions, make_metrics(serial="SN1"), "r")

        assert results[0].success is False
        assert results[0].error == "Device unreachable"
        assert results[1].success is True
        assert notifier.sent == [("SN1 low", None)]

        success, error = ActionExecutor.summarize(results)
        assert success is False
        assert error == "Device unreachable"

    @pytest.mark.asyncio
    async def test_rejected_response_is_failure(self, failing_controller, make_metrics):
        executor = ActionExecutor(controller=failing_controller)
        results = await executor.execute([SetDcOutputAction(enabled=True)], make_metrics(), "r")
        assert results[0].success is False
        assert results[0].error == "Command rejected by device"

    @pytest.mark.asyncio
    async def test_first_error_wins(self, failing_controller, make_metrics):
        executor = ActionExecutor(controller=failing_controller)
        results = await executor.execute(
            [SetDcOutputAction(enabled=True), SetAcOutputAction(enabled=True)], make_metrics(), "r"
        )
        assert ActionExecutor.summarize(results) == (False, "Command rejected by device")

    @pytest.mark.asyncio
    async def test_timeout_recorded_as_failure(self, slow_controller, notifier, make_metrics):
        executor = ActionExecutor(controller=slow_controller, notifier=notifier, timeout=0.05)
        results = await executor.execute(
            [SetChargingPowerAction(watts=500), SendNotificationAction(message="after")], make_metrics(), "r"
        )
        assert results[0].success is False
        assert results[0].error == "Action timed out after 0.05s"
        assert results[1].success is True

    @pytest.mark.asyncio
    async def test_missing_transports(self, make_metrics):
        executor = ActionExecutor()
        results = await executor.execute(
            [SetAcOutputAction(enabled=True), SendNotificationAction(message="x")], make_metrics(), "r"
        )
        assert [r.error for r in results] == ["No device controller configured", "No notifier configured"]

    @pytest.mark.asyncio
    async def test_channel_override_and_default(self, notifier, make_metrics):
        executor = ActionExecutor(notifier=notifier, default_channel="#power")
        await executor.execute(
            [SendNotificationAction(message="a", channel="#ops"), SendNotificationAction(message="b")],
            make_metrics(), "r",
        )
        assert notifier.sent == [("a", "#ops"), ("b", "#power")]

    @pytest.mark.asyncio
    async def test_result_dict(self, controller, make_metrics):
        executor = ActionExecutor(controller=controller)
        results = await executor.execute([SetAcOutputAction(enabled=True)], make_metrics(), "r")
        assert results[0].to_dict() == {
            "type": "setAcOutput",
            "params": {"enabled": True},
            "success": True,
            "response": {"enabled": True},
        }

    def test_summarize_all_success(self):
        assert ActionExecutor.summarize([]) == (True, None)
