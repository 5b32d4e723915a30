"""Shared fixtures: metrics factory and fake device/notification transports."""

import asyncio

import pytest

from power_automation.models import DeviceMetrics


def _metrics(device_id=1, serial="R331ZEB4ZE000001", online=True, **values):
    return DeviceMetrics(device_id=device_id, serial_number=serial, online=online, **values)


@pytest.fixture
def make_metrics():
    """Factory for DeviceMetrics snapshots with sensible identity defaults."""
    return _metrics


class RecordingController:
    """Device controller that records every command it receives."""

    def __init__(self):
        self.calls = []

    async def set_ac_output(self, serial, enabled):
        self.calls.append(("set_ac_output", serial, enabled))
        return {"success": True}

    async def set_dc_output(self, serial, enabled):
        self.calls.append(("set_dc_output", serial, enabled))
        return {"success": True}

    async def set_charging_power(self, serial, watts):
        self.calls.append(("set_charging_power", serial, watts))

    async def set_max_charge_soc(self, serial, max_soc):
        self.calls.append(("set_max_charge_soc", serial, max_soc))

    async def set_min_discharge_soc(self, serial, min_soc):
        self.calls.append(("set_min_discharge_soc", serial, min_soc))


class FailingController(RecordingController):
    """AC output raises, DC output is rejected by the device."""

    async def set_ac_output(self, serial, enabled):
        self.calls.append(("set_ac_output", serial, enabled))
        raise ConnectionError("Device unreachable")

    async def set_dc_output(self, serial, enabled):
        self.calls.append(("set_dc_output", serial, enabled))
        return {"success": False, "error": "Command rejected by device"}


class SlowController(RecordingController):

    async def set_charging_power(self, serial, watts):
        self.calls.append(("set_charging_power", serial, watts))
        await asyncio.sleep(5)


class RecordingNotifier:

    def __init__(self):
        self.sent = []

    async def send(self, message, channel=None):
        self.sent.append((message, channel))
        return {"success": True}


@pytest.fixture
def controller():
    return RecordingController()


@pytest.fixture
def failing_controller():
    return FailingController()


@pytest.fixture
def slow_controller():
    return SlowController()


@pytest.fixture
def notifier():
    return RecordingNotifier()
