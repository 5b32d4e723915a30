"""
Telemetry helpers: raw vendor payload -> DeviceMetrics, and the
previous-snapshot cache used for edge-triggered events.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from power_automation.models import DeviceMetrics

logger = logging.getLogger("automation.telemetry")

DEFAULT_SNAPSHOT_TTL = 3600
DEFAULT_SNAPSHOT_MAX_DEVICES = 256

# Raw keys reporting fault codes, 0 meaning healthy
ERROR_CODE_KEYS = ("bmsMaster.errCode", "inv.errCode", "mppt.faultCode")


def _first_number(raw: Mapping[str, Any], *keys: str) -> float:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return value
    return 0


def build_device_metrics(device_id: int, serial: str, online: bool,
                         raw: Optional[Mapping[str, Any]]) -> DeviceMetrics:
    """
    Map a flat vendor quota payload (``{"pd.soc": 80, "inv.inputWatts": 0, ...}``)
    onto the metric fields rules are written against. Missing keys read as 0.
    """
    raw = raw or {}

    ac_input = _first_number(raw, "inv.inputWatts")
    solar_input = _first_number(raw, "mppt.inWatts")
    ac_output = _first_number(raw, "inv.outputWatts")
    dc_output = _first_number(raw, "mppt.outWatts")

    error_codes: List[int] = []
    for key in ERROR_CODE_KEYS:
        code = raw.get(key)
        if isinstance(code, int) and not isinstance(code, bool) and code != 0:
            error_codes.append(code)

    return DeviceMetrics(
        device_id=device_id,
        serial_number=serial,
        online=bool(online),
        soc=_first_number(raw, "pd.soc", "bmsMaster.soc"),
        temperature=_first_number(raw, "bmsMaster.temp", "pd.pv2DcChgPowerTemp"),
        ac_input_watts=ac_input,
        solar_input_watts=solar_input,
        ac_output_watts=ac_output,
        dc_output_watts=dc_output,
        total_input_watts=ac_input + solar_input,
        total_output_watts=ac_output + dc_output,
        has_error=bool(error_codes),
        error_codes=tuple(error_codes),
    )


class SnapshotCache:
    """
    Last DeviceMetrics per device serial.

    Bounded: entries older than ``ttl_seconds`` are treated as absent, and
    once ``max_entries`` is reached the least recently written serial is
    evicted.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_SNAPSHOT_TTL,
                 max_entries: int = DEFAULT_SNAPSHOT_MAX_DEVICES,
                 clock: Optional[Callable[[], float]] = None):
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock or time.monotonic
        self._entries: "OrderedDict[str, Tuple[float, DeviceMetrics]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, serial: str) -> Optional[DeviceMetrics]:
        with self._lock:
            item = self._entries.get(serial)
            if item is None:
                return None
            stored_at, metrics = item
            if self._clock() - stored_at > self._ttl:
                del self._entries[serial]
                logger.debug(f"Snapshot for {serial} expired")
                return None
            return metrics

    def put(self, metrics: DeviceMetrics) -> None:
        serial = metrics.serial_number
        with self._lock:
            self._entries.pop(serial, None)
            self._entries[serial] = (self._clock(), metrics)
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Snapshot cache full, evicted {evicted}")

    def invalidate(self, serial: str) -> None:
        with self._lock:
            self._entries.pop(serial, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            entries = len(self._entries)
        return {"entries": entries, "max_entries": self._max_entries, "ttl_seconds": self._ttl}
