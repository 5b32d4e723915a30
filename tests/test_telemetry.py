"""Tests for raw telemetry mapping and the previous-snapshot cache."""

from power_automation.models import DeviceMetrics
from power_automation.telemetry import SnapshotCache, build_device_metrics


class TestBuildDeviceMetrics:
    def test_maps_vendor_keys(self):
        raw = {
            "pd.soc": 64,
            "bmsMaster.soc": 60,
            "bmsMaster.temp": 28,
            "inv.inputWatts": 400,
            "mppt.inWatts": 150,
            "inv.outputWatts": 220,
            "mppt.outWatts": 30,
            "bmsMaster.errCode": 0,
            "inv.errCode": 0,
            "mppt.faultCode": 0,
        }
        metrics = build_device_metrics(3, "SN3", True, raw)

        assert metrics.device_id == 3
        assert metrics.serial_number == "SN3"
        assert metrics.soc == 64
        assert metrics.temperature == 28
        assert metrics.ac_input_watts == 400
        assert metrics.solar_input_watts == 150
        assert metrics.total_input_watts == 550
        assert metrics.total_output_watts == 250
        assert metrics.has_error is False
        assert metrics.error_codes == ()

    def test_fallback_keys(self):
        metrics = build_device_metrics(1, "SN1", True, {"bmsMaster.soc": 42, "pd.pv2DcChgPowerTemp": 35})
        assert metrics.soc == 42
        assert metrics.temperature == 35

    def test_error_codes_collected(self):
        metrics = build_device_metrics(1, "SN1", True, {"inv.errCode": 0, "mppt.faultCode": 17, "bmsMaster.errCode": 5})
        assert metrics.has_error is True
        assert metrics.error_codes == (5, 17)

    def test_missing_payload(self):
        metrics = build_device_metrics(1, "SN1", False, None)
        assert metrics.online is False
        assert metrics.soc == 0
        assert metrics.total_output_watts == 0


def snapshot(serial, soc=50):
    return DeviceMetrics(device_id=1, serial_number=serial, online=True, soc=soc)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestSnapshotCache:
    def test_latest_snapshot_per_serial(self):
        cache = SnapshotCache()
        cache.put(snapshot("A", soc=10))
        cache.put(snapshot("A", soc=20))
        cache.put(snapshot("B", soc=30))

        assert cache.get("A").soc == 20
        assert cache.get("B").soc == 30
        assert cache.get("C") is None

    def test_entries_expire(self):
        clock = FakeClock()
        cache = SnapshotCache(ttl_seconds=60, clock=clock)
        cache.put(snapshot("A"))

        clock.now = 60
        assert cache.get("A") is not None
        clock.now = 61
        assert cache.get("A") is None
        assert len(cache) == 0

    def test_evicts_oldest_write(self):
        cache = SnapshotCache(max_entries=2)
        cache.put(snapshot("A"))
        cache.put(snapshot("B"))
        cache.put(snapshot("A", soc=99))
        cache.put(snapshot("C"))

        assert cache.get("B") is None
        assert cache.get("A").soc == 99
        assert cache.get("C") is not None

    def test_invalidate_and_clear(self):
        cache = SnapshotCache()
        cache.put(snapshot("A"))
        cache.put(snapshot("B"))
        cache.invalidate("A")
        assert cache.get("A") is None
        cache.clear()
        assert len(cache) == 0

    def test_stats(self):
        cache = SnapshotCache(ttl_seconds=120, max_entries=8)
        cache.put(snapshot("A"))
        cache.put(snapshot("B"))
        assert cache.stats() == {"entries": 2, "max_entries": 8, "ttl_seconds": 120}
