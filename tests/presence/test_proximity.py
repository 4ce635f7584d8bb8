"""Tests for distance estimation and the proximity scanner state machine."""

from __future__ import annotations

import asyncio

import pytest

from presence.errors import PermissionDenied, PresenceTimeout, SourceNotReady
from presence.proximity import (
    ProximityCalibration,
    ProximityScanner,
    ReadingBuffer,
    estimate_distance,
    estimate_proximity,
)
from presence.types import BeaconReading, ScannerState

BEACON = "room-101"


def _scanner(radio, **kwargs) -> ProximityScanner:
    kwargs.setdefault("scan_interval", 60.0)
    return ProximityScanner(
        radio, BEACON, ProximityCalibration(range_threshold_meters=15.0), **kwargs
    )


def test_distance_follows_log_distance_model():
    calibration = ProximityCalibration(tx_power=-59, path_loss_exponent=2)

    assert estimate_distance(-59, calibration) == pytest.approx(1.0)
    assert estimate_distance(-73, calibration) == pytest.approx(10**0.7, rel=1e-9)
    assert estimate_distance(-45, calibration) == pytest.approx(10**-0.7, rel=1e-9)


def test_estimate_in_range_against_threshold(base_time):
    calibration = ProximityCalibration(range_threshold_meters=15.0)

    near = estimate_proximity(BeaconReading(BEACON, -45, base_time), calibration)
    mid = estimate_proximity(BeaconReading(BEACON, -73, base_time), calibration)
    far = estimate_proximity(BeaconReading(BEACON, -95, base_time), calibration)

    assert near.in_range and mid.in_range
    assert mid.distance_meters == pytest.approx(5.01, abs=0.01)
    assert not far.in_range
    assert far.beacon_id == BEACON and far.rssi == -95


def test_distance_strictly_decreasing_in_rssi():
    calibration = ProximityCalibration(tx_power=-62, path_loss_exponent=2.7)
    distances = [estimate_distance(rssi, calibration) for rssi in range(-100, -29)]

    assert all(a > b for a, b in zip(distances, distances[1:]))
    assert all(d > 0 for d in distances)


def test_estimate_is_pure(base_time):
    calibration = ProximityCalibration()
    reading = BeaconReading(BEACON, -67, base_time)

    assert estimate_proximity(reading, calibration) == estimate_proximity(reading, calibration)


@pytest.mark.parametrize(
    "kwargs", [{"path_loss_exponent": 0}, {"range_threshold_meters": -1}]
)
def test_calibration_rejects_invalid_constants(kwargs):
    with pytest.raises(ValueError):
        ProximityCalibration(**kwargs)


def test_reading_buffer_keeps_latest_per_beacon_and_evicts_oldest(base_time):
    buffer = ReadingBuffer(capacity=2)
    buffer.record(BeaconReading("a", -60, base_time))
    buffer.record(BeaconReading("b", -61, base_time))
    buffer.record(BeaconReading("a", -50, base_time))
    buffer.record(BeaconReading("c", -62, base_time))

    assert len(buffer) == 2
    assert buffer.latest("b") is None
    assert buffer.latest("a").rssi == -50
    assert [r.beacon_id for r in buffer.snapshot()] == ["a", "c"]


def test_permission_refusal_raises_and_never_scans(denied_radio):
    scanner = _scanner(denied_radio)

    async def scenario():
        with pytest.raises(PermissionDenied) as excinfo:
            await scanner.start()
        return excinfo.value

    error = asyncio.run(scenario())

    assert error.resource == "radio"
    assert scanner.permission_denied
    assert scanner.state == ScannerState.DISCONNECTED
    assert denied_radio.started == 0
    assert not scanner.is_scanning


def test_in_range_reading_connects_and_silence_disconnects(radio):
    scanner = _scanner(radio)

    async def scenario():
        await scanner.start()
        assert scanner.state == ScannerState.SCANNING
        radio.emit(BEACON, -45)
        await asyncio.sleep(0)
        assert scanner.state == ScannerState.CONNECTED

        assert not scanner.check_staleness(now=scanner.last_seen + 1.0)
        assert scanner.check_staleness(now=scanner.last_seen + 1000.0)
        assert scanner.state == ScannerState.DISCONNECTED
        await scanner.stop()

    asyncio.run(scenario())


def test_out_of_range_and_foreign_readings_do_not_connect(radio):
    scanner = _scanner(radio)

    async def scenario():
        await scanner.start()
        radio.emit(BEACON, -100)
        radio.emit("other-room", -40)
        await asyncio.sleep(0)
        state = scanner.state
        await scanner.stop()
        return state

    assert asyncio.run(scenario()) == ScannerState.SCANNING
    assert {r.beacon_id for r in scanner.readings()} == {BEACON, "other-room"}
    assert scanner.latest_estimate.beacon_id == BEACON


def test_latest_and_range_queries(radio):
    scanner = _scanner(radio)

    async def scenario():
        await scanner.start()
        radio.emit(BEACON, -73)
        radio.emit("hallway", -95)
        await asyncio.sleep(0)
        await scanner.stop()

    asyncio.run(scenario())

    assert scanner.latest().distance_meters == pytest.approx(5.01, abs=0.01)
    assert scanner.is_beacon_in_range()
    assert not scanner.is_beacon_in_range(max_distance=2.0)
    assert not scanner.is_beacon_in_range("hallway")
    assert scanner.latest("unknown") is None


def test_stop_releases_scan_handle(radio):
    scanner = _scanner(radio)

    async def scenario():
        await scanner.start()
        await scanner.stop()

    asyncio.run(scenario())

    assert radio.stopped == ["scan-1"]
    assert scanner.state == ScannerState.DISCONNECTED
    assert not scanner.is_scanning


def test_readings_from_worker_threads_reach_subscribers(radio):
    scanner = _scanner(radio)

    async def scenario():
        await scanner.start()
        stream = scanner.subscribe()
        radio.emit_from_thread(BEACON, -50)
        estimate = await stream.next(timeout=1.0)
        await scanner.stop()
        remaining = [item async for item in stream]
        return estimate, remaining

    estimate, remaining = asyncio.run(scenario())

    assert estimate.beacon_id == BEACON
    assert estimate.in_range
    assert remaining == []


def test_wait_until_in_range_times_out(radio):
    scanner = _scanner(radio)

    async def scenario():
        await scanner.start()
        try:
            await scanner.wait_until_in_range(timeout=0.05)
        finally:
            await scanner.stop()

    with pytest.raises(PresenceTimeout):
        asyncio.run(scenario())


def test_wait_until_in_range_returns_first_in_range_estimate(radio):
    scanner = _scanner(radio)

    async def scenario():
        await scanner.start()
        waiter = asyncio.create_task(scanner.wait_until_in_range(timeout=1.0))
        await asyncio.sleep(0)
        radio.emit(BEACON, -100)
        radio.emit(BEACON, -60)
        result = await waiter
        await scanner.stop()
        return result

    estimate = asyncio.run(scenario())

    assert estimate.rssi == -60


def test_wait_until_in_range_requires_running_scanner(radio):
    scanner = _scanner(radio)

    with pytest.raises(SourceNotReady):
        asyncio.run(scanner.wait_until_in_range(timeout=0.1))


def test_scanner_can_restart_after_stop(radio):
    scanner = _scanner(radio)

    async def scenario():
        await scanner.start()
        await scanner.stop()
        await scanner.start()
        stream = scanner.subscribe()
        radio.emit(BEACON, -50)
        estimate = await stream.next(timeout=1.0)
        await scanner.stop()
        return estimate

    assert asyncio.run(scenario()).in_range
    assert radio.stopped == ["scan-1", "scan-2"]
