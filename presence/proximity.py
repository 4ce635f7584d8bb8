"""Beacon proximity estimation and the scanner state machine.

Distances follow the log-distance path loss model. Only the most recent
reading per beacon is retained; readings are never averaged, so a spoofed or
fluctuating signal is not smoothed away without an explicit filter.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from . import monitoring
from .config import PresenceConfig
from .errors import PermissionDenied, PresenceTimeout, SourceNotReady
from .streams import EventBroadcaster, EventStream
from .types import BeaconReading, ProximityEstimate, ScannerState

logger = logging.getLogger(__name__)

READING_BUFFER_CAPACITY = 10


@runtime_checkable
class RadioSource(Protocol):
    """Boundary contract for a radio scanner driver.

    ``on_reading`` may be invoked from any thread.
    """

    async def request_permission(self) -> bool: ...

    def start_scan(self, on_reading: Callable[[BeaconReading], None]) -> Any: ...

    def stop_scan(self, handle: Any) -> None: ...


@dataclass(frozen=True, slots=True)
class ProximityCalibration:
    """Calibration constants for the log-distance path loss model."""

    tx_power: float = -59.0
    path_loss_exponent: float = 2.0
    range_threshold_meters: float = 10.0

    def __post_init__(self) -> None:
        if self.path_loss_exponent <= 0:
            raise ValueError("path_loss_exponent must be positive")
        if self.range_threshold_meters < 0:
            raise ValueError("range_threshold_meters must be non-negative")

    @classmethod
    def from_config(cls, config: PresenceConfig) -> "ProximityCalibration":
        return cls(
            tx_power=config.tx_power,
            path_loss_exponent=config.path_loss_exponent,
            range_threshold_meters=config.range_threshold_meters,
        )


def estimate_distance(rssi: float, calibration: ProximityCalibration) -> float:
    """Return the distance in meters for ``rssi``; strictly decreasing in ``rssi``."""

    exponent = (calibration.tx_power - rssi) / (10.0 * calibration.path_loss_exponent)
    return float(10.0**exponent)


def estimate_proximity(
    reading: BeaconReading, calibration: ProximityCalibration
) -> ProximityEstimate:
    """Derive a :class:`ProximityEstimate` from a single reading.

    Pure: identical inputs always produce identical estimates.
    """

    distance = estimate_distance(reading.rssi, calibration)
    return ProximityEstimate(
        beacon_id=reading.beacon_id,
        distance_meters=distance,
        in_range=distance <= calibration.range_threshold_meters,
        rssi=reading.rssi,
        observed_at=reading.observed_at,
    )


class ReadingBuffer:
    """Most recent reading per beacon id, bounded to ``capacity`` beacons."""

    def __init__(self, capacity: int = READING_BUFFER_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._readings: OrderedDict[str, BeaconReading] = OrderedDict()
        self._lock = threading.Lock()

    def record(self, reading: BeaconReading) -> None:
        with self._lock:
            self._readings.pop(reading.beacon_id, None)
            self._readings[reading.beacon_id] = reading
            while len(self._readings) > self.capacity:
                self._readings.popitem(last=False)

    def latest(self, beacon_id: str) -> Optional[BeaconReading]:
        with self._lock:
            return self._readings.get(beacon_id)

    def snapshot(self) -> list[BeaconReading]:
        """Readings ordered from least to most recently heard."""

        with self._lock:
            return list(self._readings.values())

    def clear(self) -> None:
        with self._lock:
            self._readings.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._readings)


class ProximityScanner:
    """Scan for one classroom beacon and track its connection state.

    ``DISCONNECTED -> SCANNING`` on :meth:`start`; ``SCANNING -> CONNECTED``
    when the configured beacon is estimated in range; ``CONNECTED ->
    DISCONNECTED`` when the beacon goes quiet for the staleness window or
    when :meth:`stop` is called.
    """

    def __init__(
        self,
        radio: RadioSource,
        beacon_id: str,
        calibration: Optional[ProximityCalibration] = None,
        *,
        scan_interval: float = 2.0,
        staleness_window: Optional[float] = None,
        buffer_capacity: int = READING_BUFFER_CAPACITY,
    ) -> None:
        if scan_interval <= 0:
            raise ValueError("scan_interval must be positive")
        self._radio = radio
        self.beacon_id = beacon_id
        self.calibration = calibration or ProximityCalibration()
        self.scan_interval = float(scan_interval)
        self.staleness_window = (
            2.0 * self.scan_interval if staleness_window is None else float(staleness_window)
        )
        self._buffer = ReadingBuffer(buffer_capacity)
        self._broadcaster: EventBroadcaster[ProximityEstimate] = EventBroadcaster()
        self._state = ScannerState.DISCONNECTED
        self._running = False
        self._permission_denied = False
        self._handle: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._watchdog: Optional[asyncio.Task[None]] = None
        self._last_seen: Optional[float] = None
        self._latest_estimate: Optional[ProximityEstimate] = None

    @classmethod
    def from_config(
        cls, radio: RadioSource, beacon_id: str, config: PresenceConfig
    ) -> "ProximityScanner":
        return cls(
            radio,
            beacon_id,
            ProximityCalibration.from_config(config),
            scan_interval=config.scan_interval_seconds,
            staleness_window=config.effective_staleness_window,
        )

    @property
    def state(self) -> ScannerState:
        return self._state

    @property
    def is_scanning(self) -> bool:
        return self._running

    @property
    def permission_denied(self) -> bool:
        return self._permission_denied

    @property
    def last_seen(self) -> Optional[float]:
        """Event loop time of the last reading for the configured beacon."""

        return self._last_seen

    @property
    def latest_estimate(self) -> Optional[ProximityEstimate]:
        return self._latest_estimate

    def _set_state(self, state: ScannerState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        monitoring.record_scanner_state(state.value)
        logger.info(
            "Proximity scanner %s -> %s",
            previous.value,
            state.value,
            extra={"event": "scanner_state", "status": state.value, "beacon_id": self.beacon_id},
        )

    async def start(self) -> None:
        """Request radio permission and begin scanning.

        A refusal raises :class:`PermissionDenied`; nothing is retried and no
        scan starts until ``start`` is called again.
        """

        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        granted = await self._radio.request_permission()
        if not granted:
            self._permission_denied = True
            self._set_state(ScannerState.DISCONNECTED)
            logger.warning(
                "Radio permission denied",
                extra={"event": "scanner_permission", "status": "denied"},
            )
            raise PermissionDenied("radio")
        self._permission_denied = False
        self._broadcaster.reopen()
        self._last_seen = None
        self._handle = self._radio.start_scan(self._on_reading)
        self._running = True
        self._set_state(ScannerState.SCANNING)
        self._watchdog = self._loop.create_task(self._watch_staleness())

    async def stop(self) -> None:
        """Stop scanning and release the radio scan handle."""

        watchdog, self._watchdog = self._watchdog, None
        self._running = False
        try:
            if watchdog is not None and watchdog is not asyncio.current_task():
                watchdog.cancel()
                try:
                    await watchdog
                except asyncio.CancelledError:
                    pass
        finally:
            handle, self._handle = self._handle, None
            try:
                if handle is not None:
                    self._radio.stop_scan(handle)
            finally:
                self._set_state(ScannerState.DISCONNECTED)
                self._broadcaster.close()

    def _on_reading(self, reading: BeaconReading) -> None:
        loop = self._loop
        if loop is None or not self._running:
            return
        try:
            loop.call_soon_threadsafe(self._handle_reading, reading)
        except RuntimeError:
            logger.debug(
                "Dropped beacon reading after event loop closed",
                extra={"event": "scanner_reading", "status": "dropped"},
            )

    def _handle_reading(self, reading: BeaconReading) -> None:
        if not self._running:
            return
        self._buffer.record(reading)
        if reading.beacon_id != self.beacon_id:
            return
        estimate = estimate_proximity(reading, self.calibration)
        self._latest_estimate = estimate
        self._last_seen = self._loop.time() if self._loop is not None else None
        monitoring.record_proximity_reading(estimate.distance_meters, estimate.in_range)
        if estimate.in_range:
            self._set_state(ScannerState.CONNECTED)
        elif self._state == ScannerState.DISCONNECTED:
            self._set_state(ScannerState.SCANNING)
        self._broadcaster.publish(estimate)

    async def _watch_staleness(self) -> None:
        while self._running:
            await asyncio.sleep(self.scan_interval)
            self.check_staleness()

    def check_staleness(self, now: Optional[float] = None) -> bool:
        """Disconnect when the beacon has been silent past the staleness window.

        Returns ``True`` when this call performed the transition.
        """

        if self._state != ScannerState.CONNECTED or self._last_seen is None:
            return False
        if now is None:
            now = self._loop.time() if self._loop is not None else self._last_seen
        if now - self._last_seen <= self.staleness_window:
            return False
        logger.info(
            "Beacon %s silent for %.2fs",
            self.beacon_id,
            now - self._last_seen,
            extra={"event": "scanner_stale", "beacon_id": self.beacon_id},
        )
        self._set_state(ScannerState.DISCONNECTED)
        return True

    def subscribe(self) -> EventStream[ProximityEstimate]:
        """Stream the configured beacon's estimates until the scanner stops."""

        return self._broadcaster.subscribe()

    async def wait_until_in_range(self, timeout: Optional[float] = None) -> ProximityEstimate:
        """Return the first in-range estimate, raising :class:`PresenceTimeout` on expiry."""

        current = self._latest_estimate
        if self._state == ScannerState.CONNECTED and current is not None and current.in_range:
            return current
        if not self._running:
            raise SourceNotReady("proximity scanner is not running", stage="proximity")

        stream = self.subscribe()
        try:
            return await asyncio.wait_for(self._first_in_range(stream), timeout)
        except asyncio.TimeoutError:
            raise PresenceTimeout("proximity", timeout) from None
        finally:
            stream.close()

    @staticmethod
    async def _first_in_range(stream: EventStream[ProximityEstimate]) -> ProximityEstimate:
        async for estimate in stream:
            if estimate.in_range:
                return estimate
        raise SourceNotReady(
            "proximity scanner stopped before the beacon came in range", stage="proximity"
        )

    def latest(self, beacon_id: Optional[str] = None) -> Optional[ProximityEstimate]:
        """Estimate derived from the most recent reading of ``beacon_id``."""

        reading = self._buffer.latest(beacon_id or self.beacon_id)
        if reading is None:
            return None
        return estimate_proximity(reading, self.calibration)

    def is_beacon_in_range(
        self, beacon_id: Optional[str] = None, max_distance: Optional[float] = None
    ) -> bool:
        estimate = self.latest(beacon_id)
        if estimate is None:
            return False
        limit = self.calibration.range_threshold_meters if max_distance is None else max_distance
        return estimate.distance_meters <= limit

    def readings(self) -> list[BeaconReading]:
        return self._buffer.snapshot()


__all__ = [
    "READING_BUFFER_CAPACITY",
    "ProximityCalibration",
    "ProximityScanner",
    "RadioSource",
    "ReadingBuffer",
    "estimate_distance",
    "estimate_proximity",
]
