"""Fake capture, radio and model collaborators shared by the presence tests."""

import datetime
import threading
from typing import Callable, Optional

import numpy as np
import pytest

from presence.types import (
    EMBEDDING_DIMENSION,
    BeaconReading,
    ChallengeType,
    FaceEmbedding,
    LivenessCheckResult,
)

BASE_TIME = datetime.datetime(2024, 9, 2, 9, 0, tzinfo=datetime.timezone.utc)


class FakeRadio:
    def __init__(self, granted: bool = True) -> None:
        self.granted = granted
        self.permission_requests = 0
        self.started = 0
        self.stopped: list[object] = []
        self._callback: Optional[Callable[[BeaconReading], None]] = None

    async def request_permission(self) -> bool:
        self.permission_requests += 1
        return self.granted

    def start_scan(self, on_reading):
        self.started += 1
        self._callback = on_reading
        return f"scan-{self.started}"

    def stop_scan(self, handle) -> None:
        self.stopped.append(handle)
        self._callback = None

    def emit(self, beacon_id: str, rssi: int, observed_at=None) -> None:
        reading = BeaconReading(beacon_id, rssi, observed_at or BASE_TIME)
        if self._callback is not None:
            self._callback(reading)

    def emit_from_thread(self, beacon_id: str, rssi: int) -> None:
        thread = threading.Thread(target=self.emit, args=(beacon_id, rssi))
        thread.start()
        thread.join()


class FakeCamera:
    """Frame source that cycles through ``frames`` and counts lifecycle calls."""

    def __init__(self, frames=None, *, start_result=True, size=(64, 64), fail_frames=False):
        if frames is None:
            frames = [np.full((64, 64), 120, dtype=np.uint8)]
        self.frames = list(frames)
        self.start_result = start_result
        self.size = size
        self.fail_frames = fail_frames
        self.start_calls = 0
        self.stop_calls = 0
        self.captured = 0

    def start_capture(self) -> bool:
        self.start_calls += 1
        return self.start_result

    def stop_capture(self) -> None:
        self.stop_calls += 1

    def capture_frame(self):
        if self.fail_frames:
            return None
        frame = self.frames[self.captured % len(self.frames)]
        self.captured += 1
        return frame

    @property
    def frame_size(self):
        return self.size


class ScriptedChecker:
    """Liveness checker returning preset ``(passed, confidence)`` per challenge."""

    def __init__(self, results=None):
        defaults = {challenge: (True, 1.0) for challenge in ChallengeType}
        defaults.update(results or {})
        self.results = defaults
        self.calls: list[tuple[ChallengeType, int]] = []

    def check(self, challenge, frames):
        self.calls.append((challenge, len(frames)))
        passed, confidence = self.results[challenge]
        return LivenessCheckResult(challenge, passed, confidence, frames_analyzed=len(frames))


class FixedModel:
    def __init__(self, embedding: Optional[FaceEmbedding] = None, error: Optional[Exception] = None):
        self.embedding = embedding
        self.error = error
        self.calls = 0

    def embed(self, frame):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.embedding


def make_embedding(seed: int = 1, confidence: float = 0.95) -> FaceEmbedding:
    rng = np.random.default_rng(seed)
    return FaceEmbedding(rng.normal(size=EMBEDDING_DIMENSION), confidence, BASE_TIME)


@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def radio():
    return FakeRadio()


@pytest.fixture
def denied_radio():
    return FakeRadio(granted=False)


@pytest.fixture
def camera_factory():
    return FakeCamera


@pytest.fixture
def camera():
    return FakeCamera()


@pytest.fixture
def checker_factory():
    return ScriptedChecker


@pytest.fixture
def live_checker():
    return ScriptedChecker()


@pytest.fixture
def embedding_factory():
    return make_embedding


@pytest.fixture
def model():
    return FixedModel(make_embedding(1))


@pytest.fixture
def model_factory():
    return FixedModel


class ManualClock:
    """Deterministic clock for fusion and session tests."""

    def __init__(self, start: datetime.datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> datetime.datetime:
        self.now = self.now + datetime.timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def radio_factory():
    return FakeRadio
