"""Webcam capture source backed by ``imutils.video.VideoStream``."""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional, Tuple

import numpy as np
from imutils.video import VideoStream

logger = logging.getLogger(__name__)


class WebcamCameraSource:
    """Capture still frames from a local webcam.

    A background thread keeps the most recent frame; :meth:`capture_frame`
    waits for a frame newer than the last one handed out so consecutive
    liveness samples are distinct. Instances are owned by their caller;
    there is no process-wide camera.
    """

    def __init__(
        self,
        src: int = 0,
        *,
        warmup_time: float = 2.0,
        ready_timeout: float = 3.0,
        frame_timeout: float = 1.0,
    ) -> None:
        self._src = src
        self._warmup_time = max(0.0, warmup_time)
        self._ready_timeout = max(0.0, ready_timeout)
        self._frame_timeout = frame_timeout
        self._stream: Optional[VideoStream] = None
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._frame_lock = threading.Condition()
        self._latest_frame: Optional[np.ndarray] = None
        self._latest_frame_id = 0
        self._last_served_id = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def frame_size(self) -> tuple[int, int]:
        """``(width, height)`` of the latest frame, ``(0, 0)`` before any arrives."""

        with self._frame_lock:
            frame = self._latest_frame
        if frame is None:
            return (0, 0)
        height, width = frame.shape[:2]
        return (int(width), int(height))

    def start_capture(self) -> bool:
        """Open the device; returns ``False`` when it yields no frames (access refused)."""

        if self._running:
            return True

        with self._frame_lock:
            self._latest_frame = None
            self._latest_frame_id = 0
            self._last_served_id = 0
        self._stream = VideoStream(src=self._src).start()
        if self._warmup_time:
            time.sleep(self._warmup_time)

        self._running = True
        self._thread = threading.Thread(target=self._capture_loop, daemon=True)
        self._thread.start()

        frame, _ = self._wait_for_frame(0, self._ready_timeout)
        if frame is None:
            logger.warning(
                "Webcam produced no frames; treating access as refused",
                extra={"event": "camera_start", "status": "no_frames", "src": self._src},
            )
            self.stop_capture()
            return False
        return True

    def stop_capture(self) -> None:
        self._running = False
        with self._frame_lock:
            self._frame_lock.notify_all()

        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout=1.0)
            if thread.is_alive():
                logger.warning(
                    "Webcam capture thread did not stop in time",
                    extra={"event": "camera_stop", "status": "timeout"},
                )

        stream, self._stream = self._stream, None
        with self._frame_lock:
            self._latest_frame = None
            self._latest_frame_id = 0
            self._last_served_id = 0
        if stream is not None:
            stream.stop()

    def capture_frame(self) -> Optional[np.ndarray]:
        """Return the next unseen frame, or ``None`` when stopped or timed out.

        Safe to call while :meth:`stop_capture` runs on another thread: a
        worker abandoned by a timed-out caller returns ``None`` and leaves no
        state behind for the next capture.
        """

        if not self._running:
            return None
        with self._frame_lock:
            after = self._last_served_id
        frame, frame_id = self._wait_for_frame(after, self._frame_timeout)
        if frame is None:
            return None
        with self._frame_lock:
            if not self._running:
                return None
            self._last_served_id = max(self._last_served_id, frame_id)
        return frame

    def _capture_loop(self) -> None:
        while self._running and self._stream is not None:
            frame = self._stream.read()
            if frame is None:
                time.sleep(0.01)
                continue

            with self._frame_lock:
                self._latest_frame = frame.copy()
                self._latest_frame_id += 1
                self._frame_lock.notify_all()
            # Yield so readers waiting on the condition get scheduled.
            time.sleep(0.001)

    def _wait_for_frame(
        self, after_frame_id: int, timeout: Optional[float]
    ) -> Tuple[Optional[np.ndarray], int]:
        end_time = None if timeout is None else time.monotonic() + max(timeout, 0.0)

        with self._frame_lock:
            while self._running and self._latest_frame_id <= after_frame_id:
                if end_time is None:
                    self._frame_lock.wait()
                    continue
                remaining = end_time - time.monotonic()
                if remaining <= 0:
                    break
                self._frame_lock.wait(timeout=remaining)

            if self._latest_frame is None or self._latest_frame_id <= after_frame_id:
                return None, after_frame_id
            return self._latest_frame.copy(), self._latest_frame_id


__all__ = ["WebcamCameraSource"]
