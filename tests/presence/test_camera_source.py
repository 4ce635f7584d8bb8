"""Tests for the webcam capture source lifecycle."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, patch

from django.test import SimpleTestCase

import numpy as np

from presence.camera import WebcamCameraSource
from presence.pipeline import CameraSource


def _stream(read):
    stream = MagicMock()
    stream.start.return_value = stream
    stream.read.side_effect = read
    return stream


class WebcamCameraSourceTests(SimpleTestCase):
    """Ensure the webcam source opens, serves and releases the device."""

    @patch("presence.camera.VideoStream")
    def test_capture_lifecycle(self, mock_videostream):
        frame = np.zeros((48, 64, 3), dtype=np.uint8)
        stream = _stream(lambda: frame)
        mock_videostream.return_value = stream

        camera = WebcamCameraSource(warmup_time=0, ready_timeout=1.0)
        self.assertIsInstance(camera, CameraSource)
        self.assertEqual(camera.frame_size, (0, 0))

        self.assertTrue(camera.start_capture())
        self.assertTrue(camera.is_running)
        self.assertEqual(camera.frame_size, (64, 48))
        first = camera.capture_frame()
        second = camera.capture_frame()
        self.assertEqual(first.shape, (48, 64, 3))
        self.assertIsNotNone(second)

        camera.stop_capture()
        stream.stop.assert_called_once()
        self.assertFalse(camera.is_running)
        self.assertIsNone(camera.capture_frame())
        self.assertEqual(camera.frame_size, (0, 0))

    @patch("presence.camera.VideoStream")
    def test_device_without_frames_reports_refusal(self, mock_videostream):
        stream = _stream(lambda: None)
        mock_videostream.return_value = stream

        camera = WebcamCameraSource(warmup_time=0, ready_timeout=0.1)

        self.assertFalse(camera.start_capture())
        self.assertFalse(camera.is_running)
        stream.stop.assert_called_once()

    @patch("presence.camera.VideoStream")
    def test_start_is_idempotent(self, mock_videostream):
        frame = np.zeros((4, 4, 3), dtype=np.uint8)
        mock_videostream.return_value = _stream(lambda: frame)

        camera = WebcamCameraSource(warmup_time=0, ready_timeout=1.0)
        try:
            self.assertTrue(camera.start_capture())
            self.assertTrue(camera.start_capture())
            mock_videostream.assert_called_once_with(src=0)
        finally:
            camera.stop_capture()

    @patch("presence.camera.VideoStream")
    def test_stop_releases_capture_in_flight(self, mock_videostream):
        frame = np.zeros((4, 4, 3), dtype=np.uint8)
        reads = iter([frame])
        mock_videostream.return_value = _stream(lambda: next(reads, None))

        camera = WebcamCameraSource(warmup_time=0, ready_timeout=1.0, frame_timeout=30.0)
        self.assertTrue(camera.start_capture())
        self.assertIsNotNone(camera.capture_frame())

        results = []
        worker = threading.Thread(target=lambda: results.append(camera.capture_frame()))
        worker.start()
        worker.join(timeout=0.1)
        self.assertTrue(worker.is_alive())

        camera.stop_capture()
        worker.join(timeout=1.0)
        self.assertFalse(worker.is_alive())
        self.assertEqual(results, [None])

        # A fresh start serves frames from the beginning again.
        reads = iter([frame, frame])
        self.assertTrue(camera.start_capture())
        self.assertIsNotNone(camera.capture_frame())
        camera.stop_capture()
