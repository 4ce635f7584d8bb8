"""Tests for the presence monitoring instrumentation."""

from __future__ import annotations

from django.test import TestCase, override_settings

from presence import monitoring


class MonitoringInstrumentationTests(TestCase):
    """Ensure monitoring helpers capture health signals as expected."""

    def setUp(self) -> None:
        monitoring.reset_for_tests()
        return super().setUp()

    def test_camera_start_and_stop_state(self) -> None:
        monitoring.record_camera_start(success=True, latency=0.25)
        snapshot = monitoring.get_health_snapshot()
        self.assertTrue(snapshot["camera"]["running"])
        self.assertEqual(snapshot["camera"]["last_start"]["status"], "success")
        self.assertEqual(snapshot["metrics"]["camera_start"]["success"], 1.0)

        monitoring.record_camera_stop(success=True)
        snapshot = monitoring.get_health_snapshot()
        self.assertFalse(snapshot["camera"]["running"])
        self.assertEqual(snapshot["metrics"]["camera_stop"]["success"], 1.0)

    def test_camera_start_failure_raises_alert(self) -> None:
        monitoring.record_camera_start(success=False, latency=0.1, error="denied")
        snapshot = monitoring.get_health_snapshot()
        self.assertEqual(snapshot["camera"]["last_error"], "denied")
        self.assertIn("camera_start_failure", {alert["type"] for alert in snapshot["alerts"]})

    @override_settings(PRESENCE_STAGE_ALERT_SECONDS=0.01)
    def test_stage_duration_alert_when_threshold_exceeded(self) -> None:
        monitoring.observe_stage_duration("liveness_checking", 0.05)
        snapshot = monitoring.get_health_snapshot()
        stages = [alert["data"].get("stage") for alert in snapshot["alerts"]]
        self.assertIn("liveness_checking", stages)
        self.assertEqual(snapshot["stages"]["liveness_checking"]["last_duration"], 0.05)

    @override_settings(PRESENCE_HEALTH_ALERT_HISTORY=2)
    def test_alert_history_is_bounded(self) -> None:
        for stage in ("capturing", "liveness_checking", "embedding_generation"):
            monitoring.record_pipeline_outcome("verification", "failed", failed_stage=stage)
        alerts = monitoring.get_health_snapshot()["alerts"]
        self.assertEqual([a["data"]["stage"] for a in alerts], ["liveness_checking", "embedding_generation"])

    def test_scanner_and_proximity_signals_exported(self) -> None:
        monitoring.record_scanner_state("connected")
        monitoring.record_proximity_reading(3.2, True)
        monitoring.record_fusion_action("proximity", "created")

        snapshot = monitoring.get_health_snapshot()
        self.assertEqual(snapshot["scanner"]["state"], "connected")
        self.assertIsNotNone(snapshot["scanner"]["last_reading_timestamp"])

        exported = monitoring.export_metrics().decode()
        self.assertIn('presence_proximity_readings_total{in_range="true"} 1.0', exported)
        self.assertIn(
            'presence_fusion_actions_total{operation="proximity",action="created"} 1.0', exported
        )
        self.assertTrue(monitoring.prometheus_content_type().startswith("text/plain"))

    def test_unknown_threshold_key_raises(self) -> None:
        with self.assertRaises(KeyError):
            monitoring.get_threshold("unknown")
        self.assertEqual(set(monitoring.get_alert_thresholds()), {"camera_start", "stage"})
