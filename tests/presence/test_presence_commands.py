"""Tests for the presence management commands."""

from __future__ import annotations

import json
from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase, override_settings
from django.utils import timezone

import numpy as np
from cryptography.fernet import Fernet

from presence import models
from presence.orm_stores import OrmAttendanceStore, OrmReferenceStore, OrmSessionStore
from presence.types import (
    EMBEDDING_DIMENSION,
    AttendanceEvent,
    AttendanceRecord,
    AttendanceStatus,
    FaceEmbedding,
    Session,
    VerificationMethod,
)
from src.common.crypto import EmbeddingEncryption


class PresenceReportCommandTests(TestCase):
    def setUp(self) -> None:
        OrmSessionStore().save(Session("X", "cs101", "beacon-1", timezone.now()))
        store = OrmAttendanceStore()
        store.upsert(
            AttendanceRecord("S1", "X", AttendanceStatus.PRESENT, VerificationMethod.FACE, 600)
        )
        store.upsert(AttendanceRecord("S2", "X", AttendanceStatus.LATE, VerificationMethod.BLE))
        store.append_event(
            AttendanceEvent(
                "S1", "X", VerificationMethod.BLE, "created", AttendanceStatus.PRESENT, timezone.now()
            )
        )
        return super().setUp()

    def test_json_summary_includes_roster_absences(self) -> None:
        out = StringIO()
        call_command("presence_report", "X", "--roster=S1,S2,S3,S4", "--json", stdout=out)

        payload = json.loads(out.getvalue())
        self.assertEqual(payload["session_id"], "X")
        self.assertEqual(payload["total_students"], 4)
        self.assertEqual(payload["absent"], 2)
        self.assertEqual(payload["attendance_rate"], 50.0)
        self.assertEqual(payload["method_breakdown"]["ble+face"], 1)
        self.assertEqual(payload["method_breakdown"]["ble_only"], 1)

    def test_table_output(self) -> None:
        out = StringIO()
        call_command("presence_report", "X", stdout=out)

        output = out.getvalue()
        self.assertIn("Session X (cs101, active)", output)
        self.assertIn("Attendance rate:  100.00%", output)

    def test_unknown_session_errors(self) -> None:
        with self.assertRaises(CommandError):
            call_command("presence_report", "missing", stdout=StringIO())


class RotateReferenceKeysCommandTests(TestCase):
    def setUp(self) -> None:
        self.old_key = Fernet.generate_key()
        self.new_key = Fernet.generate_key()
        self.vector = np.linspace(-1.0, 1.0, EMBEDDING_DIMENSION)
        OrmReferenceStore(EmbeddingEncryption(key=self.old_key)).put_reference_embedding(
            "S1", FaceEmbedding(self.vector, 0.9)
        )
        return super().setUp()

    def test_rotates_with_fallback_key(self) -> None:
        out = StringIO()
        with override_settings(
            FACE_DATA_ENCRYPTION_KEY=self.new_key,
            FACE_DATA_ENCRYPTION_FALLBACK_KEYS=(self.old_key,),
        ):
            call_command("rotate_reference_keys", stdout=out)

        self.assertIn("Rotated 1 reference embedding(s).", out.getvalue())
        stored = OrmReferenceStore(EmbeddingEncryption(key=self.new_key))
        np.testing.assert_allclose(stored.get_reference_embedding("S1").vector, self.vector)

    def test_unknown_key_is_reported(self) -> None:
        with override_settings(
            FACE_DATA_ENCRYPTION_KEY=self.new_key, FACE_DATA_ENCRYPTION_FALLBACK_KEYS=()
        ):
            with self.assertRaises(CommandError):
                call_command("rotate_reference_keys", stdout=StringIO())

        raw = bytes(models.FaceReference.objects.get(student_id="S1").embedding_encrypted)
        self.assertEqual(
            EmbeddingEncryption(key=self.old_key).decrypt_embedding(raw).tolist(),
            self.vector.tolist(),
        )
