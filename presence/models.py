"""Database models backing the ORM stores."""

from __future__ import annotations

from django.db import models
from django.utils import timezone


class ClassSession(models.Model):
    """A taught session of a class, anchored to the classroom beacon."""

    STATUS_CHOICES = [
        ("active", "Active"),
        ("ended", "Ended"),
    ]

    session_id = models.CharField(max_length=64, unique=True)
    class_id = models.CharField(max_length=64, db_index=True)
    beacon_id = models.CharField(max_length=64)
    start_time = models.DateTimeField(default=timezone.now)
    end_time = models.DateTimeField(null=True, blank=True)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default="active")
    finalized_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-start_time"]
        indexes = [models.Index(fields=["status"], name="presence_session_status_idx")]

    def __str__(self) -> str:
        return f"{self.class_id} session {self.session_id} ({self.status})"


class Attendance(models.Model):
    """One attendance outcome per student per session."""

    STATUS_CHOICES = [
        ("present", "Present"),
        ("absent", "Absent"),
        ("late", "Late"),
    ]
    METHOD_CHOICES = [
        ("ble", "BLE beacon"),
        ("quiz", "Quiz"),
        ("face", "Face verification"),
        ("manual", "Manual"),
    ]

    student_id = models.CharField(max_length=64)
    session_id = models.CharField(max_length=64)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES)
    verified_by = models.CharField(max_length=16, choices=METHOD_CHOICES, null=True, blank=True)
    duration_seconds = models.PositiveIntegerField(default=0)
    confidence = models.FloatField(null=True, blank=True)
    recorded_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["session_id", "student_id"]
        constraints = [
            models.UniqueConstraint(
                fields=["student_id", "session_id"], name="presence_attendance_unique_key"
            )
        ]
        indexes = [models.Index(fields=["session_id"], name="presence_att_session_idx")]

    def __str__(self) -> str:
        return f"{self.student_id}@{self.session_id}: {self.status} via {self.verified_by}"


class AttendanceEvent(models.Model):
    """Append-only audit trail of ledger mutations, including beacon sightings."""

    student_id = models.CharField(max_length=64)
    session_id = models.CharField(max_length=64)
    method = models.CharField(max_length=16, null=True, blank=True)
    action = models.CharField(max_length=32)
    status = models.CharField(max_length=16)
    observed_at = models.DateTimeField(default=timezone.now)
    confidence = models.FloatField(null=True, blank=True)
    beacon_id = models.CharField(max_length=64, null=True, blank=True)
    rssi = models.IntegerField(null=True, blank=True)
    distance_meters = models.FloatField(null=True, blank=True)

    class Meta:
        ordering = ["observed_at", "id"]
        indexes = [
            models.Index(fields=["session_id", "student_id"], name="presence_event_key_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.action} {self.student_id}@{self.session_id} ({self.method})"


class FaceReference(models.Model):
    """Encrypted reference embedding for an enrolled student."""

    student_id = models.CharField(max_length=64, unique=True)
    embedding_encrypted = models.BinaryField()
    generation_confidence = models.FloatField(default=1.0)
    captured_at = models.DateTimeField(default=timezone.now)
    enrolled_at = models.DateTimeField(default=timezone.now)

    def __str__(self) -> str:
        return f"Reference embedding for {self.student_id}"
