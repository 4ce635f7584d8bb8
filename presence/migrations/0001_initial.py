import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Attendance",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("student_id", models.CharField(max_length=64)),
                ("session_id", models.CharField(max_length=64)),
                (
                    "status",
                    models.CharField(
                        choices=[("present", "Present"), ("absent", "Absent"), ("late", "Late")],
                        max_length=16,
                    ),
                ),
                (
                    "verified_by",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("ble", "BLE beacon"),
                            ("quiz", "Quiz"),
                            ("face", "Face verification"),
                            ("manual", "Manual"),
                        ],
                        max_length=16,
                        null=True,
                    ),
                ),
                ("duration_seconds", models.PositiveIntegerField(default=0)),
                ("confidence", models.FloatField(blank=True, null=True)),
                ("recorded_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "ordering": ["session_id", "student_id"],
            },
        ),
        migrations.CreateModel(
            name="AttendanceEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("student_id", models.CharField(max_length=64)),
                ("session_id", models.CharField(max_length=64)),
                ("method", models.CharField(blank=True, max_length=16, null=True)),
                ("action", models.CharField(max_length=32)),
                ("status", models.CharField(max_length=16)),
                ("observed_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("confidence", models.FloatField(blank=True, null=True)),
                ("beacon_id", models.CharField(blank=True, max_length=64, null=True)),
                ("rssi", models.IntegerField(blank=True, null=True)),
                ("distance_meters", models.FloatField(blank=True, null=True)),
            ],
            options={
                "ordering": ["observed_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="ClassSession",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("session_id", models.CharField(max_length=64, unique=True)),
                ("class_id", models.CharField(db_index=True, max_length=64)),
                ("beacon_id", models.CharField(max_length=64)),
                ("start_time", models.DateTimeField(default=django.utils.timezone.now)),
                ("end_time", models.DateTimeField(blank=True, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[("active", "Active"), ("ended", "Ended")],
                        default="active",
                        max_length=16,
                    ),
                ),
                ("finalized_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "ordering": ["-start_time"],
            },
        ),
        migrations.CreateModel(
            name="FaceReference",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("student_id", models.CharField(max_length=64, unique=True)),
                ("embedding_encrypted", models.BinaryField()),
                ("generation_confidence", models.FloatField(default=1.0)),
                ("captured_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("enrolled_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
        ),
        migrations.AddIndex(
            model_name="attendance",
            index=models.Index(fields=["session_id"], name="presence_att_session_idx"),
        ),
        migrations.AddConstraint(
            model_name="attendance",
            constraint=models.UniqueConstraint(
                fields=("student_id", "session_id"), name="presence_attendance_unique_key"
            ),
        ),
        migrations.AddIndex(
            model_name="attendanceevent",
            index=models.Index(fields=["session_id", "student_id"], name="presence_event_key_idx"),
        ),
        migrations.AddIndex(
            model_name="classsession",
            index=models.Index(fields=["status"], name="presence_session_status_idx"),
        ),
    ]
