"""Print the attendance summary of a class session."""

from __future__ import annotations

import json

from django.core.management.base import BaseCommand, CommandError

from presence.analytics import summarize_session
from presence.orm_stores import OrmAttendanceStore, OrmSessionStore


class Command(BaseCommand):
    help = "Summarise attendance, presence time and verification methods for a session"

    def add_arguments(self, parser) -> None:  # pragma: no cover - argparse wiring
        parser.add_argument("session_id", help="Identifier of the class session.")
        parser.add_argument(
            "--roster",
            default="",
            help="Comma-separated student ids expected in the session.",
        )
        parser.add_argument(
            "--json",
            action="store_true",
            help="Emit the summary as JSON instead of a table.",
        )

    def handle(self, *args, **options) -> None:
        session_id: str = options["session_id"]
        session = OrmSessionStore().get(session_id)
        if session is None:
            raise CommandError(f"Session not found: {session_id}")

        roster = [item.strip() for item in options["roster"].split(",") if item.strip()]
        store = OrmAttendanceStore()
        summary = summarize_session(
            store.list_for_session(session_id),
            store.events_for_session(session_id),
            roster or None,
        )
        summary.session_id = session_id

        if options["json"]:
            self.stdout.write(json.dumps(summary.as_dict(), indent=2, sort_keys=True))
            return

        self.stdout.write(
            self.style.SUCCESS(f"Session {session_id} ({session.class_id}, {session.status.value})")
        )
        self.stdout.write(f"  Students:         {summary.total_students}")
        self.stdout.write(f"  Present:          {summary.present}")
        self.stdout.write(f"  Late:             {summary.late}")
        self.stdout.write(f"  Absent:           {summary.absent}")
        self.stdout.write(f"  Attendance rate:  {summary.attendance_rate:.2f}%")
        self.stdout.write(f"  Avg duration (s): {summary.average_duration_seconds:.0f}")
        self.stdout.write("\nVerification methods:")
        for method, count in summary.method_breakdown.items():
            self.stdout.write(f"  {method:<10} {count}")
