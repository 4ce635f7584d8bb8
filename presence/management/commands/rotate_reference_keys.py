"""Re-encrypt stored reference embeddings under the primary Fernet key."""

from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError

from presence.orm_stores import OrmReferenceStore
from src.common.crypto import InvalidToken


class Command(BaseCommand):
    """Rotate enrolled references after staging a new key.

    Set the new key as ``FACE_DATA_ENCRYPTION_KEY`` and keep the old one in
    ``FACE_DATA_ENCRYPTION_FALLBACK_KEYS`` until this command has run.
    """

    help = "Re-encrypt every enrolled reference embedding with the current primary key"

    def handle(self, *args, **options) -> None:
        try:
            rotated = OrmReferenceStore().rotate_keys()
        except InvalidToken as exc:
            raise CommandError(
                "A stored reference could not be decrypted with any configured key."
            ) from exc
        self.stdout.write(self.style.SUCCESS(f"Rotated {rotated} reference embedding(s)."))
