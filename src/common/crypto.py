"""Fernet helpers for encrypting enrolled reference embeddings at rest."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence, Union

import numpy as np
from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

BytesLike = Union[bytes, bytearray, memoryview]


def _coerce_key_bytes(key: BytesLike | str) -> bytes:
    """Normalise a configured Fernet key to ``bytes``."""

    if isinstance(key, str):
        return key.encode()
    return bytes(key)


def _build_fernet(key: BytesLike | str, setting_name: str) -> Fernet:
    try:
        return Fernet(_coerce_key_bytes(key))
    except (TypeError, ValueError) as exc:
        raise ImproperlyConfigured(f"{setting_name} is invalid.") from exc


@dataclass(slots=True)
class _FernetWrapper:
    """Lazily instantiate a key-rotating cipher from Django settings.

    The primary key encrypts; the primary and every fallback key decrypt, so
    a retired key can stay configured until all tokens have been rotated.
    """

    setting_name: str
    fallback_setting_name: str | None = None
    key_override: BytesLike | str | None = None
    fallback_override: Sequence[BytesLike | str] | None = None
    _cipher: MultiFernet | None = None

    def _resolve_keys(self) -> list[Fernet]:
        key = self.key_override
        if key is None:
            key = getattr(settings, self.setting_name, None)
        if key is None:
            raise ImproperlyConfigured(f"{self.setting_name} is not configured.")
        fernets = [_build_fernet(key, self.setting_name)]

        fallbacks: Iterable[BytesLike | str] = self.fallback_override or ()
        if self.fallback_override is None and self.fallback_setting_name:
            fallbacks = getattr(settings, self.fallback_setting_name, ()) or ()
        for fallback in fallbacks:
            fernets.append(_build_fernet(fallback, self.fallback_setting_name or self.setting_name))
        return fernets

    def _get_cipher(self) -> MultiFernet:
        if self._cipher is None:
            self._cipher = MultiFernet(self._resolve_keys())
        return self._cipher

    def reset(self) -> None:
        """Drop the cached cipher so the next call re-reads settings."""

        self._cipher = None

    def encrypt(self, payload: BytesLike) -> bytes:
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise TypeError("encrypt expects a bytes-like object")
        return self._get_cipher().encrypt(bytes(payload))

    def decrypt(self, token: BytesLike) -> bytes:
        if not isinstance(token, (bytes, bytearray, memoryview)):
            raise TypeError("decrypt expects a bytes-like object")
        return self._get_cipher().decrypt(bytes(token))

    def rotate(self, token: BytesLike) -> bytes:
        """Re-encrypt ``token`` under the primary key."""

        return self._get_cipher().rotate(bytes(token))

    def encrypt_embedding(self, vector: np.ndarray) -> bytes:
        if not isinstance(vector, np.ndarray):
            raise TypeError("encrypt_embedding expects a numpy.ndarray")
        return self.encrypt(vector.astype(np.float64).tobytes())

    def decrypt_embedding(self, token: BytesLike) -> np.ndarray:
        return np.frombuffer(self.decrypt(token), dtype=np.float64).copy()


class EmbeddingEncryption:
    """Encrypt and decrypt embedding vectors with the face data key set."""

    def __init__(
        self,
        key: BytesLike | str | None = None,
        fallback_keys: Sequence[BytesLike | str] | None = None,
    ) -> None:
        self._helper = _FernetWrapper(
            "FACE_DATA_ENCRYPTION_KEY",
            "FACE_DATA_ENCRYPTION_FALLBACK_KEYS",
            key_override=key,
            fallback_override=fallback_keys,
        )

    def encrypt_embedding(self, vector: np.ndarray) -> bytes:
        return self._helper.encrypt_embedding(vector)

    def decrypt_embedding(self, token: BytesLike) -> np.ndarray:
        return self._helper.decrypt_embedding(token)

    def rotate(self, token: BytesLike) -> bytes:
        return self._helper.rotate(token)


__all__ = ["EmbeddingEncryption", "InvalidToken"]
