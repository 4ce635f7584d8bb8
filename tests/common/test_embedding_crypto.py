"""Tests for the Fernet embedding encryption helpers."""

from __future__ import annotations

import numpy as np
import pytest
from cryptography.fernet import Fernet
from django.core.exceptions import ImproperlyConfigured
from django.test import override_settings

from src.common import EmbeddingEncryption, InvalidToken


def test_round_trip_returns_writable_copy():
    helper = EmbeddingEncryption(key=Fernet.generate_key())
    vector = np.arange(8, dtype=np.float32)

    token = helper.encrypt_embedding(vector)
    restored = helper.decrypt_embedding(token)

    assert restored.dtype == np.float64
    np.testing.assert_array_equal(restored, vector.astype(np.float64))
    restored[0] = 10.0


def test_fallback_keys_decrypt_and_rotate():
    old_key, new_key = Fernet.generate_key(), Fernet.generate_key()
    token = EmbeddingEncryption(key=old_key).encrypt_embedding(np.ones(4))

    helper = EmbeddingEncryption(key=new_key, fallback_keys=[old_key])
    rotated = helper.rotate(token)

    np.testing.assert_array_equal(EmbeddingEncryption(key=new_key).decrypt_embedding(rotated), np.ones(4))
    with pytest.raises(InvalidToken):
        EmbeddingEncryption(key=new_key).decrypt_embedding(token)


def test_settings_keys_are_used_by_default():
    key = Fernet.generate_key()
    with override_settings(FACE_DATA_ENCRYPTION_KEY=key, FACE_DATA_ENCRYPTION_FALLBACK_KEYS=()):
        token = EmbeddingEncryption().encrypt_embedding(np.zeros(3))

    np.testing.assert_array_equal(EmbeddingEncryption(key=key).decrypt_embedding(token), np.zeros(3))


def test_invalid_key_is_a_configuration_error():
    with pytest.raises(ImproperlyConfigured):
        EmbeddingEncryption(key="not-a-fernet-key").encrypt_embedding(np.zeros(3))


def test_non_array_payload_rejected():
    with pytest.raises(TypeError):
        EmbeddingEncryption(key=Fernet.generate_key()).encrypt_embedding([1.0, 2.0])
