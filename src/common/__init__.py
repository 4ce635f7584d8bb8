"""Shared helpers for protecting biometric data."""

from .crypto import EmbeddingEncryption, InvalidToken

__all__ = ["EmbeddingEncryption", "InvalidToken"]
