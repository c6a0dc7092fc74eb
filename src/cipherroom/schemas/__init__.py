# src/cipherroom/schemas/__init__.py
"""Pydantic schemas for CipherRoom."""

from .keys import PublicKeyJwk
from .message import DecryptedMessage, MessagePayload, MessageRow, MessageStatus

__all__ = [
    "PublicKeyJwk",
    "DecryptedMessage",
    "MessagePayload",
    "MessageRow",
    "MessageStatus",
]
