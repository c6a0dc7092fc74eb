"""Base64 helpers for key and ciphertext material stored at rest."""

from __future__ import annotations

import base64
import binascii


def b64encode(data: bytes) -> str:
    """Encode bytes as standard padded base64 text."""
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """Decode standard base64 text, rejecting non-alphabet characters."""
    try:
        return base64.b64decode(data.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as err:
        raise ValueError(f"Invalid base64 encoding: {err}") from err


def b64url_uint(value: int) -> str:
    """Encode a non-negative integer as unpadded URL-safe base64 (JWK style)."""
    length = max(1, (value.bit_length() + 7) // 8)
    raw = value.to_bytes(length, "big")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def b64url_to_uint(data: str) -> int:
    """Decode an unpadded URL-safe base64 string into an integer."""
    padding = "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(data + padding)
    except (binascii.Error, ValueError) as err:
        raise ValueError(f"Invalid base64url encoding: {err}") from err
    return int.from_bytes(raw, "big")
