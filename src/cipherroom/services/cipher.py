# src/cipherroom/services/cipher.py
"""Authenticated encryption of message content with channel keys."""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from cipherroom.services.errors import DecryptionFailed
from cipherroom.services.keywrap import ChannelKey
from cipherroom.utils.encoding import b64decode, b64encode

NONCE_BYTES = 12
TAG_BYTES = 16


@dataclass(frozen=True)
class EncryptedPayload:
    """Ciphertext (with appended GCM tag) and the nonce it was sealed under."""

    ciphertext: bytes
    nonce: bytes

    @property
    def content_b64(self) -> str:
        return b64encode(self.ciphertext)

    @property
    def nonce_b64(self) -> str:
        return b64encode(self.nonce)


class MessageCipher:
    """AES-256-GCM message cipher.

    Every call to :meth:`encrypt` draws a new nonce from ``os.urandom``; nonces
    are never derived from message order or time.
    """

    @staticmethod
    def encrypt_sync(plaintext: bytes, key: ChannelKey) -> EncryptedPayload:
        nonce = os.urandom(NONCE_BYTES)
        ciphertext = AESGCM(key.material).encrypt(nonce, plaintext, None)
        return EncryptedPayload(ciphertext=ciphertext, nonce=nonce)

    @staticmethod
    def decrypt_sync(ciphertext: bytes, nonce: bytes | None, key: ChannelKey) -> bytes:
        """Open a ciphertext.

        Raises:
            DecryptionFailed: On a wrong key, a missing or altered nonce, or a
                truncated or altered ciphertext.
        """
        if not nonce:
            raise DecryptionFailed("Encrypted message has no nonce")
        if len(nonce) != NONCE_BYTES:
            raise DecryptionFailed(f"Nonce must be {NONCE_BYTES} bytes, got {len(nonce)}")
        if len(ciphertext) < TAG_BYTES:
            raise DecryptionFailed("Ciphertext is truncated")
        try:
            return AESGCM(key.material).decrypt(nonce, ciphertext, None)
        except InvalidTag as err:
            raise DecryptionFailed("Ciphertext failed authentication") from err

    async def encrypt(self, plaintext: bytes, key: ChannelKey) -> EncryptedPayload:
        return await asyncio.to_thread(self.encrypt_sync, plaintext, key)

    async def decrypt(self, ciphertext: bytes, nonce: bytes | None, key: ChannelKey) -> bytes:
        return await asyncio.to_thread(self.decrypt_sync, ciphertext, nonce, key)

    async def encrypt_text(self, text: str, key: ChannelKey) -> EncryptedPayload:
        """Encrypt a string (message body or media URL) as UTF-8 bytes."""
        return await self.encrypt(text.encode("utf-8"), key)

    async def decrypt_text(self, content_b64: str, nonce_b64: str | None, key: ChannelKey) -> str:
        """Decrypt base64 content and nonce as stored at rest back to text.

        Raises:
            DecryptionFailed: If decoding, authentication or UTF-8 decoding fails.
        """
        try:
            ciphertext = b64decode(content_b64)
            nonce = b64decode(nonce_b64) if nonce_b64 else None
        except ValueError as err:
            raise DecryptionFailed(f"Encrypted message is not decodable: {err}") from err
        plaintext = await self.decrypt(ciphertext, nonce, key)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as err:
            raise DecryptionFailed("Decrypted content is not UTF-8") from err
