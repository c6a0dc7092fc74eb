# src/cipherroom/services/keywrap.py
"""Wrapping of channel keys under identity keys."""

from __future__ import annotations

import asyncio
import logging

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from cipherroom.schemas.keys import PublicKeyJwk
from cipherroom.services.errors import KeyMismatchError, MissingPrivateKeyError
from cipherroom.services.identity import PrivateKeyHandle, load_public_jwk
from cipherroom.utils.encoding import b64decode, b64encode

logger = logging.getLogger(__name__)

CHANNEL_KEY_BYTES = 32


class ChannelKey:
    """Unwrapped AES-256 channel key held in memory for a session."""

    __slots__ = ("_material",)

    def __init__(self, material: bytes) -> None:
        if len(material) != CHANNEL_KEY_BYTES:
            raise ValueError(f"Channel keys must be {CHANNEL_KEY_BYTES} bytes")
        self._material = bytes(material)

    @classmethod
    def generate(cls) -> ChannelKey:
        """Return a fresh random channel key."""
        return cls(AESGCM.generate_key(bit_length=CHANNEL_KEY_BYTES * 8))

    @property
    def material(self) -> bytes:
        return self._material

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ChannelKey):
            return NotImplemented
        return self._material == other._material

    def __hash__(self) -> int:
        return hash(self._material)

    def __repr__(self) -> str:
        return "<ChannelKey aes-256 [redacted]>"


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


class KeyWrapEngine:
    """RSA-OAEP (SHA-256) key wrapping, compatible with WebCrypto ``wrapKey``."""

    @staticmethod
    def wrap_sync(channel_key: ChannelKey, recipient: PublicKeyJwk | str) -> str:
        """Wrap a channel key for a recipient and return the base64 blob.

        Raises:
            InvalidPublicKeyError: If the recipient key is unusable.
        """
        public_key = load_public_jwk(recipient)
        wrapped = public_key.encrypt(channel_key.material, _oaep())
        return b64encode(wrapped)

    @staticmethod
    def unwrap_sync(blob: str, private_key: PrivateKeyHandle | None) -> ChannelKey:
        """Recover a channel key from a base64 blob using the local private key.

        Raises:
            MissingPrivateKeyError: If ``private_key`` is None.
            KeyMismatchError: If the blob was not wrapped for ``private_key``.
        """
        if private_key is None:
            raise MissingPrivateKeyError("No identity private key on this device")
        try:
            wrapped = b64decode(blob)
        except ValueError as err:
            raise KeyMismatchError(f"Wrapped key is not decodable: {err}") from err

        try:
            material = private_key._key.decrypt(wrapped, _oaep())
        except ValueError as err:
            logger.debug("OAEP unwrap rejected a %d-byte blob", len(wrapped))
            raise KeyMismatchError("Wrapped key does not match the local private key") from err

        if len(material) != CHANNEL_KEY_BYTES:
            raise KeyMismatchError("Wrapped key has an unexpected length")
        return ChannelKey(material)

    async def wrap(self, channel_key: ChannelKey, recipient: PublicKeyJwk | str) -> str:
        return await asyncio.to_thread(self.wrap_sync, channel_key, recipient)

    async def unwrap(self, blob: str, private_key: PrivateKeyHandle | None) -> ChannelKey:
        return await asyncio.to_thread(self.unwrap_sync, blob, private_key)
