# src/cipherroom/services/identity.py
"""Device-local identity keys.

Each user owns one long-lived RSA keypair used only for wrapping channel keys.
The private half is written to a key file on this device and handed around in
memory as an opaque :class:`PrivateKeyHandle`; only the public half, exported
as a JWK, is ever published.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import NoReturn

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from cipherroom.core.settings import MIN_RSA_KEY_SIZE, settings
from cipherroom.schemas.keys import PublicKeyJwk
from cipherroom.services.errors import InvalidPublicKeyError, KeyGenerationFailure
from cipherroom.utils.encoding import b64url_to_uint, b64url_uint

logger = logging.getLogger(__name__)

PUBLIC_EXPONENT = 65537
_KEY_FILE_MODE = 0o600


def export_public_jwk(public_key: rsa.RSAPublicKey) -> PublicKeyJwk:
    """Export an RSA public key as a WebCrypto-compatible JWK."""
    numbers = public_key.public_numbers()
    return PublicKeyJwk(n=b64url_uint(numbers.n), e=b64url_uint(numbers.e))


def load_public_jwk(jwk: PublicKeyJwk | str) -> rsa.RSAPublicKey:
    """Load an RSA public key from a JWK model or its JSON string.

    Raises:
        InvalidPublicKeyError: If the key cannot be parsed or is too small.
    """
    try:
        model = PublicKeyJwk.from_json(jwk) if isinstance(jwk, str) else jwk
        numbers = rsa.RSAPublicNumbers(b64url_to_uint(model.e), b64url_to_uint(model.n))
        public_key = numbers.public_key()
    except ValueError as err:
        raise InvalidPublicKeyError(f"Unusable public key: {err}") from err
    if public_key.key_size < MIN_RSA_KEY_SIZE:
        raise InvalidPublicKeyError(
            f"Public key is {public_key.key_size} bits; at least {MIN_RSA_KEY_SIZE} required"
        )
    return public_key


class PrivateKeyHandle:
    """Opaque capability for the local identity private key.

    The handle cannot be pickled, copied, or dumped, and its repr never shows
    key material. Only :mod:`cipherroom.services.keywrap` reaches inside.
    """

    __slots__ = ("_key",)

    def __init__(self, key: rsa.RSAPrivateKey) -> None:
        self._key = key

    @property
    def key_size(self) -> int:
        return self._key.key_size

    def public_jwk(self) -> PublicKeyJwk:
        """Return the published form of the matching public key."""
        return export_public_jwk(self._key.public_key())

    def __repr__(self) -> str:
        return f"<PrivateKeyHandle rsa-{self._key.key_size} [redacted]>"

    def __reduce__(self) -> NoReturn:
        raise TypeError("PrivateKeyHandle cannot be serialized")

    def __copy__(self) -> NoReturn:
        raise TypeError("PrivateKeyHandle cannot be copied")

    def __deepcopy__(self, memo: dict[int, object]) -> NoReturn:
        raise TypeError("PrivateKeyHandle cannot be copied")


class IdentityKeyStore:
    """Generates and loads the device-local identity keypair."""

    def __init__(
        self,
        key_path: Path | None = None,
        *,
        passphrase: str | None = None,
        key_size: int | None = None,
    ) -> None:
        self.key_path = (key_path or settings.identity_key_path).expanduser()
        self._passphrase = passphrase if passphrase is not None else settings.key_store_passphrase
        self.key_size = key_size or settings.rsa_key_size
        if self.key_size < MIN_RSA_KEY_SIZE:
            raise ValueError(f"RSA identity keys must be at least {MIN_RSA_KEY_SIZE} bits")

    def _encryption(self) -> serialization.KeySerializationEncryption:
        if self._passphrase:
            return serialization.BestAvailableEncryption(self._passphrase.encode())
        return serialization.NoEncryption()

    def _generate_and_store(self) -> PublicKeyJwk:
        private_key = rsa.generate_private_key(
            public_exponent=PUBLIC_EXPONENT,
            key_size=self.key_size,
        )
        pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=self._encryption(),
        )

        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.key_path.with_suffix(".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, _KEY_FILE_MODE)
        with os.fdopen(fd, "wb") as handle:
            handle.write(pem)
        os.replace(tmp_path, self.key_path)

        return export_public_jwk(private_key.public_key())

    def _load(self) -> PrivateKeyHandle | None:
        try:
            pem = self.key_path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as err:
            logger.warning("Identity key file %s is unreadable: %s", self.key_path, err)
            return None

        password = self._passphrase.encode() if self._passphrase else None
        try:
            private_key = serialization.load_pem_private_key(pem, password=password)
        except (ValueError, TypeError) as err:
            logger.warning("Identity key file %s could not be loaded: %s", self.key_path, err)
            return None

        if not isinstance(private_key, rsa.RSAPrivateKey):
            logger.warning("Identity key file %s does not hold an RSA key", self.key_path)
            return None
        return PrivateKeyHandle(private_key)

    async def generate_identity(self) -> PublicKeyJwk:
        """Create a new keypair, persist the private half, return the public half.

        Raises:
            KeyGenerationFailure: If generation or the key-file write fails.
        """
        try:
            public_jwk = await asyncio.to_thread(self._generate_and_store)
        except (OSError, ValueError, TypeError) as err:
            raise KeyGenerationFailure(f"Could not create identity key: {err}") from err
        logger.info("Generated %d-bit identity key at %s", self.key_size, self.key_path)
        return public_jwk

    async def get_local_private_key(self) -> PrivateKeyHandle | None:
        """Return the local private key, or None if this device has none."""
        return await asyncio.to_thread(self._load)
