"""Exception taxonomy for the end-to-end encryption core."""

from __future__ import annotations


class E2EError(RuntimeError):
    """Base exception raised for end-to-end encryption failures."""


class KeyGenerationFailure(E2EError):
    """Raised when an identity keypair cannot be generated or persisted."""


class KeyMismatchError(E2EError):
    """Raised when a wrapped key was not wrapped for the local private key."""


class MissingPrivateKeyError(E2EError):
    """Raised when this device holds no identity private key."""


class MissingGrantError(E2EError):
    """Raised when no wrapped channel key is on record for a user."""


class DecryptionFailed(E2EError):
    """Raised when a ciphertext, nonce and key do not authenticate."""


class InvalidPublicKeyError(E2EError):
    """Raised when a published public key cannot be used for wrapping."""


class ProvisioningAborted(E2EError):
    """Raised when a channel cannot be provisioned for its creator."""


class BackendError(E2EError):
    """Raised when the hosted backend rejects or fails a request."""


# Conditions rendered as an inert "cannot decrypt" state.
UNDECRYPTABLE_ERRORS: tuple[type[E2EError], ...] = (
    MissingPrivateKeyError,
    MissingGrantError,
    KeyMismatchError,
    DecryptionFailed,
)
