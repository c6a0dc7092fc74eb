# src/cipherroom/services/__init__.py
"""Encryption services for the CipherRoom client."""

from .cipher import EncryptedPayload, MessageCipher
from .e2e_messages import E2EMessageService, IdentityStatus
from .identity import IdentityKeyStore, PrivateKeyHandle
from .key_cache import SessionKeyCache
from .keywrap import ChannelKey, KeyWrapEngine
from .provisioner import ChannelEncryptionState, ChannelKeyProvisioner, MemberIdentity

__all__ = [
    "ChannelEncryptionState",
    "ChannelKey",
    "ChannelKeyProvisioner",
    "E2EMessageService",
    "EncryptedPayload",
    "IdentityKeyStore",
    "IdentityStatus",
    "KeyWrapEngine",
    "MemberIdentity",
    "MessageCipher",
    "PrivateKeyHandle",
    "SessionKeyCache",
]
