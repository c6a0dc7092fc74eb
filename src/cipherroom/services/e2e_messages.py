# src/cipherroom/services/e2e_messages.py
"""End-to-end encryption services for channel messages.

:class:`E2EMessageService` is the only surface the rest of the client uses:

- ``ensure_identity_published`` once at session start
- ``ensure_channel_provisioned`` when an encrypted channel is created
- ``encrypt_outgoing`` on every send
- ``decrypt_incoming`` / ``decrypt_history`` on every load

Channels that are not encrypted pass through untouched. An encrypted channel
never downgrades to plaintext: a member without a grant cannot send into it
until an existing member calls ``grant_member`` for them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from enum import Enum
from typing import Any

from cipherroom.core.settings import settings
from cipherroom.schemas.keys import PublicKeyJwk
from cipherroom.schemas.message import DecryptedMessage, MessagePayload, MessageRow, MessageStatus
from cipherroom.services.cipher import MessageCipher
from cipherroom.services.directory import ChannelGrantStore, ChannelRegistry, IdentityDirectory
from cipherroom.services.errors import (
    UNDECRYPTABLE_ERRORS,
    BackendError,
    E2EError,
    InvalidPublicKeyError,
    KeyGenerationFailure,
    ProvisioningAborted,
)
from cipherroom.services.identity import IdentityKeyStore, PrivateKeyHandle
from cipherroom.services.key_cache import SessionKeyCache
from cipherroom.services.keywrap import ChannelKey, KeyWrapEngine
from cipherroom.services.provisioner import (
    ChannelEncryptionState,
    ChannelKeyProvisioner,
    MemberIdentity,
)

logger = logging.getLogger(__name__)


class IdentityStatus(str, Enum):
    """Outcome of publishing the session user's identity key."""

    ALREADY_PUBLISHED = "already_published"
    PUBLISHED = "published"
    REPUBLISHED = "republished"
    UNAVAILABLE = "unavailable"


class E2EMessageService:
    """Service handling end-to-end encrypted channel messaging for one user session."""

    def __init__(
        self,
        user_id: str,
        *,
        directory: IdentityDirectory,
        grants: ChannelGrantStore,
        channels: ChannelRegistry,
        key_store: IdentityKeyStore | None = None,
        wrap_engine: KeyWrapEngine | None = None,
        cipher: MessageCipher | None = None,
        key_cache: SessionKeyCache | None = None,
        provisioner: ChannelKeyProvisioner | None = None,
        placeholder: str | None = None,
    ) -> None:
        self.user_id = user_id
        self._directory = directory
        self._grants = grants
        self._channels = channels
        self._key_store = key_store or IdentityKeyStore()
        self._wrap_engine = wrap_engine or KeyWrapEngine()
        self._cipher = cipher or MessageCipher()
        self._key_cache = key_cache or SessionKeyCache(self._key_store, self._wrap_engine)
        self._provisioner = provisioner or ChannelKeyProvisioner(self._wrap_engine)
        self.placeholder = placeholder or settings.undecryptable_placeholder

        self._identity_status: IdentityStatus | None = None
        self._identity_lock = asyncio.Lock()
        self._channel_states: dict[str, ChannelEncryptionState] = {}
        self._provisioning: dict[str, asyncio.Task[ChannelEncryptionState]] = {}

    @property
    def key_cache(self) -> SessionKeyCache:
        return self._key_cache

    def channel_state(self, channel_id: str) -> ChannelEncryptionState:
        """Return the encryption state this session has observed for a channel."""
        return self._channel_states.get(channel_id, ChannelEncryptionState.UNREQUESTED)

    # --- Identity ------------------------------------------------------------------
    async def ensure_identity_published(self) -> IdentityStatus:
        """Make sure the session user has an identity key on record.

        A new keypair is generated only when the directory has no public key
        and this device holds no private key. Failures are logged and leave
        the session without encryption capability.
        """
        async with self._identity_lock:
            if self._identity_status is not None:
                return self._identity_status

            try:
                status = await self._publish_identity()
            except (KeyGenerationFailure, BackendError) as err:
                logger.warning(
                    "Encryption unavailable for %s this session: %s", self.user_id, err
                )
                return IdentityStatus.UNAVAILABLE

            self._identity_status = status
            return status

    async def _publish_identity(self) -> IdentityStatus:
        published = await self._directory.get_public_key(self.user_id)
        local_key = await self._key_store.get_local_private_key()

        if published:
            if local_key is None:
                logger.warning(
                    "User %s has a published key but none on this device; "
                    "encrypted channels cannot be read here",
                    self.user_id,
                )
            elif not _same_public_key(published, local_key.public_jwk()):
                logger.warning(
                    "Local identity key for %s does not match the published key", self.user_id
                )
            return IdentityStatus.ALREADY_PUBLISHED

        if local_key is not None:
            await self._directory.set_public_key(self.user_id, local_key.public_jwk().to_json())
            logger.info("Republished existing identity key for %s", self.user_id)
            return IdentityStatus.REPUBLISHED

        public_jwk = await self._key_store.generate_identity()
        await self._directory.set_public_key(self.user_id, public_jwk.to_json())
        logger.info("Published new identity key for %s", self.user_id)
        return IdentityStatus.PUBLISHED

    # --- Channel provisioning ------------------------------------------------------
    async def ensure_channel_provisioned(
        self,
        channel_id: str,
        member_ids: Sequence[str],
        *,
        encrypted: bool = True,
    ) -> ChannelEncryptionState:
        """Resolve a newly created channel's encryption, provisioning keys if asked.

        Returns ``ENABLED`` only once the creator's own grant is stored;
        any failure on the creator's side yields ``DISABLED_FALLBACK``.
        """
        state = self._channel_states.get(channel_id)
        if state is not None and state.resolved:
            return state

        task = self._provisioning.get(channel_id)
        if task is None:
            task = asyncio.create_task(self._resolve_channel(channel_id, member_ids, encrypted))
            self._provisioning[channel_id] = task
            task.add_done_callback(lambda _done, cid=channel_id: self._provisioning.pop(cid, None))
        return await asyncio.shield(task)

    async def _resolve_channel(
        self, channel_id: str, member_ids: Sequence[str], encrypted: bool
    ) -> ChannelEncryptionState:
        record = await self._channels.get_channel(channel_id)
        if record is not None and record.encryption_resolved:
            state = (
                ChannelEncryptionState.ENABLED
                if record.encryption_enabled
                else ChannelEncryptionState.DISABLED_FALLBACK
            )
            self._channel_states[channel_id] = state
            return state

        if not encrypted:
            return await self._resolve_unrequested(channel_id)

        self._channel_states[channel_id] = ChannelEncryptionState.PROVISIONING
        try:
            state = await self._provision(channel_id, member_ids)
        except BaseException:
            self._channel_states.pop(channel_id, None)
            raise
        self._channel_states[channel_id] = state
        return state

    async def _provision(self, channel_id: str, member_ids: Sequence[str]) -> ChannelEncryptionState:
        members = await self._lookup_members(_unique([self.user_id, *member_ids]))

        try:
            local_key = await self._require_matching_local_key(members[0])
            provisioning = await self._provisioner.provision_channel(self.user_id, members)
            creator_grant = provisioning.grant_for(self.user_id)
            if creator_grant is None:
                raise ProvisioningAborted("Creator grant missing from provisioning result")
            await self._check_creator_grant(creator_grant, local_key, provisioning.channel_key)
            try:
                await self._grants.put_grant(channel_id, self.user_id, creator_grant)
            except BackendError as err:
                raise ProvisioningAborted(f"Could not store creator grant: {err}") from err
        except ProvisioningAborted as err:
            logger.warning("Channel %s created without encryption: %s", channel_id, err)
            return await self._resolve_disabled(channel_id)

        for user_id, wrapped_key in provisioning.grants:
            if user_id == self.user_id:
                continue
            try:
                await self._grants.put_grant(channel_id, user_id, wrapped_key)
            except BackendError as err:
                logger.warning("Could not store grant for %s in %s: %s", user_id, channel_id, err)

        try:
            record = await self._channels.resolve_encryption(channel_id, True)
        except BackendError as err:
            logger.error("Could not mark channel %s as encrypted: %s", channel_id, err)
            return ChannelEncryptionState.DISABLED_FALLBACK

        if not record.encryption_enabled:
            logger.warning("Channel %s was already resolved without encryption", channel_id)
            return ChannelEncryptionState.DISABLED_FALLBACK

        self._key_cache.prime(channel_id, provisioning.channel_key)
        logger.info(
            "Provisioned channel %s with %d grants (%d members skipped)",
            channel_id,
            len(provisioning.grants),
            len(provisioning.skipped),
        )
        return ChannelEncryptionState.ENABLED

    async def _resolve_disabled(self, channel_id: str) -> ChannelEncryptionState:
        try:
            await self._channels.resolve_encryption(channel_id, False)
        except BackendError as err:
            logger.error("Could not record plaintext fallback for %s: %s", channel_id, err)
        return ChannelEncryptionState.DISABLED_FALLBACK

    async def _resolve_unrequested(self, channel_id: str) -> ChannelEncryptionState:
        try:
            record = await self._channels.resolve_encryption(channel_id, False)
        except BackendError as err:
            logger.error("Could not record plaintext channel %s: %s", channel_id, err)
            record = None

        if record is not None and record.encryption_enabled:
            # Another session resolved the channel as encrypted first.
            state = ChannelEncryptionState.ENABLED
        else:
            state = ChannelEncryptionState.UNREQUESTED
        self._channel_states[channel_id] = state
        return state

    async def _require_matching_local_key(self, creator: MemberIdentity) -> PrivateKeyHandle:
        local_key = await self._key_store.get_local_private_key()
        if local_key is None:
            raise ProvisioningAborted("No identity private key on this device")
        if creator.public_key and not _same_public_key(creator.public_key, local_key.public_jwk()):
            raise ProvisioningAborted("Published identity key does not match this device's key")
        return local_key

    async def _check_creator_grant(
        self, creator_grant: str, local_key: PrivateKeyHandle, channel_key: ChannelKey
    ) -> None:
        """Require that this device can unwrap the creator's own grant."""
        try:
            unwrapped = await self._wrap_engine.unwrap(creator_grant, local_key)
        except E2EError as err:
            raise ProvisioningAborted(f"Creator cannot unwrap own grant: {err}") from err
        if unwrapped != channel_key:
            raise ProvisioningAborted("Creator grant unwraps to a different channel key")

    async def _lookup_members(self, member_ids: Iterable[str]) -> list[MemberIdentity]:
        members = []
        for user_id in member_ids:
            try:
                public_key = await self._directory.get_public_key(user_id)
            except BackendError as err:
                logger.warning("Public key lookup failed for %s: %s", user_id, err)
                public_key = None
            members.append(MemberIdentity(user_id=user_id, public_key=public_key))
        return members

    async def _is_encrypted(self, channel_id: str) -> bool:
        state = self._channel_states.get(channel_id)
        if state is not None and state.resolved:
            return state is ChannelEncryptionState.ENABLED
        record = await self._channels.get_channel(channel_id)
        return record is not None and record.encryption_enabled

    async def _channel_key(self, channel_id: str) -> ChannelKey:
        async def fetch_grant() -> str | None:
            return await self._grants.get_grant(channel_id, self.user_id)

        return await self._key_cache.get_or_unwrap(channel_id, fetch_grant)

    # --- Messages ------------------------------------------------------------------
    async def encrypt_outgoing(
        self,
        channel_id: str,
        content: str,
        *,
        files: list[dict[str, Any]] | None = None,
    ) -> MessageRow:
        """Build the row to store for an outgoing message.

        Media are sent as their URL string, which is encrypted like any text;
        ``files`` metadata stays in the payload unencrypted.

        Raises:
            MissingGrantError: If the channel is encrypted and this user holds no grant.
            MissingPrivateKeyError: If the channel is encrypted and this device has no key.
            KeyMismatchError: If the stored grant belongs to another identity.
        """
        payload = MessagePayload(files=files) if files is not None else MessagePayload()
        if not await self._is_encrypted(channel_id):
            return MessageRow(
                channel_id=channel_id, sender_id=self.user_id, content=content, payload=payload
            )

        key = await self._channel_key(channel_id)
        sealed = await self._cipher.encrypt_text(content, key)
        payload.iv = sealed.nonce_b64
        return MessageRow(
            channel_id=channel_id,
            sender_id=self.user_id,
            content=sealed.content_b64,
            is_encrypted=True,
            payload=payload,
        )

    async def decrypt_incoming(self, row: MessageRow) -> DecryptedMessage:
        """Turn a stored row into display text; never raises for crypto failures."""
        if not row.is_encrypted:
            return self._result(row, row.content, MessageStatus.PLAINTEXT)

        try:
            key = await self._channel_key(row.channel_id)
            text = await self._cipher.decrypt_text(row.content, row.payload.iv, key)
        except (*UNDECRYPTABLE_ERRORS, BackendError) as err:
            logger.warning(
                "Message %s in %s is undecryptable: %s", row.message_id, row.channel_id, err
            )
            return self._result(row, self.placeholder, MessageStatus.UNDECRYPTABLE)
        return self._result(row, text, MessageStatus.DECRYPTED)

    async def decrypt_history(self, rows: Sequence[MessageRow]) -> list[DecryptedMessage]:
        """Decrypt a page of messages concurrently, preserving order."""
        return list(await asyncio.gather(*(self.decrypt_incoming(row) for row in rows)))

    @staticmethod
    def _result(row: MessageRow, text: str, status: MessageStatus) -> DecryptedMessage:
        payload = row.payload.model_copy()
        payload.iv = None
        return DecryptedMessage(
            message_id=row.message_id,
            channel_id=row.channel_id,
            sender_id=row.sender_id,
            text=text,
            status=status,
            payload=payload,
        )

    # --- Membership ----------------------------------------------------------------
    async def grant_member(self, channel_id: str, user_id: str) -> bool:
        """Give a member added after creation a grant for the channel key.

        Returns False when the member has no usable published key.

        Raises:
            MissingGrantError: If this user cannot read the channel key either.
        """
        key = await self._channel_key(channel_id)
        public_key = await self._directory.get_public_key(user_id)
        if not public_key:
            logger.info("Cannot grant %s access to %s: no public key", user_id, channel_id)
            return False
        try:
            wrapped = await self._wrap_engine.wrap(key, public_key)
        except InvalidPublicKeyError as err:
            logger.warning("Cannot grant %s access to %s: %s", user_id, channel_id, err)
            return False
        await self._grants.put_grant(channel_id, user_id, wrapped)
        logger.info("Granted %s access to channel %s", user_id, channel_id)
        return True

    async def revoke_member(self, channel_id: str, user_id: str) -> None:
        """Delete a removed member's grant.

        Without key rotation, a key the member already unwrapped stays usable
        on their device for messages they can still fetch.
        """
        await self._grants.delete_grant(channel_id, user_id)
        if user_id == self.user_id:
            self._key_cache.invalidate(channel_id)
        logger.info("Revoked grant for %s in channel %s", user_id, channel_id)

    def end_session(self) -> None:
        """Forget every unwrapped key held by this session."""
        self._key_cache.clear()
        self._channel_states.clear()
        self._identity_status = None


def _unique(user_ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(user_ids))


def _same_public_key(published: str, local: PublicKeyJwk) -> bool:
    try:
        remote = PublicKeyJwk.from_json(published)
    except ValueError:
        return False
    return (remote.n, remote.e) == (local.n, local.e)
