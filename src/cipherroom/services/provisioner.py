# src/cipherroom/services/provisioner.py
"""Creation-time key provisioning for encrypted channels."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from cipherroom.services.errors import InvalidPublicKeyError, ProvisioningAborted
from cipherroom.services.keywrap import ChannelKey, KeyWrapEngine

logger = logging.getLogger(__name__)


class ChannelEncryptionState(str, Enum):
    """Lifecycle of a channel's encryption status.

    ``UNREQUESTED -> PROVISIONING -> ENABLED | DISABLED_FALLBACK``; a resolved
    channel never returns to ``PROVISIONING``.
    """

    UNREQUESTED = "unrequested"
    PROVISIONING = "provisioning"
    ENABLED = "enabled"
    DISABLED_FALLBACK = "disabled_fallback"

    @property
    def resolved(self) -> bool:
        return self in (ChannelEncryptionState.ENABLED, ChannelEncryptionState.DISABLED_FALLBACK)


@dataclass(frozen=True)
class MemberIdentity:
    """A prospective channel member and their published public key, if any."""

    user_id: str
    public_key: str | None


@dataclass(frozen=True)
class ChannelProvisioning:
    """Fresh channel key plus one wrapped grant per reachable member."""

    channel_key: ChannelKey
    grants: list[tuple[str, str]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def grant_for(self, user_id: str) -> str | None:
        for member_id, wrapped_key in self.grants:
            if member_id == user_id:
                return wrapped_key
        return None


class ChannelKeyProvisioner:
    """Generates a channel key and wraps it for each initial member."""

    def __init__(self, wrap_engine: KeyWrapEngine | None = None) -> None:
        self._wrap_engine = wrap_engine or KeyWrapEngine()

    async def provision_channel(
        self, creator_id: str, members: Sequence[MemberIdentity]
    ) -> ChannelProvisioning:
        """Create a channel key and wrap it for ``members``.

        The creator is always wrapped first. Members without a usable public
        key are skipped.

        Raises:
            ProvisioningAborted: If the creator cannot be given a grant.
        """
        by_id = {member.user_id: member for member in members}
        creator = by_id.get(creator_id)
        if creator is None or not creator.public_key:
            raise ProvisioningAborted(f"Creator {creator_id} has no published public key")

        channel_key = ChannelKey.generate()
        try:
            creator_grant = await self._wrap_engine.wrap(channel_key, creator.public_key)
        except InvalidPublicKeyError as err:
            raise ProvisioningAborted(f"Could not wrap channel key for creator: {err}") from err

        grants = [(creator_id, creator_grant)]
        skipped: list[str] = []
        for member in by_id.values():
            if member.user_id == creator_id:
                continue
            if not member.public_key:
                logger.info("Member %s has no public key; no grant issued", member.user_id)
                skipped.append(member.user_id)
                continue
            try:
                wrapped = await self._wrap_engine.wrap(channel_key, member.public_key)
            except InvalidPublicKeyError as err:
                logger.warning("Skipping member %s with unusable key: %s", member.user_id, err)
                skipped.append(member.user_id)
                continue
            grants.append((member.user_id, wrapped))

        return ChannelProvisioning(channel_key=channel_key, grants=grants, skipped=skipped)
