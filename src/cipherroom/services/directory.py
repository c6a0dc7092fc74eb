# src/cipherroom/services/directory.py
"""Backend interfaces consumed by the encryption core.

The core talks to the hosted backend only through the protocols below. The
SQLAlchemy classes implement them against the reference schema in
:mod:`cipherroom.models`; :mod:`cipherroom.services.rest_backend` implements
them over HTTP.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.orm import Session

from cipherroom.models import Channel, ChannelKeyGrant, Message, Profile
from cipherroom.schemas.message import MessagePayload, MessageRow

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


@dataclass(frozen=True)
class ChannelRecord:
    """Encryption-relevant view of a channel."""

    channel_id: str
    encryption_enabled: bool
    encryption_resolved: bool = False


@runtime_checkable
class IdentityDirectory(Protocol):
    """Public key lookup and publication."""

    async def get_public_key(self, user_id: str) -> str | None: ...

    async def set_public_key(self, user_id: str, public_key: str) -> None: ...


@runtime_checkable
class ChannelGrantStore(Protocol):
    """Storage for wrapped channel keys, one per (channel, member)."""

    async def get_grant(self, channel_id: str, user_id: str) -> str | None: ...

    async def put_grant(self, channel_id: str, user_id: str, wrapped_key: str) -> None: ...

    async def delete_grant(self, channel_id: str, user_id: str) -> None: ...


@runtime_checkable
class ChannelRegistry(Protocol):
    """Channel encryption flags."""

    async def get_channel(self, channel_id: str) -> ChannelRecord | None: ...

    async def resolve_encryption(self, channel_id: str, enabled: bool) -> ChannelRecord: ...


def _default_session_factory() -> SessionFactory:
    from cipherroom.db.session import SessionLocal

    return SessionLocal


class _SqlStore:
    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session_factory = session_factory or _default_session_factory()


class SqlIdentityDirectory(_SqlStore):
    """Identity directory backed by the ``profiles`` table."""

    def _get(self, user_id: str) -> str | None:
        with self._session_factory() as db:
            profile = db.get(Profile, user_id)
            return profile.public_key if profile is not None else None

    def _set(self, user_id: str, public_key: str) -> None:
        with self._session_factory() as db:
            profile = db.get(Profile, user_id)
            if profile is None:
                profile = Profile(id=user_id)
                db.add(profile)
            profile.public_key = public_key
            db.commit()

    async def get_public_key(self, user_id: str) -> str | None:
        return await asyncio.to_thread(self._get, user_id)

    async def set_public_key(self, user_id: str, public_key: str) -> None:
        await asyncio.to_thread(self._set, user_id, public_key)


class SqlChannelGrantStore(_SqlStore):
    """Grant store backed by the ``channel_keys`` table."""

    def _get(self, channel_id: str, user_id: str) -> str | None:
        with self._session_factory() as db:
            grant = db.get(ChannelKeyGrant, (channel_id, user_id))
            return grant.encrypted_key if grant is not None else None

    def _put(self, channel_id: str, user_id: str, wrapped_key: str) -> None:
        with self._session_factory() as db:
            if db.get(Channel, channel_id) is None:
                db.add(Channel(id=channel_id))
                db.flush()
            grant = db.get(ChannelKeyGrant, (channel_id, user_id))
            if grant is None:
                db.add(
                    ChannelKeyGrant(
                        channel_id=channel_id, user_id=user_id, encrypted_key=wrapped_key
                    )
                )
            else:
                grant.encrypted_key = wrapped_key
            db.commit()

    def _delete(self, channel_id: str, user_id: str) -> None:
        with self._session_factory() as db:
            grant = db.get(ChannelKeyGrant, (channel_id, user_id))
            if grant is not None:
                db.delete(grant)
                db.commit()

    async def get_grant(self, channel_id: str, user_id: str) -> str | None:
        return await asyncio.to_thread(self._get, channel_id, user_id)

    async def put_grant(self, channel_id: str, user_id: str, wrapped_key: str) -> None:
        await asyncio.to_thread(self._put, channel_id, user_id, wrapped_key)

    async def delete_grant(self, channel_id: str, user_id: str) -> None:
        await asyncio.to_thread(self._delete, channel_id, user_id)


class SqlChannelRegistry(_SqlStore):
    """Channel registry backed by the ``channels`` table."""

    @staticmethod
    def _record(channel: Channel) -> ChannelRecord:
        return ChannelRecord(
            channel_id=channel.id,
            encryption_enabled=bool(channel.encryption_enabled),
            encryption_resolved=bool(channel.encryption_resolved),
        )

    def _get(self, channel_id: str) -> ChannelRecord | None:
        with self._session_factory() as db:
            channel = db.get(Channel, channel_id)
            return self._record(channel) if channel is not None else None

    def _resolve(self, channel_id: str, enabled: bool) -> ChannelRecord:
        with self._session_factory() as db:
            channel = db.get(Channel, channel_id)
            if channel is None:
                channel = Channel(id=channel_id)
                db.add(channel)
            elif channel.encryption_resolved:
                # The creation-time decision is final.
                return self._record(channel)
            channel.encryption_enabled = enabled
            channel.encryption_resolved = True
            db.commit()
            return self._record(channel)

    async def get_channel(self, channel_id: str) -> ChannelRecord | None:
        return await asyncio.to_thread(self._get, channel_id)

    async def resolve_encryption(self, channel_id: str, enabled: bool) -> ChannelRecord:
        return await asyncio.to_thread(self._resolve, channel_id, enabled)


class SqlMessageStore(_SqlStore):
    """Message store backed by the ``messages`` table."""

    @staticmethod
    def _row(message: Message) -> MessageRow:
        payload = dict(message.payload or {})
        if not message.is_encrypted and payload.pop("iv", None) is not None:
            logger.warning("Ignoring nonce stored on plaintext message %s", message.id)
        return MessageRow(
            message_id=str(message.id),
            channel_id=message.channel_id,
            sender_id=message.sender_id,
            content=message.content,
            is_encrypted=message.is_encrypted,
            payload=MessagePayload.model_validate(payload),
        )

    def _add(self, row: MessageRow) -> MessageRow:
        with self._session_factory() as db:
            message = Message(channel_id=row.channel_id, sender_id=row.sender_id, **row.to_record())
            db.add(message)
            db.commit()
            db.refresh(message)
            return self._row(message)

    def _list(self, channel_id: str) -> list[MessageRow]:
        with self._session_factory() as db:
            stmt = select(Message).where(Message.channel_id == channel_id).order_by(Message.id)
            return [self._row(message) for message in db.scalars(stmt)]

    async def add_message(self, row: MessageRow) -> MessageRow:
        return await asyncio.to_thread(self._add, row)

    async def list_messages(self, channel_id: str) -> list[MessageRow]:
        return await asyncio.to_thread(self._list, channel_id)
