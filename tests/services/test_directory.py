import pytest

from cipherroom.models import Message
from cipherroom.schemas.message import MessagePayload, MessageRow
from cipherroom.services.directory import (
    ChannelGrantStore,
    ChannelRecord,
    ChannelRegistry,
    IdentityDirectory,
)


def test_sql_stores_satisfy_the_core_protocols(directory, grant_store, registry) -> None:
    assert isinstance(directory, IdentityDirectory)
    assert isinstance(grant_store, ChannelGrantStore)
    assert isinstance(registry, ChannelRegistry)


@pytest.mark.asyncio
async def test_public_key_publication(directory) -> None:
    assert await directory.get_public_key("alice") is None

    await directory.set_public_key("alice", '{"kty":"RSA","n":"abc","e":"AQAB"}')

    assert await directory.get_public_key("alice") == '{"kty":"RSA","n":"abc","e":"AQAB"}'


@pytest.mark.asyncio
async def test_grants_are_keyed_by_channel_and_member(grant_store) -> None:
    await grant_store.put_grant("general", "alice", "blob-a")
    await grant_store.put_grant("general", "bob", "blob-b")
    await grant_store.put_grant("random", "alice", "blob-c")

    assert await grant_store.get_grant("general", "alice") == "blob-a"
    assert await grant_store.get_grant("general", "bob") == "blob-b"
    assert await grant_store.get_grant("random", "alice") == "blob-c"
    assert await grant_store.get_grant("random", "bob") is None


@pytest.mark.asyncio
async def test_put_grant_replaces_and_delete_removes(grant_store) -> None:
    await grant_store.put_grant("general", "alice", "old")
    await grant_store.put_grant("general", "alice", "new")
    assert await grant_store.get_grant("general", "alice") == "new"

    await grant_store.delete_grant("general", "alice")
    await grant_store.delete_grant("general", "alice")
    assert await grant_store.get_grant("general", "alice") is None


@pytest.mark.asyncio
async def test_first_resolution_is_final(registry) -> None:
    assert await registry.get_channel("general") is None

    first = await registry.resolve_encryption("general", True)
    second = await registry.resolve_encryption("general", False)

    assert first == ChannelRecord("general", encryption_enabled=True, encryption_resolved=True)
    assert second == first
    assert await registry.get_channel("general") == first


@pytest.mark.asyncio
async def test_granting_before_resolution_leaves_channel_unresolved(grant_store, registry) -> None:
    await grant_store.put_grant("general", "alice", "blob")

    record = await registry.get_channel("general")

    assert record == ChannelRecord("general", encryption_enabled=False, encryption_resolved=False)


@pytest.mark.asyncio
async def test_message_store_keeps_order_and_payload(registry, message_store) -> None:
    await registry.resolve_encryption("general", True)
    files = [{"name": "a.png"}]
    await message_store.add_message(
        MessageRow(
            channel_id="general",
            sender_id="alice",
            content="Y2lwaGVy",
            is_encrypted=True,
            payload=MessagePayload(iv="bm9uY2U=", files=files),
        )
    )
    await message_store.add_message(
        MessageRow(channel_id="general", sender_id="bob", content="plain")
    )

    rows = await message_store.list_messages("general")

    assert [row.sender_id for row in rows] == ["alice", "bob"]
    assert rows[0].is_encrypted
    assert rows[0].payload.iv == "bm9uY2U="
    assert rows[0].payload.model_dump()["files"] == files
    assert rows[1].payload.iv is None
    assert all(row.message_id for row in rows)
    assert await message_store.list_messages("random") == []


@pytest.mark.asyncio
async def test_stray_nonce_on_plaintext_row_does_not_break_history(
    session_factory, registry, message_store
) -> None:
    await registry.resolve_encryption("general", False)
    with session_factory() as db:
        db.add(Message(channel_id="general", content="legacy", payload={"iv": "AAAA"}))
        db.add(Message(channel_id="general", content="fine", payload={}))
        db.commit()

    rows = await message_store.list_messages("general")

    assert [row.content for row in rows] == ["legacy", "fine"]
    assert rows[0].payload.iv is None
    assert not rows[0].is_encrypted
