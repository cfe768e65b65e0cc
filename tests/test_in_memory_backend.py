import asyncio
from datetime import timedelta

import pytest

from marketchat.channels import LocalHub, MessageInserted, RowChanged
from marketchat.errors import BackendError

from tests.support import SEED_START, make_backend, seed_messages


def test_insert_by_non_participant_is_rejected():
    backend = make_backend()

    async def scenario():
        conv_id = await backend.create_conversation("u1", "u2", "i1")
        await backend.insert_message({"conversation_id": conv_id, "sender_id": "u3", "content": "hi"})

    with pytest.raises(BackendError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.status == 403


def test_conversation_with_self_is_rejected():
    backend = make_backend()

    with pytest.raises(BackendError):
        asyncio.run(backend.create_conversation("u1", "u1", None))


def test_fetch_messages_returns_newest_first_before_cursor():
    backend = make_backend()

    async def scenario():
        conv_id = await backend.create_conversation("u1", "u2", "i1")
        ids = seed_messages(backend, conv_id, 10)
        rows = await backend.fetch_messages(conv_id, limit=3, before=SEED_START + timedelta(seconds=6))
        return ids, rows

    ids, rows = asyncio.run(scenario())

    assert [row["id"] for row in rows] == [ids[5], ids[4], ids[3]]
    assert rows[0]["sender"]["username"] in {"alice", "bob"}


def test_mark_messages_read_skips_own_messages():
    backend = make_backend()

    async def scenario():
        conv_id = await backend.create_conversation("u1", "u2", "i1")
        ids = seed_messages(backend, conv_id, 2, senders=("u1", "u2"))
        await backend.mark_messages_read(conv_id, "u1")
        return [await backend.fetch_message(message_id) for message_id in ids]

    own, theirs = asyncio.run(scenario())

    assert own["read_at"] is None
    assert theirs["read_at"] is not None


def test_insert_publishes_to_channels_and_feeds():
    hub = LocalHub()
    backend = make_backend(hub=hub)
    channel_events = []
    feed_events = []

    async def scenario():
        conv_id = await backend.create_conversation("u1", "u2", "i1")
        await hub.open_channel(conv_id, channel_events.append)
        await hub.open_change_feed("u2", feed_events.append)
        await backend.insert_message({"conversation_id": conv_id, "sender_id": "u1", "content": "hi"})
        return conv_id

    conv_id = asyncio.run(scenario())

    assert len(channel_events) == 1
    assert isinstance(channel_events[0], MessageInserted)
    assert channel_events[0].conversation_id == conv_id
    assert "sender" not in channel_events[0].record
    assert [type(event) for event in feed_events] == [RowChanged]
    assert feed_events[0].table == "messages"


def test_unread_counters_track_senders():
    backend = make_backend()

    async def scenario():
        conv_id = await backend.create_conversation("u1", "u2", "i1")
        await backend.mark_conversation_unread(conv_id, "u1")
        await backend.mark_conversation_unread(conv_id, "u1")
        await backend.mark_conversation_read(conv_id, "u1")
        return conv_id

    conv_id = asyncio.run(scenario())

    assert backend.unread_count(conv_id, "u2") == 2
    assert backend.unread_count(conv_id, "u1") == 0
