from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Tuple, Union

from .errors import TransportError
from .models import PresenceRecord, TypingUser

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessageInserted:
    """A durable message row was inserted; ``record`` may lack the joined sender."""

    conversation_id: str
    record: Mapping[str, Any]


@dataclass(frozen=True)
class TypingStarted:
    user: TypingUser


@dataclass(frozen=True)
class TypingStopped:
    conversation_id: str
    user_id: str


@dataclass(frozen=True)
class PresenceSynced:
    conversation_id: str
    users: Tuple[PresenceRecord, ...]


@dataclass(frozen=True)
class RowChanged:
    table: str
    change_type: str
    record: Mapping[str, Any] = field(default_factory=dict)


ChannelEvent = Union[MessageInserted, TypingStarted, TypingStopped, PresenceSynced, RowChanged]
ChannelListener = Callable[[ChannelEvent], None]


class Channel:
    """One live subscription to a conversation (or to a user's change feed)."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id

    async def broadcast(self, event: str, payload: Mapping[str, Any]) -> None:
        raise NotImplementedError

    async def track(self, presence: PresenceRecord) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class Transport:
    async def open_channel(self, conversation_id: str, listener: ChannelListener) -> Channel:
        raise NotImplementedError

    async def open_change_feed(self, user_id: str, listener: ChannelListener) -> Channel:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class ChannelRegistry:
    """Owns the one channel per conversation id that a client keeps open.

    ``subscribe`` and ``unsubscribe`` are the only mutators; subscribing an id
    that is already open closes and replaces the previous channel.
    """

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._channels: Dict[str, Channel] = {}

    async def subscribe(self, conversation_id: str, listener: ChannelListener) -> Channel:
        previous = self._channels.pop(conversation_id, None)
        if previous is not None:
            await _close_quietly(previous)
        channel = await self._transport.open_channel(conversation_id, listener)
        self._channels[conversation_id] = channel
        return channel

    async def unsubscribe(self, conversation_id: str, channel: Channel | None = None) -> bool:
        current = self._channels.get(conversation_id)
        if current is None:
            return False
        if channel is not None and current is not channel:
            return False
        self._channels.pop(conversation_id, None)
        await _close_quietly(current)
        return True

    async def unsubscribe_all(self) -> int:
        conversation_ids = list(self._channels)
        for conversation_id in conversation_ids:
            await self.unsubscribe(conversation_id)
        return len(conversation_ids)

    def get(self, conversation_id: str) -> Channel | None:
        return self._channels.get(conversation_id)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._channels

    def __len__(self) -> int:
        return len(self._channels)


async def _close_quietly(channel: Channel) -> None:
    try:
        await channel.close()
    except TransportError as exc:
        logger.warning("closing channel for %s failed: %s", channel.conversation_id, exc)


class LocalChannel(Channel):
    def __init__(self, hub: "LocalHub", conversation_id: str, listener: ChannelListener) -> None:
        super().__init__(conversation_id)
        self._hub = hub
        self._listener = listener
        self.closed = False

    def deliver(self, event: ChannelEvent) -> None:
        if not self.closed:
            self._listener(event)

    async def broadcast(self, event: str, payload: Mapping[str, Any]) -> None:
        if self.closed:
            raise TransportError("channel is closed")
        self._hub.broadcast(self, event, payload)

    async def track(self, presence: PresenceRecord) -> None:
        if self.closed:
            raise TransportError("channel is closed")
        self._hub.track(self, presence)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._hub.leave(self)


class LocalHub(Transport):
    """In-process transport that fans events out to every subscriber of a conversation.

    Broadcasts skip the sending channel, matching the realtime service default.
    Presence is re-published as a full snapshot whenever it changes.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[LocalChannel]] = {}
        self._presence: Dict[str, Dict[int, PresenceRecord]] = {}
        self._feeds: Dict[str, List[LocalChannel]] = {}

    async def open_channel(self, conversation_id: str, listener: ChannelListener) -> Channel:
        channel = LocalChannel(self, conversation_id, listener)
        self._subscriptions.setdefault(conversation_id, []).append(channel)
        return channel

    async def open_change_feed(self, user_id: str, listener: ChannelListener) -> Channel:
        channel = LocalChannel(self, f"changes:{user_id}", listener)
        self._feeds.setdefault(user_id, []).append(channel)
        return channel

    def subscriber_count(self, conversation_id: str) -> int:
        return len(self._subscriptions.get(conversation_id, []))

    def publish_insert(self, record: Mapping[str, Any]) -> None:
        conversation_id = str(record.get("conversation_id") or "")
        event = MessageInserted(conversation_id=conversation_id, record=dict(record))
        for channel in list(self._subscriptions.get(conversation_id, [])):
            channel.deliver(event)

    def publish_change(self, change: RowChanged, user_ids: Iterable[str]) -> None:
        for user_id in set(user_ids):
            for channel in list(self._feeds.get(user_id, [])):
                channel.deliver(change)

    def broadcast(self, sender: LocalChannel, event: str, payload: Mapping[str, Any]) -> None:
        conversation_id = sender.conversation_id
        if event == "typing":
            delivered: ChannelEvent = TypingStarted(user=TypingUser.from_payload(payload))
        elif event == "stop_typing":
            delivered = TypingStopped(conversation_id=conversation_id, user_id=str(payload.get("user_id") or ""))
        else:
            logger.debug("dropping unknown broadcast %s on %s", event, conversation_id)
            return
        for channel in list(self._subscriptions.get(conversation_id, [])):
            if channel is not sender:
                channel.deliver(delivered)

    def track(self, channel: LocalChannel, presence: PresenceRecord) -> None:
        self._presence.setdefault(channel.conversation_id, {})[id(channel)] = presence
        self._sync(channel.conversation_id)

    def leave(self, channel: LocalChannel) -> None:
        feeds_removed = False
        for subscribers in self._feeds.values():
            if channel in subscribers:
                subscribers.remove(channel)
                feeds_removed = True
        if feeds_removed:
            return
        subscribers = self._subscriptions.get(channel.conversation_id, [])
        if channel in subscribers:
            subscribers.remove(channel)
        if not subscribers:
            self._subscriptions.pop(channel.conversation_id, None)
        roster = self._presence.get(channel.conversation_id, {})
        if roster.pop(id(channel), None) is not None:
            self._sync(channel.conversation_id)

    def _sync(self, conversation_id: str) -> None:
        snapshot = tuple(self._presence.get(conversation_id, {}).values())
        event = PresenceSynced(conversation_id=conversation_id, users=snapshot)
        for channel in list(self._subscriptions.get(conversation_id, [])):
            channel.deliver(event)
