from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Dict, List, Mapping, Set

from .backend import Backend
from .channels import (
    Channel,
    ChannelEvent,
    ChannelRegistry,
    MessageInserted,
    PresenceSynced,
    TypingStarted,
    TypingStopped,
)
from .config import MessagingConfig
from .errors import TransportError, ValidationError
from .indicators import PresenceReconciler, TypingReconciler
from .message_store import MessageStore
from .models import Message, PresenceRecord, Profile, TypingUser, format_ts
from .read_state import ReadStateCommitter
from .timers import TimerRegistry

logger = logging.getLogger(__name__)


class ConversationSession:
    """The open view of one conversation: messages, typing, presence and read state.

    ``open`` selects the conversation, subscribes to its channel and loads it.
    ``close`` cancels typing timers, drops in-flight results and releases the
    subscription; nothing changes state after that.
    """

    def __init__(
        self,
        backend: Backend,
        registry: ChannelRegistry,
        conversation_id: str,
        user: Profile,
        *,
        committer: ReadStateCommitter,
        config: MessagingConfig | None = None,
        timers: TimerRegistry | None = None,
        on_change: Callable[["ConversationSession"], None] | None = None,
    ) -> None:
        config = config or MessagingConfig()
        self.conversation_id = conversation_id
        self.user = user
        self.committer = committer
        self.channel: Channel | None = None
        self.error: str | None = None
        self.closed = False
        self._backend = backend
        self._registry = registry
        self._on_change = on_change
        self._tasks: Set[asyncio.Task] = set()
        self.store = MessageStore(
            backend, conversation_id, user.id, config=config, on_change=self._changed, reset_unread=False
        )
        self.typing = TypingReconciler(
            user.id,
            conversation_id,
            timeout_s=config.typing_timeout_s,
            timers=timers if timers is not None else TimerRegistry(),
            on_change=self._changed,
        )
        self.presence = PresenceReconciler(on_change=self._changed)

    @property
    def messages(self) -> List[Message]:
        return list(self.store.messages)

    @property
    def typing_users(self) -> List[TypingUser]:
        return self.typing.typing_users

    @property
    def online_users(self) -> List[PresenceRecord]:
        return self.presence.online_users

    @property
    def is_loading(self) -> bool:
        return self.store.is_loading

    async def __aenter__(self) -> "ConversationSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        self.committer.select(self.conversation_id)
        # Subscribed before the initial fetch; pushes that overlap it are deduplicated by id.
        try:
            channel = await self._registry.subscribe(self.conversation_id, self._on_event)
        except TransportError as exc:
            logger.warning("subscribing to %s failed: %s", self.conversation_id, exc)
            self.error = "Failed to connect to conversation"
            self._changed()
        else:
            if self.closed:
                await self._registry.unsubscribe(self.conversation_id, channel)
                return
            self.channel = channel
        await self.store.load()
        if self.closed or self.channel is None:
            return
        try:
            await self.track_presence()
        except TransportError as exc:
            logger.warning("tracking presence in %s failed: %s", self.conversation_id, exc)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.typing.close()
        self.presence.close()
        self.store.close()
        self.committer.deselect(self.conversation_id)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self.channel is not None:
            channel, self.channel = self.channel, None
            await self._registry.unsubscribe(self.conversation_id, channel)

    async def send_message(
        self,
        content: str,
        message_type: str = "text",
        offer_amount: float | None = None,
        *,
        image_url: str | None = None,
    ) -> Message:
        if self.closed:
            raise ValidationError("conversation is closed")
        return await self.store.send_message(content, message_type, offer_amount, image_url=image_url)

    async def load_more_messages(self) -> List[Message]:
        return await self.store.load_more_messages()

    async def refresh(self) -> List[Message]:
        return await self.store.refresh()

    async def send_typing(self) -> None:
        typing = TypingUser(user_id=self.user.id, username=self.user.username, conversation_id=self.conversation_id)
        await self._require_channel().broadcast("typing", typing.to_payload())

    async def send_stop_typing(self) -> None:
        await self._require_channel().broadcast("stop_typing", {"user_id": self.user.id})

    async def track_presence(self) -> None:
        presence = PresenceRecord(
            user_id=self.user.id,
            username=self.user.username or "Anonymous",
            avatar_url=self.user.avatar_url,
            online_at=format_ts(datetime.now(timezone.utc)),
        )
        await self._require_channel().track(presence)

    def pending(self) -> List[asyncio.Task]:
        return [task for task in self._tasks if not task.done()]

    async def drain(self) -> None:
        while self.pending():
            await asyncio.gather(*self.pending(), return_exceptions=True)
        await self.committer.drain()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "user_id": self.user.id,
            "messages": [message.to_dict() for message in self.store.messages],
            "typing": [user.user_id for user in self.typing.typing_users],
            "online": sorted(record.user_id for record in self.presence.online_users),
            "has_more": self.store.has_more,
            "error": self.error or self.store.error,
        }

    def _require_channel(self) -> Channel:
        if self.closed or self.channel is None:
            raise TransportError(f"not subscribed to {self.conversation_id}")
        return self.channel

    def _on_event(self, event: ChannelEvent) -> None:
        if self.closed:
            return
        if isinstance(event, MessageInserted):
            self._spawn(self._handle_insert(event.record))
        elif isinstance(event, TypingStarted):
            self.typing.on_typing(event.user)
        elif isinstance(event, TypingStopped):
            self.typing.on_stop_typing(event.user_id)
        elif isinstance(event, PresenceSynced):
            self.presence.on_sync(event.users)

    async def _handle_insert(self, record: Mapping[str, Any]) -> None:
        message_id = record.get("id")
        if not message_id or str(message_id) in self.store:
            return
        row = record
        if not record.get("sender") or not record.get("created_at"):
            try:
                fetched = await self._backend.fetch_message(str(message_id))
            except Exception:
                logger.exception("fetching pushed message %s failed", message_id)
                return
            if fetched is None:
                return
            row = fetched
        if self.closed:
            return
        try:
            message = Message.from_row(row)
        except (KeyError, ValueError) as exc:
            logger.warning("dropping malformed message %s: %s", message_id, exc)
            return
        self.store.receive(message)
        self.committer.on_message(message)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _changed(self) -> None:
        if not self.closed and self._on_change is not None:
            self._on_change(self)
