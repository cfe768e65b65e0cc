from __future__ import annotations

import asyncio
import logging
from typing import Callable, List

from .backend import Backend
from .channels import Channel, ChannelEvent, Transport
from .errors import MessagingError, NotAuthenticatedError, TransportError, ValidationError
from .models import ConversationSummary

logger = logging.getLogger(__name__)


class ConversationListAggregator:
    """The signed-in user's conversation list, kept fresh by full reloads.

    The server owns unread counters; every change notification triggers a
    reload instead of patching counts locally. Notifications that arrive while
    a reload is running collapse into a single follow-up reload.
    """

    def __init__(
        self,
        backend: Backend,
        user_id: str | None,
        *,
        transport: Transport | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        if not user_id:
            raise NotAuthenticatedError("Not authenticated")
        self.user_id = user_id
        self.conversations: List[ConversationSummary] = []
        self.is_loading = True
        self.error: str | None = None
        self._backend = backend
        self._transport = transport
        self._on_change = on_change
        self._feed: Channel | None = None
        self._reload_task: asyncio.Task | None = None
        self._reload_pending = False
        self._closed = False

    @property
    def total_unread_count(self) -> int:
        return sum(conversation.unread_count for conversation in self.conversations)

    def get(self, conversation_id: str) -> ConversationSummary | None:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    async def start(self) -> None:
        await self.load_conversations()
        if self._transport is None or self._closed:
            return
        try:
            self._feed = await self._transport.open_change_feed(self.user_id, self._on_row_changed)
        except TransportError as exc:
            logger.warning("subscribing to conversation changes for %s failed: %s", self.user_id, exc)
            self.error = "Failed to subscribe to conversation updates"
            self._changed()

    async def stop(self) -> None:
        self._closed = True
        if self._feed is not None:
            feed, self._feed = self._feed, None
            await feed.close()
        if self._reload_task is not None:
            self._reload_task.cancel()
            await asyncio.gather(self._reload_task, return_exceptions=True)
            self._reload_task = None

    async def load_conversations(self) -> List[ConversationSummary]:
        self.is_loading = True
        try:
            rows = await self._backend.get_user_conversations(self.user_id)
            conversations = [ConversationSummary.from_row(row) for row in rows]
        except Exception:
            logger.exception("loading conversations for %s failed", self.user_id)
            if not self._closed:
                self.error = "Failed to load conversations"
                self._changed()
            return list(self.conversations)
        finally:
            self.is_loading = False
        if self._closed:
            return conversations
        self.conversations = conversations
        self._changed()
        return conversations

    def clear_error(self) -> None:
        self.error = None

    def request_reload(self) -> asyncio.Task | None:
        if self._closed:
            return None
        if self._reload_task is not None and not self._reload_task.done():
            self._reload_pending = True
            return self._reload_task
        self._reload_task = asyncio.create_task(self._reload_until_settled())
        return self._reload_task

    def pending(self) -> List[asyncio.Task]:
        if self._reload_task is None or self._reload_task.done():
            return []
        return [self._reload_task]

    async def drain(self) -> None:
        while self._reload_task is not None and not self._reload_task.done():
            await asyncio.gather(self._reload_task, return_exceptions=True)

    async def mark_conversation_as_read(self, conversation_id: str) -> bool:
        """Zero the caller's unread counter remotely and in the local list.

        The local count drops before the call returns; it is restored if the
        call fails. Errors are logged rather than raised.
        """

        summary = self.get(conversation_id)
        previous = summary.unread_count if summary is not None else None
        if summary is not None:
            summary.unread_count = 0
            self._changed()
        try:
            await self._backend.mark_conversation_read(conversation_id, self.user_id)
        except MessagingError as exc:
            logger.warning("marking conversation %s read failed: %s", conversation_id, exc)
            if summary is not None and previous is not None and self.get(conversation_id) is summary:
                summary.unread_count = previous
                self._changed()
            return False
        return True

    async def create_conversation(self, other_user_id: str, item_id: str | None = None) -> str:
        if not other_user_id:
            raise ValidationError("other_user_id is required")
        if other_user_id == self.user_id:
            raise ValidationError("cannot start a conversation with yourself")
        try:
            conversation_id = await self._backend.create_conversation(self.user_id, other_user_id, item_id)
        except MessagingError:
            logger.exception("creating conversation with %s failed", other_user_id)
            raise
        self.request_reload()
        return conversation_id

    def _on_row_changed(self, event: ChannelEvent) -> None:
        self.request_reload()

    async def _reload_until_settled(self) -> None:
        while True:
            self._reload_pending = False
            await self.load_conversations()
            if self._closed or not self._reload_pending:
                return

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()
