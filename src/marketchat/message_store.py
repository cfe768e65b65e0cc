from __future__ import annotations

import bisect
import dataclasses
import logging
from typing import Any, Callable, Dict, Iterable, List, Set

from .backend import Backend
from .config import MessagingConfig
from .errors import BlockedSenderError, ValidationError
from .models import DELETED_PLACEHOLDER, MESSAGE_TYPES, ConversationDetail, Message

logger = logging.getLogger(__name__)


class MessageStore:
    """Ordered, de-duplicated message list for one conversation.

    Messages stay sorted by ``created_at``. A message id is kept at most once,
    whether it arrives from a fetch, from ``send_message`` or from a realtime
    push. Results that land after ``close`` are dropped.

    A load marks the fetched messages read. With ``reset_unread`` it also resets
    the conversation's unread counter; sessions leave that to the read-state
    committer.
    """

    def __init__(
        self,
        backend: Backend,
        conversation_id: str,
        user_id: str,
        *,
        config: MessagingConfig | None = None,
        on_change: Callable[[], None] | None = None,
        reset_unread: bool = True,
    ) -> None:
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.messages: List[Message] = []
        self.detail: ConversationDetail | None = None
        self.is_loading = True
        self.error: str | None = None
        self.has_more = True
        self.closed = False
        self._backend = backend
        self._config = config or MessagingConfig()
        self._on_change = on_change
        self._ids: Set[str] = set()
        self._loading_more = False
        self._reset_unread = reset_unread

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self.messages)

    @property
    def message_ids(self) -> List[str]:
        return [message.id for message in self.messages]

    def close(self) -> None:
        self.closed = True

    async def load(self) -> List[Message]:
        self.is_loading = True
        limit = self._config.initial_page_size
        try:
            detail_row = await self._backend.get_conversation(self.conversation_id)
            rows = await self._backend.fetch_messages(self.conversation_id, limit=limit)
            loaded = [Message.from_row(row) for row in rows]
        except Exception:
            logger.exception("loading messages for %s failed", self.conversation_id)
            if not self.closed:
                self.error = "Failed to load messages"
                self._changed()
            return list(self.messages)
        finally:
            self.is_loading = False
        if self.closed:
            return []
        if detail_row is not None:
            self.detail = ConversationDetail.from_row(detail_row)
        self._merge(loaded)
        self.has_more = len(rows) >= limit
        self._changed()
        await self._mark_loaded_read()
        return list(self.messages)

    async def refresh(self) -> List[Message]:
        return await self.load()

    async def load_more_messages(self) -> List[Message]:
        """Prepend up to one page of messages older than the oldest one held."""

        if self.closed or not self.messages or self._loading_more:
            return []
        cursor = self.messages[0].created_at
        limit = self._config.page_size
        self._loading_more = True
        try:
            rows = await self._backend.fetch_messages(self.conversation_id, limit=limit, before=cursor)
            older = [Message.from_row(row) for row in rows]
        except Exception:
            logger.exception("loading older messages for %s failed", self.conversation_id)
            if not self.closed:
                self.error = "Failed to load older messages"
                self._changed()
            return []
        finally:
            self._loading_more = False
        if self.closed:
            return []
        self.has_more = len(rows) >= limit
        fresh = [message for message in older if message.created_at < cursor and message.id not in self._ids]
        fresh.sort(key=lambda message: message.created_at)
        if fresh:
            for message in fresh:
                self._ids.add(message.id)
            self.messages[:0] = fresh
            self._changed()
        return fresh

    def receive(self, message: Message) -> bool:
        """Insert a message at its timestamp position; returns False for duplicates."""

        if self.closed or message.conversation_id != self.conversation_id:
            return False
        if message.id in self._ids:
            return False
        self._insert(message)
        self._changed()
        return True

    def apply_deletion(self, message_id: str) -> bool:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                self.messages[index] = dataclasses.replace(message, content=DELETED_PLACEHOLDER, is_deleted=True)
                self._changed()
                return True
        return False

    async def send_message(
        self,
        content: str,
        message_type: str = "text",
        offer_amount: float | None = None,
        *,
        image_url: str | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> Message:
        row = self._build_row(content, message_type, offer_amount, image_url, metadata)
        recipient_id = await self._recipient_id()
        if recipient_id and await self._backend.is_blocked(recipient_id, self.user_id):
            raise BlockedSenderError(sender_id=self.user_id, recipient_id=recipient_id)

        inserted = await self._backend.insert_message(row)
        message = Message.from_row(inserted)
        self.receive(message)
        await self._after_send()
        return message

    def _build_row(
        self,
        content: str,
        message_type: str,
        offer_amount: float | None,
        image_url: str | None,
        metadata: Dict[str, Any] | None,
    ) -> Dict[str, Any]:
        if message_type not in MESSAGE_TYPES:
            raise ValidationError(f"unsupported message type: {message_type}")
        text = (content or "").strip()
        if message_type == "image":
            if not image_url:
                raise ValidationError("image messages need an image_url")
        elif not text:
            raise ValidationError("message content is required")
        payload_metadata = dict(metadata or {})
        if message_type == "offer":
            if offer_amount is None:
                raise ValidationError("offer messages need an offer amount")
            try:
                amount = float(offer_amount)
            except (TypeError, ValueError) as exc:
                raise ValidationError("offer amount must be a number") from exc
            if amount <= 0:
                raise ValidationError("offer amount must be positive")
            payload_metadata["offer_amount"] = amount
        row: Dict[str, Any] = {
            "conversation_id": self.conversation_id,
            "sender_id": self.user_id,
            "message_type": message_type,
            "content": text,
        }
        if image_url:
            row["image_url"] = image_url
        if payload_metadata:
            row["metadata"] = payload_metadata
        return row

    async def _recipient_id(self) -> str | None:
        if self.detail is None:
            detail_row = await self._backend.get_conversation(self.conversation_id)
            if detail_row is None:
                raise ValidationError("unknown conversation")
            self.detail = ConversationDetail.from_row(detail_row)
        return self.detail.other_participant(self.user_id)

    async def _after_send(self) -> None:
        try:
            await self._backend.touch_conversation(self.conversation_id)
            await self._backend.mark_conversation_unread(self.conversation_id, self.user_id)
        except Exception:
            logger.exception("post-send bookkeeping for %s failed", self.conversation_id)

    async def _mark_loaded_read(self) -> None:
        try:
            await self._backend.mark_messages_read(self.conversation_id, self.user_id)
            if self._reset_unread:
                await self._backend.mark_conversation_read(self.conversation_id, self.user_id)
        except Exception:
            logger.exception("marking messages in %s read failed", self.conversation_id)

    def _merge(self, messages: Iterable[Message]) -> None:
        for message in messages:
            if message.id not in self._ids:
                self._insert(message)

    def _insert(self, message: Message) -> None:
        if not self.messages or self.messages[-1].created_at <= message.created_at:
            self.messages.append(message)
        else:
            index = bisect.bisect_right(self.messages, message.created_at, key=lambda m: m.created_at)
            self.messages.insert(index, message)
        self._ids.add(message.id)

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()
