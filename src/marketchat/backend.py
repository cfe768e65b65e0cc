from __future__ import annotations

import itertools
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping

from .channels import LocalHub, RowChanged
from .errors import BackendError
from .models import DELETED_PLACEHOLDER, format_ts, parse_ts


class Backend:
    """Remote collaborators consumed by the messaging core.

    Every method returns plain rows shaped like the hosted database's
    responses; the domain layer parses them.
    """

    async def get_user_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> None:
        raise NotImplementedError

    async def mark_conversation_unread(self, conversation_id: str, sender_id: str) -> None:
        raise NotImplementedError

    async def create_conversation(self, user_a: str, user_b: str, item_id: str | None = None) -> str:
        raise NotImplementedError

    async def get_conversation(self, conversation_id: str) -> Dict[str, Any] | None:
        raise NotImplementedError

    async def fetch_messages(
        self, conversation_id: str, *, limit: int, before: datetime | None = None
    ) -> List[Dict[str, Any]]:
        """Return the newest ``limit`` messages older than ``before``, newest first."""

        raise NotImplementedError

    async def fetch_message(self, message_id: str) -> Dict[str, Any] | None:
        raise NotImplementedError

    async def insert_message(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def mark_messages_read(self, conversation_id: str, user_id: str) -> None:
        raise NotImplementedError

    async def touch_conversation(self, conversation_id: str) -> None:
        raise NotImplementedError

    async def is_blocked(self, blocker_id: str, blocked_id: str) -> bool:
        raise NotImplementedError

    async def soft_delete_message(self, message_id: str, sender_id: str) -> None:
        raise NotImplementedError

    async def block_user(self, blocker_id: str, blocked_id: str, reason: str | None = None) -> None:
        raise NotImplementedError

    async def unblock_user(self, blocker_id: str, blocked_id: str) -> None:
        raise NotImplementedError

    async def get_blocked_users(self, blocker_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def report_user(self, row: Mapping[str, Any]) -> None:
        raise NotImplementedError

    async def add_reaction(self, message_id: str, user_id: str, emoji: str) -> None:
        raise NotImplementedError

    async def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid_ids(prefix: str) -> str:
    return str(uuid.uuid4())


class SequentialIds:
    """Predictable ids (``c1``, ``m1``, ...) for simulations and tests."""

    def __init__(self) -> None:
        self._counters: Dict[str, itertools.count] = {}

    def __call__(self, prefix: str) -> str:
        counter = self._counters.setdefault(prefix, itertools.count(1))
        return f"{prefix}{next(counter)}"


@dataclass
class _ConversationRow:
    id: str
    buyer_id: str
    seller_id: str
    item_id: str | None
    created_at: datetime
    updated_at: datetime
    last_message_at: datetime | None = None
    unread: Dict[str, int] = field(default_factory=dict)


class InMemoryBackend(Backend):
    """Process-local backend with the same invariants as the hosted one.

    When a ``LocalHub`` is supplied, inserts and conversation changes are
    published to it the way the realtime service would.
    """

    def __init__(
        self,
        *,
        hub: LocalHub | None = None,
        now_func: Callable[[], datetime] = _utc_now,
        id_func: Callable[[str], str] = _uuid_ids,
    ) -> None:
        self._hub = hub
        self._now = now_func
        self._new_id = id_func
        self._users: Dict[str, Dict[str, Any]] = {}
        self._items: Dict[str, Dict[str, Any]] = {}
        self._conversations: Dict[str, _ConversationRow] = {}
        self._messages: Dict[str, Dict[str, Any]] = {}
        self._message_order: List[str] = []
        self._blocks: Dict[tuple[str, str], Dict[str, Any]] = {}
        self._reactions: Dict[tuple[str, str, str], Dict[str, Any]] = {}
        self.reports: List[Dict[str, Any]] = []
        self.calls: List[tuple[str, tuple]] = []

    def add_user(self, user_id: str, username: str, avatar_url: str | None = None) -> None:
        self._users[user_id] = {"id": user_id, "username": username, "avatar_url": avatar_url}

    def add_item(
        self, item_id: str, title: str, *, price: float | None = None, images: Iterable[str] = (), status: str = "active"
    ) -> None:
        self._items[item_id] = {
            "id": item_id,
            "title": title,
            "price": price,
            "images": list(images),
            "status": status,
        }

    def add_message(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        """Seed a message row as-is, without publishing it."""

        stored = dict(row)
        stored.setdefault("id", self._new_id("m"))
        stored.setdefault("metadata", {})
        stored.setdefault("read_at", None)
        stored.setdefault("is_deleted", False)
        stored["created_at"] = format_ts(parse_ts(stored.get("created_at")) or self._now())
        self._messages[stored["id"]] = stored
        self._message_order.append(stored["id"])
        return self._joined(stored)

    def conversation_count(self) -> int:
        return len(self._conversations)

    def unread_count(self, conversation_id: str, user_id: str) -> int:
        return self._require_conversation(conversation_id).unread.get(user_id, 0)

    async def get_user_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        self.calls.append(("get_user_conversations", (user_id,)))
        rows = []
        for conversation in self._conversations.values():
            if user_id not in (conversation.buyer_id, conversation.seller_id):
                continue
            other_id = conversation.seller_id if user_id == conversation.buyer_id else conversation.buyer_id
            last = self._last_message(conversation.id)
            rows.append(
                {
                    "id": conversation.id,
                    "item_id": conversation.item_id,
                    "created_at": format_ts(conversation.created_at),
                    "updated_at": format_ts(conversation.updated_at),
                    "last_message_at": format_ts(conversation.last_message_at),
                    "unread_count": conversation.unread.get(user_id, 0),
                    "other_user": self._profile(other_id),
                    "item": self._item_summary(conversation.item_id),
                    "last_message": (
                        {
                            "content": last["content"],
                            "message_type": last["message_type"],
                            "created_at": last["created_at"],
                            "sender_id": last["sender_id"],
                        }
                        if last
                        else None
                    ),
                }
            )
        rows.sort(key=lambda row: parse_ts(row["created_at"]), reverse=True)
        rows.sort(key=lambda row: (row["last_message_at"] is not None, parse_ts(row["last_message_at"]) or _EPOCH), reverse=True)
        return rows

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> None:
        self.calls.append(("mark_conversation_read", (conversation_id, user_id)))
        conversation = self._require_conversation(conversation_id)
        conversation.unread[user_id] = 0
        self._publish_conversation_change(conversation, "UPDATE")

    async def mark_conversation_unread(self, conversation_id: str, sender_id: str) -> None:
        self.calls.append(("mark_conversation_unread", (conversation_id, sender_id)))
        conversation = self._require_conversation(conversation_id)
        for participant in (conversation.buyer_id, conversation.seller_id):
            if participant != sender_id:
                conversation.unread[participant] = conversation.unread.get(participant, 0) + 1
        self._publish_conversation_change(conversation, "UPDATE")

    async def create_conversation(self, user_a: str, user_b: str, item_id: str | None = None) -> str:
        self.calls.append(("create_conversation", (user_a, user_b, item_id)))
        if user_a == user_b:
            raise BackendError("cannot start a conversation with yourself", status=400)
        for conversation in self._conversations.values():
            if conversation.item_id == item_id and {conversation.buyer_id, conversation.seller_id} == {user_a, user_b}:
                return conversation.id
        now = self._now()
        conversation = _ConversationRow(
            id=self._new_id("c"),
            buyer_id=user_a,
            seller_id=user_b,
            item_id=item_id,
            created_at=now,
            updated_at=now,
            unread={user_a: 0, user_b: 0},
        )
        self._conversations[conversation.id] = conversation
        self._publish_conversation_change(conversation, "INSERT")
        return conversation.id

    async def get_conversation(self, conversation_id: str) -> Dict[str, Any] | None:
        self.calls.append(("get_conversation", (conversation_id,)))
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        return {
            "id": conversation.id,
            "buyer_id": conversation.buyer_id,
            "seller_id": conversation.seller_id,
            "item_id": conversation.item_id,
            "last_message_at": format_ts(conversation.last_message_at),
            "buyer": self._profile(conversation.buyer_id),
            "seller": self._profile(conversation.seller_id),
            "item": self._item_summary(conversation.item_id),
        }

    async def fetch_messages(
        self, conversation_id: str, *, limit: int, before: datetime | None = None
    ) -> List[Dict[str, Any]]:
        self.calls.append(("fetch_messages", (conversation_id, limit, before)))
        rows = [
            self._messages[message_id]
            for message_id in self._message_order
            if self._messages[message_id]["conversation_id"] == conversation_id
        ]
        if before is not None:
            rows = [row for row in rows if parse_ts(row["created_at"]) < before]
        rows.sort(key=lambda row: parse_ts(row["created_at"]))
        newest = list(reversed(rows))[: max(limit, 0)]
        return [self._joined(row) for row in newest]

    async def fetch_message(self, message_id: str) -> Dict[str, Any] | None:
        self.calls.append(("fetch_message", (message_id,)))
        row = self._messages.get(message_id)
        return self._joined(row) if row else None

    async def insert_message(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        self.calls.append(("insert_message", (row.get("conversation_id"),)))
        conversation = self._require_conversation(str(row.get("conversation_id")))
        sender_id = str(row.get("sender_id") or "")
        if sender_id not in (conversation.buyer_id, conversation.seller_id):
            raise BackendError("sender is not a participant", status=403, code="42501")
        stored = {
            "id": self._new_id("m"),
            "conversation_id": conversation.id,
            "sender_id": sender_id,
            "message_type": row.get("message_type", "text"),
            "content": row.get("content") or "",
            "image_url": row.get("image_url"),
            "metadata": dict(row.get("metadata") or {}),
            "created_at": format_ts(self._now()),
            "read_at": None,
            "is_deleted": False,
        }
        self._messages[stored["id"]] = stored
        self._message_order.append(stored["id"])
        if self._hub is not None:
            self._hub.publish_insert(stored)
            self._hub.publish_change(
                RowChanged(table="messages", change_type="INSERT", record=dict(stored)),
                (conversation.buyer_id, conversation.seller_id),
            )
        return self._joined(stored)

    async def mark_messages_read(self, conversation_id: str, user_id: str) -> None:
        self.calls.append(("mark_messages_read", (conversation_id, user_id)))
        read_at = format_ts(self._now())
        for row in self._messages.values():
            if row["conversation_id"] == conversation_id and row["sender_id"] != user_id and row["read_at"] is None:
                row["read_at"] = read_at

    async def touch_conversation(self, conversation_id: str) -> None:
        self.calls.append(("touch_conversation", (conversation_id,)))
        conversation = self._require_conversation(conversation_id)
        now = self._now()
        conversation.last_message_at = now
        conversation.updated_at = now
        self._publish_conversation_change(conversation, "UPDATE")

    async def is_blocked(self, blocker_id: str, blocked_id: str) -> bool:
        self.calls.append(("is_blocked", (blocker_id, blocked_id)))
        return (blocker_id, blocked_id) in self._blocks

    async def soft_delete_message(self, message_id: str, sender_id: str) -> None:
        self.calls.append(("soft_delete_message", (message_id, sender_id)))
        row = self._messages.get(message_id)
        if row is None or row["sender_id"] != sender_id:
            return
        row["content"] = DELETED_PLACEHOLDER
        row["is_deleted"] = True

    async def block_user(self, blocker_id: str, blocked_id: str, reason: str | None = None) -> None:
        self.calls.append(("block_user", (blocker_id, blocked_id)))
        key = (blocker_id, blocked_id)
        if key in self._blocks:
            raise BackendError("user is already blocked", status=409, code="23505")
        self._blocks[key] = {
            "id": self._new_id("b"),
            "blocker_id": blocker_id,
            "blocked_id": blocked_id,
            "reason": reason,
            "created_at": format_ts(self._now()),
        }

    async def unblock_user(self, blocker_id: str, blocked_id: str) -> None:
        self.calls.append(("unblock_user", (blocker_id, blocked_id)))
        self._blocks.pop((blocker_id, blocked_id), None)

    async def get_blocked_users(self, blocker_id: str) -> List[Dict[str, Any]]:
        self.calls.append(("get_blocked_users", (blocker_id,)))
        return [
            dict(row, blocked_user=self._profile(row["blocked_id"]))
            for (blocker, _), row in self._blocks.items()
            if blocker == blocker_id
        ]

    async def report_user(self, row: Mapping[str, Any]) -> None:
        self.calls.append(("report_user", (row.get("reported_user_id"),)))
        stored = dict(row)
        stored.setdefault("id", self._new_id("r"))
        stored.setdefault("created_at", format_ts(self._now()))
        self.reports.append(stored)

    async def add_reaction(self, message_id: str, user_id: str, emoji: str) -> None:
        self.calls.append(("add_reaction", (message_id, user_id, emoji)))
        if message_id not in self._messages:
            raise BackendError("unknown message", status=409, code="23503")
        self._reactions[(message_id, user_id, emoji)] = {
            "message_id": message_id,
            "user_id": user_id,
            "emoji": emoji,
            "created_at": format_ts(self._now()),
        }

    async def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> None:
        self.calls.append(("remove_reaction", (message_id, user_id, emoji)))
        self._reactions.pop((message_id, user_id, emoji), None)

    def call_count(self, name: str) -> int:
        return sum(1 for call_name, _ in self.calls if call_name == name)

    def _require_conversation(self, conversation_id: str) -> _ConversationRow:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise BackendError("unknown conversation", status=404, code="PGRST116")
        return conversation

    def _profile(self, user_id: str) -> Dict[str, Any]:
        return dict(self._users.get(user_id) or {"id": user_id, "username": user_id, "avatar_url": None})

    def _item_summary(self, item_id: str | None) -> Dict[str, Any] | None:
        if item_id is None:
            return None
        item = self._items.get(item_id)
        if item is None:
            return {"id": item_id, "title": "", "images": [], "price": None, "status": None}
        return dict(item)

    def _last_message(self, conversation_id: str) -> Dict[str, Any] | None:
        rows = [row for row in self._messages.values() if row["conversation_id"] == conversation_id]
        if not rows:
            return None
        return max(rows, key=lambda row: parse_ts(row["created_at"]))

    def _joined(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        reactions = [
            {
                "emoji": reaction["emoji"],
                "user_id": reaction["user_id"],
                "users": {"username": self._profile(reaction["user_id"])["username"]},
            }
            for (message_id, _, _), reaction in self._reactions.items()
            if message_id == row["id"]
        ]
        return dict(row, sender=self._profile(str(row["sender_id"])), reactions=reactions)

    def _publish_conversation_change(self, conversation: _ConversationRow, change_type: str) -> None:
        if self._hub is None:
            return
        record = {
            "id": conversation.id,
            "buyer_id": conversation.buyer_id,
            "seller_id": conversation.seller_id,
            "item_id": conversation.item_id,
        }
        self._hub.publish_change(
            RowChanged(table="conversations", change_type=change_type, record=record),
            (conversation.buyer_id, conversation.seller_id),
        )
