from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Tuple

MESSAGE_TYPES = ("text", "image", "offer", "inquiry")
DELETED_PLACEHOLDER = "This message was deleted"


def parse_ts(value: Any) -> datetime | None:
    """Parse a backend timestamp into an aware UTC datetime.

    PostgREST emits ISO-8601 strings; naive values are taken to be UTC so that
    rows from different sources always compare.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"unsupported timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


@dataclass(frozen=True)
class Profile:
    id: str
    username: str
    avatar_url: str | None = None
    first_name: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any] | None) -> "Profile | None":
        if not row or not row.get("id"):
            return None
        return cls(
            id=str(row["id"]),
            username=str(row.get("username") or ""),
            avatar_url=row.get("avatar_url"),
            first_name=row.get("first_name"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "username": self.username, "avatar_url": self.avatar_url}


@dataclass(frozen=True)
class ItemSummary:
    id: str
    title: str
    images: Tuple[str, ...] = ()
    price: float | None = None
    status: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any] | None) -> "ItemSummary | None":
        if not row or not row.get("id"):
            return None
        images = row.get("images") or ()
        price = row.get("price")
        return cls(
            id=str(row["id"]),
            title=str(row.get("title") or ""),
            images=tuple(str(image) for image in images),
            price=float(price) if price is not None else None,
            status=row.get("status"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "images": list(self.images), "price": self.price}


@dataclass(frozen=True)
class LastMessage:
    content: str
    message_type: str
    created_at: datetime | None
    sender_id: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any] | None) -> "LastMessage | None":
        if not row:
            return None
        return cls(
            content=str(row.get("content") or ""),
            message_type=str(row.get("message_type") or "text"),
            created_at=parse_ts(row.get("created_at")),
            sender_id=str(row.get("sender_id") or ""),
        )


@dataclass
class ConversationSummary:
    """One row of a user's conversation list, seen from that user's side."""

    id: str
    other_user: Profile | None
    unread_count: int = 0
    item_id: str | None = None
    item: ItemSummary | None = None
    last_message: LastMessage | None = None
    last_message_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ConversationSummary":
        return cls(
            id=str(row["id"]),
            other_user=Profile.from_row(row.get("other_user")),
            unread_count=int(row.get("unread_count") or 0),
            item_id=row.get("item_id"),
            item=ItemSummary.from_row(row.get("item")),
            last_message=LastMessage.from_row(row.get("last_message")),
            last_message_at=parse_ts(row.get("last_message_at")),
            created_at=parse_ts(row.get("created_at")),
            updated_at=parse_ts(row.get("updated_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        last_message = None
        if self.last_message is not None:
            last_message = {
                "content": self.last_message.content,
                "message_type": self.last_message.message_type,
                "created_at": format_ts(self.last_message.created_at),
                "sender_id": self.last_message.sender_id,
            }
        return {
            "id": self.id,
            "item_id": self.item_id,
            "unread_count": self.unread_count,
            "other_user": self.other_user.to_dict() if self.other_user else None,
            "item": self.item.to_dict() if self.item else None,
            "last_message": last_message,
            "last_message_at": format_ts(self.last_message_at),
        }


@dataclass(frozen=True)
class ConversationDetail:
    id: str
    buyer_id: str
    seller_id: str
    item_id: str | None = None
    buyer: Profile | None = None
    seller: Profile | None = None
    item: ItemSummary | None = None
    last_message_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ConversationDetail":
        return cls(
            id=str(row["id"]),
            buyer_id=str(row.get("buyer_id") or ""),
            seller_id=str(row.get("seller_id") or ""),
            item_id=row.get("item_id"),
            buyer=Profile.from_row(row.get("buyer")),
            seller=Profile.from_row(row.get("seller")),
            item=ItemSummary.from_row(row.get("item")),
            last_message_at=parse_ts(row.get("last_message_at")),
        )

    @property
    def participants(self) -> Tuple[str, str]:
        return (self.buyer_id, self.seller_id)

    def other_participant(self, user_id: str) -> str | None:
        if user_id == self.buyer_id:
            return self.seller_id or None
        if user_id == self.seller_id:
            return self.buyer_id or None
        return None


@dataclass(frozen=True)
class Reaction:
    emoji: str
    user_id: str
    username: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Reaction":
        user = row.get("users") or row.get("user") or {}
        return cls(
            emoji=str(row.get("emoji") or ""),
            user_id=str(row.get("user_id") or ""),
            username=user.get("username") if isinstance(user, Mapping) else None,
        )


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    sender_id: str
    message_type: str
    content: str
    created_at: datetime
    image_url: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    read_at: datetime | None = None
    is_deleted: bool = False
    sender: Profile | None = None
    reactions: Tuple[Reaction, ...] = ()

    @property
    def offer_amount(self) -> float | None:
        amount = self.metadata.get("offer_amount") if self.metadata else None
        return float(amount) if amount is not None else None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Message":
        created_at = parse_ts(row.get("created_at"))
        if created_at is None:
            raise ValueError("message row is missing created_at")
        metadata = dict(row.get("metadata") or {})
        if row.get("offer_amount") is not None and "offer_amount" not in metadata:
            metadata["offer_amount"] = row["offer_amount"]
        return cls(
            id=str(row["id"]),
            conversation_id=str(row.get("conversation_id") or ""),
            sender_id=str(row.get("sender_id") or ""),
            message_type=str(row.get("message_type") or "text"),
            content=str(row.get("content") or ""),
            created_at=created_at,
            image_url=row.get("image_url"),
            metadata=metadata,
            read_at=parse_ts(row.get("read_at")),
            is_deleted=bool(row.get("is_deleted", False)),
            sender=Profile.from_row(row.get("sender")),
            reactions=tuple(Reaction.from_row(r) for r in row.get("reactions") or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "message_type": self.message_type,
            "content": self.content,
            "image_url": self.image_url,
            "metadata": dict(self.metadata),
            "created_at": format_ts(self.created_at),
            "read_at": format_ts(self.read_at),
            "is_deleted": self.is_deleted,
        }


@dataclass(frozen=True)
class TypingUser:
    user_id: str
    username: str
    conversation_id: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TypingUser":
        return cls(
            user_id=str(payload.get("user_id") or ""),
            username=str(payload.get("username") or ""),
            conversation_id=str(payload.get("conversation_id") or ""),
        )

    def to_payload(self) -> Dict[str, str]:
        return {"user_id": self.user_id, "username": self.username, "conversation_id": self.conversation_id}


@dataclass(frozen=True)
class PresenceRecord:
    user_id: str
    username: str
    avatar_url: str | None = None
    online_at: str | None = None

    @classmethod
    def from_meta(cls, meta: Mapping[str, Any]) -> "PresenceRecord":
        return cls(
            user_id=str(meta.get("user_id") or ""),
            username=str(meta.get("username") or ""),
            avatar_url=meta.get("avatar_url"),
            online_at=meta.get("online_at"),
        )

    def to_meta(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "avatar_url": self.avatar_url,
            "online_at": self.online_at,
        }


@dataclass(frozen=True)
class Report:
    reporter_id: str
    reported_user_id: str
    reason: str
    message_id: str | None = None
    description: str | None = None
    status: str = "pending"

    def to_row(self) -> Dict[str, Any]:
        return {
            "reporter_id": self.reporter_id,
            "reported_user_id": self.reported_user_id,
            "message_id": self.message_id,
            "reason": self.reason,
            "description": self.description,
            "status": self.status,
        }
