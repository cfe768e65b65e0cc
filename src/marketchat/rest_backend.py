"""Backend implementation over the hosted database's REST and RPC endpoints."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping

import aiohttp

from .backend import Backend
from .config import MessagingConfig, SupabaseSettings
from .errors import BackendError
from .models import DELETED_PLACEHOLDER, format_ts

logger = logging.getLogger(__name__)

PROFILE_COLUMNS = "id,username,first_name,avatar_url"
MESSAGE_SELECT = (
    "*,sender:users!messages_sender_id_fkey(id,username,avatar_url),"
    "reactions:message_reactions(emoji,user_id,users(username))"
)
CONVERSATION_SELECT = (
    f"*,buyer:users!buyer_id({PROFILE_COLUMNS}),seller:users!seller_id({PROFILE_COLUMNS}),"
    "item:items(id,title,price,status)"
)


def _now_iso() -> str:
    return format_ts(datetime.now(timezone.utc)) or ""


class SupabaseRestBackend(Backend):
    def __init__(
        self,
        settings: SupabaseSettings,
        *,
        config: MessagingConfig | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        if not settings.url:
            raise ValueError("a backend url is required")
        self._settings = settings
        self._config = config or MessagingConfig()
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "SupabaseRestBackend":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> Any:
        headers = {"Content-Type": "application/json", **self._settings.auth_headers()}
        if prefer:
            headers["Prefer"] = prefer
        url = f"{self._settings.rest_url}{path}"
        try:
            async with self._client().request(method, url, params=params, json=json, headers=headers) as response:
                raw = await response.text()
                payload: Any = None
                if raw:
                    try:
                        payload = await response.json(content_type=None)
                    except ValueError:
                        payload = raw
                if response.status >= 400:
                    raise BackendError.from_payload(response.status, payload)
                return payload
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise BackendError(f"{method} {path} failed: {exc}") from exc

    async def rpc(self, name: str, params: Mapping[str, Any]) -> Any:
        return await self._request("POST", f"/rpc/{name}", json=dict(params))

    async def get_user_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        rows = await self.rpc("get_user_conversations", {"p_user_id": user_id})
        return list(rows or [])

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> None:
        await self.rpc("mark_conversation_read", {"p_conversation_id": conversation_id, "p_user_id": user_id})

    async def mark_conversation_unread(self, conversation_id: str, sender_id: str) -> None:
        await self.rpc("mark_conversation_unread", {"p_conversation_id": conversation_id, "p_sender_id": sender_id})

    async def create_conversation(self, user_a: str, user_b: str, item_id: str | None = None) -> str:
        result = await self.rpc(
            "create_conversation",
            {"p_user1_id": user_a, "p_user2_id": user_b, "p_item_id": item_id},
        )
        if isinstance(result, list):
            result = result[0] if result else None
        if isinstance(result, dict):
            result = result.get("id") or result.get("create_conversation")
        if not result:
            raise BackendError("create_conversation returned no id")
        return str(result)

    async def get_conversation(self, conversation_id: str) -> Dict[str, Any] | None:
        rows = await self._request(
            "GET",
            "/conversations",
            params={"select": CONVERSATION_SELECT, "id": f"eq.{conversation_id}", "limit": "1"},
        )
        return rows[0] if rows else None

    async def fetch_messages(
        self, conversation_id: str, *, limit: int, before: datetime | None = None
    ) -> List[Dict[str, Any]]:
        params = {
            "select": MESSAGE_SELECT,
            "conversation_id": f"eq.{conversation_id}",
            "order": "created_at.desc",
            "limit": str(limit),
        }
        if before is not None:
            params["created_at"] = f"lt.{format_ts(before)}"
        return list(await self._request("GET", "/messages", params=params) or [])

    async def fetch_message(self, message_id: str) -> Dict[str, Any] | None:
        rows = await self._request(
            "GET", "/messages", params={"select": MESSAGE_SELECT, "id": f"eq.{message_id}", "limit": "1"}
        )
        return rows[0] if rows else None

    async def insert_message(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        rows = await self._request(
            "POST",
            "/messages",
            params={"select": MESSAGE_SELECT},
            json=dict(row),
            prefer="return=representation",
        )
        if not rows:
            raise BackendError("insert returned no row")
        return rows[0] if isinstance(rows, list) else rows

    async def mark_messages_read(self, conversation_id: str, user_id: str) -> None:
        await self._request(
            "PATCH",
            "/messages",
            params={
                "conversation_id": f"eq.{conversation_id}",
                "sender_id": f"neq.{user_id}",
                "read_at": "is.null",
            },
            json={"read_at": _now_iso()},
            prefer="return=minimal",
        )

    async def touch_conversation(self, conversation_id: str) -> None:
        now = _now_iso()
        await self._request(
            "PATCH",
            "/conversations",
            params={"id": f"eq.{conversation_id}"},
            json={"last_message_at": now, "updated_at": now},
            prefer="return=minimal",
        )

    async def is_blocked(self, blocker_id: str, blocked_id: str) -> bool:
        rows = await self._request(
            "GET",
            "/blocked_users",
            params={"select": "id", "blocker_id": f"eq.{blocker_id}", "blocked_id": f"eq.{blocked_id}", "limit": "1"},
        )
        return bool(rows)

    async def soft_delete_message(self, message_id: str, sender_id: str) -> None:
        await self._request(
            "PATCH",
            "/messages",
            params={"id": f"eq.{message_id}", "sender_id": f"eq.{sender_id}"},
            json={"content": DELETED_PLACEHOLDER, "is_deleted": True, "updated_at": _now_iso()},
            prefer="return=minimal",
        )

    async def block_user(self, blocker_id: str, blocked_id: str, reason: str | None = None) -> None:
        await self._request(
            "POST",
            "/blocked_users",
            json={"blocker_id": blocker_id, "blocked_id": blocked_id, "reason": reason, "created_at": _now_iso()},
            prefer="return=minimal",
        )

    async def unblock_user(self, blocker_id: str, blocked_id: str) -> None:
        await self._request(
            "DELETE",
            "/blocked_users",
            params={"blocker_id": f"eq.{blocker_id}", "blocked_id": f"eq.{blocked_id}"},
        )

    async def get_blocked_users(self, blocker_id: str) -> List[Dict[str, Any]]:
        rows = await self._request(
            "GET",
            "/blocked_users",
            params={
                "select": "*,blocked_user:users!blocked_users_blocked_id_fkey(id,username,avatar_url)",
                "blocker_id": f"eq.{blocker_id}",
            },
        )
        return list(rows or [])

    async def report_user(self, row: Mapping[str, Any]) -> None:
        await self._request(
            "POST",
            "/user_reports",
            json={**row, "created_at": _now_iso()},
            prefer="return=minimal",
        )

    async def add_reaction(self, message_id: str, user_id: str, emoji: str) -> None:
        await self._request(
            "POST",
            "/message_reactions",
            json={"message_id": message_id, "user_id": user_id, "emoji": emoji, "created_at": _now_iso()},
            prefer="resolution=merge-duplicates,return=minimal",
        )

    async def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> None:
        await self._request(
            "DELETE",
            "/message_reactions",
            params={"message_id": f"eq.{message_id}", "user_id": f"eq.{user_id}", "emoji": f"eq.{emoji}"},
        )
