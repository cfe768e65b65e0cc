"""Realtime transport speaking the Phoenix v1 JSON protocol over an aiohttp websocket."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Dict, List, Mapping

import aiohttp

from .channels import (
    Channel,
    ChannelListener,
    MessageInserted,
    PresenceSynced,
    RowChanged,
    Transport,
    TypingStarted,
    TypingStopped,
)
from .config import MessagingConfig, SupabaseSettings
from .errors import TransportError
from .models import PresenceRecord, TypingUser

logger = logging.getLogger(__name__)

PHOENIX_TOPIC = "phoenix"
PROTOCOL_VERSION = "1.0.0"


class RealtimeChannel(Channel):
    def __init__(
        self,
        transport: "RealtimeTransport",
        topic: str,
        conversation_id: str,
        listener: ChannelListener,
        *,
        change_feed: bool = False,
    ) -> None:
        super().__init__(conversation_id)
        self.topic = topic
        self.join_ref: str | None = None
        self.closed = False
        self._transport = transport
        self._listener = listener
        self._change_feed = change_feed
        self._presence: Dict[str, List[Dict[str, Any]]] = {}

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        return {key: list(metas) for key, metas in self._presence.items()}

    async def broadcast(self, event: str, payload: Mapping[str, Any]) -> None:
        self._require_open()
        await self._transport.push(
            self.topic,
            "broadcast",
            {"type": "broadcast", "event": event, "payload": dict(payload)},
            join_ref=self.join_ref,
        )

    async def track(self, presence: PresenceRecord) -> None:
        self._require_open()
        await self._transport.push(
            self.topic,
            "presence",
            {"type": "presence", "event": "track", "payload": presence.to_meta()},
            join_ref=self.join_ref,
        )

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._transport.leave(self)

    def _require_open(self) -> None:
        if self.closed:
            raise TransportError(f"channel {self.topic} is closed")

    def dispatch(self, event: str, payload: Mapping[str, Any]) -> None:
        if self.closed:
            return
        if event == "broadcast":
            self._on_broadcast(payload)
        elif event == "presence_state":
            self._presence = {key: list(value.get("metas") or []) for key, value in payload.items()}
            self._emit_presence()
        elif event == "presence_diff":
            self._apply_presence_diff(payload)
            self._emit_presence()
        elif event == "postgres_changes":
            self._on_postgres_change(payload)
        elif event in ("phx_error", "phx_close"):
            logger.warning("channel %s reported %s", self.topic, event)
        elif event == "system":
            logger.debug("channel %s system message: %s", self.topic, payload)

    def _on_broadcast(self, payload: Mapping[str, Any]) -> None:
        name = payload.get("event")
        body = payload.get("payload") or {}
        if name == "typing":
            self._listener(TypingStarted(user=TypingUser.from_payload(body)))
        elif name == "stop_typing":
            self._listener(
                TypingStopped(conversation_id=self.conversation_id, user_id=str(body.get("user_id") or ""))
            )
        else:
            logger.debug("ignoring broadcast %s on %s", name, self.topic)

    def _apply_presence_diff(self, payload: Mapping[str, Any]) -> None:
        for key, value in (payload.get("joins") or {}).items():
            self._presence.setdefault(key, []).extend(value.get("metas") or [])
        for key, value in (payload.get("leaves") or {}).items():
            leaving = {meta.get("phx_ref") for meta in value.get("metas") or []}
            remaining = [meta for meta in self._presence.get(key, []) if meta.get("phx_ref") not in leaving]
            if remaining:
                self._presence[key] = remaining
            else:
                self._presence.pop(key, None)

    def _emit_presence(self) -> None:
        users = tuple(PresenceRecord.from_meta(meta) for metas in self._presence.values() for meta in metas)
        self._listener(PresenceSynced(conversation_id=self.conversation_id, users=users))

    def _on_postgres_change(self, payload: Mapping[str, Any]) -> None:
        data = payload.get("data") or {}
        change_type = str(data.get("type") or data.get("eventType") or "")
        table = str(data.get("table") or "")
        record = data.get("record") or data.get("old_record") or {}
        if self._change_feed:
            self._listener(RowChanged(table=table, change_type=change_type, record=dict(record)))
        elif table == "messages" and change_type == "INSERT":
            self._listener(MessageInserted(conversation_id=self.conversation_id, record=dict(record)))


class RealtimeTransport(Transport):
    """One websocket multiplexing every joined conversation topic."""

    def __init__(
        self,
        settings: SupabaseSettings,
        *,
        config: MessagingConfig | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._settings = settings
        self._config = config or MessagingConfig()
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._refs = itertools.count(1)
        self._pending: Dict[str, asyncio.Future] = {}
        self._channels: Dict[str, RealtimeChannel] = {}
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        if self.connected:
            return
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        try:
            self._ws = await self._session.ws_connect(
                self._settings.realtime_url,
                params={"apikey": self._settings.anon_key, "vsn": PROTOCOL_VERSION},
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"realtime connect failed: {exc}") from exc
        self._reader_task = asyncio.create_task(self._read())
        self._heartbeat_task = asyncio.create_task(self._heartbeat())

    async def close(self) -> None:
        for task in (self._heartbeat_task, self._reader_task):
            if task is not None:
                task.cancel()
        await asyncio.gather(
            *(task for task in (self._heartbeat_task, self._reader_task) if task is not None),
            return_exceptions=True,
        )
        self._heartbeat_task = None
        self._reader_task = None
        for channel in list(self._channels.values()):
            channel.closed = True
        self._channels.clear()
        self._fail_pending("realtime transport closed")
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def open_channel(self, conversation_id: str, listener: ChannelListener) -> Channel:
        channel = RealtimeChannel(self, f"realtime:conversation:{conversation_id}", conversation_id, listener)
        config = {
            "broadcast": {"self": False, "ack": False},
            "presence": {"key": self._settings.user_id or ""},
            "postgres_changes": [
                {
                    "event": "INSERT",
                    "schema": "public",
                    "table": "messages",
                    "filter": f"conversation_id=eq.{conversation_id}",
                }
            ],
        }
        await self._join(channel, config)
        return channel

    async def open_change_feed(self, user_id: str, listener: ChannelListener) -> Channel:
        channel = RealtimeChannel(
            self, f"realtime:user-conversations:{user_id}", f"changes:{user_id}", listener, change_feed=True
        )
        config = {
            "broadcast": {"self": False, "ack": False},
            "presence": {"key": ""},
            "postgres_changes": [
                {"event": "INSERT", "schema": "public", "table": "messages"},
                {"event": "*", "schema": "public", "table": "conversations", "filter": f"buyer_id=eq.{user_id}"},
                {"event": "*", "schema": "public", "table": "conversations", "filter": f"seller_id=eq.{user_id}"},
            ],
        }
        await self._join(channel, config)
        return channel

    async def push(
        self,
        topic: str,
        event: str,
        payload: Mapping[str, Any],
        *,
        join_ref: str | None = None,
        ref: str | None = None,
    ) -> str:
        if not self.connected:
            raise TransportError("realtime socket is not connected")
        ref = ref or self._next_ref()
        frame = {"topic": topic, "event": event, "payload": dict(payload), "ref": ref, "join_ref": join_ref}
        try:
            await self._ws.send_json(frame)
        except (ConnectionResetError, RuntimeError, aiohttp.ClientError) as exc:
            raise TransportError(f"sending {event} on {topic} failed: {exc}") from exc
        return ref

    async def leave(self, channel: RealtimeChannel) -> None:
        if self._channels.get(channel.topic) is channel:
            self._channels.pop(channel.topic, None)
        if not self.connected:
            return
        try:
            await self.push(channel.topic, "phx_leave", {}, join_ref=channel.join_ref)
        except TransportError as exc:
            logger.debug("leave for %s not sent: %s", channel.topic, exc)

    async def _join(self, channel: RealtimeChannel, config: Mapping[str, Any]) -> None:
        await self.connect()
        ref = self._next_ref()
        channel.join_ref = ref
        previous = self._channels.get(channel.topic)
        if previous is not None:
            previous.closed = True
        self._channels[channel.topic] = channel
        payload: Dict[str, Any] = {"config": dict(config)}
        if self._settings.access_token:
            payload["access_token"] = self._settings.access_token
        try:
            reply = await self._request(channel.topic, "phx_join", payload, ref=ref, join_ref=ref)
        except TransportError:
            if self._channels.get(channel.topic) is channel:
                self._channels.pop(channel.topic, None)
            channel.closed = True
            raise
        logger.debug("joined %s: %s", channel.topic, reply.get("response"))

    async def _request(
        self, topic: str, event: str, payload: Mapping[str, Any], *, ref: str, join_ref: str | None
    ) -> Dict[str, Any]:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[ref] = future
        try:
            await self.push(topic, event, payload, join_ref=join_ref, ref=ref)
            reply = await asyncio.wait_for(future, timeout=self._config.join_timeout_s)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{event} on {topic} timed out") from exc
        finally:
            self._pending.pop(ref, None)
        if reply.get("status") != "ok":
            raise TransportError(f"{event} on {topic} rejected: {reply.get('response')}")
        return reply

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def _read(self) -> None:
        ws = self._ws
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except ValueError:
                        logger.warning("dropping malformed realtime frame")
                        continue
                    self._handle_frame(frame)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("realtime socket error: %s", ws.exception())
                    break
        except asyncio.CancelledError:
            return
        finally:
            self._fail_pending("realtime socket closed")

    def _handle_frame(self, frame: Mapping[str, Any]) -> None:
        if not isinstance(frame, Mapping):
            return
        event = frame.get("event")
        payload = frame.get("payload") or {}
        if event == "phx_reply":
            future = self._pending.get(str(frame.get("ref")))
            if future is not None and not future.done():
                future.set_result(payload)
            return
        channel = self._channels.get(str(frame.get("topic")))
        if channel is None:
            return
        join_ref = frame.get("join_ref")
        if join_ref is not None and channel.join_ref is not None and str(join_ref) != channel.join_ref:
            return
        try:
            channel.dispatch(str(event), payload)
        except Exception:
            logger.exception("listener for %s failed on %s", channel.topic, event)

    async def _heartbeat(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._config.heartbeat_interval_s)
                if not self.connected:
                    return
                await self.push(PHOENIX_TOPIC, "heartbeat", {})
        except asyncio.CancelledError:
            return
        except TransportError as exc:
            logger.warning("realtime heartbeat stopped: %s", exc)

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportError(reason))
        self._pending.clear()
