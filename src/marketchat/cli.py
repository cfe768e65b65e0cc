"""Command line entry points: an offline frame simulator and live inspection commands."""

from __future__ import annotations

import argparse
import asyncio
import itertools
import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, TextIO

import aiohttp

from .backend import InMemoryBackend, SequentialIds
from .channels import LocalHub
from .config import DEFAULT_SETTINGS_FILE, MessagingConfig, SupabaseSettings
from .conversations import ConversationListAggregator
from .errors import MessagingError
from .models import Profile
from .realtime import RealtimeTransport
from .rest_backend import SupabaseRestBackend
from .runtime import MessagingRuntime
from .session import ConversationSession
from .timers import ManualScheduler

logger = logging.getLogger(__name__)

SIMULATION_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class _Simulation:
    def __init__(self, output: TextIO) -> None:
        self.output = output
        self.scheduler = ScheduledClock()
        self.hub = LocalHub()
        self.backend = InMemoryBackend(hub=self.hub, now_func=self.scheduler.now, id_func=SequentialIds())
        self.runtimes: Dict[str, MessagingRuntime] = {}
        self._last_state: Dict[str, Dict[str, Any]] = {}

    def emit(self, message: Dict[str, Any]) -> None:
        self.output.write(json.dumps(message, sort_keys=True) + "\n")

    async def runtime_for(self, frame: Dict[str, Any]) -> MessagingRuntime:
        user_id = frame["user_id"]
        runtime = self.runtimes.get(user_id)
        if runtime is None:
            username = frame.get("username") or user_id
            self.backend.add_user(user_id, username)
            runtime = MessagingRuntime(
                self.backend,
                self.hub,
                Profile(id=user_id, username=username),
                call_later=self.scheduler.call_later,
            )
            self.runtimes[user_id] = runtime
            await runtime.start()
        return runtime

    async def session_for(self, frame: Dict[str, Any]) -> ConversationSession:
        runtime = await self.runtime_for(frame)
        conv_id = frame.get("conv_id")
        if runtime.active is not None and (conv_id is None or runtime.active.conversation_id == conv_id):
            return runtime.active
        if conv_id is None:
            raise MessagingError(f"{runtime.user.id} has no open conversation")
        return await runtime.select_conversation(conv_id)

    async def handle(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        if frame_type == "conv.create":
            runtime = await self.runtime_for(frame)
            await self.runtime_for({"user_id": frame["other_user_id"]})
            conv_id = await runtime.conversations.create_conversation(frame["other_user_id"], frame.get("item_id"))
            self.emit({"t": "conv.created", "user_id": runtime.user.id, "conv_id": conv_id})
        elif frame_type == "conv.open":
            runtime = await self.runtime_for(frame)
            await runtime.select_conversation(frame["conv_id"])
        elif frame_type == "conv.send":
            session = await self.session_for(frame)
            message = await session.send_message(
                frame.get("content", ""),
                frame.get("message_type", "text"),
                frame.get("offer_amount"),
                image_url=frame.get("image_url"),
            )
            self.emit({"t": "conv.sent", "user_id": session.user.id, "msg_id": message.id})
        elif frame_type == "conv.typing":
            await (await self.session_for(frame)).send_typing()
        elif frame_type == "conv.stop_typing":
            await (await self.session_for(frame)).send_stop_typing()
        elif frame_type == "conv.presence":
            session = await self.session_for(frame)
            online = sorted(record.user_id for record in session.online_users)
            self.emit({"t": "presence", "user_id": session.user.id, "online": online})
        elif frame_type == "conv.more":
            session = await self.session_for(frame)
            older = await session.load_more_messages()
            self.emit({"t": "conv.page", "user_id": session.user.id, "msg_ids": [m.id for m in older]})
        elif frame_type == "conv.list":
            runtime = await self.runtime_for(frame)
            await runtime.drain()
            self.emit(
                {
                    "t": "conversations",
                    "user_id": runtime.user.id,
                    "items": [summary.to_dict() for summary in runtime.conversations.conversations],
                }
            )
        elif frame_type == "conv.close":
            runtime = await self.runtime_for(frame)
            await runtime.close_active()
        elif frame_type == "clock.advance":
            self.scheduler.advance(float(frame.get("ms", 0)) / 1000.0)
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")

    async def settle(self) -> None:
        for runtime in list(self.runtimes.values()):
            await runtime.drain()
        for user_id, runtime in self.runtimes.items():
            state = self._state(runtime)
            if state != self._last_state.get(user_id):
                self._last_state[user_id] = state
                self.emit(state)

    def _state(self, runtime: MessagingRuntime) -> Dict[str, Any]:
        session = runtime.active
        return {
            "t": "state",
            "user_id": runtime.user.id,
            "conv_id": session.conversation_id if session else None,
            "msg_ids": [message.id for message in session.store.messages] if session else [],
            "typing": [user.user_id for user in session.typing_users] if session else [],
            "online": sorted(record.user_id for record in session.online_users) if session else [],
            "unread": runtime.conversations.total_unread_count,
        }

    async def shutdown(self) -> None:
        for runtime in self.runtimes.values():
            await runtime.stop()


class ScheduledClock(ManualScheduler):
    """Manual scheduler that also hands out strictly increasing wall-clock timestamps."""

    def __init__(self, start: datetime = SIMULATION_EPOCH) -> None:
        super().__init__()
        self._start = start
        self._ticks = itertools.count()

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self.time(), microseconds=next(self._ticks))


async def simulate_async(frames: Iterable[dict], output: TextIO) -> None:
    simulation = _Simulation(output)
    try:
        for frame in frames:
            try:
                await simulation.handle(frame)
            except MessagingError as exc:
                simulation.emit({"t": "error", "frame": frame.get("t"), "user_id": frame.get("user_id"), "error": str(exc)})
            await simulation.settle()
    finally:
        await simulation.shutdown()


def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Drive JSON frames through in-memory runtimes and emit observed state as JSON lines."""

    asyncio.run(simulate_async(frames, output))


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        return [json.loads(line) for line in content.splitlines() if line.strip()]
    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _settings_from_args(args: argparse.Namespace) -> SupabaseSettings:
    settings = SupabaseSettings.from_file(args.settings).merged(**vars(SupabaseSettings.from_env()))
    settings = settings.merged(
        url=args.url, anon_key=args.anon_key, access_token=args.access_token, user_id=args.user_id
    )
    if not settings.url or not settings.anon_key:
        raise SystemExit("a project url and anon key are required (SUPABASE_URL / SUPABASE_ANON_KEY)")
    if not settings.user_id:
        raise SystemExit("a user id is required (MARKETCHAT_USER_ID or --user-id)")
    return settings


async def _list_conversations(settings: SupabaseSettings, output: TextIO) -> int:
    async with SupabaseRestBackend(settings) as backend:
        aggregator = ConversationListAggregator(backend, settings.user_id)
        conversations = await aggregator.load_conversations()
        if aggregator.error:
            output.write(json.dumps({"t": "error", "error": aggregator.error}) + "\n")
            return 1
        for summary in conversations:
            output.write(json.dumps(summary.to_dict()) + "\n")
    return 0


async def _tail(settings: SupabaseSettings, conversation_id: str, duration: float | None, output: TextIO) -> int:
    config = MessagingConfig()
    user = Profile(id=settings.user_id or "", username=settings.username or "")
    seen: set[str] = set()

    def on_change() -> None:
        session = runtime.active
        if session is None:
            return
        for message in session.store.messages:
            if message.id not in seen:
                seen.add(message.id)
                output.write(json.dumps({"t": "message", **message.to_dict()}) + "\n")
        output.write(
            json.dumps(
                {
                    "t": "activity",
                    "typing": [typing.username or typing.user_id for typing in session.typing_users],
                    "online": sorted(record.user_id for record in session.online_users),
                }
            )
            + "\n"
        )
        output.flush()

    timeout = aiohttp.ClientTimeout(total=config.request_timeout_s)
    async with aiohttp.ClientSession(timeout=timeout) as http:
        backend = SupabaseRestBackend(settings, config=config, session=http)
        transport = RealtimeTransport(settings, config=config)
        runtime = MessagingRuntime(backend, transport, user, config=config, on_change=on_change)
        try:
            await runtime.select_conversation(conversation_id)
            on_change()
            if duration is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(duration)
        finally:
            await runtime.stop()
            await transport.close()
    return 0


def _add_connection_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--settings", default=str(DEFAULT_SETTINGS_FILE), help="Path to a JSON settings file")
    parser.add_argument("--url", default=None, help="Project URL")
    parser.add_argument("--anon-key", default=None, help="Anonymous API key")
    parser.add_argument("--access-token", default=None, help="User access token")
    parser.add_argument("--user-id", default=None, help="Signed-in user id")


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="marketchat", description="Marketplace messaging CLI")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Run JSON frames against in-memory runtimes")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    conversations_parser = subparsers.add_parser("conversations", help="Print the user's conversation list")
    _add_connection_arguments(conversations_parser)

    tail_parser = subparsers.add_parser("tail", help="Follow one conversation live")
    tail_parser.add_argument("conversation_id", help="Conversation to follow")
    tail_parser.add_argument("--duration", type=float, default=None, help="Seconds to follow before exiting")
    _add_connection_arguments(tail_parser)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    stream = output or sys.stdout

    if args.command == "simulate":
        simulate(_load_frames(args.file or sys.stdin), stream)
        return 0
    settings = _settings_from_args(args)
    try:
        if args.command == "conversations":
            return asyncio.run(_list_conversations(settings, stream))
        return asyncio.run(_tail(settings, args.conversation_id, args.duration, stream))
    except KeyboardInterrupt:
        return 130
    except MessagingError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
