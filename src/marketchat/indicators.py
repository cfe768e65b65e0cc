from __future__ import annotations

from typing import Callable, Dict, Iterable, List

from .models import PresenceRecord, TypingUser
from .timers import TimerRegistry

IDLE = "idle"
TYPING = "typing"


class TypingReconciler:
    """Tracks which remote users are typing in one conversation.

    A user enters ``typing`` on a typing broadcast and leaves it on an explicit
    stop or once ``timeout_s`` passes without a renewal. Every renewal re-arms
    that user's expiry timer.
    """

    def __init__(
        self,
        user_id: str,
        conversation_id: str,
        *,
        timeout_s: float = 5.0,
        timers: TimerRegistry | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.user_id = user_id
        self.conversation_id = conversation_id
        self.timeout_s = timeout_s
        self._timers = timers if timers is not None else TimerRegistry()
        self._on_change = on_change
        self._typing: Dict[str, TypingUser] = {}
        self.closed = False

    @property
    def typing_users(self) -> List[TypingUser]:
        return list(self._typing.values())

    def state(self, user_id: str) -> str:
        return TYPING if user_id in self._typing else IDLE

    def is_typing(self, user_id: str) -> bool:
        return user_id in self._typing

    def pending_timers(self) -> int:
        return len(self._timers)

    def on_typing(self, user: TypingUser) -> bool:
        if self.closed or not user.user_id or user.user_id == self.user_id:
            return False
        if user.conversation_id and user.conversation_id != self.conversation_id:
            return False
        # Re-inserting keeps the most recent typist last.
        self._typing.pop(user.user_id, None)
        self._typing[user.user_id] = user
        self._timers.arm(user.user_id, self.timeout_s, lambda: self._expire(user.user_id))
        self._changed()
        return True

    def on_stop_typing(self, user_id: str) -> bool:
        if self.closed:
            return False
        self._timers.cancel(user_id)
        if self._typing.pop(user_id, None) is None:
            return False
        self._changed()
        return True

    def close(self) -> None:
        self.closed = True
        self._timers.cancel_all()
        self._typing.clear()

    def _expire(self, user_id: str) -> None:
        if self.closed:
            return
        if self._typing.pop(user_id, None) is not None:
            self._changed()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()


class PresenceReconciler:
    """Holds the latest presence snapshot for one conversation.

    Each sync replaces the whole list. A peer that drops without leaving stays
    listed until the next snapshot arrives.
    """

    def __init__(self, *, on_change: Callable[[], None] | None = None) -> None:
        self._on_change = on_change
        self._online: List[PresenceRecord] = []
        self.closed = False

    @property
    def online_users(self) -> List[PresenceRecord]:
        return list(self._online)

    def is_online(self, user_id: str) -> bool:
        return any(record.user_id == user_id for record in self._online)

    def on_sync(self, users: Iterable[PresenceRecord]) -> None:
        if self.closed:
            return
        self._online = list(users)
        if self._on_change is not None:
            self._on_change()

    def close(self) -> None:
        self.closed = True
        self._online = []
