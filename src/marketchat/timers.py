from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Any, Callable, Dict, Hashable, List, Protocol, Tuple


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


CallLater = Callable[[float, Callable[[], None]], TimerHandle]


def _loop_call_later(delay: float, callback: Callable[[], None]) -> TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


class TimerRegistry:
    """Keeps at most one pending delayed callback per key.

    Arming a key replaces its pending callback; ``cancel_all`` drops every
    handle so nothing fires after the owner is torn down.
    """

    def __init__(self, call_later: CallLater | None = None) -> None:
        self._call_later = call_later or _loop_call_later
        self._handles: Dict[Hashable, TimerHandle] = {}

    def arm(self, key: Hashable, delay_s: float, callback: Callable[[], None]) -> None:
        self.cancel(key)

        def _fire() -> None:
            if self._handles.get(key) is not handle:
                return
            self._handles.pop(key, None)
            callback()

        handle = self._call_later(delay_s, _fire)
        self._handles[key] = handle

    def cancel(self, key: Hashable) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> int:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            handle.cancel()
        return len(handles)

    def pending(self, key: Hashable) -> bool:
        return key in self._handles

    def __len__(self) -> int:
        return len(self._handles)


class ManualHandle:
    def __init__(self, when: float, callback: Callable[..., None], args: Tuple[Any, ...]) -> None:
        self.when = when
        self._callback = callback
        self._args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def run(self) -> None:
        if not self.cancelled:
            self._callback(*self._args)


class ManualScheduler:
    """Deterministic stand-in for ``loop.call_later`` driven by ``advance``."""

    def __init__(self, start_s: float = 0.0) -> None:
        self.now_s = start_s
        self._queue: List[Tuple[float, int, ManualHandle]] = []
        self._counter = itertools.count()

    def time(self) -> float:
        return self.now_s

    def call_later(self, delay_s: float, callback: Callable[..., None], *args: Any) -> ManualHandle:
        handle = ManualHandle(self.now_s + max(0.0, delay_s), callback, args)
        heapq.heappush(self._queue, (handle.when, next(self._counter), handle))
        return handle

    def advance(self, seconds: float) -> int:
        """Move the clock forward, running every callback that comes due; returns how many ran."""

        target = self.now_s + seconds
        fired = 0
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            self.now_s = when
            if handle.cancelled:
                continue
            handle.run()
            fired += 1
        self.now_s = target
        return fired

    def pending_count(self) -> int:
        return sum(1 for _, _, handle in self._queue if not handle.cancelled)
