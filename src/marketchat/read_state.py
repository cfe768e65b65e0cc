from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Set

from .errors import MessagingError
from .models import Message

logger = logging.getLogger(__name__)

MarkRead = Callable[[str], Awaitable[None]]


class ReadStateCommitter:
    """Issues mark-as-read calls on selection and on incoming foreign messages.

    Commits run in the background; failures are logged and never reach the
    caller. Resetting a counter is idempotent, so repeated commits are fine.
    """

    def __init__(self, user_id: str, mark_read: MarkRead) -> None:
        self.user_id = user_id
        self._mark_read = mark_read
        self.active_conversation_id: str | None = None
        self.commits = 0
        self.failures = 0
        self._tasks: Set[asyncio.Task] = set()

    def select(self, conversation_id: str) -> asyncio.Task:
        self.active_conversation_id = conversation_id
        return self._commit(conversation_id)

    def deselect(self, conversation_id: str | None = None) -> None:
        if conversation_id is None or conversation_id == self.active_conversation_id:
            self.active_conversation_id = None

    def on_message(self, message: Message) -> asyncio.Task | None:
        if message.sender_id == self.user_id:
            return None
        if message.conversation_id != self.active_conversation_id:
            return None
        return self._commit(message.conversation_id)

    def pending(self) -> List[asyncio.Task]:
        return [task for task in self._tasks if not task.done()]

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _commit(self, conversation_id: str) -> asyncio.Task:
        task = asyncio.create_task(self._run(conversation_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, conversation_id: str) -> None:
        self.commits += 1
        try:
            await self._mark_read(conversation_id)
        except MessagingError as exc:
            self.failures += 1
            logger.warning("marking %s read failed: %s", conversation_id, exc)
