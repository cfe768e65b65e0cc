from __future__ import annotations

import asyncio
import logging
from typing import Callable, List

from .actions import MessageActions
from .backend import Backend
from .channels import ChannelRegistry, Transport
from .config import MessagingConfig
from .conversations import ConversationListAggregator
from .models import Profile
from .read_state import ReadStateCommitter
from .session import ConversationSession
from .timers import CallLater, TimerRegistry

logger = logging.getLogger(__name__)


class MessagingRuntime:
    """Wires the list, the channel registry, read state and the open conversation.

    At most one conversation session is active; selecting another closes the
    current one first.
    """

    def __init__(
        self,
        backend: Backend,
        transport: Transport,
        user: Profile,
        *,
        config: MessagingConfig | None = None,
        call_later: CallLater | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.backend = backend
        self.transport = transport
        self.user = user
        self.config = config or MessagingConfig()
        self.registry = ChannelRegistry(transport)
        self.conversations = ConversationListAggregator(
            backend, user.id, transport=transport, on_change=on_change
        )
        self.committer = ReadStateCommitter(user.id, self.conversations.mark_conversation_as_read)
        self.actions = MessageActions(backend, user.id)
        self.active: ConversationSession | None = None
        self._call_later = call_later
        self._on_change = on_change

    async def start(self) -> None:
        await self.conversations.start()

    async def stop(self) -> None:
        await self.close_active()
        await self.conversations.stop()
        await self.registry.unsubscribe_all()
        await self.committer.drain()

    async def select_conversation(self, conversation_id: str) -> ConversationSession:
        active = self.active
        if active is not None and active.conversation_id == conversation_id and not active.closed:
            return active
        await self.close_active()
        session = ConversationSession(
            self.backend,
            self.registry,
            conversation_id,
            self.user,
            committer=self.committer,
            config=self.config,
            timers=TimerRegistry(self._call_later),
            on_change=self._session_changed,
        )
        self.active = session
        await session.open()
        logger.debug("opened conversation %s", conversation_id)
        return session

    async def close_active(self) -> None:
        if self.active is None:
            return
        session, self.active = self.active, None
        await session.close()

    async def delete_message(self, message_id: str) -> None:
        await self.actions.delete_message(message_id)
        if self.active is not None:
            self.active.store.apply_deletion(message_id)

    async def drain(self) -> None:
        """Wait until no background fetch, commit or reload is left running."""

        while True:
            await asyncio.sleep(0)
            pending = self._pending()
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _pending(self) -> List[asyncio.Future]:
        pending: List[asyncio.Future] = list(self.committer.pending())
        pending.extend(self.conversations.pending())
        if self.active is not None:
            pending.extend(self.active.pending())
        return pending

    def _session_changed(self, session: ConversationSession) -> None:
        if self._on_change is not None and session is self.active:
            self._on_change()
