from __future__ import annotations

import logging
from typing import Any, Dict, List

from .backend import Backend
from .errors import NotAuthenticatedError, ValidationError
from .models import Report

logger = logging.getLogger(__name__)


class MessageActions:
    """Moderation and reaction calls made on behalf of the signed-in user.

    Unlike the list and store loaders these raise to the caller.
    """

    def __init__(self, backend: Backend, user_id: str | None) -> None:
        if not user_id:
            raise NotAuthenticatedError("Not authenticated")
        self.user_id = user_id
        self._backend = backend

    async def delete_message(self, message_id: str) -> None:
        if not message_id:
            raise ValidationError("message_id is required")
        await self._backend.soft_delete_message(message_id, self.user_id)
        logger.info("deleted message %s", message_id)

    async def block_user(self, blocked_user_id: str, reason: str | None = None) -> None:
        if not blocked_user_id:
            raise ValidationError("blocked_user_id is required")
        if blocked_user_id == self.user_id:
            raise ValidationError("cannot block yourself")
        await self._backend.block_user(self.user_id, blocked_user_id, reason)

    async def unblock_user(self, blocked_user_id: str) -> None:
        await self._backend.unblock_user(self.user_id, blocked_user_id)

    async def get_blocked_users(self) -> List[Dict[str, Any]]:
        return await self._backend.get_blocked_users(self.user_id)

    async def report_user(
        self,
        reported_user_id: str,
        reason: str,
        *,
        message_id: str | None = None,
        description: str | None = None,
    ) -> Report:
        if not reported_user_id:
            raise ValidationError("reported_user_id is required")
        if not (reason or "").strip():
            raise ValidationError("a report needs a reason")
        report = Report(
            reporter_id=self.user_id,
            reported_user_id=reported_user_id,
            reason=reason.strip(),
            message_id=message_id,
            description=description,
        )
        await self._backend.report_user(report.to_row())
        logger.info("reported user %s", reported_user_id)
        return report

    async def add_reaction(self, message_id: str, emoji: str) -> None:
        await self._backend.add_reaction(message_id, self.user_id, self._emoji(emoji))

    async def remove_reaction(self, message_id: str, emoji: str) -> None:
        await self._backend.remove_reaction(message_id, self.user_id, self._emoji(emoji))

    @staticmethod
    def _emoji(emoji: str) -> str:
        emoji = (emoji or "").strip()
        if not emoji:
            raise ValidationError("an emoji is required")
        return emoji
