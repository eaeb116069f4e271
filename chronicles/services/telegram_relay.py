from __future__ import annotations

import logging

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chronicles.database.models import Character, SessionParticipant
from chronicles.services.sync_channel import MessageAppended, SessionEvent, Subscription, SyncChannel
from chronicles.utils.text_utils import truncate_text

logger = logging.getLogger(__name__)

MESSAGE_ICONS = {
    "chat": "💬",
    "action": "⚔️",
    "system": "📜",
    "roll": "🎲",
}


class TelegramRelay:
    """Forwards session log entries to every other participant's Telegram chat."""

    def __init__(self, bot: Bot, session_factory: async_sessionmaker[AsyncSession]):
        self.bot = bot
        self.session_factory = session_factory

    def attach(self, channel: SyncChannel, session_id: int) -> Subscription:
        return channel.subscribe(session_id, self, client_id=f"telegram-relay:{session_id}")

    async def _recipients(self, session_id: int) -> list[int]:
        async with self.session_factory() as session:
            stmt = (
                select(Character.user_id)
                .join(SessionParticipant, SessionParticipant.character_id == Character.id)
                .where(
                    SessionParticipant.session_id == session_id,
                    SessionParticipant.is_active == True,
                )
                .order_by(SessionParticipant.joined_at, SessionParticipant.id)
            )
            result = await session.execute(stmt)
            return list(dict.fromkeys(row[0] for row in result.all()))

    async def __call__(self, event: SessionEvent):
        if not isinstance(event, MessageAppended):
            return
        message = event.message
        icon = MESSAGE_ICONS.get(message.get("message_type"), "")
        text = f"{icon} {truncate_text(message.get('content', ''), 4000)}".strip()

        for user_id in await self._recipients(event.session_id):
            if user_id == message.get("user_id"):
                continue
            try:
                await self.bot.send_message(user_id, text)
            except TelegramAPIError as e:
                logger.warning(f"Could not relay message of session {event.session_id} to user {user_id}: {e}")
