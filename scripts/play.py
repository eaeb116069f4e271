#!/usr/bin/env python3
"""
Partida de prueba en la terminal.

Uso: python scripts/play.py <campaign_id> <user_id> <nombre> [solo|group|async]

Con BOT_TOKEN definido, los mensajes de la sesión se reenvían por Telegram
al resto de participantes.
"""
import asyncio
import os
import sys

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
ROOT_DIR = os.path.abspath(os.path.join(SCRIPT_DIR, os.pardir))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from aiogram import Bot
from sqlalchemy import select

from chronicles.database.models import Character
from chronicles.database.setup import init_db, get_session_factory, close_db
from chronicles.errors import ChroniclesError
from chronicles.services.session_controller import SessionController
from chronicles.services.sync_channel import get_sync_channel
from chronicles.services.telegram_relay import TelegramRelay
from chronicles.utils.config import Config, DEFAULT_STATS
from chronicles.utils.logging_setup import setup_logging


async def get_or_create_character(session, user_id: int, name: str) -> Character:
    stmt = select(Character).where(Character.user_id == user_id, Character.name == name)
    character = (await session.execute(stmt)).scalars().first()
    if character:
        return character
    character = Character(user_id=user_id, name=name, stats=dict(DEFAULT_STATS), xp=0, level=1)
    session.add(character)
    await session.commit()
    return character


async def main(campaign_id: int, user_id: int, name: str, mode: str) -> None:
    setup_logging()
    await init_db()
    session_factory = get_session_factory()
    bot = Bot(Config.BOT_TOKEN) if Config.BOT_TOKEN else None

    try:
        async with session_factory() as session:
            character = await get_or_create_character(session, user_id, name)
            controller = SessionController(session)
            play_session = await controller.start_session(campaign_id, character.id, mode)
            if bot:
                TelegramRelay(bot, session_factory).attach(get_sync_channel(), play_session.id)
            if play_session.session_code:
                print(f"🔑 Código para unirse: {play_session.session_code}")

            while True:
                state = await controller.load_state(play_session.id, character.id)
                if state.node is None:
                    break
                print(f"\n📖 {state.node.title or ''}\n{state.node.text}")
                if state.session.status.value != "active":
                    break

                options = await controller.available_choices(play_session.id, character.id)
                if not options:
                    print("🏁 Fin del camino.")
                    break
                for index, option in enumerate(options, start=1):
                    suffix = f" ({option.reason})" if option.reason else ""
                    print(f"  {index}. {option.choice.choice_text}{suffix}")

                answer = input("> ").strip()
                if not answer.isdigit() or not 1 <= int(answer) <= len(options):
                    continue
                try:
                    outcome = await controller.submit_choice(
                        play_session.id, character.id, options[int(answer) - 1].choice.id
                    )
                except ChroniclesError as e:
                    print(f"⚠️ {e}")
                    continue

                for message in outcome.trigger_messages:
                    print(f"⚡ {message}")
                print(f"✨ +{outcome.xp_gained} XP")
                if outcome.completed:
                    if outcome.node is not None:
                        print(f"\n📖 {outcome.node.title or ''}\n{outcome.node.text}")
                    print(f"🏆 Aventura completada: {outcome.total_xp_awarded} XP")
                    break
    finally:
        if bot:
            await bot.session.close()
        await close_db()


if __name__ == "__main__":
    if len(sys.argv) < 4:
        print(__doc__)
        sys.exit(1)
    asyncio.run(main(int(sys.argv[1]), int(sys.argv[2]), sys.argv[3], sys.argv[4] if len(sys.argv) > 4 else "solo"))
