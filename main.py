from __future__ import annotations

import asyncio

import uvloop
from aiogram.types import BotCommand, BotCommandScopeDefault
from loguru import logger

from santadraw.bot import bot, dp, settings
from santadraw.core.logging import setup_logging
from santadraw.db import init_engine
from santadraw.services.delivery import DeliveryWorker
from santadraw.services.transport import TelegramTransport


USERS_COMMANDS: dict[str, str] = {
    "start": "open a game or show help",
    "list": "list participants",
    "suggest": "suggest a budget",
    "leave": "leave before the draw",
    "exclude": "owner: forbid a pair",
    "unexclude": "owner: allow a pair again",
    "kick": "owner: remove a participant before the draw",
    "rules": "owner: list exclusion rules",
    "validate": "owner: check the draw",
    "budgets": "owner: budget suggestions",
    "draw": "owner: run the draw",
    "wish": "set your wish",
    "mygift": "see your recipient",
}

delivery_worker = DeliveryWorker(TelegramTransport(bot), settings.delivery)


async def set_default_commands() -> None:
    await bot.set_my_commands(
        [
            BotCommand(command=command, description=description)
            for command, description in USERS_COMMANDS.items()
        ],
        scope=BotCommandScopeDefault(),
    )


async def on_startup() -> None:
    logger.info("bot starting...")

    await set_default_commands()

    bot_info = await bot.get_me()

    logger.info("Name     - {name}", name=bot_info.full_name)
    logger.info("Username - @{username}", username=bot_info.username)
    logger.info("ID       - {id}", id=bot_info.id)

    states: dict[bool | None, str] = {
        True: "Enabled",
        False: "Disabled",
        None: "Unknown (This's not a bot)",
    }

    logger.info("Groups Mode  - {mode}", mode=states[bot_info.can_join_groups])
    logger.info("Privacy Mode - {mode}", mode=states[not bot_info.can_read_all_group_messages])

    if settings.delivery.enabled:
        await delivery_worker.start()
    else:
        logger.warning("Delivery worker disabled, notifications will queue up")

    logger.info("bot started")


async def on_shutdown() -> None:
    logger.info("bot stopping...")

    await delivery_worker.stop()

    await dp.storage.close()
    await bot.session.close()

    logger.info("bot stopped")


async def main() -> None:
    setup_logging(settings.log_level, settings.log_path)
    init_engine(settings.database_url)

    dp.startup.register(on_startup)
    dp.shutdown.register(on_shutdown)

    await dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types())


if __name__ == "__main__":
    uvloop.install()

    asyncio.run(main())
