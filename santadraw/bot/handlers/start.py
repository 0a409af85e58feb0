from aiogram import Router, types
from aiogram.filters import CommandStart

from santadraw.bot.keyboards import join_keyboard
from santadraw.bot.utils import (
    GENERIC_ERROR_TEXT,
    RATE_LIMITED_TEXT,
    check_rate_limit,
    log_handler_exception,
)
from santadraw.db import get_session
from santadraw.services import group_flow

router = Router()

PRIVATE_HELP = (
    "Hello! I'm your Secret Santa bot!\n\n"
    "Add me to a group chat and send /start there to open a Secret Santa game. "
    "Whoever starts it becomes the owner.\n\n"
    "In the group:\n"
    "/suggest 25 - suggest a budget anonymously\n"
    "/leave - leave before the draw\n"
    "/exclude @a @b, /unexclude @a @b, /rules - owner manages who can't draw whom\n"
    "/kick @user - owner removes a participant before the draw\n"
    "/validate - owner checks whether a draw is possible\n"
    "/budgets - owner sees budget suggestions\n"
    "/draw 25 - owner runs the draw with the final budget\n\n"
    "Here, in private:\n"
    "/wish <text> - set your wish, /wish show to see it\n"
    "/mygift - see who you are giving a gift to"
)


@router.message(CommandStart())
async def command_start_handler(message: types.Message) -> None:
    if not check_rate_limit(message.from_user.id, "start"):
        await message.answer(RATE_LIMITED_TEXT)
        return

    try:
        if message.chat.type == "private":
            with get_session() as session:
                group_flow.register_private_chat(
                    session,
                    message.from_user.id,
                    message.from_user.username,
                    message.from_user.first_name,
                    message.from_user.last_name,
                )
            await message.answer(PRIVATE_HELP)
            return

        with get_session() as session:
            creator = group_flow.ensure_user(
                session,
                message.from_user.id,
                message.from_user.username,
                message.from_user.first_name,
                message.from_user.last_name,
            )
            group = group_flow.get_or_create_chat_group(session, message.chat.id, message.chat.title, creator)
            owner_label = group_flow.format_user_label(group.owner)
            drawn = group.is_drawn

        if drawn:
            await message.answer("The Secret Santa draw for this chat is already done. Use /mygift in private.")
            return

        await message.answer(
            f"Secret Santa is open! Owner: {owner_label}.\n\n"
            "Please start a private chat with me first (send /start), "
            "then click the button below to join.",
            reply_markup=join_keyboard(),
        )
    except Exception as exc:
        log_handler_exception("start", message.from_user.id, message.chat.id, exc)
        await message.answer(GENERIC_ERROR_TEXT)
