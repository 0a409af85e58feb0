from __future__ import annotations

import html

from aiogram import Router, types
from aiogram.filters import Command

from santadraw.bot.handlers.wishlist import resolve_private_group, split_group_identifier
from santadraw.bot.utils import (
    GENERIC_ERROR_TEXT,
    RATE_LIMITED_TEXT,
    check_rate_limit,
    command_args,
    describe_error,
    log_handler_exception,
)
from santadraw.db import get_session, repo
from santadraw.services import group_flow
from santadraw.services.errors import SantaError

router = Router()


def _assignment_text(details: group_flow.MyAssignment) -> str:
    lines = [
        f"Secret Santa in <b>{html.escape(details.group_name)}</b>",
        f"You're giving a gift to {group_flow.format_user_label(details.recipient)}!",
        f"Budget: {group_flow.format_budget(details.budget)}",
        "",
    ]
    if details.has_wish:
        lines.append("Their wish:")
        lines.append(html.escape(details.wish_content))
        lines.append(f"(updated {details.wish_updated_at:%Y-%m-%d %H:%M} UTC)")
    else:
        lines.append("They haven't written a wish yet.")
    return "\n".join(lines)


@router.message(Command("mygift"))
async def my_gift_command_handler(message: types.Message) -> None:
    if not check_rate_limit(message.from_user.id, "mygift"):
        await message.answer(RATE_LIMITED_TEXT)
        return

    if message.chat.type != "private":
        await message.answer("Send /mygift to me in a private chat, it's a secret!")
        return

    group_identifier, _ = split_group_identifier(command_args(message.text))
    try:
        with get_session() as session:
            user = repo.get_user_by_telegram_id(session, message.from_user.id)
            group, problem = resolve_private_group(session, user, group_identifier, example="/mygift {group_id}")
            if problem:
                reply = problem
            else:
                reply = _assignment_text(group_flow.get_my_assignment(session, group.id, user.id))
        await message.answer(reply)
    except SantaError as exc:
        await message.answer(describe_error(exc))
    except Exception as exc:
        log_handler_exception("mygift", message.from_user.id, message.chat.id, exc)
        await message.answer(GENERIC_ERROR_TEXT)
