from __future__ import annotations

import html
from typing import Optional

from aiogram import Router, types
from aiogram.filters import Command

from santadraw.bot.utils import (
    GENERIC_ERROR_TEXT,
    RATE_LIMITED_TEXT,
    check_rate_limit,
    describe_error,
    log_handler_exception,
)
from santadraw.core.config import Settings
from santadraw.db import Group, User, get_session, repo
from santadraw.services import group_flow
from santadraw.services.errors import SantaError

router = Router()

USAGE = "Usage: /wish <text> | /wish show | /wish clear\nAdd a group id first if you are in several groups."


def group_choice_text(groups: list[Group], example: str) -> str:
    group_lines = [f"- {html.escape(g.name or 'Unnamed group')} (id: {g.id})" for g in groups]
    return (
        "You are in multiple groups. Add the group id to the command, e.g.\n"
        f"{example}\n"
        "Groups:\n" + "\n".join(group_lines)
    )


def split_group_identifier(tokens: list[str]) -> tuple[Optional[str], list[str]]:
    if tokens and tokens[0].lstrip("-").isdigit():
        return tokens[0], tokens[1:]
    return None, tokens


def resolve_private_group(
    session,
    user: Optional[User],
    group_identifier: Optional[str],
    example: str = "/wish {group_id} Socks",
) -> tuple[Optional[Group], Optional[str]]:
    group = group_flow.resolve_user_group(session, user.id, group_identifier) if user else None
    if group:
        return group, None
    groups = repo.list_groups_for_user(session, user.id) if user else []
    if not groups:
        return None, "You are not in any Secret Santa groups yet."
    if group_identifier:
        return None, "You are not in a group with that id."
    return None, group_choice_text(groups, example.format(group_id=groups[0].id))


@router.message(Command("wish"))
async def wish_command_handler(message: types.Message, settings: Settings) -> None:
    if not check_rate_limit(message.from_user.id, "wish"):
        await message.answer(RATE_LIMITED_TEXT)
        return

    if message.chat.type != "private":
        await message.answer("Wishlist commands only work in a private chat.")
        return

    parts = (message.text or "").split(maxsplit=1)
    rest = parts[1] if len(parts) > 1 else ""
    tokens = rest.split(maxsplit=1)
    group_identifier, tokens = split_group_identifier(tokens)
    if group_identifier is not None:
        rest = tokens[0] if tokens else ""
        tokens = rest.split(maxsplit=1)
    if not rest.strip():
        await message.answer(USAGE)
        return

    action = tokens[0].lower()
    try:
        with get_session() as session:
            user = group_flow.ensure_user(
                session,
                message.from_user.id,
                message.from_user.username,
                message.from_user.first_name,
                message.from_user.last_name,
            )
            group, problem = resolve_private_group(session, user, group_identifier)
            if problem:
                reply = problem
            elif action == "show":
                wish = group_flow.get_wish(session, group.id, user.id)
                if wish:
                    reply = f"Your wish in <b>{html.escape(group.name)}</b>:\n{html.escape(wish)}"
                else:
                    reply = "Your wish is empty."
            else:
                content = None if action == "clear" else rest
                group_flow.update_wish(
                    session,
                    group.id,
                    user.id,
                    content,
                    delay_seconds=settings.delivery.wish_notification_delay_seconds,
                    max_attempts=settings.delivery.max_attempts,
                )
                reply = "Wish cleared." if content is None else "Wish saved."
        await message.answer(reply)
    except SantaError as exc:
        await message.answer(describe_error(exc))
    except Exception as exc:
        log_handler_exception("wish", message.from_user.id, message.chat.id, exc)
        await message.answer(GENERIC_ERROR_TEXT)
