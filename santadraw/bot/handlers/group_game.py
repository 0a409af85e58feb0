from __future__ import annotations

from aiogram import Router, types
from aiogram.filters import Command

from santadraw.bot.keyboards import confirm_draw_keyboard
from santadraw.bot.utils import (
    GENERIC_ERROR_TEXT,
    RATE_LIMITED_TEXT,
    check_rate_limit,
    command_args,
    describe_error,
    log_handler_exception,
)
from santadraw.core.config import Settings
from santadraw.db import Group, User, get_session, repo
from santadraw.services import draw, group_flow
from santadraw.services.errors import NotFound, SantaError, ValidationError

router = Router()

NO_GAME_TEXT = "There is no Secret Santa in this chat yet. Send /start to open one."
GROUP_ONLY_TEXT = "This command can only be used in a group chat."


def _is_group_chat(message: types.Message) -> bool:
    return message.chat.type in {"group", "supergroup"}


def _sender(session, from_user: types.User) -> User:
    return group_flow.ensure_user(
        session,
        from_user.id,
        from_user.username,
        from_user.first_name,
        from_user.last_name,
    )


def _require_chat_group(session, chat_id: int) -> Group:
    group = repo.get_group_by_chat_id(session, chat_id)
    if group is None:
        raise NotFound(NO_GAME_TEXT)
    return group


def _resolve_username(session, name: str) -> User:
    user = repo.get_user_by_username(session, name)
    if user is None:
        raise NotFound(f"I don't know {name}. They need to join the game first.")
    return user


def _resolve_usernames(session, args: list[str]) -> tuple[User, User]:
    if len(args) != 2:
        raise ValidationError(["Please name exactly two participants, e.g. @alice @bob"])
    return _resolve_username(session, args[0]), _resolve_username(session, args[1])


@router.callback_query(lambda c: c.data == "join")
async def join_callback_handler(query: types.CallbackQuery) -> None:
    if not check_rate_limit(query.from_user.id, "join"):
        await query.answer(RATE_LIMITED_TEXT, show_alert=True)
        return

    try:
        with get_session() as session:
            group = _require_chat_group(session, query.message.chat.id)
            user = _sender(session, query.from_user)
            result = group_flow.join_group(session, group, user)
            user_label = group_flow.format_user_label(result.user)
            has_private_chat = result.user.has_private_chat

        await query.answer(result.message, show_alert=True)
        if result.added:
            text = f"{user_label} joined the Secret Santa game!"
            if not has_private_chat:
                text += " Don't forget to send me /start in private so I can reach you."
            await query.message.bot.send_message(query.message.chat.id, text)
    except SantaError as exc:
        await query.answer(describe_error(exc), show_alert=True)
    except Exception as exc:
        log_handler_exception("join", query.from_user.id, query.message.chat.id, exc)
        await query.answer("Error joining the Secret Santa game.", show_alert=True)


@router.message(Command("list"))
async def list_command_handler(message: types.Message) -> None:
    if not check_rate_limit(message.from_user.id, "list"):
        await message.answer(RATE_LIMITED_TEXT)
        return

    try:
        with get_session() as session:
            group = _require_chat_group(session, message.chat.id)

            participants = group_flow.list_participants(session, group)
            lines = []
            for user in participants:
                label = group_flow.format_user_label(user)
                suffix = " ✓" if user.has_private_chat else ""
                lines.append(f"{label}{suffix}")

            message_text = "Participants in Secret Santa:\n" + "\n".join(lines)
            if any(not user.has_private_chat for user in participants):
                message_text += (
                    "\n\nNote: Users without a ✓ need to start a private chat with the bot by sending /start."
                )
            if group.is_drawn:
                message_text += f"\n\nThe draw is done. Budget: {group_flow.format_budget(group.budget)}"

        await message.answer(message_text)
    except SantaError as exc:
        await message.answer(describe_error(exc))
    except Exception as exc:
        log_handler_exception("list", message.from_user.id, message.chat.id, exc)
        await message.answer(GENERIC_ERROR_TEXT)


@router.message(Command("suggest"))
async def suggest_command_handler(message: types.Message) -> None:
    if not check_rate_limit(message.from_user.id, "suggest"):
        await message.answer(RATE_LIMITED_TEXT)
        return
    if not _is_group_chat(message):
        await message.answer(GROUP_ONLY_TEXT)
        return

    args = command_args(message.text)
    if len(args) != 1:
        await message.answer("Usage: /suggest 25")
        return

    try:
        with get_session() as session:
            group = _require_chat_group(session, message.chat.id)
            user = _sender(session, message.from_user)
            if repo.get_participant(session, group.id, user.id) is None:
                group_flow.join_group(session, group, user, budget_suggestion=args[0])
            else:
                group_flow.set_budget_suggestion(session, group, user.id, args[0])
        await message.answer("Budget suggestion recorded. Only the owner sees suggestions, without names.")
    except SantaError as exc:
        await message.answer(describe_error(exc))
    except Exception as exc:
        log_handler_exception("suggest", message.from_user.id, message.chat.id, exc)
        await message.answer(GENERIC_ERROR_TEXT)


@router.message(Command("leave"))
async def leave_command_handler(message: types.Message) -> None:
    if not check_rate_limit(message.from_user.id, "leave"):
        await message.answer(RATE_LIMITED_TEXT)
        return

    try:
        with get_session() as session:
            group = _require_chat_group(session, message.chat.id)
            user = _sender(session, message.from_user)
            group_flow.leave_group(session, group, user.id)
            user_label = group_flow.format_user_label(user)
        await message.answer(f"{user_label} left the Secret Santa game.")
    except SantaError as exc:
        await message.answer(describe_error(exc))
    except Exception as exc:
        log_handler_exception("leave", message.from_user.id, message.chat.id, exc)
        await message.answer(GENERIC_ERROR_TEXT)


@router.message(Command("exclude"))
async def exclude_command_handler(message: types.Message) -> None:
    if not check_rate_limit(message.from_user.id, "exclude"):
        await message.answer(RATE_LIMITED_TEXT)
        return
    if not _is_group_chat(message):
        await message.answer(GROUP_ONLY_TEXT)
        return

    try:
        with get_session() as session:
            group = _require_chat_group(session, message.chat.id)
            requester = _sender(session, message.from_user)
            user_a, user_b = _resolve_usernames(session, command_args(message.text))
            view = group_flow.add_exclusion_rule(session, group.id, requester.id, user_a.id, user_b.id)
            text = (
                f"{group_flow.format_user_label(view.user_a)} and "
                f"{group_flow.format_user_label(view.user_b)} won't draw each other."
            )
            if view.warnings:
                text += "\n\nNote: " + " ".join(view.warnings)
        await message.answer(text)
    except SantaError as exc:
        await message.answer(describe_error(exc))
    except Exception as exc:
        log_handler_exception("exclude", message.from_user.id, message.chat.id, exc)
        await message.answer(GENERIC_ERROR_TEXT)


@router.message(Command("unexclude"))
async def unexclude_command_handler(message: types.Message) -> None:
    if not check_rate_limit(message.from_user.id, "unexclude"):
        await message.answer(RATE_LIMITED_TEXT)
        return
    if not _is_group_chat(message):
        await message.answer(GROUP_ONLY_TEXT)
        return

    try:
        with get_session() as session:
            group = _require_chat_group(session, message.chat.id)
            requester = _sender(session, message.from_user)
            user_a, user_b = _resolve_usernames(session, command_args(message.text))
            group_flow.remove_exclusion_rule(session, group.id, requester.id, user_a.id, user_b.id)
        await message.answer("Exclusion rule removed.")
    except SantaError as exc:
        await message.answer(describe_error(exc))
    except Exception as exc:
        log_handler_exception("unexclude", message.from_user.id, message.chat.id, exc)
        await message.answer(GENERIC_ERROR_TEXT)


@router.message(Command("kick"))
async def kick_command_handler(message: types.Message) -> None:
    if not check_rate_limit(message.from_user.id, "kick"):
        await message.answer(RATE_LIMITED_TEXT)
        return
    if not _is_group_chat(message):
        await message.answer(GROUP_ONLY_TEXT)
        return

    args = command_args(message.text)
    if len(args) != 1:
        await message.answer("Usage: /kick @username")
        return

    try:
        with get_session() as session:
            group = _require_chat_group(session, message.chat.id)
            requester = _sender(session, message.from_user)
            target = _resolve_username(session, args[0])
            removed_rules = group_flow.remove_participant(session, group.id, requester.id, target.id)
            text = f"{group_flow.format_user_label(target)} was removed from the Secret Santa game."
            if removed_rules:
                text += f" {removed_rules} exclusion rule(s) involving them were dropped."
        await message.answer(text)
    except SantaError as exc:
        await message.answer(describe_error(exc))
    except Exception as exc:
        log_handler_exception("kick", message.from_user.id, message.chat.id, exc)
        await message.answer(GENERIC_ERROR_TEXT)


@router.message(Command("rules"))
async def rules_command_handler(message: types.Message) -> None:
    if not check_rate_limit(message.from_user.id, "rules"):
        await message.answer(RATE_LIMITED_TEXT)
        return

    try:
        with get_session() as session:
            group = _require_chat_group(session, message.chat.id)
            requester = _sender(session, message.from_user)
            rules = group_flow.list_exclusion_rules(session, group.id, requester.id)
            lines = [
                f"- {group_flow.format_user_label(view.user_a)} ✕ {group_flow.format_user_label(view.user_b)}"
                for view in rules
            ]
        if not lines:
            await message.answer("No exclusion rules yet.")
            return
        await message.answer("Exclusion rules:\n" + "\n".join(lines))
    except SantaError as exc:
        await message.answer(describe_error(exc))
    except Exception as exc:
        log_handler_exception("rules", message.from_user.id, message.chat.id, exc)
        await message.answer(GENERIC_ERROR_TEXT)


@router.message(Command("validate"))
async def validate_command_handler(message: types.Message) -> None:
    if not check_rate_limit(message.from_user.id, "validate"):
        await message.answer(RATE_LIMITED_TEXT)
        return

    try:
        with get_session() as session:
            group = _require_chat_group(session, message.chat.id)
            requester = _sender(session, message.from_user)
            validation = draw.validate_draw(session, group.id, requester.id)

        lines = [
            f"Participants: {validation.participant_count}",
            f"Exclusion rules: {validation.exclusion_count}",
            "Ready to draw!" if validation.can_draw else "Not ready to draw.",
        ]
        lines.extend(f"- {error}" for error in validation.errors)
        lines.extend(f"Note: {warning}" for warning in validation.warnings)
        await message.answer("\n".join(lines))
    except SantaError as exc:
        await message.answer(describe_error(exc))
    except Exception as exc:
        log_handler_exception("validate", message.from_user.id, message.chat.id, exc)
        await message.answer(GENERIC_ERROR_TEXT)


@router.message(Command("budgets"))
async def budgets_command_handler(message: types.Message) -> None:
    if not check_rate_limit(message.from_user.id, "budgets"):
        await message.answer(RATE_LIMITED_TEXT)
        return

    try:
        with get_session() as session:
            group = _require_chat_group(session, message.chat.id)
            requester = _sender(session, message.from_user)
            overview = group_flow.budget_suggestions(session, group.id, requester.id)

        lines = [
            f"Suggestions received: {overview.suggestions_received} of {overview.participant_count}",
        ]
        if overview.suggestions:
            lines.append(", ".join(group_flow.format_budget(amount) for amount in overview.suggestions))
        if overview.current_budget is not None:
            lines.append(f"Final budget: {group_flow.format_budget(overview.current_budget)}")
        await message.answer("\n".join(lines))
    except SantaError as exc:
        await message.answer(describe_error(exc))
    except Exception as exc:
        log_handler_exception("budgets", message.from_user.id, message.chat.id, exc)
        await message.answer(GENERIC_ERROR_TEXT)


@router.message(Command("draw"))
async def draw_command_handler(message: types.Message) -> None:
    if not check_rate_limit(message.from_user.id, "draw"):
        await message.answer(RATE_LIMITED_TEXT)
        return
    if not _is_group_chat(message):
        await message.answer(GROUP_ONLY_TEXT)
        return

    args = command_args(message.text)
    if len(args) != 1:
        await message.answer("Usage: /draw 25")
        return

    try:
        budget = draw.parse_budget(args[0])
        with get_session() as session:
            group = _require_chat_group(session, message.chat.id)
            requester = _sender(session, message.from_user)
            validation = draw.validate_draw(session, group.id, requester.id)

        if not validation.can_draw:
            problems = validation.errors + validation.warnings
            await message.answer("The draw can't run yet:\n" + "\n".join(f"- {p}" for p in problems))
            return

        budget_text = group_flow.format_budget(budget)
        await message.answer(
            f"Run the draw for {validation.participant_count} participants with a budget of {budget_text}? "
            "This can't be undone.",
            reply_markup=confirm_draw_keyboard(budget_text),
        )
    except SantaError as exc:
        await message.answer(describe_error(exc))
    except Exception as exc:
        log_handler_exception("draw", message.from_user.id, message.chat.id, exc)
        await message.answer(GENERIC_ERROR_TEXT)


@router.callback_query(lambda c: c.data == "cancel_draw")
async def cancel_draw_callback_handler(query: types.CallbackQuery) -> None:
    await query.answer("Draw cancelled.")
    await query.message.edit_reply_markup(reply_markup=None)


@router.callback_query(lambda c: c.data and c.data.startswith("confirm_draw:"))
async def confirm_draw_callback_handler(query: types.CallbackQuery, settings: Settings) -> None:
    if not check_rate_limit(query.from_user.id, "confirm_draw"):
        await query.answer(RATE_LIMITED_TEXT, show_alert=True)
        return

    budget_text = query.data.split(":", 1)[1]
    try:
        with get_session() as session:
            group = _require_chat_group(session, query.message.chat.id)
            requester = _sender(session, query.from_user)
            result = draw.execute_draw(
                session,
                group.id,
                requester.id,
                budget_text,
                max_attempts=settings.draw_retry_budget,
            )

        await query.answer("Secret Santa draw completed!", show_alert=True)
        await query.message.edit_reply_markup(reply_markup=None)
        await query.message.bot.send_message(
            query.message.chat.id,
            f"The draw is done for {result.participant_count} participants with a budget of "
            f"{group_flow.format_budget(result.budget)}! Check your private messages, or send me /mygift.",
        )
    except SantaError as exc:
        await query.answer(describe_error(exc)[:200], show_alert=True)
    except Exception as exc:
        log_handler_exception("confirm_draw", query.from_user.id, query.message.chat.id, exc)
        await query.answer(GENERIC_ERROR_TEXT, show_alert=True)
