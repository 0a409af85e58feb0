from __future__ import annotations

import html
from typing import Optional

from loguru import logger

from santadraw.services.errors import SantaError
from santadraw.services.rate_limit import command_limiter, draw_limiter

RATE_LIMITED_TEXT = "You're doing that too often. Please slow down."
GENERIC_ERROR_TEXT = "Something went wrong. Please try again later."

_EXPENSIVE_ACTIONS = {"draw", "confirm_draw", "exclude", "validate"}


def check_rate_limit(user_id: int, action: str) -> bool:
    limiter = draw_limiter if action in _EXPENSIVE_ACTIONS else command_limiter
    return limiter.allow(f"{user_id}:{action}").allowed


def describe_error(error: SantaError) -> str:
    """Short user-facing text for a domain error."""
    errors = getattr(error, "errors", None)
    if errors:
        details = "\n".join(f"- {html.escape(item)}" for item in errors)
        return f"{html.escape(error.summary)}:\n{details}"
    return html.escape(str(error))


def command_args(text: Optional[str]) -> list[str]:
    if not text:
        return []
    return text.split()[1:]


def log_handler_exception(action: str, user_id: int | None, chat_id: int | None, error: Exception) -> None:
    logger.bind(action=action, user_id=user_id, chat_id=chat_id).exception(
        "Handler error: {error}", error=str(error)
    )
