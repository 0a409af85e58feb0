from __future__ import annotations

import html
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

from aiogram.exceptions import (
    TelegramAPIError,
    TelegramBadRequest,
    TelegramForbiddenError,
    TelegramNetworkError,
    TelegramRetryAfter,
)

from santadraw.db import NotificationType


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def success(cls) -> "DeliveryResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, code: str, message: str) -> "DeliveryResult":
        return cls(ok=False, error_code=code, error_message=message)


class MailTransport(Protocol):
    async def send(
        self,
        recipient_address: str,
        template_type: NotificationType,
        template_data: Mapping[str, Any],
    ) -> DeliveryResult:
        ...


def render_message(template_type: NotificationType, template_data: Mapping[str, Any]) -> str:
    group_name = html.escape(str(template_data.get("group_name") or "your group"))
    if template_type == NotificationType.OUTCOME_READY:
        lines = [
            f"The Secret Santa draw for <b>{group_name}</b> is done!",
            "",
            "Send /mygift to see who you are giving a gift to.",
        ]
        budget = template_data.get("budget")
        if budget:
            lines.append(f"Budget: {html.escape(str(budget))}")
        return "\n".join(lines)

    if template_type == NotificationType.WISH_UPDATED:
        recipient = html.escape(str(template_data.get("recipient_label") or "Your recipient"))
        return (
            f"{recipient} updated their wishlist in <b>{group_name}</b>.\n\n"
            "Send /mygift to read it."
        )

    raise ValueError(f"Unknown notification type: {template_type}")


class TelegramTransport:
    """Delivers notifications as private Telegram messages.

    The recipient address is the person's Telegram chat id.
    """

    def __init__(self, bot) -> None:
        self._bot = bot

    async def send(
        self,
        recipient_address: str,
        template_type: NotificationType,
        template_data: Mapping[str, Any],
    ) -> DeliveryResult:
        text = render_message(template_type, template_data)
        try:
            await self._bot.send_message(int(recipient_address), text)
        except TelegramForbiddenError as exc:
            return DeliveryResult.failure("forbidden", exc.message)
        except TelegramRetryAfter as exc:
            return DeliveryResult.failure("rate_limited", f"retry after {exc.retry_after}s")
        except TelegramBadRequest as exc:
            return DeliveryResult.failure("bad_request", exc.message)
        except TelegramNetworkError as exc:
            return DeliveryResult.failure("network", exc.message)
        except TelegramAPIError as exc:
            return DeliveryResult.failure("telegram_error", exc.message)
        return DeliveryResult.success()
