from aiogram.utils.keyboard import InlineKeyboardBuilder


def join_keyboard():
    keyboard = InlineKeyboardBuilder()
    keyboard.button(text="Join Secret Santa!", callback_data="join")
    return keyboard.as_markup()


def confirm_draw_keyboard(budget: str):
    keyboard = InlineKeyboardBuilder()
    keyboard.button(text=f"Yes, draw with budget {budget}", callback_data=f"confirm_draw:{budget}")
    keyboard.button(text="Cancel", callback_data="cancel_draw")
    keyboard.adjust(1)
    return keyboard.as_markup()
