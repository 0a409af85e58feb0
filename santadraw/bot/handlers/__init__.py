from aiogram import Router

from santadraw.bot.handlers import assignment, group_game, start, wishlist

router = Router()
router.include_router(start.router)
router.include_router(group_game.router)
router.include_router(wishlist.router)
router.include_router(assignment.router)
