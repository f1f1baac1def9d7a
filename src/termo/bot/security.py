"""Allow-list gate in front of every chat handler."""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Coroutine

from telegram import Update
from telegram.ext import ContextTypes

from termo.config import get_config

logger = logging.getLogger(__name__)

Handler = Callable[[Update, ContextTypes.DEFAULT_TYPE], Coroutine[Any, Any, None]]


def is_allowed_user(user_id: int, allowed: list[int] | None = None) -> bool:
    """An empty allow-list admits everyone (single-user installs)."""
    if allowed is None:
        allowed = get_config().bot.allowed_users
    return not allowed or user_id in allowed


def user_id_required(func: Handler) -> Handler:
    """Silently drop updates without a user, or from users not on the list."""

    @functools.wraps(func)
    async def guarded(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user, chat = update.effective_user, update.effective_chat
        if user is None or chat is None:
            return
        if not is_allowed_user(user.id):
            logger.warning("Dropped update from user %s (@%s) in chat %s", user.id, user.username, chat.id)
            return
        await func(update, context)

    return guarded
