"""Safe outbound delivery: chunking, truncation and fallbacks.

Nothing here raises a Telegram error to the caller. A failed rich-format
message is retried as plain text, and as a last resort the content goes out
as a document.
"""

from __future__ import annotations

import io
import logging
from typing import Any

from telegram import Bot
from telegram.constants import ChatAction
from telegram.error import BadRequest, TelegramError

from termo.config import DeliveryConfig
from termo.errors import DeliveryFailed
from termo.utils.formatting import split_for_channel, truncate_head

logger = logging.getLogger(__name__)

FALLBACK_CHARS = 2000
CODE_FENCE_OVERHEAD = 24  # fences plus an "(i/n)" suffix


class Channel:
    """One chat on one bot: the only way the engine talks to Telegram."""

    def __init__(self, bot: Bot, chat_id: int, settings: DeliveryConfig | None = None) -> None:
        self.bot = bot
        self.chat_id = chat_id
        self.settings = settings or DeliveryConfig()

    # --- Raw operations (may raise TelegramError) ---

    async def send(self, text: str, parse_mode: str | None = None, reply_markup: Any = None) -> int:
        message = await self.bot.send_message(
            chat_id=self.chat_id, text=text, parse_mode=parse_mode, reply_markup=reply_markup
        )
        return message.message_id

    async def edit(self, message_id: int, text: str, parse_mode: str | None = None, reply_markup: Any = None) -> None:
        await self.bot.edit_message_text(
            chat_id=self.chat_id,
            message_id=message_id,
            text=text,
            parse_mode=parse_mode,
            reply_markup=reply_markup,
        )

    # --- Best-effort operations ---

    async def typing(self) -> None:
        try:
            await self.bot.send_chat_action(chat_id=self.chat_id, action=ChatAction.TYPING)
        except TelegramError:
            pass

    async def delete(self, message_id: int) -> bool:
        try:
            await self.bot.delete_message(chat_id=self.chat_id, message_id=message_id)
            return True
        except TelegramError:
            return False

    async def upload(self, text: str, filename: str = "output.txt") -> bool:
        """Send text as a document."""
        file = io.BytesIO(text.encode("utf-8"))
        file.name = filename
        line_count = text.count("\n") + 1
        try:
            await self.bot.send_document(
                chat_id=self.chat_id,
                document=file,
                filename=filename,
                caption=f"📄 Full output ({len(text)} chars, {line_count} lines)",
            )
            return True
        except TelegramError:
            logger.warning("Upload to chat %s failed", self.chat_id, exc_info=True)
            return False

    async def send_safe(
        self,
        text: str,
        parse_mode: str | None = None,
        code_block: bool = False,
        filename: str = "output.txt",
        reply_markup: Any = None,
    ) -> bool:
        """Send text of any length. Returns False only if every fallback failed."""
        if len(text) > self.settings.file_threshold:
            return await self.upload(text, filename)

        budget = self.settings.max_message - (CODE_FENCE_OVERHEAD if code_block else 0)
        chunks = [c for c in split_for_channel(text, budget) if c.strip()] or ["(empty)"]
        limit = self.settings.hard_limit - (CODE_FENCE_OVERHEAD if code_block else 0)

        for i, chunk in enumerate(chunks):
            chunk = truncate_head(chunk, limit)
            body = chunk
            if code_block:
                body = f"```\n{chunk}\n```"
                if len(chunks) > 1:
                    body += f" ({i + 1}/{len(chunks)})"
            markup = reply_markup if i == len(chunks) - 1 else None
            try:
                await self._send_chunk(body, chunk, parse_mode, markup)
            except DeliveryFailed:
                logger.warning("Plain send to chat %s failed, uploading instead", self.chat_id)
                return await self.upload(text, filename)
        return True

    async def _send_chunk(self, body: str, chunk: str, parse_mode: str | None, markup: Any) -> None:
        """Send one chunk as formatted, then as plain text. Raises DeliveryFailed."""
        try:
            await self.send(body, parse_mode=parse_mode, reply_markup=markup)
            return
        except TelegramError:
            logger.debug("Formatted send failed, retrying plain", exc_info=True)
        try:
            await self.send(chunk[-FALLBACK_CHARS:], reply_markup=markup)
        except TelegramError as e:
            raise DeliveryFailed(str(e)) from e

    async def edit_safe(
        self,
        message_id: int,
        text: str,
        parse_mode: str | None = None,
        plain_text: str | None = None,
        reply_markup: Any = None,
    ) -> bool:
        """Edit in place; fall back to a plain edit, then to a new message.

        Returns True only if the original message was edited.
        """
        final = truncate_head(text, self.settings.max_message)
        try:
            await self.edit(message_id, final, parse_mode=parse_mode, reply_markup=reply_markup)
            return True
        except TelegramError as e:
            if isinstance(e, BadRequest) and "not modified" in e.message.lower():
                return True
            logger.debug("Edit of message %s failed", message_id, exc_info=True)

        plain = truncate_head(plain_text if plain_text is not None else text, self.settings.max_message)
        if parse_mode is not None:
            try:
                await self.edit(message_id, plain, reply_markup=reply_markup)
                return True
            except TelegramError:
                logger.debug("Plain edit of message %s failed", message_id, exc_info=True)

        try:
            await self.send(plain[-FALLBACK_CHARS:])
        except TelegramError:
            logger.warning("Could not deliver update to chat %s", self.chat_id)
        return False
