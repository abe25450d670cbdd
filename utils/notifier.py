"""
utils/notifier.py — Best-effort Telegram delivery for engine alerts.

send() never raises: a failed delivery is logged and reported as False so the
poller can carry on with the rest of the batch.
"""

from __future__ import annotations

import logging
from typing import Optional

from telegram import Bot, LinkPreviewOptions
from telegram.constants import ParseMode
from telegram.error import TelegramError

logger = logging.getLogger(__name__)


class TelegramNotifier:
    def __init__(self, token: str, chat_id: str, timeout: float = 10.0, bot: Optional[Bot] = None):
        self.chat_id = str(chat_id or "").strip()
        self.timeout = timeout
        self._bot = bot or (Bot(token) if token else None)
        self._initialized = bot is not None

    @property
    def configured(self) -> bool:
        return self._bot is not None and bool(self.chat_id)

    async def _ensure_bot(self) -> Bot:
        if not self._initialized:
            await self._bot.initialize()
            self._initialized = True
        return self._bot

    async def send(self, text: str, image_url: Optional[str] = None) -> bool:
        if not self.configured:
            logger.info("TELEGRAM not configured. Message: %s", text)
            return False
        timeouts = {
            "read_timeout": self.timeout,
            "write_timeout": self.timeout,
            "connect_timeout": self.timeout,
        }
        try:
            bot = await self._ensure_bot()
            if image_url:
                await bot.send_photo(
                    chat_id=self.chat_id,
                    photo=image_url,
                    caption=text,
                    parse_mode=ParseMode.HTML,
                    **timeouts,
                )
            else:
                await bot.send_message(
                    chat_id=self.chat_id,
                    text=text,
                    parse_mode=ParseMode.HTML,
                    link_preview_options=LinkPreviewOptions(is_disabled=True),
                    **timeouts,
                )
            return True
        except TelegramError as exc:
            logger.warning("Telegram send failed: %s", exc)
            return False

    async def aclose(self):
        if self._bot is not None and self._initialized:
            await self._bot.shutdown()
