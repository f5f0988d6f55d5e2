from __future__ import annotations

import asyncio
import logging
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError

from pixsettle.config import settings
from pixsettle.storage.base import Storage, UserNotification
from pixsettle.utils.correlation import get_correlation_id

logger = logging.getLogger(__name__)

_bot: Optional[Bot] = None
_owns_bot = False
_bot_lock = asyncio.Lock()


def bind_bot(bot: Bot) -> None:
    """Reuse the polling bot for admin alerts instead of opening a second session."""
    global _bot, _owns_bot
    _bot, _owns_bot = bot, False


async def _alert_bot() -> Optional[Bot]:
    global _bot, _owns_bot
    if _bot is not None:
        return _bot
    async with _bot_lock:
        if _bot is None:
            token = settings.telegram_bot_token.strip()
            if not token:
                logger.warning("notify: TELEGRAM_BOT_TOKEN missing; admin alerts disabled")
                return None
            _bot, _owns_bot = Bot(token=token), True
        return _bot


def _log_chat_id() -> Optional[int]:
    raw = settings.log_chat_id.strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("notify_log: invalid LOG_CHAT_ID: %s", raw)
        return None


async def notify_log(text: str, *, disable_web_page_preview: bool = True) -> bool:
    """Push an admin alert to LOG_CHAT_ID. False when alerts are off or Telegram refused it."""
    chat_id = _log_chat_id()
    if chat_id is None:
        return False
    bot = await _alert_bot()
    if bot is None:
        return False
    cid = get_correlation_id()
    if cid:
        text = f"{text}\n[cid {cid}]"
    try:
        await bot.send_message(chat_id=chat_id, text=text, disable_web_page_preview=disable_web_page_preview)
    except TelegramAPIError as e:
        logger.warning("notify_log failed", extra={"extra": {"err": str(e), "alert": text}})
        return False
    return True


async def notify_user(
    storage: Storage,
    user_id: int,
    title: str,
    message: str,
    *,
    kind: str,
    urgent: bool = False,
) -> bool:
    """Create an in-app notification. Returns False (and logs) when the write fails."""
    try:
        await storage.create_notification(
            UserNotification(user_id=user_id, title=title, message=message, kind=kind, urgent=urgent)
        )
    except Exception as e:
        logger.warning("notify_user failed", extra={"extra": {"user_id": user_id, "kind": kind, "err": str(e)}})
        return False
    return True


async def aclose_bot() -> None:
    global _bot, _owns_bot
    bot, owned = _bot, _owns_bot
    _bot, _owns_bot = None, False
    if bot is not None and owned:
        await bot.session.close()
