from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware
from aiogram.types import TelegramObject

from pixsettle.utils.correlation import correlation_scope


class CorrelationMiddleware(BaseMiddleware):
    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        # One correlation id per update, visible to handlers and in every log line they emit
        with correlation_scope() as cid:
            data["correlation_id"] = cid
            return await handler(event, data)
