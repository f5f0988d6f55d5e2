from __future__ import annotations

import asyncio
import logging

from dotenv import load_dotenv

# Settings are read from the environment at import time
load_dotenv()

import uvicorn  # noqa: E402
from aiogram import Bot, Dispatcher  # noqa: E402

from pixsettle.bot.handlers import admin_payments  # noqa: E402
from pixsettle.bot.middlewares.correlation import CorrelationMiddleware  # noqa: E402
from pixsettle.config import settings  # noqa: E402
from pixsettle.container import build_services  # noqa: E402
from pixsettle.db.session import dispose_engine, init_models  # noqa: E402
from pixsettle.logging_config import setup_logging  # noqa: E402
from pixsettle.services.notifications import aclose_bot, bind_bot  # noqa: E402
from pixsettle.services.scheduler import run_scheduler  # noqa: E402
from pixsettle.storage.sql import SqlStorage  # noqa: E402
from pixsettle.web.webhook import create_app  # noqa: E402

logger = logging.getLogger(__name__)


async def main() -> None:
    setup_logging()

    services = build_services()
    if isinstance(services.storage, SqlStorage):
        await init_models()

    app = create_app(services)
    server = uvicorn.Server(uvicorn.Config(app, host=settings.http_host, port=settings.http_port, log_config=None))

    background = [asyncio.create_task(run_scheduler(services.registry, services.withdrawals), name="scheduler")]

    bot = None
    if settings.telegram_bot_token:
        bot = Bot(token=settings.telegram_bot_token)
        bind_bot(bot)
        dp = Dispatcher(services=services)
        dp.message.middleware(CorrelationMiddleware())
        dp.include_router(admin_payments.router)
        await bot.delete_webhook(drop_pending_updates=True)
        logger.info("Starting Telegram admin bot polling ...")
        background.append(asyncio.create_task(dp.start_polling(bot, handle_signals=False), name="bot"))
    else:
        logger.warning("TELEGRAM_BOT_TOKEN not set; admin bot disabled")

    logger.info("Starting HTTP server", extra={"extra": {"host": settings.http_host, "port": settings.http_port}})
    try:
        await server.serve()
    finally:
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        await services.aclose()
        await aclose_bot()
        if bot is not None:
            await bot.session.close()
        await dispose_engine()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
