"""
Entry point for the media bot.
"""

import asyncio
import logging
import os
import sys

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.fsm.storage.memory import MemoryStorage
from aiohttp import web
from dotenv import load_dotenv

load_dotenv()

from config import LOG_FORMAT, LOG_LEVEL, load_settings, require_bot_token  # noqa: E402
from context import build_context  # noqa: E402
from errors import setup_logging  # noqa: E402
from handlers import BotHandlers  # noqa: E402
from managers import TokenSweeper  # noqa: E402
from messaging import AiogramMessenger  # noqa: E402
from pipeline import PipelineOrchestrator  # noqa: E402
from tools import Converter, Downloader  # noqa: E402

shutdown_event = asyncio.Event()


async def start_health_server() -> None:
    """Run a tiny HTTP server so the hosting platform can keep this app healthy."""
    app = web.Application()

    async def health(request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    app.router.add_get("/", health)
    app.router.add_get("/health", health)

    runner = web.AppRunner(app)
    await runner.setup()

    host = "0.0.0.0"
    port = int(os.getenv("PORT", "10000"))
    site = web.TCPSite(runner, host=host, port=port)
    await site.start()
    logging.getLogger(__name__).info("Health server started on %s:%s", host, port)

    try:
        await shutdown_event.wait()
    finally:
        await runner.cleanup()


async def main() -> None:
    logger = setup_logging(level=LOG_LEVEL, format_string=LOG_FORMAT)
    logger.info("Starting media bot")

    bot = None
    ctx = None
    sweeper = None
    health_server_task = None
    try:
        settings = load_settings()
        bot = Bot(token=require_bot_token(), default=DefaultBotProperties(parse_mode="HTML"))
        dispatcher = Dispatcher(storage=MemoryStorage())

        ctx = await build_context(settings)
        orchestrator = PipelineOrchestrator(
            ctx,
            messenger=AiogramMessenger(bot),
            downloader=Downloader(settings.invocation_timeout_seconds, settings.max_file_size_mb),
            converter=Converter(settings.invocation_timeout_seconds),
        )
        await orchestrator.recover()

        sweeper = TokenSweeper(orchestrator.sweep_expired, settings.sweep_interval_seconds)
        sweeper.start()

        BotHandlers(dp=dispatcher, orchestrator=orchestrator, ledger=ctx.ledger, settings=settings)

        health_server_task = asyncio.create_task(start_health_server())
        await dispatcher.start_polling(bot)
    except Exception:
        logging.getLogger(__name__).exception("Fatal startup/runtime error")
        sys.exit(1)
    finally:
        shutdown_event.set()
        if health_server_task is not None:
            try:
                await health_server_task
            except Exception:
                logging.getLogger(__name__).debug("Health server shutdown failed", exc_info=True)
        if sweeper is not None:
            await sweeper.stop()
        if ctx is not None:
            await ctx.close()
        if bot is not None:
            await bot.session.close()


if __name__ == "__main__":
    asyncio.run(main())
