"""Telegram application wiring and process lifecycle."""

from __future__ import annotations

import asyncio
import logging
import signal

from telegram import BotCommand
from telegram.ext import Application, CommandHandler, MessageHandler, filters

from termo.bot import handlers
from termo.bot.services import build_services, set_services
from termo.config import AppConfig
from termo.storage.database import close_db, init_db

logger = logging.getLogger(__name__)

BOT_COMMANDS = [
    BotCommand("attach", "Attach to a tmux session (assistant mode)"),
    BotCommand("detach", "Leave assistant mode"),
    BotCommand("stop", "Interrupt the assistant"),
    BotCommand("screen", "Show the current screen"),
    BotCommand("tmux", "Manage tmux sessions"),
    BotCommand("sh", "Run a shell command"),
    BotCommand("cd", "Change directory"),
    BotCommand("session", "Switch shell session"),
    BotCommand("abort", "Abort the running command"),
    BotCommand("history", "View recent command history"),
    BotCommand("help", "Show help message"),
]

HANDLERS = {
    "start": handlers.start_handler,
    "help": handlers.help_handler,
    "attach": handlers.attach_handler,
    "detach": handlers.detach_handler,
    "stop": handlers.stop_handler,
    "screen": handlers.screen_handler,
    "tmux": handlers.tmux_handler,
    "sh": handlers.shell_handler,
    "cd": handlers.cd_handler,
    "session": handlers.session_handler,
    "abort": handlers.abort_handler,
    "confirm": handlers.confirm_handler,
    "cancel": handlers.cancel_handler,
    "history": handlers.history_handler,
}


def build_application(token: str) -> Application:
    # /stop and /abort must reach a user whose previous update is still running.
    application = Application.builder().token(token).concurrent_updates(True).build()
    for command, handler in HANDLERS.items():
        application.add_handler(CommandHandler(command, handler))
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handlers.text_handler))
    return application


async def _wait_for_shutdown_signal() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)
    await stop_event.wait()
    logger.info("Shutdown signal received")


async def run_bot(config: AppConfig) -> None:
    """Run the bot until SIGINT or SIGTERM."""
    if not config.bot.token:
        raise ValueError("Bot token not configured. Run 'termo init' first.")

    await init_db(config.storage.db_path)
    services = build_services(config)
    set_services(services)

    application = build_application(config.bot.token)
    await application.initialize()
    await application.bot.set_my_commands(BOT_COMMANDS)
    await application.start()
    assert application.updater is not None
    await application.updater.start_polling(drop_pending_updates=True)

    sweeper = asyncio.create_task(services.registry.run_sweeper(), name="registry-sweeper")
    logger.info("Bot started, polling for updates")
    try:
        await _wait_for_shutdown_signal()
    finally:
        sweeper.cancel()
        await services.engine.shutdown()
        services.executor.abort_all()
        await application.updater.stop()
        await application.stop()
        await application.shutdown()
        await close_db()
        set_services(None)
        logger.info("Bot stopped")
