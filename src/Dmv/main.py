"""Process entrypoint: load config, wire the store and commands, run the bot.

Startup failures (config, store, command push, gateway connect) are fatal
and exit with status 1. SIGINT/SIGTERM trigger a clean ``Bot.stop``.
"""

from __future__ import annotations

import asyncio
import signal
import sys

import click
import structlog
from pydantic import ValidationError

from Dmv.bot import Bot
from Dmv.command_loader import CommandDeps, load_all_commands
from Dmv.config import Settings, load_settings
from Dmv.db import Database
from Dmv.exceptions import DmvError, StoreError
from Dmv.logging import redact_settings, setup_logging
from Dmv.metrics import get_counters
from Dmv.user_config import MemoryUserConfigStore, SqlUserConfigStore, UserConfigManager

log = structlog.get_logger()


async def _build_user_configs(settings: Settings) -> tuple[UserConfigManager, Database | None]:
    if settings.storage.backend == "memory":
        log.info("user_config.store", backend="memory")
        return UserConfigManager(MemoryUserConfigStore()), None
    database = Database(settings.storage.database_url)
    store = SqlUserConfigStore(database)
    try:
        await store.ping()
        if settings.storage.auto_create_schema:
            await store.create_schema()
    except StoreError:
        await database.dispose()
        raise
    log.info("user_config.store", backend="sql")
    return UserConfigManager(store), database


async def run(settings: Settings, *, bot: Bot | None = None) -> int:
    user_configs, database = await _build_user_configs(settings)
    try:
        bot = bot or Bot(settings.bot)
        load_all_commands(bot, CommandDeps(user_configs=user_configs))

        loop = asyncio.get_running_loop()
        shutdown = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown.set)

        start_task = asyncio.create_task(bot.start(), name="bot-start")
        shutdown_task = asyncio.create_task(shutdown.wait(), name="bot-shutdown-signal")
        try:
            await asyncio.wait({start_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            shutdown_task.cancel()

        if start_task.done() and start_task.exception() is not None:
            log.error("bot.start_failed", error=str(start_task.exception()))
            await bot.stop()
            return 1

        log.info("bot.shutting_down")
        await bot.stop()
        await start_task
        return 0
    finally:
        log.info("metrics.snapshot", counters=get_counters())
        if database is not None:
            await database.dispose()


@click.command(name="dmv", help="Run the Discord bot.")
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="Path to the TOML config file (default: $DMV_CONFIG or ./bot.toml).",
)
@click.option(
    "--log-level",
    default=None,
    help="Override [logging].level (DEBUG, INFO, WARNING, ...).",
)
def cli(config_path: str | None, log_level: str | None) -> int:
    try:
        settings = load_settings(config_path)
    except (DmvError, ValidationError) as err:
        # Logging is not configured yet; stderr is the only sink we have
        click.echo(f"Failed to load config: {err}", err=True)
        return 1
    if log_level:
        level = log_level.upper()
        settings = settings.model_copy(
            update={"logging_level": level, "logging_console": level, "logging_file": level}
        )
    setup_logging(settings)
    log.info("app.startup", config=redact_settings(settings))

    try:
        return asyncio.run(run(settings))
    except DmvError as err:
        log.error("app.fatal", error=str(err), exc_info=True)
        return 1


def main(argv: list[str] | None = None) -> int:
    return cli.main(args=argv, prog_name="dmv", standalone_mode=False)


if __name__ == "__main__":
    sys.exit(main())
