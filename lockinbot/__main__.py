"""Entry point to run the LockIn study bot."""
import argparse
import asyncio
import logging
import os
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import discord
from discord.ext import commands

from . import bot_config as cfg
from .db import close_pool
from .infra.logging import get_logger
from .postgres_handler import PostgresHandler
from .util import build_db_url
from .version import get_version

# ─── Logging Setup ─────────────────────────────────────────────────────────
logger = get_logger()
level_name = os.getenv("LOG_LEVEL", "INFO").upper()
level = getattr(logging, level_name, logging.INFO)
logger.setLevel(level)
log_format = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

console_handler = logging.StreamHandler()
console_handler.setFormatter(log_format)
# Limit console output to INFO and above even when file logging is DEBUG
console_handler.setLevel(logging.INFO)

root_logger = logging.getLogger()
root_logger.setLevel(level)
root_logger.addHandler(console_handler)

logger.info(
    "Starting LockIn Bot %s in %s environment with level %s",
    get_version(),
    getattr(cfg, "env", "PROD"),
    level_name,
)

intents = discord.Intents.default()
intents.voice_states = True
intents.members = True  # member.bot and presence checks for the session sweep


class LockInBot(commands.Bot):
    async def setup_hook(self) -> None:
        # Load cogs bundled with the package
        cog_dir = Path(__file__).resolve().parent / "cogs"
        for file in sorted(cog_dir.glob("*_cog.py")):
            await self.load_extension(f"lockinbot.cogs.{file.stem}")


bot = LockInBot(command_prefix="!", intents=intents)

_synced = False


@bot.event
async def on_ready() -> None:
    global _synced
    logger.info("%s is now online in %d guild(s)", bot.user, len(bot.guilds))
    if not _synced:
        try:
            if cfg.GUILD_ID:
                guild = discord.Object(id=cfg.GUILD_ID)
                bot.tree.copy_global_to(guild=guild)
                cmds = await bot.tree.sync(guild=guild)
            else:
                cmds = await bot.tree.sync()
            logger.info("Synced %d commands.", len(cmds))
            _synced = True
        except Exception as e:
            logger.exception("Failed to sync commands: %s", e)


@bot.event
async def on_error(event: str, *args, **kwargs) -> None:
    logger.exception("Unhandled exception in event %s", event)


@bot.tree.error
async def on_app_command_error(
    interaction: discord.Interaction, exc: discord.app_commands.AppCommandError
) -> None:
    cmd_name = getattr(interaction.command, "name", "unknown")
    if isinstance(exc, discord.app_commands.MissingPermissions):
        message = "You don't have permission to use this command."
    else:
        logger.exception("Error in slash command '%s'", cmd_name, exc_info=exc)
        message = "An error occurred."
    if interaction.response.is_done():
        await interaction.followup.send(message, ephemeral=True)
    else:
        await interaction.response.send_message(message, ephemeral=True)


async def main() -> None:
    db_url = build_db_url()
    db_handler = None
    file_handler = None
    if db_url:
        db_handler = PostgresHandler(db_url)
        await db_handler.connect()
        root_logger.addHandler(db_handler)
        logger.info("Postgres logging enabled; file logging disabled")
    else:
        log_dir = Path("logs")
        log_dir.mkdir(exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            log_dir / "bot.log", when="midnight", backupCount=90
        )
        file_handler.setFormatter(log_format)
        root_logger.addHandler(file_handler)

    try:
        # Closing the bot unloads the cogs, which flushes open study sessions
        async with bot:
            await bot.start(cfg.TOKEN)
    finally:
        if db_handler:
            root_logger.removeHandler(db_handler)
            await db_handler.aclose()
        if file_handler:
            file_handler.close()
        await close_pool()


def cli() -> None:
    parser = argparse.ArgumentParser(description="Run the LockIn study bot")
    parser.add_argument("--version", action="version", version=get_version())
    parser.parse_args()
    asyncio.run(main())


if __name__ == "__main__":
    cli()
