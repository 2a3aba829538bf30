"""Discord bot client setup and configuration."""

from __future__ import annotations

import asyncio
import logging

import hikari
import lightbulb

from storybot.bot.messaging import HikariMessenger
from storybot.bot.services.entry_service import EntryService
from storybot.bot.services.story_service import StoryService
from storybot.bot.services.text_service import DEFAULT_TEXTS, TextResolver
from storybot.bot.services.turn_service import TurnService
from storybot.shared.config import Settings
from storybot.shared.config import get_settings
from storybot.shared.database import close_database, init_database
from storybot.web.crud import ConfigOperations

logger = logging.getLogger(__name__)


def create_bot(settings: Settings | None = None) -> lightbulb.BotApp:
    """Create and configure the Discord bot with Lightbulb v2 syntax.

    Returns:
        BotApp instance for v2 compatibility
    """
    if settings is None:
        settings = get_settings()

    intents = (
        hikari.Intents.GUILDS  # Thread create/update events
        | hikari.Intents.GUILD_MEMBERS  # Member roles for admin checks
        | hikari.Intents.GUILD_MESSAGES  # Turn thread write restriction
        | hikari.Intents.MESSAGE_CONTENT  # Collecting turn thread messages
    )

    bot = lightbulb.BotApp(
        token=settings.discord_bot_token,
        intents=intents,
        logs={
            "version": 1,
            "incremental": True,
            "loggers": {
                "hikari": {"level": "INFO"},
                "lightbulb": {"level": "INFO"},
                "storybot": {"level": settings.log_level.upper()},
            },
        },
        banner=None,
    )

    return bot


async def setup_bot_services(bot: lightbulb.BotApp) -> None:
    """Set up the database and the story services, stored in ``bot.d``."""
    logger.info("Setting up bot services...")
    settings = get_settings()

    session_factory = await init_database()

    async with session_factory() as session:
        seeded = await ConfigOperations().seed_defaults(
            session, DEFAULT_TEXTS, settings.default_language
        )
        await session.commit()
    if seeded:
        logger.info(f"Seeded {seeded} default texts")

    texts = TextResolver(
        session_factory,
        default_language=settings.default_language,
        cache_ttl=settings.text_cache_ttl_seconds,
    )
    messenger = HikariMessenger(bot.rest, archive_minutes=settings.turn_thread_archive_minutes)
    turn_service = TurnService(messenger, texts)

    bot.d["texts"] = texts
    bot.d["messenger"] = messenger
    bot.d["turn_service"] = turn_service
    bot.d["story_service"] = StoryService(session_factory, texts, messenger, turn_service)
    bot.d["entry_service"] = EntryService(
        session_factory,
        texts,
        messenger,
        turn_service,
        preview_timeout_minutes=settings.entry_preview_timeout_minutes,
        finalize_message_limit=settings.finalize_message_limit,
    )
    logger.info("✓ Story services initialized")


async def start_activation_poller(bot: lightbulb.BotApp) -> None:
    """Start the periodic check for delayed stories that are due to activate.

    Args:
        bot: Bot application instance
    """
    interval = get_settings().activation_poll_interval_seconds

    async def poll_activation_jobs():
        while True:
            try:
                await bot.d["story_service"].run_due_activation_jobs()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error running activation jobs: {e}")

            await asyncio.sleep(interval)

    bot.d["activation_poller"] = asyncio.create_task(poll_activation_jobs())
    logger.info(f"Started activation poller (every {interval}s)")


async def cleanup_bot_services(bot: lightbulb.BotApp) -> None:
    """Stop background tasks and close the database."""
    logger.info("Cleaning up bot services...")

    try:
        task = bot.d.get("activation_poller")
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await close_database()
        logger.info("Bot services cleanup complete")

    except Exception as e:
        logger.error(f"Error cleaning up bot services: {e}")


def load_plugins(bot: lightbulb.BotApp) -> None:
    """Load bot plugins using Lightbulb v2 syntax."""
    logger.info("Loading story plugin...")
    bot.load_extensions("storybot.bot.plugins.story")
    logger.info("✓ Loaded story plugin")


async def run_bot() -> None:
    """Run the Discord bot with Lightbulb v2 syntax."""
    settings = get_settings()

    if not settings.discord_bot_token:
        logger.error("Discord bot token not provided")
        return

    bot = create_bot(settings)

    @bot.listen()
    async def on_started(event: hikari.StartedEvent) -> None:
        """Handle bot started event."""
        bot_user = event.app.get_me()
        if bot_user:
            logger.info(f"Bot started as {bot_user.username}")
        await start_activation_poller(bot)

    @bot.listen()
    async def on_stopping(event: hikari.StoppingEvent) -> None:
        """Handle bot stopping event."""
        logger.info("Bot is stopping...")
        await cleanup_bot_services(bot)

    await setup_bot_services(bot)
    load_plugins(bot)

    try:
        await bot.start()
        logger.info("Bot is now running. Press Ctrl+C to stop.")
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            logger.info("Bot shutdown requested")
    finally:
        logger.info("Shutting down bot...")
        await bot.close()


def main() -> None:
    """Console entry point."""
    logging.basicConfig(level=get_settings().log_level.upper())
    asyncio.run(run_bot())


if __name__ == "__main__":
    main()
