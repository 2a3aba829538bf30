"""Story commands: create, join, write, finalize, skip and moderate stories.

Slash commands collect already-validated primitives and hand them to the
story services; buttons and the entry modal are routed through one
interaction listener keyed on ``custom_id`` prefixes.
"""

from __future__ import annotations

import logging
from typing import Optional

import hikari
import lightbulb

from storybot.bot.messaging import HikariMessenger, member_is_admin
from storybot.bot.services.entry_service import ENTRY_MAX_LENGTH, EntryService
from storybot.bot.services.models import (
    ActionButton,
    ServiceResult,
    StoryParams,
    WriterInfo,
)
from storybot.bot.services.story_service import StoryService
from storybot.shared.config import get_settings
from storybot.shared.utils import sanitize_markdown, sanitize_modal_input
from storybot.web.models import NotificationPreference, StoryOrderType

plugin = lightbulb.Plugin("story")

logger = logging.getLogger(__name__)
settings = get_settings()

ORDER_CHOICES = {
    "random": StoryOrderType.RANDOM,
    "join": StoryOrderType.JOIN_ORDER,
    "fixed": StoryOrderType.FIXED_ORDER,
}
ENTRY_MODAL_PREFIX = "story_entry_modal"
ENTRY_INPUT_ID = "entry_text"
EMBED_DESCRIPTION_LIMIT = 4096


## Abstractions
def story_service(bot: lightbulb.BotApp) -> StoryService:
    return bot.d["story_service"]


def entry_service(bot: lightbulb.BotApp) -> EntryService:
    return bot.d["entry_service"]


def messenger(bot: lightbulb.BotApp) -> HikariMessenger:
    return bot.d["messenger"]


async def defer_ephemeral(ctx: lightbulb.Context) -> None:
    await ctx.respond(
        hikari.ResponseType.DEFERRED_MESSAGE_CREATE,
        flags=hikari.MessageFlag.EPHEMERAL,
    )


def result_text(result: ServiceResult) -> str:
    if result.success:
        return result.message or "Done."
    return result.error or "Something went wrong. Please try again."


def writer_from_context(
    ctx: lightbulb.Context,
    pen_name: Optional[str],
    private_turns: bool,
    notify: str,
) -> WriterInfo:
    display_name = ctx.member.display_name if ctx.member else ctx.author.username
    return WriterInfo(
        user_id=str(ctx.author.id),
        display_name=display_name,
        pen_name=sanitize_modal_input(pen_name, 100) or None,
        turn_privacy=private_turns,
        notification_pref=NotificationPreference(notify),
    )


def entry_modal_rows(bot: lightbulb.BotApp, label: str) -> list:
    row = bot.rest.build_modal_action_row().add_text_input(
        ENTRY_INPUT_ID,
        label,
        style=hikari.TextInputStyle.PARAGRAPH,
        max_length=ENTRY_MAX_LENGTH,
        required=True,
    )
    return [row]


def parse_custom_id(custom_id: str) -> tuple[str, Optional[int]]:
    action, _, raw_id = custom_id.partition(":")
    try:
        return action, int(raw_id)
    except ValueError:
        return action, None


@plugin.command
@lightbulb.add_checks(lightbulb.guild_only)
@lightbulb.command("story", "Round-robin story commands")
@lightbulb.implements(lightbulb.SlashCommandGroup)
async def story_group(ctx: lightbulb.Context) -> None:
    """Story command group."""
    pass


@story_group.child
@lightbulb.option("title", "Story title", type=str, required=True)
@lightbulb.option("turn_length", "Hours per turn", type=int, required=False, default=24, min_value=1)
@lightbulb.option(
    "reminder_percent",
    "Remind writers after this share of their turn (0 = never)",
    type=int,
    required=False,
    default=50,
    choices=[0, 25, 50, 75],
)
@lightbulb.option(
    "order", "How the next writer is picked", type=str, required=False, default="random",
    choices=list(ORDER_CHOICES),
)
@lightbulb.option("quick_mode", "Write entries in a form instead of turn threads", type=bool, required=False, default=False)
@lightbulb.option("private_turns", "Make every turn thread private", type=bool, required=False, default=False)
@lightbulb.option("late_joins", "Allow writers to join after the story started", type=bool, required=False, default=True)
@lightbulb.option("max_writers", "Maximum number of writers", type=int, required=False, default=None, min_value=1)
@lightbulb.option("delay_hours", "Start the story after this many hours", type=int, required=False, default=None, min_value=0)
@lightbulb.option("delay_writers", "Start the story once this many writers joined", type=int, required=False, default=None, min_value=0)
@lightbulb.option("pen_name", "Name to credit you by", type=str, required=False, default=None)
@lightbulb.option("notify", "How to tell you it's your turn", type=str, required=False, default="dm", choices=["dm", "mention"])
@lightbulb.command("add", "Create a new round-robin story in this channel")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def add_command(ctx: lightbulb.Context) -> None:
    """Create a story with the invoking member as its first writer."""
    await defer_ephemeral(ctx)

    params = StoryParams(
        title=sanitize_modal_input(ctx.options.title, 500),
        channel_id=str(ctx.channel_id),
        quick_mode=ctx.options.quick_mode,
        turn_length_hours=ctx.options.turn_length,
        timeout_reminder_percent=ctx.options.reminder_percent,
        order_type=ORDER_CHOICES[ctx.options.order],
        turn_privacy=ctx.options.private_turns,
        allow_late_joins=ctx.options.late_joins,
        max_writers=ctx.options.max_writers,
        delay_hours=ctx.options.delay_hours,
        delay_writers=ctx.options.delay_writers,
    )
    creator = writer_from_context(ctx, ctx.options.pen_name, False, ctx.options.notify)

    result = await story_service(ctx.bot).create_story(str(ctx.guild_id), creator, params)
    await ctx.edit_last_response(result_text(result))


@story_group.child
@lightbulb.option("story_id", "Story number", type=int, required=True, min_value=1)
@lightbulb.option("pen_name", "Name to credit you by", type=str, required=False, default=None)
@lightbulb.option("private_turns", "Make your turn threads private", type=bool, required=False, default=False)
@lightbulb.option("notify", "How to tell you it's your turn", type=str, required=False, default="dm", choices=["dm", "mention"])
@lightbulb.command("join", "Join a story as a writer")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def join_command(ctx: lightbulb.Context) -> None:
    await defer_ephemeral(ctx)
    writer = writer_from_context(ctx, ctx.options.pen_name, ctx.options.private_turns, ctx.options.notify)
    result = await story_service(ctx.bot).join_story(str(ctx.guild_id), ctx.options.story_id, writer)
    await ctx.edit_last_response(result_text(result))


@story_group.child
@lightbulb.option("story_id", "Story number", type=int, required=True, min_value=1)
@lightbulb.command("write", "Write your entry for a quick-mode story")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def write_command(ctx: lightbulb.Context) -> None:
    label = await story_service(ctx.bot).texts.resolve("btnWriteEntry", str(ctx.guild_id))
    await ctx.interaction.create_modal_response(
        label,
        f"{ENTRY_MODAL_PREFIX}:{ctx.options.story_id}",
        components=entry_modal_rows(ctx.bot, label),
    )


@story_group.child
@lightbulb.option("story_id", "Story number", type=int, required=True, min_value=1)
@lightbulb.command("finalize", "Finish your turn with what you wrote in the turn thread")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def finalize_command(ctx: lightbulb.Context) -> None:
    await defer_ephemeral(ctx)
    result = await entry_service(ctx.bot).finalize_entry(
        ctx.options.story_id, str(ctx.author.id), str(ctx.guild_id)
    )
    await ctx.edit_last_response(result_text(result))


@story_group.child
@lightbulb.option("story_id", "Story number", type=int, required=True, min_value=1)
@lightbulb.command("skip", "Skip the current turn")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def skip_command(ctx: lightbulb.Context) -> None:
    await defer_ephemeral(ctx)
    is_admin = member_is_admin(ctx.member, settings.admin_role_id)
    result = await entry_service(ctx.bot).skip_turn(
        ctx.options.story_id, str(ctx.author.id), is_admin=is_admin, guild_id=str(ctx.guild_id)
    )
    await ctx.edit_last_response(result_text(result))


@story_group.child
@lightbulb.add_checks(lightbulb.has_guild_permissions(hikari.Permissions.MANAGE_GUILD))
@lightbulb.option("story_id", "Story number", type=int, required=True, min_value=1)
@lightbulb.command("pause", "Pause a story")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def pause_command(ctx: lightbulb.Context) -> None:
    await defer_ephemeral(ctx)
    result = await story_service(ctx.bot).pause_story(str(ctx.guild_id), ctx.options.story_id)
    await ctx.edit_last_response(result_text(result))


@story_group.child
@lightbulb.add_checks(lightbulb.has_guild_permissions(hikari.Permissions.MANAGE_GUILD))
@lightbulb.option("story_id", "Story number", type=int, required=True, min_value=1)
@lightbulb.command("resume", "Resume a paused story")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def resume_command(ctx: lightbulb.Context) -> None:
    await defer_ephemeral(ctx)
    result = await story_service(ctx.bot).resume_story(str(ctx.guild_id), ctx.options.story_id)
    await ctx.edit_last_response(result_text(result))


@story_group.child
@lightbulb.add_checks(lightbulb.has_guild_permissions(hikari.Permissions.MANAGE_GUILD))
@lightbulb.option("story_id", "Story number", type=int, required=True, min_value=1)
@lightbulb.command("close", "Close a story for good")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def close_command(ctx: lightbulb.Context) -> None:
    await defer_ephemeral(ctx)
    result = await story_service(ctx.bot).close_story(str(ctx.guild_id), ctx.options.story_id)
    await ctx.edit_last_response(result_text(result))


async def handle_entry_modal(bot: lightbulb.BotApp, interaction: hikari.ModalInteraction) -> None:
    """Store the submitted text as a pending entry and show the preview."""
    _, story_id = parse_custom_id(interaction.custom_id)
    if story_id is None:
        logger.warning(f"Malformed entry modal id: {interaction.custom_id}")
        return
    content = ""
    for row in interaction.components:
        for component in row.components:
            if component.custom_id == ENTRY_INPUT_ID:
                content = component.value or ""

    await interaction.create_initial_response(
        hikari.ResponseType.DEFERRED_MESSAGE_CREATE, flags=hikari.MessageFlag.EPHEMERAL
    )
    guild_id = str(interaction.guild_id) if interaction.guild_id else None
    result = await entry_service(bot).submit_entry(story_id, str(interaction.user.id), content, guild_id)
    if not result.success:
        await interaction.edit_initial_response(result_text(result))
        return

    texts = entry_service(bot).texts
    buttons = (
        ActionButton(
            f"story_entry_confirm:{result.entry_id}",
            await texts.resolve("btnConfirmEntry", guild_id),
            "success",
        ),
        ActionButton(
            f"story_entry_discard:{result.entry_id}",
            await texts.resolve("btnDiscardEntry", guild_id),
            "danger",
        ),
    )
    # Shown literally so the writer sees exactly what was typed
    embed = hikari.Embed(
        description=sanitize_markdown(result.content, EMBED_DESCRIPTION_LIMIT),
        color=0x5865F2,
    )
    await interaction.edit_initial_response(
        result_text(result),
        embed=embed,
        components=messenger(bot).build_action_rows(buttons),
    )


async def handle_story_button(bot: lightbulb.BotApp, interaction: hikari.ComponentInteraction) -> None:
    action, target_id = parse_custom_id(interaction.custom_id)
    if target_id is None:
        logger.warning(f"Malformed story button id: {interaction.custom_id}")
        return

    user_id = str(interaction.user.id)
    guild_id = str(interaction.guild_id) if interaction.guild_id else None

    if action == "story_write":
        label = await entry_service(bot).texts.resolve("btnWriteEntry", guild_id)
        await interaction.create_modal_response(
            label,
            f"{ENTRY_MODAL_PREFIX}:{target_id}",
            components=entry_modal_rows(bot, label),
        )
        return

    if action in ("story_entry_confirm", "story_entry_discard"):
        await interaction.create_initial_response(hikari.ResponseType.DEFERRED_MESSAGE_UPDATE)
        if action == "story_entry_confirm":
            result = await entry_service(bot).confirm_entry(target_id, user_id, guild_id)
        else:
            result = await entry_service(bot).discard_entry(target_id, user_id, guild_id)
        await interaction.edit_initial_response(result_text(result), components=[])
        return

    await interaction.create_initial_response(
        hikari.ResponseType.DEFERRED_MESSAGE_CREATE, flags=hikari.MessageFlag.EPHEMERAL
    )
    if action == "story_finalize":
        result = await entry_service(bot).finalize_entry(target_id, user_id, guild_id)
    else:
        is_admin = member_is_admin(interaction.member, settings.admin_role_id)
        result = await entry_service(bot).skip_turn(target_id, user_id, is_admin=is_admin, guild_id=guild_id)
    await interaction.edit_initial_response(result_text(result))


STORY_BUTTONS = (
    "story_write",
    "story_finalize",
    "story_skip",
    "story_entry_confirm",
    "story_entry_discard",
)


@plugin.listener(hikari.InteractionCreateEvent)
async def on_story_interaction(event: hikari.InteractionCreateEvent) -> None:
    """Route story modals and buttons to the services."""
    interaction = event.interaction
    try:
        if isinstance(interaction, hikari.ModalInteraction):
            if interaction.custom_id.startswith(f"{ENTRY_MODAL_PREFIX}:"):
                await handle_entry_modal(plugin.bot, interaction)
        elif isinstance(interaction, hikari.ComponentInteraction):
            if interaction.custom_id.partition(":")[0] in STORY_BUTTONS:
                await handle_story_button(plugin.bot, interaction)
    except hikari.HTTPError as e:
        logger.error(f"Failed to respond to story interaction {interaction.type}: {e}")


@plugin.listener(hikari.GuildMessageCreateEvent)
async def on_turn_thread_message(event: hikari.GuildMessageCreateEvent) -> None:
    """Delete messages from anyone but the writer in an active turn thread."""
    if event.is_bot or event.is_webhook:
        return

    channel = event.get_channel()
    if channel is not None and channel.type not in (
        hikari.ChannelType.GUILD_PUBLIC_THREAD,
        hikari.ChannelType.GUILD_PRIVATE_THREAD,
    ):
        return

    allowed = await entry_service(plugin.bot).may_post_in_thread(
        str(event.channel_id), str(event.author_id)
    )
    if allowed:
        return

    member = event.member
    if member is not None:
        try:
            permissions = lightbulb.utils.permissions_for(member)
        except Exception as e:
            logger.debug(f"Could not resolve permissions for {member.id}: {e}")
            permissions = None
        if member_is_admin(member, settings.admin_role_id, permissions):
            return

    try:
        await event.message.delete()
        logger.info(f"Removed message by {event.author_id} from turn thread {event.channel_id}")
    except hikari.HTTPError as e:
        logger.warning(f"Could not remove message from turn thread {event.channel_id}: {e}")


def load(bot: lightbulb.BotApp) -> None:
    """Load the story plugin."""
    bot.add_plugin(plugin)


def unload(bot: lightbulb.BotApp) -> None:
    """Unload the story plugin."""
    bot.remove_plugin(plugin)
