"""Turn lifecycle: starting, ending and advancing writer turns.

All methods take the caller's session and outbox; the caller owns the
transaction. A story never has more than one active turn: ``start_turn``
checks for one before inserting and the partial unique index on
``turns.story_id`` rejects a concurrent second insert.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from storybot.bot.services.base import MessagingPort, Outbox
from storybot.bot.services.exceptions import (
    ActiveTurnExistsError,
    NoActiveTurnError,
    NoEligibleWritersError,
    StoryNotActiveError,
)
from storybot.bot.services.models import ActionButton, SurfaceVisibility, TurnStart
from storybot.bot.services.selection import pick_next_writer
from storybot.bot.services.text_service import TextResolver
from storybot.shared.utils import discord_timestamp, ensure_utc, format_deadline, mention
from storybot.web.crud import (
    ConflictError,
    EntryOperations,
    NotFoundError,
    StoryOperations,
    TurnOperations,
    WriterOperations,
)
from storybot.web.models import Story, StoryStatus, Turn, TurnStatus, WriterStatus

logger = logging.getLogger(__name__)

THREAD_TITLE_LIMIT = 100


def turn_deadline(turn: Turn, story: Story) -> datetime:
    """When the turn's writing window closes."""
    return ensure_utc(turn.started_at) + timedelta(hours=story.turn_length_hours)


def reminder_at(turn: Turn, story: Story) -> Optional[datetime]:
    """When a timeout reminder is due, or None if reminders are off."""
    if not story.timeout_reminder_percent:
        return None
    window = timedelta(hours=story.turn_length_hours) * (story.timeout_reminder_percent / 100)
    return ensure_utc(turn.started_at) + window


class TurnService:
    """Starts, ends and advances turns."""

    def __init__(
        self,
        messenger: MessagingPort,
        texts: TextResolver,
        rng: Optional[random.Random] = None,
    ):
        self.messenger = messenger
        self.texts = texts
        self.rng = rng
        self.story_ops = StoryOperations()
        self.turn_ops = TurnOperations()
        self.writer_ops = WriterOperations()
        self.entry_ops = EntryOperations()

    async def start_turn(
        self,
        session: AsyncSession,
        story: Story,
        writer_id: int,
        outbox: Outbox,
        is_first_turn: bool = False,
    ) -> TurnStart:
        """Open a turn for ``writer_id``.

        In quick mode the writer is notified directly; otherwise a dedicated
        thread is created first. Thread creation happens inside the caller's
        transaction, so a failure there undoes the whole operation.

        Raises:
            StoryNotActiveError: If the story is not active
            ActiveTurnExistsError: If the story already has an active turn
            NoEligibleWritersError: If the writer can't take a turn in this story
        """
        if story.status is not StoryStatus.ACTIVE:
            raise StoryNotActiveError(f"Story {story.id} is not active")

        if await self.turn_ops.get_active_turn(session, story.id) is not None:
            raise ActiveTurnExistsError(f"Story {story.id} already has an active turn")

        try:
            writer = await self.writer_ops.get_writer(session, writer_id)
        except NotFoundError as e:
            raise NoEligibleWritersError(str(e)) from e
        if writer.story_id != story.id or writer.sw_status != int(WriterStatus.ACTIVE):
            raise NoEligibleWritersError(f"Writer {writer_id} can't take a turn in story {story.id}")

        turn_number = await self.turn_ops.count_turns(session, story.id) + 1
        try:
            turn = await self.turn_ops.create_turn(session, story.id, writer.id, turn_number)
        except ConflictError as e:
            raise ActiveTurnExistsError(str(e)) from e

        deadline = turn_deadline(turn, story)
        guild_id = story.guild_id
        values = {
            "story_id": story.id,
            "story_title": story.title,
            "turn_number": turn_number,
            "writer_name": writer.display_name,
            "writer_mention": mention(writer.discord_user_id),
            "deadline": format_deadline(deadline),
            "deadline_relative": discord_timestamp(deadline),
        }

        surface_id = None
        if story.quick_mode:
            write_button = ActionButton(
                f"story_write:{story.id}",
                await self.texts.resolve("btnWriteEntry", guild_id),
            )
            outbox.notify(
                writer.discord_user_id,
                await self.texts.render("txtQuickTurnStartNotify", guild_id, **values),
                story.story_thread_id,
                prefer_mention=writer.prefers_mention,
                components=(write_button,),
            )
        else:
            title = await self.texts.render("txtTurnThreadTitle", guild_id, **values)
            private = story.story_turn_privacy or writer.turn_privacy
            surface_id = await self.messenger.create_surface(
                story.channel_id or story.story_thread_id,
                title[:THREAD_TITLE_LIMIT],
                SurfaceVisibility.PRIVATE if private else SurfaceVisibility.PUBLIC,
                [writer.discord_user_id],
            )
            outbox.track_surface(surface_id)
            await self.turn_ops.set_thread(session, turn, surface_id)

            buttons = (
                ActionButton(
                    f"story_finalize:{story.id}",
                    await self.texts.resolve("btnFinalize", guild_id),
                    "success",
                ),
                ActionButton(
                    f"story_skip:{story.id}",
                    await self.texts.resolve("btnSkipTurn", guild_id),
                    "secondary",
                ),
            )
            outbox.announce(
                surface_id,
                await self.texts.render("txtTurnThreadWelcome", guild_id, **values),
                buttons,
            )
            outbox.notify(
                writer.discord_user_id,
                await self.texts.render(
                    "txtTurnStartNotify", guild_id, thread_link=f"<#{surface_id}>", **values
                ),
                story.story_thread_id,
                prefer_mention=writer.prefers_mention,
            )

        if is_first_turn:
            outbox.announce(
                story.story_thread_id,
                await self.texts.render("txtStoryActivated", guild_id, **values),
            )
        outbox.announce(
            story.story_thread_id,
            await self.texts.render("txtTurnStartAnnouncement", guild_id, **values),
        )

        await self.story_ops.update_story(session, story)
        logger.info(
            f"Started turn {turn.id} (#{turn_number}) for writer {writer.id} in story {story.id}"
        )
        return TurnStart(
            turn_id=turn.id,
            writer_id=writer.id,
            user_id=writer.discord_user_id,
            turn_number=turn_number,
            deadline=deadline,
            surface_id=surface_id,
        )

    async def end_turn(
        self,
        session: AsyncSession,
        turn_id: int,
        status: TurnStatus,
        outbox: Outbox,
    ) -> Turn:
        """Close an active turn as ended, completed or skipped.

        Any entry still pending on the turn is discarded and the turn thread
        is locked once the transaction commits.

        Raises:
            NoActiveTurnError: If the turn is not active
        """
        if status is TurnStatus.ACTIVE:
            raise ValueError("A turn can't be ended as active")

        try:
            turn = await self.turn_ops.get_turn(session, turn_id)
        except NotFoundError as e:
            raise NoActiveTurnError(str(e)) from e
        if turn.status is not TurnStatus.ACTIVE:
            raise NoActiveTurnError(f"Turn {turn_id} is not active")

        discarded = await self.entry_ops.discard_pending(session, turn.id)
        if discarded:
            logger.info(f"Discarded {discarded} pending entr(y/ies) of turn {turn.id}")

        await self.turn_ops.close_turn(session, turn, status)
        outbox.lock(turn.thread_id)
        logger.info(f"Turn {turn.id} of story {turn.story_id} ended as {status.name}")
        return turn

    async def advance(
        self,
        session: AsyncSession,
        story: Story,
        status: TurnStatus,
        outbox: Outbox,
    ) -> tuple[Optional[Turn], Optional[TurnStart]]:
        """End the active turn and hand the story to the next writer.

        No new turn is started when the story is no longer active (paused or
        closed).

        Returns:
            The ended turn (if there was one) and the new turn (if started)
        """
        ended = None
        active = await self.turn_ops.get_active_turn(session, story.id)
        if active is not None:
            ended = await self.end_turn(session, active.id, status, outbox)

        if story.status is not StoryStatus.ACTIVE:
            return ended, None

        writer = await pick_next_writer(session, story, self.rng)
        started = await self.start_turn(session, story, writer.id, outbox)
        return ended, started
