"""Entry submission workflow.

Quick-mode stories collect one pending entry per turn that the writer then
confirms or discards. Normal-mode stories collect the writer's messages from
the turn thread when the writer finalizes. Both paths end the turn and hand
the story to the next writer in the same transaction that records the entry.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storybot.bot.services.base import BaseService, MessagingPort, Outbox
from storybot.bot.services.exceptions import (
    EmptyEntryError,
    EntryNotFoundError,
    EntryNotPendingError,
    NoActiveTurnError,
    NotAWriterError,
    NotQuickModeError,
    NotYourTurnError,
    QuickModeOnlyError,
    StoryNotActiveError,
)
from storybot.bot.services.models import (
    AdvanceResult,
    ServiceResult,
    SubmitEntryResult,
)
from storybot.bot.services.text_service import TextResolver
from storybot.bot.services.turn_service import TurnService
from storybot.shared.utils import discord_timestamp, sanitize_modal_input, utcnow
from storybot.web.crud import (
    EntryOperations,
    NotFoundError,
    TurnOperations,
    WriterOperations,
)
from storybot.web.models import (
    EntryStatus,
    Story,
    StoryEntry,
    StoryStatus,
    StoryWriter,
    Turn,
    TurnStatus,
)

logger = logging.getLogger(__name__)

ENTRY_MAX_LENGTH = 4000


class EntryService(BaseService):
    """Writes, confirms and discards entries and ends turns."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        texts: TextResolver,
        messenger: MessagingPort,
        turn_service: TurnService,
        preview_timeout_minutes: int = 10,
        finalize_message_limit: int = 100,
    ):
        super().__init__(session_factory, texts, messenger, "EntryService")
        self.turn_service = turn_service
        self.preview_timeout_minutes = preview_timeout_minutes
        self.finalize_message_limit = finalize_message_limit
        self.entry_ops = EntryOperations()
        self.turn_ops = TurnOperations()
        self.writer_ops = WriterOperations()

    async def submit_entry(
        self,
        story_id: int,
        user_id: str,
        content: str,
        guild_id: Optional[str] = None,
    ) -> SubmitEntryResult:
        """Store a quick-mode entry as pending, replacing an earlier one.

        Args:
            story_id: Story the entry is for
            user_id: Discord user submitting the entry
            content: Entry text
            guild_id: Guild the request came from, for message language

        Returns:
            SubmitEntryResult with the entry ID and a display-only preview deadline
        """
        context: dict[str, Any] = {"guild_id": guild_id, "story_id": story_id, "user_id": user_id}

        async def work(session: AsyncSession, outbox: Outbox) -> SubmitEntryResult:
            text = sanitize_modal_input(content, ENTRY_MAX_LENGTH)
            story = await self._load_story(session, story_id, context)
            if not story.quick_mode:
                raise NotQuickModeError(f"Story {story.id} is not in quick mode")
            turn, _ = await self._require_turn_holder(session, story, user_id)
            if not text:
                raise EmptyEntryError(f"Empty entry for turn {turn.id}")

            entry = await self.entry_ops.get_pending_entry(session, turn.id)
            if entry is not None:
                await self.entry_ops.replace_content(session, entry, text)
                logger.info(f"Replaced pending entry {entry.id} of turn {turn.id}")
            else:
                # A parallel submission for the same turn fails on the pending-entry index
                entry = await self.entry_ops.create_entry(session, turn.id, text)
                logger.info(f"Stored pending entry {entry.id} for turn {turn.id}")

            preview_deadline = utcnow() + timedelta(minutes=self.preview_timeout_minutes)
            return SubmitEntryResult(
                success=True,
                message=await self.texts.render(
                    "txtEntryPreview",
                    story.guild_id,
                    preview_deadline=discord_timestamp(preview_deadline, "t"),
                ),
                entry_id=entry.id,
                preview_deadline=preview_deadline,
                content=text,
            )

        return await self._run_in_transaction("submit_entry", work, SubmitEntryResult, context)

    async def confirm_entry(
        self,
        entry_id: int,
        user_id: str,
        guild_id: Optional[str] = None,
    ) -> AdvanceResult:
        """Confirm a pending entry, complete its turn and start the next one.

        Confirmation, turn end and the next turn start commit together or not
        at all.
        """
        context: dict[str, Any] = {"guild_id": guild_id, "entry_id": entry_id, "user_id": user_id}

        async def work(session: AsyncSession, outbox: Outbox) -> AdvanceResult:
            entry, turn, story, writer = await self._load_pending_entry(session, entry_id, user_id, context)

            await self.entry_ops.set_status(session, entry, EntryStatus.CONFIRMED)
            outbox.announce(
                story.story_thread_id,
                await self._published_text(story, turn, writer, entry.content),
            )
            ended, started = await self.turn_service.advance(session, story, TurnStatus.COMPLETED, outbox)
            logger.info(f"Entry {entry.id} confirmed, turn {turn.id} completed")

            return AdvanceResult(
                success=True,
                message=await self.texts.resolve("txtEntryConfirmed", story.guild_id),
                ended_turn_id=ended.id if ended else None,
                entry_id=entry.id,
                next_turn=started,
            )

        return await self._run_in_transaction("confirm_entry", work, AdvanceResult, context)

    async def discard_entry(
        self,
        entry_id: int,
        user_id: str,
        guild_id: Optional[str] = None,
    ) -> ServiceResult:
        """Discard a pending entry; the turn stays open."""
        context: dict[str, Any] = {"guild_id": guild_id, "entry_id": entry_id, "user_id": user_id}

        async def work(session: AsyncSession, outbox: Outbox) -> ServiceResult:
            entry, turn, story, _ = await self._load_pending_entry(session, entry_id, user_id, context)
            await self.entry_ops.set_status(session, entry, EntryStatus.DISCARDED)
            logger.info(f"Entry {entry.id} of turn {turn.id} discarded")
            return ServiceResult(
                success=True,
                message=await self.texts.resolve("txtEntryDiscarded", story.guild_id),
            )

        return await self._run_in_transaction("discard_entry", work, ServiceResult, context)

    async def finalize_entry(
        self,
        story_id: int,
        user_id: str,
        guild_id: Optional[str] = None,
    ) -> AdvanceResult:
        """Collect the writer's messages from the turn thread as the entry.

        Only the turn writer's non-empty messages count, oldest first.
        """
        context: dict[str, Any] = {"guild_id": guild_id, "story_id": story_id, "user_id": user_id}

        async def work(session: AsyncSession, outbox: Outbox) -> AdvanceResult:
            story = await self._load_story(session, story_id, context)
            if story.quick_mode:
                raise QuickModeOnlyError(f"Story {story.id} is in quick mode")
            turn, writer = await self._require_turn_holder(session, story, user_id)
            if not turn.thread_id:
                raise EmptyEntryError(f"Turn {turn.id} has no thread to collect from")

            messages = await self.messenger.fetch_recent_messages(
                turn.thread_id, self.finalize_message_limit
            )
            parts = [
                m.content.strip()
                for m in messages
                if m.author_id == writer.discord_user_id and m.content and m.content.strip()
            ]
            if not parts:
                raise EmptyEntryError(f"No messages from writer {writer.id} in turn {turn.id}")
            content = "\n\n".join(parts)

            entry = await self.entry_ops.create_entry(session, turn.id, content, EntryStatus.CONFIRMED)
            outbox.announce(
                story.story_thread_id,
                await self._published_text(story, turn, writer, content),
            )
            ended, started = await self.turn_service.advance(session, story, TurnStatus.COMPLETED, outbox)
            logger.info(f"Turn {turn.id} finalized with {len(parts)} message(s) as entry {entry.id}")

            return AdvanceResult(
                success=True,
                message=await self.texts.resolve("txtEntryConfirmed", story.guild_id),
                ended_turn_id=ended.id if ended else None,
                entry_id=entry.id,
                next_turn=started,
            )

        return await self._run_in_transaction("finalize_entry", work, AdvanceResult, context)

    async def skip_turn(
        self,
        story_id: int,
        user_id: str,
        is_admin: bool = False,
        guild_id: Optional[str] = None,
    ) -> AdvanceResult:
        """Skip the active turn without an entry.

        The turn writer may always skip; admins may skip anyone's turn.
        """
        context: dict[str, Any] = {"guild_id": guild_id, "story_id": story_id, "user_id": user_id}

        async def work(session: AsyncSession, outbox: Outbox) -> AdvanceResult:
            story = await self._load_story(session, story_id, context)
            if is_admin:
                turn = await self._require_active_turn(session, story)
                writer = await self.writer_ops.get_writer(session, turn.story_writer_id)
            else:
                turn, writer = await self._require_turn_holder(session, story, user_id)

            outbox.announce(
                story.story_thread_id,
                await self.texts.render("txtTurnSkipped", story.guild_id, writer_name=writer.display_name),
            )
            ended, started = await self.turn_service.advance(session, story, TurnStatus.SKIPPED, outbox)
            logger.info(f"Turn {turn.id} of story {story.id} skipped by {user_id}")

            return AdvanceResult(
                success=True,
                message=await self.texts.resolve("txtTurnSkippedReply", story.guild_id),
                ended_turn_id=ended.id if ended else None,
                next_turn=started,
            )

        return await self._run_in_transaction("skip_turn", work, AdvanceResult, context)

    async def may_post_in_thread(self, thread_id: str, user_id: str) -> bool:
        """Whether a user may write in a thread.

        Only the writer of an active turn may post in that turn's thread;
        threads that don't belong to an active turn are not restricted.
        """
        async with self.session_factory() as session:
            turn = await self.turn_ops.get_turn_by_thread(session, thread_id)
            if turn is None or turn.status is not TurnStatus.ACTIVE:
                return True
            try:
                writer = await self.writer_ops.get_writer(session, turn.story_writer_id)
            except NotFoundError:
                return True
            return writer.discord_user_id == user_id

    async def _require_active_turn(self, session: AsyncSession, story: Story) -> Turn:
        if story.status is not StoryStatus.ACTIVE:
            raise StoryNotActiveError(f"Story {story.id} is not active")
        turn = await self.turn_ops.get_active_turn(session, story.id)
        if turn is None:
            raise NoActiveTurnError(f"Story {story.id} has no active turn")
        return turn

    async def _require_turn_holder(
        self,
        session: AsyncSession,
        story: Story,
        user_id: str,
    ) -> tuple[Turn, StoryWriter]:
        turn = await self._require_active_turn(session, story)
        writer = await self.writer_ops.get_active_membership(session, story.id, user_id)
        if writer is None:
            raise NotAWriterError(f"User {user_id} doesn't write for story {story.id}")
        if turn.story_writer_id != writer.id:
            raise NotYourTurnError(f"Turn {turn.id} belongs to writer {turn.story_writer_id}")
        return turn, writer

    async def _load_pending_entry(
        self,
        session: AsyncSession,
        entry_id: int,
        user_id: str,
        context: dict[str, Any],
    ) -> tuple[StoryEntry, Turn, Story, StoryWriter]:
        try:
            entry = await self.entry_ops.get_entry(session, entry_id)
        except NotFoundError as e:
            raise EntryNotFoundError(str(e)) from e
        turn = await self.turn_ops.get_turn(session, entry.turn_id)
        story = await self._load_story(session, turn.story_id, context)

        # Re-read under the story lock so a parallel confirm sees the final status
        await session.refresh(entry)
        if entry.status is not EntryStatus.PENDING:
            raise EntryNotPendingError(f"Entry {entry.id} is {entry.entry_status}")

        writer = await self.writer_ops.get_writer(session, turn.story_writer_id)
        if writer.discord_user_id != user_id:
            raise NotYourTurnError(f"Entry {entry.id} belongs to writer {writer.id}")
        if turn.status is not TurnStatus.ACTIVE:
            raise NoActiveTurnError(f"Turn {turn.id} is no longer active")
        return entry, turn, story, writer

    async def _published_text(
        self,
        story: Story,
        turn: Turn,
        writer: StoryWriter,
        content: str,
    ) -> str:
        return await self.texts.render(
            "txtEntryPublished",
            story.guild_id,
            turn_number=turn.turn_number,
            writer_name=writer.display_name,
            story_title=story.title,
            content=content,
        )
