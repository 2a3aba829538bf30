"""Database operations for the round-robin story bot.

This module provides CRUD operations for all models. Operations never commit:
the caller owns the transaction and passes its session into every call, so a
multi-row change (create story + job + membership + turn) lives or dies as a
unit. All operations are async and use SQLAlchemy 2.0 syntax.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storybot.shared.utils import utcnow
from storybot.web.models import (
    ConfigText,
    EntryStatus,
    JobStatus,
    ScheduledJob,
    Story,
    StoryEntry,
    StoryStatus,
    StoryWriter,
    Turn,
    TurnStatus,
    WriterStatus,
)

logger = logging.getLogger(__name__)

STORY_ACTIVATION_JOB = "story_activation"


class DatabaseOperationError(Exception):
    """Base exception for database operations."""
    pass


class NotFoundError(DatabaseOperationError):
    """Raised when a requested resource is not found."""
    pass


class ConflictError(DatabaseOperationError):
    """Raised when a database constraint is violated."""
    pass


class StoryOperations:
    """Database operations for stories."""

    async def get_story(
        self,
        session: AsyncSession,
        story_id: int,
        for_update: bool = False
    ) -> Story:
        """Get story by ID.

        Args:
            session: Database session
            story_id: Story ID
            for_update: Lock the row until the transaction ends

        Returns:
            Story: Story record

        Raises:
            NotFoundError: If story doesn't exist
            DatabaseOperationError: If query fails
        """
        try:
            stmt = select(Story).where(Story.id == story_id)
            if for_update:
                stmt = stmt.with_for_update()
            result = await session.execute(stmt)
            story = result.scalar_one_or_none()

            if story is None:
                raise NotFoundError(f"Story not found: {story_id}")

            return story

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get story: {e}") from e

    async def get_guild_stories(
        self,
        session: AsyncSession,
        guild_id: str,
        status: Optional[StoryStatus] = None
    ) -> List[Story]:
        """Get all stories for a guild, newest first.

        Args:
            session: Database session
            guild_id: Discord guild snowflake ID
            status: Optional status filter

        Returns:
            List[Story]: Guild stories
        """
        try:
            stmt = select(Story).where(Story.guild_id == guild_id)
            if status is not None:
                stmt = stmt.where(Story.story_status == int(status))
            stmt = stmt.order_by(Story.created_at.desc(), Story.id.desc())
            result = await session.execute(stmt)
            return list(result.scalars().all())

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get guild stories: {e}") from e

    async def create_story(
        self,
        session: AsyncSession,
        guild_id: str,
        title: str,
        status: StoryStatus,
        **story_data: Any
    ) -> Story:
        """Insert a story and flush it so its ID is available.

        Args:
            session: Database session
            guild_id: Discord guild snowflake ID
            title: Story title
            status: Initial status
            **story_data: Remaining story columns

        Returns:
            Story: Created story
        """
        try:
            now = utcnow()
            story = Story(
                guild_id=guild_id,
                title=title,
                story_status=int(status),
                created_at=now,
                updated_at=now,
                **story_data
            )
            session.add(story)
            await session.flush()
            return story

        except IntegrityError as e:
            raise ConflictError(f"Story violates a constraint: {e}") from e
        except Exception as e:
            raise DatabaseOperationError(f"Failed to create story: {e}") from e

    async def update_story(
        self,
        session: AsyncSession,
        story: Story,
        **updates: Any
    ) -> Story:
        """Apply column updates to a story and bump ``updated_at``."""
        try:
            for field, value in updates.items():
                if hasattr(story, field):
                    setattr(story, field, value)
            story.updated_at = utcnow()
            await session.flush()
            return story

        except IntegrityError as e:
            raise ConflictError(f"Story update violates a constraint: {e}") from e
        except Exception as e:
            raise DatabaseOperationError(f"Failed to update story: {e}") from e

    async def set_status(
        self,
        session: AsyncSession,
        story: Story,
        status: StoryStatus
    ) -> Story:
        """Persist a new story status."""
        return await self.update_story(session, story, story_status=int(status))


class WriterOperations:
    """Database operations for story memberships."""

    async def get_writer(
        self,
        session: AsyncSession,
        writer_id: int
    ) -> StoryWriter:
        """Get membership by ID.

        Raises:
            NotFoundError: If membership doesn't exist
            DatabaseOperationError: If query fails
        """
        try:
            result = await session.execute(
                select(StoryWriter).where(StoryWriter.id == writer_id)
            )
            writer = result.scalar_one_or_none()
            if writer is None:
                raise NotFoundError(f"Writer not found: {writer_id}")
            return writer

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get writer: {e}") from e

    async def get_active_writers(
        self,
        session: AsyncSession,
        story_id: int
    ) -> List[StoryWriter]:
        """Get active memberships of a story in join order.

        Args:
            session: Database session
            story_id: Story ID

        Returns:
            List[StoryWriter]: Active writers ordered by join time
        """
        try:
            stmt = (
                select(StoryWriter)
                .where(
                    StoryWriter.story_id == story_id,
                    StoryWriter.sw_status == int(WriterStatus.ACTIVE),
                )
                .order_by(StoryWriter.joined_at, StoryWriter.id)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get story writers: {e}") from e

    async def get_active_membership(
        self,
        session: AsyncSession,
        story_id: int,
        user_id: str
    ) -> Optional[StoryWriter]:
        """Get a user's active membership in a story, if any."""
        try:
            stmt = select(StoryWriter).where(
                StoryWriter.story_id == story_id,
                StoryWriter.discord_user_id == user_id,
                StoryWriter.sw_status == int(WriterStatus.ACTIVE),
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get membership: {e}") from e

    async def count_active_writers(
        self,
        session: AsyncSession,
        story_id: int
    ) -> int:
        """Count active memberships of a story."""
        try:
            stmt = select(func.count(StoryWriter.id)).where(
                StoryWriter.story_id == story_id,
                StoryWriter.sw_status == int(WriterStatus.ACTIVE),
            )
            result = await session.execute(stmt)
            return result.scalar() or 0

        except Exception as e:
            raise DatabaseOperationError(f"Failed to count writers: {e}") from e

    async def get_default_pen_name(
        self,
        session: AsyncSession,
        user_id: str
    ) -> Optional[str]:
        """Most recently used pen name of a user across all stories."""
        try:
            stmt = (
                select(StoryWriter.ao3_name)
                .where(
                    StoryWriter.discord_user_id == user_id,
                    StoryWriter.ao3_name.isnot(None),
                )
                .order_by(StoryWriter.joined_at.desc(), StoryWriter.id.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get pen name: {e}") from e

    async def next_writer_order(
        self,
        session: AsyncSession,
        story_id: int
    ) -> int:
        """Next free fixed-order position in a story."""
        try:
            stmt = select(func.max(StoryWriter.writer_order)).where(
                StoryWriter.story_id == story_id
            )
            result = await session.execute(stmt)
            current = result.scalar()
            return (current or 0) + 1

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get writer order: {e}") from e

    async def add_writer(
        self,
        session: AsyncSession,
        story_id: int,
        user_id: str,
        display_name: str,
        **writer_data: Any
    ) -> StoryWriter:
        """Create an active membership.

        Raises:
            ConflictError: If the user already has an active membership
            DatabaseOperationError: If creation fails
        """
        try:
            writer = StoryWriter(
                story_id=story_id,
                discord_user_id=user_id,
                discord_display_name=display_name,
                sw_status=int(WriterStatus.ACTIVE),
                joined_at=utcnow(),
                **writer_data
            )
            session.add(writer)
            await session.flush()
            return writer

        except IntegrityError as e:
            raise ConflictError(f"User {user_id} already writes for story {story_id}") from e
        except Exception as e:
            raise DatabaseOperationError(f"Failed to add writer: {e}") from e


class TurnOperations:
    """Database operations for turns."""

    async def get_turn(
        self,
        session: AsyncSession,
        turn_id: int
    ) -> Turn:
        """Get turn by ID.

        Raises:
            NotFoundError: If turn doesn't exist
        """
        try:
            result = await session.execute(select(Turn).where(Turn.id == turn_id))
            turn = result.scalar_one_or_none()
            if turn is None:
                raise NotFoundError(f"Turn not found: {turn_id}")
            return turn

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get turn: {e}") from e

    async def get_active_turn(
        self,
        session: AsyncSession,
        story_id: int
    ) -> Optional[Turn]:
        """Get the active turn of a story, if any."""
        try:
            stmt = select(Turn).where(
                Turn.story_id == story_id,
                Turn.turn_status == int(TurnStatus.ACTIVE),
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get active turn: {e}") from e

    async def get_latest_turn(
        self,
        session: AsyncSession,
        story_id: int
    ) -> Optional[Turn]:
        """Get the most recently started turn of a story."""
        try:
            stmt = (
                select(Turn)
                .where(Turn.story_id == story_id)
                .order_by(Turn.turn_number.desc(), Turn.id.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get latest turn: {e}") from e

    async def get_turn_by_thread(
        self,
        session: AsyncSession,
        thread_id: str
    ) -> Optional[Turn]:
        """Get the turn hosted in a Discord thread."""
        try:
            result = await session.execute(select(Turn).where(Turn.thread_id == thread_id))
            return result.scalars().first()

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get turn by thread: {e}") from e

    async def count_turns(
        self,
        session: AsyncSession,
        story_id: int
    ) -> int:
        """Count all turns ever started for a story."""
        try:
            result = await session.execute(
                select(func.count(Turn.id)).where(Turn.story_id == story_id)
            )
            return result.scalar() or 0

        except Exception as e:
            raise DatabaseOperationError(f"Failed to count turns: {e}") from e

    async def create_turn(
        self,
        session: AsyncSession,
        story_id: int,
        story_writer_id: int,
        turn_number: int,
        started_at: Optional[datetime] = None
    ) -> Turn:
        """Insert an active turn.

        Raises:
            ConflictError: If the story already has an active turn
            DatabaseOperationError: If creation fails
        """
        try:
            turn = Turn(
                story_id=story_id,
                story_writer_id=story_writer_id,
                turn_number=turn_number,
                started_at=started_at or utcnow(),
                turn_status=int(TurnStatus.ACTIVE),
            )
            session.add(turn)
            await session.flush()
            return turn

        except IntegrityError as e:
            raise ConflictError(f"Story {story_id} already has an active turn") from e
        except Exception as e:
            raise DatabaseOperationError(f"Failed to create turn: {e}") from e

    async def close_turn(
        self,
        session: AsyncSession,
        turn: Turn,
        status: TurnStatus
    ) -> Turn:
        """Move a turn out of the active state."""
        try:
            turn.turn_status = int(status)
            turn.ended_at = utcnow()
            await session.flush()
            return turn

        except Exception as e:
            raise DatabaseOperationError(f"Failed to end turn: {e}") from e

    async def set_thread(
        self,
        session: AsyncSession,
        turn: Turn,
        thread_id: str
    ) -> Turn:
        """Record the Discord thread hosting a turn."""
        try:
            turn.thread_id = thread_id
            await session.flush()
            return turn

        except Exception as e:
            raise DatabaseOperationError(f"Failed to set turn thread: {e}") from e


class EntryOperations:
    """Database operations for story entries."""

    async def get_entry(
        self,
        session: AsyncSession,
        entry_id: int
    ) -> StoryEntry:
        """Get entry by ID.

        Raises:
            NotFoundError: If entry doesn't exist
        """
        try:
            result = await session.execute(
                select(StoryEntry).where(StoryEntry.id == entry_id)
            )
            entry = result.scalar_one_or_none()
            if entry is None:
                raise NotFoundError(f"Entry not found: {entry_id}")
            return entry

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get entry: {e}") from e

    async def get_pending_entry(
        self,
        session: AsyncSession,
        turn_id: int
    ) -> Optional[StoryEntry]:
        """Get the pending entry of a turn, if any."""
        try:
            stmt = select(StoryEntry).where(
                StoryEntry.turn_id == turn_id,
                StoryEntry.entry_status == EntryStatus.PENDING.value,
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get pending entry: {e}") from e

    async def create_entry(
        self,
        session: AsyncSession,
        turn_id: int,
        content: str,
        status: EntryStatus = EntryStatus.PENDING
    ) -> StoryEntry:
        """Insert an entry at the next position of its turn.

        Raises:
            ConflictError: If the turn already has a pending entry
            DatabaseOperationError: If creation fails
        """
        try:
            result = await session.execute(
                select(func.count(StoryEntry.id)).where(StoryEntry.turn_id == turn_id)
            )
            position = (result.scalar() or 0) + 1

            entry = StoryEntry(
                turn_id=turn_id,
                content=content,
                entry_status=status.value,
                order_in_turn=position,
                created_at=utcnow(),
            )
            session.add(entry)
            await session.flush()
            return entry

        except IntegrityError as e:
            raise ConflictError(f"Turn {turn_id} already has a pending entry") from e
        except Exception as e:
            raise DatabaseOperationError(f"Failed to create entry: {e}") from e

    async def replace_content(
        self,
        session: AsyncSession,
        entry: StoryEntry,
        content: str
    ) -> StoryEntry:
        """Overwrite the text of an entry and refresh its timestamp."""
        try:
            entry.content = content
            entry.created_at = utcnow()
            await session.flush()
            return entry

        except Exception as e:
            raise DatabaseOperationError(f"Failed to update entry: {e}") from e

    async def set_status(
        self,
        session: AsyncSession,
        entry: StoryEntry,
        status: EntryStatus
    ) -> StoryEntry:
        """Persist a new entry status."""
        try:
            entry.entry_status = status.value
            await session.flush()
            return entry

        except Exception as e:
            raise DatabaseOperationError(f"Failed to update entry status: {e}") from e

    async def discard_pending(
        self,
        session: AsyncSession,
        turn_id: int
    ) -> int:
        """Discard whatever is still pending on a turn.

        Returns:
            Number of entries discarded
        """
        try:
            stmt = (
                update(StoryEntry)
                .where(
                    StoryEntry.turn_id == turn_id,
                    StoryEntry.entry_status == EntryStatus.PENDING.value,
                )
                .values(entry_status=EntryStatus.DISCARDED.value)
                .execution_options(synchronize_session="fetch")
            )
            result = await session.execute(stmt)
            return result.rowcount or 0

        except Exception as e:
            raise DatabaseOperationError(f"Failed to discard pending entries: {e}") from e

    async def get_story_entries(
        self,
        session: AsyncSession,
        story_id: int,
        status: EntryStatus = EntryStatus.CONFIRMED
    ) -> List[Tuple[StoryEntry, Turn, StoryWriter]]:
        """Get entries of a story in reading order with their turn and writer."""
        try:
            stmt = (
                select(StoryEntry, Turn, StoryWriter)
                .join(Turn, StoryEntry.turn_id == Turn.id)
                .join(StoryWriter, Turn.story_writer_id == StoryWriter.id)
                .where(
                    Turn.story_id == story_id,
                    StoryEntry.entry_status == status.value,
                )
                .order_by(Turn.turn_number, StoryEntry.order_in_turn, StoryEntry.id)
            )
            result = await session.execute(stmt)
            return [tuple(row) for row in result.all()]

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get story entries: {e}") from e


class ScheduledJobOperations:
    """Database operations for deferred jobs."""

    async def create_job(
        self,
        session: AsyncSession,
        job_type: str,
        payload: Dict[str, Any],
        run_at: datetime
    ) -> ScheduledJob:
        """Enqueue a pending job."""
        try:
            job = ScheduledJob(
                job_type=job_type,
                payload=payload,
                run_at=run_at,
                job_status=JobStatus.PENDING.value,
                created_at=utcnow(),
            )
            session.add(job)
            await session.flush()
            return job

        except Exception as e:
            raise DatabaseOperationError(f"Failed to create job: {e}") from e

    async def get_due_jobs(
        self,
        session: AsyncSession,
        job_type: str,
        now: Optional[datetime] = None,
        limit: int = 50
    ) -> List[ScheduledJob]:
        """Get pending jobs whose run time has passed, oldest first."""
        try:
            stmt = (
                select(ScheduledJob)
                .where(
                    ScheduledJob.job_type == job_type,
                    ScheduledJob.job_status == JobStatus.PENDING.value,
                    ScheduledJob.run_at <= (now or utcnow()),
                )
                .order_by(ScheduledJob.run_at, ScheduledJob.id)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get due jobs: {e}") from e

    async def mark_job_run(
        self,
        session: AsyncSession,
        job_id: int
    ) -> bool:
        """Mark a pending job as run.

        Returns:
            True if the job was pending and is now run, False otherwise
        """
        try:
            stmt = (
                update(ScheduledJob)
                .where(
                    ScheduledJob.id == job_id,
                    ScheduledJob.job_status == JobStatus.PENDING.value,
                )
                .values(job_status=JobStatus.RUN.value, ran_at=utcnow())
                .execution_options(synchronize_session="fetch")
            )
            result = await session.execute(stmt)
            return (result.rowcount or 0) > 0

        except Exception as e:
            raise DatabaseOperationError(f"Failed to mark job run: {e}") from e

    async def get_story_jobs(
        self,
        session: AsyncSession,
        story_id: int,
        job_type: str = STORY_ACTIVATION_JOB,
        pending_only: bool = True
    ) -> List[ScheduledJob]:
        """Get jobs whose payload targets a story."""
        try:
            stmt = select(ScheduledJob).where(ScheduledJob.job_type == job_type)
            if pending_only:
                stmt = stmt.where(ScheduledJob.job_status == JobStatus.PENDING.value)
            result = await session.execute(stmt.order_by(ScheduledJob.id))
            # Payload is opaque JSON; filtering here keeps the query portable
            return [
                job for job in result.scalars().all()
                if (job.payload or {}).get("story_id") == story_id
            ]

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get story jobs: {e}") from e

    async def cancel_story_jobs(
        self,
        session: AsyncSession,
        story_id: int,
        job_type: str = STORY_ACTIVATION_JOB
    ) -> int:
        """Retire pending jobs of a story so the poller skips them."""
        jobs = await self.get_story_jobs(session, story_id, job_type)
        count = 0
        for job in jobs:
            if await self.mark_job_run(session, job.id):
                count += 1
        return count


class ConfigOperations:
    """Database operations for localized display strings."""

    async def get_value(
        self,
        session: AsyncSession,
        key: str,
        guild_id: Optional[str],
        default_language: str
    ) -> Optional[str]:
        """Resolve a text key for a guild.

        A guild-specific row wins; otherwise the system-wide row in the
        default language is used.

        Args:
            session: Database session
            key: Config key
            guild_id: Discord guild snowflake ID, or None for system-wide only
            default_language: Language of the system-wide fallback row

        Returns:
            The stored value, or None when neither row exists
        """
        try:
            if guild_id is not None:
                stmt = (
                    select(ConfigText.config_value)
                    .where(
                        ConfigText.config_key == key,
                        ConfigText.guild_id == guild_id,
                    )
                    .order_by(ConfigText.id.desc())
                    .limit(1)
                )
                value = (await session.execute(stmt)).scalar_one_or_none()
                if value is not None:
                    return value

            stmt = (
                select(ConfigText.config_value)
                .where(
                    ConfigText.config_key == key,
                    ConfigText.guild_id.is_(None),
                    ConfigText.language_code == default_language,
                )
                .order_by(ConfigText.id.desc())
                .limit(1)
            )
            return (await session.execute(stmt)).scalar_one_or_none()

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get config value: {e}") from e

    async def set_guild_value(
        self,
        session: AsyncSession,
        guild_id: str,
        key: str,
        value: str,
        language: str
    ) -> ConfigText:
        """Create or replace a guild override."""
        try:
            stmt = select(ConfigText).where(
                ConfigText.config_key == key,
                ConfigText.guild_id == guild_id,
            )
            row = (await session.execute(stmt)).scalars().first()
            if row is None:
                row = ConfigText(
                    config_key=key,
                    config_value=value,
                    language_code=language,
                    guild_id=guild_id,
                )
                session.add(row)
            else:
                row.config_value = value
                row.language_code = language
            await session.flush()
            return row

        except Exception as e:
            raise DatabaseOperationError(f"Failed to set config value: {e}") from e

    async def seed_defaults(
        self,
        session: AsyncSession,
        texts: Dict[str, str],
        language: str
    ) -> int:
        """Load system-wide texts when none exist yet.

        Returns:
            Number of rows inserted (0 when texts were already present)
        """
        try:
            result = await session.execute(
                select(func.count(ConfigText.id)).where(ConfigText.guild_id.is_(None))
            )
            if (result.scalar() or 0) > 0:
                return 0

            for key, value in texts.items():
                session.add(ConfigText(
                    config_key=key,
                    config_value=value,
                    language_code=language,
                    guild_id=None,
                ))
            await session.flush()
            return len(texts)

        except Exception as e:
            raise DatabaseOperationError(f"Failed to seed config texts: {e}") from e
