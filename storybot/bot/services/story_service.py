"""Story lifecycle service.

Creates stories, enrolls writers, evaluates delayed activation and moves
stories between statuses. Every public method is one transaction: either all
of its rows are written or none are.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storybot.bot.services.base import BaseService, MessagingPort, Outbox
from storybot.bot.services.exceptions import (
    AlreadyJoinedError,
    InvalidTransitionError,
    LateJoinNotAllowedError,
    StoryClosedError,
    StoryFullError,
    ValidationError,
)
from storybot.bot.services.models import (
    ActivationResult,
    CreateStoryResult,
    JobRunSummary,
    JoinStoryResult,
    ServiceResult,
    StoryParams,
    SurfaceVisibility,
    TurnStart,
    WriterInfo,
)
from storybot.bot.services.selection import pick_next_writer
from storybot.bot.services.text_service import TextResolver
from storybot.bot.services.turn_service import TurnService
from storybot.shared.utils import ensure_utc, utcnow
from storybot.web.crud import (
    STORY_ACTIVATION_JOB,
    ConflictError,
    ScheduledJobOperations,
    TurnOperations,
    WriterOperations,
)
from storybot.web.models import (
    NotificationPreference,
    Story,
    StoryStatus,
    StoryWriter,
    TurnStatus,
)

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 500
REMINDER_PERCENTS = (0, 25, 50, 75)


def validate_story_params(params: StoryParams) -> None:
    """Re-check front-end validation before touching the database.

    Raises:
        ValidationError: If any field is out of range
    """
    if not params.title or not params.title.strip() or len(params.title) > TITLE_MAX_LENGTH:
        raise ValidationError("Story title must be 1-500 characters")
    if not params.channel_id:
        raise ValidationError("Story needs a channel")
    if params.turn_length_hours < 1:
        raise ValidationError("Turn length must be at least one hour")
    if params.timeout_reminder_percent not in REMINDER_PERCENTS:
        raise ValidationError("Timeout reminder must be 0, 25, 50 or 75")
    if params.max_writers is not None and params.max_writers < 1:
        raise ValidationError("Max writers must be at least one")
    if params.delay_hours is not None and params.delay_hours < 0:
        raise ValidationError("Delay hours can't be negative")
    if params.delay_writers is not None and params.delay_writers < 0:
        raise ValidationError("Delay writers can't be negative")


class StoryService(BaseService):
    """Story creation, membership and activation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        texts: TextResolver,
        messenger: MessagingPort,
        turn_service: TurnService,
    ):
        super().__init__(session_factory, texts, messenger, "StoryService")
        self.turn_service = turn_service
        self.writer_ops = WriterOperations()
        self.turn_ops = TurnOperations()
        self.job_ops = ScheduledJobOperations()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_story(
        self,
        guild_id: str,
        creator: WriterInfo,
        params: StoryParams,
    ) -> CreateStoryResult:
        """Create a story with its main thread and its creator as first writer.

        Without an activation delay the story starts active and the creator's
        first turn begins immediately. With a time delay an activation job is
        queued. Nothing is persisted if any step fails, including creating the
        story thread.
        """
        context: dict[str, Any] = {"guild_id": guild_id, "user_id": creator.user_id}

        async def work(session: AsyncSession, outbox: Outbox) -> CreateStoryResult:
            validate_story_params(params)

            delay_hours = params.delay_hours or None
            delay_writers = params.delay_writers or None
            status = StoryStatus.PAUSED if (delay_hours or delay_writers) else StoryStatus.ACTIVE

            story = await self.story_ops.create_story(
                session,
                guild_id,
                params.title.strip(),
                status,
                quick_mode=params.quick_mode,
                turn_length_hours=params.turn_length_hours,
                timeout_reminder_percent=params.timeout_reminder_percent,
                story_order_type=int(params.order_type),
                story_turn_privacy=params.turn_privacy,
                allow_late_joins=params.allow_late_joins,
                max_writers=params.max_writers,
                story_delay_hours=delay_hours,
                story_delay_users=delay_writers,
                channel_id=params.channel_id,
                creator_user_id=creator.user_id,
            )
            context["story_id"] = story.id

            if delay_hours:
                await self.job_ops.create_job(
                    session,
                    STORY_ACTIVATION_JOB,
                    {"story_id": story.id},
                    ensure_utc(story.created_at) + timedelta(hours=delay_hours),
                )

            values = {"story_id": story.id, "story_title": story.title}
            thread_title = await self.texts.render("txtStoryThreadTitle", guild_id, **values)
            surface_id = await self.messenger.create_surface(
                params.channel_id, thread_title[:100], SurfaceVisibility.PUBLIC
            )
            outbox.track_surface(surface_id)
            await self.story_ops.update_story(session, story, story_thread_id=surface_id)
            outbox.announce(
                surface_id, await self.texts.render("txtStoryIntro", guild_id, **values)
            )

            await self._enroll(session, story, creator, outbox, enforce_late_join=False)

            first_turn = None
            activated = False
            if story.status is StoryStatus.ACTIVE:
                first_turn = await self._start_first_turn(session, story, outbox)
                activated = True
            else:
                activation = await self._evaluate_activation(session, story, outbox)
                activated = activation.activated
                first_turn = activation.first_turn

            key = "txtStoryCreated" if activated else "txtStoryCreatedDelayed"
            logger.info(f"Created story {story.id} in guild {guild_id} (active={activated})")
            return CreateStoryResult(
                success=True,
                message=await self.texts.render(key, guild_id, **values),
                story_id=story.id,
                surface_id=surface_id,
                activated=activated,
                first_turn=first_turn,
            )

        return await self._run_in_transaction(
            "create_story", work, CreateStoryResult, context, failure_key="txtStoryCreateFailed"
        )

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def join_story(
        self,
        guild_id: Optional[str],
        story_id: int,
        writer: WriterInfo,
    ) -> JoinStoryResult:
        """Add a writer to a story and re-check its activation delay.

        A closed story rejects the join without writing anything.
        """
        context: dict[str, Any] = {"guild_id": guild_id, "story_id": story_id, "user_id": writer.user_id}

        async def work(session: AsyncSession, outbox: Outbox) -> JoinStoryResult:
            story = await self._load_story(session, story_id, context)
            membership = await self._enroll(session, story, writer, outbox, enforce_late_join=True)
            activation = await self._evaluate_activation(session, story, outbox)

            return JoinStoryResult(
                success=True,
                message=await self.texts.render(
                    "txtJoinSuccess", story.guild_id, story_id=story.id, story_title=story.title
                ),
                writer_id=membership.id,
                activated=activation.activated,
                first_turn=activation.first_turn,
            )

        return await self._run_in_transaction(
            "join_story", work, JoinStoryResult, context, failure_key="txtJoinFailed"
        )

    async def _enroll(
        self,
        session: AsyncSession,
        story: Story,
        writer: WriterInfo,
        outbox: Outbox,
        enforce_late_join: bool,
    ) -> StoryWriter:
        if story.status is StoryStatus.CLOSED:
            raise StoryClosedError(f"Story {story.id} is closed")

        if await self.writer_ops.get_active_membership(session, story.id, writer.user_id):
            raise AlreadyJoinedError(f"User {writer.user_id} already writes for story {story.id}")

        if enforce_late_join and not story.allow_late_joins:
            started = await self.turn_ops.count_turns(session, story.id) > 0
            if started or story.status is StoryStatus.ACTIVE:
                raise LateJoinNotAllowedError(f"Story {story.id} doesn't accept late joins")

        if story.max_writers:
            count = await self.writer_ops.count_active_writers(session, story.id)
            if count >= story.max_writers:
                raise StoryFullError(f"Story {story.id} is full ({count}/{story.max_writers})")

        pen_name = writer.pen_name or await self.writer_ops.get_default_pen_name(session, writer.user_id)
        try:
            membership = await self.writer_ops.add_writer(
                session,
                story.id,
                writer.user_id,
                writer.display_name,
                ao3_name=pen_name,
                turn_privacy=writer.turn_privacy,
                notification_prefs=NotificationPreference(writer.notification_pref).value,
                writer_order=await self.writer_ops.next_writer_order(session, story.id),
            )
        except ConflictError as e:
            raise AlreadyJoinedError(str(e)) from e

        outbox.announce(
            story.story_thread_id,
            await self.texts.render("txtWriterJoined", story.guild_id, writer_name=membership.display_name),
        )
        logger.info(f"User {writer.user_id} joined story {story.id} as writer {membership.id}")
        return membership

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    async def check_activation_delay(self, story_id: int) -> ActivationResult:
        """Activate a pending story whose delay condition is met.

        Already active, paused-after-start and closed stories are left alone
        and reported as not activated.
        """
        context: dict[str, Any] = {"story_id": story_id}

        async def work(session: AsyncSession, outbox: Outbox) -> ActivationResult:
            story = await self._load_story(session, story_id, context)
            return await self._evaluate_activation(session, story, outbox)

        return await self._run_in_transaction("check_activation_delay", work, ActivationResult, context)

    async def _evaluate_activation(
        self,
        session: AsyncSession,
        story: Story,
        outbox: Outbox,
    ) -> ActivationResult:
        if story.status is not StoryStatus.PENDING or not story.has_activation_delay:
            return ActivationResult(success=True, activated=False)
        if await self.turn_ops.count_turns(session, story.id) > 0:
            # Paused after it started; only an explicit resume restarts it
            return ActivationResult(success=True, activated=False)

        writer_count = await self.writer_ops.count_active_writers(session, story.id)
        remaining_writers = None
        remaining_hours = None
        satisfied = False

        if story.story_delay_users:
            remaining_writers = max(0, story.story_delay_users - writer_count)
            satisfied = satisfied or remaining_writers == 0
        if story.story_delay_hours:
            elapsed = utcnow() - ensure_utc(story.created_at)
            left = timedelta(hours=story.story_delay_hours) - elapsed
            remaining_hours = max(0.0, left.total_seconds() / 3600)
            satisfied = satisfied or remaining_hours == 0

        if not satisfied or writer_count == 0:
            message = await self.texts.render(
                "txtActivationWaiting",
                story.guild_id,
                remaining_writers=remaining_writers if remaining_writers is not None else "-",
                remaining_hours=math.ceil(remaining_hours) if remaining_hours is not None else "-",
            )
            return ActivationResult(
                success=True,
                message=message,
                activated=False,
                remaining_writers_needed=remaining_writers,
                remaining_hours=remaining_hours,
            )

        await self._transition(session, story, StoryStatus.ACTIVE)
        await self.job_ops.cancel_story_jobs(session, story.id)
        first_turn = await self._start_first_turn(session, story, outbox)
        logger.info(f"Story {story.id} activated after its delay")
        return ActivationResult(
            success=True,
            message=await self.texts.render("txtStoryActivated", story.guild_id, story_title=story.title),
            activated=True,
            remaining_writers_needed=remaining_writers,
            remaining_hours=remaining_hours,
            first_turn=first_turn,
        )

    async def _start_first_turn(
        self,
        session: AsyncSession,
        story: Story,
        outbox: Outbox,
    ) -> TurnStart:
        writer = await pick_next_writer(session, story, self.turn_service.rng)
        return await self.turn_service.start_turn(session, story, writer.id, outbox, is_first_turn=True)

    async def run_due_activation_jobs(self, limit: int = 50) -> JobRunSummary:
        """Consume due activation jobs; called periodically by the bot.

        A job is claimed in the same transaction that checks its story, so a
        failed activation leaves the job pending for the next poll. Each job
        runs in its own transaction and one broken story can't hold up the
        others.
        """
        summary = JobRunSummary()
        async with self.session_factory() as session:
            jobs = await self.job_ops.get_due_jobs(session, STORY_ACTIVATION_JOB, limit=limit)
            due = [(job.id, (job.payload or {}).get("story_id")) for job in jobs]

        for job_id, story_id in due:
            if story_id is None:
                logger.warning(f"Activation job {job_id} has no story_id in its payload")
                await self._retire_job(job_id)
                summary.processed += 1
                summary.failed_job_ids.append(job_id)
                continue

            claimed, result = await self._run_activation_job(job_id, int(story_id))
            if not result.success:
                if result.error_code == "StoryNotFound":
                    await self._retire_job(job_id)
                summary.processed += 1
                summary.failed_job_ids.append(job_id)
            elif claimed:
                summary.processed += 1
                if result.activated:
                    summary.activated_story_ids.append(int(story_id))

        if summary.processed:
            logger.info(
                f"Processed {summary.processed} activation job(s), "
                f"activated stories {summary.activated_story_ids}, "
                f"failed jobs {summary.failed_job_ids}"
            )
        return summary

    async def _run_activation_job(self, job_id: int, story_id: int) -> tuple[bool, ActivationResult]:
        context: dict[str, Any] = {"story_id": story_id, "job_id": job_id}
        claimed = False

        async def work(session: AsyncSession, outbox: Outbox) -> ActivationResult:
            nonlocal claimed
            # Story lock first, same order as joins that retire the job
            story = await self._load_story(session, story_id, context)
            claimed = await self.job_ops.mark_job_run(session, job_id)
            if not claimed:
                return ActivationResult(success=True, activated=False)
            return await self._evaluate_activation(session, story, outbox)

        result = await self._run_in_transaction("run_activation_job", work, ActivationResult, context)
        return claimed, result

    async def _retire_job(self, job_id: int) -> None:
        """Mark a job that can never succeed as run."""
        async with self.session_factory() as session:
            try:
                await self.job_ops.mark_job_run(session, job_id)
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Failed to retire activation job {job_id}: {e}")

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    async def pause_story(self, guild_id: Optional[str], story_id: int) -> ServiceResult:
        """Pause an active story, ending the current turn."""
        context: dict[str, Any] = {"guild_id": guild_id, "story_id": story_id}

        async def work(session: AsyncSession, outbox: Outbox) -> ServiceResult:
            story = await self._load_story(session, story_id, context)
            await self._transition(session, story, StoryStatus.PAUSED)
            await self.turn_service.advance(session, story, TurnStatus.ENDED, outbox)
            message = await self.texts.render("txtStoryPaused", story.guild_id, story_title=story.title)
            outbox.announce(story.story_thread_id, message)
            return ServiceResult(success=True, message=message)

        return await self._run_in_transaction("pause_story", work, ServiceResult, context)

    async def resume_story(self, guild_id: Optional[str], story_id: int) -> ServiceResult:
        """Resume a paused story with the next writer's turn."""
        context: dict[str, Any] = {"guild_id": guild_id, "story_id": story_id}

        async def work(session: AsyncSession, outbox: Outbox) -> ServiceResult:
            story = await self._load_story(session, story_id, context)
            await self._transition(session, story, StoryStatus.ACTIVE)
            first = await self.turn_ops.count_turns(session, story.id) == 0
            await self.job_ops.cancel_story_jobs(session, story.id)
            writer = await pick_next_writer(session, story, self.turn_service.rng)
            await self.turn_service.start_turn(session, story, writer.id, outbox, is_first_turn=first)
            message = await self.texts.render("txtStoryResumed", story.guild_id, story_title=story.title)
            outbox.announce(story.story_thread_id, message)
            return ServiceResult(success=True, message=message)

        return await self._run_in_transaction("resume_story", work, ServiceResult, context)

    async def close_story(self, guild_id: Optional[str], story_id: int) -> ServiceResult:
        """Close a story for good."""
        context: dict[str, Any] = {"guild_id": guild_id, "story_id": story_id}

        async def work(session: AsyncSession, outbox: Outbox) -> ServiceResult:
            story = await self._load_story(session, story_id, context)
            await self._transition(session, story, StoryStatus.CLOSED)
            await self.turn_service.advance(session, story, TurnStatus.ENDED, outbox)
            await self.job_ops.cancel_story_jobs(session, story.id)
            message = await self.texts.render(
                "txtStoryClosedAnnouncement", story.guild_id, story_title=story.title
            )
            outbox.announce(story.story_thread_id, message)
            return ServiceResult(success=True, message=message)

        return await self._run_in_transaction("close_story", work, ServiceResult, context)

    async def _transition(self, session: AsyncSession, story: Story, target: StoryStatus) -> None:
        current = story.status
        if current is StoryStatus.CLOSED:
            raise StoryClosedError(f"Story {story.id} is closed")
        if not current.can_transition_to(target):
            raise InvalidTransitionError(f"Story {story.id}: {current.name} -> {target.name}")
        await self.story_ops.set_status(session, story, target)
        logger.info(f"Story {story.id} status {current.name} -> {target.name}")
