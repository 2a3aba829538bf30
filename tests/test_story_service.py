"""Story lifecycle tests: creation, joining, delayed activation and status changes."""

from datetime import timedelta

from conftest import story_params, writer_info
from sqlalchemy import select, update

from storybot.shared.utils import ensure_utc, utcnow
from storybot.web.crud import STORY_ACTIVATION_JOB, ScheduledJobOperations
from storybot.web.models import (
    JobStatus,
    ScheduledJob,
    Story,
    StoryOrderType,
    StoryStatus,
    StoryWriter,
    Turn,
    TurnStatus,
)


class TestCreateStory:
    async def test_story_without_delay_starts_with_creator(self, story_service, messenger, db):
        result = await story_service.create_story("1", writer_info(1), story_params())

        assert result.success
        assert result.activated
        story = await db.story(result.story_id)
        assert story.status is StoryStatus.ACTIVE
        assert story.story_thread_id == result.surface_id
        assert story.creator_user_id == "101"

        writers = await db.writers(result.story_id)
        assert [w.discord_user_id for w in writers] == ["101"]
        assert writers[0].writer_order == 1

        active = await db.active_turns(result.story_id)
        assert len(active) == 1
        assert active[0].story_writer_id == writers[0].id

        story_thread = messenger.surfaces[0]
        assert story_thread["id"] == result.surface_id
        assert story_thread["title"] == f"Story {result.story_id}: The Long Night"

    async def test_invalid_params_are_rejected(self, story_service, db):
        result = await story_service.create_story(
            "1", writer_info(1), story_params(timeout_reminder_percent=30)
        )
        assert not result.success
        assert result.error_code == "Validation"
        assert await db.count(Story) == 0

    async def test_surface_failure_rolls_everything_back(self, story_service, messenger, db):
        messenger.fail_surface = True
        result = await story_service.create_story("1", writer_info(1), story_params(delay_hours=2))

        assert not result.success
        assert result.error_code == "InternalError"
        assert result.error == "Failed to create story. Please try again."
        assert await db.count(Story) == 0
        assert await db.count(StoryWriter) == 0
        assert await db.count(ScheduledJob) == 0
        assert messenger.posts == []

    async def test_turn_thread_failure_rolls_back_story(self, story_service, messenger, db):
        original = messenger.create_surface
        calls = []

        async def fail_second(*args, **kwargs):
            calls.append(args)
            if len(calls) == 2:
                raise RuntimeError("turn thread failed")
            return await original(*args, **kwargs)

        messenger.create_surface = fail_second
        result = await story_service.create_story("1", writer_info(1), story_params())

        assert not result.success
        assert await db.count(Story) == 0
        assert await db.count(Turn) == 0
        # The story thread made before the failure is removed again
        assert messenger.deleted == [messenger.surfaces[0]["id"]]
        assert messenger.posts == []

    async def test_time_delay_queues_activation_job(self, story_service, session_factory, db):
        result = await story_service.create_story("1", writer_info(1), story_params(delay_hours=6))

        assert result.success
        assert not result.activated
        assert (await db.story(result.story_id)).status is StoryStatus.PAUSED
        assert await db.active_turns(result.story_id) == []

        async with session_factory() as session:
            job = (await session.execute(select(ScheduledJob))).scalar_one()
        assert job.payload == {"story_id": result.story_id}
        assert job.job_status == JobStatus.PENDING.value
        story = await db.story(result.story_id)
        assert ensure_utc(job.run_at) == ensure_utc(story.created_at) + timedelta(hours=6)


class TestJoinStory:
    async def test_delayed_story_activates_at_writer_count(self, story_service, db):
        created = await story_service.create_story(
            "1", writer_info(1), story_params(delay_writers=3, order_type=StoryOrderType.JOIN_ORDER)
        )
        assert created.success and not created.activated
        assert (await db.story(created.story_id)).status is StoryStatus.PAUSED
        assert await db.active_turns(created.story_id) == []

        second = await story_service.join_story("1", created.story_id, writer_info(2))
        assert second.success and not second.activated
        assert await db.active_turns(created.story_id) == []

        third = await story_service.join_story("1", created.story_id, writer_info(3))
        assert third.success and third.activated
        assert (await db.story(created.story_id)).status is StoryStatus.ACTIVE

        active = await db.active_turns(created.story_id)
        assert len(active) == 1
        # First activation goes to the earliest joined writer
        assert third.first_turn.user_id == "101"
        assert active[0].id == third.first_turn.turn_id

    async def test_closed_story_rejects_join_without_writes(self, story_service, db):
        created = await story_service.create_story("1", writer_info(1), story_params())
        closed = await story_service.close_story("1", created.story_id)
        assert closed.success

        before = await db.story(created.story_id)
        result = await story_service.join_story("1", created.story_id, writer_info(2))

        assert not result.success
        assert result.error_code == "StoryClosed"
        assert result.error == "That story is closed."
        assert len(await db.writers(created.story_id)) == 1
        after = await db.story(created.story_id)
        assert after.updated_at == before.updated_at

    async def test_duplicate_join_is_rejected(self, story_service, db):
        created = await story_service.create_story("1", writer_info(1), story_params())
        result = await story_service.join_story("1", created.story_id, writer_info(1))
        assert result.error_code == "AlreadyJoined"
        assert len(await db.writers(created.story_id)) == 1

    async def test_full_story_is_rejected(self, story_service):
        created = await story_service.create_story("1", writer_info(1), story_params(max_writers=2))
        assert (await story_service.join_story("1", created.story_id, writer_info(2))).success
        result = await story_service.join_story("1", created.story_id, writer_info(3))
        assert result.error_code == "StoryFull"

    async def test_late_join_is_rejected_when_not_allowed(self, story_service):
        created = await story_service.create_story("1", writer_info(1), story_params(allow_late_joins=False))
        result = await story_service.join_story("1", created.story_id, writer_info(2))
        assert result.error_code == "LateJoinNotAllowed"

    async def test_pending_story_accepts_joins_even_without_late_joins(self, story_service):
        created = await story_service.create_story(
            "1", writer_info(1), story_params(allow_late_joins=False, delay_writers=5)
        )
        result = await story_service.join_story("1", created.story_id, writer_info(2))
        assert result.success

    async def test_unknown_story(self, story_service):
        result = await story_service.join_story("1", 404, writer_info(2))
        assert result.error_code == "StoryNotFound"

    async def test_pen_name_defaults_from_previous_story(self, story_service, db):
        first = await story_service.create_story("1", writer_info(1, pen_name="Quill"), story_params())
        second = await story_service.create_story("1", writer_info(2), story_params())
        await story_service.join_story("1", second.story_id, writer_info(1))

        writers = await db.writers(second.story_id)
        joined = next(w for w in writers if w.discord_user_id == "101")
        assert joined.ao3_name == "Quill"
        assert joined.display_name == "Quill"
        assert first.success

    async def test_join_is_announced_in_story_thread(self, story_service, messenger):
        created = await story_service.create_story("1", writer_info(1), story_params())
        await story_service.join_story("1", created.story_id, writer_info(2))
        assert "**Writer 2** joined the story." in messenger.posts_to(created.surface_id)


class TestActivation:
    async def test_check_on_active_story_is_noop(self, story_service, db):
        created = await story_service.create_story("1", writer_info(1), story_params())
        turns_before = await db.turns(created.story_id)

        result = await story_service.check_activation_delay(created.story_id)

        assert result.success
        assert not result.activated
        assert len(await db.turns(created.story_id)) == len(turns_before)

    async def test_waiting_story_reports_what_is_missing(self, story_service):
        created = await story_service.create_story(
            "1", writer_info(1), story_params(delay_writers=4, delay_hours=10)
        )
        result = await story_service.check_activation_delay(created.story_id)
        assert not result.activated
        assert result.remaining_writers_needed == 3
        assert 9.9 < result.remaining_hours <= 10

    async def test_either_condition_activates(self, story_service, session_factory, db):
        created = await story_service.create_story(
            "1", writer_info(1), story_params(delay_writers=4, delay_hours=1)
        )
        async with session_factory() as session:
            await session.execute(
                update(Story)
                .where(Story.id == created.story_id)
                .values(created_at=utcnow() - timedelta(hours=2))
            )
            await session.commit()

        result = await story_service.check_activation_delay(created.story_id)
        assert result.activated
        assert result.remaining_writers_needed == 3
        assert len(await db.active_turns(created.story_id)) == 1

        again = await story_service.check_activation_delay(created.story_id)
        assert not again.activated
        assert len(await db.turns(created.story_id)) == 1

    async def test_paused_story_that_already_ran_is_not_auto_activated(self, story_service, db):
        created = await story_service.create_story("1", writer_info(1), story_params())
        await story_service.pause_story("1", created.story_id)

        result = await story_service.check_activation_delay(created.story_id)
        assert not result.activated
        assert (await db.story(created.story_id)).status is StoryStatus.PAUSED

    async def test_due_jobs_activate_stories(self, story_service, session_factory, db):
        due = await story_service.create_story("1", writer_info(1), story_params(delay_hours=1))
        later = await story_service.create_story("1", writer_info(2), story_params(delay_hours=48))

        # Nothing due yet
        summary = await story_service.run_due_activation_jobs()
        assert summary.processed == 0

        async with session_factory() as session:
            past = utcnow() - timedelta(hours=2)
            await session.execute(update(Story).where(Story.id == due.story_id).values(created_at=past))
            for job in (await session.execute(select(ScheduledJob))).scalars():
                if job.payload["story_id"] == due.story_id:
                    job.run_at = past + timedelta(hours=1)
            await session.commit()

        summary = await story_service.run_due_activation_jobs()
        assert summary.processed == 1
        assert summary.activated_story_ids == [due.story_id]
        assert summary.failed_job_ids == []
        assert (await db.story(due.story_id)).status is StoryStatus.ACTIVE
        assert (await db.story(later.story_id)).status is StoryStatus.PAUSED

        # Jobs run once
        summary = await story_service.run_due_activation_jobs()
        assert summary.processed == 0

    async def test_failed_activation_is_retried_on_next_poll(
        self, story_service, session_factory, messenger, db
    ):
        created = await story_service.create_story("1", writer_info(1), story_params(delay_hours=1))
        past = utcnow() - timedelta(hours=2)
        async with session_factory() as session:
            await session.execute(update(Story).where(Story.id == created.story_id).values(created_at=past))
            job = (await session.execute(select(ScheduledJob))).scalar_one()
            job.run_at = past + timedelta(hours=1)
            await session.commit()

        # Turn thread can't be created on the first attempt
        messenger.fail_surface = True
        summary = await story_service.run_due_activation_jobs()
        assert summary.processed == 1
        assert summary.failed_job_ids == [job.id]
        assert summary.activated_story_ids == []
        assert (await db.story(created.story_id)).status is StoryStatus.PAUSED

        async with session_factory() as session:
            pending = await session.get(ScheduledJob, job.id)
        assert pending.job_status == JobStatus.PENDING.value

        messenger.fail_surface = False
        summary = await story_service.run_due_activation_jobs()
        assert summary.activated_story_ids == [created.story_id]
        assert summary.failed_job_ids == []
        assert (await db.story(created.story_id)).status is StoryStatus.ACTIVE
        assert len(await db.active_turns(created.story_id)) == 1

        summary = await story_service.run_due_activation_jobs()
        assert summary.processed == 0

    async def test_job_for_missing_story_is_retired(self, story_service, session_factory):
        async with session_factory() as session:
            job = await ScheduledJobOperations().create_job(
                session, STORY_ACTIVATION_JOB, {"story_id": 4040}, utcnow() - timedelta(minutes=5)
            )
            await session.commit()

        summary = await story_service.run_due_activation_jobs()
        assert summary.failed_job_ids == [job.id]

        summary = await story_service.run_due_activation_jobs()
        assert summary.processed == 0

    async def test_writer_activation_retires_pending_job(self, story_service, session_factory):
        created = await story_service.create_story(
            "1", writer_info(1), story_params(delay_hours=24, delay_writers=2)
        )
        joined = await story_service.join_story("1", created.story_id, writer_info(2))
        assert joined.activated

        async with session_factory() as session:
            job = (await session.execute(select(ScheduledJob))).scalar_one()
        assert job.job_status == JobStatus.RUN.value


class TestStatusChanges:
    async def test_pause_ends_turn_and_resume_starts_next(self, story_service, db):
        created = await story_service.create_story(
            "1", writer_info(1), story_params(order_type=StoryOrderType.JOIN_ORDER)
        )
        await story_service.join_story("1", created.story_id, writer_info(2))

        paused = await story_service.pause_story("1", created.story_id)
        assert paused.success
        assert (await db.story(created.story_id)).status is StoryStatus.PAUSED
        turns = await db.turns(created.story_id)
        assert [t.status for t in turns] == [TurnStatus.ENDED]

        resumed = await story_service.resume_story("1", created.story_id)
        assert resumed.success
        turns = await db.turns(created.story_id)
        assert [t.status for t in turns] == [TurnStatus.ENDED, TurnStatus.ACTIVE]
        writers = {w.id: w.discord_user_id for w in await db.writers(created.story_id)}
        assert writers[turns[-1].story_writer_id] == "102"

    async def test_resume_active_story_is_invalid(self, story_service):
        created = await story_service.create_story("1", writer_info(1), story_params())
        result = await story_service.resume_story("1", created.story_id)
        assert result.error_code == "InvalidTransition"

    async def test_close_ends_turn_and_is_final(self, story_service, messenger, db):
        created = await story_service.create_story("1", writer_info(1), story_params())
        closed = await story_service.close_story("1", created.story_id)

        assert closed.success
        assert (await db.story(created.story_id)).status is StoryStatus.CLOSED
        assert await db.active_turns(created.story_id) == []
        assert created.first_turn.surface_id in messenger.locked

        for action in (story_service.pause_story, story_service.resume_story, story_service.close_story):
            result = await action("1", created.story_id)
            assert result.error_code == "StoryClosed"

    async def test_resume_of_pending_story_starts_it(self, story_service, db):
        created = await story_service.create_story("1", writer_info(1), story_params(delay_writers=5))
        result = await story_service.resume_story("1", created.story_id)
        assert result.success
        assert (await db.story(created.story_id)).status is StoryStatus.ACTIVE
        assert len(await db.active_turns(created.story_id)) == 1
