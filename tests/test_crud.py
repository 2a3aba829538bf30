"""Database operation tests, mostly the uniqueness guarantees."""

from datetime import timedelta

import pytest

from storybot.shared.utils import utcnow
from storybot.web.crud import (
    STORY_ACTIVATION_JOB,
    ConflictError,
    EntryOperations,
    NotFoundError,
    ScheduledJobOperations,
    StoryOperations,
    TurnOperations,
    WriterOperations,
)
from storybot.web.models import EntryStatus, JobStatus, StoryStatus, TurnStatus, WriterStatus


@pytest.fixture
async def seeded(session_factory):
    """A story with two writers and an active turn for the first one."""
    async with session_factory() as session:
        story = await StoryOperations().create_story(
            session, guild_id="1", title="Seeded", status=StoryStatus.ACTIVE, channel_id="555"
        )
        a = await WriterOperations().add_writer(session, story.id, "101", "Writer 1", writer_order=1)
        b = await WriterOperations().add_writer(session, story.id, "102", "Writer 2", writer_order=2)
        turn = await TurnOperations().create_turn(session, story.id, a.id, 1)
        await session.commit()
        return {"story_id": story.id, "a": a.id, "b": b.id, "turn_id": turn.id}


class TestStoryOperations:
    async def test_missing_story_raises_not_found(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(NotFoundError):
                await StoryOperations().get_story(session, 999)

    async def test_guild_stories_are_scoped(self, session_factory, seeded):
        ops = StoryOperations()
        async with session_factory() as session:
            await ops.create_story(session, guild_id="2", title="Elsewhere", status=StoryStatus.PAUSED, channel_id="1")
            await session.commit()
            mine = await ops.get_guild_stories(session, "1")
        assert [s.id for s in mine] == [seeded["story_id"]]


class TestUniqueness:
    async def test_second_active_turn_conflicts(self, session_factory, seeded):
        async with session_factory() as session:
            with pytest.raises(ConflictError):
                await TurnOperations().create_turn(session, seeded["story_id"], seeded["b"], 2)
            await session.rollback()

    async def test_closed_turn_frees_the_slot(self, session_factory, seeded):
        ops = TurnOperations()
        async with session_factory() as session:
            turn = await ops.get_turn(session, seeded["turn_id"])
            await ops.close_turn(session, turn, TurnStatus.COMPLETED)
            second = await ops.create_turn(session, seeded["story_id"], seeded["b"], 2)
            await session.commit()
            assert (await ops.get_active_turn(session, seeded["story_id"])).id == second.id

    async def test_duplicate_active_membership_conflicts(self, session_factory, seeded):
        async with session_factory() as session:
            with pytest.raises(ConflictError):
                await WriterOperations().add_writer(session, seeded["story_id"], "101", "Again")
            await session.rollback()

    async def test_withdrawn_writer_may_rejoin(self, session_factory, seeded):
        ops = WriterOperations()
        async with session_factory() as session:
            writer = await ops.get_writer(session, seeded["b"])
            writer.sw_status = int(WriterStatus.WITHDRAWN)
            await session.flush()
            rejoined = await ops.add_writer(session, seeded["story_id"], "102", "Writer 2")
            await session.commit()
            active = await ops.get_active_writers(session, seeded["story_id"])
        assert rejoined.id != seeded["b"]
        assert {w.discord_user_id for w in active} == {"101", "102"}

    async def test_second_pending_entry_conflicts(self, session_factory, seeded):
        ops = EntryOperations()
        async with session_factory() as session:
            await ops.create_entry(session, seeded["turn_id"], "first")
            await session.commit()
        async with session_factory() as session:
            with pytest.raises(ConflictError):
                await ops.create_entry(session, seeded["turn_id"], "second")
            await session.rollback()

    async def test_confirmed_entries_do_not_count_as_pending(self, session_factory, seeded):
        ops = EntryOperations()
        async with session_factory() as session:
            await ops.create_entry(session, seeded["turn_id"], "one", EntryStatus.CONFIRMED)
            second = await ops.create_entry(session, seeded["turn_id"], "two")
            await session.commit()
        assert second.order_in_turn == 2


class TestEntryQueries:
    async def test_story_entries_in_reading_order(self, session_factory, seeded):
        turns = TurnOperations()
        entries = EntryOperations()
        async with session_factory() as session:
            first = await turns.get_turn(session, seeded["turn_id"])
            await entries.create_entry(session, first.id, "Opening", EntryStatus.CONFIRMED)
            await turns.close_turn(session, first, TurnStatus.COMPLETED)
            second = await turns.create_turn(session, seeded["story_id"], seeded["b"], 2)
            await entries.create_entry(session, second.id, "Draft")
            await entries.create_entry(session, second.id, "Middle", EntryStatus.CONFIRMED)
            await session.commit()

            rows = await entries.get_story_entries(session, seeded["story_id"])

        assert [(e.content, t.turn_number, w.discord_user_id) for e, t, w in rows] == [
            ("Opening", 1, "101"),
            ("Middle", 2, "102"),
        ]

    async def test_discard_pending(self, session_factory, seeded):
        ops = EntryOperations()
        async with session_factory() as session:
            await ops.create_entry(session, seeded["turn_id"], "draft")
            assert await ops.discard_pending(session, seeded["turn_id"]) == 1
            await session.commit()
            assert await ops.get_pending_entry(session, seeded["turn_id"]) is None


class TestScheduledJobs:
    async def test_job_is_marked_run_only_once(self, session_factory, seeded):
        ops = ScheduledJobOperations()
        async with session_factory() as session:
            job = await ops.create_job(
                session, STORY_ACTIVATION_JOB, {"story_id": seeded["story_id"]}, utcnow() - timedelta(minutes=1)
            )
            await session.commit()

            assert [j.id for j in await ops.get_due_jobs(session, STORY_ACTIVATION_JOB)] == [job.id]
            assert await ops.mark_job_run(session, job.id)
            assert not await ops.mark_job_run(session, job.id)
            await session.commit()
            assert await ops.get_due_jobs(session, STORY_ACTIVATION_JOB) == []

    async def test_future_jobs_are_not_due(self, session_factory, seeded):
        ops = ScheduledJobOperations()
        async with session_factory() as session:
            await ops.create_job(
                session, STORY_ACTIVATION_JOB, {"story_id": seeded["story_id"]}, utcnow() + timedelta(hours=1)
            )
            await session.commit()
            assert await ops.get_due_jobs(session, STORY_ACTIVATION_JOB) == []

    async def test_cancel_story_jobs_only_touches_that_story(self, session_factory, seeded):
        ops = ScheduledJobOperations()
        run_at = utcnow() + timedelta(hours=1)
        async with session_factory() as session:
            mine = await ops.create_job(session, STORY_ACTIVATION_JOB, {"story_id": seeded["story_id"]}, run_at)
            other = await ops.create_job(session, STORY_ACTIVATION_JOB, {"story_id": 999}, run_at)
            assert await ops.cancel_story_jobs(session, seeded["story_id"]) == 1
            await session.commit()

            await session.refresh(mine)
            await session.refresh(other)
        assert mine.job_status == JobStatus.RUN.value
        assert other.job_status == JobStatus.PENDING.value
