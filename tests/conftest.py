"""Shared fixtures: a file-backed SQLite database per test, a recording
messenger and the story services wired together."""

from __future__ import annotations

import random
from typing import Optional, Sequence

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine

from storybot.bot.services.entry_service import EntryService
from storybot.bot.services.models import (
    ActionButton,
    StoryParams,
    SurfaceMessage,
    SurfaceVisibility,
    WriterInfo,
)
from storybot.bot.services.story_service import StoryService
from storybot.bot.services.text_service import TextResolver
from storybot.bot.services.turn_service import TurnService
from storybot.shared.database import create_session_maker, create_tables
from storybot.web.models import Story, StoryEntry, StoryWriter, Turn, TurnStatus


class FakeMessenger:
    """In-memory messaging port that records everything sent through it."""

    def __init__(self):
        self.surfaces: list[dict] = []
        self.posts: list[tuple[str, str, tuple[ActionButton, ...]]] = []
        self.dms: list[tuple[str, str, tuple[ActionButton, ...]]] = []
        self.locked: list[str] = []
        self.thread_messages: dict[str, list[SurfaceMessage]] = {}
        self.fail_dm = False
        self.fail_surface = False
        self.fail_post = False
        self.fail_lock = False
        self.deleted: list[str] = []
        self._next_id = 9000

    async def create_surface(
        self,
        parent_surface_id: str,
        title: str,
        visibility: SurfaceVisibility,
        member_user_ids: Sequence[str] = (),
    ) -> str:
        if self.fail_surface:
            raise RuntimeError("thread creation failed")
        self._next_id += 1
        surface_id = str(self._next_id)
        self.surfaces.append(
            {
                "id": surface_id,
                "parent": parent_surface_id,
                "title": title,
                "visibility": visibility,
                "members": list(member_user_ids),
            }
        )
        return surface_id

    async def post_message(
        self,
        surface_id: str,
        text: str,
        components: Sequence[ActionButton] = (),
    ) -> None:
        if self.fail_post:
            raise RuntimeError("post failed")
        self.posts.append((surface_id, text, tuple(components)))

    async def send_direct_message(
        self,
        user_id: str,
        text: str,
        components: Sequence[ActionButton] = (),
    ) -> bool:
        if self.fail_dm:
            return False
        self.dms.append((user_id, text, tuple(components)))
        return True

    async def lock_surface(self, surface_id: str) -> None:
        if self.fail_lock:
            raise RuntimeError("lock failed")
        self.locked.append(surface_id)

    async def delete_surface(self, surface_id: str) -> None:
        self.deleted.append(surface_id)

    async def fetch_recent_messages(self, surface_id: str, limit: int) -> list[SurfaceMessage]:
        return list(self.thread_messages.get(surface_id, []))[-limit:]

    def posts_to(self, surface_id: Optional[str]) -> list[str]:
        return [text for sid, text, _ in self.posts if sid == surface_id]


def writer_info(n: int, **kwargs) -> WriterInfo:
    return WriterInfo(user_id=str(100 + n), display_name=f"Writer {n}", **kwargs)


def story_params(**kwargs) -> StoryParams:
    kwargs.setdefault("title", "The Long Night")
    kwargs.setdefault("channel_id", "555")
    return StoryParams(**kwargs)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'storybot.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_maker(engine)


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def texts():
    # Built-in texts only, no cache so tests see every lookup
    return TextResolver(None, cache_ttl=0)


@pytest.fixture
def turn_service(messenger, texts):
    return TurnService(messenger, texts, rng=random.Random(7))


@pytest.fixture
def story_service(session_factory, texts, messenger, turn_service):
    return StoryService(session_factory, texts, messenger, turn_service)


@pytest.fixture
def entry_service(session_factory, texts, messenger, turn_service):
    return EntryService(session_factory, texts, messenger, turn_service)


@pytest.fixture
def db(session_factory):
    """Read helpers for asserting on persisted state."""

    class Reader:
        async def story(self, story_id: int) -> Story:
            async with session_factory() as session:
                return await session.get(Story, story_id)

        async def turns(self, story_id: int) -> list[Turn]:
            async with session_factory() as session:
                result = await session.execute(
                    select(Turn).where(Turn.story_id == story_id).order_by(Turn.turn_number)
                )
                return list(result.scalars().all())

        async def active_turns(self, story_id: int) -> list[Turn]:
            return [t for t in await self.turns(story_id) if t.turn_status == int(TurnStatus.ACTIVE)]

        async def writers(self, story_id: int) -> list[StoryWriter]:
            async with session_factory() as session:
                result = await session.execute(
                    select(StoryWriter).where(StoryWriter.story_id == story_id).order_by(StoryWriter.id)
                )
                return list(result.scalars().all())

        async def entries(self, turn_id: int) -> list[StoryEntry]:
            async with session_factory() as session:
                result = await session.execute(
                    select(StoryEntry).where(StoryEntry.turn_id == turn_id).order_by(StoryEntry.id)
                )
                return list(result.scalars().all())

        async def count(self, model) -> int:
            async with session_factory() as session:
                return (await session.execute(select(func.count()).select_from(model))).scalar()

    return Reader()
