"""Read-only story endpoints.

Lets dashboards and other services see a guild's stories, who writes for
them, whose turn it is and the confirmed text so far.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from storybot.shared.database import get_db_session
from storybot.web.api.dependencies import verify_api_key
from storybot.web.api.schemas import (
    EntryResponse,
    StoryDetailResponse,
    StoryEntriesResponse,
    StoryListResponse,
    StoryResponse,
)
from storybot.web.crud import (
    EntryOperations,
    NotFoundError,
    StoryOperations,
    TurnOperations,
    WriterOperations,
)
from storybot.web.models import Story, StoryStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/guilds/{guild_id}/stories", tags=["Stories"])

STATUS_FILTERS = {
    "active": StoryStatus.ACTIVE,
    "paused": StoryStatus.PAUSED,
    "closed": StoryStatus.CLOSED,
}


async def get_guild_story(session: AsyncSession, guild_id: str, story_id: int) -> Story:
    story = await StoryOperations().get_story(session, story_id)
    if story.guild_id != guild_id:
        # Don't reveal stories of other guilds
        raise NotFoundError(f"Story not found: {story_id}")
    return story


@router.get("", response_model=StoryListResponse)
async def list_stories(
    guild_id: str,
    status: Optional[str] = Query(
        default=None,
        pattern="^(active|paused|closed)$",
        description="Only stories with this status",
    ),
    session: AsyncSession = Depends(get_db_session),
    api_key=Depends(verify_api_key),
) -> StoryListResponse:
    """List a guild's stories, newest first."""
    stories = await StoryOperations().get_guild_stories(
        session, guild_id, STATUS_FILTERS[status] if status else None
    )
    logger.debug(f"Listed {len(stories)} stories for guild {guild_id}")
    return StoryListResponse(
        stories=[StoryResponse.from_story(s) for s in stories],
        total=len(stories),
    )


@router.get("/{story_id}", response_model=StoryDetailResponse)
async def get_story(
    guild_id: str,
    story_id: int,
    session: AsyncSession = Depends(get_db_session),
    api_key=Depends(verify_api_key),
) -> StoryDetailResponse:
    """Get a story with its writers and the active turn, if any."""
    story = await get_guild_story(session, guild_id, story_id)
    turn_ops = TurnOperations()
    writers = await WriterOperations().get_active_writers(session, story.id)
    active_turn = await turn_ops.get_active_turn(session, story.id)
    turn_count = await turn_ops.count_turns(session, story.id)
    return StoryDetailResponse.from_parts(story, writers, active_turn, turn_count)


@router.get("/{story_id}/entries", response_model=StoryEntriesResponse)
async def get_story_entries(
    guild_id: str,
    story_id: int,
    session: AsyncSession = Depends(get_db_session),
    api_key=Depends(verify_api_key),
) -> StoryEntriesResponse:
    """Get the confirmed entries of a story in reading order."""
    story = await get_guild_story(session, guild_id, story_id)
    rows = await EntryOperations().get_story_entries(session, story.id)
    return StoryEntriesResponse(
        story_id=story.id,
        entries=[EntryResponse.from_row(entry, turn, writer) for entry, turn, writer in rows],
    )
