"""Pydantic response models for the story API."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from storybot.bot.services.turn_service import reminder_at, turn_deadline
from storybot.shared.utils import ensure_utc
from storybot.web.models import Story, StoryEntry, StoryWriter, Turn, WriterStatus


class ErrorDetail(BaseModel):
    """A single validation problem."""

    code: str
    message: str
    field: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error body returned by every failing endpoint."""

    detail: str
    type: str
    timestamp: datetime
    request_id: Optional[str] = None


class ValidationErrorResponse(ErrorResponse):
    type: str = "validation_error"
    errors: List[ErrorDetail] = Field(default_factory=list)


class WriterResponse(BaseModel):
    id: int
    discord_user_id: str
    display_name: str
    active: bool
    writer_order: Optional[int] = None
    joined_at: datetime

    @classmethod
    def from_writer(cls, writer: StoryWriter) -> "WriterResponse":
        return cls(
            id=writer.id,
            discord_user_id=writer.discord_user_id,
            display_name=writer.display_name,
            active=writer.sw_status == int(WriterStatus.ACTIVE),
            writer_order=writer.writer_order,
            joined_at=ensure_utc(writer.joined_at),
        )


class TurnResponse(BaseModel):
    id: int
    turn_number: int
    story_writer_id: int
    status: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    deadline: datetime
    reminder_at: Optional[datetime] = None
    thread_id: Optional[str] = None

    @classmethod
    def from_turn(cls, turn: Turn, story: Story) -> "TurnResponse":
        return cls(
            id=turn.id,
            turn_number=turn.turn_number,
            story_writer_id=turn.story_writer_id,
            status=turn.status.name.lower(),
            started_at=ensure_utc(turn.started_at),
            ended_at=ensure_utc(turn.ended_at),
            deadline=turn_deadline(turn, story),
            reminder_at=reminder_at(turn, story),
            thread_id=turn.thread_id,
        )


class StoryResponse(BaseModel):
    id: int
    guild_id: str
    title: str
    status: str
    quick_mode: bool
    turn_length_hours: int
    timeout_reminder_percent: int
    order_type: str
    turn_privacy: bool
    allow_late_joins: bool
    max_writers: Optional[int] = None
    delay_hours: Optional[int] = None
    delay_writers: Optional[int] = None
    story_thread_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_story(cls, story: Story) -> "StoryResponse":
        return cls(**cls._story_fields(story))

    @staticmethod
    def _story_fields(story: Story) -> dict:
        return dict(
            id=story.id,
            guild_id=story.guild_id,
            title=story.title,
            status=story.status.name.lower(),
            quick_mode=story.quick_mode,
            turn_length_hours=story.turn_length_hours,
            timeout_reminder_percent=story.timeout_reminder_percent,
            order_type=story.order_type.name.lower(),
            turn_privacy=story.story_turn_privacy,
            allow_late_joins=story.allow_late_joins,
            max_writers=story.max_writers,
            delay_hours=story.story_delay_hours,
            delay_writers=story.story_delay_users,
            story_thread_id=story.story_thread_id,
            created_at=ensure_utc(story.created_at),
            updated_at=ensure_utc(story.updated_at),
        )


class StoryListResponse(BaseModel):
    stories: List[StoryResponse]
    total: int


class StoryDetailResponse(StoryResponse):
    writers: List[WriterResponse] = Field(default_factory=list)
    active_turn: Optional[TurnResponse] = None
    turn_count: int = 0

    @classmethod
    def from_parts(
        cls,
        story: Story,
        writers: List[StoryWriter],
        active_turn: Optional[Turn],
        turn_count: int,
    ) -> "StoryDetailResponse":
        return cls(
            **cls._story_fields(story),
            writers=[WriterResponse.from_writer(w) for w in writers],
            active_turn=TurnResponse.from_turn(active_turn, story) if active_turn else None,
            turn_count=turn_count,
        )


class EntryResponse(BaseModel):
    id: int
    turn_number: int
    writer_name: str
    content: str
    created_at: datetime

    @classmethod
    def from_row(cls, entry: StoryEntry, turn: Turn, writer: StoryWriter) -> "EntryResponse":
        return cls(
            id=entry.id,
            turn_number=turn.turn_number,
            writer_name=writer.display_name,
            content=entry.content,
            created_at=ensure_utc(entry.created_at),
        )


class StoryEntriesResponse(BaseModel):
    story_id: int
    entries: List[EntryResponse]
