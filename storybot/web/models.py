"""Database models for the round-robin story bot."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean
from sqlalchemy import CheckConstraint, Index
from sqlalchemy import DateTime
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import text
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import mapped_column

from storybot.shared.database import Base
from storybot.shared.utils import utcnow


class StoryStatus(enum.IntEnum):
    """Lifecycle status of a story.

    Pending and Paused share a value; a pending story is a paused story
    that has never had a turn.
    """

    ACTIVE = 1
    PAUSED = 2
    CLOSED = 3
    PENDING = 2

    def can_transition_to(self, target: "StoryStatus") -> bool:
        if self is StoryStatus.CLOSED:
            return False
        if target is StoryStatus.CLOSED:
            return True
        if self is StoryStatus.PAUSED:
            return target is StoryStatus.ACTIVE
        return target is StoryStatus.PAUSED


class StoryOrderType(enum.IntEnum):
    """Policy used to pick the next writer."""

    RANDOM = 1
    JOIN_ORDER = 2
    FIXED_ORDER = 3


class WriterStatus(enum.IntEnum):
    WITHDRAWN = 0
    ACTIVE = 1


class NotificationPreference(str, enum.Enum):
    DM = "dm"
    MENTION = "mention"


class TurnStatus(enum.IntEnum):
    ENDED = 0
    ACTIVE = 1
    COMPLETED = 2
    SKIPPED = 3


class EntryStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DISCARDED = "discarded"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUN = "run"


class Story(Base):
    """A collaborative writing project within a guild.

    Holds the turn-taking configuration (turn length, ordering policy,
    privacy, delivery mode) and the optional activation delay that keeps a
    new story pending until enough writers join or enough time passes.
    """

    __tablename__ = "stories"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
        doc="Surrogate story identifier",
    )
    guild_id: Mapped[str] = mapped_column(
        String,
        nullable=False,
        doc="Discord guild (server) snowflake ID owning the story",
    )
    title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        doc="Story title",
    )
    story_status: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=int(StoryStatus.PAUSED),
        doc="1 = active, 2 = pending/paused, 3 = closed",
    )

    # Turn configuration
    quick_mode: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Deliver turns by DM/announcement instead of a dedicated thread",
    )
    turn_length_hours: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=24,
        doc="Length of a writing turn in hours",
    )
    timeout_reminder_percent: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=50,
        doc="Percent of the turn after which a reminder is due (0 disables)",
    )
    story_order_type: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=int(StoryOrderType.RANDOM),
        doc="1 = random, 2 = join order, 3 = fixed order",
    )
    story_turn_privacy: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Make every turn thread private regardless of writer preference",
    )
    allow_late_joins: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        doc="Whether writers may join once the story is active",
    )
    max_writers: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        doc="Maximum active writers (null = no limit)",
    )

    # Activation delay
    story_delay_hours: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        doc="Hours after creation before the story activates",
    )
    story_delay_users: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        doc="Number of writers needed before the story activates",
    )

    # Discord surfaces
    channel_id: Mapped[Optional[str]] = mapped_column(
        String,
        nullable=True,
        doc="Channel the story was created in; parent of all story threads",
    )
    story_thread_id: Mapped[Optional[str]] = mapped_column(
        String,
        nullable=True,
        doc="Main story thread where announcements are posted",
    )
    creator_user_id: Mapped[Optional[str]] = mapped_column(
        String,
        nullable=True,
        doc="Discord user who created the story",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("ix_stories_guild_id", "guild_id"),
        Index("ix_stories_guild_status", "guild_id", "story_status"),
        CheckConstraint("story_status IN (1, 2, 3)", name="ck_stories_status"),
        CheckConstraint(
            "timeout_reminder_percent IN (0, 25, 50, 75)",
            name="ck_stories_reminder_percent",
        ),
        CheckConstraint("turn_length_hours >= 1", name="ck_stories_turn_length"),
    )

    @property
    def status(self) -> StoryStatus:
        return StoryStatus(self.story_status)

    @property
    def order_type(self) -> StoryOrderType:
        return StoryOrderType(self.story_order_type)

    @property
    def has_activation_delay(self) -> bool:
        return bool(self.story_delay_hours) or bool(self.story_delay_users)

    def __repr__(self) -> str:
        return f"<Story(id={self.id}, title='{self.title}', status={self.story_status})>"


class StoryWriter(Base):
    """A user's membership in one story.

    Memberships are never deleted; withdrawing flips ``sw_status``. Only one
    active membership may exist per (story, user).
    """

    __tablename__ = "story_writers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    story_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("stories.id", ondelete="CASCADE"),
        nullable=False,
        doc="Story this membership belongs to",
    )
    discord_user_id: Mapped[str] = mapped_column(
        String,
        nullable=False,
        doc="Discord user snowflake ID",
    )
    discord_display_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        doc="Display name at the time of joining",
    )
    ao3_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        doc="External pen name, reused as the default for later stories",
    )
    turn_privacy: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Writer prefers private turn threads",
    )
    notification_prefs: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=NotificationPreference.DM.value,
        doc="How the writer is told their turn started: dm or mention",
    )
    sw_status: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=int(WriterStatus.ACTIVE),
        doc="1 = active, 0 = withdrawn",
    )
    writer_order: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        doc="Position used by the fixed-order policy",
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("ix_story_writers_story_id", "story_id"),
        Index("ix_story_writers_user_id", "discord_user_id"),
        Index(
            "uq_story_writers_active_member",
            "story_id",
            "discord_user_id",
            unique=True,
            postgresql_where=text("sw_status = 1"),
            sqlite_where=text("sw_status = 1"),
        ),
    )

    @property
    def display_name(self) -> str:
        return self.ao3_name or self.discord_display_name

    @property
    def prefers_mention(self) -> bool:
        return self.notification_prefs == NotificationPreference.MENTION.value

    def __repr__(self) -> str:
        return f"<StoryWriter(id={self.id}, story_id={self.story_id}, user='{self.discord_user_id}')>"


class Turn(Base):
    """One writer's exclusive writing window.

    ``story_id`` duplicates the writer's story so the database can enforce a
    single active turn per story with a partial unique index.
    """

    __tablename__ = "turns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    story_writer_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("story_writers.id", ondelete="CASCADE"),
        nullable=False,
        doc="Membership holding this turn",
    )
    story_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("stories.id", ondelete="CASCADE"),
        nullable=False,
    )
    turn_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        doc="Running turn number within the story",
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    ended_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    turn_status: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=int(TurnStatus.ACTIVE),
        doc="0 = ended, 1 = active, 2 = completed, 3 = skipped",
    )
    thread_id: Mapped[Optional[str]] = mapped_column(
        String,
        nullable=True,
        doc="Dedicated turn thread (absent in quick mode)",
    )

    __table_args__ = (
        Index("ix_turns_story_writer_id", "story_writer_id"),
        Index("ix_turns_story_started", "story_id", "started_at"),
        Index("ix_turns_thread_id", "thread_id"),
        Index(
            "uq_turns_story_active",
            "story_id",
            unique=True,
            postgresql_where=text("turn_status = 1"),
            sqlite_where=text("turn_status = 1"),
        ),
    )

    @property
    def status(self) -> TurnStatus:
        return TurnStatus(self.turn_status)

    def __repr__(self) -> str:
        return f"<Turn(id={self.id}, story_id={self.story_id}, status={self.turn_status})>"


class StoryEntry(Base):
    """Text contributed during a turn."""

    __tablename__ = "story_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    turn_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("turns.id", ondelete="CASCADE"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    entry_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=EntryStatus.PENDING.value,
    )
    order_in_turn: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("ix_story_entries_turn_id", "turn_id"),
        Index(
            "uq_story_entries_pending_turn",
            "turn_id",
            unique=True,
            postgresql_where=text("entry_status = 'pending'"),
            sqlite_where=text("entry_status = 'pending'"),
        ),
    )

    @property
    def status(self) -> EntryStatus:
        return EntryStatus(self.entry_status)

    def __repr__(self) -> str:
        return f"<StoryEntry(id={self.id}, turn_id={self.turn_id}, status='{self.entry_status}')>"


class ScheduledJob(Base):
    """Deferred work consumed by the activation poller."""

    __tablename__ = "scheduled_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        doc="Job type tag, e.g. story_activation",
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        doc="Opaque job payload",
    )
    run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        doc="Earliest time the job may run",
    )
    job_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=JobStatus.PENDING.value,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    ran_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_scheduled_jobs_status_run_at", "job_status", "run_at"),
    )

    def __repr__(self) -> str:
        return f"<ScheduledJob(id={self.id}, type='{self.job_type}', status='{self.job_status}')>"


class ConfigText(Base):
    """Localized display string.

    Rows with ``guild_id`` set override the system-wide rows for that guild;
    system-wide rows (``guild_id`` null) exist once per language.
    """

    __tablename__ = "config_texts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    config_key: Mapped[str] = mapped_column(String(100), nullable=False)
    config_value: Mapped[str] = mapped_column(Text, nullable=False)
    language_code: Mapped[str] = mapped_column(String(10), nullable=False, default="en")
    guild_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    __table_args__ = (
        Index("ix_config_texts_key", "config_key"),
        Index("ix_config_texts_key_guild", "config_key", "guild_id"),
    )
