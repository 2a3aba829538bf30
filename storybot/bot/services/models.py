"""Input and result models exchanged between the services and the front end.

The front end hands already-validated primitives to the services and renders
the plain result objects it gets back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from storybot.web.models import NotificationPreference, StoryOrderType


class SurfaceVisibility(str, Enum):
    """Who can see a newly created communication surface."""

    PUBLIC = "public"
    PRIVATE = "private"


@dataclass(frozen=True)
class ActionButton:
    """Button attached to an outgoing message."""

    custom_id: str
    label: str
    style: str = "primary"


@dataclass(frozen=True)
class SurfaceMessage:
    """A message read back from a communication surface."""

    author_id: str
    content: str
    created_at: Optional[datetime] = None


@dataclass
class WriterInfo:
    """Who is joining a story and how they want to be treated."""

    user_id: str
    display_name: str
    pen_name: Optional[str] = None
    turn_privacy: bool = False
    notification_pref: NotificationPreference = NotificationPreference.DM


@dataclass
class StoryParams:
    """Story creation parameters collected by the front end."""

    title: str
    channel_id: str
    quick_mode: bool = False
    turn_length_hours: int = 24
    timeout_reminder_percent: int = 50
    order_type: StoryOrderType = StoryOrderType.RANDOM
    turn_privacy: bool = False
    allow_late_joins: bool = True
    max_writers: Optional[int] = None
    delay_hours: Optional[int] = None
    delay_writers: Optional[int] = None


@dataclass
class ServiceResult:
    """Outcome of a service call.

    ``message`` is the localized text to show on success, ``error`` the
    localized text on failure and ``error_code`` a stable identifier.
    """

    success: bool = True
    message: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class TurnStart:
    """A freshly started turn."""

    turn_id: int
    writer_id: int
    user_id: str
    turn_number: int
    deadline: datetime
    surface_id: Optional[str] = None


@dataclass
class CreateStoryResult(ServiceResult):
    story_id: Optional[int] = None
    surface_id: Optional[str] = None
    activated: bool = False
    first_turn: Optional[TurnStart] = None


@dataclass
class JoinStoryResult(ServiceResult):
    writer_id: Optional[int] = None
    activated: bool = False
    first_turn: Optional[TurnStart] = None


@dataclass
class ActivationResult(ServiceResult):
    activated: bool = False
    remaining_writers_needed: Optional[int] = None
    remaining_hours: Optional[float] = None
    first_turn: Optional[TurnStart] = None


@dataclass
class SubmitEntryResult(ServiceResult):
    entry_id: Optional[int] = None
    preview_deadline: Optional[datetime] = None
    content: Optional[str] = None


@dataclass
class AdvanceResult(ServiceResult):
    ended_turn_id: Optional[int] = None
    entry_id: Optional[int] = None
    next_turn: Optional[TurnStart] = None


@dataclass
class JobRunSummary:
    """What one pass over the due activation jobs did."""

    processed: int = 0
    activated_story_ids: list[int] = field(default_factory=list)
    failed_job_ids: list[int] = field(default_factory=list)
