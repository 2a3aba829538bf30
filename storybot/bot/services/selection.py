"""Next-writer selection.

``choose_next_writer`` is the pure policy; ``pick_next_writer`` feeds it the
persisted state of a story. The current writer is the writer of the active
turn, or of the latest turn while a story sits between ending one turn and
starting the next.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from storybot.bot.services.exceptions import NoEligibleWritersError
from storybot.shared.utils import ensure_utc
from storybot.web.crud import NotFoundError, TurnOperations, WriterOperations
from storybot.web.models import Story, StoryOrderType, StoryWriter

logger = logging.getLogger(__name__)

_turn_ops = TurnOperations()
_writer_ops = WriterOperations()


def join_order_key(writer: StoryWriter) -> tuple[datetime, int]:
    return (ensure_utc(writer.joined_at), writer.id)


def fixed_order_key(writer: StoryWriter) -> tuple[bool, int, datetime, int]:
    # Writers without a position go last, in join order
    position = writer.writer_order if writer.writer_order is not None else 0
    return (writer.writer_order is None, position, ensure_utc(writer.joined_at), writer.id)


def choose_next_writer(
    writers: Sequence[StoryWriter],
    order_type: StoryOrderType,
    current: Optional[StoryWriter] = None,
    rng: Optional[random.Random] = None,
) -> StoryWriter:
    """Pick the writer for the next turn.

    Args:
        writers: Active memberships of the story
        order_type: Ordering policy of the story
        current: Writer of the current (or latest) turn; may be withdrawn
        rng: Random source for the random policy

    Returns:
        The chosen membership

    Raises:
        NoEligibleWritersError: If there are no active writers
    """
    if not writers:
        raise NoEligibleWritersError("Story has no active writers")

    if current is None:
        return min(writers, key=join_order_key)

    if order_type is StoryOrderType.RANDOM:
        candidates = sorted((w for w in writers if w.id != current.id), key=lambda w: w.id)
        if not candidates:
            # Sole writer keeps writing rather than stalling the story
            candidates = [w for w in writers if w.id == current.id]
        return (rng or random).choice(candidates)

    sort_key = fixed_order_key if order_type is StoryOrderType.FIXED_ORDER else join_order_key
    ordered = sorted(writers, key=sort_key)
    current_key = sort_key(current)
    for writer in ordered:
        if sort_key(writer) > current_key:
            return writer
    return ordered[0]


async def pick_next_writer(
    session: AsyncSession,
    story: Story,
    rng: Optional[random.Random] = None,
) -> StoryWriter:
    """Pick the next writer of ``story`` from its persisted state."""
    writers = await _writer_ops.get_active_writers(session, story.id)

    turn = await _turn_ops.get_active_turn(session, story.id)
    if turn is None:
        turn = await _turn_ops.get_latest_turn(session, story.id)

    current = None
    if turn is not None:
        current = next((w for w in writers if w.id == turn.story_writer_id), None)
        if current is None:
            try:
                current = await _writer_ops.get_writer(session, turn.story_writer_id)
            except NotFoundError:
                logger.warning(f"Turn {turn.id} of story {story.id} points at a missing writer")

    writer = choose_next_writer(writers, story.order_type, current, rng)
    logger.debug(f"Story {story.id}: next writer {writer.id} ({story.order_type.name})")
    return writer
