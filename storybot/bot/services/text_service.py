"""Localized text lookup and placeholder substitution.

Texts live in the ``config_texts`` table: guild overrides first, then the
system-wide row in the default language, then the built-in English defaults
below. An unknown key resolves to itself, so lookups never fail.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storybot.web.crud import ConfigOperations

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\[([A-Za-z_][A-Za-z0-9_ ]*)\]")

DEFAULT_TEXTS: dict[str, str] = {
    # Errors
    "txtGenericError": "Something went wrong. Please try again.",
    "txtInvalidInput": "Some of the values you entered are not valid.",
    "txtStoryCreateFailed": "Failed to create story. Please try again.",
    "txtJoinFailed": "Failed to join the story. Please try again.",
    "txtStoryNotFound": "That story does not exist.",
    "txtStoryClosed": "That story is closed.",
    "txtStoryNotActive": "That story is not active right now.",
    "txtInvalidStatusChange": "The story can't change to that status.",
    "txtAlreadyJoined": "You are already writing for this story.",
    "txtStoryFull": "This story has reached its maximum number of writers.",
    "txtLateJoinNotAllowed": "This story has started and doesn't accept new writers.",
    "txtNotAWriter": "You are not a writer in this story.",
    "txtNotYourTurn": "It's not your turn.",
    "txtNotQuickMode": "Entries for this story are written in your turn thread.",
    "txtQuickModeFinalize": "This story is in quick mode; submit your entry with /story write.",
    "txtNoActiveTurn": "There is no active turn for this story.",
    "txtTurnAlreadyActive": "Another turn is already active for this story.",
    "txtEntryNotFound": "That entry does not exist.",
    "txtEntryNotPending": "That entry was already confirmed or discarded.",
    "txtEntryEmpty": "Your entry is empty.",
    "txtNoEligibleWriters": "There are no writers available to take the next turn.",
    # Story lifecycle
    "txtStoryThreadTitle": "Story [story_id]: [story_title]",
    "txtStoryIntro": "**[story_title]** is open for writers! Join with `/story join [story_id]`.",
    "txtStoryCreated": "Story **[story_title]** (#[story_id]) was created.",
    "txtStoryCreatedDelayed": "Story **[story_title]** (#[story_id]) was created. It starts once its activation delay is met.",
    "txtWriterJoined": "**[writer_name]** joined the story.",
    "txtJoinSuccess": "You joined **[story_title]**.",
    "txtStoryActivated": "**[story_title]** has started! Writers take turns from now on.",
    "txtActivationWaiting": "Not started yet: [remaining_writers] more writer(s) or [remaining_hours] more hour(s) needed.",
    "txtStoryPaused": "**[story_title]** is paused.",
    "txtStoryResumed": "**[story_title]** has resumed.",
    "txtStoryClosedAnnouncement": "**[story_title]** is now closed. Thank you for writing!",
    # Turns
    "txtTurnThreadTitle": "Story [story_id] - Turn [turn_number] - [writer_name] - due [deadline]",
    "txtTurnThreadWelcome": "[writer_mention], it's your turn! Write your part in this thread and press **Finalize** when you're done. Deadline: [deadline_relative].",
    "txtTurnStartNotify": "Your turn on **[story_title]** has started: [thread_link]. Deadline: [deadline_relative].",
    "txtQuickTurnStartNotify": "Your turn on **[story_title]** has started! Press the button or use `/story write [story_id]`. Deadline: [deadline_relative].",
    "txtTurnStartAnnouncement": "Turn [turn_number]: it's **[writer_name]**'s turn. Deadline: [deadline_relative].",
    "txtTurnSkipped": "**[writer_name]**'s turn was skipped.",
    "txtTurnSkippedReply": "The turn was skipped.",
    "btnWriteEntry": "Write entry",
    "btnFinalize": "Finalize",
    "btnSkipTurn": "Skip turn",
    # Entries
    "txtEntryPreview": "Here is your entry. Confirm or discard it before [preview_deadline].",
    "txtEntryConfirmed": "Your entry was added to the story.",
    "txtEntryDiscarded": "Entry discarded. Your turn is still open.",
    "txtEntryPublished": "**Turn [turn_number]** by **[writer_name]**:\n[content]",
    "btnConfirmEntry": "Confirm",
    "btnDiscardEntry": "Discard",
}


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """Substitute ``[name]`` placeholders; unknown placeholders stay as they are."""

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in values:
            return str(values[name])
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, template)


class TextResolver:
    """Resolves config keys to per-guild display strings with a small TTL cache."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        default_language: str = "en",
        cache_ttl: int = 300,
        defaults: Optional[Mapping[str, str]] = None,
    ):
        self.session_factory = session_factory
        self.default_language = default_language
        self.cache_ttl = cache_ttl
        self.defaults = dict(DEFAULT_TEXTS if defaults is None else defaults)
        self.config_ops = ConfigOperations()
        self._cache: dict[tuple[str, Optional[str]], tuple[str, float]] = {}

    async def resolve(self, key: str, guild_id: Optional[str] = None) -> str:
        cache_key = (key, guild_id)
        cached = self._cache.get(cache_key)
        if cached is not None and cached[1] > time.monotonic():
            return cached[0]

        value = await self._lookup(key, guild_id)
        if value is None:
            value = self.defaults.get(key)
        if value is None:
            logger.warning(f"Unresolvable text key '{key}' for guild {guild_id}")
            return key

        if self.cache_ttl > 0:
            self._cache[cache_key] = (value, time.monotonic() + self.cache_ttl)
        return value

    async def render(self, key: str, guild_id: Optional[str] = None, **values: Any) -> str:
        return render_template(await self.resolve(key, guild_id), values)

    def invalidate(self, guild_id: Optional[str] = None) -> None:
        """Drop cached texts for one guild, or everything when no guild is given."""
        if guild_id is None:
            self._cache.clear()
            return
        for cache_key in [k for k in self._cache if k[1] == guild_id]:
            del self._cache[cache_key]

    async def _lookup(self, key: str, guild_id: Optional[str]) -> Optional[str]:
        if self.session_factory is None:
            return None
        try:
            async with self.session_factory() as session:
                return await self.config_ops.get_value(
                    session, key, guild_id, self.default_language
                )
        except Exception as e:
            logger.warning(f"Text lookup for '{key}' failed, using defaults: {e}")
            return None
