"""Base service plumbing: the messaging port, the outbound queue and the
transactional boundary shared by every story service."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, TypeVar, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storybot.bot.services.exceptions import ServiceError, StoryNotFoundError
from storybot.bot.services.models import (
    ActionButton,
    ServiceResult,
    SurfaceMessage,
    SurfaceVisibility,
)
from storybot.bot.services.text_service import TextResolver
from storybot.shared.utils import mention
from storybot.web.crud import NotFoundError, StoryOperations
from storybot.web.models import Story

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", bound=ServiceResult)


class MessagingPort(Protocol):
    """Outbound side of the chat platform as seen by the services."""

    async def create_surface(
        self,
        parent_surface_id: str,
        title: str,
        visibility: SurfaceVisibility,
        member_user_ids: Sequence[str] = (),
    ) -> str:
        ...

    async def post_message(
        self,
        surface_id: str,
        text: str,
        components: Sequence[ActionButton] = (),
    ) -> None:
        ...

    async def send_direct_message(
        self,
        user_id: str,
        text: str,
        components: Sequence[ActionButton] = (),
    ) -> bool:
        ...

    async def lock_surface(self, surface_id: str) -> None:
        ...

    async def delete_surface(self, surface_id: str) -> None:
        ...

    async def fetch_recent_messages(self, surface_id: str, limit: int) -> list[SurfaceMessage]:
        ...


@dataclass
class Announcement:
    surface_id: str
    text: str
    components: tuple[ActionButton, ...] = ()


@dataclass
class Notification:
    """Turn notification: DM first, mention on the fallback surface otherwise."""

    user_id: str
    text: str
    fallback_surface_id: Optional[str]
    prefer_mention: bool = False
    components: tuple[ActionButton, ...] = ()


@dataclass
class SurfaceLock:
    surface_id: str


OutboxItem = Union[Announcement, Notification, SurfaceLock]


@dataclass
class Outbox:
    """Messages decided inside a transaction and delivered after commit.

    Delivery is best effort: a failed item is logged and the rest still go
    out. Nothing is delivered when the transaction rolls back; surfaces
    created during the transaction are deleted instead.
    """

    items: list[OutboxItem] = field(default_factory=list)
    created_surfaces: list[str] = field(default_factory=list)

    def track_surface(self, surface_id: str) -> None:
        self.created_surfaces.append(surface_id)

    def announce(
        self,
        surface_id: Optional[str],
        text: str,
        components: Sequence[ActionButton] = (),
    ) -> None:
        if not surface_id:
            logger.debug(f"Dropping announcement without a surface: {text[:50]}")
            return
        self.items.append(Announcement(surface_id, text, tuple(components)))

    def notify(
        self,
        user_id: str,
        text: str,
        fallback_surface_id: Optional[str],
        prefer_mention: bool = False,
        components: Sequence[ActionButton] = (),
    ) -> None:
        self.items.append(
            Notification(user_id, text, fallback_surface_id, prefer_mention, tuple(components))
        )

    def lock(self, surface_id: Optional[str]) -> None:
        if surface_id:
            self.items.append(SurfaceLock(surface_id))

    def __len__(self) -> int:
        return len(self.items)

    async def flush(self, messenger: MessagingPort) -> None:
        items, self.items = self.items, []
        for item in items:
            try:
                if isinstance(item, Announcement):
                    await messenger.post_message(item.surface_id, item.text, item.components)
                elif isinstance(item, Notification):
                    await self._deliver_notification(messenger, item)
                else:
                    await messenger.lock_surface(item.surface_id)
            except Exception as e:
                logger.warning(f"Best-effort delivery of {type(item).__name__} failed: {e}")

    async def discard(self, messenger: MessagingPort) -> None:
        """Drop queued messages and delete surfaces created in the rolled back transaction."""
        self.items = []
        surfaces, self.created_surfaces = self.created_surfaces, []
        for surface_id in reversed(surfaces):
            try:
                await messenger.delete_surface(surface_id)
                logger.info(f"Deleted surface {surface_id} after rollback")
            except Exception as e:
                logger.warning(f"Could not delete surface {surface_id} after rollback: {e}")

    async def _deliver_notification(self, messenger: MessagingPort, item: Notification) -> None:
        if not item.prefer_mention:
            try:
                if await messenger.send_direct_message(item.user_id, item.text, item.components):
                    return
                logger.info(f"DM to {item.user_id} not delivered, falling back to mention")
            except Exception as e:
                logger.info(f"DM to {item.user_id} failed ({e}), falling back to mention")

        if not item.fallback_surface_id:
            logger.warning(f"No surface to mention {item.user_id} in, notification dropped")
            return
        await messenger.post_message(
            item.fallback_surface_id,
            f"{mention(item.user_id)} {item.text}",
            item.components,
        )


Work = Callable[[AsyncSession, Outbox], Awaitable[ResultT]]


class BaseService:
    """Common base for story services.

    Owns the transactional boundary: every public service call runs its work
    inside ``_run_in_transaction``, which commits or rolls back, always
    releases the session, and turns errors into failure results.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        texts: TextResolver,
        messenger: MessagingPort,
        service_name: str,
    ):
        self.session_factory = session_factory
        self.texts = texts
        self.messenger = messenger
        self.service_name = service_name
        self.story_ops = StoryOperations()

    async def _run_in_transaction(
        self,
        operation: str,
        work: Work,
        result_cls: type[ResultT],
        context: dict[str, Any],
        failure_key: str = "txtGenericError",
    ) -> ResultT:
        """Run ``work`` in one transaction and normalise the outcome.

        Args:
            operation: Name used in log lines
            work: Coroutine function receiving the session and the outbox
            result_cls: Result type to build on failure
            context: Log context; ``guild_id`` in it selects the message language
                and may be filled in by ``work`` once the story is loaded
            failure_key: Text key for unexpected failures

        Returns:
            The result produced by ``work``, or a failure result
        """
        outbox = Outbox()
        async with self.session_factory() as session:
            try:
                result = await work(session, outbox)
                await session.commit()
            except ServiceError as e:
                await session.rollback()
                await outbox.discard(self.messenger)
                logger.info(f"{self.service_name}.{operation} rejected: {e.error_code} {context}")
                return result_cls(
                    success=False,
                    error=await self.texts.resolve(e.message_key, context.get("guild_id")),
                    error_code=e.error_code,
                )
            except Exception as e:
                await session.rollback()
                await outbox.discard(self.messenger)
                logger.exception(f"{self.service_name}.{operation} failed {context}: {e}")
                return result_cls(
                    success=False,
                    error=await self.texts.resolve(failure_key, context.get("guild_id")),
                    error_code="InternalError",
                )

        await outbox.flush(self.messenger)
        return result

    async def _load_story(
        self,
        session: AsyncSession,
        story_id: int,
        context: Optional[dict[str, Any]] = None,
        for_update: bool = True,
    ) -> Story:
        try:
            story = await self.story_ops.get_story(session, story_id, for_update=for_update)
        except NotFoundError as e:
            raise StoryNotFoundError(str(e)) from e
        if context is not None:
            if not context.get("guild_id"):
                context["guild_id"] = story.guild_id
            context["story_id"] = story.id
        return story
