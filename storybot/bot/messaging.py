"""Discord implementation of the services' messaging port."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import hikari

from storybot.bot.services.models import ActionButton, SurfaceMessage, SurfaceVisibility

logger = logging.getLogger(__name__)

MESSAGE_LIMIT = 2000
BUTTONS_PER_ROW = 5

BUTTON_STYLES = {
    "primary": hikari.ButtonStyle.PRIMARY,
    "secondary": hikari.ButtonStyle.SECONDARY,
    "success": hikari.ButtonStyle.SUCCESS,
    "danger": hikari.ButtonStyle.DANGER,
}


def split_message(text: str, limit: int = MESSAGE_LIMIT) -> list[str]:
    """Split text into Discord-sized chunks, preferring line breaks."""
    chunks = []
    remaining = text
    while len(remaining) > limit:
        cut = remaining.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(remaining[:cut])
        remaining = remaining[cut:].lstrip("\n")
    if remaining or not chunks:
        chunks.append(remaining)
    return chunks


class HikariMessenger:
    """Creates threads, posts messages and sends DMs through the REST client.

    Args:
        rest: Hikari REST client (``bot.rest``)
        archive_minutes: Auto-archive duration for new threads
    """

    def __init__(self, rest: hikari.api.RESTClient, archive_minutes: int = 1440):
        self.rest = rest
        self.archive_minutes = archive_minutes

    def build_action_rows(
        self,
        buttons: Sequence[ActionButton],
    ) -> list[hikari.api.MessageActionRowBuilder]:
        rows = []
        for start in range(0, len(buttons), BUTTONS_PER_ROW):
            row = self.rest.build_message_action_row()
            for button in buttons[start:start + BUTTONS_PER_ROW]:
                row.add_interactive_button(
                    BUTTON_STYLES.get(button.style, hikari.ButtonStyle.PRIMARY),
                    button.custom_id,
                    label=button.label,
                )
            rows.append(row)
        return rows

    async def create_surface(
        self,
        parent_surface_id: str,
        title: str,
        visibility: SurfaceVisibility,
        member_user_ids: Sequence[str] = (),
    ) -> str:
        """Create a thread under a channel and add the given members.

        Errors propagate; the calling service rolls back on failure.
        """
        private = visibility is SurfaceVisibility.PRIVATE
        thread = await self.rest.create_thread(
            int(parent_surface_id),
            hikari.ChannelType.GUILD_PRIVATE_THREAD if private else hikari.ChannelType.GUILD_PUBLIC_THREAD,
            title,
            auto_archive_duration=self.archive_minutes,
            invitable=False if private else hikari.UNDEFINED,
        )
        for user_id in member_user_ids:
            try:
                await self.rest.add_thread_member(thread.id, int(user_id))
            except hikari.HTTPError as e:
                logger.warning(f"Could not add {user_id} to thread {thread.id}: {e}")

        logger.debug(f"Created {visibility.value} thread {thread.id} under {parent_surface_id}")
        return str(thread.id)

    async def post_message(
        self,
        surface_id: str,
        text: str,
        components: Sequence[ActionButton] = (),
    ) -> None:
        chunks = split_message(text)
        for index, chunk in enumerate(chunks):
            last = index == len(chunks) - 1
            await self.rest.create_message(
                int(surface_id),
                chunk,
                components=self.build_action_rows(components) if last and components else hikari.UNDEFINED,
                user_mentions=True,
            )

    async def send_direct_message(
        self,
        user_id: str,
        text: str,
        components: Sequence[ActionButton] = (),
    ) -> bool:
        """DM a user.

        Returns:
            False when the user can't be reached (DMs closed, unknown user)
        """
        try:
            channel = await self.rest.create_dm_channel(int(user_id))
            await self.post_message(str(channel.id), text, components)
            return True
        except hikari.ForbiddenError:
            logger.info(f"User {user_id} doesn't accept DMs")
            return False
        except hikari.HTTPError as e:
            logger.warning(f"DM to {user_id} failed: {e}")
            return False

    async def lock_surface(self, surface_id: str) -> None:
        await self.rest.edit_channel(int(surface_id), locked=True, archived=True)

    async def delete_surface(self, surface_id: str) -> None:
        await self.rest.delete_channel(int(surface_id))

    async def fetch_recent_messages(self, surface_id: str, limit: int) -> list[SurfaceMessage]:
        """Read the latest messages of a thread, oldest first, ignoring bots."""
        messages = await self.rest.fetch_messages(int(surface_id)).limit(limit)
        collected = []
        # Discord returns newest first
        for message in reversed(list(messages)):
            if message.author.is_bot:
                continue
            collected.append(
                SurfaceMessage(
                    author_id=str(message.author.id),
                    content=message.content or "",
                    created_at=message.timestamp,
                )
            )
        return collected


def member_is_admin(
    member: Optional[hikari.Member],
    admin_role_id: Optional[str] = None,
    permissions: Optional[hikari.Permissions] = None,
) -> bool:
    """Whether a member may moderate stories (Manage Server or the admin role).

    Interaction members carry their resolved permissions; for cached members
    the caller passes them in.
    """
    if member is None:
        return False
    if admin_role_id and int(admin_role_id) in member.role_ids:
        return True
    if permissions is None:
        permissions = getattr(member, "permissions", None)
    if permissions is None:
        return False
    return bool(permissions & (hikari.Permissions.MANAGE_GUILD | hikari.Permissions.ADMINISTRATOR))
