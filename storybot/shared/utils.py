"""Small helpers shared by the bot, the services and the API."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

DISCORD_FIELD_LIMIT = 1024

_ENTITY_REPLACEMENTS = (
    (re.compile(r"&quot;|&#34;"), '"'),
    (re.compile(r"&amp;|&#38;"), "&"),
    (re.compile(r"&apos;|&#39;"), "'"),
    (re.compile(r"&nbsp;"), " "),
)

_MARKUP_REPLACEMENTS = (
    (re.compile(r"<p[^>]*>", re.IGNORECASE), ""),
    (re.compile(r"</p>", re.IGNORECASE), "\n\n"),
    (re.compile(r"</?s>", re.IGNORECASE), "~~"),
    (re.compile(r"</?i>", re.IGNORECASE), "*"),
    (re.compile(r"</?b>", re.IGNORECASE), "**"),
    (re.compile(r"<br\s*/?>", re.IGNORECASE), "\n"),
    (re.compile(r"<[^>]*>"), ""),
    (re.compile(r"\n\n\n"), "\n\n"),
)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite returns them without tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_deadline(value: datetime) -> str:
    """Human-readable UTC timestamp used in thread titles and messages."""
    return ensure_utc(value).strftime("%Y-%m-%d %H:%M UTC")


def discord_timestamp(value: datetime, style: str = "R") -> str:
    """Discord ``<t:…>`` markup rendering in each reader's local time."""
    return f"<t:{int(ensure_utc(value).timestamp())}:{style}>"


def sanitize_modal_input(value: Optional[str], max_length: int) -> str:
    """Trim user input and cap its length."""
    if not value:
        return ""
    return value.strip()[:max_length]


def sanitize_markdown(value: Optional[str], limit: int = DISCORD_FIELD_LIMIT) -> str:
    """Convert simple HTML to Discord markdown and fit it into an embed field.

    Markdown control characters already present in the text are escaped so
    they display literally.
    """
    text = value or ""
    for pattern, replacement in _ENTITY_REPLACEMENTS:
        text = pattern.sub(replacement, text)
    text = re.sub(r"([*_~])", r"\\\1", text)
    for pattern, replacement in _MARKUP_REPLACEMENTS:
        text = pattern.sub(replacement, text)
    if len(text) > limit:
        text = text[: limit - 3] + "..."
    return text


def mention(user_id: str) -> str:
    """Discord user mention markup."""
    return f"<@{user_id}>"
