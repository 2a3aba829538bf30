"""Service layer exceptions.

Each exception carries the config key of the message shown to the user, so
the transactional boundary can turn it into a localized failure result.
"""

from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base exception for story service failures."""

    message_key = "txtGenericError"

    def __init__(
        self,
        message: str = "",
        *,
        message_key: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message or self.__class__.__name__)
        if message_key is not None:
            self.message_key = message_key
        self.context = context or {}

    @property
    def error_code(self) -> str:
        name = self.__class__.__name__
        return name[:-5] if name.endswith("Error") else name


class ValidationError(ServiceError):
    message_key = "txtInvalidInput"


class StoryNotFoundError(ServiceError):
    message_key = "txtStoryNotFound"


class StoryClosedError(ServiceError):
    message_key = "txtStoryClosed"


class StoryNotActiveError(ServiceError):
    message_key = "txtStoryNotActive"


class InvalidTransitionError(ServiceError):
    message_key = "txtInvalidStatusChange"


class AlreadyJoinedError(ServiceError):
    message_key = "txtAlreadyJoined"


class StoryFullError(ServiceError):
    message_key = "txtStoryFull"


class LateJoinNotAllowedError(ServiceError):
    message_key = "txtLateJoinNotAllowed"


class NotAWriterError(ServiceError):
    message_key = "txtNotAWriter"


class NotYourTurnError(ServiceError):
    message_key = "txtNotYourTurn"


class NotQuickModeError(ServiceError):
    message_key = "txtNotQuickMode"


class QuickModeOnlyError(ServiceError):
    message_key = "txtQuickModeFinalize"


class NoActiveTurnError(ServiceError):
    message_key = "txtNoActiveTurn"


class ActiveTurnExistsError(ServiceError):
    message_key = "txtTurnAlreadyActive"


class EntryNotFoundError(ServiceError):
    message_key = "txtEntryNotFound"


class EntryNotPendingError(ServiceError):
    message_key = "txtEntryNotPending"


class EmptyEntryError(ServiceError):
    message_key = "txtEntryEmpty"


class NoEligibleWritersError(ServiceError):
    message_key = "txtNoEligibleWriters"
