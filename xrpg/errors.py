"""Error taxonomy shared by the progression engine."""
from __future__ import annotations

from typing import Optional


class ExternalCallError(RuntimeError):
    """Base class for failures raised by generator, interpreter or poster backends."""

    transient = True


class TransientExternalError(ExternalCallError):
    """Timeouts, connection resets, rate limits and 5xx responses. Safe to retry."""


class ExternalTimeoutError(TransientExternalError):
    """The call did not answer in time; whether it took effect remotely is unknown."""


class PermanentExternalError(ExternalCallError):
    """The backend rejected the request; retrying the same call will not help."""

    transient = False


class PublishFailedError(RuntimeError):
    """Raised when the publisher gives up on a chapter."""

    stage = "publish"

    def __init__(
        self,
        quest_id: str,
        chapter_number: int,
        reason: str,
        *,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(f"{self.stage} failed for quest {quest_id} chapter {chapter_number}: {reason}")
        self.quest_id = quest_id
        self.chapter_number = chapter_number
        self.reason = reason
        self.cause = cause


class GenerationFailedError(PublishFailedError):
    stage = "generation"


class PostingFailedError(PublishFailedError):
    stage = "posting"


class ConcurrencyConflictError(RuntimeError):
    """A compare-and-set on quest state lost to another writer."""


class InvalidTransitionError(RuntimeError):
    """The quest lifecycle does not allow the requested transition."""


class QuestRejectedError(RuntimeError):
    """A seed post was turned down instead of starting a quest.

    ``reply`` is the text sent back to the author, empty when nothing should
    be said. ``quest_id`` names the running quest when that was the reason.
    """

    def __init__(self, reason: str, *, reply: str = "", quest_id: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.reply = reply
        self.quest_id = quest_id


__all__ = [
    "ExternalCallError",
    "TransientExternalError",
    "ExternalTimeoutError",
    "PermanentExternalError",
    "PublishFailedError",
    "GenerationFailedError",
    "PostingFailedError",
    "ConcurrencyConflictError",
    "InvalidTransitionError",
    "QuestRejectedError",
]
