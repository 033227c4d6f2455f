"""Quest lifecycle transitions."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from .config import Settings
from .errors import ConcurrencyConflictError, InvalidTransitionError
from .models import Chapter, Event, Quest, QuestStatus, TallyResult
from .state import QuestState

logger = logging.getLogger(__name__)


class QuestStateMachine:
    """Sole writer of a quest's status, chapter pointer and deadline.

    Every transition is checked against the quest's current status and written
    through a conditional update, so a stale snapshot can never resurrect a
    terminal quest or move the chapter pointer twice.
    """

    def __init__(self, state: QuestState, settings: Settings) -> None:
        self.state = state
        self.settings = settings

    def _require_active(self, quest: Quest, transition: str) -> None:
        if quest.is_terminal:
            raise InvalidTransitionError(
                f"Quest {quest.id} is {quest.status.value}; cannot {transition}"
            )

    def _reload(self, quest_id: str) -> Quest:
        quest = self.state.get_quest(quest_id)
        if quest is None:
            raise InvalidTransitionError(f"Quest {quest_id} disappeared")
        return quest

    def record_publish(
        self,
        quest: Quest,
        chapter: Chapter,
        *,
        tally: Optional[TallyResult] = None,
        decided: Optional[Chapter] = None,
        now: Optional[datetime] = None,
    ) -> Quest:
        """Advance the pointer onto a posted chapter and arm the next deadline."""

        self._require_active(quest, "publish")
        now = now or datetime.now(timezone.utc)
        expected = quest.current_chapter
        if chapter.chapter_number != expected + 1:
            raise InvalidTransitionError(
                f"Quest {quest.id} is at chapter {expected}; cannot publish chapter {chapter.chapter_number}"
            )
        if not chapter.is_posted:
            raise InvalidTransitionError(
                f"Chapter {chapter.chapter_number} of quest {quest.id} has no posted id"
            )

        final = chapter.is_terminal or chapter.chapter_number >= self.settings.max_chapters
        status = QuestStatus.COMPLETED if final else QuestStatus.ACTIVE
        deadline = None if final else now + timedelta(seconds=self.settings.voting_window_seconds)

        current_state = dict(quest.current_state)
        current_state.pop("review", None)
        if chapter.chapter_number == 1 and chapter.title:
            current_state.setdefault("canon_title", chapter.title)
        timeline = list(quest.timeline_data)
        if tally is not None:
            current_state["last_tally"] = tally.to_dict()
            idle = int(current_state.get("idle_deadlines", 0) or 0)
            current_state["idle_deadlines"] = idle + 1 if tally.used_default else 0
            timeline.append(_timeline_entry(expected, decided, tally, chapter, now))
        else:
            current_state["idle_deadlines"] = 0

        committed = self.state.commit_chapter_advance(
            quest.id,
            expected_chapter=expected,
            chapter_number=chapter.chapter_number,
            posted_id=chapter.posted_id,
            chapter_deadline=deadline,
            status=status,
            current_state=current_state,
            timeline_data=timeline,
            now=now,
        )
        if not committed:
            raise ConcurrencyConflictError(
                f"Quest {quest.id} moved past chapter {expected} before chapter {chapter.chapter_number} was committed"
            )
        self.state.append_event(
            Event(
                timestamp=now,
                action="quest_completed" if final else "chapter_published",
                quest_id=quest.id,
                payload={
                    "chapter": chapter.chapter_number,
                    "posted_id": chapter.posted_id,
                    "deadline": deadline.isoformat() if deadline else None,
                    "winning_option": tally.winning_option if tally else None,
                },
            )
        )
        logger.info(
            "Quest %s now at chapter %s (%s)",
            quest.id,
            chapter.chapter_number,
            status.value,
        )
        return self._reload(quest.id)

    def complete(self, quest: Quest, *, reason: str, now: Optional[datetime] = None) -> Quest:
        return self._finish(quest, QuestStatus.COMPLETED, "quest_completed", reason, now)

    def archive(self, quest: Quest, *, reason: str, now: Optional[datetime] = None) -> Quest:
        return self._finish(quest, QuestStatus.ARCHIVED, "quest_archived", reason, now)

    def _finish(
        self,
        quest: Quest,
        status: QuestStatus,
        action: str,
        reason: str,
        now: Optional[datetime],
    ) -> Quest:
        self._require_active(quest, status.value.lower())
        now = now or datetime.now(timezone.utc)
        current_state = dict(quest.current_state)
        current_state.pop("review", None)
        current_state["closed_reason"] = reason
        if not self.state.update_quest_lifecycle(
            quest.id,
            status=status,
            chapter_deadline=None,
            current_state=current_state,
            now=now,
        ):
            raise ConcurrencyConflictError(f"Quest {quest.id} was closed concurrently")
        self.state.append_event(
            Event(
                timestamp=now,
                action=action,
                quest_id=quest.id,
                payload={"chapter": quest.current_chapter, "reason": reason},
            )
        )
        logger.info("Quest %s %s: %s", quest.id, status.value.lower(), reason)
        return self._reload(quest.id)

    def hold(
        self,
        quest: Quest,
        *,
        stage: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Quest:
        """Park an ACTIVE quest for operator review by clearing its deadline."""

        self._require_active(quest, "hold")
        now = now or datetime.now(timezone.utc)
        current_state = dict(quest.current_state)
        review: Dict[str, object] = {
            "stage": stage,
            "chapter": quest.current_chapter + 1,
            "reason": reason,
            "at": now.isoformat(),
        }
        current_state["review"] = review
        if not self.state.update_quest_lifecycle(
            quest.id,
            status=QuestStatus.ACTIVE,
            chapter_deadline=None,
            current_state=current_state,
            now=now,
        ):
            raise ConcurrencyConflictError(f"Quest {quest.id} was closed before it could be held")
        self.state.append_event(
            Event(timestamp=now, action="quest_held", quest_id=quest.id, payload=review)
        )
        logger.error("Quest %s held for review at %s: %s", quest.id, stage, reason)
        return self._reload(quest.id)

    def resume(self, quest: Quest, *, now: Optional[datetime] = None) -> Quest:
        """Clear a review hold and make the quest due immediately."""

        self._require_active(quest, "resume")
        now = now or datetime.now(timezone.utc)
        current_state = dict(quest.current_state)
        review = current_state.pop("review", None)
        if not self.state.update_quest_lifecycle(
            quest.id,
            status=QuestStatus.ACTIVE,
            chapter_deadline=now,
            current_state=current_state,
            now=now,
        ):
            raise ConcurrencyConflictError(f"Quest {quest.id} was closed before it could resume")
        self.state.append_event(
            Event(
                timestamp=now,
                action="quest_resumed",
                quest_id=quest.id,
                payload={"review": review},
            )
        )
        logger.info("Quest %s resumed", quest.id)
        return self._reload(quest.id)


def _timeline_entry(
    decided_number: int,
    decided: Optional[Chapter],
    tally: TallyResult,
    published: Chapter,
    now: datetime,
) -> Dict[str, object]:
    label = ""
    if decided is not None and 0 <= tally.winning_option < len(decided.options):
        label = decided.options[tally.winning_option].label
    return {
        "chapter": decided_number,
        "title": decided.title if decided else "",
        "winning_option": tally.winning_option,
        "winning_label": label,
        "vote_counts": list(tally.vote_counts),
        "participation": tally.participation,
        "used_default": tally.used_default,
        "next_chapter": published.chapter_number,
        "posted_id": published.posted_id,
        "decided_at": now.isoformat(),
    }


__all__ = ["QuestStateMachine"]
