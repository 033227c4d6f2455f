"""High-level quest progression orchestration."""
from __future__ import annotations

import logging
import os
import secrets
import socket
import sqlite3
import string
import threading
import time
import uuid
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from .alerting import AlertRouter, get_alert_router
from .config import Settings, get_settings
from .errors import (
    ConcurrencyConflictError,
    ExternalCallError,
    InvalidTransitionError,
    PublishFailedError,
    QuestRejectedError,
)
from .generator import ChapterGenerator, LLMConfig, ReplyInterpreter
from .lifecycle import QuestStateMachine
from .models import (
    Chapter,
    ChapterVote,
    Event,
    Execution,
    ProgressionAction,
    ProgressionOutcome,
    Quest,
    QuestStatus,
    QuestVote,
    TallyResult,
)
from .poster import Poster, poster_from_env
from .press import format_quest_already_running
from .publisher import ChapterPublisher
from .state import QuestState
from .tally import tally_votes

logger = logging.getLogger(__name__)

_SHORT_ID_ALPHABET = string.ascii_letters + string.digits
_SHORT_ID_LENGTH = 8


def _short_id() -> str:
    return "".join(secrets.choice(_SHORT_ID_ALPHABET) for _ in range(_SHORT_ID_LENGTH))


class _LeaseHeartbeat(threading.Thread):
    """Keeps a quest lease alive while its holder waits on slow external calls."""

    def __init__(self, state: QuestState, quest_id: str, owner: str, ttl_seconds: float) -> None:
        super().__init__(name=f"xrpg-lease-{quest_id[:8]}", daemon=True)
        self._state = state
        self._quest_id = quest_id
        self._owner = owner
        self._ttl = ttl_seconds
        self._stopped = threading.Event()

    def run(self) -> None:
        interval = max(self._ttl / 3, 0.01)
        while not self._stopped.wait(interval):
            try:
                renewed = self._state.renew_lease(self._quest_id, self._owner, self._ttl)
            except sqlite3.Error:
                logger.exception("Could not renew lease on quest %s", self._quest_id)
                continue
            if not renewed:
                logger.warning("Lease on quest %s was lost by %s", self._quest_id, self._owner)
                return

    def stop(self) -> None:
        self._stopped.set()
        self.join()


class ProgressionService:
    """Drives quests from chapter to chapter as their voting deadlines pass."""

    def __init__(
        self,
        db_path: Path,
        settings: Settings | None = None,
        *,
        generator: ChapterGenerator | None = None,
        interpreter: ReplyInterpreter | None = None,
        poster: Poster | None = None,
        alert_router: AlertRouter | None = None,
        worker_id: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.state = QuestState(db_path)
        self.machine = QuestStateMachine(self.state, self.settings)
        llm_config = LLMConfig.from_env() if generator is None or interpreter is None else None
        self.generator = generator or ChapterGenerator(llm_config)
        self.interpreter = interpreter or ReplyInterpreter(llm_config)
        self.poster = poster or poster_from_env()
        self.publisher = ChapterPublisher(
            self.state,
            self.machine,
            self.generator,
            self.poster,
            self.settings,
            sleep=sleep,
        )
        self._alert_router = alert_router
        self.worker_id = (
            worker_id or os.getenv("XRPG_WORKER_ID") or f"{socket.gethostname()}:{os.getpid()}"
        )
        self._sleep = sleep
        self._admin_notifications: deque[str] = deque()

    def close(self) -> None:
        self.publisher.close()

    # Admin notifications ----------------------------------------------
    def drain_admin_notifications(self) -> List[str]:
        messages = list(self._admin_notifications)
        self._admin_notifications.clear()
        return messages

    def push_admin_notification(self, message: str) -> None:
        self._queue_admin_notification(message)

    def _queue_admin_notification(self, message: str) -> None:
        logger.warning(message)
        self._admin_notifications.append(message)

    # Leases -----------------------------------------------------------
    @contextmanager
    def _leased(self, quest_id: str) -> Iterator[Optional[str]]:
        """Hold the quest lease for the duration of the block, if it can be taken.

        Yields the owner token, or ``None`` when the lease stayed busy. Each
        attempt gets its own token so two threads of one worker never share a
        lease, and a heartbeat renews it until the block exits.
        """

        owner = f"{self.worker_id}:{uuid.uuid4().hex[:8]}"
        give_up_at = time.monotonic() + self.settings.lease_wait_seconds
        acquired = False
        while True:
            if self.state.acquire_lease(quest_id, owner, self.settings.lease_ttl_seconds):
                acquired = True
                break
            if time.monotonic() >= give_up_at:
                break
            self._sleep(self.settings.lease_poll_seconds)
        if not acquired:
            yield None
            return
        heartbeat = _LeaseHeartbeat(self.state, quest_id, owner, self.settings.lease_ttl_seconds)
        heartbeat.start()
        try:
            yield owner
        finally:
            heartbeat.stop()
            self.state.release_lease(quest_id, owner)

    # Progression ------------------------------------------------------
    def advance(
        self,
        quest_id: str,
        now: Optional[datetime] = None,
        expected_deadline: Optional[datetime] = None,
    ) -> ProgressionOutcome:
        """Tally and move a due quest on by one step.

        Safe to call repeatedly and from several workers: anything that is not
        due, already handled, or locked elsewhere comes back as a no-op outcome.
        """

        now = now or datetime.now(timezone.utc)
        with self._leased(quest_id) as owner:
            if owner is None:
                logger.debug("Quest %s is being progressed elsewhere", quest_id)
                return ProgressionOutcome(
                    quest_id=quest_id,
                    action=ProgressionAction.SKIPPED,
                    quest=self.state.get_quest(quest_id),
                    reason="lease held by another worker",
                )
            try:
                return self._advance_locked(quest_id, now, expected_deadline, owner)
            except ConcurrencyConflictError as exc:
                logger.info("Quest %s advanced concurrently: %s", quest_id, exc)
                return ProgressionOutcome(
                    quest_id=quest_id,
                    action=ProgressionAction.ALREADY_ADVANCED,
                    quest=self.state.get_quest(quest_id),
                    reason=str(exc),
                )
            except InvalidTransitionError as exc:
                quest = self.state.get_quest(quest_id)
                logger.warning("Ignoring transition on quest %s: %s", quest_id, exc)
                action = (
                    ProgressionAction.TERMINAL
                    if quest is not None and quest.is_terminal
                    else ProgressionAction.ALREADY_ADVANCED
                )
                return ProgressionOutcome(quest_id=quest_id, action=action, quest=quest, reason=str(exc))

    def advance_due(self, now: Optional[datetime] = None) -> List[ProgressionOutcome]:
        """Process every ACTIVE quest whose deadline has already passed."""

        now = now or datetime.now(timezone.utc)
        outcomes: List[ProgressionOutcome] = []
        for quest in self.state.list_due_quests(now):
            try:
                outcomes.append(
                    self.advance(quest.id, now=now, expected_deadline=quest.chapter_deadline)
                )
            except Exception:
                logger.exception("Failed to advance overdue quest %s", quest.id)
        return outcomes

    def _advance_locked(
        self,
        quest_id: str,
        now: datetime,
        expected_deadline: Optional[datetime],
        lease_owner: str,
    ) -> ProgressionOutcome:
        quest = self.state.get_quest(quest_id)
        if quest is None:
            return ProgressionOutcome(quest_id=quest_id, action=ProgressionAction.NOT_FOUND)
        if quest.is_terminal:
            return ProgressionOutcome(quest_id=quest_id, action=ProgressionAction.TERMINAL, quest=quest)
        if quest.chapter_deadline is None:
            return ProgressionOutcome(
                quest_id=quest_id,
                action=ProgressionAction.NOT_DUE,
                quest=quest,
                reason="held for review" if quest.review else "no deadline armed",
            )
        if expected_deadline is not None and quest.chapter_deadline != expected_deadline:
            return ProgressionOutcome(
                quest_id=quest_id,
                action=ProgressionAction.ALREADY_ADVANCED,
                quest=quest,
                reason="deadline moved since the timer was armed",
            )
        if quest.chapter_deadline > now:
            return ProgressionOutcome(quest_id=quest_id, action=ProgressionAction.NOT_DUE, quest=quest)

        if quest.current_chapter == 0:
            return self._publish(quest, None, None, now, lease_owner)

        chapter = self.state.get_chapter(quest.id, quest.current_chapter)
        if chapter is None:
            return self._hold(
                quest,
                stage="data",
                reason=f"chapter {quest.current_chapter} is missing",
                now=now,
            )
        if chapter.is_terminal or not chapter.options:
            completed = self.machine.complete(quest, reason="final chapter already published", now=now)
            return ProgressionOutcome(
                quest_id=quest_id, action=ProgressionAction.COMPLETED, quest=completed, chapter=chapter
            )

        tally = tally_votes(
            len(chapter.options),
            self.state.list_votes(chapter.id),
            default_option=self.settings.default_option,
            cutoff=quest.chapter_deadline,
            count_policy=self.settings.count_policy,
        )
        logger.info(
            "Quest %s chapter %s tally: option %s wins %s",
            quest.id,
            chapter.chapter_number,
            tally.winning_option,
            tally.vote_counts,
        )

        abandon_reason = self._abandon_reason(quest, tally)
        if abandon_reason:
            archived = self.machine.archive(quest, reason=abandon_reason, now=now)
            return ProgressionOutcome(
                quest_id=quest_id,
                action=ProgressionAction.ARCHIVED,
                quest=archived,
                tally=tally,
                reason=abandon_reason,
            )
        if quest.current_chapter >= self.settings.max_chapters:
            completed = self.machine.complete(quest, reason="chapter limit reached", now=now)
            return ProgressionOutcome(
                quest_id=quest_id, action=ProgressionAction.COMPLETED, quest=completed, tally=tally
            )
        return self._publish(quest, tally.winning_option, tally, now, lease_owner)

    def _abandon_reason(self, quest: Quest, tally: TallyResult) -> Optional[str]:
        quest_votes = self.state.list_quest_votes(quest.id)
        if quest_votes:
            stop = sum(1 for vote in quest_votes if vote.vote in self.settings.stop_votes)
            if (
                stop >= self.settings.abandon_min_votes
                and stop / len(quest_votes) >= self.settings.abandon_ratio
            ):
                return f"{stop} of {len(quest_votes)} participants voted to stop"
        if tally.used_default and self.settings.idle_deadlines > 0:
            idle = int(quest.current_state.get("idle_deadlines", 0) or 0) + 1
            if idle >= self.settings.idle_deadlines:
                return f"no votes for {idle} consecutive deadlines"
        return None

    def _publish(
        self,
        quest: Quest,
        winning_option: Optional[int],
        tally: Optional[TallyResult],
        now: datetime,
        lease_owner: str,
    ) -> ProgressionOutcome:
        try:
            updated, chapter = self.publisher.publish(
                quest, winning_option, tally=tally, now=now, lease_owner=lease_owner
            )
        except PublishFailedError as exc:
            outcome = self._hold(quest, stage=exc.stage, reason=exc.reason, now=now)
            outcome.tally = tally
            return outcome
        action = (
            ProgressionAction.COMPLETED
            if updated.status is QuestStatus.COMPLETED
            else ProgressionAction.PUBLISHED
        )
        return ProgressionOutcome(
            quest_id=quest.id, action=action, quest=updated, chapter=chapter, tally=tally
        )

    def _hold(self, quest: Quest, *, stage: str, reason: str, now: datetime) -> ProgressionOutcome:
        held = self.machine.hold(quest, stage=stage, reason=reason, now=now)
        message = (
            f"⚠️ Quest {quest.short_id} held at chapter {quest.current_chapter + 1} "
            f"({stage}): {reason}"
        )
        self._queue_admin_notification(message)
        router = self._alert_router or get_alert_router()
        router.notify(
            event="quest_held",
            message=message,
            severity="error",
            source="xrpg.service",
            metadata={
                "quest_id": quest.id,
                "short_id": quest.short_id,
                "chapter": quest.current_chapter + 1,
                "stage": stage,
            },
        )
        return ProgressionOutcome(
            quest_id=quest.id, action=ProgressionAction.HELD, quest=held, reason=reason
        )

    # Quest creation & operator actions ---------------------------------
    def start_quest(
        self,
        seed_text: str,
        source_post_id: str,
        *,
        author: Optional[str] = None,
        conversation_id: Optional[str] = None,
        in_reply_to: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Quest:
        """Create a quest from a social post and publish its opening chapter.

        Raises :class:`QuestRejectedError` instead when the conversation already
        runs a quest or the seed is not worth one; any reply to the author is
        posted before raising. The quest is stored already due, so an opening
        chapter that fails here is picked up again by ``advance_due``.
        """

        existing = self.state.find_quest_by_source(source_post_id)
        if existing is not None:
            logger.info("Post %s already has quest %s", source_post_id, existing.id)
            return existing

        now = now or datetime.now(timezone.utc)
        if conversation_id and conversation_id != source_post_id:
            running = self.state.find_quest_by_source(conversation_id)
            if running is not None and running.status is QuestStatus.ACTIVE:
                posted = {chapter.posted_id for chapter in self.state.list_chapters(running.id)}
                if in_reply_to and in_reply_to in posted:
                    raise self._rejection(
                        source_post_id, "reply to a chapter is a vote", quest_id=running.id, now=now
                    )
                raise self._rejection(
                    source_post_id,
                    "quest already running in this conversation",
                    reply=format_quest_already_running(
                        short_id=running.short_id,
                        story_url_base=self.settings.story_url_base,
                    ),
                    quest_id=running.id,
                    now=now,
                )

        evaluation = self.generator.evaluate_seed(seed_text)
        if not evaluation.worthy:
            raise self._rejection(
                source_post_id,
                evaluation.reason or "seed has no quest potential",
                reply=evaluation.rejection_message,
                now=now,
            )

        quest: Optional[Quest] = None
        for _ in range(5):
            current_state: Dict[str, object] = {"author": author} if author else {}
            if evaluation.context:
                current_state["seed_context"] = evaluation.context
            candidate = Quest(
                id=uuid.uuid4().hex,
                short_id=_short_id(),
                initial_post=seed_text,
                source_post_id=source_post_id,
                chapter_deadline=now,
                current_state=current_state,
                created_at=now,
                updated_at=now,
            )
            try:
                quest = self.state.create_quest(candidate)
                break
            except sqlite3.IntegrityError:
                existing = self.state.find_quest_by_source(source_post_id)
                if existing is not None:
                    return existing
        if quest is None:
            raise RuntimeError("Could not allocate a unique short id")

        self.state.append_event(
            Event(
                timestamp=now,
                action="quest_started",
                quest_id=quest.id,
                payload={"source_post_id": source_post_id, "author": author},
            )
        )
        try:
            outcome = self.advance(quest.id, now=now)
            logger.info("Quest %s opened: %s", quest.id, outcome.action.value)
        except Exception:
            logger.exception("Opening chapter for quest %s failed; it stays due", quest.id)
        return self._require_quest(quest.id)

    def _rejection(
        self,
        source_post_id: str,
        reason: str,
        *,
        reply: str = "",
        quest_id: Optional[str] = None,
        now: datetime,
    ) -> QuestRejectedError:
        logger.info("Not starting a quest from post %s: %s", source_post_id, reason)
        self.state.append_event(
            Event(
                timestamp=now,
                action="quest_rejected",
                quest_id=quest_id,
                payload={"source_post_id": source_post_id, "reason": reason},
            )
        )
        if reply:
            try:
                self.poster.post(
                    reply, reply_to=source_post_id, idempotency_key=f"reject:{source_post_id}"
                )
            except ExternalCallError as exc:
                logger.warning("Could not reply to post %s: %s", source_post_id, exc)
        return QuestRejectedError(reason, reply=reply, quest_id=quest_id)

    def resume_quest(
        self,
        quest_id: str,
        *,
        posted_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Quest:
        """Clear an operator-review hold so the quest is picked up immediately.

        A pending chapter whose post outcome was unknown either takes the
        ``posted_id`` the operator found, or loses its claim so it is posted
        again.
        """

        target = self._require_quest(quest_id)
        with self._leased(target.id) as owner:
            if owner is None:
                raise ConcurrencyConflictError(f"Quest {target.short_id} is busy; try again")
            quest = self._require_quest(target.id)
            pending = self.state.get_chapter(quest.id, quest.current_chapter + 1)
            if pending is not None and not pending.is_posted:
                if posted_id:
                    self.state.mark_chapter_posted(pending.id, posted_id)
                elif self.state.release_post_claim(pending.id):
                    logger.info(
                        "Released post claim on quest %s chapter %s", quest.id, pending.chapter_number
                    )
            return self.machine.resume(quest, now=now)

    def archive_quest(
        self, quest_id: str, reason: str = "operator", *, now: Optional[datetime] = None
    ) -> Quest:
        target = self._require_quest(quest_id)
        with self._leased(target.id) as owner:
            if owner is None:
                raise ConcurrencyConflictError(f"Quest {target.short_id} is busy; try again")
            quest = self._require_quest(target.id)
            return self.machine.archive(quest, reason=reason, now=now)

    def _require_quest(self, quest_id: str) -> Quest:
        quest = self.state.get_quest(quest_id) or self.state.get_quest_by_short_id(quest_id)
        if quest is None:
            raise ValueError(f"Unknown quest {quest_id}")
        return quest

    # Voting -----------------------------------------------------------
    def submit_vote(
        self,
        quest_id: str,
        user_id: str,
        reply_text: str,
        *,
        reply_post_id: Optional[str] = None,
        voted_at: Optional[datetime] = None,
    ) -> Optional[ChapterVote]:
        """Interpret a reply and record it against the quest's current chapter."""

        quest = self.state.get_quest(quest_id)
        chapter = self._votable_chapter(quest)
        if chapter is None:
            logger.debug("Ignoring reply from %s: quest %s is not taking votes", user_id, quest_id)
            return None
        interpretation = self.interpreter.interpret(reply_text, chapter.options)
        if interpretation.selected_option is None:
            logger.info("Could not read a choice from %s's reply on quest %s", user_id, quest_id)
            return None
        if interpretation.confidence < self.settings.min_confidence:
            logger.info(
                "Dropping low-confidence vote from %s on quest %s (%.2f)",
                user_id,
                quest_id,
                interpretation.confidence,
            )
            return None
        return self.state.record_chapter_vote(
            chapter.id,
            user_id,
            interpretation.selected_option,
            reply_text=reply_text,
            reply_post_id=reply_post_id,
            interpretation=interpretation.label,
            confidence=interpretation.confidence,
            voted_at=voted_at,
        )

    def cast_vote(
        self,
        quest_id: str,
        user_id: str,
        option_index: int,
        *,
        voted_at: Optional[datetime] = None,
    ) -> Optional[ChapterVote]:
        """Record a direct choice (0-based) without interpretation."""

        quest = self.state.get_quest(quest_id)
        chapter = self._votable_chapter(quest)
        if chapter is None:
            return None
        if not 0 <= option_index < len(chapter.options):
            raise ValueError(
                f"Option {option_index} is not valid for chapter {chapter.chapter_number}"
            )
        return self.state.record_chapter_vote(
            chapter.id,
            user_id,
            option_index,
            interpretation="direct",
            confidence=1.0,
            voted_at=voted_at,
        )

    def _votable_chapter(self, quest: Optional[Quest]) -> Optional[Chapter]:
        if quest is None or quest.is_terminal or quest.current_chapter == 0:
            return None
        chapter = self.state.get_chapter(quest.id, quest.current_chapter)
        if chapter is None or chapter.is_terminal or not chapter.options:
            return None
        return chapter

    def submit_quest_vote(
        self,
        quest_id: str,
        user_id: str,
        vote: str,
        *,
        voted_at: Optional[datetime] = None,
    ) -> Optional[QuestVote]:
        """Record a participant's continue/stop signal; later votes replace earlier ones."""

        normalised = vote.strip().lower()
        if not normalised:
            raise ValueError("Quest vote cannot be empty")
        quest = self.state.get_quest(quest_id)
        if quest is None or quest.is_terminal:
            return None
        return self.state.record_quest_vote(quest_id, user_id, normalised, voted_at=voted_at)

    # Executions -------------------------------------------------------
    def record_execution(
        self,
        quest_id: str,
        user_id: str,
        side: str,
        roast_text: str,
        *,
        executed_at: Optional[datetime] = None,
    ) -> Execution:
        if self.state.get_quest(quest_id) is None:
            raise ValueError(f"Unknown quest {quest_id}")
        return self.state.record_execution(
            quest_id, user_id, side, roast_text, executed_at=executed_at
        )

    def set_execution_tombstone(self, execution_id: int, tombstone_url: str) -> bool:
        return self.state.set_tombstone(execution_id, tombstone_url)

    def list_executions(self, quest_id: str) -> List[Execution]:
        return self.state.list_executions(quest_id)

    # Presentation -----------------------------------------------------
    def quest_timeline(self, quest_id: str) -> Dict[str, object]:
        """Chapters with the decision taken on each, for display."""

        quest = self._require_quest(quest_id)
        decisions = {int(entry["chapter"]): entry for entry in quest.timeline_data if "chapter" in entry}
        chapters = []
        for chapter in self.state.list_chapters(quest.id):
            chapters.append(
                {
                    "chapter_number": chapter.chapter_number,
                    "title": chapter.title,
                    "content": chapter.content,
                    "options": [option.to_dict() for option in chapter.options],
                    "sources": [source.to_dict() for source in chapter.sources],
                    "is_terminal": chapter.is_terminal,
                    "posted": chapter.is_posted,
                    "decision": decisions.get(chapter.chapter_number),
                }
            )
        return {
            "id": quest.id,
            "short_id": quest.short_id,
            "status": quest.status.value,
            "title": quest.current_state.get("canon_title"),
            "current_chapter": quest.current_chapter,
            "chapter_deadline": quest.chapter_deadline.isoformat() if quest.chapter_deadline else None,
            "review": quest.review,
            "chapters": chapters,
        }


__all__ = ["ProgressionService"]
