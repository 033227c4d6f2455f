"""Chapter publication with at-most-once posting."""
from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple, Type, TypeVar

from .config import Settings
from .errors import (
    ExternalCallError,
    ExternalTimeoutError,
    GenerationFailedError,
    PermanentExternalError,
    PostingFailedError,
    PublishFailedError,
    TransientExternalError,
)
from .generator import ChapterGenerator
from .lifecycle import QuestStateMachine
from .models import Chapter, GeneratedChapter, Quest, TallyResult
from .poster import Poster
from .press import format_chapter_post, format_winner_notification
from .state import QuestState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChapterPublisher:
    """Generates, stores and posts the next chapter of a quest.

    The draft is written before anything is posted and the remote id is
    stored before the quest pointer moves, so a crash at any point resumes
    from the stored chapter instead of generating or posting it again.
    """

    def __init__(
        self,
        state: QuestState,
        machine: QuestStateMachine,
        generator: ChapterGenerator,
        poster: Poster,
        settings: Settings,
        *,
        executor: Optional[ThreadPoolExecutor] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.state = state
        self.machine = machine
        self.generator = generator
        self.poster = poster
        self.settings = settings
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="xrpg-external"
        )
        self._sleep = sleep

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def publish(
        self,
        quest: Quest,
        winning_option: Optional[int] = None,
        *,
        tally: Optional[TallyResult] = None,
        now: Optional[datetime] = None,
        lease_owner: Optional[str] = None,
    ) -> Tuple[Quest, Chapter]:
        """Bring the quest onto its next chapter, posting it at most once.

        ``lease_owner`` is the token of the quest lease held by the caller; the
        lease is re-checked when the post is claimed.
        """

        now = now or datetime.now(timezone.utc)
        target = quest.current_chapter + 1

        chapter = self.state.get_chapter(quest.id, target)
        if chapter is None:
            generated = self._generate(quest, target, winning_option)
            chapter = self.state.create_chapter(quest.id, target, generated, created_at=now)
        else:
            logger.info("Reusing stored chapter %s for quest %s", target, quest.id)

        if not chapter.is_posted:
            chapter = self._claim_post(quest, chapter, lease_owner, now)

        if not chapter.is_posted:
            text = format_chapter_post(
                chapter,
                short_id=quest.short_id,
                story_url_base=self.settings.story_url_base,
                voting_window_seconds=self.settings.voting_window_seconds,
                canon_title=str(quest.current_state.get("canon_title") or "") or None,
                max_length=self.settings.post_max_length,
            )
            claimed = chapter
            try:
                posted_id = self._with_retries(
                    lambda: self.poster.post(
                        text,
                        reply_to=quest.last_posted_id,
                        idempotency_key=f"{quest.id}:{target}",
                    ),
                    quest_id=quest.id,
                    chapter_number=target,
                    attempts=self.settings.posting_attempts,
                    failure=PostingFailedError,
                    on_timeout=lambda future: self._record_late_post(claimed, future),
                )
            except PostingFailedError as exc:
                # A timed-out post may still land; its claim blocks reposting until reviewed.
                if not isinstance(exc.cause, ExternalTimeoutError):
                    self.state.release_post_claim(claimed.id, claimed.post_claim)
                raise
            chapter = self.state.mark_chapter_posted(chapter.id, posted_id)
        else:
            logger.info(
                "Chapter %s of quest %s already posted as %s",
                target,
                quest.id,
                chapter.posted_id,
            )

        decided = (
            self.state.get_chapter(quest.id, quest.current_chapter)
            if quest.current_chapter
            else None
        )
        updated = self.machine.record_publish(
            quest, chapter, tally=tally, decided=decided, now=now
        )
        if tally is not None and decided is not None and self.settings.notify_winning_voters:
            self._notify_winners(quest, decided, tally, chapter)
        return updated, chapter

    def _generate(
        self, quest: Quest, target: int, winning_option: Optional[int]
    ) -> GeneratedChapter:
        is_final = target >= self.settings.max_chapters
        if target == 1:
            call: Callable[[], GeneratedChapter] = lambda: self.generator.generate_opening(
                quest.initial_post
            )
        else:
            if winning_option is None:
                raise ValueError(f"Chapter {target} of quest {quest.id} needs a winning option")
            history = [
                chapter
                for chapter in self.state.list_chapters(quest.id)
                if chapter.chapter_number <= quest.current_chapter
            ]
            selections: Dict[int, int] = {
                int(entry["chapter"]): int(entry["winning_option"])
                for entry in quest.timeline_data
                if "chapter" in entry and "winning_option" in entry
            }
            call = lambda: self.generator.generate_chapter(
                history,
                winning_option,
                target,
                is_final=is_final,
                selections=selections,
            )

        generated = self._with_retries(
            call,
            quest_id=quest.id,
            chapter_number=target,
            attempts=self.settings.generation_attempts,
            failure=GenerationFailedError,
        )
        if is_final:
            generated.is_terminal = True
            generated.options = []
        elif not generated.is_terminal and not generated.options:
            raise GenerationFailedError(quest.id, target, "generator returned no options")
        return generated

    def _claim_post(
        self, quest: Quest, chapter: Chapter, lease_owner: Optional[str], now: datetime
    ) -> Chapter:
        owner = lease_owner or f"publisher:{uuid.uuid4().hex[:8]}"
        claimed = self.state.claim_chapter_post(
            chapter.id,
            owner,
            lease_quest_id=quest.id if lease_owner else None,
            now=now,
        )
        if claimed.is_posted or claimed.post_claim == owner:
            return claimed
        raise PostingFailedError(
            quest.id,
            chapter.chapter_number,
            f"post attempt by {claimed.post_claim} has an unknown outcome",
        )

    def _record_late_post(self, chapter: Chapter, future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning(
                "Timed-out post for quest %s chapter %s failed: %s",
                chapter.quest_id,
                chapter.chapter_number,
                error,
            )
            self.state.release_post_claim(chapter.id, chapter.post_claim)
            return
        posted_id = future.result()
        logger.warning(
            "Timed-out post for quest %s chapter %s landed late as %s",
            chapter.quest_id,
            chapter.chapter_number,
            posted_id,
        )
        self.state.mark_chapter_posted(chapter.id, posted_id)

    def _with_retries(
        self,
        call: Callable[[], T],
        *,
        quest_id: str,
        chapter_number: int,
        attempts: int,
        failure: Type[PublishFailedError],
        on_timeout: Optional[Callable[[Future], None]] = None,
    ) -> T:
        """Run ``call`` with the configured retry schedule.

        When ``on_timeout`` is given a timeout is final: the call is left
        running, ``on_timeout`` receives its future, and no further attempt
        is made.
        """

        schedule = self.settings.retry_schedule
        last_error: Optional[ExternalCallError] = None
        for attempt in range(attempts):
            try:
                return self._run_with_timeout(call, on_timeout)
            except PermanentExternalError as exc:
                raise failure(quest_id, chapter_number, str(exc), cause=exc) from exc
            except TransientExternalError as exc:
                if on_timeout is not None and isinstance(exc, ExternalTimeoutError):
                    raise failure(
                        quest_id, chapter_number, f"outcome unknown: {exc}", cause=exc
                    ) from exc
                last_error = exc
                logger.warning(
                    "%s attempt %s/%s for quest %s chapter %s failed: %s",
                    failure.stage,
                    attempt + 1,
                    attempts,
                    quest_id,
                    chapter_number,
                    exc,
                )
                if attempt < attempts - 1:
                    self._sleep(schedule[min(attempt, len(schedule) - 1)])
        raise failure(
            quest_id,
            chapter_number,
            f"gave up after {attempts} attempts: {last_error}",
            cause=last_error,
        )

    def _run_with_timeout(
        self, call: Callable[[], T], on_timeout: Optional[Callable[[Future], None]] = None
    ) -> T:
        future = self._executor.submit(call)
        try:
            return future.result(timeout=self.settings.external_timeout_seconds)
        except FutureTimeout as exc:
            if not future.cancel() and on_timeout is not None:
                future.add_done_callback(on_timeout)
            raise ExternalTimeoutError(
                f"external call exceeded {self.settings.external_timeout_seconds}s"
            ) from exc

    def _notify_winners(
        self, quest: Quest, decided: Chapter, tally: TallyResult, published: Chapter
    ) -> None:
        option = decided.options[tally.winning_option]
        text = format_winner_notification(
            decided,
            option,
            next_chapter=published.chapter_number,
            short_id=quest.short_id,
            story_url_base=self.settings.story_url_base,
        )
        cutoff = quest.chapter_deadline
        for vote in self.state.list_votes(decided.id):
            if vote.selected_option != tally.winning_option or not vote.reply_post_id:
                continue
            if cutoff is not None and vote.voted_at > cutoff:
                continue
            if self.state.has_vote_notification(vote.id):
                continue
            try:
                posted_id = self.poster.post(
                    text,
                    reply_to=vote.reply_post_id,
                    idempotency_key=f"vote:{vote.id}",
                )
            except ExternalCallError as exc:
                logger.warning("Could not notify voter %s on quest %s: %s", vote.user_id, quest.id, exc)
                continue
            self.state.record_vote_notification(vote.id, posted_id)


__all__ = ["ChapterPublisher"]
