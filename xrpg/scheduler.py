"""Deadline timers that drive quest progression."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from .models import ProgressionAction, Quest
from .service import ProgressionService

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "progression-sweep"


def job_id_for(quest_id: str) -> str:
    return f"progress:{quest_id}"


class ProgressionScheduler:
    """Keeps one timer per pending quest, derived from its persisted deadline.

    Timers are never the source of truth: ``start`` rebuilds them from the
    database and a periodic sweep re-arms any quest whose timer went missing.
    """

    def __init__(self, service: ProgressionService, scheduler=None) -> None:
        self.service = service
        self.settings = service.settings
        self._scheduler = scheduler or BackgroundScheduler(timezone=timezone.utc)

    def start(self) -> None:
        armed = self.rearm_all()
        logger.info("Armed %s quest timers", armed)
        self._scheduler.add_job(
            self._sweep,
            "interval",
            seconds=self.settings.sweep_seconds,
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()

    def shutdown(self) -> None:
        self._scheduler.shutdown(wait=False)
        self.service.close()

    def rearm_all(self) -> int:
        count = 0
        for quest in self.service.state.list_pending_quests():
            if self.arm(quest):
                count += 1
        return count

    def arm(self, quest: Quest, *, now: Optional[datetime] = None) -> Optional[str]:
        """Schedule the quest's next progression at its deadline, or drop its timer."""

        job_id = job_id_for(quest.id)
        if not quest.awaiting_tally:
            self._remove(job_id)
            return None
        now = now or datetime.now(timezone.utc)
        run_date = max(quest.chapter_deadline, now)
        self._scheduler.add_job(
            self._fire,
            "date",
            run_date=run_date,
            args=[quest.id, quest.chapter_deadline],
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
        )
        logger.debug("Quest %s armed for %s", quest.id, run_date.isoformat())
        return job_id

    def _remove(self, job_id: str) -> None:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    def _fire(self, quest_id: str, expected_deadline: Optional[datetime]) -> None:
        try:
            outcome = self.service.advance(quest_id, expected_deadline=expected_deadline)
        except Exception:
            logger.exception("Progression failed for quest %s", quest_id)
            return
        logger.info("Quest %s progression: %s", quest_id, outcome.action.value)
        if outcome.action is ProgressionAction.SKIPPED:
            self._retry_later(quest_id, expected_deadline)
        elif outcome.quest is not None:
            self.arm(outcome.quest)

    def _retry_later(self, quest_id: str, expected_deadline: Optional[datetime]) -> None:
        run_date = datetime.now(timezone.utc) + timedelta(seconds=self.settings.lease_retry_seconds)
        self._scheduler.add_job(
            self._fire,
            "date",
            run_date=run_date,
            args=[quest_id, expected_deadline],
            id=job_id_for(quest_id),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
        )

    def _sweep(self) -> None:
        for quest in self.service.state.list_pending_quests():
            if self._scheduler.get_job(job_id_for(quest.id)) is None:
                logger.warning("Quest %s had no timer; re-arming", quest.id)
                self.arm(quest)


__all__ = ["ProgressionScheduler", "BackgroundScheduler", "job_id_for", "SWEEP_JOB_ID"]
