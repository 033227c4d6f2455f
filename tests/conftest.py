"""Shared fakes and builders for the quest engine tests."""

from __future__ import annotations

import dataclasses
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from xrpg.alerting import AlertRouter
from xrpg.config import Settings
from xrpg.generator import LLMConfig, ReplyInterpreter
from xrpg.models import GeneratedChapter, QuestOption, SeedEvaluation
from xrpg.poster import MockPoster
from xrpg.service import ProgressionService

BASE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return BASE + timedelta(seconds=seconds)


def make_settings(**overrides: Any) -> Settings:
    settings = Settings.from_dict({})
    defaults = {
        "lease_wait_seconds": 0.0,
        "lease_poll_seconds": 0.0,
        "retry_schedule": (0.0,),
        "external_timeout_seconds": 5.0,
    }
    defaults.update(overrides)
    return dataclasses.replace(settings, **defaults)


class FakeGenerator:
    """Deterministic generator that records calls and can fail on demand."""

    def __init__(self, failures: Optional[List[Exception]] = None, *, worthy: bool = True) -> None:
        self.failures = list(failures or [])
        self.calls: List[Dict[str, Any]] = []
        self.worthy = worthy
        self.evaluated: List[str] = []

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    def evaluate_seed(self, seed_text: str) -> SeedEvaluation:
        self.evaluated.append(seed_text)
        if self.worthy:
            return SeedEvaluation(worthy=True, reason="dramatic", context={"topic": "floods"})
        return SeedEvaluation(
            worthy=False, reason="too bland", rejection_message="Nothing to play with here!"
        )

    def generate_opening(self, seed_text: str) -> GeneratedChapter:
        self.calls.append({"kind": "opening", "seed": seed_text})
        self._maybe_fail()
        return GeneratedChapter(
            title="The Flooded Dam",
            content=f"Water rises over the valley. {seed_text}",
            options=[
                QuestOption(text="Open the gates", label="Left", description="Spill downstream"),
                QuestOption(text="Hold the line", label="Right", description="Trust the walls"),
            ],
        )

    def generate_chapter(self, history, winning_option, chapter_number, *, is_final, selections=None):
        self.calls.append(
            {
                "kind": "chapter",
                "chapter": chapter_number,
                "winning_option": winning_option,
                "is_final": is_final,
                "history": [chapter.chapter_number for chapter in history],
            }
        )
        self._maybe_fail()
        options = [] if is_final else [
            QuestOption(text=f"Go left {chapter_number}", label="Left"),
            QuestOption(text=f"Go right {chapter_number}", label="Right"),
        ]
        return GeneratedChapter(
            title=f"Chapter {chapter_number}",
            content=f"Chapter {chapter_number} after option {winning_option + 1}.",
            options=options,
            is_terminal=is_final,
        )


class RecordingAlertRouter(AlertRouter):
    def __init__(self) -> None:
        super().__init__(webhook_urls=[])
        self.alerts: List[Dict[str, Any]] = []

    def notify(self, **kwargs: Any) -> bool:
        self.alerts.append(kwargs)
        return True


def build_service(
    tmp_path,
    *,
    settings: Optional[Settings] = None,
    generator: Optional[FakeGenerator] = None,
    poster: Optional[MockPoster] = None,
    worker_id: str = "worker-a",
    db_name: str = "quests.sqlite",
) -> ProgressionService:
    """Build a service over a temporary database with in-memory collaborators."""

    return ProgressionService(
        tmp_path / db_name,
        settings or make_settings(),
        generator=generator or FakeGenerator(),
        interpreter=ReplyInterpreter(LLMConfig(mock_mode=True)),
        poster=poster or MockPoster(),
        alert_router=RecordingAlertRouter(),
        worker_id=worker_id,
        sleep=lambda _: None,
    )


@pytest.fixture
def service(tmp_path):
    svc = build_service(tmp_path)
    yield svc
    svc.close()
