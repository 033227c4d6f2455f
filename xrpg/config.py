"""Configuration loading utilities for the quest engine."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml


DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"

_COUNT_POLICIES = ("all", "latest", "first")


def call_budget_seconds(attempts: int, timeout: float, schedule: Tuple[float, ...]) -> float:
    """Longest a retried external call can take: every attempt times out."""

    backoff = sum(schedule[min(attempt, len(schedule) - 1)] for attempt in range(attempts - 1))
    return attempts * timeout + backoff


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    voting_window_seconds: int
    default_option: int
    count_policy: str
    min_confidence: float
    max_chapters: int
    story_url_base: str
    stop_votes: Tuple[str, ...]
    abandon_min_votes: int
    abandon_ratio: float
    idle_deadlines: int
    lease_ttl_seconds: float
    lease_wait_seconds: float
    lease_poll_seconds: float
    external_timeout_seconds: float
    generation_attempts: int
    posting_attempts: int
    retry_schedule: Tuple[float, ...]
    sweep_seconds: int
    lease_retry_seconds: int
    post_max_length: int
    notify_winning_voters: bool

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        voting = data.get("voting", {}) or {}
        quests = data.get("quests", {}) or {}
        abandonment = data.get("abandonment", {}) or {}
        leases = data.get("leases", {}) or {}
        external = data.get("external", {}) or {}
        scheduler = data.get("scheduler", {}) or {}
        posting = data.get("posting", {}) or {}

        count_policy = str(voting.get("count_policy", "all")).lower()
        if count_policy not in _COUNT_POLICIES:
            raise ValueError(
                f"Unknown voting.count_policy {count_policy!r}; expected one of {_COUNT_POLICIES}"
            )
        max_chapters = int(quests.get("max_chapters", 5))
        if max_chapters < 1:
            raise ValueError("quests.max_chapters must be at least 1")
        schedule = tuple(float(item) for item in external.get("retry_schedule", [1, 3, 10])) or (1.0,)
        timeout = float(external.get("timeout_seconds", 30))
        generation_attempts = max(1, int(external.get("generation_attempts", 3)))
        posting_attempts = max(1, int(external.get("posting_attempts", 3)))
        lease_ttl = float(leases.get("ttl_seconds", 120))
        budget = max(
            call_budget_seconds(generation_attempts, timeout, schedule),
            call_budget_seconds(posting_attempts, timeout, schedule),
        )
        if lease_ttl < budget:
            raise ValueError(
                f"leases.ttl_seconds ({lease_ttl:g}) must cover the worst-case external call "
                f"budget of {budget:g}s"
            )
        return Settings(
            voting_window_seconds=int(voting.get("window_seconds", 120)),
            default_option=int(voting.get("default_option", 0)),
            count_policy=count_policy,
            min_confidence=float(voting.get("min_confidence", 0.0)),
            max_chapters=max_chapters,
            story_url_base=str(quests.get("story_url_base", "https://xrpg.gg/s")).rstrip("/"),
            stop_votes=tuple(
                str(item).strip().lower() for item in abandonment.get("stop_votes", ["stop"])
            ),
            abandon_min_votes=int(abandonment.get("min_votes", 3)),
            abandon_ratio=float(abandonment.get("ratio", 0.5)),
            idle_deadlines=int(abandonment.get("idle_deadlines", 3)),
            lease_ttl_seconds=lease_ttl,
            lease_wait_seconds=float(leases.get("wait_seconds", 2)),
            lease_poll_seconds=float(leases.get("poll_seconds", 0.25)),
            external_timeout_seconds=timeout,
            generation_attempts=generation_attempts,
            posting_attempts=posting_attempts,
            retry_schedule=schedule,
            sweep_seconds=int(scheduler.get("sweep_seconds", 60)),
            lease_retry_seconds=int(scheduler.get("lease_retry_seconds", 15)),
            post_max_length=int(posting.get("max_length", 4000)),
            notify_winning_voters=bool(posting.get("notify_winning_voters", False)),
        )


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        env_path = os.getenv("XRPG_SETTINGS_PATH")
        self._path = path or (Path(env_path) if env_path else DEFAULT_SETTINGS_PATH)
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        self._cache = Settings.from_dict(data)
        return self._cache


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    return SettingsLoader().load()


__all__ = ["Settings", "SettingsLoader", "get_settings", "DEFAULT_SETTINGS_PATH", "call_budget_seconds"]
