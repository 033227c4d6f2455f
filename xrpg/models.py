"""Core data models for the quest progression engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


class QuestStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"

    @property
    def is_terminal(self) -> bool:
        return self is not QuestStatus.ACTIVE


class ProgressionAction(str, Enum):
    """What a single progression attempt ended up doing."""

    PUBLISHED = "published"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    HELD = "held"
    NOT_DUE = "not_due"
    TERMINAL = "terminal"
    ALREADY_ADVANCED = "already_advanced"
    SKIPPED = "skipped"
    NOT_FOUND = "not_found"


@dataclass
class QuestOption:
    text: str
    label: str = ""
    description: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"text": self.text, "label": self.label, "description": self.description}

    @staticmethod
    def from_dict(data: Dict[str, object] | str) -> "QuestOption":
        if isinstance(data, str):
            return QuestOption(text=data, label=data)
        text = str(data.get("text") or data.get("label") or "")
        return QuestOption(
            text=text,
            label=str(data.get("label") or text),
            description=str(data.get("description") or ""),
        )


@dataclass
class HistoricalSource:
    title: str
    url: str = ""
    relevant_fact: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "url": self.url, "relevant_fact": self.relevant_fact}

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "HistoricalSource":
        return HistoricalSource(
            title=str(data.get("title", "")),
            url=str(data.get("url", "")),
            relevant_fact=str(data.get("relevant_fact") or data.get("relevantFact") or ""),
        )


@dataclass
class Quest:
    id: str
    short_id: str
    initial_post: str
    source_post_id: str
    status: QuestStatus = QuestStatus.ACTIVE
    current_chapter: int = 0
    chapter_deadline: Optional[datetime] = None
    last_posted_id: Optional[str] = None
    current_state: Dict[str, object] = field(default_factory=dict)
    timeline_data: List[Dict[str, object]] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def awaiting_tally(self) -> bool:
        return self.status is QuestStatus.ACTIVE and self.chapter_deadline is not None

    @property
    def review(self) -> Optional[Dict[str, object]]:
        review = self.current_state.get("review")
        return review if isinstance(review, dict) else None

    def is_due(self, now: datetime) -> bool:
        return self.awaiting_tally and self.chapter_deadline <= now


@dataclass
class Chapter:
    id: int
    quest_id: str
    chapter_number: int
    content: str
    title: str = ""
    options: List[QuestOption] = field(default_factory=list)
    sources: List[HistoricalSource] = field(default_factory=list)
    is_terminal: bool = False
    posted_id: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    post_claim: Optional[str] = None
    post_claimed_at: Optional[datetime] = None

    @property
    def is_posted(self) -> bool:
        return bool(self.posted_id)


@dataclass
class ChapterVote:
    id: int
    chapter_id: int
    user_id: str
    selected_option: int
    reply_text: str = ""
    reply_post_id: Optional[str] = None
    interpretation: str = ""
    confidence: float = 1.0
    voted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class QuestVote:
    quest_id: str
    user_id: str
    vote: str
    voted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Execution:
    id: int
    quest_id: str
    user_id: str
    side: str
    roast_text: str
    tombstone_url: Optional[str] = None
    executed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Lease:
    quest_id: str
    owner: str
    expires_at: datetime


@dataclass
class Event:
    timestamp: datetime
    action: str
    payload: Dict[str, object]
    quest_id: Optional[str] = None


@dataclass
class GeneratedChapter:
    """Content returned by the chapter generator before it is persisted."""

    content: str
    title: str = ""
    options: List[QuestOption] = field(default_factory=list)
    sources: List[HistoricalSource] = field(default_factory=list)
    is_terminal: bool = False


@dataclass
class SeedEvaluation:
    """Whether a post has enough substance to grow a quest from."""

    worthy: bool
    reason: str = ""
    rejection_message: str = ""
    context: Dict[str, object] = field(default_factory=dict)


@dataclass
class VoteInterpretation:
    selected_option: Optional[int]
    confidence: float = 0.0
    label: str = ""


@dataclass
class TallyResult:
    winning_option: int
    vote_counts: List[int]
    participation: int
    discarded: int = 0
    used_default: bool = False
    tied_options: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "winning_option": self.winning_option,
            "vote_counts": list(self.vote_counts),
            "participation": self.participation,
            "discarded": self.discarded,
            "used_default": self.used_default,
            "tied_options": list(self.tied_options),
        }


@dataclass
class ProgressionOutcome:
    quest_id: str
    action: ProgressionAction
    quest: Optional[Quest] = None
    chapter: Optional[Chapter] = None
    tally: Optional[TallyResult] = None
    reason: Optional[str] = None


__all__ = [
    "QuestStatus",
    "ProgressionAction",
    "QuestOption",
    "HistoricalSource",
    "Quest",
    "Chapter",
    "ChapterVote",
    "QuestVote",
    "Execution",
    "Lease",
    "Event",
    "GeneratedChapter",
    "SeedEvaluation",
    "VoteInterpretation",
    "TallyResult",
    "ProgressionOutcome",
]
