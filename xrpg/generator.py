"""Chapter generation and reply interpretation with an OpenAI-compatible API."""
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import openai

from .errors import PermanentExternalError, TransientExternalError
from .models import (
    Chapter,
    GeneratedChapter,
    HistoricalSource,
    QuestOption,
    SeedEvaluation,
    VoteInterpretation,
)

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are a JSON-only assistant. Create historically grounded, balanced narratives "
    "with realistic trade-offs. Always respond with valid JSON."
)
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_MENTION_RE = re.compile(r"@\w+")
_NUMBER_RE = re.compile(r"^(?:option|choice|vote)?\s*#?\s*(\d+)\b", re.IGNORECASE)
_MIN_MOCK_SEED_WORDS = 3
_DEFAULT_REJECTION = (
    "Not enough here to build a quest from. Tag me on a bold take or a historical what-if!"
)


@dataclass
class LLMConfig:
    """Configuration for the LLM backend."""

    api_base: str = "http://localhost:5000/v1"
    api_key: str = "not-needed-for-local"
    model_name: str = "local-model"
    temperature: float = 0.8
    max_tokens: int = 800
    timeout: int = 30
    mock_mode: bool = False

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load configuration from environment variables."""
        return cls(
            api_base=os.getenv("LLM_API_BASE", "http://localhost:5000/v1"),
            api_key=os.getenv("LLM_API_KEY", "not-needed-for-local"),
            model_name=os.getenv("LLM_MODEL_NAME", "local-model"),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.8")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "800")),
            timeout=int(os.getenv("LLM_TIMEOUT", "30")),
            mock_mode=os.getenv("LLM_MODE", "").lower() == "mock",
        )


class _LLMBackend:
    def __init__(self, config: Optional[LLMConfig] = None, client: Any = None) -> None:
        self.config = config or LLMConfig.from_env()
        self.client = client
        if self.client is None and not self.config.mock_mode:
            self.client = openai.OpenAI(
                api_key=self.config.api_key,
                base_url=self.config.api_base,
                timeout=self.config.timeout,
            )
            logger.info("LLM client initialised with base URL: %s", self.config.api_base)

    @property
    def mock_mode(self) -> bool:
        return self.config.mock_mode and self.client is None

    def _complete_json(self, prompt: str, *, temperature: Optional[float] = None) -> Dict[str, Any]:
        """Run one chat completion and decode its JSON body.

        Failures are mapped onto the transient/permanent split so callers can
        decide whether another attempt is worthwhile.
        """

        messages = [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        try:
            response = self.client.chat.completions.create(
                model=self.config.model_name,
                messages=messages,
                temperature=self.config.temperature if temperature is None else temperature,
                max_tokens=self.config.max_tokens,
            )
        except (
            openai.APITimeoutError,
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.InternalServerError,
        ) as exc:
            raise TransientExternalError(f"LLM call failed: {exc}") from exc
        except openai.APIStatusError as exc:
            raise PermanentExternalError(f"LLM rejected request ({exc.status_code}): {exc}") from exc

        content = (response.choices[0].message.content or "").strip()
        content = _FENCE_RE.sub("", content).strip()
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise TransientExternalError(f"LLM returned invalid JSON: {content[:80]!r}") from exc
        if not isinstance(payload, dict):
            raise TransientExternalError("LLM returned JSON that is not an object")
        return payload


def _parse_options(raw: Any) -> List[QuestOption]:
    if not isinstance(raw, list):
        return []
    options = []
    for item in raw:
        option = QuestOption.from_dict(item)
        if option.text:
            options.append(option)
    return options


def _parse_sources(payload: Dict[str, Any]) -> List[HistoricalSource]:
    raw = payload.get("sources")
    if isinstance(raw, list):
        return [HistoricalSource.from_dict(item) for item in raw if isinstance(item, dict)]
    fact = payload.get("historicalOutcome") or payload.get("connectionToReality")
    if fact:
        return [HistoricalSource(title="Historical parallel", relevant_fact=str(fact))]
    return []


def _history_text(history: Sequence[Chapter], selections: Dict[int, int]) -> str:
    blocks = []
    for chapter in history:
        block = f"Chapter {chapter.chapter_number}:\n{chapter.content}"
        selected = selections.get(chapter.chapter_number)
        if selected is not None:
            block += f"\nSelected: Option {selected + 1}"
        blocks.append(block)
    return "\n\n".join(blocks)


class ChapterGenerator:
    """Produces quest chapters from the story so far."""

    def __init__(self, config: Optional[LLMConfig] = None, client: Any = None) -> None:
        self._backend = _LLMBackend(config, client)

    def evaluate_seed(self, seed_text: str) -> SeedEvaluation:
        """Judge whether a post has enough substance for a branching quest."""

        if self._backend.mock_mode:
            if len(seed_text.split()) < _MIN_MOCK_SEED_WORDS:
                return SeedEvaluation(
                    worthy=False,
                    reason="seed too short",
                    rejection_message=_DEFAULT_REJECTION,
                )
            return SeedEvaluation(worthy=True, reason="mock approval")

        prompt = f"""Decide whether this post has enough substance for a dramatic what-if
historical or political branching story:
"{seed_text}"

Game-worthy posts take a strong or divisive stance, touch real events, ideologies or
movements, and can spawn alternative scenarios with real historical parallels.
Greetings and trivial chatter are not game-worthy.

Respond in JSON:
{{
  "hasGamePotential": true,
  "reason": "brief explanation",
  "rejectionMessage": "friendly reply, only when hasGamePotential is false",
  "initialContext": {{"topic": "main topic", "historicalParallels": ["event"], "conflictPoints": ["point"]}}
}}"""
        payload = self._backend._complete_json(prompt, temperature=0.0)
        verdict = payload.get("hasGamePotential")
        if not isinstance(verdict, bool):
            raise TransientExternalError("Seed evaluation is missing hasGamePotential")
        context = payload.get("initialContext")
        return SeedEvaluation(
            worthy=verdict,
            reason=str(payload.get("reason") or ""),
            rejection_message=""
            if verdict
            else str(payload.get("rejectionMessage") or _DEFAULT_REJECTION),
            context=context if verdict and isinstance(context, dict) else {},
        )

    def generate_opening(self, seed_text: str) -> GeneratedChapter:
        if self._backend.mock_mode:
            return GeneratedChapter(
                title="Mock Quest",
                content=f"[MOCK] Chapter 1: {seed_text.strip()[:160]}",
                options=[
                    QuestOption(text="Push forward", label="1"),
                    QuestOption(text="Hold back", label="2"),
                ],
            )

        today = datetime.now(timezone.utc).date().isoformat()
        prompt = f"""Today's date is {today}. All events must be set today or in the future.

Turn this post into the opening chapter of a two-choice adventure:
"{seed_text}"

Write 50-70 words in casual second person, ending on a tough decision.
Offer TWO options that describe only the action, never the consequences.

Respond in JSON:
{{
  "canonTitle": "Short 2-4 word title",
  "scenario": "Opening chapter text, plain text",
  "options": [{{"text": "Action", "label": "1", "description": "One short line"}},
              {{"text": "Action", "label": "2", "description": "One short line"}}],
  "historicalOutcome": "Real parallel"
}}"""
        payload = self._backend._complete_json(prompt)
        content = str(payload.get("scenario") or payload.get("content") or "").strip()
        options = _parse_options(payload.get("options"))
        if not content or len(options) < 2:
            raise TransientExternalError("Opening chapter is missing content or options")
        return GeneratedChapter(
            title=str(payload.get("canonTitle") or payload.get("chapterTitle") or "").strip(),
            content=content,
            options=options,
            sources=_parse_sources(payload),
        )

    def generate_chapter(
        self,
        history: Sequence[Chapter],
        winning_option: int,
        chapter_number: int,
        *,
        is_final: bool,
        selections: Optional[Dict[int, int]] = None,
    ) -> GeneratedChapter:
        """Continue the story after ``winning_option`` (0-based) carried the last chapter."""

        if self._backend.mock_mode:
            return GeneratedChapter(
                title=f"Mock Chapter {chapter_number}",
                content=f"[MOCK] Chapter {chapter_number} follows option {winning_option + 1}.",
                options=[]
                if is_final
                else [
                    QuestOption(text="Press on", label="1"),
                    QuestOption(text="Change course", label="2"),
                ],
                is_terminal=is_final,
            )

        selections = dict(selections or {})
        if history:
            selections.setdefault(history[-1].chapter_number, winning_option)
        if is_final:
            shape = (
                "FINAL CHAPTER: show the realistic outcome in 60-80 words. "
                "No options, the story ends here."
            )
            options_schema = "null"
        else:
            shape = (
                "NEXT CHAPTER: show realistic fallout in 50-70 words and build to the next "
                "tough choice with TWO new options that reveal no consequences."
            )
            options_schema = '[{"text": "Action", "label": "1"}, {"text": "Action", "label": "2"}]'
        prompt = f"""Continue with chapter {chapter_number}{" (FINAL)" if is_final else ""}.

STORY SO FAR:
{_history_text(history, selections)}

THEIR CHOICE: Option {winning_option + 1}

{shape}

Respond in JSON:
{{
  "chapterNumber": {chapter_number},
  "chapterTitle": "Short 2-4 word title",
  "content": "Consequences only, plain text",
  "options": {options_schema},
  "historicalOutcome": "Real parallel"
}}"""
        payload = self._backend._complete_json(prompt)
        content = str(payload.get("content") or "").strip()
        if not content:
            raise TransientExternalError(f"Chapter {chapter_number} came back empty")
        options = [] if is_final else _parse_options(payload.get("options"))
        if not is_final and len(options) < 2:
            raise TransientExternalError(f"Chapter {chapter_number} is missing options")
        return GeneratedChapter(
            title=str(payload.get("chapterTitle") or "").strip(),
            content=content,
            options=options,
            sources=_parse_sources(payload),
            is_terminal=is_final,
        )


class ReplyInterpreter:
    """Turns free-text replies into an option choice."""

    def __init__(self, config: Optional[LLMConfig] = None, client: Any = None) -> None:
        self._backend = _LLMBackend(config, client)

    def interpret(self, reply_text: str, options: Sequence[QuestOption]) -> VoteInterpretation:
        local = self._interpret_locally(reply_text, options)
        if local is not None:
            return local
        if self._backend.mock_mode or not options:
            return VoteInterpretation(selected_option=None, confidence=0.0)

        listing = "\n".join(
            f"{index + 1}. {option.text}" for index, option in enumerate(options)
        )
        prompt = f"""A reader replied to a chapter offering these options:
{listing}

Reply: "{reply_text}"

Which option did they choose? Respond in JSON:
{{"selectedOption": <option number, or 0 if unclear>, "confidence": <0.0-1.0>, "interpretation": "why"}}"""
        payload = self._backend._complete_json(prompt, temperature=0.0)
        try:
            selected = int(payload.get("selectedOption") or 0)
            confidence = float(payload.get("confidence") or 0.0)
        except (TypeError, ValueError):
            logger.warning("Unusable vote interpretation payload: %s", payload)
            return VoteInterpretation(selected_option=None, confidence=0.0)
        if not 1 <= selected <= len(options):
            return VoteInterpretation(
                selected_option=None,
                confidence=confidence,
                label=str(payload.get("interpretation") or ""),
            )
        return VoteInterpretation(
            selected_option=selected - 1,
            confidence=confidence,
            label=str(payload.get("interpretation") or options[selected - 1].label),
        )

    @staticmethod
    def _interpret_locally(
        reply_text: str, options: Sequence[QuestOption]
    ) -> Optional[VoteInterpretation]:
        text = _MENTION_RE.sub("", reply_text or "").strip()
        if not text:
            return VoteInterpretation(selected_option=None, confidence=0.0)
        match = _NUMBER_RE.match(text)
        if match:
            number = int(match.group(1))
            if 1 <= number <= len(options):
                return VoteInterpretation(
                    selected_option=number - 1,
                    confidence=1.0,
                    label=options[number - 1].label or str(number),
                )
            return VoteInterpretation(selected_option=None, confidence=1.0, label=match.group(1))
        lowered = text.lower().rstrip(".!")
        for index, option in enumerate(options):
            if lowered in {option.text.lower(), option.label.lower()}:
                return VoteInterpretation(
                    selected_option=index,
                    confidence=0.9,
                    label=option.label or option.text,
                )
        return None


__all__ = ["LLMConfig", "ChapterGenerator", "ReplyInterpreter"]
