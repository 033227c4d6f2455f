"""Text templates for chapter posts and voter notifications."""

from __future__ import annotations

from typing import Optional

from .models import Chapter, QuestOption

_ELLIPSIS = "..."


def _clamp_text(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[: max(limit - len(_ELLIPSIS), 0)].rstrip() + _ELLIPSIS


def _window_phrase(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds} sec"
    minutes = max(round(seconds / 60), 1)
    return f"{minutes} min"


def _option_line(index: int, option: QuestOption) -> str:
    line = f"{index + 1}. {option.text}"
    if option.description:
        line += f" - {option.description}"
    return line


def story_link(story_url_base: str, short_id: str) -> str:
    return f"{story_url_base.rstrip('/')}/{short_id}"


def format_chapter_post(
    chapter: Chapter,
    *,
    short_id: str,
    story_url_base: str,
    voting_window_seconds: int,
    canon_title: Optional[str] = None,
    max_length: int = 4000,
) -> str:
    """Render a chapter as the text posted to the social channel.

    The story link and voting instructions always survive clamping; only the
    narrative body is shortened when the post would exceed ``max_length``.
    """

    title = canon_title or chapter.title
    header = f"📜 {title.upper()}\n\n" if title and chapter.chapter_number == 1 else ""
    link = story_link(story_url_base, short_id)

    if chapter.is_terminal or not chapter.options:
        footer = f"\n\n---\n\nThe timeline has spoken.\n📖 Full story: {link}"
    else:
        choices = "\n\n".join(
            _option_line(index, option) for index, option in enumerate(chapter.options)
        )
        numbers = " or ".join(str(index + 1) for index in range(len(chapter.options)))
        footer = (
            f"\n\n{choices}\n\nReply with {numbers} to vote.\n\n"
            f"Voting ends in {_window_phrase(voting_window_seconds)}.\n📖 {link}"
        )

    budget = max_length - len(header) - len(footer)
    if max_length <= 0:
        body = chapter.content
    elif budget <= len(_ELLIPSIS):
        body = ""
    else:
        body = _clamp_text(chapter.content, budget)
    return f"{header}{body}{footer}"


def format_winner_notification(
    chapter: Chapter,
    option: QuestOption,
    *,
    next_chapter: int,
    short_id: str,
    story_url_base: str,
) -> str:
    """Reply sent to a voter whose choice carried the chapter."""

    return (
        f"Your choice \"{option.label or option.text}\" won chapter {chapter.chapter_number}! "
        f"Chapter {next_chapter} is live: {story_link(story_url_base, short_id)}"
    )


def format_quest_already_running(*, short_id: str, story_url_base: str) -> str:
    return (
        "A quest is already running in this thread! "
        f"Jump in and vote on the latest chapter: {story_link(story_url_base, short_id)}"
    )


__all__ = [
    "format_chapter_post",
    "format_quest_already_running",
    "format_winner_notification",
    "story_link",
]
