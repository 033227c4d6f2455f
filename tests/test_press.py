"""Tests for chapter post formatting."""

from __future__ import annotations

from xrpg.models import Chapter, QuestOption
from xrpg.press import format_chapter_post, format_winner_notification


def _chapter(number: int, *, options=None, terminal: bool = False, content: str = "The bridge sways.") -> Chapter:
    return Chapter(
        id=number,
        quest_id="q1",
        chapter_number=number,
        content=content,
        title="Bridge of Sighs",
        options=options if options is not None else [
            QuestOption(text="Cross now", label="1", description="Risky"),
            QuestOption(text="Turn back", label="2"),
        ],
        is_terminal=terminal,
    )


def test_opening_post_has_title_options_and_link():
    text = format_chapter_post(
        _chapter(1),
        short_id="abc12345",
        story_url_base="https://xrpg.gg/s",
        voting_window_seconds=120,
    )

    assert text.startswith("📜 BRIDGE OF SIGHS\n\nThe bridge sways.")
    assert "1. Cross now - Risky\n\n2. Turn back" in text
    assert "Reply with 1 or 2 to vote." in text
    assert "Voting ends in 2 min." in text
    assert text.endswith("📖 https://xrpg.gg/s/abc12345")


def test_later_chapters_skip_the_title():
    text = format_chapter_post(
        _chapter(3),
        short_id="abc12345",
        story_url_base="https://xrpg.gg/s",
        voting_window_seconds=45,
    )

    assert not text.startswith("📜")
    assert "Voting ends in 45 sec." in text


def test_final_chapter_closes_the_story():
    text = format_chapter_post(
        _chapter(5, options=[], terminal=True),
        short_id="abc12345",
        story_url_base="https://xrpg.gg/s",
        voting_window_seconds=120,
    )

    assert "Reply with" not in text
    assert "The timeline has spoken." in text
    assert text.endswith("Full story: https://xrpg.gg/s/abc12345")


def test_long_content_is_clamped_but_footer_survives():
    text = format_chapter_post(
        _chapter(2, content="x" * 500),
        short_id="abc12345",
        story_url_base="https://xrpg.gg/s",
        voting_window_seconds=120,
        max_length=280,
    )

    assert len(text) <= 280
    assert "..." in text
    assert text.endswith("📖 https://xrpg.gg/s/abc12345")


def test_winner_notification_mentions_choice_and_next_chapter():
    chapter = _chapter(2)
    text = format_winner_notification(
        chapter,
        chapter.options[0],
        next_chapter=3,
        short_id="abc12345",
        story_url_base="https://xrpg.gg/s/",
    )

    assert '"1" won chapter 2' in text
    assert "Chapter 3 is live: https://xrpg.gg/s/abc12345" in text
