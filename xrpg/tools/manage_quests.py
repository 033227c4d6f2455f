"""Operator utilities for inspecting and nudging quests."""
from __future__ import annotations

import argparse
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..errors import QuestRejectedError
from ..models import ProgressionOutcome, QuestStatus
from ..service import ProgressionService
from ..state import QuestState


def _default_db() -> Path:
    return Path(os.getenv("XRPG_DB_PATH", "xrpg.db"))


def _build_service(state_db: Path) -> ProgressionService:
    return ProgressionService(state_db)


def _outcome_dict(outcome: ProgressionOutcome) -> Dict[str, Any]:
    return {
        "quest_id": outcome.quest_id,
        "action": outcome.action.value,
        "chapter": outcome.chapter.chapter_number if outcome.chapter else None,
        "winning_option": outcome.tally.winning_option if outcome.tally else None,
        "reason": outcome.reason,
    }


def _status_summary(state: QuestState, status: Optional[str]) -> Dict[str, Any]:
    quests = state.list_quests(QuestStatus(status.upper()) if status else None)
    by_status: Dict[str, int] = {}
    for quest in quests:
        by_status[quest.status.value] = by_status.get(quest.status.value, 0) + 1
    held = [quest for quest in quests if quest.review]
    return {
        "total": len(quests),
        "by_status": by_status,
        "pending": [
            {
                "id": quest.id,
                "short_id": quest.short_id,
                "chapter": quest.current_chapter,
                "deadline": quest.chapter_deadline,
            }
            for quest in state.list_pending_quests()
        ],
        "held": [
            {"id": quest.id, "short_id": quest.short_id, "review": quest.review}
            for quest in held
        ],
    }


def cmd_status(args: argparse.Namespace) -> None:
    summary = _status_summary(QuestState(args.state_db), args.status)
    if args.json:
        print(json.dumps(summary, default=str, indent=2))
        return

    lines: List[str] = [f"Total quests: {summary['total']}"]
    for name, count in sorted(summary["by_status"].items()):
        lines.append(f"  - {name}: {count}")
    if summary["pending"]:
        lines.append("Awaiting tally:")
        for item in summary["pending"]:
            lines.append(
                f"  - {item['short_id']} chapter {item['chapter']} due {item['deadline'].isoformat()}"
            )
    if summary["held"]:
        lines.append("Held for review:")
        for item in summary["held"]:
            review = item["review"] or {}
            lines.append(f"  - {item['short_id']} ({review.get('stage')}): {review.get('reason')}")
    print("\n".join(lines))


def cmd_show(args: argparse.Namespace) -> None:
    service = _build_service(args.state_db)
    timeline = service.quest_timeline(args.quest)
    if args.json:
        print(json.dumps(timeline, default=str, indent=2))
        return

    print(f"{timeline['short_id']} [{timeline['status']}] {timeline['title'] or ''}".rstrip())
    print(f"Current chapter: {timeline['current_chapter']}  deadline: {timeline['chapter_deadline']}")
    for chapter in timeline["chapters"]:
        marker = "posted" if chapter["posted"] else "draft"
        print(f"\nChapter {chapter['chapter_number']} ({marker}): {chapter['title']}")
        print(chapter["content"])
        decision = chapter["decision"]
        if decision:
            print(
                f"  -> option {int(decision['winning_option']) + 1} "
                f"{decision.get('winning_label') or ''} votes={decision['vote_counts']}"
            )


def cmd_start(args: argparse.Namespace) -> None:
    service = _build_service(args.state_db)
    try:
        quest = service.start_quest(
            args.seed,
            args.source_post_id,
            author=args.author,
            conversation_id=args.conversation_id,
        )
    except QuestRejectedError as exc:
        print(f"Quest not started: {exc.reason}")
        if exc.reply:
            print(f"Reply: {exc.reply}")
        return
    print(f"Quest {quest.short_id} ({quest.id}) at chapter {quest.current_chapter}")
    for message in service.drain_admin_notifications():
        print(message)


def cmd_tick(args: argparse.Namespace) -> None:
    service = _build_service(args.state_db)
    outcomes = service.advance_due()
    if args.json:
        print(json.dumps([_outcome_dict(outcome) for outcome in outcomes], indent=2))
        return
    if not outcomes:
        print("No quests due.")
    for outcome in outcomes:
        info = _outcome_dict(outcome)
        print(f"{info['quest_id']}: {info['action']}" + (f" ({info['reason']})" if info["reason"] else ""))
    for message in service.drain_admin_notifications():
        print(message)


def cmd_resume(args: argparse.Namespace) -> None:
    service = _build_service(args.state_db)
    quest = service.resume_quest(args.quest, posted_id=args.posted_id)
    print(f"Quest {quest.short_id} resumed; due {quest.chapter_deadline.isoformat()}")


def cmd_archive(args: argparse.Namespace) -> None:
    service = _build_service(args.state_db)
    quest = service.archive_quest(args.quest, args.reason)
    print(f"Quest {quest.short_id} archived")


def cmd_run(args: argparse.Namespace) -> None:
    from ..scheduler import ProgressionScheduler

    service = _build_service(args.state_db)
    scheduler = ProgressionScheduler(service)
    scheduler.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        scheduler.shutdown()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect and operate quest progression.")
    parser.add_argument(
        "--state-db",
        type=Path,
        default=_default_db(),
        help="Path to the quest SQLite database (default: $XRPG_DB_PATH or xrpg.db).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    status = subparsers.add_parser("status", help="Summarise quests by status.")
    status.add_argument("--status", type=str, help="Filter by quest status.")
    status.add_argument("--json", action="store_true", help="Output JSON for automation.")
    status.set_defaults(func=cmd_status)

    show = subparsers.add_parser("show", help="Show a quest's chapters and decisions.")
    show.add_argument("quest", help="Quest id or short id.")
    show.add_argument("--json", action="store_true", help="Output JSON for automation.")
    show.set_defaults(func=cmd_show)

    start = subparsers.add_parser("start", help="Start a quest from a seed post.")
    start.add_argument("seed", help="Text of the post the quest grows from.")
    start.add_argument("--source-post-id", required=True, help="Id of the seed post.")
    start.add_argument("--author", type=str, help="Author of the seed post.")
    start.add_argument("--conversation-id", type=str, help="Root post of the seed's conversation.")
    start.set_defaults(func=cmd_start)

    tick = subparsers.add_parser("tick", help="Advance every quest whose deadline has passed.")
    tick.add_argument("--json", action="store_true", help="Output JSON for automation.")
    tick.set_defaults(func=cmd_tick)

    resume = subparsers.add_parser("resume", help="Clear a review hold and make the quest due.")
    resume.add_argument("quest", help="Quest id or short id.")
    resume.add_argument(
        "--posted-id",
        type=str,
        help="Remote id of a pending chapter that was in fact posted.",
    )
    resume.set_defaults(func=cmd_resume)

    archive = subparsers.add_parser("archive", help="Archive a quest.")
    archive.add_argument("quest", help="Quest id or short id.")
    archive.add_argument("--reason", default="operator", help="Reason recorded on the quest.")
    archive.set_defaults(func=cmd_archive)

    run = subparsers.add_parser("run", help="Run the deadline scheduler until interrupted.")
    run.set_defaults(func=cmd_run)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    logging.basicConfig(level=logging.INFO)
    parser = build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
