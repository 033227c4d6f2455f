"""Tests covering quest progression through the service layer."""

from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest

from xrpg.errors import QuestRejectedError, TransientExternalError
from xrpg.models import GeneratedChapter, ProgressionAction, QuestOption, QuestStatus
from xrpg.poster import MockPoster

from conftest import FakeGenerator, at, build_service, make_settings


def _advance_to_chapter(service, quest, chapter_number):
    """Advance with default votes until the quest sits on ``chapter_number``."""

    current = service.state.get_quest(quest.id)
    while current.current_chapter < chapter_number:
        outcome = service.advance(quest.id, now=current.chapter_deadline)
        assert outcome.action is ProgressionAction.PUBLISHED
        current = outcome.quest
    return current


def test_start_quest_publishes_opening_chapter(tmp_path):
    poster = MockPoster()
    service = build_service(tmp_path, poster=poster)

    quest = service.start_quest("The river is rising.", "post-1", author="@alice", now=at(0))

    assert quest.current_chapter == 1
    assert quest.chapter_deadline == at(120)
    assert quest.current_state["canon_title"] == "The Flooded Dam"
    assert len(poster.posts) == 1
    text = poster.posts[0].text
    assert text.startswith("📜 THE FLOODED DAM")
    assert "1. Open the gates - Spill downstream" in text
    assert "Reply with 1 or 2 to vote." in text
    assert f"https://xrpg.gg/s/{quest.short_id}" in text


def test_start_quest_is_idempotent_per_source_post(tmp_path):
    generator = FakeGenerator()
    service = build_service(tmp_path, generator=generator)

    first = service.start_quest("seed", "post-1", now=at(0))
    second = service.start_quest("seed again", "post-1", now=at(5))

    assert second.id == first.id
    assert len(generator.calls) == 1


def test_advance_before_deadline_is_a_no_op(service):
    quest = service.start_quest("seed", "post-1", now=at(0))

    outcome = service.advance(quest.id, now=at(60))

    assert outcome.action is ProgressionAction.NOT_DUE
    assert service.state.get_quest(quest.id).current_chapter == 1


def test_missing_quest_is_reported(service):
    assert service.advance("nope", now=at(0)).action is ProgressionAction.NOT_FOUND


def test_chapter_three_tie_goes_to_earliest_vote(tmp_path):
    """Left and right tie 2-2 on chapter 3; left got the first vote so it wins."""

    generator = FakeGenerator()
    service = build_service(tmp_path, generator=generator)
    quest = service.start_quest("seed", "post-1", now=at(0))
    quest = _advance_to_chapter(service, quest, 3)
    opened = quest.chapter_deadline - timedelta(seconds=120)

    service.submit_vote(quest.id, "u1", "1", voted_at=opened + timedelta(seconds=5))
    service.submit_vote(quest.id, "u2", "2", voted_at=opened + timedelta(seconds=10))
    service.submit_vote(quest.id, "u4", "option 2", voted_at=opened + timedelta(seconds=20))
    service.submit_vote(quest.id, "u3", "Left", voted_at=opened + timedelta(seconds=40))

    outcome = service.advance(quest.id, now=quest.chapter_deadline)

    assert outcome.action is ProgressionAction.PUBLISHED
    assert outcome.tally.vote_counts == [2, 2]
    assert outcome.tally.winning_option == 0
    assert outcome.quest.current_chapter == 4
    assert generator.calls[-1] == {
        "kind": "chapter",
        "chapter": 4,
        "winning_option": 0,
        "is_final": False,
        "history": [1, 2, 3],
    }


def test_zero_votes_advance_with_default_option(service):
    quest = service.start_quest("seed", "post-1", now=at(0))

    outcome = service.advance(quest.id, now=at(121))

    assert outcome.action is ProgressionAction.PUBLISHED
    assert outcome.tally.used_default is True
    assert outcome.tally.winning_option == 0
    assert outcome.quest.current_chapter == 2
    assert outcome.quest.chapter_deadline == at(241)
    assert outcome.quest.current_state["idle_deadlines"] == 1


def test_late_votes_do_not_count(service):
    quest = service.start_quest("seed", "post-1", now=at(0))
    service.submit_vote(quest.id, "early", "1", voted_at=at(30))
    service.submit_vote(quest.id, "late-1", "2", voted_at=at(125))
    service.submit_vote(quest.id, "late-2", "2", voted_at=at(126))

    outcome = service.advance(quest.id, now=at(130))

    assert outcome.tally.winning_option == 0
    assert outcome.tally.vote_counts == [1, 0]


def test_held_lease_skips_and_stale_timer_no_ops(tmp_path):
    poster = MockPoster()
    first = build_service(tmp_path, poster=poster, worker_id="worker-a")
    second = build_service(tmp_path, poster=poster, worker_id="worker-b")
    quest = first.start_quest("seed", "post-1", now=at(0))
    deadline = quest.chapter_deadline

    assert first.state.acquire_lease(quest.id, "someone-else", 60)
    skipped = second.advance(quest.id, now=at(121), expected_deadline=deadline)
    assert skipped.action is ProgressionAction.SKIPPED
    first.state.release_lease(quest.id, "someone-else")

    published = first.advance(quest.id, now=at(121), expected_deadline=deadline)
    stale = second.advance(quest.id, now=at(121), expected_deadline=deadline)

    assert published.action is ProgressionAction.PUBLISHED
    assert stale.action is ProgressionAction.ALREADY_ADVANCED
    assert len(poster.posts) == 2
    assert first.state.get_lease(quest.id) is None


def test_concurrent_workers_publish_exactly_once(tmp_path):
    poster = MockPoster()
    generator = FakeGenerator()
    workers = [
        build_service(tmp_path, poster=poster, generator=generator, worker_id=f"worker-{index}")
        for index in range(4)
    ]
    quest = workers[0].start_quest("seed", "post-1", now=at(0))
    deadline = quest.chapter_deadline
    barrier = threading.Barrier(len(workers))
    outcomes = []
    lock = threading.Lock()

    def run(worker):
        barrier.wait()
        outcome = worker.advance(quest.id, now=at(121), expected_deadline=deadline)
        with lock:
            outcomes.append(outcome.action)

    threads = [threading.Thread(target=run, args=(worker,)) for worker in workers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count(ProgressionAction.PUBLISHED) == 1
    assert set(outcomes) <= {
        ProgressionAction.PUBLISHED,
        ProgressionAction.SKIPPED,
        ProgressionAction.ALREADY_ADVANCED,
    }
    assert len(poster.posts) == 2
    assert workers[0].state.count_chapters(quest.id) == 2
    assert len(generator.calls) == 2


def test_completed_quest_never_moves_again(tmp_path):
    generator = FakeGenerator()
    service = build_service(tmp_path, generator=generator, settings=make_settings(max_chapters=2))
    quest = service.start_quest("seed", "post-1", now=at(0))

    finished = service.advance(quest.id, now=at(121))
    assert finished.action is ProgressionAction.COMPLETED
    assert finished.quest.status is QuestStatus.COMPLETED
    assert finished.quest.chapter_deadline is None

    again = service.advance(quest.id, now=at(1000))
    assert again.action is ProgressionAction.TERMINAL
    assert service.state.count_chapters(quest.id) == 2
    assert len(generator.calls) == 2
    assert service.submit_vote(quest.id, "late", "1", voted_at=at(1001)) is None
    assert service.submit_quest_vote(quest.id, "late", "stop") is None


def test_stop_votes_archive_the_quest(service):
    quest = service.start_quest("seed", "post-1", now=at(0))
    for user in ("a", "b", "c"):
        service.submit_quest_vote(quest.id, user, "STOP")
    service.submit_quest_vote(quest.id, "d", "continue")

    outcome = service.advance(quest.id, now=at(121))

    assert outcome.action is ProgressionAction.ARCHIVED
    assert "3 of 4" in outcome.reason
    assert outcome.quest.status is QuestStatus.ARCHIVED
    assert outcome.quest.chapter_deadline is None
    assert service.state.count_chapters(quest.id) == 1


def test_idle_quest_is_archived_after_consecutive_empty_deadlines(tmp_path):
    service = build_service(tmp_path, settings=make_settings(idle_deadlines=2))
    quest = service.start_quest("seed", "post-1", now=at(0))

    first = service.advance(quest.id, now=at(121))
    assert first.action is ProgressionAction.PUBLISHED

    second = service.advance(quest.id, now=first.quest.chapter_deadline)
    assert second.action is ProgressionAction.ARCHIVED
    assert "2 consecutive" in second.reason


def test_generation_failure_holds_quest_until_resumed(tmp_path):
    generator = FakeGenerator()
    service = build_service(tmp_path, generator=generator)
    quest = service.start_quest("seed", "post-1", now=at(0))
    generator.failures = [TransientExternalError("backend down")] * 3

    held = service.advance(quest.id, now=at(121))

    assert held.action is ProgressionAction.HELD
    assert held.quest.status is QuestStatus.ACTIVE
    assert held.quest.chapter_deadline is None
    assert held.quest.review["stage"] == "generation"
    assert service.advance(quest.id, now=at(500)).action is ProgressionAction.NOT_DUE
    notes = service.drain_admin_notifications()
    assert len(notes) == 1 and quest.short_id in notes[0]
    assert service._alert_router.alerts[0]["event"] == "quest_held"

    resumed = service.resume_quest(quest.short_id, now=at(600))
    assert resumed.chapter_deadline == at(600)
    assert resumed.review is None

    outcome = service.advance(quest.id, now=at(600))
    assert outcome.action is ProgressionAction.PUBLISHED
    assert outcome.quest.current_chapter == 2


def test_failed_opening_is_held_and_recovers(tmp_path):
    generator = FakeGenerator(failures=[TransientExternalError("down")] * 3)
    service = build_service(tmp_path, generator=generator)

    quest = service.start_quest("seed", "post-1", now=at(0))
    assert quest.current_chapter == 0
    assert quest.review["stage"] == "generation"

    service.resume_quest(quest.id, now=at(30))
    outcome = service.advance(quest.id, now=at(30))
    assert outcome.action is ProgressionAction.PUBLISHED
    assert outcome.quest.current_chapter == 1


def test_operator_archive(service):
    quest = service.start_quest("seed", "post-1", now=at(0))

    archived = service.archive_quest(quest.short_id, "spam")

    assert archived.status is QuestStatus.ARCHIVED
    assert archived.current_state["closed_reason"] == "spam"
    assert service.advance(quest.id, now=at(500)).action is ProgressionAction.TERMINAL


def test_advance_due_processes_overdue_quests(service):
    first = service.start_quest("seed one", "post-1", now=at(0))
    second = service.start_quest("seed two", "post-2", now=at(100))

    outcomes = service.advance_due(now=at(150))

    assert [outcome.quest_id for outcome in outcomes] == [first.id]
    assert service.state.get_quest(second.id).current_chapter == 1


def test_vote_submission_rules(service):
    quest = service.start_quest("seed", "post-1", now=at(0))

    vote = service.submit_vote(quest.id, "alice", "@xrpgbot 2", reply_post_id="r1", voted_at=at(5))
    assert vote.selected_option == 1
    assert vote.confidence == 1.0
    assert service.submit_vote(quest.id, "bob", "I like turtles", voted_at=at(6)) is None
    assert service.submit_vote(quest.id, "carol", "3", voted_at=at(7)) is None

    direct = service.cast_vote(quest.id, "dave", 0, voted_at=at(8))
    assert direct.interpretation == "direct"
    with pytest.raises(ValueError):
        service.cast_vote(quest.id, "erin", 2)


def test_quest_timeline_and_executions(service):
    quest = service.start_quest("seed", "post-1", now=at(0))
    service.submit_vote(quest.id, "alice", "2", voted_at=at(5))
    service.advance(quest.id, now=at(121))

    timeline = service.quest_timeline(quest.short_id)
    assert timeline["current_chapter"] == 2
    assert timeline["title"] == "The Flooded Dam"
    decision = timeline["chapters"][0]["decision"]
    assert decision["winning_option"] == 1
    assert decision["winning_label"] == "Right"
    assert timeline["chapters"][1]["decision"] is None

    execution = service.record_execution(quest.id, "bob", "left", "Bob hesitated.")
    assert service.set_execution_tombstone(execution.id, "https://xrpg.gg/t/1")
    assert not service.set_execution_tombstone(execution.id, "https://xrpg.gg/t/2")
    assert [item.user_id for item in service.list_executions(quest.id)] == ["bob"]
    with pytest.raises(ValueError):
        service.record_execution("missing", "bob", "left", "nope")


class SlowPoster:
    """Poster that takes its time and keeps no memory of idempotency keys."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.keys = []
        self._lock = threading.Lock()

    def post(self, text, *, reply_to=None, idempotency_key=None):
        with self._lock:
            self.keys.append(idempotency_key)
            number = len(self.keys)
        time.sleep(self.delay)
        return f"slow-{number}"


def test_lease_is_renewed_while_a_slow_post_is_in_flight(tmp_path):
    poster = SlowPoster()
    settings = make_settings(lease_ttl_seconds=0.5, external_timeout_seconds=3.0)
    first = build_service(tmp_path, poster=poster, settings=settings, worker_id="worker-a")
    second = build_service(tmp_path, poster=poster, settings=settings, worker_id="worker-b")
    quest = first.start_quest("seed", "post-1", now=at(0))
    poster.delay = 1.0
    results = {}

    worker = threading.Thread(
        target=lambda: results.setdefault("first", first.advance(quest.id, now=at(121)))
    )
    worker.start()
    time.sleep(0.7)
    results["second"] = second.advance(quest.id, now=at(121))
    worker.join()

    assert results["first"].action is ProgressionAction.PUBLISHED
    assert results["second"].action is ProgressionAction.SKIPPED
    assert poster.keys.count(f"{quest.id}:2") == 1


def test_stale_post_claim_holds_instead_of_posting_again(tmp_path):
    poster = MockPoster()
    service = build_service(tmp_path, poster=poster)
    quest = service.start_quest("seed", "post-1", now=at(0))
    draft = service.state.create_chapter(
        quest.id,
        2,
        GeneratedChapter(content="Half sent", options=[QuestOption(text="A"), QuestOption(text="B")]),
    )
    service.state.claim_chapter_post(draft.id, "crashed-worker:1234")

    held = service.advance(quest.id, now=at(121))

    assert held.action is ProgressionAction.HELD
    assert held.quest.review["stage"] == "posting"
    assert "crashed-worker:1234" in held.reason
    assert len(poster.posts) == 1

    service.resume_quest(quest.id, posted_id="remote-7", now=at(200))
    outcome = service.advance(quest.id, now=at(200))

    assert outcome.action is ProgressionAction.PUBLISHED
    assert outcome.quest.last_posted_id == "remote-7"
    assert len(poster.posts) == 1


def test_resume_without_remote_id_posts_the_claimed_chapter(tmp_path):
    poster = MockPoster()
    service = build_service(tmp_path, poster=poster)
    quest = service.start_quest("seed", "post-1", now=at(0))
    draft = service.state.create_chapter(
        quest.id,
        2,
        GeneratedChapter(content="Never sent", options=[QuestOption(text="A"), QuestOption(text="B")]),
    )
    service.state.claim_chapter_post(draft.id, "crashed-worker:1234")
    assert service.advance(quest.id, now=at(121)).action is ProgressionAction.HELD

    service.resume_quest(quest.short_id, now=at(200))
    outcome = service.advance(quest.id, now=at(200))

    assert outcome.action is ProgressionAction.PUBLISHED
    assert len(poster.posts) == 2
    assert poster.posts[1].text.startswith("Never sent")


def test_unexpected_opening_failure_leaves_quest_due(tmp_path):
    generator = FakeGenerator(failures=[KeyError("scenario")])
    service = build_service(tmp_path, generator=generator)

    quest = service.start_quest("seed", "post-1", now=at(0))

    assert quest.status is QuestStatus.ACTIVE
    assert quest.current_chapter == 0
    assert quest.chapter_deadline == at(0)
    assert [item.id for item in service.state.list_pending_quests()] == [quest.id]
    assert [item.id for item in service.state.list_due_quests(at(10))] == [quest.id]

    outcomes = service.advance_due(now=at(10))

    assert [outcome.action for outcome in outcomes] == [ProgressionAction.PUBLISHED]
    assert service.state.get_quest(quest.id).current_chapter == 1


def test_unworthy_seed_is_rejected_with_a_reply(tmp_path):
    poster = MockPoster()
    service = build_service(tmp_path, poster=poster, generator=FakeGenerator(worthy=False))

    with pytest.raises(QuestRejectedError) as excinfo:
        service.start_quest("gm", "post-1", now=at(0))

    assert excinfo.value.reason == "too bland"
    assert service.state.list_quests() == []
    assert len(poster.posts) == 1
    assert poster.posts[0].text == "Nothing to play with here!"
    assert poster.posts[0].reply_to == "post-1"
    assert [event.action for event in service.state.export_events()] == ["quest_rejected"]


def test_conversation_with_running_quest_is_not_restarted(tmp_path):
    poster = MockPoster()
    generator = FakeGenerator()
    service = build_service(tmp_path, poster=poster, generator=generator)
    quest = service.start_quest("seed", "root-1", now=at(0))
    chapter_post = quest.last_posted_id

    with pytest.raises(QuestRejectedError) as excinfo:
        service.start_quest("again", "post-2", conversation_id="root-1", now=at(10))

    assert excinfo.value.quest_id == quest.id
    assert f"https://xrpg.gg/s/{quest.short_id}" in excinfo.value.reply
    assert poster.posts[-1].reply_to == "post-2"

    posts_before = len(poster.posts)
    with pytest.raises(QuestRejectedError) as voting:
        service.start_quest(
            "@xrpgbot 1", "post-3", conversation_id="root-1", in_reply_to=chapter_post, now=at(20)
        )

    assert voting.value.reply == ""
    assert len(poster.posts) == posts_before
    assert generator.evaluated == ["seed"]
    assert len(service.state.list_quests()) == 1
