"""Quest state management and persistence."""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .errors import ConcurrencyConflictError
from .models import (
    Chapter,
    ChapterVote,
    Event,
    Execution,
    GeneratedChapter,
    HistoricalSource,
    Lease,
    Quest,
    QuestOption,
    QuestStatus,
    QuestVote,
)

logger = logging.getLogger(__name__)

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS quests (
    id TEXT PRIMARY KEY,
    short_id TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'ACTIVE',
    initial_post TEXT NOT NULL,
    source_post_id TEXT NOT NULL UNIQUE,
    current_chapter INTEGER NOT NULL DEFAULT 0,
    chapter_deadline TEXT,
    last_posted_id TEXT,
    current_state TEXT NOT NULL,
    timeline_data TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_quests_status_deadline
    ON quests (status, chapter_deadline);
CREATE TABLE IF NOT EXISTS chapters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    quest_id TEXT NOT NULL,
    chapter_number INTEGER NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    content TEXT NOT NULL,
    options TEXT NOT NULL,
    sources TEXT NOT NULL,
    is_terminal INTEGER NOT NULL DEFAULT 0,
    posted_id TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    post_claim TEXT,
    post_claimed_at TEXT,
    FOREIGN KEY (quest_id) REFERENCES quests (id),
    UNIQUE (quest_id, chapter_number)
);
CREATE TABLE IF NOT EXISTS chapter_votes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    chapter_id INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    selected_option INTEGER NOT NULL,
    reply_text TEXT NOT NULL DEFAULT '',
    reply_post_id TEXT,
    interpretation TEXT NOT NULL DEFAULT '',
    confidence REAL NOT NULL DEFAULT 1.0,
    voted_at TEXT NOT NULL,
    FOREIGN KEY (chapter_id) REFERENCES chapters (id)
);
CREATE INDEX IF NOT EXISTS idx_chapter_votes_chapter
    ON chapter_votes (chapter_id, voted_at);
CREATE TABLE IF NOT EXISTS quest_votes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    quest_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    vote TEXT NOT NULL,
    voted_at TEXT NOT NULL,
    FOREIGN KEY (quest_id) REFERENCES quests (id),
    UNIQUE (quest_id, user_id)
);
CREATE TABLE IF NOT EXISTS executions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    quest_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    side TEXT NOT NULL,
    roast_text TEXT NOT NULL,
    tombstone_url TEXT,
    executed_at TEXT NOT NULL,
    FOREIGN KEY (quest_id) REFERENCES quests (id)
);
CREATE TABLE IF NOT EXISTS quest_leases (
    quest_id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS vote_notifications (
    vote_id INTEGER PRIMARY KEY,
    posted_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    quest_id TEXT,
    action TEXT NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_quest
    ON events (quest_id, id);
"""

_QUEST_COLUMNS = (
    "id, short_id, status, initial_post, source_post_id, current_chapter, "
    "chapter_deadline, last_posted_id, current_state, timeline_data, created_at, updated_at"
)
_CHAPTER_COLUMNS = (
    "id, quest_id, chapter_number, title, content, options, sources, is_terminal, "
    "posted_id, created_at, post_claim, post_claimed_at"
)
_VOTE_COLUMNS = (
    "id, chapter_id, user_id, selected_option, reply_text, reply_post_id, "
    "interpretation, confidence, voted_at"
)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return _utc(value).isoformat(timespec="microseconds")


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return _utc(datetime.fromisoformat(value))


def _row_to_quest(row: Sequence) -> Quest:
    return Quest(
        id=row[0],
        short_id=row[1],
        status=QuestStatus(row[2]),
        initial_post=row[3],
        source_post_id=row[4],
        current_chapter=int(row[5]),
        chapter_deadline=_parse(row[6]),
        last_posted_id=row[7],
        current_state=json.loads(row[8]) if row[8] else {},
        timeline_data=json.loads(row[9]) if row[9] else [],
        created_at=_parse(row[10]),
        updated_at=_parse(row[11]),
    )


def _row_to_chapter(row: Sequence) -> Chapter:
    return Chapter(
        id=int(row[0]),
        quest_id=row[1],
        chapter_number=int(row[2]),
        title=row[3] or "",
        content=row[4],
        options=[QuestOption.from_dict(item) for item in json.loads(row[5] or "[]")],
        sources=[HistoricalSource.from_dict(item) for item in json.loads(row[6] or "[]")],
        is_terminal=bool(row[7]),
        posted_id=row[8] or "",
        created_at=_parse(row[9]),
        post_claim=row[10],
        post_claimed_at=_parse(row[11]),
    )


def _row_to_vote(row: Sequence) -> ChapterVote:
    return ChapterVote(
        id=int(row[0]),
        chapter_id=int(row[1]),
        user_id=row[2],
        selected_option=int(row[3]),
        reply_text=row[4] or "",
        reply_post_id=row[5],
        interpretation=row[6] or "",
        confidence=float(row[7]),
        voted_at=_parse(row[8]),
    )


class QuestState:
    """Repository over the SQLite store backing quests, chapters and votes."""

    def __init__(self, db_path: Path, *, busy_timeout: float = 10.0) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path, timeout=self._busy_timeout)

    def _ensure_schema(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_DB_SCHEMA)
            conn.commit()

    # Quests ------------------------------------------------------------
    def create_quest(self, quest: Quest) -> Quest:
        with closing(self._connect()) as conn:
            conn.execute(
                f"INSERT INTO quests ({_QUEST_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    quest.id,
                    quest.short_id,
                    quest.status.value,
                    quest.initial_post,
                    quest.source_post_id,
                    quest.current_chapter,
                    _iso(quest.chapter_deadline),
                    quest.last_posted_id,
                    json.dumps(quest.current_state),
                    json.dumps(quest.timeline_data),
                    _iso(quest.created_at),
                    _iso(quest.updated_at),
                ),
            )
            conn.commit()
        return quest

    def get_quest(self, quest_id: str) -> Optional[Quest]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT {_QUEST_COLUMNS} FROM quests WHERE id = ?",
                (quest_id,),
            ).fetchone()
        return _row_to_quest(row) if row else None

    def get_quest_by_short_id(self, short_id: str) -> Optional[Quest]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT {_QUEST_COLUMNS} FROM quests WHERE short_id = ?",
                (short_id,),
            ).fetchone()
        return _row_to_quest(row) if row else None

    def find_quest_by_source(self, source_post_id: str) -> Optional[Quest]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT {_QUEST_COLUMNS} FROM quests WHERE source_post_id = ?",
                (source_post_id,),
            ).fetchone()
        return _row_to_quest(row) if row else None

    def list_quests(
        self,
        status: Optional[QuestStatus] = None,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Quest]:
        query = f"SELECT {_QUEST_COLUMNS} FROM quests"
        params: List[object] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        with closing(self._connect()) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_quest(row) for row in rows]

    def list_pending_quests(self) -> List[Quest]:
        """Return ACTIVE quests with an armed deadline, soonest first."""

        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"""SELECT {_QUEST_COLUMNS} FROM quests
                   WHERE status = 'ACTIVE' AND chapter_deadline IS NOT NULL
                   ORDER BY chapter_deadline ASC""",
            ).fetchall()
        return [_row_to_quest(row) for row in rows]

    def list_due_quests(self, now: datetime) -> List[Quest]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"""SELECT {_QUEST_COLUMNS} FROM quests
                   WHERE status = 'ACTIVE'
                     AND chapter_deadline IS NOT NULL
                     AND chapter_deadline <= ?
                   ORDER BY chapter_deadline ASC""",
                (_iso(now),),
            ).fetchall()
        return [_row_to_quest(row) for row in rows]

    def update_quest_lifecycle(
        self,
        quest_id: str,
        *,
        status: QuestStatus,
        chapter_deadline: Optional[datetime],
        current_state: Dict[str, object],
        now: Optional[datetime] = None,
    ) -> bool:
        """Apply a status/deadline change to an ACTIVE quest.

        Terminal rows are never touched, so the update reports ``False`` when
        the quest has already completed or been archived.
        """

        now = now or datetime.now(timezone.utc)
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                """UPDATE quests
                   SET status = ?, chapter_deadline = ?, current_state = ?, updated_at = ?
                   WHERE id = ? AND status = 'ACTIVE'""",
                (
                    status.value,
                    _iso(chapter_deadline),
                    json.dumps(current_state),
                    _iso(now),
                    quest_id,
                ),
            )
            conn.commit()
            return cursor.rowcount == 1

    def commit_chapter_advance(
        self,
        quest_id: str,
        *,
        expected_chapter: int,
        chapter_number: int,
        posted_id: str,
        chapter_deadline: Optional[datetime],
        status: QuestStatus,
        current_state: Dict[str, object],
        timeline_data: List[Dict[str, object]],
        now: Optional[datetime] = None,
    ) -> bool:
        """Move the quest pointer onto a published chapter in one transaction.

        Returns ``False`` when another writer already moved the pointer.
        """

        now = now or datetime.now(timezone.utc)
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT posted_id FROM chapters WHERE quest_id = ? AND chapter_number = ?",
                    (quest_id, chapter_number),
                ).fetchone()
                if row is None or not row[0]:
                    raise ValueError(
                        f"Chapter {chapter_number} of quest {quest_id} has not been posted"
                    )
                cursor = conn.execute(
                    """UPDATE quests
                       SET current_chapter = ?, last_posted_id = ?, chapter_deadline = ?,
                           status = ?, current_state = ?, timeline_data = ?, updated_at = ?
                       WHERE id = ? AND current_chapter = ? AND status = 'ACTIVE'""",
                    (
                        chapter_number,
                        posted_id,
                        _iso(chapter_deadline),
                        status.value,
                        json.dumps(current_state),
                        json.dumps(timeline_data),
                        _iso(now),
                        quest_id,
                        expected_chapter,
                    ),
                )
                if cursor.rowcount != 1:
                    conn.rollback()
                    return False
                conn.commit()
                return True
            except Exception:
                conn.rollback()
                raise

    # Chapters ----------------------------------------------------------
    def create_chapter(
        self,
        quest_id: str,
        chapter_number: int,
        generated: GeneratedChapter,
        *,
        created_at: Optional[datetime] = None,
    ) -> Chapter:
        """Persist a chapter draft, or return the row another writer created first."""

        now = created_at or datetime.now(timezone.utc)
        try:
            with closing(self._connect()) as conn:
                cursor = conn.execute(
                    """INSERT INTO chapters
                       (quest_id, chapter_number, title, content, options, sources, is_terminal, posted_id, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, '', ?)""",
                    (
                        quest_id,
                        chapter_number,
                        generated.title,
                        generated.content,
                        json.dumps([option.to_dict() for option in generated.options]),
                        json.dumps([source.to_dict() for source in generated.sources]),
                        int(generated.is_terminal),
                        _iso(now),
                    ),
                )
                conn.commit()
                chapter_id = int(cursor.lastrowid)
        except sqlite3.IntegrityError:
            existing = self.get_chapter(quest_id, chapter_number)
            if existing is None:
                raise
            logger.info(
                "Chapter %s for quest %s was created concurrently; reusing row %s",
                chapter_number,
                quest_id,
                existing.id,
            )
            return existing
        chapter = self.get_chapter_by_id(chapter_id)
        if chapter is None:
            raise RuntimeError(f"Chapter {chapter_number} of quest {quest_id} vanished after insert")
        return chapter

    def get_chapter(self, quest_id: str, chapter_number: int) -> Optional[Chapter]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT {_CHAPTER_COLUMNS} FROM chapters WHERE quest_id = ? AND chapter_number = ?",
                (quest_id, chapter_number),
            ).fetchone()
        return _row_to_chapter(row) if row else None

    def get_chapter_by_id(self, chapter_id: int) -> Optional[Chapter]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT {_CHAPTER_COLUMNS} FROM chapters WHERE id = ?",
                (chapter_id,),
            ).fetchone()
        return _row_to_chapter(row) if row else None

    def list_chapters(self, quest_id: str) -> List[Chapter]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"SELECT {_CHAPTER_COLUMNS} FROM chapters WHERE quest_id = ? ORDER BY chapter_number ASC",
                (quest_id,),
            ).fetchall()
        return [_row_to_chapter(row) for row in rows]

    def count_chapters(self, quest_id: str) -> int:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM chapters WHERE quest_id = ?",
                (quest_id,),
            ).fetchone()
        return int(row[0]) if row else 0

    def mark_chapter_posted(self, chapter_id: int, posted_id: str) -> Chapter:
        """Record the remote id for a chapter; the first recorded id wins."""

        with closing(self._connect()) as conn:
            cursor = conn.execute(
                "UPDATE chapters SET posted_id = ? WHERE id = ? AND posted_id = ''",
                (posted_id, chapter_id),
            )
            conn.commit()
            updated = cursor.rowcount == 1
        chapter = self.get_chapter_by_id(chapter_id)
        if chapter is None:
            raise ValueError(f"Unknown chapter {chapter_id}")
        if not updated and chapter.posted_id != posted_id:
            logger.warning(
                "Chapter %s already carried post %s; ignoring %s",
                chapter_id,
                chapter.posted_id,
                posted_id,
            )
        return chapter

    def claim_chapter_post(
        self,
        chapter_id: int,
        owner: str,
        *,
        lease_quest_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Chapter:
        """Stamp ``owner`` on an unposted chapter before it is sent anywhere.

        With ``lease_quest_id`` the quest lease is re-checked inside the same
        transaction, against the wall clock like the lease itself, and
        :class:`ConcurrencyConflictError` is raised if ``owner`` no longer
        holds it. The returned chapter carries whichever claim won; a claim by
        somebody else means an earlier post attempt may have landed.
        """

        now = now or datetime.now(timezone.utc)
        lease_clock = _iso(datetime.now(timezone.utc))
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if lease_quest_id is not None:
                    lease = conn.execute(
                        "SELECT owner, expires_at FROM quest_leases WHERE quest_id = ?",
                        (lease_quest_id,),
                    ).fetchone()
                    if lease is None or lease[0] != owner or lease[1] <= lease_clock:
                        raise ConcurrencyConflictError(
                            f"Lease on quest {lease_quest_id} is no longer held by {owner}"
                        )
                conn.execute(
                    """UPDATE chapters SET post_claim = ?, post_claimed_at = ?
                       WHERE id = ? AND posted_id = '' AND post_claim IS NULL""",
                    (owner, _iso(now), chapter_id),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        chapter = self.get_chapter_by_id(chapter_id)
        if chapter is None:
            raise ValueError(f"Unknown chapter {chapter_id}")
        return chapter

    def release_post_claim(self, chapter_id: int, owner: Optional[str] = None) -> bool:
        """Drop the posting claim on a chapter that never got a remote id."""

        query = "UPDATE chapters SET post_claim = NULL, post_claimed_at = NULL WHERE id = ? AND posted_id = ''"
        params: List[object] = [chapter_id]
        if owner is not None:
            query += " AND post_claim = ?"
            params.append(owner)
        with closing(self._connect()) as conn:
            cursor = conn.execute(query, params)
            conn.commit()
            return cursor.rowcount == 1

    # Votes -------------------------------------------------------------
    def record_chapter_vote(
        self,
        chapter_id: int,
        user_id: str,
        selected_option: int,
        *,
        reply_text: str = "",
        reply_post_id: Optional[str] = None,
        interpretation: str = "",
        confidence: float = 1.0,
        voted_at: Optional[datetime] = None,
    ) -> ChapterVote:
        now = voted_at or datetime.now(timezone.utc)
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                """INSERT INTO chapter_votes
                   (chapter_id, user_id, selected_option, reply_text, reply_post_id,
                    interpretation, confidence, voted_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    chapter_id,
                    user_id,
                    selected_option,
                    reply_text,
                    reply_post_id,
                    interpretation,
                    confidence,
                    _iso(now),
                ),
            )
            conn.commit()
            vote_id = int(cursor.lastrowid)
        return ChapterVote(
            id=vote_id,
            chapter_id=chapter_id,
            user_id=user_id,
            selected_option=selected_option,
            reply_text=reply_text,
            reply_post_id=reply_post_id,
            interpretation=interpretation,
            confidence=confidence,
            voted_at=_utc(now),
        )

    def list_votes(self, chapter_id: int) -> List[ChapterVote]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"SELECT {_VOTE_COLUMNS} FROM chapter_votes WHERE chapter_id = ? ORDER BY voted_at ASC, id ASC",
                (chapter_id,),
            ).fetchall()
        return [_row_to_vote(row) for row in rows]

    def has_user_voted(self, chapter_id: int, user_id: str) -> bool:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT 1 FROM chapter_votes WHERE chapter_id = ? AND user_id = ? LIMIT 1",
                (chapter_id, user_id),
            ).fetchone()
        return row is not None

    def record_quest_vote(
        self,
        quest_id: str,
        user_id: str,
        vote: str,
        *,
        voted_at: Optional[datetime] = None,
    ) -> QuestVote:
        now = voted_at or datetime.now(timezone.utc)
        with closing(self._connect()) as conn:
            conn.execute(
                """INSERT INTO quest_votes (quest_id, user_id, vote, voted_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT (quest_id, user_id)
                   DO UPDATE SET vote = excluded.vote, voted_at = excluded.voted_at""",
                (quest_id, user_id, vote, _iso(now)),
            )
            conn.commit()
        return QuestVote(quest_id=quest_id, user_id=user_id, vote=vote, voted_at=_utc(now))

    def list_quest_votes(self, quest_id: str) -> List[QuestVote]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT quest_id, user_id, vote, voted_at FROM quest_votes WHERE quest_id = ? ORDER BY voted_at ASC",
                (quest_id,),
            ).fetchall()
        return [
            QuestVote(quest_id=row[0], user_id=row[1], vote=row[2], voted_at=_parse(row[3]))
            for row in rows
        ]

    def record_vote_notification(self, vote_id: int, posted_id: str) -> bool:
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO vote_notifications (vote_id, posted_id, created_at) VALUES (?, ?, ?)",
                (vote_id, posted_id, _iso(datetime.now(timezone.utc))),
            )
            conn.commit()
            return cursor.rowcount == 1

    def has_vote_notification(self, vote_id: int) -> bool:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT 1 FROM vote_notifications WHERE vote_id = ?",
                (vote_id,),
            ).fetchone()
        return row is not None

    # Executions --------------------------------------------------------
    def record_execution(
        self,
        quest_id: str,
        user_id: str,
        side: str,
        roast_text: str,
        *,
        executed_at: Optional[datetime] = None,
    ) -> Execution:
        now = executed_at or datetime.now(timezone.utc)
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                """INSERT INTO executions (quest_id, user_id, side, roast_text, executed_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (quest_id, user_id, side, roast_text, _iso(now)),
            )
            conn.commit()
            execution_id = int(cursor.lastrowid)
        return Execution(
            id=execution_id,
            quest_id=quest_id,
            user_id=user_id,
            side=side,
            roast_text=roast_text,
            executed_at=_utc(now),
        )

    def set_tombstone(self, execution_id: int, tombstone_url: str) -> bool:
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                "UPDATE executions SET tombstone_url = ? WHERE id = ? AND tombstone_url IS NULL",
                (tombstone_url, execution_id),
            )
            conn.commit()
            return cursor.rowcount == 1

    def list_executions(self, quest_id: str) -> List[Execution]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                """SELECT id, quest_id, user_id, side, roast_text, tombstone_url, executed_at
                   FROM executions WHERE quest_id = ? ORDER BY executed_at ASC, id ASC""",
                (quest_id,),
            ).fetchall()
        return [
            Execution(
                id=int(row[0]),
                quest_id=row[1],
                user_id=row[2],
                side=row[3],
                roast_text=row[4],
                tombstone_url=row[5],
                executed_at=_parse(row[6]),
            )
            for row in rows
        ]

    # Leases ------------------------------------------------------------
    def acquire_lease(
        self,
        quest_id: str,
        owner: str,
        ttl_seconds: float,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        """Take the progression lease for a quest unless a live one is held elsewhere."""

        now = now or datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=ttl_seconds)
        with closing(self._connect()) as conn:
            conn.execute(
                """INSERT INTO quest_leases (quest_id, owner, expires_at) VALUES (?, ?, ?)
                   ON CONFLICT (quest_id) DO UPDATE
                   SET owner = excluded.owner, expires_at = excluded.expires_at
                   WHERE quest_leases.expires_at <= ? OR quest_leases.owner = excluded.owner""",
                (quest_id, owner, _iso(expires_at), _iso(now)),
            )
            conn.commit()
            row = conn.execute(
                "SELECT owner FROM quest_leases WHERE quest_id = ?",
                (quest_id,),
            ).fetchone()
        return bool(row) and row[0] == owner

    def renew_lease(
        self,
        quest_id: str,
        owner: str,
        ttl_seconds: float,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        """Push the expiry of a lease ``owner`` still holds; ``False`` once it is lost."""

        now = now or datetime.now(timezone.utc)
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                "UPDATE quest_leases SET expires_at = ? WHERE quest_id = ? AND owner = ?",
                (_iso(now + timedelta(seconds=ttl_seconds)), quest_id, owner),
            )
            conn.commit()
            return cursor.rowcount == 1

    def release_lease(self, quest_id: str, owner: str) -> bool:
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                "DELETE FROM quest_leases WHERE quest_id = ? AND owner = ?",
                (quest_id, owner),
            )
            conn.commit()
            return cursor.rowcount == 1

    def get_lease(self, quest_id: str) -> Optional[Lease]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT quest_id, owner, expires_at FROM quest_leases WHERE quest_id = ?",
                (quest_id,),
            ).fetchone()
        if not row:
            return None
        return Lease(quest_id=row[0], owner=row[1], expires_at=_parse(row[2]))

    # Events ------------------------------------------------------------
    def append_event(self, event: Event) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "INSERT INTO events (timestamp, quest_id, action, payload) VALUES (?, ?, ?, ?)",
                (
                    _iso(event.timestamp),
                    event.quest_id,
                    event.action,
                    json.dumps(event.payload, default=str),
                ),
            )
            conn.commit()

    def export_events(self, quest_id: Optional[str] = None) -> List[Event]:
        query = "SELECT timestamp, quest_id, action, payload FROM events"
        params: Iterable[object] = ()
        if quest_id is not None:
            query += " WHERE quest_id = ?"
            params = (quest_id,)
        query += " ORDER BY id ASC"
        with closing(self._connect()) as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [
            Event(
                timestamp=_parse(row[0]),
                quest_id=row[1],
                action=row[2],
                payload=json.loads(row[3]),
            )
            for row in rows
        ]


__all__ = ["QuestState"]
