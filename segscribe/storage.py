"""SQLite backed persistence for recording sessions, segments and transcripts."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .config import APP_DIR
from .models import RecordingSession, Segment, SegmentStatus, Transcript, new_id, utcnow

DB_PATH = APP_DIR / "transcripts.db"
SCHEMA_VERSION = 1


class StorageError(RuntimeError):
    """Raised when something goes wrong while accessing the storage."""


class Storage:
    """Persist sessions, segments and transcripts using SQLite.

    Segments are unique by file path and transcripts unique by segment, so
    repeated inserts for the same audio file never create duplicates.
    """

    def __init__(self, db_path: Path = DB_PATH) -> None:
        self.db_path = db_path
        self._ensure_initialised()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _ensure_initialised(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    started_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS segments (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                    file_path TEXT NOT NULL UNIQUE,
                    captured_at TEXT NOT NULL,
                    status TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transcripts (
                    id TEXT PRIMARY KEY,
                    segment_id TEXT NOT NULL UNIQUE REFERENCES segments(id) ON DELETE CASCADE,
                    text TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            cur = conn.execute("SELECT value FROM metadata WHERE key = ?", ("schema_version",))
            row = cur.fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO metadata(key, value) VALUES(?, ?)",
                    ("schema_version", str(SCHEMA_VERSION)),
                )

    def insert_session(self, session: RecordingSession) -> RecordingSession:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO sessions(id, started_at) VALUES(?, ?)",
                (session.id, session.started_at.isoformat()),
            )
        return session

    def insert_segment(
        self,
        session_id: str,
        file_path: str,
        captured_at: datetime,
        status: SegmentStatus = SegmentStatus.PENDING,
        segment_id: Optional[str] = None,
    ) -> Segment:
        """Insert a segment, or return the existing one for the same file path."""

        existing = self.get_segment_by_path(file_path)
        if existing is not None:
            return existing
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO segments(id, session_id, file_path, captured_at, status)
                    VALUES(?, ?, ?, ?, ?)
                    """,
                    (segment_id or new_id(), session_id, str(file_path), captured_at.isoformat(), status.value),
                )
        except sqlite3.IntegrityError as exc:
            raise StorageError(f"Session {session_id} not found") from exc
        segment = self.get_segment_by_path(file_path)
        if segment is None:  # pragma: no cover - row was just written
            raise StorageError(f"Failed to insert segment for {file_path}")
        return segment

    def attach_transcript(
        self,
        segment_id: str,
        text: str,
        status: SegmentStatus = SegmentStatus.SUCCESS,
    ) -> Optional[Transcript]:
        """Create the segment's transcript and settle its status in one transaction.

        Returns ``None`` when the segment already had a transcript; nothing is
        changed in that case.
        """

        if not status.is_final:
            raise StorageError("A transcript can only be attached with a final status")
        transcript = Transcript(id=new_id(), text=text, created_at=utcnow())
        with self._connect() as conn:
            row = conn.execute("SELECT id FROM segments WHERE id = ?", (segment_id,)).fetchone()
            if row is None:
                raise StorageError(f"Segment with id {segment_id} not found")
            cur = conn.execute(
                "INSERT OR IGNORE INTO transcripts(id, segment_id, text, created_at) VALUES(?, ?, ?, ?)",
                (transcript.id, segment_id, transcript.text, transcript.created_at.isoformat()),
            )
            if cur.rowcount == 0:
                return None
            conn.execute(
                "UPDATE segments SET status = ? WHERE id = ? AND status = ?",
                (status.value, segment_id, SegmentStatus.PENDING.value),
            )
        return transcript

    def get_segment_by_path(self, file_path: str) -> Optional[Segment]:
        with self._connect() as conn:
            row = conn.execute(_SEGMENT_QUERY + " WHERE s.file_path = ?", (str(file_path),)).fetchone()
        return _row_to_segment(row) if row is not None else None

    def has_transcript(self, file_path: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM transcripts t JOIN segments s ON s.id = t.segment_id
                WHERE s.file_path = ?
                """,
                (str(file_path),),
            ).fetchone()
        return row is not None

    def get_session(self, session_id: str) -> RecordingSession:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
            if row is None:
                raise StorageError(f"Session with id {session_id} not found")
            session = _row_to_session(row)
            session.segments = self._segments_for(conn, [session.id])[session.id]
        return session

    def query_sessions(self, offset: int = 0, limit: int = 20, descending: bool = True) -> List[RecordingSession]:
        """Return one page of sessions ordered by start time, segments included."""

        return self._page_sessions("", (), offset, limit, descending)

    def search_sessions(
        self,
        text: str,
        offset: int = 0,
        limit: int = 20,
        descending: bool = True,
    ) -> List[RecordingSession]:
        """Return sessions whose start date or any transcript contains ``text``.

        Matching is case-insensitive. Dates match on their ISO form, so
        ``2026-03`` finds every session started in March 2026.
        """

        needle = text.strip()
        if not needle:
            return self.query_sessions(offset=offset, limit=limit, descending=descending)
        pattern = "%" + needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        where = """
            WHERE started_at LIKE ? ESCAPE '\\'
               OR id IN (
                   SELECT s.session_id FROM segments s JOIN transcripts t ON t.segment_id = s.id
                   WHERE t.text LIKE ? ESCAPE '\\'
               )
        """
        return self._page_sessions(where, (pattern, pattern), offset, limit, descending)

    def pending_segments(self) -> List[Segment]:
        """Segments that have not reached a final status, oldest first."""

        with self._connect() as conn:
            rows = conn.execute(
                _SEGMENT_QUERY + " WHERE s.status = ? ORDER BY s.captured_at, s.id",
                (SegmentStatus.PENDING.value,),
            ).fetchall()
        return [_row_to_segment(row) for row in rows]

    def _page_sessions(
        self,
        where: str,
        params: tuple,
        offset: int,
        limit: int,
        descending: bool,
    ) -> List[RecordingSession]:
        if offset < 0 or limit < 0:
            raise StorageError("offset and limit cannot be negative")
        order = "DESC" if descending else "ASC"
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM sessions {where} ORDER BY started_at {order}, id {order} LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
            sessions = [_row_to_session(row) for row in rows]
            segments = self._segments_for(conn, [s.id for s in sessions])
        for session in sessions:
            session.segments = segments[session.id]
        return sessions

    def _segments_for(self, conn: sqlite3.Connection, session_ids: List[str]) -> Dict[str, List[Segment]]:
        grouped: Dict[str, List[Segment]] = {session_id: [] for session_id in session_ids}
        if not session_ids:
            return grouped
        placeholders = ", ".join("?" for _ in session_ids)
        rows = conn.execute(
            _SEGMENT_QUERY + f" WHERE s.session_id IN ({placeholders}) ORDER BY s.captured_at, s.id",
            session_ids,
        )
        for row in rows:
            segment = _row_to_segment(row)
            grouped[segment.session_id].append(segment)
        return grouped


_SEGMENT_QUERY = """
    SELECT s.id, s.session_id, s.file_path, s.captured_at, s.status,
           t.id AS transcript_id, t.text AS transcript_text, t.created_at AS transcript_created_at
    FROM segments s LEFT JOIN transcripts t ON t.segment_id = s.id
"""


def _row_to_session(row: sqlite3.Row) -> RecordingSession:
    return RecordingSession(id=row["id"], started_at=datetime.fromisoformat(row["started_at"]))


def _row_to_segment(row: sqlite3.Row) -> Segment:
    transcript = None
    if row["transcript_id"] is not None:
        transcript = Transcript(
            id=row["transcript_id"],
            text=row["transcript_text"],
            created_at=datetime.fromisoformat(row["transcript_created_at"]),
        )
    return Segment(
        id=row["id"],
        session_id=row["session_id"],
        file_path=row["file_path"],
        captured_at=datetime.fromisoformat(row["captured_at"]),
        status=SegmentStatus(row["status"]),
        transcript=transcript,
    )
