#!/usr/bin/env python3
"""
SQLite store of previously measured offsets.

A re-run over the same clip pair narrows the search to the neighbourhood
of the stored offset, or reuses the offset outright when asked to. The
sync core itself never touches this store; callers (the CLI) decide when
to read or write it.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import settings
from ..core.types import AnalysisWindow, SyncResult, SyncStatus

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DEFAULT_DB_PATH = _PROJECT_ROOT / "sync_reports" / "offsets.db"


def _ensure_parent(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def get_conn(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Get SQLite connection with WAL mode enabled."""
    dbp = Path(db_path or settings.CACHE_PATH or DEFAULT_DB_PATH)
    _ensure_parent(dbp)
    conn = sqlite3.connect(str(dbp))
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.row_factory = sqlite3.Row
    return conn


class OffsetCache:
    """Offsets keyed by ``(video_key, audio_key)``."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path
        self.migrate()

    def migrate(self) -> None:
        """Create the offsets table if it is missing; safe on every start."""
        conn = get_conn(self.db_path)
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS offsets (
                    video_key TEXT NOT NULL,
                    audio_key TEXT NOT NULL,
                    offset_seconds REAL NOT NULL,
                    confidence REAL NOT NULL,
                    content TEXT,
                    window_start REAL,
                    window_duration REAL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (video_key, audio_key)
                );
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_offsets_updated_at ON offsets(updated_at DESC);"
            )
            conn.commit()
        finally:
            conn.close()

    def store(self, video_key: str, audio_key: str, result: SyncResult) -> bool:
        """
        Persist an accepted result; abstentions and failures are not stored.

        Returns:
            True when a row was written
        """
        if result.status != SyncStatus.OK:
            return False
        conn = get_conn(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO offsets (
                    video_key, audio_key, offset_seconds, confidence, content,
                    window_start, window_duration, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(video_key, audio_key) DO UPDATE SET
                    offset_seconds = excluded.offset_seconds,
                    confidence = excluded.confidence,
                    content = excluded.content,
                    window_start = excluded.window_start,
                    window_duration = excluded.window_duration,
                    updated_at = excluded.updated_at
                """,
                (
                    str(video_key),
                    str(audio_key),
                    result.offset_seconds,
                    result.confidence,
                    result.content.value,
                    result.window.start_seconds if result.window else None,
                    result.window.duration_seconds if result.window else None,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()
        finally:
            conn.close()
        return True

    def lookup(self, video_key: str, audio_key: str) -> Optional[Dict[str, Any]]:
        conn = get_conn(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM offsets WHERE video_key = ? AND audio_key = ?",
                (str(video_key), str(audio_key)),
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def list_entries(self, limit: int = 100) -> List[Dict[str, Any]]:
        conn = get_conn(self.db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM offsets ORDER BY updated_at DESC LIMIT ?", (int(limit),)
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def delete(self, video_key: str, audio_key: str) -> bool:
        conn = get_conn(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM offsets WHERE video_key = ? AND audio_key = ?",
                (str(video_key), str(audio_key)),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def cached_window(self, video_key: str, audio_key: str) -> Optional[AnalysisWindow]:
        """Reference window the stored offset was measured over, if any."""
        entry = self.lookup(video_key, audio_key)
        if entry is None or entry.get("window_start") is None:
            return None
        return AnalysisWindow(start_seconds=entry["window_start"], duration_seconds=entry["window_duration"])

    def window_around(self, video_key: str, audio_key: str, margin_seconds: Optional[float] = None,
                      duration_b: Optional[float] = None) -> Optional[AnalysisWindow]:
        """
        Segment of the audio source to search on a re-run.

        The stored reference window is moved by the stored offset, so it sits
        where the matching audio was found, and widened by ``margin_seconds``
        on each side. ``duration_b`` bounds it to the audio source when given.
        Returns None when nothing usable is stored for the pair.
        """
        margin_seconds = settings.CACHE_MARGIN if margin_seconds is None else margin_seconds
        entry = self.lookup(video_key, audio_key)
        if entry is None or entry.get("window_start") is None:
            return None
        shifted_start = entry["window_start"] + entry["offset_seconds"]
        start = max(0.0, shifted_start - margin_seconds)
        end = shifted_start + entry["window_duration"] + margin_seconds
        if duration_b is not None:
            end = min(end, duration_b)
        if end <= start:
            return None
        return AnalysisWindow(start_seconds=start, duration_seconds=end - start)
