"""Session persistence backends."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .schema import Session

DEFAULT_DB_PATH = Path("data/sessions.sqlite")
LOGGER = logging.getLogger(__name__)


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


class InMemorySessionStore:
    """Process-local session store; loads return independent copies."""

    def __init__(self, sessions: Optional[List[Session]] = None) -> None:
        self._sessions: Dict[str, Session] = {}
        for session in sessions or []:
            self._sessions[session.session_id] = session.model_copy(deep=True)
        self.save_count = 0

    async def load(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session is not None else None

    async def save(self, session: Session) -> None:
        self._sessions[session.session_id] = session.model_copy(deep=True)
        self.save_count += 1


class SQLiteSessionStore:
    """SQLite-backed session persistence storing each session as a JSON document."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path).resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = self._open_connection()
        self._bootstrap()

    def _open_connection(self) -> sqlite3.Connection:
        # Calls arrive from worker threads; access is serialised by ``_lock``.
        connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
        connection.row_factory = sqlite3.Row
        return connection

    def _bootstrap(self) -> None:
        assert self._conn is not None
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "SQLiteSessionStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _require_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Session store is closed")
        return self._conn

    # ----------------------------------------------------------- sync API
    def get_session(self, session_id: str) -> Optional[Session]:
        conn = self._require_connection()
        with self._lock:
            row = conn.execute("SELECT payload FROM sessions WHERE id = ?", (session_id,)).fetchone()
        if row is None:
            return None
        return Session.model_validate(json.loads(row["payload"]))

    def put_session(self, session: Session) -> None:
        conn = self._require_connection()
        payload = json.dumps(session.model_dump(mode="json"))
        with self._lock:
            conn.execute(
                """
                INSERT INTO sessions (id, payload, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
                """,
                (session.session_id, payload, _as_iso(session.created_at), _as_iso(session.last_active_at)),
            )
            conn.commit()

    def list_session_ids(self) -> List[str]:
        conn = self._require_connection()
        with self._lock:
            rows = conn.execute("SELECT id FROM sessions ORDER BY updated_at DESC").fetchall()
        return [row["id"] for row in rows]

    # ---------------------------------------------------------- async API
    async def load(self, session_id: str) -> Optional[Session]:
        return await asyncio.to_thread(self.get_session, session_id)

    async def save(self, session: Session) -> None:
        await asyncio.to_thread(self.put_session, session)
        LOGGER.debug("Saved session %s (%s turns)", session.session_id, len(session.message_history))


__all__ = ["DEFAULT_DB_PATH", "InMemorySessionStore", "SQLiteSessionStore"]
