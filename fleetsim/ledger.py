"""Session ledger: durable record of charging sessions and their bills.

Chargers only depend on the three operations of :class:`SessionLedger`
(reserve, fetch start time, record stop). :class:`SqliteSessionLedger`
keeps them in a local SQLite file, running the blocking driver calls in a
worker thread so the event loop never stalls.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

log = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for session ledger failures."""


class SessionExistsError(LedgerError):
    code = "SESSION_EXISTS"

    def __init__(self, session_id: str):
        super().__init__(f"session {session_id} already exists")
        self.session_id = session_id


def _parse_timestamp(ts: str) -> datetime:
    return datetime.fromisoformat(ts.replace("Z", "+00:00"))


def humanize_duration(seconds: float) -> str:
    """Render a duration as ``"Ns"``, ``"Mm Ss"`` or ``"Hh Mm Ss"``."""
    if seconds < 60:
        return f"{int(seconds)}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    return f"{hours}h {minutes}m {int(seconds % 60)}s"


def session_duration(start_ts: str, stop_ts: str) -> Tuple[float, float, str]:
    """Return (seconds, minutes, human) between two ISO-8601 timestamps."""
    seconds = (_parse_timestamp(stop_ts) - _parse_timestamp(start_ts)).total_seconds()
    return seconds, seconds / 60, humanize_duration(seconds)


class SessionLedger(ABC):

    @abstractmethod
    async def reserve_session_start(self, session_id: str, charger_id: str, start_ts: str) -> None:
        """Insert a STARTED row; raise SessionExistsError on duplicate ids."""

    @abstractmethod
    async def fetch_session_start_time(self, session_id: str) -> Optional[str]:
        """Return the recorded start timestamp, or None if unknown."""

    @abstractmethod
    async def record_session_stop(
        self,
        session_id: str,
        stop_ts: str,
        energy_kwh: float,
        stop_reason: str,
        duration_seconds: float,
        duration_minutes: float,
        duration_human: str,
        bill_amount: float,
    ) -> None:
        """Mark a session STOPPED with its energy, duration and bill."""

    # reporting queries; ledgers that only record sessions expose nothing
    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return None

    async def list_sessions(self) -> List[Dict[str, Any]]:
        return []

    def close(self) -> None:
        pass


SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    charger_id TEXT,
    start_ts TEXT,
    stop_ts TEXT,
    energy_kwh REAL DEFAULT 0,
    status TEXT,
    stop_reason TEXT,
    duration_seconds REAL DEFAULT 0,
    duration_minutes REAL DEFAULT 0,
    duration_human TEXT,
    bill_amount REAL DEFAULT 0
)
"""


class SqliteSessionLedger(SessionLedger):
    def __init__(self, path: str = ":memory:"):
        self.path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.execute(SCHEMA)
            self._conn.commit()
        log.info(f"Session ledger ready at {path}")

    def _execute(self, sql: str, args: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            cur = self._conn.execute(sql, args)
            rows = cur.fetchall()
            self._conn.commit()
            return rows

    def _insert_start(self, session_id: str, charger_id: str, start_ts: str) -> None:
        try:
            self._execute(
                "INSERT INTO sessions (id, charger_id, start_ts, status) VALUES (?, ?, ?, ?)",
                (session_id, charger_id, start_ts, "STARTED"),
            )
        except sqlite3.IntegrityError as e:
            raise SessionExistsError(session_id) from e

    async def reserve_session_start(self, session_id: str, charger_id: str, start_ts: str) -> None:
        await asyncio.to_thread(self._insert_start, session_id, charger_id, start_ts)

    async def fetch_session_start_time(self, session_id: str) -> Optional[str]:
        rows = await asyncio.to_thread(
            self._execute, "SELECT start_ts FROM sessions WHERE id = ?", (session_id,)
        )
        if rows:
            return rows[0]["start_ts"]
        return None

    async def record_session_stop(
        self,
        session_id: str,
        stop_ts: str,
        energy_kwh: float,
        stop_reason: str,
        duration_seconds: float,
        duration_minutes: float,
        duration_human: str,
        bill_amount: float,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE sessions
            SET stop_ts = ?, energy_kwh = ?, status = ?, stop_reason = ?,
                duration_seconds = ?, duration_minutes = ?, duration_human = ?, bill_amount = ?
            WHERE id = ?
            """,
            (
                stop_ts, energy_kwh, "STOPPED", stop_reason,
                duration_seconds, duration_minutes, duration_human, bill_amount,
                session_id,
            ),
        )

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        rows = await asyncio.to_thread(
            self._execute, "SELECT * FROM sessions WHERE id = ?", (session_id,)
        )
        return dict(rows[0]) if rows else None

    async def list_sessions(self) -> List[Dict[str, Any]]:
        rows = await asyncio.to_thread(self._execute, "SELECT * FROM sessions ORDER BY start_ts")
        return [dict(r) for r in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
