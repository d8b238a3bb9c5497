"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from ..exceptions import DuplicateStepError
from ..utils.clock import utcnow
from .models import CallAttempt, RunStatus, StepKind, StepRecord, TimerEntry, WorkflowRun
from .repository import WorkflowRepository


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist the step ledger using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                url TEXT,
                payload TEXT,
                headers TEXT NOT NULL,
                result TEXT,
                error TEXT,
                failed_step INTEGER,
                attempt INTEGER NOT NULL DEFAULT 0,
                next_delivery_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS steps (
                run_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                kind TEXT NOT NULL,
                name TEXT NOT NULL,
                input_fingerprint TEXT NOT NULL,
                result_body TEXT,
                result_status INTEGER,
                result_headers TEXT NOT NULL,
                error TEXT,
                wake_at TEXT,
                completed_at TEXT NOT NULL,
                PRIMARY KEY (run_id, step_index)
            );
            CREATE TABLE IF NOT EXISTS call_attempts (
                run_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                attempt INTEGER NOT NULL,
                status INTEGER,
                headers TEXT NOT NULL,
                body TEXT,
                error TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                next_retry_at TEXT,
                PRIMARY KEY (run_id, step_index, attempt)
            );
            CREATE TABLE IF NOT EXISTS timers (
                run_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                wake_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                fired_at TEXT,
                PRIMARY KEY (run_id, step_index)
            );
            CREATE TABLE IF NOT EXISTS run_leases (
                run_id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _run_from_row(row: sqlite3.Row, steps: list[StepRecord]) -> WorkflowRun:
        return WorkflowRun(
            run_id=row["run_id"],
            status=RunStatus(row["status"]),
            url=row["url"],
            payload=row["payload"],
            headers=json.loads(row["headers"]),
            result=row["result"],
            error=row["error"],
            failed_step=row["failed_step"],
            attempt=row["attempt"],
            next_delivery_at=_dt(row["next_delivery_at"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            steps=steps,
        )

    @staticmethod
    def _step_from_row(row: sqlite3.Row) -> StepRecord:
        return StepRecord(
            run_id=row["run_id"],
            index=row["step_index"],
            kind=StepKind(row["kind"]),
            name=row["name"],
            input_fingerprint=row["input_fingerprint"],
            result_body=row["result_body"],
            result_status=row["result_status"],
            result_headers=json.loads(row["result_headers"]),
            error=row["error"],
            wake_at=_dt(row["wake_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    @staticmethod
    def _attempt_from_row(row: sqlite3.Row) -> CallAttempt:
        return CallAttempt(
            run_id=row["run_id"],
            step_index=row["step_index"],
            attempt=row["attempt"],
            status=row["status"],
            headers=json.loads(row["headers"]),
            body=row["body"],
            error=row["error"],
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            next_retry_at=_dt(row["next_retry_at"]),
        )

    @staticmethod
    def _timer_from_row(row: sqlite3.Row) -> TimerEntry:
        return TimerEntry(
            run_id=row["run_id"],
            step_index=row["step_index"],
            wake_at=_dt(row["wake_at"]),
            created_at=_dt(row["created_at"]),
            fired_at=_dt(row["fired_at"]),
        )

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO runs
                (run_id, status, url, payload, headers, result, error,
                 failed_step, attempt, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            run.run_id,
            run.status.value,
            run.url,
            run.payload,
            json.dumps(run.headers),
            run.result,
            run.error,
            run.failed_step,
            run.attempt,
            _ts(run.created_at),
            _ts(run.updated_at),
        )
        return await self.get_run(run.run_id)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM runs WHERE run_id = ?", run_id
        )
        if not row:
            return None
        steps = await self.get_steps(run_id)
        return self._run_from_row(row, steps)

    async def get_status(self, run_id: str) -> RunStatus | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT status FROM runs WHERE run_id = ?", run_id
        )
        return RunStatus(row["status"]) if row else None

    async def list_runs(self) -> list[WorkflowRun]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM runs ORDER BY created_at"
        )
        return [self._run_from_row(row, []) for row in rows]

    async def save_run(self, run: WorkflowRun) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE runs
            SET status = ?, url = ?, payload = ?, headers = ?, result = ?,
                error = ?, failed_step = ?, attempt = ?, updated_at = ?
            WHERE run_id = ? AND status != ?
            """,
            run.status.value,
            run.url,
            run.payload,
            json.dumps(run.headers),
            run.result,
            run.error,
            run.failed_step,
            run.attempt,
            _ts(utcnow()),
            run.run_id,
            RunStatus.CANCELLED.value,
        )

    async def cancel_run(self, run_id: str) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET status = ?, updated_at = ? WHERE run_id = ? AND status IN (?, ?)",
            RunStatus.CANCELLED.value,
            _ts(utcnow()),
            run_id,
            RunStatus.PENDING.value,
            RunStatus.SUSPENDED.value,
        )
        return changed > 0

    async def schedule_delivery(self, run_id: str, deliver_at: datetime) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET next_delivery_at = ? WHERE run_id = ? AND status IN (?, ?)",
            _ts(deliver_at),
            run_id,
            RunStatus.PENDING.value,
            RunStatus.SUSPENDED.value,
        )

    async def list_overdue_runs(self, now: datetime) -> list[WorkflowRun]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT * FROM runs
            WHERE status IN (?, ?) AND next_delivery_at IS NOT NULL AND next_delivery_at <= ?
            ORDER BY next_delivery_at
            """,
            RunStatus.PENDING.value,
            RunStatus.SUSPENDED.value,
            _ts(now),
        )
        return [self._run_from_row(row, []) for row in rows]

    # ------------------------------------------------------------------
    # Ledger
    async def append_step(self, record: StepRecord) -> None:
        inserted = await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO steps
                (run_id, step_index, kind, name, input_fingerprint, result_body,
                 result_status, result_headers, error, wake_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            record.run_id,
            record.index,
            record.kind.value,
            record.name,
            record.input_fingerprint,
            record.result_body,
            record.result_status,
            json.dumps(record.result_headers),
            record.error,
            _ts(record.wake_at),
            _ts(record.completed_at),
        )
        if inserted:
            return
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM steps WHERE run_id = ? AND step_index = ?",
            record.run_id,
            record.index,
        )
        if row is None or not self._step_from_row(row).same_content(record):
            raise DuplicateStepError(record.run_id, record.index)

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM steps WHERE run_id = ? ORDER BY step_index",
            run_id,
        )
        return [self._step_from_row(r) for r in rows]

    async def record_call_attempt(self, attempt: CallAttempt) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO call_attempts
                (run_id, step_index, attempt, status, headers, body, error,
                 started_at, completed_at, next_retry_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            attempt.run_id,
            attempt.step_index,
            attempt.attempt,
            attempt.status,
            json.dumps(attempt.headers),
            attempt.body,
            attempt.error,
            _ts(attempt.started_at),
            _ts(attempt.completed_at),
            _ts(attempt.next_retry_at),
        )

    async def list_call_attempts(
        self, run_id: str, step_index: int
    ) -> list[CallAttempt]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM call_attempts WHERE run_id = ? AND step_index = ? ORDER BY attempt",
            run_id,
            step_index,
        )
        return [self._attempt_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Timers
    async def put_timer(self, entry: TimerEntry) -> TimerEntry:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR IGNORE INTO timers (run_id, step_index, wake_at, created_at, fired_at) VALUES (?, ?, ?, ?, ?)",
            entry.run_id,
            entry.step_index,
            _ts(entry.wake_at),
            _ts(entry.created_at),
            _ts(entry.fired_at),
        )
        return await self.get_timer(entry.run_id, entry.step_index)

    async def get_timer(self, run_id: str, step_index: int) -> TimerEntry | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM timers WHERE run_id = ? AND step_index = ?",
            run_id,
            step_index,
        )
        return self._timer_from_row(row) if row else None

    async def mark_timer_fired(
        self, run_id: str, step_index: int, fired_at: datetime
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE timers SET fired_at = ? WHERE run_id = ? AND step_index = ? AND fired_at IS NULL",
            _ts(fired_at),
            run_id,
            step_index,
        )

    async def list_due_timers(self, now: datetime) -> list[TimerEntry]:
        # ISO strings with a fixed UTC offset compare chronologically
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM timers WHERE fired_at IS NULL AND wake_at <= ? ORDER BY wake_at",
            _ts(now),
        )
        return [self._timer_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Leases
    def _acquire_lease(self, run_id: str, owner: str, ttl: float) -> bool:
        now = utcnow()
        expires_at = _ts(now + timedelta(seconds=ttl))
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "INSERT OR IGNORE INTO run_leases (run_id, owner, expires_at) VALUES (?, ?, ?)",
                (run_id, owner, expires_at),
            )
            if cur.rowcount == 0:
                cur.execute(
                    """
                    UPDATE run_leases SET owner = ?, expires_at = ?
                    WHERE run_id = ? AND (owner = ? OR expires_at < ?)
                    """,
                    (owner, expires_at, run_id, owner, _ts(now)),
                )
            acquired = cur.rowcount > 0
            self._conn.commit()
            return acquired

    async def acquire_lease(self, run_id: str, owner: str, ttl: float) -> bool:
        return await asyncio.to_thread(self._acquire_lease, run_id, owner, ttl)

    async def release_lease(self, run_id: str, owner: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM run_leases WHERE run_id = ? AND owner = ?",
            run_id,
            owner,
        )

    def close(self) -> None:
        self._conn.close()
