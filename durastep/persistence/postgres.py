"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any

import asyncpg

from ..exceptions import DuplicateStepError
from ..utils.clock import utcnow
from .models import CallAttempt, RunStatus, StepKind, StepRecord, TimerEntry, WorkflowRun
from .repository import WorkflowRepository


def _json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist the step ledger using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                url TEXT,
                payload TEXT,
                headers JSONB NOT NULL,
                result TEXT,
                error TEXT,
                failed_step INTEGER,
                attempt INTEGER NOT NULL DEFAULT 0,
                next_delivery_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS steps (
                run_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                kind TEXT NOT NULL,
                name TEXT NOT NULL,
                input_fingerprint TEXT NOT NULL,
                result_body TEXT,
                result_status INTEGER,
                result_headers JSONB NOT NULL,
                error TEXT,
                wake_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (run_id, step_index)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS call_attempts (
                run_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                attempt INTEGER NOT NULL,
                status INTEGER,
                headers JSONB NOT NULL,
                body TEXT,
                error TEXT,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                next_retry_at TIMESTAMPTZ,
                PRIMARY KEY (run_id, step_index, attempt)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS timers (
                run_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                wake_at TIMESTAMPTZ NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                fired_at TIMESTAMPTZ,
                PRIMARY KEY (run_id, step_index)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS run_leases (
                run_id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                expires_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    @staticmethod
    def _run_from_row(row: Any, steps: list[StepRecord]) -> WorkflowRun:
        return WorkflowRun(
            run_id=row["run_id"],
            status=RunStatus(row["status"]),
            url=row["url"],
            payload=row["payload"],
            headers=_json(row["headers"]),
            result=row["result"],
            error=row["error"],
            failed_step=row["failed_step"],
            attempt=row["attempt"],
            next_delivery_at=row["next_delivery_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            steps=steps,
        )

    @staticmethod
    def _step_from_row(row: Any) -> StepRecord:
        return StepRecord(
            run_id=row["run_id"],
            index=row["step_index"],
            kind=StepKind(row["kind"]),
            name=row["name"],
            input_fingerprint=row["input_fingerprint"],
            result_body=row["result_body"],
            result_status=row["result_status"],
            result_headers=_json(row["result_headers"]),
            error=row["error"],
            wake_at=row["wake_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _timer_from_row(row: Any) -> TimerEntry:
        return TimerEntry(
            run_id=row["run_id"],
            step_index=row["step_index"],
            wake_at=row["wake_at"],
            created_at=row["created_at"],
            fired_at=row["fired_at"],
        )

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO runs (run_id, status, url, payload, headers, result, error,
                                  failed_step, attempt, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                ON CONFLICT (run_id) DO NOTHING
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
                run.created_at,
                run.updated_at,
            )
        finally:
            await conn.close()
        return await self.get_run(run.run_id)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM runs WHERE run_id = $1", run_id)
            if not row:
                return None
            step_rows = await conn.fetch(
                "SELECT * FROM steps WHERE run_id = $1 ORDER BY step_index", run_id
            )
        finally:
            await conn.close()
        return self._run_from_row(row, [self._step_from_row(r) for r in step_rows])

    async def get_status(self, run_id: str) -> RunStatus | None:
        conn = await self._connect()
        try:
            status = await conn.fetchval(
                "SELECT status FROM runs WHERE run_id = $1", run_id
            )
        finally:
            await conn.close()
        return RunStatus(status) if status else None

    async def list_runs(self) -> list[WorkflowRun]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT * FROM runs ORDER BY created_at")
        finally:
            await conn.close()
        return [self._run_from_row(r, []) for r in rows]

    async def save_run(self, run: WorkflowRun) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE runs
                SET status = $1, url = $2, payload = $3, headers = $4, result = $5,
                    error = $6, failed_step = $7, attempt = $8, updated_at = $9
                WHERE run_id = $10 AND status != $11
                """,
                run.status.value,
                run.url,
                run.payload,
                json.dumps(run.headers),
                run.result,
                run.error,
                run.failed_step,
                run.attempt,
                utcnow(),
                run.run_id,
                RunStatus.CANCELLED.value,
            )
        finally:
            await conn.close()

    async def cancel_run(self, run_id: str) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE runs SET status = $1, updated_at = $2 WHERE run_id = $3 AND status = ANY($4::text[])",
                RunStatus.CANCELLED.value,
                utcnow(),
                run_id,
                [RunStatus.PENDING.value, RunStatus.SUSPENDED.value],
            )
        finally:
            await conn.close()
        return result.endswith(" 1")

    async def schedule_delivery(self, run_id: str, deliver_at: datetime) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE runs SET next_delivery_at = $1 WHERE run_id = $2 AND status = ANY($3::text[])",
                deliver_at,
                run_id,
                [RunStatus.PENDING.value, RunStatus.SUSPENDED.value],
            )
        finally:
            await conn.close()

    async def list_overdue_runs(self, now: datetime) -> list[WorkflowRun]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT * FROM runs
                WHERE status = ANY($1::text[]) AND next_delivery_at <= $2
                ORDER BY next_delivery_at
                """,
                [RunStatus.PENDING.value, RunStatus.SUSPENDED.value],
                now,
            )
        finally:
            await conn.close()
        return [self._run_from_row(r, []) for r in rows]

    # ------------------------------------------------------------------
    async def append_step(self, record: StepRecord) -> None:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                INSERT INTO steps (run_id, step_index, kind, name, input_fingerprint,
                                   result_body, result_status, result_headers, error,
                                   wake_at, completed_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                ON CONFLICT (run_id, step_index) DO NOTHING
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
                record.wake_at,
                record.completed_at,
            )
            if result.endswith(" 1"):
                return
            row = await conn.fetchrow(
                "SELECT * FROM steps WHERE run_id = $1 AND step_index = $2",
                record.run_id,
                record.index,
            )
        finally:
            await conn.close()
        if row is None or not self._step_from_row(row).same_content(record):
            raise DuplicateStepError(record.run_id, record.index)

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM steps WHERE run_id = $1 ORDER BY step_index", run_id
            )
        finally:
            await conn.close()
        return [self._step_from_row(r) for r in rows]

    async def record_call_attempt(self, attempt: CallAttempt) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO call_attempts (run_id, step_index, attempt, status, headers,
                                           body, error, started_at, completed_at,
                                           next_retry_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (run_id, step_index, attempt) DO NOTHING
                """,
                attempt.run_id,
                attempt.step_index,
                attempt.attempt,
                attempt.status,
                json.dumps(attempt.headers),
                attempt.body,
                attempt.error,
                attempt.started_at,
                attempt.completed_at,
                attempt.next_retry_at,
            )
        finally:
            await conn.close()

    async def list_call_attempts(
        self, run_id: str, step_index: int
    ) -> list[CallAttempt]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM call_attempts WHERE run_id = $1 AND step_index = $2 ORDER BY attempt",
                run_id,
                step_index,
            )
        finally:
            await conn.close()
        return [
            CallAttempt(
                run_id=r["run_id"],
                step_index=r["step_index"],
                attempt=r["attempt"],
                status=r["status"],
                headers=_json(r["headers"]),
                body=r["body"],
                error=r["error"],
                started_at=r["started_at"],
                completed_at=r["completed_at"],
                next_retry_at=r["next_retry_at"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    async def put_timer(self, entry: TimerEntry) -> TimerEntry:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO timers (run_id, step_index, wake_at, created_at, fired_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (run_id, step_index) DO NOTHING
                """,
                entry.run_id,
                entry.step_index,
                entry.wake_at,
                entry.created_at,
                entry.fired_at,
            )
            row = await conn.fetchrow(
                "SELECT * FROM timers WHERE run_id = $1 AND step_index = $2",
                entry.run_id,
                entry.step_index,
            )
        finally:
            await conn.close()
        return self._timer_from_row(row)

    async def get_timer(self, run_id: str, step_index: int) -> TimerEntry | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM timers WHERE run_id = $1 AND step_index = $2",
                run_id,
                step_index,
            )
        finally:
            await conn.close()
        return self._timer_from_row(row) if row else None

    async def mark_timer_fired(
        self, run_id: str, step_index: int, fired_at: datetime
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE timers SET fired_at = $1 WHERE run_id = $2 AND step_index = $3 AND fired_at IS NULL",
                fired_at,
                run_id,
                step_index,
            )
        finally:
            await conn.close()

    async def list_due_timers(self, now: datetime) -> list[TimerEntry]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM timers WHERE fired_at IS NULL AND wake_at <= $1 ORDER BY wake_at",
                now,
            )
        finally:
            await conn.close()
        return [self._timer_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    async def acquire_lease(self, run_id: str, owner: str, ttl: float) -> bool:
        now = utcnow()
        conn = await self._connect()
        try:
            acquired = await conn.fetchval(
                """
                INSERT INTO run_leases (run_id, owner, expires_at)
                VALUES ($1, $2, $3)
                ON CONFLICT (run_id) DO UPDATE
                    SET owner = EXCLUDED.owner, expires_at = EXCLUDED.expires_at
                    WHERE run_leases.owner = EXCLUDED.owner OR run_leases.expires_at < $4
                RETURNING owner
                """,
                run_id,
                owner,
                now + timedelta(seconds=ttl),
                now,
            )
        finally:
            await conn.close()
        return acquired == owner

    async def release_lease(self, run_id: str, owner: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "DELETE FROM run_leases WHERE run_id = $1 AND owner = $2", run_id, owner
            )
        finally:
            await conn.close()
