"""Run registry — SQLite persistence for run records.

Key exports:
    RunRegistry — CRUD for runs, job_instances, step_results and step_logs.

The run record (run + its instances + their step results + masked logs) is
the engine's only durable output.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

import aiosqlite

from conduit.engine.models import (
    JobInstance,
    JobState,
    RunRecord,
    RunStatus,
    StepResult,
    StepState,
    TriggerKind,
)

logger = logging.getLogger(__name__)


class RunRegistry:
    """SQLite-backed persistence for run records.

    Takes an already-open aiosqlite connection with ``row_factory`` set to
    ``aiosqlite.Row``. Call `initialize()` to create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        """Create all run tables if they don't exist."""
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Run registry tables initialized")

    # ── Run CRUD ─────────────────────────────────────────────────────────────

    async def create_run(self, run: RunRecord) -> None:
        """Insert a new run."""
        await self._db.execute(
            """
            INSERT INTO runs (
                run_id, workflow_name, trigger_kind, event, status,
                created_at, started_at, completed_at, error_message
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.run_id,
                run.workflow_name,
                run.trigger_kind.value if run.trigger_kind else None,
                json.dumps(run.event, default=str),
                run.status.value,
                _dt_to_str(run.created_at),
                _dt_to_str(run.started_at),
                _dt_to_str(run.completed_at),
                run.error_message,
            ),
        )
        await self._db.commit()

    async def update_run(self, run: RunRecord) -> None:
        """Update a run's mutable fields."""
        await self._db.execute(
            """
            UPDATE runs SET
                status = ?, started_at = ?, completed_at = ?, error_message = ?
            WHERE run_id = ?
            """,
            (
                run.status.value,
                _dt_to_str(run.started_at),
                _dt_to_str(run.completed_at),
                run.error_message,
                run.run_id,
            ),
        )
        await self._db.commit()

    async def get_run(self, run_id: str) -> RunRecord | None:
        """Fetch a run with its job instances and step results."""
        cursor = await self._db.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        run = _row_to_run(row)
        run.instances = await self.get_instances(run_id)
        return run

    async def list_runs(
        self,
        *,
        status: RunStatus | None = None,
        workflow_name: str | None = None,
        limit: int = 20,
    ) -> list[RunRecord]:
        """Most recent runs first. Instances are not loaded."""
        clauses: list[str] = []
        params: list = []
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        if workflow_name:
            clauses.append("workflow_name = ?")
            params.append(workflow_name)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self._db.execute(
            f"SELECT * FROM runs {where} ORDER BY created_at DESC LIMIT ?",
            (*params, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows]

    async def get_active_runs(self) -> list[RunRecord]:
        """Runs that never reached a terminal state."""
        cursor = await self._db.execute(
            "SELECT * FROM runs WHERE status IN (?, ?) ORDER BY created_at",
            (RunStatus.PENDING.value, RunStatus.RUNNING.value),
        )
        rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows]

    async def delete_run(self, run_id: str) -> None:
        """Delete a run and everything recorded under it."""
        for table in ("step_logs", "step_results", "job_instances", "runs"):
            await self._db.execute(f"DELETE FROM {table} WHERE run_id = ?", (run_id,))
        await self._db.commit()

    # ── Job Instances ────────────────────────────────────────────────────────

    async def save_instance(self, run_id: str, instance: JobInstance) -> None:
        """Upsert a job instance and replace its step results."""
        await self._db.execute(
            """
            INSERT INTO job_instances (
                run_id, instance_id, template, matrix, state, reason,
                needs, outputs, artifacts, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id, instance_id) DO UPDATE SET
                state = excluded.state,
                reason = excluded.reason,
                outputs = excluded.outputs,
                artifacts = excluded.artifacts,
                started_at = excluded.started_at,
                completed_at = excluded.completed_at
            """,
            (
                run_id,
                instance.id,
                instance.template,
                json.dumps(instance.matrix),
                instance.state.value,
                instance.reason,
                json.dumps(instance.needs),
                json.dumps(instance.outputs),
                json.dumps(instance.artifacts),
                _dt_to_str(instance.started_at),
                _dt_to_str(instance.completed_at),
            ),
        )
        await self._db.execute(
            "DELETE FROM step_results WHERE run_id = ? AND instance_id = ?",
            (run_id, instance.id),
        )
        for step in instance.steps:
            await self._db.execute(
                """
                INSERT INTO step_results (
                    run_id, instance_id, idx, name, step_id, state, exit_code,
                    log_ref, outputs, started_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    instance.id,
                    step.index,
                    step.name,
                    step.step_id,
                    step.state.value,
                    step.exit_code,
                    step.log_ref,
                    json.dumps(step.outputs),
                    _dt_to_str(step.started_at),
                    _dt_to_str(step.completed_at),
                ),
            )
        await self._db.commit()

    async def get_instances(self, run_id: str) -> list[JobInstance]:
        cursor = await self._db.execute(
            "SELECT * FROM job_instances WHERE run_id = ? ORDER BY rowid", (run_id,)
        )
        instances = [_row_to_instance(r) for r in await cursor.fetchall()]

        cursor = await self._db.execute(
            "SELECT * FROM step_results WHERE run_id = ? ORDER BY instance_id, idx", (run_id,)
        )
        by_instance: dict[str, list[StepResult]] = {}
        for r in await cursor.fetchall():
            by_instance.setdefault(r["instance_id"], []).append(_row_to_step_result(r))
        for inst in instances:
            inst.steps = by_instance.get(inst.id, [])
        return instances

    # ── Logs ─────────────────────────────────────────────────────────────────

    async def write_log(self, run_id: str, log_ref: str, content: str) -> None:
        """Store an already-masked step log under ``log_ref``."""
        await self._db.execute(
            "INSERT OR REPLACE INTO step_logs (log_ref, run_id, content) VALUES (?, ?, ?)",
            (log_ref, run_id, content),
        )
        await self._db.commit()

    async def read_log(self, log_ref: str) -> str | None:
        cursor = await self._db.execute(
            "SELECT content FROM step_logs WHERE log_ref = ?", (log_ref,)
        )
        row = await cursor.fetchone()
        return row["content"] if row else None


# ── Schema ───────────────────────────────────────────────────────────────────


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    workflow_name TEXT NOT NULL,
    trigger_kind TEXT,
    event TEXT DEFAULT '{}',
    status TEXT DEFAULT 'pending',

    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    started_at TEXT,
    completed_at TEXT,

    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_runs_status
    ON runs(status);
CREATE INDEX IF NOT EXISTS idx_runs_workflow
    ON runs(workflow_name, created_at);

CREATE TABLE IF NOT EXISTS job_instances (
    run_id TEXT NOT NULL REFERENCES runs(run_id) ON DELETE CASCADE,
    instance_id TEXT NOT NULL,
    template TEXT NOT NULL,
    matrix TEXT DEFAULT '{}',

    state TEXT DEFAULT 'pending',
    reason TEXT,

    needs TEXT DEFAULT '[]',
    outputs TEXT DEFAULT '{}',
    artifacts TEXT DEFAULT '[]',

    started_at TEXT,
    completed_at TEXT,

    PRIMARY KEY(run_id, instance_id)
);

CREATE TABLE IF NOT EXISTS step_results (
    run_id TEXT NOT NULL,
    instance_id TEXT NOT NULL,
    idx INTEGER NOT NULL,
    name TEXT NOT NULL,
    step_id TEXT,
    state TEXT DEFAULT 'pending',
    exit_code INTEGER,
    log_ref TEXT,
    outputs TEXT DEFAULT '{}',

    started_at TEXT,
    completed_at TEXT,

    PRIMARY KEY(run_id, instance_id, idx)
);

CREATE TABLE IF NOT EXISTS step_logs (
    log_ref TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    content TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_step_logs_run
    ON step_logs(run_id);
"""


# ── Row-to-Model Converters ──────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _loads(raw: str | None, default):
    if not raw:
        return default
    return json.loads(raw)


def _row_to_run(row: aiosqlite.Row) -> RunRecord:
    return RunRecord(
        run_id=row["run_id"],
        workflow_name=row["workflow_name"],
        trigger_kind=TriggerKind(row["trigger_kind"]) if row["trigger_kind"] else None,
        event=_loads(row["event"], {}),
        status=RunStatus(row["status"]),
        created_at=_str_to_dt(row["created_at"]),
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
        error_message=row["error_message"],
    )


def _row_to_instance(row: aiosqlite.Row) -> JobInstance:
    return JobInstance(
        id=row["instance_id"],
        template=row["template"],
        matrix=_loads(row["matrix"], {}),
        state=JobState(row["state"]),
        reason=row["reason"],
        needs=_loads(row["needs"], []),
        outputs=_loads(row["outputs"], {}),
        artifacts=_loads(row["artifacts"], []),
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )


def _row_to_step_result(row: aiosqlite.Row) -> StepResult:
    return StepResult(
        index=row["idx"],
        name=row["name"],
        step_id=row["step_id"],
        state=StepState(row["state"]),
        exit_code=row["exit_code"],
        log_ref=row["log_ref"],
        outputs=_loads(row["outputs"], {}),
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )
