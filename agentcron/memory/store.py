"""SQLite store for agentcron.

5 tables:
    job_state, job_runs        — engine state (aggregate + append-only history)
    agents, schedules          — dynamic job definitions
    delivery_queue             — deliveries waiting for retry
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from agentcron.core.cron.types import ERROR_TEXT_LIMIT, JobState, RunRecord
from agentcron.memory.models import Agent, PendingDelivery, Schedule, ScheduleUpdate

_STATE_FIELDS = frozenset({
    "last_run_at",
    "next_run_at",
    "run_count",
    "last_error",
    "last_duration_ms",
    "last_cost_usd",
})

_AGENT_COLUMNS = (
    "name", "description", "model", "system_prompt", "max_turns",
    "working_directory", "tools", "announce", "suppress_pattern",
    "deliver_to", "enabled", "created_at", "updated_at",
)


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class MemoryStore:
    """SQLite store — job state, run history and dynamic definitions.

    Every method opens its own connection and commits before returning, so a
    record is durable as soon as the call completes.
    """

    def __init__(self, db_path: str = "data/agentcron.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info(f"MemoryStore initialized: {db_path}")

    @contextmanager
    def _get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.executescript(_SCHEMA)
            conn.commit()

    def close(self) -> None:
        """Fold the WAL back into the database file.

        Later calls still work; each one reopens its own connection.
        """
        with self._get_conn() as conn:
            conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        logger.debug(f"MemoryStore checkpointed: {self.db_path}")

    # ════════════════════════════════════════════════════════════
    # JOB STATE (aggregate, one row per job)
    # ════════════════════════════════════════════════════════════

    def upsert_job_state(self, job_id: str, **fields: Any) -> None:
        """Insert or partially update a job's aggregate state."""
        unknown = set(fields) - _STATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown job_state fields: {sorted(unknown)}")
        with self._get_conn() as conn:
            self._upsert_state(conn, job_id, fields)
            conn.commit()

    def _upsert_state(self, conn, job_id: str, fields: dict[str, Any]) -> None:
        if not fields:
            conn.execute(
                "INSERT OR IGNORE INTO job_state (job_id) VALUES (?)", (job_id,)
            )
            return
        cols = list(fields)
        conn.execute(
            f"""INSERT INTO job_state (job_id, {", ".join(cols)})
                VALUES (?, {", ".join("?" for _ in cols)})
                ON CONFLICT(job_id) DO UPDATE SET
                {", ".join(f"{c} = excluded.{c}" for c in cols)}""",
            (job_id, *(_iso(fields[c]) for c in cols)),
        )

    def get_job_state(self, job_id: str) -> JobState | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM job_state WHERE job_id = ?", (job_id,)
            ).fetchone()
        return JobState(**dict(row)) if row else None

    def list_job_states(self) -> list[JobState]:
        with self._get_conn() as conn:
            rows = conn.execute("SELECT * FROM job_state ORDER BY job_id").fetchall()
        return [JobState(**dict(r)) for r in rows]

    # ════════════════════════════════════════════════════════════
    # JOB RUNS (append-only history)
    # ════════════════════════════════════════════════════════════

    def append_run(self, record: RunRecord) -> int:
        """Append a run record. Returns its row id."""
        with self._get_conn() as conn:
            run_id = self._insert_run(conn, record)
            conn.commit()
        return run_id

    def _insert_run(self, conn, record: RunRecord) -> int:
        cursor = conn.execute(
            """INSERT INTO job_runs
               (job_id, started_at, finished_at, duration_ms, cost_usd,
                num_turns, is_error, result_text)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.job_id,
                _iso(record.started_at),
                _iso(record.finished_at),
                record.duration_ms,
                record.cost_usd,
                record.num_turns,
                int(record.is_error),
                record.result_text,
            ),
        )
        return cursor.lastrowid

    def record_run(self, record: RunRecord) -> int:
        """Append a run and fold it into the job's aggregate state.

        Both writes share one transaction.
        """
        last_error = record.result_text[:ERROR_TEXT_LIMIT] if record.is_error else None
        with self._get_conn() as conn:
            run_id = self._insert_run(conn, record)
            conn.execute(
                """INSERT INTO job_state
                   (job_id, last_run_at, run_count, last_error,
                    last_duration_ms, last_cost_usd)
                   VALUES (?, ?, 1, ?, ?, ?)
                   ON CONFLICT(job_id) DO UPDATE SET
                     last_run_at = excluded.last_run_at,
                     run_count = run_count + 1,
                     last_error = excluded.last_error,
                     last_duration_ms = excluded.last_duration_ms,
                     last_cost_usd = excluded.last_cost_usd""",
                (
                    record.job_id,
                    _iso(record.finished_at),
                    last_error,
                    record.duration_ms,
                    record.cost_usd,
                ),
            )
            conn.commit()
        return run_id

    def list_runs(self, job_id: str, limit: int = 10) -> list[RunRecord]:
        """Most recent runs first.

        Falls back to alias ids (``<job_id>-...``) when nothing is stored
        under the exact id, so an agent id finds its derived schedule runs.
        """
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM job_runs WHERE job_id = ? ORDER BY id DESC LIMIT ?",
                (job_id, limit),
            ).fetchall()
            if not rows:
                rows = conn.execute(
                    """SELECT * FROM job_runs WHERE job_id LIKE ? ESCAPE '\\'
                       ORDER BY id DESC LIMIT ?""",
                    (_escape_like(job_id) + "-%", limit),
                ).fetchall()
        return [_row_to_run(r) for r in rows]

    def count_runs(self, job_id: str | None = None) -> int:
        with self._get_conn() as conn:
            if job_id:
                row = conn.execute(
                    "SELECT COUNT(*) FROM job_runs WHERE job_id = ?", (job_id,)
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM job_runs").fetchone()
        return row[0]

    # ════════════════════════════════════════════════════════════
    # AGENTS
    # ════════════════════════════════════════════════════════════

    def add_agent(self, agent: Agent) -> Agent:
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO agents
                   (id, name, description, model, system_prompt, max_turns,
                    working_directory, tools, announce, suppress_pattern,
                    deliver_to, enabled)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    agent.id, agent.name, agent.description, agent.model,
                    agent.system_prompt, agent.max_turns, agent.working_directory,
                    json.dumps(agent.tools) if agent.tools is not None else None,
                    int(agent.announce), agent.suppress_pattern, agent.deliver_to,
                    int(agent.enabled),
                ),
            )
            conn.commit()
        logger.info(f"Agent created: {agent.id}")
        return self.get_agent(agent.id)

    def get_agent(self, agent_id: str) -> Agent | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM agents WHERE id = ?", (agent_id,)
            ).fetchone()
        return Agent(**dict(row)) if row else None

    def list_agents(self) -> list[Agent]:
        with self._get_conn() as conn:
            rows = conn.execute("SELECT * FROM agents ORDER BY name").fetchall()
        return [Agent(**dict(r)) for r in rows]

    def set_agent_enabled(self, agent_id: str, enabled: bool) -> bool:
        with self._get_conn() as conn:
            cursor = conn.execute(
                """UPDATE agents SET enabled = ?, updated_at = CURRENT_TIMESTAMP
                   WHERE id = ?""",
                (int(enabled), agent_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    def remove_agent(self, agent_id: str) -> bool:
        """Delete an agent and its schedules. Returns True if it existed."""
        with self._get_conn() as conn:
            conn.execute("DELETE FROM schedules WHERE agent_id = ?", (agent_id,))
            cursor = conn.execute("DELETE FROM agents WHERE id = ?", (agent_id,))
            conn.commit()
        if cursor.rowcount > 0:
            logger.info(f"Agent deleted: {agent_id}")
            return True
        return False

    # ════════════════════════════════════════════════════════════
    # SCHEDULES
    # ════════════════════════════════════════════════════════════

    def add_schedule(self, schedule: Schedule) -> Schedule:
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO schedules
                   (id, agent_id, name, schedule, timezone, prompt, enabled)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    schedule.id, schedule.agent_id, schedule.name,
                    schedule.schedule, schedule.timezone, schedule.prompt,
                    int(schedule.enabled),
                ),
            )
            conn.commit()
        logger.info(f"Schedule created: {schedule.id} (agent={schedule.agent_id})")
        return self.get_schedule(schedule.id)

    def get_schedule(self, schedule_id: str) -> Schedule | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM schedules WHERE id = ?", (schedule_id,)
            ).fetchone()
        return Schedule(**dict(row)) if row else None

    def list_schedules(
        self, agent_id: str | None = None, enabled: bool | None = None
    ) -> list[Schedule]:
        sql = "SELECT * FROM schedules WHERE 1=1"
        params: list[Any] = []
        if enabled is not None:
            sql += " AND enabled = ?"
            params.append(int(enabled))
        if agent_id:
            sql += " AND agent_id = ?"
            params.append(agent_id)
        sql += " ORDER BY id"
        with self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Schedule(**dict(r)) for r in rows]

    def update_schedule(
        self, schedule_id: str, update: ScheduleUpdate
    ) -> Schedule | None:
        """Apply a partial update. Returns the new row, None if missing."""
        changes = update.changes()
        if not changes:
            return self.get_schedule(schedule_id)
        if "enabled" in changes:
            changes["enabled"] = int(changes["enabled"])
        assignments = ", ".join(f"{col} = ?" for col in changes)
        with self._get_conn() as conn:
            cursor = conn.execute(
                f"""UPDATE schedules
                    SET {assignments}, updated_at = CURRENT_TIMESTAMP
                    WHERE id = ?""",
                (*changes.values(), schedule_id),
            )
            conn.commit()
        if cursor.rowcount == 0:
            return None
        logger.info(f"Schedule updated: {schedule_id}")
        return self.get_schedule(schedule_id)

    def remove_schedule(self, schedule_id: str) -> bool:
        with self._get_conn() as conn:
            cursor = conn.execute(
                "DELETE FROM schedules WHERE id = ?", (schedule_id,)
            )
            conn.commit()
        if cursor.rowcount > 0:
            logger.info(f"Schedule deleted: {schedule_id}")
            return True
        return False

    def list_enabled_schedules(self) -> list[tuple[Schedule, Agent]]:
        """Enabled schedules joined with their (enabled) agents."""
        agent_cols = ", ".join(f"a.{c} AS agent_{c}" for c in _AGENT_COLUMNS)
        with self._get_conn() as conn:
            rows = conn.execute(
                f"""SELECT s.*, {agent_cols}
                    FROM schedules s JOIN agents a ON a.id = s.agent_id
                    WHERE s.enabled = 1 AND a.enabled = 1
                    ORDER BY s.id"""
            ).fetchall()
        pairs = []
        for r in rows:
            row = dict(r)
            agent = Agent(
                id=row["agent_id"],
                **{c: row.pop(f"agent_{c}") for c in _AGENT_COLUMNS},
            )
            pairs.append((Schedule(**row), agent))
        return pairs

    # ════════════════════════════════════════════════════════════
    # DELIVERY QUEUE (retry with backoff)
    # ════════════════════════════════════════════════════════════

    def enqueue_delivery(
        self,
        target: str,
        text: str,
        next_attempt_at: datetime,
        error: str | None = None,
        max_attempts: int = 5,
    ) -> int:
        """Persist a failed delivery for retry (first attempt already made)."""
        with self._get_conn() as conn:
            cursor = conn.execute(
                """INSERT INTO delivery_queue
                   (target, text, attempts, max_attempts, next_attempt_at, last_error)
                   VALUES (?, ?, 1, ?, ?, ?)""",
                (target, text, max_attempts, _iso(next_attempt_at), error),
            )
            conn.commit()
        return cursor.lastrowid

    def get_due_deliveries(
        self, now: datetime, limit: int = 10
    ) -> list[PendingDelivery]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM delivery_queue
                   WHERE next_attempt_at <= ?
                   ORDER BY id ASC LIMIT ?""",
                (_iso(now), limit),
            ).fetchall()
        return [PendingDelivery(**dict(r)) for r in rows]

    def reschedule_delivery(
        self, delivery_id: int, attempts: int, next_attempt_at: datetime, error: str
    ) -> None:
        with self._get_conn() as conn:
            conn.execute(
                """UPDATE delivery_queue
                   SET attempts = ?, next_attempt_at = ?, last_error = ?
                   WHERE id = ?""",
                (attempts, _iso(next_attempt_at), error, delivery_id),
            )
            conn.commit()

    def remove_delivery(self, delivery_id: int) -> None:
        with self._get_conn() as conn:
            conn.execute("DELETE FROM delivery_queue WHERE id = ?", (delivery_id,))
            conn.commit()

    def count_pending_deliveries(self) -> int:
        with self._get_conn() as conn:
            return conn.execute("SELECT COUNT(*) FROM delivery_queue").fetchone()[0]


def _row_to_run(row: sqlite3.Row) -> RunRecord:
    data = dict(row)
    data.pop("created_at", None)
    data["result_text"] = data.get("result_text") or ""
    return RunRecord(**data)


# ════════════════════════════════════════════════════════════
# SQL SCHEMA
# ════════════════════════════════════════════════════════════

_SCHEMA = """
-- 1. Aggregate job state (one row per job id, never deleted automatically)
CREATE TABLE IF NOT EXISTS job_state (
    job_id TEXT PRIMARY KEY,
    last_run_at TEXT,
    next_run_at TEXT,
    run_count INTEGER DEFAULT 0,
    last_error TEXT,
    last_duration_ms INTEGER,
    last_cost_usd REAL
);

-- 2. Run history (append-only; id gives most-recent-first order)
CREATE TABLE IF NOT EXISTS job_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT NOT NULL,
    duration_ms INTEGER DEFAULT 0,
    cost_usd REAL DEFAULT 0,
    num_turns INTEGER DEFAULT 0,
    is_error INTEGER DEFAULT 0,
    result_text TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_job_runs_job ON job_runs(job_id, id DESC);

-- 3. Agents (dynamic source: what runs)
CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    model TEXT,
    system_prompt TEXT,
    max_turns INTEGER,
    working_directory TEXT,
    tools TEXT,
    announce INTEGER DEFAULT 1,
    suppress_pattern TEXT,
    deliver_to TEXT,
    enabled INTEGER DEFAULT 1,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- 4. Schedules (dynamic source: when it runs)
CREATE TABLE IF NOT EXISTS schedules (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    name TEXT,
    schedule TEXT NOT NULL,
    timezone TEXT DEFAULT 'UTC',
    prompt TEXT NOT NULL,
    enabled INTEGER DEFAULT 1,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (agent_id) REFERENCES agents(id)
);
CREATE INDEX IF NOT EXISTS idx_schedules_agent ON schedules(agent_id);

-- 5. Delivery queue (failed deliveries awaiting retry)
CREATE TABLE IF NOT EXISTS delivery_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    target TEXT NOT NULL,
    text TEXT NOT NULL,
    attempts INTEGER DEFAULT 0,
    max_attempts INTEGER DEFAULT 5,
    next_attempt_at TEXT NOT NULL,
    last_error TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""
