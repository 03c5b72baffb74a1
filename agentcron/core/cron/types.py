"""Cron job types."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator

RESULT_TEXT_LIMIT = 10_000
ERROR_TEXT_LIMIT = 500
PREVIEW_LIMIT = 200


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobDefinition(BaseModel):
    """Declarative description of a recurring agent job.

    Static definitions come from ``cron.jobs`` in config.yaml, dynamic ones
    are built from (schedule, agent) rows.  The engine never mutates them.
    """

    id: str
    label: str | None = None
    schedule: str                        # crontab (5/6 fields) or "every:30m"
    timezone: str = "UTC"
    prompt: str = ""
    prompt_file: str | None = None       # read at execution time, wins over prompt
    model: str | None = None             # None = claude.model
    max_turns: int | None = None         # None = claude.max_turns
    working_directory: str | None = None
    deliver_to: str | None = None        # None = delivery.default_chat_id
    announce: bool = True
    suppress_pattern: str | None = None  # regex; match on result text = no delivery
    system_prompt: str | None = None
    enabled: bool = True
    tools: list[str] | None = None       # None = claude.allowed_tools
    agent_id: str | None = None
    source: Literal["static", "dynamic"] = "static"

    @model_validator(mode="after")
    def _check_prompt(self) -> JobDefinition:
        if not self.prompt and not self.prompt_file:
            raise ValueError(f"job '{self.id}' needs a prompt or prompt_file")
        return self

    @property
    def display_name(self) -> str:
        return self.label or self.id

    def resolve_prompt(self) -> str:
        """Return the prompt text, reading ``prompt_file`` when set."""
        if self.prompt_file:
            return Path(self.prompt_file).expanduser().read_text(encoding="utf-8")
        return self.prompt


class RunResult(BaseModel):
    """Outcome of one execution attempt (or a synthetic skip)."""

    job_id: str
    text: str = ""
    cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0
    is_error: bool = False
    skipped: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def skip(cls, job_id: str) -> RunResult:
        now = utcnow()
        return cls(
            job_id=job_id,
            text="Skipped: previous run still in progress",
            skipped=True,
            started_at=now,
            finished_at=now,
        )


class JobState(BaseModel):
    """Aggregate per-job state — mirrors SQLite job_state table."""

    job_id: str
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    run_count: int = 0
    last_error: str | None = None
    last_duration_ms: int | None = None
    last_cost_usd: float | None = None


class RunRecord(BaseModel):
    """One completed execution — mirrors SQLite job_runs table."""

    id: int | None = None
    job_id: str
    started_at: datetime
    finished_at: datetime
    duration_ms: int = 0
    cost_usd: float = 0.0
    num_turns: int = 0
    is_error: bool = False
    result_text: str = ""

    @classmethod
    def from_result(cls, result: RunResult) -> RunRecord:
        return cls(
            job_id=result.job_id,
            started_at=result.started_at or utcnow(),
            finished_at=result.finished_at or utcnow(),
            duration_ms=result.duration_ms,
            cost_usd=result.cost_usd,
            num_turns=result.num_turns,
            is_error=result.is_error,
            result_text=result.text[:RESULT_TEXT_LIMIT],
        )


class RunSummary(BaseModel):
    """Compact run history entry for listings."""

    started_at: datetime
    finished_at: datetime
    duration_ms: int
    cost_usd: float
    num_turns: int
    is_error: bool
    result_preview: str = ""

    @classmethod
    def from_record(cls, record: RunRecord) -> RunSummary:
        return cls(
            started_at=record.started_at,
            finished_at=record.finished_at,
            duration_ms=record.duration_ms,
            cost_usd=record.cost_usd,
            num_turns=record.num_turns,
            is_error=record.is_error,
            result_preview=record.result_text[:PREVIEW_LIMIT],
        )


class JobSummary(JobDefinition):
    """Job definition annotated with schedule and run state."""

    next_run: datetime | None = None
    last_run: datetime | None = None
    run_count: int = Field(default=0, ge=0)
