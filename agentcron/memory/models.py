"""Pydantic row models for the dynamic definition source (agents + schedules)."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, field_validator


# ════════════════════════════════════════════════════════════
# AGENTS
# ════════════════════════════════════════════════════════════


class Agent(BaseModel):
    """Persistent agent identity — what runs (model, tools, delivery)."""

    id: str
    name: str
    description: str | None = None
    model: str | None = None
    system_prompt: str | None = None
    max_turns: int | None = None
    working_directory: str | None = None
    tools: list[str] | None = None
    announce: bool = True
    suppress_pattern: str | None = None
    deliver_to: str | None = None
    enabled: bool = True
    created_at: str | None = None
    updated_at: str | None = None

    @field_validator("tools", mode="before")
    @classmethod
    def _decode_tools(cls, value: Any) -> Any:
        # Stored as a JSON array in SQLite
        if isinstance(value, str):
            return json.loads(value) if value else None
        return value


# ════════════════════════════════════════════════════════════
# SCHEDULES
# ════════════════════════════════════════════════════════════


class Schedule(BaseModel):
    """When an agent runs and with what prompt.  One agent, many schedules."""

    id: str
    agent_id: str
    name: str | None = None
    schedule: str
    timezone: str = "UTC"
    prompt: str
    enabled: bool = True
    created_at: str | None = None
    updated_at: str | None = None


class ScheduleUpdate(BaseModel):
    """Partial schedule update; unset fields are left untouched."""

    agent_id: str | None = None
    name: str | None = None
    schedule: str | None = None
    timezone: str | None = None
    prompt: str | None = None
    enabled: bool | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class PendingDelivery(BaseModel):
    """A delivery waiting for retry — mirrors SQLite delivery_queue table."""

    id: int
    target: str
    text: str
    attempts: int = 0
    max_attempts: int = 5
    next_attempt_at: str
    last_error: str | None = None
    created_at: str | None = None
