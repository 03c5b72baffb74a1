"""Job definition sources — static config list merged with dynamic agent schedules."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from loguru import logger

from agentcron.core.cron.types import JobDefinition
from agentcron.memory.models import Agent, Schedule


class DynamicSource(Protocol):
    """Read-only view over enabled (schedule, agent) pairs."""

    def list_enabled_schedules(self) -> list[tuple[Schedule, Agent]]: ...


def derived_schedule_id(agent_id: str, suffix: str = "default") -> str:
    """Schedule id derived from its owning agent, e.g. ``researcher-default``."""
    return f"{agent_id}-{suffix}"


def definition_from_schedule(schedule: Schedule, agent: Agent) -> JobDefinition:
    """Translate a (schedule, agent) pair into a JobDefinition.

    The schedule decides when and with what prompt; the agent decides how the
    job runs and where its result goes.
    """
    return JobDefinition(
        id=schedule.id,
        label=schedule.name or agent.name,
        schedule=schedule.schedule,
        timezone=schedule.timezone or "UTC",
        prompt=schedule.prompt,
        model=agent.model,
        max_turns=agent.max_turns,
        working_directory=agent.working_directory,
        deliver_to=agent.deliver_to,
        announce=agent.announce,
        suppress_pattern=agent.suppress_pattern,
        system_prompt=agent.system_prompt,
        enabled=schedule.enabled and agent.enabled,
        tools=agent.tools,
        agent_id=agent.id,
        source="dynamic",
    )


def merge_definitions(
    static: Iterable[JobDefinition], source: DynamicSource | None = None
) -> dict[str, JobDefinition]:
    """Build the effective job set keyed by id.

    Dynamic definitions replace static ones with the same id entirely.  A
    failing dynamic source degrades to the static list.
    """
    merged: dict[str, JobDefinition] = {}
    for job in static:
        if job.id in merged:
            logger.warning(f"Duplicate static job id '{job.id}', keeping the last one")
        merged[job.id] = job

    if source is None:
        return merged

    try:
        pairs = source.list_enabled_schedules()
    except Exception as e:
        logger.error(f"Dynamic job source unavailable, using static jobs only: {e}")
        return merged

    for schedule, agent in pairs:
        try:
            job = definition_from_schedule(schedule, agent)
        except ValueError as e:
            logger.error(f"Skipping schedule {schedule.id}: {e}")
            continue
        if job.id in merged and merged[job.id].source == "static":
            logger.info(f"Schedule {job.id} overrides static job definition")
        merged[job.id] = job

    logger.debug(f"Effective job set: {len(merged)} jobs")
    return merged


def resolve_definition(
    definitions: dict[str, JobDefinition], job_id: str
) -> JobDefinition | None:
    """Find a job by id, then by owning agent id, then by ``<job_id>-`` prefix."""
    if job_id in definitions:
        return definitions[job_id]

    owned = sorted(
        (d for d in definitions.values() if d.agent_id == job_id),
        key=lambda d: d.id,
    )
    if owned:
        return owned[0]

    prefix = f"{job_id}-"
    for key in sorted(definitions):
        if key.startswith(prefix):
            return definitions[key]
    return None
