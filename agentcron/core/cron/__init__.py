"""Cron scheduling — APScheduler + SQLite engine for agent jobs."""

from agentcron.core.cron.scheduler import CronScheduler
from agentcron.core.cron.types import JobDefinition, RunResult

__all__ = ["CronScheduler", "JobDefinition", "RunResult"]
