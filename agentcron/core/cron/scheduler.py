"""CronScheduler — APScheduler bridge for static + dynamic agent jobs."""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from agentcron.core.cron.expression import ScheduleError, build_trigger, next_fire_time
from agentcron.core.cron.slots import SlotManager
from agentcron.core.cron.sources import DynamicSource, merge_definitions, resolve_definition
from agentcron.core.cron.types import (
    JobDefinition,
    JobState,
    JobSummary,
    RunRecord,
    RunResult,
    RunSummary,
    utcnow,
)

if TYPE_CHECKING:
    from agentcron.core.cron.runner import TaskExecutor
    from agentcron.core.delivery.queue import DeliverySink
    from agentcron.memory.store import MemoryStore


def format_delivery(job: JobDefinition, result: RunResult) -> str:
    """Render a run result as a chat message."""
    prefix = (
        f"*Cron Error — {job.display_name}*"
        if result.is_error
        else f"*Cron — {job.display_name}*"
    )
    meta = f"_{result.duration_ms}ms | ${result.cost_usd:.4f} | {result.num_turns} turns_"
    return f"{prefix}\n{meta}\n\n{result.text}"


class CronScheduler:
    """Bridge between job definitions and APScheduler.

    Static jobs (config) and dynamic jobs (agent schedules in SQLite) are
    merged on every start/reload, dynamic winning on id collision.  Each
    enabled job gets one APScheduler job.  Executions are serialized per job
    by an in-memory running set and bounded globally by a FIFO slot pool;
    every completed run is persisted before delivery is attempted.
    """

    def __init__(
        self,
        db: MemoryStore,
        executor: TaskExecutor,
        jobs: Iterable[JobDefinition] = (),
        source: DynamicSource | None = None,
        delivery: DeliverySink | None = None,
        max_concurrent: int = 3,
    ):
        self.db = db
        self.executor = executor
        self.source = source
        self.delivery = delivery
        self._static = list(jobs)
        self._definitions: dict[str, JobDefinition] = {}
        self._handles: dict[str, Job] = {}
        self._running: set[str] = set()
        self._inflight: set[asyncio.Task] = set()
        self._started = False
        self._slots = SlotManager(max_concurrent)
        self._scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
            timezone="UTC",
        )

    def on_delivery(self, sink: DeliverySink | None) -> None:
        """Set the sink that receives run results."""
        self.delivery = sink

    @property
    def running_jobs(self) -> frozenset[str]:
        return frozenset(self._running)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Merge job sources and register a timer for every enabled job."""
        if not self._scheduler.running:
            self._scheduler.start()

        self._definitions = merge_definitions(self._static, self.source)
        self._started = True
        for job in self._definitions.values():
            if not job.enabled:
                logger.info(f"Skipping disabled job {job.id}")
                continue
            if job.id in self._handles:
                continue
            self._register_job(job)

        logger.info(
            f"CronScheduler started with {len(self._handles)} active jobs "
            f"({len(self._definitions)} defined)"
        )

    async def stop(self) -> None:
        """Stop all timers and close the store.

        Runs already in flight are left alone; await :meth:`drain` to let them
        finish and persist.
        """
        self._started = False
        self._clear_handles()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self.db.close()
        logger.info(f"CronScheduler stopped ({len(self._inflight)} runs in flight)")

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for timer-fired runs that are still in flight."""
        if not self._inflight:
            return
        _, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} cron runs still in flight after {timeout}s")

    async def reload(self) -> None:
        """Drop every timer and rebuild from the current job sources."""
        logger.info("Reloading cron jobs")
        self._clear_handles()
        await self.start()

    def _register_job(self, job: JobDefinition) -> None:
        try:
            trigger = build_trigger(job.schedule, job.timezone)
            handle = self._scheduler.add_job(
                self._fire,
                trigger=trigger,
                id=job.id,
                name=job.display_name,
                args=[job],
                replace_existing=True,
            )
        except Exception as e:
            logger.error(f"Failed to schedule job {job.id} ({job.schedule!r}): {e}")
            return

        self._handles[job.id] = handle
        next_run = handle.next_run_time
        self.db.upsert_job_state(job.id, next_run_at=next_run)
        logger.info(
            f"Scheduled job {job.id}: {job.schedule} ({job.timezone}), next={next_run}"
        )

    def _clear_handles(self) -> None:
        for job_id, handle in self._handles.items():
            try:
                handle.remove()
            except JobLookupError:
                logger.debug(f"Job {job_id} already removed from scheduler")
        self._handles.clear()

    # ── Queries ───────────────────────────────────────────────

    def _effective(self) -> dict[str, JobDefinition]:
        """Live job set once started; a fresh merge otherwise."""
        if self._started:
            return self._definitions
        return merge_definitions(self._static, self.source)

    def _live_next_run(self, job_id: str) -> datetime | None:
        if job_id not in self._handles:
            return None
        handle = self._scheduler.get_job(job_id)
        return handle.next_run_time if handle else None

    def _next_run(self, job: JobDefinition, state: JobState | None) -> datetime | None:
        live = self._live_next_run(job.id)
        if live is not None:
            return live
        try:
            return next_fire_time(job.schedule, job.timezone)
        except ScheduleError:
            return state.next_run_at if state else None

    def list_jobs(self) -> list[JobSummary]:
        """All effective jobs with next/last run and run count."""
        summaries = []
        for job in self._effective().values():
            state = self.db.get_job_state(job.id)
            summaries.append(
                JobSummary(
                    **job.model_dump(),
                    next_run=self._next_run(job, state),
                    last_run=state.last_run_at if state else None,
                    run_count=state.run_count if state else 0,
                )
            )
        return summaries

    def get_run_history(self, job_id: str, limit: int = 10) -> list[RunSummary]:
        """Recent runs for a job (or its derived schedule ids), newest first."""
        return [RunSummary.from_record(r) for r in self.db.list_runs(job_id, limit)]

    # ── Execution ─────────────────────────────────────────────

    async def run_now(self, job_id: str) -> RunResult | None:
        """Trigger a job immediately. Returns None if no job matches."""
        job = resolve_definition(self._effective(), job_id)
        if job is None:
            logger.warning(f"Job not found: {job_id}")
            return None
        logger.info(f"Manual trigger: {job.id}")
        return await self._execute_job(job)

    async def _fire(self, job: JobDefinition) -> None:
        """Timer callback: run the job in a task owned by the engine.

        APScheduler cancels its own pending futures on shutdown, so the run is
        detached from them and tracked in ``_inflight`` instead.
        """
        task = asyncio.create_task(self._execute_job(job), name=f"cron:{job.id}")
        self._inflight.add(task)
        task.add_done_callback(self._on_run_done)

    def _on_run_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Cron run {task.get_name()} failed: {exc}")

    async def _execute_job(self, job: JobDefinition) -> RunResult:
        """Run one job end to end.

        The running-set check and insert happen before the first await, so two
        callers can never both pass it for the same job.
        """
        if job.id in self._running:
            logger.warning(f"Job {job.id} already running, skipping")
            return RunResult.skip(job.id)
        self._running.add(job.id)

        acquired = False
        try:
            await self._slots.acquire()
            acquired = True
            logger.info(f"Cron trigger: {job.id}")

            result = await self._invoke(job)
            self.db.record_run(RunRecord.from_result(result))

            next_run = self._live_next_run(job.id)
            if next_run is not None:
                self.db.upsert_job_state(job.id, next_run_at=next_run)

            await self._deliver(job, result)
            return result
        finally:
            if acquired:
                self._slots.release()
            self._running.discard(job.id)

    async def _invoke(self, job: JobDefinition) -> RunResult:
        """Call the executor; a raised error becomes an error result."""
        started_at = utcnow()
        start = time.monotonic()
        try:
            result = await self.executor.execute(job)
        except Exception as e:
            logger.error(f"Job {job.id} failed: {e}")
            result = RunResult(job_id=job.id, text=str(e) or type(e).__name__, is_error=True)

        return result.model_copy(
            update={
                "job_id": job.id,
                "started_at": result.started_at or started_at,
                "finished_at": result.finished_at or utcnow(),
                "duration_ms": result.duration_ms or int((time.monotonic() - start) * 1000),
            }
        )

    def _is_suppressed(self, job: JobDefinition, text: str) -> bool:
        if not job.suppress_pattern:
            return False
        try:
            return re.search(job.suppress_pattern, text) is not None
        except re.error as e:
            logger.warning(f"Invalid suppress_pattern for job {job.id}: {e}")
            return False

    async def _deliver(self, job: JobDefinition, result: RunResult) -> None:
        if not job.announce or self.delivery is None:
            return
        if self._is_suppressed(job, result.text):
            logger.info(f"Job {job.id}: delivery suppressed by pattern match")
            return
        try:
            sent = await self.delivery.deliver(job.deliver_to, format_delivery(job, result))
        except Exception as e:
            logger.error(f"Job {job.id}: delivery failed: {e}")
            return
        if sent:
            logger.info(f"Job {job.id} → delivered")
        else:
            logger.warning(f"Job {job.id}: delivery not confirmed (queued or dropped)")
