"""ClaudeRunner — runs a job as an isolated `claude -p` process."""

from __future__ import annotations

import asyncio
import json
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from loguru import logger

from agentcron.core.cron.types import JobDefinition, RunResult, utcnow

if TYPE_CHECKING:
    from agentcron.core.config.schema import ClaudeConfig


class TaskExecutor(Protocol):
    """Runs one job to completion.

    Ordinary task failures are reported with ``is_error=True``, not raised.
    """

    async def execute(self, job: JobDefinition) -> RunResult: ...


async def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        pass  # already exited
    await proc.wait()


def parse_stream(output: str) -> tuple[str, dict[str, Any] | None]:
    """Parse `--output-format stream-json` output.

    Returns the text accumulated from deltas/assistant blocks and the final
    ``result`` event, if any.  Lines that are not JSON are ignored.
    """
    text = ""
    result: dict[str, Any] | None = None
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(event, dict):
            continue

        kind = event.get("type")
        if kind == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                text += delta["text"]
        elif kind == "assistant":
            for block in (event.get("message") or {}).get("content") or []:
                if not isinstance(block, dict):
                    continue
                block_text = block.get("text")
                if block.get("type") == "text" and block_text and block_text not in text:
                    text += block_text
        elif kind == "result":
            result = event
    return text, result


class ClaudeRunner:
    """Task executor backed by the Claude Code CLI.

    Jobs are task-focused: the job's own ``system_prompt`` is appended only
    when set, never a global persona.
    """

    def __init__(self, config: ClaudeConfig):
        self.config = config

    def build_args(self, job: JobDefinition) -> list[str]:
        args = ["-p", "--output-format", "stream-json", "--verbose"]

        model = job.model or self.config.model
        if model:
            args += ["--model", model]
        if job.system_prompt:
            args += ["--append-system-prompt", job.system_prompt]

        tools = job.tools if job.tools is not None else self.config.allowed_tools
        if tools:
            args += ["--allowedTools", ",".join(tools)]

        args += ["--max-turns", str(job.max_turns or self.config.max_turns)]

        if self.config.mcp_config:
            args += ["--mcp-config", self.config.mcp_config]
        return args

    async def execute(self, job: JobDefinition) -> RunResult:
        started_at = utcnow()
        start = time.monotonic()

        def _elapsed_ms() -> int:
            return int((time.monotonic() - start) * 1000)

        def _error(text: str) -> RunResult:
            return RunResult(
                job_id=job.id,
                text=text,
                duration_ms=_elapsed_ms(),
                is_error=True,
                started_at=started_at,
                finished_at=utcnow(),
            )

        try:
            prompt = job.resolve_prompt()
        except OSError as e:
            logger.error(f"Job {job.id}: cannot read prompt file: {e}")
            return _error(f"Cannot read prompt file: {e}")

        workdir = Path(job.working_directory or self.config.working_directory).expanduser()
        env = dict(os.environ)
        env.pop("CLAUDECODE", None)

        logger.info(f"Running job {job.id} (model={job.model or self.config.model}, cwd={workdir})")
        try:
            proc = await asyncio.create_subprocess_exec(
                self.config.binary,
                *self.build_args(job),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(workdir),
                env=env,
            )
        except OSError as e:
            logger.error(f"Job {job.id}: failed to spawn {self.config.binary}: {e}")
            return _error(f"Failed to start {self.config.binary}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(prompt.encode("utf-8")),
                timeout=self.config.timeout_s,
            )
        except asyncio.TimeoutError:
            await _kill(proc)
            logger.error(f"Job {job.id} timed out after {self.config.timeout_s}s")
            return _error(f"Job timed out after {self.config.timeout_s}s")
        except asyncio.CancelledError:
            logger.warning(f"Job {job.id} cancelled, killing pid {proc.pid}")
            await _kill(proc)
            raise

        text, event = parse_stream(stdout.decode("utf-8", errors="replace"))
        err = stderr.decode("utf-8", errors="replace")
        finished_at = utcnow()

        if event is not None:
            result = RunResult(
                job_id=job.id,
                text=event.get("result") or text,
                cost_usd=event.get("cost_usd") or event.get("total_cost_usd") or 0.0,
                duration_ms=event.get("duration_ms") or _elapsed_ms(),
                num_turns=event.get("num_turns") or 0,
                is_error=bool(event.get("is_error")),
                started_at=started_at,
                finished_at=finished_at,
            )
        elif proc.returncode != 0:
            logger.error(f"Job {job.id} exited with code {proc.returncode}: {err[:500]}")
            result = RunResult(
                job_id=job.id,
                text=text or f"Job exited with code {proc.returncode}: {err[:200]}",
                duration_ms=_elapsed_ms(),
                is_error=True,
                started_at=started_at,
                finished_at=finished_at,
            )
        else:
            result = RunResult(
                job_id=job.id,
                text=text,
                duration_ms=_elapsed_ms(),
                started_at=started_at,
                finished_at=finished_at,
            )

        logger.info(
            f"Job {job.id} complete: cost=${result.cost_usd:.4f}, "
            f"{result.duration_ms}ms, {result.num_turns} turns, error={result.is_error}"
        )
        return result
