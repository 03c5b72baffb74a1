"""Tests for agentcron.core.cron.runner (claude -p executor)."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentcron.core.config.schema import ClaudeConfig
from agentcron.core.cron.runner import ClaudeRunner, parse_stream
from agentcron.core.cron.types import JobDefinition

_PATCH_EXEC = "agentcron.core.cron.runner.asyncio.create_subprocess_exec"


@pytest.fixture
def runner(tmp_path):
    return ClaudeRunner(ClaudeConfig(working_directory=str(tmp_path), timeout_s=5))


def _job(**kw):
    data = {"id": "daily", "schedule": "@daily", "prompt": "summarize the news"}
    data.update(kw)
    return JobDefinition(**data)


def _stream(*events):
    return ("\n".join(json.dumps(e) for e in events) + "\n").encode()


def _proc(stdout=b"", stderr=b"", returncode=0):
    proc = MagicMock()
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    proc.wait = AsyncMock(return_value=returncode)
    proc.returncode = returncode
    return proc


# ── parse_stream ───────────────────────────────────────────


def test_parse_stream_deltas_and_result():
    out = _stream(
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "lo"}},
        {"type": "result", "result": "Hello", "cost_usd": 0.02},
    ).decode()
    text, result = parse_stream(out)
    assert text == "Hello"
    assert result["cost_usd"] == 0.02


def test_parse_stream_assistant_blocks_and_garbage():
    out = "not json\n" + _stream(
        {"type": "assistant", "message": {"content": [
            {"type": "text", "text": "Done."},
            {"type": "tool_use", "name": "Read"},
            "stray",
        ]}},
    ).decode()
    text, result = parse_stream(out)
    assert text == "Done."
    assert result is None


# ── build_args ─────────────────────────────────────────────


def test_build_args_defaults(runner):
    args = runner.build_args(_job())
    assert args[:4] == ["-p", "--output-format", "stream-json", "--verbose"]
    assert args[args.index("--model") + 1] == "sonnet"
    assert args[args.index("--max-turns") + 1] == "25"
    assert "--append-system-prompt" not in args
    assert "--allowedTools" not in args


def test_build_args_job_overrides():
    runner = ClaudeRunner(ClaudeConfig(allowed_tools=["Read"], mcp_config="mcp.json"))
    args = runner.build_args(
        _job(model="opus", max_turns=3, system_prompt="Be brief", tools=["WebSearch", "Write"])
    )
    assert args[args.index("--model") + 1] == "opus"
    assert args[args.index("--max-turns") + 1] == "3"
    assert args[args.index("--append-system-prompt") + 1] == "Be brief"
    assert args[args.index("--allowedTools") + 1] == "WebSearch,Write"
    assert args[args.index("--mcp-config") + 1] == "mcp.json"


# ── execute ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_execute_with_result_event(runner, tmp_path, monkeypatch):
    monkeypatch.setenv("CLAUDECODE", "1")
    proc = _proc(_stream({
        "type": "result", "result": "All good", "total_cost_usd": 0.05,
        "duration_ms": 1200, "num_turns": 4, "is_error": False,
    }))

    with patch(_PATCH_EXEC, AsyncMock(return_value=proc)) as spawn:
        result = await runner.execute(_job())

    assert result.text == "All good"
    assert result.cost_usd == pytest.approx(0.05)
    assert result.duration_ms == 1200
    assert result.num_turns == 4
    assert result.is_error is False
    assert result.started_at is not None

    proc.communicate.assert_awaited_once_with(b"summarize the news")
    kwargs = spawn.call_args.kwargs
    assert spawn.call_args.args[0] == "claude"
    assert kwargs["cwd"] == str(tmp_path)
    assert "CLAUDECODE" not in kwargs["env"]


@pytest.mark.asyncio
async def test_execute_reads_prompt_file(runner, tmp_path):
    prompt_file = tmp_path / "prompt.md"
    prompt_file.write_text("from file")
    proc = _proc(_stream({"type": "result", "result": "ok"}))

    with patch(_PATCH_EXEC, AsyncMock(return_value=proc)):
        await runner.execute(_job(prompt="", prompt_file=str(prompt_file)))

    proc.communicate.assert_awaited_once_with(b"from file")


@pytest.mark.asyncio
async def test_execute_missing_prompt_file(runner, tmp_path):
    with patch(_PATCH_EXEC, AsyncMock()) as spawn:
        result = await runner.execute(_job(prompt="", prompt_file=str(tmp_path / "nope.md")))
    assert result.is_error is True
    assert "prompt file" in result.text
    spawn.assert_not_called()


@pytest.mark.asyncio
async def test_execute_nonzero_exit_without_result(runner):
    proc = _proc(b"", b"auth failed", returncode=2)
    with patch(_PATCH_EXEC, AsyncMock(return_value=proc)):
        result = await runner.execute(_job())
    assert result.is_error is True
    assert result.text == "Job exited with code 2: auth failed"


@pytest.mark.asyncio
async def test_execute_zero_exit_plain_text(runner):
    proc = _proc(_stream(
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "partial"}},
    ))
    with patch(_PATCH_EXEC, AsyncMock(return_value=proc)):
        result = await runner.execute(_job())
    assert result.is_error is False
    assert result.text == "partial"


@pytest.mark.asyncio
async def test_execute_missing_binary(runner):
    with patch(_PATCH_EXEC, AsyncMock(side_effect=FileNotFoundError("claude"))):
        result = await runner.execute(_job())
    assert result.is_error is True
    assert "Failed to start claude" in result.text


@pytest.mark.asyncio
async def test_execute_timeout_kills_process(runner):
    proc = _proc()

    async def _hang(_input):
        await asyncio.sleep(10)

    proc.communicate = _hang
    runner.config.timeout_s = 0.01

    with patch(_PATCH_EXEC, AsyncMock(return_value=proc)):
        result = await runner.execute(_job())

    assert result.is_error is True
    assert "timed out" in result.text
    proc.kill.assert_called_once()
    proc.wait.assert_awaited_once()


@pytest.mark.asyncio
async def test_execute_cancelled_kills_process(runner):
    proc = _proc()
    entered = asyncio.Event()

    async def _hang(_input):
        entered.set()
        await asyncio.sleep(10)

    proc.communicate = _hang

    with patch(_PATCH_EXEC, AsyncMock(return_value=proc)):
        task = asyncio.create_task(runner.execute(_job()))
        await asyncio.wait_for(entered.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    proc.kill.assert_called_once()
    proc.wait.assert_awaited_once()


@pytest.mark.asyncio
async def test_kill_tolerates_exited_process(runner):
    proc = _proc()
    proc.kill.side_effect = ProcessLookupError()

    async def _hang(_input):
        await asyncio.sleep(10)

    proc.communicate = _hang
    runner.config.timeout_s = 0.01

    with patch(_PATCH_EXEC, AsyncMock(return_value=proc)):
        result = await runner.execute(_job())

    assert "timed out" in result.text
    proc.wait.assert_awaited_once()
