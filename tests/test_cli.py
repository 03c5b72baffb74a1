"""Tests for agentcron.cli."""

import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from rich.console import Console
from typer.testing import CliRunner

from agentcron import __version__
from agentcron.cli import commands
from agentcron.cli.commands import app
from agentcron.core.config import Config
from agentcron.core.cron.types import RunResult

runner = CliRunner()

_PATCH_CONFIG = "agentcron.core.config.loader.load_config"
_PATCH_RUNNER = "agentcron.core.cron.runner.ClaudeRunner"


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    # Keep table cells on one line
    monkeypatch.setattr(commands, "console", Console(width=200))


@pytest.fixture
def config(tmp_path):
    cfg = Config(
        database={"path": str(tmp_path / "cli.db")},
        claude={"working_directory": str(tmp_path / "ws")},
        cron={"jobs": [{"id": "daily", "schedule": "0 9 * * *", "prompt": "morning report"}]},
    )
    with patch(_PATCH_CONFIG, return_value=cfg):
        yield cfg


def _fake_runner(result):
    executor = MagicMock()
    executor.execute = AsyncMock(return_value=result)
    return MagicMock(return_value=executor)


def test_cli_help():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for name in ("run", "status", "cron", "agent", "schedule"):
        assert name in result.output


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_status_output(config):
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "sonnet" in result.output
    assert "DB Path" in result.output
    assert "disabled" in result.output


def test_run_refuses_when_cron_disabled(config):
    config.cron.enabled = False
    with patch("agentcron.core.config.log.setup_logging"):
        result = runner.invoke(app, ["run"])
    assert result.exit_code == 1
    assert "disabled" in result.output


# ── cron ───────────────────────────────────────────────────


def test_cron_list_shows_static_and_dynamic(config):
    runner.invoke(app, ["agent", "add", "scout", "--name", "Scout"])
    runner.invoke(app, ["schedule", "add", "scout", "every:1h", "look around"])

    result = runner.invoke(app, ["cron", "list"])
    assert result.exit_code == 0
    assert "daily" in result.output
    assert "scout-default" in result.output
    assert "dynamic" in result.output


def test_cron_list_empty(config):
    config.cron.jobs = []
    result = runner.invoke(app, ["cron", "list"])
    assert result.exit_code == 0
    assert "No cron jobs found" in result.output


def test_cron_trigger_and_history(config):
    fake = _fake_runner(RunResult(job_id="daily", text="report ready", cost_usd=0.02, num_turns=2))
    with patch(_PATCH_RUNNER, fake):
        result = runner.invoke(app, ["cron", "trigger", "daily"])
    assert result.exit_code == 0
    assert "report ready" in result.output

    history = runner.invoke(app, ["cron", "history", "daily"])
    assert history.exit_code == 0
    assert "report ready" in history.output
    assert "$0.0200" in history.output


def test_cron_trigger_error_exit_code(config):
    fake = _fake_runner(RunResult(job_id="daily", text="auth failed", is_error=True))
    with patch(_PATCH_RUNNER, fake):
        result = runner.invoke(app, ["cron", "trigger", "daily"])
    assert result.exit_code == 1
    assert "auth failed" in result.output


def test_cron_trigger_not_found(config):
    result = runner.invoke(app, ["cron", "trigger", "missing-id"])
    assert result.exit_code == 1
    assert "Job not found" in result.output


def test_cron_history_empty(config):
    result = runner.invoke(app, ["cron", "history", "daily"])
    assert result.exit_code == 0
    assert "No runs found" in result.output


# ── agent ──────────────────────────────────────────────────


def test_agent_add_list_remove(config):
    result = runner.invoke(
        app, ["agent", "add", "scout", "--model", "opus", "--tools", "Read, WebSearch"]
    )
    assert result.exit_code == 0
    assert "Agent created" in result.output

    again = runner.invoke(app, ["agent", "add", "scout"])
    assert "already exists" in again.output

    listing = runner.invoke(app, ["agent", "list"])
    assert "scout" in listing.output
    assert "opus" in listing.output

    assert runner.invoke(app, ["agent", "remove", "scout"]).exit_code == 0
    missing = runner.invoke(app, ["agent", "remove", "scout"])
    assert missing.exit_code == 1
    assert "not found" in missing.output


def test_agent_list_empty(config):
    result = runner.invoke(app, ["agent", "list"])
    assert "No agents found" in result.output


# ── schedule ───────────────────────────────────────────────


def test_schedule_add_requires_agent(config):
    result = runner.invoke(app, ["schedule", "add", "ghost", "@daily", "hi"])
    assert result.exit_code == 1
    assert "Agent not found" in result.output


def test_schedule_add_rejects_bad_expression(config):
    runner.invoke(app, ["agent", "add", "scout"])
    result = runner.invoke(app, ["schedule", "add", "scout", "every:soon", "hi"])
    assert result.exit_code == 1
    assert "Invalid schedule" in result.output


def test_schedule_lifecycle(config):
    runner.invoke(app, ["agent", "add", "scout"])

    added = runner.invoke(
        app, ["schedule", "add", "scout", "30 8 * * *", "morning sweep", "--tz", "Europe/Istanbul"]
    )
    assert added.exit_code == 0
    assert "scout-default" in added.output

    dup = runner.invoke(app, ["schedule", "add", "scout", "@daily", "again"])
    assert dup.exit_code == 1

    weekly = runner.invoke(
        app, ["schedule", "add", "scout", "@weekly", "recap", "--id", "scout-weekly"]
    )
    assert weekly.exit_code == 0

    listing = runner.invoke(app, ["schedule", "list", "--agent", "scout"])
    assert "scout-default" in listing.output
    assert "scout-weekly" in listing.output
    assert "Europe/Istanbul" in listing.output

    disabled = runner.invoke(app, ["schedule", "disable", "scout-weekly"])
    assert disabled.exit_code == 0
    assert "disabled" in disabled.output
    assert runner.invoke(app, ["schedule", "enable", "scout-weekly"]).exit_code == 0
    assert runner.invoke(app, ["schedule", "enable", "nope"]).exit_code == 1

    assert runner.invoke(app, ["schedule", "remove", "scout-weekly"]).exit_code == 0
    assert runner.invoke(app, ["schedule", "remove", "scout-weekly"]).exit_code == 1


def test_schedule_changes_point_at_reload(config):
    runner.invoke(app, ["agent", "add", "scout"])
    runner.invoke(app, ["schedule", "add", "scout", "@daily", "hi"])
    result = runner.invoke(app, ["schedule", "disable", "scout-default"])
    assert "kill -HUP" in result.output
    assert "SIGHUP" in runner.invoke(app, ["schedule", "enable", "--help"]).output


# ── daemon wiring ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_signal_handlers_stop_and_reload():
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    scheduler = MagicMock()
    scheduler.reload = AsyncMock()

    with patch.object(loop, "add_signal_handler") as add:
        reloads = commands._install_signal_handlers(loop, stop, scheduler)
    handlers = {c.args[0]: c.args[1] for c in add.call_args_list}
    assert set(handlers) == {signal.SIGINT, signal.SIGTERM, signal.SIGHUP}

    handlers[signal.SIGHUP]()
    await asyncio.gather(*reloads)
    scheduler.reload.assert_awaited_once()
    assert not stop.is_set()

    handlers[signal.SIGTERM]()
    assert stop.is_set()


def test_build_scheduler_sender_follows_token(config):
    from agentcron.memory.store import MemoryStore

    db = MemoryStore(config.database.path)
    _, queue = commands._build_scheduler(config, db)
    assert queue.sender is None

    config.delivery.telegram_token = "123:abc"
    scheduler, queue = commands._build_scheduler(config, db)
    assert queue.sender is not None
    assert scheduler.delivery is queue
