"""Tests for agentcron.core.config."""

import pytest
import yaml
from loguru import logger
from pydantic import ValidationError

from agentcron.core.config import Config, load_config
from agentcron.core.config.log import setup_logging
from agentcron.core.config.schema import LoggingConfig


def test_defaults():
    cfg = Config()
    assert cfg.claude.binary == "claude"
    assert cfg.claude.max_turns == 25
    assert cfg.claude.timeout_s == 1800
    assert cfg.cron.max_concurrent == 3
    assert cfg.cron.jobs == []
    assert cfg.database.path == "data/agentcron.db"
    assert cfg.delivery_enabled is False


def test_from_dict():
    cfg = Config(
        claude={"model": "opus", "allowed_tools": ["Read", "WebSearch"]},
        delivery={"telegram_token": "123:abc", "default_chat_id": "42"},
        cron={
            "max_concurrent": 1,
            "jobs": [{"id": "heartbeat", "schedule": "* * * * *", "prompt": "ping"}],
        },
    )
    assert cfg.claude.model == "opus"
    assert cfg.claude.allowed_tools == ["Read", "WebSearch"]
    assert cfg.delivery_enabled is True
    assert cfg.cron.max_concurrent == 1
    assert cfg.cron.jobs[0].id == "heartbeat"
    assert cfg.cron.jobs[0].source == "static"


def test_job_needs_prompt():
    with pytest.raises(ValidationError):
        Config(cron={"jobs": [{"id": "empty", "schedule": "* * * * *"}]})


def test_max_concurrent_must_be_positive():
    with pytest.raises(ValidationError):
        Config(cron={"max_concurrent": 0})


def test_env_override(monkeypatch):
    monkeypatch.setenv("AGENTCRON_CLAUDE__MODEL", "haiku")
    monkeypatch.setenv("AGENTCRON_CRON__MAX_CONCURRENT", "7")
    cfg = Config()
    assert cfg.claude.model == "haiku"
    assert cfg.cron.max_concurrent == 7


def test_paths(tmp_path):
    cfg = Config(
        claude={"working_directory": str(tmp_path / "ws")},
        database={"path": str(tmp_path / "x.db")},
    )
    assert cfg.workspace_path == (tmp_path / "ws").resolve()
    assert cfg.db_path == tmp_path / "x.db"


def test_load_yaml(tmp_path):
    f = tmp_path / "config.yaml"
    f.write_text(yaml.dump({
        "claude": {"model": "opus"},
        "cron": {"jobs": [{"id": "daily", "schedule": "@daily", "prompt": "summarize"}]},
    }))
    cfg = load_config(f)
    assert cfg.claude.model == "opus"
    assert cfg.cron.jobs[0].schedule == "@daily"


def test_load_from_env_path(tmp_path, monkeypatch):
    f = tmp_path / "custom.yaml"
    f.write_text(yaml.dump({"database": {"path": "data/custom.db"}}))
    monkeypatch.setenv("AGENTCRON_CONFIG", str(f))
    assert load_config().database.path == "data/custom.db"


def test_load_missing(tmp_path):
    cfg = load_config(tmp_path / "nope.yaml")
    assert cfg.claude.binary == "claude"


def test_load_empty_yaml(tmp_path):
    f = tmp_path / "config.yaml"
    f.write_text("")
    assert load_config(f).cron.enabled is True


def test_setup_logging_file_sink(tmp_path):
    log_file = tmp_path / "agentcron.log"
    setup_logging(LoggingConfig(level="debug", file=str(log_file)))
    logger.info("hello from test")
    logger.complete()
    logger.remove()
    assert "hello from test" in log_file.read_text()
