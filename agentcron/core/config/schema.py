"""agentcron configuration schema — YAML + Pydantic + env override."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from agentcron.core.cron.types import JobDefinition


# ════════════════════════════════════════════════════════════
# SUB-CONFIGS (nested BaseModel)
# ════════════════════════════════════════════════════════════


class ClaudeConfig(BaseModel):
    """Defaults for the `claude -p` executor; jobs may override per field."""

    binary: str = "claude"
    model: str | None = "sonnet"
    max_turns: int = 25
    working_directory: str = "~/agentcron-workspace"
    allowed_tools: list[str] = Field(default_factory=list)
    mcp_config: str | None = None
    timeout_s: int = 1800


class CronConfig(BaseModel):
    enabled: bool = True
    max_concurrent: int = Field(default=3, ge=1)
    jobs: list[JobDefinition] = Field(default_factory=list)


class DeliveryConfig(BaseModel):
    """Result delivery (Telegram). Empty token = delivery disabled."""

    telegram_token: str = ""
    default_chat_id: str | None = None
    max_attempts: int = 5
    retry_interval_s: int = 10


class DatabaseConfig(BaseModel):
    path: str = "data/agentcron.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str | None = None
    rotation: str = "10 MB"
    retention: str = "14 days"


# ════════════════════════════════════════════════════════════
# ROOT CONFIG (BaseSettings — env + .env support)
# ════════════════════════════════════════════════════════════


class Config(BaseSettings):
    """
    Root configuration.

    Priority: env vars > .env > YAML (init kwargs) > defaults

    Env override examples:
        AGENTCRON_CLAUDE__MODEL=opus
        AGENTCRON_DATABASE__PATH=data/prod.db
        AGENTCRON_CRON__MAX_CONCURRENT=5
        AGENTCRON_DELIVERY__TELEGRAM_TOKEN=123:abc
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTCRON_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    claude: ClaudeConfig = Field(default_factory=ClaudeConfig)
    cron: CronConfig = Field(default_factory=CronConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # ── Computed properties ─────────────────────────────────

    @property
    def delivery_enabled(self) -> bool:
        """True when a Telegram bot token is set."""
        return bool(self.delivery.telegram_token)

    @property
    def workspace_path(self) -> Path:
        return Path(self.claude.working_directory).expanduser().resolve()

    @property
    def db_path(self) -> Path:
        return Path(self.database.path)
