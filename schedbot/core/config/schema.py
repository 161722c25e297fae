"""schedbot configuration schema — YAML + Pydantic + env override."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_INSTRUCTION_SUFFIX = (
    "\n\nIMPORTANT: Write your response in plain text only. Do not use markdown "
    "formatting (no **, ##, ---, `, or | table syntax). Write naturally as if you "
    "were a knowledgeable person sending a colleague a clear, well-organized email. "
    "Use short paragraphs and line breaks for readability."
)


# ════════════════════════════════════════════════════════════
# SUB-CONFIGS (nested BaseModel)
# ════════════════════════════════════════════════════════════


class AgentAPIConfig(BaseModel):
    """External agent job API (start + poll runs)."""

    base_url: str = "https://api.subconscious.dev/v1"
    api_key: str = ""
    timeout: float = 30.0
    default_engine: str = "tim-gpt"
    instruction_suffix: str = DEFAULT_INSTRUCTION_SUFFIX


class RunnerConfig(BaseModel):
    """Execution runner polling + failure policy."""

    poll_interval_s: float = 2.0
    max_poll_attempts: int = 150
    failure_threshold: int = 5


class SchedulerConfig(BaseModel):
    """Sweep backstop + one-shot dispatch."""

    enabled: bool = True
    sweep_interval_minutes: int = 30
    guard_days: int = 365
    timezone: str = "UTC"  # reference zone for tasks without their own


class TasksConfig(BaseModel):
    max_tasks: int = 50
    history_limit: int = 100


# Channels
class EmailChannelConfig(BaseModel):
    """Transactional email (Resend HTTP API)."""

    enabled: bool = True
    api_key: str = ""
    from_address: str = "scheduler@schedbot.dev"
    api_base: str = "https://api.resend.com"


class ChannelsConfig(BaseModel):
    email: EmailChannelConfig = Field(default_factory=EmailChannelConfig)


class LoggingConfig(BaseModel):
    level: str = "INFO"


# Database
class DatabaseConfig(BaseModel):
    path: str = "data/schedbot.db"


# ════════════════════════════════════════════════════════════
# ROOT CONFIG (BaseSettings — env + .env support)
# ════════════════════════════════════════════════════════════


class Config(BaseSettings):
    """
    Root configuration.

    Priority: env vars > .env > YAML (init kwargs) > defaults

    Env override examples:
        SCHEDBOT_AGENT_API__API_KEY=sk-...
        SCHEDBOT_RUNNER__POLL_INTERVAL_S=5
        SCHEDBOT_CHANNELS__EMAIL__API_KEY=re_...
    """

    model_config = SettingsConfigDict(
        env_prefix="SCHEDBOT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    agent_api: AgentAPIConfig = Field(default_factory=AgentAPIConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    tasks: TasksConfig = Field(default_factory=TasksConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # env before init kwargs so SCHEDBOT_* wins over the YAML file
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    # ── Computed properties ─────────────────────────────────

    @property
    def agent_api_configured(self) -> bool:
        """True when a job API credential is available."""
        return bool(self.agent_api.api_key)

    @property
    def email_configured(self) -> bool:
        email = self.channels.email
        return email.enabled and bool(email.api_key)

    @property
    def db_path(self) -> Path:
        return Path(self.database.path)

    @property
    def sweep_interval_s(self) -> int:
        return self.scheduler.sweep_interval_minutes * 60

    @property
    def guard_ms(self) -> int:
        """How far the sweep pushes ``next_run_at`` while a run is starting."""
        return self.scheduler.guard_days * 24 * 60 * 60 * 1000
