"""Scheduled task types — mirror the SQLite tasks / execution_results / notification_prefs tables."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

TaskStatus = Literal["active", "paused", "error"]

RUN_PENDING_STATUSES = frozenset({"queued", "running"})
PLACEHOLDER = "{{...agentResponse}}"
EMAIL_CHANNELS = frozenset({"email", "resend"})


class Task(BaseModel):
    """Recurring job definition plus its run bookkeeping."""

    id: str
    name: str
    prompt: str
    schedule: str
    engine: str
    type: str = "research"
    tools: list[Any] = Field(default_factory=list)
    timezone: str | None = None
    owner_id: str | None = None  # None for unowned / agent-created tasks
    status: TaskStatus = "active"
    created_at: int = 0
    updated_at: int = 0

    last_run_at: int | None = None
    last_run_status: str | None = None
    next_run_at: int | None = None  # None = cron did not parse, never scheduled
    consecutive_failures: int = 0
    active_run_id: str | None = None  # run lock

    @property
    def is_running(self) -> bool:
        return self.active_run_id is not None


class TaskPatch(BaseModel):
    """User-editable task fields. Lock and counter columns belong to the runner."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    prompt: str | None = None
    schedule: str | None = None
    engine: str | None = None
    type: str | None = None
    tools: list[Any] | None = None
    timezone: str | None = None  # None = fall back to the reference zone
    status: TaskStatus | None = None
    next_run_at: int | None = None  # None = unscheduled

    @field_validator("name", "prompt", "schedule", "engine", "type", "tools", "status", mode="before")
    @classmethod
    def _not_null(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("must not be null")
        return value


class ExecutionResult(BaseModel):
    """One historical run of a task."""

    id: int
    task_id: str
    run_id: str = ""  # empty while only queued locally
    status: str
    started_at: int
    completed_at: int | None = None
    duration_ms: int | None = None
    result: Any = None
    usage: Any = None
    error: str | None = None


class NotificationChannel(BaseModel):
    """One delivery target for run outcomes."""

    channel: str = "email"
    to: str = ""
    on_success: bool = True
    on_failure: bool = True
    custom_subject: str | None = None
    custom_body: str | None = None  # may contain PLACEHOLDER
    include_result: bool | None = None

    @property
    def is_email(self) -> bool:
        return self.channel in EMAIL_CHANNELS


class NotificationPreference(BaseModel):
    task_id: str
    enabled: bool = False
    channels: list[NotificationChannel] = Field(default_factory=list)


class RunOutcome(BaseModel):
    """Final state of one runner invocation."""

    task_id: str
    result_id: int
    run_id: str = ""
    status: str
    result: Any = None
    usage: Any = None
    error: str | None = None
    duration_ms: int = 0

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class TaskStats(BaseModel):
    total: int = 0
    active: int = 0
    errored: int = 0
    running: int = 0
