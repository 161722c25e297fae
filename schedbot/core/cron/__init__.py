"""Scheduled task execution — cron evaluation, runs, APScheduler bridge."""

from schedbot.core.cron.errors import (
    ConfigurationError,
    TaskAlreadyRunningError,
    TaskError,
    TaskLimitError,
    TaskNotFoundError,
)
from schedbot.core.cron.runner import ExecutionRunner
from schedbot.core.cron.scheduler import TaskScheduler
from schedbot.core.cron.types import ExecutionResult, RunOutcome, Task

__all__ = [
    "ConfigurationError",
    "ExecutionResult",
    "ExecutionRunner",
    "RunOutcome",
    "Task",
    "TaskAlreadyRunningError",
    "TaskError",
    "TaskLimitError",
    "TaskNotFoundError",
    "TaskScheduler",
]
