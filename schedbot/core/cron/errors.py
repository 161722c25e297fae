"""Errors surfaced to interactive callers (CLI, tool endpoints)."""

from __future__ import annotations


class TaskError(Exception):
    """Base class for task engine errors."""


class TaskNotFoundError(TaskError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class TaskAlreadyRunningError(TaskError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task is already running: {task_id}")


class TaskLimitError(TaskError):
    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Maximum {limit} tasks allowed")


class ConfigurationError(TaskError):
    """A required credential or setting is missing."""
