"""TaskService — task CRUD, manual triggers and notification preferences.

Callers (CLI, agent tool endpoints) go through this layer; it keeps
``next_run_at`` and the one-shot dispatch in step with every edit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger

from schedbot.core.channels.email import EmailClient
from schedbot.core.channels.notifier import NotificationDispatcher
from schedbot.core.clock import SYSTEM_CLOCK, Clock
from schedbot.core.config.schema import Config
from schedbot.core.cron.errors import TaskLimitError, TaskNotFoundError
from schedbot.core.cron.evaluator import next_run_at
from schedbot.core.cron.runner import ExecutionRunner
from schedbot.core.cron.scheduler import TaskScheduler
from schedbot.core.cron.types import (
    ExecutionResult,
    NotificationChannel,
    NotificationPreference,
    RunOutcome,
    Task,
    TaskPatch,
    TaskStats,
)
from schedbot.core.providers.agent_api import AgentAPIClient
from schedbot.memory.store import TaskStore

DETAIL_RESULTS = 5
HISTORY_RESULTS = 20

_STATUS_ORDER = {"active": 0, "paused": 1, "error": 2}
_SCHEDULE_FIELDS = frozenset({"schedule", "timezone"})


def _sort_key(task: Task) -> tuple[int, int, str]:
    return (_STATUS_ORDER.get(task.status, 3), -(task.last_run_at or 0), task.name)


class TaskService:
    """Task operations on top of TaskStore, TaskScheduler and ExecutionRunner."""

    def __init__(
        self,
        store: TaskStore,
        scheduler: TaskScheduler,
        runner: ExecutionRunner,
        config: Config | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ):
        self.store = store
        self.scheduler = scheduler
        self.runner = runner
        self.clock = clock
        self.max_tasks = config.tasks.max_tasks if config else 50
        self.default_engine = config.agent_api.default_engine if config else "tim-gpt"
        self.default_timezone = config.scheduler.timezone if config else "UTC"

    def _next_run(self, schedule: str, timezone: str | None) -> int | None:
        return next_run_at(
            schedule, timezone, now=self.clock.now_ms(),
            default_timezone=self.default_timezone,
        )

    def _sync_dispatch(self, task: Task) -> None:
        if task.status == "active" and task.next_run_at is not None:
            self.scheduler.schedule_run(task.id, task.next_run_at)
        else:
            self.scheduler.cancel_run(task.id)

    # ── Create ───────────────────────────────────────────────

    def create(
        self,
        name: str,
        prompt: str,
        schedule: str,
        engine: str | None = None,
        tools: list[Any] | None = None,
        timezone: str | None = None,
        owner_id: str | None = None,
        type: str = "research",
        notify_email: str | None = None,
    ) -> Task:
        """Create an active task and arm its first run.

        An invalid schedule is accepted; the task just gets no
        ``next_run_at`` until the expression is fixed.
        """
        existing = self.store.count_tasks(owner_id)
        if existing >= self.max_tasks:
            raise TaskLimitError(self.max_tasks)

        upcoming = self._next_run(schedule, timezone)
        task = self.store.create_task(
            name=name,
            prompt=prompt,
            schedule=schedule,
            engine=engine or self.default_engine,
            tools=tools,
            timezone=timezone,
            owner_id=owner_id,
            type=type,
            next_run_at=upcoming,
        )
        if notify_email:
            self.store.upsert_notification_preference(
                task.id, enabled=True,
                channels=[NotificationChannel(channel="email", to=notify_email)],
            )
        if upcoming is None:
            logger.warning(f"Task {task.id} has an unparseable schedule: {schedule!r}")
        self._sync_dispatch(task)
        logger.info(f"Task created: {task.id} ({name}) schedule={schedule}")
        return task

    def create_from_tool(
        self,
        name: str,
        prompt: str,
        schedule: str,
        engine: str | None = None,
        tools: list[Any] | None = None,
        timezone: str | None = None,
    ) -> Task:
        """Unowned creation path used by agent tool calls."""
        return self.create(
            name=name, prompt=prompt, schedule=schedule,
            engine=engine, tools=tools, timezone=timezone,
        )

    # ── Read ─────────────────────────────────────────────────

    def get(self, task_id: str, owner_id: str | None = None) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if owner_id is not None and task.owner_id != owner_id:
            raise PermissionError(f"Task {task_id} belongs to another owner")
        return task

    def list_tasks(self, owner_id: str | None = None) -> list[Task]:
        """Active first, then paused, then errored; most recently run first."""
        return sorted(self.store.list_tasks(owner_id), key=_sort_key)

    def details(self, task_id: str, owner_id: str | None = None) -> tuple[Task, list[ExecutionResult]]:
        task = self.get(task_id, owner_id)
        return task, self.store.list_execution_results(task_id, limit=DETAIL_RESULTS)

    def stats(self, owner_id: str | None = None) -> TaskStats:
        return self.store.task_stats(owner_id)

    def history(self, task_id: str, limit: int = HISTORY_RESULTS) -> list[ExecutionResult]:
        return self.store.list_execution_results(task_id, limit=limit)

    def get_execution(self, result_id: int) -> ExecutionResult | None:
        return self.store.get_execution_result(result_id)

    # ── Update ───────────────────────────────────────────────

    def update(self, task_id: str, owner_id: str | None = None, **fields: Any) -> Task:
        """Patch a task.

        Schedule or timezone edits recompute ``next_run_at`` unless one is
        passed explicitly. Setting ``status="active"`` keeps the failure
        counter; only a successful run resets it. Only ``TaskPatch`` fields
        are accepted; anything else raises ``pydantic.ValidationError``
        before the row is touched.
        """
        task = self.get(task_id, owner_id)
        patch = TaskPatch.model_validate(fields).model_dump(exclude_unset=True)
        if not _SCHEDULE_FIELDS.isdisjoint(patch) and "next_run_at" not in patch:
            patch["next_run_at"] = self._next_run(
                patch.get("schedule", task.schedule),
                patch.get("timezone", task.timezone),
            )
        updated = self.store.update_task(task_id, **patch)
        self._sync_dispatch(updated)
        logger.info(f"Task updated: {task_id} ({', '.join(sorted(patch))})")
        return updated

    def pause(self, task_id: str, owner_id: str | None = None) -> Task:
        return self.update(task_id, owner_id, status="paused")

    def resume(self, task_id: str, owner_id: str | None = None) -> Task:
        """Back to active. A lapsed ``next_run_at`` is recomputed from now."""
        task = self.get(task_id, owner_id)
        fields: dict[str, Any] = {"status": "active"}
        if task.next_run_at is None or task.next_run_at <= self.clock.now_ms():
            fields["next_run_at"] = self._next_run(task.schedule, task.timezone)
        return self.update(task_id, owner_id, **fields)

    def remove(self, task_id: str, owner_id: str | None = None) -> bool:
        self.get(task_id, owner_id)
        self.scheduler.cancel_run(task_id)
        removed = self.store.delete_task(task_id)
        if removed:
            logger.info(f"Task removed: {task_id}")
        return removed

    # ── Runs ─────────────────────────────────────────────────

    async def trigger(self, task_id: str, owner_id: str | None = None) -> RunOutcome | None:
        """Run a task now, outside its schedule."""
        self.get(task_id, owner_id)
        logger.info(f"Manual trigger: {task_id}")
        return await self.runner.run(task_id, interactive=True)

    # ── Notifications ────────────────────────────────────────

    def get_notifications(self, task_id: str) -> NotificationPreference:
        prefs = self.store.get_notification_preference(task_id)
        return prefs or NotificationPreference(task_id=task_id)

    def set_notifications(
        self,
        task_id: str,
        enabled: bool,
        channels: list[NotificationChannel],
    ) -> NotificationPreference:
        self.get(task_id)
        self.store.upsert_notification_preference(task_id, enabled, channels)
        return self.get_notifications(task_id)


# ════════════════════════════════════════════════════════════
# WIRING
# ════════════════════════════════════════════════════════════


@dataclass
class Engine:
    """Fully wired engine components."""

    config: Config
    store: TaskStore
    scheduler: TaskScheduler
    runner: ExecutionRunner
    service: TaskService


def build_engine(
    config: Config,
    store: TaskStore | None = None,
    clock: Clock = SYSTEM_CLOCK,
) -> Engine:
    """Construct store, clients, runner, scheduler and service from config."""
    store = store or TaskStore(
        str(config.db_path), history_limit=config.tasks.history_limit, clock=clock,
    )
    client = AgentAPIClient(
        base_url=config.agent_api.base_url,
        api_key=config.agent_api.api_key,
        timeout=config.agent_api.timeout,
    )
    email_cfg = config.channels.email
    email = EmailClient(
        api_key=email_cfg.api_key if email_cfg.enabled else "",
        from_address=email_cfg.from_address,
        api_base=email_cfg.api_base,
    )
    notifier = NotificationDispatcher(store, email=email)
    scheduler = TaskScheduler(store, config=config, clock=clock)
    runner = ExecutionRunner(
        store, client, notifier=notifier, dispatcher=scheduler,
        config=config, clock=clock,
    )
    scheduler.attach(runner)
    service = TaskService(store, scheduler, runner, config=config, clock=clock)
    return Engine(config=config, store=store, scheduler=scheduler, runner=runner, service=service)
