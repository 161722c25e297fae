"""ExecutionRunner — drives one task run from dispatch to notification.

State machine for a single run::

    queued ──start ok──▶ running ──poll──▶ <terminal status>
      │                     │
      └──start failed──▶ failed ◀──timeout──┘

The run lock (``Task.active_run_id``) is claimed before the record is
created and released in a ``finally`` step, so no path leaves a task stuck
as running.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any, Protocol

import httpx
from loguru import logger

from schedbot.core.clock import SYSTEM_CLOCK, Clock
from schedbot.core.cron.errors import (
    ConfigurationError,
    TaskAlreadyRunningError,
    TaskNotFoundError,
)
from schedbot.core.cron.evaluator import DEFAULT_TIMEZONE, next_run_at
from schedbot.core.cron.results import extract_error
from schedbot.core.cron.types import RUN_PENDING_STATUSES, RunOutcome, Task
from schedbot.core.providers.agent_api import AgentAPIClient, AgentAPIError

if TYPE_CHECKING:
    from schedbot.core.channels.notifier import NotificationDispatcher
    from schedbot.core.config.schema import Config
    from schedbot.memory.store import TaskStore


class Dispatcher(Protocol):
    """One-shot "run task T at time X" primitive."""

    def schedule_run(self, task_id: str, at_ms: int) -> None: ...


class _RunState:
    """Mutable bookkeeping for one invocation (lock holders, record id)."""

    def __init__(self, task: Task, token: str, started_at: int):
        self.task = task
        self.holders = [token]
        self.token = token
        self.started_at = started_at
        self.result_id: int | None = None
        self.run_id = ""
        self.finished = False


class ExecutionRunner:
    """Run a task against the agent API and record the outcome."""

    def __init__(
        self,
        store: TaskStore,
        client: AgentAPIClient,
        notifier: NotificationDispatcher | None = None,
        dispatcher: Dispatcher | None = None,
        config: Config | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ):
        self.store = store
        self.client = client
        self.notifier = notifier
        self.dispatcher = dispatcher
        self.clock = clock

        runner_cfg = config.runner if config else None
        self.poll_interval_s = runner_cfg.poll_interval_s if runner_cfg else 2.0
        self.max_poll_attempts = runner_cfg.max_poll_attempts if runner_cfg else 150
        self.failure_threshold = runner_cfg.failure_threshold if runner_cfg else 5
        self.instruction_suffix = config.agent_api.instruction_suffix if config else ""
        self.default_timezone = config.scheduler.timezone if config else DEFAULT_TIMEZONE

    # ── Entry point ──────────────────────────────────────────

    async def run(self, task_id: str, interactive: bool = False) -> RunOutcome | None:
        """Execute one run of ``task_id``.

        Scheduled callers (``interactive=False``) get ``None`` back when the
        task is missing, already running, or the API key is not configured,
        and nothing is changed. Interactive callers get the matching error.
        Every other failure is recorded on the task and returned as a failed
        ``RunOutcome``.
        """
        task = self.store.get_task(task_id)
        if task is None:
            if interactive:
                raise TaskNotFoundError(task_id)
            logger.debug(f"Run skipped, task {task_id} no longer exists")
            return None
        if task.is_running:
            if interactive:
                raise TaskAlreadyRunningError(task_id)
            logger.debug(f"Run skipped, task {task_id} already running ({task.active_run_id})")
            return None
        if not self.client.configured:
            if interactive:
                raise ConfigurationError("Missing agent API key (agent_api.api_key)")
            logger.warning(f"Run skipped for task {task_id}: agent API key not configured")
            return None

        token = f"queued:{uuid.uuid4().hex[:8]}"
        if not self.store.claim_run(task_id, token):
            if interactive:
                raise TaskAlreadyRunningError(task_id)
            return None

        state = _RunState(task, token, self.clock.now_ms())
        try:
            return await self._execute(state)
        except Exception as e:
            logger.exception(f"Run of task {task_id} crashed: {e}")
            return self._finish_crashed(state, e)
        finally:
            if self.store.release_run(task_id, state.holders):
                logger.warning(f"Run lock for task {task_id} released by cleanup")

    # ── Run phases ───────────────────────────────────────────

    async def _execute(self, state: _RunState) -> RunOutcome:
        task = state.task
        state.result_id = self.store.add_execution_result(
            task.id, status="queued", started_at=state.started_at,
        )
        logger.info(f"Task run queued: {task.id} ({task.name})")

        try:
            run_id = await self.client.start_run(
                task.engine, task.prompt + self.instruction_suffix, task.tools,
            )
        except AgentAPIError as e:
            return await self._complete(state, "failed", error=f"Failed to start run: {e.detail}")
        except httpx.HTTPError as e:
            return await self._complete(state, "failed", error=f"Failed to start run: {e}")

        state.run_id = run_id
        self.store.update_execution_result(state.result_id, status="running", run_id=run_id)
        self.store.set_active_run(task.id, state.token, run_id, self.clock.now_ms())
        state.holders.append(run_id)
        logger.info(f"Task run started: {task.id} → run {run_id}")

        completed = await self._poll(run_id)
        if completed is None:
            timeout_s = int(self.poll_interval_s * self.max_poll_attempts)
            return await self._complete(
                state, "failed", error=f"Run timed out after {timeout_s}s of polling",
            )

        status = str(completed.get("status") or "succeeded")
        return await self._complete(
            state,
            status,
            result=completed.get("result"),
            usage=completed.get("usage"),
            error=extract_error(completed) if status == "failed" else None,
            run_id=str(completed.get("runId") or run_id),
        )

    async def _poll(self, run_id: str) -> dict[str, Any] | None:
        """Poll until a terminal status; None if attempts run out."""
        for attempt in range(self.max_poll_attempts):
            await self.clock.sleep(self.poll_interval_s)
            try:
                data = await self.client.get_run(run_id)
            except (AgentAPIError, httpx.HTTPError, ValueError) as e:
                logger.debug(f"Poll {attempt + 1} for run {run_id} failed: {e}")
                continue
            if data.get("status") in RUN_PENDING_STATUSES:
                continue
            return data
        return None

    async def _complete(
        self,
        state: _RunState,
        status: str,
        result: Any = None,
        usage: Any = None,
        error: str | None = None,
        run_id: str | None = None,
    ) -> RunOutcome:
        """Persist the terminal state, apply the failure policy, notify."""
        completed_at = self.clock.now_ms()
        duration_ms = completed_at - state.started_at
        self.store.update_execution_result(
            state.result_id,
            status=status,
            run_id=run_id,
            result=result,
            usage=usage,
            completed_at=completed_at,
            duration_ms=duration_ms,
            error=error,
        )
        outcome = RunOutcome(
            task_id=state.task.id,
            result_id=state.result_id,
            run_id=run_id or state.run_id,
            status=status,
            result=result,
            usage=usage,
            error=error,
            duration_ms=duration_ms,
        )
        self._apply_outcome(state, outcome)

        if outcome.failed:
            logger.warning(f"Task run failed: {state.task.id} ({duration_ms}ms): {error}")
        else:
            logger.info(f"Task run finished: {state.task.id} → {status} ({duration_ms}ms)")

        if self.notifier is not None:
            try:
                await self.notifier.notify(state.task, outcome)
            except Exception as e:
                logger.error(f"Notification for task {state.task.id} failed: {e}")
        return outcome

    def _apply_outcome(self, state: _RunState, outcome: RunOutcome) -> None:
        """Counter, lock release, auto-disable, and re-arm the next run."""
        task = state.task
        upcoming = next_run_at(
            task.schedule, task.timezone, now=self.clock.now_ms(),
            default_timezone=self.default_timezone,
        )
        updated = self.store.finish_run(
            task.id,
            last_run_status=outcome.status,
            failed=outcome.failed,
            next_run_at=upcoming,
            failure_threshold=self.failure_threshold,
        )
        state.finished = True
        if updated is None:
            return

        if updated.status == "error" and task.status != "error":
            logger.warning(
                f"Task {task.id} disabled after {updated.consecutive_failures} consecutive failures"
            )
        if upcoming is not None and updated.status == "active" and self.dispatcher is not None:
            self.dispatcher.schedule_run(task.id, upcoming)

    def _finish_crashed(self, state: _RunState, exc: Exception) -> RunOutcome | None:
        """Best-effort bookkeeping after an unexpected error; never raises."""
        error = f"Internal error: {exc}"
        outcome = RunOutcome(
            task_id=state.task.id,
            result_id=state.result_id or 0,
            run_id=state.run_id,
            status="failed",
            error=error,
            duration_ms=self.clock.now_ms() - state.started_at,
        )
        try:
            if state.result_id is not None:
                record = self.store.get_execution_result(state.result_id)
                if record is not None and record.status in RUN_PENDING_STATUSES:
                    self.store.update_execution_result(
                        state.result_id,
                        status="failed",
                        completed_at=self.clock.now_ms(),
                        duration_ms=outcome.duration_ms,
                        error=error,
                    )
            if not state.finished:
                self._apply_outcome(state, outcome)
        except Exception as cleanup_error:
            logger.error(f"Cleanup after crashed run of {state.task.id} failed: {cleanup_error}")
        return outcome
