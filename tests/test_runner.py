"""Tests for ExecutionRunner — run lifecycle, failure policy, lock release."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from conftest import utc_ms
from schedbot.core.config import Config
from schedbot.core.cron.errors import (
    ConfigurationError,
    TaskAlreadyRunningError,
    TaskNotFoundError,
)
from schedbot.core.cron.results import EMPTY_RESULT_ERROR
from schedbot.core.cron.runner import ExecutionRunner
from schedbot.core.cron.scheduler import TaskScheduler
from schedbot.core.providers.agent_api import AgentAPIClient, AgentAPIError


@pytest.fixture
def client():
    c = MagicMock()
    c.configured = True
    c.start_run = AsyncMock(return_value="run-1")
    c.get_run = AsyncMock(return_value={"status": "succeeded", "result": {"answer": "ok"}})
    return c


@pytest.fixture
def notifier():
    n = MagicMock()
    n.notify = AsyncMock(return_value=1)
    return n


@pytest.fixture
def dispatcher():
    return MagicMock()


@pytest.fixture
def runner(store, client, notifier, dispatcher, clock):
    return ExecutionRunner(store, client, notifier=notifier, dispatcher=dispatcher, clock=clock)


def _task(store, schedule="*/15 * * * *", **kw):
    return store.create_task(
        name="Watch", prompt="Check prices", schedule=schedule, engine="tim-gpt",
        tools=[{"type": "web_search"}], **kw,
    )


def _single_record(store, task_id):
    records = store.list_execution_results(task_id)
    assert len(records) == 1
    return records[0]


# ── Success path ───────────────────────────────────────────


@pytest.mark.asyncio
async def test_success_after_two_running_polls(store, client, notifier, dispatcher, runner, clock):
    task = _task(store)
    started = clock.now
    client.get_run.side_effect = [
        {"status": "running"},
        {"status": "queued"},
        {"status": "succeeded", "result": {"answer": "Prices up"}, "usage": {"tokens": 40}},
    ]

    outcome = await runner.run(task.id)

    assert outcome.succeeded
    assert outcome.run_id == "run-1"
    assert outcome.duration_ms == 6000
    assert clock.sleeps == [2.0, 2.0, 2.0]

    record = _single_record(store, task.id)
    assert record.status == "succeeded"
    assert record.run_id == "run-1"
    assert record.result == {"answer": "Prices up"}
    assert record.usage == {"tokens": 40}
    assert record.completed_at - record.started_at == 6000

    updated = store.get_task(task.id)
    assert updated.active_run_id is None
    assert updated.last_run_status == "succeeded"
    assert updated.last_run_at == started
    assert updated.consecutive_failures == 0
    assert updated.next_run_at == utc_ms(2026, 1, 5, 8, 15)

    dispatcher.schedule_run.assert_called_once_with(task.id, utc_ms(2026, 1, 5, 8, 15))
    notifier.notify.assert_awaited_once()
    assert notifier.notify.await_args.args[1].status == "succeeded"


@pytest.mark.asyncio
async def test_start_payload_uses_suffix(store, client, clock):
    cfg = Config(agent_api={"api_key": "k", "instruction_suffix": " [plain]"})
    r = ExecutionRunner(store, client, config=cfg, clock=clock)
    task = _task(store)

    await r.run(task.id)

    client.start_run.assert_awaited_once_with(
        "tim-gpt", "Check prices [plain]", [{"type": "web_search"}]
    )


@pytest.mark.asyncio
async def test_success_resets_counter(store, runner):
    task = _task(store)
    store.update_task(task.id, consecutive_failures=3)
    await runner.run(task.id)
    assert store.get_task(task.id).consecutive_failures == 0


@pytest.mark.asyncio
async def test_runner_sets_lock_while_polling(store, client, runner):
    task = _task(store)
    seen = []

    async def get_run(run_id):
        seen.append(store.get_task(task.id).active_run_id)
        records = store.list_execution_results(task.id)
        seen.append([r.status for r in records])
        return {"status": "succeeded"}

    client.get_run.side_effect = get_run
    await runner.run(task.id)

    assert seen == ["run-1", ["running"]]


# ── Failure paths ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_start_failure(store, client, notifier, dispatcher, runner):
    task = _task(store)
    client.start_run.side_effect = AgentAPIError(500, "engine overloaded")

    outcome = await runner.run(task.id)

    assert outcome.failed
    assert outcome.error == "Failed to start run: engine overloaded"
    record = _single_record(store, task.id)
    assert record.status == "failed"
    assert record.error == "Failed to start run: engine overloaded"
    assert record.run_id == ""

    updated = store.get_task(task.id)
    assert updated.consecutive_failures == 1
    assert updated.status == "active"
    assert updated.active_run_id is None
    assert updated.next_run_at is not None
    client.get_run.assert_not_awaited()
    notifier.notify.assert_awaited_once()
    dispatcher.schedule_run.assert_called_once()


@pytest.mark.asyncio
async def test_start_transport_error(store, client, runner):
    task = _task(store)
    client.start_run.side_effect = httpx.ConnectError("connection refused")

    outcome = await runner.run(task.id, interactive=True)

    assert outcome.failed
    assert outcome.error.startswith("Failed to start run:")
    assert store.get_task(task.id).active_run_id is None


@pytest.mark.asyncio
async def test_start_malformed_response_is_start_failure(store, clock):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>oops</html>"))
    client = AgentAPIClient("https://agents.test/v1", api_key="k", transport=transport)
    r = ExecutionRunner(store, client, clock=clock)
    task = _task(store)

    outcome = await r.run(task.id)

    assert outcome.failed
    assert outcome.error.startswith("Failed to start run: Invalid JSON response")
    assert _single_record(store, task.id).error == outcome.error
    assert store.get_task(task.id).active_run_id is None


@pytest.mark.asyncio
async def test_poll_timeout(store, client, clock):
    cfg = Config(agent_api={"api_key": "k"}, runner={"max_poll_attempts": 3, "poll_interval_s": 2.0})
    r = ExecutionRunner(store, client, config=cfg, clock=clock)
    client.get_run.return_value = {"status": "running"}
    task = _task(store)

    outcome = await r.run(task.id)

    assert outcome.failed
    assert outcome.error == "Run timed out after 6s of polling"
    assert client.get_run.await_count == 3
    updated = store.get_task(task.id)
    assert updated.consecutive_failures == 1
    assert updated.active_run_id is None


@pytest.mark.asyncio
async def test_poll_errors_are_swallowed(store, client, runner):
    task = _task(store)
    client.get_run.side_effect = [
        httpx.ReadTimeout("slow"),
        AgentAPIError(502, "bad gateway"),
        ValueError("bad json"),
        {"status": "succeeded", "result": "done"},
    ]

    outcome = await runner.run(task.id)

    assert outcome.succeeded
    assert client.get_run.await_count == 4


@pytest.mark.asyncio
async def test_job_reported_failure(store, client, runner):
    task = _task(store)
    client.get_run.return_value = {"status": "failed", "result": {"error": "tool crashed"}}

    outcome = await runner.run(task.id)

    assert outcome.failed
    assert outcome.error == "tool crashed"
    record = _single_record(store, task.id)
    assert record.error == "tool crashed"
    assert store.get_task(task.id).consecutive_failures == 1


@pytest.mark.asyncio
async def test_job_failure_with_empty_result(store, client, runner):
    task = _task(store)
    client.get_run.return_value = {"status": "failed", "result": {}}
    outcome = await runner.run(task.id)
    assert outcome.error == EMPTY_RESULT_ERROR


@pytest.mark.asyncio
async def test_other_terminal_status_not_counted(store, client, runner):
    task = _task(store)
    store.update_task(task.id, consecutive_failures=2)
    client.get_run.return_value = {"status": "canceled"}

    outcome = await runner.run(task.id)

    assert outcome.status == "canceled"
    assert not outcome.failed
    updated = store.get_task(task.id)
    assert updated.last_run_status == "canceled"
    assert updated.consecutive_failures == 0


@pytest.mark.asyncio
async def test_five_failures_disable_task(store, client, dispatcher, runner, clock):
    task = _task(store)
    client.get_run.return_value = {"status": "failed", "result": {"error": "bad"}}

    for _ in range(5):
        await runner.run(task.id)

    updated = store.get_task(task.id)
    assert updated.status == "error"
    assert updated.consecutive_failures == 5
    assert updated.active_run_id is None
    assert dispatcher.schedule_run.call_count == 4

    # the sweep no longer picks it up
    sched = TaskScheduler(store, clock=clock)
    sched.attach(runner)
    clock.advance(24 * 60 * 60 * 1000)
    assert await sched.check_due_tasks() == 0
    assert store.count_execution_results(task.id) == 5


@pytest.mark.asyncio
async def test_crash_still_releases_lock(store, client, notifier, runner):
    task = _task(store)
    client.get_run.side_effect = RuntimeError("kaboom")

    outcome = await runner.run(task.id)

    assert outcome.failed
    assert outcome.error == "Internal error: kaboom"
    updated = store.get_task(task.id)
    assert updated.active_run_id is None
    assert updated.consecutive_failures == 1
    record = _single_record(store, task.id)
    assert record.status == "failed"
    assert record.error == "Internal error: kaboom"


@pytest.mark.asyncio
async def test_notifier_failure_does_not_fail_run(store, notifier, runner):
    task = _task(store)
    notifier.notify.side_effect = RuntimeError("smtp down")

    outcome = await runner.run(task.id)

    assert outcome.succeeded
    updated = store.get_task(task.id)
    assert updated.active_run_id is None
    assert _single_record(store, task.id).status == "succeeded"


# ── Preconditions ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_missing_task(runner):
    assert await runner.run("nope") is None
    with pytest.raises(TaskNotFoundError):
        await runner.run("nope", interactive=True)


@pytest.mark.asyncio
async def test_already_running(store, client, runner):
    task = _task(store)
    store.claim_run(task.id, "run-other")

    assert await runner.run(task.id) is None
    with pytest.raises(TaskAlreadyRunningError):
        await runner.run(task.id, interactive=True)

    client.start_run.assert_not_awaited()
    assert store.count_execution_results(task.id) == 0
    assert store.get_task(task.id).active_run_id == "run-other"


@pytest.mark.asyncio
async def test_not_configured(store, client, runner):
    task = _task(store, next_run_at=123)
    client.configured = False

    assert await runner.run(task.id) is None
    with pytest.raises(ConfigurationError):
        await runner.run(task.id, interactive=True)

    unchanged = store.get_task(task.id)
    assert unchanged.next_run_at == 123
    assert unchanged.active_run_id is None
    assert store.count_execution_results(task.id) == 0


@pytest.mark.asyncio
async def test_paused_task_not_rearmed(store, client, dispatcher, runner):
    task = _task(store)
    store.update_task(task.id, status="paused")

    outcome = await runner.run(task.id, interactive=True)

    assert outcome.succeeded
    dispatcher.schedule_run.assert_not_called()
    assert store.get_task(task.id).status == "paused"
