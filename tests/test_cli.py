"""Tests for schedbot.cli."""

from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from schedbot.cli.commands import app
from schedbot.core.config import Config
from schedbot.memory.store import TaskStore

runner = CliRunner()

_PATCH_CONFIG = "schedbot.core.config.loader.load_config"


@pytest.fixture
def cfg(tmp_path):
    return Config(database={"path": str(tmp_path / "cli.db")})


def _invoke(cfg, args):
    with patch(_PATCH_CONFIG, return_value=cfg):
        return runner.invoke(app, args)


def test_cli_help():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "run" in result.output
    assert "status" in result.output
    assert "task" in result.output


def test_status_output(cfg):
    result = _invoke(cfg, ["status"])
    assert result.exit_code == 0
    assert "DB Path" in result.output
    assert "missing" in result.output


def test_task_add_and_list(cfg):
    result = _invoke(cfg, ["task", "add", "Digest", "Summarize news", "-s", "0 9 * * 1-5"])
    assert result.exit_code == 0
    assert "Task created" in result.output

    result = _invoke(cfg, ["task", "list"])
    assert result.exit_code == 0
    assert "Digest" in result.output
    assert "Weekdays" in result.output


def test_task_add_invalid_cron(cfg):
    result = _invoke(cfg, ["task", "add", "Bad", "p", "-s", "every day"])
    assert result.exit_code == 1
    assert "Invalid cron" in result.output


def test_task_list_empty(cfg):
    result = _invoke(cfg, ["task", "list"])
    assert result.exit_code == 0
    assert "No tasks found" in result.output


def test_task_pause_resume_remove(cfg):
    store = TaskStore(cfg.database.path)
    task = store.create_task(name="t", prompt="p", schedule="0 9 * * *", engine="tim-gpt")

    assert _invoke(cfg, ["task", "pause", task.id]).exit_code == 0
    assert store.get_task(task.id).status == "paused"

    assert _invoke(cfg, ["task", "resume", task.id]).exit_code == 0
    assert store.get_task(task.id).status == "active"

    assert _invoke(cfg, ["task", "remove", task.id]).exit_code == 0
    assert store.get_task(task.id) is None

    result = _invoke(cfg, ["task", "remove", task.id])
    assert result.exit_code == 1
    assert "Task not found" in result.output


def test_task_trigger_without_api_key(cfg):
    store = TaskStore(cfg.database.path)
    task = store.create_task(name="t", prompt="p", schedule="0 9 * * *", engine="tim-gpt")

    result = _invoke(cfg, ["task", "trigger", task.id])

    assert result.exit_code == 1
    assert "api_key" in result.output


def test_task_history(cfg):
    store = TaskStore(cfg.database.path)
    task = store.create_task(name="t", prompt="p", schedule="0 9 * * *", engine="tim-gpt")
    store.add_execution_result(
        task.id, status="failed", started_at=1_767_600_000_000, duration_ms=2500, error="quota"
    )

    result = _invoke(cfg, ["task", "history", task.id])

    assert result.exit_code == 0
    assert "failed" in result.output
    assert "quota" in result.output


def test_task_notify(cfg):
    store = TaskStore(cfg.database.path)
    task = store.create_task(name="t", prompt="p", schedule="0 9 * * *", engine="tim-gpt")

    result = _invoke(cfg, ["task", "notify", task.id, "--email", "me@example.com", "--no-on-success"])
    assert result.exit_code == 0
    prefs = store.get_notification_preference(task.id)
    assert prefs.enabled
    assert prefs.channels[0].to == "me@example.com"
    assert not prefs.channels[0].on_success

    result = _invoke(cfg, ["task", "notify", task.id, "--disable"])
    assert result.exit_code == 0
    assert not store.get_notification_preference(task.id).enabled
