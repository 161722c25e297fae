"""Tests for schedbot.core.config."""

import pytest
import yaml

from schedbot.core.config import Config, load_config


def test_defaults():
    cfg = Config()
    assert cfg.agent_api.base_url == "https://api.subconscious.dev/v1"
    assert cfg.runner.poll_interval_s == 2.0
    assert cfg.runner.max_poll_attempts == 150
    assert cfg.runner.failure_threshold == 5
    assert cfg.scheduler.sweep_interval_minutes == 30
    assert cfg.tasks.max_tasks == 50
    assert cfg.tasks.history_limit == 100
    assert cfg.database.path == "data/schedbot.db"


def test_computed_properties():
    cfg = Config(scheduler={"sweep_interval_minutes": 5, "guard_days": 1})
    assert cfg.sweep_interval_s == 300
    assert cfg.guard_ms == 24 * 60 * 60 * 1000
    assert not cfg.agent_api_configured
    assert not cfg.email_configured


def test_from_dict():
    cfg = Config(
        agent_api={"api_key": "sk-test", "default_engine": "tim-large"},
        channels={"email": {"api_key": "re_test"}},
    )
    assert cfg.agent_api_configured
    assert cfg.agent_api.default_engine == "tim-large"
    assert cfg.email_configured


def test_email_disabled_not_configured():
    cfg = Config(channels={"email": {"api_key": "re_test", "enabled": False}})
    assert not cfg.email_configured


def test_load_yaml(tmp_path):
    f = tmp_path / "config.yaml"
    f.write_text(yaml.dump({"runner": {"poll_interval_s": 5}}))
    cfg = load_config(f)
    assert cfg.runner.poll_interval_s == 5.0
    assert cfg.runner.max_poll_attempts == 150


def test_load_missing(tmp_path):
    cfg = load_config(tmp_path / "nope.yaml")
    assert cfg.tasks.max_tasks == 50


def test_load_from_env_path(tmp_path, monkeypatch):
    f = tmp_path / "custom.yaml"
    f.write_text(yaml.dump({"tasks": {"max_tasks": 7}}))
    monkeypatch.setenv("SCHEDBOT_CONFIG", str(f))
    assert load_config().tasks.max_tasks == 7


def test_env_overrides_yaml(tmp_path, monkeypatch):
    f = tmp_path / "config.yaml"
    f.write_text(yaml.dump({"agent_api": {"api_key": "from-yaml", "timeout": 10}}))
    monkeypatch.setenv("SCHEDBOT_AGENT_API__API_KEY", "from-env")
    cfg = load_config(f)
    assert cfg.agent_api.api_key == "from-env"
    assert cfg.agent_api.timeout == 10


def test_overrides_merge_into_section(tmp_path):
    f = tmp_path / "config.yaml"
    f.write_text(yaml.dump({"database": {"path": "a.db"}, "tasks": {"max_tasks": 3}}))
    cfg = load_config(f, database={"path": str(tmp_path / "b.db")})
    assert cfg.database.path == str(tmp_path / "b.db")
    assert cfg.tasks.max_tasks == 3


def test_non_mapping_yaml_rejected(tmp_path):
    f = tmp_path / "config.yaml"
    f.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        load_config(f)
