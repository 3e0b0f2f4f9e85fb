"""Tests for configuration loading."""

from paceflow.config import load_config
from paceflow.inbox import InMemoryTriggerInbox, SQLTriggerInbox, get_inbox
from paceflow.triggers import default_triggers


def test_defaults_without_file():
    config = load_config()
    assert config.engine.max_retries == 3
    assert config.poller.interval_seconds == 30
    assert config.poller.concurrency == 10
    assert config.database_url is None
    assert config.triggers == {}


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "paceflow.yaml"
    config_path.write_text(
        """
engine:
  max_retries: 5
  retry_base_delay: 10
poller:
  interval_seconds: 5
  batch_size: 20
database_url: sqlite://from-file.db
rules_path: ./rules
triggers:
  user_buys_subscription:
    workflow_id: premium_onboarding
  user_created:
    workflow_id: user_created
    enabled: false
"""
    )
    monkeypatch.setenv("PACEFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.engine.max_retries == 5
    assert config.engine.retry_base_delay == 10
    assert config.poller.interval_seconds == 5
    assert config.poller.batch_size == 20
    assert config.database_url == "sqlite://from-file.db"
    assert config.rules_path == "./rules"
    assert config.triggers["user_buys_subscription"].workflow_id == "premium_onboarding"


def test_environment_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite://from-file.db\n")

    monkeypatch.setenv("DATABASE_URL", "postgresql://db/paceflow")
    monkeypatch.setenv("PACEFLOW_INBOX_URL", "sqlite+aiosqlite:///inbox.db")
    config = load_config(str(config_path))
    assert config.database_url == "postgresql://db/paceflow"
    assert config.inbox_url == "sqlite+aiosqlite:///inbox.db"

    monkeypatch.setenv("PACEFLOW_DATABASE_URL", "sqlite://preferred.db")
    assert load_config(str(config_path)).database_url == "sqlite://preferred.db"


def test_trigger_bindings_follow_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
triggers:
  user_buys_subscription:
    workflow_id: premium_onboarding
  user_created:
    workflow_id: user_created
    enabled: false
"""
    )
    registry = default_triggers(load_config(str(config_path)))

    assert registry.types() == ["user_buys_subscription", "user_signs_up_newsletter"]
    assert registry.get("user_buys_subscription").workflow_id == "premium_onboarding"
    assert registry.get("user_signs_up_newsletter").workflow_id == "user_signs_up_newsletter"


def test_get_inbox_uses_config(tmp_path, monkeypatch):
    assert isinstance(get_inbox(), InMemoryTriggerInbox)

    monkeypatch.setenv("PACEFLOW_INBOX_URL", f"sqlite+aiosqlite:///{tmp_path / 'inbox.db'}")
    inbox = get_inbox(config=load_config())
    assert isinstance(inbox, SQLTriggerInbox)
