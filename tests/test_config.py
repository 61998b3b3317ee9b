"""Tests for configuration loading."""

import os

import pytest

from possync.config import Config, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Drop POSSYNC_ variables inherited from the environment."""
    for key in list(os.environ):
        if key.startswith("POSSYNC_"):
            monkeypatch.delenv(key)


class TestLoadConfig:
    """Tests for YAML loading."""

    def test_defaults(self):
        """Test defaults without a config file."""
        config = load_config()

        assert isinstance(config, Config)
        assert config.remote.url == "http://localhost:8000"
        assert config.queue.max_retries == 3
        assert config.sync.pull_enabled is True
        assert config.server.api_tokens == []
        assert config.server.max_pull_limit == 5000

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test a missing file falls back to defaults."""
        config = load_config(tmp_path / "missing.yaml")

        assert config.server.port == 8000

    def test_yaml_sections(self, tmp_path):
        """Test values from every section are read."""
        path = tmp_path / "config.yaml"
        path.write_text(
            """
client:
  client_id: till-1
remote:
  url: http://pos-server:9000
  api_token: secret
queue:
  db_path: /tmp/q.db
  max_retries: 5
sync:
  drain_interval_seconds: 2.5
  pull_enabled: false
server:
  port: 9000
  api_tokens:
    - a
    - b
"""
        )

        config = load_config(path)

        assert config.client.client_id == "till-1"
        assert config.remote.url == "http://pos-server:9000"
        assert config.remote.api_token == "secret"
        assert config.remote.timeout_seconds == 30.0
        assert config.queue.max_retries == 5
        assert config.sync.drain_interval_seconds == 2.5
        assert config.sync.pull_enabled is False
        assert config.server.port == 9000
        assert config.server.api_tokens == ["a", "b"]
        assert config.cache.db_path == "~/.possync/cache.db"

    def test_single_token_string(self, tmp_path):
        """Test a single token may be given as a string."""
        path = tmp_path / "config.yaml"
        path.write_text("server:\n  api_tokens: secret\n")

        config = load_config(path)

        assert config.server.api_tokens == ["secret"]

    def test_empty_file(self, tmp_path):
        """Test an empty file yields defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path).queue.max_retries == 3


class TestEnvOverrides:
    """Tests for POSSYNC_ environment overrides."""

    def test_remote_overrides(self, monkeypatch):
        """Test remote settings from the environment."""
        monkeypatch.setenv("POSSYNC_REMOTE_URL", "http://other:8000")
        monkeypatch.setenv("POSSYNC_REMOTE_API_TOKEN", "env-token")
        monkeypatch.setenv("POSSYNC_REMOTE_TIMEOUT", "5")

        config = load_config()

        assert config.remote.url == "http://other:8000"
        assert config.remote.api_token == "env-token"
        assert config.remote.timeout_seconds == 5.0

    def test_env_wins_over_yaml(self, tmp_path, monkeypatch):
        """Test environment values override the file."""
        path = tmp_path / "config.yaml"
        path.write_text("queue:\n  max_retries: 5\n")
        monkeypatch.setenv("POSSYNC_QUEUE_MAX_RETRIES", "9")

        assert load_config(path).queue.max_retries == 9

    def test_server_tokens_comma_separated(self, monkeypatch):
        """Test tokens are split on commas."""
        monkeypatch.setenv("POSSYNC_SERVER_API_TOKENS", "a, b,,c")

        assert load_config().server.api_tokens == ["a", "b", "c"]

    def test_boolean_overrides(self, monkeypatch):
        """Test boolean settings parse common spellings."""
        monkeypatch.setenv("POSSYNC_SYNC_PULL_ENABLED", "no")
        monkeypatch.setenv("POSSYNC_SERVER_IDEMPOTENCY_ENABLED", "false")

        config = load_config()

        assert config.sync.pull_enabled is False
        assert config.server.idempotency_enabled is False
