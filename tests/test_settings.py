"""
Tests for settings loading and database URL handling.
"""
import pytest

from config.settings import (
    DatabaseConfig, Settings, get_settings, load_settings, parse_settings, reset_settings,
)
from database.session import _engine_kwargs, _to_async_url


class TestParseSettings:
    def test_defaults(self):
        settings = parse_settings({})
        assert isinstance(settings, Settings)
        assert settings.queue.backend == "redis"
        assert settings.queue.policies["sms-send"].attempts == 3
        assert settings.queue.policies["sms-send"].concurrency == 20
        assert settings.events.fallback_minutes == 10

    def test_env_substitution(self, monkeypatch):
        monkeypatch.setenv("TEST_REDIS_URL", "redis://cache:6380")
        settings = parse_settings({"queue": {"redis_url": "${TEST_REDIS_URL}"}})
        assert settings.queue.redis_url == "redis://cache:6380"

    def test_unset_env_left_verbatim(self, monkeypatch):
        monkeypatch.delenv("SURELY_NOT_SET", raising=False)
        settings = parse_settings({"gateway": {"api_key": "${SURELY_NOT_SET}"}})
        assert settings.gateway.api_key == "${SURELY_NOT_SET}"

    def test_policy_override_merges_with_defaults(self):
        settings = parse_settings({"queue": {"policies": {"sms-send": {"attempts": 5}}}})
        policy = settings.queue.policies["sms-send"]
        assert policy.attempts == 5
        assert policy.concurrency == 20
        assert settings.queue.policies["campaign-send"].attempts == 2

    def test_unknown_keys_ignored(self):
        settings = parse_settings({"scheduler": {"interval": 5, "colour": "blue"}})
        assert settings.scheduler.interval == 5


class TestLoadSettings:
    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "queue:\n  backend: memory\n"
            "events:\n  templates:\n    welcome: 'Hi {customer_name}'\n"
        )
        settings = load_settings(str(path))
        assert settings.queue.backend == "memory"
        assert settings.events.templates["welcome"] == "Hi {customer_name}"
        assert get_settings() is settings

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("app_name: custom-pipeline\n")
        monkeypatch.setenv("SMS_PIPELINE_CONFIG", str(path))
        reset_settings()
        assert get_settings().app_name == "custom-pipeline"

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "nope.yaml"))
        assert settings.database == DatabaseConfig()


class TestDatabaseURLs:
    @pytest.mark.parametrize("url,expected", [
        ("postgresql://u:p@db/sms", "postgresql+asyncpg://u:p@db/sms"),
        ("postgres://u:p@db/sms", "postgresql+asyncpg://u:p@db/sms"),
        ("mysql://u:p@db/sms", "mysql+aiomysql://u:p@db/sms"),
        ("sqlite:///./sms.db", "sqlite+aiosqlite:///./sms.db"),
        ("sqlite+aiosqlite:///./sms.db", "sqlite+aiosqlite:///./sms.db"),
    ])
    def test_async_driver_mapping(self, url, expected):
        assert _to_async_url(url) == expected

    def test_sqlite_waits_for_locks(self):
        kwargs = _engine_kwargs("sqlite+aiosqlite:///./sms.db")
        assert kwargs["connect_args"]["timeout"] == 30
        assert "pool_size" not in kwargs

    def test_server_databases_pool(self):
        kwargs = _engine_kwargs("postgresql+asyncpg://u:p@db/sms")
        assert kwargs["pool_pre_ping"] is True
