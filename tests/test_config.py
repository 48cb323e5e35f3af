import logging

from convosync import config
from convosync.config import Settings, get_settings, reset_settings
from convosync.logging_config import configure_logging


def test_defaults():
    settings = Settings()

    assert settings.message_page_size == 50
    assert settings.typing_timeout_seconds == 2.0
    assert settings.redis_url is None


def test_from_env(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("MESSAGE_PAGE_SIZE", "20")
    monkeypatch.setenv("RECONNECT_MAX_DELAY", "5.5")
    monkeypatch.setenv("STORAGE_PUBLIC_URL", "https://cdn.example.com/")
    monkeypatch.setenv("POLL_INTERVAL_SECONDS", " ")

    settings = Settings.from_env()

    assert settings.redis_url == "redis://cache:6379/0"
    assert settings.message_page_size == 20
    assert settings.reconnect_max_delay == 5.5
    assert settings.storage_public_url == "https://cdn.example.com"
    assert settings.poll_interval_seconds == 15.0


def test_get_settings_is_cached(monkeypatch):
    monkeypatch.setattr(config, "_settings", None)
    monkeypatch.setenv("MONGO_DB_NAME", "chat_test")

    first = get_settings()
    monkeypatch.setenv("MONGO_DB_NAME", "other")
    assert get_settings() is first
    assert first.mongo_db_name == "chat_test"

    reset_settings()
    assert get_settings().mongo_db_name == "other"
    reset_settings()


def test_configure_logging_sets_level_once():
    logger = logging.getLogger("convosync")
    handlers_before = len(logger.handlers)

    assert configure_logging("debug") == logging.DEBUG
    configure_logging("warning")

    assert logger.level == logging.WARNING
    assert len(logger.handlers) <= handlers_before + 1
    assert logging.getLogger("pymongo").level == logging.WARNING
