import os
from dataclasses import dataclass
from typing import Optional


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass(frozen=True)
class Settings:

    mongo_url: str = "mongodb://localhost:27017"
    mongo_db_name: str = "convosync"
    redis_url: Optional[str] = None
    storage_public_url: str = "http://localhost:8000/storage"
    message_page_size: int = 50
    typing_timeout_seconds: float = 2.0
    presence_ttl_seconds: int = 60
    presence_heartbeat_seconds: float = 30.0
    reconnect_base_delay: float = 0.5
    reconnect_max_delay: float = 30.0
    poll_interval_seconds: float = 15.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            mongo_url=os.getenv("MONGO_URL", cls.mongo_url),
            mongo_db_name=os.getenv("MONGO_DB_NAME", cls.mongo_db_name),
            redis_url=os.getenv("REDIS_URL") or None,
            storage_public_url=os.getenv("STORAGE_PUBLIC_URL", cls.storage_public_url).rstrip("/"),
            message_page_size=_int("MESSAGE_PAGE_SIZE", cls.message_page_size),
            typing_timeout_seconds=_float("TYPING_TIMEOUT_SECONDS", cls.typing_timeout_seconds),
            presence_ttl_seconds=_int("PRESENCE_TTL_SECONDS", cls.presence_ttl_seconds),
            presence_heartbeat_seconds=_float("PRESENCE_HEARTBEAT_SECONDS", cls.presence_heartbeat_seconds),
            reconnect_base_delay=_float("RECONNECT_BASE_DELAY", cls.reconnect_base_delay),
            reconnect_max_delay=_float("RECONNECT_MAX_DELAY", cls.reconnect_max_delay),
            poll_interval_seconds=_float("POLL_INTERVAL_SECONDS", cls.poll_interval_seconds),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
