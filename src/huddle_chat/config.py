"""Runtime configuration read from ``HUDDLE_*`` environment variables."""

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Service settings with production defaults."""

    rate_limit: int = 120
    rate_window: int = 60  # seconds
    typing_ttl: float = 3.0  # seconds of silence before typing is stale
    typing_sweep_interval: float = 1.0
    subscriber_queue_size: int = 256
    heartbeat_timeout: float = 45.0
    max_group_members: int = 20
    request_timeout: float = 10.0
    max_upload_bytes: int = 10 * 1024 * 1024
    page_size: int = 100
    blob_base_url: str = "/media"
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment, falling back to defaults."""
        return cls(
            rate_limit=_env_int("HUDDLE_RATE_LIMIT", cls.rate_limit),
            rate_window=_env_int("HUDDLE_RATE_WINDOW", cls.rate_window),
            typing_ttl=_env_float("HUDDLE_TYPING_TTL", cls.typing_ttl),
            typing_sweep_interval=_env_float(
                "HUDDLE_TYPING_SWEEP_INTERVAL", cls.typing_sweep_interval
            ),
            subscriber_queue_size=_env_int(
                "HUDDLE_SUBSCRIBER_QUEUE_SIZE", cls.subscriber_queue_size
            ),
            heartbeat_timeout=_env_float("HUDDLE_HEARTBEAT_TIMEOUT", cls.heartbeat_timeout),
            max_group_members=_env_int("HUDDLE_MAX_GROUP_MEMBERS", cls.max_group_members),
            request_timeout=_env_float("HUDDLE_REQUEST_TIMEOUT", cls.request_timeout),
            max_upload_bytes=_env_int("HUDDLE_MAX_UPLOAD_BYTES", cls.max_upload_bytes),
            page_size=_env_int("HUDDLE_PAGE_SIZE", cls.page_size),
            blob_base_url=os.getenv("HUDDLE_BLOB_BASE_URL", cls.blob_base_url),
            log_level=os.getenv("HUDDLE_LOG_LEVEL", cls.log_level).upper(),
            log_json=_env_bool("HUDDLE_LOG_JSON", cls.log_json),
        )
