from __future__ import annotations

from dataclasses import dataclass, field
import os


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AppConfig:
    fence_instance: bool = field(default_factory=lambda: _env_flag("VSB_FENCE_INSTANCE", "true"))
    requeue_after_seconds: int = field(default_factory=lambda: int(os.getenv("VSB_REQUEUE_AFTER_SECONDS", "10")))
    fence_update_attempts: int = field(default_factory=lambda: int(os.getenv("VSB_FENCE_UPDATE_ATTEMPTS", "5")))
    strict_volume_matching: bool = field(
        default_factory=lambda: _env_flag("VSB_STRICT_VOLUME_MATCHING", "false")
    )
    request_timeout_seconds: int = field(
        default_factory=lambda: int(os.getenv("VSB_REQUEST_TIMEOUT_SECONDS", "20"))
    )
    event_component: str = field(default_factory=lambda: os.getenv("VSB_EVENT_COMPONENT", "volume-snapshot-backup"))
    log_level: str = field(default_factory=lambda: os.getenv("VSB_LOG_LEVEL", "INFO"))


def validate_config(config: AppConfig) -> None:
    if config.requeue_after_seconds <= 0:
        raise ValueError("requeue_after_seconds must be positive")
    if config.fence_update_attempts < 2:
        raise ValueError("fence_update_attempts must be at least 2")
    if config.request_timeout_seconds <= 0:
        raise ValueError("request_timeout_seconds must be positive")
