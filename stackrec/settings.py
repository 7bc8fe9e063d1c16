from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    state_path: str = field(default_factory=lambda: os.getenv("STACKREC_STATE_PATH", "stackrec.db"))
    max_workers: int = field(default_factory=lambda: _env_int("STACKREC_MAX_WORKERS", 4))

    # Runtime calls
    retry_attempts: int = field(default_factory=lambda: _env_int("STACKREC_RETRY_ATTEMPTS", 3))
    retry_backoff_s: float = field(default_factory=lambda: _env_float("STACKREC_RETRY_BACKOFF_S", 0.5))
    output_timeout_s: float = field(default_factory=lambda: _env_float("STACKREC_OUTPUT_TIMEOUT_S", 300.0))
    # 0 disables the deadline.
    deadline_s: float = field(default_factory=lambda: _env_float("STACKREC_DEADLINE_S", 0.0))

    health_timeout_s: float = field(default_factory=lambda: _env_float("STACKREC_HEALTH_TIMEOUT_S", 2.0))
    # Pull images even when a local copy exists.
    always_pull: bool = field(default_factory=lambda: _env_bool("STACKREC_ALWAYS_PULL", False))


settings = Settings()
