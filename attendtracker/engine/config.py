"""Configuration helpers for engine runtime."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

# Attendance policy windows. Fixed per deployment.
GRACE_WINDOW_SECONDS = 5 * 60
LATE_THRESHOLD_SECONDS = 15 * 60

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class EngineSettings:
    backend_url: str
    database_url: str | None
    host: str
    port: int
    permanent_host_lock: bool
    host_confirmation_threshold: int
    host_missed_threshold: int
    retry_drain_interval_seconds: float
    progress_interval_seconds: float
    log_level: str


def load_settings() -> EngineSettings:
    port_raw = os.getenv("ATTENDTRACKER_PORT", "8100")
    return EngineSettings(
        backend_url=os.getenv("ATTENDTRACKER_BACKEND_URL", "http://localhost:8000").rstrip("/"),
        database_url=os.getenv("ATTENDTRACKER_DATABASE_URL"),
        host=os.getenv("ATTENDTRACKER_HOST", "127.0.0.1"),
        port=int(port_raw),
        permanent_host_lock=os.getenv("ATTENDTRACKER_PERMANENT_HOST_LOCK", "false").strip().lower() in _TRUE_VALUES,
        host_confirmation_threshold=int(os.getenv("ATTENDTRACKER_HOST_CONFIRMATION_THRESHOLD", "2")),
        host_missed_threshold=int(os.getenv("ATTENDTRACKER_HOST_MISSED_THRESHOLD", "3")),
        retry_drain_interval_seconds=float(os.getenv("ATTENDTRACKER_RETRY_DRAIN_INTERVAL_SECONDS", "2")),
        progress_interval_seconds=float(os.getenv("ATTENDTRACKER_PROGRESS_INTERVAL_SECONDS", "10")),
        log_level=os.getenv("ATTENDTRACKER_LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
