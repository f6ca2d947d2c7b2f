"""Runtime configuration for the execution engine."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from taskweave.engine.pricing import PricingTable

DEFAULT_DB_PATH = ".taskweave.db"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class StorageSettings:
    """SQLite storage settings."""

    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class EngineSettings:
    """Scheduler and planning settings."""

    max_concurrency: int = 1
    max_planning_attempts: int = 3
    persist_clarifications: bool = True
    dependency_result_max_chars: int = 2_000
    event_poll_interval_seconds: float = 0.5


@dataclass(slots=True)
class CostSettings:
    window_days: int = 30
    pricing_raw: str | None = None

    @property
    def pricing(self) -> PricingTable:
        return PricingTable.parse(self.pricing_raw)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(DEFAULT_DB_PATH)
    storage: StorageSettings = field(default_factory=StorageSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    costs: CostSettings = field(default_factory=CostSettings)
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        return cls(
            db_path=db_path or Path(os.getenv("TASKWEAVE_DB_PATH", DEFAULT_DB_PATH)),
            storage=StorageSettings(
                sqlite_busy_timeout_ms=_env_int("TASKWEAVE_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            ),
            engine=EngineSettings(
                max_concurrency=_env_int("TASKWEAVE_MAX_CONCURRENCY", 1),
                max_planning_attempts=_env_int("TASKWEAVE_MAX_PLANNING_ATTEMPTS", 3),
                persist_clarifications=_env_bool(
                    "TASKWEAVE_PERSIST_CLARIFICATIONS",
                    default=True,
                ),
                dependency_result_max_chars=_env_int(
                    "TASKWEAVE_DEPENDENCY_RESULT_MAX_CHARS",
                    2_000,
                ),
                event_poll_interval_seconds=_env_float(
                    "TASKWEAVE_EVENT_POLL_INTERVAL_SECONDS",
                    0.5,
                ),
            ),
            costs=CostSettings(
                window_days=_env_int("TASKWEAVE_COST_WINDOW_DAYS", 30),
                pricing_raw=os.getenv("TASKWEAVE_LLM_PRICING") or None,
            ),
            log_level=os.getenv("TASKWEAVE_LOG_LEVEL", "WARNING").strip().upper() or "WARNING",
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.storage.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASKWEAVE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.engine.max_concurrency < 1:
            raise ValueError("TASKWEAVE_MAX_CONCURRENCY must be >= 1.")
        if self.engine.max_planning_attempts < 1:
            raise ValueError("TASKWEAVE_MAX_PLANNING_ATTEMPTS must be >= 1.")
        if self.engine.dependency_result_max_chars <= 0:
            raise ValueError("TASKWEAVE_DEPENDENCY_RESULT_MAX_CHARS must be > 0.")
        if self.engine.event_poll_interval_seconds <= 0:
            raise ValueError("TASKWEAVE_EVENT_POLL_INTERVAL_SECONDS must be > 0.")
        if self.costs.window_days <= 0:
            raise ValueError("TASKWEAVE_COST_WINDOW_DAYS must be > 0.")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"Invalid TASKWEAVE_LOG_LEVEL: {self.log_level!r}. "
                f"Expected one of {', '.join(LOG_LEVELS)}.",
            )

    @property
    def logging_level(self) -> int:
        return logging.getLevelName(self.log_level)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
