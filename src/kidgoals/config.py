"""Configuration for the KidGoals engine, read from the environment."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

from .exceptions import ValidationError

load_dotenv()

DEFAULT_MILESTONE_LADDER: Tuple[int, ...] = (25, 50, 75, 100)


def _parse_seconds(name: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be a number of seconds, got {raw!r}.") from exc
    if value <= 0:
        raise ValidationError(f"{name} must be greater than zero.")
    return value


def parse_ladder(raw: str) -> Tuple[int, ...]:
    """Parse a comma separated milestone ladder such as ``"25,50,75,100"``."""

    try:
        steps = tuple(int(part) for part in raw.split(",") if part.strip())
    except ValueError as exc:
        raise ValidationError(f"Milestone ladder must be integers, got {raw!r}.") from exc
    if not steps:
        raise ValidationError("Milestone ladder must not be empty.")
    if any(step < 1 or step > 100 for step in steps):
        raise ValidationError("Milestone percentages must be between 1 and 100.")
    if list(steps) != sorted(set(steps)):
        raise ValidationError("Milestone percentages must be strictly ascending.")
    return steps


@dataclass(frozen=True, slots=True)
class Settings:
    """Runtime settings for the engine."""

    database_url: str = "sqlite:///kidgoals.db"
    lock_timeout_seconds: float = 5.0
    unit_of_work_timeout_seconds: float = 10.0
    milestone_ladder: Tuple[int, ...] = DEFAULT_MILESTONE_LADDER
    log_path: Optional[Path] = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        log_path = env.get("KIDGOALS_LOG_PATH")
        return cls(
            database_url=env.get("KIDGOALS_DATABASE_URL", "sqlite:///kidgoals.db"),
            lock_timeout_seconds=_parse_seconds(
                "KIDGOALS_LOCK_TIMEOUT_SECONDS", env.get("KIDGOALS_LOCK_TIMEOUT_SECONDS", "5")
            ),
            unit_of_work_timeout_seconds=_parse_seconds(
                "KIDGOALS_UNIT_OF_WORK_TIMEOUT_SECONDS",
                env.get("KIDGOALS_UNIT_OF_WORK_TIMEOUT_SECONDS", "10"),
            ),
            milestone_ladder=parse_ladder(env.get("KIDGOALS_MILESTONE_LADDER", "25,50,75,100")),
            log_path=Path(log_path) if log_path else None,
        )


SETTINGS = Settings.from_env()
DATABASE_URL = SETTINGS.database_url
LOCK_TIMEOUT_SECONDS = SETTINGS.lock_timeout_seconds
UNIT_OF_WORK_TIMEOUT_SECONDS = SETTINGS.unit_of_work_timeout_seconds
MILESTONE_LADDER = SETTINGS.milestone_ladder

__all__ = [
    "DATABASE_URL",
    "DEFAULT_MILESTONE_LADDER",
    "LOCK_TIMEOUT_SECONDS",
    "MILESTONE_LADDER",
    "SETTINGS",
    "Settings",
    "UNIT_OF_WORK_TIMEOUT_SECONDS",
    "parse_ladder",
]
