"""TOML schedule loader for loyalty maintenance jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomllib


class ScheduleConfigError(ValueError):
    """Raised when the schedule file contains an unusable job entry."""


@dataclass(slots=True)
class JobDefinition:
    """One recurring job: the async task to import, its cron and retry policy."""

    id: str
    task: str
    cron: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    max_attempts: int = 1
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 1.0


@dataclass(slots=True)
class ScheduleConfig:
    timezone: str
    jobs: list[JobDefinition]

    @property
    def enabled_jobs(self) -> list[JobDefinition]:
        return [job for job in self.jobs if job.enabled]


def _number(payload: dict[str, Any], key: str, default: float, *, floor: float) -> float:
    raw = payload.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ScheduleConfigError(f"'{key}' must be numeric, got {raw!r}") from exc
    return max(value, floor)


def _parse_job(key: str, payload: dict[str, Any]) -> JobDefinition:
    task = payload.get("task")
    cron = payload.get("cron")
    if not isinstance(task, str) or "." not in task:
        raise ScheduleConfigError(f"Job '{key}' needs a dotted 'task' path")
    if not isinstance(cron, str) or len(cron.split()) != 5:
        raise ScheduleConfigError(f"Job '{key}' needs a five-field 'cron' expression")

    kwargs = payload.get("kwargs", {})
    if not isinstance(kwargs, dict):
        raise ScheduleConfigError(f"Job '{key}' kwargs must be a table")

    return JobDefinition(
        id=str(payload.get("id") or key),
        task=task,
        cron=cron,
        kwargs=dict(kwargs),
        enabled=bool(payload.get("enabled", True)),
        max_attempts=int(_number(payload, "max_attempts", 1, floor=1)),
        base_backoff_seconds=_number(payload, "base_backoff_seconds", 5.0, floor=0.0),
        backoff_multiplier=_number(payload, "backoff_multiplier", 2.0, floor=1.0),
        max_backoff_seconds=_number(payload, "max_backoff_seconds", 60.0, floor=0.0),
        jitter_seconds=_number(payload, "jitter_seconds", 1.0, floor=0.0),
    )


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    """Load job definitions from a TOML schedule file."""

    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    job_entries = data.get("jobs", {})
    if not isinstance(job_entries, dict):
        raise ScheduleConfigError("'jobs' must be a table of job definitions")

    jobs = [
        _parse_job(key, payload)
        for key, payload in job_entries.items()
        if isinstance(payload, dict)
    ]
    ids = [job.id for job in jobs]
    duplicates = sorted({job_id for job_id in ids if ids.count(job_id) > 1})
    if duplicates:
        raise ScheduleConfigError(f"Duplicate job ids: {', '.join(duplicates)}")

    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


__all__ = ["JobDefinition", "ScheduleConfig", "ScheduleConfigError", "load_job_definitions"]
