"""Scheduling utilities for recurring loyalty maintenance."""

from .config import JobDefinition, ScheduleConfig, ScheduleConfigError, load_job_definitions
from .runner import LoyaltyJobScheduler, backoff_delay

__all__ = [
    "JobDefinition",
    "LoyaltyJobScheduler",
    "ScheduleConfig",
    "ScheduleConfigError",
    "backoff_delay",
    "load_job_definitions",
]
