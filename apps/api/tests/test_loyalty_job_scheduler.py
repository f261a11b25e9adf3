from pathlib import Path

import pytest

from tillpoint_api.observability.scheduler import get_scheduler_store
from tillpoint_api.scheduling.config import (
    JobDefinition,
    ScheduleConfig,
    ScheduleConfigError,
    load_job_definitions,
)
from tillpoint_api.scheduling.runner import LoyaltyJobScheduler, backoff_delay


def _job(job_id: str, *, max_attempts: int = 1) -> JobDefinition:
    return JobDefinition(
        id=job_id,
        task=f"tests.{job_id}",
        cron="* * * * *",
        kwargs={},
        max_attempts=max_attempts,
        base_backoff_seconds=0.0,
        backoff_multiplier=1.0,
        max_backoff_seconds=0.0,
        jitter_seconds=0.0,
    )


@pytest.mark.asyncio
async def test_scheduler_retries_and_records_metrics(tmp_path: Path) -> None:
    store = get_scheduler_store()
    scheduler = LoyaltyJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    attempts = 0

    async def flaky_job(*, session_factory) -> dict:
        nonlocal attempts
        attempts += 1
        if attempts < 2:
            raise RuntimeError("boom")
        return {"evaluated": 4, "changed": 1, "failed": 0}

    job = _job("job-alpha", max_attempts=3)
    summary = await scheduler.wrap(flaky_job, job)()

    snapshot = store.snapshot()
    assert summary == {"evaluated": 4, "changed": 1, "failed": 0}
    assert snapshot.totals["runs"] == 1
    assert snapshot.totals["success"] == 1
    assert snapshot.totals["attempt_failures"] == 1
    assert snapshot.totals["retries"] == 1
    job_snapshot = snapshot.jobs[job.id]
    assert job_snapshot.last_success_at is not None
    assert job_snapshot.last_error is None
    assert job_snapshot.last_summary == summary
    assert attempts == 2


@pytest.mark.asyncio
async def test_scheduler_records_final_failure(tmp_path: Path) -> None:
    store = get_scheduler_store()
    scheduler = LoyaltyJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("boom")

    job = _job("job-failure", max_attempts=2)
    assert await scheduler.wrap(failing_job, job)() is None

    snapshot = store.snapshot()
    assert snapshot.totals["run_failures"] == 1
    job_snapshot = snapshot.jobs[job.id]
    assert job_snapshot.totals["consecutive_failures"] == 2
    assert job_snapshot.last_error == "boom"
    assert job_snapshot.last_error_at is not None


@pytest.mark.asyncio
async def test_scheduler_passes_session_factory_and_kwargs(tmp_path: Path) -> None:
    sentinel = object()
    scheduler = LoyaltyJobScheduler(session_factory=sentinel, config_path=tmp_path / "noop.toml")
    received = {}

    async def capturing_job(*, session_factory, batch_size) -> None:
        received["session_factory"] = session_factory
        received["batch_size"] = batch_size

    job = _job("job-kwargs")
    job.kwargs = {"batch_size": 50}
    await scheduler.wrap(capturing_job, job)()

    assert received == {"session_factory": sentinel, "batch_size": 50}


@pytest.mark.asyncio
async def test_scheduler_tracks_consecutive_failures_and_resets(tmp_path: Path) -> None:
    store = get_scheduler_store()
    scheduler = LoyaltyJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    run_count = 0

    async def sometimes_failing_job(*, session_factory) -> None:
        nonlocal run_count
        run_count += 1
        if run_count < 3:
            raise RuntimeError("boom")

    job = _job("job-consecutive")
    runner = scheduler.wrap(sometimes_failing_job, job)

    await runner()
    await runner()

    job_snapshot = store.snapshot().jobs[job.id]
    assert job_snapshot.totals["consecutive_failures"] == 2
    assert job_snapshot.last_success_at is None

    await runner()

    snapshot = store.snapshot()
    job_snapshot = snapshot.jobs[job.id]
    assert snapshot.totals["runs"] == 3
    assert snapshot.totals["run_failures"] == 2
    assert snapshot.totals["success"] == 1
    assert job_snapshot.totals["consecutive_failures"] == 0
    assert job_snapshot.last_error is None


@pytest.mark.asyncio
async def test_scheduler_health_snapshot(tmp_path: Path) -> None:
    scheduler = LoyaltyJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def successful_job(*, session_factory) -> None:
        return None

    job = _job("job-health")
    await scheduler.wrap(successful_job, job)()
    scheduler._config = ScheduleConfig(timezone="UTC", jobs=[job])

    health = scheduler.health()
    assert health["running"] is False
    assert health["configured_jobs"] == 1
    assert health["totals"]["runs"] == 1
    assert health["jobs"][0]["metrics"]["totals"]["runs"] == 1
    assert health["jobs"][0]["metrics"]["last_success_at"] is not None


@pytest.mark.asyncio
async def test_run_now_rejects_unknown_jobs(tmp_path: Path) -> None:
    scheduler = LoyaltyJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    with pytest.raises(KeyError):
        await scheduler.run_now("missing")


def test_start_requires_schedule_file(tmp_path: Path) -> None:
    scheduler = LoyaltyJobScheduler(session_factory=lambda: None, config_path=tmp_path / "missing.toml")

    with pytest.raises(FileNotFoundError):
        scheduler.start()
    assert scheduler.is_running is False


def test_backoff_delay_grows_and_caps() -> None:
    job = JobDefinition(
        id="backoff",
        task="tests.backoff",
        cron="* * * * *",
        base_backoff_seconds=2.0,
        backoff_multiplier=3.0,
        max_backoff_seconds=10.0,
        jitter_seconds=0.0,
    )

    assert [backoff_delay(job, attempt) for attempt in (1, 2, 3)] == [2.0, 6.0, 10.0]


def test_load_job_definitions_parses_retry_fields(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
        timezone = "Europe/Berlin"

        [jobs.sample]
        task = "module.task"
        cron = "*/5 * * * *"
        max_attempts = 5
        base_backoff_seconds = 2
        backoff_multiplier = 3
        max_backoff_seconds = 30
        jitter_seconds = 1.5

        [jobs.paused]
        task = "module.other"
        cron = "0 * * * *"
        enabled = false
        """
    )

    config = load_job_definitions(config_path)
    assert config.timezone == "Europe/Berlin"
    assert [job.id for job in config.jobs] == ["sample", "paused"]
    assert [job.id for job in config.enabled_jobs] == ["sample"]
    job = config.jobs[0]
    assert job.max_attempts == 5
    assert job.base_backoff_seconds == 2.0
    assert job.backoff_multiplier == 3.0
    assert job.max_backoff_seconds == 30.0
    assert job.jitter_seconds == 1.5


@pytest.mark.parametrize(
    "body",
    [
        '[jobs.bad]\ncron = "* * * * *"\n',
        '[jobs.bad]\ntask = "module.task"\ncron = "* * *"\n',
        '[jobs.bad]\ntask = "module.task"\ncron = "* * * * *"\nmax_attempts = "many"\n',
        '[jobs.one]\nid = "same"\ntask = "a.b"\ncron = "* * * * *"\n'
        '[jobs.two]\nid = "same"\ntask = "a.c"\ncron = "* * * * *"\n',
    ],
)
def test_load_job_definitions_rejects_bad_entries(tmp_path: Path, body: str) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(body)

    with pytest.raises(ScheduleConfigError):
        load_job_definitions(config_path)


def test_bundled_schedule_targets_loyalty_jobs() -> None:
    config_path = Path(__file__).resolve().parent.parent / "config" / "schedules.toml"

    config = load_job_definitions(config_path)

    tasks = {job.task for job in config.jobs}
    assert tasks == {
        "tillpoint_api.jobs.loyalty.recalculate_loyalty_tiers",
        "tillpoint_api.jobs.loyalty.expire_loyalty_points",
        "tillpoint_api.jobs.loyalty.expire_loyalty_redemptions",
    }
    for job in config.jobs:
        assert LoyaltyJobScheduler._resolve_callable(job) is not None
