"""Observability endpoints for loyalty telemetry and Prometheus metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from tillpoint_api.api.dependencies.security import require_loyalty_api_key
from tillpoint_api.observability.loyalty import get_loyalty_store
from tillpoint_api.observability.scheduler import get_scheduler_store


router = APIRouter(prefix="/observability", tags=["Observability"])

_CONCURRENCY_METRICS = (
    ("tillpoint_loyalty_conflicts_total", "Optimistic concurrency conflicts detected on commit", "conflicts"),
    ("tillpoint_loyalty_retries_total", "Ledger units of work retried after a conflict", "retries"),
    ("tillpoint_loyalty_retries_exhausted_total", "Ledger units of work that exhausted their retries", "exhausted"),
)

_SCHEDULER_TOTAL_METRICS = (
    ("tillpoint_loyalty_scheduler_runs_total", "Total loyalty scheduler dispatches", "runs"),
    ("tillpoint_loyalty_scheduler_success_total", "Successful loyalty scheduler runs", "success"),
    ("tillpoint_loyalty_scheduler_run_failures_total", "Loyalty scheduler runs that exhausted retries", "run_failures"),
    ("tillpoint_loyalty_scheduler_retries_total", "Loyalty scheduler retries triggered", "retries"),
)


@router.get(
    "/loyalty",
    dependencies=[Depends(require_loyalty_api_key)],
    summary="Loyalty observability snapshot",
)
async def get_loyalty_snapshot() -> dict[str, object]:
    """Aggregated ledger, redemption, concurrency and scheduler metrics."""
    return {
        **get_loyalty_store().snapshot().as_dict(),
        "scheduler": get_scheduler_store().snapshot().as_dict(),
    }


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} gauge",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    dependencies=[Depends(require_loyalty_api_key)],
    summary="Prometheus-formatted observability metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    loyalty_snapshot = get_loyalty_store().snapshot()
    scheduler_snapshot = get_scheduler_store().snapshot()

    lines: list[str] = []

    for key, value in sorted(loyalty_snapshot.ledger.items()):
        metric, _, kind = key.partition(":")
        if metric == "entries":
            lines.extend(
                _format_metric(
                    "tillpoint_loyalty_ledger_entries_total",
                    "Ledger entries appended grouped by kind",
                    value,
                    labels={"kind": kind},
                )
            )
        elif metric == "points":
            lines.extend(
                _format_metric(
                    "tillpoint_loyalty_ledger_points_total",
                    "Signed points moved through the ledger grouped by kind",
                    value,
                    labels={"kind": kind},
                )
            )

    for outcome, value in sorted(loyalty_snapshot.redemptions.items()):
        lines.extend(
            _format_metric(
                "tillpoint_loyalty_redemptions_total",
                "Redemption attempts grouped by outcome",
                value,
                labels={"outcome": outcome},
            )
        )

    concurrency = loyalty_snapshot.concurrency
    for name, description, key in _CONCURRENCY_METRICS:
        lines.extend(_format_metric(name, description, concurrency.get(key, 0)))

    for trigger, value in sorted(loyalty_snapshot.tiers.get("by_trigger", {}).items()):
        lines.extend(
            _format_metric(
                "tillpoint_loyalty_tier_changes_total",
                "Tier changes grouped by trigger",
                value,
                labels={"trigger": trigger},
            )
        )

    scheduler_totals = scheduler_snapshot.totals
    for name, description, key in _SCHEDULER_TOTAL_METRICS:
        lines.extend(_format_metric(name, description, scheduler_totals.get(key, 0)))

    for job_id, job_snapshot in scheduler_snapshot.jobs.items():
        labels = {"job_id": job_id, "task": job_snapshot.task}
        lines.extend(
            _format_metric(
                "tillpoint_loyalty_scheduler_job_runs_total",
                "Loyalty scheduler dispatches per job",
                job_snapshot.totals.get("runs", 0),
                labels=labels,
            )
        )
        lines.extend(
            _format_metric(
                "tillpoint_loyalty_scheduler_job_consecutive_failures",
                "Consecutive scheduler run failures per job",
                job_snapshot.totals.get("consecutive_failures", 0),
                labels=labels,
            )
        )
        lines.extend(
            _format_metric(
                "tillpoint_loyalty_scheduler_job_runtime_seconds_total",
                "Total runtime seconds per scheduler job",
                job_snapshot.timings.get("total_runtime_seconds", 0.0),
                labels=labels,
            )
        )
        if job_snapshot.last_success_at:
            lines.extend(
                _format_metric(
                    "tillpoint_loyalty_scheduler_job_last_success_timestamp",
                    "Last successful scheduler run timestamp",
                    job_snapshot.last_success_at.timestamp(),
                    labels=labels,
                )
            )

    body = "\n".join(lines) + "\n"
    return PlainTextResponse(content=body, media_type="text/plain; version=0.0.4")
