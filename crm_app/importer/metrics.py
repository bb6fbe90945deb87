"""Prometheus metrics helpers for the importer."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_row_outcomes = Counter(
    "importer_enrollment_rows_total",
    "Enrollment import rows processed, by outcome.",
    ["mode", "outcome"],
)
_orgs_created = Counter(
    "importer_orgs_created_total",
    "Organizations created by the importer.",
)
_org_conflicts_recovered = Counter(
    "importer_org_conflicts_recovered_total",
    "Organization creations rejected as duplicates and recovered by re-fetch.",
)
_remote_failures = Counter(
    "importer_remote_failures_total",
    "Remote store calls that failed during an import, by operation.",
    ["operation"],
)
_job_duration = Histogram(
    "importer_job_duration_seconds",
    "Duration of enrollment import jobs in seconds.",
    ["mode"],
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600),
)


def record_row_outcome(mode: str, outcome: Literal["updated", "created", "skipped", "failed"]) -> None:
    _row_outcomes.labels(mode=mode, outcome=outcome).inc()


def record_org_created() -> None:
    _orgs_created.inc()


def record_org_conflict_recovered() -> None:
    _org_conflicts_recovered.inc()


def record_remote_failure(operation: str) -> None:
    """Increment the remote failure counter for ``operation``."""

    _remote_failures.labels(operation=operation).inc()


def record_job_duration(mode: str, duration_seconds: float) -> None:
    _job_duration.labels(mode=mode).observe(duration_seconds)
