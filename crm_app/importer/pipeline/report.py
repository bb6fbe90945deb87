"""
Per-row results and job-level aggregation for enrollment imports.
"""

from __future__ import annotations

import csv
import io
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

REPORT_COLUMNS = ("row_index", "outcome", "org_id", "course_id", "messages")


class RowOutcome(str, Enum):
    UPDATED = "updated"
    CREATED = "created"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class RowResult:
    """
    Outcome of processing one input row.

    ``org_created``/``course_created`` flag the entities this row created, so
    the summary can count creations without re-deriving them from messages.
    """

    row_index: int
    outcome: RowOutcome
    org_id: str | None = None
    course_id: str | None = None
    messages: tuple[str, ...] = ()
    org_created: bool = False
    course_created: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "row_index": self.row_index,
            "outcome": self.outcome.value,
            "org_id": self.org_id,
            "course_id": self.course_id,
            "messages": list(self.messages),
            "org_created": self.org_created,
            "course_created": self.course_created,
        }


@dataclass(frozen=True)
class JobSummary:
    """Aggregate counts for one import job plus every row result, in row order."""

    mode: str
    rows_total: int
    orgs_total: int
    orgs_created: int
    courses_updated: int
    courses_created: int
    skipped: int
    errors: int
    elapsed_seconds: float
    cancelled: bool = False
    counts: Mapping[str, int] = field(default_factory=dict)
    results: tuple[RowResult, ...] = ()

    @property
    def rows_processed(self) -> int:
        return len(self.results)

    def error_rows(self, *, include_skipped: bool = False) -> list[RowResult]:
        wanted = {RowOutcome.FAILED}
        if include_skipped:
            wanted.add(RowOutcome.SKIPPED)
        return [result for result in self.results if result.outcome in wanted]

    def as_dict(self, *, include_results: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "mode": self.mode,
            "rows_total": self.rows_total,
            "rows_processed": self.rows_processed,
            "orgs_total": self.orgs_total,
            "orgs_created": self.orgs_created,
            "courses_updated": self.courses_updated,
            "courses_created": self.courses_created,
            "skipped": self.skipped,
            "errors": self.errors,
            "counts": dict(self.counts),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "cancelled": self.cancelled,
        }
        if include_results:
            payload["results"] = [result.as_dict() for result in self.results]
        return payload


def summarize(
    results: Iterable[RowResult],
    started_at: float,
    finished_at: float,
    *,
    cancelled: bool = False,
    rows_total: int | None = None,
    mode: str = "enrollment",
) -> JobSummary:
    """Aggregate row results into a ``JobSummary``. Pure."""

    ordered = tuple(sorted(results, key=lambda result: result.row_index))
    outcome_counts = Counter(result.outcome for result in ordered)
    counts = {outcome.value: outcome_counts.get(outcome, 0) for outcome in RowOutcome}
    succeeded = {RowOutcome.UPDATED, RowOutcome.CREATED}

    return JobSummary(
        mode=mode,
        rows_total=rows_total if rows_total is not None else len(ordered),
        orgs_total=len({result.org_id for result in ordered if result.org_id is not None}),
        orgs_created=sum(1 for result in ordered if result.org_created),
        courses_updated=sum(
            1
            for result in ordered
            if result.outcome in succeeded and result.course_id is not None and not result.course_created
        ),
        courses_created=sum(1 for result in ordered if result.course_created),
        skipped=counts[RowOutcome.SKIPPED.value],
        errors=counts[RowOutcome.FAILED.value],
        elapsed_seconds=max(0.0, finished_at - started_at),
        cancelled=cancelled,
        counts=counts,
        results=ordered,
    )


def render_report_csv(summary: JobSummary, *, only_problems: bool = False) -> str:
    """Render the per-row report as CSV text for download."""

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(REPORT_COLUMNS)
    rows = summary.error_rows(include_skipped=True) if only_problems else summary.results
    for result in rows:
        writer.writerow(
            (
                result.row_index,
                result.outcome.value,
                result.org_id or "",
                result.course_id or "",
                " | ".join(result.messages),
            )
        )
    return buffer.getvalue()
