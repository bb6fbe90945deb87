"""
Bounded-concurrency batch upsert for enrollment and course-definition imports.

Rows are independent units of work drained by a fixed-width thread pool. Any
error inside a row becomes a ``FAILED`` row result; only the snapshot reads
that precede processing can abort a job.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from crm_app.importer.errors import CourseNotFound, ImporterError, InputError, RemoteError
from crm_app.importer.metrics import record_job_duration, record_remote_failure, record_row_outcome
from crm_app.importer.pipeline.courses import CourseResolver
from crm_app.importer.pipeline.index import EntityIndex
from crm_app.importer.pipeline.levels import classify_level
from crm_app.importer.pipeline.report import JobSummary, RowOutcome, RowResult, summarize
from crm_app.importer.pipeline.resolver import OrgResolver, collect_org_names
from crm_app.importer.pipeline.rows import ImportRow, normalize_rows
from crm_app.importer.records import CanonicalLevel
from crm_app.importer.store.base import EntityStore

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 8
MAX_CONCURRENCY = 32

# Rows submitted ahead of the pool, per worker thread.
SUBMISSION_WINDOW_PER_WORKER = 2
# Organization create, its conflict re-fetch, then the course write.
MAX_REMOTE_CALLS_PER_ROW = 3

MODE_ENROLLMENT = "enrollment"
MODE_COURSES = "courses"
IMPORT_MODES = (MODE_ENROLLMENT, MODE_COURSES)

ProgressCallback = Callable[[int, int], None]


def clamp_concurrency(value: object, default: int = DEFAULT_CONCURRENCY) -> int:
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        parsed = default
    return max(1, min(parsed, MAX_CONCURRENCY))


class ProgressCounter:
    """Thread-safe completed/total counter for progress reporting."""

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self._callback = callback
        self._lock = threading.Lock()
        self.completed = 0
        self.total = 0

    def start(self, total: int) -> None:
        with self._lock:
            self.completed = 0
            self.total = total

    def advance(self) -> int:
        with self._lock:
            self.completed += 1
            completed, total = self.completed, self.total
        if self._callback is not None:
            try:
                self._callback(completed, total)
            except Exception:
                logger.exception(
                    "Import progress callback failed",
                    extra={"importer_rows_processed": completed, "importer_rows_total": total},
                )
        return completed

    @property
    def fraction(self) -> float:
        with self._lock:
            if not self.total:
                return 0.0
            return self.completed / self.total


@dataclass
class _RowContext:
    """What is known about a row so far, so failures keep partial context."""

    messages: list[str] = field(default_factory=list)
    org_id: str | None = None
    org_created: bool = False


class BatchUpsertOrchestrator:
    """Drive row processing against the remote store with a fixed-width pool."""

    def __init__(
        self,
        store: EntityStore,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        level_strict: bool = False,
        allow_org_create: bool = True,
        cancel_event: threading.Event | None = None,
        progress: ProgressCounter | None = None,
    ) -> None:
        self.store = store
        self.concurrency = clamp_concurrency(concurrency)
        self.level_strict = level_strict
        self.cancel_event = cancel_event or threading.Event()
        self.progress = progress or ProgressCounter()
        self.org_resolver = OrgResolver(store, allow_create=allow_org_create)
        self.course_resolver = CourseResolver(store)

    def run(self, rows: Sequence[ImportRow], index: EntityIndex, *, mode: str = MODE_ENROLLMENT) -> JobSummary:
        """
        Process ``rows`` and return the job summary.

        Submission is bounded to a small window of in-flight rows, so setting
        ``cancel_event`` stops new rows from being scheduled while rows already
        running finish and are recorded. Progress reporting is advisory: a
        failing progress callback is logged and never affects the summary.
        """

        if mode not in IMPORT_MODES:
            raise ValueError(f"Unsupported import mode '{mode}'. Expected one of: {', '.join(IMPORT_MODES)}.")

        started_at = time.perf_counter()
        self.progress.start(len(rows))
        # Whichever row creates an organization, it gets the first name the file gives for that code.
        self.org_resolver.known_names = collect_org_names(rows)
        results: list[RowResult] = []
        cancelled = False
        window = self.concurrency * SUBMISSION_WINDOW_PER_WORKER

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="importer-row") as executor:
            in_flight: set[Future[RowResult]] = set()
            for row in rows:
                while len(in_flight) >= window:
                    done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                    results.extend(future.result() for future in done)
                if self.cancel_event.is_set():
                    cancelled = True
                    break
                in_flight.add(executor.submit(self._process_row, row, index, mode))
            if in_flight:
                done, _ = wait(in_flight)
                results.extend(future.result() for future in done)

        finished_at = time.perf_counter()
        summary = summarize(
            results,
            started_at,
            finished_at,
            cancelled=cancelled,
            rows_total=len(rows),
            mode=mode,
        )
        record_job_duration(mode, summary.elapsed_seconds)
        logger.info(
            "Import job finished",
            extra={
                "importer_mode": mode,
                "importer_rows_total": summary.rows_total,
                "importer_rows_processed": summary.rows_processed,
                "importer_orgs_total": summary.orgs_total,
                "importer_orgs_created": summary.orgs_created,
                "importer_courses_updated": summary.courses_updated,
                "importer_courses_created": summary.courses_created,
                "importer_rows_skipped": summary.skipped,
                "importer_rows_failed": summary.errors,
                "importer_cancelled": summary.cancelled,
                "importer_elapsed_seconds": summary.elapsed_seconds,
            },
        )
        return summary

    # Row processing -------------------------------------------------------------

    def _process_row(self, row: ImportRow, index: EntityIndex, mode: str) -> RowResult:
        context = _RowContext()
        try:
            if mode == MODE_COURSES:
                result = self._process_course_definition(row, index, context)
            else:
                result = self._process_enrollment(row, index, context)
        except ImporterError as exc:
            if isinstance(exc, RemoteError):
                record_remote_failure(exc.operation)
            result = self._failed(row, context, str(exc))
        except Exception as exc:
            logger.exception(
                "Unexpected error while processing import row",
                extra={"importer_row_index": row.row_index, "importer_mode": mode},
            )
            result = self._failed(row, context, f"Unexpected error: {exc}")

        try:
            record_row_outcome(mode, result.outcome.value)
        except Exception:
            logger.exception("Failed to record import row outcome", extra={"importer_row_index": row.row_index})
        self.progress.advance()
        logger.debug(
            "Import row processed",
            extra={
                "importer_row_index": row.row_index,
                "importer_outcome": result.outcome.value,
                "importer_org_id": result.org_id,
                "importer_course_id": result.course_id,
            },
        )
        return result

    def _process_enrollment(self, row: ImportRow, index: EntityIndex, context: _RowContext) -> RowResult:
        if not row.is_identifiable:
            if not row.has_headcount_value:
                return RowResult(
                    row_index=row.row_index,
                    outcome=RowOutcome.SKIPPED,
                    messages=("Row has no organization id, code or name and no headcount; nothing to import.",),
                )
            raise InputError("Row has no organization id, code or name.")
        self._check_headcount(row)

        level = self._classify(row, context)
        org = self.org_resolver.resolve(row, index)
        context.org_id = org.org_id
        context.org_created = org.created
        context.messages.extend(org.messages)

        try:
            course = self.course_resolver.apply_headcount(org.org_id, level, row.year, row.headcount, index)
        except CourseNotFound as exc:
            return RowResult(
                row_index=row.row_index,
                outcome=RowOutcome.SKIPPED,
                org_id=org.org_id,
                messages=(*context.messages, str(exc)),
                org_created=org.created,
            )

        context.messages.extend(course.messages)
        return RowResult(
            row_index=row.row_index,
            outcome=RowOutcome.CREATED if org.created else RowOutcome.UPDATED,
            org_id=org.org_id,
            course_id=course.course_id,
            messages=tuple(context.messages),
            org_created=org.created,
        )

    def _process_course_definition(self, row: ImportRow, index: EntityIndex, context: _RowContext) -> RowResult:
        if not row.is_identifiable:
            if row.level_raw is None and row.level_code is None:
                return RowResult(
                    row_index=row.row_index,
                    outcome=RowOutcome.SKIPPED,
                    messages=("Row has no organization id, code or name and no level; nothing to import.",),
                )
            raise InputError("Row has no organization id, code or name.")

        level = self._classify(row, context)
        org = self.org_resolver.resolve(row, index)
        context.org_id = org.org_id
        context.org_created = org.created
        context.messages.extend(org.messages)

        course = self.course_resolver.ensure_course(org.org_id, level, row.year, index)
        context.messages.extend(course.messages)
        if course.created:
            outcome = RowOutcome.CREATED
        else:
            outcome = RowOutcome.SKIPPED
            context.messages.append(f"Course {course.course_id} {level.describe(row.year)} already defined.")
        return RowResult(
            row_index=row.row_index,
            outcome=outcome,
            org_id=org.org_id,
            course_id=course.course_id,
            messages=tuple(context.messages),
            org_created=org.created,
            course_created=course.created,
        )

    def _classify(self, row: ImportRow, context: _RowContext) -> CanonicalLevel:
        classification = classify_level(row.level_raw, row.level_code, strict=self.level_strict)
        if classification.fallback:
            context.messages.append(
                f"Level not recognized (text={row.level_raw!r}, code={row.level_code!r}); "
                f"defaulted to {classification.level.describe()}."
            )
        elif classification.grade_guessed:
            context.messages.append(
                f"Level text {row.level_raw!r} has no grade; assumed {classification.level.describe()}."
            )
        return classification.level

    @staticmethod
    def _check_headcount(row: ImportRow) -> None:
        if row.headcount is None:
            if row.has_headcount_value:
                raise InputError(f"Headcount {row.headcount_raw!r} is not a number.")
            raise InputError("Missing headcount.")
        if row.headcount <= 0:
            raise InputError(f"Invalid headcount {row.headcount}; expected a positive integer.")

    @staticmethod
    def _failed(row: ImportRow, context: _RowContext, message: str) -> RowResult:
        return RowResult(
            row_index=row.row_index,
            outcome=RowOutcome.FAILED,
            org_id=context.org_id,
            messages=(*context.messages, message),
            org_created=context.org_created,
        )


def run_import(
    store: EntityStore,
    raw_rows: Iterable[Mapping[str, Any]],
    *,
    mode: str = MODE_ENROLLMENT,
    concurrency: int = DEFAULT_CONCURRENCY,
    level_strict: bool = False,
    allow_org_create: bool = True,
    aliases: Mapping[str, Sequence[str]] | None = None,
    cancel_event: threading.Event | None = None,
    progress: ProgressCounter | None = None,
) -> JobSummary:
    """
    Run one import job end to end.

    Snapshot reads and the index build complete before any row is processed;
    a failure there propagates to the caller.
    """

    if mode not in IMPORT_MODES:
        raise ValueError(f"Unsupported import mode '{mode}'. Expected one of: {', '.join(IMPORT_MODES)}.")

    orgs = store.fetch_all_orgs()
    courses = store.fetch_all_courses()
    index = EntityIndex.build(orgs, courses)
    rows = normalize_rows(raw_rows, aliases)

    orchestrator = BatchUpsertOrchestrator(
        store,
        concurrency=concurrency,
        level_strict=level_strict,
        allow_org_create=allow_org_create,
        cancel_event=cancel_event,
        progress=progress,
    )
    return orchestrator.run(rows, index, mode=mode)
