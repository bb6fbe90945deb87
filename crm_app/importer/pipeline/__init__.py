"""Importer pipeline helpers."""

from __future__ import annotations

from .courses import CourseResolution, CourseResolver, default_course_name
from .index import CourseMatch, EntityIndex
from .levels import LevelClassification, classify_level, level_from_code, level_from_text
from .names import normalize_name, suggest_similar_names
from .orchestrator import (
    DEFAULT_CONCURRENCY,
    IMPORT_MODES,
    MAX_CONCURRENCY,
    MODE_COURSES,
    MODE_ENROLLMENT,
    BatchUpsertOrchestrator,
    ProgressCounter,
    clamp_concurrency,
    run_import,
)
from .report import JobSummary, RowOutcome, RowResult, render_report_csv, summarize
from .resolver import OrgResolution, OrgResolver, collect_org_names, placeholder_org_name
from .rows import ImportRow, coerce_int, normalize_row, normalize_rows
from .verification import ImportVerification, verify_import

__all__ = [
    "BatchUpsertOrchestrator",
    "CourseMatch",
    "CourseResolution",
    "CourseResolver",
    "DEFAULT_CONCURRENCY",
    "EntityIndex",
    "IMPORT_MODES",
    "ImportRow",
    "ImportVerification",
    "JobSummary",
    "LevelClassification",
    "MAX_CONCURRENCY",
    "MODE_COURSES",
    "MODE_ENROLLMENT",
    "OrgResolution",
    "OrgResolver",
    "ProgressCounter",
    "RowOutcome",
    "RowResult",
    "clamp_concurrency",
    "collect_org_names",
    "classify_level",
    "coerce_int",
    "default_course_name",
    "level_from_code",
    "level_from_text",
    "normalize_name",
    "normalize_row",
    "normalize_rows",
    "placeholder_org_name",
    "render_report_csv",
    "run_import",
    "suggest_similar_names",
    "summarize",
    "verify_import",
]
