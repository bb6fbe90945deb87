"""
Course resolution scoped to an already resolved organization.

Enrollment rows only ever update ``headcount`` on an existing course. Course
creation belongs to the course-definition import (``ensure_course``), which is
expected to run before enrollment feeds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from crm_app.importer.errors import CourseNotFound, InputError
from crm_app.importer.pipeline.index import EntityIndex
from crm_app.importer.records import CanonicalLevel, CourseRecord, Stage
from crm_app.importer.store.base import EntityStore

logger = logging.getLogger(__name__)


def default_course_name(level: CanonicalLevel) -> str:
    suffix = "Media" if level.stage is Stage.SECONDARY else "Básico"
    return f"{level.grade}º {suffix}"


@dataclass(frozen=True)
class CourseResolution:
    course_id: str
    created: bool = False
    loose: bool = False
    messages: tuple[str, ...] = ()


class CourseResolver:
    def __init__(self, store: EntityStore) -> None:
        self.store = store

    def apply_headcount(
        self,
        org_id: str,
        level: CanonicalLevel,
        year: int | None,
        headcount: int | None,
        index: EntityIndex,
    ) -> CourseResolution:
        """
        Write ``headcount`` to the course matching ``(org_id, level, year)``.

        Raises ``InputError`` for a missing or non-positive headcount before any
        lookup, and ``CourseNotFound`` when no course matches even ignoring year.
        """

        if headcount is None or headcount <= 0:
            raise InputError(f"Invalid headcount {headcount!r}; expected a positive integer.")

        match = index.find_course(org_id, level, year)
        if match is None:
            raise CourseNotFound(org_id, level.stage.label, level.grade, year)

        course = match.course
        self.store.update_course_headcount(course.id, headcount)

        messages: tuple[str, ...] = ()
        if match.loose:
            messages = (
                f"Course {course.id} matched {level.describe()} ignoring year "
                f"(course year {course.year}, row year {year}).",
            )
        return CourseResolution(course_id=course.id, loose=match.loose, messages=messages)

    def ensure_course(
        self,
        org_id: str,
        level: CanonicalLevel,
        year: int | None,
        index: EntityIndex,
    ) -> CourseResolution:
        """Reuse the course with the exact key or create it, registering it in the index."""

        existing = index.find_exact_course(org_id, level, year)
        if existing is not None:
            return CourseResolution(course_id=existing.id)

        with index.course_creation_lock(org_id, level, year):
            existing = index.find_exact_course(org_id, level, year)
            if existing is not None:
                return CourseResolution(course_id=existing.id)

            created = self.store.create_course(
                org_id=org_id,
                stage=level.stage,
                grade=level.grade,
                year=year,
                name=default_course_name(level),
            )
            course = CourseRecord(
                id=created.id,
                org_id=str(org_id),
                stage=level.stage,
                grade=level.grade,
                year=year,
                section=created.section,
                headcount=created.headcount,
                name=created.name,
            )
            index.insert_course(course)

        logger.info(
            "Course created",
            extra={
                "importer_org_id": org_id,
                "importer_course_id": course.id,
                "importer_course_level": level.describe(year),
            },
        )
        return CourseResolution(
            course_id=course.id,
            created=True,
            messages=(f"Created course {course.id} {default_course_name(level)} {year or ''}".rstrip() + ".",),
        )
