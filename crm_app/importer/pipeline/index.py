"""
In-memory lookup structures built once per import job.

The index is owned by a single job invocation and passed explicitly to every
resolver call. Reads are lock-free; inserts made after a successful creation
go through one lock, and org creation is serialized per code.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Hashable, Iterable, Optional, Tuple

from crm_app.importer.pipeline.names import normalize_name
from crm_app.importer.records import CanonicalLevel, CourseRecord, OrgRecord, Stage

logger = logging.getLogger(__name__)

CourseKey = Tuple[str, Stage, int, Optional[int]]
LooseCourseKey = Tuple[str, Stage, int]


@dataclass(frozen=True)
class CourseMatch:
    course: CourseRecord
    loose: bool = False


class EntityIndex:
    """Lookup maps by org id, org code, normalized org name and course key."""

    def __init__(self) -> None:
        self._orgs_by_id: Dict[str, OrgRecord] = {}
        self._orgs_by_code: Dict[int, OrgRecord] = {}
        self._orgs_by_name: Dict[str, OrgRecord] = {}
        self._courses_by_key: Dict[CourseKey, CourseRecord] = {}
        self._courses_by_loose_key: Dict[LooseCourseKey, CourseRecord] = {}
        self._course_ids: set[str] = set()
        self._lock = threading.RLock()
        self._creation_locks: Dict[Hashable, threading.Lock] = {}
        self._creation_locks_guard = threading.Lock()
        self.unindexed_courses = 0

    @classmethod
    def build(cls, orgs: Iterable[OrgRecord], courses: Iterable[CourseRecord]) -> "EntityIndex":
        """
        Build the index from full snapshots.

        Duplicate codes or names inside the snapshot resolve to the last record
        seen; each collision is logged as a warning.
        """

        index = cls()
        for org in orgs:
            index._add_org(org, warn_on_collision=True)
        for course in courses:
            if not index._add_course(course):
                index.unindexed_courses += 1
        logger.info(
            "Entity index built",
            extra={
                "importer_index_orgs": len(index._orgs_by_id),
                "importer_index_codes": len(index._orgs_by_code),
                "importer_index_courses": len(index._course_ids),
                "importer_index_unindexed_courses": index.unindexed_courses,
            },
        )
        return index

    # Reads ----------------------------------------------------------------------

    @property
    def org_count(self) -> int:
        return len(self._orgs_by_id)

    @property
    def course_count(self) -> int:
        return len(self._course_ids)

    def get_org(self, org_id: object | None) -> OrgRecord | None:
        if org_id is None or org_id == "":
            return None
        return self._orgs_by_id.get(str(org_id))

    def find_by_code(self, code: int | None) -> OrgRecord | None:
        if code is None:
            return None
        return self._orgs_by_code.get(code)

    def find_by_name(self, name: str | None) -> OrgRecord | None:
        key = normalize_name(name)
        if key is None:
            return None
        return self._orgs_by_name.get(key)

    def name_keys(self) -> list[str]:
        return list(self._orgs_by_name)

    def find_course(self, org_id: str, level: CanonicalLevel, year: int | None) -> CourseMatch | None:
        """Exact ``(org, stage, grade, year)`` match first, then the first course ignoring year."""

        org_key = str(org_id)
        course = self._courses_by_key.get((org_key, level.stage, level.grade, year))
        if course is not None:
            return CourseMatch(course=course, loose=False)
        course = self._courses_by_loose_key.get((org_key, level.stage, level.grade))
        if course is not None:
            return CourseMatch(course=course, loose=True)
        return None

    def find_exact_course(self, org_id: str, level: CanonicalLevel, year: int | None) -> CourseRecord | None:
        return self._courses_by_key.get((str(org_id), level.stage, level.grade, year))

    # Writes ---------------------------------------------------------------------

    def insert_org(self, org: OrgRecord) -> None:
        """Idempotently add an org created or re-fetched during the job."""

        with self._lock:
            self._add_org(org, warn_on_collision=False)

    def insert_course(self, course: CourseRecord) -> None:
        """Idempotently add a course created during the job."""

        with self._lock:
            self._add_course(course)

    def org_creation_lock(self, code: int) -> threading.Lock:
        """Return the lock serializing creation of the org with ``code``."""

        return self._keyed_lock(("org", code))

    def course_creation_lock(self, org_id: str, level: CanonicalLevel, year: int | None) -> threading.Lock:
        return self._keyed_lock(("course", str(org_id), level.stage, level.grade, year))

    def _keyed_lock(self, key: Hashable) -> threading.Lock:
        with self._creation_locks_guard:
            lock = self._creation_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._creation_locks[key] = lock
            return lock

    # Internal helpers -----------------------------------------------------------

    def _add_org(self, org: OrgRecord, *, warn_on_collision: bool) -> None:
        self._orgs_by_id[org.id] = org
        if org.code is not None:
            existing = self._orgs_by_code.get(org.code)
            if warn_on_collision and existing is not None and existing.id != org.id:
                logger.warning(
                    "Duplicate organization code in snapshot; last record wins",
                    extra={
                        "importer_org_code": org.code,
                        "importer_org_id_replaced": existing.id,
                        "importer_org_id": org.id,
                    },
                )
            self._orgs_by_code[org.code] = org
        key = normalize_name(org.name)
        if key is not None:
            existing = self._orgs_by_name.get(key)
            if warn_on_collision and existing is not None and existing.id != org.id:
                logger.warning(
                    "Duplicate organization name in snapshot; last record wins",
                    extra={
                        "importer_org_name": key,
                        "importer_org_id_replaced": existing.id,
                        "importer_org_id": org.id,
                    },
                )
            self._orgs_by_name[key] = org

    def _add_course(self, course: CourseRecord) -> bool:
        level = course.level
        if course.org_id is None or level is None:
            return False
        org_key = str(course.org_id)
        self._courses_by_key[(org_key, level.stage, level.grade, course.year)] = course
        self._courses_by_loose_key.setdefault((org_key, level.stage, level.grade), course)
        self._course_ids.add(course.id)
        return True
