"""
Read-only post-import checks: how many organizations ended up with courses and
how many courses carry a headcount.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Mapping

from crm_app.importer.store.base import EntityStore


@dataclass(frozen=True)
class ImportVerification:
    orgs_total: int
    orgs_with_courses: int
    courses_total: int
    courses_with_headcount: int
    courses_per_org: Mapping[str, int] = field(default_factory=dict)

    @property
    def orgs_without_courses(self) -> int:
        return self.orgs_total - self.orgs_with_courses

    @property
    def headcount_coverage(self) -> float:
        """Percentage of courses with a positive headcount, rounded to one decimal."""

        if not self.courses_total:
            return 0.0
        return round(100.0 * self.courses_with_headcount / self.courses_total, 1)

    def as_dict(self, *, include_breakdown: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "orgs_total": self.orgs_total,
            "orgs_with_courses": self.orgs_with_courses,
            "orgs_without_courses": self.orgs_without_courses,
            "courses_total": self.courses_total,
            "courses_with_headcount": self.courses_with_headcount,
            "headcount_coverage": self.headcount_coverage,
        }
        if include_breakdown:
            payload["courses_per_org"] = dict(self.courses_per_org)
        return payload


def verify_import(store: EntityStore) -> ImportVerification:
    orgs = store.fetch_all_orgs()
    courses = store.fetch_all_courses()

    org_ids = {org.id for org in orgs}
    per_org = Counter(str(course.org_id) for course in courses if course.org_id is not None)
    return ImportVerification(
        orgs_total=len(org_ids),
        orgs_with_courses=sum(1 for org_id in org_ids if per_org.get(org_id)),
        courses_total=len(courses),
        courses_with_headcount=sum(1 for course in courses if (course.headcount or 0) > 0),
        courses_per_org={org_id: count for org_id, count in per_org.items() if org_id in org_ids},
    )
