"""Interface the reconciliation engine requires from a remote entity store."""

from __future__ import annotations

from typing import Protocol, Sequence

from crm_app.importer.records import CourseRecord, OrgRecord, Stage


class EntityStore(Protocol):
    """
    Remote collaborator used by the importer.

    Snapshot reads return complete collections (pagination is internal).
    ``create_org`` must raise ``ConflictError`` when the code already exists;
    every other failure surfaces as ``RemoteError``.
    """

    def fetch_all_orgs(self) -> Sequence[OrgRecord]:
        ...

    def fetch_all_courses(self) -> Sequence[CourseRecord]:
        ...

    def create_org(self, name: str, code: int) -> OrgRecord:
        ...

    def find_org_by_code(self, code: int) -> OrgRecord | None:
        ...

    def update_course_headcount(self, course_id: str, headcount: int) -> None:
        ...

    def create_course(
        self,
        *,
        org_id: str,
        stage: Stage,
        grade: int,
        year: int | None,
        name: str,
    ) -> CourseRecord:
        ...
