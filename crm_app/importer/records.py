"""
Value types shared by the reconciliation engine and the remote store.

Kept free of importer imports so both sides can depend on it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Stage(str, Enum):
    """Coarse academic stage."""

    PRIMARY = "primary"
    SECONDARY = "secondary"

    @property
    def label(self) -> str:
        return "Primary" if self is Stage.PRIMARY else "Secondary"

    @property
    def max_grade(self) -> int:
        return 8 if self is Stage.PRIMARY else 4


@dataclass(frozen=True)
class CanonicalLevel:
    stage: Stage
    grade: int

    def __post_init__(self) -> None:
        if not 1 <= self.grade <= self.stage.max_grade:
            raise ValueError(f"Grade {self.grade} is outside 1..{self.stage.max_grade} for {self.stage.label}")

    def describe(self, year: int | None = None) -> str:
        if year is None:
            return f"({self.stage.label}, {self.grade})"
        return f"({self.stage.label}, {self.grade}, {year})"


@dataclass(frozen=True)
class OrgRecord:
    """
    Top-level organization (school) as stored remotely.

    ``id`` is opaque: numeric ids and document ids are both kept as strings.
    """

    id: str
    code: int | None
    name: str


@dataclass(frozen=True)
class CourseRecord:
    """Course scoped to one organization; only ``headcount`` is ever updated."""

    id: str
    org_id: str | None
    stage: Stage | None
    grade: int | None
    year: int | None = None
    section: str | None = None
    headcount: int | None = None
    name: str | None = None

    @property
    def level(self) -> CanonicalLevel | None:
        if self.stage is None or self.grade is None:
            return None
        try:
            return CanonicalLevel(self.stage, self.grade)
        except ValueError:
            return None


__all__ = ["Stage", "CanonicalLevel", "OrgRecord", "CourseRecord"]
