"""
Error taxonomy for the enrollment importer.

Row-level errors are caught by the orchestrator and turned into row results;
only ``ConflictError`` is handled earlier, inside org creation.
"""

from __future__ import annotations


class ImporterError(Exception):
    """Base error for importer failures."""


class InputError(ImporterError):
    """Raised when a row is unusable before resolution (missing ids, bad headcount)."""


class ClassificationFailure(InputError):
    """Raised by strict level classification when the level cannot be recognized."""

    def __init__(self, level_raw: object | None, level_code: object | None) -> None:
        super().__init__(
            f"Unrecognized level (text={level_raw!r}, code={level_code!r}); "
            "strict classification is enabled."
        )
        self.level_raw = level_raw
        self.level_code = level_code


class ResolutionError(ImporterError):
    """Raised when an organization or course cannot be matched or created."""


class CourseNotFound(ResolutionError):
    """Raised when no course definition exists for the requested key."""

    def __init__(self, org_id: str, stage: str, grade: int, year: int | None) -> None:
        super().__init__(
            f"Course not found for organization {org_id}: ({stage}, {grade}, {year}). "
            "Run the course-definition import first."
        )
        self.org_id = org_id
        self.stage = stage
        self.grade = grade
        self.year = year


class RemoteError(ImporterError):
    """Raised when a remote store call times out or fails in transport."""

    def __init__(self, operation: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.status_code = status_code


class ConflictError(RemoteError):
    """Raised when the remote store rejects an organization code as a duplicate."""

    def __init__(self, code: int, message: str | None = None) -> None:
        super().__init__(
            "create_org",
            message or f"organization code {code} already exists",
            status_code=409,
        )
        self.code = code


__all__ = [
    "ImporterError",
    "InputError",
    "ClassificationFailure",
    "ResolutionError",
    "CourseNotFound",
    "RemoteError",
    "ConflictError",
]
