"""Source adapters for importer inputs."""

from __future__ import annotations

from .csv_enrollment import CSVAdapterError, CSVHeaderError, EnrollmentCSVAdapter, EnrollmentCSVStatistics

__all__ = [
    "CSVAdapterError",
    "CSVHeaderError",
    "EnrollmentCSVAdapter",
    "EnrollmentCSVStatistics",
]
