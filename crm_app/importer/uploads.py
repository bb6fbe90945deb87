"""
Storage for enrollment CSVs uploaded through the API.

An upload lives in ``IMPORTER_UPLOAD_DIR`` (default ``<instance>/import_uploads``)
only until the worker has imported it; ``purge_stale_uploads`` clears files
left behind by crashed or never-consumed tasks.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from uuid import uuid4

from flask import Flask
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)

UPLOAD_SUBDIR = "import_uploads"
CSV_SUFFIX = ".csv"


def upload_directory(app: Flask) -> Path:
    directory = Path(app.config.get("IMPORTER_UPLOAD_DIR") or UPLOAD_SUBDIR)
    if not directory.is_absolute():
        directory = Path(app.instance_path) / directory
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def is_csv_filename(filename: str | None) -> bool:
    return bool(filename) and Path(filename).suffix.lower() == CSV_SUFFIX


def store_upload(upload: FileStorage, app: Flask) -> Path:
    """Save an uploaded CSV under a random name and return its path."""

    target = upload_directory(app) / f"{uuid4().hex}{CSV_SUFFIX}"
    upload.save(target)
    logger.info(
        "Enrollment upload stored",
        extra={"importer_file_path": str(target), "importer_upload_name": secure_filename(upload.filename or "")},
    )
    return target


def discard_upload(path: Path) -> bool:
    """Delete a stored upload. Returns False when the file could not be removed."""

    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning(
            "Failed to remove enrollment upload",
            extra={"importer_file_path": str(path), "importer_error": str(exc)},
        )
        return False
    return True


def purge_stale_uploads(app: Flask, max_age_hours: int) -> int:
    """Remove uploads older than ``max_age_hours`` and return how many were deleted."""

    cutoff = time.time() - max_age_hours * 3600
    removed = 0
    for path in upload_directory(app).glob(f"*{CSV_SUFFIX}"):
        try:
            stale = path.is_file() and path.stat().st_mtime <= cutoff
        except FileNotFoundError:
            continue
        if stale and discard_upload(path):
            removed += 1
    logger.info("Stale enrollment uploads purged", extra={"importer_uploads_removed": removed})
    return removed
