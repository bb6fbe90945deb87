"""
Importer Celery tasks.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded
from flask import current_app

from crm_app.importer.celery_app import HEALTHCHECK_TASK, INGEST_TASK
from crm_app.importer.pipeline import MODE_ENROLLMENT
from crm_app.importer.service import read_csv_rows, resolve_field_aliases, run_enrollment_import
from crm_app.importer.uploads import discard_upload

MAX_REPORTED_PROBLEM_ROWS = 200


@shared_task(name=HEALTHCHECK_TASK, bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name=INGEST_TASK, bind=True)
def ingest_enrollment_csv(
    self,
    *,
    file_path: str,
    mode: str = MODE_ENROLLMENT,
    concurrency: int | None = None,
    keep_file: bool = False,
) -> dict[str, Any]:
    """
    Run an enrollment or course-definition import from a stored CSV file.

    Uploads are removed afterwards unless ``keep_file`` is set. Hitting the
    soft time limit stops scheduling rows; the rows already running finish
    before the task fails.
    """

    app = current_app._get_current_object()
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"CSV file not found: {file_path}")

    try:
        raw_rows = read_csv_rows(path, resolve_field_aliases(app))
        summary = run_enrollment_import(app, raw_rows, mode=mode, concurrency=concurrency)
    except SoftTimeLimitExceeded:
        current_app.logger.error(
            "Importer run stopped at the soft time limit",
            extra={"importer_task_id": self.request.id, "importer_file_path": file_path, "importer_mode": mode},
        )
        raise
    except Exception as exc:
        current_app.logger.exception(
            "Importer run failed",
            extra={
                "importer_task_id": self.request.id,
                "importer_file_path": file_path,
                "importer_mode": mode,
                "importer_error": str(exc),
            },
        )
        raise
    finally:
        if not keep_file:
            discard_upload(path)

    current_app.logger.info(
        "Importer run completed",
        extra={
            "importer_task_id": self.request.id,
            "importer_mode": mode,
            "importer_rows_total": summary.rows_total,
            "importer_orgs_created": summary.orgs_created,
            "importer_courses_updated": summary.courses_updated,
            "importer_courses_created": summary.courses_created,
            "importer_rows_skipped": summary.skipped,
            "importer_rows_failed": summary.errors,
        },
    )
    payload = summary.as_dict(include_results=False)
    payload["problem_rows"] = [
        result.as_dict() for result in summary.error_rows(include_skipped=True)[:MAX_REPORTED_PROBLEM_ROWS]
    ]
    return payload
