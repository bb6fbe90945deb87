"""
Importer blueprint endpoints for health, enrollment imports, and verification.
"""

from __future__ import annotations

import math
import time
from http import HTTPStatus
from pathlib import Path

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request

from config.monitoring import ImporterMonitoring
from crm_app.importer.errors import ImporterError, RemoteError
from crm_app.importer.pipeline import IMPORT_MODES, MODE_ENROLLMENT
from crm_app.importer.service import run_enrollment_import, run_verification
from crm_app.importer.store import RemoteStoreNotConfigured
from crm_app.importer.uploads import discard_upload, is_csv_filename, store_upload
from crm_app.utils.importer import is_importer_enabled

from .celery_app import ENROLLMENT_QUEUE, HEALTHCHECK_TASK, INGEST_TASK, get_celery_app

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _ensure_importer_enabled_api():
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _max_upload_bytes() -> int:
    mb_limit = current_app.config.get("IMPORTER_MAX_UPLOAD_MB", 25)
    try:
        return int(mb_limit) * 1024 * 1024
    except (TypeError, ValueError):
        return 25 * 1024 * 1024


def _validate_upload(file_storage) -> None:
    if file_storage is None or file_storage.filename == "":
        raise ValueError("No file uploaded.")
    if not is_csv_filename(file_storage.filename):
        raise ValueError("Unsupported file type; only CSV is allowed.")

    content_length = getattr(file_storage, "content_length", None) or request.content_length
    if content_length and content_length > _max_upload_bytes():
        raise OverflowError("Upload exceeds maximum size limit.")


def _resolve_mode(raw_mode) -> str:
    mode = (raw_mode or MODE_ENROLLMENT).strip().lower()
    if mode not in IMPORT_MODES:
        raise ValueError(f"Unsupported mode '{raw_mode}'; expected one of {', '.join(IMPORT_MODES)}.")
    return mode


def _resolve_concurrency(raw_value) -> int | None:
    if raw_value in (None, ""):
        return None
    try:
        return int(raw_value)
    except (TypeError, ValueError) as exc:
        raise ValueError("concurrency must be an integer.") from exc


@importer_blueprint.get("/health")
def importer_healthcheck():
    """
    Lightweight health endpoint proving the importer blueprint mounted correctly.
    """
    importer_state = current_app.extensions.get("importer", {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "worker_enabled": importer_state.get("worker_enabled", False),
                "remote_store_configured": bool(current_app.config.get("REMOTE_STORE_URL")),
                "modes": list(IMPORT_MODES),
            }
        ),
        200,
    )


@importer_blueprint.post("/enrollment")
def importer_enrollment_run():
    """
    Run an import synchronously from a JSON payload.

    Accepts ``{"rows": [...], "mode": "enrollment"}``; ``datos`` is accepted as
    an alias for ``rows``. Responds with the job summary.
    """
    disabled = _ensure_importer_enabled_api()
    if disabled is not None:
        return disabled

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return _json_error("Request body must be a JSON object.", HTTPStatus.BAD_REQUEST)
    rows = payload.get("rows", payload.get("datos"))
    if not isinstance(rows, list) or not rows:
        return _json_error("Provide a non-empty 'rows' array.", HTTPStatus.BAD_REQUEST)
    if not all(isinstance(row, dict) for row in rows):
        return _json_error("Every row must be a JSON object.", HTTPStatus.BAD_REQUEST)
    try:
        mode = _resolve_mode(payload.get("mode"))
        concurrency = _resolve_concurrency(payload.get("concurrency"))
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    ImporterMonitoring.record_rows_submitted(mode=mode, row_count=len(rows))
    start_time = time.perf_counter()
    try:
        summary = run_enrollment_import(current_app, rows, mode=mode, concurrency=concurrency)
    except RemoteStoreNotConfigured as exc:
        current_app.logger.error("Importer remote store not configured: %s", exc)
        ImporterMonitoring.record_request(
            endpoint="enrollment", duration_seconds=time.perf_counter() - start_time, status="unconfigured"
        )
        return _json_error(str(exc), HTTPStatus.SERVICE_UNAVAILABLE)
    except RemoteError as exc:
        current_app.logger.error(
            "Importer run aborted by remote store failure",
            extra={"importer_mode": mode, "importer_error": str(exc)},
        )
        ImporterMonitoring.record_request(
            endpoint="enrollment", duration_seconds=time.perf_counter() - start_time, status="remote_error"
        )
        return _json_error(str(exc), HTTPStatus.BAD_GATEWAY)
    except ImporterError as exc:
        ImporterMonitoring.record_request(
            endpoint="enrollment", duration_seconds=time.perf_counter() - start_time, status="invalid_request"
        )
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    ImporterMonitoring.record_request(
        endpoint="enrollment", duration_seconds=time.perf_counter() - start_time, status="success"
    )
    current_app.logger.info(
        "Importer run completed via API",
        extra={
            "importer_mode": mode,
            "importer_rows_total": summary.rows_total,
            "importer_rows_failed": summary.errors,
        },
    )
    return jsonify(summary.as_dict()), HTTPStatus.OK


@importer_blueprint.post("/enrollment/upload")
def importer_enrollment_upload():
    """
    Persist an uploaded CSV and queue it for the importer worker.
    """
    disabled = _ensure_importer_enabled_api()
    if disabled is not None:
        return disabled

    file_storage = request.files.get("file")
    try:
        _validate_upload(file_storage)
        mode = _resolve_mode(request.form.get("mode"))
        concurrency = _resolve_concurrency(request.form.get("concurrency"))
    except OverflowError as exc:
        return _json_error(str(exc), HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    stored_path: Path | None = None
    try:
        stored_path = store_upload(file_storage, current_app)
        celery_app = get_celery_app(current_app)
        if celery_app is None:
            raise RuntimeError("Importer worker is not configured.")

        async_result = celery_app.send_task(
            INGEST_TASK,
            kwargs={
                "file_path": str(stored_path),
                "mode": mode,
                "concurrency": concurrency,
                "keep_file": False,
            },
        )
    except Exception as exc:
        current_app.logger.exception("Failed to enqueue importer run from upload.", exc_info=exc)
        if stored_path is not None:
            discard_upload(stored_path)
        return _json_error("Failed to enqueue importer run.", HTTPStatus.INTERNAL_SERVER_ERROR)

    current_app.logger.info(
        "Importer run enqueued from upload",
        extra={
            "importer_task_id": async_result.id,
            "importer_mode": mode,
            "importer_filename": file_storage.filename,
        },
    )
    return (
        jsonify(
            {
                "task_id": async_result.id,
                "status": "queued",
                "mode": mode,
                "queue": ENROLLMENT_QUEUE,
            }
        ),
        HTTPStatus.ACCEPTED,
    )


@importer_blueprint.get("/enrollment/<task_id>")
def importer_enrollment_status(task_id: str):
    """
    Report the state of a queued import, including its summary once finished.
    """
    disabled = _ensure_importer_enabled_api()
    if disabled is not None:
        return disabled

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        return _json_error("Importer worker is not configured.", HTTPStatus.SERVICE_UNAVAILABLE)

    async_result = celery_app.AsyncResult(task_id)
    payload = {"task_id": task_id, "state": async_result.state}
    if async_result.successful():
        payload["summary"] = async_result.result
    elif async_result.failed():
        payload["error"] = str(async_result.result)
    return jsonify(payload), HTTPStatus.OK


@importer_blueprint.get("/verify")
def importer_verify():
    """
    Summarize organization and course coverage in the remote store.
    """
    disabled = _ensure_importer_enabled_api()
    if disabled is not None:
        return disabled

    include_breakdown = str(request.args.get("breakdown", "")).lower() in ("1", "true", "yes")
    start_time = time.perf_counter()
    try:
        verification = run_verification(current_app)
    except RemoteStoreNotConfigured as exc:
        ImporterMonitoring.record_request(
            endpoint="verify", duration_seconds=time.perf_counter() - start_time, status="unconfigured"
        )
        return _json_error(str(exc), HTTPStatus.SERVICE_UNAVAILABLE)
    except RemoteError as exc:
        ImporterMonitoring.record_request(
            endpoint="verify", duration_seconds=time.perf_counter() - start_time, status="remote_error"
        )
        return _json_error(str(exc), HTTPStatus.BAD_GATEWAY)
    ImporterMonitoring.record_request(
        endpoint="verify", duration_seconds=time.perf_counter() - start_time, status="success"
    )
    return jsonify(verification.as_dict(include_breakdown=include_breakdown)), HTTPStatus.OK


@importer_blueprint.get("/worker_health")
def importer_worker_health():
    """
    Validate importer worker availability via the heartbeat task.
    """
    importer_state = current_app.extensions.get("importer", {})
    enabled = importer_state.get("enabled", False)
    worker_enabled = importer_state.get("worker_enabled", False)
    try:
        timeout_seconds = float(request.args.get("timeout", 5))
    except (TypeError, ValueError):
        return _json_error("timeout must be a number of seconds.", HTTPStatus.BAD_REQUEST)
    if not math.isfinite(timeout_seconds) or timeout_seconds <= 0:
        return _json_error("timeout must be a positive number of seconds.", HTTPStatus.BAD_REQUEST)

    payload = {
        "importer_enabled": enabled,
        "worker_enabled": worker_enabled,
        "queue": ENROLLMENT_QUEUE,
        "timeout_seconds": timeout_seconds,
    }

    if not enabled or not worker_enabled:
        payload["status"] = "disabled"
        if enabled:
            payload["message"] = "Worker flag disabled; start the worker or set IMPORTER_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get(HEALTHCHECK_TASK) if celery_app is not None else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["status"] = "ok"
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
