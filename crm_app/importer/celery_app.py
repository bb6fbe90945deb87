"""
Celery wiring for background enrollment imports.

An uploaded CSV becomes one ``importer.enrollment.ingest_csv`` task on the
``enrollment_imports`` queue. The broker and result backend default to a
SQLite file in the instance folder, so a single host can queue imports
without Redis; ``CELERY_BROKER_URL``/``CELERY_RESULT_BACKEND`` move them off it.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

from crm_app.importer.pipeline.orchestrator import (
    DEFAULT_CONCURRENCY,
    MAX_REMOTE_CALLS_PER_ROW,
    SUBMISSION_WINDOW_PER_WORKER,
    clamp_concurrency,
)
from crm_app.importer.service import IMPORTER_EXTENSION_KEY

ENROLLMENT_QUEUE = "enrollment_imports"
INGEST_TASK = "importer.enrollment.ingest_csv"
HEALTHCHECK_TASK = "importer.healthcheck"

# The heartbeat shares the ingest queue so a ping proves that queue is consumed.
TASK_ROUTES = {
    INGEST_TASK: {"queue": ENROLLMENT_QUEUE},
    HEALTHCHECK_TASK: {"queue": ENROLLMENT_QUEUE},
}

SQLITE_FILENAME = "celery.sqlite"
DEFAULT_TASK_TIME_LIMIT = 30 * 60
DEFAULT_REMOTE_TIMEOUT = 30
MIN_SOFT_TIME_LIMIT = 30


@dataclass(frozen=True)
class BrokerSettings:
    broker_url: str
    result_backend: str


def _sqlite_database(app: Flask) -> Path:
    path = Path(app.config.get("CELERY_SQLITE_PATH") or SQLITE_FILENAME)
    if not path.is_absolute():
        path = Path(app.instance_path) / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def resolve_broker_settings(app: Flask) -> BrokerSettings:
    """Explicit URLs win; anything left unset shares one SQLite file."""

    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if not (broker_url and result_backend):
        # Celery wants forward slashes in sqlite URLs on every platform.
        database = _sqlite_database(app).as_posix()
        broker_url = broker_url or f"sqla+sqlite:///{database}"
        result_backend = result_backend or f"db+sqlite:///{database}"
    return BrokerSettings(broker_url=broker_url, result_backend=result_backend)


def drain_grace_seconds(config: Mapping[str, Any]) -> int:
    """
    Worst-case time for the rows already submitted to the pool to finish.

    The orchestrator keeps ``SUBMISSION_WINDOW_PER_WORKER`` rows queued per
    worker thread and each row makes up to ``MAX_REMOTE_CALLS_PER_ROW`` remote
    calls bounded by ``REMOTE_STORE_TIMEOUT``.
    """

    concurrency = clamp_concurrency(config.get("IMPORTER_CONCURRENCY"), DEFAULT_CONCURRENCY)
    in_flight = concurrency * SUBMISSION_WINDOW_PER_WORKER
    rows_per_thread = math.ceil(in_flight / concurrency)
    remote_timeout = float(config.get("REMOTE_STORE_TIMEOUT") or DEFAULT_REMOTE_TIMEOUT)
    return math.ceil(rows_per_thread * MAX_REMOTE_CALLS_PER_ROW * remote_timeout)


def import_time_limits(config: Mapping[str, Any]) -> tuple[int, int]:
    """
    Return ``(hard, soft)`` time limits in seconds for an import task.

    The soft limit stops scheduling rows; the gap before the hard limit lets
    the rows already in flight finish their remote calls. An explicit
    ``IMPORTER_TASK_SOFT_TIME_LIMIT`` is honoured but kept below the hard limit.
    """

    hard = int(config.get("IMPORTER_TASK_TIME_LIMIT") or DEFAULT_TASK_TIME_LIMIT)
    configured_soft = config.get("IMPORTER_TASK_SOFT_TIME_LIMIT")
    if configured_soft:
        soft = int(configured_soft)
    else:
        soft = hard - drain_grace_seconds(config)
    soft = max(MIN_SOFT_TIME_LIMIT, min(soft, hard - 1))
    return hard, soft


def _celery_overrides(app: Flask) -> Mapping[str, Any]:
    overrides = app.config.get("CELERY_CONFIG") or {}
    if isinstance(overrides, str):
        try:
            overrides = json.loads(overrides)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
            return {}
    return overrides


def _bind_app_context(celery_app: Celery, app: Flask) -> None:
    """Make every importer task body run inside ``app``'s application context."""

    class AppContextTask(celery_app.Task):  # type: ignore[misc,name-defined]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = AppContextTask  # type: ignore[assignment]


def create_celery_app(app: Flask) -> Celery:
    settings = resolve_broker_settings(app)
    hard_limit, soft_limit = import_time_limits(app.config)

    celery_app = Celery(
        app.import_name,
        broker=settings.broker_url,
        backend=settings.result_backend,
        include=("crm_app.importer.tasks",),
    )
    celery_app.conf.update(
        task_queues=[Queue(ENROLLMENT_QUEUE, routing_key=ENROLLMENT_QUEUE)],
        task_default_queue=ENROLLMENT_QUEUE,
        task_routes=TASK_ROUTES,
        # Each import already fans out over its own thread pool.
        worker_prefetch_multiplier=1,
        # Re-running an import is idempotent, so redeliver work lost with a worker.
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        task_track_started=True,
        result_extended=True,
        task_time_limit=hard_limit,
        task_soft_time_limit=soft_limit,
        broker_connection_retry_on_startup=True,
        worker_hijack_root_logger=False,
    )
    overrides = _celery_overrides(app)
    if overrides:
        celery_app.conf.update(overrides)

    _bind_app_context(celery_app, app)
    celery_app.loader.import_default_modules()

    app.logger.info(
        "Importer Celery app configured",
        extra={
            "importer_celery_broker_url": settings.broker_url,
            "importer_celery_result_backend": settings.result_backend,
            "importer_queue": ENROLLMENT_QUEUE,
            "importer_task_time_limit": hard_limit,
            "importer_task_soft_time_limit": soft_limit,
            "importer_celery_overrides": sorted(overrides),
        },
    )
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """Build the Celery app once and keep it on the importer extension state."""

    if state.get("celery_app") is None:
        state["celery_app"] = create_celery_app(app)
    return state["celery_app"]


def get_celery_app(app: Flask) -> Celery | None:
    """Return the importer's Celery app, or ``None`` when the importer was never initialised or is disabled."""

    state = app.extensions.get(IMPORTER_EXTENSION_KEY)
    if not state:
        return None
    if state.get("celery_app") is None and state.get("enabled"):
        return ensure_celery_app(app, state)
    return state.get("celery_app")
