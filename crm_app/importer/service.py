"""
Application-level entry points shared by the CLI, Celery tasks and views.

Translates Flask configuration into engine options and builds the remote store
collaborator. Tests swap the store by placing a ``store_factory`` callable in
``app.extensions['importer']``.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from flask import Flask

from crm_app.importer.adapters import EnrollmentCSVAdapter
from crm_app.importer.contracts import get_enrollment_field_aliases, load_alias_overrides
from crm_app.importer.pipeline import (
    DEFAULT_CONCURRENCY,
    MODE_ENROLLMENT,
    ImportVerification,
    JobSummary,
    ProgressCounter,
    clamp_concurrency,
    run_import,
    verify_import,
)
from crm_app.importer.store import EntityStore, RestEntityStore

IMPORTER_EXTENSION_KEY = "importer"


def _extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(IMPORTER_EXTENSION_KEY, {})


def build_store(app: Flask) -> EntityStore:
    """Return the remote store for ``app``, honouring an injected ``store_factory``."""

    factory = _extension_state(app).get("store_factory")
    if factory is not None:
        return factory(app)
    return RestEntityStore.from_config(app.config, logger=app.logger)


def resolve_field_aliases(app: Flask) -> dict[str, tuple[str, ...]]:
    """
    Return the alias table, including overrides from ``IMPORTER_ALIAS_MAPPING_PATH``.

    The resolved table is cached on the importer extension state.
    """

    state = _extension_state(app)
    cached = state.get("field_aliases")
    if cached is not None:
        return cached

    overrides = None
    mapping_path = app.config.get("IMPORTER_ALIAS_MAPPING_PATH")
    if mapping_path:
        overrides = load_alias_overrides(mapping_path)
        app.logger.info(
            "Importer alias overrides loaded",
            extra={"importer_alias_mapping_path": str(mapping_path), "importer_alias_fields": sorted(overrides)},
        )
    aliases = get_enrollment_field_aliases(overrides)
    state["field_aliases"] = aliases
    return aliases


def read_csv_rows(path: Path, aliases: Mapping[str, Sequence[str]] | None = None) -> list[dict[str, object | None]]:
    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        return EnrollmentCSVAdapter(handle, aliases=aliases).read_all()


def run_enrollment_import(
    app: Flask,
    raw_rows: Iterable[Mapping[str, Any]],
    *,
    mode: str = MODE_ENROLLMENT,
    concurrency: int | None = None,
    cancel_event: threading.Event | None = None,
    progress: ProgressCounter | None = None,
) -> JobSummary:
    """Run one import job with options taken from ``app.config``."""

    config = app.config
    store = build_store(app)
    try:
        return run_import(
            store,
            raw_rows,
            mode=mode,
            concurrency=clamp_concurrency(
                concurrency if concurrency is not None else config.get("IMPORTER_CONCURRENCY", DEFAULT_CONCURRENCY)
            ),
            level_strict=bool(config.get("IMPORTER_LEVEL_STRICT", False)),
            allow_org_create=bool(config.get("IMPORTER_ALLOW_ORG_CREATE", True)),
            aliases=resolve_field_aliases(app),
            cancel_event=cancel_event,
            progress=progress,
        )
    finally:
        close = getattr(store, "close", None)
        if callable(close):
            close()


def run_verification(app: Flask) -> ImportVerification:
    store = build_store(app)
    try:
        return verify_import(store)
    finally:
        close = getattr(store, "close", None)
        if callable(close):
            close()
