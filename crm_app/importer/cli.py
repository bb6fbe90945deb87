"""
CLI commands for the enrollment importer (``flask importer ...``).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from crm_app.importer.adapters import CSVAdapterError
from crm_app.importer.celery_app import ENROLLMENT_QUEUE, HEALTHCHECK_TASK, INGEST_TASK, get_celery_app
from crm_app.importer.contracts import AliasMappingError, get_enrollment_field_specs
from crm_app.importer.errors import ImporterError
from crm_app.importer.pipeline import IMPORT_MODES, MODE_ENROLLMENT, JobSummary, render_report_csv
from crm_app.importer.service import read_csv_rows, resolve_field_aliases, run_enrollment_import, run_verification
from crm_app.importer.store import RemoteStoreNotConfigured
from crm_app.importer.uploads import purge_stale_uploads, upload_directory
from crm_app.utils.importer import is_importer_enabled

# Failures that abort a whole job before or around row processing.
JOB_ERRORS = (CSVAdapterError, AliasMappingError, ImporterError, RemoteStoreNotConfigured, OSError)


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """
    Enrollment importer commands.

    Prints the configured remote store when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. " "Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        store_url = app.config.get("REMOTE_STORE_URL") or "not configured"
        click.echo(f"Importer enabled. Remote store: {store_url}")
        click.echo(f"Modes: {', '.join(IMPORT_MODES)}")


def get_disabled_importer_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the importer is disabled.
    """

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


def _format_summary(summary: JobSummary) -> str:
    counts = ", ".join(f"{outcome}={count}" for outcome, count in summary.counts.items()) or "none"
    cancelled_note = " (cancelled before all rows were scheduled)" if summary.cancelled else ""
    return (
        f"Import ({summary.mode}) finished in {summary.elapsed_seconds:.2f}s{cancelled_note}.\n"
        f"  rows_total      : {summary.rows_total}\n"
        f"  rows_processed  : {summary.rows_processed}\n"
        f"  orgs_total      : {summary.orgs_total}\n"
        f"  orgs_created    : {summary.orgs_created}\n"
        f"  courses_updated : {summary.courses_updated}\n"
        f"  courses_created : {summary.courses_created}\n"
        f"  skipped         : {summary.skipped}\n"
        f"  errors          : {summary.errors}\n"
        f"  outcomes        : {counts}"
    )


@importer_cli.command("run")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="CSV export to import.",
)
@click.option(
    "--mode",
    type=click.Choice(IMPORT_MODES),
    default=MODE_ENROLLMENT,
    show_default=True,
    help="'enrollment' updates course headcounts; 'courses' creates course definitions.",
)
@click.option("--concurrency", type=int, help="Rows processed in parallel (defaults to IMPORTER_CONCURRENCY).")
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.option(
    "--summary-json",
    is_flag=True,
    help="Emit a machine-readable summary payload after completion (inline runs only).",
)
@click.option(
    "--report",
    "report_path",
    type=click.Path(path_type=Path, dir_okay=False),
    help="Write the per-row report CSV to this path (inline runs only).",
)
@click.pass_context
def importer_run(
    ctx,
    file_path: Path,
    mode: str,
    concurrency: Optional[int],
    inline: bool,
    summary_json: bool,
    report_path: Optional[Path],
):
    """Import an enrollment or course-definition CSV."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException("Importer is disabled; enable it via IMPORTER_ENABLED before running.")

    csv_path = file_path.resolve()
    if (summary_json or report_path) and not inline:
        raise click.ClickException("--summary-json and --report are only available for --inline runs.")

    if not inline:
        celery_app = _resolve_celery(app)
        try:
            async_result = celery_app.send_task(
                INGEST_TASK,
                kwargs={
                    "file_path": str(csv_path),
                    "mode": mode,
                    "concurrency": concurrency,
                    "keep_file": True,
                },
            )
        except Exception as exc:
            raise click.ClickException(f"Failed to enqueue import of {csv_path}: {exc}") from exc

        app.logger.info(
            "Importer run queued via CLI",
            extra={"importer_task_id": async_result.id, "importer_mode": mode, "importer_file_path": str(csv_path)},
        )
        click.echo(json.dumps({"task_id": async_result.id, "status": "queued", "mode": mode}))
        return

    try:
        raw_rows = read_csv_rows(csv_path, resolve_field_aliases(app))
        summary = run_enrollment_import(app, raw_rows, mode=mode, concurrency=concurrency)
    except JOB_ERRORS as exc:
        app.logger.error(
            "Importer run failed",
            extra={"importer_mode": mode, "importer_file_path": str(csv_path), "importer_error": str(exc)},
        )
        raise click.ClickException(f"Import of {csv_path} failed: {exc}") from exc

    click.echo(_format_summary(summary))
    for result in summary.error_rows():
        click.echo(f"  row {result.row_index}: {' | '.join(result.messages)}", err=True)
    if report_path is not None:
        report_path.write_text(render_report_csv(summary), encoding="utf-8")
        click.echo(f"Report written to {report_path}")
    if summary_json:
        click.echo(json.dumps(summary.as_dict(), indent=2, sort_keys=True))


@importer_cli.command("verify")
@click.option("--json", "as_json", is_flag=True, help="Emit the verification payload as JSON.")
@click.pass_context
def importer_verify(ctx, as_json: bool):
    """Report how many organizations have courses and how many courses carry headcounts."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    try:
        verification = run_verification(app)
    except (ImporterError, RemoteStoreNotConfigured) as exc:
        raise click.ClickException(f"Verification failed: {exc}") from exc

    if as_json:
        click.echo(json.dumps(verification.as_dict(), indent=2, sort_keys=True))
        return
    click.echo(
        f"Organizations: {verification.orgs_total} "
        f"({verification.orgs_with_courses} with courses, {verification.orgs_without_courses} without)\n"
        f"Courses: {verification.courses_total} "
        f"({verification.courses_with_headcount} with headcount, {verification.headcount_coverage}%)"
    )


@importer_cli.command("fields")
@click.option("--json", "as_json", is_flag=True, help="Emit the field table as JSON.")
@click.pass_context
def importer_fields(ctx, as_json: bool):
    """List the canonical columns and the headers accepted for each, including configured overrides."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    try:
        aliases = resolve_field_aliases(app)
    except AliasMappingError as exc:
        raise click.ClickException(str(exc)) from exc

    fields = [
        {
            "name": spec.name,
            "type": "number" if spec.numeric else "text",
            "headers": list(aliases.get(spec.name, ())),
            "description": spec.description,
        }
        for spec in get_enrollment_field_specs()
    ]
    if as_json:
        click.echo(json.dumps(fields, indent=2, ensure_ascii=False))
        return
    for field in fields:
        click.echo(f"{field['name']} ({field['type']}): {field['description']}")
        click.echo(f"  headers: {', '.join(field['headers'])}")


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get("importer", {})
    if not state.get("worker_enabled") and not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option(
    "--pool",
    type=str,
    help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').",
)
@click.option(
    "--queues",
    default=ENROLLMENT_QUEUE,
    show_default=True,
    help="Comma-separated queue list to consume.",
)
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """
    Start the Celery worker in the current process.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    state = app.extensions.get("importer")
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get(HEALTHCHECK_TASK)
    if task is None:
        raise click.ClickException(f"Heartbeat task '{HEALTHCHECK_TASK}' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))


@importer_cli.command("cleanup-uploads")
@click.option(
    "--max-age-hours",
    default=72,
    show_default=True,
    type=int,
    help="Remove importer uploads older than the specified number of hours.",
)
@click.pass_context
def importer_cleanup_uploads(ctx, max_age_hours: int):
    """
    Delete stale importer upload files from the configured storage directory.
    """

    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    removed = purge_stale_uploads(app, max_age_hours)
    uploads_dir = upload_directory(app)

    click.echo(f"Removed {removed} upload file(s) older than {max_age_hours} hours from {uploads_dir}.")
