"""
``flask importer`` command group.

Operator entry points for data sources, ingestion, processing, polling,
mappings, retention and the Celery worker.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import current_app
from flask.cli import AppGroup, with_appcontext
from sqlalchemy import select

from graph_ingest.models import Import, db
from graph_ingest.models.importer import DataSourceKind, ImportStatus
from graph_ingest.utils.importer import get_importer_adapters

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import ImporterError, ProcessingBusyError
from .mapping import TypeMappingRegistry, load_mapping_file
from .pipeline.imports import ImportService
from .pipeline.processing import ImportProcessor
from .pipeline.staging import StagingStore
from .result import Result
from .scheduler import run_due_polls, tick
from .service import DataSourceService, serialize_data_source
from .utils import cleanup_upload, resolve_upload_directory, upload_data_type


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _unwrap(result: Result) -> Any:
    if result.is_error:
        raise click.ClickException(f"{result.error.code}: {result.error.message}")
    return result.value


@click.group(name="importer", cls=AppGroup, invoke_without_command=True)
@click.pass_context
@with_appcontext
def importer_cli(ctx):
    """
    Importer management commands.

    Displays configured adapters when invoked without a subcommand.
    """
    if ctx.invoked_subcommand is None:
        adapters = get_importer_adapters(current_app)
        if not adapters:
            click.echo("No importer adapters configured.")
        else:
            click.echo("Enabled importer adapters:")
            for adapter in adapters:
                click.echo(f"  - {adapter}")


def get_disabled_importer_group() -> click.Group:
    """Minimal group telling the operator the importer is disabled."""

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


# -- data sources ---------------------------------------------------------------


@importer_cli.group(name="sources", cls=AppGroup)
def sources_group():
    """Create and manage data sources."""


@sources_group.command("create")
@click.option("--name", required=True)
@click.option(
    "--adapter",
    "adapter_type",
    required=True,
    type=click.Choice([kind.value for kind in DataSourceKind]),
)
@click.option("--config", "config_json", default="{}", show_default=True, help="Adapter configuration as JSON.")
@click.option("--active/--inactive", default=False, show_default=True)
@click.option("--user", default=None, help="Recorded as created_by.")
def sources_create(name: str, adapter_type: str, config_json: str, active: bool, user: Optional[str]):
    try:
        config = json.loads(config_json)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"--config is not valid JSON: {exc}") from exc
    source = _unwrap(DataSourceService().create(name, adapter_type, config, user=user, active=active))
    _echo_json(serialize_data_source(source))


@sources_group.command("list")
@click.option("--all", "include_archived", is_flag=True, help="Include archived data sources.")
def sources_list(include_archived: bool):
    sources = DataSourceService().list(include_archived=include_archived)
    if not sources:
        click.echo("No data sources found.")
        return
    for source in sources:
        flags = []
        if source.active:
            flags.append("active")
        if source.archived:
            flags.append("archived")
        click.echo(f"{source.id}\t{source.kind.value}\t{source.name}\t{','.join(flags) or 'inactive'}")


@sources_group.command("activate")
@click.argument("data_source_id", type=int)
def sources_activate(data_source_id: int):
    source = _unwrap(DataSourceService().set_active(data_source_id))
    click.echo(f"Data source {source.id} activated.")


@sources_group.command("deactivate")
@click.argument("data_source_id", type=int)
def sources_deactivate(data_source_id: int):
    source = _unwrap(DataSourceService().set_inactive(data_source_id))
    click.echo(f"Data source {source.id} deactivated.")


@sources_group.command("archive")
@click.argument("data_source_id", type=int)
def sources_archive(data_source_id: int):
    source = _unwrap(DataSourceService().archive(data_source_id))
    click.echo(f"Data source {source.id} archived.")


@sources_group.command("delete")
@click.argument("data_source_id", type=int)
@click.option("--remove-data", is_flag=True, help="Also delete staged data, imports, mappings and graph entities.")
@click.confirmation_option(prompt="Permanently delete this data source?")
def sources_delete(data_source_id: int, remove_data: bool):
    _unwrap(DataSourceService().delete(data_source_id, remove_data=remove_data))
    click.echo(f"Data source {data_source_id} deleted.")


# -- ingestion and processing ------------------------------------------------


@importer_cli.command("ingest")
@click.argument("data_source_id", type=int)
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--data-type", type=click.Choice(["json", "csv"]), help="Defaults to the file extension.")
@click.option("--process", "process_inline", is_flag=True, help="Transform staged records before returning.")
@click.option("--user", default=None)
def importer_ingest(data_source_id: int, file_path: Path, data_type: Optional[str], process_inline: bool, user):
    """Push a JSON or CSV file into a data source."""
    options = {
        "data_type": data_type or upload_data_type(file_path.name),
        "reference": file_path.name,
        "process": process_inline,
    }
    with file_path.open("rb") as handle:
        summary = _unwrap(DataSourceService().ingest(data_source_id, handle, user=user, options=options))
    _echo_json(summary.as_dict())


@importer_cli.command("process")
@click.argument("import_id", type=int, required=False)
@click.option("--pending", is_flag=True, help="Process every import still in the ready state.")
def importer_process(import_id: Optional[int], pending: bool):
    """Transform the staged records of one import (or every ready import)."""
    if import_id is None and not pending:
        raise click.UsageError("Pass an IMPORT_ID or --pending.")
    processor = ImportProcessor()
    import_ids = [import_id] if import_id is not None else []
    if pending:
        import_ids.extend(
            db.session.scalars(select(Import.id).where(Import.status == ImportStatus.READY).order_by(Import.id))
        )
    for current in import_ids:
        try:
            summary = processor.run(current)
        except ProcessingBusyError as exc:
            click.echo(f"Import {current} skipped: {exc.message}; it stays ready.")
            continue
        except ImporterError as exc:
            ImportService().fail(current, exc.message)
            raise click.ClickException(f"Import {current} failed: {exc.message}") from exc
        _echo_json(summary.as_dict())


@importer_cli.command("reprocess")
@click.argument("data_source_id", type=int)
def importer_reprocess(data_source_id: int):
    """Re-run transformation over every staged record of a data source."""
    summary = _unwrap(DataSourceService().reprocess(data_source_id))
    _echo_json(summary.as_dict())


@importer_cli.command("poll")
@click.option("--source-id", type=int, help="Tick one polling data source regardless of its interval.")
def importer_poll(source_id: Optional[int]):
    """Run a polling sweep (or a single tick) in the current process."""
    outcomes = [tick(source_id)] if source_id is not None else run_due_polls()
    if not outcomes:
        click.echo("No polling data sources are due.")
        return
    _echo_json([outcome.as_dict() for outcome in outcomes])


@importer_cli.command("retention")
@click.option("--source-id", type=int, help="Limit retention to one data source.")
def importer_retention(source_id: Optional[int]):
    """Delete inserted staging records older than each source's data_retention_days."""
    service = DataSourceService()
    try:
        sources = [service.get(source_id)] if source_id is not None else service.list(include_archived=True)
    except ImporterError as exc:
        raise click.ClickException(exc.message) from exc
    store = StagingStore()
    total = 0
    for source in sources:
        total += store.apply_retention(source)
    db.session.commit()
    click.echo(f"Removed {total} expired staging record(s).")


# -- mappings ------------------------------------------------------------------


@importer_cli.group(name="mappings", cls=AppGroup)
def mappings_group():
    """Inspect, load, activate and upgrade type mappings."""


@mappings_group.command("list")
@click.argument("data_source_id", type=int)
def mappings_list(data_source_id: int):
    registry = TypeMappingRegistry()
    mappings = registry.list_for_source(data_source_id)
    if not mappings:
        click.echo("No type mappings recorded for this data source.")
        return
    for mapping in mappings:
        count = len(registry.transformations_for(mapping.id))
        state = "active" if mapping.active else "inactive"
        click.echo(f"{mapping.id}\t{mapping.shape_hash}\t{state}\t{count} transformation(s)")


@mappings_group.command("load")
@click.argument("data_source_id", type=int)
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def mappings_load(data_source_id: int, file_path: Path):
    """Create or extend a type mapping from a YAML file."""
    try:
        source = DataSourceService().get(data_source_id)
        config = source.config or {}
        mapping = load_mapping_file(
            TypeMappingRegistry(),
            source.id,
            file_path,
            stop_nodes=config.get("stop_nodes") or (),
            value_nodes=config.get("value_nodes") or (),
        )
        db.session.commit()
    except ImporterError as exc:
        db.session.rollback()
        raise click.ClickException(exc.message) from exc
    click.echo(f"Loaded mapping {mapping.id} ({mapping.shape_hash}) from {file_path}.")


@mappings_group.command("activate")
@click.argument("mapping_id", type=int)
@click.option("--deactivate", is_flag=True)
def mappings_activate(mapping_id: int, deactivate: bool):
    try:
        mapping = TypeMappingRegistry().set_active(mapping_id, not deactivate)
        db.session.commit()
    except ImporterError as exc:
        db.session.rollback()
        raise click.ClickException(exc.message) from exc
    click.echo(f"Mapping {mapping.id} {'deactivated' if deactivate else 'activated'}.")


@mappings_group.command("upgrade")
@click.argument("mapping_ids", type=int, nargs=-1, required=True)
@click.option("--ontology-version", "version_id", type=int, required=True)
def mappings_upgrade(mapping_ids: tuple[int, ...], version_id: int):
    """Repoint mappings at the same-named ontology entries of another version."""
    try:
        mappings = TypeMappingRegistry().upgrade(list(mapping_ids), version_id)
        db.session.commit()
    except ImporterError as exc:
        db.session.rollback()
        details = exc.details.get("unresolved") or []
        message = exc.message + "".join(f"\n  - {item}" for item in details)
        raise click.ClickException(message) from exc
    click.echo(f"Upgraded {len(mappings)} mapping(s) to ontology version {version_id}.")


# -- uploads and worker -------------------------------------------------------


@importer_cli.command("cleanup-uploads")
@click.option(
    "--max-age-hours",
    default=72,
    show_default=True,
    type=int,
    help="Remove importer uploads older than the specified number of hours.",
)
def importer_cleanup_uploads(max_age_hours: int):
    """Delete stale upload files from the configured storage directory."""
    uploads_dir = resolve_upload_directory(current_app)
    cutoff = datetime.now(timezone.utc) - timedelta(hours=max_age_hours)
    removed = 0
    for path in uploads_dir.iterdir():
        if not path.is_file():
            continue
        modified = datetime.fromtimestamp(path.stat().st_mtime, timezone.utc)
        if modified < cutoff and cleanup_upload(path):
            removed += 1
    click.echo(f"Removed {removed} upload file(s) older than {max_age_hours} hours from {uploads_dir}.")


@importer_cli.group(name="worker", cls=AppGroup)
@with_appcontext
def worker_group():
    """Manage the importer background worker."""
    if not current_app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but queued processing is disabled in the web process.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.option("--beat", is_flag=True, help="Embed the beat scheduler that drives polling and retention.")
def worker_run(loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str, beat: bool):
    """Start the Celery worker in the current process."""
    celery_app = _resolve_celery(current_app)
    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")
    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
def worker_ping(timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    celery_app = _resolve_celery(current_app)
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")
    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    _echo_json(payload)
