"""
Ingestion pipeline.

``init_importer`` is the only entry point the application factory calls. With
``IMPORTER_ENABLED`` off it installs a stub CLI group and nothing else; with it
on it resolves ``IMPORTER_ADAPTERS``, builds the Celery app, records adapter
readiness and mounts the ``/importer`` blueprint and ``flask importer`` group.
Everything it knows is kept in ``app.extensions['importer']``.
"""

from __future__ import annotations

from typing import Any, Iterable

from flask import Flask

from graph_ingest.utils.importer import get_importer_adapters, is_importer_enabled

from .cache import MemoryCache
from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .registry import AdapterDescriptor, get_adapter_registry, resolve_adapters
from .result import Result
from .service import DataSourceService
from .views import importer_blueprint

IMPORTER_EXTENSION_KEY = "importer"

__all__ = [
    "init_importer",
    "IMPORTER_EXTENSION_KEY",
    "DataSourceService",
    "Result",
    "get_celery_app",
]


def _extension_state(app: Flask) -> dict[str, Any]:
    state = app.extensions.get(IMPORTER_EXTENSION_KEY)
    if state is None:
        state = app.extensions[IMPORTER_EXTENSION_KEY] = {
            "enabled": False,
            "configured_adapters": (),
            "active_adapters": (),
            "worker_enabled": False,
            "celery_app": None,
            "adapter_readiness": {},
            "cache": MemoryCache(default_ttl=int(app.config.get("IMPORTER_CACHE_TTL_SECONDS", 300))),
        }
    return state


def _readiness(descriptor: AdapterDescriptor) -> dict[str, Any]:
    if descriptor.name == "salesforce":
        from .adapters.salesforce import check_salesforce_adapter_readiness

        report = check_salesforce_adapter_readiness().as_dict()
    else:
        report = {"status": "ready", "missing_env_vars": [], "messages": []}
    return {"name": descriptor.name, "title": descriptor.title, **report}


def _warn_unready(app: Flask, readiness: Iterable[dict[str, Any]]) -> None:
    for report in readiness:
        if report["status"] == "ready":
            continue
        app.logger.warning(
            "Importer adapter '%s' is not ready (%s): %s",
            report["name"],
            report["status"],
            "; ".join(report.get("messages") or ()) or "no details",
            extra={
                "importer_adapter": report["name"],
                "importer_adapter_status": report["status"],
                "importer_adapter_missing_env": report.get("missing_env_vars"),
            },
        )


def _install_cli(app: Flask, group) -> None:
    app.cli.commands.pop(importer_cli.name, None)
    app.cli.add_command(group)


def init_importer(app: Flask) -> None:
    state = _extension_state(app)
    state["enabled"] = is_importer_enabled(app)
    state["configured_adapters"] = get_importer_adapters(app)
    state["worker_enabled"] = bool(app.config.get("IMPORTER_WORKER_ENABLED", False))

    if not state["enabled"]:
        state["active_adapters"] = ()
        _install_cli(app, get_disabled_importer_group())
        app.logger.info("Importer disabled (IMPORTER_ENABLED=false)")
        return

    state["active_adapters"] = tuple(resolve_adapters(state["configured_adapters"], get_adapter_registry()))
    ensure_celery_app(app, state)

    state["adapter_readiness"] = {descriptor.name: _readiness(descriptor) for descriptor in state["active_adapters"]}
    _warn_unready(app, state["adapter_readiness"].values())

    if importer_blueprint.name not in app.blueprints:
        if getattr(app, "_got_first_request", False):
            app.logger.warning("Importer blueprint not registered: application already served a request")
        else:
            app.register_blueprint(importer_blueprint)
    _install_cli(app, importer_cli)

    app.logger.info(
        "Importer enabled with adapters: %s",
        ", ".join(descriptor.name for descriptor in state["active_adapters"]) or "none",
    )
