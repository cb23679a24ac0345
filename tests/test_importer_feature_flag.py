import json

import pytest
from flask import Flask

from graph_ingest.importer import IMPORTER_EXTENSION_KEY, init_importer


def build_app(enabled=False, adapters=(), tmp_path=None):
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        IMPORTER_ENABLED=enabled,
        IMPORTER_ADAPTERS=tuple(adapters),
    )
    if tmp_path is not None:
        app.config["CELERY_SQLITE_PATH"] = str(tmp_path / "celery.sqlite")

    init_importer(app)
    return app


def test_importer_disabled_registers_stub_cli(monkeypatch):
    called = {"flag": False}

    def record_call(*args, **kwargs):
        called["flag"] = True
        return ()

    monkeypatch.setattr("graph_ingest.importer.resolve_adapters", record_call)

    app = build_app(enabled=False)

    assert called["flag"] is False, "resolve_adapters should not run when importer disabled"
    assert "importer" not in app.blueprints
    assert app.extensions[IMPORTER_EXTENSION_KEY]["enabled"] is False
    assert app.extensions[IMPORTER_EXTENSION_KEY]["celery_app"] is None

    runner = app.test_cli_runner()
    result = runner.invoke(args=["importer"])
    assert result.exit_code != 0
    assert "Importer commands are unavailable because IMPORTER_ENABLED=false." in result.output


def test_importer_enabled_registers_blueprint_and_cli(tmp_path):
    app = build_app(enabled=True, adapters=("standard", "http"), tmp_path=tmp_path)

    assert "importer" in app.blueprints
    assert "importer.importer_healthcheck" in app.view_functions

    client = app.test_client()
    response = client.get("/importer/health")
    assert response.status_code == 200
    payload = json.loads(response.data)
    assert payload["enabled"] is True
    assert [adapter["name"] for adapter in payload["adapters"]] == ["standard", "http"]
    assert payload["adapters"][1]["polling"] is True
    assert payload["adapter_readiness"]["standard"]["status"] == "ready"

    runner = app.test_cli_runner()
    result = runner.invoke(args=["importer"])
    assert result.exit_code == 0
    assert "- standard" in result.output
    assert "- http" in result.output

    importer_state = app.extensions[IMPORTER_EXTENSION_KEY]
    assert importer_state["enabled"] is True
    assert importer_state["active_adapters"][0].name == "standard"
    assert importer_state["celery_app"] is not None


def test_salesforce_readiness_reports_missing_credentials(monkeypatch, tmp_path):
    for name in ("SF_USERNAME", "SF_PASSWORD", "SF_SECURITY_TOKEN"):
        monkeypatch.delenv(name, raising=False)

    app = build_app(enabled=True, adapters=("salesforce",), tmp_path=tmp_path)

    readiness = app.extensions[IMPORTER_EXTENSION_KEY]["adapter_readiness"]["salesforce"]
    assert readiness["status"] == "missing-env"
    assert set(readiness["missing_env_vars"]) == {"SF_USERNAME", "SF_PASSWORD", "SF_SECURITY_TOKEN"}


def test_routes_report_disabled_when_flag_flips(tmp_path):
    app = build_app(enabled=True, adapters=("standard",), tmp_path=tmp_path)
    app.config["IMPORTER_ENABLED"] = False

    response = app.test_client().get("/importer/health")

    assert response.status_code == 404
    assert response.get_json()["error"]["code"] == "importer_disabled"


def test_importer_unknown_adapter_raises():
    with pytest.raises(ValueError):
        build_app(enabled=True, adapters=("unknown",))
