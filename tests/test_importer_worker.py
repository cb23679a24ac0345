import json

import pytest
from flask import Flask

from graph_ingest.importer import get_celery_app, init_importer
from graph_ingest.importer.celery_app import DEFAULT_QUEUE_NAME, build_beat_schedule

EAGER_CONFIG = {"task_always_eager": True, "task_eager_propagates": True}


@pytest.fixture
def make_app(tmp_path):
    """Bare Flask app with the importer on and Celery state under ``tmp_path``."""

    def _make(instance_path=None, **config) -> Flask:
        app = Flask(__name__, instance_path=str(instance_path)) if instance_path else Flask(__name__)
        app.config.update(
            SECRET_KEY="test-secret",
            TESTING=True,
            IMPORTER_ENABLED=True,
            IMPORTER_ADAPTERS=("standard",),
            CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
        )
        app.config.update(config)
        init_importer(app)
        return app

    return _make


def test_sqlite_transport_is_the_default(make_app, tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()

    celery_app = get_celery_app(make_app(instance_path=instance_dir, CELERY_SQLITE_PATH="broker.sqlite"))

    assert celery_app.conf.broker_url == f"sqla+sqlite:///{(instance_dir / 'broker.sqlite').as_posix()}"
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.result_backend.endswith("broker.sqlite")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert celery_app.conf.task_acks_late is True


def test_explicit_broker_urls_win(make_app):
    celery_app = get_celery_app(
        make_app(CELERY_BROKER_URL="memory://", CELERY_RESULT_BACKEND="cache+memory://")
    )

    assert celery_app.conf.broker_url == "memory://"
    assert celery_app.conf.result_backend == "cache+memory://"


@pytest.mark.parametrize(
    "overrides",
    [
        {"task_always_eager": True, "worker_concurrency": 3},
        json.dumps({"task_always_eager": True, "worker_concurrency": 3}),
    ],
)
def test_celery_config_overrides(make_app, overrides):
    celery_app = get_celery_app(make_app(CELERY_CONFIG=overrides))

    assert celery_app.conf.task_always_eager is True
    assert celery_app.conf.worker_concurrency == 3


def test_malformed_celery_config_is_ignored(make_app):
    celery_app = get_celery_app(make_app(CELERY_CONFIG="{not json"))

    assert celery_app.conf.task_always_eager is False


def test_tasks_are_registered_by_name(make_app):
    registered = set(get_celery_app(make_app()).tasks)

    assert {
        "importer.healthcheck",
        "importer.process_import",
        "importer.poll_data_source",
        "importer.poll_due_sources",
        "importer.apply_retention",
    } <= registered


def test_beat_drives_polling_and_retention(make_app):
    app = make_app(IMPORTER_POLL_SCHEDULER_SECONDS=15)

    schedule = build_beat_schedule(app)

    assert schedule == {
        "importer-poll-due-sources": {"task": "importer.poll_due_sources", "schedule": 15.0},
        "importer-apply-retention": {"task": "importer.apply_retention", "schedule": 3600.0},
    }
    assert get_celery_app(app).conf.beat_schedule == schedule


def test_worker_ping_runs_the_heartbeat(make_app):
    app = make_app(IMPORTER_WORKER_ENABLED=True, CELERY_CONFIG=EAGER_CONFIG)

    result = app.test_cli_runner().invoke(args=["importer", "worker", "ping"])

    assert result.exit_code == 0, result.output
    heartbeat = json.loads(result.output)
    assert heartbeat["status"] == "ok"
    assert {"timestamp", "worker_hostname"} <= set(heartbeat)


@pytest.mark.parametrize(
    ("options", "expected_tail"),
    [
        ([], []),
        (["--concurrency", "2", "--pool", "solo"], ["--concurrency", "2", "--pool", "solo"]),
        (["--beat"], ["--beat"]),
    ],
)
def test_worker_run_builds_celery_argv(make_app, monkeypatch, options, expected_tail):
    app = make_app(IMPORTER_WORKER_ENABLED=True, CELERY_CONFIG=EAGER_CONFIG)
    captured = []
    monkeypatch.setattr(get_celery_app(app), "worker_main", lambda argv=None: captured.append(argv))

    result = app.test_cli_runner().invoke(
        args=["importer", "worker", "run", "--loglevel", "debug", "--queues", "imports", *options]
    )

    assert result.exit_code == 0, result.output
    assert captured == [["worker", "--loglevel", "debug", "-Q", "imports", *expected_tail]]


def test_worker_health_reports_disabled_worker(make_app):
    response = make_app().test_client().get("/importer/worker_health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "disabled"
    assert payload["worker_enabled"] is False


def test_worker_health_runs_heartbeat_when_enabled(make_app):
    app = make_app(IMPORTER_WORKER_ENABLED=True, CELERY_CONFIG=EAGER_CONFIG)

    response = app.test_client().get("/importer/worker_health?timeout=2")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "ok"
    assert payload["queue"] == DEFAULT_QUEUE_NAME
    assert payload["timeout_seconds"] == 2.0
    assert payload["heartbeat"]["status"] == "ok"
