# conftest.py

import os

import pytest
from sqlalchemy import inspect, text

# Set testing environment BEFORE importing app so app.py loads TestingConfig
os.environ["FLASK_ENV"] = "testing"

from app import app as flask_app  # noqa: E402
from graph_ingest.importer import init_importer  # noqa: E402
from graph_ingest.models import db  # noqa: E402
from graph_ingest.utils.logging_config import setup_logging  # noqa: E402

ALL_ADAPTERS = ("standard", "manual", "http", "salesforce", "timeseries")


def _drop_timeseries_tables():
    """Per-source ``ts_<id>`` tables live outside the model metadata."""
    for name in inspect(db.engine).get_table_names():
        if name.startswith("ts_"):
            with db.engine.begin() as connection:
                connection.execute(text(f'DROP TABLE IF EXISTS "{name}"'))


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application with the importer enabled."""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": True,
            "LOG_LEVEL": "DEBUG",
            "IMPORTER_ENABLED": True,
            "IMPORTER_ADAPTERS": ALL_ADAPTERS,
            "IMPORTER_WORKER_ENABLED": False,
            "IMPORTER_UPLOAD_DIR": str(tmp_path / "uploads"),
            "CELERY_SQLITE_PATH": str(tmp_path / "celery.sqlite"),
            "IMPORTER_STAGING_BATCH_SIZE": 500,
            "IMPORTER_PROCESSING_BATCH_SIZE": 100,
        }
    )
    setup_logging(flask_app)
    init_importer(flask_app)

    with flask_app.app_context():
        db.drop_all()
        _drop_timeseries_tables()
        db.create_all()
        flask_app.extensions["importer"]["cache"].flush()
        yield flask_app
        db.session.remove()
        db.drop_all()
        _drop_timeseries_tables()
        flask_app.extensions["importer"]["cache"].flush()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


def pytest_configure(config):
    """Register markers and make sure the testing environment is selected."""
    os.environ["FLASK_ENV"] = "testing"

    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
