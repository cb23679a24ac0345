# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event

# Load environment variables from .env file first
load_dotenv()

# Module imports after load_dotenv() - E402 is intentional
from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.validation import validate_and_exit  # noqa: E402
from graph_ingest.importer import init_importer  # noqa: E402
from graph_ingest.models import db  # noqa: E402
from graph_ingest.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

app = Flask(__name__)

# Validate environment variables (only in production)
flask_env = os.environ.get("FLASK_ENV", "development")
if flask_env == "production":
    validate_and_exit(flask_env)

if flask_env == "production":
    app.config.from_object(ProductionConfig)
elif flask_env == "testing":
    app.config.from_object(TestingConfig)
else:
    app.config.from_object(DevelopmentConfig)

db.init_app(app)
setup_logging(app)


def _configure_sqlite_connection_factory(*, enable_foreign_keys: bool):
    """Return a connection hook applying pragmas and handing transaction control to SQLAlchemy."""

    def _configure_sqlite_connection(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        # pysqlite's implicit BEGIN breaks SAVEPOINT; SQLAlchemy emits BEGIN itself (see _begin_sqlite below)
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            if enable_foreign_keys:
                cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()

    return _configure_sqlite_connection


def _begin_sqlite(connection):
    connection.exec_driver_sql("BEGIN")


def configure_sqlite_engine(engine) -> None:
    """Install the SQLite hooks once per engine."""
    if not engine.url.drivername.startswith("sqlite"):
        return
    if getattr(engine, "_sqlite_pragmas_configured", False):
        return
    event.listen(engine, "connect", _configure_sqlite_connection_factory(enable_foreign_keys=True))
    event.listen(engine, "begin", _begin_sqlite)
    engine._sqlite_pragmas_configured = True  # type: ignore[attr-defined]


with app.app_context():
    configure_sqlite_engine(db.engine)
    # Create the database tables only if not in testing mode
    if not app.config.get("TESTING", False):
        db.create_all()


init_importer(app)


@app.errorhandler(404)
def not_found_error(error):
    return jsonify({"error": {"code": "not_found", "message": "Resource not found.", "status": 404}}), 404


@app.errorhandler(500)
def internal_error(error):
    db.session.rollback()
    return jsonify({"error": {"code": "internal_error", "message": "Internal server error.", "status": 500}}), 500


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
