# config/validation.py

"""
Startup checks for production deployments of the ingestion service.
"""

import os
import sys
from typing import List, Tuple

_KNOWN_CHUNKS = ("day", "hour", "month", "week")
_SALESFORCE_ENV = ("SF_USERNAME", "SF_PASSWORD", "SF_SECURITY_TOKEN")
_PLACEHOLDER_SECRETS = {"your-secret-key", "your_secret_key"}


def _production_errors(env) -> List[str]:
    errors = []

    if env.get("SECRET_KEY", "") in _PLACEHOLDER_SECRETS | {""}:
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )
    if not env.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production. Set it to your PostgreSQL connection string.")

    worker_enabled = env.get("IMPORTER_WORKER_ENABLED", "false").lower() == "true"
    if worker_enabled and not (env.get("CELERY_BROKER_URL") or env.get("CELERY_SQLITE_PATH")):
        errors.append("CELERY_BROKER_URL (or CELERY_SQLITE_PATH) is required when IMPORTER_WORKER_ENABLED=true")

    adapters = {item.strip().lower() for item in env.get("IMPORTER_ADAPTERS", "").split(",")}
    if "salesforce" in adapters:
        errors.extend(
            f"{name} is required when the salesforce adapter is enabled" for name in _SALESFORCE_ENV if not env.get(name)
        )

    chunk = (env.get("IMPORTER_TIMESERIES_DEFAULT_CHUNK") or "").strip().lower()
    if chunk and chunk not in _KNOWN_CHUNKS:
        errors.append("IMPORTER_TIMESERIES_DEFAULT_CHUNK must be one of: " + ", ".join(_KNOWN_CHUNKS))

    return errors


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Check the environment for the given Flask environment.

    Only production is validated; other environments always pass.

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    flask_env = flask_env or os.environ.get("FLASK_ENV", "development")
    if flask_env != "production":
        return True, []
    errors = _production_errors(os.environ)
    return not errors, errors


def validate_and_exit(flask_env: str = None) -> None:
    """Print every validation error to stderr and exit with status 1 if any."""
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return

    rule = "=" * 80
    lines = [rule, "ENVIRONMENT VALIDATION FAILED", rule, "", "The following settings are missing or invalid:", ""]
    lines.extend(f"{position}. {error}" for position, error in enumerate(errors, 1))
    lines.extend(["", rule, "Please check your .env file or environment variables.", rule])
    print("\n".join(lines), file=sys.stderr)
    sys.exit(1)
