"""Small request and configuration helpers shared by the importer surfaces."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from uuid import uuid4

from flask import Flask, current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from .errors import ConfigurationError

ALLOWED_UPLOAD_EXTENSIONS = {".json": "json", ".csv": "csv"}

_TRUE_VALUES = {"1", "true", "t", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "f", "no", "n", "off"}


def coerce_flag(value: Any, *, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    token = str(value).strip().lower()
    if token in _TRUE_VALUES:
        return True
    if token in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"invalid boolean value '{value}'")


def resolve_upload_directory(app: Flask | None = None) -> Path:
    """Return the upload directory, creating it when missing."""
    app = app or current_app
    configured = app.config.get("IMPORTER_UPLOAD_DIR")
    if configured:
        upload_dir = Path(configured)
        if not upload_dir.is_absolute():
            upload_dir = Path(app.instance_path) / upload_dir
    else:
        upload_dir = Path(app.instance_path) / "import_uploads"
    upload_dir.mkdir(parents=True, exist_ok=True)
    return upload_dir


def upload_data_type(filename: str | None) -> str | None:
    """Infer ``json`` or ``csv`` from an upload's file extension."""
    if not filename:
        return None
    return ALLOWED_UPLOAD_EXTENSIONS.get(Path(filename).suffix.lower())


def persist_upload(file_storage: FileStorage, *, app: Flask | None = None) -> Path:
    """
    Save an uploaded file under the importer upload directory.

    The original filename is sanitized with ``secure_filename`` and prefixed
    with a random token so concurrent uploads never collide.
    """
    original = secure_filename(file_storage.filename or "") or "upload"
    target = resolve_upload_directory(app) / f"{uuid4().hex}_{original}"
    file_storage.save(os.fspath(target))
    return target


def max_upload_bytes(app: Flask | None = None) -> int:
    app = app or current_app
    return int(app.config.get("IMPORTER_MAX_UPLOAD_MB", 25)) * 1024 * 1024


def cleanup_upload(path: Path) -> bool:
    """Remove an upload file, returning whether it existed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
