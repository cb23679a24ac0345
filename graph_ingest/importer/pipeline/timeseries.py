"""
Time-series storage for ``timeseries`` data sources.

Each source owns a table ``ts_<source id>`` holding its declared columns plus
a ``_chunk`` partition column derived from the primary timestamp: a wall-clock
bucket for date timestamps or ``value // chunk_interval`` for numeric ones.
Rows append one savepoint at a time so a bad row never discards its
neighbours.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.exc import SQLAlchemyError

from graph_ingest.models import DataSource, db
from graph_ingest.models.base import utc_now

from ..errors import ConfigurationError, PersistenceError
from ..transform.conversion import ValueConversionError, convert_value

_COLUMN_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
_NUMERIC_TYPES = {"number", "number64", "float"}
_COLUMN_TYPES = {
    "number": BigInteger,
    "number64": BigInteger,
    "float": Float,
    "boolean": Boolean,
    "string": Text,
    "date": lambda: DateTime(timezone=True),
    "json": JSON,
}
_CHUNKS = {"hour", "day", "week", "month"}
_BIGINT_MIN, _BIGINT_MAX = -(2**63), 2**63 - 1

_metadata = MetaData()


@dataclass(frozen=True)
class RowResult:
    index: int
    succeeded: bool
    row_id: int | None = None
    error: str | None = None


def _chunk_interval(config: Mapping[str, Any]) -> float | None:
    raw = config.get("chunk_interval")
    if raw is None or str(raw).strip() == "":
        return None
    try:
        interval = float(raw)
    except (TypeError, ValueError):
        return None
    return interval if interval > 0 else None


def validate_timeseries_config(config: Mapping[str, Any]) -> None:
    """Reject an unusable column declaration before anything is created."""
    columns = config.get("columns")
    if not isinstance(columns, list) or not columns:
        raise ConfigurationError("timeseries data sources require at least one column")

    seen: set[str] = set()
    primaries = []
    for position, column in enumerate(columns):
        if not isinstance(column, Mapping):
            raise ConfigurationError(f"column {position} must be an object")
        name = str(column.get("column_name") or "").strip()
        if not _COLUMN_NAME_RE.match(name):
            raise ConfigurationError(f"column {position} has an invalid column_name '{name}'")
        if name in seen:
            raise ConfigurationError(f"duplicate column_name '{name}'")
        seen.add(name)
        column_type = str(column.get("type") or "").strip().lower()
        if column_type not in _COLUMN_TYPES:
            raise ConfigurationError(f"column '{name}' has unsupported type '{column.get('type')}'")
        if column.get("is_primary_timestamp"):
            primaries.append((name, column_type))

    if len(primaries) != 1:
        raise ConfigurationError("exactly one column must be marked is_primary_timestamp")
    name, column_type = primaries[0]
    if column_type != "date" and column_type not in _NUMERIC_TYPES:
        raise ConfigurationError(f"primary timestamp '{name}' must be a date or numeric column")
    if column_type in _NUMERIC_TYPES and _chunk_interval(config) is None:
        raise ConfigurationError(f"numeric primary timestamp '{name}' requires a positive chunk_interval")


def _primary_column(config: Mapping[str, Any]) -> Mapping[str, Any]:
    return next(column for column in config["columns"] if column.get("is_primary_timestamp"))


def _date_bucket(value: datetime, chunk: str) -> str:
    if chunk == "hour":
        return value.strftime("%Y-%m-%dT%H")
    if chunk == "week":
        start = value - timedelta(days=value.weekday())
        return start.strftime("%Y-%m-%d")
    if chunk == "month":
        return value.strftime("%Y-%m")
    return value.strftime("%Y-%m-%d")


class TimeseriesStorage:
    def __init__(self, session=None, default_chunk: str | None = None):
        self.session = session or db.session
        chunk = (default_chunk or current_app.config.get("IMPORTER_TIMESERIES_DEFAULT_CHUNK") or "day").lower()
        self.default_chunk = chunk if chunk in _CHUNKS else "day"
        self._ready: set[str] = set()

    @staticmethod
    def table_name(data_source_id: int) -> str:
        return f"ts_{int(data_source_id)}"

    def table_for(self, source: DataSource) -> Table:
        config = source.config or {}
        columns = config.get("columns") or []
        signature = tuple(
            (column["column_name"], str(column["type"]).lower(), bool(column.get("unique"))) for column in columns
        )
        name = self.table_name(source.id)
        existing = _metadata.tables.get(name)
        if existing is not None and existing.info.get("signature") == signature:
            return existing
        if existing is not None:
            _metadata.remove(existing)

        table_columns: list[Any] = [
            Column("_id", Integer, primary_key=True, autoincrement=True),
            Column("_chunk", String(64), nullable=False, index=True),
            Column("_import_id", Integer, nullable=True),
            Column("_inserted_at", DateTime(timezone=True), nullable=False, default=utc_now),
        ]
        for column in columns:
            column_type = _COLUMN_TYPES[str(column["type"]).lower()]
            table_columns.append(
                Column(column["column_name"], column_type(), nullable=not column.get("is_primary_timestamp"))
            )
        unique_names = [column["column_name"] for column in columns if column.get("unique")]
        if unique_names:
            table_columns.append(UniqueConstraint(*unique_names, name=f"uq_{name}_unique_columns"))
        table = Table(name, _metadata, *table_columns, info={"signature": signature})
        return table

    def ensure_schema(self, source: DataSource) -> Table:
        validate_timeseries_config(source.config or {})
        table = self.table_for(source)
        if table.name not in self._ready:
            table.create(bind=self.session.connection(), checkfirst=True)
            self._ready.add(table.name)
        return table

    def drop_schema(self, source: DataSource) -> None:
        table = _metadata.tables.get(self.table_name(source.id))
        if table is None and source.config and source.config.get("columns"):
            table = self.table_for(source)
        if table is not None:
            table.drop(bind=self.session.connection(), checkfirst=True)
            self._ready.discard(table.name)
            _metadata.remove(table)

    def _chunk_for(self, config: Mapping[str, Any], primary_value: Any) -> str:
        primary = _primary_column(config)
        if str(primary["type"]).lower() == "date":
            return _date_bucket(primary_value, self.default_chunk)
        interval = _chunk_interval(config)
        try:
            return str(int(float(primary_value) // interval))
        except (ArithmeticError, TypeError, ValueError) as exc:
            raise PersistenceError(f"primary timestamp {primary_value!r} cannot be chunked: {exc}") from exc

    def build_row(self, source: DataSource, values: Mapping[str, Any], import_id: int | None = None) -> dict[str, Any]:
        """Convert ``values`` (keyed by column name) into an insertable row."""
        config = source.config or {}
        row: dict[str, Any] = {}
        for column in config.get("columns") or []:
            name = column["column_name"]
            raw = values.get(name)
            if raw is None:
                if column.get("is_primary_timestamp"):
                    raise PersistenceError(f"missing primary timestamp '{name}'")
                row[name] = None
                continue
            if str(column["type"]).lower() == "json":
                row[name] = raw
                continue
            try:
                row[name] = convert_value(
                    raw,
                    column["type"],
                    format_string=column.get("date_conversion_format_string"),
                )
            except ValueConversionError as exc:
                raise PersistenceError(f"column '{name}': {exc}") from exc
            if _COLUMN_TYPES.get(str(column["type"]).lower()) is BigInteger and not (
                _BIGINT_MIN <= row[name] <= _BIGINT_MAX
            ):
                raise PersistenceError(f"column '{name}': {raw!r} is out of range for a 64-bit integer")
        primary = _primary_column(config)
        row["_chunk"] = self._chunk_for(config, row[primary["column_name"]])
        row["_import_id"] = import_id
        row["_inserted_at"] = utc_now()
        return row

    def append_row(self, source: DataSource, values: Mapping[str, Any], import_id: int | None = None) -> int:
        """Insert one row, raising ``PersistenceError`` on failure. Caller owns the savepoint."""
        table = self.ensure_schema(source)
        try:
            row = self.build_row(source, values, import_id)
            result = self.session.execute(table.insert().values(**row))
        except PersistenceError:
            raise
        except SQLAlchemyError as exc:
            raise PersistenceError(f"row rejected: {getattr(exc, 'orig', None) or exc}") from exc
        except (ArithmeticError, TypeError, ValueError) as exc:
            # driver-level rejections, e.g. sqlite's OverflowError for oversized integers
            raise PersistenceError(f"row rejected: {exc}") from exc
        return int(result.inserted_primary_key[0])

    def append_rows(
        self,
        source: DataSource,
        rows: Sequence[Mapping[str, Any]],
        import_id: int | None = None,
    ) -> list[RowResult]:
        """Append ``rows`` individually, returning one result per row."""
        self.ensure_schema(source)
        results: list[RowResult] = []
        for index, values in enumerate(rows):
            try:
                with self.session.begin_nested():
                    row_id = self.append_row(source, values, import_id)
            except PersistenceError as exc:
                results.append(RowResult(index=index, succeeded=False, error=exc.message))
                continue
            results.append(RowResult(index=index, succeeded=True, row_id=row_id))
        return results

    def count_rows(self, source: DataSource) -> int:
        table = self.ensure_schema(source)
        return int(self.session.scalar(select(func.count()).select_from(table)) or 0)

    def fetch_rows(self, source: DataSource, limit: int = 100) -> list[dict[str, Any]]:
        table = self.ensure_schema(source)
        statement = table.select().order_by(table.c._id).limit(limit)
        return [dict(row._mapping) for row in self.session.execute(statement)]


def rows_from_payloads(config: Mapping[str, Any], payloads: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Map payload properties onto column names using each column's ``property_name``."""
    columns = config.get("columns") or []
    rows = []
    for payload in payloads:
        row = {}
        for column in columns:
            source_key = column.get("property_name") or column["column_name"]
            row[column["column_name"]] = payload.get(source_key) if isinstance(payload, Mapping) else None
        rows.append(row)
    return rows
