"""Value conversion for extracted keys."""

from __future__ import annotations

import enum
import json
import math
import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence

_FORMAT_TOKENS = {
    "YYYY": "%Y",
    "YY": "%y",
    "MM": "%m",
    "DD": "%d",
    "HH24": "%H",
    "HH12": "%I",
    "HH": "%H",
    "MI": "%M",
    "SS": "%S",
    "MS": "%f",
    "US": "%f",
    "AM": "%p",
    "PM": "%p",
    "TZ": "%z",
}
_FORMAT_RE = re.compile("|".join(sorted(_FORMAT_TOKENS, key=len, reverse=True)))
_TRUE = {"true", "t", "yes", "y", "1", "on"}
_FALSE = {"false", "f", "no", "n", "0", "off"}


class DataType(str, enum.Enum):
    NUMBER = "number"
    FLOAT = "float"
    BOOLEAN = "boolean"
    STRING = "string"
    DATE = "date"
    LIST = "list"
    ENUMERATION = "enumeration"

    @classmethod
    def parse(cls, value: str | None) -> "DataType":
        text = (value or cls.STRING.value).strip().lower()
        aliases = {"integer": cls.NUMBER, "int": cls.NUMBER, "number64": cls.NUMBER, "bool": cls.BOOLEAN}
        if text in aliases:
            return aliases[text]
        return cls(text)


class ValueConversionError(ValueError):
    pass


def translate_date_format(format_string: str) -> str:
    """Translate ``YYYY-MM-DD HH24:MI:SS`` style patterns into strptime directives."""
    escaped = format_string.replace("%", "%%")
    return _FORMAT_RE.sub(lambda match: _FORMAT_TOKENS[match.group(0)], escaped)


def parse_datetime(value: Any, format_string: str | None = None) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise ValueConversionError(f"{value!r} is not a valid timestamp") from exc
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            if format_string:
                parsed = datetime.strptime(text, translate_date_format(format_string))
            else:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueConversionError(str(exc)) from exc
    else:
        raise ValueConversionError(f"cannot interpret {value!r} as a date")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_number(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueConversionError("booleans are not numbers")
    if isinstance(value, int):
        return value
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueConversionError(f"{value!r} is not a number") from exc
    if not number.is_finite():
        raise ValueConversionError(f"{value!r} is not a finite number")
    if number != number.to_integral_value():
        raise ValueConversionError(f"{value!r} is not an integer")
    return int(number)


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueConversionError("booleans are not numbers")
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise ValueConversionError(f"{value!r} is not a float") from exc
    if not math.isfinite(number):
        raise ValueConversionError(f"{value!r} is not a finite number")
    return number


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueConversionError(f"{value!r} is not a boolean")


def _to_string(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _to_list(value: Any) -> list:
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError as exc:
                raise ValueConversionError(f"{value!r} is not a list") from exc
            if isinstance(parsed, list):
                return parsed
        return [item.strip() for item in text.split(",") if item.strip()]
    return [value]


def convert_value(
    value: Any,
    data_type: str | None,
    *,
    format_string: str | None = None,
    options: Sequence[Any] | None = None,
) -> Any:
    """
    Convert ``value`` to ``data_type``.

    Dates come back as timezone-aware ``datetime`` objects; callers that store
    JSON properties serialise them with :func:`json_ready`.
    """
    try:
        kind = DataType.parse(data_type)
    except ValueError as exc:
        raise ValueConversionError(f"unknown data type '{data_type}'") from exc
    try:
        return _convert(kind, value, format_string, options)
    except ValueConversionError:
        raise
    except (ArithmeticError, TypeError, ValueError) as exc:
        raise ValueConversionError(f"cannot convert {value!r} to {kind.value}: {exc}") from exc


def _convert(kind: DataType, value: Any, format_string: str | None, options: Sequence[Any] | None) -> Any:
    if kind is DataType.NUMBER:
        return _to_number(value)
    if kind is DataType.FLOAT:
        return _to_float(value)
    if kind is DataType.BOOLEAN:
        return _to_boolean(value)
    if kind is DataType.DATE:
        return parse_datetime(value, format_string)
    if kind is DataType.LIST:
        return _to_list(value)
    if kind is DataType.ENUMERATION:
        text = _to_string(value)
        if options and text not in [str(option) for option in options]:
            raise ValueConversionError(f"{text!r} is not one of {list(options)!r}")
        return text
    return _to_string(value)


def json_ready(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: json_ready(item) for key, item in value.items()}
    if isinstance(value, list):
        return [json_ready(item) for item in value]
    return value
