from datetime import datetime, timezone

import pytest

from graph_ingest.importer.transform.conversion import (
    ValueConversionError,
    convert_value,
    json_ready,
    parse_datetime,
    translate_date_format,
)


def test_translate_date_format_tokens():
    assert translate_date_format("YYYY-MM-DD HH24:MI:SS") == "%Y-%m-%d %H:%M:%S"
    assert translate_date_format("DD/MM/YY") == "%d/%m/%y"


def test_parse_datetime_with_explicit_format_is_utc_aware():
    parsed = parse_datetime("31/12/2023 23:15", "DD/MM/YYYY HH24:MI")

    assert parsed == datetime(2023, 12, 31, 23, 15, tzinfo=timezone.utc)


def test_parse_datetime_iso_and_epoch():
    assert parse_datetime("2024-01-02T03:04:05Z") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert parse_datetime(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    with pytest.raises(ValueConversionError):
        parse_datetime("31/12/2023", "YYYY-MM-DD")


@pytest.mark.parametrize(
    ("value", "data_type", "expected"),
    [
        ("42", "number", 42),
        ("42.0", "number", 42),
        (7, "integer", 7),
        ("1.5", "float", 1.5),
        ("yes", "boolean", True),
        ("off", "boolean", False),
        (12, "string", "12"),
        ({"a": 1}, "string", '{"a": 1}'),
        ("a, b", "list", ["a", "b"]),
        ('["x", 1]', "list", ["x", 1]),
    ],
)
def test_convert_value(value, data_type, expected):
    assert convert_value(value, data_type) == expected


@pytest.mark.parametrize(
    ("value", "data_type"),
    [("4.2", "number"), ("abc", "float"), ("maybe", "boolean"), (True, "number"), ("x", "mystery")],
)
def test_convert_value_rejects_bad_input(value, data_type):
    with pytest.raises(ValueConversionError):
        convert_value(value, data_type)


def test_enumeration_checks_options():
    assert convert_value("red", "enumeration", options=["red", "green"]) == "red"
    with pytest.raises(ValueConversionError):
        convert_value("blue", "enumeration", options=["red", "green"])


def test_json_ready_serializes_dates():
    stamp = datetime(2024, 5, 1, tzinfo=timezone.utc)

    assert json_ready({"when": stamp, "list": [stamp]}) == {
        "when": "2024-05-01T00:00:00+00:00",
        "list": ["2024-05-01T00:00:00+00:00"],
    }


@pytest.mark.parametrize(
    ("value", "data_type"),
    [
        ("Infinity", "number"),
        ("-inf", "number"),
        ("NaN", "number"),
        ("nan", "float"),
        ("inf", "float"),
        (float("inf"), "float"),
        ("1e400", "float"),
        (1e20, "date"),
        (float("nan"), "date"),
    ],
)
def test_non_finite_and_out_of_range_values_raise_conversion_errors(value, data_type):
    with pytest.raises(ValueConversionError):
        convert_value(value, data_type)


def test_epoch_outside_platform_range_is_a_conversion_error():
    with pytest.raises(ValueConversionError, match="not a valid timestamp"):
        parse_datetime(1e20)
