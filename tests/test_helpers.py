import pytest

from k6clickhouse.helpers import (
    escape_identifier,
    get_and_delete,
    get_and_delete_with_default,
    is_valid_identifier,
    map_metric_type,
    safe_unix_to_uint32,
)
from k6clickhouse.model import MetricType


@pytest.mark.parametrize(
    "metric_type, code",
    [
        (MetricType.COUNTER, 1),
        (MetricType.GAUGE, 2),
        (MetricType.RATE, 3),
        (MetricType.TREND, 4),
    ],
)
def test_map_metric_type(metric_type, code):
    assert map_metric_type(metric_type) == code


def test_map_metric_type_unknown_defaults_to_trend():
    assert map_metric_type("something") == map_metric_type(MetricType.TREND)


def test_get_and_delete_present_and_absent():
    tags = {"method": "GET", "status": "200"}
    assert get_and_delete(tags, "method") == "GET"
    assert "method" not in tags
    assert get_and_delete(tags, "method") is None
    assert tags == {"status": "200"}


def test_get_and_delete_keeps_empty_value():
    tags = {"release": ""}
    assert get_and_delete(tags, "release") == ""
    assert tags == {}


def test_get_and_delete_with_default():
    tags = {"branch": "main"}
    assert get_and_delete_with_default(tags, "branch", "master") == "main"
    assert tags == {}
    assert get_and_delete_with_default(tags, "branch", "master") == "master"


def test_safe_unix_to_uint32_clamps():
    assert safe_unix_to_uint32(-5) == 0
    assert safe_unix_to_uint32(4294967295) == 4294967295
    assert safe_unix_to_uint32(4294967295 + 10) == 4294967295
    assert safe_unix_to_uint32(12345) == 12345


@pytest.mark.parametrize(
    "name, expected",
    [
        ("k6", True),
        ("samples", True),
        ("a" * 63, True),
        ("a" * 64, False),
        ("", False),
        ("k6'; DROP TABLE samples; --", False),
        ("samples'; DROP DATABASE k6; --", False),
        ("k6\n", False),
    ],
)
def test_is_valid_identifier(name, expected):
    assert is_valid_identifier(name) is expected


def test_escape_identifier_wraps_in_backticks():
    assert escape_identifier("k6") == "`k6`"
    assert escape_identifier("samples") == "`samples`"


def test_escape_identifier_escapes_backtick():
    escaped = escape_identifier("a`b")
    assert escaped.startswith("`") and escaped.endswith("`")
    assert "\\`" in escaped