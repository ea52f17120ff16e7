"""Small helpers shared by the schema implementations."""

from __future__ import annotations

import re
from typing import MutableMapping

from .model import MetricType

#: Precision of the DateTime64 timestamp column (3 = milliseconds).
TIMESTAMP_PRECISION = 3

_MAX_UINT32 = 2**32 - 1

_IDENTIFIER_RE = re.compile(r"[a-zA-Z0-9_]{1,63}")

_METRIC_TYPE_CODES = {
    MetricType.COUNTER: 1,
    MetricType.GAUGE: 2,
    MetricType.RATE: 3,
    MetricType.TREND: 4,
}


def map_metric_type(metric_type: MetricType) -> int:
    """Return the Enum8 code of a metric type; unknown types count as trend."""
    return _METRIC_TYPE_CODES.get(metric_type, 4)


def get_and_delete(mapping: MutableMapping[str, str], key: str) -> str | None:
    """Remove ``key`` and return its value, or None if it was absent."""
    return mapping.pop(key, None)


def get_and_delete_with_default(
    mapping: MutableMapping[str, str], key: str, default: str
) -> str:
    """Remove ``key`` and return its value, or ``default`` if it was absent."""
    return mapping.pop(key, default)


def safe_unix_to_uint32(unix: int) -> int:
    """Clamp a Unix timestamp into the UInt32 range."""
    return min(max(unix, 0), _MAX_UINT32)


def is_valid_identifier(name: str) -> bool:
    """Tell whether ``name`` is 1-63 ASCII letters, digits or underscores."""
    return _IDENTIFIER_RE.fullmatch(name) is not None


def escape_identifier(name: str) -> str:
    """Quote an identifier with backticks, escaping any backtick inside."""
    return "`" + name.replace("`", "\\`") + "`"