"""The compatible schema: known k6 tags get dedicated typed columns."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .helpers import (
    TIMESTAMP_PRECISION,
    escape_identifier,
    get_and_delete,
    get_and_delete_with_default,
    is_valid_identifier,
    map_metric_type,
    safe_unix_to_uint32,
)
from .model import Sample, SampleConverter, SchemaCreator, SchemaImplementation
from .registry import register_schema

_IDENTIFIER_RULE = "must be alphanumeric + underscore, max 63 chars"
_DIGITS_RE = re.compile(r"[0-9]+")


class ConversionError(ValueError):
    """Raised when a sample's tags cannot be converted to typed columns."""


def _check_identifiers(database: str, table: str) -> None:
    if not is_valid_identifier(database):
        raise ValueError(f"invalid database name: {database} ({_IDENTIFIER_RULE})")
    if not is_valid_identifier(table):
        raise ValueError(f"invalid table name: {table} ({_IDENTIFIER_RULE})")


def _parse_uint(text: str, bits: int, tag: str) -> int:
    if _DIGITS_RE.fullmatch(text) is None:
        raise ConversionError(f'failed to parse {tag}: invalid syntax "{text}"')
    value = int(text)
    if value > (1 << bits) - 1:
        raise ConversionError(f'failed to parse {tag}: value out of range "{text}"')
    return value


class CompatibleSchema(SchemaCreator):
    """MergeTree table with typed columns for common k6 tags and a map for the rest.

    Partitioned by month, ordered by (metric, testid, release, timestamp),
    with rows expiring after 365 days.
    """

    def create_schema(self, db: Any, database: str, table: str) -> None:
        """Create the database and table if they do not exist yet."""
        _check_identifiers(database, table)

        try:
            db.execute(f"CREATE DATABASE IF NOT EXISTS {escape_identifier(database)}")
        except Exception as err:
            raise RuntimeError(f"failed to create database: {err}") from err

        query = f"""
		CREATE TABLE IF NOT EXISTS {escape_identifier(database)}.{escape_identifier(table)} (
			timestamp         DateTime64({TIMESTAMP_PRECISION}, 'UTC') CODEC(DoubleDelta, ZSTD(1)),
			metric            LowCardinality(String),
			metric_type       Enum8('counter'=1, 'gauge'=2, 'rate'=3, 'trend'=4),
			value             Float64 CODEC(Gorilla, ZSTD(1)),
			testid            LowCardinality(String) DEFAULT '',
			release           LowCardinality(String) DEFAULT '',
			scenario          LowCardinality(String) DEFAULT '',
			build_id          UInt32 DEFAULT 0 CODEC(Delta, ZSTD(1)),
			version           LowCardinality(String) DEFAULT '',
			branch            LowCardinality(String) DEFAULT 'master',
			name              String DEFAULT '' CODEC(ZSTD(1)),
			method            LowCardinality(String) DEFAULT '',
			status            UInt16 DEFAULT 0,
			expected_response Bool DEFAULT true,
			error_code        LowCardinality(String) DEFAULT '',
			rating            LowCardinality(String) DEFAULT '',
			resource_type     LowCardinality(String) DEFAULT '',
			ui_feature        LowCardinality(String) DEFAULT '',
			check_name        String DEFAULT '' CODEC(ZSTD(1)),
			group_name        LowCardinality(String) DEFAULT '',
			extra_tags        Map(LowCardinality(String), String) DEFAULT map() CODEC(ZSTD(1))
		) ENGINE = MergeTree()
		PARTITION BY toYYYYMM(timestamp)
		ORDER BY (metric, testid, release, timestamp)
		TTL toDateTime(timestamp) + INTERVAL 365 DAY DELETE
		SETTINGS index_granularity = 8192
	"""
        try:
            db.execute(query)
        except Exception as err:
            raise RuntimeError(f"failed to create table: {err}") from err

    def insert_query(self, database: str, table: str) -> str:
        """Return the INSERT statement for the 21 columns."""
        placeholders = ", ".join("?" * 21)
        return f"""
		INSERT INTO {escape_identifier(database)}.{escape_identifier(table)} (
			timestamp, metric, metric_type, value,
			testid, release, scenario, build_id, version, branch,
			name, method, status, expected_response, error_code,
			rating, resource_type, ui_feature, check_name, group_name,
			extra_tags
		) VALUES ({placeholders})
	"""


@dataclass
class CompatibleSample:
    """A sample laid out for the compatible schema."""

    timestamp: datetime
    metric: str
    metric_type: int
    value: float
    build_id: int = 0
    release: str = ""
    version: str = ""
    branch: str = "master"
    test_id: str = "default"
    ui_feature: str = ""
    scenario: str = ""
    name: str = ""
    method: str = ""
    status: int = 0
    expected_response: bool = True
    error_code: str = ""
    rating: str = ""
    resource_type: str = ""
    check_name: str = ""
    group_name: str = ""
    extra_tags: dict[str, str] = field(default_factory=dict)


def convert_to_compatible(sample: Sample, default_build_id: int) -> CompatibleSample:
    """Lay out ``sample`` for the compatible schema.

    Known tags move into their columns; the rest end up in ``extra_tags``.
    Raises ConversionError when buildId or status is not a valid number.
    """
    cs = CompatibleSample(
        timestamp=sample.time,
        metric=sample.metric.name,
        metric_type=map_metric_type(sample.metric.type),
        value=sample.value,
    )

    if sample.tags is None:
        cs.build_id = default_build_id
        return cs

    tags = dict(sample.tags)

    test_id = get_and_delete(tags, "testid")
    if test_id is None:
        test_id = get_and_delete(tags, "test_run_id")
    cs.test_id = test_id if test_id is not None else "default"

    build_id = get_and_delete(tags, "buildId")
    if build_id is not None:
        cs.build_id = _parse_uint(build_id, 32, "buildId")
    if cs.build_id == 0:
        cs.build_id = default_build_id

    cs.release = get_and_delete_with_default(tags, "release", "")
    cs.version = get_and_delete_with_default(tags, "version", "")
    cs.branch = get_and_delete_with_default(tags, "branch", "master")

    ui_feature = get_and_delete(tags, "ui_feature")
    if ui_feature is None:
        ui_feature = get_and_delete_with_default(tags, "uiFeature", "")
    cs.ui_feature = ui_feature

    cs.scenario = get_and_delete_with_default(tags, "scenario", "")
    cs.name = get_and_delete_with_default(tags, "name", "")
    cs.method = get_and_delete_with_default(tags, "method", "")
    cs.error_code = get_and_delete_with_default(tags, "error_code", "")
    cs.rating = get_and_delete_with_default(tags, "rating", "")
    cs.resource_type = get_and_delete_with_default(tags, "resource_type", "")

    check_name = get_and_delete(tags, "check")
    if check_name is None:
        check_name = get_and_delete_with_default(tags, "check_name", "")
    cs.check_name = check_name

    group_name = get_and_delete(tags, "group_name")
    if group_name is None:
        group_name = get_and_delete_with_default(tags, "group", "")
    cs.group_name = group_name

    status = get_and_delete(tags, "status")
    if status is not None:
        cs.status = _parse_uint(status, 16, "status")

    expected = get_and_delete(tags, "expected_response")
    if expected is not None:
        cs.expected_response = expected == "true"

    cs.extra_tags = tags
    return cs


class CompatibleConverter(SampleConverter):
    """Extracts known k6 tags into dedicated columns with type conversion."""

    def __init__(self, default_build_id: int | None = None) -> None:
        """Use ``default_build_id`` for samples without one; None means the current Unix time."""
        if default_build_id is None:
            default_build_id = safe_unix_to_uint32(int(time.time()))
        self.default_build_id = default_build_id

    def convert(self, sample: Sample) -> list[Any]:
        """Return the 21-column row in INSERT order."""
        cs = convert_to_compatible(sample, self.default_build_id)
        return [
            cs.timestamp,
            cs.metric,
            cs.metric_type,
            cs.value,
            cs.test_id,
            cs.release,
            cs.scenario,
            cs.build_id,
            cs.version,
            cs.branch,
            cs.name,
            cs.method,
            cs.status,
            cs.expected_response,
            cs.error_code,
            cs.rating,
            cs.resource_type,
            cs.ui_feature,
            cs.check_name,
            cs.group_name,
            cs.extra_tags,
        ]

    def release(self, row: list[Any]) -> None:
        """Drop the row's references once it has been written."""
        row.clear()


COMPATIBLE_SCHEMA = SchemaImplementation(
    name="compatible",
    schema=CompatibleSchema(),
    converter=CompatibleConverter(),
)

register_schema(COMPATIBLE_SCHEMA)