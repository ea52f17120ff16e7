"""The default schema: every tag goes into one Map(String, String) column."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .helpers import TIMESTAMP_PRECISION, escape_identifier, is_valid_identifier
from .model import Sample, SampleConverter, SchemaCreator, SchemaImplementation
from .registry import register_schema

_IDENTIFIER_RULE = "must be alphanumeric + underscore, max 63 chars"


def _check_identifiers(database: str, table: str) -> None:
    if not is_valid_identifier(database):
        raise ValueError(f"invalid database name: {database} ({_IDENTIFIER_RULE})")
    if not is_valid_identifier(table):
        raise ValueError(f"invalid table name: {table} ({_IDENTIFIER_RULE})")


class SimpleSchema(SchemaCreator):
    """Table of timestamp, metric, value and a map of all tags.

    Partitioned by day and ordered by (metric, timestamp).
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
			timestamp DateTime64({TIMESTAMP_PRECISION}),
			metric LowCardinality(String),
			value Float64,
			tags Map(String, String)
		) ENGINE = MergeTree()
		PARTITION BY toYYYYMMDD(timestamp)
		ORDER BY (metric, timestamp)
	"""
        try:
            db.execute(query)
        except Exception as err:
            raise RuntimeError(f"failed to create table: {err}") from err

    def insert_query(self, database: str, table: str) -> str:
        """Return the INSERT statement for the four columns."""
        return (
            f"INSERT INTO {escape_identifier(database)}.{escape_identifier(table)} "
            "(timestamp, metric, value, tags) VALUES (?, ?, ?, ?)"
        )


@dataclass
class SimpleSample:
    """A sample laid out for the simple schema."""

    timestamp: datetime
    metric: str
    value: float
    tags: dict[str, str] = field(default_factory=dict)


def convert_to_simple(sample: Sample) -> SimpleSample:
    """Lay out ``sample`` for the simple schema, copying its tags."""
    return SimpleSample(
        timestamp=sample.time,
        metric=sample.metric.name,
        value=sample.value,
        tags=dict(sample.tags or {}),
    )


class SimpleConverter(SampleConverter):
    """Stores all tags as they are in the tags map column."""

    def convert(self, sample: Sample) -> list[Any]:
        """Return the row [timestamp, metric, value, tags]."""
        ss = convert_to_simple(sample)
        return [ss.timestamp, ss.metric, ss.value, ss.tags]

    def release(self, row: list[Any]) -> None:
        """Drop the row's references once it has been written."""
        row.clear()


SIMPLE_SCHEMA = SchemaImplementation(
    name="simple",
    schema=SimpleSchema(),
    converter=SimpleConverter(),
)

register_schema(SIMPLE_SCHEMA)