"""Metric samples and the extension points that turn them into table rows."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence, runtime_checkable


class MetricType(enum.Enum):
    """Kind of a k6 metric."""

    COUNTER = "counter"
    GAUGE = "gauge"
    RATE = "rate"
    TREND = "trend"


@dataclass(frozen=True)
class Metric:
    """A named metric of a given type."""

    name: str
    type: MetricType


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Sample:
    """One measured value of a metric, with its tags."""

    metric: Metric
    value: float
    time: datetime = field(default_factory=_utc_now)
    tags: dict[str, str] | None = None


@runtime_checkable
class SampleContainer(Protocol):
    """Anything that can hand out a sequence of samples."""

    def get_samples(self) -> Sequence[Sample]:
        ...


class Samples(list):
    """A plain list of samples that acts as a sample container."""

    def get_samples(self) -> list[Sample]:
        """Return the samples as a new list."""
        return list(self)


class SchemaCreator(ABC):
    """Creates the database and table for one schema and builds its INSERT query.

    The ``db`` handed to :meth:`create_schema` is any object with an
    ``execute(query)`` method.
    """

    @abstractmethod
    def create_schema(self, db: Any, database: str, table: str) -> None:
        """Create the database and table; safe to call more than once."""

    @abstractmethod
    def insert_query(self, database: str, table: str) -> str:
        """Return the INSERT statement, with ``?`` placeholders for values."""


class SampleConverter(ABC):
    """Turns a sample into a row matching the column order of the INSERT query."""

    @abstractmethod
    def convert(self, sample: Sample) -> list[Any]:
        """Return the row for ``sample``; raise if it cannot be converted."""

    def release(self, row: list[Any]) -> None:
        """Hand back resources held by ``row`` once it has been written."""


@dataclass(frozen=True)
class SchemaImplementation:
    """A schema creator bundled with the converter that feeds it."""

    name: str
    schema: SchemaCreator
    converter: SampleConverter