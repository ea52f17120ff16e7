import dataclasses
from datetime import datetime, timezone

import pytest

from k6clickhouse.model import (
    Metric,
    MetricType,
    Sample,
    SampleContainer,
    SampleConverter,
    Samples,
    SchemaCreator,
    SchemaImplementation,
)


class _Schema(SchemaCreator):
    def create_schema(self, db, database, table):
        db.append((database, table))

    def insert_query(self, database, table):
        return f"INSERT INTO {database}.{table}"


class _Converter(SampleConverter):
    def convert(self, sample):
        return [sample.metric.name, sample.value]


def _sample(value):
    return Sample(Metric("http_reqs", MetricType.COUNTER), value)


def test_metric_type_values_match_schema_names():
    assert [t.value for t in MetricType] == ["counter", "gauge", "rate", "trend"]
    assert MetricType("trend") is MetricType.TREND


def test_samples_get_samples_preserves_order_and_copies():
    first, second = _sample(1.0), _sample(2.0)
    container = Samples([first, second])
    got = container.get_samples()
    assert got == [first, second]
    got.append(_sample(3.0))
    assert len(container) == 2


def test_empty_samples_is_a_sample_container_with_no_samples():
    container = Samples()
    assert isinstance(container, SampleContainer)
    assert container.get_samples() == []
    assert len(container) == 0


def test_sample_defaults():
    before = datetime.now(timezone.utc)
    sample = _sample(1.5)
    assert sample.tags is None
    assert sample.time >= before
    assert sample.time.tzinfo is not None and sample.value == 1.5


def test_abstract_bases_cannot_be_instantiated():
    with pytest.raises(TypeError):
        SchemaCreator()
    with pytest.raises(TypeError):
        SampleConverter()


def test_concrete_schema_and_converter():
    db = []
    schema = _Schema()
    schema.create_schema(db, "k6", "samples")
    assert db == [("k6", "samples")]
    assert schema.insert_query("k6", "samples") == "INSERT INTO k6.samples"
    converter = _Converter()
    row = converter.convert(_sample(4.0))
    assert row == ["http_reqs", 4.0]
    converter.release(row)
    assert row == ["http_reqs", 4.0]


def test_schema_implementation_is_frozen():
    impl = SchemaImplementation("simple", _Schema(), _Converter())
    assert impl.name == "simple"
    with pytest.raises(dataclasses.FrozenInstanceError):
        impl.name = "other"