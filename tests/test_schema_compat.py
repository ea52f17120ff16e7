import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from k6clickhouse.model import Metric, MetricType, Sample
from k6clickhouse.registry import get_schema
from k6clickhouse.schema_compat import (
    CompatibleConverter,
    CompatibleSample,
    CompatibleSchema,
    ConversionError,
    convert_to_compatible,
)


class RecordingDB:
    def __init__(self, fail_on=None):
        self.queries = []
        self.fail_on = fail_on

    def execute(self, query):
        if self.fail_on is not None and self.fail_on in query:
            raise OSError("syntax error")
        self.queries.append(query)


NOW = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


def make_sample(tags, name="http_reqs", metric_type=MetricType.COUNTER, value=1.0):
    return Sample(Metric(name, metric_type), value, NOW, tags)


@pytest.mark.parametrize(
    "database,table,message",
    [
        ("k6'; DROP TABLE samples; --", "samples", "invalid database name"),
        ("k6", "samples'; DROP DATABASE k6; --", "invalid table name"),
        ("", "samples", "invalid database name"),
        ("k6", "", "invalid table name"),
    ],
)
def test_create_schema_rejects_invalid_identifiers(database, table, message):
    db = RecordingDB()
    with pytest.raises(ValueError, match=message):
        CompatibleSchema().create_schema(db, database, table)
    assert db.queries == []


def test_create_schema_executes_database_then_table():
    db = RecordingDB()
    CompatibleSchema().create_schema(db, "k6", "samples")
    assert db.queries[0] == "CREATE DATABASE IF NOT EXISTS `k6`"
    table_query = db.queries[1]
    assert "CREATE TABLE IF NOT EXISTS `k6`.`samples`" in table_query
    assert "DateTime64(3, 'UTC')" in table_query
    assert "ORDER BY (metric, testid, release, timestamp)" in table_query
    assert "INTERVAL 365 DAY DELETE" in table_query


def test_create_schema_wraps_table_error():
    db = RecordingDB(fail_on="CREATE TABLE")
    with pytest.raises(RuntimeError, match="failed to create table") as info:
        CompatibleSchema().create_schema(db, "k6", "samples")
    assert isinstance(info.value.__cause__, OSError)


def test_create_schema_wraps_database_error():
    db = RecordingDB(fail_on="CREATE DATABASE")
    with pytest.raises(RuntimeError, match="failed to create database"):
        CompatibleSchema().create_schema(db, "k6", "samples")


@pytest.mark.parametrize(
    "database,table", [("k6", "samples"), ("production", "metrics")]
)
def test_insert_query(database, table):
    query = CompatibleSchema().insert_query(database, table)
    assert "INSERT INTO" in query
    assert f"`{database}`.`{table}`" in query
    for column in (
        "timestamp", "metric", "metric_type", "value", "testid",
        "release", "scenario", "build_id", "extra_tags",
    ):
        assert column in query
    assert query.count("?") == 21


def test_convert_valid_sample():
    cs = convert_to_compatible(make_sample({"buildId": "123", "status": "200"}), 12345)
    assert cs.build_id == 123
    assert cs.status == 200


def test_convert_invalid_build_id():
    with pytest.raises(ConversionError, match="failed to parse buildId"):
        convert_to_compatible(make_sample({"buildId": "invalid"}), 12345)


def test_convert_invalid_status():
    with pytest.raises(ConversionError, match="failed to parse status"):
        convert_to_compatible(make_sample({"status": "invalid"}), 12345)


@pytest.mark.parametrize("text", ["4294967296", "-1", "+5", " 7"])
def test_convert_build_id_out_of_range_or_malformed(text):
    with pytest.raises(ConversionError, match="failed to parse buildId"):
        convert_to_compatible(make_sample({"buildId": text}), 12345)


def test_convert_status_out_of_range():
    with pytest.raises(ConversionError, match="failed to parse status"):
        convert_to_compatible(make_sample({"status": "65536"}), 12345)


def test_no_tags_uses_defaults():
    cs = convert_to_compatible(make_sample(None), 12345)
    assert cs == CompatibleSample(
        timestamp=NOW, metric="http_reqs", metric_type=1, value=1.0, build_id=12345
    )
    assert cs.test_id == "default"
    assert cs.branch == "master"
    assert cs.expected_response is True


def test_empty_tags_use_defaults():
    cs = convert_to_compatible(make_sample({}), 999)
    assert cs.test_id == "default"
    assert cs.build_id == 999
    assert cs.branch == "master"
    assert cs.extra_tags == {}


def test_zero_build_id_falls_back_to_default():
    cs = convert_to_compatible(make_sample({"buildId": "0"}), 12345)
    assert cs.build_id == 12345


def test_test_run_id_alias():
    cs = convert_to_compatible(make_sample({"test_run_id": "run-123"}), 12345)
    assert cs.test_id == "run-123"


def test_testid_takes_precedence_over_test_run_id():
    cs = convert_to_compatible(
        make_sample({"testid": "a", "test_run_id": "b"}), 12345
    )
    assert cs.test_id == "a"
    assert cs.extra_tags == {"test_run_id": "b"}


def test_expected_response_false():
    cs = convert_to_compatible(make_sample({"expected_response": "false"}), 12345)
    assert cs.expected_response is False


def test_extra_tags_preserved():
    cs = convert_to_compatible(
        make_sample({"custom1": "value1", "custom2": "value2"}), 12345
    )
    assert cs.extra_tags == {"custom1": "value1", "custom2": "value2"}


def test_ui_feature_camel_case_alias():
    cs = convert_to_compatible(
        make_sample({"uiFeature": "jobs"}, "browser_web_vital_fcp", MetricType.GAUGE),
        12345,
    )
    assert cs.ui_feature == "jobs"
    assert "uiFeature" not in cs.extra_tags
    assert cs.metric_type == 2


def test_ui_feature_snake_case_takes_precedence():
    cs = convert_to_compatible(
        make_sample({"ui_feature": "snake", "uiFeature": "camel"}), 12345
    )
    assert cs.ui_feature == "snake"
    assert cs.extra_tags["uiFeature"] == "camel"


def test_check_tag_mapped_to_check_name():
    cs = convert_to_compatible(
        make_sample({"check": "my check name"}, "checks", MetricType.RATE), 12345
    )
    assert cs.check_name == "my check name"
    assert "check" not in cs.extra_tags
    assert cs.metric_type == 3


def test_check_name_alias_fallback():
    cs = convert_to_compatible(make_sample({"check_name": "fallback check"}), 12345)
    assert cs.check_name == "fallback check"
    assert "check_name" not in cs.extra_tags


def test_group_alias():
    cs = convert_to_compatible(make_sample({"group": "::login"}), 12345)
    assert cs.group_name == "::login"
    assert cs.extra_tags == {}


def test_build_id_max_uint32():
    cs = convert_to_compatible(make_sample({"buildId": "4294967295"}), 12345)
    assert cs.build_id == 4294967295


def test_string_columns_extracted():
    tags = {
        "release": "r1",
        "version": "v2",
        "branch": "main",
        "scenario": "smoke",
        "name": "https://example.com/",
        "method": "POST",
        "error_code": "1000",
        "rating": "good",
        "resource_type": "script",
    }
    cs = convert_to_compatible(make_sample(tags), 12345)
    assert (cs.release, cs.version, cs.branch, cs.scenario) == ("r1", "v2", "main", "smoke")
    assert (cs.name, cs.method, cs.error_code) == ("https://example.com/", "POST", "1000")
    assert (cs.rating, cs.resource_type) == ("good", "script")
    assert cs.extra_tags == {}


def test_sample_tags_not_mutated():
    tags = {"testid": "t", "custom": "c"}
    convert_to_compatible(make_sample(tags), 12345)
    assert tags == {"testid": "t", "custom": "c"}


def test_converter_row_format():
    tags = {"method": "GET", "status": "200", "testid": "test-123", "buildId": "456"}
    row = CompatibleConverter(0).convert(make_sample(tags))
    assert len(row) == 21
    assert row[0] == NOW
    assert row[1] == "http_reqs"
    assert row[2] == 1
    assert row[3] == 1.0
    assert row[4] == "test-123"
    assert row[7] == 456
    assert row[9] == "master"
    assert row[11] == "GET"
    assert row[12] == 200
    assert row[13] is True
    assert row[20] == {}


def test_converter_error_raises():
    with pytest.raises(ConversionError):
        CompatibleConverter(0).convert(make_sample({"buildId": "invalid"}))


def test_converter_default_build_id_is_current_time():
    before = int(time.time())
    converter = CompatibleConverter()
    after = int(time.time())
    assert before <= converter.default_build_id <= after
    row = converter.convert(make_sample(None))
    assert row[7] == converter.default_build_id


def test_converter_release_empties_row():
    converter = CompatibleConverter(1)
    row = converter.convert(make_sample({"a": "b"}))
    converter.release(row)
    assert row == []


def test_compatible_schema_is_registered():
    impl = get_schema("compatible")
    assert impl.name == "compatible"
    assert isinstance(impl.schema, CompatibleSchema)
    assert isinstance(impl.converter, CompatibleConverter)


def test_concurrent_convert_to_compatible():
    def work(ident):
        sample = make_sample({"testid": "test-123", "status": "200"}, value=float(ident))
        return [convert_to_compatible(sample, 12345) for _ in range(100)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(work, range(50)))

    for ident, batch in enumerate(results):
        assert len(batch) == 100
        assert all(cs.metric == "http_reqs" for cs in batch)
        assert all(cs.status == 200 and cs.value == float(ident) for cs in batch)
        assert all(cs.extra_tags == {} for cs in batch)