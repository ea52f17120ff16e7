# k6clickhouse

Write k6 metric samples to ClickHouse.

`k6clickhouse` collects metric samples as a load test produces them, flushes
them to a ClickHouse table at a fixed interval, and keeps the data flowing
through short outages:

- **Retries with exponential backoff** for transient failures: network errors
  (`ConnectionError`, `TimeoutError`, name-resolution errors), `EOFError`, and
  errors whose message mentions a refused or reset connection, an i/o timeout,
  an unknown host, an unreachable network or a broken pipe.
- **A failover buffer** that holds samples while ClickHouse is unreachable and
  sends them again on the next flush. When the buffer is full it drops either
  the oldest or the newest samples, as configured.
- **No duplicate inserts on ambiguous commits**: if a commit fails, the server
  may already have stored the data, so the batch is neither retried nor
  buffered (`CommitError`).
- **Pluggable schemas**: a `simple` schema that keeps every tag in one
  `Map(String, String)` column, and a `compatible` schema that pulls well-known
  k6 tags into their own typed columns.

The package has no dependencies outside the standard library.

## What this package does not do

It contains no ClickHouse client and opens no network connection itself. You
pass a `connect` callable that makes the connection (for example with a
ClickHouse driver of your choice); see *Connecting* below. There is no
command-line program: the output is used from Python code.

## Using the output

```python
from k6clickhouse.config import Params
from k6clickhouse.model import Metric, MetricType, Sample, Samples
from k6clickhouse.output import new_output

params = Params(config_argument="localhost:9000?database=k6&table=samples")
output = new_output(params, connect)   # connect is described below

output.start()

reqs = Metric("http_reqs", MetricType.COUNTER)
output.add_metric_samples([Samples([Sample(reqs, 1.0, tags={"method": "GET"})])])
...
output.stop()                          # final flush, then drains the buffer

print(output.description())            # "clickhouse (localhost:9000)"
print(output.error_metrics())
```

- `new_output(params, connect=None)` parses and validates the configuration
  (raising `ConfigError` if it is wrong) and returns a `ClickHouseOutput`.
  `ClickHouseOutput(config, connect)` can also be built directly from a
  `Config`.
- `start()` builds the TLS context, connects and pings the server, creates the
  database and table unless schema creation is skipped, sets up the failover
  buffer and starts a `PeriodicFlusher` that calls `flush()` every push
  interval. It raises `RuntimeError` if no `connect` was given, if the
  connection or ping fails, or if the output is already closed.
- `add_metric_samples(containers)` queues sample containers;
  `get_buffered_samples()` takes them out again.
- `flush()` writes queued samples together with any held in the failover
  buffer, in one transaction, with retries. If a flush is already running, the
  call returns at once.
- `stop()` runs a last flush, waits for running flushes, tries once more to
  write whatever is in the failover buffer (giving up after 30 seconds) and
  closes the connection. It is safe to call more than once, and without
  `start()`. The `closed` property tells whether it has run.
- `error_metrics()` returns an `ErrorMetrics` record of cumulative counters:
  `convert_errors`, `insert_errors`, `samples_processed`, `retry_attempts`,
  `flush_failures`, `buffered_samples` (currently in the failover buffer) and
  `dropped_samples`.

A sample whose tags cannot be converted is counted in `convert_errors` and
skipped; the rest of the batch is still written. A failed insert aborts and
rolls back the whole batch.

`EXTENSION_NAME` in `k6clickhouse.output` holds the name the test runner knows
this output by, `"xk6-clickhouse"`.

### Connecting

`connect` is called as `connect(config, ssl_context)`, where `ssl_context` is
an `ssl.SSLContext` or `None` when TLS is off. It must return a connection
with:

- `ping()`, `execute(query)`, `begin()` and `close()`;
- `begin()` returns a transaction with `prepare(query)`, `commit()` and
  `rollback()`;
- `prepare(query)` returns a statement with `execute(*row)` and `close()`.

Queries use `?` placeholders and fully qualified `` `database`.`table` ``
names, so the connection needs no default database.

## Configuration

Settings are read from four sources. A later source in this list overrides an
earlier one:

1. built-in defaults (`new_config()`, or `Config()`),
2. JSON options (`Params.json_config`, bytes or text),
3. the output argument, `host:port?param=value&...` (`Params.config_argument`),
4. `K6_CLICKHOUSE_*` environment variables.

`parse_config(params, environ=None)` merges them and validates the result,
raising `ConfigError` when something is wrong. `environ` defaults to
`os.environ`. An output argument that cannot be parsed as a URL is ignored.
`Config.validate()` checks a configuration on its own.

| Setting              | JSON key             | Environment variable                     | Default          |
|----------------------|----------------------|------------------------------------------|------------------|
| Address              | `addr`               | `K6_CLICKHOUSE_ADDR`                     | `localhost:9000` |
| User                 | `user`               | `K6_CLICKHOUSE_USER`                     | `default`        |
| Password             | `password`           | `K6_CLICKHOUSE_PASSWORD`                 | empty            |
| Database             | `database`           | `K6_CLICKHOUSE_DB`                       | `k6`             |
| Table                | `table`              | `K6_CLICKHOUSE_TABLE`                    | `samples`        |
| Push interval        | `pushInterval`       | —                                        | `1s`             |
| Schema mode          | `schemaMode`         | `K6_CLICKHOUSE_SCHEMA_MODE`              | `simple`         |
| Skip schema creation | `skipSchemaCreation` | `K6_CLICKHOUSE_SKIP_SCHEMA_CREATION`     | `false`          |
| Retry attempts       | `retryAttempts`      | `K6_CLICKHOUSE_RETRY_ATTEMPTS`           | `3`              |
| Retry delay          | `retryDelay`         | `K6_CLICKHOUSE_RETRY_DELAY`              | `100ms`          |
| Retry max delay      | `retryMaxDelay`      | `K6_CLICKHOUSE_RETRY_MAX_DELAY`          | `5s`             |
| Buffer enabled       | `bufferEnabled`      | `K6_CLICKHOUSE_BUFFER_ENABLED`           | `true`           |
| Buffer max samples   | `bufferMaxSamples`   | `K6_CLICKHOUSE_BUFFER_MAX_SAMPLES`       | `10000`          |
| Buffer drop policy   | `bufferDropPolicy`   | `K6_CLICKHOUSE_BUFFER_DROP_POLICY`       | `oldest`         |

The output argument sets the address from its host (or, without `//`, from
its path) and takes `user`, `password`, `database`, `table`, `schemaMode` and
`skipSchemaCreation` as query parameters.

Durations are written the usual k6 way, for example `500ms`, `5s` or `1m30s`
(`parse_duration` turns them into `timedelta`). Boolean environment variables
and URL parameters accept `1`, `t`, `T`, `TRUE`, `true`, `True` and their false
counterparts (`parse_bool`); `skipSchemaCreation` is true only for `true`.
Database and table names must be 1–63 characters of letters, digits and
underscores. The push interval must be positive, the retry delay may not exceed
a positive maximum delay, and the buffer size must be positive while buffering
is on. Retry attempts count retries after the first try; `0` means no retries.

### TLS

| Setting              | JSON key (under `tls`) | URL parameter           | Environment variable                     |
|----------------------|------------------------|-------------------------|------------------------------------------|
| Enabled              | `enabled`              | `tlsEnabled`            | `K6_CLICKHOUSE_TLS_ENABLED`              |
| Skip verification    | `insecureSkipVerify`   | `tlsInsecureSkipVerify` | `K6_CLICKHOUSE_TLS_INSECURE_SKIP_VERIFY` |
| CA certificate file  | `caFile`               | `tlsCAFile`             | `K6_CLICKHOUSE_TLS_CA_FILE`              |
| Client certificate   | `certFile`             | `tlsCertFile`           | `K6_CLICKHOUSE_TLS_CERT_FILE`            |
| Client key           | `keyFile`              | `tlsKeyFile`            | `K6_CLICKHOUSE_TLS_KEY_FILE`             |
| Server name (SNI)    | `serverName`           | `tlsServerName`         | `K6_CLICKHOUSE_TLS_SERVER_NAME`          |

A client certificate and key must be given together, and every file named must
exist and be readable when TLS is enabled (`validate_file_readable`).
`TLSConfig.build_ssl_context()` returns an `ssl.SSLContext` that trusts the
system store plus the CA file, loads the client certificate if given, and skips
verification if asked to; it returns `None` when TLS is disabled and raises
`TLSConfigError` for unusable files. `server_name` is kept for your `connect`
to pass on as the SNI host name. Use port 9440 for secure connections; turning
off verification is meant for testing only.

## Schemas

Two schemas are registered when `k6clickhouse.config` (and so
`k6clickhouse.output`) is imported:

- **`simple`** (`SimpleSchema`, `SimpleConverter`): columns `timestamp`,
  `metric`, `value` and `tags`, partitioned by day. Every tag is stored as
  given.
- **`compatible`** (`CompatibleSchema`, `CompatibleConverter`): 21 columns,
  partitioned by month, rows kept for 365 days. Tags `testid` (or
  `test_run_id`), `buildId`, `release`, `version`, `branch`, `scenario`,
  `name`, `method`, `status`, `expected_response`, `error_code`, `rating`,
  `resource_type`, `ui_feature` (or `uiFeature`), `check` (or `check_name`) and
  `group_name` (or `group`) get their own columns; remaining tags go into
  `extra_tags`. A missing `testid` becomes `default`, a missing `branch`
  becomes `master`, and a missing or zero `buildId` takes the converter's
  default (the Unix time when it was created, unless given). A `buildId` or
  `status` that is not an unsigned number in range raises `ConversionError`.

To add a schema of your own, subclass `SchemaCreator` (`create_schema(db,
database, table)`, where `db` has `execute(query)`, and `insert_query(database,
table)`) and `SampleConverter` (`convert(sample)` returning a row, and
optionally `release(row)`), then register them:

```python
from k6clickhouse.model import SchemaImplementation
from k6clickhouse.registry import available_schemas, register_schema

register_schema(SchemaImplementation(
    name="custom",
    schema=MyCustomSchema(),
    converter=MyCustomConverter(),
))

print(available_schemas())  # ['compatible', 'custom', 'simple']
```

`get_schema(name)` raises `UnknownSchemaError` for a name that has not been
registered; `register_schema` raises `ValueError` for an empty name.

## Building blocks

These are used by the output and can be used on their own:

- `k6clickhouse.buffer.SampleBuffer(capacity, policy)`: a thread-safe bounded
  FIFO with `push(containers)` (returns how many were dropped), `pop_all()`,
  `len()`, `capacity`, `policy`, `dropped_count` and `reset()`. The policy is a
  `DropPolicy` (`OLDEST` or `NEWEST`); a capacity of 0 or less means 10000 and
  an unknown policy means `OLDEST`.
- `k6clickhouse.retry.retry_call(func, attempts, delay, max_delay,
  should_retry, on_retry, stop_event)`: calls `func` until it succeeds, with
  doubling delays capped by `max_delay`, stopping early when `stop_event` is
  set. `is_retryable_error(err)` is the default test; it looks through the
  chain of causes and never retries a `CommitError`.
- `k6clickhouse.model`: `Metric`, `MetricType`, `Sample`, `Samples` (a list
  that is also a sample container) and the `SampleContainer` protocol.
- `k6clickhouse.helpers`: `map_metric_type`, `is_valid_identifier`,
  `escape_identifier`, `safe_unix_to_uint32` and friends.