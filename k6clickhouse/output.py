"""The ClickHouse output: collects k6 samples and writes them in periodic batches.

The output talks to ClickHouse through a connection made by a ``connect``
callable, called as ``connect(config, ssl_context)``. The connection it returns
must offer ``ping()``, ``execute(query)``, ``begin()`` and ``close()``.
``begin()`` returns a transaction with ``prepare(query)``, ``commit()`` and
``rollback()``. ``prepare()`` returns a statement with ``execute(*row)`` and
``close()``.
"""

from __future__ import annotations

import logging
import ssl
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Iterable, Protocol

from .buffer import SampleBuffer
from .config import Config, Params, parse_config
from .model import SampleContainer, SampleConverter, SchemaCreator
from .registry import UnknownSchemaError, get_schema
from .retry import CommitError, is_retryable_error, retry_call
from .tlsconfig import TLSConfigError

#: Name under which the test runner knows this output.
EXTENSION_NAME = "xk6-clickhouse"

_DRAIN_TIMEOUT = 30.0
_CANCEL_CHECK_EVERY = 1000

_logger = logging.getLogger(__name__)


class _Statement(Protocol):
    def execute(self, *args: Any) -> Any: ...

    def close(self) -> None: ...


class _Transaction(Protocol):
    def prepare(self, query: str) -> _Statement: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class _Connection(Protocol):
    def ping(self) -> None: ...

    def execute(self, query: str) -> Any: ...

    def begin(self) -> _Transaction: ...

    def close(self) -> None: ...


_Connector = Callable[[Config, "ssl.SSLContext | None"], _Connection]


class _Cancelled(RuntimeError):
    """The flush was abandoned because the output is shutting down."""


class _Counter:
    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def add(self, amount: int = 1) -> None:
        with self._lock:
            self._value += amount

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


@dataclass(frozen=True)
class ErrorMetrics:
    """Cumulative flush statistics since the output was created."""

    convert_errors: int = 0
    insert_errors: int = 0
    samples_processed: int = 0
    retry_attempts: int = 0
    flush_failures: int = 0
    buffered_samples: int = 0
    dropped_samples: int = 0


def _seconds(value: float | timedelta) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class PeriodicFlusher:
    """Calls ``callback`` every ``interval`` and once more when stopped."""

    def __init__(self, interval: float | timedelta, callback: Callable[[], Any]) -> None:
        seconds = _seconds(interval)
        if seconds <= 0:
            raise ValueError(f"flush interval must be positive, got {interval}")
        self._interval = seconds
        self._callback = callback
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name="clickhouse-flusher", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            self._callback()
        self._callback()

    def stop(self) -> None:
        """Stop the timer, run the final callback and wait for it to finish."""
        self._stop_event.set()
        if threading.current_thread() is not self._thread:
            self._thread.join()


class ClickHouseOutput:
    """Buffers k6 samples and flushes them to ClickHouse with retries.

    Samples that cannot be written are kept in a bounded failover buffer
    (when enabled) and retried on the next flush.
    """

    def __init__(self, config: Config, connect: _Connector | None = None) -> None:
        self.config = config
        self._connect = connect

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._inflight = 0
        self._closed = False
        self._flush_lock = threading.Lock()

        self._db: _Connection | None = None
        self._flusher: PeriodicFlusher | None = None
        self._insert_query = ""
        self._schema: SchemaCreator | None = None
        self._converter: SampleConverter | None = None
        self._shutdown: threading.Event | None = None
        self._failover: SampleBuffer | None = None

        self._pending: list[SampleContainer] = []
        self._pending_lock = threading.Lock()

        self._convert_errors = _Counter()
        self._insert_errors = _Counter()
        self._samples_processed = _Counter()
        self._retry_attempts = _Counter()
        self._flush_failures = _Counter()
        self._dropped_samples = _Counter()

    def description(self) -> str:
        """Return a human-readable description of the output."""
        return f"clickhouse ({self.config.addr})"

    @property
    def closed(self) -> bool:
        """Whether the output has been stopped."""
        with self._lock:
            return self._closed

    def start(self) -> None:
        """Connect, create the schema if asked to, and start periodic flushing."""
        cfg = self.config
        with self._lock:
            if self._closed:
                raise RuntimeError("output already closed")

            self._shutdown = threading.Event()
            _logger.debug("Starting ClickHouse output")

            try:
                ssl_context = cfg.tls.build_ssl_context()
            except TLSConfigError as err:
                raise RuntimeError(f"failed to build TLS config: {err}") from err

            if cfg.tls.enabled and ":9000" in cfg.addr:
                _logger.warning(
                    "TLS is enabled but using port 9000. "
                    "Consider using port 9440 for secure connections."
                )
            if cfg.tls.enabled:
                if cfg.tls.insecure_skip_verify:
                    _logger.warning(
                        "TLS enabled with InsecureSkipVerify=true. Certificate verification "
                        "is DISABLED. This is insecure and should only be used for testing."
                    )
                else:
                    _logger.debug("TLS enabled with certificate verification")
            else:
                _logger.debug("TLS disabled, using unencrypted connection")

            if self._connect is None:
                raise RuntimeError("no connection factory given to the clickhouse output")
            try:
                db = self._connect(cfg, ssl_context)
            except Exception as err:
                raise RuntimeError(f"failed to connect to clickhouse: {err}") from err
            try:
                db.ping()
            except Exception as err:
                try:
                    db.close()
                except Exception:
                    pass
                raise RuntimeError(f"failed to ping clickhouse: {err}") from err

            self._db = db
            _logger.debug("Connected to ClickHouse")

            try:
                impl = get_schema(cfg.schema_mode)
            except UnknownSchemaError as err:
                raise RuntimeError(f"failed to get schema implementation: {err}") from err
            self._schema = impl.schema
            self._converter = impl.converter
            _logger.debug("Using schema implementation %s", cfg.schema_mode)

            if not cfg.skip_schema_creation:
                self._schema.create_schema(db, cfg.database, cfg.table)
                _logger.debug("Schema created")
            else:
                _logger.debug("Schema creation skipped")

            self._insert_query = self._schema.insert_query(cfg.database, cfg.table)

            if cfg.buffer_enabled:
                self._failover = SampleBuffer(cfg.buffer_max_samples, cfg.buffer_drop_policy)
                _logger.debug(
                    "Failover buffer initialized (capacity=%d, dropPolicy=%s)",
                    cfg.buffer_max_samples,
                    cfg.buffer_drop_policy,
                )

            self._flusher = PeriodicFlusher(cfg.push_interval, self.flush)
            _logger.debug(
                "Started (interval=%s, retryAttempts=%d, retryDelay=%s, bufferEnabled=%s)",
                cfg.push_interval,
                cfg.retry_attempts,
                cfg.retry_delay,
                cfg.buffer_enabled,
            )

    def stop(self) -> None:
        """Flush what is left, drain the failover buffer and close the connection."""
        with self._lock:
            if self._closed:
                return
            flusher = self._flusher

        _logger.debug("Stopping")
        if flusher is not None:
            flusher.stop()

        with self._lock:
            if self._closed:
                return
            self._closed = True
            _logger.debug("Waiting for in-flight flushes to complete")
            self._idle.wait_for(lambda: self._inflight == 0)
        _logger.debug("All flushes completed")

        failover = self._failover
        if failover is not None and len(failover) > 0:
            _logger.info("Draining failover buffer on shutdown (bufferedSamples=%d)", len(failover))
            drain = threading.Event()
            timer = threading.Timer(_DRAIN_TIMEOUT, drain.set)
            timer.daemon = True
            timer.start()
            try:
                samples = failover.pop_all()
                if samples:
                    try:
                        self._do_flush(drain, samples)
                    except Exception as err:
                        _logger.warning(
                            "Failed to drain buffer on shutdown, data may be lost "
                            "(lostSamples=%d): %s",
                            len(samples),
                            err,
                        )
                    else:
                        _logger.info(
                            "Successfully drained failover buffer (flushedSamples=%d)",
                            len(samples),
                        )
            finally:
                timer.cancel()

        if self._shutdown is not None:
            self._shutdown.set()

        with self._lock:
            if self._db is not None:
                try:
                    self._db.close()
                except Exception:
                    pass

        stats = self.error_metrics()
        _logger.info(
            "ClickHouse output stopped (samplesProcessed=%d, convertErrors=%d, "
            "insertErrors=%d, retryAttempts=%d, flushFailures=%d, droppedSamples=%d)",
            stats.samples_processed,
            stats.convert_errors,
            stats.insert_errors,
            stats.retry_attempts,
            stats.flush_failures,
            stats.dropped_samples,
        )

    def add_metric_samples(self, containers: Iterable[SampleContainer]) -> None:
        """Queue sample containers for the next flush."""
        items = list(containers)
        if not items:
            return
        with self._pending_lock:
            self._pending.extend(items)

    def get_buffered_samples(self) -> list[SampleContainer]:
        """Take and return every queued container."""
        with self._pending_lock:
            items, self._pending = self._pending, []
        return items

    def error_metrics(self) -> ErrorMetrics:
        """Return the cumulative flush statistics."""
        failover = self._failover
        buffered = len(failover) if failover is not None else 0
        return ErrorMetrics(
            convert_errors=self._convert_errors.value,
            insert_errors=self._insert_errors.value,
            samples_processed=self._samples_processed.value,
            retry_attempts=self._retry_attempts.value,
            flush_failures=self._flush_failures.value,
            buffered_samples=buffered,
            dropped_samples=self._dropped_samples.value,
        )

    def flush(self) -> None:
        """Write queued and previously failed samples; skip if a flush is running."""
        if not self._flush_lock.acquire(blocking=False):
            return
        try:
            with self._lock:
                if self._closed:
                    return
                self._inflight += 1
                cancel = self._shutdown
                cfg = self.config
            try:
                self._flush_registered(cancel, cfg)
            finally:
                with self._lock:
                    self._inflight -= 1
                    self._idle.notify_all()
        finally:
            self._flush_lock.release()

    def _flush_registered(self, cancel: threading.Event | None, cfg: Config) -> None:
        if cancel is not None and cancel.is_set():
            _logger.debug("Flush cancelled by shutdown")
            return

        samples = self.get_buffered_samples()
        failover = self._failover
        if failover is not None:
            recovered = failover.pop_all()
            if recovered:
                _logger.debug("Recovered samples from failover buffer (count=%d)", len(recovered))
                samples = recovered + samples
        if not samples:
            return

        start = time.monotonic()

        def on_retry(n: int, err: BaseException) -> None:
            self._retry_attempts.add(1)
            _logger.warning(
                "Flush failed, retrying (attempt=%d, maxAttempts=%d): %s",
                n + 1,
                cfg.retry_attempts,
                err,
            )

        try:
            retry_call(
                lambda: self._do_flush(cancel, samples),
                attempts=cfg.retry_attempts + 1,
                delay=cfg.retry_delay,
                max_delay=cfg.retry_max_delay,
                should_retry=is_retryable_error,
                on_retry=on_retry,
                stop_event=cancel,
            )
        except Exception as err:
            self._flush_failures.add(1)
            _logger.error(
                "Flush failed after retries (elapsed=%.3fs): %s", time.monotonic() - start, err
            )
            if isinstance(err, CommitError):
                _logger.warning(
                    "Commit error (data may already be persisted), not buffering samples "
                    "(samples=%d): %s",
                    len(samples),
                    err,
                )
                return
            if cfg.buffer_enabled and failover is not None:
                dropped = failover.push(samples)
                if dropped:
                    self._dropped_samples.add(dropped)
                    _logger.warning(
                        "Buffer overflow, dropped samples (dropped=%d, buffered=%d)",
                        dropped,
                        len(failover),
                    )
                else:
                    _logger.info(
                        "Samples buffered for retry (count=%d, bufferSize=%d)",
                        len(samples),
                        len(failover),
                    )
            else:
                _logger.error("Samples lost (buffering disabled) (lostSamples=%d)", len(samples))

    def _do_flush(
        self, cancel: threading.Event | None, samples: list[SampleContainer]
    ) -> None:
        """Insert ``samples`` in one transaction.

        A failed commit raises CommitError and still counts the rows as
        processed, since the server may have stored them.
        """
        with self._lock:
            db = self._db
            query = self._insert_query
            converter = self._converter
        if db is None or converter is None:
            raise RuntimeError("database connection not initialized")

        start = time.monotonic()
        try:
            tx = db.begin()
        except Exception as err:
            raise RuntimeError(f"failed to begin batch: {err}") from err

        finished = False
        pending_rows: list[list[Any]] = []
        try:
            try:
                stmt = tx.prepare(query)
            except Exception as err:
                raise RuntimeError(f"failed to prepare statement: {err}") from err
            try:
                containers = [container.get_samples() for container in samples]
                total = sum(len(batch) for batch in containers)
                count = 0
                convert_errors = 0

                for batch in containers:
                    for sample in batch:
                        if (
                            cancel is not None
                            and count % _CANCEL_CHECK_EVERY == 0
                            and cancel.is_set()
                        ):
                            raise _Cancelled("context canceled")
                        try:
                            row = converter.convert(sample)
                        except Exception as err:
                            convert_errors += 1
                            _logger.error("failed to convert sample: %s", err)
                            continue
                        try:
                            stmt.execute(*row)
                        except Exception as err:
                            converter.release(row)
                            self._insert_errors.add(1)
                            if convert_errors:
                                self._convert_errors.add(convert_errors)
                            raise RuntimeError(f"failed to insert sample: {err}") from err
                        pending_rows.append(row)
                        count += 1

                if count == 0:
                    if convert_errors:
                        self._convert_errors.add(convert_errors)
                        _logger.warning(
                            "All samples failed conversion, skipping commit "
                            "(convertErrors=%d, totalSamples=%d)",
                            convert_errors,
                            total,
                        )
                    return

                finished = True
                try:
                    tx.commit()
                except Exception as err:
                    if convert_errors:
                        self._convert_errors.add(convert_errors)
                    self._samples_processed.add(count)
                    raise CommitError(err) from err

                if convert_errors:
                    self._convert_errors.add(convert_errors)
                self._samples_processed.add(count)

                elapsed = time.monotonic() - start
                if convert_errors:
                    _logger.warning(
                        "Flush completed with conversion errors (convertErrors=%d, "
                        "successfulInserts=%d, totalSamples=%d, elapsed=%.3fs)",
                        convert_errors,
                        count,
                        total,
                        elapsed,
                    )
                else:
                    _logger.debug("Flushed metrics (samples=%d, elapsed=%.3fs)", count, elapsed)
            finally:
                try:
                    stmt.close()
                except Exception as err:
                    _logger.warning("failed to close statement: %s", err)
        finally:
            if not finished:
                try:
                    tx.rollback()
                except Exception as err:
                    _logger.warning("failed to rollback transaction: %s", err)
            for row in pending_rows:
                converter.release(row)


def new_output(params: Params, connect: _Connector | None = None) -> ClickHouseOutput:
    """Parse the configuration from ``params`` and create an output for it."""
    return ClickHouseOutput(parse_config(params), connect)