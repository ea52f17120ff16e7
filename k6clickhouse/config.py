"""Configuration of the ClickHouse output, gathered from JSON, URL and environment.

Sources in increasing priority: defaults, JSON config, URL argument,
``K6_CLICKHOUSE_*`` environment variables.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Mapping
from urllib.parse import parse_qsl, unquote

from . import schema_compat, schema_simple  # noqa: F401  registers built-in schemas
from .helpers import is_valid_identifier
from .registry import UnknownSchemaError, available_schemas, get_schema
from .tlsconfig import TLSConfig, TLSConfigError, validate_file_readable

_IDENTIFIER_RULE = "must be alphanumeric + underscore, max 63 chars"

_UNIT_NS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}
_UINT_RE = re.compile(r"[0-9]+")
_INT_RE = re.compile(r"[+-]?[0-9]+")
_MAX_UINT32 = 2**32 - 1
_MAX_UINT64 = 2**64 - 1
_MIN_INT64 = -(2**63)
_MAX_INT64 = 2**63 - 1


class ConfigError(ValueError):
    """Raised when the configuration cannot be parsed or is invalid."""


@dataclass
class Params:
    """What the test runner hands over: the URL argument and the JSON config."""

    config_argument: str = ""
    json_config: bytes | str | None = None


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``1s``, ``100ms`` or ``1h30m`` (optionally signed)."""
    rest = text
    negative = False
    if rest and rest[0] in "+-":
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f'invalid duration "{text}"')

    total = Decimal(0)
    pos = 0
    while pos < len(rest):
        match = _DURATION_PART.match(rest, pos)
        if match is None:
            raise ValueError(f'invalid duration "{text}"')
        total += Decimal(match.group(1)) * _UNIT_NS[match.group(2)]
        pos = match.end()

    micros = int(total) // 1000
    return timedelta(microseconds=-micros if negative else micros)


def parse_bool(text: str) -> bool:
    """Parse 1, t, T, TRUE, true, True and their false counterparts."""
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f'invalid boolean "{text}"')


def _to_ns(d: timedelta) -> int:
    return (d.days * 86400 + d.seconds) * 1_000_000_000 + d.microseconds * 1000


def _decimal(value: int, size: int) -> str:
    whole, frac = divmod(value, size)
    if not frac:
        return str(whole)
    digits = str(frac).rjust(len(str(size)) - 1, "0").rstrip("0")
    return f"{whole}.{digits}"


def _format_duration(d: timedelta) -> str:
    ns = _to_ns(d)
    if ns == 0:
        return "0s"
    sign = "-" if ns < 0 else ""
    ns = abs(ns)
    if ns < 1_000_000_000:
        for unit, size in (("ns", 1), ("µs", 1_000), ("ms", 1_000_000)):
            if ns < size * 1000:
                return sign + _decimal(ns, size) + unit
    hours, rem = divmod(ns, 3600 * 1_000_000_000)
    minutes, rem = divmod(rem, 60 * 1_000_000_000)
    seconds = _decimal(rem, 1_000_000_000)
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{sign}{minutes}m{seconds}s"
    return f"{sign}{seconds}s"


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


@dataclass
class Config:
    """Settings of the ClickHouse output; the defaults are the documented ones."""

    addr: str = "localhost:9000"
    user: str = "default"
    password: str = ""
    database: str = "k6"
    table: str = "samples"
    push_interval: timedelta = timedelta(seconds=1)
    schema_mode: str = "simple"
    skip_schema_creation: bool = False
    tls: TLSConfig = field(default_factory=TLSConfig)
    retry_attempts: int = 3
    retry_delay: timedelta = timedelta(milliseconds=100)
    retry_max_delay: timedelta = timedelta(seconds=5)
    buffer_enabled: bool = True
    buffer_max_samples: int = 10000
    buffer_drop_policy: str = "oldest"

    def validate(self) -> None:
        """Raise ConfigError describing the first invalid setting."""
        if not self.addr:
            raise ConfigError("clickhouse address is required")
        if not self.user:
            raise ConfigError("clickhouse user is required")
        if not self.database:
            raise ConfigError("clickhouse database name is required")
        if not is_valid_identifier(self.database):
            raise ConfigError(f"invalid database name: {self.database} ({_IDENTIFIER_RULE})")
        if not self.table:
            raise ConfigError("clickhouse table name is required")
        if not is_valid_identifier(self.table):
            raise ConfigError(f"invalid table name: {self.table} ({_IDENTIFIER_RULE})")
        if self.push_interval <= timedelta(0):
            raise ConfigError(
                f"push interval must be positive, got {_format_duration(self.push_interval)}"
            )

        try:
            get_schema(self.schema_mode)
        except UnknownSchemaError:
            available = " ".join(available_schemas())
            raise ConfigError(
                f"invalid schemaMode: {self.schema_mode} (available: [{available}])"
            ) from None

        if self.tls.enabled:
            self._validate_tls()

        if self.retry_delay < timedelta(0):
            raise ConfigError(
                f"retry delay must be non-negative, got {_format_duration(self.retry_delay)}"
            )
        if self.retry_max_delay < timedelta(0):
            raise ConfigError(
                "retry max delay must be non-negative, got "
                f"{_format_duration(self.retry_max_delay)}"
            )
        if self.retry_max_delay > timedelta(0) and self.retry_delay > self.retry_max_delay:
            raise ConfigError(
                f"retry delay ({_format_duration(self.retry_delay)}) cannot exceed "
                f"max delay ({_format_duration(self.retry_max_delay)})"
            )

        if self.buffer_enabled and self.buffer_max_samples <= 0:
            raise ConfigError(
                "buffer max samples must be positive when buffering is enabled, "
                f"got {self.buffer_max_samples}"
            )
        if self.buffer_drop_policy not in ("", "oldest", "newest"):
            raise ConfigError(
                f"invalid buffer drop policy: {self.buffer_drop_policy} (valid: oldest, newest)"
            )

    def _validate_tls(self) -> None:
        tls = self.tls
        if tls.ca_file:
            try:
                validate_file_readable(tls.ca_file)
            except TLSConfigError as err:
                raise ConfigError(f"TLS CA file validation failed: {err}") from err

        has_cert = bool(tls.cert_file)
        has_key = bool(tls.key_file)
        if has_cert != has_key:
            raise ConfigError("TLS client certificate and key must be specified together")
        if has_cert:
            try:
                validate_file_readable(tls.cert_file)
            except TLSConfigError as err:
                raise ConfigError(
                    f"TLS client certificate file validation failed: {err}"
                ) from err
        if has_key:
            try:
                validate_file_readable(tls.key_file)
            except TLSConfigError as err:
                raise ConfigError(f"TLS client key file validation failed: {err}") from err


def new_config() -> Config:
    """Return a configuration holding the default values."""
    return Config()


def _json_error(message: str) -> ConfigError:
    return ConfigError(f"failed to parse json config: {message}")


def _fold(data: dict[str, Any]) -> dict[str, Any]:
    # Keys match case-insensitively; a later key wins over an earlier one.
    return {key.lower(): value for key, value in data.items()}


def _json_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key.lower())
    if value is None:
        return ""
    if not isinstance(value, str):
        raise _json_error(f"{key} must be a string")
    return value


def _json_bool(data: Mapping[str, Any], key: str) -> bool | None:
    value = data.get(key.lower())
    if value is None:
        return None
    if not isinstance(value, bool):
        raise _json_error(f"{key} must be a boolean")
    return value


def _json_int(data: Mapping[str, Any], key: str, low: int, high: int) -> int | None:
    value = data.get(key.lower())
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        raise _json_error(f"{key} must be an integer in [{low}, {high}]")
    return value


def _json_duration(data: Mapping[str, Any], key: str) -> timedelta | None:
    text = _json_str(data, key)
    if not text:
        return None
    try:
        return parse_duration(text)
    except ValueError as err:
        raise ConfigError(f"invalid {key}: {err}") from err


def _apply_json(cfg: Config, raw: bytes | str) -> None:
    try:
        data = json.loads(raw)
    except ValueError as err:
        raise _json_error(str(err)) from err
    if data is None:
        return
    if not isinstance(data, dict):
        raise _json_error("expected an object")
    data = _fold(data)

    for key, attr in (
        ("addr", "addr"),
        ("user", "user"),
        ("password", "password"),
        ("database", "database"),
        ("table", "table"),
    ):
        value = _json_str(data, key)
        if value:
            setattr(cfg, attr, value)

    push_interval = _json_duration(data, "pushInterval")
    if push_interval is not None:
        cfg.push_interval = push_interval
    schema_mode = _json_str(data, "schemaMode")
    if schema_mode:
        cfg.schema_mode = schema_mode
    skip_schema = _json_bool(data, "skipSchemaCreation")
    if skip_schema is not None:
        cfg.skip_schema_creation = skip_schema

    tls = data.get("tls")
    if tls is not None:
        if not isinstance(tls, dict):
            raise _json_error("tls must be an object")
        tls = _fold(tls)
        cfg.tls.enabled = bool(_json_bool(tls, "enabled"))
        cfg.tls.insecure_skip_verify = bool(_json_bool(tls, "insecureSkipVerify"))
        for key, attr in (
            ("caFile", "ca_file"),
            ("certFile", "cert_file"),
            ("keyFile", "key_file"),
            ("serverName", "server_name"),
        ):
            value = _json_str(tls, key)
            if value:
                setattr(cfg.tls, attr, value)

    retry_attempts = _json_int(data, "retryAttempts", 0, _MAX_UINT64)
    if retry_attempts is not None:
        cfg.retry_attempts = retry_attempts
    retry_delay = _json_duration(data, "retryDelay")
    if retry_delay is not None:
        cfg.retry_delay = retry_delay
    retry_max_delay = _json_duration(data, "retryMaxDelay")
    if retry_max_delay is not None:
        cfg.retry_max_delay = retry_max_delay

    buffer_enabled = _json_bool(data, "bufferEnabled")
    if buffer_enabled is not None:
        cfg.buffer_enabled = buffer_enabled
    buffer_max = _json_int(data, "bufferMaxSamples", _MIN_INT64, _MAX_INT64)
    if buffer_max is not None:
        cfg.buffer_max_samples = buffer_max
    drop_policy = _json_str(data, "bufferDropPolicy")
    if drop_policy:
        cfg.buffer_drop_policy = drop_policy


def _split_scheme(raw: str) -> tuple[str, str]:
    for i, char in enumerate(raw):
        if char.isascii() and char.isalpha():
            continue
        if char.isascii() and (char.isdigit() or char in "+-."):
            if i == 0:
                return "", raw
            continue
        if char == ":":
            if i == 0:
                raise ValueError("missing protocol scheme")
            return raw[:i].lower(), raw[i + 1 :]
        return "", raw
    return "", raw


def _valid_optional_port(port: str) -> bool:
    if port == "":
        return True
    return port[0] == ":" and all(c.isdigit() for c in port[1:])


def _parse_host(authority: str) -> str:
    host = authority[authority.rfind("@") + 1 :]
    if host.startswith("["):
        end = host.find("]")
        if end < 0:
            raise ValueError("missing ']' in host")
        if not _valid_optional_port(host[end + 1 :]):
            raise ValueError("invalid port")
    else:
        colon = host.rfind(":")
        if colon >= 0 and not _valid_optional_port(host[colon:]):
            raise ValueError("invalid port")
    return unquote(host)


def _parse_url(raw: str) -> tuple[str, str, dict[str, str]]:
    """Split a URL argument into host, path and query the way the runner's URLs parse."""
    raw = raw.split("#", 1)[0]
    if any(ord(c) < 0x20 or ord(c) == 0x7F for c in raw):
        raise ValueError("invalid control character in URL")

    scheme, rest = _split_scheme(raw)
    if rest.endswith("?") and rest.count("?") == 1:
        rest, raw_query = rest[:-1], ""
    else:
        rest, _, raw_query = rest.partition("?")

    query: dict[str, str] = {}
    for key, value in parse_qsl(raw_query, keep_blank_values=True):
        query.setdefault(key, value)

    host = ""
    path = ""
    if not rest.startswith("/"):
        if scheme:
            return host, path, query
        if ":" in rest.split("/", 1)[0]:
            raise ValueError("first path segment in URL cannot contain colon")
    if (scheme or not rest.startswith("///")) and rest.startswith("//"):
        authority, slash, remainder = rest[2:].partition("/")
        host = _parse_host(authority)
        rest = slash + remainder
    path = unquote(rest)
    return host, path, query


def _url_bool(query: Mapping[str, str], key: str) -> bool | None:
    text = query.get(key, "")
    if not text:
        return None
    try:
        return parse_bool(text)
    except ValueError as err:
        raise ConfigError(
            f"invalid {key} URL parameter value {_quote(text)}: {err}"
        ) from err


def _apply_url(cfg: Config, argument: str) -> None:
    try:
        host, path, query = _parse_url(argument)
    except ValueError:
        return

    if host:
        cfg.addr = host
    elif path:
        cfg.addr = path

    for key, attr in (
        ("user", "user"),
        ("password", "password"),
        ("database", "database"),
        ("table", "table"),
        ("schemaMode", "schema_mode"),
    ):
        value = query.get(key, "")
        if value:
            setattr(cfg, attr, value)
    skip_schema = query.get("skipSchemaCreation", "")
    if skip_schema:
        cfg.skip_schema_creation = skip_schema == "true"

    enabled = _url_bool(query, "tlsEnabled")
    if enabled is not None:
        cfg.tls.enabled = enabled
    insecure = _url_bool(query, "tlsInsecureSkipVerify")
    if insecure is not None:
        cfg.tls.insecure_skip_verify = insecure
    for key, attr in (
        ("tlsCAFile", "ca_file"),
        ("tlsCertFile", "cert_file"),
        ("tlsKeyFile", "key_file"),
        ("tlsServerName", "server_name"),
    ):
        value = query.get(key, "")
        if value:
            setattr(cfg.tls, attr, value)


def _env_value(environ: Mapping[str, str], name: str, parse: Any) -> Any:
    text = environ.get(name, "")
    if not text:
        return None
    try:
        return parse(text)
    except ValueError as err:
        raise ConfigError(f"invalid {name} value {_quote(text)}: {err}") from err


def _parse_uint32(text: str) -> int:
    if _UINT_RE.fullmatch(text) is None:
        raise ValueError(f'invalid unsigned integer "{text}"')
    value = int(text)
    if value > _MAX_UINT32:
        raise ValueError(f'value out of range "{text}"')
    return value


def _parse_int(text: str) -> int:
    if _INT_RE.fullmatch(text) is None:
        raise ValueError(f'invalid integer "{text}"')
    value = int(text)
    if not _MIN_INT64 <= value <= _MAX_INT64:
        raise ValueError(f'value out of range "{text}"')
    return value


def _apply_env(cfg: Config, environ: Mapping[str, str]) -> None:
    for name, attr in (
        ("K6_CLICKHOUSE_ADDR", "addr"),
        ("K6_CLICKHOUSE_USER", "user"),
        ("K6_CLICKHOUSE_PASSWORD", "password"),
        ("K6_CLICKHOUSE_DB", "database"),
        ("K6_CLICKHOUSE_TABLE", "table"),
        ("K6_CLICKHOUSE_SCHEMA_MODE", "schema_mode"),
    ):
        value = environ.get(name, "")
        if value:
            setattr(cfg, attr, value)
    skip_schema = environ.get("K6_CLICKHOUSE_SKIP_SCHEMA_CREATION", "")
    if skip_schema:
        cfg.skip_schema_creation = skip_schema == "true"

    enabled = _env_value(environ, "K6_CLICKHOUSE_TLS_ENABLED", parse_bool)
    if enabled is not None:
        cfg.tls.enabled = enabled
    insecure = _env_value(environ, "K6_CLICKHOUSE_TLS_INSECURE_SKIP_VERIFY", parse_bool)
    if insecure is not None:
        cfg.tls.insecure_skip_verify = insecure
    for name, attr in (
        ("K6_CLICKHOUSE_TLS_CA_FILE", "ca_file"),
        ("K6_CLICKHOUSE_TLS_CERT_FILE", "cert_file"),
        ("K6_CLICKHOUSE_TLS_KEY_FILE", "key_file"),
        ("K6_CLICKHOUSE_TLS_SERVER_NAME", "server_name"),
    ):
        value = environ.get(name, "")
        if value:
            setattr(cfg.tls, attr, value)

    retry_attempts = _env_value(environ, "K6_CLICKHOUSE_RETRY_ATTEMPTS", _parse_uint32)
    if retry_attempts is not None:
        cfg.retry_attempts = retry_attempts
    retry_delay = _env_value(environ, "K6_CLICKHOUSE_RETRY_DELAY", parse_duration)
    if retry_delay is not None:
        cfg.retry_delay = retry_delay
    retry_max = _env_value(environ, "K6_CLICKHOUSE_RETRY_MAX_DELAY", parse_duration)
    if retry_max is not None:
        cfg.retry_max_delay = retry_max

    buffer_enabled = _env_value(environ, "K6_CLICKHOUSE_BUFFER_ENABLED", parse_bool)
    if buffer_enabled is not None:
        cfg.buffer_enabled = buffer_enabled
    buffer_max = _env_value(environ, "K6_CLICKHOUSE_BUFFER_MAX_SAMPLES", _parse_int)
    if buffer_max is not None:
        cfg.buffer_max_samples = buffer_max
    drop_policy = environ.get("K6_CLICKHOUSE_BUFFER_DROP_POLICY", "")
    if drop_policy:
        cfg.buffer_drop_policy = drop_policy


def parse_config(params: Params, environ: Mapping[str, str] | None = None) -> Config:
    """Build and validate a configuration from ``params`` and the environment.

    ``environ`` defaults to the process environment. A URL argument that
    cannot be parsed is ignored.
    """
    if environ is None:
        environ = os.environ
    cfg = new_config()

    if params.json_config is not None:
        _apply_json(cfg, params.json_config)
    if params.config_argument:
        _apply_url(cfg, params.config_argument)
    _apply_env(cfg, environ)

    try:
        cfg.validate()
    except ConfigError as err:
        raise ConfigError(f"invalid configuration: {err}") from err
    return cfg