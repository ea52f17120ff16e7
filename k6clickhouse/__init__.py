"""Writes k6 metric samples to ClickHouse, with retries, failover buffering and pluggable schemas."""

__version__ = "0.1.0"