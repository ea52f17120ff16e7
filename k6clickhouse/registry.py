"""Registry of schema implementations, selected by name."""

from __future__ import annotations

import threading

from .model import SchemaImplementation

_registry: dict[str, SchemaImplementation] = {}
_lock = threading.RLock()


class UnknownSchemaError(LookupError):
    """Raised when no schema implementation is registered under a name."""


def register_schema(impl: SchemaImplementation) -> None:
    """Register ``impl`` under its name, replacing any earlier one."""
    if not impl.name:
        raise ValueError("schema implementation name cannot be empty")
    if impl.schema is None:
        raise ValueError(f'schema implementation "{impl.name}" has no schema')
    if impl.converter is None:
        raise ValueError(f'schema implementation "{impl.name}" has no converter')
    with _lock:
        _registry[impl.name] = impl


def get_schema(name: str) -> SchemaImplementation:
    """Return the implementation registered as ``name``."""
    with _lock:
        try:
            return _registry[name]
        except KeyError:
            available = " ".join(sorted(_registry))
            raise UnknownSchemaError(
                f'unknown schema: "{name}" (available: [{available}])'
            ) from None


def available_schemas() -> list[str]:
    """Return the registered schema names in sorted order."""
    with _lock:
        return sorted(_registry)