"""Bounded, thread-safe FIFO buffer for samples held back during outages."""

from __future__ import annotations

import enum
import threading
from collections import deque
from typing import Iterable

from .model import SampleContainer

_DEFAULT_CAPACITY = 10000


class DropPolicy(str, enum.Enum):
    """Which samples to lose when the buffer is full."""

    #: Drop the oldest to make room, keeping the most recent data.
    OLDEST = "oldest"
    #: Reject incoming samples, keeping the data from the start of the outage.
    NEWEST = "newest"


class SampleBuffer:
    """Holds sample containers in FIFO order up to a fixed capacity."""

    def __init__(
        self,
        capacity: int = _DEFAULT_CAPACITY,
        policy: DropPolicy | str = DropPolicy.OLDEST,
    ) -> None:
        """Create a buffer; capacity <= 0 means 10000, an unknown policy means oldest."""
        self._capacity = capacity if capacity > 0 else _DEFAULT_CAPACITY
        try:
            self._policy = DropPolicy(policy)
        except ValueError:
            self._policy = DropPolicy.OLDEST
        self._items: deque[SampleContainer] = deque()
        self._dropped = 0
        self._lock = threading.Lock()

    def push(self, samples: Iterable[SampleContainer] | None) -> int:
        """Add containers, applying the drop policy; return how many were dropped."""
        if not samples:
            return 0
        dropped = 0
        with self._lock:
            for sample in samples:
                if len(self._items) >= self._capacity:
                    dropped += 1
                    if self._policy is DropPolicy.NEWEST:
                        continue
                    self._items.popleft()
                self._items.append(sample)
            self._dropped += dropped
        return dropped

    def pop_all(self) -> list[SampleContainer]:
        """Remove and return every held container, oldest first."""
        with self._lock:
            items = list(self._items)
            self._items.clear()
        return items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    @property
    def capacity(self) -> int:
        """Maximum number of containers held."""
        return self._capacity

    @property
    def policy(self) -> DropPolicy:
        """Overflow policy in effect."""
        return self._policy

    @property
    def dropped_count(self) -> int:
        """Total containers dropped through overflow since creation or reset."""
        with self._lock:
            return self._dropped

    def reset(self) -> None:
        """Empty the buffer and zero the drop counter."""
        with self._lock:
            self._items.clear()
            self._dropped = 0