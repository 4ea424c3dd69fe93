"""Named traffic counters and the stats query they answer."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterable

_U64_MASK = (1 << 64) - 1
_I64_SIGN = 1 << 63


def _as_i64(value: int) -> int:
    return value - (1 << 64) if value >= _I64_SIGN else value


class _AtomicCounter:
    """Thread-safe unsigned 64-bit counter that wraps on overflow."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def add(self, amount: int) -> None:
        with self._lock:
            self._value = (self._value + amount) & _U64_MASK

    def load(self) -> int:
        with self._lock:
            return self._value

    def swap(self, value: int) -> int:
        with self._lock:
            old, self._value = self._value, value & _U64_MASK
            return old


@dataclass(frozen=True)
class Stat:
    """A named counter value as reported to stats clients."""

    name: str
    value: int


class StatsRegistry:
    """Registry of named counters queried by name."""

    def __init__(self, names: Iterable[str] = ()) -> None:
        self._counters: dict[str, _AtomicCounter] = {}
        self._lock = threading.Lock()
        for name in names:
            self.register(name)

    def register(self, name: str) -> _AtomicCounter:
        """Create the counter ``name`` if missing and return it."""
        with self._lock:
            return self._counters.setdefault(name, _AtomicCounter())

    def counter(self, name: str) -> _AtomicCounter:
        """Return the counter ``name``, raising KeyError if it is not registered."""
        return self._counters[name]

    def __contains__(self, name: object) -> bool:
        return name in self._counters

    def get_stats(self, name: str, reset: bool) -> Stat:
        """Read the counter ``name``, zeroing it first when ``reset`` is set."""
        counter = self._counters.get(name)
        if counter is None:
            raise ValueError("name is invalid")
        value = counter.swap(0) if reset else counter.load()
        return Stat(name=name, value=_as_i64(value))