from __future__ import annotations

import logging
import sys
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


K = TypeVar("K")
V = TypeVar("V")

logger = logging.getLogger(__name__)


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, hashable mapping.

    Catalog snapshots are published as ``frozendict`` instances so that a
    reader holding a reference can never observe a mapping that is still being
    populated, and so that reflected metadata can key ``lru_cache`` entries.

    Example:
        >>> tables = frozendict({"customers": 1})
        >>> tables.copy(orders=2)
        <frozendict {'customers': 1, 'orders': 2}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def copy(self, **add_or_replace: Any) -> Self:
        """Return a new instance with *add_or_replace* merged in."""
        return type(self)(self, **add_or_replace)

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))
        return self._hash


@dataclass(slots=True, frozen=True)
class CacheEntry(Generic[V]):
    """A cached value and the wall-clock instant it stops being valid."""

    value: V
    expires_at: float

    def is_expired(self, now: float | None = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at


class TTLCache(Generic[K, V]):
    """Thread-safe mapping whose entries expire after ``ttl`` seconds.

    Expired entries are dropped lazily by :meth:`get` and eagerly by
    :meth:`sweep`, which :meth:`start_sweeper` runs on a daemon timer.
    Values are stored by reference and never mutated by the cache.

    Args:
        ttl: Lifetime of an entry in seconds.
        clock: Wall-clock source, ``time.time`` by default (tests inject one).
    """

    __slots__ = ("_clock", "_entries", "_lock", "_sweeper", "ttl")

    def __init__(self, ttl: float, *, clock: Callable[[], float] = time.time) -> None:
        if ttl < 0:
            raise ValueError("ttl must be non-negative")

        self.ttl = ttl
        self._clock = clock
        self._entries: dict[K, CacheEntry[V]] = {}
        self._lock = threading.Lock()
        self._sweeper: threading.Timer | None = None

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None

        if entry.is_expired(self._clock()):
            with self._lock:
                if self._entries.get(key) is entry:
                    del self._entries[key]
            return None

        return entry.value

    def get_entry(self, key: K) -> CacheEntry[V] | None:
        """Return the raw entry for *key*, expired or not."""
        return self._entries.get(key)

    def put(self, key: K, value: V) -> V | None:
        entry = CacheEntry(value=value, expires_at=self._clock() + self.ttl)
        with self._lock:
            previous = self._entries.get(key)
            self._entries[key] = entry
        return previous.value if previous is not None else None

    def get_or_compute(self, key: K, factory: Callable[[K], V]) -> V:
        """Return the live value for *key*, computing and storing it if missing."""
        if (value := self.get(key)) is not None:
            return value

        value = factory(key)
        self.put(key, value)
        return value

    def remove(self, key: K) -> V | None:
        with self._lock:
            entry = self._entries.pop(key, None)
        return entry.value if entry is not None else None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.debug("Swept %d expired cache entries", len(expired))
        return len(expired)

    def start_sweeper(self, interval: float = 60.0) -> None:
        """Run :meth:`sweep` every *interval* seconds on a daemon timer."""

        def _run() -> None:
            self.sweep()
            self.start_sweeper(interval)

        self.stop_sweeper()
        timer = threading.Timer(interval, _run)
        timer.daemon = True
        self._sweeper = timer
        timer.start()

    def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and not entry.is_expired(self._clock())
