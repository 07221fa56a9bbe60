from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, Iterator, List, Optional, Tuple, TypeVar

from .log import get_logger


logger = get_logger("expiring")

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    deadline: Optional[float]  # None: never expires


class ExpiringMap(Generic[K, V]):
    """
    A thread-safe map whose entries carry an absolute deadline.

    - An entry is expired once ``clock() > deadline``. Expired entries are
      invisible to every lookup, even before anything removes them.
    - `sweep()` physically drops expired entries; `start_sweeper()` runs it
      periodically on a daemon thread as a backstop for entries nobody reads.
    - Entries for different keys are independent; a single lock only guards
      map mutation.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: Dict[K, _Entry[V]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    def now(self) -> float:
        return self._clock()

    def _expired(self, entry: _Entry[V], now: float) -> bool:
        return entry.deadline is not None and now > entry.deadline

    def _live_entry(self, key: K, now: float) -> Optional[_Entry[V]]:
        """Return the live entry for key, dropping it if expired. Caller holds the lock."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry, now):
            del self._entries[key]
            return None
        return entry

    # -------- Map operations --------
    def set(self, key: K, value: V, *, ttl: Optional[float] = None, deadline: Optional[float] = None) -> None:
        """Insert or replace `key`. Give either a relative `ttl` or an absolute `deadline`."""
        if ttl is not None:
            deadline = self._clock() + ttl
        with self._lock:
            self._entries[key] = _Entry(value=value, deadline=deadline)

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            entry = self._live_entry(key, self._clock())
            return entry.value if entry is not None else default

    def deadline(self, key: K) -> Optional[float]:
        """Absolute deadline of a live entry (None if absent or non-expiring)."""
        with self._lock:
            entry = self._live_entry(key, self._clock())
            return entry.deadline if entry is not None else None

    def update(self, key: K, fn: Callable[[Optional[V]], Tuple[V, Optional[float]]]) -> V:
        """Atomically read-modify-write one key.

        `fn` receives the current live value (or None) and returns
        ``(new_value, new_deadline)``.
        """
        with self._lock:
            entry = self._live_entry(key, self._clock())
            value, deadline = fn(entry.value if entry is not None else None)
            self._entries[key] = _Entry(value=value, deadline=deadline)
            return value

    def modify(self, key: K, fn: Callable[[V], V]) -> Optional[V]:
        """Replace the value of a live entry in place, keeping its deadline.

        Returns the new value, or None if the key is absent or expired.
        """
        with self._lock:
            entry = self._live_entry(key, self._clock())
            if entry is None:
                return None
            entry.value = fn(entry.value)
            return entry.value

    def pop(self, key: K, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None or self._expired(entry, self._clock()):
                return default
            return entry.value

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return self._live_entry(key, self._clock()) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for e in self._entries.values() if not self._expired(e, now))

    def items(self) -> List[Tuple[K, V]]:
        """Snapshot of live entries."""
        with self._lock:
            now = self._clock()
            return [(k, e.value) for k, e in self._entries.items() if not self._expired(e, now)]

    def __iter__(self) -> Iterator[K]:
        return iter([k for k, _ in self.items()])

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    # -------- Expiry sweep --------
    def sweep(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if self._expired(e, now)]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.debug(f"Swept {len(expired)} expired entries")
        return len(expired)

    def start_sweeper(self, interval: float) -> None:
        """Run `sweep()` every `interval` seconds on a daemon thread."""
        if interval <= 0:
            raise ValueError("interval must be > 0")
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()

        def _loop() -> None:
            while not self._stop.wait(interval):
                try:
                    self.sweep()
                except Exception:
                    logger.exception("Expiry sweep failed")

        self._sweeper = threading.Thread(target=_loop, name="expiring-map-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1.0)
            self._sweeper = None
