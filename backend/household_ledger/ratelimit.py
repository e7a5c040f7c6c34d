"""
Request throttling primitives.

All state lives in an injected KeyValueStore and time comes from an injected
clock, so the in-process store can be replaced by a shared cache when the
service runs on more than one instance.
"""

import threading
import time
from typing import Any, Callable, Dict, Iterator, Optional, Protocol, Sequence, Tuple

Clock = Callable[[], float]


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def items(self) -> Iterator[Tuple[str, Any]]: ...


class InMemoryKeyValueStore:
    """Dict-backed store, scoped to one process."""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def items(self) -> Iterator[Tuple[str, Any]]:
        with self._lock:
            snapshot = list(self._data.items())
        return iter(snapshot)


class RateLimiter:
    """Fixed-window counter: at most ``limit`` hits per ``window`` seconds per key."""

    def __init__(
        self,
        limit: int,
        window: float = 60.0,
        store: Optional[KeyValueStore] = None,
        clock: Clock = time.monotonic,
    ):
        self.limit = limit
        self.window = window
        self.store = store if store is not None else InMemoryKeyValueStore()
        self.clock = clock

    def hit(self, key: str) -> bool:
        """Count a request; True when the key is over its limit."""
        now = self.clock()
        for other, expired in self.store.items():
            if now > expired["reset_at"]:
                self.store.delete(other)
        entry = self.store.get(key)
        if entry is None or now > entry["reset_at"]:
            self.store.set(key, {"count": 1, "reset_at": now + self.window})
            return False
        entry = {"count": entry["count"] + 1, "reset_at": entry["reset_at"]}
        self.store.set(key, entry)
        return entry["count"] > self.limit


DEFAULT_BLOCK_DELAYS = (30, 60, 120, 300, 600)


class FailureBlocker:
    """Blocks a key after each failure, for escalating durations."""

    def __init__(
        self,
        delays: Sequence[float] = DEFAULT_BLOCK_DELAYS,
        store: Optional[KeyValueStore] = None,
        clock: Clock = time.monotonic,
    ):
        self.delays = tuple(delays)
        self.store = store if store is not None else InMemoryKeyValueStore()
        self.clock = clock

    def is_blocked(self, key: str) -> bool:
        entry = self.store.get(key)
        if entry is None:
            return False
        if self.clock() > entry["blocked_until"]:
            self.store.delete(key)
            return False
        return True

    def record_failure(self, key: str) -> float:
        """Register a failure; returns the block duration applied."""
        now = self.clock()
        for other, blocked in self.store.items():
            if other != key and now > blocked["blocked_until"]:
                self.store.delete(other)
        entry = self.store.get(key) or {"count": 0, "blocked_until": 0.0}
        count = entry["count"] + 1
        delay = self.delays[min(count - 1, len(self.delays) - 1)]
        self.store.set(key, {"count": count, "blocked_until": now + delay})
        return delay


class DuplicateGuard:
    """Remembers fingerprints for ``window`` seconds."""

    def __init__(
        self,
        window: float = 30.0,
        store: Optional[KeyValueStore] = None,
        clock: Clock = time.monotonic,
    ):
        self.window = window
        self.store = store if store is not None else InMemoryKeyValueStore()
        self.clock = clock

    def seen(self, fingerprint: str) -> bool:
        """True if the fingerprint was recorded inside the window; records it otherwise."""
        now = self.clock()
        for key, recorded_at in self.store.items():
            if now - recorded_at > self.window:
                self.store.delete(key)
        if self.store.get(fingerprint) is not None:
            return True
        self.store.set(fingerprint, now)
        return False


class SubmissionThrottle:
    """
    At-most-once guard for user-triggered mutations.

    ``acquire`` refuses while a previous call for the same key is still
    pending or less than ``cooldown`` seconds have passed since the last
    accepted call.
    """

    def __init__(
        self,
        cooldown: float = 3.0,
        store: Optional[KeyValueStore] = None,
        clock: Clock = time.monotonic,
    ):
        self.cooldown = cooldown
        self.store = store if store is not None else InMemoryKeyValueStore()
        self.clock = clock
        self._lock = threading.Lock()

    def acquire(self, key: str) -> bool:
        with self._lock:
            now = self.clock()
            for other, held in self.store.items():
                if not held["pending"] and now - held["last_call"] >= self.cooldown:
                    self.store.delete(other)
            entry = self.store.get(key)
            if entry is not None:
                if entry["pending"] or now - entry["last_call"] < self.cooldown:
                    return False
            self.store.set(key, {"pending": True, "last_call": now})
            return True

    def release(self, key: str) -> None:
        with self._lock:
            entry = self.store.get(key)
            if entry is not None:
                self.store.set(key, {"pending": False, "last_call": entry["last_call"]})
