"""Last-known settings values per category."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any

from earctl.core.model import CachedValue, Category


class StateCache:
    """Thread-safe lookup table; never performs I/O."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[Category, CachedValue] = {}

    def get(self, category: Category) -> CachedValue | None:
        with self._lock:
            return self._entries.get(category)

    def put(self, category: Category, value: Any) -> CachedValue:
        entry = CachedValue(value=value, timestamp=self._clock())
        with self._lock:
            self._entries[category] = entry
        return entry

    def invalidate(self, category: Category) -> None:
        with self._lock:
            self._entries.pop(category, None)

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
