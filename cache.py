# cache.py
# In-process, time-boxed key/value cache for dashboard aggregates.
# Expired entries are dropped on read and swept on every set(); writers call invalidate() directly.

import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


class TTLCache:
    def __init__(self, default_ttl: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = float(default_ttl)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        """Value for `key`, or None when missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else float(ttl)
        if ttl <= 0:
            self.invalidate(key)
            return
        with self._lock:
            now = self._clock()
            for stale in [k for k, (exp, _) in self._entries.items() if exp <= now]:
                del self._entries[stale]
            self._entries[key] = (now + ttl, value)

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for exp, _ in self._entries.values() if exp > now)


def dashboard_key(user_id: Any) -> Tuple[str, str]:
    return ("dashboard", str(user_id))


__all__ = ["TTLCache", "dashboard_key"]
