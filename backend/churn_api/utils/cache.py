import json
import time
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

# every churn key starts with CHURN_PREFIX, so invalidate_prefix(CHURN_PREFIX) clears them all
CHURN_PREFIX = "churn"
WEIGHTS_PREFIX = "churn-weights"
ACCURACY_PREFIX = "churn-accuracy"

@dataclass(frozen=True)
class TTLPolicy:
    """Seconds to keep an entry, by key prefix."""
    ttls: Mapping[str, int]
    default: int = 5 * 60

    def ttl_for(self, key: str) -> int:
        prefix = key.split(":", 1)[0]
        return self.ttls.get(prefix, self.default)

class TTLCache:
    """In-process cache with per-entry expiry. Construct one and pass it to whatever needs it."""

    def __init__(self, policy: Optional[TTLPolicy] = None, clock: Callable[[], float] = time.monotonic):
        self.policy = policy or TTLPolicy({})
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return default
            return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self.policy.ttl_for(key) if ttl is None else ttl
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> None:
        with self._lock:
            for key in [k for k in self._entries if k.startswith(prefix)]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def get_or_set(self, key: str, fetch: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        sentinel = object()
        value = self.get(key, sentinel)
        if value is sentinel:
            # errors from fetch propagate and are not cached
            value = fetch()
            self.set(key, value, ttl)
        return value

def cache_key(prefix: str, **params: Any) -> str:
    parts = [prefix]
    for name in sorted(params):
        value = params[name]
        if value is None:
            continue
        parts.append(json.dumps(value, sort_keys=True) if isinstance(value, (dict, list)) else str(value))
    return ":".join(parts)
