import json
import threading
import time


def make_cache_key(operation, params):
    payload = json.dumps(params or {}, sort_keys=True, separators=(",", ":"), default=str)
    return f"{operation}_{payload}"


class ResultCache:
    """Bounded in-memory cache with a per-instance TTL and FIFO eviction.

    Expired entries are only reported as absent by ``get``; ``sweep`` is what
    actually removes them.
    """

    def __init__(self, name, *, ttl_sec, max_entries, clock=time.monotonic):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.name = name
        self.ttl_sec = float(ttl_sec)
        self.max_entries = int(max_entries)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries = {}
        self.hits = 0
        self.misses = 0

    def _is_valid(self, entry, now):
        return (now - entry["ts"]) < self.ttl_sec

    def get(self, key):
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not self._is_valid(entry, now):
                self.misses += 1
                return None
            self.hits += 1
            return entry["value"]

    def put(self, key, value):
        now = self._clock()
        with self._lock:
            # Re-inserting moves the key to the back of the insertion order.
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_entries:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
            self._entries[key] = {"ts": now, "value": value}

    def sweep(self):
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if not self._is_valid(entry, now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self):
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def stats(self):
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "size": len(self._entries),
                "max_size": self.max_entries,
                "ttl_sec": self.ttl_sec,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": round(self.hits / lookups, 3) if lookups else None,
            }
