import threading
import time
from collections import deque
from datetime import datetime, timezone

RECENT_OPERATIONS = 10


def _iso(ts):
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class UsageTracker:
    """Per-channel ring buffers of recent operations, for stats only."""

    def __init__(self, limit=100, clock=time.time):
        if limit <= 0:
            raise ValueError("limit must be positive")
        self.limit = int(limit)
        self._clock = clock
        self._lock = threading.Lock()
        self._history = {}
        self._started_at = clock()

    def track(self, channel_id, operation, params=None):
        entry = {
            "operation": operation,
            "params": dict(params or {}),
            "timestamp": self._clock(),
        }
        with self._lock:
            history = self._history.get(channel_id)
            if history is None:
                history = deque(maxlen=self.limit)
                self._history[channel_id] = history
            history.append(entry)

    def history(self, channel_id):
        with self._lock:
            return list(self._history.get(channel_id, ()))

    def channel_stats(self, channel_id):
        entries = self.history(channel_id)
        now = self._clock()
        if not entries:
            return {
                "channel_id": channel_id,
                "operations": 0,
                "last_activity": None,
                "idle_sec": None,
                "recent": [],
            }
        last = entries[-1]["timestamp"]
        return {
            "channel_id": channel_id,
            "operations": len(entries),
            "last_activity": _iso(last),
            "idle_sec": round(max(0.0, now - last), 3),
            "recent": [
                {
                    "operation": entry["operation"],
                    "params": entry["params"],
                    "timestamp": _iso(entry["timestamp"]),
                }
                for entry in entries[-RECENT_OPERATIONS:]
            ],
        }

    def channels(self):
        with self._lock:
            return list(self._history)

    def all_stats(self):
        return {channel_id: self.channel_stats(channel_id) for channel_id in self.channels()}

    def uptime_sec(self):
        return round(max(0.0, self._clock() - self._started_at), 3)

    def clear(self):
        with self._lock:
            self._history.clear()
