import logging
import threading
import time
from dataclasses import dataclass, field

from engine.errors import AdmissionRejected

logger = logging.getLogger(__name__)


class AdmissionController:
    """Counts in-flight deliveries and rejects new ones at the ceiling; never queues."""

    def __init__(self, max_concurrent=10):
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be positive")
        self.max_concurrent = int(max_concurrent)
        self._active = 0
        self._rejected = 0
        self._lock = threading.Lock()

    @property
    def active(self):
        with self._lock:
            return self._active

    def try_admit(self):
        with self._lock:
            if self._active >= self.max_concurrent:
                self._rejected += 1
                return False
            self._active += 1
            return True

    def release(self):
        with self._lock:
            if self._active > 0:
                self._active -= 1
            else:
                logger.warning("Admission release without matching admit ignored")

    def admit(self, channel_id, video_id, quality=None):
        """Reserve a slot and return the session that owns it."""
        if not self.try_admit():
            raise AdmissionRejected(self.active, self.max_concurrent)
        return StreamSession(
            controller=self,
            channel_id=channel_id,
            video_id=video_id,
            quality=quality,
        )

    def reset(self):
        with self._lock:
            self._active = 0

    def stats(self):
        with self._lock:
            return {
                "active": self._active,
                "max": self.max_concurrent,
                "available": self.max_concurrent - self._active,
                "rejected": self._rejected,
            }


@dataclass
class StreamSession:
    controller: AdmissionController
    channel_id: str
    video_id: str
    quality: str | None = None
    admitted_at: float = field(default_factory=time.time)
    outcome: str | None = None
    _released: bool = field(default=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def released(self):
        return self._released

    def close(self, outcome="completed"):
        with self._lock:
            if self._released:
                return False
            self._released = True
            self.outcome = outcome
        self.controller.release()
        return True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close("completed" if exc_type is None else "failed")
        return False
