import threading
from collections import deque
from typing import Optional

from .frame import Frame


class LatestImagePool:
    """Bounded buffer pool for one source using the latest-image policy.

    A buffer is in flight from the moment a grabbed frame is queued until the
    consumer releases it. When all ``capacity`` buffers are in flight the
    oldest queued (not yet retrieved) frame is discarded to make room for the
    new one. If every buffer is held by consumers the new frame is discarded
    instead, so the in-flight count never exceeds the capacity and the grab
    side never blocks.
    """

    def __init__(self, capacity: int = 4):
        if capacity < 1:
            raise ValueError("Pool capacity must be at least 1")
        self.capacity = capacity
        self.dropped = 0
        self._ready = deque()
        self._outstanding = 0
        self._closed = False
        self._cond = threading.Condition()

    @property
    def in_flight(self) -> int:
        with self._cond:
            return len(self._ready) + self._outstanding

    @property
    def outstanding(self) -> int:
        with self._cond:
            return self._outstanding

    @property
    def queued(self) -> int:
        with self._cond:
            return len(self._ready)

    def put(self, frame: Frame) -> bool:
        """Queue a freshly grabbed frame. Returns False if it was discarded."""
        with self._cond:
            if self._closed:
                return False
            if len(self._ready) + self._outstanding >= self.capacity:
                self.dropped += 1
                if not self._ready:
                    return False
                self._ready.popleft()
            self._ready.append(frame)
            self._cond.notify()
            return True

    def get(self, timeout: Optional[float]) -> Optional[Frame]:
        """Oldest queued frame, or None on timeout or after close."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._ready or self._closed, timeout):
                return None
            if not self._ready:
                return None
            frame = self._ready.popleft()
            self._outstanding += 1
            frame._pool = self
            return frame

    def release(self, frame: Frame) -> None:
        with self._cond:
            if self._outstanding > 0:
                self._outstanding -= 1

    def close(self) -> None:
        """Wake any waiting consumer and discard queued frames."""
        with self._cond:
            self._closed = True
            self._ready.clear()
            self._cond.notify_all()

    def reopen(self) -> None:
        with self._cond:
            self._closed = False
