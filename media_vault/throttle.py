"""Fixed-window attempt limiter for passphrase unlocks."""
import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger("mediavault.http")


@dataclass
class AttemptWindow:
    count: int
    resets_at: float


class AttemptLimiter:
    """Counts attempts per key inside a fixed window.

    Args:
        limit: Attempts allowed per window.
        window: Window length in seconds.
        clock: Time source, ``time.time`` by default.
    """

    def __init__(
        self,
        limit: int,
        window: int,
        clock: Callable[[], float] = time.time,
    ):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, AttemptWindow] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def retry_after(self, key: str) -> int:
        """Seconds until key may try again; 0 while attempts remain."""
        now = self._clock()
        with self._lock:
            current = self._windows.get(key)
            if current is None or now >= current.resets_at:
                return 0
            if current.count < self.limit:
                return 0
            return max(int(current.resets_at - now), 1)

    def acquire(self, key: str) -> int:
        """Count one attempt for key if the window allows it.

        Returns:
            0 when the attempt is allowed, otherwise seconds until the
            window resets. Refused attempts are not counted.
        """
        now = self._clock()
        with self._lock:
            current = self._windows.get(key)
            if current is None or now >= current.resets_at:
                current = AttemptWindow(0, now + self.window)
                self._windows[key] = current
            if current.count >= self.limit:
                return max(int(current.resets_at - now), 1)
            current.count += 1
            exhausted = current.count == self.limit
        if exhausted:
            logger.warning("Unlock attempts exhausted: key=%s", key)
        return 0

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def purge(self) -> int:
        """Drop windows that have ended."""
        now = self._clock()
        with self._lock:
            ended = [key for key, w in self._windows.items() if now >= w.resets_at]
            for key in ended:
                del self._windows[key]
        return len(ended)
