"""Client-side cache of capability signatures."""
import time
import logging
import threading
from typing import Callable, Optional

from ..models import CapabilityCacheEntry
from ..vault.config import DEFAULT_REFRESH_SKEW

logger = logging.getLogger("mediavault.client")


CacheKey = tuple[str, ...]


def cache_key(resource_id: str, variant: Optional[str] = None, thumbnail: bool = False) -> CacheKey:
    """Cache slot for a resource; thumbnails get one slot per size.

    Slots are tuples so no resource id can collide with a thumbnail slot.
    """
    if thumbnail or variant is not None:
        return ("thumbnail", str(resource_id), variant or "default")
    return ("media", str(resource_id))


class CapabilityCache:
    """Per-client map of resource slot to signature.

    A cached signature is only handed out while more than ``refresh_skew``
    seconds remain before its expiry, so callers reissue ahead of time.

    ``generation`` increases on every ``clear()``. A caller that requested a
    signature before a clear passes the generation it saw to ``set()``, and
    the late signature is dropped instead of surviving the lock.
    """

    def __init__(
        self,
        refresh_skew: int = DEFAULT_REFRESH_SKEW,
        clock: Callable[[], float] = time.time,
    ):
        self._skew = refresh_skew
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[CacheKey, CapabilityCacheEntry] = {}
        self._generation = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, resource_id: str, variant: Optional[str] = None, *, thumbnail: bool = False) -> Optional[str]:
        key = cache_key(resource_id, variant, thumbnail)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() < entry.expires_at - self._skew:
                return entry.signature
        return None

    def set(
        self,
        resource_id: str,
        signature: str,
        expires_at: float,
        variant: Optional[str] = None,
        *,
        thumbnail: bool = False,
        generation: Optional[int] = None,
    ) -> bool:
        """Store a signature; False if the cache was cleared since ``generation``."""
        key = cache_key(resource_id, variant, thumbnail)
        entry = CapabilityCacheEntry(
            resource_id=str(resource_id),
            signature=signature,
            expires_at=float(expires_at),
        )
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._entries[key] = entry
        return True

    def invalidate(self, resource_id: str, variant: Optional[str] = None, *, thumbnail: bool = False) -> bool:
        key = cache_key(resource_id, variant, thumbnail)
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries = {}
            self._generation += 1
        logger.debug("Capability cache cleared (%d entries)", count)

    def on_vault_locked(self, *args) -> None:
        """Lock listener; accepts and ignores the notifier's arguments."""
        self.clear()
