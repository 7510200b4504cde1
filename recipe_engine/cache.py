"""In-memory TTL cache for parsed recipes."""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import CacheConfig
from .models import Recipe

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    expires_at: float  # clock seconds

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class RecipeCache:
    """Key/value cache with per-entry expiry.

    Expired entries are evicted lazily on ``get`` and, when
    ``cleanup_interval_ms`` is set, by a background sweep thread.
    A disabled cache stores nothing and every lookup misses.
    Cache failures are logged and treated as misses; they never
    propagate to callers.
    """

    def __init__(self, config: CacheConfig | None = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        if self.config.enabled and self.config.cleanup_interval_ms:
            self._thread = threading.Thread(target=self._sweep, name="recipe-cache-cleanup", daemon=True)
            self._thread.start()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def get(self, key: str) -> Any | None:
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                logger.debug(f"Cache miss: {key}")
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                logger.debug(f"Cache expired: {key}")
                return None
            logger.debug(f"Cache hit: {key}")
            return entry.value

    def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None:
        if not self.enabled:
            return
        ttl = ttl_ms if ttl_ms is not None else self.config.ttl_ms
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl / 1000)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def cleanup(self) -> int:
        """Remove expired entries. Returns count removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Cache cleanup evicted {len(expired)} entries")
        return len(expired)

    def destroy(self) -> None:
        """Stop the sweep thread and drop every entry."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None
        self.clear()

    def _sweep(self) -> None:
        interval = self.config.cleanup_interval_ms / 1000
        while not self._stop.wait(interval):
            try:
                self.cleanup()
            except Exception as e:
                logger.warning(f"Recipe cache cleanup failed: {e}")

    def load(self, path: Path, loader: Callable[[Path], Recipe] = Recipe.from_yaml) -> Recipe:
        """
        Load a recipe file through the cache.

        Entries are keyed by resolved path and file modification time, so
        an edited file is re-read even before its entry expires.
        """
        resolved = path.resolve()
        try:
            key = f"{resolved}:{resolved.stat().st_mtime_ns}"
        except OSError as e:
            logger.warning(f"Recipe cache bypassed for {path}: {e}")
            return loader(path)

        cached = self.get(key)
        if cached is not None:
            return cached
        recipe = loader(resolved)
        self.set(key, recipe)
        return recipe
