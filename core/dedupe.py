from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECS = 10 * 60
DEFAULT_SWEEP_SECS = 5 * 60


class DedupCache:
    """
    Per-source key -> last-seen timestamp store.

    A key marked within the last `window` seconds counts as processed. Older
    entries are dropped lazily on lookup and proactively by `sweep()`, which
    `run_sweeper()` calls on a fixed period. Nothing survives a restart.
    """

    def __init__(
        self,
        name: str,
        window: float = DEFAULT_WINDOW_SECS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.window = float(window)
        self._clock = clock
        self._seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def _expired(self, ts: float, now: float) -> bool:
        return (now - ts) > self.window

    def is_processed(self, key: Optional[str]) -> bool:
        if not key:
            return False
        now = self._clock()
        with self._lock:
            ts = self._seen.get(key)
            if ts is None:
                return False
            if self._expired(ts, now):
                del self._seen[key]
                return False
            return True

    def mark_processed(self, key: Optional[str]) -> None:
        if not key:
            return
        with self._lock:
            self._seen[key] = self._clock()

    def check_and_mark(self, key: Optional[str]) -> bool:
        """
        Atomic test-and-set. Returns True if the key is new (and is now
        marked), False if it was already processed inside the window.
        """
        if not key:
            return True
        now = self._clock()
        with self._lock:
            ts = self._seen.get(key)
            if ts is not None and not self._expired(ts, now):
                return False
            self._seen[key] = now
            return True

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, ts in self._seen.items() if self._expired(ts, now)]
            for k in expired:
                del self._seen[k]
        if expired:
            logger.debug("dedupe[%s]: swept %d expired keys", self.name, len(expired))
        return len(expired)

    async def run_sweeper(self, period: float = DEFAULT_SWEEP_SECS) -> None:
        while True:
            await asyncio.sleep(period)
            self.sweep()
