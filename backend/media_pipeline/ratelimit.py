from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .config import AssetType
from .errors import RateLimitExceeded

logger = logging.getLogger(__name__)

DEFAULT_PRUNE_EVERY = 1024


@dataclass(frozen=True)
class Admission:
    remaining: int
    reset_at: datetime
    window_start: datetime


@dataclass
class _RateWindow:
    window_start: datetime
    count: int = 0
    retired: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class RateLimiter:
    """
    Fixed-window upload counter per (user_id, asset_type).

    Each key owns its own lock, so concurrent uploads by one user serialize on
    that key only. The guard lock is held just long enough to look up or create
    the window entry. Every `prune_every` lookups, windows that have fully
    elapsed are dropped, so the map only holds keys seen within one window.
    """

    def __init__(self, *, max_uploads: int, window_seconds: float, prune_every: int = DEFAULT_PRUNE_EVERY) -> None:
        if max_uploads < 1:
            raise ValueError("max_uploads must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if prune_every < 1:
            raise ValueError("prune_every must be >= 1")
        self.max_uploads = max_uploads
        self.window = timedelta(seconds=window_seconds)
        self.prune_every = prune_every
        self._windows: dict[tuple[str, AssetType], _RateWindow] = {}
        self._guard = threading.Lock()
        self._lookups = 0

    def __len__(self) -> int:
        with self._guard:
            return len(self._windows)

    def _prune_locked(self, now: datetime) -> int:
        # Caller holds _guard. A window whose lock is busy is left for a later pass.
        removed = 0
        for key, w in list(self._windows.items()):
            if now - w.window_start < self.window:
                continue
            if not w.lock.acquire(blocking=False):
                continue
            try:
                if now - w.window_start >= self.window:
                    w.retired = True
                    del self._windows[key]
                    removed += 1
            finally:
                w.lock.release()
        if removed:
            logger.debug("rate windows pruned removed=%d kept=%d", removed, len(self._windows))
        return removed

    def prune(self, now: datetime) -> int:
        """Drop every window that has elapsed at `now`; returns how many went."""
        with self._guard:
            return self._prune_locked(now)

    def _window_for(self, user_id: str, asset_type: AssetType, now: datetime) -> _RateWindow:
        key = (user_id, AssetType(asset_type))
        with self._guard:
            self._lookups += 1
            if self._lookups % self.prune_every == 0:
                self._prune_locked(now)
            w = self._windows.get(key)
            if w is None:
                w = _RateWindow(window_start=now)
                self._windows[key] = w
            return w

    def try_admit(self, user_id: str, asset_type: AssetType, now: datetime) -> Admission:
        asset_type = AssetType(asset_type)
        while True:
            w = self._window_for(user_id, asset_type, now)
            with w.lock:
                # Pruned between lookup and lock: go back for the live entry.
                if w.retired:
                    continue

                if now - w.window_start >= self.window:
                    w.window_start = now
                    w.count = 0

                reset_at = w.window_start + self.window
                if w.count >= self.max_uploads:
                    logger.info(
                        "rate limit hit user=%s type=%s reset_at=%s", user_id, asset_type.value, reset_at.isoformat()
                    )
                    raise RateLimitExceeded(reset_at)

                w.count += 1
                return Admission(remaining=self.max_uploads - w.count, reset_at=reset_at, window_start=w.window_start)

    def release(self, user_id: str, asset_type: AssetType, admission: Admission | None = None) -> None:
        """
        Give back one slot after a failed upload.

        When an admission is passed, the slot is only returned if its window is
        still the active one; a rolled-over window already starts from zero.
        """
        with self._guard:
            w = self._windows.get((user_id, AssetType(asset_type)))
        if w is None:
            return
        with w.lock:
            if w.retired:
                return
            if admission is not None and admission.window_start != w.window_start:
                return
            if w.count > 0:
                w.count -= 1

    def peek(self, user_id: str, asset_type: AssetType, now: datetime) -> int:
        """Uploads counted in the active window (0 if the window has elapsed)."""
        with self._guard:
            w = self._windows.get((user_id, AssetType(asset_type)))
        if w is None:
            return 0
        with w.lock:
            if w.retired or now - w.window_start >= self.window:
                return 0
            return w.count
