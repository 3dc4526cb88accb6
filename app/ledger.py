"""
Per-session dedup ledger of plays already relayed to the follower.

- Two plays are the same if track_id matches and played_at differs by less than
  `tolerance` seconds (source and sink clocks can disagree).
- Bounded: once over `capacity`, oldest entries are evicted, but only those below
  the watermark set by trim(), so an entry the current poll window can still
  match is never dropped.
- API is minimal: seen(), record(), trim(), clear(), size().
"""

from __future__ import annotations
import threading
from collections import deque
from typing import Deque, Dict, List, Tuple


class DedupLedger:
    def __init__(self, tolerance: int = 60, capacity: int = 500):
        self.tolerance = tolerance
        self.capacity = capacity
        self._lock = threading.Lock()
        self._order: Deque[Tuple[str, int]] = deque()
        self._by_track: Dict[str, List[int]] = {}
        self._watermark: int | None = None

    # -------- internals --------
    def _evict(self) -> None:
        while len(self._order) > self.capacity:
            track_id, played_at = self._order[0]
            if self._watermark is None or played_at >= self._watermark:
                # Everything left may still be matched by the current window
                break
            self._order.popleft()
            times = self._by_track.get(track_id)
            if times:
                times.remove(played_at)
                if not times:
                    del self._by_track[track_id]

    # -------- public API --------
    def seen(self, track_id: str, played_at: int) -> bool:
        with self._lock:
            for t in self._by_track.get(track_id, ()):
                if abs(t - played_at) < self.tolerance:
                    return True
            return False

    def record(self, track_id: str, played_at: int) -> None:
        with self._lock:
            self._order.append((track_id, played_at))
            self._by_track.setdefault(track_id, []).append(played_at)
            self._evict()

    def trim(self, watermark: int) -> None:
        """Allow eviction of entries played before `watermark`. Never moves backwards."""
        with self._lock:
            if self._watermark is None or watermark > self._watermark:
                self._watermark = watermark
            self._evict()

    def clear(self) -> None:
        with self._lock:
            self._order.clear()
            self._by_track.clear()
            self._watermark = None

    def size(self) -> int:
        with self._lock:
            return len(self._order)
