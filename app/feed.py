from __future__ import annotations
import threading
from collections import deque
from typing import Deque, Tuple

from models import ScrobbleEvent


class ActivityFeed:
    """Ring buffer of the most recent relayed scrobbles.

    Written only by the poll loop (through the session state machine); readers get
    an immutable snapshot, most recent first. `total` keeps counting after old
    events fall out of the buffer.
    """

    def __init__(self, capacity: int = 50):
        self.capacity = capacity
        self._lock = threading.Lock()
        self._events: Deque[ScrobbleEvent] = deque(maxlen=capacity)
        self._total = 0

    def append(self, event: ScrobbleEvent) -> None:
        with self._lock:
            self._events.append(event)
            self._total += 1

    def snapshot(self) -> Tuple[ScrobbleEvent, ...]:
        with self._lock:
            return tuple(reversed(self._events))

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self._total = 0

    @property
    def total(self) -> int:
        with self._lock:
            return self._total

    def is_empty(self) -> bool:
        with self._lock:
            return not self._events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
